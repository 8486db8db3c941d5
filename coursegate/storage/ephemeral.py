from __future__ import annotations

import asyncio
import copy
import threading
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, List, Optional, Protocol, Tuple


class EphemeralStore(Protocol):
    """TTL-bounded key/value state shared by short-lived auth challenges.

    Values are JSON-compatible dicts grouped by namespace. ``lock`` serializes
    read-modify-write sequences on a single key; operations on different keys
    never wait on each other.
    """

    async def get(self, namespace: str, key: str) -> Optional[dict]:
        ...

    async def put(self, namespace: str, key: str, value: dict, ttl_seconds: int) -> None:
        ...

    async def delete(self, namespace: str, key: str) -> bool:
        ...

    async def pop(self, namespace: str, key: str) -> Optional[dict]:
        ...

    async def keys(self, namespace: str) -> List[str]:
        ...

    async def purge_expired(self) -> int:
        ...

    def lock(self, namespace: str, key: str):
        ...

    async def close(self) -> None:
        ...


class KeyedLock:
    """Per-key asyncio locks that are discarded once nobody holds or awaits them."""

    def __init__(self) -> None:
        self._locks: Dict[Tuple[str, str], Tuple[asyncio.Lock, int]] = {}
        self._guard = threading.Lock()

    @asynccontextmanager
    async def hold(self, namespace: str, key: str) -> AsyncIterator[None]:
        slot = (namespace, key)
        with self._guard:
            lock, waiters = self._locks.get(slot, (None, 0))
            if lock is None:
                lock = asyncio.Lock()
            self._locks[slot] = (lock, waiters + 1)
        try:
            async with lock:
                yield
        finally:
            with self._guard:
                lock, waiters = self._locks[slot]
                if waiters <= 1:
                    del self._locks[slot]
                else:
                    self._locks[slot] = (lock, waiters - 1)

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


class MemoryEphemeralStore:
    """Process-local ephemeral store for single-instance deployments.

    State is lost on restart, which is acceptable for one-time codes and
    reset tokens: users simply request a new one.
    """

    def __init__(self) -> None:
        self._entries: Dict[Tuple[str, str], Tuple[dict, float]] = {}
        self._data_lock = threading.Lock()
        self._locks = KeyedLock()

    @staticmethod
    def _now() -> float:
        return time.monotonic()

    async def get(self, namespace: str, key: str) -> Optional[dict]:
        with self._data_lock:
            entry = self._entries.get((namespace, key))
            if entry is None:
                return None
            value, deadline = entry
            if deadline <= self._now():
                self._entries.pop((namespace, key), None)
                return None
            return copy.deepcopy(value)

    async def put(self, namespace: str, key: str, value: dict, ttl_seconds: int) -> None:
        deadline = self._now() + max(1, int(ttl_seconds))
        with self._data_lock:
            self._entries[(namespace, key)] = (copy.deepcopy(value), deadline)

    async def delete(self, namespace: str, key: str) -> bool:
        with self._data_lock:
            return self._entries.pop((namespace, key), None) is not None

    async def pop(self, namespace: str, key: str) -> Optional[dict]:
        with self._data_lock:
            entry = self._entries.pop((namespace, key), None)
        if entry is None:
            return None
        value, deadline = entry
        if deadline <= self._now():
            return None
        return value

    async def keys(self, namespace: str) -> List[str]:
        with self._data_lock:
            return [k for (ns, k) in self._entries if ns == namespace]

    async def purge_expired(self) -> int:
        now = self._now()
        with self._data_lock:
            expired = [slot for slot, (_, deadline) in self._entries.items() if deadline <= now]
            for slot in expired:
                del self._entries[slot]
        return len(expired)

    def lock(self, namespace: str, key: str):
        return self._locks.hold(namespace, key)

    async def close(self) -> None:
        with self._data_lock:
            self._entries.clear()


__all__ = ["EphemeralStore", "KeyedLock", "MemoryEphemeralStore"]
