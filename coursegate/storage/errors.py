from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class LockUnavailable(Exception):
    """Raised when a per-key lock could not be acquired in time."""

    def __init__(self, key: str, wait_seconds: float):
        super().__init__(f"lock for {key} not acquired within {wait_seconds}s")
        self.key = key
        self.wait_seconds = wait_seconds


__all__ = ["ConstraintViolation", "LockUnavailable"]
