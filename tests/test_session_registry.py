"""Tests for the per-user session registry and device classification."""

import threading
from datetime import timedelta

import pytest

from coursegate.service.errors import NotFoundError
from coursegate.service.sessions import (
    SessionRegistry,
    describe_device,
    detect_browser,
    detect_device,
    new_session_id,
)
from coursegate.storage.memory import MemoryStore

CHROME_WINDOWS = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0 Safari/537.36"
)
SAFARI_IPHONE = (
    "Mozilla/5.0 (iPhone; CPU iPhone OS 17_0 like Mac OS X) AppleWebKit/605.1.15 "
    "(KHTML, like Gecko) Version/17.0 Mobile/15E148 Safari/604.1"
)
FIREFOX_LINUX = "Mozilla/5.0 (X11; Linux x86_64; rv:121.0) Gecko/20100101 Firefox/121.0"


@pytest.fixture
def store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path), persist=False)


@pytest.fixture
def user(store):
    return store.create_user("alice@example.com", "Alice", "hash")


@pytest.fixture
def registry(store, clock):
    return SessionRegistry(store, clock=clock)


class TestDeviceClassification:
    def test_missing_user_agent(self):
        assert describe_device(None) == "Unknown Device • Unknown"

    def test_desktop_chrome(self):
        assert describe_device(CHROME_WINDOWS) == "Windows PC • Chrome"

    def test_mobile_wins_over_iphone(self):
        assert detect_device(SAFARI_IPHONE) == "Mobile Device"
        assert detect_browser(SAFARI_IPHONE) == "Safari"

    def test_linux_firefox(self):
        assert describe_device(FIREFOX_LINUX) == "Linux • Firefox"

    def test_unrecognised_agent(self):
        assert describe_device("curl/8.4.0") == "Desktop • Unknown Browser"

    def test_session_ids_are_64_hex_chars(self):
        sid = new_session_id()
        assert len(sid) == 64
        int(sid, 16)


class TestAddSession:
    def test_add_records_descriptor(self, registry, store, user, clock):
        descriptor = registry.new_descriptor(CHROME_WINDOWS, "203.0.113.7")
        sid = registry.add_session(user.id, descriptor)

        sessions = store.get_user(user.id).sessions
        assert [s.session_id for s in sessions] == [sid]
        assert sessions[0].device_info == "Windows PC • Chrome"
        assert sessions[0].ip_address == "203.0.113.7"
        assert sessions[0].created_at == clock()
        assert sessions[0].last_active == clock()

    def test_list_never_exceeds_ten(self, registry, store, user, clock):
        ids = []
        for _ in range(15):
            ids.append(registry.add_session(user.id, registry.new_descriptor()))
            clock.advance(minutes=1)
            assert len(store.get_user(user.id).sessions) <= 10

        remaining = [s.session_id for s in store.get_user(user.id).sessions]
        assert remaining == ids[-10:]

    def test_stale_sessions_pruned_before_append(self, registry, store, user, clock):
        old = registry.add_session(user.id, registry.new_descriptor())
        clock.advance(days=20)
        middle = registry.add_session(user.id, registry.new_descriptor())
        clock.advance(days=11)

        newest = registry.add_session(user.id, registry.new_descriptor())

        sessions = store.get_user(user.id).sessions
        assert [s.session_id for s in sessions] == [middle, newest]
        cutoff = clock() - timedelta(days=30)
        assert all(s.last_active > cutoff for s in sessions)
        assert old not in [s.session_id for s in sessions]

    def test_pruning_frees_room_before_cap(self, registry, store, user, clock):
        for _ in range(10):
            registry.add_session(user.id, registry.new_descriptor())
        clock.advance(days=31)
        registry.add_session(user.id, registry.new_descriptor())

        assert len(store.get_user(user.id).sessions) == 1

    def test_duplicate_id_is_regenerated(self, registry, store, user):
        first = registry.new_descriptor()
        registry.add_session(user.id, first)
        clash = registry.new_descriptor()
        clash.session_id = first.session_id

        sid = registry.add_session(user.id, clash)

        assert sid != first.session_id
        ids = [s.session_id for s in store.get_user(user.id).sessions]
        assert len(ids) == len(set(ids)) == 2

    def test_unknown_user(self, registry):
        with pytest.raises(NotFoundError):
            registry.add_session("missing", registry.new_descriptor())

    def test_concurrent_adds_respect_cap(self, store, user):
        registry = SessionRegistry(store, max_sessions=10)
        threads = [
            threading.Thread(
                target=lambda: registry.add_session(user.id, registry.new_descriptor())
            )
            for _ in range(40)
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(store.get_user(user.id).sessions) == 10


class TestRevocation:
    def test_keep_only_current(self, registry, store, user):
        ids = [registry.add_session(user.id, registry.new_descriptor()) for _ in range(4)]

        revoked = registry.revoke_all_except(user.id, ids[1])

        assert revoked == 3
        assert [s.session_id for s in store.get_user(user.id).sessions] == [ids[1]]

    def test_unknown_current_id_clears_everything(self, registry, store, user):
        for _ in range(3):
            registry.add_session(user.id, registry.new_descriptor())

        revoked = registry.revoke_all_except(user.id, "not-a-session")

        assert revoked == 3
        assert store.get_user(user.id).sessions == []

    def test_revoke_all(self, registry, store, user):
        registry.add_session(user.id, registry.new_descriptor())
        assert registry.revoke_all(user.id) == 1
        assert store.get_user(user.id).sessions == []

    def test_revoke_unknown_user(self, registry):
        with pytest.raises(NotFoundError):
            registry.revoke_all_except("missing", None)
