from __future__ import annotations

import threading
from datetime import timedelta

import pytest

from pawsql_mcp.errors import InvalidCredentials, MissingField
from pawsql_mcp.sessions import KeyedLocks, SessionStore, UserKey


def verifier(calls=None):
    def verify(email, password, base_url):
        if calls is not None:
            calls.append(email)
        if password != "pw":
            raise InvalidCredentials("bad password")
        return UserKey(api_key=f"key-{email}", frontend_url="https://app")

    return verify


@pytest.fixture
def store(clock):
    return SessionStore(idle_timeout=timedelta(hours=24), max_sessions_per_user=3, clock=clock)


def test_repeated_authentication_reuses_session(store):
    first = store.authenticate("a@x.com", "pw", "cloud", "https://api", verifier())
    second = store.authenticate("a@x.com", "pw", "cloud", "https://api", verifier())

    assert first.session_id == second.session_id
    assert len(store) == 1


def test_authentication_after_idle_timeout_creates_new_session(store, clock):
    first = store.authenticate("a@x.com", "pw", "cloud", "https://api", verifier())
    clock.advance(hours=25)
    second = store.authenticate("a@x.com", "pw", "cloud", "https://api", verifier())

    assert first.session_id != second.session_id
    assert store.get(first.session_id) is None
    assert store.validate_by_api_key("key-a@x.com") is second


@pytest.mark.parametrize("missing", ["email", "password", "edition", "base_url"])
def test_missing_fields_are_rejected_before_verification(store, missing):
    calls = []
    args = {"email": "a@x.com", "password": "pw", "edition": "cloud", "base_url": "https://api"}
    args[missing] = ""

    with pytest.raises(MissingField) as exc:
        store.authenticate(args["email"], args["password"], args["edition"], args["base_url"], verifier(calls))

    assert exc.value.field == missing
    assert calls == []


def test_invalid_credentials_propagate_and_create_nothing(store):
    with pytest.raises(InvalidCredentials):
        store.authenticate("a@x.com", "nope", "cloud", "https://api", verifier())
    assert len(store) == 0


def test_validate_touches_and_expires_lazily(store, clock):
    session = store.open_session("k1", "a@x.com", "cloud", "https://api")

    clock.advance(hours=23)
    assert store.validate_by_id(session.session_id) is session
    assert session.last_accessed_at == clock.now

    # Idle time counts from the last access, not creation.
    clock.advance(hours=23)
    assert store.validate_by_api_key("k1") is session

    clock.advance(hours=24, seconds=1)
    assert store.validate_by_id(session.session_id) is None
    assert store.validate_by_api_key("k1") is None
    assert store.sessions_for("a@x.com") == []


def test_unknown_lookups_return_none(store):
    assert store.validate_by_id("nope") is None
    assert store.validate_by_id(None) is None
    assert store.validate_by_api_key("nope") is None


def test_overflow_evicts_least_recently_accessed(store, clock):
    sessions = []
    for i in range(3):
        sessions.append(store.open_session(f"k{i}", "a@x.com", "cloud", "https://api"))
        clock.advance(minutes=1)

    # k0 becomes the most recently used, k1 the least.
    store.validate_by_id(sessions[0].session_id)
    clock.advance(minutes=1)

    newest = store.open_session("k3", "a@x.com", "cloud", "https://api")

    remaining = {s.session_id for s in store.sessions_for("a@x.com")}
    assert len(remaining) == 3
    assert sessions[1].session_id not in remaining
    assert {sessions[0].session_id, sessions[2].session_id, newest.session_id} == remaining
    assert store.validate_by_api_key("k1") is None


def test_overflow_is_per_user(store):
    for i in range(3):
        store.open_session(f"a{i}", "a@x.com", "cloud", "https://api")
    store.open_session("b0", "b@x.com", "cloud", "https://api")

    assert len(store.sessions_for("a@x.com")) == 3
    assert len(store.sessions_for("b@x.com")) == 1


def test_concurrent_sessions_never_exceed_limit(clock):
    store = SessionStore(max_sessions_per_user=5, clock=clock)
    barrier = threading.Barrier(20)

    def worker(i):
        barrier.wait()
        store.open_session(f"key-{i}", "a@x.com", "cloud", "https://api")

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(20)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(store.sessions_for("a@x.com")) == 5
    assert len(store) == 5


def test_remove_clears_both_indices(store):
    session = store.open_session("k1", "a@x.com", "cloud", "https://api")

    assert store.remove_by_id(session.session_id) is True
    assert store.validate_by_id(session.session_id) is None
    assert store.validate_by_api_key("k1") is None
    assert store.remove(session) is False


def test_cleanup_expired_sweeps_idle_sessions(store, clock):
    old = store.open_session("k1", "a@x.com", "cloud", "https://api")
    clock.advance(hours=20)
    fresh = store.open_session("k2", "b@x.com", "cloud", "https://api")
    clock.advance(hours=5)

    assert store.cleanup_expired() == 1
    assert store.get(old.session_id) is None
    assert store.get(fresh.session_id) is fresh


def test_api_key_is_not_in_repr(store):
    session = store.open_session("secret-key", "a@x.com", "cloud", "https://api")
    assert "secret-key" not in repr(session)
    assert "secret-key" not in str(session.public_view())


def test_keyed_locks_drop_entries_once_released():
    locks = KeyedLocks()
    with locks.hold("a@x.com"):
        with locks.hold("a@x.com"):
            assert len(locks) == 1
        with locks.hold("b@x.com"):
            assert len(locks) == 2
        assert len(locks) == 1
    assert len(locks) == 0


def test_keyed_locks_released_when_body_raises():
    locks = KeyedLocks()
    with pytest.raises(RuntimeError):
        with locks.hold("a@x.com"):
            raise RuntimeError("boom")
    assert len(locks) == 0


def test_keyed_locks_serialize_same_key():
    locks = KeyedLocks()
    inside = []
    overlap = []

    def worker():
        for _ in range(50):
            with locks.hold("a@x.com"):
                inside.append(1)
                if len(inside) > 1:
                    overlap.append(True)
                inside.pop()

    threads = [threading.Thread(target=worker) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert overlap == []
    assert len(locks) == 0


def test_user_locks_do_not_outlive_sessions(store, clock):
    for i in range(20):
        store.open_session(f"k{i}", f"user{i}@x.com", "cloud", "https://api")
    clock.advance(hours=25)

    assert store.cleanup_expired() == 20
    assert len(store._locks) == 0


def test_discard_listener_sees_every_reason(clock):
    store = SessionStore(max_sessions_per_user=1, clock=clock)
    dropped = []
    store.on_discard = lambda session, reason: dropped.append((session.api_key, reason))

    store.open_session("k1", "a@x.com", "cloud", "https://api")
    store.open_session("k2", "a@x.com", "cloud", "https://api")
    clock.advance(hours=25)
    store.cleanup_expired()
    third = store.open_session("k3", "b@x.com", "cloud", "https://api")
    store.remove(third)

    assert dropped == [("k1", "evicted"), ("k2", "expired"), ("k3", "removed")]


def test_open_session_can_pin_session_id(store):
    pinned = store.open_session("k1", "a@x.com", "cloud", "https://api", session_id="sid-1")
    assert pinned.session_id == "sid-1"
    assert store.validate_by_id("sid-1") is pinned
    # Reuse wins over the requested id.
    assert store.open_session("k1", "a@x.com", "cloud", "https://api", session_id="sid-2") is pinned
