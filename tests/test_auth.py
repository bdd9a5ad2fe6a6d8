from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone

import pytest
from starlette.datastructures import Headers

from pawsql_mcp.auth import Credentials, extract_credentials
from pawsql_mcp.errors import (
    InvalidCredentials,
    InvalidRequest,
    MissingField,
    SessionExpired,
    Unauthenticated,
    UpstreamUnavailable,
)
from pawsql_mcp.tokens import TokenCodec, looks_like_jwt


def test_authenticate_returns_same_session_until_expiry(broker, upstream, clock):
    auth = broker.authenticator
    first = auth.authenticate("a@x.com", "pw", "cloud", "https://api")
    again = auth.authenticate("a@x.com", "pw", "cloud", "https://api")
    assert again.session_id == first.session_id
    assert first.api_key == "key-a"
    assert first.frontend_url == upstream.FRONTEND

    clock.advance(hours=24, minutes=1)
    later = auth.authenticate("a@x.com", "pw", "cloud", "https://api")
    assert later.session_id != first.session_id


def test_cloud_edition_defaults_base_url(broker, upstream):
    session = broker.authenticator.authenticate("a@x.com", "pw", "cloud")
    assert session.base_url == "https://api"


def test_non_cloud_edition_requires_base_url(broker, upstream):
    with pytest.raises(MissingField) as exc:
        broker.authenticator.authenticate("a@x.com", "pw", "enterprise")
    assert exc.value.field == "api_base_url"
    assert upstream.calls == []


@pytest.mark.parametrize(
    "email,password,edition,field",
    [("", "pw", "cloud", "email"), ("a@x.com", "", "cloud", "password"), ("a@x.com", "pw", None, "edition")],
)
def test_missing_fields(broker, email, password, edition, field):
    with pytest.raises(MissingField) as exc:
        broker.authenticator.authenticate(email, password, edition)
    assert exc.value.field == field


def test_bad_password_is_invalid_credentials(broker):
    with pytest.raises(InvalidCredentials):
        broker.authenticator.authenticate("a@x.com", "wrong", "cloud")
    assert len(broker.store) == 0


def test_upstream_outage_is_upstream_unavailable(broker, upstream):
    upstream.down = True
    with pytest.raises(UpstreamUnavailable):
        broker.authenticator.authenticate("a@x.com", "pw", "cloud")


def test_concurrent_logins_check_upstream_once_per_user_at_a_time(broker, upstream):
    barrier = threading.Barrier(6)
    ids = []

    def login():
        barrier.wait(5)
        ids.append(broker.authenticator.authenticate("a@x.com", "pw", "cloud").session_id)

    threads = [threading.Thread(target=login) for _ in range(6)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(10)

    assert len(set(ids)) == 1
    assert len(broker.store.sessions_for("a@x.com")) == 1


def test_resolve_priority_and_failures(broker, upstream):
    auth = broker.authenticator
    session = auth.authenticate("a@x.com", "pw", "cloud")

    assert auth.resolve(Credentials(session_id=session.session_id)) is session
    assert auth.resolve(Credentials(api_key="key-a")) is session
    assert auth.resolve(Credentials(bearer=session.session_id)) is session

    with pytest.raises(SessionExpired):
        auth.resolve(Credentials(session_id="unknown", api_key="key-a"))
    with pytest.raises(Unauthenticated):
        auth.resolve(Credentials())


def test_resolve_with_raw_credentials_authenticates(broker, upstream):
    creds = Credentials(email="b@x.com", password="pw-b", edition="cloud")
    session = broker.authenticator.resolve(creds)
    assert session.email == "b@x.com"
    assert upstream.endpoints() == ["getUserKey"]

    with pytest.raises(Unauthenticated):
        broker.authenticator.resolve(creds, allow_password=False)


def test_resolve_signed_bearer_reopens_session_after_upstream_check(broker, upstream):
    session = broker.authenticator.authenticate("a@x.com", "pw", "cloud")
    token = broker.tokens.issue(session)

    assert broker.authenticator.resolve(Credentials(bearer=token)) is session
    assert upstream.endpoints() == ["getUserKey"]

    broker.store.remove(session)
    reopened = broker.authenticator.resolve(Credentials(bearer=token))
    assert reopened.session_id == session.session_id
    assert reopened.api_key == "key-a"
    assert upstream.endpoints() == ["getUserKey", "validateUserKey"]
    assert upstream.keys_for("validateUserKey") == ["key-a"]


def test_bearer_not_reopened_when_upstream_rejects_key(broker, upstream):
    session = broker.authenticator.authenticate("a@x.com", "pw", "cloud")
    token = broker.tokens.issue(session)
    broker.store.remove(session)
    del upstream.users["a@x.com"]

    with pytest.raises(Unauthenticated):
        broker.authenticator.resolve(Credentials(bearer=token))
    assert len(broker.store) == 0


def test_logout_revokes_bearer_tokens(broker, upstream):
    auth = broker.authenticator
    session = auth.authenticate("a@x.com", "pw", "cloud")
    token = broker.tokens.issue(session)

    assert auth.logout(session.session_id) is True
    with pytest.raises(Unauthenticated, match="revoked"):
        auth.resolve(Credentials(bearer=token))
    assert len(broker.store) == 0
    assert "validateUserKey" not in upstream.endpoints()

    # Logging in again does not bring the old token back; the new one works.
    fresh = auth.authenticate("a@x.com", "pw", "cloud")
    with pytest.raises(Unauthenticated):
        auth.resolve(Credentials(bearer=token))
    assert auth.resolve(Credentials(bearer=broker.tokens.issue(fresh))) is fresh


def test_failed_logins_leave_no_locks_behind(broker, upstream):
    for i in range(500):
        with pytest.raises(InvalidCredentials):
            broker.authenticator.authenticate(f"nobody{i}@x.com", "bad", "cloud")
    assert len(broker.authenticator._logins) == 0
    assert len(broker.store._locks) == 0


def test_unsupported_edition_is_invalid_request(broker, upstream):
    with pytest.raises(InvalidRequest, match="Unsupported edition"):
        broker.authenticator.authenticate("a@x.com", "pw", "premium")
    assert upstream.calls == []


def test_email_is_case_insensitive(broker, upstream):
    first = broker.authenticator.authenticate("A@X.com ", "pw", "cloud")
    second = broker.authenticator.authenticate("a@x.com", "pw", "cloud")
    assert first is second
    assert first.email == "a@x.com"
    assert len(broker.store.sessions_for("a@x.com")) == 1


def test_logout_removes_session(broker):
    session = broker.authenticator.authenticate("a@x.com", "pw", "cloud")
    assert broker.authenticator.logout(session.session_id) is True
    assert broker.store.validate_by_id(session.session_id) is None
    assert broker.authenticator.logout(session.session_id) is False


def test_extract_credentials_headers_and_query():
    headers = Headers(
        {
            "Authorization": "Bearer abc",
            "X-Session-ID": "sid-h",
            "X-Auth-Email": "a@x.com",
            "X-Auth-Password": "pw",
            "X-Auth-Edition": "cloud",
            "X-Auth-ApiBaseUrl": "https://api",
        }
    )
    creds = extract_credentials(headers, {"sessionId": "sid-q", "api_key": "key-q"})

    assert creds.session_id == "sid-q"
    assert creds.api_key == "key-q"
    assert creds.bearer == "abc"
    assert creds.has_password
    assert creds.base_url == "https://api"
    assert not creds.empty
    assert extract_credentials(Headers({})).empty


class TestTokens:
    def test_issue_and_decode(self, broker):
        session = broker.authenticator.authenticate("a@x.com", "pw", "cloud")
        codec = TokenCodec("secret")
        token = codec.issue(session)

        assert looks_like_jwt(token)
        payload = codec.decode(token)
        assert (payload.username, payload.api_key, payload.edition) == ("a@x.com", "key-a", "cloud")
        assert payload.session_id == session.session_id

    def test_expired_and_tampered_tokens_are_rejected(self, broker):
        session = broker.authenticator.authenticate("a@x.com", "pw", "cloud")
        codec = TokenCodec("secret", expires=timedelta(minutes=5))
        stale = codec.issue(session, now=datetime.now(timezone.utc) - timedelta(hours=1))

        with pytest.raises(Unauthenticated):
            codec.decode(stale)
        with pytest.raises(Unauthenticated):
            TokenCodec("other").decode(codec.issue(session))

    def test_secret_is_required(self):
        with pytest.raises(RuntimeError):
            TokenCodec("")
