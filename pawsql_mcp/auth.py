from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, Mapping, Optional

from pawsql_mcp.audit import AuditLog
from pawsql_mcp.config import CLOUD_API_URL
from pawsql_mcp.errors import InvalidCredentials, InvalidRequest, MissingField, SessionExpired, Unauthenticated
from pawsql_mcp.pawsql import PawSQLClient
from pawsql_mcp.sessions import KeyedLocks, Session, SessionStore, UserKey, utcnow
from pawsql_mcp.tokens import TokenCodec, looks_like_jwt

logger = logging.getLogger(__name__)

EDITIONS = {"cloud", "enterprise", "community"}
DEFAULT_EDITION = "cloud"

ClientFactory = Callable[..., PawSQLClient]


@dataclass(frozen=True)
class Credentials:
    session_id: Optional[str] = None
    api_key: Optional[str] = None
    bearer: Optional[str] = None
    email: Optional[str] = None
    password: Optional[str] = None
    edition: Optional[str] = None
    base_url: Optional[str] = None

    @property
    def has_password(self) -> bool:
        return bool(self.email and self.password)

    @property
    def empty(self) -> bool:
        return not (self.session_id or self.api_key or self.bearer or self.has_password)


def _first(*values: Optional[str]) -> Optional[str]:
    for v in values:
        if v and v.strip():
            return v.strip()
    return None


def extract_credentials(headers: Mapping[str, str], query: Optional[Mapping[str, str]] = None) -> Credentials:
    """Pull every supported credential form out of request headers/query.

    `headers` must be case-insensitive (Starlette's Headers is).
    """
    query = query or {}
    bearer = None
    auth = headers.get("authorization")
    if auth and auth.lower().startswith("bearer "):
        bearer = auth.split(" ", 1)[1].strip() or None

    return Credentials(
        session_id=_first(query.get("sessionId"), query.get("session_id"), headers.get("x-session-id")),
        api_key=_first(query.get("apiKey"), query.get("api_key"), headers.get("x-api-key")),
        bearer=bearer,
        email=_first(headers.get("x-auth-email")),
        password=headers.get("x-auth-password") or None,
        edition=_first(headers.get("x-auth-edition")),
        base_url=_first(headers.get("x-auth-apibaseurl")),
    )


class Authenticator:
    """Turns credentials into sessions. Sole caller of the upstream identity check."""

    def __init__(
        self,
        store: SessionStore,
        audit: AuditLog,
        *,
        client_factory: ClientFactory = PawSQLClient,
        default_base_url: str = CLOUD_API_URL,
        tokens: Optional[TokenCodec] = None,
    ):
        self.store = store
        self.tokens = tokens
        self._audit = audit
        self._client_factory = client_factory
        self._default_base_url = default_base_url.rstrip("/")
        self._logins = KeyedLocks()
        self._revoked_lock = threading.Lock()
        # Logged-out session id -> when its last possible token expires.
        self._revoked: Dict[str, datetime] = {}

    def authenticate(
        self,
        email: Optional[str],
        password: Optional[str],
        edition: Optional[str],
        base_url: Optional[str] = None,
        *,
        client_ip: str = "unknown",
    ) -> Session:
        email = (email or "").strip().lower()
        edition = (edition or "").strip().lower()
        if not email:
            raise MissingField("email")
        if not password:
            raise MissingField("password")
        if not edition:
            raise MissingField("edition")
        if edition not in EDITIONS:
            raise InvalidRequest(f"Unsupported edition '{edition}', expected one of {sorted(EDITIONS)}")

        base_url = (base_url or "").strip().rstrip("/")
        if not base_url:
            if edition != DEFAULT_EDITION:
                raise MissingField("api_base_url", f"api_base_url is required for the {edition} edition")
            base_url = self._default_base_url

        # One identity check at a time per user; a concurrent second login
        # finds the first one's session through the api-key index.
        with self._logins.hold(email):
            try:
                session = self.store.authenticate(email, password, edition, base_url, self._check_credentials)
            except InvalidCredentials:
                self._audit.log_authentication(email, False, None, client_ip)
                raise

        self._audit.log_authentication(email, True, session.session_id, client_ip)
        return session

    def _check_credentials(self, email: str, password: str, base_url: str) -> UserKey:
        logger.info("Checking credentials for %s against %s", email, base_url)
        return self._client_factory(base_url).get_user_key(email, password)

    def resolve(
        self,
        credentials: Credentials,
        *,
        allow_password: bool = True,
        client_ip: str = "unknown",
    ) -> Session:
        """Find the session for `credentials` (session id > api key > bearer > password)."""
        if credentials.session_id:
            return self._expect(self.store.validate_by_id(credentials.session_id), "session", client_ip)

        if credentials.api_key:
            return self._expect(self.store.validate_by_api_key(credentials.api_key), "api key", client_ip)

        if credentials.bearer:
            return self._resolve_bearer(credentials.bearer, client_ip)

        if credentials.has_password and allow_password:
            logger.info("Attempting direct authentication for %s", credentials.email)
            return self.authenticate(
                credentials.email,
                credentials.password,
                credentials.edition or DEFAULT_EDITION,
                credentials.base_url,
                client_ip=client_ip,
            )

        self._audit.log_security_event("AUTH_MISSING", "Request without usable credentials", client_ip)
        raise Unauthenticated("Authentication required")

    def _resolve_bearer(self, token: str, client_ip: str) -> Session:
        if self.tokens is None or not looks_like_jwt(token):
            return self._expect(self.store.validate_by_id(token), "bearer session", client_ip)

        payload = self.tokens.decode(token)
        if payload.session_id and self._is_revoked(payload.session_id):
            self._audit.log_security_event(
                "TOKEN_REVOKED", f"Bearer token for logged-out session {payload.session_id}", client_ip
            )
            raise Unauthenticated("Bearer token was revoked by logout")

        session = self.store.validate_by_api_key(payload.api_key)
        if session is not None:
            return session

        # Signed token but no live session (restart or idle expiry): reopen it
        # once upstream confirms the key still works.
        try:
            valid = self._client_factory(payload.base_url, payload.api_key).validate_user_key()
        except InvalidCredentials:
            valid = False
        if not valid:
            self._audit.log_security_event(
                "TOKEN_KEY_REJECTED", f"Upstream rejected key for {payload.username}", client_ip
            )
            raise Unauthenticated("Bearer token's API key is no longer valid")

        logger.info("Reopening session %s for %s from bearer token", payload.session_id, payload.username)
        return self.store.open_session(
            payload.api_key,
            payload.username,
            payload.edition,
            payload.base_url,
            frontend_url=payload.frontend_url,
            session_id=payload.session_id,
        )

    def _is_revoked(self, session_id: str) -> bool:
        now = utcnow()
        with self._revoked_lock:
            until = self._revoked.get(session_id)
            if until is not None and until <= now:
                del self._revoked[session_id]
                return False
            return until is not None

    def _revoke(self, session_id: str) -> None:
        if self.tokens is None:
            return
        now = utcnow()
        with self._revoked_lock:
            # Entries outlive every token that could still name the session.
            for sid in [sid for sid, until in self._revoked.items() if until <= now]:
                del self._revoked[sid]
            self._revoked[session_id] = now + self.tokens.expires

    def _expect(self, session: Optional[Session], kind: str, client_ip: str) -> Session:
        if session is None:
            self._audit.log_security_event("AUTH_INVALID", f"Invalid or expired {kind}", client_ip)
            raise SessionExpired(f"Invalid or expired {kind}")
        return session

    def logout(self, session_id: str, *, client_ip: str = "unknown") -> bool:
        session = self.store.get(session_id)
        if session is None or not self.store.remove(session):
            return False
        self._revoke(session.session_id)
        self._audit.log_session_event(session, "LOGOUT", client_ip)
        return True
