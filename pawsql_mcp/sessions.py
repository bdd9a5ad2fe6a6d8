from __future__ import annotations

import logging
import threading
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterator, List, NamedTuple, Optional, Set

from pawsql_mcp.errors import MissingField

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UserKey(NamedTuple):
    """Result of the upstream identity check."""

    api_key: str
    frontend_url: Optional[str] = None


@dataclass(eq=False)
class Session:
    api_key: str = field(repr=False)
    email: str
    edition: str
    base_url: str
    frontend_url: Optional[str] = None
    session_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=utcnow)
    last_accessed_at: Optional[datetime] = None

    def __post_init__(self) -> None:
        if self.last_accessed_at is None:
            self.last_accessed_at = self.created_at

    def touch(self, now: datetime) -> None:
        self.last_accessed_at = now

    def idle_for(self, now: datetime) -> timedelta:
        return now - self.last_accessed_at

    def public_view(self) -> Dict[str, Any]:
        return {"sessionId": self.session_id, "email": self.email, "edition": self.edition}


class _LockSlot:
    __slots__ = ("lock", "holders")

    def __init__(self) -> None:
        self.lock = threading.RLock()
        self.holders = 0


class KeyedLocks:
    """One re-entrant lock per key; unrelated keys never contend.

    A key's lock only lives while some thread holds or waits on it.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: Dict[str, _LockSlot] = {}

    def __len__(self) -> int:
        return len(self._locks)

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            slot = self._locks.get(key)
            if slot is None:
                slot = self._locks[key] = _LockSlot()
            slot.holders += 1
        try:
            with slot.lock:
                yield
        finally:
            with self._guard:
                slot.holders -= 1
                if slot.holders == 0:
                    del self._locks[key]


VerifyFn = Callable[[str, str, str], UserKey]


class SessionStore:
    """In-memory sessions indexed by session id, api key and user email.

    All three indices are mutated together while holding the owning user's
    lock, so a session is either fully present or fully gone.
    """

    def __init__(
        self,
        *,
        idle_timeout: timedelta = timedelta(hours=24),
        max_sessions_per_user: int = 5,
        clock: Callable[[], datetime] = utcnow,
    ):
        if max_sessions_per_user < 1:
            raise ValueError("max_sessions_per_user must be >= 1")
        self.idle_timeout = idle_timeout
        self.max_sessions_per_user = max_sessions_per_user
        self._clock = clock
        self._locks = KeyedLocks()
        self._sessions: Dict[str, Session] = {}
        self._by_api_key: Dict[str, str] = {}
        self._by_user: Dict[str, Set[str]] = {}
        # Called with (session, reason) after a session leaves every index.
        self.on_discard: Optional[Callable[[Session, str], None]] = None

    def __len__(self) -> int:
        return len(self._sessions)

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def authenticate(
        self,
        email: Optional[str],
        password: Optional[str],
        edition: Optional[str],
        base_url: Optional[str],
        verify: VerifyFn,
    ) -> Session:
        for name, value in (("email", email), ("password", password), ("edition", edition), ("base_url", base_url)):
            if not value or not str(value).strip():
                raise MissingField(name)

        user_key = verify(email, password, base_url)
        return self.open_session(
            user_key.api_key,
            email,
            edition,
            base_url,
            frontend_url=user_key.frontend_url,
        )

    def open_session(
        self,
        api_key: str,
        email: str,
        edition: str,
        base_url: str,
        *,
        frontend_url: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> Session:
        """Reuse the live session for `api_key` or create a new one.

        `session_id` pins the id of a newly created session (a signed token
        reopening the session it was issued for).
        """
        with self._locks.hold(email):
            now = self._clock()
            existing_id = self._by_api_key.get(api_key)
            existing = self._sessions.get(existing_id) if existing_id else None
            if existing is not None:
                if self._is_expired(existing, now):
                    logger.info("Session %s expired, replacing it for %s", existing.session_id, email)
                    self._discard(existing, "expired")
                else:
                    existing.touch(now)
                    if frontend_url and not existing.frontend_url:
                        existing.frontend_url = frontend_url
                    logger.debug("Reusing session %s for %s", existing.session_id, email)
                    return existing

            owned = [self._sessions[sid] for sid in self._by_user.get(email, ()) if sid in self._sessions]
            while len(owned) >= self.max_sessions_per_user:
                oldest = min(owned, key=lambda s: s.last_accessed_at)
                logger.info(
                    "User %s reached %d sessions, evicting %s",
                    email,
                    self.max_sessions_per_user,
                    oldest.session_id,
                )
                self._discard(oldest, "evicted")
                owned.remove(oldest)

            session = Session(
                api_key=api_key,
                email=email,
                edition=edition,
                base_url=base_url.rstrip("/"),
                frontend_url=frontend_url,
                created_at=now,
            )
            if session_id:
                session.session_id = session_id
            self._sessions[session.session_id] = session
            self._by_api_key[api_key] = session.session_id
            self._by_user.setdefault(email, set()).add(session.session_id)
            logger.info("Created session %s for %s (%s)", session.session_id, email, edition)
            return session

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def validate_by_id(self, session_id: Optional[str]) -> Optional[Session]:
        if not session_id:
            return None
        return self._validate(self._sessions.get(session_id))

    def validate_by_api_key(self, api_key: Optional[str]) -> Optional[Session]:
        if not api_key:
            return None
        session_id = self._by_api_key.get(api_key)
        if not session_id:
            return None
        return self._validate(self._sessions.get(session_id))

    def get(self, session_id: str) -> Optional[Session]:
        """Peek without touching or expiring."""
        return self._sessions.get(session_id)

    def sessions_for(self, email: str) -> List[Session]:
        ids = list(self._by_user.get(email, ()))
        return [s for s in (self._sessions.get(sid) for sid in ids) if s is not None]

    def _validate(self, session: Optional[Session]) -> Optional[Session]:
        if session is None:
            return None
        with self._locks.hold(session.email):
            if self._sessions.get(session.session_id) is not session:
                return None
            now = self._clock()
            if self._is_expired(session, now):
                logger.info("Session %s for %s expired on lookup", session.session_id, session.email)
                self._discard(session, "expired")
                return None
            session.touch(now)
            return session

    # ------------------------------------------------------------------
    # Removal
    # ------------------------------------------------------------------

    def remove(self, session: Session) -> bool:
        with self._locks.hold(session.email):
            if self._sessions.get(session.session_id) is not session:
                return False
            self._discard(session, "removed")
            return True

    def remove_by_id(self, session_id: str) -> bool:
        session = self._sessions.get(session_id)
        return self.remove(session) if session is not None else False

    def cleanup_expired(self) -> int:
        """Drop every session idle longer than the timeout. Returns the count."""
        removed = 0
        for session in list(self._sessions.values()):
            with self._locks.hold(session.email):
                if self._sessions.get(session.session_id) is not session:
                    continue
                if self._is_expired(session, self._clock()):
                    self._discard(session, "expired")
                    removed += 1
        if removed:
            logger.info("Session cleanup removed %d expired sessions, %d remain", removed, len(self._sessions))
        return removed

    def _is_expired(self, session: Session, now: datetime) -> bool:
        return session.idle_for(now) > self.idle_timeout

    def _discard(self, session: Session, reason: str) -> None:
        # Caller holds the lock for session.email.
        self._sessions.pop(session.session_id, None)
        if self._by_api_key.get(session.api_key) == session.session_id:
            del self._by_api_key[session.api_key]
        owned = self._by_user.get(session.email)
        if owned is not None:
            owned.discard(session.session_id)
            if not owned:
                del self._by_user[session.email]
        if self.on_discard is not None:
            self.on_discard(session, reason)
