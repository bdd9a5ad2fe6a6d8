"""Current-user propagation across requests, threads and deferred work.

Business code calls :func:`get_current_user` / :func:`require_user` and never
receives the user as a parameter. Where the user comes from depends on how the
code is running:

* request handlers and asyncio tasks bind the ``current_user`` ContextVar
  (see :func:`bound`);
* threads started through :class:`InheritingThread` or
  :class:`AuthContextExecutor` get a snapshot of the spawning context's user in
  a thread-local slot, independent of the parent afterwards and cleared when
  the unit of work ends;
* deferred work captures the user with :func:`capture` and re-binds it with
  :meth:`CapturedContext.run` right before it executes, on whatever thread;
* as a last resort, a correlation id (a stream/session id) found in the
  context or the thread name is handed to a resolver registered by the broker.

Absence of a user is a normal state. Code that needs one must call
:func:`require_user`, which raises ``Unauthenticated`` instead of falling back
to any shared identity.
"""

from __future__ import annotations

import contextvars
import enum
import functools
import logging
import re
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Iterator, Optional, TypeVar

from pawsql_mcp.errors import Unauthenticated
from pawsql_mcp.sessions import Session

logger = logging.getLogger(__name__)

T = TypeVar("T")


class _Anonymous:
    def __repr__(self) -> str:
        return "<anonymous>"


# Bound by deferred work that was captured without a user. Stops the fallback
# chain so the executing thread's own bindings are never observed.
ANONYMOUS = _Anonymous()

# Per-request (per-task) user identity.
current_user: contextvars.ContextVar[Any] = contextvars.ContextVar("current_user", default=None)

# Stream / session id of the unit of work, used to recover the user when
# nothing is bound.
current_correlation_id: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "current_correlation_id", default=None
)

_thread_state = threading.local()

_UUID_RE = re.compile(r"[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}", re.IGNORECASE)

CorrelationResolver = Callable[[str], Optional[Session]]
_correlation_resolver: Optional[CorrelationResolver] = None


class Scope(enum.Enum):
    REQUEST = "request"
    THREAD = "thread"


def set_correlation_resolver(resolver: Optional[CorrelationResolver]) -> Optional[CorrelationResolver]:
    """Install the correlation-id lookup; returns the previous one."""
    global _correlation_resolver
    previous = _correlation_resolver
    _correlation_resolver = resolver
    return previous


# ---------------------------------------------------------------------------
# Reading
# ---------------------------------------------------------------------------


def _thread_user() -> Optional[Session]:
    return getattr(_thread_state, "user", None)


def correlation_id() -> Optional[str]:
    cid = current_correlation_id.get()
    if cid:
        return cid
    match = _UUID_RE.search(threading.current_thread().name or "")
    return match.group(0) if match else None


def peek_user() -> Optional[Session]:
    """Bound user without consulting the correlation resolver."""
    user = current_user.get()
    if user is ANONYMOUS:
        return None
    if user is not None:
        return user
    return _thread_user()


def get_current_user() -> Optional[Session]:
    user = current_user.get()
    if user is ANONYMOUS:
        return None
    if user is not None:
        return user

    user = _thread_user()
    if user is not None:
        return user

    cid = correlation_id()
    resolver = _correlation_resolver
    if not cid or resolver is None:
        return None
    try:
        user = resolver(cid)
    except Exception:
        logger.warning("Correlation lookup failed for %s", cid, exc_info=True)
        return None
    if user is not None:
        logger.debug("Resolved user %s from correlation id %s", user.email, cid)
    return user


def require_user() -> Session:
    user = get_current_user()
    if user is None:
        raise Unauthenticated(
            f"No authenticated user bound to this operation (thread {threading.current_thread().name})"
        )
    return user


# ---------------------------------------------------------------------------
# Binding
# ---------------------------------------------------------------------------


def set_current_user(scope: Scope, user: Optional[Session]) -> Optional[contextvars.Token]:
    """Bind `user` in `scope`. REQUEST returns the ContextVar token for reset."""
    if scope is Scope.REQUEST:
        return current_user.set(user if user is not None else ANONYMOUS)
    _thread_state.user = user
    return None


def clear_current_user(scope: Scope) -> None:
    if scope is Scope.REQUEST:
        current_user.set(None)
    else:
        _thread_state.user = None


@contextmanager
def bound(user: Optional[Session], scope: Scope = Scope.REQUEST) -> Iterator[Optional[Session]]:
    """Bind `user` for the block and restore the previous binding afterwards."""
    if scope is Scope.REQUEST:
        token = current_user.set(user if user is not None else ANONYMOUS)
        try:
            yield user
        finally:
            current_user.reset(token)
    else:
        previous = _thread_user()
        _thread_state.user = user
        try:
            yield user
        finally:
            _thread_state.user = previous


@contextmanager
def correlated(cid: Optional[str]) -> Iterator[None]:
    token = current_correlation_id.set(cid)
    try:
        yield
    finally:
        current_correlation_id.reset(token)


def with_user(user: Optional[Session], body: Callable[..., T], *args: Any, **kwargs: Any) -> T:
    with bound(user):
        return body(*args, **kwargs)


# ---------------------------------------------------------------------------
# Capture / restore
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CapturedContext:
    user: Optional[Session]
    correlation_id: Optional[str] = None

    @contextmanager
    def applied(self) -> Iterator[Optional[Session]]:
        with correlated(self.correlation_id), bound(self.user):
            yield self.user

    def run(self, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        with self.applied():
            return fn(*args, **kwargs)

    async def arun(self, fn: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        with self.applied():
            return await fn(*args, **kwargs)

    def wrap(self, fn: Callable[..., T]) -> Callable[..., T]:
        @functools.wraps(fn)
        def _wrapped(*args: Any, **kwargs: Any) -> T:
            return self.run(fn, *args, **kwargs)

        return _wrapped


def capture() -> CapturedContext:
    """Snapshot the current user and correlation id for later execution."""
    return CapturedContext(user=get_current_user(), correlation_id=correlation_id())


# ---------------------------------------------------------------------------
# Inheritable thread binding
# ---------------------------------------------------------------------------


def _run_inherited(snapshot: CapturedContext, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
    previous = _thread_user()
    _thread_state.user = snapshot.user
    token = current_correlation_id.set(snapshot.correlation_id)
    try:
        return fn(*args, **kwargs)
    finally:
        current_correlation_id.reset(token)
        _thread_state.user = previous


class InheritingThread(threading.Thread):
    """Thread that starts with a copy of its creator's current user.

    The copy lives in the child's thread-local slot. Changing or clearing it
    in the child does not touch the parent's binding, and the reverse holds
    too. The body runs in a fresh ``contextvars.Context`` so request-scoped
    bindings of the parent are not shared either.
    """

    def __init__(self, *args: Any, **kwargs: Any):
        super().__init__(*args, **kwargs)
        self._snapshot = capture()

    def run(self) -> None:
        contextvars.Context().run(_run_inherited, self._snapshot, super().run)


class AuthContextExecutor(ThreadPoolExecutor):
    """Thread pool whose tasks inherit the submitter's user at submit time.

    Pool threads are reused across unrelated requests, so every task's
    binding is removed again when the task finishes.
    """

    def submit(self, fn: Callable[..., T], /, *args: Any, **kwargs: Any) -> "Future[T]":
        snapshot = capture()
        return super().submit(
            contextvars.Context().run, _run_inherited, snapshot, fn, *args, **kwargs
        )


# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------


class UserContextFilter(logging.Filter):
    """Stamp log records with the bound user's email (``%(user)s``)."""

    def filter(self, record: logging.LogRecord) -> bool:
        user = peek_user()
        record.user = user.email if user is not None else "-"
        return True
