from __future__ import annotations

import logging
from concurrent.futures import Future
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

import httpx

from pawsql_mcp.audit import AuditLog
from pawsql_mcp.auth import Authenticator, Credentials
from pawsql_mcp.config import Settings, get_settings
from pawsql_mcp.errors import BrokerError
from pawsql_mcp.pawsql import PawSQLClient
from pawsql_mcp.permissions import PermissionService
from pawsql_mcp.request_context import AuthContextExecutor, require_user, set_correlation_resolver
from pawsql_mcp.scheduler import Scheduler
from pawsql_mcp.service import OptimizeService
from pawsql_mcp.sessions import Session, SessionStore, utcnow
from pawsql_mcp.streams import QueueTransport, StreamConnection, StreamRegistry
from pawsql_mcp.tokens import TokenCodec

logger = logging.getLogger(__name__)


class Broker:
    """Owns every component and wires them together from ``Settings``."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        transport: Optional[httpx.BaseTransport] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.settings = settings or get_settings()
        self._transport = transport

        self.audit = AuditLog()
        self.store = SessionStore(
            idle_timeout=self.settings.session_timeout,
            max_sessions_per_user=self.settings.max_sessions_per_user,
            clock=clock,
        )
        self.permissions = PermissionService(
            self.audit,
            admin_users=self.settings.admin_users,
            readonly_users=self.settings.readonly_users,
        )
        self.tokens = (
            TokenCodec(self.settings.jwt_secret, expires=timedelta(hours=self.settings.jwt_expires_hours))
            if self.settings.jwt_secret
            else None
        )
        self.authenticator = Authenticator(
            self.store,
            self.audit,
            client_factory=self.upstream,
            default_base_url=self.settings.api_base_url,
            tokens=self.tokens,
        )
        self.service = OptimizeService(
            self.store,
            self.permissions,
            client_factory=lambda s: self.upstream(s.base_url, s.api_key),
        )
        self.streams = StreamRegistry(
            self.audit,
            transport_factory=lambda: QueueTransport(self.settings.stream_queue_size),
            clock=clock,
        )
        self.store.on_discard = self._session_dropped
        self.executor = AuthContextExecutor(
            max_workers=self.settings.worker_threads,
            thread_name_prefix="pawsql-worker",
        )
        self.scheduler = Scheduler()
        self.scheduler.add_job("session-cleanup", self.settings.cleanup_interval, self.store.cleanup_expired)
        self.scheduler.add_job("stream-probe", self.settings.probe_interval, self.streams.probe)

        self._previous_resolver = set_correlation_resolver(self.resolve_correlation)

    def upstream(self, base_url: str, api_key: Optional[str] = None) -> PawSQLClient:
        return PawSQLClient(
            base_url,
            api_key,
            timeout=float(self.settings.upstream_timeout_seconds),
            transport=self._transport,
        )

    def resolve_correlation(self, correlation_id: str) -> Optional[Session]:
        # Stream ids and session ids are the same value.
        return self.store.validate_by_id(correlation_id)

    def _session_dropped(self, session: Session, reason: str) -> None:
        self.streams.close(session.session_id, f"session {reason}")

    # ------------------------------------------------------------------
    # Streams
    # ------------------------------------------------------------------

    def open_stream(
        self, credentials: Credentials, *, client_ip: str = "unknown", transport: Any = None
    ) -> StreamConnection:
        session = self.authenticator.resolve(credentials, allow_password=True, client_ip=client_ip)
        self.permissions.check_permission(session, "sse", "connect", client_ip)
        conn = self.streams.open(session, transport)
        logger.info("Stream opened for %s (session %s) from %s", session.email, session.session_id, client_ip)
        return conn

    # ------------------------------------------------------------------
    # Deferred work
    # ------------------------------------------------------------------

    def submit(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> "Future[Any]":
        """Run `fn` on the worker pool as the currently bound user."""
        return self.executor.submit(fn, *args, **kwargs)

    def push_result(self, event_prefix: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> bool:
        """Run `fn` for the bound user and push its outcome to that user's stream."""
        user = require_user()
        try:
            result = fn(*args, **kwargs)
        except BrokerError as e:
            logger.warning("%s failed for %s: %s", event_prefix, user.email, e)
            return self.streams.send(user.session_id, f"{event_prefix}_error", e.to_body())
        except Exception as e:
            logger.exception("%s crashed for %s", event_prefix, user.email)
            self.streams.send(
                user.session_id,
                f"{event_prefix}_error",
                {"error": "internal_error", "error_description": str(e)},
            )
            raise
        return self.streams.send(user.session_id, f"{event_prefix}_result", result)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        self.scheduler.start()
        logger.info(
            "Broker started: session timeout %sh, cleanup every %sm, stream probe every %ss",
            self.settings.session_timeout_hours,
            self.settings.session_cleanup_interval_minutes,
            self.settings.stream_probe_interval_seconds,
        )

    def stop(self) -> None:
        self.scheduler.stop()
        # Let in-flight pushes finish before their streams go away.
        self.executor.shutdown(wait=True, cancel_futures=True)
        self.streams.close_all()
        set_correlation_resolver(self._previous_resolver)
        logger.info("Broker stopped")
