from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from pawsql_mcp.sessions import Session

audit_logger = logging.getLogger("audit")


class AuditLog:
    """Security audit trail written to the ``audit`` logger as key=value pairs."""

    def __init__(self, logger: Optional[logging.Logger] = None):
        self._logger = logger or audit_logger

    def log_authentication(self, email: str, success: bool, session_id: Optional[str], ip_address: str) -> None:
        self._event("AUTHENTICATION", email=email, success=success, sessionId=session_id, ipAddress=ip_address)

    def log_session_event(self, session: Session, event_type: str, ip_address: str = "system") -> None:
        self._event(
            "SESSION",
            sessionId=session.session_id,
            email=session.email,
            edition=session.edition,
            eventType=event_type,
            ipAddress=ip_address,
        )

    def log_stream_event(self, session: Session, event_type: str, ip_address: str = "system") -> None:
        self._event("SSE", sessionId=session.session_id, email=session.email, eventType=event_type, ipAddress=ip_address)

    def log_permission_check(
        self, session: Session, resource: str, permission: str, granted: bool, ip_address: str
    ) -> None:
        self._event(
            "PERMISSION",
            sessionId=session.session_id,
            email=session.email,
            resource=resource,
            permission=permission,
            granted=granted,
            ipAddress=ip_address,
        )

    def log_security_event(self, event_type: str, message: str, ip_address: str = "unknown") -> None:
        self._event("SECURITY", eventType=event_type, message=message, ipAddress=ip_address)

    def _event(self, category: str, **details: Any) -> None:
        fields: Dict[str, Any] = {k: v for k, v in details.items() if v is not None}
        self._logger.info("[%s] %s", category, " ".join(f"{k}={v}" for k, v in fields.items()))
