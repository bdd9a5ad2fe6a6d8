from __future__ import annotations

import logging
import threading
from typing import Dict, Iterable, Optional, Set

from pawsql_mcp.audit import AuditLog
from pawsql_mcp.errors import PermissionDenied
from pawsql_mcp.sessions import Session

logger = logging.getLogger(__name__)

ADMIN_PERMISSIONS: Dict[str, Set[str]] = {
    "workspace": {"read", "write", "delete"},
    "sql": {"read", "write", "optimize"},
    "admin": {"read", "manage_users"},
    "sse": {"connect"},
}

READONLY_PERMISSIONS: Dict[str, Set[str]] = {
    "workspace": {"read"},
    "sql": {"read"},
    "sse": {"connect"},
}

# Users without an explicit entry.
DEFAULT_PERMISSIONS: Dict[str, Set[str]] = {
    "workspace": {"read", "write"},
    "sql": {"read", "write", "optimize"},
    "sse": {"connect"},
}


class PermissionService:
    def __init__(
        self,
        audit: AuditLog,
        *,
        admin_users: Iterable[str] = (),
        readonly_users: Iterable[str] = (),
    ):
        self._audit = audit
        self._lock = threading.Lock()
        self._user_permissions: Dict[str, Dict[str, Set[str]]] = {}

        for email in admin_users:
            self._user_permissions[email] = {r: set(p) for r, p in ADMIN_PERMISSIONS.items()}
            logger.info("Added admin permissions for user: %s", email)
        for email in readonly_users:
            self._user_permissions[email] = {r: set(p) for r, p in READONLY_PERMISSIONS.items()}
            logger.info("Added read-only permissions for user: %s", email)

    def has_permission(
        self, session: Optional[Session], resource: str, permission: str, client_ip: str = "unknown"
    ) -> bool:
        if session is None:
            self._audit.log_security_event("PERMISSION_DENIED", "No session provided for permission check", client_ip)
            return False

        with self._lock:
            table = self._user_permissions.get(session.email, DEFAULT_PERMISSIONS)
            granted = permission in table.get(resource, ())

        self._audit.log_permission_check(session, resource, permission, granted, client_ip)
        return granted

    def check_permission(
        self, session: Optional[Session], resource: str, permission: str, client_ip: str = "unknown"
    ) -> None:
        if not self.has_permission(session, resource, permission, client_ip):
            email = session.email if session is not None else "unknown"
            message = f"User {email} does not have {permission} permission for resource {resource}"
            logger.warning(message)
            raise PermissionDenied(message)

    def _entry(self, email: str) -> Dict[str, Set[str]]:
        # First customisation starts from the defaults. Caller holds the lock.
        entry = self._user_permissions.get(email)
        if entry is None:
            entry = self._user_permissions[email] = {r: set(p) for r, p in DEFAULT_PERMISSIONS.items()}
        return entry

    def set_permissions(self, email: str, resource: str, permissions: Iterable[str]) -> None:
        with self._lock:
            self._entry(email)[resource] = set(permissions)
        logger.info("Set permissions for user %s, resource %s", email, resource)

    def add_permission(self, email: str, resource: str, permission: str) -> None:
        with self._lock:
            self._entry(email).setdefault(resource, set()).add(permission)
        logger.info("Added permission for user %s, resource %s: %s", email, resource, permission)

    def remove_permission(self, email: str, resource: str, permission: str) -> None:
        with self._lock:
            self._entry(email).get(resource, set()).discard(permission)
        logger.info("Removed permission for user %s, resource %s: %s", email, resource, permission)
