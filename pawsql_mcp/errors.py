from __future__ import annotations

from typing import Any, Dict, Optional


class BrokerError(Exception):
    """Base error. `code` is stable and safe to show to clients."""

    code = "internal_error"
    status_code = 500

    def __init__(self, message: str = "", *, code: Optional[str] = None):
        super().__init__(message or self.__class__.__name__)
        if code:
            self.code = code

    @property
    def message(self) -> str:
        return str(self)

    def to_body(self) -> Dict[str, Any]:
        return {"error": self.code, "error_description": self.message}


class MissingField(BrokerError):
    code = "missing_field"
    status_code = 400

    def __init__(self, field: str, message: Optional[str] = None):
        super().__init__(message or f"Missing required field: {field}")
        self.field = field


class InvalidRequest(BrokerError):
    code = "invalid_request"
    status_code = 400


class InvalidCredentials(BrokerError):
    code = "invalid_credentials"
    status_code = 401


class Unauthenticated(BrokerError):
    code = "unauthenticated"
    status_code = 401


class SessionExpired(Unauthenticated):
    # Same wire code as Unauthenticated; audited separately.
    audit_event = "SESSION_EXPIRED"


class PermissionDenied(BrokerError):
    code = "permission_denied"
    status_code = 403


class NotFound(BrokerError):
    code = "not_found"
    status_code = 404


class UpstreamUnavailable(BrokerError):
    code = "upstream_unavailable"
    status_code = 500
