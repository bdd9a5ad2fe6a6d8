from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from jose import jwt
from jose.exceptions import ExpiredSignatureError, JWTError

from pawsql_mcp.errors import Unauthenticated
from pawsql_mcp.sessions import Session

ALGORITHM = "HS256"

_REQUIRED_CLAIMS = ("baseUrl", "edition", "username", "apiKey")


@dataclass(frozen=True)
class TokenPayload:
    base_url: str
    edition: str
    username: str
    api_key: str
    frontend_url: Optional[str] = None
    session_id: Optional[str] = None
    expires_at: Optional[datetime] = None


def looks_like_jwt(token: str) -> bool:
    # JWTs have exactly 2 '.' separators.
    return token.count(".") == 2


class TokenCodec:
    """Signs and verifies the Bearer tokens handed out by ``POST /auth``."""

    def __init__(self, secret: str, *, expires: timedelta = timedelta(hours=24)):
        if not secret:
            raise RuntimeError("JWT_SECRET is not set")
        self._secret = secret
        self.expires = expires

    def issue(self, session: Session, *, now: Optional[datetime] = None) -> str:
        issued = now or datetime.now(timezone.utc)
        claims: Dict[str, Any] = {
            "baseUrl": session.base_url,
            "frontendUrl": session.frontend_url,
            "edition": session.edition,
            "username": session.email,
            "apiKey": session.api_key,
            "sid": session.session_id,
            "iat": int(issued.timestamp()),
            "exp": int((issued + self.expires).timestamp()),
        }
        return jwt.encode(claims, self._secret, algorithm=ALGORITHM)

    def decode(self, token: str) -> TokenPayload:
        try:
            claims = jwt.decode(token, self._secret, algorithms=[ALGORITHM])
        except ExpiredSignatureError as e:
            raise Unauthenticated("Bearer token has expired") from e
        except JWTError as e:
            raise Unauthenticated(f"Invalid bearer token: {e}") from e

        missing = [c for c in _REQUIRED_CLAIMS if not claims.get(c)]
        if missing:
            raise Unauthenticated(f"Bearer token is missing claims: {', '.join(missing)}")

        return TokenPayload(
            base_url=claims["baseUrl"],
            edition=claims["edition"],
            username=claims["username"],
            api_key=claims["apiKey"],
            frontend_url=claims.get("frontendUrl"),
            session_id=claims.get("sid"),
            expires_at=datetime.fromtimestamp(claims["exp"], timezone.utc) if claims.get("exp") else None,
        )
