from __future__ import annotations

import os
from dataclasses import dataclass, field
from datetime import timedelta
from functools import lru_cache
from typing import List, Optional

from dotenv import load_dotenv

load_dotenv()

CLOUD_API_URL = "https://www.pawsql.com"


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise RuntimeError(f"{name} must be an integer, got {raw!r}") from e


def _env_list(name: str) -> List[str]:
    raw = os.environ.get(name, "")
    return [v.strip() for v in raw.split(",") if v.strip()]


@dataclass(frozen=True)
class Settings:
    session_timeout_hours: int = 24
    session_cleanup_interval_minutes: int = 60
    max_sessions_per_user: int = 5
    stream_probe_interval_seconds: int = 60

    api_base_url: str = CLOUD_API_URL
    upstream_timeout_seconds: int = 30
    worker_threads: int = 8
    stream_queue_size: int = 256

    jwt_secret: Optional[str] = None
    jwt_expires_hours: int = 24

    admin_users: List[str] = field(default_factory=list)
    readonly_users: List[str] = field(default_factory=list)

    @property
    def session_timeout(self) -> timedelta:
        return timedelta(hours=self.session_timeout_hours)

    @property
    def cleanup_interval(self) -> float:
        return self.session_cleanup_interval_minutes * 60.0

    @property
    def probe_interval(self) -> float:
        return float(self.stream_probe_interval_seconds)

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            session_timeout_hours=_env_int("SESSION_TIMEOUT_HOURS", 24),
            session_cleanup_interval_minutes=_env_int("SESSION_CLEANUP_INTERVAL_MINUTES", 60),
            max_sessions_per_user=_env_int("MAX_SESSIONS_PER_USER", 5),
            stream_probe_interval_seconds=_env_int("STREAM_PROBE_INTERVAL_SECONDS", 60),
            api_base_url=(os.environ.get("PAWSQL_API_BASE_URL") or CLOUD_API_URL).rstrip("/"),
            upstream_timeout_seconds=_env_int("UPSTREAM_TIMEOUT_SECONDS", 30),
            worker_threads=_env_int("WORKER_THREADS", 8),
            stream_queue_size=_env_int("STREAM_QUEUE_SIZE", 256),
            jwt_secret=os.environ.get("JWT_SECRET") or None,
            jwt_expires_hours=_env_int("JWT_EXPIRES_HOURS", 24),
            admin_users=_env_list("PAWSQL_ADMIN_USERS"),
            readonly_users=_env_list("PAWSQL_READONLY_USERS"),
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return the process-wide settings (read once from the environment)."""
    return Settings.from_env()
