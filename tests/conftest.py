from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Tuple

import httpx
import pytest

from pawsql_mcp.broker import Broker
from pawsql_mcp.config import Settings
from pawsql_mcp.request_context import clear_current_user, Scope, set_correlation_resolver


class FakeClock:
    def __init__(self, start: datetime = datetime(2024, 1, 1, tzinfo=timezone.utc)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: Any) -> None:
        self.now += timedelta(**kwargs)


class FakePawSQL:
    """In-memory stand-in for the PawSQL HTTP API, served through httpx.MockTransport."""

    FRONTEND = "https://app.pawsql.test"

    def __init__(self) -> None:
        self.users: Dict[str, Tuple[str, str]] = {
            "a@x.com": ("pw", "key-a"),
            "b@x.com": ("pw-b", "key-b"),
        }
        self.workspaces: List[Dict[str, Any]] = [
            {"workspaceId": "ws-1", "workspaceName": "orders", "dbType": "mysql", "dbHost": "db", "status": "ready"},
            {"workspaceId": "ws-2", "workspaceName": "ddl-only", "dbType": "postgres", "status": "ready"},
        ]
        self.calls: List[Tuple[str, Dict[str, Any]]] = []
        self.down = False
        self.statements = True
        self.transport = httpx.MockTransport(self._handle)

    def endpoints(self) -> List[str]:
        return [endpoint for endpoint, _ in self.calls]

    def keys_for(self, endpoint: str) -> List[str]:
        return [body.get("userKey") for ep, body in self.calls if ep == endpoint]

    def _handle(self, request: httpx.Request) -> httpx.Response:
        endpoint = request.url.path.rsplit("/", 1)[-1]
        body = json.loads(request.content or b"{}")
        self.calls.append((endpoint, body))
        if self.down:
            raise httpx.ConnectError("connection refused", request=request)

        if endpoint == "getUserKey":
            user = self.users.get(body.get("email"))
            if user is None or user[0] != body.get("password"):
                return httpx.Response(200, json={"code": 401, "message": "Invalid email or password", "data": None})
            return httpx.Response(
                200, json={"code": 200, "data": {"apikey": user[1], "frontendUrl": self.FRONTEND}}
            )
        if endpoint == "validateUserKey":
            valid = body.get("userKey") in {key for _, key in self.users.values()}
            return httpx.Response(200, json={"code": 200, "data": valid})
        if endpoint == "listWorkspaces":
            return httpx.Response(
                200, json={"code": 200, "data": {"records": self.workspaces, "total": len(self.workspaces)}}
            )
        if endpoint == "createWorkspace":
            return httpx.Response(200, json={"code": 200, "data": {"workspaceId": "ws-new"}})
        if endpoint == "createAnalysis":
            return httpx.Response(200, json={"code": 200, "data": {"analysisId": f"an-{body['userKey']}"}})
        if endpoint == "getAnalysisSummary":
            info = [{"analysisStmtId": "stmt-1"}] if self.statements else []
            return httpx.Response(200, json={"code": 200, "data": {"summaryStatementInfo": info}})
        if endpoint == "getStatementDetails":
            return httpx.Response(200, json={"code": 200, "data": {"detailMarkdown": "## Rewritten SQL"}})
        return httpx.Response(404, json={"code": 404, "message": "unknown endpoint"})


@pytest.fixture(autouse=True)
def clean_context():
    previous = set_correlation_resolver(None)
    clear_current_user(Scope.THREAD)
    yield
    clear_current_user(Scope.THREAD)
    set_correlation_resolver(previous)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def upstream() -> FakePawSQL:
    return FakePawSQL()


@pytest.fixture
def settings() -> Settings:
    return Settings(
        api_base_url="https://api",
        jwt_secret="test-secret",
        worker_threads=2,
        readonly_users=["ro@x.com"],
    )


@pytest.fixture
def broker(settings: Settings, upstream: FakePawSQL, clock: FakeClock):
    b = Broker(settings, transport=upstream.transport, clock=clock)
    yield b
    b.stop()
