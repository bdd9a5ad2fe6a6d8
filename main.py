from __future__ import annotations

import os
import json
import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional
from urllib.parse import parse_qsl

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, StreamingResponse
from starlette.concurrency import run_in_threadpool
from starlette.datastructures import Headers, QueryParams
from starlette.responses import Response

from dotenv import load_dotenv

from pawsql_mcp.auth import extract_credentials
from pawsql_mcp.broker import Broker
from pawsql_mcp.errors import BrokerError, InvalidRequest, UpstreamUnavailable
from pawsql_mcp.mcp_app import SESSION_HEADER, create_mcp
from pawsql_mcp.request_context import UserContextFilter, bound, with_user
from pawsql_mcp.sessions import Session

load_dotenv()

LOG_FORMAT = "%(asctime)s %(levelname)s [%(user)s] %(name)s: %(message)s"


def configure_logging() -> None:
    logging.basicConfig(level=os.environ.get("LOG_LEVEL", "INFO"), format=LOG_FORMAT)
    # Filter on handlers so records from every logger are stamped.
    for handler in logging.getLogger().handlers:
        if not any(isinstance(f, UserContextFilter) for f in handler.filters):
            handler.addFilter(UserContextFilter())


configure_logging()
logger = logging.getLogger("pawsql_mcp")

PUBLIC_MCP_METHODS = {"initialize", "tools/list", "resources/list", "prompts/list", "logging/setLevel", "ping"}


def _client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def _truthy(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value or "").strip().lower() in {"1", "true", "yes"}


async def _read_params(request: Request) -> Dict[str, Any]:
    """Query string merged with a urlencoded or JSON body (body wins)."""
    params: Dict[str, Any] = dict(request.query_params)
    body = await request.body()
    if not body:
        return params
    content_type = request.headers.get("content-type", "")
    if content_type.startswith("application/json"):
        try:
            payload = json.loads(body)
        except ValueError as e:
            raise InvalidRequest("Request body is not valid JSON") from e
        if isinstance(payload, dict):
            params.update(payload)
    else:
        params.update(parse_qsl(body.decode("utf-8"), keep_blank_values=True))
    return params


def _sse_error(exc: BrokerError) -> Response:
    # SSE clients expect text/event-stream even on failure.
    status = 500 if isinstance(exc, UpstreamUnavailable) else 401
    return Response(
        f"event: error\ndata: {json.dumps(exc.to_body())}\n\n",
        status_code=status,
        media_type="text/event-stream",
    )


# ---------------------------------------------------------------------------
# MCP mount + session enforcement (HTTP-level)
# ---------------------------------------------------------------------------


class MCPSessionAuthWrapper:
    """ASGI wrapper that requires a broker session for MCP tool calls."""

    def __init__(self, asgi_app: Any, broker: Broker):
        self._app = asgi_app
        self._broker = broker

    @staticmethod
    def _extract_jsonrpc_methods(body: bytes) -> list[str]:
        if not body:
            return []
        try:
            payload = json.loads(body.decode("utf-8"))
        except ValueError:
            return []

        msgs = payload if isinstance(payload, list) else [payload]
        methods: list[str] = []
        for msg in msgs:
            if isinstance(msg, dict):
                m = msg.get("method")
                if m:
                    methods.append(str(m))
        return methods

    class _BodyBuffer:
        def __init__(self, receive):
            self._receive = receive
            self._body: Optional[bytes] = None
            self._queue: Optional[list] = None

        async def body(self) -> bytes:
            if self._body is not None:
                return self._body
            chunks: list[bytes] = []
            more = True
            while more:
                message = await self._receive()
                if message.get("type") != "http.request":
                    continue
                chunks.append(message.get("body", b""))
                more = bool(message.get("more_body", False))
            self._body = b"".join(chunks)
            self._queue = [{"type": "http.request", "body": self._body, "more_body": False}]
            return self._body

        async def replay(self):
            if self._queue is None:
                return await self._receive()
            if self._queue:
                return self._queue.pop(0)
            return {"type": "http.request", "body": b"", "more_body": False}

    @staticmethod
    def _with_session_header(scope: Dict[str, Any], session: Optional[Session]) -> Dict[str, Any]:
        marker = SESSION_HEADER.encode("latin-1")
        headers = [(k, v) for k, v in (scope.get("headers") or []) if k.lower() != marker]
        if session is not None:
            headers.append((marker, session.session_id.encode("latin-1")))
        return {**scope, "headers": headers}

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            await self._app(scope, receive, send)
            return

        scope = self._with_session_header(scope, None)
        path = (scope.get("path") or "").rstrip("/")
        if not (path == "/mcp" or path.startswith("/mcp/")):
            await self._app(scope, receive, send)
            return

        body_buf = self._BodyBuffer(receive)
        credentials = extract_credentials(Headers(scope=scope), QueryParams(scope.get("query_string", b"")))
        client = scope.get("client")
        client_ip = client[0] if client else "unknown"

        if credentials.empty:
            body = await body_buf.body()

            if not body and scope.get("method") == "POST":
                resp = JSONResponse({"ok": True, "message": "MCP endpoint ready. Send JSON-RPC methods via POST."})
                await resp(scope, receive, send)
                return

            methods = self._extract_jsonrpc_methods(body)
            if methods and all(m in PUBLIC_MCP_METHODS or m.startswith("notifications/") for m in methods):
                await self._app(scope, body_buf.replay, send)
                return

        try:
            session = await run_in_threadpool(
                self._broker.authenticator.resolve, credentials, allow_password=True, client_ip=client_ip
            )
        except BrokerError as e:
            logger.info("MCP auth rejected: path=%s reason=%s", path, e)
            resp = JSONResponse(e.to_body(), status_code=401 if e.status_code < 500 else e.status_code)
            await resp(scope, receive, send)
            return

        with bound(session):
            await self._app(self._with_session_header(scope, session), body_buf.replay, send)


# ---------------------------------------------------------------------------
# App factory
# ---------------------------------------------------------------------------


def create_app(broker: Optional[Broker] = None) -> FastAPI:
    broker = broker or Broker()
    mcp = create_mcp(broker)

    @asynccontextmanager
    async def lifespan(app_: FastAPI):
        # FastMCP's streamable HTTP transport needs its task group running.
        async with mcp.session_manager.run():
            broker.start()
            try:
                yield
            finally:
                broker.stop()

    # Avoid auto-redirects (307): some clients drop Authorization when following them.
    app = FastAPI(title="PawSQL MCP Server", redirect_slashes=False, lifespan=lifespan)
    app.state.broker = broker

    from uvicorn.middleware.proxy_headers import ProxyHeadersMiddleware
    app.add_middleware(ProxyHeadersMiddleware, trusted_hosts="*")

    if os.environ.get("ENABLE_TRUSTED_HOST", "0").lower() in {"1", "true", "yes"}:
        from starlette.middleware.trustedhost import TrustedHostMiddleware
        allowed = os.environ.get("ALLOWED_HOSTS", "").strip()
        allowed_hosts = [h.strip() for h in allowed.split(",") if h.strip()] or ["localhost", "127.0.0.1"]
        app.add_middleware(TrustedHostMiddleware, allowed_hosts=allowed_hosts)

    @app.exception_handler(BrokerError)
    async def broker_error_handler(request: Request, exc: BrokerError):
        audit_event = getattr(exc, "audit_event", None)
        if audit_event:
            broker.audit.log_security_event(audit_event, exc.message, _client_ip(request))
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc)
        return JSONResponse(exc.to_body(), status_code=exc.status_code)

    def _session(request: Request) -> Session:
        credentials = extract_credentials(request.headers, request.query_params)
        return broker.authenticator.resolve(credentials, allow_password=False, client_ip=_client_ip(request))

    @app.get("/")
    def root():
        return {"ok": True, "service": "PawSQL MCP Server", "auth": "/auth", "stream": "/stream", "mcp": "/mcp"}

    @app.get("/health")
    def health():
        return {"ok": True, "sessions": len(broker.store), "streams": len(broker.streams)}

    @app.post("/auth")
    async def auth(request: Request):
        params = await _read_params(request)
        session = await run_in_threadpool(
            broker.authenticator.authenticate,
            params.get("email"),
            params.get("password"),
            params.get("edition"),
            params.get("api_base_url") or params.get("apiBaseUrl"),
            client_ip=_client_ip(request),
        )
        body = session.public_view()
        if broker.tokens is not None:
            body["token"] = broker.tokens.issue(session)
        return body

    @app.post("/logout")
    def logout(request: Request):
        session = _session(request)
        broker.streams.close(session.session_id, "logout")
        return {"ok": broker.authenticator.logout(session.session_id, client_ip=_client_ip(request))}

    @app.get("/stream")
    async def stream(request: Request):
        credentials = extract_credentials(request.headers, request.query_params)
        if credentials.empty:
            broker.audit.log_security_event("SSE_REJECTED", "Stream request without credentials", _client_ip(request))
        try:
            conn = await run_in_threadpool(broker.open_stream, credentials, client_ip=_client_ip(request))
        except BrokerError as e:
            logger.info("Stream rejected from %s: %s", _client_ip(request), e)
            return _sse_error(e)

        return StreamingResponse(
            conn.transport.events(request),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
        )

    @app.get("/workspaces")
    def workspaces(request: Request, page_number: int = 1, page_size: int = 10):
        return with_user(_session(request), broker.service.list_workspaces, page_number, page_size)

    @app.post("/optimize")
    async def optimize(request: Request):
        session = await run_in_threadpool(_session, request)
        params = await _read_params(request)
        kwargs = {
            "db_info": params.get("db_info") or params.get("dbInfo"),
            "use_workspace": _truthy(params.get("use_workspace", params.get("useWorkspace"))),
            "workspace_id": params.get("workspace_id") or params.get("workspaceId"),
            "validate": _truthy(params.get("validate", params.get("validateFlag"))),
        }
        sql = params.get("sql")
        db_type = params.get("db_type") or params.get("dbType")

        if _truthy(params.get("async")):
            with bound(session):
                broker.submit(broker.push_result, "optimize", broker.service.optimize_sql, sql, db_type, **kwargs)
            return JSONResponse(
                {
                    "accepted": True,
                    "sessionId": session.session_id,
                    "streamOpen": broker.streams.is_open(session.session_id),
                },
                status_code=202,
            )

        return await run_in_threadpool(with_user, session, broker.service.optimize_sql, sql, db_type, **kwargs)

    # FastMCP's HTTP transport already exposes /mcp.
    # Mount at root so /mcp stays /mcp (not /mcp/mcp).
    app.mount("/", MCPSessionAuthWrapper(mcp.streamable_http_app(), broker))
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "main:app",
        host=os.environ.get("HOST", "0.0.0.0"),
        port=int(os.environ.get("PORT", "8000")),
        proxy_headers=True,
        forwarded_allow_ips="*",
    )
