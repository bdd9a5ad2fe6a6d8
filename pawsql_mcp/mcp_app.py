import asyncio
from typing import Any, Callable, Dict, Optional

from mcp.server.fastmcp import Context, FastMCP

from pawsql_mcp.broker import Broker
from pawsql_mcp.request_context import capture, correlated

# Set by the HTTP wrapper after it authenticates the request. Any client-sent
# copy is stripped first.
SESSION_HEADER = "x-pawsql-session-id"


def _session_id(ctx: Context) -> Optional[str]:
    request = getattr(ctx.request_context, "request", None)
    if request is None:
        return None
    return request.headers.get(SESSION_HEADER)


async def _run_as_caller(ctx: Context, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
    # Tools run inside the session manager's task group, not the request task,
    # so the user is recovered from the forwarded session id.
    with correlated(_session_id(ctx)):
        caller = capture()
    return await asyncio.to_thread(caller.wrap(fn), *args, **kwargs)


def create_mcp(broker: Broker) -> FastMCP:
    # NOTE: MCP clients such as ChatGPT connectors require *stateless* HTTP mode.
    mcp = FastMCP("PawSQL MCP Server", stateless_http=True, host="0.0.0.0")
    service = broker.service

    @mcp.tool(
        name="list_workspaces",
        description="List current workspaces and return their basic information in a markdown table.",
        annotations={"readOnlyHint": True},
    )
    async def list_workspaces(ctx: Context, page_number: int = 1, page_size: int = 10) -> Dict[str, Any]:
        return await _run_as_caller(ctx, service.list_workspaces, page_number, page_size)

    @mcp.tool(
        name="get_workspace_info",
        description=(
            "Get workspace information by name or ID, including ID, database type, etc. "
            "Fails with not_found if the workspace does not exist."
        ),
        annotations={"readOnlyHint": True},
    )
    async def get_workspace_info(
        ctx: Context, workspace_name: Optional[str] = None, workspace_id: Optional[str] = None
    ) -> Dict[str, Any]:
        return await _run_as_caller(ctx, service.get_workspace_info, workspace_name, workspace_id)

    @mcp.tool(
        name="optimize_sql",
        description=(
            "Optimize SQL and return the optimization results in markdown format. "
            "db_type is one of mysql, postgres, opengauss, oracle, kingbase, gaussdbx, dws. "
            "Pass db_info={dbType, ddlText} with use_workspace=true only when the user supplied DDL. "
            "validate should stay false unless the user explicitly asks for validation."
        ),
    )
    async def optimize_sql(
        ctx: Context,
        sql: str,
        db_type: Optional[str] = None,
        db_info: Optional[Dict[str, Any]] = None,
        use_workspace: bool = False,
        workspace_id: Optional[str] = None,
        validate: bool = False,
    ) -> Dict[str, Any]:
        return await _run_as_caller(
            ctx,
            service.optimize_sql,
            sql,
            db_type,
            db_info=db_info,
            use_workspace=use_workspace,
            workspace_id=workspace_id,
            validate=validate,
        )

    return mcp
