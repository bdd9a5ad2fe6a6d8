from __future__ import annotations

import logging
import threading
from typing import Any, Callable, Dict, List, Optional

from pawsql_mcp.errors import InvalidRequest, MissingField, NotFound, SessionExpired
from pawsql_mcp.pawsql import PawSQLClient
from pawsql_mcp.permissions import PermissionService
from pawsql_mcp.request_context import require_user
from pawsql_mcp.sessions import Session, SessionStore

logger = logging.getLogger(__name__)

# dbType accepted by createAnalysis -> display name.
DB_TYPES: Dict[str, str] = {
    "mysql": "MySQL",
    "postgres": "PostgreSQL",
    "opengauss": "OpenGauss / MogDB",
    "oracle": "Oracle",
    "kingbase": "Kingbase",
    "gaussdbx": "GaussDB Distributed",
    "dws": "GaussDB for DWS",
}

ClientFactory = Callable[[Session], PawSQLClient]


def _supported_types() -> str:
    return ", ".join(f"{name}({key})" for key, name in DB_TYPES.items())


# ----------------------
# Markdown rendering
# ----------------------


def workspace_table(records: List[Dict[str, Any]]) -> str:
    lines = [
        "",
        "## Workspace List",
        "| Workspace Name | Workspace ID | Database Type | Can Validate Optimization | Status |",
        "|---------------|--------------|--------------|------------------------|--------|",
    ]
    for ws in records:
        lines.append(
            "| {} | {} | {} | {} | {} |".format(
                ws.get("workspaceName"),
                ws.get("workspaceId"),
                ws.get("dbType") or "-",
                "Yes" if ws.get("dbHost") is not None else "No",
                ws.get("status") or "-",
            )
        )
    return "\n".join(lines) + "\n"


def report_link(url: str) -> str:
    return (
        "# SQL Optimization Analysis Report\n\n"
        "## 📊 Analysis Report\n"
        f"View detailed analysis report: [Detailed Analysis Report]({url})\n"
    )


def suggestions(frontend_url: str, workspace_id: Optional[str]) -> str:
    if workspace_id is None:
        return (
            "\n## Methods to Improve SQL Optimization Analysis Accuracy\n"
            "To get more accurate SQL optimization suggestions, you can:\n\n"
            "### Method 1: Provide Table Structure Definitions\n"
            "Provide CREATE TABLE statements for relevant tables, and we will provide more accurate "
            "optimization suggestions based on the table structure.\n\n"
            "### Method 2: Use PawSQL Professional Platform\n"
            f"Visit: {frontend_url}/app/workspaces\n"
            "On the professional platform, you can:\n"
            "• Create a validation workspace using database connection (recommended)\n"
            "  - Support optimization effect validation\n"
            "  - Provide visual execution plans\n"
            "  - Display detailed performance metrics\n"
            "• Create offline structure workspace by inputting DDL\n"
        )
    return (
        "\n## Further Improve Optimization Results\n"
        "You are already using a workspace for SQL optimization. To get more precise analysis results:\n\n"
        "### Upgrade to Validation Workspace\n"
        f"Visit: {frontend_url}/app/workspaces\n"
        "By configuring database connection information, you will get:\n"
        "• Precise optimization suggestions based on real data distribution\n"
        "• Complete index usage and execution plan analysis\n"
    )


# ----------------------
# Operations
# ----------------------


class OptimizeService:
    """Workspace and SQL-optimization operations for the bound user.

    The user is never passed in. Each call reads it from the request context,
    so a call with nothing bound fails with ``Unauthenticated``.
    """

    def __init__(
        self,
        store: SessionStore,
        permissions: PermissionService,
        *,
        client_factory: ClientFactory = PawSQLClient.for_session,
    ):
        self._store = store
        self._permissions = permissions
        self._client_factory = client_factory

    def _active_session(self, resource: str, permission: str) -> Session:
        user = require_user()
        session = self._store.validate_by_id(user.session_id)
        if session is None:
            raise SessionExpired(f"Session for {user.email} has expired, please authenticate again")
        self._permissions.check_permission(session, resource, permission)
        return session

    def list_workspaces(self, page_number: int = 1, page_size: int = 10) -> Dict[str, Any]:
        session = self._active_session("workspace", "read")
        data = self._client_factory(session).list_workspaces(page_number, page_size)
        records = data.get("records") or []
        if not records:
            return {"message": "No workspaces available", "total": 0, "markdown": None}
        return {
            "message": "Successfully retrieved workspace list",
            "total": data.get("total", len(records)),
            "markdown": workspace_table(records),
        }

    def get_workspace_info(
        self, workspace_name: Optional[str] = None, workspace_id: Optional[str] = None
    ) -> Dict[str, Any]:
        if not workspace_name and not workspace_id:
            raise MissingField("workspace_name", "Provide a workspace name or a workspace id")
        session = self._active_session("workspace", "read")

        data = self._client_factory(session).list_workspaces(1, 100)
        for ws in data.get("records") or []:
            name = ws.get("workspaceName")
            ws_id = str(ws.get("workspaceId"))
            if (workspace_name and workspace_name == name) or (workspace_id and workspace_id == ws_id):
                return {
                    "workspaceId": ws.get("workspaceId"),
                    "workspaceName": name,
                    "dbType": ws.get("dbType"),
                    "canValidate": ws.get("dbHost") is not None,
                    "status": ws.get("status"),
                }

        if workspace_name:
            raise NotFound(f"Workspace with name '{workspace_name}' not found")
        raise NotFound(f"Workspace with ID '{workspace_id}' not found")

    def optimize_sql(
        self,
        sql: Optional[str],
        db_type: Optional[str],
        db_info: Optional[Dict[str, Any]] = None,
        use_workspace: bool = False,
        workspace_id: Optional[str] = None,
        validate: bool = False,
    ) -> Dict[str, Any]:
        if not sql or not sql.strip():
            raise MissingField("sql", "SQL statement cannot be empty. Please provide the SQL query to be optimized")
        db_type = (db_type or "").strip().lower()
        if db_type not in DB_TYPES:
            raise InvalidRequest(f"Please provide a valid database type. Currently supported: {_supported_types()}")

        session = self._active_session("sql", "optimize")
        client = self._client_factory(session)
        logger.info(
            "Starting SQL optimization in %s, dbType=%s useWorkspace=%s",
            threading.current_thread().name,
            db_type,
            use_workspace,
        )

        if not workspace_id and use_workspace and db_info:
            ddl = db_info.get("ddlText") or db_info.get("ddl_text")
            if not ddl:
                raise MissingField("ddlText", "dbInfo.ddlText is required to create a workspace")
            workspace_id = client.create_workspace(db_info.get("dbType") or db_type, ddl)
            logger.info("Workspace created: %s", workspace_id)

        analysis_id = client.create_analysis(sql, db_type, workspace_id=workspace_id or None, validate=validate)
        logger.info("Analysis task created, ID: %s", analysis_id)

        summary = client.get_analysis_summary(analysis_id)
        statements = summary.get("summaryStatementInfo") or []
        if not statements:
            return {"analysisId": analysis_id, "summary": summary}

        stmt_id = statements[0].get("analysisStmtId")
        details = client.get_statement_details(stmt_id)
        frontend = (session.frontend_url or session.base_url).rstrip("/")
        return {
            "analysisId": analysis_id,
            "reportLink": report_link(f"{frontend}/statement/{stmt_id}"),
            "detail": details.get("detailMarkdown", ""),
            "suggestions": suggestions(frontend, workspace_id or None),
        }
