from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import httpx

from pawsql_mcp.errors import InvalidCredentials, UpstreamUnavailable
from pawsql_mcp.sessions import Session, UserKey

logger = logging.getLogger(__name__)

API_PATH = "/api/v1"


class PawSQLClient:
    """Blocking client for the PawSQL HTTP API.

    Every endpoint is a JSON POST answering ``{code, message, data}``. Calls that
    act for a user carry that user's key as ``userKey`` in the body.
    """

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        *,
        timeout: float = 30.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self._transport = transport

    @classmethod
    def for_session(cls, session: Session, **kwargs: Any) -> "PawSQLClient":
        return cls(session.base_url, session.api_key, **kwargs)

    # ---------------------------
    # Low-level request helper
    # ---------------------------

    def _post(self, endpoint: str, body: Dict[str, Any]) -> Dict[str, Any]:
        url = f"{self.base_url}{API_PATH}{endpoint}"
        try:
            with httpx.Client(timeout=self.timeout, transport=self._transport) as client:
                resp = client.post(url, json=body, headers={"Accept": "application/json"})
        except httpx.TimeoutException as e:
            logger.error("PawSQL API timeout: %s", endpoint)
            raise UpstreamUnavailable(f"PawSQL API call timed out: {endpoint}") from e
        except httpx.HTTPError as e:
            logger.error("PawSQL API transport error on %s: %s", endpoint, e)
            raise UpstreamUnavailable(f"PawSQL API call failed: {endpoint}: {e}") from e

        if resp.status_code in (401, 403):
            raise InvalidCredentials(f"PawSQL rejected the request to {endpoint} ({resp.status_code})")

        # Helpful error payloads for debugging
        if resp.status_code >= 400:
            try:
                err = resp.json()
            except ValueError:
                err = resp.text
            raise UpstreamUnavailable(f"PawSQL API error {resp.status_code} for {endpoint}: {err}")

        try:
            payload = resp.json()
        except ValueError as e:
            raise UpstreamUnavailable(f"PawSQL API returned a non-JSON body for {endpoint}") from e
        if not isinstance(payload, dict):
            raise UpstreamUnavailable(f"PawSQL API returned an unexpected body for {endpoint}")

        logger.debug("PawSQL API call ok: %s code=%s", endpoint, payload.get("code"))
        return payload

    def _authed(self, **fields: Any) -> Dict[str, Any]:
        if not self.api_key:
            raise InvalidCredentials("No PawSQL API key available for this call")
        body: Dict[str, Any] = {"userKey": self.api_key}
        body.update({k: v for k, v in fields.items() if v is not None})
        return body

    @staticmethod
    def _data(payload: Dict[str, Any], endpoint: str) -> Any:
        code = payload.get("code")
        if code not in (None, 200):
            raise UpstreamUnavailable(f"PawSQL {endpoint} failed ({code}): {payload.get('message')}")
        return payload.get("data")

    # ---------------------------
    # Identity
    # ---------------------------

    def get_user_key(self, email: str, password: str) -> UserKey:
        payload = self._post("/getUserKey", {"email": email, "password": password})
        data = payload.get("data") if isinstance(payload.get("data"), dict) else {}
        api_key = data.get("apikey") or data.get("apiKey")
        if payload.get("code") not in (None, 200) or not api_key:
            raise InvalidCredentials(payload.get("message") or "Invalid email or password")
        return UserKey(api_key=api_key, frontend_url=data.get("frontendUrl"))

    def validate_user_key(self) -> bool:
        payload = self._post("/validateUserKey", self._authed())
        return bool(payload.get("data"))

    # ---------------------------
    # Workspaces / analyses
    # ---------------------------

    def list_workspaces(self, page_number: int = 1, page_size: int = 10) -> Dict[str, Any]:
        logger.info("Querying workspace list: pageNumber=%s pageSize=%s", page_number, page_size)
        payload = self._post("/listWorkspaces", self._authed(pageNumber=page_number, pageSize=page_size))
        return self._data(payload, "listWorkspaces") or {}

    def create_workspace(self, db_type: str, ddl_text: str) -> str:
        logger.info("Creating offline workspace for %s", db_type)
        payload = self._post("/createWorkspace", self._authed(mode="offline", dbType=db_type, ddlText=ddl_text))
        data = self._data(payload, "createWorkspace") or {}
        workspace_id = data.get("workspaceId")
        if not workspace_id:
            raise UpstreamUnavailable("PawSQL createWorkspace returned no workspaceId")
        return str(workspace_id)

    def create_analysis(
        self,
        sql: str,
        db_type: str,
        *,
        workspace_id: Optional[str] = None,
        validate: bool = False,
    ) -> str:
        body = self._authed(workload=sql, queryMode="plain_sql", dbType=db_type)
        if workspace_id:
            body["workspace"] = workspace_id
            body["validateFlag"] = str(validate).lower()
        payload = self._post("/createAnalysis", body)
        data = self._data(payload, "createAnalysis") or {}
        analysis_id = data.get("analysisId")
        if not analysis_id:
            raise UpstreamUnavailable("PawSQL createAnalysis returned no analysisId")
        return str(analysis_id)

    def get_analysis_summary(self, analysis_id: str) -> Dict[str, Any]:
        payload = self._post("/getAnalysisSummary", self._authed(analysisId=analysis_id))
        return self._data(payload, "getAnalysisSummary") or {}

    def get_statement_details(self, analysis_stmt_id: str) -> Dict[str, Any]:
        payload = self._post("/getStatementDetails", self._authed(analysisStmtId=analysis_stmt_id))
        return self._data(payload, "getStatementDetails") or {}
