"""
Hosted backend client.
Thin async wrapper over the backend's REST table API, RPC endpoints and
serverless functions. Every non-2xx response is raised as RemoteError so the
sync processor can classify it.
"""
import logging
from typing import Any, Dict, List, Optional, Union

import httpx

from ..core.config import settings
from ..core.errors import RemoteError

logger = logging.getLogger(__name__)

Rows = Union[Dict[str, Any], List[Dict[str, Any]]]


def _eq_filters(filters: Optional[Dict[str, Any]]) -> Dict[str, str]:
    params = {}
    for column, value in (filters or {}).items():
        if isinstance(value, bool):
            value = "true" if value else "false"
        elif value is None:
            params[column] = "is.null"
            continue
        params[column] = f"eq.{value}"
    return params


class RemoteClient:
    """HTTP client for the hosted farm database and its functions."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = (base_url or settings.REMOTE_API_URL or "").rstrip("/")
        self.api_key = api_key if api_key is not None else settings.REMOTE_API_KEY
        self.timeout = timeout or settings.REMOTE_TIMEOUT
        self._transport = transport
        self._http: Optional[httpx.AsyncClient] = None

    @property
    def configured(self) -> bool:
        return bool(self.base_url)

    def _client(self) -> httpx.AsyncClient:
        if not self.configured:
            raise RemoteError("Remote backend URL is not configured")
        if self._http is None:
            headers = {"Content-Type": "application/json"}
            if self.api_key:
                headers["apikey"] = self.api_key
                headers["Authorization"] = f"Bearer {self.api_key}"
            self._http = httpx.AsyncClient(
                base_url=self.base_url,
                headers=headers,
                timeout=self.timeout,
                transport=self._transport,
            )
        return self._http

    async def aclose(self) -> None:
        if self._http is not None:
            await self._http.aclose()
            self._http = None

    async def _request(self, method: str, path: str, **kwargs) -> Any:
        try:
            resp = await self._client().request(method, path, **kwargs)
        except httpx.HTTPError as exc:
            raise RemoteError(f"Network error calling {path}: {exc}") from exc

        if resp.status_code >= 400:
            code = None
            message = resp.text or resp.reason_phrase
            try:
                body = resp.json()
                if isinstance(body, dict):
                    code = body.get("code")
                    message = body.get("message") or body.get("error") or message
            except ValueError:
                pass
            raise RemoteError(message, status_code=resp.status_code, code=code)

        if not resp.content:
            return None
        return resp.json()

    # ── Tables ─────────────────────────────────────────────────────────────

    async def insert(self, table: str, rows: Rows, returning: bool = True) -> List[Dict[str, Any]]:
        prefer = "return=representation" if returning else "return=minimal"
        data = await self._request(
            "POST", f"/rest/v1/{table}", json=rows, headers={"Prefer": prefer}
        )
        if data is None:
            return []
        return data if isinstance(data, list) else [data]

    async def select(
        self,
        table: str,
        filters: Optional[Dict[str, Any]] = None,
        columns: str = "*",
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        params = {"select": columns, **_eq_filters(filters)}
        if limit is not None:
            params["limit"] = str(limit)
        return await self._request("GET", f"/rest/v1/{table}", params=params) or []

    async def select_one(
        self, table: str, filters: Dict[str, Any], columns: str = "*"
    ) -> Optional[Dict[str, Any]]:
        rows = await self.select(table, filters, columns=columns, limit=1)
        return rows[0] if rows else None

    async def update(
        self, table: str, values: Dict[str, Any], filters: Dict[str, Any]
    ) -> List[Dict[str, Any]]:
        return await self._request(
            "PATCH",
            f"/rest/v1/{table}",
            params=_eq_filters(filters),
            json=values,
            headers={"Prefer": "return=representation"},
        ) or []

    # ── RPC and functions ──────────────────────────────────────────────────

    async def rpc(self, function: str, params: Dict[str, Any]) -> Any:
        return await self._request("POST", f"/rest/v1/rpc/{function}", json=params)

    async def invoke(self, function_name: str, body: Dict[str, Any]) -> Any:
        """Call a serverless function and return its JSON body."""
        return await self._request("POST", f"/functions/v1/{function_name}", json=body)

    async def ping(self) -> bool:
        """Return True when the backend answers at all."""
        if not self.configured:
            return False
        try:
            resp = await self._client().get("/rest/v1/")
        except httpx.HTTPError as exc:
            logger.debug("Backend ping failed: %s", exc)
            return False
        return resp.status_code < 500


remote_client = RemoteClient()
