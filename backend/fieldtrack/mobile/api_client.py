from __future__ import annotations

from typing import Any, Dict, List, Optional

import httpx

from fieldtrack.config import settings
from fieldtrack.utils.logger import logger


class RemoteApiError(Exception):
    """Remote request failed. ``status_code`` is None for network errors."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code

    @property
    def transient(self) -> bool:
        if self.status_code is None:
            return True
        return self.status_code >= 500 or self.status_code in (408, 429)


def _error_detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(body, dict):
        return str(body.get("error") or body.get("message") or body.get("detail") or body)
    return str(body)


class RemoteApiClient:
    """Thin JSON client for the field-service REST API."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        token: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = (base_url or settings.API_BASE_URL).rstrip("/")
        self.token = token
        self.timeout = timeout or settings.API_TIMEOUT_SECONDS
        self.transport = transport

    def _headers(self, idempotency_key: Optional[str]) -> Dict[str, str]:
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key
        return headers

    async def request(
        self,
        method: str,
        path: str,
        json: Any = None,
        idempotency_key: Optional[str] = None,
    ) -> Any:
        method = method.upper()
        try:
            async with httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                transport=self.transport,
            ) as client:
                response = await client.request(
                    method,
                    path,
                    json=json,
                    headers=self._headers(idempotency_key),
                )
        except httpx.HTTPError as exc:
            logger.warning("[api] %s %s network error: %s", method, path, exc)
            raise RemoteApiError(f"{method} {path} failed: {exc}") from exc

        if response.status_code >= 400:
            detail = _error_detail(response)
            raise RemoteApiError(
                f"{method} {path} returned {response.status_code}: {detail}",
                status_code=response.status_code,
            )

        if not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            return response.text

    async def get_collection(self, path: str) -> List[Dict[str, Any]]:
        data = await self.request("GET", path)
        if data is None:
            return []
        if isinstance(data, dict) and isinstance(data.get("items"), list):
            data = data["items"]
        if not isinstance(data, list):
            raise RemoteApiError(f"GET {path} did not return a list")
        return data
