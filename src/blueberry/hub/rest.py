"""Thin REST helper for hub endpoints the WebSocket API does not cover.

Requests authenticate with the supervisor token in supervised mode and with
the persisted long-lived token otherwise.  Failures never raise: callers get
``RestResponse(ok=False, ...)`` and decide how to degrade.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

import httpx

from blueberry.config import HubConfig
from blueberry.storage import JsonStore

logger = logging.getLogger(__name__)

ACCESS_TOKEN_PATH = "global-connection/access-token"


@dataclass(frozen=True)
class RestResponse:
    ok: bool
    status: int | None = None
    json: Any = None


class HubRestClient:
    """``get``/``post``/``put``/``delete`` against ``<rest_url><endpoint>``."""

    def __init__(
        self,
        config: HubConfig,
        store: JsonStore,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._config = config
        self._store = store
        self._client = http_client
        self._owns_client = http_client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self._config.rest_url,
                headers={"Content-Type": "application/json"},
                verify=self._config.verify_ssl,
                timeout=self._config.request_timeout,
            )
        return self._client

    async def _token(self) -> str | None:
        if self._config.supervisor_token:
            return self._config.supervisor_token
        return await self._store.get(ACCESS_TOKEN_PATH)

    async def request(
        self,
        method: str,
        endpoint: str,
        *,
        params: dict[str, Any] | None = None,
        body: Any = None,
    ) -> RestResponse:
        token = await self._token()
        if not token:
            logger.warning("REST %s %s skipped: no access token available", method, endpoint)
            return RestResponse(ok=False)

        client = self._get_client()
        try:
            resp = await client.request(
                method,
                endpoint,
                params=params,
                json=body,
                headers={"Authorization": f"Bearer {token}"},
            )
        except httpx.HTTPError as exc:
            logger.warning("REST %s %s failed: %s", method, endpoint, exc)
            return RestResponse(ok=False)

        try:
            payload = resp.json() if resp.content else None
        except ValueError:
            payload = resp.text

        if resp.is_success:
            return RestResponse(ok=True, status=resp.status_code, json=payload)
        logger.warning("REST %s %s returned HTTP %d", method, endpoint, resp.status_code)
        return RestResponse(ok=False, status=resp.status_code, json=payload)

    async def get(self, endpoint: str, params: dict[str, Any] | None = None) -> RestResponse:
        return await self.request("GET", endpoint, params=params)

    async def post(self, endpoint: str, body: Any = None) -> RestResponse:
        return await self.request("POST", endpoint, body=body)

    async def put(self, endpoint: str, body: Any = None) -> RestResponse:
        return await self.request("PUT", endpoint, body=body)

    async def delete(self, endpoint: str) -> RestResponse:
        return await self.request("DELETE", endpoint)

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None
