"""Credentials used for the WebSocket auth handshake.

Two flavours exist:

* :class:`LongLivedTokenAuth`: a hub-issued token with a multi-year lifetime,
  used for the shared background connection. It never expires locally.
* :class:`OAuthAuth`: a user session obtained through the hub's OAuth flow.
  Its access token is short-lived and refreshed via ``POST /auth/token``.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Protocol

import httpx

from blueberry.config import websocket_url
from blueberry.core.logging import token_prefix
from blueberry.hub.errors import HubError, InvalidAuthError

logger = logging.getLogger(__name__)

# Refresh a little early so the token cannot expire mid-handshake.
_EXPIRY_MARGIN_SECONDS = 10.0


class Auth(Protocol):
    """What the socket connector needs from a credential object."""

    hub_url: str
    access_token: str

    @property
    def expired(self) -> bool: ...

    @property
    def ws_url(self) -> str: ...

    async def refresh_access_token(self) -> None: ...


@dataclass
class LongLivedTokenAuth:
    """Static bearer token; ``expired`` is always ``False``."""

    hub_url: str
    access_token: str

    @property
    def expired(self) -> bool:
        return False

    @property
    def ws_url(self) -> str:
        return websocket_url(self.hub_url)

    async def refresh_access_token(self) -> None:
        raise InvalidAuthError("Long-lived access tokens cannot be refreshed")


@dataclass
class OAuthAuth:
    """OAuth session credentials that can refresh themselves.

    Attributes
    ----------
    expires:
        Absolute expiry as a UNIX timestamp (seconds).
    """

    hub_url: str
    client_id: str
    access_token: str
    refresh_token: str
    expires: float = 0.0
    http_client: httpx.AsyncClient | None = None

    @property
    def expired(self) -> bool:
        return time.time() >= self.expires - _EXPIRY_MARGIN_SECONDS

    @property
    def ws_url(self) -> str:
        return websocket_url(self.hub_url)

    async def refresh_access_token(self) -> None:
        """Exchange the refresh token for a new access token.

        Raises
        ------
        InvalidAuthError
            If the hub rejects the refresh token (HTTP 400/403).
        HubError
            For any other failure to reach the token endpoint.
        """
        url = self.hub_url.rstrip("/") + "/auth/token"
        form = {
            "grant_type": "refresh_token",
            "client_id": self.client_id,
            "refresh_token": self.refresh_token,
        }
        client = self.http_client or httpx.AsyncClient()
        try:
            resp = await client.post(url, data=form)
        except httpx.HTTPError as exc:
            raise HubError(f"Token refresh failed: {exc}") from exc
        finally:
            if self.http_client is None:
                await client.aclose()

        if resp.status_code in (400, 403):
            raise InvalidAuthError("Refresh token was rejected by the hub")
        if resp.status_code >= 300:
            raise HubError(f"Token refresh failed with HTTP {resp.status_code}")

        payload = resp.json()
        self.access_token = payload["access_token"]
        self.expires = time.time() + float(payload.get("expires_in", 1800))
        logger.debug("Refreshed access token (prefix=%s)", token_prefix(self.access_token))
