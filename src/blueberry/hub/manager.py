"""Ownership of the shared hub connection.

The manager opens connections for arbitrary credentials (:meth:`connect`) and
keeps exactly one long-lived *global* connection used by the registry and the
irrigation scheduler (:meth:`global_connect`).  Lifecycle changes of the
global connection are published on the event bus as :class:`ConnectionEvent`.
"""

from __future__ import annotations

import enum
import logging
import uuid
from collections.abc import Callable
from typing import Any

import aiohttp
import httpx

from blueberry.config import HubConfig
from blueberry.core.events import EventBus
from blueberry.core.logging import token_prefix
from blueberry.core.scheduler import Scheduler
from blueberry.hub.auth import Auth, LongLivedTokenAuth
from blueberry.hub.backoff import Backoff
from blueberry.hub.connection import Connection
from blueberry.hub.errors import NoCredentialsError
from blueberry.hub.rest import ACCESS_TOKEN_PATH, HubRestClient
from blueberry.hub.socket import SocketConnector, WsConnect
from blueberry.storage import JsonStore

logger = logging.getLogger(__name__)

CLIENT_NAME_PATH = "global-connection/client-name"
TOKEN_LIFESPAN_DAYS = 3650
SUPERVISOR_CLIENT_NAME = "Supervisor"


class ConnectionEvent(enum.StrEnum):
    CONNECTED = "hassconnect#connected"
    DISCONNECTED = "hassconnect#disconnected"
    INITIALLY_CONNECTED = "hassconnect#initially-connected"


class ConnectionManager:
    """Open hub connections and own the shared one.

    Parameters
    ----------
    ws_connect:
        Coroutine function opening a raw WebSocket for a URL.  Defaults to
        ``aiohttp.ClientSession.ws_connect`` on a session owned by the manager.
    http_client:
        Optional ``httpx.AsyncClient`` for the REST helper (tests pass one
        backed by ``httpx.MockTransport``).
    """

    def __init__(
        self,
        config: HubConfig,
        store: JsonStore,
        events: EventBus,
        scheduler: Scheduler,
        *,
        ws_connect: WsConnect | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._config = config
        self._store = store
        self._events = events
        self._scheduler = scheduler
        self._ws_connect = ws_connect
        self._session: aiohttp.ClientSession | None = None
        self._backoff = Backoff(config.backoff_base_seconds, config.backoff_unit_seconds)
        self._connection: Connection | None = None
        self._listener_removers: list[Callable[[], None]] = []
        self._initially_connected = False
        self.rest = HubRestClient(config, store, http_client)

    @property
    def connection(self) -> Connection | None:
        """The shared connection, or ``None`` before the first successful connect."""
        return self._connection

    @property
    def connected(self) -> bool:
        return self._connection is not None and self._connection.connected

    # ------------------------------------------------------------------
    # Connecting
    # ------------------------------------------------------------------

    async def _aiohttp_connect(self, url: str) -> Any:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
        return await self._session.ws_connect(
            url,
            ssl=None if self._config.verify_ssl else False,
            heartbeat=30.0,
            max_msg_size=0,
        )

    async def connect(self, auth: Auth) -> Connection:
        """Open an authenticated connection for *auth*.

        Raises
        ------
        InvalidAuthError
            If the hub answers ``auth_invalid``.
        """
        ws_url = self._config.ws_url if self._config.supervised else auth.ws_url
        ws_connect = self._ws_connect or self._aiohttp_connect

        async def socket_factory() -> Any:
            connector = SocketConnector(
                auth,
                ws_url=ws_url,
                ws_connect=ws_connect,
                scheduler=self._scheduler,
                backoff=self._backoff,
                handshake_timeout=self._config.request_timeout,
            )
            return await connector.connect()

        return await Connection.open(socket_factory, command_timeout=self._config.request_timeout)

    async def _resolve_token(self, reauth_token: str | None) -> str | None:
        if reauth_token:
            return reauth_token
        if self._config.supervisor_token:
            return self._config.supervisor_token
        return await self._store.get(ACCESS_TOKEN_PATH)

    async def global_connect(self, reauth_token: str | None = None) -> Connection | None:
        """Return the shared connection, (re)opening it when needed.

        Returns ``None`` when no credentials are available.

        Raises
        ------
        NoCredentialsError
            If *reauth_token* was given but is empty and nothing else resolves.
        InvalidAuthError
            If the hub rejects the resolved token.
        """
        if reauth_token is None and self.connected:
            return self._connection

        token = await self._resolve_token(reauth_token)
        if not token:
            if reauth_token is not None:
                raise NoCredentialsError("Reauthentication requested without an access token")
            logger.info("No hub credentials available; not connecting")
            return None

        logger.info("Connecting to hub (token prefix=%s)", token_prefix(token))
        connection = await self.connect(LongLivedTokenAuth(self._config.url, token))

        await self._drop_global()
        self._connection = connection
        if reauth_token:
            await self._store.set(ACCESS_TOKEN_PATH, token)

        self._listener_removers = [
            connection.add_event_listener("ready", self._on_ready),
            connection.add_event_listener("disconnected", self._on_disconnected),
        ]
        self._events.emit(ConnectionEvent.CONNECTED, connection)
        if not self._initially_connected:
            self._initially_connected = True
            self._events.emit(ConnectionEvent.INITIALLY_CONNECTED, connection)
        return connection

    def _on_ready(self) -> None:
        self._events.emit(ConnectionEvent.CONNECTED, self._connection)

    def _on_disconnected(self) -> None:
        self._events.emit(ConnectionEvent.DISCONNECTED, self._connection)

    async def _drop_global(self) -> None:
        for remove in self._listener_removers:
            remove()
        self._listener_removers = []
        previous, self._connection = self._connection, None
        if previous is not None:
            await previous.close()

    # ------------------------------------------------------------------
    # Account linking
    # ------------------------------------------------------------------

    async def link_account(self, user_auth: Auth) -> dict[str, Any]:
        """Mint a long-lived token with the user's session and adopt it.

        The short-lived user connection is always closed afterwards.
        """
        client_name = f"{self._config.client_name} ({uuid.uuid4()})"
        user_connection = await self.connect(user_auth)
        try:
            token = await user_connection.send_message(
                {
                    "type": "auth/long_lived_access_token",
                    "client_name": client_name,
                    "lifespan": TOKEN_LIFESPAN_DAYS,
                }
            )
        finally:
            await user_connection.close()

        await self.global_connect(reauth_token=token)
        await self._store.set(CLIENT_NAME_PATH, client_name)
        logger.info("Linked hub account as %r", client_name)
        return await self.status()

    async def unlink(self) -> None:
        """Close the shared connection and forget the persisted credentials."""
        await self._drop_global()
        await self._store.delete(ACCESS_TOKEN_PATH)
        await self._store.delete(CLIENT_NAME_PATH)
        logger.info("Unlinked hub account")

    async def status(self) -> dict[str, Any]:
        if self._config.supervised:
            client_name = SUPERVISOR_CLIENT_NAME
        else:
            client_name = await self._store.get(CLIENT_NAME_PATH)
        return {"connected": self.connected, "client_name": client_name}

    async def close(self) -> None:
        await self._drop_global()
        await self.rest.aclose()
        if self._session is not None:
            await self._session.close()
            self._session = None
