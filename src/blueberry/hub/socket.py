"""Open an authenticated WebSocket to the hub, retrying transient failures.

HA WebSocket auth flow:

1. Server sends: ``{"type": "auth_required", "ha_version": "..."}``
2. Client sends: ``{"type": "auth", "access_token": "..."}``
3. Server replies: ``{"type": "auth_ok"}`` or ``{"type": "auth_invalid"}``

The auth message is sent as soon as the socket opens.  Close/error before
``auth_ok`` schedules another attempt through the injected scheduler after
the quadratic backoff delay; ``auth_invalid`` rejects immediately.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable
from typing import Any, Protocol

import aiohttp

from blueberry.core.logging import token_prefix
from blueberry.hub.auth import Auth
from blueberry.hub.backoff import (
    Action,
    Backoff,
    ReconnectState,
    SocketEvent,
    SocketState,
    Transition,
    transition,
)
from blueberry.hub.errors import HubError, InvalidAuthError

logger = logging.getLogger(__name__)

MSG_TYPE_AUTH_REQUIRED = "auth_required"
MSG_TYPE_AUTH_OK = "auth_ok"
MSG_TYPE_AUTH_INVALID = "auth_invalid"

_CLOSING_TYPES = (aiohttp.WSMsgType.CLOSE, aiohttp.WSMsgType.CLOSING, aiohttp.WSMsgType.CLOSED)


class WebSocketLike(Protocol):
    """The subset of ``aiohttp.ClientWebSocketResponse`` used by the client."""

    closed: bool

    async def send_json(self, data: Any) -> None: ...

    async def receive(self, timeout: float | None = None) -> aiohttp.WSMessage: ...

    async def close(self) -> Any: ...


class TimerScheduler(Protocol):
    def call_later(self, delay: float, callback: Callable[[], Any], *, label: str = "") -> Any: ...


WsConnect = Callable[[str], Awaitable[WebSocketLike]]


def decode_message(raw: aiohttp.WSMessage) -> Any | None:
    """Decode a TEXT/BINARY frame; return ``None`` when the socket is closing.

    Raises
    ------
    ValueError
        If the frame is not valid JSON.
    """
    if raw.type in (aiohttp.WSMsgType.TEXT, aiohttp.WSMsgType.BINARY):
        return json.loads(raw.data)
    if raw.type in _CLOSING_TYPES or raw.type == aiohttp.WSMsgType.ERROR:
        return None
    raise ValueError(f"Unexpected WebSocket frame type: {raw.type!r}")


class SocketConnector:
    """Drive :func:`~blueberry.hub.backoff.transition` against real sockets.

    Parameters
    ----------
    auth:
        Credentials; refreshed first when reported as expired.
    ws_url:
        WebSocket endpoint.
    ws_connect:
        Coroutine function opening a socket for a URL.
    scheduler:
        Anything offering ``call_later(delay, callback, label=...)``.
    """

    def __init__(
        self,
        auth: Auth,
        *,
        ws_url: str,
        ws_connect: WsConnect,
        scheduler: TimerScheduler,
        backoff: Backoff | None = None,
        handshake_timeout: float = 10.0,
    ) -> None:
        self._auth = auth
        self._ws_url = ws_url
        self._ws_connect = ws_connect
        self._scheduler = scheduler
        self._backoff = backoff or Backoff()
        self._handshake_timeout = handshake_timeout
        self._machine = ReconnectState()
        self._future: asyncio.Future[WebSocketLike] | None = None
        self._task: asyncio.Task[None] | None = None
        self._retry_timer: Any = None

    @property
    def machine(self) -> ReconnectState:
        return self._machine

    async def connect(self) -> WebSocketLike:
        """Resolve with an authenticated socket.

        Raises
        ------
        InvalidAuthError
            If the hub rejects the credentials.
        """
        self._future = asyncio.get_running_loop().create_future()
        self._machine = ReconnectState()
        self._attempt()
        return await self._future

    def cancel(self) -> None:
        """Stop retrying and fail a pending :meth:`connect`."""
        if self._retry_timer is not None:
            self._retry_timer.cancel()
            self._retry_timer = None
        if self._task is not None and not self._task.done():
            self._task.cancel()
        if self._future is not None and not self._future.done():
            self._future.set_exception(HubError("Connection attempt cancelled"))

    # ------------------------------------------------------------------
    # State machine plumbing
    # ------------------------------------------------------------------

    def _apply(self, event: SocketEvent) -> Transition:
        result = transition(self._machine, event, self._backoff)
        self._machine = result.state
        return result

    def _attempt(self) -> None:
        self._retry_timer = None
        if self._future is None or self._future.done():
            return
        if self._apply(SocketEvent.ATTEMPT).action is Action.OPEN_SOCKET:
            self._task = asyncio.get_running_loop().create_task(self._run_attempt())

    def _on_close_or_error(self) -> None:
        result = self._apply(SocketEvent.CLOSED)
        if result.action is Action.REJECT:
            self._reject(InvalidAuthError("Auth is invalid"))
        elif result.action is Action.SCHEDULE_RETRY:
            assert result.delay is not None
            logger.info(
                "Hub socket closed before authentication; retry %d in %.1fs",
                self._machine.retry_count,
                result.delay,
            )
            self._retry_timer = self._scheduler.call_later(
                result.delay, self._attempt, label="hub-reconnect"
            )

    def _reject(self, exc: Exception) -> None:
        if self._future is not None and not self._future.done():
            self._future.set_exception(exc)

    async def _run_attempt(self) -> None:
        logger.debug("Connecting to hub WebSocket at %s", self._ws_url)
        try:
            ws = await self._ws_connect(self._ws_url)
        except (aiohttp.ClientError, OSError, TimeoutError) as exc:
            logger.warning("Hub WebSocket connect failed: %s", exc)
            self._on_close_or_error()
            return

        self._apply(SocketEvent.OPENED)
        try:
            if self._auth.expired:
                await self._auth.refresh_access_token()
            token = self._auth.access_token
            await ws.send_json({"type": "auth", "access_token": token})
            logger.debug("Sent auth message (prefix=%s)", token_prefix(token))
        except InvalidAuthError:
            self._apply(SocketEvent.AUTH_INVALID)
            await ws.close()
            self._reject(InvalidAuthError("Auth is invalid"))
            return
        except (HubError, aiohttp.ClientError, OSError, ConnectionError) as exc:
            logger.warning("Hub auth could not be sent: %s", exc)
            await ws.close()
            self._on_close_or_error()
            return

        await self._await_auth_result(ws)

    async def _await_auth_result(self, ws: WebSocketLike) -> None:
        while self._machine.state is SocketState.AWAITING_AUTH:
            try:
                raw = await ws.receive(timeout=self._handshake_timeout)
                msg = decode_message(raw)
            except (TimeoutError, ValueError, aiohttp.ClientError) as exc:
                logger.warning("Hub auth handshake failed: %s", exc)
                msg = None

            if msg is None:
                if not ws.closed:
                    await ws.close()
                self._on_close_or_error()
                return

            msg_type = msg.get("type") if isinstance(msg, dict) else None
            if msg_type == MSG_TYPE_AUTH_INVALID:
                self._apply(SocketEvent.AUTH_INVALID)
                await ws.close()
                self._reject(InvalidAuthError("Auth is invalid"))
                return
            if msg_type == MSG_TYPE_AUTH_OK:
                self._apply(SocketEvent.AUTH_OK)
                logger.info("Hub WebSocket authenticated (ha_version=%s)", msg.get("ha_version"))
                if self._future is not None and not self._future.done():
                    self._future.set_result(ws)
                else:
                    await ws.close()
                return
            # auth_required and anything else before the verdict are ignored
