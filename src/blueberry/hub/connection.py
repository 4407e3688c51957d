"""Multiplexed command/subscription channel over one authenticated socket.

Every outgoing message gets a monotonically increasing integer ``id``; the
matching ``result`` resolves the awaiting future.  ``event`` messages carry
the ``id`` of the subscription that produced them and are handed to that
subscription's handler as a background task.

When the socket drops, pending commands fail with
:class:`~blueberry.hub.errors.ConnectionLostError`, every subscription is
forgotten (the hub forgets them too), ``disconnected`` listeners run, and a
fresh socket is requested from the socket factory.  Once it is up, ``ready``
listeners run; they are responsible for subscribing again.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from blueberry.hub.errors import (
    CommandError,
    ConnectionLostError,
    HubError,
    InvalidAuthError,
    NotConnectedError,
)
from blueberry.hub.socket import WebSocketLike, decode_message

logger = logging.getLogger(__name__)

SocketFactory = Callable[[], Awaitable[WebSocketLike]]
MessageHandler = Callable[[Any], Awaitable[None] | None]
Unsubscribe = Callable[[], Awaitable[None]]

LISTENER_EVENTS = ("ready", "disconnected", "reconnect-error")


@dataclass
class _Subscription:
    handler: MessageHandler
    generation: int


class Connection:
    """One logical hub connection that survives socket drops.

    Use :meth:`open` rather than the constructor; it waits for the first
    authenticated socket.
    """

    def __init__(self, socket_factory: SocketFactory, *, command_timeout: float = 10.0) -> None:
        self._socket_factory = socket_factory
        self._command_timeout = command_timeout
        self._ws: WebSocketLike | None = None
        self._cmd_id = 0
        self._pending: dict[int, asyncio.Future[Any]] = {}
        self._subscriptions: dict[int, _Subscription] = {}
        self._generation = 0
        self._listeners: dict[str, list[Callable[..., Any]]] = {
            name: [] for name in LISTENER_EVENTS
        }
        self._tasks: set[asyncio.Task[Any]] = set()
        self._loop_task: asyncio.Task[None] | None = None
        self._reconnect_task: asyncio.Task[None] | None = None
        self._closed = False

    @classmethod
    async def open(cls, socket_factory: SocketFactory, **kwargs: Any) -> Connection:
        """Create a connection and wait for its first authenticated socket.

        Raises
        ------
        InvalidAuthError
            If the hub rejects the credentials.
        """
        conn = cls(socket_factory, **kwargs)
        conn._attach(await socket_factory())
        return conn

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def connected(self) -> bool:
        return not self._closed and self._ws is not None and not self._ws.closed

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def subscription_count(self) -> int:
        return len(self._subscriptions)

    def add_event_listener(self, event: str, callback: Callable[..., Any]) -> Callable[[], None]:
        """Register *callback* for ``ready``, ``disconnected`` or ``reconnect-error``."""
        if event not in self._listeners:
            raise ValueError(f"Unknown connection event: {event!r}")
        self._listeners[event].append(callback)

        def remove() -> None:
            if callback in self._listeners[event]:
                self._listeners[event].remove(callback)

        return remove

    async def send_message(self, message: dict[str, Any], timeout: float | None = None) -> Any:
        """Send a command and return the ``result`` payload of its answer.

        Raises
        ------
        NotConnectedError
            If no socket is open.
        CommandError
            If the hub answers with ``success: false``.
        ConnectionLostError
            If the socket closes before the answer arrives.
        TimeoutError
            If no answer arrives within the timeout.
        """
        ws = self._ws
        if ws is None or not self.connected:
            raise NotConnectedError("Hub connection is not open")

        self._cmd_id += 1
        cmd_id = self._cmd_id
        command = dict(message)
        command["id"] = cmd_id

        fut: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        self._pending[cmd_id] = fut
        try:
            await ws.send_json(command)
            return await asyncio.wait_for(fut, timeout=timeout or self._command_timeout)
        finally:
            self._pending.pop(cmd_id, None)

    async def subscribe_message(
        self, handler: MessageHandler, message: dict[str, Any]
    ) -> Unsubscribe:
        """Send a subscribing command; route its future ``event`` payloads to *handler*.

        Returns an async callable that cancels the subscription.  Calling it
        after the socket dropped (or twice) is a no-op.
        """
        ws = self._ws
        if ws is None or not self.connected:
            raise NotConnectedError("Hub connection is not open")

        self._cmd_id += 1
        sub_id = self._cmd_id
        command = dict(message)
        command["id"] = sub_id
        generation = self._generation

        # Registered before sending so events racing the result are not lost.
        self._subscriptions[sub_id] = _Subscription(handler, generation)
        fut: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        self._pending[sub_id] = fut
        try:
            await ws.send_json(command)
            await asyncio.wait_for(fut, timeout=self._command_timeout)
        except BaseException:
            self._subscriptions.pop(sub_id, None)
            raise
        finally:
            self._pending.pop(sub_id, None)

        async def unsubscribe() -> None:
            sub = self._subscriptions.pop(sub_id, None)
            if sub is None or sub.generation != self._generation or not self.connected:
                return
            try:
                await self.send_message({"type": "unsubscribe_events", "subscription": sub_id})
            except (HubError, TimeoutError) as exc:
                logger.debug("Unsubscribe of %d failed: %s", sub_id, exc)

        return unsubscribe

    async def subscribe_events(
        self, handler: MessageHandler, event_type: str | None = None
    ) -> Unsubscribe:
        """Subscribe to hub bus events (all of them when *event_type* is ``None``)."""
        message: dict[str, Any] = {"type": "subscribe_events"}
        if event_type is not None:
            message["event_type"] = event_type
        return await self.subscribe_message(handler, message)

    async def close(self) -> None:
        """Close the socket for good; no reconnect follows."""
        self._closed = True
        if self._reconnect_task is not None and not self._reconnect_task.done():
            self._reconnect_task.cancel()
        self._fail_pending(ConnectionLostError("Connection closed"))
        self._subscriptions.clear()
        if self._ws is not None and not self._ws.closed:
            await self._ws.close()
        if self._loop_task is not None and not self._loop_task.done():
            self._loop_task.cancel()
        tasks = [t for t in (self._loop_task, self._reconnect_task) if t is not None]
        tasks.extend(self._tasks)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()

    # ------------------------------------------------------------------
    # Message loop
    # ------------------------------------------------------------------

    def _attach(self, ws: WebSocketLike) -> None:
        self._ws = ws
        self._loop_task = asyncio.get_running_loop().create_task(self._message_loop(ws))

    async def _message_loop(self, ws: WebSocketLike) -> None:
        """Read and dispatch until the socket closes, then start reconnecting."""
        try:
            while not ws.closed:
                raw = await ws.receive()
                try:
                    msg = decode_message(raw)
                except ValueError:
                    logger.warning("Invalid message from hub: %r", raw.data)
                    continue
                if msg is None:
                    logger.warning("Hub socket closed (type=%s)", raw.type)
                    break
                for item in msg if isinstance(msg, list) else [msg]:
                    if isinstance(item, dict):
                        self._dispatch(item)
        except asyncio.CancelledError:
            return
        except Exception as exc:
            logger.warning("Hub message loop error: %s", exc)

        if not self._closed:
            self._on_socket_lost()

    def _dispatch(self, msg: dict[str, Any]) -> None:
        msg_type = msg.get("type")
        if msg_type == "result":
            self._handle_result(msg)
        elif msg_type == "event":
            self._handle_event(msg)
        elif msg_type == "pong":
            logger.debug("Received pong %s", msg.get("id"))
        else:
            logger.debug("Unhandled hub message type: %r", msg_type)

    def _handle_result(self, msg: dict[str, Any]) -> None:
        cmd_id = msg.get("id")
        fut = self._pending.get(cmd_id) if isinstance(cmd_id, int) else None
        if fut is None or fut.done():
            logger.debug("Dropping unmatched result for id %r", cmd_id)
            return
        if msg.get("success"):
            fut.set_result(msg.get("result"))
        else:
            error = msg.get("error") or {}
            fut.set_exception(CommandError(cmd_id, error.get("code"), error.get("message")))

    def _handle_event(self, msg: dict[str, Any]) -> None:
        sub = self._subscriptions.get(msg.get("id"))  # type: ignore[arg-type]
        if sub is None:
            logger.debug("Event for unknown subscription %r", msg.get("id"))
            return
        self._spawn(sub.handler, msg.get("event"))

    def _spawn(self, handler: Callable[..., Any], *args: Any) -> None:
        async def _run() -> None:
            try:
                result = handler(*args)
                if inspect.isawaitable(result):
                    await result
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Hub callback %r failed", handler)

        task = asyncio.get_running_loop().create_task(_run())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _emit(self, event: str, *args: Any) -> None:
        for callback in list(self._listeners[event]):
            self._spawn(callback, *args)

    # ------------------------------------------------------------------
    # Reconnect
    # ------------------------------------------------------------------

    def _fail_pending(self, exc: Exception) -> None:
        for fut in self._pending.values():
            if not fut.done():
                fut.set_exception(exc)
        self._pending.clear()

    def _on_socket_lost(self) -> None:
        self._ws = None
        self._generation += 1
        self._fail_pending(ConnectionLostError("Hub socket closed"))
        self._subscriptions.clear()
        self._emit("disconnected")
        self._reconnect_task = asyncio.get_running_loop().create_task(self._reconnect())

    async def _reconnect(self) -> None:
        try:
            ws = await self._socket_factory()
        except asyncio.CancelledError:
            return
        except InvalidAuthError as exc:
            logger.error("Hub reconnect rejected: %s", exc)
            self._emit("reconnect-error", exc)
            return
        except HubError as exc:
            logger.warning("Hub reconnect aborted: %s", exc)
            return

        if self._closed:
            await ws.close()
            return
        self._attach(ws)
        logger.info("Hub connection re-established")
        self._emit("ready")
