"""Shared test fixtures for the blueberry test suite.

The hub is simulated by :class:`FakeHub`: it hands out :class:`FakeWebSocket`
objects that speak the auth handshake and answer commands from a table, and it
serves the REST history endpoint through ``httpx.MockTransport``.

Timers are driven by hand through :class:`FakeScheduler` so reconnect and
debounce delays can be asserted without sleeping.
"""

from __future__ import annotations

import asyncio
import inspect
import json
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

import aiohttp
import httpx
import pytest

from blueberry.config import HubConfig
from blueberry.core.events import EventBus
from blueberry.hub.manager import ConnectionManager
from blueberry.storage import JsonStore

VALID_TOKEN = "valid-token-0123456789"
HUB_URL = "http://hub.local:8123"


# ---------------------------------------------------------------------------
# WebSocket fake
# ---------------------------------------------------------------------------


class FakeWebSocket:
    """In-memory stand-in for ``aiohttp.ClientWebSocketResponse``."""

    def __init__(self, on_send: Callable[[FakeWebSocket, dict], None] | None = None) -> None:
        self.closed = False
        self.sent: list[dict[str, Any]] = []
        self._inbox: asyncio.Queue[aiohttp.WSMessage] = asyncio.Queue()
        self._on_send = on_send

    def push(self, payload: Any) -> None:
        """Queue a JSON frame for the client to receive."""
        self._inbox.put_nowait(aiohttp.WSMessage(aiohttp.WSMsgType.TEXT, json.dumps(payload), None))

    def push_raw(self, message: aiohttp.WSMessage) -> None:
        self._inbox.put_nowait(message)

    def drop(self) -> None:
        """Simulate the hub closing the socket."""
        if not self.closed:
            self.closed = True
            self._inbox.put_nowait(aiohttp.WSMessage(aiohttp.WSMsgType.CLOSED, None, None))

    async def send_json(self, data: Any) -> None:
        if self.closed:
            raise ConnectionResetError("Cannot write to closing transport")
        self.sent.append(data)
        if self._on_send is not None:
            self._on_send(self, data)

    async def receive(self, timeout: float | None = None) -> aiohttp.WSMessage:
        return await asyncio.wait_for(self._inbox.get(), timeout)

    async def close(self) -> bool:
        self.drop()
        return True

    def sent_types(self) -> list[str]:
        return [msg.get("type") for msg in self.sent]


@dataclass
class HubFailure:
    """Reply with ``success: false`` instead of a result."""

    code: str = "unknown_error"
    message: str = "failed"


@dataclass
class FakeHub:
    """Scripted hub: auth handshake, command table, subscriptions and REST history."""

    valid_tokens: set[str] = field(default_factory=lambda: {VALID_TOKEN})
    responses: dict[str, Any] = field(default_factory=dict)
    forecasts: dict[str, list[dict[str, Any]]] = field(default_factory=dict)
    history: dict[str, list[dict[str, Any]]] = field(default_factory=dict)
    sockets: list[FakeWebSocket] = field(default_factory=list)
    urls: list[str] = field(default_factory=list)
    commands: list[dict[str, Any]] = field(default_factory=list)
    service_calls: list[tuple[str, str, dict[str, Any]]] = field(default_factory=list)
    rest_requests: list[httpx.Request] = field(default_factory=list)
    refuse: int = 0
    silent_auth: bool = False
    close_after_auth: bool = False
    rest_fail: bool = False
    holding: set[str] = field(default_factory=set)
    held: list[tuple[FakeWebSocket, dict[str, Any]]] = field(default_factory=list)
    subscriptions: dict[tuple[int, int], tuple[FakeWebSocket, str | None]] = field(
        default_factory=dict
    )

    # -- registry data ------------------------------------------------------

    def load_registry(
        self,
        *,
        areas: list[dict] | None = None,
        devices: list[dict] | None = None,
        entities: list[dict] | None = None,
        states: list[dict] | None = None,
        config: dict | None = None,
    ) -> None:
        self.responses["config/area_registry/list"] = areas or []
        self.responses["config/device_registry/list"] = devices or []
        self.responses["config/entity_registry/list"] = entities or []
        self.responses["get_states"] = states or []
        self.responses["get_config"] = config or {}

    # -- WebSocket side -------------------------------------------------------

    async def ws_connect(self, url: str) -> FakeWebSocket:
        self.urls.append(url)
        if self.refuse:
            self.refuse -= 1
            raise aiohttp.ClientConnectionError("Connection refused")
        ws = FakeWebSocket(self._handle)
        ws.push({"type": "auth_required", "ha_version": "2026.10.0"})
        self.sockets.append(ws)
        return ws

    async def open_socket(self) -> FakeWebSocket:
        """An already authenticated socket (for driving ``Connection`` directly)."""
        ws = FakeWebSocket(self._handle)
        self.sockets.append(ws)
        return ws

    def _handle(self, ws: FakeWebSocket, msg: dict[str, Any]) -> None:
        msg_type = msg.get("type")
        if msg_type == "auth":
            if self.silent_auth:
                return
            if self.close_after_auth:
                ws.drop()
                return
            verdict = "auth_ok" if msg.get("access_token") in self.valid_tokens else "auth_invalid"
            ws.push({"type": verdict, "ha_version": "2026.10.0"})
            return

        self.commands.append(msg)
        if msg_type in self.holding:
            self.held.append((ws, msg))
            return
        self._reply(ws, msg)

    def _reply(self, ws: FakeWebSocket, msg: dict[str, Any]) -> None:
        msg_type = msg.get("type")
        if msg_type == "subscribe_events":
            self.subscriptions[(id(ws), msg["id"])] = (ws, msg.get("event_type"))
            result: Any = None
        elif msg_type == "unsubscribe_events":
            self.subscriptions.pop((id(ws), msg["subscription"]), None)
            result = None
        elif msg_type in self.responses:
            result = self.responses[msg_type]
            if callable(result):
                result = result(msg)
        elif msg_type == "call_service":
            result = self._call_service(msg)
        else:
            result = HubFailure("unknown_command", f"Unknown command {msg_type}")

        if isinstance(result, HubFailure):
            ws.push(
                {
                    "id": msg["id"],
                    "type": "result",
                    "success": False,
                    "error": {"code": result.code, "message": result.message},
                }
            )
        else:
            ws.push({"id": msg["id"], "type": "result", "success": True, "result": result})

    def _call_service(self, msg: dict[str, Any]) -> Any:
        domain, service = msg["domain"], msg["service"]
        self.service_calls.append((domain, service, msg.get("service_data") or {}))
        if (domain, service) == ("weather", "get_forecasts"):
            entity_id = msg["target"]["entity_id"]
            return {
                "context": {"id": "ctx"},
                "response": {entity_id: {"forecast": self.forecasts.get(entity_id, [])}},
            }
        return {"context": {"id": "ctx"}, "response": None}

    def release(self, msg_type: str) -> None:
        """Answer every held command of *msg_type* and stop holding it."""
        self.holding.discard(msg_type)
        pending, self.held = self.held, []
        for ws, msg in pending:
            if msg.get("type") == msg_type:
                self._reply(ws, msg)
            else:
                self.held.append((ws, msg))

    def fire_event(self, event_type: str, data: dict[str, Any]) -> None:
        for (_, sub_id), (ws, wanted) in list(self.subscriptions.items()):
            if ws.closed or wanted not in (None, event_type):
                continue
            ws.push(
                {
                    "id": sub_id,
                    "type": "event",
                    "event": {"event_type": event_type, "data": data},
                }
            )

    def live_subscriptions(self) -> list[str | None]:
        return [wanted for ws, wanted in self.subscriptions.values() if not ws.closed]

    def sent_service_calls(self, service: str) -> list[str]:
        return [data.get("entity_id") for _, svc, data in self.service_calls if svc == service]

    # -- REST side ------------------------------------------------------------

    def rest_handler(self, request: httpx.Request) -> httpx.Response:
        self.rest_requests.append(request)
        if self.rest_fail:
            return httpx.Response(500, json={"message": "boom"})
        if "/history/period/" in request.url.path:
            entity_id = request.url.params.get("filter_entity_id")
            return httpx.Response(200, json=[self.history.get(entity_id, [])])
        return httpx.Response(404, json={"message": "not found"})


# ---------------------------------------------------------------------------
# Scheduler fake
# ---------------------------------------------------------------------------


@dataclass
class FakeTimer:
    delay: float
    callback: Callable[[], Any]
    label: str
    cancelled: bool = False
    fired: bool = False

    def cancel(self) -> None:
        self.cancelled = True

    @property
    def pending(self) -> bool:
        return not self.cancelled and not self.fired


@dataclass
class FakeJob:
    description: str
    callback: Callable[[], Any]
    cancelled: bool = False

    def cancel(self) -> None:
        self.cancelled = True


class FakeScheduler:
    """Records timers instead of arming them; tests fire them explicitly."""

    def __init__(self) -> None:
        self.timers: list[FakeTimer] = []
        self.jobs: list[FakeJob] = []

    def call_later(
        self, delay: float, callback: Callable[[], Any], *, label: str = ""
    ) -> FakeTimer:
        timer = FakeTimer(delay, callback, label)
        self.timers.append(timer)
        return timer

    def pending_timers(self, label: str | None = None) -> list[FakeTimer]:
        return [t for t in self.timers if t.pending and (label is None or t.label == label)]

    async def fire(self, timer: FakeTimer) -> None:
        assert timer.pending, f"timer {timer.label} is not pending"
        timer.fired = True
        result = timer.callback()
        if inspect.isawaitable(result):
            await result

    def add_job(self, description: str, callback: Callable[[], Any]) -> FakeJob:
        job = FakeJob(description, callback)
        self.jobs.append(job)
        return job

    async def stop(self) -> None:
        for timer in self.timers:
            timer.cancel()


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


async def _settle(*buses: EventBus, rounds: int = 3) -> None:
    for _ in range(rounds):
        for _ in range(100):
            await asyncio.sleep(0)
        for bus in buses:
            await bus.wait_idle()


@pytest.fixture
def settle():
    """Let queued socket frames, spawned tasks and event handlers run to completion."""
    return _settle


@pytest.fixture
def hub() -> FakeHub:
    fake = FakeHub()
    fake.load_registry()
    return fake


@pytest.fixture
def fake_scheduler() -> FakeScheduler:
    return FakeScheduler()


@pytest.fixture
async def events():
    bus = EventBus()
    yield bus
    await bus.close()


@pytest.fixture
def store(tmp_path, events) -> JsonStore:
    return JsonStore(tmp_path / "json-storage.json", events)


@pytest.fixture
def hub_config() -> HubConfig:
    return HubConfig(url=HUB_URL)


@pytest.fixture
async def http_client(hub, hub_config):
    client = httpx.AsyncClient(
        transport=httpx.MockTransport(hub.rest_handler), base_url=hub_config.rest_url
    )
    yield client
    await client.aclose()


@pytest.fixture
async def manager(hub, hub_config, store, events, fake_scheduler, http_client):
    conn_manager = ConnectionManager(
        hub_config,
        store,
        events,
        fake_scheduler,
        ws_connect=hub.ws_connect,
        http_client=http_client,
    )
    yield conn_manager
    await conn_manager.close()
