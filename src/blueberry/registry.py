"""In-memory mirror of the hub's areas, devices, entities, states and config.

The registry is populated by bulk list calls whenever the shared connection
becomes ready and kept current by hub event subscriptions:

* ``state_changed`` updates one entity in place (no refetch);
* ``*_registry_updated`` / ``core_config_updated`` are debounced per topic and
  refetch only that topic.

Reads are synchronous over the cache.  Lookups that follow a dangling id
(entity → device → area) return ``None``; they never raise.

Domain events are published on the shared :class:`~blueberry.core.events.EventBus`
as :class:`RegistryEvent` members.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field, replace
from typing import Any

from blueberry.core.events import EventBus, Handler
from blueberry.core.scheduler import Debouncer, Scheduler
from blueberry.filters import FilterLike, build_filter
from blueberry.hub.connection import Connection, Unsubscribe
from blueberry.hub.errors import HubError, NotConnectedError
from blueberry.hub.manager import ConnectionEvent, ConnectionManager

logger = logging.getLogger(__name__)


class RegistryEvent(enum.StrEnum):
    STATE_UPDATED = "hassregistry#state-updated"
    AREA_UPDATED = "hassregistry#area-updated"
    DEVICE_UPDATED = "hassregistry#device-updated"
    ENTITY_UPDATED = "hassregistry#entity-updated"
    CONFIG_UPDATED = "hassregistry#config-updated"
    REGISTRY_UPDATED = "hassregistry#registry-updated"


class Topic(enum.StrEnum):
    AREA = "area"
    DEVICE = "device"
    ENTITY = "entity"
    STATE = "state"
    CONFIG = "config"


@dataclass(frozen=True)
class TopicSpec:
    list_command: str
    event_type: str
    event: RegistryEvent | None
    id_key: str | None = None


TOPICS: dict[Topic, TopicSpec] = {
    Topic.AREA: TopicSpec(
        "config/area_registry/list", "area_registry_updated", RegistryEvent.AREA_UPDATED, "area_id"
    ),
    Topic.DEVICE: TopicSpec(
        "config/device_registry/list",
        "device_registry_updated",
        RegistryEvent.DEVICE_UPDATED,
        "device_id",
    ),
    Topic.ENTITY: TopicSpec(
        "config/entity_registry/list",
        "entity_registry_updated",
        RegistryEvent.ENTITY_UPDATED,
        "entity_id",
    ),
    Topic.STATE: TopicSpec("get_states", "state_changed", None),
    Topic.CONFIG: TopicSpec("get_config", "core_config_updated", RegistryEvent.CONFIG_UPDATED),
}


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Area:
    id: str
    name: str


@dataclass(frozen=True)
class Device:
    id: str
    name: str | None = None
    area_id: str | None = None


@dataclass(frozen=True)
class Entity:
    """Entity registry entry joined with the volatile part of its state."""

    id: str
    name: str | None = None
    device_id: str | None = None
    area_id: str | None = None
    device_class: str | None = None
    state_class: str | None = None
    state: str | None = None
    last_changed: str | None = None
    last_updated: str | None = None


@dataclass(frozen=True)
class State:
    """A raw state payload with its device and area resolved."""

    entity_id: str
    state: str | None
    attributes: dict[str, Any] = field(default_factory=dict)
    last_changed: str | None = None
    last_updated: str | None = None
    device_id: str | None = None
    area_id: str | None = None
    device_name: str | None = None
    area_name: str | None = None


@dataclass(frozen=True)
class StateUpdate:
    """Payload of :attr:`RegistryEvent.STATE_UPDATED`."""

    entity_id: str
    state: State | None
    old_state: State | None
    entity: EntityView | None


def _area_from_payload(payload: Mapping[str, Any]) -> Area:
    return Area(id=payload["area_id"], name=payload.get("name") or payload["area_id"])


def _device_from_payload(payload: Mapping[str, Any]) -> Device:
    return Device(
        id=payload["id"],
        name=payload.get("name_by_user") or payload.get("name"),
        area_id=payload.get("area_id"),
    )


def _entity_from_payload(payload: Mapping[str, Any], state: Mapping[str, Any] | None) -> Entity:
    attributes = (state or {}).get("attributes") or {}
    return Entity(
        id=payload["entity_id"],
        name=payload.get("name") or payload.get("original_name"),
        device_id=payload.get("device_id"),
        area_id=payload.get("area_id"),
        device_class=attributes.get("device_class"),
        state_class=attributes.get("state_class"),
        state=(state or {}).get("state"),
        last_changed=(state or {}).get("last_changed"),
        last_updated=(state or {}).get("last_updated"),
    )


# ---------------------------------------------------------------------------
# Views
# ---------------------------------------------------------------------------


class _View:
    __slots__ = ("_registry", "record")

    def __init__(self, registry: Registry, record: Any) -> None:
        self._registry = registry
        self.record = record

    def __getattr__(self, name: str) -> Any:
        if name == "record":
            raise AttributeError(name)
        return getattr(self.record, name)

    def __eq__(self, other: object) -> bool:
        return isinstance(other, type(self)) and other.record == self.record

    def __hash__(self) -> int:
        return hash(self.record)

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.record!r})"


class EntityView(_View):
    record: Entity

    def get_device(self) -> DeviceView | None:
        if self.record.device_id is None:
            return None
        return self._registry.get_device(self.record.device_id)

    def get_area(self) -> AreaView | None:
        """The entity's own area, else the area of its device."""
        area_id = self._registry.effective_area_id(self.record)
        return self._registry.get_area(area_id) if area_id else None


class DeviceView(_View):
    record: Device

    def get_area(self) -> AreaView | None:
        if self.record.area_id is None:
            return None
        return self._registry.get_area(self.record.area_id)

    def get_entities(self, filter: FilterLike = None) -> dict[str, EntityView]:
        device_id = self.record.id
        return self._registry._select_entities(filter, lambda e: e.device_id == device_id)


class AreaView(_View):
    record: Area

    def get_devices(self, filter: FilterLike = None) -> dict[str, DeviceView]:
        area_id = self.record.id
        return self._registry._select_devices(filter, lambda d: d.area_id == area_id)

    def get_entities(self, filter: FilterLike = None) -> dict[str, EntityView]:
        area_id = self.record.id
        registry = self._registry
        return registry._select_entities(filter, lambda e: registry.effective_area_id(e) == area_id)


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


class Registry:
    """Hub topology/state cache bound to a :class:`ConnectionManager`."""

    def __init__(
        self,
        manager: ConnectionManager,
        events: EventBus,
        scheduler: Scheduler,
        *,
        debounce_seconds: float = 0.5,
    ) -> None:
        self._manager = manager
        self._events = events
        self._debouncer = Debouncer(scheduler)
        self._debounce_seconds = debounce_seconds

        self._areas: dict[str, Area] = {}
        self._devices: dict[str, Device] = {}
        self._entries: dict[str, Mapping[str, Any]] = {}
        self._entities: dict[str, Entity] = {}
        self._states: dict[str, dict[str, Any]] = {}
        self._config: dict[str, Any] = {}

        self._subscriptions: list[Unsubscribe] = []
        self._subscribe_lock = asyncio.Lock()
        self._remove_listener: Callable[[], None] | None = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Initialise on every (re)connect of the shared connection."""
        if self._remove_listener is None:
            self._remove_listener = self._events.on(ConnectionEvent.CONNECTED, self._on_connected)

    async def stop(self) -> None:
        if self._remove_listener is not None:
            self._remove_listener()
            self._remove_listener = None
        self._debouncer.cancel_all()
        await self._drain_subscriptions()

    async def _on_connected(self, _connection: Any = None) -> None:
        logger.info("Initializing registry...")
        await asyncio.gather(self.rebuild(), self.subscribe_updates())
        self._events.emit(RegistryEvent.REGISTRY_UPDATED)

    def _live_connection(self) -> Connection | None:
        connection = self._manager.connection
        if connection is None or not connection.connected:
            return None
        return connection

    @property
    def subscription_count(self) -> int:
        return len(self._subscriptions)

    # ------------------------------------------------------------------
    # Rebuild
    # ------------------------------------------------------------------

    async def rebuild(self, topics: Iterable[Topic] | None = None) -> bool:
        """Refetch *topics* (all by default) and swap the maps in one step.

        Returns ``False`` and keeps the current cache when the hub is not
        reachable.
        """
        wanted = list(topics) if topics is not None else list(Topic)
        connection = self._live_connection()
        if connection is None:
            logger.warning("Could not rebuild registry: not connected to the hub")
            return False

        try:
            results = await asyncio.gather(
                *(connection.send_message({"type": TOPICS[t].list_command}) for t in wanted)
            )
        except (HubError, TimeoutError) as exc:
            logger.warning("Could not rebuild registry (%s): %s", ", ".join(wanted), exc)
            return False

        self._swap(dict(zip(wanted, results, strict=True)))
        logger.debug("Rebuilt registry topics: %s", ", ".join(wanted))
        return True

    def _swap(self, fetched: Mapping[Topic, Any]) -> None:
        # No awaits in here: readers observe either the old or the new maps.
        if Topic.AREA in fetched:
            self._areas = {a["area_id"]: _area_from_payload(a) for a in fetched[Topic.AREA] or []}
        if Topic.DEVICE in fetched:
            self._devices = {d["id"]: _device_from_payload(d) for d in fetched[Topic.DEVICE] or []}
        if Topic.ENTITY in fetched:
            self._entries = {e["entity_id"]: e for e in fetched[Topic.ENTITY] or []}
        if Topic.STATE in fetched:
            self._states = {s["entity_id"]: s for s in fetched[Topic.STATE] or []}
        if Topic.ENTITY in fetched or Topic.STATE in fetched:
            self._entities = {
                entity_id: _entity_from_payload(entry, self._states.get(entity_id))
                for entity_id, entry in self._entries.items()
            }
        if Topic.CONFIG in fetched:
            self._config = dict(fetched[Topic.CONFIG] or {})

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    async def _drain_subscriptions(self) -> None:
        previous, self._subscriptions = self._subscriptions, []
        if previous:
            await asyncio.gather(
                *(unsubscribe() for unsubscribe in previous), return_exceptions=True
            )

    async def subscribe_updates(self) -> None:
        """Replace every tracked subscription with a fresh one per topic."""
        async with self._subscribe_lock:
            await self._drain_subscriptions()
            connection = self._live_connection()
            if connection is None:
                logger.debug("Skipping registry subscriptions: not connected")
                return
            try:
                for topic, topic_def in TOPICS.items():
                    handle = await connection.subscribe_events(
                        self._event_handler(topic), topic_def.event_type
                    )
                    self._subscriptions.append(handle)
            except (HubError, TimeoutError) as exc:
                logger.warning("Could not subscribe to registry updates: %s", exc)
                await self._drain_subscriptions()

    def _event_handler(self, topic: Topic) -> Callable[[Any], None]:
        if topic is Topic.STATE:
            return self._on_state_changed

        def handler(event: Any) -> None:
            self._debouncer.schedule(
                topic, self._debounce_seconds, lambda: self._rebuild_topic(topic, event)
            )

        return handler

    async def _rebuild_topic(self, topic: Topic, event: Any) -> None:
        if not await self.rebuild([topic]):
            return
        topic_def = TOPICS[topic]
        data = (event or {}).get("data") or {}
        if topic_def.event is not None:
            payload = data.get(topic_def.id_key) if topic_def.id_key else data
            self._events.emit(topic_def.event, payload)
        self._events.emit(RegistryEvent.REGISTRY_UPDATED, topic)

    def _on_state_changed(self, event: Any) -> None:
        data = (event or {}).get("data") or {}
        entity_id = data.get("entity_id")
        if not entity_id:
            return
        old_state = self.get_state(entity_id)
        self.apply_state(entity_id, data.get("new_state"))
        self._events.emit(
            RegistryEvent.STATE_UPDATED,
            StateUpdate(
                entity_id=entity_id,
                state=self.get_state(entity_id),
                old_state=old_state,
                entity=self.get_entity(entity_id),
            ),
        )

    def apply_state(self, entity_id: str, new_state: Mapping[str, Any] | None) -> None:
        """Apply a pushed state in place; registry-owned fields stay untouched."""
        if new_state is None:
            self._states.pop(entity_id, None)
        else:
            self._states[entity_id] = dict(new_state)

        entity = self._entities.get(entity_id)
        if entity is None:
            return
        payload = new_state or {}
        attributes = payload.get("attributes") or {}
        self._entities[entity_id] = replace(
            entity,
            state=payload.get("state"),
            device_class=attributes.get("device_class"),
            state_class=attributes.get("state_class"),
            last_changed=payload.get("last_changed"),
            last_updated=payload.get("last_updated"),
        )

    # ------------------------------------------------------------------
    # Read path
    # ------------------------------------------------------------------

    def effective_area_id(self, entity: Entity) -> str | None:
        if entity.area_id:
            return entity.area_id
        device = self._devices.get(entity.device_id) if entity.device_id else None
        return device.area_id if device is not None else None

    def get_area(self, area_id: str) -> AreaView | None:
        area = self._areas.get(area_id)
        return AreaView(self, area) if area is not None else None

    def get_device(self, device_id: str) -> DeviceView | None:
        device = self._devices.get(device_id)
        return DeviceView(self, device) if device is not None else None

    def get_entity(self, entity_id: str) -> EntityView | None:
        entity = self._entities.get(entity_id)
        return EntityView(self, entity) if entity is not None else None

    def _select_entities(
        self, filter: FilterLike, scope: Callable[[Entity], bool] | None = None
    ) -> dict[str, EntityView]:
        compiled = build_filter(filter)
        return {
            entity_id: EntityView(self, entity)
            for entity_id, entity in self._entities.items()
            if (scope is None or scope(entity)) and compiled.matches(entity)
        }

    def _select_devices(
        self, filter: FilterLike, scope: Callable[[Device], bool] | None = None
    ) -> dict[str, DeviceView]:
        compiled = build_filter(filter)
        return {
            device_id: DeviceView(self, device)
            for device_id, device in self._devices.items()
            if (scope is None or scope(device)) and compiled.matches(device)
        }

    def get_entities(self, filter: FilterLike = None) -> dict[str, EntityView]:
        return self._select_entities(filter)

    def get_devices(self, filter: FilterLike = None) -> dict[str, DeviceView]:
        return self._select_devices(filter)

    def get_areas(self, filter: FilterLike = None) -> dict[str, AreaView]:
        compiled = build_filter(filter)
        return {
            area_id: AreaView(self, area)
            for area_id, area in self._areas.items()
            if compiled.matches(area)
        }

    def matches_filter(self, state: State | None, filter: FilterLike) -> bool:
        """Apply a filter (with one nested ``attributes`` level) to a state snapshot."""
        if state is None:
            return False
        return build_filter(filter).matches(state)

    def _to_state(self, payload: Mapping[str, Any]) -> State:
        entity_id = payload["entity_id"]
        entity = self._entities.get(entity_id)
        device_id = entity.device_id if entity is not None else None
        device = self._devices.get(device_id) if device_id else None
        area_id = self.effective_area_id(entity) if entity is not None else None
        area = self._areas.get(area_id) if area_id else None
        return State(
            entity_id=entity_id,
            state=payload.get("state"),
            attributes=dict(payload.get("attributes") or {}),
            last_changed=payload.get("last_changed"),
            last_updated=payload.get("last_updated"),
            device_id=device_id,
            area_id=area_id,
            device_name=device.name if device is not None else None,
            area_name=area.name if area is not None else None,
        )

    def get_state(self, entity_id: str) -> State | None:
        payload = self._states.get(entity_id)
        return self._to_state(payload) if payload is not None else None

    def get_states(self, filter: FilterLike = None) -> list[State]:
        compiled = build_filter(filter)
        states = (self._to_state(payload) for payload in self._states.values())
        return [state for state in states if compiled.matches(state)]

    def get_config(self) -> dict[str, Any]:
        return dict(self._config)

    # ------------------------------------------------------------------
    # Write path
    # ------------------------------------------------------------------

    async def call_service(
        self,
        domain: str,
        service: str,
        service_data: dict[str, Any] | None = None,
        target: dict[str, Any] | None = None,
        return_response: bool = False,
    ) -> Any:
        """Forward a service call; ``None`` when there is no live connection."""
        connection = self._live_connection()
        if connection is None:
            logger.warning("Cannot call %s.%s: not connected to the hub", domain, service)
            return None
        message: dict[str, Any] = {"type": "call_service", "domain": domain, "service": service}
        if service_data is not None:
            message["service_data"] = service_data
        if target is not None:
            message["target"] = target
        if return_response:
            message["return_response"] = True
        return await connection.send_message(message)

    async def update_entity(self, entity_id: str, **updates: Any) -> dict[str, Any]:
        """Update an entity registry entry; the cache follows via the update event."""
        connection = self._require_connection()
        result = await connection.send_message(
            {"type": "config/entity_registry/update", "entity_id": entity_id, **updates}
        )
        return (result or {}).get("entity_entry", result or {})

    async def delete_entity(self, entity_id: str) -> None:
        connection = self._require_connection()
        await connection.send_message(
            {"type": "config/entity_registry/remove", "entity_id": entity_id}
        )

    def _require_connection(self) -> Connection:
        connection = self._live_connection()
        if connection is None:
            raise NotConnectedError("Hub connection is not open")
        return connection

    def on(
        self, events: RegistryEvent | Iterable[RegistryEvent], handler: Handler
    ) -> Callable[[], None]:
        return self._events.on(events, handler)
