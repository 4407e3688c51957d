"""Irrigation scheduler: decide when a valve runs and for how long.

A pass (:meth:`IrrigationScheduler.check_valves`) walks every valve entity
matching the configured pattern and starts the first one whose soil balance
is negative.  Only one valve runs at a time.  Started valves are switched off
by a precise timer and, as a backstop, by the periodic check job.

Passes are triggered by

* a valve reporting ``off``,
* a weather entity changing, when ``irrigation/triggers/forecast-updates`` is set,
* the hub event ``<prefix>_check_irrigation``.

Hub failures while collecting history or forecasts skip the affected valve
for this pass; they never escape the scheduler.
"""

from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from typing import Any

from blueberry.config import IrrigationConfig
from blueberry.core.events import EventBus
from blueberry.core.scheduler import Job, Scheduler, TimerHandle
from blueberry.hub.connection import Unsubscribe
from blueberry.hub.errors import HubError
from blueberry.hub.manager import ConnectionEvent, ConnectionManager
from blueberry.irrigation import hydro
from blueberry.irrigation.params import (
    VALVES_PATH,
    ValveParams,
    find_valve_params,
    normalize_operator_params,
)
from blueberry.irrigation.units import (
    from_kelvin,
    from_millimeters,
    length_unit,
    temperature_unit,
)
from blueberry.registry import Registry, RegistryEvent, State, StateUpdate
from blueberry.storage import JsonStore

logger = logging.getLogger(__name__)

FORECAST_TRIGGER_PATH = "irrigation/triggers/forecast-updates"

FORECAST_FILTER: dict[str, Any] = {
    "entity_id": lambda entity_id: entity_id.startswith("weather."),
    "attributes": {
        "temperature_unit": lambda unit: unit is not None,
        "precipitation_unit": lambda unit: unit is not None,
    },
}


@dataclass
class RunningValve:
    entity_id: str
    until: datetime
    timer: TimerHandle | None = None


@dataclass
class Evaluation:
    """Everything computed for one valve during a pass."""

    entity_id: str
    params: ValveParams
    seconds: int = 0
    past_hydro: float = 0.0
    future_hydro: float = 0.0
    past_irrigation: float = 0.0
    past_records: dict[str, hydro.HydroRecord] = field(default_factory=dict)
    future_records: dict[str, hydro.HydroRecord] = field(default_factory=dict)
    irrigation_by_day: dict[str, float] = field(default_factory=dict)
    skip_reason: str | None = None


def _local_now() -> datetime:
    return datetime.now().astimezone()


class IrrigationScheduler:
    def __init__(
        self,
        config: IrrigationConfig,
        registry: Registry,
        manager: ConnectionManager,
        store: JsonStore,
        events: EventBus,
        scheduler: Scheduler,
        *,
        clock: Callable[[], datetime] = _local_now,
    ) -> None:
        self._config = config
        self._registry = registry
        self._manager = manager
        self._store = store
        self._events = events
        self._scheduler = scheduler
        self._clock = clock
        self._valve_pattern = re.compile(config.valve_pattern)
        self._running: dict[str, RunningValve] = {}
        self._job: Job | None = None
        self._listeners: list[Callable[[], None]] = []
        self._hub_subscription: Unsubscribe | None = None

    @property
    def check_event_type(self) -> str:
        return f"{self._config.event_prefix}_check_irrigation"

    @property
    def running(self) -> dict[str, RunningValve]:
        return dict(self._running)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        if not self._config.enabled:
            logger.info("Irrigation scheduler disabled")
            return
        self._job = self._scheduler.add_job(self._config.check_interval, self.shutoff_due_valves)
        self._listeners = [
            self._events.on(RegistryEvent.STATE_UPDATED, self._on_state_updated),
            self._events.on(ConnectionEvent.CONNECTED, self._on_connected),
        ]
        logger.info("Irrigation scheduler started (valves matching %s)", self._config.valve_pattern)

    async def stop(self) -> None:
        for remove in self._listeners:
            remove()
        self._listeners = []
        if self._job is not None:
            self._job.cancel()
            self._job = None
        for valve in self._running.values():
            if valve.timer is not None:
                valve.timer.cancel()
        self._running.clear()
        await self._drop_hub_subscription()

    async def _drop_hub_subscription(self) -> None:
        unsubscribe, self._hub_subscription = self._hub_subscription, None
        if unsubscribe is not None:
            await unsubscribe()

    async def _on_connected(self, _connection: Any = None) -> None:
        await self._drop_hub_subscription()
        connection = self._manager.connection
        if connection is None or not connection.connected:
            return
        try:
            self._hub_subscription = await connection.subscribe_events(
                self._on_check_event, self.check_event_type
            )
        except (HubError, TimeoutError) as exc:
            logger.warning("Could not subscribe to %s: %s", self.check_event_type, exc)

    async def _on_check_event(self, _event: Any) -> None:
        await self.check_valves()

    async def _on_state_updated(self, update: StateUpdate) -> None:
        state = update.state
        if self._registry.matches_filter(state, {**self._valve_filter(), "state": "off"}):
            if update.old_state is None or update.old_state.state != "off":
                self._release(update.entity_id)
                await self.check_valves()
        elif self._registry.matches_filter(state, FORECAST_FILTER):
            if await self._store.get(FORECAST_TRIGGER_PATH, False):
                await self.check_valves()

    # ------------------------------------------------------------------
    # Valve discovery
    # ------------------------------------------------------------------

    def _valve_filter(self) -> dict[str, Any]:
        return {"entity_id": lambda entity_id: bool(self._valve_pattern.match(entity_id))}

    def valves(self) -> list[State]:
        return self._registry.get_states(self._valve_filter())

    def forecast_sources(self) -> list[State]:
        return self._registry.get_states(FORECAST_FILTER)

    async def valve_params(self, entity_id: str) -> ValveParams | None:
        return find_valve_params(await self._store.get(VALVES_PATH, []), entity_id)

    # ------------------------------------------------------------------
    # Data collection
    # ------------------------------------------------------------------

    async def _valve_history(
        self, entity_id: str, start: datetime, end: datetime
    ) -> list[dict[str, Any]] | None:
        response = await self._manager.rest.get(
            f"/history/period/{start.isoformat()}",
            params={"end_time": end.isoformat(), "filter_entity_id": entity_id},
        )
        if not response.ok or not isinstance(response.json, list):
            return None
        entries: list[dict[str, Any]] = []
        for series in response.json:
            for entry in series if isinstance(series, list) else [series]:
                if isinstance(entry, dict) and entry.get("entity_id", entity_id) == entity_id:
                    entries.append(entry)
        return entries

    async def _forecast(
        self, source: State, today: date, until_day: date, latitude: float
    ) -> dict[str, hydro.HydroRecord]:
        """Daily forecast records of one weather entity.

        Raises
        ------
        HubError
            If the hub cannot be reached or rejects the service call.
        """
        result = await self._registry.call_service(
            "weather",
            "get_forecasts",
            service_data={"type": "daily"},
            target={"entity_id": source.entity_id},
            return_response=True,
        )
        if result is None:
            raise HubError("Not connected to the hub")
        response = (result.get("response") or {}).get(source.entity_id) or {}
        forecasts = response.get("forecast") or []
        return hydro.forecast_records(
            forecasts,
            source.attributes.get("temperature_unit", "°C"),
            source.attributes.get("precipitation_unit", "mm"),
            latitude,
            today,
            until_day,
        )

    async def evaluate(self, entity_id: str, *, persist: bool = True) -> Evaluation | None:
        """Run the decision procedure for one valve.

        Returns ``None`` when the stored parameters are unusable.
        """
        params = await self.valve_params(entity_id)
        if params is None or not params.complete:
            logger.info("Some irrigation values of %s are missing or invalid; skipping", entity_id)
            return None
        volume_per_minute = params.volume_per_minute_mm
        minimal_kelvin = params.minimal_kelvin
        assert volume_per_minute is not None and minimal_kelvin is not None

        evaluation = Evaluation(entity_id=entity_id, params=params)
        now = self._clock()
        today = now.date()
        since_day = today - timedelta(days=params.observed_days)
        until_day = today + timedelta(days=params.overshoot_days)
        window_start = datetime.combine(since_day, time.min, tzinfo=now.tzinfo)

        history = await self._valve_history(entity_id, window_start, now)
        if history is None:
            evaluation.skip_reason = "history unavailable"
            logger.warning("Skipping %s: valve history unavailable", entity_id)
            return evaluation
        evaluation.past_irrigation, evaluation.irrigation_by_day = hydro.past_irrigation(
            history, volume_per_minute, window_start
        )

        stored = hydro.load_history(await self._store.get(hydro.HISTORY_PATH, {}))
        evaluation.past_hydro, evaluation.past_records = hydro.past_hydro(
            stored, since_day, today, params.evaporation_factor
        )

        latitude = self._registry.get_config().get("latitude")
        if latitude is None:
            evaluation.skip_reason = "latitude unknown"
            logger.warning("Skipping %s: hub latitude unknown", entity_id)
            return evaluation
        try:
            sources = await asyncio.gather(
                *(
                    self._forecast(source, today, until_day, float(latitude))
                    for source in self.forecast_sources()
                )
            )
        except (HubError, TimeoutError) as exc:
            evaluation.skip_reason = "forecast unavailable"
            logger.warning("Skipping %s: forecast unavailable (%s)", entity_id, exc)
            return evaluation
        evaluation.future_hydro, evaluation.future_records = hydro.most_pessimistic(
            sources, params.evaporation_factor
        )

        today_key = hydro.day_key(today)
        if persist and today_key in evaluation.future_records:
            keep_days = max(
                self._config.history_days, params.observed_days + params.overshoot_days
            )
            today_record = evaluation.future_records[today_key]
            merged = hydro.merge_history(stored, today, today_record, keep_days)
            await self._store.set(hydro.HISTORY_PATH, {k: r.to_json() for k, r in merged.items()})

        if evaluation.irrigation_by_day.get(today_key):
            evaluation.skip_reason = "irrigated today"
            logger.info("Skip %s as it has irrigated today", entity_id)
            return evaluation

        level = evaluation.past_hydro + evaluation.past_irrigation + evaluation.future_hydro
        evaluation.seconds = hydro.irrigation_seconds(
            level,
            volume_per_minute,
            temperature_ok=hydro.reached_minimal_temperature(
                evaluation.future_records, minimal_kelvin
            ),
            has_history=(
                params.observed_days > 0
                and hydro.day_key(since_day) in evaluation.past_records
            ),
        )
        logger.debug("Irrigation level of %s is %.2fmm, %ds", entity_id, level, evaluation.seconds)
        return evaluation

    async def irrigate_seconds(self, entity_id: str) -> int:
        evaluation = await self.evaluate(entity_id)
        return evaluation.seconds if evaluation is not None else 0

    # ------------------------------------------------------------------
    # Running valves
    # ------------------------------------------------------------------

    def _busy(self) -> bool:
        return bool(self._running) or any(valve.state == "on" for valve in self.valves())

    async def check_valves(self) -> str | None:
        """Evaluate valves and start the first one that needs water.

        Returns the started entity id, if any.
        """
        logger.info("Checking irrigation valves...")
        if self._busy():
            logger.info("Skip irrigation check as there is at least one valve irrigating")
            return None

        for valve in self.valves():
            try:
                seconds = await self.irrigate_seconds(valve.entity_id)
            except Exception:
                logger.exception("Irrigation evaluation of %s failed", valve.entity_id)
                continue
            if seconds <= 0:
                continue

            # Re-check and claim without yielding: nothing may start in between.
            if self._busy():
                logger.info("Another valve started meanwhile; not starting %s", valve.entity_id)
                return None
            until = self._clock() + timedelta(seconds=seconds)
            running = RunningValve(valve.entity_id, until)
            self._running[valve.entity_id] = running
            running.timer = self._scheduler.call_later(
                seconds,
                lambda entity_id=valve.entity_id: self._finish(entity_id),
                label=f"irrigation:{valve.entity_id}",
            )

            if await self._switch(valve.entity_id, "turn_on"):
                logger.info("Irrigating %s for %ds", valve.entity_id, seconds)
                return valve.entity_id
            self._release(valve.entity_id)
            return None
        return None

    async def _switch(self, entity_id: str, service: str) -> bool:
        try:
            result = await self._registry.call_service(
                "homeassistant", service, service_data={"entity_id": entity_id}
            )
        except (HubError, TimeoutError) as exc:
            logger.warning("Could not %s %s: %s", service, entity_id, exc)
            return False
        if result is None:
            logger.warning("Could not %s %s: not connected", service, entity_id)
            return False
        return True

    def _release(self, entity_id: str) -> None:
        valve = self._running.pop(entity_id, None)
        if valve is not None and valve.timer is not None:
            valve.timer.cancel()

    async def _finish(self, entity_id: str) -> None:
        if entity_id not in self._running:
            return
        self._running.pop(entity_id, None)
        logger.info("Irrigation time of %s is over", entity_id)
        await self._switch(entity_id, "turn_off")

    async def shutoff_due_valves(self) -> None:
        """Backstop: switch off every running valve whose deadline passed."""
        now = self._clock()
        for valve in list(self._running.values()):
            if valve.until <= now:
                self._release(valve.entity_id)
                logger.info("Backstop shutoff of %s", valve.entity_id)
                await self._switch(valve.entity_id, "turn_off")

    # ------------------------------------------------------------------
    # Presentation and settings
    # ------------------------------------------------------------------

    async def valve_payload(self, entity_id: str) -> dict[str, Any]:
        """Valve detail converted to the units the operator entered for this valve."""
        state = self._registry.get_state(entity_id)
        evaluation = await self.evaluate(entity_id, persist=False) if state is not None else None
        if state is None or evaluation is None:
            return {"entityId": entity_id, "params": {}, "series": [], "amounts": {}}

        params = evaluation.params
        length = length_unit(params.volume_per_minute) or "mm"
        degrees = temperature_unit(params.minimal_temperature) or "C"

        def mm(value: float) -> float | None:
            return from_millimeters(value, length)

        records = {**evaluation.past_records, **evaluation.future_records}
        series = [
            {
                "datetime": key,
                "precipitation": mm(record.precipitation),
                "evaporation": mm(record.evaporation * params.evaporation_factor),
                "temperature": {
                    "min": from_kelvin(record.temp_min, degrees),
                    "max": from_kelvin(record.temp_max, degrees),
                },
                "irrigation": mm(evaluation.irrigation_by_day.get(key, 0.0)),
            }
            for key, record in sorted(records.items())
        ]
        return {
            "entityId": entity_id,
            "entityName": state.attributes.get("friendly_name"),
            "params": params.to_storage(),
            "amounts": {
                "pastHydro": mm(evaluation.past_hydro),
                "futureHydro": mm(evaluation.future_hydro),
                "pastIrrigation": mm(evaluation.past_irrigation),
                "futureIrrigation": evaluation.seconds,
            },
            "series": series,
        }

    async def valve_payloads(self) -> list[dict[str, Any]]:
        return [await self.valve_payload(valve.entity_id) for valve in self.valves()]

    async def set_valve_params(self, entity_id: str, params: dict[str, Any]) -> dict[str, Any]:
        """Store operator settings for *entity_id* and return its fresh payload.

        Raises
        ------
        ValueError
            If the settings do not validate.
        """
        valve = normalize_operator_params(entity_id, params)
        stored = await self._store.get(VALVES_PATH, [])
        others = [
            entry
            for entry in (stored if isinstance(stored, list) else [])
            if isinstance(entry, dict) and entry.get("entityId") != entity_id
        ]
        await self._store.set(VALVES_PATH, [valve.to_storage(), *others])
        return await self.valve_payload(entity_id)

    async def get_features(self) -> dict[str, bool]:
        return {"checkOnForecastUpdates": bool(await self._store.get(FORECAST_TRIGGER_PATH, False))}

    async def set_features(self, check_on_forecast_updates: bool) -> dict[str, bool]:
        await self._store.set(FORECAST_TRIGGER_PATH, bool(check_on_forecast_updates))
        return {"checkOnForecastUpdates": bool(check_on_forecast_updates)}
