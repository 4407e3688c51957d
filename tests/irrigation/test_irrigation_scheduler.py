"""Tests for the irrigation scheduler running against a simulated hub.

Covers:
- decision end to end (history over REST, forecasts over WebSocket)
- skip reasons: missing history, forecast, latitude, irrigated today
- start/stop of a single valve, precise timer and backstop shutoff
- overlapping check passes start at most one valve
- triggers: valve switching off, forecast updates, hub check event
- attribute-only valve updates keep a running claim
- operator payloads and settings
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta

import pytest
from conftest import VALID_TOKEN, HubFailure

from blueberry.config import IrrigationConfig
from blueberry.irrigation.hydro import HISTORY_PATH, HydroRecord
from blueberry.irrigation.params import VALVES_PATH
from blueberry.irrigation.scheduler import FORECAST_TRIGGER_PATH, IrrigationScheduler
from blueberry.registry import Registry, Topic

pytestmark = pytest.mark.unit

VALVE = "switch.garden_valve"
BACK_VALVE = "switch.back_valve"
WEATHER = "weather.home"
NOW = datetime(2026, 6, 10, 12, 0).astimezone()
WARM = 288.15


def _day(offset: int) -> str:
    return (NOW.date() + timedelta(days=offset)).isoformat()


def _valve_state(entity_id: str, state: str = "off", name: str = "Garden valve") -> dict:
    return {
        "entity_id": entity_id,
        "state": state,
        "attributes": {"friendly_name": name},
        "last_changed": "2026-06-10T07:00:00+00:00",
        "last_updated": "2026-06-10T07:00:00+00:00",
    }


WEATHER_STATE = {
    "entity_id": WEATHER,
    "state": "sunny",
    "attributes": {"temperature_unit": "°C", "precipitation_unit": "mm", "humidity": 40},
}


def _valve_params(entity_id: str) -> dict:
    return {
        "entityId": entity_id,
        "volume-per-minute": "2mm",
        "minimal-temperature": "5C",
        "observed-days": 2,
        "overshoot-days": 1,
        "evaporation-factor": 1,
    }


def _forecast(templow: float = 10) -> list[dict]:
    """Two forecast days, each with a net balance of -0.5mm."""
    return [
        {
            "datetime": f"{_day(offset)}T12:00:00",
            "temperature": 20 + offset,
            "templow": templow,
            "precipitation": 1.5,
        }
        for offset in (0, 1)
    ]


def _irrigated_today() -> list[dict]:
    return [
        {"entity_id": VALVE, "state": "on", "last_changed": NOW.replace(hour=6).isoformat()},
        {
            "entity_id": VALVE,
            "state": "off",
            "last_changed": NOW.replace(hour=6, minute=5).isoformat(),
        },
    ]


class Clock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture(autouse=True)
def _fixed_evaporation(monkeypatch):
    monkeypatch.setattr("blueberry.irrigation.hydro.hargreaves_samani", lambda *args: 2.0)


@pytest.fixture
def garden_hub(hub):
    hub.load_registry(
        states=[_valve_state(VALVE), WEATHER_STATE],
        config={"latitude": 52.0},
    )
    hub.forecasts[WEATHER] = _forecast()
    hub.history[VALVE] = []
    return hub


@pytest.fixture
def clock() -> Clock:
    return Clock(NOW)


@pytest.fixture
async def registry(garden_hub, manager, events, fake_scheduler):
    reg = Registry(manager, events, fake_scheduler)
    reg.start()
    yield reg
    await reg.stop()


@pytest.fixture
async def irrigation(garden_hub, registry, manager, store, events, fake_scheduler, clock, settle):
    await store.set(VALVES_PATH, [_valve_params(VALVE)])
    await store.set(
        HISTORY_PATH,
        {_day(offset): HydroRecord(3.0, 0.0, WARM, WARM).to_json() for offset in (-3, -2, -1)},
    )
    scheduler = IrrigationScheduler(
        IrrigationConfig(), registry, manager, store, events, fake_scheduler, clock=clock
    )
    scheduler.start()
    await manager.global_connect(reauth_token=VALID_TOKEN)
    await settle(events)
    yield scheduler
    await scheduler.stop()


async def _eventually(predicate, settle, events, attempts: int = 20) -> bool:
    for _ in range(attempts):
        if predicate():
            return True
        await settle(events)
    return predicate()


def _state_changed(entity_id: str, new_state: dict, old_state: dict | None = None) -> dict:
    return {"entity_id": entity_id, "new_state": new_state, "old_state": old_state}


# ---------------------------------------------------------------------------
# Decision
# ---------------------------------------------------------------------------


class TestEvaluate:
    async def test_dry_days_need_water(self, irrigation):
        """-6mm observed plus -1mm forecast at 2mm/min is 210 seconds."""
        evaluation = await irrigation.evaluate(VALVE)

        assert evaluation.skip_reason is None
        assert evaluation.past_hydro == pytest.approx(-6.0)
        assert evaluation.future_hydro == pytest.approx(-1.0)
        assert evaluation.past_irrigation == 0
        assert sorted(evaluation.past_records) == [_day(-2), _day(-1)]
        assert evaluation.seconds == 210

    async def test_cold_forecast(self, irrigation, garden_hub):
        garden_hub.forecasts[WEATHER] = _forecast(templow=2)
        assert await irrigation.irrigate_seconds(VALVE) == 0

    async def test_forecast_is_requested_daily(self, irrigation, garden_hub):
        await irrigation.evaluate(VALVE)

        [request] = [m for m in garden_hub.commands if m.get("service") == "get_forecasts"]
        assert request["domain"] == "weather"
        assert request["service_data"] == {"type": "daily"}
        assert request["target"] == {"entity_id": WEATHER}
        assert request["return_response"] is True

    async def test_history_request(self, irrigation, garden_hub):
        await irrigation.evaluate(VALVE)

        [request] = garden_hub.rest_requests
        assert request.url.path.startswith("/api/history/period/2026-06-08T00:00:00")
        assert request.url.params["filter_entity_id"] == VALVE
        assert request.url.params["end_time"] == NOW.isoformat()

    async def test_wet_past_needs_nothing(self, irrigation, store):
        await store.set(
            HISTORY_PATH,
            {_day(offset): HydroRecord(0.0, 10.0, WARM, WARM).to_json() for offset in (-2, -1)},
        )
        assert await irrigation.irrigate_seconds(VALVE) == 0

    async def test_past_irrigation_counts(self, irrigation, garden_hub):
        yesterday = NOW - timedelta(days=1)
        garden_hub.history[VALVE] = [
            {"entity_id": VALVE, "state": "on", "last_changed": yesterday.isoformat()},
            {
                "entity_id": VALVE,
                "state": "off",
                "last_changed": (yesterday + timedelta(minutes=2)).isoformat(),
            },
        ]
        evaluation = await irrigation.evaluate(VALVE)

        assert evaluation.past_irrigation == pytest.approx(4.0)
        assert evaluation.seconds == 90

    async def test_history_unavailable(self, irrigation, garden_hub):
        garden_hub.rest_fail = True
        evaluation = await irrigation.evaluate(VALVE)

        assert evaluation.skip_reason == "history unavailable"
        assert evaluation.seconds == 0

    async def test_forecast_unavailable(self, irrigation, garden_hub):
        garden_hub.responses["call_service"] = HubFailure("service_validation_error")
        evaluation = await irrigation.evaluate(VALVE)

        assert evaluation.skip_reason == "forecast unavailable"
        assert evaluation.seconds == 0

    async def test_latitude_unknown(self, irrigation, garden_hub, registry):
        garden_hub.responses["get_config"] = {}
        assert await registry.rebuild([Topic.CONFIG])

        evaluation = await irrigation.evaluate(VALVE)
        assert evaluation.skip_reason == "latitude unknown"

    async def test_irrigated_today(self, irrigation, garden_hub):
        garden_hub.history[VALVE] = _irrigated_today()
        evaluation = await irrigation.evaluate(VALVE)

        assert evaluation.skip_reason == "irrigated today"
        assert evaluation.seconds == 0

    async def test_not_enough_history(self, irrigation, store):
        await store.set(HISTORY_PATH, {_day(-1): HydroRecord(3.0, 0.0, WARM, WARM).to_json()})
        assert await irrigation.irrigate_seconds(VALVE) == 0

    async def test_zero_observed_days_never_irrigates(self, irrigation, store):
        await store.set(VALVES_PATH, [{**_valve_params(VALVE), "observed-days": 0}])
        assert await irrigation.irrigate_seconds(VALVE) == 0

    async def test_invalid_params(self, irrigation, store):
        await store.set(VALVES_PATH, [{**_valve_params(VALVE), "observed-days": -1}])
        assert await irrigation.evaluate(VALVE) is None
        assert await irrigation.irrigate_seconds(VALVE) == 0

    async def test_today_is_persisted(self, irrigation, store):
        await irrigation.evaluate(VALVE)

        history = await store.get(HISTORY_PATH)
        assert history[_day(0)] == {
            "evaporation": 2.0,
            "precipitation": 1.5,
            "temperature": {"min": pytest.approx(283.15), "max": pytest.approx(293.15)},
        }
        assert _day(-3) in history
        assert _day(1) not in history

    async def test_dry_run_does_not_persist(self, irrigation, store):
        await irrigation.evaluate(VALVE, persist=False)
        assert _day(0) not in await store.get(HISTORY_PATH)


# ---------------------------------------------------------------------------
# Running valves
# ---------------------------------------------------------------------------


class TestCheckValves:
    async def test_starts_valve_with_timer(self, irrigation, garden_hub, fake_scheduler):
        assert await irrigation.check_valves() == VALVE

        [timer] = fake_scheduler.pending_timers(f"irrigation:{VALVE}")
        assert timer.delay == 210
        assert garden_hub.sent_service_calls("turn_on") == [VALVE]
        assert irrigation.running[VALVE].until == NOW + timedelta(seconds=210)

    async def test_timer_switches_valve_off(self, irrigation, garden_hub, fake_scheduler):
        await irrigation.check_valves()
        [timer] = fake_scheduler.pending_timers(f"irrigation:{VALVE}")

        await fake_scheduler.fire(timer)

        assert garden_hub.sent_service_calls("turn_off") == [VALVE]
        assert irrigation.running == {}

    async def test_one_valve_at_a_time(self, irrigation, garden_hub, registry, store):
        garden_hub.responses["get_states"] = [
            _valve_state(VALVE),
            _valve_state(BACK_VALVE, name="Back valve"),
            WEATHER_STATE,
        ]
        await registry.rebuild([Topic.STATE])
        await store.set(VALVES_PATH, [_valve_params(VALVE), _valve_params(BACK_VALVE)])

        assert await irrigation.check_valves() == VALVE
        assert await irrigation.check_valves() is None
        assert garden_hub.sent_service_calls("turn_on") == [VALVE]

    async def test_overlapping_passes_start_one_valve(
        self, irrigation, garden_hub, registry, store
    ):
        garden_hub.responses["get_states"] = [
            _valve_state(VALVE),
            _valve_state(BACK_VALVE, name="Back valve"),
            WEATHER_STATE,
        ]
        await registry.rebuild([Topic.STATE])
        await store.set(VALVES_PATH, [_valve_params(VALVE), _valve_params(BACK_VALVE)])

        started = await asyncio.gather(*(irrigation.check_valves() for _ in range(3)))

        assert [entity_id for entity_id in started if entity_id is not None] == [VALVE]
        assert garden_hub.sent_service_calls("turn_on") == [VALVE]
        assert list(irrigation.running) == [VALVE]

    async def test_valve_switched_on_elsewhere_blocks(self, irrigation, garden_hub, registry):
        registry.apply_state(VALVE, _valve_state(VALVE, "on"))

        assert await irrigation.check_valves() is None
        assert garden_hub.sent_service_calls("turn_on") == []

    async def test_next_valve_when_first_needs_nothing(
        self, irrigation, garden_hub, registry, store
    ):
        garden_hub.responses["get_states"] = [
            _valve_state(VALVE),
            _valve_state(BACK_VALVE, name="Back valve"),
            WEATHER_STATE,
        ]
        await registry.rebuild([Topic.STATE])
        garden_hub.history[VALVE] = _irrigated_today()
        await store.set(VALVES_PATH, [_valve_params(VALVE), _valve_params(BACK_VALVE)])

        assert await irrigation.check_valves() == BACK_VALVE

    async def test_failed_switch_releases_claim(self, irrigation, garden_hub, fake_scheduler):
        garden_hub.responses["call_service"] = lambda msg: (
            HubFailure("not_found")
            if msg["service"] == "turn_on"
            else {"context": {}, "response": {WEATHER: {"forecast": _forecast()}}}
        )

        assert await irrigation.check_valves() is None
        assert irrigation.running == {}
        assert fake_scheduler.pending_timers(f"irrigation:{VALVE}") == []

    async def test_nothing_to_do(self, irrigation, garden_hub):
        garden_hub.rest_fail = True
        assert await irrigation.check_valves() is None
        assert garden_hub.sent_service_calls("turn_on") == []

    async def test_backstop_shutoff(self, irrigation, garden_hub, fake_scheduler, clock):
        await irrigation.check_valves()

        clock.now = NOW + timedelta(seconds=100)
        await irrigation.shutoff_due_valves()
        assert garden_hub.sent_service_calls("turn_off") == []

        clock.now = NOW + timedelta(seconds=210)
        await irrigation.shutoff_due_valves()
        assert garden_hub.sent_service_calls("turn_off") == [VALVE]
        assert irrigation.running == {}
        assert fake_scheduler.pending_timers(f"irrigation:{VALVE}") == []

    async def test_backstop_job_is_registered(self, irrigation, fake_scheduler):
        [job] = fake_scheduler.jobs
        assert job.description == "every 5 minutes"
        assert job.callback == irrigation.shutoff_due_valves


# ---------------------------------------------------------------------------
# Triggers
# ---------------------------------------------------------------------------


class TestTriggers:
    async def test_valve_switching_off_triggers_check(
        self, irrigation, garden_hub, registry, events, settle
    ):
        registry.apply_state(VALVE, _valve_state(VALVE, "on"))

        garden_hub.fire_event("state_changed", _state_changed(VALVE, _valve_state(VALVE, "off")))

        assert await _eventually(lambda: garden_hub.sent_service_calls("turn_on"), settle, events)
        assert garden_hub.sent_service_calls("turn_on") == [VALVE]

    async def test_valve_staying_off_does_not_trigger(self, irrigation, garden_hub, events, settle):
        garden_hub.fire_event(
            "state_changed", _state_changed(VALVE, _valve_state(VALVE, "off", name="Renamed"))
        )
        await settle(events)

        assert garden_hub.sent_service_calls("turn_on") == []

    async def test_valve_off_releases_running_valve(
        self, irrigation, garden_hub, registry, fake_scheduler, events, settle
    ):
        await irrigation.check_valves()
        registry.apply_state(VALVE, _valve_state(VALVE, "on"))
        garden_hub.history[VALVE] = _irrigated_today()

        garden_hub.fire_event("state_changed", _state_changed(VALVE, _valve_state(VALVE, "off")))

        assert await _eventually(lambda: irrigation.running == {}, settle, events)
        assert fake_scheduler.pending_timers(f"irrigation:{VALVE}") == []

    async def test_attribute_update_keeps_running_valve(
        self, irrigation, garden_hub, fake_scheduler, events, settle
    ):
        await irrigation.check_valves()

        garden_hub.fire_event(
            "state_changed", _state_changed(VALVE, _valve_state(VALVE, "off", name="Renamed"))
        )
        await settle(events)

        assert list(irrigation.running) == [VALVE]
        [timer] = fake_scheduler.pending_timers(f"irrigation:{VALVE}")
        assert timer.delay == 210

    async def test_forecast_update_respects_feature_flag(
        self, irrigation, garden_hub, events, settle
    ):
        rainy = _state_changed(WEATHER, {**WEATHER_STATE, "state": "rainy"})

        garden_hub.fire_event("state_changed", rainy)
        await settle(events)
        assert garden_hub.sent_service_calls("turn_on") == []

        await irrigation.set_features(True)
        garden_hub.fire_event("state_changed", rainy)
        assert await _eventually(lambda: garden_hub.sent_service_calls("turn_on"), settle, events)

    async def test_hub_check_event(self, irrigation, garden_hub, events, settle):
        assert "blueberry_check_irrigation" in garden_hub.live_subscriptions()

        garden_hub.fire_event("blueberry_check_irrigation", {})

        assert await _eventually(lambda: garden_hub.sent_service_calls("turn_on"), settle, events)

    async def test_stop_drops_hub_subscription(
        self, irrigation, garden_hub, fake_scheduler, settle, events
    ):
        await irrigation.stop()
        await settle(events)

        assert "blueberry_check_irrigation" not in garden_hub.live_subscriptions()
        assert fake_scheduler.jobs[0].cancelled

    async def test_disabled(self, registry, manager, store, events, fake_scheduler):
        scheduler = IrrigationScheduler(
            IrrigationConfig(enabled=False), registry, manager, store, events, fake_scheduler
        )
        scheduler.start()
        assert fake_scheduler.jobs == []
        await scheduler.stop()


# ---------------------------------------------------------------------------
# Payloads and settings
# ---------------------------------------------------------------------------


class TestPayloads:
    async def test_valve_payload(self, irrigation):
        payload = await irrigation.valve_payload(VALVE)

        assert payload["entityId"] == VALVE
        assert payload["entityName"] == "Garden valve"
        assert payload["params"]["volume-per-minute"] == "2mm"
        assert payload["amounts"] == {
            "pastHydro": pytest.approx(-6.0),
            "futureHydro": pytest.approx(-1.0),
            "pastIrrigation": 0,
            "futureIrrigation": 210,
        }
        assert [point["datetime"] for point in payload["series"]] == [
            _day(-2),
            _day(-1),
            _day(0),
            _day(1),
        ]
        today = payload["series"][2]
        assert today["temperature"]["min"] == pytest.approx(10.0)
        assert today["precipitation"] == pytest.approx(1.5)

    async def test_unknown_valve(self, irrigation):
        assert await irrigation.valve_payload("switch.nope") == {
            "entityId": "switch.nope",
            "params": {},
            "series": [],
            "amounts": {},
        }

    async def test_valve_payloads(self, irrigation):
        payloads = await irrigation.valve_payloads()
        assert [p["entityId"] for p in payloads] == [VALVE]

    async def test_set_valve_params_converts_units(self, irrigation, store):
        await store.set(VALVES_PATH, [_valve_params(VALVE), _valve_params(BACK_VALVE)])

        payload = await irrigation.set_valve_params(
            VALVE,
            {"volume-per-minute": "0.1 IN", "minimal-temperature": "41 f", "observed-days": 2},
        )

        stored = await store.get(VALVES_PATH)
        assert [entry["entityId"] for entry in stored] == [VALVE, BACK_VALVE]
        assert stored[0]["volume-per-minute"] == "0.1in"
        assert stored[0]["minimal-temperature"] == "41F"
        assert payload["amounts"]["pastHydro"] == pytest.approx(-6.0 / 25.4)
        assert payload["series"][2]["temperature"]["min"] == pytest.approx(50.0)

    async def test_set_invalid_valve_params(self, irrigation, store):
        with pytest.raises(ValueError):
            await irrigation.set_valve_params(VALVE, {"volume-per-minute": "lots"})
        assert await store.get(VALVES_PATH) == [_valve_params(VALVE)]

    async def test_features(self, irrigation, store):
        assert await irrigation.get_features() == {"checkOnForecastUpdates": False}

        assert await irrigation.set_features(True) == {"checkOnForecastUpdates": True}
        assert await store.get(FORECAST_TRIGGER_PATH) is True
        assert await irrigation.get_features() == {"checkOnForecastUpdates": True}
