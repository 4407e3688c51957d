"""Day-keyed water balance records and the irrigation decision.

Everything in here is pure: callers fetch history/forecasts and pass them in.
Days are keyed ``YYYY-MM-DD`` in local time.  Stored evaporation is the raw
model output; a valve's ``evaporation_factor`` is applied when balancing.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Any

from blueberry.irrigation.evaporation import hargreaves_samani
from blueberry.irrigation.units import KELVIN_OFFSET, to_kelvin, to_millimeters

logger = logging.getLogger(__name__)

HISTORY_PATH = "irrigation/history"


@dataclass(frozen=True)
class HydroRecord:
    """One day of weather: mm of evaporation/precipitation, Kelvin extremes."""

    evaporation: float
    precipitation: float
    temp_min: float
    temp_max: float

    def balance(self, evaporation_factor: float) -> float:
        return self.precipitation - self.evaporation * evaporation_factor

    def to_json(self) -> dict[str, Any]:
        return {
            "evaporation": self.evaporation,
            "precipitation": self.precipitation,
            "temperature": {"min": self.temp_min, "max": self.temp_max},
        }

    @classmethod
    def from_json(cls, data: Mapping[str, Any]) -> HydroRecord:
        temperature = data.get("temperature") or {}
        return cls(
            evaporation=float(data["evaporation"]),
            precipitation=float(data["precipitation"]),
            temp_min=float(temperature["min"]),
            temp_max=float(temperature["max"]),
        )


def day_key(day: date) -> str:
    return day.isoformat()


def local_day(timestamp: str | datetime) -> date:
    """Local calendar day of an ISO timestamp (naive timestamps are local)."""
    moment = datetime.fromisoformat(timestamp) if isinstance(timestamp, str) else timestamp
    if moment.tzinfo is not None:
        moment = moment.astimezone()
    return moment.date()


def load_history(raw: Any) -> dict[str, HydroRecord]:
    """Parse the persisted history map, dropping malformed days."""
    records: dict[str, HydroRecord] = {}
    if not isinstance(raw, Mapping):
        return records
    for key, value in raw.items():
        try:
            date.fromisoformat(key)
            records[key] = HydroRecord.from_json(value)
        except (KeyError, TypeError, ValueError):
            logger.warning("Dropping malformed hydro record for %r", key)
    return records


def sum_balance(records: Mapping[str, HydroRecord], evaporation_factor: float) -> float:
    return sum(record.balance(evaporation_factor) for record in records.values())


def past_hydro(
    records: Mapping[str, HydroRecord],
    since_day: date,
    today: date,
    evaporation_factor: float,
) -> tuple[float, dict[str, HydroRecord]]:
    """Balance of recorded days with ``since_day <= day < today``."""
    window = {
        key: record
        for key, record in records.items()
        if since_day <= date.fromisoformat(key) < today
    }
    return sum_balance(window, evaporation_factor), window


def past_irrigation(
    history: Iterable[Mapping[str, Any]],
    volume_per_minute: float,
    window_start: datetime,
) -> tuple[float, dict[str, float]]:
    """Irrigated millimetres per day from a valve's on/off history.

    Each on→off interval adds ``minutes × volume_per_minute`` to the day it
    started.  An interval still open at the end of the history is closed at
    the end of its day.
    """
    per_day: dict[str, float] = {}
    on_since: datetime | None = None

    def add(start: datetime, end: datetime) -> None:
        minutes = max((end - start).total_seconds(), 0.0) / 60
        key = day_key(local_day(start))
        per_day[key] = per_day.get(key, 0.0) + minutes * volume_per_minute

    entries = sorted(
        [
            (datetime.fromisoformat(e["last_changed"]), e.get("state"))
            for e in history
            if e.get("last_changed")
        ],
        key=lambda item: item[0],
    )
    for changed, state in entries:
        if state == "on":
            if on_since is None:
                on_since = max(changed, window_start)
        elif on_since is not None:
            add(on_since, changed)
            on_since = None

    if on_since is not None:
        day = local_day(on_since)
        end_of_day = datetime.combine(day + timedelta(days=1), time.min).astimezone()
        add(on_since, end_of_day)

    return sum(per_day.values()), per_day


def forecast_records(
    forecasts: Iterable[Mapping[str, Any]],
    temperature_unit: str,
    precipitation_unit: str,
    latitude: float,
    today: date,
    until_day: date,
) -> dict[str, HydroRecord]:
    """Aggregate daily forecast entries with ``today <= day <= until_day``."""
    days: dict[str, dict[str, float]] = {}
    for forecast in forecasts:
        try:
            day = local_day(forecast["datetime"])
        except (KeyError, TypeError, ValueError):
            continue
        if not today <= day <= until_day:
            continue

        temp_max = to_kelvin(forecast.get("temperature"), temperature_unit)
        temp_min = to_kelvin(forecast.get("templow"), temperature_unit)
        if temp_max is None or temp_min is None:
            logger.debug("Skipping forecast for %s without usable temperatures", day)
            continue

        evaporation = hargreaves_samani(
            day,
            temp_min - KELVIN_OFFSET,
            temp_max - KELVIN_OFFSET,
            forecast.get("humidity"),
            latitude,
        )
        precipitation = (
            to_millimeters(forecast.get("precipitation") or 0, precipitation_unit) or 0.0
        )

        key = day_key(day)
        entry = days.setdefault(
            key,
            {"evaporation": 0.0, "precipitation": 0.0, "min": math.inf, "max": -math.inf},
        )
        entry["evaporation"] += evaporation
        entry["precipitation"] += precipitation
        entry["min"] = min(entry["min"], temp_min)
        entry["max"] = max(entry["max"], temp_max)

    return {
        key: HydroRecord(e["evaporation"], e["precipitation"], e["min"], e["max"])
        for key, e in sorted(days.items())
    }


def most_pessimistic(
    sources: Iterable[Mapping[str, HydroRecord]], evaporation_factor: float
) -> tuple[float, dict[str, HydroRecord]]:
    """The forecast source with the lowest net balance; ``(0, {})`` without sources."""
    best: tuple[float, dict[str, HydroRecord]] | None = None
    for records in sources:
        amount = sum_balance(records, evaporation_factor)
        if best is None or amount < best[0]:
            best = (amount, dict(records))
    return best if best is not None else (0.0, {})


def reached_minimal_temperature(records: Mapping[str, HydroRecord], minimal_kelvin: float) -> bool:
    """Every forecast day's minimum meets or exceeds *minimal_kelvin*."""
    return all(record.temp_min >= minimal_kelvin for record in records.values())


def irrigation_seconds(
    level: float,
    volume_per_minute: float,
    *,
    temperature_ok: bool,
    has_history: bool,
) -> int:
    """Seconds of irrigation needed to lift a negative *level* back to zero."""
    if temperature_ok and has_history and level < 0:
        return math.ceil(-level / volume_per_minute * 60)
    return 0


def merge_history(
    stored: Mapping[str, HydroRecord],
    today: date,
    today_record: HydroRecord | None,
    keep_days: int,
) -> dict[str, HydroRecord]:
    """Replace today's entry and drop days older than ``today - keep_days``."""
    oldest = today - timedelta(days=keep_days)
    merged = {
        key: record
        for key, record in stored.items()
        if oldest <= date.fromisoformat(key) < today
    }
    if today_record is not None:
        merged[day_key(today)] = today_record
    return dict(sorted(merged.items()))
