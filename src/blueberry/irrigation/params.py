"""Per-valve irrigation parameters as persisted under ``irrigation/valves``.

Stored entries use the dash-separated field names of the operator form::

    {"entityId": "switch.garden_valve", "volume-per-minute": "3mm",
     "minimal-temperature": "5C", "observed-days": 3, "overshoot-days": 3,
     "evaporation-factor": 1}
"""

from __future__ import annotations

import logging
import re
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from blueberry.irrigation.units import to_kelvin, to_millimeters

logger = logging.getLogger(__name__)

VALVES_PATH = "irrigation/valves"

_OPERATOR_VOLUME = re.compile(r"^\d+(?:\.\d+)?\s?(in|mm)$", re.IGNORECASE)
_OPERATOR_TEMPERATURE = re.compile(r"^-?\d+(?:\.\d+)?\s?[FC]$", re.IGNORECASE)


class ValveParams(BaseModel):
    """Operator-facing valve settings; unit strings are parsed lazily."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    entity_id: str = Field(alias="entityId")
    volume_per_minute: str = Field(default="1mm", alias="volume-per-minute")
    minimal_temperature: str = Field(default="5C", alias="minimal-temperature")
    observed_days: int = Field(default=3, ge=0, alias="observed-days")
    overshoot_days: int = Field(default=3, ge=0, alias="overshoot-days")
    evaporation_factor: float = Field(default=1.0, ge=0, alias="evaporation-factor")

    @property
    def volume_per_minute_mm(self) -> float | None:
        """Irrigation rate in mm/min, ``None`` if the unit string does not parse."""
        return to_millimeters(self.volume_per_minute)

    @property
    def minimal_kelvin(self) -> float | None:
        return to_kelvin(self.minimal_temperature)

    @property
    def complete(self) -> bool:
        vpm = self.volume_per_minute_mm
        return vpm is not None and vpm > 0 and self.minimal_kelvin is not None

    def to_storage(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True)


def normalize_operator_params(entity_id: str, params: dict[str, Any]) -> ValveParams:
    """Validate settings typed by an operator and bring them into stored form.

    Raises
    ------
    ValueError
        If a unit string has the wrong shape or a numeric field is invalid.
    """
    volume = str(params.get("volume-per-minute", params.get("volume_per_minute", "1mm")))
    temperature = str(params.get("minimal-temperature", params.get("minimal_temperature", "5C")))
    if not _OPERATOR_VOLUME.match(volume.strip()):
        raise ValueError(f"Invalid volume per minute: {volume!r} (expected e.g. '3mm' or '1in')")
    if not _OPERATOR_TEMPERATURE.match(temperature.strip()):
        raise ValueError(f"Invalid minimal temperature: {temperature!r} (expected e.g. '5C')")

    merged = {
        **params,
        "entityId": entity_id,
        "volume-per-minute": volume.replace(" ", "").lower(),
        "minimal-temperature": temperature.replace(" ", "").upper(),
    }
    merged.pop("volume_per_minute", None)
    merged.pop("minimal_temperature", None)
    try:
        return ValveParams.model_validate(merged)
    except ValidationError as exc:
        raise ValueError(str(exc)) from exc


def find_valve_params(stored: Any, entity_id: str) -> ValveParams | None:
    """Pick *entity_id*'s entry out of the stored list, applying defaults.

    Returns defaults when the valve has no entry and ``None`` when the stored
    entry is corrupt.
    """
    entries = stored if isinstance(stored, list) else []
    entry = next(
        (e for e in entries if isinstance(e, dict) and e.get("entityId") == entity_id),
        {"entityId": entity_id},
    )
    try:
        return ValveParams.model_validate(entry)
    except ValidationError as exc:
        logger.warning("Ignoring invalid irrigation parameters of %s: %s", entity_id, exc)
        return None
