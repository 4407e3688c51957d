"""Parse unit-tagged quantities (``"3mm"``, ``"1 in"``, ``"5C"``, ``"41 °F"``).

Internal math uses millimetres and Kelvin.  Anything unparseable, or tagged
with an unknown unit, yields ``None``.
"""

from __future__ import annotations

import re
from collections.abc import Callable, Mapping

_QUANTITY_PATTERN = re.compile(r"^\s*(-?\d+(?:\.\d*)?)\s*°?\s*([A-Za-z]*)\s*$")

KELVIN_OFFSET = 273.15
MM_PER_INCH = 25.4

_TO_KELVIN: dict[str, Callable[[float], float]] = {
    "C": lambda value: value + KELVIN_OFFSET,
    "F": lambda value: (value - 32) / 1.8 + KELVIN_OFFSET,
    "K": lambda value: value,
}

_FROM_KELVIN: dict[str, Callable[[float], float]] = {
    "C": lambda kelvin: kelvin - KELVIN_OFFSET,
    "F": lambda kelvin: (kelvin - KELVIN_OFFSET) * 1.8 + 32,
    "K": lambda kelvin: kelvin,
}

_TO_MILLIMETERS: dict[str, Callable[[float], float]] = {
    "mm": lambda value: value,
    "in": lambda value: value * MM_PER_INCH,
}

_FROM_MILLIMETERS: dict[str, Callable[[float], float]] = {
    "mm": lambda mm: mm,
    "in": lambda mm: mm / MM_PER_INCH,
}


def split_quantity(text: str | None) -> tuple[float, str] | None:
    """Split ``"2.5 in"`` into ``(2.5, "in")``; ``None`` when it does not parse."""
    if text is None:
        return None
    match = _QUANTITY_PATTERN.match(str(text))
    if match is None:
        return None
    return float(match.group(1)), match.group(2)


def transform_value(
    text: str | None, transforms: Mapping[str, Callable[[float], float]]
) -> float | None:
    parsed = split_quantity(text)
    if parsed is None:
        return None
    value, unit = parsed
    transform = transforms.get(unit) or transforms.get(unit.upper()) or transforms.get(unit.lower())
    return transform(value) if transform is not None else None


def _join(parts: tuple[object, ...]) -> str:
    return "".join(str(part) for part in parts if part is not None)


def temperature_unit(text: str | None) -> str | None:
    parsed = split_quantity(text)
    return parsed[1].upper() if parsed is not None and parsed[1].upper() in _TO_KELVIN else None


def length_unit(text: str | None) -> str | None:
    parsed = split_quantity(text)
    if parsed is None or parsed[1].lower() not in _TO_MILLIMETERS:
        return None
    return parsed[1].lower()


def to_kelvin(*parts: object) -> float | None:
    """``to_kelvin("5C")`` or ``to_kelvin(41, "°F")``."""
    return transform_value(_join(parts), _TO_KELVIN)


def to_millimeters(*parts: object) -> float | None:
    """``to_millimeters("3mm")`` or ``to_millimeters(1, "in")``."""
    return transform_value(_join(parts), _TO_MILLIMETERS)


def from_kelvin(kelvin: float, unit: str) -> float | None:
    convert = _FROM_KELVIN.get(unit.lstrip("°").upper())
    return convert(kelvin) if convert is not None else None


def from_millimeters(mm: float, unit: str) -> float | None:
    convert = _FROM_MILLIMETERS.get(unit.lower())
    return convert(mm) if convert is not None else None
