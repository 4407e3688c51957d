"""Potential evapotranspiration after Hargreaves-Samani.

Equations from Shuttleworth, W. J. *Evaporation* (Handbook of Hydrology,
1993), with the humidity modification of Valiantzas (2018), J. Irrig. Drain.
Eng. 144(1), 06017014.  Equation numbers refer to Shuttleworth.
"""

from __future__ import annotations

import math
from datetime import date, datetime


def julian_day(day: date) -> int:
    """Julian day number of *day*, taken at local midnight."""
    midnight = datetime(day.year, day.month, day.day)
    return math.floor(midnight.timestamp() / 86400 + 2440587.5)


def hargreaves_samani(
    day: date,
    temp_min: float,
    temp_max: float,
    humidity: float | None,
    latitude: float,
) -> float:
    """Return potential evaporation in mm/day.

    Parameters
    ----------
    temp_min / temp_max:
        Daily temperature extremes in degrees Celsius.
    humidity:
        Relative humidity in percent; ``None`` is treated as 0.
    latitude:
        Geographic latitude in degrees.
    """
    radians = latitude * (math.pi / 180)
    julian = julian_day(day)

    # 4.4.3
    solar_declination = 0.4093 * math.sin((2 * math.pi * julian) / 365 - 1.405)

    # 4.4.2; clamped for polar day/night where the product leaves [-1, 1]
    cos_hour_angle = -math.tan(radians) * math.tan(solar_declination)
    sunset_hour_angle = math.acos(max(-1.0, min(1.0, cos_hour_angle)))

    # 4.4.5
    relative_earth_sun_distance = 1 + 0.033 * math.cos((2 * math.pi * julian) / 365)

    # 4.4.4
    solar_radiation = (
        15.392
        * relative_earth_sun_distance
        * (
            sunset_hour_angle * math.sin(radians) * math.sin(solar_declination)
            + math.cos(radians) * math.cos(solar_declination) * math.sin(sunset_hour_angle)
        )
    )

    # 4.2.44
    evaporation = (
        0.0023
        * solar_radiation
        * math.sqrt(max(temp_max - temp_min, 0.0))
        * ((temp_max + temp_min) / 2 + 17.8)
    )

    return evaporation * math.pow(1.001 - (humidity or 0) / 100, 0.2)
