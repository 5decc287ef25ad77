"""Derived weather conditions for race checkpoints.

Values the provider does not publish directly and that matter to skiers:
wind-chill adjusted temperature, precipitation type and an estimate of the
snow surface temperature (which drives wax choice).
"""

from enum import Enum
from typing import Optional

# Wind chill (Environment Canada / NWS formula) only applies in cold, windy air
WIND_CHILL_MAX_TEMP_C = 10.0
WIND_CHILL_MIN_WIND_KMH = 4.8

# Temperature bands for precipitation type when the symbol code is inconclusive
SNOW_THRESHOLD_C = 0.0   # Below this: snow
SLEET_THRESHOLD_C = 2.0  # At or below this: sleet, above: rain

# Snow surface cooling under clear skies, damped by wind mixing
CLEAR_SKY_COOLING_C = 3.0
WIND_DAMPING_MS = 5.0


class PrecipType(str, Enum):
    """Precipitation type at a checkpoint."""
    NONE = "none"
    SNOW = "snow"
    SLEET = "sleet"
    RAIN = "rain"


def feels_like(temperature_c: float, wind_speed_ms: float) -> float:
    """Wind-chill adjusted temperature.

    Args:
        temperature_c: Air temperature in Celsius
        wind_speed_ms: Wind speed in m/s

    Returns:
        Feels-like temperature in Celsius, rounded to 0.1. Equal to the air
        temperature outside the wind-chill regime.
    """
    wind_kmh = wind_speed_ms * 3.6
    if temperature_c > WIND_CHILL_MAX_TEMP_C or wind_kmh < WIND_CHILL_MIN_WIND_KMH:
        return temperature_c

    v = wind_kmh ** 0.16
    chill = 13.12 + 0.6215 * temperature_c - 11.37 * v + 0.3965 * temperature_c * v
    return round(chill, 1)


def precipitation_type(
    precipitation_mm: float,
    symbol_code: Optional[str],
    temperature_c: float,
) -> PrecipType:
    """Classify precipitation.

    The provider's symbol code wins when it names a type; otherwise the
    type is inferred from temperature.
    """
    if precipitation_mm <= 0:
        return PrecipType.NONE

    code = (symbol_code or "").lower()
    if "snow" in code:
        return PrecipType.SNOW
    if "sleet" in code:
        return PrecipType.SLEET
    if "rain" in code or "drizzle" in code:
        return PrecipType.RAIN

    if temperature_c < SNOW_THRESHOLD_C:
        return PrecipType.SNOW
    if temperature_c <= SLEET_THRESHOLD_C:
        return PrecipType.SLEET
    return PrecipType.RAIN


def snow_temperature(
    temperature_c: float,
    dew_point_c: Optional[float],
    cloud_cover_pct: Optional[float],
    wind_speed_ms: float,
) -> Optional[float]:
    """Estimate the snow surface temperature.

    Starts from the lower of air temperature and dew point, then subtracts
    radiative cooling that grows as the sky clears and shrinks with wind.
    Snow cannot be warmer than 0C.

    Returns:
        Estimated temperature in Celsius rounded to 0.1, or None when the
        dew point or cloud cover is unknown
    """
    if dew_point_c is None or cloud_cover_pct is None:
        return None

    base = min(temperature_c, dew_point_c)
    clear_sky = 1.0 - min(max(cloud_cover_pct / 100.0, 0.0), 1.0)
    wind_factor = 1.0 / (1.0 + max(wind_speed_ms, 0.0) / WIND_DAMPING_MS)
    estimate = base - clear_sky * CLEAR_SKY_COOLING_C * wind_factor
    return round(min(estimate, 0.0), 1)
