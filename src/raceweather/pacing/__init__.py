"""Pacing model: target finish duration to checkpoint pass times."""

from raceweather.pacing.model import (
    DEFAULT_COEFFICIENTS,
    PacingCoefficients,
    arrival_time,
    even_fractions,
    expected_arrival,
    expected_arrivals,
    is_flat,
    pass_time_fractions,
)

__all__ = [
    "DEFAULT_COEFFICIENTS",
    "PacingCoefficients",
    "arrival_time",
    "even_fractions",
    "expected_arrival",
    "expected_arrivals",
    "is_flat",
    "pass_time_fractions",
]
