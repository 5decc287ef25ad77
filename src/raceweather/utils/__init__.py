"""Shared utilities for raceweather."""

from .time import (
    ceil_hour,
    floor_hour,
    format_http_date,
    parse_http_date,
    parse_iso,
    to_aware_utc,
    to_naive_utc,
    utcnow,
)

__all__ = [
    "ceil_hour",
    "floor_hour",
    "format_http_date",
    "parse_http_date",
    "parse_iso",
    "to_aware_utc",
    "to_naive_utc",
    "utcnow",
]
