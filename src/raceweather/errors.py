"""Exception hierarchy for raceweather.

Tolerance misses and history dedup collisions are ordinary results, not
exceptions, so they have no class here.
"""

from typing import Optional


class RaceWeatherError(Exception):
    """Base class for all raceweather errors."""


class TransportFailure(RaceWeatherError):
    """The upstream provider could not be reached or answered with an error.

    Attributes:
        status_code: HTTP status returned by the provider, if any
    """

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class UpstreamUnavailable(RaceWeatherError):
    """Upstream failed and there is no cached snapshot to fall back to."""


class ProtocolViolation(RaceWeatherError):
    """The provider broke its contract (e.g. 304 with nothing cached)."""


class CheckpointNotFound(RaceWeatherError):
    """No checkpoint with the requested id."""


class RaceNotFound(RaceWeatherError):
    """No race with the requested id."""
