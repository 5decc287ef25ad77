"""Client for the met.no (yr.no) Locationforecast 2.0 API.

The API asks clients to honour its caching headers: do not refetch before
``Expires``, and send ``If-Modified-Since`` with the last ``Last-Modified``
value so unchanged data comes back as a bodyless 304.

See https://api.met.no/doc/locationforecast/HowTO
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional, Union

import requests

from raceweather.errors import TransportFailure
from raceweather.utils.time import parse_http_date

logger = logging.getLogger(__name__)

YR_BASE_URL = "https://api.met.no"
FORECAST_PATH = "/weatherapi/locationforecast/2.0/complete"
DEFAULT_TIMEOUT_S = 30.0


@dataclass
class NewData:
    """200 response: a full replacement document."""

    payload: dict[str, Any]
    expires_at: Optional[datetime]
    last_modified: Optional[str]


@dataclass
class NotModified:
    """304 response: the cached document is still current."""

    expires_at: Optional[datetime]
    last_modified: Optional[str]


FetchResult = Union[NewData, NotModified]


class YrClient:
    """Conditional-GET client for point forecasts.

    Attributes:
        user_agent: Identifying User-Agent (required by met.no terms of service)
        base_url: API root, overridable for testing
        timeout: Per-request timeout in seconds
    """

    def __init__(
        self,
        user_agent: str,
        base_url: str = YR_BASE_URL,
        timeout: float = DEFAULT_TIMEOUT_S,
        session: Optional[requests.Session] = None,
    ):
        self.user_agent = user_agent
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()

    @property
    def url(self) -> str:
        return f"{self.base_url}{FORECAST_PATH}"

    @staticmethod
    def build_params(lat: float, lon: float, altitude: float) -> dict[str, str]:
        """Query parameters. met.no truncates to 4 decimals and whole metres."""
        return {
            "lat": f"{lat:.4f}",
            "lon": f"{lon:.4f}",
            "altitude": f"{altitude:.0f}",
        }

    def fetch(
        self,
        lat: float,
        lon: float,
        altitude: float,
        if_modified_since: Optional[str] = None,
    ) -> FetchResult:
        """Fetch the forecast for a location.

        Args:
            lat: Latitude
            lon: Longitude
            altitude: Elevation in meters
            if_modified_since: Last-Modified value from the previous fetch

        Returns:
            NewData or NotModified

        Raises:
            TransportFailure: On timeout, connection error, non-2xx status or
                an unreadable body
        """
        headers = {"User-Agent": self.user_agent}
        if if_modified_since:
            headers["If-Modified-Since"] = if_modified_since

        params = self.build_params(lat, lon, altitude)
        logger.debug(f"GET {self.url} {params} (If-Modified-Since: {if_modified_since})")

        try:
            response = self.session.get(
                self.url, params=params, headers=headers, timeout=self.timeout
            )
        except requests.Timeout as e:
            raise TransportFailure(f"yr.no request timed out after {self.timeout}s") from e
        except requests.RequestException as e:
            raise TransportFailure(f"yr.no request failed: {e}") from e

        expires_at = parse_http_date(response.headers.get("Expires"))
        last_modified = response.headers.get("Last-Modified")

        if response.status_code == 304:
            return NotModified(
                expires_at=expires_at,
                last_modified=last_modified or if_modified_since,
            )

        if not 200 <= response.status_code < 300:
            raise TransportFailure(
                f"yr.no returned HTTP {response.status_code}",
                status_code=response.status_code,
            )

        try:
            payload = response.json()
        except ValueError as e:
            raise TransportFailure("yr.no returned an unreadable JSON body") from e

        return NewData(payload=payload, expires_at=expires_at, last_modified=last_modified)

    def close(self) -> None:
        self.session.close()
