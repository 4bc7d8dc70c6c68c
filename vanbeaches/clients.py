"""
Async clients for the upstream APIs.

Thin wrappers around one shared httpx.AsyncClient. Each returns decoded JSON
and raises UpstreamError on connection errors, non-2xx responses or bodies
that are not JSON. No retries.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Optional

import httpx

from vanbeaches.errors import UpstreamError

logger = logging.getLogger(__name__)


def _retry_after(response: httpx.Response) -> Optional[int]:
    raw = response.headers.get("retry-after")
    if raw is None:
        return None
    try:
        return int(raw)
    except ValueError:
        return None


def _iso(ts: datetime) -> str:
    return ts.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


class UpstreamClient:
    """Base class: GET a JSON document from one upstream."""

    name = "upstream"

    def __init__(
        self, http_client: httpx.AsyncClient, base_url: str, timeout: float = 10.0
    ) -> None:
        self._http = http_client
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout

    async def _fetch(
        self, path: str, params: Optional[dict] = None, allow_404: bool = False
    ) -> Any:
        """Make an HTTP GET request and return the decoded body."""
        url = f"{self._base_url}{path}"
        try:
            response = await self._http.get(url, params=params, timeout=self._timeout)
        except httpx.HTTPError as exc:
            logger.error("%s request failed: GET %s -> %s", self.name, url, exc)
            raise UpstreamError(f"{self.name} connection error: {exc}") from exc

        if response.status_code == 404 and allow_404:
            return None

        if response.status_code == 429:
            raise UpstreamError(
                f"Rate limited by {self.name}",
                status_code=429,
                retry_after=_retry_after(response),
            )

        if not response.is_success:
            raise UpstreamError(
                f"{self.name} returned {response.status_code}",
                status_code=response.status_code,
            )

        try:
            return response.json()
        except ValueError as exc:
            raise UpstreamError(f"{self.name} returned invalid JSON") from exc


class IWLSClient(UpstreamClient):
    """DFO Integrated Water Level System (tide predictions)."""

    name = "IWLS"

    async def fetch_hilo(
        self, station_id: str, start: datetime, end: datetime
    ) -> list[dict]:
        """High/low water level predictions for a station between start and end."""
        params = {
            "time-series-code": "wlp-hilo",
            "from": _iso(start),
            "to": _iso(end),
        }
        body = await self._fetch(f"/stations/{station_id}/data", params)
        if not isinstance(body, list):
            raise UpstreamError("IWLS returned an unexpected payload")
        return body


class OpenMeteoClient(UpstreamClient):
    """Open-Meteo forecast API."""

    name = "Open-Meteo"

    CURRENT_FIELDS = (
        "temperature_2m,weather_code,relative_humidity_2m,"
        "wind_speed_10m,wind_direction_10m,uv_index"
    )
    HOURLY_FIELDS = "temperature_2m,weather_code,precipitation_probability"

    async def fetch_forecast(
        self, latitude: float, longitude: float, tz: str, hours: int = 24
    ) -> dict:
        params = {
            "latitude": str(latitude),
            "longitude": str(longitude),
            "current": self.CURRENT_FIELDS,
            "hourly": self.HOURLY_FIELDS,
            "timezone": tz,
            "forecast_hours": str(hours),
        }
        body = await self._fetch("/forecast", params)
        if not isinstance(body, dict) or "current" not in body:
            raise UpstreamError("Open-Meteo returned an unexpected payload")
        return body


class WaterQualityClient(UpstreamClient):
    """Beach water sampling feed."""

    name = "water quality"

    async def fetch_latest_sample(self, beach_id: str) -> Optional[dict]:
        """Most recent sample for a beach, or None when the beach has none."""
        body = await self._fetch(
            f"/beaches/{beach_id}/samples/latest", allow_404=True
        )
        if body is not None and not isinstance(body, dict):
            raise UpstreamError("water quality feed returned an unexpected payload")
        return body
