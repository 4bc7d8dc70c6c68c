"""
Data fetchers: one per upstream integration.

Each fetcher owns a cache key scheme and a TTL, and funnels its network call
through CacheManager.get_or_fetch so concurrent requests for the same key
share one upstream call. Records are stamped with fetched_at when the
upstream answers; cache hits return the record untouched.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Optional
from zoneinfo import ZoneInfo

from vanbeaches.cache import CacheManager
from vanbeaches.clients import IWLSClient, OpenMeteoClient, WaterQualityClient
from vanbeaches.conditions import (
    classify_sample,
    is_off_season,
    map_weather_code,
    next_season_change,
    parse_tide_events,
    parse_timestamp,
    wind_direction,
)
from vanbeaches.config import IWLS_RESOURCE
from vanbeaches.errors import UpstreamError
from vanbeaches.models import (
    Beach,
    CurrentWeather,
    HourlyForecast,
    TideData,
    WaterQualityLevel,
    WaterQualityStatus,
    WeatherForecast,
)
from vanbeaches.rate_limiter import RateLimiter

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# Raised while mapping a decoded payload whose fields have the wrong shape.
PAYLOAD_ERRORS = (AttributeError, KeyError, TypeError, ValueError)


class BaseFetcher:
    """Cache key, TTL and get_or_fetch plumbing shared by every fetcher."""

    prefix = ""

    def __init__(self, cache: CacheManager, ttl: float) -> None:
        self._cache = cache
        self.ttl = ttl
        self._now: Callable[[], datetime] = _utcnow  # overridable for testing

    def ident(self, beach: Beach) -> str:
        """Identifier the cache key is built from."""
        return beach.id

    def cache_key(self, ident: str) -> str:
        return f"{self.prefix}:{ident}"

    async def _get_or_fetch(
        self,
        beach: Beach,
        fetch: Callable[[], Awaitable[Any]],
        ttl: Optional[float] = None,
    ):
        key = self.cache_key(self.ident(beach))
        return await self._cache.get_or_fetch(
            key, fetch, self.ttl if ttl is None else ttl
        )

    def last_known(self, beach: Beach) -> Optional[Any]:
        """Last-known-good record for a beach, ignoring TTL. Never calls upstream."""
        stale = self._cache.get_stale(self.cache_key(self.ident(beach)))
        return stale.value if stale is not None else None

    def invalidate(self, beach: Beach) -> None:
        self._cache.clear(self.cache_key(self.ident(beach)))


class TideFetcher(BaseFetcher):
    """
    High/low tide predictions from IWLS, keyed by station.

    IWLS enforces a request budget, so every call holds a rate-limiter slot.
    """

    prefix = "tides"

    def __init__(
        self,
        cache: CacheManager,
        client: IWLSClient,
        rate_limiter: RateLimiter,
        ttl: float = 3600,
        horizon_hours: int = 48,
        max_events: int = 6,
    ) -> None:
        super().__init__(cache, ttl)
        self._client = client
        self._limiter = rate_limiter
        self._horizon = timedelta(hours=horizon_hours)
        self._max_events = max_events

    async def get(self, beach: Beach) -> TideData:
        """
        Tide predictions for a beach's station.

        Raises:
            ValueError: the beach has no tide station.
            UpstreamError: IWLS call failed.
        """
        station_id = beach.tide_station_id
        if station_id is None:
            raise ValueError(f"Beach {beach.id} has no tide station")

        async def fetch() -> TideData:
            async with self._limiter.slot(IWLS_RESOURCE):
                start = self._now()
                events = await self._client.fetch_hilo(
                    station_id, start, start + self._horizon
                )
            try:
                predictions = parse_tide_events(events, self._max_events)
            except PAYLOAD_ERRORS as exc:
                raise UpstreamError("IWLS returned an unexpected payload") from exc
            return TideData(
                beach_id=beach.id,
                station_id=station_id,
                station_name=f"{beach.name} (Vancouver)",
                predictions=predictions,
                fetched_at=self._now(),
            )

        record = await self._get_or_fetch(beach, fetch)
        return self._for_beach(record, beach)

    def ident(self, beach: Beach) -> str:
        if beach.tide_station_id is None:
            raise ValueError(f"Beach {beach.id} has no tide station")
        return beach.tide_station_id

    def last_known(self, beach: Beach) -> Optional[TideData]:
        if beach.tide_station_id is None:
            return None
        record = super().last_known(beach)
        return self._for_beach(record, beach) if record is not None else None

    @staticmethod
    def _for_beach(record: TideData, beach: Beach) -> TideData:
        # Records are cached per station; label them for the beach asked about.
        if record.beach_id == beach.id:
            return record
        return record.model_copy(
            update={"beach_id": beach.id, "station_name": f"{beach.name} (Vancouver)"}
        )

    def not_applicable(self, beach: Beach) -> TideData:
        """Placeholder record for beaches without a tide station (e.g. lakes)."""
        return TideData(
            beach_id=beach.id,
            station_id="",
            station_name="N/A",
            predictions=[],
            fetched_at=self._now(),
            message="Tide information not applicable for this location",
        )


class WeatherFetcher(BaseFetcher):
    """Current conditions and 24-hour forecast from Open-Meteo, keyed by beach."""

    prefix = "weather"

    def __init__(
        self,
        cache: CacheManager,
        client: OpenMeteoClient,
        ttl: float = 1800,
        timezone_name: str = "America/Vancouver",
        hours: int = 24,
    ) -> None:
        super().__init__(cache, ttl)
        self._client = client
        self._timezone_name = timezone_name
        self._tz = ZoneInfo(timezone_name)
        self._hours = hours

    async def get(self, beach: Beach) -> WeatherForecast:
        async def fetch() -> WeatherForecast:
            body = await self._client.fetch_forecast(
                beach.location.latitude,
                beach.location.longitude,
                self._timezone_name,
                self._hours,
            )
            try:
                return self._to_forecast(beach.id, body)
            except PAYLOAD_ERRORS as exc:
                raise UpstreamError("Open-Meteo returned an unexpected payload") from exc

        return await self._get_or_fetch(beach, fetch)

    def _to_forecast(self, beach_id: str, body: dict) -> WeatherForecast:
        current = body["current"]
        hourly = body.get("hourly") or {}
        times = hourly.get("time") or []
        temperatures = hourly.get("temperature_2m") or []
        codes = hourly.get("weather_code") or []
        precipitation = hourly.get("precipitation_probability") or []

        hours = []
        for i, raw_time in enumerate(times[: self._hours]):
            temperature = temperatures[i] if i < len(temperatures) else None
            if temperature is None:
                continue
            hours.append(
                HourlyForecast(
                    time=parse_timestamp(raw_time, self._tz),
                    temperature=round(temperature, 1),
                    condition=map_weather_code(codes[i] if i < len(codes) else None),
                    precipitation_probability=(
                        precipitation[i] if i < len(precipitation) else None
                    )
                    or 0,
                )
            )

        return WeatherForecast(
            beach_id=beach_id,
            current=CurrentWeather(
                temperature=round(current["temperature_2m"], 1),
                condition=map_weather_code(current.get("weather_code")),
                humidity=current.get("relative_humidity_2m") or 0,
                wind_speed=round(current.get("wind_speed_10m") or 0),
                wind_direction=wind_direction(current.get("wind_direction_10m")),
                uv_index=current.get("uv_index") or 0,
            ),
            hourly=hours,
            fetched_at=self._now(),
        )


class WaterQualityFetcher(BaseFetcher):
    """
    Latest E. coli sampling status, keyed by beach.

    Outside the sampling season no request is made at all: the status is
    reported as off-season and cached like any other result.
    """

    prefix = "waterquality"

    def __init__(
        self,
        cache: CacheManager,
        client: Optional[WaterQualityClient],
        ttl: float = 21600,
        timezone_name: str = "America/Vancouver",
    ) -> None:
        super().__init__(cache, ttl)
        self._client = client
        self._tz = ZoneInfo(timezone_name)

    async def get(self, beach: Beach) -> WaterQualityStatus:
        async def fetch() -> WaterQualityStatus:
            now = self._now()
            if is_off_season(now.astimezone(self._tz)):
                return self._empty(beach.id, WaterQualityLevel.off_season, now)
            if self._client is None:
                return self._empty(beach.id, WaterQualityLevel.unknown, now)

            sample = await self._client.fetch_latest_sample(beach.id)
            if sample is None:
                return self._empty(beach.id, WaterQualityLevel.unknown, self._now())
            try:
                return self._to_status(beach.id, sample)
            except PAYLOAD_ERRORS as exc:
                raise UpstreamError(
                    "water quality feed returned an unexpected payload"
                ) from exc

        # A result must not outlive the season it was taken in.
        now = self._now()
        change = next_season_change(now.astimezone(self._tz))
        until_change = (change.astimezone(timezone.utc) - now).total_seconds()
        return await self._get_or_fetch(beach, fetch, min(self.ttl, until_change))

    @staticmethod
    def _empty(
        beach_id: str, level: WaterQualityLevel, now: datetime
    ) -> WaterQualityStatus:
        return WaterQualityStatus(beach_id=beach_id, level=level, fetched_at=now)

    def _to_status(self, beach_id: str, sample: dict) -> WaterQualityStatus:
        count = sample.get("ecoliCount")
        reason = sample.get("advisoryReason")
        raw_date = sample.get("sampleDate")
        return WaterQualityStatus(
            beach_id=beach_id,
            level=classify_sample(
                count, reason, closed=bool(sample.get("closed", False))
            ),
            ecoli_count=count,
            advisory_reason=reason,
            sample_date=parse_timestamp(raw_date, self._tz) if raw_date else None,
            fetched_at=self._now(),
        )
