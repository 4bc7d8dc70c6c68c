"""
Background refresh jobs.

Each job walks the beach registry and calls the same fetchers the routes use,
so user requests find a warm cache. One beach failing never stops the rest.
"""

from __future__ import annotations

import logging
from typing import Awaitable, Callable, Iterable

from vanbeaches.config import AppConfig
from vanbeaches.errors import RefreshError
from vanbeaches.fetchers import TideFetcher, WaterQualityFetcher, WeatherFetcher
from vanbeaches.models import Beach
from vanbeaches.scheduler import Scheduler

logger = logging.getLogger(__name__)


async def refresh_each(
    label: str,
    beaches: Iterable[Beach],
    refresh: Callable[[Beach], Awaitable[object]],
) -> int:
    """
    Run refresh for every beach, logging and continuing past failures.

    Returns the number refreshed. Raises RefreshError once all beaches were
    attempted if any of them failed.
    """
    failed: list[str] = []
    total = 0
    for beach in beaches:
        total += 1
        try:
            await refresh(beach)
        except Exception as exc:
            logger.error("%s failed for %s: %s", label, beach.id, exc)
            failed.append(beach.id)
    if failed:
        raise RefreshError(label, failed, total)
    return total


def setup_refresh_jobs(
    scheduler: Scheduler,
    config: AppConfig,
    tides: TideFetcher,
    weather: WeatherFetcher,
    water_quality: WaterQualityFetcher,
) -> None:
    """Register weather, water-quality and tide refresh jobs on the scheduler."""
    beaches = config.beaches

    async def refresh_weather() -> None:
        await refresh_each("Weather refresh", beaches, weather.get)

    async def refresh_water_quality() -> None:
        await refresh_each("Water quality refresh", beaches, water_quality.get)

    async def refresh_tides() -> None:
        # Beaches share stations; repeats are served from the cache.
        with_station = [b for b in beaches if b.tide_station_id is not None]
        await refresh_each("Tide refresh", with_station, tides.get)

    scheduler.schedule_job(
        "weather-refresh", config.weather_refresh_cron, refresh_weather
    )
    scheduler.schedule_job(
        "water-quality-refresh", config.water_quality_refresh_cron, refresh_water_quality
    )
    scheduler.schedule_job("tide-refresh", config.tide_refresh_cron, refresh_tides)
