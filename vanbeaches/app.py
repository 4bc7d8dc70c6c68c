"""
FastAPI application for the beach conditions dashboard.

Lifespan builds the httpx client, cache, rate limiter, fetchers and the
refresh scheduler. Routes live under /api and answer with a uniform
ApiResponse envelope; errors are mapped to HTTP status codes by the
exception handlers at the bottom of this module.
"""

from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional, TypeVar

import httpx
from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse

from vanbeaches.cache import CacheManager, FetchTimeoutError
from vanbeaches.clients import IWLSClient, OpenMeteoClient, WaterQualityClient
from vanbeaches.conditions import next_tide
from vanbeaches.config import AppConfig, load_config
from vanbeaches.errors import AppError, UpstreamError
from vanbeaches.fetchers import (
    BaseFetcher,
    TideFetcher,
    WaterQualityFetcher,
    WeatherFetcher,
)
from vanbeaches.jobs import setup_refresh_jobs
from vanbeaches.models import (
    ApiResponse,
    Beach,
    BeachSummary,
    CurrentWeatherSummary,
    ErrorCode,
    NextTide,
    TideData,
    WaterQualityLevel,
    WaterQualityStatus,
    WeatherForecast,
    error_response,
    success_response,
)
from vanbeaches.rate_limiter import RateLimiter
from vanbeaches.scheduler import Scheduler

logger = logging.getLogger(__name__)

R = TypeVar("R", TideData, WeatherForecast, WaterQualityStatus)


@dataclass
class AppContext:
    """Everything the routes need, constructed once per process."""

    config: AppConfig
    cache: CacheManager
    rate_limiter: RateLimiter
    scheduler: Scheduler
    tides: TideFetcher
    weather: WeatherFetcher
    water_quality: WaterQualityFetcher


def build_context(config: AppConfig, http_client: httpx.AsyncClient) -> AppContext:
    """Wire up cache, limiter, clients and fetchers from config."""
    cache = CacheManager(
        max_size=config.cache_max_size,
        stale_max_age=config.stale_max_age,
        fetch_timeout=config.fetch_timeout,
    )
    limiter = RateLimiter(config.rate_limits)

    water_quality_client = None
    if config.water_quality_base_url:
        water_quality_client = WaterQualityClient(
            http_client, config.water_quality_base_url, config.http_timeout
        )

    return AppContext(
        config=config,
        cache=cache,
        rate_limiter=limiter,
        scheduler=Scheduler(config.timezone),
        tides=TideFetcher(
            cache,
            IWLSClient(http_client, config.iwls_base_url, config.http_timeout),
            limiter,
            ttl=config.tide_ttl,
        ),
        weather=WeatherFetcher(
            cache,
            OpenMeteoClient(http_client, config.open_meteo_base_url, config.http_timeout),
            ttl=config.weather_ttl,
            timezone_name=config.timezone,
        ),
        water_quality=WaterQualityFetcher(
            cache,
            water_quality_client,
            ttl=config.water_quality_ttl,
            timezone_name=config.timezone,
        ),
    )


# Global reference set during lifespan
_context: Optional[AppContext] = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup: load config, build the context, start refresh jobs."""
    global _context

    log_level = os.environ.get("LOG_LEVEL", "info").upper()
    logging.basicConfig(
        level=getattr(logging, log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    config = load_config()
    logger.info(
        "Loaded config: %d beaches, weather_ttl=%d, tide_ttl=%d, water_quality_ttl=%d",
        len(config.beaches),
        config.weather_ttl,
        config.tide_ttl,
        config.water_quality_ttl,
    )

    async with httpx.AsyncClient() as http_client:
        context = build_context(config, http_client)
        if config.scheduler_enabled:
            setup_refresh_jobs(
                context.scheduler,
                config,
                context.tides,
                context.weather,
                context.water_quality,
            )
            context.scheduler.start()
        _context = context
        logger.info("Beach conditions service ready")
        try:
            yield
        finally:
            context.scheduler.stop()
            context.rate_limiter.close()
            _context = None


app = FastAPI(
    title="Vancouver Beaches API",
    version="1.0.0",
    description="""
Weather, tide and water-quality conditions for Vancouver beaches.

Upstream data is cached in memory and refreshed in the background. Every
response uses the same envelope: `success`, `data`, `error`, `cached`,
`cachedAt` and `stale`. When an upstream is down, the last known data is
served with `stale: true`.
    """.strip(),
    lifespan=lifespan,
    openapi_tags=[
        {"name": "beaches", "description": "Beach registry and dashboard summaries"},
        {"name": "conditions", "description": "Tides, weather and water quality"},
        {"name": "health", "description": "Service health check"},
    ],
)


# ---------------------------------------------------------------------------
# Dependencies and helpers
# ---------------------------------------------------------------------------


def get_context() -> AppContext:
    if _context is None:
        raise AppError(ErrorCode.service_unavailable, "Service not ready")
    return _context


def _require_beach(context: AppContext, beach_id: str) -> Beach:
    beach = context.config.get_beach(beach_id)
    if beach is None:
        raise AppError(ErrorCode.not_found, f"Beach not found: {beach_id}")
    return beach


def _upstream_failure(exc: Exception, what: str) -> AppError:
    if isinstance(exc, UpstreamError) and exc.status_code == 429:
        return AppError(
            ErrorCode.rate_limited,
            f"{what} provider is rate limiting requests",
            retry_after=exc.retry_after,
        )
    return AppError(
        ErrorCode.service_unavailable, f"{what} data is temporarily unavailable"
    )


async def _serve(
    fetcher: BaseFetcher,
    beach: Beach,
    load: Callable[[Beach], Awaitable[R]],
    what: str,
) -> ApiResponse[R]:
    """
    Load a record and wrap it in the envelope.

    On upstream failure, fall back to the last-known-good record when one is
    still held; otherwise raise an AppError for the exception handler.
    """
    requested_at = datetime.now(timezone.utc)
    try:
        record = await load(beach)
    except (UpstreamError, FetchTimeoutError) as exc:
        stale = fetcher.last_known(beach)
        if stale is None:
            logger.warning("%s unavailable for %s: %s", what, beach.id, exc)
            raise _upstream_failure(exc, what) from exc
        logger.warning(
            "%s unavailable for %s, serving data from %s: %s",
            what,
            beach.id,
            stale.fetched_at.isoformat(),
            exc,
        )
        return success_response(
            stale, cached=True, cached_at=stale.fetched_at, stale=True
        )

    cached = record.fetched_at < requested_at
    return success_response(
        record, cached=cached, cached_at=record.fetched_at if cached else None
    )


def _summarize(context: AppContext, beach: Beach, now: datetime) -> BeachSummary:
    weather = context.weather.last_known(beach)
    tides = context.tides.last_known(beach)
    water = context.water_quality.last_known(beach)

    upcoming = next_tide(tides.predictions, now) if tides is not None else None
    fetched = [r.fetched_at for r in (weather, tides, water) if r is not None]

    return BeachSummary(
        id=beach.id,
        name=beach.name,
        current_weather=(
            CurrentWeatherSummary(
                temperature=weather.current.temperature,
                condition=weather.current.condition,
            )
            if weather is not None
            else None
        ),
        next_tide=(
            NextTide(type=upcoming.type, time=upcoming.time, height=upcoming.height)
            if upcoming is not None
            else None
        ),
        water_quality=water.level if water is not None else WaterQualityLevel.unknown,
        last_updated=max(fetched) if fetched else None,
    )


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------


@app.get("/api/health", tags=["health"], summary="Health check")
async def health():
    """
    Liveness plus cache and refresh-job statistics.

    Always returns HTTP 200.
    """
    body = {"status": "ok", "timestamp": datetime.now(timezone.utc).isoformat()}
    if _context is not None:
        body["cache"] = asdict(_context.cache.get_stats())
        body["jobs"] = _context.scheduler.status()
    return body


@app.get(
    "/api/beaches",
    response_model=ApiResponse[list[BeachSummary]],
    tags=["beaches"],
    summary="Dashboard summaries",
)
async def list_beaches(context: AppContext = Depends(get_context)):
    """
    One summary card per beach, built only from data already in the cache.

    Never calls an upstream API; missing data is reported as null/unknown.
    """
    now = datetime.now(timezone.utc)
    summaries = [_summarize(context, beach, now) for beach in context.config.beaches]
    return success_response(summaries)


@app.get(
    "/api/beaches/{beach_id}",
    response_model=ApiResponse[Beach],
    tags=["beaches"],
    summary="Single beach",
)
async def get_beach(beach_id: str, context: AppContext = Depends(get_context)):
    return success_response(_require_beach(context, beach_id))


@app.get(
    "/api/tides/{beach_id}",
    response_model=ApiResponse[TideData],
    tags=["conditions"],
    summary="Tide predictions",
)
async def get_tides(beach_id: str, context: AppContext = Depends(get_context)):
    """
    Next high and low tides for the beach's IWLS station (48 hour window).

    Beaches without a station (lakes) get an empty prediction list and a
    message instead of an error.
    """
    beach = _require_beach(context, beach_id)
    if beach.tide_station_id is None:
        return success_response(context.tides.not_applicable(beach))
    return await _serve(context.tides, beach, context.tides.get, "Tide")


@app.get(
    "/api/weather/{beach_id}",
    response_model=ApiResponse[WeatherForecast],
    tags=["conditions"],
    summary="Weather forecast",
)
async def get_weather(beach_id: str, context: AppContext = Depends(get_context)):
    beach = _require_beach(context, beach_id)
    return await _serve(context.weather, beach, context.weather.get, "Weather")


@app.get(
    "/api/water-quality/{beach_id}",
    response_model=ApiResponse[WaterQualityStatus],
    tags=["conditions"],
    summary="Water quality",
)
async def get_water_quality(beach_id: str, context: AppContext = Depends(get_context)):
    """Latest E. coli sampling status; `off-season` from October through April."""
    beach = _require_beach(context, beach_id)
    return await _serve(
        context.water_quality, beach, context.water_quality.get, "Water quality"
    )


# ---------------------------------------------------------------------------
# Error handling
# ---------------------------------------------------------------------------


def _envelope(message: str) -> dict:
    return error_response(message).model_dump(mode="json", by_alias=True)


@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    headers = {}
    if exc.retry_after is not None:
        headers["Retry-After"] = str(exc.retry_after)
    return JSONResponse(
        status_code=exc.status_code, content=_envelope(exc.message), headers=headers
    )


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error("Unhandled error on %s", request.url.path, exc_info=exc)
    return JSONResponse(status_code=500, content=_envelope("Internal server error"))
