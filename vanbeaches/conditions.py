"""
Pure mapping helpers for upstream payloads.

No I/O. Turns raw IWLS, Open-Meteo and sampling values into domain values.
"""

from __future__ import annotations

from datetime import datetime, timezone, tzinfo
from typing import Optional

from vanbeaches.models import (
    TidePrediction,
    TideType,
    WaterQualityLevel,
    WeatherCondition,
)

COMPASS_POINTS = ["N", "NE", "E", "SE", "S", "SW", "W", "NW"]

# Sampling runs from May through September.
MONITORING_MONTHS = range(5, 10)

# Health Canada single-sample guideline for recreational water, CFU/100 mL.
ECOLI_ADVISORY_THRESHOLD = 200


def map_weather_code(code: Optional[int]) -> WeatherCondition:
    """Collapse a WMO weather code into one of the dashboard conditions."""
    if code is None:
        return WeatherCondition.cloudy
    if code <= 1:
        return WeatherCondition.sunny
    if code <= 3:
        return WeatherCondition.partly_cloudy
    if code <= 48:
        return WeatherCondition.cloudy
    if code <= 67:
        return WeatherCondition.rainy
    if code <= 77:
        return WeatherCondition.foggy
    return WeatherCondition.stormy


def wind_direction(degrees: Optional[float]) -> str:
    """8-point compass label for a bearing in degrees."""
    if degrees is None:
        return "N"
    return COMPASS_POINTS[round(degrees / 45) % 8]


def parse_timestamp(raw: str, tz: Optional[tzinfo] = None) -> datetime:
    """Parse an ISO 8601 timestamp; naive values are taken as tz (default UTC)."""
    ts = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=tz or timezone.utc)
    return ts


def parse_tide_events(events: list[dict], limit: int = 6) -> list[TidePrediction]:
    """
    Convert IWLS hi/lo events into predictions.

    Events without a date or value are skipped. Heights are rounded to
    centimetres. Anything whose event type does not mention "high" is a low.
    """
    predictions: list[TidePrediction] = []
    for event in events:
        raw_time = event.get("eventDate")
        value = event.get("value")
        if raw_time is None or value is None:
            continue
        event_type = str(event.get("eventType") or "").lower()
        predictions.append(
            TidePrediction(
                time=parse_timestamp(raw_time),
                height=round(float(value), 2),
                type=TideType.high if "high" in event_type else TideType.low,
            )
        )
        if len(predictions) >= limit:
            break
    return predictions


def next_tide(
    predictions: list[TidePrediction], now: datetime
) -> Optional[TidePrediction]:
    """First prediction at or after now."""
    upcoming = [p for p in predictions if p.time >= now]
    if not upcoming:
        return None
    return min(upcoming, key=lambda p: p.time)


def is_off_season(when: datetime) -> bool:
    """True for months with no beach water sampling (October through April)."""
    return when.month not in MONITORING_MONTHS


def next_season_change(when: datetime) -> datetime:
    """Local midnight when the sampling season next starts (1 May) or ends (1 October)."""
    if when.month in MONITORING_MONTHS:
        year, month = when.year, MONITORING_MONTHS.stop
    elif when.month < MONITORING_MONTHS.start:
        year, month = when.year, MONITORING_MONTHS.start
    else:
        year, month = when.year + 1, MONITORING_MONTHS.start
    return datetime(year, month, 1, tzinfo=when.tzinfo)


def classify_sample(
    ecoli_count: Optional[int],
    advisory_reason: Optional[str] = None,
    closed: bool = False,
) -> WaterQualityLevel:
    if closed:
        return WaterQualityLevel.closed
    if advisory_reason:
        return WaterQualityLevel.advisory
    if ecoli_count is None:
        return WaterQualityLevel.unknown
    if ecoli_count > ECOLI_ADVISORY_THRESHOLD:
        return WaterQualityLevel.advisory
    return WaterQualityLevel.good
