"""
Pydantic models for the beach conditions API.

Domain records are immutable and serialize with camelCase keys.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Generic, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

T = TypeVar("T")


class CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, frozen=True
    )


class ErrorCode(str, Enum):
    not_found = "NOT_FOUND"
    rate_limited = "RATE_LIMITED"
    service_unavailable = "SERVICE_UNAVAILABLE"
    api_error = "API_ERROR"


class TideType(str, Enum):
    high = "high"
    low = "low"


class WeatherCondition(str, Enum):
    sunny = "sunny"
    partly_cloudy = "partly-cloudy"
    cloudy = "cloudy"
    rainy = "rainy"
    foggy = "foggy"
    stormy = "stormy"


class WaterQualityLevel(str, Enum):
    good = "good"
    advisory = "advisory"
    closed = "closed"
    unknown = "unknown"
    off_season = "off-season"


# ---------------------------------------------------------------------------
# Beaches
# ---------------------------------------------------------------------------


class Location(CamelModel):
    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)


class Beach(CamelModel):
    """One beach in the registry."""

    id: str
    name: str
    slug: str
    location: Location
    tide_station_id: Optional[str] = None


# ---------------------------------------------------------------------------
# Domain records
# ---------------------------------------------------------------------------


class TidePrediction(CamelModel):
    time: datetime
    height: float = Field(description="Water level in metres")
    type: TideType


class TideData(CamelModel):
    """High/low tide predictions for a beach's station."""

    beach_id: str
    station_id: str
    station_name: str
    predictions: list[TidePrediction] = Field(default_factory=list)
    fetched_at: datetime
    message: Optional[str] = None


class CurrentWeather(CamelModel):
    temperature: float = Field(description="Degrees Celsius")
    condition: WeatherCondition
    humidity: float
    wind_speed: int = Field(description="km/h")
    wind_direction: str
    uv_index: float = 0


class HourlyForecast(CamelModel):
    time: datetime
    temperature: float
    condition: WeatherCondition
    precipitation_probability: float = 0


class WeatherForecast(CamelModel):
    """Current conditions plus the next 24 hours for a beach."""

    beach_id: str
    current: CurrentWeather
    hourly: list[HourlyForecast] = Field(default_factory=list)
    fetched_at: datetime


class WaterQualityStatus(CamelModel):
    """Latest E. coli sampling result for a beach."""

    beach_id: str
    level: WaterQualityLevel
    ecoli_count: Optional[int] = Field(default=None, description="CFU/100 mL")
    advisory_reason: Optional[str] = None
    sample_date: Optional[datetime] = None
    fetched_at: datetime


# ---------------------------------------------------------------------------
# API responses
# ---------------------------------------------------------------------------


class CurrentWeatherSummary(CamelModel):
    temperature: float
    condition: WeatherCondition


class NextTide(CamelModel):
    type: TideType
    time: datetime
    height: float


class BeachSummary(CamelModel):
    """Dashboard card for one beach, built from cached data only."""

    id: str
    name: str
    current_weather: Optional[CurrentWeatherSummary] = None
    next_tide: Optional[NextTide] = None
    water_quality: WaterQualityLevel = WaterQualityLevel.unknown
    last_updated: Optional[datetime] = None


class ApiResponse(CamelModel, Generic[T]):
    """Uniform envelope for every /api response."""

    success: bool
    data: Optional[T] = None
    error: Optional[str] = None
    cached: bool = False
    cached_at: Optional[datetime] = None
    stale: bool = False


def success_response(
    data: T,
    cached: bool = False,
    cached_at: Optional[datetime] = None,
    stale: bool = False,
) -> ApiResponse[T]:
    return ApiResponse(
        success=True, data=data, cached=cached, cached_at=cached_at, stale=stale
    )


def error_response(message: str) -> ApiResponse[None]:
    return ApiResponse(success=False, error=message)
