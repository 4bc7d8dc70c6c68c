"""
Configuration loading for the beach conditions service.

Loads settings from config.yaml; a few runtime switches come from environment
variables.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator

from vanbeaches.beaches import default_beaches
from vanbeaches.models import Beach
from vanbeaches.rate_limiter import RateLimitConfig

IWLS_RESOURCE = "iwls"


def _default_rate_limits() -> dict[str, RateLimitConfig]:
    return {IWLS_RESOURCE: RateLimitConfig(max_requests=3, window=1.0)}


class AppConfig(BaseModel):
    """Application configuration. Durations are in seconds."""

    # Upstreams
    iwls_base_url: str = "https://api-iwls.dfo-mpo.gc.ca/api/v1"
    open_meteo_base_url: str = "https://api.open-meteo.com/v1"
    water_quality_base_url: Optional[str] = None
    http_timeout: float = Field(default=10.0, gt=0)
    timezone: str = "America/Vancouver"

    # Cache settings
    cache_max_size: int = Field(default=1000, ge=1)
    stale_max_age: float = Field(default=86400, ge=0)
    fetch_timeout: Optional[float] = Field(default=30.0, gt=0)
    tide_ttl: float = Field(default=3600, gt=0)
    weather_ttl: float = Field(default=1800, gt=0)
    water_quality_ttl: float = Field(default=21600, gt=0)

    rate_limits: dict[str, RateLimitConfig] = Field(
        default_factory=_default_rate_limits
    )

    # Background refresh
    scheduler_enabled: bool = True
    weather_refresh_cron: str = "*/30 * * * *"
    water_quality_refresh_cron: str = "0 */6 * * *"
    tide_refresh_cron: str = "0 * * * *"

    beaches: list[Beach] = Field(default_factory=default_beaches, min_length=1)

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"Unknown timezone: {value}") from exc
        return value

    @model_validator(mode="after")
    def validate_unique_ids(self) -> "AppConfig":
        ids = [beach.id for beach in self.beaches]
        duplicates = [i for i in ids if ids.count(i) > 1]
        if duplicates:
            raise ValueError(f"Duplicate beach ids: {set(duplicates)}")
        return self

    def get_beach(self, beach_id: str) -> Beach | None:
        """Look up a beach by id."""
        for beach in self.beaches:
            if beach.id == beach_id:
                return beach
        return None


def load_config(config_path: str | None = None) -> AppConfig:
    """
    Load configuration from YAML file + environment variables.

    Args:
        config_path: Path to config.yaml. If None, reads CONFIG_PATH env var
                     (default: config.yaml in current directory).

    Returns:
        Validated AppConfig instance.
    """
    if config_path is None:
        config_path = os.environ.get("CONFIG_PATH", "config.yaml")

    path = Path(config_path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with open(path) as f:
        raw = yaml.safe_load(f)

    if raw is None:
        raw = {}

    scheduler_enabled = os.environ.get("SCHEDULER_ENABLED")
    if scheduler_enabled is not None:
        raw["scheduler_enabled"] = scheduler_enabled.strip().lower() in (
            "1",
            "true",
            "yes",
        )

    return AppConfig(**raw)
