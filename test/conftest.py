"""
Shared test fixtures for the beach conditions service.

Provides:
- upstream fixture data loaders (IWLS, Open-Meteo, water quality)
- a controllable clock for cache and rate-limiter tests
- sample beaches
- temporary config files
"""

import json
from datetime import datetime, timezone
from pathlib import Path

import pytest

from vanbeaches.models import Beach, Location

FIXTURES_DIR = Path(__file__).parent / "fixtures"


# ---------------------------------------------------------------------------
# Fixture data loaders
# ---------------------------------------------------------------------------

def load_fixture(name: str):
    """Load a JSON fixture from test/fixtures/ (e.g. "iwls/hilo_7735.json")."""
    with open(FIXTURES_DIR / name) as f:
        return json.load(f)


# ---------------------------------------------------------------------------
# Clocks
# ---------------------------------------------------------------------------

class FakeClock:
    """Controllable monotonic clock for deterministic cache/limiter tests."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeNow:
    """Controllable wall clock returning aware datetimes."""

    def __init__(self, start: datetime = datetime(2025, 7, 1, 12, 0, tzinfo=timezone.utc)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture()
def clock():
    return FakeClock()


# ---------------------------------------------------------------------------
# Beaches and config
# ---------------------------------------------------------------------------

def make_beach(beach_id="english-bay", name="English Bay", station="7735"):
    return Beach(
        id=beach_id,
        name=name,
        slug=beach_id,
        location=Location(latitude=49.2867, longitude=-123.1432),
        tide_station_id=station,
    )


@pytest.fixture()
def beach():
    return make_beach()


@pytest.fixture()
def lake():
    return make_beach("trout-lake", "Trout Lake", station=None)


@pytest.fixture()
def config_file(tmp_path):
    """Write a minimal config.yaml with two beaches and return its path."""
    content = """\
weather_ttl: 600
scheduler_enabled: false

beaches:
  - id: "english-bay"
    name: "English Bay"
    slug: "english-bay"
    location: {latitude: 49.2867, longitude: -123.1432}
    tide_station_id: "7735"
  - id: "trout-lake"
    name: "Trout Lake"
    slug: "trout-lake"
    location: {latitude: 49.2554, longitude: -123.0643}
    tide_station_id: null
"""
    path = tmp_path / "config.yaml"
    path.write_text(content)
    return str(path)


@pytest.fixture(scope="session")
def httpserver_listen_address():
    """Bind the fake upstream server to IPv4 loopback, port chosen by the OS."""
    return ("127.0.0.1", 0)
