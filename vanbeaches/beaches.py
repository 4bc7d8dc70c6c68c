"""Built-in registry of Vancouver beaches. Can be replaced from config.yaml."""

from __future__ import annotations

from typing import Optional

from vanbeaches.models import Beach, Location

# Point Atkinson, the IWLS station used for the English Bay area.
POINT_ATKINSON = "7735"


def _beach(
    beach_id: str,
    name: str,
    latitude: float,
    longitude: float,
    tide_station_id: Optional[str] = POINT_ATKINSON,
) -> Beach:
    return Beach(
        id=beach_id,
        name=name,
        slug=beach_id,
        location=Location(latitude=latitude, longitude=longitude),
        tide_station_id=tide_station_id,
    )


BEACHES: list[Beach] = [
    _beach("english-bay", "English Bay", 49.2867, -123.1432),
    _beach("jericho-beach", "Jericho Beach", 49.2727, -123.1978),
    _beach("kitsilano-beach", "Kitsilano Beach", 49.2732, -123.1536),
    _beach("locarno-beach", "Locarno Beach", 49.2768, -123.2062),
    _beach("second-beach", "Second Beach", 49.2904, -123.1464),
    _beach("spanish-banks", "Spanish Banks", 49.2766, -123.2249),
    _beach("sunset-beach", "Sunset Beach", 49.2785, -123.1352),
    _beach("third-beach", "Third Beach", 49.2994, -123.1585),
    # Freshwater lake, no tides.
    _beach("trout-lake", "Trout Lake", 49.2554, -123.0643, tide_station_id=None),
]


def default_beaches() -> list[Beach]:
    return list(BEACHES)
