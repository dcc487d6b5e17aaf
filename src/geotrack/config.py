from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional, Sequence, Tuple

OSM_TILE_URL = "https://{s}.tile.openstreetmap.org/{z}/{x}/{y}.png"
CARTO_TILE_URL = "https://{s}.basemaps.cartocdn.com/light_all/{z}/{x}/{y}.png"


@dataclass(frozen=True)
class PositionOptions:
    """Mirror of the platform ``PositionOptions`` dictionary."""

    enable_high_accuracy: bool = True
    timeout_ms: int = 10000
    maximum_age_ms: int = 30000


WATCH_OPTIONS = PositionOptions()
ONE_SHOT_OPTIONS = PositionOptions(maximum_age_ms=60000)


@dataclass(frozen=True)
class SessionConfig:
    consent_prompt_delay_seconds: float = 2.0
    watch_options: PositionOptions = WATCH_OPTIONS
    one_shot_options: PositionOptions = ONE_SHOT_OPTIONS


@dataclass(frozen=True)
class MapConfig:
    primary_tile_url: str = OSM_TILE_URL
    fallback_tile_url: str = CARTO_TILE_URL
    default_center: Tuple[float, float] = (37.7749, -122.4194)
    default_zoom: int = 13
    focus_zoom: int = 15
    view_mode: str = "all-users"
    selected_users: Sequence[str] = field(default_factory=tuple)
    init_retry_delay_seconds: float = 0.2


@dataclass(frozen=True)
class RecorderConfig:
    """Persistence of samples, distance and status while a session is active.

    ``movement_threshold_km`` separates ``move`` from ``idle`` history entries;
    the heartbeat republishes ``online`` every ``heartbeat_interval_seconds``.
    """

    heartbeat_interval_seconds: float = 60.0
    movement_threshold_km: float = 0.01
    reverse_geocode: bool = False


@dataclass(frozen=True)
class GeocoderConfig:
    endpoint_url: str = "https://api.bigdatacloud.net/data/reverse-geocode-client"
    language: str = "en"
    timeout_seconds: float = 5.0


@dataclass(frozen=True)
class StorageConfig:
    path: Optional[str] = None
