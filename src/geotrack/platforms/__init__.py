"""Geolocation platforms: the protocol plus replay and NMEA serial receivers."""

from .base import (
    PERMISSION_DENIED,
    POSITION_UNAVAILABLE,
    TIMEOUT,
    GeolocationPlatform,
    PlatformPosition,
)
from .nmea import (
    NmeaFix,
    NmeaSerialConfig,
    NmeaSerialError,
    NmeaSerialGeolocation,
    parse_nmea_sentence,
)
from .replay import (
    ReplayConfig,
    ReplayError,
    ReplayFailure,
    ReplayGeolocation,
    load_replay_steps,
    parse_replay_steps,
)
