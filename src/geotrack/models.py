from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
import math
from typing import Optional

UNKNOWN = "Unknown"


class TrackingStatus:
    IDLE = "idle"
    CHECKING_CONSENT = "checking_consent"
    AWAITING_CONSENT = "awaiting_consent"
    ACTIVE = "active"
    ERROR = "error"
    STOPPED = "stopped"


class PollerState:
    STOPPED = "stopped"
    WATCHING = "watching"
    ERROR = "error"


class GeolocationErrorKind:
    PERMISSION_DENIED = "permission_denied"
    POSITION_UNAVAILABLE = "position_unavailable"
    TIMEOUT = "timeout"


class PresenceStatus:
    ONLINE = "online"
    OFFLINE = "offline"
    IDLE = "idle"
    AWAY = "away"


class Activity:
    MOVE = "move"
    IDLE = "idle"


@dataclass(frozen=True)
class DeviceFingerprint:
    user_agent: str = UNKNOWN
    platform: str = UNKNOWN
    browser: str = UNKNOWN
    browser_version: str = UNKNOWN
    os: str = UNKNOWN
    os_version: str = UNKNOWN
    device_type: str = "desktop"
    screen_resolution: str = UNKNOWN
    timezone: str = UNKNOWN
    language: str = UNKNOWN


@dataclass(frozen=True)
class PositionSample:
    latitude: float
    longitude: float
    accuracy: float
    timestamp: int
    address: Optional[str] = None


@dataclass(frozen=True)
class ConsentRecord:
    user_id: str
    granted: bool
    decided_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    consent_version: str = "1.0"
    device: Optional[DeviceFingerprint] = None


@dataclass(frozen=True)
class UserLocation:
    """Last-known position of one tracked party, as shown on the live map."""

    user_id: str
    user_name: str
    sample: PositionSample
    status: str = PresenceStatus.ONLINE
    is_online: bool = True
    last_seen: Optional[datetime] = None
    email: Optional[str] = None
    role: Optional[str] = None
    department: Optional[str] = None
    device: Optional[DeviceFingerprint] = None


@dataclass(frozen=True)
class TrackedUser:
    user_id: str
    name: Optional[str] = None
    email: Optional[str] = None
    role: str = "employee"
    department: str = ""

    @property
    def display_name(self) -> str:
        return self.name or self.email or "Unknown User"


@dataclass(frozen=True)
class TrackingRecord:
    """Latest known state of one user's tracking session."""

    user: TrackedUser
    session_id: str
    sample: PositionSample
    device: DeviceFingerprint
    status: str = PresenceStatus.ONLINE
    is_online: bool = True
    total_distance_km: float = 0.0
    last_seen: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass(frozen=True)
class LocationHistoryRecord:
    user_id: str
    session_id: str
    sample: PositionSample
    activity: str
    distance_km: float


def validate_position_sample(sample: PositionSample) -> None:
    if not math.isfinite(sample.latitude) or not -90.0 <= sample.latitude <= 90.0:
        raise ValueError("latitude must be between -90 and 90.")
    if not math.isfinite(sample.longitude) or not -180.0 <= sample.longitude <= 180.0:
        raise ValueError("longitude must be between -180 and 180.")
    if not math.isfinite(sample.accuracy) or sample.accuracy < 0:
        raise ValueError("accuracy must be a non-negative number of meters.")
    if sample.timestamp < 0:
        raise ValueError("timestamp must be non-negative.")
