"""Consent-gated location tracking sessions for HRMS clients."""

from .config import (
    GeocoderConfig,
    MapConfig,
    PositionOptions,
    RecorderConfig,
    SessionConfig,
    StorageConfig,
)
from .consent import ConsentStore, InMemoryConsentBackend, KeyValueConsentBackend
from .errors import (
    ConsentPersistenceError,
    GeolocationError,
    GeolocationUnavailableError,
    InvalidTransitionError,
    MapInitializationError,
    StorageError,
)
from .events import ListenerRegistry, Subscription
from .fingerprint import RuntimeEnvironment, collect
from .livemap import LiveMap, MapContainer, Marker, TerminalMapWidget, ViewMode, format_last_seen
from .models import (
    Activity,
    ConsentRecord,
    DeviceFingerprint,
    GeolocationErrorKind,
    LocationHistoryRecord,
    PollerState,
    PositionSample,
    PresenceStatus,
    TrackedUser,
    TrackingRecord,
    TrackingStatus,
    UserLocation,
    validate_position_sample,
)
from .poller import GeolocationPoller, WatchHandle
from .recorder import LocationRecorder, haversine_km
from .session import ConsentPrompt, StatusChange, TrackingSession
from .sinks import InMemoryTrackingSink, TrackingSink
from .storage import InMemoryKeyValueStore, JsonFileKeyValueStore, KeyValueStore

__all__ = [
    "PositionOptions",
    "SessionConfig",
    "MapConfig",
    "RecorderConfig",
    "GeocoderConfig",
    "StorageConfig",
    "ConsentStore",
    "InMemoryConsentBackend",
    "KeyValueConsentBackend",
    "ConsentPersistenceError",
    "GeolocationError",
    "GeolocationUnavailableError",
    "InvalidTransitionError",
    "MapInitializationError",
    "StorageError",
    "ListenerRegistry",
    "Subscription",
    "RuntimeEnvironment",
    "collect",
    "LiveMap",
    "MapContainer",
    "Marker",
    "TerminalMapWidget",
    "ViewMode",
    "format_last_seen",
    "Activity",
    "ConsentRecord",
    "DeviceFingerprint",
    "GeolocationErrorKind",
    "LocationHistoryRecord",
    "PollerState",
    "PositionSample",
    "PresenceStatus",
    "TrackedUser",
    "TrackingRecord",
    "TrackingStatus",
    "UserLocation",
    "validate_position_sample",
    "GeolocationPoller",
    "WatchHandle",
    "LocationRecorder",
    "haversine_km",
    "ConsentPrompt",
    "StatusChange",
    "TrackingSession",
    "InMemoryTrackingSink",
    "TrackingSink",
    "InMemoryKeyValueStore",
    "JsonFileKeyValueStore",
    "KeyValueStore",
]
