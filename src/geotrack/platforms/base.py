from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Protocol

from ..config import PositionOptions

PERMISSION_DENIED = 1
POSITION_UNAVAILABLE = 2
TIMEOUT = 3


@dataclass(frozen=True)
class PlatformPosition:
    latitude: float
    longitude: float
    accuracy: float
    timestamp_ms: int


PositionCallback = Callable[[PlatformPosition], None]
ErrorCallback = Callable[[int, str], None]


class GeolocationPlatform(Protocol):
    """Continuous and one-shot position primitives of the host platform.

    Callbacks are invoked on the event loop that registered them. Error codes
    follow the platform convention: 1 permission denied, 2 position
    unavailable, 3 timeout.
    """

    def is_supported(self) -> bool:
        ...

    def watch_position(
        self,
        on_success: PositionCallback,
        on_error: ErrorCallback,
        options: PositionOptions,
    ) -> int:
        ...

    def clear_watch(self, watch_id: int) -> None:
        ...

    def get_current_position(
        self,
        on_success: PositionCallback,
        on_error: ErrorCallback,
        options: PositionOptions,
    ) -> None:
        ...
