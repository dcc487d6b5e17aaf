from __future__ import annotations

import asyncio
from dataclasses import dataclass
import logging
from typing import Callable, Optional

from .config import ONE_SHOT_OPTIONS, WATCH_OPTIONS, PositionOptions
from .errors import GeolocationError, GeolocationUnavailableError
from .models import GeolocationErrorKind, PollerState, PositionSample, validate_position_sample
from .platforms.base import (
    PERMISSION_DENIED,
    POSITION_UNAVAILABLE,
    TIMEOUT,
    GeolocationPlatform,
    PlatformPosition,
)

SampleCallback = Callable[[PositionSample], None]
ErrorListener = Callable[[GeolocationError], None]

_ERROR_KINDS = {
    PERMISSION_DENIED: GeolocationErrorKind.PERMISSION_DENIED,
    POSITION_UNAVAILABLE: GeolocationErrorKind.POSITION_UNAVAILABLE,
    TIMEOUT: GeolocationErrorKind.TIMEOUT,
}

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class WatchHandle:
    watch_id: int


def map_error_code(code: int) -> str:
    kind = _ERROR_KINDS.get(code)
    if kind is None:
        LOGGER.warning("unknown_geolocation_error_code", extra={"code": code})
        return GeolocationErrorKind.POSITION_UNAVAILABLE
    return kind


def sample_from_platform(position: PlatformPosition) -> PositionSample:
    sample = PositionSample(
        latitude=float(position.latitude),
        longitude=float(position.longitude),
        accuracy=float(position.accuracy),
        timestamp=int(position.timestamp_ms),
    )
    validate_position_sample(sample)
    return sample


class GeolocationPoller:
    """Single continuous watch over a geolocation platform.

    ``start`` while watching returns the existing handle, ``stop`` is safe in
    any state. Errors are reported, never retried, and do not end the watch.
    """

    def __init__(
        self,
        platform: GeolocationPlatform,
        *,
        watch_options: PositionOptions = WATCH_OPTIONS,
        one_shot_options: PositionOptions = ONE_SHOT_OPTIONS,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._platform = platform
        self._watch_options = watch_options
        self._one_shot_options = one_shot_options
        self._logger = logger or LOGGER
        self._state = PollerState.STOPPED
        self._handle: Optional[WatchHandle] = None
        self._generation = 0
        self._on_sample: Optional[SampleCallback] = None
        self._on_error: Optional[ErrorListener] = None

    @property
    def state(self) -> str:
        return self._state

    @property
    def handle(self) -> Optional[WatchHandle]:
        return self._handle

    def is_supported(self) -> bool:
        try:
            return bool(self._platform.is_supported())
        except Exception:
            self._logger.exception("geolocation_support_check_failed")
            return False

    def start(self, on_sample: SampleCallback, on_error: ErrorListener) -> WatchHandle:
        if self._handle is not None:
            return self._handle
        if not self.is_supported():
            self._fail_start()
            raise GeolocationUnavailableError("Geolocation is not supported by this platform.")

        self._generation += 1
        generation = self._generation
        self._on_sample = on_sample
        self._on_error = on_error
        try:
            watch_id = self._platform.watch_position(
                lambda position: self._deliver_position(generation, position),
                lambda code, message: self._deliver_error(generation, code, message),
                self._watch_options,
            )
        except Exception as exc:
            self._fail_start()
            raise GeolocationUnavailableError(f"Unable to start position watch: {exc}") from exc

        self._handle = WatchHandle(watch_id=watch_id)
        self._state = PollerState.WATCHING
        self._logger.info(
            "watch_started",
            extra={
                "watch_id": watch_id,
                "timeout_ms": self._watch_options.timeout_ms,
                "maximum_age_ms": self._watch_options.maximum_age_ms,
            },
        )
        return self._handle

    def stop(self, handle: Optional[WatchHandle] = None) -> None:
        current = self._handle
        if current is None:
            return
        if handle is not None and handle != current:
            return
        self._generation += 1
        self._handle = None
        self._on_sample = None
        self._on_error = None
        self._state = PollerState.STOPPED
        try:
            self._platform.clear_watch(current.watch_id)
        except Exception:
            self._logger.exception("clear_watch_failed", extra={"watch_id": current.watch_id})
        self._logger.info("watch_stopped", extra={"watch_id": current.watch_id})

    async def current_position(self, options: Optional[PositionOptions] = None) -> PositionSample:
        """One-shot fix; raises ``GeolocationError`` when the platform reports one."""
        if not self.is_supported():
            raise GeolocationUnavailableError("Geolocation is not supported by this platform.")
        loop = asyncio.get_running_loop()
        future: "asyncio.Future[PositionSample]" = loop.create_future()

        def on_success(position: PlatformPosition) -> None:
            if future.done():
                return
            try:
                future.set_result(sample_from_platform(position))
            except ValueError as exc:
                future.set_exception(
                    GeolocationError(GeolocationErrorKind.POSITION_UNAVAILABLE, str(exc))
                )

        def on_error(code: int, message: str) -> None:
            if not future.done():
                future.set_exception(GeolocationError(map_error_code(code), message))

        self._platform.get_current_position(
            on_success, on_error, options or self._one_shot_options
        )
        return await future

    def _deliver_position(self, generation: int, position: PlatformPosition) -> None:
        callback = self._on_sample
        if generation != self._generation or callback is None:
            return
        try:
            sample = sample_from_platform(position)
        except ValueError as exc:
            self._logger.warning("invalid_position_dropped", extra={"error": str(exc)})
            return
        callback(sample)

    def _deliver_error(self, generation: int, code: int, message: str) -> None:
        callback = self._on_error
        if generation != self._generation or callback is None:
            return
        error = GeolocationError(map_error_code(code), message)
        self._logger.warning(
            "watch_error", extra={"kind": error.kind, "detail": message}
        )
        callback(error)

    def _fail_start(self) -> None:
        self._state = PollerState.ERROR
        self._logger.error("watch_start_failed")
        self._on_sample = None
        self._on_error = None
        self._state = PollerState.STOPPED
