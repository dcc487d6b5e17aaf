from __future__ import annotations

import asyncio
import calendar
from dataclasses import dataclass, field
import errno
import itertools
import logging
import time
from typing import IO, Callable, Dict, Optional

from ..config import PositionOptions
from .base import (
    PERMISSION_DENIED,
    POSITION_UNAVAILABLE,
    TIMEOUT,
    ErrorCallback,
    PlatformPosition,
    PositionCallback,
)

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class NmeaSerialError(RuntimeError):
    message: str

    def __str__(self) -> str:
        return self.message


@dataclass(frozen=True)
class NmeaSerialConfig:
    port: str
    baudrate: int = 4800
    timeout_seconds: float = 1.0
    uere_meters: float = 5.0
    default_accuracy_meters: float = 50.0
    idle_sleep_seconds: float = 0.05


@dataclass(frozen=True)
class NmeaFix:
    latitude: float
    longitude: float
    valid: bool
    hdop: Optional[float] = None
    timestamp_ms: Optional[int] = None


@dataclass
class _Watcher:
    on_success: PositionCallback
    on_error: ErrorCallback
    options: PositionOptions
    one_shot: bool = False
    timer: Optional[asyncio.TimerHandle] = field(default=None, repr=False)


class NmeaSerialGeolocation:
    """Geolocation platform backed by an NMEA-0183 GPS receiver on a serial port.

    GGA and RMC sentences from any talker (GP, GN, GL, GA) are decoded. Accuracy
    is estimated as HDOP times ``uere_meters``. Each watch gets its own timeout
    timer, re-armed after every fix or timeout report.
    """

    def __init__(self, config: NmeaSerialConfig, stream: Optional[IO[str]] = None) -> None:
        self._config = config
        self._stream = stream
        self._serial = None
        self._ids = itertools.count(1)
        self._watchers: Dict[int, _Watcher] = {}
        self._reader: Optional[asyncio.Task] = None
        self._last_fix: Optional[PlatformPosition] = None
        self._last_fix_at: Optional[float] = None
        self._last_hdop: Optional[float] = None
        self._fix_lost = False

    def is_supported(self) -> bool:
        return self._stream is not None or bool(self._config.port)

    def watch_position(
        self,
        on_success: PositionCallback,
        on_error: ErrorCallback,
        options: PositionOptions,
    ) -> int:
        return self._register(_Watcher(on_success, on_error, options))

    def clear_watch(self, watch_id: int) -> None:
        watcher = self._watchers.pop(watch_id, None)
        if watcher is None:
            return
        if watcher.timer is not None:
            watcher.timer.cancel()

    def get_current_position(
        self,
        on_success: PositionCallback,
        on_error: ErrorCallback,
        options: PositionOptions,
    ) -> None:
        self._register(_Watcher(on_success, on_error, options, one_shot=True))

    def _register(self, watcher: _Watcher) -> int:
        loop = asyncio.get_running_loop()
        watch_id = next(self._ids)
        self._watchers[watch_id] = watcher
        cached = self._cached_fix(watcher.options.maximum_age_ms)
        if cached is not None:
            loop.call_soon(self._deliver_fix_to, watch_id, cached)
        self._arm_timer(watch_id)
        if self._reader is None or self._reader.done():
            self._reader = loop.create_task(self._read_loop())
        return watch_id

    def _arm_timer(self, watch_id: int) -> None:
        watcher = self._watchers.get(watch_id)
        if watcher is None:
            return
        if watcher.timer is not None:
            watcher.timer.cancel()
        loop = asyncio.get_running_loop()
        watcher.timer = loop.call_later(
            max(watcher.options.timeout_ms, 0) / 1000.0, self._on_timeout, watch_id
        )

    def _on_timeout(self, watch_id: int) -> None:
        watcher = self._watchers.get(watch_id)
        if watcher is None:
            return
        watcher.timer = None
        self._report_error_to(watch_id, TIMEOUT, "No GPS fix within timeout.")
        if watch_id in self._watchers:
            self._arm_timer(watch_id)

    async def _read_loop(self) -> None:
        try:
            stream = await asyncio.to_thread(self._ensure_stream)
        except NmeaSerialError as exc:
            self._broadcast_error(_open_error_code(exc), str(exc))
            return
        try:
            while self._watchers:
                line = await asyncio.to_thread(stream.readline)
                if not line:
                    await asyncio.sleep(max(self._config.idle_sleep_seconds, 0.0))
                    continue
                if isinstance(line, bytes):
                    line = line.decode("ascii", errors="replace")
                try:
                    fix = parse_nmea_sentence(line)
                except NmeaSerialError as exc:
                    LOGGER.debug("nmea_sentence_rejected", extra={"error": str(exc)})
                    continue
                if fix is None:
                    continue
                self._handle_fix(fix)
        finally:
            # Only the read loop closes the port, after its last read returned.
            self._release_port()

    def _handle_fix(self, fix: NmeaFix) -> None:
        if not fix.valid:
            if not self._fix_lost:
                self._fix_lost = True
                self._broadcast_error(POSITION_UNAVAILABLE, "GPS receiver reports no fix.")
            return
        self._fix_lost = False
        if fix.hdop is not None:
            self._last_hdop = fix.hdop
        position = PlatformPosition(
            latitude=fix.latitude,
            longitude=fix.longitude,
            accuracy=self._estimate_accuracy(fix.hdop),
            timestamp_ms=fix.timestamp_ms or int(time.time() * 1000),
        )
        self._last_fix = position
        self._last_fix_at = time.monotonic()
        for watch_id in list(self._watchers):
            self._deliver_fix_to(watch_id, position)

    def _deliver_fix_to(self, watch_id: int, position: PlatformPosition) -> None:
        watcher = self._watchers.get(watch_id)
        if watcher is None:
            return
        if watcher.one_shot:
            self.clear_watch(watch_id)
        else:
            self._arm_timer(watch_id)
        _invoke(watcher.on_success, position)

    def _report_error_to(self, watch_id: int, code: int, message: str) -> None:
        watcher = self._watchers.get(watch_id)
        if watcher is None:
            return
        if watcher.one_shot:
            self.clear_watch(watch_id)
        _invoke(watcher.on_error, code, message)

    def _broadcast_error(self, code: int, message: str) -> None:
        for watch_id in list(self._watchers):
            self._report_error_to(watch_id, code, message)

    def _estimate_accuracy(self, hdop: Optional[float]) -> float:
        hdop = hdop if hdop is not None else self._last_hdop
        if hdop is None:
            return self._config.default_accuracy_meters
        return hdop * self._config.uere_meters

    def _cached_fix(self, maximum_age_ms: int) -> Optional[PlatformPosition]:
        if self._last_fix is None or self._last_fix_at is None:
            return None
        if (time.monotonic() - self._last_fix_at) * 1000.0 > maximum_age_ms:
            return None
        return self._last_fix

    def _ensure_stream(self) -> IO[str]:
        if self._stream is not None:
            return self._stream
        if self._serial is None:
            self._serial = self._open_serial()
        return self._serial

    def _open_serial(self) -> IO[str]:
        try:
            import serial  # type: ignore[import-not-found]
        except ImportError as exc:  # pragma: no cover - optional dependency
            raise NmeaSerialError(
                "pyserial is required to read NMEA data over UART/USB."
            ) from exc
        try:
            return serial.Serial(
                self._config.port,
                baudrate=self._config.baudrate,
                timeout=self._config.timeout_seconds,
            )
        except (OSError, serial.SerialException) as exc:
            raise NmeaSerialError(f"Unable to open {self._config.port}: {exc}") from exc

    def _release_port(self) -> None:
        port, self._serial = self._serial, None
        if port is None:
            return
        try:
            port.close()
        except Exception:  # pragma: no cover - driver failures
            LOGGER.exception("nmea_close_failed", extra={"port": self._config.port})


def parse_nmea_sentence(line: str) -> Optional[NmeaFix]:
    """Decode a GGA or RMC sentence; other sentence types return ``None``."""
    sentence = line.strip()
    if not sentence.startswith("$"):
        return None
    body, _, checksum = sentence[1:].partition("*")
    if checksum:
        _verify_checksum(body, checksum)
    fields = body.split(",")
    if len(fields[0]) < 5:
        return None
    kind = fields[0][-3:]
    if kind == "GGA":
        return _parse_gga(fields)
    if kind == "RMC":
        return _parse_rmc(fields)
    return None


def _parse_gga(fields: list) -> NmeaFix:
    if len(fields) < 9:
        raise NmeaSerialError("GGA sentence is truncated.")
    quality = fields[6].strip() or "0"
    valid = quality != "0" and bool(fields[2]) and bool(fields[4])
    if not valid:
        return NmeaFix(latitude=0.0, longitude=0.0, valid=False)
    return NmeaFix(
        latitude=_parse_coordinate(fields[2], fields[3], "latitude"),
        longitude=_parse_coordinate(fields[4], fields[5], "longitude"),
        valid=True,
        hdop=_optional_float(fields[8]),
    )


def _parse_rmc(fields: list) -> NmeaFix:
    if len(fields) < 10:
        raise NmeaSerialError("RMC sentence is truncated.")
    if fields[2].upper() != "A" or not fields[3] or not fields[5]:
        return NmeaFix(latitude=0.0, longitude=0.0, valid=False)
    return NmeaFix(
        latitude=_parse_coordinate(fields[3], fields[4], "latitude"),
        longitude=_parse_coordinate(fields[5], fields[6], "longitude"),
        valid=True,
        timestamp_ms=_parse_rmc_timestamp(fields[1], fields[9]),
    )


def _parse_coordinate(value: str, hemisphere: str, label: str) -> float:
    try:
        raw = float(value)
    except ValueError as exc:
        raise NmeaSerialError(f"NMEA {label} must be numeric.") from exc
    degrees = int(raw // 100)
    minutes = raw - degrees * 100
    decimal = degrees + minutes / 60.0
    if hemisphere.upper() in {"S", "W"}:
        decimal = -decimal
    return decimal


def _parse_rmc_timestamp(clock: str, date: str) -> Optional[int]:
    if len(clock) < 6 or len(date) != 6:
        return None
    try:
        hours, minutes = int(clock[0:2]), int(clock[2:4])
        seconds = float(clock[4:])
        day, month, year = int(date[0:2]), int(date[2:4]), 2000 + int(date[4:6])
        epoch = calendar.timegm((year, month, day, hours, minutes, 0, 0, 0, 0))
    except ValueError:
        return None
    return int((epoch + seconds) * 1000)


def _verify_checksum(body: str, checksum: str) -> None:
    expected = 0
    for char in body:
        expected ^= ord(char)
    try:
        actual = int(checksum[:2], 16)
    except ValueError as exc:
        raise NmeaSerialError(f"Invalid NMEA checksum {checksum!r}.") from exc
    if actual != expected:
        raise NmeaSerialError(
            f"NMEA checksum mismatch: expected {expected:02X}, got {actual:02X}."
        )


def _optional_float(value: str) -> Optional[float]:
    try:
        return float(value)
    except ValueError:
        return None


def _open_error_code(exc: NmeaSerialError) -> int:
    cause = exc.__cause__
    if isinstance(cause, PermissionError) or getattr(cause, "errno", None) == errno.EACCES:
        return PERMISSION_DENIED
    if "Permission denied" in str(exc):
        return PERMISSION_DENIED
    return POSITION_UNAVAILABLE


def _invoke(callback: Callable[..., None], *args: object) -> None:
    try:
        callback(*args)
    except Exception:
        LOGGER.exception("geolocation_callback_failed")
