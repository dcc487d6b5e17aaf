from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
import itertools
import json
import logging
from pathlib import Path
import time
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Union

from ..config import PositionOptions
from .base import (
    PERMISSION_DENIED,
    POSITION_UNAVAILABLE,
    TIMEOUT,
    ErrorCallback,
    PlatformPosition,
    PositionCallback,
)

_ERROR_CODES = {
    "permission_denied": PERMISSION_DENIED,
    "position_unavailable": POSITION_UNAVAILABLE,
    "timeout": TIMEOUT,
}

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReplayError(RuntimeError):
    message: str

    def __str__(self) -> str:
        return self.message


@dataclass(frozen=True)
class ReplayFailure:
    code: int
    message: str = ""


ReplayStep = Union[PlatformPosition, ReplayFailure]


@dataclass(frozen=True)
class ReplayConfig:
    steps: Sequence[Mapping[str, object]] = field(default_factory=tuple)
    interval_seconds: float = 1.0
    repeat: bool = False
    supported: bool = True


class ReplayGeolocation:
    """Geolocation platform that plays back a scripted list of fixes and errors."""

    def __init__(self, config: ReplayConfig) -> None:
        self._config = config
        self._steps = parse_replay_steps(config.steps)
        self._watches: Dict[int, asyncio.Task] = {}
        self._ids = itertools.count(1)
        self._last_fix: Optional[PlatformPosition] = None
        self._last_fix_at: Optional[float] = None

    @property
    def active_watches(self) -> int:
        return len(self._watches)

    def is_supported(self) -> bool:
        return self._config.supported

    def watch_position(
        self,
        on_success: PositionCallback,
        on_error: ErrorCallback,
        options: PositionOptions,
    ) -> int:
        watch_id = next(self._ids)
        loop = asyncio.get_running_loop()
        self._watches[watch_id] = loop.create_task(
            self._play(watch_id, on_success, on_error)
        )
        return watch_id

    def clear_watch(self, watch_id: int) -> None:
        task = self._watches.pop(watch_id, None)
        if task is not None:
            task.cancel()

    def get_current_position(
        self,
        on_success: PositionCallback,
        on_error: ErrorCallback,
        options: PositionOptions,
    ) -> None:
        loop = asyncio.get_running_loop()
        cached = self._cached_fix(options.maximum_age_ms)
        if cached is not None:
            loop.call_soon(on_success, cached)
            return
        for step in self._steps:
            if isinstance(step, PlatformPosition):
                loop.call_soon(on_success, self._remember(self._stamp(step)))
                return
        loop.call_soon(on_error, POSITION_UNAVAILABLE, "Replay script has no fixes.")

    async def _play(
        self, watch_id: int, on_success: PositionCallback, on_error: ErrorCallback
    ) -> None:
        try:
            while True:
                for step in self._steps:
                    await asyncio.sleep(max(self._config.interval_seconds, 0.0))
                    if isinstance(step, ReplayFailure):
                        on_error(step.code, step.message)
                    else:
                        on_success(self._remember(self._stamp(step)))
                if not self._config.repeat or not self._steps:
                    break
        except Exception:
            LOGGER.exception("replay_watch_failed", extra={"watch_id": watch_id})
        finally:
            self._watches.pop(watch_id, None)

    def _stamp(self, position: PlatformPosition) -> PlatformPosition:
        if position.timestamp_ms > 0:
            return position
        return PlatformPosition(
            latitude=position.latitude,
            longitude=position.longitude,
            accuracy=position.accuracy,
            timestamp_ms=int(time.time() * 1000),
        )

    def _remember(self, position: PlatformPosition) -> PlatformPosition:
        self._last_fix = position
        self._last_fix_at = time.monotonic()
        return position

    def _cached_fix(self, maximum_age_ms: int) -> Optional[PlatformPosition]:
        if self._last_fix is None or self._last_fix_at is None:
            return None
        age_ms = (time.monotonic() - self._last_fix_at) * 1000.0
        if age_ms > maximum_age_ms:
            return None
        return self._last_fix


def parse_replay_steps(payloads: Iterable[Mapping[str, object]]) -> List[ReplayStep]:
    steps: List[ReplayStep] = []
    for idx, item in enumerate(payloads):
        if not isinstance(item, Mapping):
            raise ReplayError(f"Replay step #{idx} must be a mapping.")
        if "error" in item:
            kind = str(item["error"]).lower()
            code = _ERROR_CODES.get(kind)
            if code is None:
                raise ReplayError(
                    f"Replay step #{idx} has unknown error '{kind}'."
                )
            steps.append(ReplayFailure(code=code, message=str(item.get("message", ""))))
            continue
        steps.append(
            PlatformPosition(
                latitude=_require_number(item, "latitude", idx, aliases=("lat",)),
                longitude=_require_number(item, "longitude", idx, aliases=("lng", "lon")),
                accuracy=_optional_number(item, "accuracy", idx, default=0.0),
                timestamp_ms=int(_optional_number(item, "timestamp_ms", idx, default=0.0)),
            )
        )
    return steps


def load_replay_steps(path: Path) -> List[Mapping[str, object]]:
    """Read NDJSON replay steps, one JSON object per non-empty line."""
    steps: List[Mapping[str, object]] = []
    with Path(path).open("r", encoding="utf-8") as handle:
        for line_number, line in enumerate(handle, start=1):
            line = line.strip()
            if not line or line.startswith("#"):
                continue
            try:
                payload = json.loads(line)
            except json.JSONDecodeError as exc:
                raise ReplayError(
                    f"Replay line {line_number} is not valid JSON: {exc}"
                ) from exc
            if not isinstance(payload, Mapping):
                raise ReplayError(f"Replay line {line_number} must be a JSON object.")
            steps.append(payload)
    return steps


def _require_number(
    item: Mapping[str, object], key: str, idx: int, aliases: Sequence[str] = ()
) -> float:
    for candidate in (key, *aliases):
        if candidate in item:
            try:
                return float(item[candidate])
            except (TypeError, ValueError) as exc:
                raise ReplayError(
                    f"Replay step #{idx} field '{candidate}' must be numeric."
                ) from exc
    raise ReplayError(f"Replay step #{idx} must include {key}.")


def _optional_number(
    item: Mapping[str, object], key: str, idx: int, default: float
) -> float:
    if item.get(key) is None:
        return default
    try:
        return float(item[key])
    except (TypeError, ValueError) as exc:
        raise ReplayError(f"Replay step #{idx} field '{key}' must be numeric.") from exc
