from __future__ import annotations

import argparse
import asyncio
import json
import logging
from pathlib import Path
import sys
import threading
from typing import Mapping, Optional, Sequence, TextIO, Tuple

from .config import MapConfig, PositionOptions, RecorderConfig, SessionConfig, StorageConfig
from .consent import ConsentBackend, ConsentStore, KeyValueConsentBackend
from .errors import StorageError
from .firestore import FirestoreConsentBackend, FirestoreTrackingSink, get_firestore_client
from .geocode import ReverseGeocoder
from .livemap import LiveMap, MapContainer, TerminalMapWidget, ViewMode
from .models import TrackedUser
from .platforms.base import GeolocationPlatform
from .platforms.nmea import NmeaSerialConfig, NmeaSerialGeolocation
from .platforms.replay import ReplayConfig, ReplayGeolocation, load_replay_steps
from .poller import GeolocationPoller
from .recorder import LocationRecorder
from .session import ConsentPrompt, TrackingSession
from .sinks import InMemoryTrackingSink, TrackingSink
from .storage import InMemoryKeyValueStore, JsonFileKeyValueStore, KeyValueStore

LOGGER = logging.getLogger(__name__)


def _load_config(path: Path) -> dict:
    with path.open("r", encoding="utf-8") as handle:
        return json.load(handle)


def _require_mapping(value: object, label: str) -> Mapping[str, object]:
    if not isinstance(value, Mapping):
        raise ValueError(f"{label} must be an object.")
    return value


def _require_sequence(value: object, label: str) -> Sequence[object]:
    if not isinstance(value, Sequence) or isinstance(value, (str, bytes)):
        raise ValueError(f"{label} must be a list.")
    return value


def _require_float(value: object, label: str) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        raise ValueError(f"{label} must be numeric.")


def _require_int(value: object, label: str) -> int:
    number = _require_float(value, label)
    if not number.is_integer():
        raise ValueError(f"{label} must be an integer.")
    return int(number)


def _require_non_empty(value: object, label: str) -> str:
    if value is None:
        raise ValueError(f"{label} is required.")
    if isinstance(value, str):
        if not value.strip():
            raise ValueError(f"{label} is required.")
        return value
    return str(value)


def _optional_str(value: object) -> Optional[str]:
    if isinstance(value, str) and value:
        return value
    return None


def _parse_position_options(
    payload: Mapping[str, object], label: str, default: PositionOptions
) -> PositionOptions:
    return PositionOptions(
        enable_high_accuracy=bool(
            payload.get("enable_high_accuracy", default.enable_high_accuracy)
        ),
        timeout_ms=_require_int(
            payload.get("timeout_ms", default.timeout_ms), f"{label}.timeout_ms"
        ),
        maximum_age_ms=_require_int(
            payload.get("maximum_age_ms", default.maximum_age_ms), f"{label}.maximum_age_ms"
        ),
    )


def _parse_session_config(payload: Mapping[str, object]) -> SessionConfig:
    defaults = SessionConfig()
    return SessionConfig(
        consent_prompt_delay_seconds=_require_float(
            payload.get("consent_prompt_delay_seconds", defaults.consent_prompt_delay_seconds),
            "session.consent_prompt_delay_seconds",
        ),
        watch_options=_parse_position_options(
            _require_mapping(payload.get("watch", {}), "session.watch"),
            "session.watch",
            defaults.watch_options,
        ),
        one_shot_options=_parse_position_options(
            _require_mapping(payload.get("one_shot", {}), "session.one_shot"),
            "session.one_shot",
            defaults.one_shot_options,
        ),
    )


def _parse_map_config(payload: Mapping[str, object]) -> Tuple[MapConfig, MapContainer]:
    defaults = MapConfig()
    view_mode = str(payload.get("view_mode", defaults.view_mode))
    if view_mode not in ViewMode.ALL:
        raise ValueError(f"map.view_mode must be one of {', '.join(ViewMode.ALL)}.")
    center = _require_sequence(
        payload.get("default_center", defaults.default_center), "map.default_center"
    )
    if len(center) != 2:
        raise ValueError("map.default_center must have 2 values.")
    selected = _require_sequence(payload.get("selected_users", []), "map.selected_users")
    config = MapConfig(
        primary_tile_url=str(payload.get("primary_tile_url", defaults.primary_tile_url)),
        fallback_tile_url=str(payload.get("fallback_tile_url", defaults.fallback_tile_url)),
        default_center=(
            _require_float(center[0], "map.default_center[0]"),
            _require_float(center[1], "map.default_center[1]"),
        ),
        default_zoom=_require_int(
            payload.get("default_zoom", defaults.default_zoom), "map.default_zoom"
        ),
        focus_zoom=_require_int(payload.get("focus_zoom", defaults.focus_zoom), "map.focus_zoom"),
        view_mode=view_mode,
        selected_users=tuple(str(item) for item in selected),
    )
    container = MapContainer(
        width=_require_int(payload.get("width", 60), "map.width"),
        height=_require_int(payload.get("height", 18), "map.height"),
    )
    return config, container


def _parse_recorder_config(payload: Mapping[str, object]) -> Optional[RecorderConfig]:
    if not bool(payload.get("enabled", True)):
        return None
    defaults = RecorderConfig()
    return RecorderConfig(
        heartbeat_interval_seconds=_require_float(
            payload.get("heartbeat_interval_seconds", defaults.heartbeat_interval_seconds),
            "recorder.heartbeat_interval_seconds",
        ),
        movement_threshold_km=_require_float(
            payload.get("movement_threshold_km", defaults.movement_threshold_km),
            "recorder.movement_threshold_km",
        ),
        reverse_geocode=bool(payload.get("reverse_geocode", defaults.reverse_geocode)),
    )


def _parse_storage_config(payload: Mapping[str, object]) -> StorageConfig:
    return StorageConfig(path=_optional_str(payload.get("path")))


def _parse_platform(payload: Mapping[str, object], base_dir: Path) -> GeolocationPlatform:
    platform_type = _require_non_empty(payload.get("type", "replay"), "platform.type")
    if platform_type == "replay":
        steps: Sequence[Mapping[str, object]]
        if "path" in payload:
            path = Path(_require_non_empty(payload.get("path"), "platform.path"))
            steps = load_replay_steps(path if path.is_absolute() else base_dir / path)
        else:
            raw_steps = _require_sequence(payload.get("steps", []), "platform.steps")
            steps = [
                _require_mapping(item, f"platform.steps[{idx}]")
                for idx, item in enumerate(raw_steps)
            ]
        return ReplayGeolocation(
            ReplayConfig(
                steps=tuple(steps),
                interval_seconds=_require_float(
                    payload.get("interval_seconds", 1.0), "platform.interval_seconds"
                ),
                repeat=bool(payload.get("repeat", False)),
            )
        )
    if platform_type == "nmea":
        return NmeaSerialGeolocation(
            NmeaSerialConfig(
                port=_require_non_empty(payload.get("port"), "platform.port"),
                baudrate=_require_int(payload.get("baudrate", 4800), "platform.baudrate"),
                timeout_seconds=_require_float(
                    payload.get("timeout_seconds", 1.0), "platform.timeout_seconds"
                ),
                uere_meters=_require_float(payload.get("uere_meters", 5.0), "platform.uere_meters"),
            )
        )
    raise ValueError("platform.type must be 'replay' or 'nmea'.")


def _build_persistence(
    config: Mapping[str, object],
) -> Tuple[KeyValueStore, ConsentBackend, Optional[TrackingSink]]:
    storage = _parse_storage_config(_require_mapping(config.get("storage", {}), "storage"))
    store: KeyValueStore = (
        JsonFileKeyValueStore(Path(storage.path)) if storage.path else InMemoryKeyValueStore()
    )
    backend: ConsentBackend = KeyValueConsentBackend(store)
    sink: Optional[TrackingSink] = InMemoryTrackingSink()

    firestore_payload = _require_mapping(config.get("firestore", {}), "firestore")
    if bool(firestore_payload.get("enabled", False)):
        client = get_firestore_client(_optional_str(firestore_payload.get("credentials_path")))
        backend = FirestoreConsentBackend(client)
        sink = FirestoreTrackingSink(client)
    return store, backend, sink


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


def _ask_consent(stream: TextIO, source: Optional[TextIO] = None) -> bool:
    stream.write("Allow this device to share its location while you are signed in? [y/N] ")
    stream.flush()
    answer = (source or sys.stdin).readline()
    return answer.strip().lower() in {"y", "yes"}


def _ask_consent_in_background(
    stream: TextIO, source: Optional[TextIO] = None
) -> "asyncio.Future[bool]":
    """Ask on a daemon thread so an unanswered prompt never holds up shutdown."""
    loop = asyncio.get_running_loop()
    answer: "asyncio.Future[bool]" = loop.create_future()

    def settle(granted: bool) -> None:
        if not answer.done():
            answer.set_result(granted)

    def worker() -> None:
        granted = _ask_consent(stream, source)
        if not loop.is_closed():
            loop.call_soon_threadsafe(settle, granted)

    threading.Thread(target=worker, name="geotrack-consent-prompt", daemon=True).start()
    return answer


async def _run(
    config: Mapping[str, object],
    base_dir: Path,
    user: TrackedUser,
    consent: Optional[bool],
    duration: float,
    roster_interval: float,
    stream: TextIO,
) -> int:
    session_config = _parse_session_config(_require_mapping(config.get("session", {}), "session"))
    map_config, container = _parse_map_config(_require_mapping(config.get("map", {}), "map"))
    recorder_config = _parse_recorder_config(
        _require_mapping(config.get("recorder", {}), "recorder")
    )
    platform = _parse_platform(_require_mapping(config.get("platform", {}), "platform"), base_dir)
    store, backend, sink = _build_persistence(config)

    poller = GeolocationPoller(
        platform,
        watch_options=session_config.watch_options,
        one_shot_options=session_config.one_shot_options,
    )
    session = TrackingSession(poller, ConsentStore(backend), config=session_config)
    widget = TerminalMapWidget(stream=stream)
    live_map = LiveMap(session, widget, container, map_config)
    recorder = None
    if recorder_config is not None:
        recorder = LocationRecorder(
            session,
            store,
            user=user,
            sink=sink,
            geocoder=ReverseGeocoder() if recorder_config.reverse_geocode else None,
            config=recorder_config,
        )

    pending = set()

    def on_prompt(prompt: ConsentPrompt) -> None:
        async def decide() -> None:
            granted = consent
            if granted is None:
                granted = await _ask_consent_in_background(stream)
            await session.record_consent(prompt.user_id, granted)

        task = asyncio.get_running_loop().create_task(decide())
        pending.add(task)
        task.add_done_callback(pending.discard)

    session.on_consent_prompt(on_prompt)
    session.on_error(lambda error: LOGGER.warning("geolocation_error", extra={"kind": error.kind}))

    await live_map.mount()
    if recorder is not None:
        recorder.attach()
    await session.initialize(user.user_id)
    if not session.is_supported():
        LOGGER.error("geolocation_unsupported")
        live_map.unmount()
        return 1

    loop = asyncio.get_running_loop()
    deadline = loop.time() + duration if duration > 0 else None
    try:
        while deadline is None or loop.time() < deadline:
            if sink is not None:
                users = await asyncio.to_thread(sink.list_user_locations)
                live_map.set_users([item for item in users if item.user_id != user.user_id])
            await asyncio.sleep(max(roster_interval, 0.1))
    finally:
        session.stop()
        if recorder is not None:
            await recorder.detach()
        for task in pending:
            task.cancel()
        live_map.unmount()
        session.close()
    return 0


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        description="Run a consent-gated location tracking session with a terminal map."
    )
    parser.add_argument(
        "--config",
        required=True,
        help="Path to a JSON configuration file.",
    )
    parser.add_argument(
        "--user",
        required=True,
        help="Identifier of the signed-in user.",
    )
    parser.add_argument(
        "--user-name",
        default=None,
        help="Display name of the signed-in user.",
    )
    parser.add_argument(
        "--consent",
        choices=("grant", "deny"),
        default=None,
        help="Answer the consent prompt non-interactively.",
    )
    parser.add_argument(
        "--duration",
        type=float,
        default=0.0,
        help="Stop tracking after N seconds (0 = run until interrupted).",
    )
    parser.add_argument(
        "--roster-interval",
        type=float,
        default=5.0,
        help="Seconds between refreshes of other users' locations (default: 5.0).",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        help="Logging level (default: INFO).",
    )
    args = parser.parse_args(argv)

    _configure_logging(args.log_level)

    config_path = Path(args.config)
    if not config_path.exists():
        raise FileNotFoundError(f"Config not found: {config_path}")
    config_map = _require_mapping(_load_config(config_path), "config")
    user = TrackedUser(user_id=args.user, name=args.user_name)
    consent = None if args.consent is None else args.consent == "grant"

    try:
        return asyncio.run(
            _run(
                config_map,
                config_path.parent,
                user,
                consent,
                args.duration,
                args.roster_interval,
                sys.stdout,
            )
        )
    except KeyboardInterrupt:
        return 0
    except StorageError as exc:
        LOGGER.error("storage_unavailable", extra={"error": str(exc)})
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
