import asyncio
import io
import json
from pathlib import Path
import threading
import time

import pytest

from geotrack import cli
from geotrack.livemap import ViewMode
from geotrack.platforms.nmea import NmeaSerialGeolocation
from geotrack.platforms.replay import ReplayGeolocation
from geotrack.storage import JsonFileKeyValueStore


def _write_config(tmp_path: Path, **sections: object) -> Path:
    path = tmp_path / "geotrack.json"
    path.write_text(json.dumps(sections), encoding="utf-8")
    return path


def test_parse_platform_builds_replay_and_nmea(tmp_path: Path) -> None:
    route = tmp_path / "route.ndjson"
    route.write_text('{"lat": 17.4771, "lng": 78.5724, "accuracy": 20}\n', encoding="utf-8")

    replay = cli._parse_platform({"type": "replay", "path": "route.ndjson"}, tmp_path)
    nmea = cli._parse_platform({"type": "nmea", "port": "/dev/ttyACM0"}, tmp_path)

    assert isinstance(replay, ReplayGeolocation)
    assert isinstance(nmea, NmeaSerialGeolocation)
    with pytest.raises(ValueError, match="platform.type"):
        cli._parse_platform({"type": "carrier-pigeon"}, tmp_path)
    with pytest.raises(ValueError, match="platform.port is required"):
        cli._parse_platform({"type": "nmea"}, tmp_path)


def test_parse_map_config_validates_fields() -> None:
    config, container = cli._parse_map_config(
        {"view_mode": "selected-users", "selected_users": ["u2"], "width": 30, "height": 10}
    )

    assert config.view_mode == ViewMode.SELECTED_USERS
    assert config.selected_users == ("u2",)
    assert (container.width, container.height) == (30, 10)
    with pytest.raises(ValueError, match="map.view_mode"):
        cli._parse_map_config({"view_mode": "heatmap"})
    with pytest.raises(ValueError, match="map.default_center"):
        cli._parse_map_config({"default_center": [1.0]})


def test_parse_session_config_reads_position_options() -> None:
    config = cli._parse_session_config(
        {"consent_prompt_delay_seconds": 0.5, "watch": {"timeout_ms": 5000}}
    )

    assert config.consent_prompt_delay_seconds == 0.5
    assert config.watch_options.timeout_ms == 5000
    assert config.watch_options.maximum_age_ms == 30000
    assert config.one_shot_options.maximum_age_ms == 60000
    with pytest.raises(ValueError, match="session.watch.timeout_ms"):
        cli._parse_session_config({"watch": {"timeout_ms": "soon"}})


def test_recorder_can_be_disabled() -> None:
    assert cli._parse_recorder_config({"enabled": False}) is None
    assert cli._parse_recorder_config({}).movement_threshold_km == 0.01


def test_main_runs_consented_replay_session(tmp_path: Path, capsys) -> None:
    store_path = tmp_path / "profile.json"
    config_path = _write_config(
        tmp_path,
        platform={
            "type": "replay",
            "interval_seconds": 0.02,
            "steps": [
                {"lat": 17.4771, "lng": 78.5724, "accuracy": 20},
                {"lat": 17.4775, "lng": 78.5729, "accuracy": 15},
            ],
        },
        storage={"path": str(store_path)},
        session={"consent_prompt_delay_seconds": 0.01},
        map={"width": 24, "height": 8},
    )

    exit_code = cli.main(
        [
            "--config",
            str(config_path),
            "--user",
            "u1",
            "--user-name",
            "Asha",
            "--consent",
            "grant",
            "--duration",
            "0.4",
            "--roster-interval",
            "0.1",
            "--log-level",
            "WARNING",
        ]
    )

    assert exit_code == 0
    store = JsonFileKeyValueStore(store_path)
    consent = json.loads(store.get("locationConsent:u1") or "")
    assert consent["hasConsent"] is True
    last = json.loads(store.get("lastLocation") or "")
    assert last["latitude"] == 17.4775
    assert store.get("userStatus") == "offline"
    assert "Live Location Map" in capsys.readouterr().out


def test_main_rejects_missing_config(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        cli.main(["--config", str(tmp_path / "missing.json"), "--user", "u1"])


def test_consent_answer_is_read_from_source() -> None:
    prompt = io.StringIO()

    async def scenario() -> bool:
        return await cli._ask_consent_in_background(prompt, io.StringIO("Yes\n"))

    assert asyncio.run(scenario()) is True
    assert "[y/N]" in prompt.getvalue()


def test_unanswered_consent_prompt_does_not_block_shutdown() -> None:
    release = threading.Event()

    class _SilentTerminal:
        def readline(self) -> str:
            release.wait(10.0)
            return ""

    async def scenario() -> None:
        answer = cli._ask_consent_in_background(io.StringIO(), _SilentTerminal())
        await asyncio.sleep(0.05)
        assert not answer.done()
        answer.cancel()

    started = time.monotonic()
    asyncio.run(scenario())
    elapsed = time.monotonic() - started
    release.set()

    assert elapsed < 2.0
