from geotrack.fingerprint import (
    RuntimeEnvironment,
    collect,
    detect_browser,
    detect_device_type,
    detect_os,
)
from geotrack.models import UNKNOWN, DeviceFingerprint

WINDOWS_CHROME = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)
IPAD_SAFARI = (
    "Mozilla/5.0 (iPad; CPU OS 17_0 like Mac OS X) AppleWebKit/605.1.15 "
    "(KHTML, like Gecko) Version/17.0 Mobile/15E148 Safari/604.1"
)


def test_collect_parses_browser_user_agent() -> None:
    fingerprint = collect(
        RuntimeEnvironment(
            user_agent=WINDOWS_CHROME,
            platform="Win32",
            language="en-US",
            screen_width=1920,
            screen_height=1080,
            timezone="Asia/Kolkata",
        )
    )

    assert fingerprint.browser == "Chrome"
    assert fingerprint.browser_version == "120"
    assert fingerprint.os == "Windows"
    assert fingerprint.os_version == "Windows NT 10.0; Win64; x64"
    assert fingerprint.device_type == "desktop"
    assert fingerprint.screen_resolution == "1920x1080"
    assert fingerprint.timezone == "Asia/Kolkata"
    assert fingerprint.language == "en-US"


def test_tablet_and_mobile_detection() -> None:
    assert detect_device_type(IPAD_SAFARI) == "tablet"
    assert detect_device_type("Mozilla/5.0 (iPhone; CPU iPhone OS 17_0) Mobile") == "mobile"
    assert detect_browser(IPAD_SAFARI) == "Safari"
    assert detect_os(IPAD_SAFARI) == "macOS"


def test_empty_environment_is_all_unknown() -> None:
    fingerprint = collect(RuntimeEnvironment())

    assert fingerprint == DeviceFingerprint()
    assert fingerprint.browser == UNKNOWN
    assert fingerprint.device_type == "desktop"


def test_process_environment_never_fails() -> None:
    fingerprint = collect()

    assert fingerprint.user_agent.startswith("geotrack/")
    assert fingerprint.device_type in {"mobile", "tablet", "desktop"}
