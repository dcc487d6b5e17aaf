"""Best-effort device fingerprint derived from a user agent and its runtime."""

from __future__ import annotations

from dataclasses import dataclass
import locale
import os
import platform as platform_module
import re
import shutil
import time
from typing import Optional

from .models import UNKNOWN, DeviceFingerprint

_BROWSER_TOKENS = (
    ("Chrome", "Chrome"),
    ("Firefox", "Firefox"),
    ("Safari", "Safari"),
    ("Edge", "Edge"),
)
_OS_TOKENS = (
    ("Windows", "Windows"),
    ("Mac", "macOS"),
    ("Linux", "Linux"),
    ("Android", "Android"),
    ("iOS", "iOS"),
)
_BROWSER_VERSION = re.compile(r"(chrome|firefox|safari|edge)/(\d+)", re.IGNORECASE)
_OS_VERSION = re.compile(r"\(([^)]+)\)")
_MOBILE = re.compile(r"Mobile|Android|iPhone|iPad")


@dataclass(frozen=True)
class RuntimeEnvironment:
    user_agent: Optional[str] = None
    platform: Optional[str] = None
    language: Optional[str] = None
    screen_width: Optional[int] = None
    screen_height: Optional[int] = None
    timezone: Optional[str] = None

    @classmethod
    def from_process(cls) -> "RuntimeEnvironment":
        """Describe the running interpreter the way a browser describes itself."""
        system = platform_module.system()
        size = shutil.get_terminal_size(fallback=(0, 0))
        return cls(
            user_agent=_process_user_agent(system),
            platform=system or None,
            language=_process_language(),
            screen_width=size.columns or None,
            screen_height=size.lines or None,
            timezone=os.environ.get("TZ") or (time.tzname[0] if time.tzname else None),
        )


def collect(environment: Optional[RuntimeEnvironment] = None) -> DeviceFingerprint:
    if environment is None:
        try:
            environment = RuntimeEnvironment.from_process()
        except Exception:  # pragma: no cover - exotic runtimes
            environment = RuntimeEnvironment()
    user_agent = environment.user_agent or ""
    return DeviceFingerprint(
        user_agent=user_agent or UNKNOWN,
        platform=environment.platform or UNKNOWN,
        browser=detect_browser(user_agent),
        browser_version=detect_browser_version(user_agent),
        os=detect_os(user_agent),
        os_version=detect_os_version(user_agent),
        device_type=detect_device_type(user_agent),
        screen_resolution=_screen_resolution(environment),
        timezone=environment.timezone or UNKNOWN,
        language=environment.language or UNKNOWN,
    )


def detect_browser(user_agent: str) -> str:
    for token, name in _BROWSER_TOKENS:
        if token in user_agent:
            return name
    return UNKNOWN


def detect_browser_version(user_agent: str) -> str:
    match = _BROWSER_VERSION.search(user_agent)
    return match.group(2) if match else UNKNOWN


def detect_os(user_agent: str) -> str:
    for token, name in _OS_TOKENS:
        if token in user_agent:
            return name
    return UNKNOWN


def detect_os_version(user_agent: str) -> str:
    match = _OS_VERSION.search(user_agent)
    return match.group(1) if match else UNKNOWN


def detect_device_type(user_agent: str) -> str:
    if _MOBILE.search(user_agent):
        return "tablet" if "iPad" in user_agent else "mobile"
    return "desktop"


def _screen_resolution(environment: RuntimeEnvironment) -> str:
    if environment.screen_width and environment.screen_height:
        return f"{environment.screen_width}x{environment.screen_height}"
    return UNKNOWN


def _process_user_agent(system: str) -> str:
    if system == "Windows":
        os_token = f"Windows NT {platform_module.version()}"
    elif system == "Darwin":
        os_token = f"Macintosh; Mac OS X {platform_module.mac_ver()[0]}"
    elif system:
        os_token = f"X11; {system} {platform_module.machine()}"
    else:
        os_token = UNKNOWN
    return f"geotrack/{platform_module.python_version()} ({os_token})"


def _process_language() -> Optional[str]:
    try:
        language, _ = locale.getlocale()
    except ValueError:
        return None
    if not language:
        return None
    return language.replace("_", "-")
