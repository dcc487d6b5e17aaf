"""Live map presentation of the current session and other parties.

``LiveMap`` binds one tracking session to one map widget. The widget is mounted
once per ``LiveMap`` and then only receives incremental updates; ``unmount`` is
safe to call any number of times.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
import logging
import time
from typing import Dict, List, Optional, Protocol, Sequence, Set, TextIO, Tuple

from .config import MapConfig
from .errors import MapInitializationError
from .events import Subscription
from .models import PositionSample, PresenceStatus, UserLocation
from .session import TrackingSession

SELF_MARKER_ID = "self"

LatLng = Tuple[float, float]


class ViewMode:
    ALL_USERS = "all-users"
    MY_LOCATION = "my-location"
    SELECTED_USERS = "selected-users"

    ALL = (ALL_USERS, MY_LOCATION, SELECTED_USERS)


STATUS_GLYPHS: Dict[str, str] = {
    PresenceStatus.ONLINE: "●",
    PresenceStatus.OFFLINE: "○",
    PresenceStatus.IDLE: "◐",
    PresenceStatus.AWAY: "◌",
}
SELF_GLYPH = "◎"


@dataclass
class MapContainer:
    width: int
    height: int
    attached: bool = True


@dataclass(frozen=True)
class Marker:
    marker_id: str
    latitude: float
    longitude: float
    label: str
    status: str = PresenceStatus.ONLINE
    accuracy: Optional[float] = None
    last_seen: Optional[datetime] = None
    is_self: bool = False


class MapWidget(Protocol):
    def mount(self, container: MapContainer, center: LatLng, zoom: int) -> None:
        ...

    def set_view(self, center: LatLng, zoom: int) -> None:
        ...

    def fit_bounds(self, points: Sequence[LatLng]) -> None:
        ...

    def upsert_marker(self, marker: Marker) -> None:
        ...

    def remove_marker(self, marker_id: str) -> None:
        ...

    def set_tile_source(self, url: str) -> None:
        ...

    def remove(self) -> None:
        ...


def format_last_seen(last_seen: Optional[datetime], now: Optional[datetime] = None) -> str:
    if last_seen is None:
        return "Unknown"
    if now is None:
        now = datetime.now(timezone.utc)
    if last_seen.tzinfo is None:
        last_seen = last_seen.replace(tzinfo=timezone.utc)
    minutes = int(max((now - last_seen).total_seconds(), 0.0) // 60)
    if minutes < 1:
        return "Just now"
    if minutes < 60:
        return f"{minutes}m ago"
    hours = minutes // 60
    if hours < 24:
        return f"{hours}h ago"
    return f"{hours // 24}d ago"


class LiveMap:
    def __init__(
        self,
        session: TrackingSession,
        widget: MapWidget,
        container: MapContainer,
        config: Optional[MapConfig] = None,
        *,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._session = session
        self._widget = widget
        self._container = container
        self._config = config or MapConfig()
        self._logger = logger or logging.getLogger(__name__)
        self._view_mode = self._config.view_mode
        self._selected = set(self._config.selected_users)
        self._users: List[UserLocation] = []
        self._user_markers: Set[str] = set()
        self._own: Optional[PositionSample] = None
        self._subscription: Optional[Subscription] = None
        self._mounting = False
        self._mounted = False
        self._closed = False
        self._fallback_applied = False

    @property
    def mounted(self) -> bool:
        return self._mounted

    @property
    def view_mode(self) -> str:
        return self._view_mode

    @property
    def using_fallback_tiles(self) -> bool:
        return self._fallback_applied

    async def mount(self) -> bool:
        """Create the map widget, retrying once if the container is not ready."""
        if self._mounted or self._mounting or self._closed:
            return self._mounted
        self._mounting = True
        try:
            if not await self._mount_widget():
                return False
        finally:
            self._mounting = False

        self._mounted = True
        self._widget.set_tile_source(self._config.primary_tile_url)
        self._subscription = self._session.on_sample(self.show_sample)
        latest = self._session.latest_sample()
        if latest is not None:
            self.show_sample(latest)
        elif self._users:
            self._render_users()
        self._logger.debug("map_mounted")
        return True

    def unmount(self) -> None:
        self._closed = True
        if self._subscription is not None:
            self._subscription.dispose()
            self._subscription = None
        if not self._mounted:
            return
        self._mounted = False
        try:
            self._widget.remove()
        except MapInitializationError as exc:
            self._logger.warning("map_remove_failed", extra={"error": str(exc)})
        self._logger.debug("map_unmounted")

    def show_sample(self, sample: PositionSample) -> None:
        if not self._mounted:
            return
        self._own = sample
        self._widget.upsert_marker(
            Marker(
                marker_id=SELF_MARKER_ID,
                latitude=sample.latitude,
                longitude=sample.longitude,
                label="You",
                accuracy=sample.accuracy,
                last_seen=datetime.fromtimestamp(sample.timestamp / 1000.0, tz=timezone.utc),
                is_self=True,
            )
        )
        self._refresh_view()

    def set_users(self, users: Sequence[UserLocation]) -> None:
        self._users = list(users)
        if self._mounted:
            self._render_users()

    def set_view_mode(self, mode: str, selected_users: Optional[Sequence[str]] = None) -> None:
        if mode not in ViewMode.ALL:
            raise ValueError(f"Unknown map view mode: {mode}.")
        self._view_mode = mode
        if selected_users is not None:
            self._selected = set(selected_users)
        if self._mounted:
            self._render_users()

    def handle_tile_error(self) -> bool:
        """Switch to the fallback tile source; only the first error has an effect."""
        if self._fallback_applied or not self._mounted:
            return False
        self._fallback_applied = True
        self._logger.warning(
            "map_tile_fallback", extra={"tile_url": self._config.fallback_tile_url}
        )
        self._widget.set_tile_source(self._config.fallback_tile_url)
        return True

    async def _mount_widget(self) -> bool:
        center = self._initial_center()
        for attempt in (1, 2):
            try:
                self._widget.mount(self._container, center, self._config.default_zoom)
                return True
            except MapInitializationError as exc:
                if attempt == 2:
                    self._logger.warning("map_init_failed", extra={"error": str(exc)})
                    return False
                self._logger.debug("map_init_retry", extra={"error": str(exc)})
            await asyncio.sleep(self._config.init_retry_delay_seconds)
            if self._closed:
                return False
        return False

    def _initial_center(self) -> LatLng:
        latest = self._session.latest_sample()
        if latest is not None:
            return (latest.latitude, latest.longitude)
        return self._config.default_center

    def _visible_users(self) -> List[UserLocation]:
        if self._view_mode == ViewMode.SELECTED_USERS:
            return [user for user in self._users if user.user_id in self._selected]
        return list(self._users)

    def _render_users(self) -> None:
        visible = self._visible_users()
        visible_ids = {user.user_id for user in visible}
        for marker_id in sorted(self._user_markers - visible_ids):
            self._widget.remove_marker(marker_id)
        for user in visible:
            self._widget.upsert_marker(
                Marker(
                    marker_id=user.user_id,
                    latitude=user.sample.latitude,
                    longitude=user.sample.longitude,
                    label=user.user_name,
                    status=user.status,
                    accuracy=user.sample.accuracy,
                    last_seen=user.last_seen,
                )
            )
        self._user_markers = visible_ids
        self._refresh_view()

    def _refresh_view(self) -> None:
        if self._view_mode == ViewMode.MY_LOCATION:
            focus = self._focus_point()
            if focus is not None:
                self._widget.set_view(focus, self._config.focus_zoom)
            return
        points = [(user.sample.latitude, user.sample.longitude) for user in self._visible_users()]
        if self._own is not None:
            points.append((self._own.latitude, self._own.longitude))
        if len(points) == 1:
            self._widget.set_view(points[0], self._config.focus_zoom)
        elif points:
            self._widget.fit_bounds(points)

    def _focus_point(self) -> Optional[LatLng]:
        if self._own is not None:
            return (self._own.latitude, self._own.longitude)
        for user in self._users:
            if user.is_online:
                return (user.sample.latitude, user.sample.longitude)
        return None


@dataclass
class TerminalMapWidget:
    """ASCII map widget; one character cell per container unit."""

    tile_url: str = ""
    stream: Optional[TextIO] = None
    title: str = "Live Location Map"
    _markers: Dict[str, Marker] = field(default_factory=dict, init=False)
    _container: Optional[MapContainer] = field(default=None, init=False)
    _center: LatLng = field(default=(0.0, 0.0), init=False)
    _zoom: int = field(default=13, init=False)
    _bounds: Optional[Tuple[LatLng, LatLng]] = field(default=None, init=False)

    @property
    def mounted(self) -> bool:
        return self._container is not None

    def mount(self, container: MapContainer, center: LatLng, zoom: int) -> None:
        if self._container is not None:
            raise MapInitializationError("Map container is already initialized.")
        if not container.attached or container.width <= 0 or container.height <= 0:
            raise MapInitializationError("Map container has zero size.")
        self._container = container
        self.set_view(center, zoom)

    def set_view(self, center: LatLng, zoom: int) -> None:
        self._center = center
        self._zoom = zoom
        self._bounds = None
        self._draw()

    def fit_bounds(self, points: Sequence[LatLng]) -> None:
        if not points:
            return
        lats = [point[0] for point in points]
        lons = [point[1] for point in points]
        pad_lat = max((max(lats) - min(lats)) * 0.1, 1e-4)
        pad_lon = max((max(lons) - min(lons)) * 0.1, 1e-4)
        self._bounds = (
            (min(lats) - pad_lat, min(lons) - pad_lon),
            (max(lats) + pad_lat, max(lons) + pad_lon),
        )
        self._center = ((min(lats) + max(lats)) / 2, (min(lons) + max(lons)) / 2)
        self._draw()

    def upsert_marker(self, marker: Marker) -> None:
        self._markers[marker.marker_id] = marker
        self._draw()

    def remove_marker(self, marker_id: str) -> None:
        self._markers.pop(marker_id, None)
        self._draw()

    def set_tile_source(self, url: str) -> None:
        self.tile_url = url
        self._draw()

    def remove(self) -> None:
        if self._container is None:
            raise MapInitializationError("Map widget was already removed.")
        self._container = None
        self._markers.clear()

    def render(self, now: Optional[datetime] = None) -> str:
        if now is None:
            now = datetime.now(timezone.utc)
        timestamp = time.strftime("%Y-%m-%d %H:%M:%S", time.localtime(now.timestamp()))
        lines = [self.title, f"Updated: {timestamp}", f"Tiles: {self.tile_url or 'none'}", ""]
        lines.append(self._render_legend())
        lines.append("")
        lines.extend(self._render_marker_list(now))
        lines.append("")
        lines.extend(self._render_grid())
        return "\n".join(lines)

    def _render_legend(self) -> str:
        entries = [f"{glyph} {status}" for status, glyph in STATUS_GLYPHS.items()]
        entries.append(f"{SELF_GLYPH} you")
        return "Legend: " + " | ".join(entries)

    def _render_marker_list(self, now: datetime) -> List[str]:
        if not self._markers:
            return ["No locations to show."]
        lines = ["Locations:"]
        markers = sorted(self._markers.values(), key=lambda item: (not item.is_self, item.label))
        for marker in markers:
            accuracy = f", ±{marker.accuracy:.0f} m" if marker.accuracy is not None else ""
            lines.append(
                "- {glyph} {label}: ({lat:.5f}, {lon:.5f}){accuracy}, {status}, "
                "last seen {last_seen}".format(
                    glyph=_glyph(marker),
                    label=marker.label,
                    lat=marker.latitude,
                    lon=marker.longitude,
                    accuracy=accuracy,
                    status=marker.status,
                    last_seen=format_last_seen(marker.last_seen, now),
                )
            )
        return lines

    def _render_grid(self) -> List[str]:
        if self._container is None:
            return []
        width, height = self._container.width, self._container.height
        grid = [["·" for _ in range(width)] for _ in range(height)]
        (south, west), (north, east) = self._view_bounds()
        lat_span = max(north - south, 1e-9)
        lon_span = max(east - west, 1e-9)
        # Self marker is drawn last so it stays visible on shared cells.
        ordered = sorted(self._markers.values(), key=lambda item: item.is_self)
        for marker in ordered:
            rel_x = (marker.longitude - west) / lon_span
            rel_y = (marker.latitude - south) / lat_span
            if not (0.0 <= rel_x <= 1.0 and 0.0 <= rel_y <= 1.0):
                continue
            col = min(int(rel_x * (width - 1)), width - 1)
            row = min(int(rel_y * (height - 1)), height - 1)
            grid[height - 1 - row][col] = _glyph(marker)
        lines = [f"Map (zoom {self._zoom}, center {self._center[0]:.4f}, {self._center[1]:.4f}):"]
        lines.extend("".join(row) for row in grid)
        return lines

    def _view_bounds(self) -> Tuple[LatLng, LatLng]:
        if self._bounds is not None:
            return self._bounds
        lon_span = 360.0 / (2 ** self._zoom)
        lat_span = lon_span / 2
        lat, lon = self._center
        return (
            (lat - lat_span / 2, lon - lon_span / 2),
            (lat + lat_span / 2, lon + lon_span / 2),
        )

    def _draw(self) -> None:
        if self.stream is None or self._container is None:
            return
        self.stream.write("\033[2J\033[H")
        self.stream.write(self.render())
        self.stream.write("\n")
        self.stream.flush()


def _glyph(marker: Marker) -> str:
    if marker.is_self:
        return SELF_GLYPH
    return STATUS_GLYPHS.get(marker.status, "?")
