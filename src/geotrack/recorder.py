from __future__ import annotations

import asyncio
from dataclasses import asdict, replace
import json
import logging
import math
import time
from typing import Callable, List, Optional, Set
import uuid

from .config import RecorderConfig
from .errors import StorageError
from .events import Subscription
from .fingerprint import collect
from .geocode import ReverseGeocoder
from .models import (
    Activity,
    DeviceFingerprint,
    LocationHistoryRecord,
    PositionSample,
    PresenceStatus,
    TrackedUser,
    TrackingRecord,
    TrackingStatus,
)
from .session import StatusChange, TrackingSession
from .sinks import TrackingSink, sample_to_payload
from .storage import DEVICE_INFO_KEY, LAST_LOCATION_KEY, USER_STATUS_KEY, KeyValueStore

EARTH_RADIUS_KM = 6371.0


def haversine_km(first: PositionSample, second: PositionSample) -> float:
    lat1, lat2 = math.radians(first.latitude), math.radians(second.latitude)
    d_lat = lat2 - lat1
    d_lon = math.radians(second.longitude - first.longitude)
    a = math.sin(d_lat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(d_lon / 2) ** 2
    return EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def new_session_id() -> str:
    return f"session_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


class LocationRecorder:
    """Persist what an active tracking session observes.

    Samples are recorded strictly in delivery order by a single worker task.
    While the session is active an ``online`` heartbeat is written to the
    profile store; when it stops the user is marked ``offline``.
    """

    def __init__(
        self,
        session: TrackingSession,
        store: KeyValueStore,
        *,
        user: TrackedUser,
        sink: Optional[TrackingSink] = None,
        geocoder: Optional[ReverseGeocoder] = None,
        config: Optional[RecorderConfig] = None,
        fingerprint: Callable[[], DeviceFingerprint] = collect,
        session_id: Optional[str] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._session = session
        self._store = store
        self._user = user
        self._sink = sink
        self._geocoder = geocoder
        self._config = config or RecorderConfig()
        self._fingerprint = fingerprint
        self._session_id = session_id or new_session_id()
        self._logger = logger or logging.getLogger(__name__)
        self._subscriptions: List[Subscription] = []
        self._queue: Optional["asyncio.Queue[PositionSample]"] = None
        self._worker: Optional[asyncio.Task] = None
        self._heartbeat: Optional[asyncio.Task] = None
        self._online = False
        self._background: Set[asyncio.Task] = set()
        self._last_sample: Optional[PositionSample] = None
        self._total_distance_km = 0.0
        self._device: Optional[DeviceFingerprint] = None

    @property
    def session_id(self) -> str:
        return self._session_id

    @property
    def total_distance_km(self) -> float:
        return self._total_distance_km

    @property
    def attached(self) -> bool:
        return bool(self._subscriptions)

    def attach(self) -> None:
        if self._subscriptions:
            return
        loop = asyncio.get_running_loop()
        self._queue = asyncio.Queue()
        self._worker = loop.create_task(self._drain(self._queue))
        self._subscriptions = [
            self._session.on_sample(self._queue.put_nowait),
            self._session.on_status(self._on_status),
        ]
        if self._session.is_tracking:
            self._go_online()

    async def detach(self) -> None:
        if not self._subscriptions:
            return
        for subscription in self._subscriptions:
            subscription.dispose()
        self._subscriptions = []
        if self._queue is not None:
            await self._queue.join()
        if self._worker is not None:
            self._worker.cancel()
            self._worker = None
        self._queue = None
        await self._go_offline()
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)

    async def record(self, sample: PositionSample) -> LocationHistoryRecord:
        distance = haversine_km(self._last_sample, sample) if self._last_sample else 0.0
        if self._geocoder is not None and self._config.reverse_geocode and not sample.address:
            address = await self._geocoder.lookup(sample.latitude, sample.longitude)
            if address:
                sample = replace(sample, address=address)
        self._last_sample = sample
        self._total_distance_km += distance
        activity = Activity.MOVE if distance > self._config.movement_threshold_km else Activity.IDLE
        device = self._current_device()

        self._write(
            LAST_LOCATION_KEY,
            json.dumps({**sample_to_payload(sample), "userInfo": asdict(device)}),
        )
        history = LocationHistoryRecord(
            user_id=self._user.user_id,
            session_id=self._session_id,
            sample=sample,
            activity=activity,
            distance_km=distance,
        )
        if self._sink is not None:
            tracking = TrackingRecord(
                user=self._user,
                session_id=self._session_id,
                sample=sample,
                device=device,
                total_distance_km=self._total_distance_km,
            )
            await self._call_sink(self._sink.save_tracking_record, tracking)
            await self._call_sink(self._sink.save_history_record, history)
        self._logger.debug(
            "location_recorded",
            extra={
                "user_id": self._user.user_id,
                "activity": activity,
                "distance_km": distance,
            },
        )
        return history

    async def _drain(self, queue: "asyncio.Queue[PositionSample]") -> None:
        while True:
            sample = await queue.get()
            try:
                await self.record(sample)
            except Exception:
                self._logger.exception("location_record_failed")
            finally:
                queue.task_done()

    def _on_status(self, change: StatusChange) -> None:
        if change.current == TrackingStatus.ACTIVE:
            self._go_online()
        elif change.current == TrackingStatus.STOPPED and change.previous in {
            TrackingStatus.ACTIVE,
            TrackingStatus.ERROR,
        }:
            task = asyncio.get_running_loop().create_task(self._go_offline())
            self._background.add(task)
            task.add_done_callback(self._background.discard)

    def _go_online(self) -> None:
        self._online = True
        self._write(DEVICE_INFO_KEY, json.dumps(asdict(self._current_device())))
        if self._heartbeat is None or self._heartbeat.done():
            self._heartbeat = asyncio.get_running_loop().create_task(self._beat())

    async def _go_offline(self) -> None:
        if not self._online:
            return
        self._online = False
        if self._heartbeat is not None:
            self._heartbeat.cancel()
            self._heartbeat = None
        self._write(USER_STATUS_KEY, PresenceStatus.OFFLINE)
        if self._sink is not None:
            await self._call_sink(self._sink.mark_offline, self._user.user_id, self._session_id)

    async def _beat(self) -> None:
        interval = max(self._config.heartbeat_interval_seconds, 0.1)
        while True:
            self._write(USER_STATUS_KEY, PresenceStatus.ONLINE)
            await asyncio.sleep(interval)

    def _current_device(self) -> DeviceFingerprint:
        if self._device is None:
            try:
                self._device = self._fingerprint()
            except Exception:
                self._logger.exception("fingerprint_failed")
                self._device = DeviceFingerprint()
        return self._device

    def _write(self, key: str, value: str) -> None:
        try:
            self._store.set(key, value)
        except StorageError as exc:
            self._logger.warning("store_write_failed", extra={"key": key, "error": str(exc)})

    async def _call_sink(self, method: Callable[..., None], *args: object) -> None:
        try:
            await asyncio.to_thread(method, *args)
        except Exception:
            self._logger.exception("tracking_sink_failed", extra={"operation": method.__name__})
