"""Consent-gated location tracking session.

One ``TrackingSession`` is created by the application root per login and closed
on logout. It owns the only geolocation watch, decides on every load whether to
resume tracking silently or to ask for consent, and relays position samples and
errors to any number of subscribers.

All state changes happen synchronously inside one event-loop turn, so re-entrant
calls to ``initialize`` or ``record_consent`` coalesce without locks.
"""

from __future__ import annotations

import asyncio
from dataclasses import asdict, dataclass
import logging
from typing import Callable, Dict, FrozenSet, List, Optional

from .config import SessionConfig
from .consent import ConsentStore
from .errors import GeolocationError, GeolocationUnavailableError, InvalidTransitionError
from .events import ListenerRegistry, Subscription
from .fingerprint import collect
from .models import DeviceFingerprint, GeolocationErrorKind, PositionSample, TrackingStatus
from .poller import GeolocationPoller

_TRANSITIONS: Dict[str, FrozenSet[str]] = {
    TrackingStatus.IDLE: frozenset(
        {TrackingStatus.CHECKING_CONSENT, TrackingStatus.ACTIVE, TrackingStatus.STOPPED}
    ),
    TrackingStatus.CHECKING_CONSENT: frozenset(
        {TrackingStatus.AWAITING_CONSENT, TrackingStatus.ACTIVE, TrackingStatus.STOPPED}
    ),
    TrackingStatus.AWAITING_CONSENT: frozenset(
        {TrackingStatus.ACTIVE, TrackingStatus.STOPPED}
    ),
    TrackingStatus.ACTIVE: frozenset({TrackingStatus.ERROR, TrackingStatus.STOPPED}),
    TrackingStatus.ERROR: frozenset({TrackingStatus.STOPPED}),
    TrackingStatus.STOPPED: frozenset(
        {TrackingStatus.CHECKING_CONSENT, TrackingStatus.ACTIVE}
    ),
}


@dataclass(frozen=True)
class ConsentPrompt:
    user_id: str


@dataclass(frozen=True)
class StatusChange:
    previous: str
    current: str


class TrackingSession:
    def __init__(
        self,
        poller: GeolocationPoller,
        consent_store: ConsentStore,
        *,
        config: Optional[SessionConfig] = None,
        fingerprint: Callable[[], DeviceFingerprint] = collect,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._poller = poller
        self._consent_store = consent_store
        self._config = config or SessionConfig()
        self._fingerprint = fingerprint
        self._logger = logger or logging.getLogger(__name__)
        self._status = TrackingStatus.IDLE
        self._consent_checked = False
        self._delivering = False
        self._epoch = 0
        self._user_id: Optional[str] = None
        self._latest: Optional[PositionSample] = None
        self._prompt_timer: Optional[asyncio.TimerHandle] = None
        self._pending_changes: List[StatusChange] = []
        self._publishing = False
        self._save_lock: Optional[asyncio.Lock] = None
        self._samples: ListenerRegistry[PositionSample] = ListenerRegistry(
            "sample", logger=self._logger
        )
        self._errors: ListenerRegistry[GeolocationError] = ListenerRegistry(
            "error", logger=self._logger
        )
        self._prompts: ListenerRegistry[ConsentPrompt] = ListenerRegistry(
            "consent_prompt", logger=self._logger
        )
        self._status_changes: ListenerRegistry[StatusChange] = ListenerRegistry(
            "status", logger=self._logger
        )

    @property
    def status(self) -> str:
        return self._status

    @property
    def consent_checked(self) -> bool:
        return self._consent_checked

    @property
    def user_id(self) -> Optional[str]:
        return self._user_id

    @property
    def is_tracking(self) -> bool:
        return self._status == TrackingStatus.ACTIVE

    @property
    def prompt_pending(self) -> bool:
        return self._prompt_timer is not None

    def is_supported(self) -> bool:
        return self._poller.is_supported()

    def latest_sample(self) -> Optional[PositionSample]:
        return self._latest

    def mark_consent_checked(self) -> None:
        self._consent_checked = True

    def on_sample(self, listener: Callable[[PositionSample], None]) -> Subscription:
        return self._samples.subscribe(listener)

    def on_error(self, listener: Callable[[GeolocationError], None]) -> Subscription:
        return self._errors.subscribe(listener)

    def on_consent_prompt(self, listener: Callable[[ConsentPrompt], None]) -> Subscription:
        return self._prompts.subscribe(listener)

    def on_status(self, listener: Callable[[StatusChange], None]) -> Subscription:
        return self._status_changes.subscribe(listener)

    async def initialize(self, user_id: str) -> str:
        if self._consent_checked:
            return self._status
        self._consent_checked = True
        self._user_id = user_id
        if not self.is_supported():
            self._logger.info("tracking_unsupported", extra={"user_id": user_id})
            return self._status

        self._transition(TrackingStatus.CHECKING_CONSENT)
        epoch = self._epoch
        self._publish_status()
        record = await self._consent_store.load(user_id)
        if epoch != self._epoch or self._status != TrackingStatus.CHECKING_CONSENT:
            # stop() or an explicit decision arrived while the load was in flight.
            return self._status

        if record is not None and record.granted:
            self._logger.info("consent_resumed", extra={"user_id": user_id})
            self._activate()
        else:
            self._transition(TrackingStatus.AWAITING_CONSENT)
            self._schedule_prompt(user_id)
            self._publish_status()
        return self._status

    async def record_consent(self, user_id: str, granted: bool) -> bool:
        """Apply a consent decision now and persist it; returns persistence success."""
        self._cancel_prompt()
        self._consent_checked = True
        self._user_id = user_id
        device = self._safe_fingerprint()
        if granted:
            self._activate(device)
        else:
            self._halt()
        # Decisions are written in the order they were made; the last one wins.
        if self._save_lock is None:
            self._save_lock = asyncio.Lock()
        async with self._save_lock:
            persisted = await self._consent_store.save(user_id, granted, device)
        if not persisted:
            self._logger.warning(
                "consent_not_persisted", extra={"user_id": user_id, "granted": granted}
            )
        return persisted

    def stop(self) -> None:
        """Stop tracking for this login; no sample is delivered after this returns."""
        self._epoch += 1
        self._consent_checked = False
        self._halt()

    def close(self) -> None:
        self.stop()
        self._samples.clear()
        self._errors.clear()
        self._prompts.clear()
        self._status_changes.clear()

    async def request_current_position(self) -> Optional[PositionSample]:
        try:
            sample = await self._poller.current_position(self._config.one_shot_options)
        except (GeolocationError, GeolocationUnavailableError) as exc:
            self._logger.warning("current_position_failed", extra={"error": str(exc)})
            return None
        if self._delivering:
            self._handle_sample(sample)
        return sample

    def _activate(self, device: Optional[DeviceFingerprint] = None) -> None:
        if self._status == TrackingStatus.ACTIVE:
            return
        self._transition(TrackingStatus.ACTIVE)
        self._delivering = True
        try:
            self._poller.start(self._handle_sample, self._handle_error)
        except GeolocationUnavailableError as exc:
            self._logger.warning("tracking_unavailable", extra={"error": str(exc)})
            self._delivering = False
            self._transition(TrackingStatus.ERROR)
            self._transition(TrackingStatus.STOPPED)
            self._publish_status()
            return
        device = device or self._safe_fingerprint()
        self._logger.info(
            "tracking_started",
            extra={"user_id": self._user_id, "device": asdict(device)},
        )
        self._publish_status()

    def _halt(self) -> None:
        self._cancel_prompt()
        self._delivering = False
        self._poller.stop()
        self._latest = None
        if self._status != TrackingStatus.STOPPED:
            self._transition(TrackingStatus.STOPPED)
            self._logger.info("tracking_stopped", extra={"user_id": self._user_id})
        self._publish_status()

    def _handle_sample(self, sample: PositionSample) -> None:
        if not self._delivering:
            return
        self._latest = sample
        self._samples.emit(sample)

    def _handle_error(self, error: GeolocationError) -> None:
        if not self._delivering:
            return
        if error.kind == GeolocationErrorKind.PERMISSION_DENIED:
            self._logger.warning("tracking_permission_denied", extra={"user_id": self._user_id})
            self._delivering = False
            self._poller.stop()
            self._latest = None
            self._transition(TrackingStatus.ERROR)
            self._transition(TrackingStatus.STOPPED)
        self._errors.emit(error)
        self._publish_status()

    def _schedule_prompt(self, user_id: str) -> None:
        self._cancel_prompt()
        loop = asyncio.get_running_loop()
        self._prompt_timer = loop.call_later(
            max(self._config.consent_prompt_delay_seconds, 0.0),
            self._fire_prompt,
            user_id,
        )

    def _fire_prompt(self, user_id: str) -> None:
        self._prompt_timer = None
        if self._status != TrackingStatus.AWAITING_CONSENT:
            return
        self._logger.info("consent_prompt", extra={"user_id": user_id})
        self._prompts.emit(ConsentPrompt(user_id=user_id))

    def _cancel_prompt(self) -> None:
        timer, self._prompt_timer = self._prompt_timer, None
        if timer is not None:
            timer.cancel()

    def _safe_fingerprint(self) -> DeviceFingerprint:
        try:
            return self._fingerprint()
        except Exception:
            self._logger.exception("fingerprint_failed")
            return DeviceFingerprint()

    def _transition(self, target: str) -> None:
        previous = self._status
        if target == previous:
            return
        if target not in _TRANSITIONS[previous]:
            raise InvalidTransitionError(
                f"Cannot move tracking session from {previous} to {target}."
            )
        self._status = target
        self._logger.debug("tracking_status", extra={"previous": previous, "current": target})
        self._pending_changes.append(StatusChange(previous=previous, current=target))

    def _publish_status(self) -> None:
        """Notify status listeners once the session has settled.

        Listeners may call back into the session (``stop()`` on logout is the
        usual case); the changes they cause are queued and delivered in order by
        the outermost call.
        """
        if self._publishing:
            return
        self._publishing = True
        try:
            while self._pending_changes:
                self._status_changes.emit(self._pending_changes.pop(0))
        finally:
            self._publishing = False
