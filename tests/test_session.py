import asyncio
import time
from typing import Dict, List, Optional, Tuple

from geotrack.config import SessionConfig
from geotrack.consent import ConsentStore, InMemoryConsentBackend
from geotrack.errors import ConsentPersistenceError, GeolocationError
from geotrack.models import ConsentRecord, DeviceFingerprint, PositionSample, TrackingStatus
from geotrack.platforms.base import (
    PERMISSION_DENIED,
    POSITION_UNAVAILABLE,
    TIMEOUT,
    PlatformPosition,
)
from geotrack.poller import GeolocationPoller
from geotrack.session import ConsentPrompt, StatusChange, TrackingSession


class _FakePlatform:
    def __init__(self, supported: bool = True) -> None:
        self.supported = supported
        self.watch_calls = 0
        self.cleared: List[int] = []
        self.watchers: Dict[int, Tuple[object, object]] = {}
        self.last_callbacks: Optional[Tuple[object, object]] = None
        self.one_shot: object = None

    def is_supported(self) -> bool:
        return self.supported

    def watch_position(self, on_success, on_error, options) -> int:
        self.watch_calls += 1
        self.watchers[self.watch_calls] = (on_success, on_error)
        self.last_callbacks = (on_success, on_error)
        return self.watch_calls

    def clear_watch(self, watch_id: int) -> None:
        self.cleared.append(watch_id)
        self.watchers.pop(watch_id, None)

    def get_current_position(self, on_success, on_error, options) -> None:
        if isinstance(self.one_shot, PlatformPosition):
            on_success(self.one_shot)
        else:
            on_error(*self.one_shot)

    def fire(
        self, latitude: float, longitude: float, accuracy: float = 20.0, ts: int = 1000
    ) -> None:
        for on_success, _ in list(self.watchers.values()):
            on_success(PlatformPosition(latitude, longitude, accuracy, ts))

    def fire_late(self, latitude: float, longitude: float) -> None:
        on_success, _ = self.last_callbacks
        on_success(PlatformPosition(latitude, longitude, 10.0, 2000))

    def fail(self, code: int, message: str = "") -> None:
        for _, on_error in list(self.watchers.values()):
            on_error(code, message)


class _FailingBackend:
    def get_consent(self, user_id: str) -> Optional[ConsentRecord]:
        raise ConsentPersistenceError("storage offline")

    def set_consent(self, record: ConsentRecord) -> None:
        raise ConsentPersistenceError("storage offline")


def _session(
    platform: _FakePlatform, backend: Optional[object] = None
) -> TrackingSession:
    return TrackingSession(
        GeolocationPoller(platform),
        ConsentStore(backend or InMemoryConsentBackend()),
        config=SessionConfig(consent_prompt_delay_seconds=0.01),
        fingerprint=lambda: DeviceFingerprint(browser="Chrome"),
    )


def _granted_backend(user_id: str = "u1") -> InMemoryConsentBackend:
    backend = InMemoryConsentBackend()
    backend.set_consent(ConsentRecord(user_id=user_id, granted=True))
    return backend


def test_initialize_twice_starts_one_watch() -> None:
    async def scenario() -> None:
        platform = _FakePlatform()
        session = _session(platform, _granted_backend())

        await asyncio.gather(session.initialize("u1"), session.initialize("u1"))
        await session.initialize("u1")

        assert platform.watch_calls == 1
        assert session.status == TrackingStatus.ACTIVE

    asyncio.run(scenario())


def test_no_stored_consent_prompts_before_watching() -> None:
    async def scenario() -> None:
        platform = _FakePlatform()
        backend = InMemoryConsentBackend()
        session = _session(platform, backend)
        prompts: List[ConsentPrompt] = []
        session.on_consent_prompt(prompts.append)

        status = await session.initialize("u1")

        assert status == TrackingStatus.AWAITING_CONSENT
        assert session.prompt_pending
        assert prompts == []
        await asyncio.sleep(0.05)
        assert prompts == [ConsentPrompt(user_id="u1")]
        assert platform.watch_calls == 0

        assert await session.record_consent("u1", True) is True
        assert platform.watch_calls == 1
        assert session.status == TrackingStatus.ACTIVE
        stored = backend.get_consent("u1")
        assert stored is not None and stored.granted
        assert stored.device == DeviceFingerprint(browser="Chrome")

    asyncio.run(scenario())


def test_stored_grant_starts_without_prompt() -> None:
    async def scenario() -> None:
        platform = _FakePlatform()
        session = _session(platform, _granted_backend())
        prompts: List[ConsentPrompt] = []
        session.on_consent_prompt(prompts.append)

        await session.initialize("u1")
        await asyncio.sleep(0.05)

        assert session.is_tracking
        assert platform.watch_calls == 1
        assert prompts == []

    asyncio.run(scenario())


def test_stored_decline_prompts_again() -> None:
    async def scenario() -> None:
        platform = _FakePlatform()
        backend = InMemoryConsentBackend()
        backend.set_consent(ConsentRecord(user_id="u1", granted=False))
        session = _session(platform, backend)
        prompts: List[ConsentPrompt] = []
        session.on_consent_prompt(prompts.append)

        await session.initialize("u1")
        await asyncio.sleep(0.05)

        assert len(prompts) == 1
        assert platform.watch_calls == 0

    asyncio.run(scenario())


def test_decline_after_active_stops_watch() -> None:
    async def scenario() -> None:
        platform = _FakePlatform()
        session = _session(platform, _granted_backend())
        await session.initialize("u1")
        assert session.is_tracking

        await session.record_consent("u1", False)
        await session.record_consent("u1", False)

        assert session.status == TrackingStatus.STOPPED
        assert platform.watchers == {}
        assert platform.cleared == [1]
        assert session.latest_sample() is None

    asyncio.run(scenario())


def test_record_consent_is_idempotent() -> None:
    async def scenario() -> None:
        platform = _FakePlatform()
        session = _session(platform)

        await session.record_consent("u1", True)
        await session.record_consent("u1", True)

        assert platform.watch_calls == 1
        assert session.status == TrackingStatus.ACTIVE

    asyncio.run(scenario())


def test_decision_before_prompt_cancels_prompt() -> None:
    async def scenario() -> None:
        platform = _FakePlatform()
        session = _session(platform)
        prompts: List[ConsentPrompt] = []
        session.on_consent_prompt(prompts.append)

        await session.initialize("u1")
        await session.record_consent("u1", True)
        await asyncio.sleep(0.05)

        assert prompts == []
        assert not session.prompt_pending

    asyncio.run(scenario())


def test_stop_resets_consent_checked() -> None:
    async def scenario() -> None:
        platform = _FakePlatform()
        backend = _granted_backend()
        session = _session(platform, backend)
        await session.initialize("u1")
        assert session.consent_checked

        session.stop()
        assert not session.consent_checked
        assert session.status == TrackingStatus.STOPPED

        backend.set_consent(ConsentRecord(user_id="u2", granted=False))
        status = await session.initialize("u2")

        assert status == TrackingStatus.AWAITING_CONSENT
        assert platform.watch_calls == 1

    asyncio.run(scenario())


def test_stop_during_consent_load_discards_result() -> None:
    async def scenario() -> None:
        platform = _FakePlatform()
        session = _session(platform, _granted_backend())

        pending = asyncio.ensure_future(session.initialize("u1"))
        await asyncio.sleep(0)
        session.stop()
        await pending

        assert session.status == TrackingStatus.STOPPED
        assert platform.watch_calls == 0

    asyncio.run(scenario())


def test_late_subscriber_pulls_latest_sample() -> None:
    async def scenario() -> None:
        platform = _FakePlatform()
        session = _session(platform, _granted_backend())
        await session.initialize("u1")

        platform.fire(17.4771, 78.5724)
        received: List[PositionSample] = []
        session.on_sample(received.append)

        assert received == []
        assert session.latest_sample() == PositionSample(17.4771, 78.5724, 20.0, 1000)

    asyncio.run(scenario())


def test_transient_errors_keep_session_active() -> None:
    async def scenario() -> None:
        platform = _FakePlatform()
        session = _session(platform, _granted_backend())
        errors: List[GeolocationError] = []
        session.on_error(errors.append)
        await session.initialize("u1")

        platform.fail(TIMEOUT, "Timeout expired")
        platform.fail(POSITION_UNAVAILABLE, "No fix")

        assert [error.kind for error in errors] == ["timeout", "position_unavailable"]
        assert session.is_tracking
        assert platform.cleared == []

    asyncio.run(scenario())


def test_permission_denied_ends_session() -> None:
    async def scenario() -> None:
        platform = _FakePlatform()
        session = _session(platform, _granted_backend())
        changes: List[StatusChange] = []
        session.on_status(changes.append)
        await session.initialize("u1")

        platform.fail(PERMISSION_DENIED, "User denied Geolocation")

        assert session.status == TrackingStatus.STOPPED
        assert platform.cleared == [1]
        assert [change.current for change in changes][-2:] == [
            TrackingStatus.ERROR,
            TrackingStatus.STOPPED,
        ]

    asyncio.run(scenario())


def test_unsupported_platform_stays_idle() -> None:
    async def scenario() -> None:
        platform = _FakePlatform(supported=False)
        session = _session(platform)

        status = await session.initialize("u1")

        assert status == TrackingStatus.IDLE
        assert platform.watch_calls == 0

    asyncio.run(scenario())


def test_failed_persistence_still_applies_decision() -> None:
    async def scenario() -> None:
        platform = _FakePlatform()
        session = _session(platform, _FailingBackend())

        status = await session.initialize("u1")
        assert status == TrackingStatus.AWAITING_CONSENT

        persisted = await session.record_consent("u1", True)

        assert persisted is False
        assert session.is_tracking

    asyncio.run(scenario())


def test_request_current_position_flows_through_listeners() -> None:
    async def scenario() -> None:
        platform = _FakePlatform()
        platform.one_shot = PlatformPosition(12.9716, 77.5946, 15.0, 5000)
        session = _session(platform, _granted_backend())
        received: List[PositionSample] = []
        session.on_sample(received.append)

        idle_sample = await session.request_current_position()
        assert idle_sample is not None
        assert received == []

        await session.initialize("u1")
        sample = await session.request_current_position()

        assert received == [sample]
        assert session.latest_sample() == sample

        platform.one_shot = (TIMEOUT, "Timeout expired")
        assert await session.request_current_position() is None

    asyncio.run(scenario())


def test_close_clears_listeners() -> None:
    async def scenario() -> None:
        platform = _FakePlatform()
        session = _session(platform, _granted_backend())
        received: List[PositionSample] = []
        session.on_sample(received.append)
        await session.initialize("u1")

        session.close()
        await session.initialize("u1")
        platform.fire(1.0, 2.0)

        assert received == []

    asyncio.run(scenario())


def test_example_login_accept_logout_scenario() -> None:
    async def scenario() -> None:
        platform = _FakePlatform()
        session = _session(platform)
        first: List[PositionSample] = []
        second: List[PositionSample] = []
        session.on_sample(first.append)
        session.on_sample(second.append)
        prompts: List[ConsentPrompt] = []
        session.on_consent_prompt(prompts.append)

        await session.initialize("u1")
        await asyncio.sleep(0.05)
        assert prompts == [ConsentPrompt(user_id="u1")]

        await session.record_consent("u1", True)
        platform.fire(17.4771, 78.5724, accuracy=20.0, ts=1700000000000)
        expected = PositionSample(17.4771, 78.5724, 20.0, 1700000000000)
        assert first == [expected]
        assert second == [expected]

        session.stop()
        platform.fire_late(17.4772, 78.5725)

        assert first == [expected]
        assert second == [expected]
        assert session.latest_sample() is None

    asyncio.run(scenario())


def test_error_listener_may_stop_session_on_permission_denied() -> None:
    async def scenario() -> None:
        platform = _FakePlatform()
        session = _session(platform, _granted_backend())
        errors: List[GeolocationError] = []
        changes: List[StatusChange] = []

        def on_error(error: GeolocationError) -> None:
            errors.append(error)
            session.stop()

        session.on_error(on_error)
        session.on_status(changes.append)
        await session.initialize("u1")

        platform.fail(PERMISSION_DENIED, "User denied Geolocation")

        assert [error.kind for error in errors] == ["permission_denied"]
        assert session.status == TrackingStatus.STOPPED
        assert not session.consent_checked
        assert platform.watchers == {}
        assert [change.current for change in changes][-2:] == [
            TrackingStatus.ERROR,
            TrackingStatus.STOPPED,
        ]

    asyncio.run(scenario())


def test_status_listener_stopping_on_activation_leaves_no_watch() -> None:
    async def scenario() -> None:
        platform = _FakePlatform()
        session = _session(platform, _granted_backend())
        received: List[PositionSample] = []
        changes: List[StatusChange] = []
        session.on_sample(received.append)

        def on_status(change: StatusChange) -> None:
            changes.append(change)
            if change.current == TrackingStatus.ACTIVE:
                session.stop()

        session.on_status(on_status)

        status = await session.initialize("u1")
        platform.fire(17.4771, 78.5724)

        assert status == TrackingStatus.STOPPED
        assert session.status == TrackingStatus.STOPPED
        assert platform.watch_calls == 1
        assert platform.watchers == {}
        assert received == []
        assert [change.current for change in changes] == [
            TrackingStatus.CHECKING_CONSENT,
            TrackingStatus.ACTIVE,
            TrackingStatus.STOPPED,
        ]

    asyncio.run(scenario())


def test_later_decision_is_the_one_persisted() -> None:
    class _SlowGrantBackend(InMemoryConsentBackend):
        def set_consent(self, record: ConsentRecord) -> None:
            if record.granted:
                time.sleep(0.2)
            super().set_consent(record)

    async def scenario() -> None:
        platform = _FakePlatform()
        backend = _SlowGrantBackend()
        session = _session(platform, backend)
        await session.initialize("u1")

        grant = asyncio.ensure_future(session.record_consent("u1", True))
        await asyncio.sleep(0.02)
        declined = await session.record_consent("u1", False)

        assert await grant is True
        assert declined is True
        assert session.status == TrackingStatus.STOPPED
        stored = backend.get_consent("u1")
        assert stored is not None and not stored.granted

        relogin = _session(_FakePlatform(), backend)
        assert await relogin.initialize("u1") == TrackingStatus.AWAITING_CONSENT

    asyncio.run(scenario())
