from typing import List

from geotrack.events import ListenerRegistry
from geotrack.models import PositionSample
from geotrack.sinks import InMemoryTrackingSink, user_location_from_payload


def test_dispose_is_idempotent_and_unknown_unsubscribe_is_noop() -> None:
    registry: ListenerRegistry[int] = ListenerRegistry("sample")
    received: List[int] = []
    subscription = registry.subscribe(received.append)

    registry.emit(1)
    subscription.dispose()
    subscription.dispose()
    registry.unsubscribe(print)
    registry.emit(2)

    assert received == [1]
    assert not subscription.active
    assert len(registry) == 0


def test_failing_listener_does_not_block_others() -> None:
    registry: ListenerRegistry[int] = ListenerRegistry("sample")
    received: List[int] = []

    def explode(value: int) -> None:
        raise RuntimeError("render failed")

    registry.subscribe(explode)
    registry.subscribe(received.append)
    registry.emit(7)

    assert received == [7]


def test_listener_may_unsubscribe_while_notified() -> None:
    registry: ListenerRegistry[int] = ListenerRegistry("sample")
    received: List[str] = []
    subscriptions = []

    def once(value: int) -> None:
        received.append(f"once:{value}")
        subscriptions[0].dispose()

    subscriptions.append(registry.subscribe(once))
    registry.subscribe(lambda value: received.append(f"always:{value}"))
    registry.emit(1)
    registry.emit(2)

    assert received == ["once:1", "always:1", "always:2"]


def test_subscription_context_manager_releases() -> None:
    registry: ListenerRegistry[int] = ListenerRegistry("status")
    received: List[int] = []

    with registry.subscribe(received.append):
        registry.emit(1)
    registry.emit(2)

    assert received == [1]


def test_in_memory_sink_ignores_offline_for_other_session() -> None:
    sink = InMemoryTrackingSink()

    sink.mark_offline("u1", "session_x")

    assert sink.tracking == {}
    assert sink.list_user_locations() == []


def test_user_location_payload_requires_position() -> None:
    assert user_location_from_payload({"userId": "u1"}) is None
    location = user_location_from_payload(
        {
            "userId": "u1",
            "userEmail": "asha@example.com",
            "currentLocation": {"latitude": 1.0, "longitude": 2.0, "accuracy": 5},
            "isOnline": True,
            "status": "online",
        }
    )
    assert location is not None
    assert location.user_name == "asha@example.com"
    assert location.sample == PositionSample(1.0, 2.0, 5.0, 0)
