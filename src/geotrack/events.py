from __future__ import annotations

import logging
from typing import Callable, Generic, List, Optional, TypeVar

T = TypeVar("T")

LOGGER = logging.getLogger(__name__)


class Subscription:
    """Disposer returned by every ``subscribe`` call.

    ``dispose`` may be called any number of times; it is also called when the
    subscription is used as a context manager and the block exits.
    """

    def __init__(self, release: Callable[[], None]) -> None:
        self._release: Optional[Callable[[], None]] = release

    @property
    def active(self) -> bool:
        return self._release is not None

    def dispose(self) -> None:
        release, self._release = self._release, None
        if release is not None:
            release()

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.dispose()


class ListenerRegistry(Generic[T]):
    def __init__(self, event: str, *, logger: Optional[logging.Logger] = None) -> None:
        self._event = event
        self._listeners: List[Callable[[T], None]] = []
        self._logger = logger or LOGGER

    def __len__(self) -> int:
        return len(self._listeners)

    def subscribe(self, listener: Callable[[T], None]) -> Subscription:
        self._listeners.append(listener)
        return Subscription(lambda: self.unsubscribe(listener))

    def unsubscribe(self, listener: Callable[[T], None]) -> None:
        try:
            self._listeners.remove(listener)
        except ValueError:
            pass

    def clear(self) -> None:
        self._listeners.clear()

    def emit(self, payload: T) -> None:
        # Snapshot so listeners may unsubscribe while being notified.
        for listener in list(self._listeners):
            try:
                listener(payload)
            except Exception:
                self._logger.exception("listener_failed", extra={"event": self._event})
