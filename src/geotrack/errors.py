from __future__ import annotations

from dataclasses import dataclass


class ConsentPersistenceError(RuntimeError):
    """Raised by consent backends when a record cannot be read or written."""


class InvalidTransitionError(RuntimeError):
    """Raised when the tracking session is asked to make an illegal state change."""


class GeolocationError(RuntimeError):
    """A position request failed; ``kind`` is one of ``GeolocationErrorKind``."""

    def __init__(self, kind: str, message: str = "") -> None:
        super().__init__(kind, message)
        self.kind = kind
        self.message = message

    def __str__(self) -> str:
        if self.message:
            return f"{self.kind}: {self.message}"
        return self.kind


@dataclass(frozen=True)
class GeolocationUnavailableError(RuntimeError):
    message: str

    def __str__(self) -> str:
        return self.message


@dataclass(frozen=True)
class MapInitializationError(RuntimeError):
    message: str

    def __str__(self) -> str:
        return self.message


@dataclass(frozen=True)
class StorageError(RuntimeError):
    message: str

    def __str__(self) -> str:
        return self.message
