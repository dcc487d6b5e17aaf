from __future__ import annotations

import json
import logging
import os
from pathlib import Path
import tempfile
from typing import Dict, Optional, Protocol

from .errors import StorageError

LOCATION_CONSENT_KEY = "locationConsent"
LAST_LOCATION_KEY = "lastLocation"
USER_STATUS_KEY = "userStatus"
DEVICE_INFO_KEY = "deviceInfo"

LOGGER = logging.getLogger(__name__)


class KeyValueStore(Protocol):
    def get(self, key: str) -> Optional[str]:
        ...

    def set(self, key: str, value: str) -> None:
        ...

    def delete(self, key: str) -> None:
        ...


class InMemoryKeyValueStore:
    def __init__(self, initial: Optional[Dict[str, str]] = None) -> None:
        self._values: Dict[str, str] = dict(initial or {})

    def get(self, key: str) -> Optional[str]:
        return self._values.get(key)

    def set(self, key: str, value: str) -> None:
        self._values[key] = value

    def delete(self, key: str) -> None:
        self._values.pop(key, None)


class JsonFileKeyValueStore:
    """Profile-scoped string store kept as a single JSON object on disk.

    Every write replaces the file atomically, so a crash mid-write leaves the
    previous contents intact.
    """

    def __init__(self, path: Path) -> None:
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    def get(self, key: str) -> Optional[str]:
        return self._read().get(key)

    def set(self, key: str, value: str) -> None:
        values = self._read()
        values[key] = value
        self._write(values)

    def delete(self, key: str) -> None:
        values = self._read()
        if values.pop(key, None) is not None:
            self._write(values)

    def _read(self) -> Dict[str, str]:
        if not self._path.exists():
            return {}
        try:
            with self._path.open("r", encoding="utf-8") as handle:
                payload = json.load(handle)
        except (OSError, json.JSONDecodeError) as exc:
            raise StorageError(f"Unable to read store {self._path}: {exc}") from exc
        if not isinstance(payload, dict):
            raise StorageError(f"Store {self._path} must contain a JSON object.")
        return {str(key): str(value) for key, value in payload.items()}

    def _write(self, values: Dict[str, str]) -> None:
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                prefix=f".{self._path.name}.", dir=str(self._path.parent)
            )
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(values, handle, indent=2, sort_keys=True)
            os.replace(tmp_name, self._path)
        except OSError as exc:
            raise StorageError(f"Unable to write store {self._path}: {exc}") from exc
        LOGGER.debug("store_write", extra={"path": str(self._path), "keys": len(values)})
