from __future__ import annotations

import asyncio
from dataclasses import asdict, fields
from datetime import datetime, timezone
import json
import logging
from typing import Dict, Mapping, Optional, Protocol

from .errors import ConsentPersistenceError, StorageError
from .models import ConsentRecord, DeviceFingerprint
from .storage import LOCATION_CONSENT_KEY, KeyValueStore


class ConsentBackend(Protocol):
    def get_consent(self, user_id: str) -> Optional[ConsentRecord]:
        ...

    def set_consent(self, record: ConsentRecord) -> None:
        ...


class InMemoryConsentBackend:
    def __init__(self) -> None:
        self._records: Dict[str, ConsentRecord] = {}

    def get_consent(self, user_id: str) -> Optional[ConsentRecord]:
        return self._records.get(user_id)

    def set_consent(self, record: ConsentRecord) -> None:
        self._records[record.user_id] = record


class KeyValueConsentBackend:
    """Consent kept in the profile key-value store under ``locationConsent:<user>``."""

    def __init__(self, store: KeyValueStore, key_prefix: str = LOCATION_CONSENT_KEY) -> None:
        self._store = store
        self._key_prefix = key_prefix

    def key_for(self, user_id: str) -> str:
        return f"{self._key_prefix}:{user_id}"

    def get_consent(self, user_id: str) -> Optional[ConsentRecord]:
        try:
            raw = self._store.get(self.key_for(user_id))
        except StorageError as exc:
            raise ConsentPersistenceError(str(exc)) from exc
        if raw is None:
            return None
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise ConsentPersistenceError(
                f"Stored consent for '{user_id}' is not valid JSON: {exc}"
            ) from exc
        return consent_from_payload(payload)

    def set_consent(self, record: ConsentRecord) -> None:
        try:
            self._store.set(self.key_for(record.user_id), json.dumps(consent_to_payload(record)))
        except StorageError as exc:
            raise ConsentPersistenceError(str(exc)) from exc


class ConsentStore:
    """Durable per-user consent decision with fail-safe reads and writes.

    ``load`` reports absence whenever the backend fails, so callers re-prompt
    instead of tracking silently. ``save`` reports failure as ``False`` and
    never raises.
    """

    def __init__(
        self,
        backend: Optional[ConsentBackend] = None,
        *,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._backend = backend or InMemoryConsentBackend()
        self._logger = logger or logging.getLogger(__name__)

    async def load(self, user_id: str) -> Optional[ConsentRecord]:
        try:
            return await asyncio.to_thread(self._backend.get_consent, user_id)
        except ConsentPersistenceError as exc:
            self._logger.warning(
                "consent_load_failed",
                extra={"user_id": user_id, "error": str(exc)},
            )
        except Exception:
            self._logger.exception("consent_load_failed", extra={"user_id": user_id})
        return None

    async def save(
        self,
        user_id: str,
        granted: bool,
        device: Optional[DeviceFingerprint] = None,
    ) -> bool:
        record = ConsentRecord(user_id=user_id, granted=granted, device=device)
        try:
            await asyncio.to_thread(self._backend.set_consent, record)
        except ConsentPersistenceError as exc:
            self._logger.warning(
                "consent_save_failed",
                extra={"user_id": user_id, "granted": granted, "error": str(exc)},
            )
            return False
        except Exception:
            self._logger.exception(
                "consent_save_failed", extra={"user_id": user_id, "granted": granted}
            )
            return False
        self._logger.info(
            "consent_record",
            extra={
                "user_id": user_id,
                "granted": granted,
                "timestamp": record.decided_at.isoformat(),
            },
        )
        return True


def consent_to_payload(record: ConsentRecord) -> Dict[str, object]:
    payload: Dict[str, object] = {
        "userId": record.user_id,
        "hasConsent": record.granted,
        "consentDate": record.decided_at.isoformat(),
        "consentVersion": record.consent_version,
    }
    if record.device is not None:
        payload["deviceInfo"] = asdict(record.device)
        payload["userAgent"] = record.device.user_agent
    return payload


def consent_from_payload(payload: object) -> ConsentRecord:
    if not isinstance(payload, Mapping):
        raise ConsentPersistenceError("Stored consent must be an object.")
    user_id = payload.get("userId")
    if not isinstance(user_id, str) or not user_id:
        raise ConsentPersistenceError("Stored consent is missing userId.")
    return ConsentRecord(
        user_id=user_id,
        granted=payload.get("hasConsent") is True,
        decided_at=_parse_datetime(payload.get("consentDate")),
        consent_version=str(payload.get("consentVersion", "1.0")),
        device=fingerprint_from_payload(payload.get("deviceInfo")),
    )


def fingerprint_from_payload(payload: object) -> Optional[DeviceFingerprint]:
    if not isinstance(payload, Mapping):
        return None
    known = {item.name for item in fields(DeviceFingerprint)}
    return DeviceFingerprint(
        **{key: str(value) for key, value in payload.items() if key in known}
    )


def _parse_datetime(value: object) -> datetime:
    if isinstance(value, datetime):
        parsed = value
    elif hasattr(value, "timestamp") and callable(value.timestamp):
        parsed = datetime.fromtimestamp(value.timestamp(), tz=timezone.utc)
    elif isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value)
        except ValueError as exc:
            raise ConsentPersistenceError(f"Invalid consentDate: {value!r}") from exc
    else:
        return datetime.now(timezone.utc)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
