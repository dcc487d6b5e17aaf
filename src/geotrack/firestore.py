"""Firestore persistence for consent decisions and tracking records.

Collections follow the HRMS schema: ``userTrackingConsent`` (one document per
user), ``userTracking`` (latest state per user) and ``locationHistory``
(append-only samples). ``firebase-admin`` is imported lazily so the rest of the
package works without it.
"""

from __future__ import annotations

from datetime import datetime, timezone
import logging
import os
from typing import Any, List, Optional

from .consent import consent_from_payload, consent_to_payload
from .errors import ConsentPersistenceError, StorageError
from .models import (
    ConsentRecord,
    LocationHistoryRecord,
    PresenceStatus,
    TrackingRecord,
    UserLocation,
)
from .sinks import history_record_to_payload, tracking_record_to_payload, user_location_from_payload

USER_CONSENT_COLLECTION = "userTrackingConsent"
USER_TRACKING_COLLECTION = "userTracking"
LOCATION_HISTORY_COLLECTION = "locationHistory"

LOGGER = logging.getLogger(__name__)


def get_firestore_client(credentials_path: Optional[str] = None) -> Any:
    """Return a Firestore client, initialising the default Firebase app once.

    Credentials come from ``credentials_path`` or ``FIREBASE_CREDENTIALS``;
    without either, application default credentials are used.
    """
    try:
        import firebase_admin
        from firebase_admin import credentials, firestore
    except ImportError as exc:  # pragma: no cover - optional dependency
        raise StorageError(
            "firebase-admin is required for Firestore persistence "
            "(pip install geotrack[firestore])."
        ) from exc

    if not firebase_admin._apps:
        path = credentials_path or os.getenv("FIREBASE_CREDENTIALS")
        if path:
            if not os.path.exists(path):
                raise StorageError(f"Firebase service account file not found: {path}.")
            firebase_admin.initialize_app(credentials.Certificate(path))
        else:
            firebase_admin.initialize_app(credentials.ApplicationDefault())
    return firestore.client()


class FirestoreConsentBackend:
    def __init__(self, client: Any, collection: str = USER_CONSENT_COLLECTION) -> None:
        self._client = client
        self._collection = collection

    def get_consent(self, user_id: str) -> Optional[ConsentRecord]:
        try:
            snapshot = self._client.collection(self._collection).document(user_id).get()
        except Exception as exc:
            raise ConsentPersistenceError(f"Firestore consent read failed: {exc}") from exc
        if not snapshot.exists:
            return None
        return consent_from_payload(snapshot.to_dict() or {})

    def set_consent(self, record: ConsentRecord) -> None:
        payload = consent_to_payload(record)
        payload["updatedAt"] = datetime.now(timezone.utc)
        try:
            self._client.collection(self._collection).document(record.user_id).set(payload)
        except Exception as exc:
            raise ConsentPersistenceError(f"Firestore consent write failed: {exc}") from exc


class FirestoreTrackingSink:
    def __init__(
        self,
        client: Any,
        *,
        tracking_collection: str = USER_TRACKING_COLLECTION,
        history_collection: str = LOCATION_HISTORY_COLLECTION,
    ) -> None:
        self._client = client
        self._tracking_collection = tracking_collection
        self._history_collection = history_collection

    def save_tracking_record(self, record: TrackingRecord) -> None:
        payload = tracking_record_to_payload(record)
        payload["updatedAt"] = datetime.now(timezone.utc)
        self._client.collection(self._tracking_collection).document(record.user.user_id).set(
            payload, merge=True
        )

    def save_history_record(self, record: LocationHistoryRecord) -> None:
        payload = history_record_to_payload(record)
        payload["createdAt"] = datetime.now(timezone.utc)
        self._client.collection(self._history_collection).add(payload)

    def mark_offline(self, user_id: str, session_id: str) -> None:
        now = datetime.now(timezone.utc)
        self._client.collection(self._tracking_collection).document(user_id).set(
            {
                "isOnline": False,
                "status": PresenceStatus.OFFLINE,
                "lastSeen": now,
                "updatedAt": now,
                "sessionId": session_id,
            },
            merge=True,
        )

    def list_user_locations(self) -> List[UserLocation]:
        query = self._client.collection(self._tracking_collection).order_by(
            "lastSeen", direction="DESCENDING"
        )
        locations: List[UserLocation] = []
        for snapshot in query.stream():
            location = user_location_from_payload(snapshot.to_dict() or {})
            if location is None:
                LOGGER.debug("tracking_record_skipped", extra={"document_id": snapshot.id})
                continue
            locations.append(location)
        return locations
