from __future__ import annotations

from dataclasses import asdict, replace
from datetime import datetime, timezone
from typing import Dict, List, Mapping, Optional, Protocol

from .consent import fingerprint_from_payload
from .models import (
    LocationHistoryRecord,
    PositionSample,
    PresenceStatus,
    TrackingRecord,
    UserLocation,
)


class TrackingSink(Protocol):
    def save_tracking_record(self, record: TrackingRecord) -> None:
        ...

    def save_history_record(self, record: LocationHistoryRecord) -> None:
        ...

    def mark_offline(self, user_id: str, session_id: str) -> None:
        ...

    def list_user_locations(self) -> List[UserLocation]:
        ...


class InMemoryTrackingSink:
    def __init__(self) -> None:
        self.tracking: Dict[str, TrackingRecord] = {}
        self.history: List[LocationHistoryRecord] = []

    def save_tracking_record(self, record: TrackingRecord) -> None:
        self.tracking[record.user.user_id] = record

    def save_history_record(self, record: LocationHistoryRecord) -> None:
        self.history.append(record)

    def mark_offline(self, user_id: str, session_id: str) -> None:
        record = self.tracking.get(user_id)
        if record is None or record.session_id != session_id:
            return
        self.tracking[user_id] = replace(
            record,
            status=PresenceStatus.OFFLINE,
            is_online=False,
            last_seen=datetime.now(timezone.utc),
        )

    def list_user_locations(self) -> List[UserLocation]:
        locations = [to_user_location(record) for record in self.tracking.values()]
        return sorted(
            locations,
            key=lambda item: item.last_seen or datetime.min.replace(tzinfo=timezone.utc),
            reverse=True,
        )


def to_user_location(record: TrackingRecord) -> UserLocation:
    return UserLocation(
        user_id=record.user.user_id,
        user_name=record.user.display_name,
        sample=record.sample,
        status=record.status,
        is_online=record.is_online,
        last_seen=record.last_seen,
        email=record.user.email,
        role=record.user.role,
        department=record.user.department,
        device=record.device,
    )


def sample_to_payload(sample: PositionSample) -> Dict[str, object]:
    payload: Dict[str, object] = {
        "latitude": sample.latitude,
        "longitude": sample.longitude,
        "accuracy": sample.accuracy,
        "timestamp": sample.timestamp,
    }
    if sample.address:
        payload["address"] = sample.address
    return payload


def sample_from_payload(payload: Mapping[str, object]) -> PositionSample:
    address = payload.get("address")
    return PositionSample(
        latitude=float(payload["latitude"]),
        longitude=float(payload["longitude"]),
        accuracy=float(payload.get("accuracy") or 0.0),
        timestamp=int(payload.get("timestamp") or 0),
        address=str(address) if address else None,
    )


def tracking_record_to_payload(record: TrackingRecord) -> Dict[str, object]:
    device = asdict(record.device)
    device["deviceId"] = record.session_id
    return {
        "userId": record.user.user_id,
        "userName": record.user.display_name,
        "userEmail": record.user.email or "",
        "userRole": record.user.role,
        "userDepartment": record.user.department,
        "deviceInfo": device,
        "currentLocation": sample_to_payload(record.sample),
        "lastSeen": record.last_seen,
        "lastActivity": record.last_seen,
        "isOnline": record.is_online,
        "status": record.status,
        "sessionId": record.session_id,
        "totalDistance": record.total_distance_km,
    }


def history_record_to_payload(record: LocationHistoryRecord) -> Dict[str, object]:
    return {
        "userId": record.user_id,
        "sessionId": record.session_id,
        "location": sample_to_payload(record.sample),
        "activity": record.activity,
        "distance": record.distance_km,
    }


def user_location_from_payload(payload: Mapping[str, object]) -> Optional[UserLocation]:
    location = payload.get("currentLocation")
    user_id = payload.get("userId")
    if not isinstance(location, Mapping) or not user_id:
        return None
    try:
        sample = sample_from_payload(location)
    except (KeyError, TypeError, ValueError):
        return None
    last_seen = payload.get("lastSeen")
    status = str(payload.get("status") or PresenceStatus.OFFLINE)
    return UserLocation(
        user_id=str(user_id),
        user_name=str(payload.get("userName") or payload.get("userEmail") or "Unknown User"),
        sample=sample,
        status=status,
        is_online=bool(payload.get("isOnline", False)),
        last_seen=last_seen if isinstance(last_seen, datetime) else None,
        email=_optional_str(payload.get("userEmail")),
        role=_optional_str(payload.get("userRole")),
        department=_optional_str(payload.get("userDepartment")),
        device=fingerprint_from_payload(payload.get("deviceInfo")),
    )


def _optional_str(value: object) -> Optional[str]:
    if isinstance(value, str) and value:
        return value
    return None
