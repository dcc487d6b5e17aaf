from __future__ import annotations

import asyncio
from dataclasses import dataclass
import json
import logging
from typing import Mapping, Optional
from urllib import parse, request

from .config import GeocoderConfig

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReverseGeocodeError(RuntimeError):
    message: str

    def __str__(self) -> str:
        return self.message


class ReverseGeocoder:
    """Resolve coordinates to ``locality, subdivision, country`` over HTTP JSON."""

    def __init__(self, config: Optional[GeocoderConfig] = None) -> None:
        self._config = config or GeocoderConfig()

    async def lookup(self, latitude: float, longitude: float) -> Optional[str]:
        try:
            payload = await asyncio.to_thread(self._fetch_payload, latitude, longitude)
        except ReverseGeocodeError as exc:
            LOGGER.warning("reverse_geocode_failed", extra={"error": str(exc)})
            return None
        return format_address(payload)

    def build_url(self, latitude: float, longitude: float) -> str:
        query = parse.urlencode(
            {
                "latitude": latitude,
                "longitude": longitude,
                "localityLanguage": self._config.language,
            }
        )
        return f"{self._config.endpoint_url}?{query}"

    def _fetch_payload(self, latitude: float, longitude: float) -> Mapping[str, object]:
        url = self.build_url(latitude, longitude)
        try:
            with request.urlopen(url, timeout=self._config.timeout_seconds) as response:
                body = response.read().decode("utf-8")
        except Exception as exc:  # pragma: no cover - network error path
            raise ReverseGeocodeError(f"Geocoding service unavailable: {exc}") from exc
        try:
            payload = json.loads(body)
        except json.JSONDecodeError as exc:
            raise ReverseGeocodeError(f"Geocoding service returned invalid JSON: {exc}") from exc
        if not isinstance(payload, Mapping):
            raise ReverseGeocodeError("Geocoding payload must be a JSON object.")
        return payload


def format_address(payload: Mapping[str, object]) -> Optional[str]:
    parts = [
        str(payload[key])
        for key in ("locality", "principalSubdivision", "countryName")
        if payload.get(key)
    ]
    return ", ".join(parts) if parts else None
