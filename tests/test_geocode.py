import asyncio
import io
import json

from geotrack import geocode
from geotrack.config import GeocoderConfig
from geotrack.geocode import ReverseGeocoder, format_address


def test_format_address_joins_available_parts() -> None:
    assert (
        format_address(
            {
                "locality": "Secunderabad",
                "principalSubdivision": "Telangana",
                "countryName": "India",
            }
        )
        == "Secunderabad, Telangana, India"
    )
    assert format_address({"countryName": "India", "locality": ""}) == "India"
    assert format_address({}) is None


def test_build_url_includes_coordinates_and_language() -> None:
    geocoder = ReverseGeocoder(
        GeocoderConfig(endpoint_url="https://geo.example/reverse", language="hi")
    )

    url = geocoder.build_url(17.4771, 78.5724)

    assert url == (
        "https://geo.example/reverse?latitude=17.4771&longitude=78.5724&localityLanguage=hi"
    )


def test_lookup_parses_service_response(monkeypatch) -> None:
    body = json.dumps({"locality": "Hyderabad", "countryName": "India"}).encode("utf-8")
    requested = []

    def fake_urlopen(url, timeout):
        requested.append((url, timeout))
        return io.BytesIO(body)

    monkeypatch.setattr(geocode.request, "urlopen", fake_urlopen)

    address = asyncio.run(ReverseGeocoder().lookup(17.385, 78.4867))

    assert address == "Hyderabad, India"
    assert requested[0][1] == 5.0


def test_lookup_failure_degrades_to_none(monkeypatch) -> None:
    def fake_urlopen(url, timeout):
        raise OSError("connection refused")

    monkeypatch.setattr(geocode.request, "urlopen", fake_urlopen)

    assert asyncio.run(ReverseGeocoder().lookup(0.0, 0.0)) is None


def test_lookup_rejects_non_object_payload(monkeypatch) -> None:
    monkeypatch.setattr(geocode.request, "urlopen", lambda url, timeout: io.BytesIO(b"[]"))

    assert asyncio.run(ReverseGeocoder().lookup(0.0, 0.0)) is None
