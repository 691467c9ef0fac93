import pytest
import requests

from leadflow import config
from leadflow.models import Lead
from leadflow.services import geocoding


class FakeResponse:
    def __init__(self, payload, status_code=200):
        self._payload = payload
        self.status_code = status_code

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code}")

    def json(self):
        return self._payload


def test_table_lookup():
    assert geocoding.lookup_zip("73012") == geocoding.Coordinates(35.6528, -97.4781)
    assert geocoding.lookup_zip(" 74119-1234 ") == geocoding.Coordinates(36.1350, -95.9950)
    assert geocoding.lookup_zip("99999") is None
    assert geocoding.lookup_zip(None) is None


def test_table_is_read_only():
    with pytest.raises(TypeError):
        geocoding.ZIP_CODE_COORDS["00000"] = geocoding.Coordinates(0, 0)


def test_unknown_zip_without_api_key_is_none(monkeypatch):
    monkeypatch.setattr(config.settings, "GOOGLE_MAPS_API_KEY", "")

    def boom(*a, **kw):
        raise AssertionError("no HTTP call expected")

    monkeypatch.setattr(geocoding.requests, "get", boom)
    assert geocoding.geocode_zip("10001") is None


def test_unknown_zip_uses_google(monkeypatch):
    monkeypatch.setattr(config.settings, "GOOGLE_MAPS_API_KEY", "k")
    calls = []

    def fake_get(url, params=None, timeout=None):
        calls.append((url, params, timeout))
        return FakeResponse({"status": "OK", "results": [{"geometry": {"location": {"lat": 40.75, "lng": -73.99}}}]})

    monkeypatch.setattr(geocoding.requests, "get", fake_get)
    assert geocoding.geocode_zip("10001") == geocoding.Coordinates(40.75, -73.99)
    assert calls[0][0] == geocoding.GEOCODE_URL
    assert calls[0][1] == {"address": "10001", "key": "k"}
    assert calls[0][2] == 10


@pytest.mark.parametrize("response", [
    FakeResponse({"status": "ZERO_RESULTS", "results": []}),
    FakeResponse({"status": "OK", "results": [{"geometry": {}}]}),
    FakeResponse({}, status_code=500),
])
def test_google_failures_are_none(monkeypatch, response):
    monkeypatch.setattr(config.settings, "GOOGLE_MAPS_API_KEY", "k")
    monkeypatch.setattr(geocoding.requests, "get", lambda *a, **kw: response)
    assert geocoding.geocode_address("1 Main St, Nowhere") is None


def test_network_error_is_none(monkeypatch):
    monkeypatch.setattr(config.settings, "GOOGLE_MAPS_API_KEY", "k")

    def fail(*a, **kw):
        raise requests.ConnectionError("down")

    monkeypatch.setattr(geocoding.requests, "get", fail)
    assert geocoding.geocode_zip("10001") is None


def test_geocode_lead_falls_back_to_address(monkeypatch):
    monkeypatch.setattr(config.settings, "GOOGLE_MAPS_API_KEY", "k")
    seen = []

    def fake_get(url, params=None, timeout=None):
        seen.append(params["address"])
        if params["address"] == "1 Main St, Springfield, IL":
            return FakeResponse({"status": "OK", "results": [{"geometry": {"location": {"lat": 39.8, "lng": -89.6}}}]})
        return FakeResponse({"status": "ZERO_RESULTS", "results": []})

    monkeypatch.setattr(geocoding.requests, "get", fake_get)
    lead = Lead(name="x", street="1 Main St", city="Springfield", state="IL", zip="62701")
    assert geocoding.geocode_lead(lead) == geocoding.Coordinates(39.8, -89.6)
    assert seen == ["62701", "1 Main St, Springfield, IL"]
