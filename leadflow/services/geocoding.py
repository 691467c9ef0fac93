# leadflow/services/geocoding.py
"""
Zip / address -> coordinates.

Lookup order:
  1. ZIP_CODE_COORDS, a static table for the primary service region (free, always there)
  2. Google Geocoding API, only when GOOGLE_MAPS_API_KEY is configured

Geocoding is best-effort: every failure comes back as None and callers decide
whether missing coordinates block them. No retries here.
"""
import logging
from types import MappingProxyType
from typing import Any, NamedTuple, Optional

import requests

from leadflow import config

log = logging.getLogger(__name__)

GEOCODE_URL = "https://maps.googleapis.com/maps/api/geocode/json"


class Coordinates(NamedTuple):
    lat: float
    lng: float


# Bump when the table changes so geocoded rows can be traced to a table revision.
ZIP_TABLE_VERSION = "ok-metro-2024.1"

_ZIP_ROWS = {
    # Oklahoma City metro
    "73012": (35.6528, -97.4781),  # Edmond
    "73013": (35.6186, -97.4361),  # Edmond
    "73034": (35.6689, -97.4089),  # Edmond
    "73003": (35.6606, -97.4847),  # Edmond
    "73099": (35.5261, -97.9631),  # Yukon
    "73036": (35.4918, -97.9181),  # El Reno
    "73102": (35.4676, -97.5164),  # OKC downtown
    "73103": (35.4901, -97.5253),
    "73104": (35.4867, -97.5028),
    "73105": (35.5147, -97.5036),
    "73106": (35.4833, -97.5456),
    "73107": (35.4833, -97.5736),
    "73108": (35.4500, -97.5650),
    "73109": (35.4328, -97.5364),
    "73110": (35.4600, -97.4200),  # Midwest City
    "73111": (35.5050, -97.4650),
    "73112": (35.5250, -97.5550),
    "73114": (35.5550, -97.5050),
    "73115": (35.4350, -97.4350),
    "73116": (35.5450, -97.5450),  # Nichols Hills
    "73117": (35.4750, -97.4650),
    "73118": (35.5150, -97.5250),
    "73119": (35.4150, -97.5550),
    "73120": (35.5750, -97.5650),
    "73121": (35.5350, -97.4350),
    "73122": (35.5250, -97.6050),  # Warr Acres
    "73127": (35.4750, -97.6450),
    "73128": (35.4350, -97.6450),
    "73129": (35.4050, -97.4850),
    "73130": (35.4550, -97.3650),  # Midwest City
    "73131": (35.5650, -97.4650),
    "73132": (35.5550, -97.6250),
    "73134": (35.6050, -97.5650),
    "73135": (35.3850, -97.4450),
    "73139": (35.3550, -97.5150),
    "73141": (35.5150, -97.3850),
    "73142": (35.5850, -97.6450),
    "73145": (35.4050, -97.3850),  # Tinker AFB
    "73149": (35.3750, -97.4850),
    "73150": (35.4050, -97.3450),
    "73159": (35.3850, -97.5550),
    "73160": (35.3350, -97.4850),  # Moore
    "73162": (35.5850, -97.6850),
    "73165": (35.3250, -97.4050),  # Moore
    "73170": (35.3450, -97.5850),
    "73173": (35.3050, -97.5550),
    # Norman
    "73019": (35.2226, -97.4395),  # OU
    "73026": (35.2450, -97.3850),
    "73069": (35.2450, -97.4450),
    "73071": (35.2050, -97.4850),
    "73072": (35.2050, -97.4050),
    # Stillwater
    "74074": (36.1156, -97.0584),
    "74075": (36.1350, -97.0850),
    "74078": (36.1250, -97.0650),  # OSU
    # Tulsa metro
    "74101": (36.1540, -95.9928),  # downtown
    "74103": (36.1550, -95.9850),
    "74104": (36.1450, -95.9550),
    "74105": (36.1150, -95.9650),
    "74106": (36.1850, -95.9850),
    "74107": (36.1050, -96.0250),
    "74108": (36.1350, -95.8650),
    "74110": (36.1850, -95.9350),
    "74112": (36.1450, -95.9050),
    "74114": (36.1250, -95.9250),
    "74115": (36.1950, -95.9050),
    "74116": (36.2050, -95.8650),
    "74117": (36.2350, -95.9050),
    "74119": (36.1350, -95.9950),
    "74120": (36.1550, -95.9650),
    "74126": (36.2550, -95.9650),
    "74127": (36.1650, -96.0450),
    "74128": (36.1350, -95.8250),
    "74129": (36.1050, -95.8850),
    "74130": (36.2750, -95.9250),
    "74131": (36.0550, -96.0050),
    "74132": (36.0350, -95.9550),
    "74133": (36.0350, -95.8850),
    "74134": (36.0950, -95.8250),
    "74135": (36.0950, -95.9250),
    "74136": (36.0550, -95.9250),
    "74137": (36.0150, -95.9250),
    # Broken Arrow
    "74011": (36.0526, -95.7908),
    "74012": (36.0650, -95.7550),
    "74014": (36.0350, -95.7150),
}

ZIP_CODE_COORDS = MappingProxyType({z: Coordinates(lat, lng) for z, (lat, lng) in _ZIP_ROWS.items()})


def _clean_zip(zip_code: Optional[str]) -> str:
    # "73012-1234" and " 73012 " both mean 73012
    return (zip_code or "").strip().split("-", 1)[0]


def lookup_zip(zip_code: Optional[str]) -> Optional[Coordinates]:
    return ZIP_CODE_COORDS.get(_clean_zip(zip_code))


def _google_geocode(address: str) -> Optional[Coordinates]:
    api_key = config.settings.GOOGLE_MAPS_API_KEY
    if not api_key:
        log.warning("GOOGLE_MAPS_API_KEY not configured; cannot geocode %r", address)
        return None

    try:
        r = requests.get(GEOCODE_URL, params={"address": address, "key": api_key}, timeout=10)
        r.raise_for_status()
        data: Any = r.json()
    except (requests.RequestException, ValueError) as e:
        log.error("Geocoding request failed for %r: %s", address, e)
        return None

    status = (data or {}).get("status")
    results = (data or {}).get("results") or []
    if status != "OK" or not results:
        log.warning("Geocoding failed for %r: %s", address, status)
        return None

    try:
        loc = results[0]["geometry"]["location"]
        coords = Coordinates(float(loc["lat"]), float(loc["lng"]))
    except (KeyError, TypeError, ValueError):
        log.warning("Geocoding returned an unexpected payload for %r", address)
        return None

    log.info("Geocoded %r via Google: %s, %s", address, coords.lat, coords.lng)
    return coords


def geocode_zip(zip_code: Optional[str]) -> Optional[Coordinates]:
    zip5 = _clean_zip(zip_code)
    if not zip5:
        return None
    cached = lookup_zip(zip5)
    if cached:
        log.info("Found zip %s in local table (%s)", zip5, ZIP_TABLE_VERSION)
        return cached
    return _google_geocode(zip5)


def geocode_address(address: Optional[str]) -> Optional[Coordinates]:
    address = (address or "").strip()
    if not address:
        return None
    return _google_geocode(address)


def geocode_lead(lead) -> Optional[Coordinates]:
    """Zip first (table, then API); fall back to the assembled street address."""
    coords = geocode_zip(lead.zip)
    if coords:
        return coords
    parts = [p.strip() for p in (lead.street, lead.city, lead.state) if p and p.strip()]
    if len(parts) < 2:
        return None
    return geocode_address(", ".join(parts))
