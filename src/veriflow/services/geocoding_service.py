"""Address geocoding for property-bound verifications.

Resolves a customer address into the property coordinates that photo
evidence is later checked against. Google Maps Geocoding API over httpx,
with an in-memory LRU cache. Every failure is logged and returns None; a
verification is still created, just without coordinates.
"""

from __future__ import annotations

import logging
from collections import OrderedDict
from dataclasses import dataclass
from typing import Optional

import httpx

from veriflow.services.geo_validator import Coordinates

logger = logging.getLogger(__name__)

GOOGLE_GEOCODE_URL = "https://maps.googleapis.com/maps/api/geocode/json"

# location_type -> how much we trust the point as the property location
CONFIDENCE_MAP: dict[str, float] = {
    "ROOFTOP": 1.0,
    "RANGE_INTERPOLATED": 0.8,
    "GEOMETRIC_CENTER": 0.6,
    "APPROXIMATE": 0.4,
}

_MAX_CACHE_SIZE = 10_000


@dataclass(frozen=True)
class GeocodeResult:
    lat: float
    lon: float
    formatted_address: str
    confidence: float
    postal_code: str = ""

    @property
    def coordinates(self) -> Coordinates:
        return Coordinates(lat=self.lat, lon=self.lon)


class GeocodingService:
    """Async geocoder backed by the Google Maps Geocoding API."""

    def __init__(self, api_key: str, region: Optional[str] = None) -> None:
        self._api_key = api_key
        self._region = region
        self._cache: OrderedDict[str, GeocodeResult | None] = OrderedDict()

    def _normalize_key(self, raw: str) -> str:
        return " ".join(raw.split()).lower()

    def _cache_get(self, key: str) -> tuple[bool, GeocodeResult | None]:
        """Return (hit, value) and mark the entry as most recently used."""
        if key not in self._cache:
            return False, None
        self._cache.move_to_end(key)
        return True, self._cache[key]

    def _cache_put(self, key: str, value: GeocodeResult | None) -> None:
        self._cache[key] = value
        self._cache.move_to_end(key)
        while len(self._cache) > _MAX_CACHE_SIZE:
            self._cache.popitem(last=False)

    async def geocode(self, address: str) -> GeocodeResult | None:
        """Forward-geocode a postal address."""
        if not address or not address.strip():
            return None

        key = self._normalize_key(address)
        hit, cached = self._cache_get(key)
        if hit:
            return cached

        params = {"address": address, "key": self._api_key}
        if self._region:
            params["region"] = self._region

        result = await self._fetch(params)
        self._cache_put(key, result)
        return result

    async def _fetch(self, params: dict) -> GeocodeResult | None:
        try:
            async with httpx.AsyncClient(timeout=10.0) as client:
                resp = await client.get(GOOGLE_GEOCODE_URL, params=params)
                resp.raise_for_status()
                data = resp.json()
        except httpx.HTTPStatusError as exc:
            logger.warning("Geocoding HTTP error: %s", exc)
            return None
        except httpx.RequestError as exc:
            logger.warning("Geocoding request failed: %s", exc)
            return None
        except ValueError as exc:
            logger.warning("Geocoding returned invalid JSON: %s", exc)
            return None

        return self._parse_response(data)

    def _parse_response(self, data: dict) -> GeocodeResult | None:
        status = data.get("status")
        if status != "OK":
            if status != "ZERO_RESULTS":
                logger.warning("Geocoding API returned status: %s", status)
            return None

        results = data.get("results") or []
        if not results:
            return None
        top = results[0]

        geometry = top.get("geometry", {})
        location = geometry.get("location", {})
        lat = location.get("lat")
        lon = location.get("lng")
        if lat is None or lon is None:
            logger.warning("Geocoding response is missing lat/lng")
            return None

        postal_code = ""
        for comp in top.get("address_components", []):
            if "postal_code" in comp.get("types", []):
                postal_code = comp.get("long_name", "")
                break

        return GeocodeResult(
            lat=float(lat),
            lon=float(lon),
            formatted_address=top.get("formatted_address", ""),
            confidence=CONFIDENCE_MAP.get(geometry.get("location_type", ""), 0.4),
            postal_code=postal_code,
        )


_service: Optional[GeocodingService] = None


def get_geocoding_service() -> Optional[GeocodingService]:
    """Shared service for the configured API key; None when geocoding is disabled."""
    global _service
    from veriflow.app.config import get_settings

    settings = get_settings()
    api_key = settings.google_maps_api_key
    if not api_key:
        return None
    if _service is None or _service._api_key != api_key:
        _service = GeocodingService(api_key, region=settings.geocoding_region or None)
    return _service


async def geocode_address(address: str) -> Optional[Coordinates]:
    """Convenience: coordinates for an address, or None."""
    service = get_geocoding_service()
    if service is None:
        return None
    result = await service.geocode(address)
    return result.coordinates if result else None
