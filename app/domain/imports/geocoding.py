"""
Geocoding collaborators for the geocode-batch stage.

A provider only has to implement ``geocode``; results are cached in the
job's ``geocoding_results`` keyed by the location string, so each distinct
location is looked up once per job.
"""
import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Optional, Protocol

logger = logging.getLogger(__name__)


@dataclass
class GeocodingResult:
    latitude: float
    longitude: float
    confidence: Optional[float] = None
    formatted_address: Optional[str] = None
    provider: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "coordinates": {"lat": self.latitude, "lng": self.longitude},
            "confidence": self.confidence,
            "formatted_address": self.formatted_address,
            "provider": self.provider,
        }


class Geocoder(Protocol):
    def geocode(self, address: str) -> Optional[GeocodingResult]:
        ...


class StaticGeocoder:
    """Lookup-table geocoder; unknown addresses return None."""

    def __init__(self, locations: Dict[str, Any], provider: str = "static"):
        self.provider = provider
        self._locations = {self._key(address): value for address, value in locations.items()}
        self.calls = 0

    @staticmethod
    def _key(address: str) -> str:
        return " ".join(str(address).split()).lower()

    def geocode(self, address: str) -> Optional[GeocodingResult]:
        self.calls += 1
        value = self._locations.get(self._key(address))
        if value is None:
            return None
        if isinstance(value, GeocodingResult):
            return value
        lat, lng = value[0], value[1]
        return GeocodingResult(
            latitude=float(lat),
            longitude=float(lng),
            confidence=1.0,
            formatted_address=str(address).strip(),
            provider=self.provider,
        )


def normalize_location(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = " ".join(str(value).split())
    return text or None


def geocode_locations(
    geocoder: Geocoder,
    locations: Iterable[str],
    known: Dict[str, Any],
) -> Dict[str, Any]:
    """
    Geocode every location not already in ``known``.

    Returns only the new entries. Failed lookups are stored as None so the
    same location is not retried on the next batch.
    """
    results: Dict[str, Any] = {}
    for location in locations:
        if location in known or location in results:
            continue
        try:
            result = geocoder.geocode(location)
        except Exception as exc:
            logger.warning("Geocoding failed for '%s': %s", location, exc)
            result = None
        results[location] = result.to_dict() if result is not None else None
    return results
