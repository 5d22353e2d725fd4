"""
Best-effort geocoding of submitted institutions via Nominatim.

Geocoding never blocks a submission: every failure is reported as a status
value instead of an exception.
"""

import math
from dataclasses import dataclass
from typing import Any

import httpx
from loguru import logger

from pipeline.config import settings
from pipeline.utils.geo import is_valid_coordinates
from pipeline.utils.http import HTTPError, fetch_with_retry


@dataclass(frozen=True)
class GeocodeOutcome:
    """Result of a lookup; status is success, no_results, error or skipped."""
    status: str
    latitude: float | None = None
    longitude: float | None = None
    raw: Any = None

    @property
    def ok(self) -> bool:
        return self.status == "success"


def build_query(
    institution_name: str | None = None,
    institution_city: str | None = None,
    country_name: str | None = None,
) -> str:
    parts = [p.strip() for p in (institution_name, institution_city, country_name) if p and p.strip()]
    return ", ".join(parts)


def geocode_location(
    institution_name: str | None = None,
    institution_city: str | None = None,
    country_name: str | None = None,
    country_code: str | None = None,
) -> GeocodeOutcome:
    """Resolve a single best coordinate for an institution."""
    query = build_query(institution_name, institution_city, country_name)
    if not query:
        return GeocodeOutcome(status="skipped")

    params = {
        "q": query,
        "format": "jsonv2",
        "addressdetails": "1",
        "limit": "1",
    }
    if country_code:
        params["countrycodes"] = country_code.lower()

    try:
        response = fetch_with_retry(
            settings.geocode.nominatim_url,
            params=params,
            timeout=settings.geocode.geocode_timeout,
            attempts=settings.geocode.geocode_attempts,
        )
    except HTTPError as e:
        logger.warning(f"Geocoding failed for '{query}': HTTP {e.status_code}")
        return GeocodeOutcome(status="error", raw={"status": e.status_code})
    except httpx.HTTPError as e:
        logger.warning(f"Geocoding failed for '{query}': {e}")
        return GeocodeOutcome(status="error", raw={"message": str(e)})

    try:
        data = response.json()
    except ValueError as e:
        return GeocodeOutcome(status="error", raw={"message": f"invalid JSON: {e}"})

    if not isinstance(data, list) or not data:
        return GeocodeOutcome(status="no_results")

    match = data[0]
    try:
        lat = float(match.get("lat"))
        lon = float(match.get("lon"))
    except (AttributeError, TypeError, ValueError):
        return GeocodeOutcome(status="error", raw=match)

    if not (math.isfinite(lat) and math.isfinite(lon) and is_valid_coordinates(lat, lon)):
        return GeocodeOutcome(status="error", raw=match)

    logger.debug(f"Geocoded '{query}' -> ({lat}, {lon})")
    return GeocodeOutcome(status="success", latitude=lat, longitude=lon, raw=match)
