"""
Pluggable geocoders used to fill in missing facility coordinates.
"""

from abc import ABC, abstractmethod
from typing import Optional, Tuple

import httpx

from schemas.facility import CanonicalFacility
import logging

logger = logging.getLogger(__name__)

Coordinates = Tuple[float, float]


def one_line_address(facility: CanonicalFacility) -> Optional[str]:
    """Street, city, state and zip joined for a one-line lookup, or None without a street."""
    if not facility.street:
        return None
    parts = [facility.street, facility.city, facility.state, facility.zip]
    return ", ".join(part for part in parts if part)


class Geocoder(ABC):
    """
    Abstract base for geocoders.

    Implementations return (latitude, longitude) or None when the address
    cannot be resolved. Lookup failures are never raised to the pipeline.
    """

    @abstractmethod
    async def geocode(self, address: str) -> Optional[Coordinates]:
        pass

    async def close(self) -> None:
        return None


class CensusGeocoder(Geocoder):
    """US Census Bureau one-line address geocoder."""

    def __init__(
        self,
        url: str = "https://geocoding.geo.census.gov/geocoder/locations/onelineaddress",
        benchmark: str = "Public_AR_Current",
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.url = url
        self.benchmark = benchmark
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = client is None

    async def geocode(self, address: str) -> Optional[Coordinates]:
        params = {"address": address, "benchmark": self.benchmark, "format": "json"}
        try:
            response = await self._client.get(self.url, params=params)
            response.raise_for_status()
            matches = response.json().get("result", {}).get("addressMatches", [])
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(f"Geocoding failed for '{address}': {e}")
            return None

        if not matches:
            logger.debug(f"No geocoding match for '{address}'")
            return None

        coordinates = matches[0].get("coordinates", {})
        try:
            return float(coordinates["y"]), float(coordinates["x"])
        except (KeyError, TypeError, ValueError):
            logger.warning(f"Malformed geocoding match for '{address}'")
            return None

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()
