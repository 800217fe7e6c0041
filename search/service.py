"""
Geospatial facility search.

Request flow:
    admission (token bucket) -> validation -> cache -> store -> rank -> cache write

If the store query fails or exceeds its timeout the service answers with a
fixed fallback set flagged ``degraded``. Fallback responses are never cached.
"""

import asyncio
import math
import time
from typing import Any, Callable, Dict, List, Optional, Sequence

from core.exceptions import ETLException, InvalidSearchQueryError, RateLimitExceededError
from core.rate_limiter import TokenBucketRateLimiter
from schemas.api import FacilityResult, SearchParams, SearchResponse
from schemas.facility import CanonicalFacility
from search.cache import TIER_DISTRIBUTED, TIER_MEMORY, MultiTierCache
from search.geo import bounding_box, haversine_miles
from storage.base import FacilityStore
import logging

logger = logging.getLogger(__name__)

SOURCE_MEMORY = "cache-memory"
SOURCE_DISTRIBUTED = "cache-distributed"
SOURCE_STORE = "store"
SOURCE_FALLBACK = "fallback"

FALLBACK_FACILITIES: List[Dict[str, Any]] = [
    {
        "id": "fallback_serenity_house",
        "name": "Serenity House",
        "street": "100 Market St",
        "city": "San Francisco",
        "state": "CA",
        "zip": "94102",
        "phone": "(415) 555-0100",
        "latitude": 37.7749,
        "longitude": -122.4194,
        "services": ["Detox", "Outpatient", "Residential Treatment"],
        "facility_type": "residential",
        "is_residential": True,
    },
    {
        "id": "fallback_recovery_springs",
        "name": "Recovery Springs",
        "street": "200 Broadway",
        "city": "Oakland",
        "state": "CA",
        "zip": "94612",
        "phone": "(510) 555-0200",
        "latitude": 37.8044,
        "longitude": -122.2712,
        "services": ["Group Therapy", "Mental Health", "Residential Treatment"],
        "facility_type": "residential",
        "is_residential": True,
    },
]


def normalize_services(services: Optional[Sequence[str]]) -> List[str]:
    """Trimmed, lowercased, de-duplicated and sorted service filters."""
    if not services:
        return []
    cleaned = {service.strip().casefold() for service in services if service and service.strip()}
    return sorted(cleaned)


def cache_key(latitude: float, longitude: float, radius: float, services: Sequence[str], limit: int) -> str:
    return f"search:{latitude:.3f}:{longitude:.3f}:{radius:g}:{','.join(services)}:{limit}"


def to_result(facility: CanonicalFacility, distance: float) -> FacilityResult:
    data = facility.model_dump(include=set(FacilityResult.model_fields))
    return FacilityResult(**data, distance=round(distance, 2))


def rank_facilities(
    facilities: Sequence[CanonicalFacility],
    latitude: float,
    longitude: float,
    radius_miles: float,
    limit: int,
) -> List[FacilityResult]:
    """Drop facilities without coordinates or outside the radius, nearest first, ties by id."""
    scored = []
    for facility in facilities:
        if not facility.has_coordinates:
            continue
        distance = haversine_miles(latitude, longitude, facility.latitude, facility.longitude)
        if distance <= radius_miles:
            scored.append((distance, facility.id, facility))

    scored.sort(key=lambda item: (item[0], item[1]))
    return [to_result(facility, distance) for distance, _, facility in scored[:limit]]


class FacilitySearchService:
    """Answers radius searches over the facility store."""

    def __init__(
        self,
        store: FacilityStore,
        cache: MultiTierCache,
        rate_limiter: TokenBucketRateLimiter,
        cache_ttl_seconds: int = 300,
        store_timeout_seconds: float = 2.0,
        max_limit: int = 200,
        residential_only: bool = False,
        clock: Callable[[], float] = time.perf_counter,
    ):
        self.store = store
        self.cache = cache
        self.rate_limiter = rate_limiter
        self.cache_ttl_seconds = cache_ttl_seconds
        self.store_timeout_seconds = store_timeout_seconds
        self.max_limit = max_limit
        self.residential_only = residential_only
        self._clock = clock

    def _admit(self) -> None:
        if not self.rate_limiter.try_acquire():
            retry_after = max(1.0, math.ceil(self.rate_limiter.seconds_until_available()))
            raise RateLimitExceededError(
                "Too many search requests",
                context={"capacity": self.rate_limiter.capacity},
                retry_after=retry_after,
            )

    @staticmethod
    def _validate(latitude: Any, longitude: Any, radius_miles: Any) -> None:
        for name, value, low, high in (
            ("latitude", latitude, -90.0, 90.0),
            ("longitude", longitude, -180.0, 180.0),
        ):
            if value is None:
                raise InvalidSearchQueryError(f"{name} is required")
            if not isinstance(value, (int, float)) or math.isnan(value) or not low <= value <= high:
                raise InvalidSearchQueryError(
                    f"{name} must be between {low:g} and {high:g}",
                    context={name: value},
                )
        if radius_miles is None or math.isnan(radius_miles) or radius_miles <= 0:
            raise InvalidSearchQueryError(
                "radius must be greater than 0",
                context={"radius": radius_miles},
            )

    async def search(
        self,
        latitude: float,
        longitude: float,
        radius_miles: float = 25.0,
        services: Optional[Sequence[str]] = None,
        limit: int = 50,
    ) -> SearchResponse:
        started = self._clock()
        self._admit()
        self._validate(latitude, longitude, radius_miles)

        limit = max(1, min(int(limit), self.max_limit))
        services = normalize_services(services)
        params = SearchParams(
            latitude=latitude,
            longitude=longitude,
            radius=radius_miles,
            services=services,
            limit=limit,
        )
        key = cache_key(latitude, longitude, radius_miles, services, limit)

        cached, tier = await self.cache.get_with_source(key)
        if cached is not None:
            response = SearchResponse.model_validate(cached)
            response.source = SOURCE_MEMORY if tier == TIER_MEMORY else SOURCE_DISTRIBUTED
            response.response_time_ms = self._elapsed_ms(started)
            logger.debug(f"Search cache hit ({tier}) for {key}")
            return response

        try:
            candidates = await asyncio.wait_for(
                self.store.query_candidates(
                    bounding_box(latitude, longitude, radius_miles),
                    services,
                    self.residential_only,
                ),
                timeout=self.store_timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning(f"Store query exceeded {self.store_timeout_seconds}s; serving fallback results")
            return self._fallback(params, started)
        except (ETLException, OSError) as e:
            logger.warning(f"Store query failed ({e}); serving fallback results")
            return self._fallback(params, started)

        results = rank_facilities(candidates, latitude, longitude, radius_miles, limit)
        response = SearchResponse(
            count=len(results),
            search_params=params,
            facilities=results,
            source=SOURCE_STORE,
        )
        await self.cache.set(key, response.model_dump(mode="json"), self.cache_ttl_seconds)

        response.response_time_ms = self._elapsed_ms(started)
        return response

    def _fallback(self, params: SearchParams, started: float) -> SearchResponse:
        results = []
        for entry in FALLBACK_FACILITIES[: params.limit]:
            distance = haversine_miles(params.latitude, params.longitude, entry["latitude"], entry["longitude"])
            results.append(FacilityResult(**entry, distance=round(distance, 2)))

        return SearchResponse(
            count=len(results),
            search_params=params,
            facilities=results,
            response_time_ms=self._elapsed_ms(started),
            source=SOURCE_FALLBACK,
            degraded=True,
        )

    def _elapsed_ms(self, started: float) -> float:
        return round((self._clock() - started) * 1000, 2)
