"""
Facility search and enrichment endpoints
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response

from api.dependencies import get_app_settings, get_enricher, get_search_service, get_store
from core.config import Settings
from ingestion.enrichment import WebsiteEnricher, apply_enrichment
from schemas.api import EnrichResponse, SearchResponse
from search.service import (
    SOURCE_DISTRIBUTED,
    SOURCE_FALLBACK,
    SOURCE_MEMORY,
    FacilitySearchService,
)
from storage.base import FacilityStore
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/facilities", tags=["Facilities"])

CACHE_HEADERS = {
    SOURCE_MEMORY: "HIT-MEMORY",
    SOURCE_DISTRIBUTED: "HIT-EDGE",
    SOURCE_FALLBACK: "MISS-FALLBACK",
}


def _split_services(services: Optional[str]) -> List[str]:
    if not services:
        return []
    return [part.strip() for part in services.split(",") if part.strip()]


@router.get("/search", response_model=SearchResponse)
async def search_facilities(
    request: Request,
    response: Response,
    latitude: Optional[float] = Query(None, description="Search center latitude"),
    longitude: Optional[float] = Query(None, description="Search center longitude"),
    radius: Optional[float] = Query(None, description="Search radius in miles (default SEARCH_DEFAULT_RADIUS_MILES)"),
    services: Optional[str] = Query(None, description="Comma-separated service filter"),
    limit: Optional[int] = Query(None, description="Maximum results (default SEARCH_DEFAULT_LIMIT, capped at SEARCH_MAX_LIMIT)"),
    service: FacilitySearchService = Depends(get_search_service),
    settings: Settings = Depends(get_app_settings),
):
    """
    Facilities within ``radius`` miles of the point, nearest first.

    The X-Cache header reports where the answer came from: HIT-MEMORY,
    HIT-EDGE (distributed tier), MISS (store) or MISS-FALLBACK (store
    unavailable, degraded answer).
    """
    if latitude is None or longitude is None:
        raise HTTPException(status_code=400, detail="latitude and longitude are required")

    if radius is None:
        radius = settings.SEARCH_DEFAULT_RADIUS_MILES
    if limit is None:
        limit = settings.SEARCH_DEFAULT_LIMIT

    request_id = getattr(request.state, "request_id", "-")
    logger.info(
        f"[{request_id}] GET /facilities/search - lat={latitude}, lng={longitude}, "
        f"radius={radius}, services={services}, limit={limit}"
    )

    result = await service.search(
        latitude=latitude,
        longitude=longitude,
        radius_miles=radius,
        services=_split_services(services),
        limit=limit,
    )
    response.headers["X-Cache"] = CACHE_HEADERS.get(result.source, "MISS")
    return result


@router.post("/{facility_id}/enrich", response_model=EnrichResponse)
async def enrich_facility(
    facility_id: str,
    store: FacilityStore = Depends(get_store),
    enricher: WebsiteEnricher = Depends(get_enricher),
):
    """Pull description, capacity, amenities, insurance and programs from the facility's website."""
    facility = await store.get(facility_id)
    if facility is None:
        raise HTTPException(status_code=404, detail=f"Facility {facility_id} not found")
    if not facility.website:
        raise HTTPException(status_code=400, detail=f"Facility {facility_id} has no website")

    updated = await apply_enrichment(store, enricher, facility)
    return EnrichResponse(facility_id=facility_id, updated_fields=updated, enriched=bool(updated))
