"""
Health check endpoint with store and ETL status
"""

from fastapi import APIRouter, Depends

from api.dependencies import get_cache, get_store
from core.exceptions import ETLException
from schemas.api import HealthCheckResponse
from search.cache import MultiTierCache
from storage.base import FacilityStore
import logging

logger = logging.getLogger(__name__)
router = APIRouter(tags=["Health"])


@router.get("/health", response_model=HealthCheckResponse)
async def health_check(
    store: FacilityStore = Depends(get_store),
    cache: MultiTierCache = Depends(get_cache),
):
    """
    Health check endpoint.

    Returns:
    - Store connectivity and facility count
    - The most recent sync run
    - Whether the distributed cache tier is configured
    """
    store_connected = False
    facility_count = None
    last_sync = None

    try:
        await store.ping()
        store_connected = True
        facility_count = await store.count()
        last_sync = await store.latest_sync_status()
    except ETLException as e:
        logger.error(f"Store health check failed: {str(e)}")

    # Status is derived by the validator in HealthCheckResponse
    return HealthCheckResponse(
        store_connected=store_connected,
        distributed_cache_enabled=cache.has_distributed_tier,
        facility_count=facility_count,
        last_sync=last_sync,
    )
