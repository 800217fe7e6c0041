"""
ETL status and manual trigger endpoints
"""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from api.dependencies import get_scheduler, get_store, require_api_key
from core.exceptions import ETLException, FatalError, RunRejectedError
from ingestion.scheduler import ETLScheduler
from schemas.api import ETLRunRequest, ETLStatusResponse
from schemas.sync import SyncStatus
from storage.base import FacilityStore
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/etl", tags=["ETL"])


@router.get("/status", response_model=ETLStatusResponse)
async def etl_status(
    limit: int = Query(10, ge=1, le=100, description="Number of recent runs"),
    store: FacilityStore = Depends(get_store),
    scheduler: ETLScheduler = Depends(get_scheduler),
):
    """Scheduled jobs and the most recent sync runs, newest first."""
    try:
        recent = await store.recent_sync_statuses(limit=limit)
    except ETLException as e:
        logger.error(f"Failed to fetch sync history: {e}")
        raise HTTPException(status_code=503, detail="Store unavailable")

    return ETLStatusResponse(scheduled_jobs=scheduler.list_jobs(), recent_runs=recent)


@router.post("/run", response_model=SyncStatus, dependencies=[Depends(require_api_key)])
async def trigger_etl(
    body: Optional[ETLRunRequest] = None,
    scheduler: ETLScheduler = Depends(get_scheduler),
):
    """Run the pipeline once and return its SyncStatus."""
    body = body or ETLRunRequest()
    logger.info(f"Manual ETL run requested ({body.mode.value})")
    try:
        return await scheduler.run_now(mode=body.mode, since=body.since, limit=body.limit)
    except RunRejectedError as e:
        raise HTTPException(status_code=409, detail=e.message)
    except FatalError as e:
        raise HTTPException(status_code=502, detail=e.message)
    except ETLException as e:
        logger.error(f"Manual ETL run failed: {e}")
        raise HTTPException(status_code=500, detail=e.message)
