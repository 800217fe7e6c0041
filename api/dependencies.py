"""
FastAPI dependencies. Components are created once in ``create_app`` and kept
on ``app.state``.
"""

from typing import Optional

from fastapi import Header, HTTPException, Request, status

from core.config import Settings
from ingestion.enrichment import WebsiteEnricher
from ingestion.scheduler import ETLScheduler
from search.cache import MultiTierCache
from search.service import FacilitySearchService
from storage.base import FacilityStore


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_store(request: Request) -> FacilityStore:
    return request.app.state.store


def get_cache(request: Request) -> MultiTierCache:
    return request.app.state.cache


def get_search_service(request: Request) -> FacilitySearchService:
    return request.app.state.search_service


def get_enricher(request: Request) -> WebsiteEnricher:
    return request.app.state.enricher


def get_scheduler(request: Request) -> ETLScheduler:
    return request.app.state.scheduler


async def require_api_key(
    request: Request,
    x_api_key: Optional[str] = Header(default=None, alias="X-API-Key"),
) -> None:
    """Guard for operator endpoints: X-API-Key must equal API_KEY."""
    expected = request.app.state.settings.API_KEY
    if not expected:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="API key auth is not configured")
    if not x_api_key:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing X-API-Key header")
    if x_api_key != expected:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid API key")
