"""
FastAPI application initialization
"""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from api.middleware import RequestContextMiddleware
from api.routes import etl, facilities, health
from core.config import Settings, get_settings
from core.database import create_session_factory
from core.exceptions import InvalidSearchQueryError, RateLimitExceededError
from core.logging import setup_logging
from core.rate_limiter import TokenBucketRateLimiter
from ingestion.enrichment import FirecrawlWebsiteEnricher, NullWebsiteEnricher, WebsiteEnricher
from ingestion.pipeline import ETLPipeline, build_pipeline
from ingestion.scheduler import ETLScheduler
from schemas.api import ErrorResponse
from search.cache import MultiTierCache, build_cache
from search.service import FacilitySearchService
from storage.base import FacilityStore
from storage.postgres import PostgresFacilityStore
import logging

logger = logging.getLogger(__name__)

SCHEDULED_JOB = "etl"


def _build_enricher(settings: Settings) -> WebsiteEnricher:
    if settings.FIRECRAWL_API_KEY:
        return FirecrawlWebsiteEnricher(api_key=settings.FIRECRAWL_API_KEY, api_url=settings.FIRECRAWL_API_URL)
    return NullWebsiteEnricher()


def create_app(
    settings: Optional[Settings] = None,
    store: Optional[FacilityStore] = None,
    cache: Optional[MultiTierCache] = None,
    enricher: Optional[WebsiteEnricher] = None,
    pipeline: Optional[ETLPipeline] = None,
    scheduler: Optional[ETLScheduler] = None,
) -> FastAPI:
    """
    Build the API with its components. Anything not passed in is created
    from settings, so tests can swap in the in-memory store and fakes.
    """
    settings = settings or get_settings()
    setup_logging(settings.LOG_LEVEL)

    if store is None:
        engine, session_factory = create_session_factory(settings.DATABASE_URL)
        store = PostgresFacilityStore(session_factory, engine)
    if cache is None:
        cache = build_cache(
            settings.REDIS_URL,
            local_max_entries=settings.SEARCH_LOCAL_CACHE_MAX_ENTRIES,
            local_ttl_seconds=settings.SEARCH_LOCAL_CACHE_TTL_SECONDS,
        )
    enricher = enricher or _build_enricher(settings)
    pipeline = pipeline or build_pipeline(settings, store)
    scheduler = scheduler or ETLScheduler(pipeline)

    search_service = FacilitySearchService(
        store=store,
        cache=cache,
        rate_limiter=TokenBucketRateLimiter(settings.SEARCH_RATE_CAPACITY, settings.SEARCH_RATE_LIMIT),
        cache_ttl_seconds=settings.SEARCH_CACHE_TTL_SECONDS,
        store_timeout_seconds=settings.SEARCH_STORE_TIMEOUT_SECONDS,
        max_limit=settings.SEARCH_MAX_LIMIT,
        residential_only=settings.SEARCH_RESIDENTIAL_ONLY,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Starting facility search API")
        logger.info(f"Environment: {settings.ENVIRONMENT}")
        logger.info(f"Database: {settings.DATABASE_URL.split('@')[1] if '@' in settings.DATABASE_URL else 'configured'}")

        if settings.ETL_SCHEDULE:
            scheduler.schedule(SCHEDULED_JOB, settings.ETL_SCHEDULE)
            scheduler.start()

        yield

        logger.info("Shutting down facility search API")
        await scheduler.stop_all()
        await enricher.close()
        await cache.close()
        await pipeline.extractor.close()
        if pipeline.geocoder is not None:
            await pipeline.geocoder.close()
        await store.close()

    app = FastAPI(
        title="Facility Search API",
        description="Treatment facility ETL and geospatial search",
        version="1.0.0",
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    app.state.settings = settings
    app.state.store = store
    app.state.cache = cache
    app.state.enricher = enricher
    app.state.pipeline = pipeline
    app.state.scheduler = scheduler
    app.state.search_service = search_service

    app.add_middleware(RequestContextMiddleware)

    @app.exception_handler(RateLimitExceededError)
    async def rate_limited(request: Request, exc: RateLimitExceededError):
        body = ErrorResponse(error="rate_limited", detail=exc.message)
        return JSONResponse(
            status_code=429,
            content=body.model_dump(mode="json"),
            headers={"Retry-After": str(int(exc.retry_after))},
        )

    @app.exception_handler(InvalidSearchQueryError)
    async def invalid_query(request: Request, exc: InvalidSearchQueryError):
        body = ErrorResponse(error="invalid_query", detail=exc.message)
        return JSONResponse(status_code=400, content=body.model_dump(mode="json"))

    app.include_router(health.router)
    app.include_router(facilities.router)
    app.include_router(etl.router)

    @app.get("/")
    async def root():
        """Root endpoint"""
        return {
            "message": "Facility Search API",
            "version": "1.0.0",
            "docs": "/docs",
            "health": "/health",
            "endpoints": {
                "search": "/facilities/search",
                "enrich": "/facilities/{id}/enrich",
                "etl_status": "/etl/status",
                "etl_run": "/etl/run",
            },
        }

    return app


app = create_app()
