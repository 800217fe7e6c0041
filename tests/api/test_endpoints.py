"""
API endpoint tests
"""

import asyncio
from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient

from api.main import create_app
from core.exceptions import AuthenticationError
from ingestion.enrichment import WebsiteEnricher
from ingestion.pipeline import ETLPipeline
from ingestion.scheduler import MANUAL_JOB
from models.base import SyncMode, SyncRunStatus
from schemas.facility import EnrichmentFragment
from schemas.sync import SyncStatus
from search.cache import InMemoryLRUCache, MultiTierCache

SF = {"latitude": 37.7749, "longitude": -122.4194}


class StaticEnricher(WebsiteEnricher):
    def __init__(self, fragment):
        self.fragment = fragment

    async def enrich(self, url):
        return self.fragment


@pytest.fixture
def seed(memory_store):
    def insert(*facilities):
        asyncio.run(memory_store.upsert_many(list(facilities)))
    return insert


@pytest.fixture
def make_client(memory_store, make_extractor, make_record, test_settings):
    """Build a TestClient over the in-memory store; pages feed /etl/run"""
    clients = []

    def factory(settings=None, pages=None, enricher=None):
        pages = pages if pages is not None else {1: [make_record(n) for n in range(3)]}
        app = create_app(
            settings=settings or test_settings,
            store=memory_store,
            cache=MultiTierCache(InMemoryLRUCache()),
            enricher=enricher or StaticEnricher(EnrichmentFragment(description="From website", capacity=20)),
            pipeline=ETLPipeline(memory_store, make_extractor(pages), retry_delay=0),
        )
        client = TestClient(app)
        client.__enter__()
        clients.append(client)
        return client

    yield factory

    for client in clients:
        client.__exit__(None, None, None)


@pytest.fixture
def client(make_client):
    return make_client()


@pytest.fixture
def bay_area(seed, make_facility):
    facilities = [
        make_facility("Mission Recovery", latitude=37.76, longitude=-122.42, services=["Detox", "Outpatient"],
                      website="https://missionrecovery.org"),
        make_facility("Oakland Bridge", city="Oakland", latitude=37.8044, longitude=-122.2712,
                      services=["Outpatient"]),
    ]
    seed(*facilities)
    return facilities


class TestSearch:

    def test_search_miss_then_memory_hit(self, client, bay_area):
        first = client.get("/facilities/search", params={**SF, "radius": 25})
        second = client.get("/facilities/search", params={**SF, "radius": 25})

        assert first.status_code == 200
        assert first.headers["X-Cache"] == "MISS"
        assert second.headers["X-Cache"] == "HIT-MEMORY"

        data = first.json()
        assert data["success"] is True
        assert data["count"] == 2
        assert [f["name"] for f in data["facilities"]] == ["Mission Recovery", "Oakland Bridge"]
        assert data["facilities"][0]["distance"] < data["facilities"][1]["distance"]
        assert second.json()["facilities"] == data["facilities"]

    def test_service_filter(self, client, bay_area):
        response = client.get("/facilities/search", params={**SF, "services": "detox"})

        assert [f["name"] for f in response.json()["facilities"]] == ["Mission Recovery"]
        assert response.json()["search_params"]["services"] == ["detox"]

    def test_missing_coordinates_is_400(self, client):
        response = client.get("/facilities/search", params={"longitude": -122.4})
        assert response.status_code == 400

    @pytest.mark.parametrize("params", [
        {"latitude": 95, "longitude": -122.4},
        {"latitude": 37.7, "longitude": -190},
        {**SF, "radius": 0},
    ])
    def test_out_of_range_parameters_are_400(self, client, params):
        response = client.get("/facilities/search", params=params)

        assert response.status_code == 400
        assert response.json()["error"] == "invalid_query"

    def test_limit_is_capped(self, client, bay_area):
        response = client.get("/facilities/search", params={**SF, "limit": 5000})

        assert response.status_code == 200
        assert response.json()["search_params"]["limit"] == 200

    def test_defaults_come_from_settings(self, make_client, test_settings, bay_area):
        settings = test_settings.model_copy(update={"SEARCH_DEFAULT_RADIUS_MILES": 5.0, "SEARCH_DEFAULT_LIMIT": 1})
        client = make_client(settings=settings)

        response = client.get("/facilities/search", params=SF)

        assert response.status_code == 200
        data = response.json()
        assert data["search_params"]["radius"] == 5.0
        assert data["search_params"]["limit"] == 1
        assert [f["name"] for f in data["facilities"]] == ["Mission Recovery"]

    def test_rate_limited_requests_get_429(self, make_client, test_settings):
        settings = test_settings.model_copy(update={"SEARCH_RATE_CAPACITY": 2, "SEARCH_RATE_LIMIT": 0.01})
        client = make_client(settings=settings)

        statuses = [client.get("/facilities/search", params=SF).status_code for _ in range(3)]

        assert statuses == [200, 200, 429]
        response = client.get("/facilities/search", params=SF)
        assert int(response.headers["Retry-After"]) >= 1
        assert response.json()["error"] == "rate_limited"

    def test_store_down_serves_fallback(self, client, memory_store):
        memory_store.available = False

        response = client.get("/facilities/search", params=SF)

        assert response.status_code == 200
        assert response.headers["X-Cache"] == "MISS-FALLBACK"
        data = response.json()
        assert data["degraded"] is True
        assert [f["name"] for f in data["facilities"]] == ["Serenity House", "Recovery Springs"]

    def test_response_headers(self, client):
        response = client.get("/facilities/search", params=SF, headers={"X-Request-ID": "req-123"})

        assert response.headers["X-Request-ID"] == "req-123"
        assert response.headers["X-Response-Time"].endswith("ms")


class TestEnrich:

    def test_unknown_facility_is_404(self, client):
        assert client.post("/facilities/fac_missing/enrich").status_code == 404

    def test_facility_without_website_is_400(self, client, bay_area):
        oakland = bay_area[1]
        assert client.post(f"/facilities/{oakland.id}/enrich").status_code == 400

    def test_enrich_updates_facility(self, client, bay_area, memory_store):
        mission = bay_area[0]

        response = client.post(f"/facilities/{mission.id}/enrich")

        assert response.status_code == 200
        assert response.json() == {
            "facility_id": mission.id,
            "updated_fields": ["capacity", "description"],
            "enriched": True,
        }
        stored = asyncio.run(memory_store.get(mission.id))
        assert stored.capacity == 20


class TestETL:

    def test_run_requires_api_key(self, client):
        assert client.post("/etl/run").status_code == 401
        assert client.post("/etl/run", headers={"X-API-Key": "wrong"}).status_code == 403

    def test_run_without_configured_key_is_forbidden(self, make_client, test_settings):
        client = make_client(settings=test_settings.model_copy(update={"API_KEY": None}))
        assert client.post("/etl/run", headers={"X-API-Key": "anything"}).status_code == 403

    def test_run_and_status(self, client):
        response = client.post("/etl/run", headers={"X-API-Key": "test-key"}, json={"mode": "full"})

        assert response.status_code == 200
        run = response.json()
        assert run["status"] == "success"
        assert run["mode"] == "full"
        assert run["records_loaded"] == 3

        status = client.get("/etl/status").json()
        assert status["scheduled_jobs"] == []
        assert [r["run_id"] for r in status["recent_runs"]] == [run["run_id"]]

    def test_run_without_body_is_incremental(self, client):
        response = client.post("/etl/run", headers={"X-API-Key": "test-key"})

        assert response.status_code == 200
        assert response.json()["mode"] == "incremental"

    def test_fatal_run_is_502(self, make_client):
        client = make_client(pages={1: AuthenticationError("API key rejected")})

        response = client.post("/etl/run", headers={"X-API-Key": "test-key"})

        assert response.status_code == 502
        assert response.json()["detail"] == "API key rejected"
        assert client.get("/etl/status").json()["recent_runs"][0]["status"] == "failed"

    def test_unexpected_run_error_is_500(self, make_client):
        client = make_client(pages={1: RuntimeError("connection reset")})

        response = client.post("/etl/run", headers={"X-API-Key": "test-key"})

        assert response.status_code == 500
        assert response.json()["detail"] == "Unexpected error in ETL pipeline"

    def test_run_while_manual_run_in_flight_is_409(self, client):
        client.app.state.scheduler._running.add(MANUAL_JOB)

        response = client.post("/etl/run", headers={"X-API-Key": "test-key"})

        assert response.status_code == 409
        assert response.json()["detail"] == "Manual run rejected"

    def test_status_lists_scheduled_job(self, make_client, test_settings):
        client = make_client(settings=test_settings.model_copy(update={"ETL_SCHEDULE": "hourly"}))

        jobs = client.get("/etl/status").json()["scheduled_jobs"]

        assert [job["id"] for job in jobs] == ["etl"]
        assert jobs[0]["next_run_time"] is not None

    def test_status_store_unavailable_is_503(self, client, memory_store):
        memory_store.available = False
        assert client.get("/etl/status").status_code == 503


class TestHealth:

    def test_healthy(self, client, bay_area):
        data = client.get("/health").json()

        assert data["status"] == "healthy"
        assert data["store_connected"] is True
        assert data["facility_count"] == 2
        assert data["distributed_cache_enabled"] is False
        assert data["last_sync"] is None

    def test_degraded_after_partial_run(self, client, memory_store):
        now = datetime.now(timezone.utc)
        asyncio.run(memory_store.record_sync_status(SyncStatus(
            run_id="run-1",
            mode=SyncMode.FULL,
            status=SyncRunStatus.PARTIAL,
            started_at=now,
            completed_at=now,
            batches_failed=1,
        )))

        data = client.get("/health").json()

        assert data["status"] == "degraded"
        assert data["last_sync"]["run_id"] == "run-1"

    def test_unhealthy_when_store_down(self, client, memory_store):
        memory_store.available = False

        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "unhealthy"
        assert response.json()["store_connected"] is False


def test_root(client):
    data = client.get("/").json()
    assert data["health"] == "/health"
    assert data["endpoints"]["search"] == "/facilities/search"
