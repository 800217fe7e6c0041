"""
Unit tests for facility stores
"""

from datetime import datetime, timedelta, timezone
import uuid

import pytest
from sqlalchemy.exc import OperationalError, ProgrammingError

from core.exceptions import (
    DatabaseConnectionError,
    DatabaseError,
    RetryableError,
    StoreUnavailableError,
    UpsertError,
)
from models.base import SyncMode, SyncRunStatus
from models.sync_status import SyncStatusRecord
from schemas.sync import SyncStatus
from storage.base import BoundingBox, matches_services
from storage.postgres import PostgresFacilityStore, _to_sync_status, _wrap_error

BAY_AREA = BoundingBox(37.0, 38.5, -123.0, -121.5)


def make_status(run_id: str, status: SyncRunStatus, started_at: datetime) -> SyncStatus:
    return SyncStatus(
        run_id=run_id,
        mode=SyncMode.INCREMENTAL,
        status=status,
        started_at=started_at,
        completed_at=started_at + timedelta(seconds=5),
    )


class FailingSession:
    """Async session whose every statement fails with ``error``"""

    def __init__(self, error):
        self.error = error

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        return False

    def begin(self):
        return self

    async def execute(self, *args, **kwargs):
        raise self.error


def test_matches_services():
    offered = ["Detox", "Intensive Outpatient"]

    assert matches_services(offered, [])
    assert matches_services(offered, ["outpatient"])
    assert matches_services(offered, ["DETOX", "intensive"])
    assert not matches_services(offered, ["detox", "telehealth"])


def test_bounding_box_contains():
    assert BAY_AREA.contains(37.77, -122.41)
    assert not BAY_AREA.contains(34.05, -118.24)


class TestInMemoryFacilityStore:

    @pytest.mark.asyncio
    async def test_upsert_is_idempotent_and_keeps_created_at(self, memory_store, make_facility):
        created = datetime(2024, 1, 1, tzinfo=timezone.utc)
        first = make_facility("Harbor House", phone="(415) 555-0100", created_at=created)
        await memory_store.upsert_many([first])

        second = make_facility("Harbor House", phone="(415) 555-0199")
        await memory_store.upsert_many([second])
        await memory_store.upsert_many([second])

        stored = await memory_store.get(first.id)
        assert await memory_store.count() == 1
        assert stored.phone == "(415) 555-0199"
        assert stored.created_at == created

    @pytest.mark.asyncio
    async def test_query_candidates_filters(self, memory_store, make_facility):
        await memory_store.upsert_many([
            make_facility("In Box", latitude=37.7, longitude=-122.4, services=["Detox"]),
            make_facility("Residential In Box", latitude=37.8, longitude=-122.3,
                          services=["Residential Treatment"], is_residential=True),
            make_facility("Out Of Box", city="Los Angeles", latitude=34.0, longitude=-118.2, services=["Detox"]),
            make_facility("No Coordinates", services=["Detox"]),
        ])

        names = lambda facilities: sorted(f.name for f in facilities)

        assert names(await memory_store.query_candidates(BAY_AREA)) == ["In Box", "Residential In Box"]
        assert names(await memory_store.query_candidates(BAY_AREA, ["detox"])) == ["In Box"]
        assert names(await memory_store.query_candidates(BAY_AREA, residential_only=True)) == ["Residential In Box"]
        assert len(await memory_store.query_candidates()) == 3

    @pytest.mark.asyncio
    async def test_update_fields(self, memory_store, make_facility):
        facility = make_facility("Harbor House")
        await memory_store.upsert_many([facility])

        updated = await memory_store.update_fields(facility.id, {"capacity": 30})

        assert updated.capacity == 30
        assert updated.last_updated >= facility.last_updated
        assert await memory_store.update_fields("fac_missing", {"capacity": 1}) is None

    @pytest.mark.asyncio
    async def test_sync_status_history(self, memory_store):
        t0 = datetime(2024, 1, 1, tzinfo=timezone.utc)
        await memory_store.record_sync_status(make_status("a", SyncRunStatus.SUCCESS, t0))
        await memory_store.record_sync_status(make_status("b", SyncRunStatus.PARTIAL, t0 + timedelta(hours=1)))

        recent = await memory_store.recent_sync_statuses()
        assert [s.run_id for s in recent] == ["b", "a"]
        assert (await memory_store.latest_sync_status()).run_id == "b"
        assert (await memory_store.latest_sync_status(successful_only=True)).run_id == "a"

    @pytest.mark.asyncio
    async def test_unavailable_store_raises(self, memory_store):
        memory_store.available = False

        with pytest.raises(StoreUnavailableError):
            await memory_store.ping()
        with pytest.raises(StoreUnavailableError):
            await memory_store.count()


class TestPostgresFacilityStore:

    def test_wrap_error_classifies_connection_failures(self):
        connection = _wrap_error("SELECT", "facilities", OperationalError("SELECT 1", {}, Exception("refused")))
        other = _wrap_error("SELECT", "facilities", ProgrammingError("SELECT x", {}, Exception("bad column")))

        assert isinstance(connection, DatabaseConnectionError)
        assert isinstance(connection, RetryableError)
        assert type(other) is DatabaseError

    @pytest.mark.asyncio
    async def test_ping_failure_is_store_unavailable(self):
        error = OperationalError("SELECT 1", {}, Exception("connection refused"))
        store = PostgresFacilityStore(lambda: FailingSession(error))

        with pytest.raises(StoreUnavailableError):
            await store.ping()

    @pytest.mark.asyncio
    async def test_upsert_connection_failure_is_retryable(self, make_facility):
        error = OperationalError("INSERT", {}, Exception("connection reset"))
        store = PostgresFacilityStore(lambda: FailingSession(error))

        with pytest.raises(DatabaseConnectionError):
            await store.upsert_many([make_facility("Harbor House")])

    @pytest.mark.asyncio
    async def test_upsert_statement_failure_is_upsert_error(self, make_facility):
        error = ProgrammingError("INSERT", {}, Exception("column does not exist"))
        store = PostgresFacilityStore(lambda: FailingSession(error))

        with pytest.raises(UpsertError):
            await store.upsert_many([make_facility("Harbor House")])

    @pytest.mark.asyncio
    async def test_empty_upsert_skips_database(self):
        store = PostgresFacilityStore(lambda: FailingSession(AssertionError("should not run")))
        assert await store.upsert_many([]) == 0

    def test_row_to_sync_status(self):
        run_id = uuid.uuid4()
        started = datetime(2024, 1, 1, tzinfo=timezone.utc)
        row = SyncStatusRecord(
            run_id=run_id,
            pipeline="findtreatment",
            mode=SyncMode.FULL,
            status=SyncRunStatus.PARTIAL,
            started_at=started,
            completed_at=started + timedelta(seconds=3),
            duration_seconds=3.0,
            records_loaded=10,
            batches_failed=1,
        )

        status = _to_sync_status(row)

        assert status.run_id == str(run_id)
        assert status.status == SyncRunStatus.PARTIAL
        assert status.records_loaded == 10
        assert status.records_rejected == 0
        assert status.error_details == []
