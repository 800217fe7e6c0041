"""
Integration tests for complete ETL pipeline
"""

from datetime import datetime, timedelta, timezone

import pytest

from ingestion.geocoding import Geocoder
from ingestion.pipeline import ETLPipeline
from models.base import PipelineState, SyncMode, SyncRunStatus


class StaticGeocoder(Geocoder):
    """Resolves every address to the same point"""

    def __init__(self, coordinates=(37.7749, -122.4194)):
        self.coordinates = coordinates
        self.addresses = []

    async def geocode(self, address):
        self.addresses.append(address)
        return self.coordinates


class SteppingClock:
    """Returns start, start + step, start + 2*step, ..."""

    def __init__(self, start: datetime, step: timedelta = timedelta(seconds=1)):
        self.current = start
        self.step = step

    def __call__(self) -> datetime:
        value = self.current
        self.current += self.step
        return value


@pytest.fixture
def clock():
    return SteppingClock(datetime(2024, 3, 1, tzinfo=timezone.utc))


@pytest.mark.asyncio
async def test_full_etl_pipeline_integration(memory_store, make_record, make_extractor, clock):
    """
    Integration test: Extract → Transform → Load → Verify

    Three pages of 50, 50 and 20 rows where page 2 repeats five facilities
    from page 1.
    """
    pages = {
        1: [make_record(n) for n in range(50)],
        2: [make_record(n) for n in range(50, 95)] + [make_record(n) for n in range(5)],
        3: [make_record(n) for n in range(95, 115)],
    }
    extractor = make_extractor(pages)
    pipeline = ETLPipeline(memory_store, extractor, batch_size=50, clock=clock)

    status = await pipeline.run(SyncMode.FULL)

    # Verify result
    assert status.status == SyncRunStatus.SUCCESS
    assert status.records_extracted == 120
    assert status.records_loaded == 115
    assert status.duplicates_merged == 5
    assert status.records_rejected == 0
    assert status.batches_processed == 3
    assert status.batches_failed == 0
    assert status.api_calls == 3

    # Verify store
    assert await memory_store.count() == 115
    assert [s.run_id for s in await memory_store.recent_sync_statuses()] == [status.run_id]

    assert [call["page"] for call in extractor.calls] == [1, 2, 3]
    assert all(call["page_size"] == 50 for call in extractor.calls)
    assert pipeline.state == PipelineState.COMPLETED


@pytest.mark.asyncio
async def test_rerun_is_idempotent(memory_store, make_record, make_extractor, clock):
    """Loading the same pages twice leaves one row per facility"""
    pages = {1: [make_record(n) for n in range(20)]}
    pipeline = ETLPipeline(memory_store, make_extractor(pages), batch_size=50, clock=clock)

    await pipeline.run(SyncMode.FULL)
    second = await pipeline.run(SyncMode.FULL)

    assert second.status == SyncRunStatus.SUCCESS
    assert await memory_store.count() == 20
    assert len(await memory_store.recent_sync_statuses()) == 2


@pytest.mark.asyncio
async def test_incremental_uses_last_successful_run(memory_store, make_record, make_extractor, clock):
    """Incremental runs pass the start time of the last successful run upstream"""
    pages = {1: [make_record(n) for n in range(5)]}
    extractor = make_extractor(pages)
    pipeline = ETLPipeline(memory_store, extractor, batch_size=50, clock=clock)

    first = await pipeline.run(SyncMode.FULL)
    second = await pipeline.run(SyncMode.INCREMENTAL)

    assert extractor.calls[0]["watermark"] is None
    assert extractor.calls[1]["watermark"] == first.started_at
    assert second.watermark == first.started_at
    assert second.mode == SyncMode.INCREMENTAL


@pytest.mark.asyncio
async def test_incremental_without_history_fetches_everything(memory_store, make_record, make_extractor):
    extractor = make_extractor({1: [make_record(1)]})
    pipeline = ETLPipeline(memory_store, extractor)

    status = await pipeline.run(SyncMode.INCREMENTAL)

    assert extractor.calls[0]["watermark"] is None
    assert status.records_loaded == 1


@pytest.mark.asyncio
async def test_incremental_with_explicit_date(memory_store, make_record, make_extractor):
    extractor = make_extractor({1: [make_record(1)]})
    pipeline = ETLPipeline(memory_store, extractor)

    await pipeline.run(SyncMode.INCREMENTAL, since=datetime(2024, 1, 15))

    assert extractor.calls[0]["watermark"] == datetime(2024, 1, 15, tzinfo=timezone.utc)


@pytest.mark.asyncio
async def test_test_mode_caps_records(memory_store, make_record, make_extractor):
    """Test runs stop after the record cap"""
    extractor = make_extractor([make_record(n) for n in range(100)])
    pipeline = ETLPipeline(memory_store, extractor, batch_size=50)

    status = await pipeline.run(SyncMode.TEST)

    assert status.mode == SyncMode.TEST
    assert status.records_extracted == 10
    assert await memory_store.count() == 10
    assert extractor.calls == [{"page": 1, "page_size": 50, "watermark": None}]


@pytest.mark.asyncio
async def test_test_mode_cap_spanning_pages(memory_store, make_record, make_extractor):
    """A cap larger than one page reads consecutive offsets without overlap"""
    rows = [make_record(n) for n in range(200)]
    extractor = make_extractor(rows)
    pipeline = ETLPipeline(memory_store, extractor, batch_size=50)

    status = await pipeline.run(SyncMode.TEST, limit=75)

    assert [(call["page"], call["page_size"]) for call in extractor.calls] == [(1, 50), (2, 50)]
    assert status.records_extracted == 75
    assert status.records_loaded == 75
    assert status.duplicates_merged == 0
    assert await memory_store.count() == 75

    stored_sources = {facility.source_id for facility in memory_store.all()}
    assert stored_sources == {f"src-{n}" for n in range(75)}


@pytest.mark.asyncio
async def test_invalid_rows_are_rejected_not_loaded(memory_store, make_record, make_extractor):
    pages = {1: [
        make_record(1),
        make_record(2, state="ZZ"),
        make_record(3, name1=""),
        make_record(4),
    ]}
    pipeline = ETLPipeline(memory_store, make_extractor(pages))

    status = await pipeline.run(SyncMode.FULL)

    assert status.status == SyncRunStatus.SUCCESS
    assert status.records_extracted == 4
    assert status.records_rejected == 2
    assert status.records_loaded == 2
    assert {detail["phase"] for detail in status.error_details} == {"validation"}
    assert await memory_store.count() == 2


@pytest.mark.asyncio
async def test_geocoding_fills_missing_coordinates(memory_store, make_record, make_extractor):
    pages = {1: [
        make_record(1),
        make_record(2, latitude=None, longitude=None),
        make_record(3, latitude=None, longitude=None, street1=""),
    ]}
    geocoder = StaticGeocoder()
    pipeline = ETLPipeline(memory_store, make_extractor(pages), geocoder=geocoder, enable_geocoding=True)

    status = await pipeline.run(SyncMode.FULL)

    assert status.records_geocoded == 1
    assert geocoder.addresses == ["102 Main St, San Francisco, CA, 94102"]

    with_coordinates = [f for f in memory_store.all() if f.has_coordinates]
    assert len(with_coordinates) == 2


@pytest.mark.asyncio
async def test_geocoding_disabled_without_geocoder(memory_store, make_record, make_extractor):
    pipeline = ETLPipeline(memory_store, make_extractor({1: [make_record(1, latitude=None, longitude=None)]}),
                           enable_geocoding=True)

    status = await pipeline.run(SyncMode.FULL)

    assert pipeline.enable_geocoding is False
    assert status.records_geocoded == 0
    assert status.records_loaded == 1
