# ============================================================================
# File: ingestion/pipeline.py
# Description: Batch-oriented facility ETL with partial-failure accounting
# ============================================================================
"""
ETL Pipeline - Extract, Normalize, Deduplicate, Validate, Geocode, Load.

This module provides the run orchestration:
- Explicit state machine (idle → extracting → transforming → validating →
  geocoding → loading → … → completed, or failed)
- Strictly sequential batches, one upstream page each
- Partial failure: a failed page or load is counted and the run moves on
- Fatal errors (authentication, store unreachable) abort the run
- Exactly one SyncStatus per run, emitted after every batch has resolved
"""

import asyncio
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from core.exceptions import (
    ETLException,
    FatalError,
    LoadError,
    NormalizationError,
)
from core.rate_limiter import TokenBucketRateLimiter
from core.retry import with_exponential_backoff
from ingestion.extractors.api_extractor import FacilityAPIExtractor
from ingestion.geocoding import CensusGeocoder, Geocoder, one_line_address
from ingestion.transformers.deduplicator import FacilityDeduplicator
from ingestion.transformers.normalizer import DataNormalizer
from ingestion.transformers.validator import FacilityValidator
from models.base import PipelineState, SyncMode, SyncRunStatus
from schemas.facility import CanonicalFacility
from schemas.sync import SyncStatus
from storage.base import FacilityStore
import logging

logger = logging.getLogger(__name__)


ALLOWED_TRANSITIONS: Dict[PipelineState, frozenset] = {
    PipelineState.IDLE: frozenset({PipelineState.EXTRACTING}),
    PipelineState.EXTRACTING: frozenset({
        PipelineState.EXTRACTING, PipelineState.TRANSFORMING,
        PipelineState.COMPLETED, PipelineState.FAILED,
    }),
    PipelineState.TRANSFORMING: frozenset({PipelineState.VALIDATING, PipelineState.FAILED}),
    PipelineState.VALIDATING: frozenset({
        PipelineState.GEOCODING, PipelineState.LOADING, PipelineState.FAILED,
    }),
    PipelineState.GEOCODING: frozenset({PipelineState.LOADING, PipelineState.FAILED}),
    PipelineState.LOADING: frozenset({
        PipelineState.EXTRACTING, PipelineState.COMPLETED, PipelineState.FAILED,
    }),
    PipelineState.COMPLETED: frozenset({PipelineState.IDLE}),
    PipelineState.FAILED: frozenset({PipelineState.IDLE}),
}

DEFAULT_TEST_LIMIT = 10
MAX_CONSECUTIVE_PAGE_FAILURES = 3


class InvalidStateTransition(ETLException):
    pass


@dataclass
class RunMetrics:
    extracted: int = 0
    transformed: int = 0
    validated: int = 0
    loaded: int = 0
    rejected: int = 0
    duplicates_merged: int = 0
    geocoded: int = 0
    batches_processed: int = 0
    batches_failed: int = 0
    error_details: List[Dict[str, Any]] = field(default_factory=list)

    def record_error(self, phase: str, page: int, error: Exception, **extra: Any) -> None:
        detail = {
            "phase": phase,
            "page": page,
            "error_type": type(error).__name__,
            "error_message": error.message if isinstance(error, ETLException) else str(error),
            **extra,
        }
        self.error_details.append(detail)


class ETLPipeline:
    """
    Facility ETL orchestrator.

    Responsibilities:
    - Drive the extractor page by page
    - Normalize, deduplicate, validate and optionally geocode each batch
    - Upsert batches into the store
    - Tally per-run counters and emit one SyncStatus

    Runs on the same instance are serialized.
    """

    def __init__(
        self,
        store: FacilityStore,
        extractor: FacilityAPIExtractor,
        normalizer: Optional[DataNormalizer] = None,
        deduplicator: Optional[FacilityDeduplicator] = None,
        validator: Optional[FacilityValidator] = None,
        geocoder: Optional[Geocoder] = None,
        batch_size: int = 100,
        enable_deduplication: bool = True,
        enable_geocoding: bool = False,
        concurrency: int = 5,
        load_retries: int = 3,
        retry_delay: float = 1.0,
        pipeline_name: str = "findtreatment",
        test_limit: int = DEFAULT_TEST_LIMIT,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.store = store
        self.extractor = extractor
        self.normalizer = normalizer or DataNormalizer(pipeline_name)
        self.deduplicator = deduplicator or FacilityDeduplicator()
        self.validator = validator or FacilityValidator(strict=True)
        self.geocoder = geocoder
        self.batch_size = batch_size
        self.enable_deduplication = enable_deduplication
        self.enable_geocoding = enable_geocoding and geocoder is not None
        self.concurrency = max(1, concurrency)
        self.load_retries = load_retries
        self.retry_delay = retry_delay
        self.pipeline_name = pipeline_name
        self.test_limit = test_limit
        self._clock = clock
        self._sleep = sleep
        self._lock = asyncio.Lock()
        self.state = PipelineState.IDLE
        self.last_status: Optional[SyncStatus] = None

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    def _transition(self, new_state: PipelineState) -> None:
        if new_state not in ALLOWED_TRANSITIONS[self.state]:
            raise InvalidStateTransition(
                f"Illegal pipeline transition {self.state.value} -> {new_state.value}",
                context={"pipeline": self.pipeline_name}
            )
        if new_state != self.state:
            logger.debug(f"Pipeline state {self.state.value} -> {new_state.value}")
        self.state = new_state

    @property
    def is_running(self) -> bool:
        return self._lock.locked()

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def run(
        self,
        mode: SyncMode = SyncMode.FULL,
        since: Optional[datetime] = None,
        limit: Optional[int] = None
    ) -> SyncStatus:
        """
        Execute one pipeline run.

        Args:
            mode: full, incremental or test
            since: Explicit watermark for incremental runs
            limit: Record cap for test runs (defaults to test_limit)

        Returns:
            The SyncStatus emitted for this run

        Raises:
            FatalError: After the failed SyncStatus has been emitted
            ETLException: For unexpected errors, also after emitting
        """
        async with self._lock:
            return await self._run(SyncMode(mode), since, limit)

    async def _run(self, mode: SyncMode, since: Optional[datetime], limit: Optional[int]) -> SyncStatus:
        run_id = str(uuid.uuid4())
        started_at = self._clock()
        metrics = RunMetrics()
        api_calls_before = self.extractor.api_calls
        watermark: Optional[datetime] = None
        failure: Optional[ETLException] = None

        if self.state in (PipelineState.COMPLETED, PipelineState.FAILED):
            self._transition(PipelineState.IDLE)
        self._transition(PipelineState.EXTRACTING)

        logger.info(f"Starting {mode.value} sync run {run_id} for {self.pipeline_name}")

        try:
            await self.store.ping()
            watermark = await self._resolve_watermark(mode, since)
            record_cap = (limit or self.test_limit) if mode == SyncMode.TEST else None
            await self._run_batches(metrics, watermark, record_cap, started_at)
            self._transition(PipelineState.COMPLETED)

        except FatalError as e:
            failure = e
            metrics.record_error("run", 0, e)
            logger.error(f"Sync run {run_id} aborted: {e.message}", extra={"error_context": e.to_dict()})
            self._transition(PipelineState.FAILED)

        except Exception as e:
            logger.exception(f"Unexpected error in sync run {run_id}")
            failure = e if isinstance(e, ETLException) else ETLException(
                "Unexpected error in ETL pipeline",
                context={"run_id": run_id, "records_extracted": metrics.extracted},
                original_exception=e
            )
            metrics.record_error("run", 0, failure)
            self.state = PipelineState.FAILED

        completed_at = self._clock()
        status = self._build_status(
            run_id, mode, started_at, completed_at, watermark, metrics,
            self.extractor.api_calls - api_calls_before, failure
        )
        await self._emit(status)

        if failure is not None:
            raise failure
        return status

    async def _resolve_watermark(self, mode: SyncMode, since: Optional[datetime]) -> Optional[datetime]:
        if mode != SyncMode.INCREMENTAL:
            return None
        if since is not None:
            return since if since.tzinfo else since.replace(tzinfo=timezone.utc)
        last = await self.store.latest_sync_status(successful_only=True)
        if last is None:
            logger.info("No previous successful sync; incremental run fetches everything")
            return None
        return last.started_at

    # ------------------------------------------------------------------
    # Batches
    # ------------------------------------------------------------------

    async def _run_batches(
        self,
        metrics: RunMetrics,
        watermark: Optional[datetime],
        record_cap: Optional[int],
        observed_at: datetime
    ) -> None:
        loaded_this_run: Dict[str, CanonicalFacility] = {}
        page = 1
        consecutive_failures = 0
        remaining = record_cap

        while True:
            self._transition(PipelineState.EXTRACTING)
            # Upstream pages are offsets of page_size, so the size stays fixed across a run
            try:
                extracted = await self.extractor.fetch_page(page, self.batch_size, watermark)
            except FatalError:
                raise
            except ETLException as e:
                metrics.batches_failed += 1
                metrics.record_error("extraction", page, e)
                consecutive_failures += 1
                logger.error(f"Page {page} failed: {e.message}", extra={"error_context": e.to_dict()})
                if consecutive_failures >= MAX_CONSECUTIVE_PAGE_FAILURES:
                    logger.error(f"Stopping after {consecutive_failures} consecutive page failures")
                    break
                page += 1
                continue

            consecutive_failures = 0
            records = extracted.records
            if remaining is not None:
                records = records[:remaining]
            if not records:
                break

            await self._process_batch(page, records, metrics, loaded_this_run, observed_at)
            metrics.batches_processed += 1

            if remaining is not None:
                remaining -= len(records)
                if remaining <= 0:
                    break
            if not extracted.has_next:
                break
            page += 1

    async def _process_batch(
        self,
        page: int,
        records: Sequence[Dict[str, Any]],
        metrics: RunMetrics,
        loaded_this_run: Dict[str, CanonicalFacility],
        observed_at: datetime
    ) -> None:
        metrics.extracted += len(records)

        # Transform
        self._transition(PipelineState.TRANSFORMING)
        candidates: List[CanonicalFacility] = []
        for position, raw in enumerate(records):
            try:
                facility, result = self.normalizer.normalize(raw, observed_at=observed_at)
            except NormalizationError as e:
                metrics.rejected += 1
                metrics.record_error("normalization", page, e, position=position)
                continue
            metrics.transformed += 1
            if not result.is_valid:
                metrics.rejected += 1
                metrics.record_error(
                    "validation", page,
                    ETLException("; ".join(result.errors)),
                    source_id=facility.source_id
                )
                continue
            candidates.append(facility)

        if self.enable_deduplication:
            candidates, merged = self.deduplicator.dedupe(candidates)
            metrics.duplicates_merged += merged

        # Validate
        self._transition(PipelineState.VALIDATING)
        valid: List[CanonicalFacility] = []
        for facility in candidates:
            result = self.validator.validate(facility)
            if not result.is_valid:
                metrics.rejected += 1
                metrics.record_error(
                    "validation", page,
                    ETLException("; ".join(result.errors)),
                    source_id=facility.source_id
                )
                continue
            valid.append(facility)
        metrics.validated += len(valid)

        # Geocode
        if self.enable_geocoding and valid:
            self._transition(PipelineState.GEOCODING)
            valid, geocoded = await self._geocode(valid)
            metrics.geocoded += geocoded

        # Merge with facilities already written earlier in this run
        batch: Dict[str, CanonicalFacility] = {}
        new_ids = set()
        for facility in valid:
            previous = batch.get(facility.id) or loaded_this_run.get(facility.id)
            if previous is None:
                new_ids.add(facility.id)
                batch[facility.id] = facility
            elif self.enable_deduplication:
                merged_list, _ = self.deduplicator.dedupe([previous, facility])
                metrics.duplicates_merged += 1
                batch[facility.id] = merged_list[0]
            else:
                # Same id twice without merging: last write wins
                batch[facility.id] = facility
        to_load = list(batch.values())

        # Load
        self._transition(PipelineState.LOADING)
        if not to_load:
            return

        try:
            await with_exponential_backoff(
                lambda: self.store.upsert_many(to_load),
                retries=self.load_retries,
                base_delay_seconds=self.retry_delay,
                sleep=self._sleep,
            )
        except FatalError:
            raise
        except LoadError as e:
            metrics.batches_failed += 1
            metrics.rejected += len(to_load)
            metrics.record_error("load", page, e, batch_size=len(to_load))
            logger.error(f"Load failed for page {page}: {e.message}", extra={"error_context": e.to_dict()})
            return

        for facility in to_load:
            loaded_this_run[facility.id] = facility
        metrics.loaded += len(new_ids)
        logger.info(f"Page {page}: loaded {len(to_load)} facilities ({len(new_ids)} new this run)")

    async def _geocode(self, facilities: List[CanonicalFacility]):
        semaphore = asyncio.Semaphore(self.concurrency)

        async def resolve(facility: CanonicalFacility) -> CanonicalFacility:
            if facility.has_coordinates:
                return facility
            address = one_line_address(facility)
            if address is None:
                return facility
            async with semaphore:
                coordinates = await self.geocoder.geocode(address)
            if coordinates is None:
                return facility
            latitude, longitude = coordinates
            if not (-90 <= latitude <= 90 and -180 <= longitude <= 180):
                logger.warning(f"Geocoder returned out-of-range coordinates for {facility.id}")
                return facility
            return facility.model_copy(update={"latitude": latitude, "longitude": longitude})

        resolved = await asyncio.gather(*(resolve(facility) for facility in facilities))
        geocoded = sum(
            1 for before, after in zip(facilities, resolved)
            if not before.has_coordinates and after.has_coordinates
        )
        return list(resolved), geocoded

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def _build_status(
        self,
        run_id: str,
        mode: SyncMode,
        started_at: datetime,
        completed_at: datetime,
        watermark: Optional[datetime],
        metrics: RunMetrics,
        api_calls: int,
        failure: Optional[Exception]
    ) -> SyncStatus:
        if failure is not None:
            run_status = SyncRunStatus.FAILED
        elif metrics.batches_failed:
            run_status = SyncRunStatus.PARTIAL
        else:
            run_status = SyncRunStatus.SUCCESS

        error_message = None
        if failure is not None:
            error_message = failure.message if isinstance(failure, ETLException) else str(failure)
        elif metrics.batches_failed:
            error_message = f"{metrics.batches_failed} batches failed"

        return SyncStatus(
            run_id=run_id,
            pipeline=self.pipeline_name,
            mode=mode,
            status=run_status,
            started_at=started_at,
            completed_at=completed_at,
            duration_seconds=max(0.0, (completed_at - started_at).total_seconds()),
            watermark=watermark,
            records_extracted=metrics.extracted,
            records_transformed=metrics.transformed,
            records_validated=metrics.validated,
            records_loaded=metrics.loaded,
            records_rejected=metrics.rejected,
            duplicates_merged=metrics.duplicates_merged,
            records_geocoded=metrics.geocoded,
            batches_processed=metrics.batches_processed,
            batches_failed=metrics.batches_failed,
            api_calls=api_calls,
            error_message=error_message,
            error_details=metrics.error_details[:100],
        )

    async def _emit(self, status: SyncStatus) -> None:
        self.last_status = status
        logger.info(f"Sync run {status.run_id} finished: {status.summary()}")
        try:
            await self.store.record_sync_status(status)
        except Exception as e:
            logger.error(f"Failed to record sync status for run {status.run_id}: {e}")


def build_pipeline(settings, store: FacilityStore, geocoder: Optional[Geocoder] = None) -> ETLPipeline:
    """Wire a pipeline from settings. Called at process start only."""
    rate_limiter = TokenBucketRateLimiter(
        capacity=settings.ETL_RATE_CAPACITY,
        refill_rate=settings.ETL_RATE_LIMIT,
    )
    extractor = FacilityAPIExtractor(
        api_url=settings.FINDTREATMENT_API_URL,
        rate_limiter=rate_limiter,
        api_key=settings.FINDTREATMENT_API_KEY,
        location_anchor=settings.ETL_LOCATION_ANCHOR,
        result_type=settings.ETL_RESULT_TYPE,
        max_retries=settings.ETL_MAX_RETRIES,
        retry_delay=settings.ETL_RETRY_DELAY_SECONDS,
        timeout=settings.ETL_REQUEST_TIMEOUT_SECONDS,
    )
    if geocoder is None and settings.ETL_ENABLE_GEOCODING:
        geocoder = CensusGeocoder(url=settings.GEOCODER_URL)

    return ETLPipeline(
        store=store,
        extractor=extractor,
        validator=FacilityValidator(strict=settings.ETL_ENABLE_VALIDATION),
        geocoder=geocoder,
        batch_size=settings.ETL_BATCH_SIZE,
        enable_deduplication=settings.ETL_ENABLE_DEDUPLICATION,
        enable_geocoding=settings.ETL_ENABLE_GEOCODING,
        concurrency=settings.ETL_CONCURRENCY,
        load_retries=settings.ETL_MAX_RETRIES,
        retry_delay=settings.ETL_RETRY_DELAY_SECONDS,
    )
