"""
PostgreSQL facility store with idempotent upserts (INSERT ... ON CONFLICT)
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence
import uuid

from sqlalchemy import select, text, func
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.exc import SQLAlchemyError, OperationalError, InterfaceError
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker

from core.exceptions import (
    DatabaseConnectionError,
    DatabaseError,
    StoreUnavailableError,
    UpsertError,
)
from models.facility import Facility
from models.base import SyncRunStatus
from models.sync_status import SyncStatusRecord
from schemas.facility import CanonicalFacility
from schemas.sync import SyncStatus
from storage.base import BoundingBox, FacilityStore, matches_services
import logging

logger = logging.getLogger(__name__)

# Columns refreshed on conflict. created_at keeps the first insert time.
UPSERT_COLUMNS = (
    "source_id", "name", "street", "city", "state", "zip", "phone", "website",
    "latitude", "longitude", "services", "accepted_insurance", "amenities",
    "specialties", "programs", "facility_type", "is_residential", "verified",
    "description", "capacity", "data_quality", "source_data", "last_updated",
)


def _wrap_error(operation: str, table_name: str, e: Exception) -> DatabaseError:
    context = {"operation": operation, "table_name": table_name}
    if isinstance(e, (OperationalError, InterfaceError, OSError)):
        return DatabaseConnectionError(f"Database connection failed during {operation}", context=context, original_exception=e)
    return DatabaseError(f"Database {operation} failed", context=context, original_exception=e)


def _to_sync_status(row: SyncStatusRecord) -> SyncStatus:
    return SyncStatus(
        run_id=str(row.run_id),
        pipeline=row.pipeline,
        mode=row.mode,
        status=row.status,
        started_at=row.started_at,
        completed_at=row.completed_at,
        duration_seconds=row.duration_seconds or 0.0,
        watermark=row.watermark,
        records_extracted=row.records_extracted or 0,
        records_transformed=row.records_transformed or 0,
        records_validated=row.records_validated or 0,
        records_loaded=row.records_loaded or 0,
        records_rejected=row.records_rejected or 0,
        duplicates_merged=row.duplicates_merged or 0,
        records_geocoded=row.records_geocoded or 0,
        batches_processed=row.batches_processed or 0,
        batches_failed=row.batches_failed or 0,
        api_calls=row.api_calls or 0,
        error_message=row.error_message,
        error_details=row.error_details or [],
    )


class PostgresFacilityStore(FacilityStore):
    """
    Facility store backed by PostgreSQL.

    Ensures:
    - No duplicate rows on repeated runs (conflict key is the facility id)
    - Updates existing rows when source data changes
    - One transaction per batch
    """

    def __init__(self, session_factory: async_sessionmaker, engine: Optional[AsyncEngine] = None):
        self.session_factory = session_factory
        self.engine = engine

    async def ping(self) -> bool:
        try:
            async with self.session_factory() as session:
                await session.execute(text("SELECT 1"))
            return True
        except (SQLAlchemyError, OSError) as e:
            raise StoreUnavailableError(
                "Database is unreachable",
                context={"operation": "PING"},
                original_exception=e
            )

    async def upsert_many(self, facilities: Sequence[CanonicalFacility]) -> int:
        """
        Upsert facilities in a single transaction.

        Returns:
            Number of facilities written
        """
        if not facilities:
            return 0

        rows = [facility.model_dump() for facility in facilities]
        stmt = insert(Facility).values(rows)
        stmt = stmt.on_conflict_do_update(
            index_elements=["id"],
            set_={column: stmt.excluded[column] for column in UPSERT_COLUMNS}
        )

        try:
            async with self.session_factory() as session:
                async with session.begin():
                    await session.execute(stmt)
        except (OperationalError, InterfaceError, OSError) as e:
            raise _wrap_error("UPSERT", "facilities", e)
        except SQLAlchemyError as e:
            raise UpsertError(
                "Failed to upsert facility batch",
                context={"batch_size": len(rows), "table_name": "facilities"},
                original_exception=e
            )

        logger.info(f"Upserted {len(rows)} facilities")
        return len(rows)

    async def query_candidates(
        self,
        bbox: Optional[BoundingBox] = None,
        services: Sequence[str] = (),
        residential_only: bool = False,
    ) -> List[CanonicalFacility]:
        query = select(Facility).where(
            Facility.latitude.is_not(None),
            Facility.longitude.is_not(None),
        )
        if bbox is not None:
            query = query.where(
                Facility.latitude.between(bbox.min_latitude, bbox.max_latitude),
                Facility.longitude.between(bbox.min_longitude, bbox.max_longitude),
            )
        if residential_only:
            query = query.where(Facility.is_residential.is_(True))

        try:
            async with self.session_factory() as session:
                result = await session.execute(query)
                rows = result.scalars().all()
        except (SQLAlchemyError, OSError) as e:
            raise _wrap_error("SELECT", "facilities", e)

        # Service containment is substring-based and case-insensitive, so it
        # is applied here rather than with JSONB operators.
        return [
            CanonicalFacility.model_validate(row)
            for row in rows
            if matches_services(row.services or [], services)
        ]

    async def get(self, facility_id: str) -> Optional[CanonicalFacility]:
        try:
            async with self.session_factory() as session:
                row = await session.get(Facility, facility_id)
        except (SQLAlchemyError, OSError) as e:
            raise _wrap_error("SELECT", "facilities", e)
        return CanonicalFacility.model_validate(row) if row is not None else None

    async def update_fields(self, facility_id: str, fields: Dict[str, Any]) -> Optional[CanonicalFacility]:
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    row = await session.get(Facility, facility_id, with_for_update=True)
                    if row is None:
                        return None
                    for name, value in fields.items():
                        setattr(row, name, value)
                    row.last_updated = datetime.now(timezone.utc)
                return CanonicalFacility.model_validate(row)
        except (SQLAlchemyError, OSError) as e:
            raise _wrap_error("UPDATE", "facilities", e)

    async def count(self) -> int:
        try:
            async with self.session_factory() as session:
                result = await session.execute(select(func.count()).select_from(Facility))
                return int(result.scalar_one())
        except (SQLAlchemyError, OSError) as e:
            raise _wrap_error("SELECT", "facilities", e)

    async def record_sync_status(self, status: SyncStatus) -> None:
        row = SyncStatusRecord(
            run_id=uuid.UUID(status.run_id),
            **status.model_dump(mode="python", exclude={"run_id"})
        )
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    session.add(row)
        except (SQLAlchemyError, OSError) as e:
            raise _wrap_error("INSERT", "etl_sync_status", e)

    async def recent_sync_statuses(self, limit: int = 10) -> List[SyncStatus]:
        query = select(SyncStatusRecord).order_by(SyncStatusRecord.started_at.desc()).limit(limit)
        try:
            async with self.session_factory() as session:
                result = await session.execute(query)
                rows = result.scalars().all()
        except (SQLAlchemyError, OSError) as e:
            raise _wrap_error("SELECT", "etl_sync_status", e)
        return [_to_sync_status(row) for row in rows]

    async def latest_sync_status(self, successful_only: bool = False) -> Optional[SyncStatus]:
        query = select(SyncStatusRecord).order_by(SyncStatusRecord.started_at.desc()).limit(1)
        if successful_only:
            query = query.where(SyncStatusRecord.status == SyncRunStatus.SUCCESS)
        try:
            async with self.session_factory() as session:
                result = await session.execute(query)
                row = result.scalars().first()
        except (SQLAlchemyError, OSError) as e:
            raise _wrap_error("SELECT", "etl_sync_status", e)
        return _to_sync_status(row) if row is not None else None

    async def close(self) -> None:
        if self.engine is not None:
            await self.engine.dispose()
