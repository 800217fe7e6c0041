from sqlalchemy import Column, BigInteger, String, Enum, DateTime, Float, Integer, Text, Index
from sqlalchemy.dialects.postgresql import UUID, JSONB
import uuid
from models.base import Base, SyncMode, SyncRunStatus


class SyncStatusRecord(Base):
    """
    One row per finished ETL run.

    Purpose:
    - Append-only audit trail of pipeline runs
    - Watermark source for incremental syncs (last successful start time)
    - Health reporting

    Rows are inserted once when the run resolves and never updated.
    """
    __tablename__ = "etl_sync_status"

    id = Column(BigInteger, primary_key=True, autoincrement=True)
    run_id = Column(UUID(as_uuid=True), default=uuid.uuid4, unique=True, nullable=False, index=True)
    pipeline = Column(String(100), nullable=False, index=True)

    mode = Column(Enum(SyncMode), nullable=False)
    status = Column(Enum(SyncRunStatus), nullable=False, index=True)

    # Timestamps
    started_at = Column(DateTime(timezone=True), nullable=False, index=True)
    completed_at = Column(DateTime(timezone=True), nullable=False)
    duration_seconds = Column(Float, nullable=False, default=0.0)
    watermark = Column(DateTime(timezone=True), nullable=True)

    # Statistics
    records_extracted = Column(Integer, default=0)
    records_transformed = Column(Integer, default=0)
    records_validated = Column(Integer, default=0)
    records_loaded = Column(Integer, default=0)
    records_rejected = Column(Integer, default=0)
    duplicates_merged = Column(Integer, default=0)
    records_geocoded = Column(Integer, default=0)
    batches_processed = Column(Integer, default=0)
    batches_failed = Column(Integer, default=0)
    api_calls = Column(Integer, default=0)

    # Error tracking
    error_message = Column(Text, nullable=True)
    error_details = Column(JSONB, nullable=True)

    __table_args__ = (
        Index("idx_sync_status_pipeline_started", "pipeline", "started_at"),
    )
