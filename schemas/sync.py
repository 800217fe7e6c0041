"""
ETL run audit record
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from models.base import SyncMode, SyncRunStatus


class SyncStatus(BaseModel):
    """Summary of one pipeline run. Built once, after every batch has resolved."""

    model_config = ConfigDict(from_attributes=True, frozen=True)

    run_id: str
    pipeline: str = "findtreatment"
    mode: SyncMode
    status: SyncRunStatus

    started_at: datetime
    completed_at: datetime
    duration_seconds: float = 0.0
    watermark: Optional[datetime] = None

    records_extracted: int = 0
    records_transformed: int = 0
    records_validated: int = 0
    records_loaded: int = 0
    records_rejected: int = 0
    duplicates_merged: int = 0
    records_geocoded: int = 0
    batches_processed: int = 0
    batches_failed: int = 0
    api_calls: int = 0

    error_message: Optional[str] = None
    error_details: List[Dict[str, Any]] = Field(default_factory=list)

    def summary(self) -> str:
        return (
            f"{self.status.value}: extracted={self.records_extracted} "
            f"transformed={self.records_transformed} validated={self.records_validated} "
            f"loaded={self.records_loaded} rejected={self.records_rejected} "
            f"duplicates={self.duplicates_merged} batches_failed={self.batches_failed} "
            f"duration={self.duration_seconds:.2f}s"
        )
