from sqlalchemy.orm import declarative_base
import enum

Base = declarative_base()


# ============================================================================
# ENUMS
# ============================================================================

class PipelineState(str, enum.Enum):
    """ETL pipeline lifecycle states"""
    IDLE = "idle"
    EXTRACTING = "extracting"
    TRANSFORMING = "transforming"
    VALIDATING = "validating"
    GEOCODING = "geocoding"
    LOADING = "loading"
    COMPLETED = "completed"
    FAILED = "failed"


class SyncMode(str, enum.Enum):
    """ETL run mode"""
    FULL = "full"
    INCREMENTAL = "incremental"
    TEST = "test"


class SyncRunStatus(str, enum.Enum):
    """Outcome of a finished ETL run"""
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"
