"""
SQLAlchemy ORM models for database tables.

Models:
    base: Base declarative class and shared enums (PipelineState, SyncMode, SyncRunStatus)
    facility: Canonical facility rows, keyed by the stable facility id
    sync_status: Append-only ETL run audit log

Database Schema:
    All models inherit from the Base declarative class and use
    PostgreSQL-specific features like JSONB for list-valued attributes
    and the raw source payload.

Usage:
    from models.facility import Facility
    from models.sync_status import SyncStatusRecord
    from models.base import Base, SyncMode
"""
