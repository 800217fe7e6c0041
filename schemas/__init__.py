"""
Pydantic schemas for data validation and serialization.

Schemas:
    facility: SourceRecord (raw upstream row), CanonicalFacility,
              ValidationResult and EnrichmentFragment
    sync: SyncStatus audit record for pipeline runs
    api: Search, ETL and health request/response models

Usage:
    from schemas.facility import SourceRecord, CanonicalFacility
    from schemas.sync import SyncStatus
    from schemas.api import SearchResponse

Example:
    record = SourceRecord.model_validate({"name1": "Harbor House", "state": "CA"})
    assert record.present("name1") == "Harbor House"
    assert record.present("facilityName") is None
"""
