"""
ETL pipeline components for facility ingestion.

Modules:
    pipeline: Batch orchestrator and run state machine
    scheduler: APScheduler integration for recurring runs
    geocoding: Optional address-to-coordinate lookup
    enrichment: Website enrichment collaborator
    cli: ``facility-etl`` command-line entry point

Subpackages:
    extractors: Upstream FindTreatment.gov API client
    transformers: Normalization, strict validation and deduplication

Architecture:
    Each run pulls one page per batch and pushes it through
    normalize -> deduplicate -> validate -> (geocode) -> upsert, strictly
    sequentially. Failed pages and loads are tallied and the run moves on;
    authentication and store outages abort it. Every run ends with exactly
    one SyncStatus written to the store.
"""
