"""
Facility stores.

Modules:
    base: FacilityStore contract, BoundingBox and the shared service filter
    memory: In-process store used by tests and local runs
    postgres: PostgreSQL store (SQLAlchemy async + asyncpg)
"""
