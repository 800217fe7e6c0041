from sqlalchemy import Column, String, Text, Float, Integer, Boolean, DateTime, Index
from sqlalchemy.dialects.postgresql import JSONB
from datetime import datetime, timezone
from models.base import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Facility(Base):
    """
    Canonical treatment facility.

    The primary key is the stable id derived from name + city + state, so
    repeated ETL runs upsert into the same row. Rows are never deleted by
    the pipeline; removal is an administrative action.

    Service attributes are JSONB arrays of strings; containment filters on
    them are applied by the store.
    """
    __tablename__ = "facilities"

    id = Column(String(64), primary_key=True)
    source_id = Column(String(255), nullable=True, index=True)

    # Identity
    name = Column(String(500), nullable=False, index=True)
    street = Column(String(500), nullable=True)
    city = Column(String(200), nullable=True, index=True)
    state = Column(String(2), nullable=False, index=True)
    zip = Column(String(10), nullable=True)
    phone = Column(String(32), nullable=True)
    website = Column(String(2048), nullable=True)

    # Geocoordinates (null until geocoded)
    latitude = Column(Float, nullable=True)
    longitude = Column(Float, nullable=True)

    # Service attributes
    services = Column(JSONB, nullable=False, default=list)
    accepted_insurance = Column(JSONB, nullable=False, default=list)
    amenities = Column(JSONB, nullable=False, default=list)
    specialties = Column(JSONB, nullable=False, default=list)
    programs = Column(JSONB, nullable=False, default=list)

    # Classification
    facility_type = Column(String(200), nullable=True)
    is_residential = Column(Boolean, nullable=False, default=False, index=True)
    verified = Column(Boolean, nullable=False, default=False)
    description = Column(Text, nullable=True)
    capacity = Column(Integer, nullable=True)

    # Quality and provenance
    data_quality = Column(Float, nullable=False, default=0.0)
    source_data = Column(JSONB, nullable=True)
    last_updated = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    __table_args__ = (
        Index("idx_facility_lat_lng", "latitude", "longitude"),
        Index("idx_facility_state_city", "state", "city"),
        Index("idx_facility_services", "services", postgresql_using="gin"),
    )
