"""
Facility data contracts shared by the ETL pipeline, the store and search.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

Scalar = Union[str, int, float]
Flag = Union[bool, int, str]
ListOrDelimited = Union[List[Any], str]


class SourceRecord(BaseModel):
    """
    Raw facility row as received from the upstream locator API.

    Every field is present-or-absent. Several attributes arrive under more
    than one name; the normalizer resolves them by an ordered candidate list.
    Unknown keys are kept so the full payload survives for audit.
    """

    model_config = ConfigDict(extra="allow")

    # Identity
    id: Optional[Scalar] = None
    frid: Optional[Scalar] = None
    facilityId: Optional[Scalar] = None
    sourceId: Optional[Scalar] = None

    facilityName: Optional[str] = None
    name1: Optional[str] = None
    name: Optional[str] = None
    name2: Optional[str] = None

    # Address
    street1: Optional[str] = None
    address1: Optional[str] = None
    street: Optional[str] = None
    street2: Optional[str] = None
    address2: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip: Optional[Scalar] = None
    zip5: Optional[Scalar] = None

    # Contact
    phone: Optional[Scalar] = None
    phoneNumber: Optional[Scalar] = None
    website: Optional[str] = None
    url: Optional[str] = None

    # Coordinates
    latitude: Optional[Scalar] = None
    lat: Optional[Scalar] = None
    longitude: Optional[Scalar] = None
    lng: Optional[Scalar] = None
    lon: Optional[Scalar] = None

    # Lists (sequence or delimited string)
    services: Optional[ListOrDelimited] = None
    servicesCd: Optional[ListOrDelimited] = None
    servicesProvided: Optional[ListOrDelimited] = None
    typeServices: Optional[ListOrDelimited] = None
    categories: Optional[ListOrDelimited] = None
    insurance: Optional[ListOrDelimited] = None
    paymentTypes: Optional[ListOrDelimited] = None
    paymentAccepted: Optional[ListOrDelimited] = None
    insuranceAccepted: Optional[ListOrDelimited] = None
    payment: Optional[ListOrDelimited] = None
    amenities: Optional[ListOrDelimited] = None
    specialties: Optional[ListOrDelimited] = None
    populations: Optional[ListOrDelimited] = None

    # Service and payment flags
    detox: Optional[Flag] = None
    residential: Optional[Flag] = None
    outpatient: Optional[Flag] = None
    telehealth: Optional[Flag] = None
    hospital: Optional[Flag] = None
    mat: Optional[Flag] = None
    medicaid: Optional[Flag] = None
    medicare: Optional[Flag] = None
    privateInsurance: Optional[Flag] = None
    privateIns: Optional[Flag] = None
    selfPay: Optional[Flag] = None
    isResidential: Optional[Flag] = None

    # Classification
    facilityType: Optional[str] = None
    typeLabel: Optional[str] = None
    description: Optional[str] = None
    verified: Optional[Flag] = None
    isVerified: Optional[Flag] = None
    certificationDate: Optional[str] = None
    licenseNumber: Optional[Scalar] = None

    # Provenance
    lastUpdated: Optional[str] = None
    updatedAt: Optional[str] = None
    updated_at: Optional[str] = None
    modifiedDate: Optional[str] = None

    def present(self, name: str) -> Any:
        """Value of ``name`` if it was supplied and is not blank, else None."""
        value = getattr(self, name, None)
        if value is None and self.model_extra:
            value = self.model_extra.get(name)
        if isinstance(value, str) and not value.strip():
            return None
        return value

    def payload(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CanonicalFacility(BaseModel):
    """The system's internal facility representation."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    source_id: Optional[str] = None
    name: str
    street: Optional[str] = None
    city: Optional[str] = None
    state: str
    zip: Optional[str] = None
    phone: Optional[str] = None
    website: Optional[str] = None

    latitude: Optional[float] = Field(default=None, ge=-90, le=90)
    longitude: Optional[float] = Field(default=None, ge=-180, le=180)

    services: List[str] = Field(default_factory=list)
    accepted_insurance: List[str] = Field(default_factory=list)
    amenities: List[str] = Field(default_factory=list)
    specialties: List[str] = Field(default_factory=list)
    programs: List[str] = Field(default_factory=list)

    facility_type: Optional[str] = None
    is_residential: bool = False
    verified: bool = False
    description: Optional[str] = None
    capacity: Optional[int] = None

    data_quality: float = Field(default=0.0, ge=0.0, le=1.0)
    source_data: Optional[Dict[str, Any]] = None
    last_updated: datetime = Field(default_factory=_utcnow)
    created_at: datetime = Field(default_factory=_utcnow)

    @property
    def has_coordinates(self) -> bool:
        return self.latitude is not None and self.longitude is not None


class ValidationResult(BaseModel):
    is_valid: bool
    errors: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    quality_score: float = Field(default=0.0, ge=0.0, le=1.0)


class EnrichmentFragment(BaseModel):
    """
    Best-effort partial facility scraped from its website.

    Empty or missing fields never overwrite stored values.
    """

    description: Optional[str] = None
    capacity: Optional[int] = None
    amenities: List[str] = Field(default_factory=list)
    accepted_insurance: List[str] = Field(default_factory=list)
    programs: List[str] = Field(default_factory=list)

    def is_empty(self) -> bool:
        return not (
            self.description
            or self.capacity
            or self.amenities
            or self.accepted_insurance
            or self.programs
        )
