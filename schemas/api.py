"""
Pydantic schemas for API request/response models
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, model_validator

from models.base import SyncMode
from schemas.sync import SyncStatus


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ============================================================================
# Search Schemas
# ============================================================================

class SearchParams(BaseModel):
    """Normalized search parameters, echoed back in the response"""
    latitude: float
    longitude: float
    radius: float
    services: List[str] = Field(default_factory=list)
    limit: int


class FacilityResult(BaseModel):
    """Public view of a facility in search results"""
    id: str
    name: str
    street: Optional[str] = None
    city: Optional[str] = None
    state: str
    zip: Optional[str] = None
    phone: Optional[str] = None
    website: Optional[str] = None
    latitude: float
    longitude: float
    services: List[str] = Field(default_factory=list)
    accepted_insurance: List[str] = Field(default_factory=list)
    amenities: List[str] = Field(default_factory=list)
    specialties: List[str] = Field(default_factory=list)
    facility_type: Optional[str] = None
    is_residential: bool = False
    verified: bool = False
    description: Optional[str] = None
    data_quality: float = 0.0
    distance: float = Field(..., description="Great-circle distance in miles")


class SearchResponse(BaseModel):
    """Search result envelope"""
    success: bool = True
    count: int
    search_params: SearchParams
    facilities: List[FacilityResult]
    response_time_ms: float = 0.0
    source: str = Field(..., description="cache-memory, cache-distributed, store or fallback")
    degraded: bool = False

    class Config:
        json_schema_extra = {
            "example": {
                "success": True,
                "count": 1,
                "search_params": {
                    "latitude": 37.7749,
                    "longitude": -122.4194,
                    "radius": 25,
                    "services": ["detox"],
                    "limit": 50
                },
                "facilities": [
                    {
                        "id": "fac_0c1f2e3d4b5a69788796",
                        "name": "Serenity House Recovery Center",
                        "city": "San Francisco",
                        "state": "CA",
                        "latitude": 37.7749,
                        "longitude": -122.4194,
                        "services": ["Detox", "Outpatient"],
                        "distance": 0.42
                    }
                ],
                "response_time_ms": 12.5,
                "source": "store",
                "degraded": False
            }
        }


# ============================================================================
# Enrichment Schemas
# ============================================================================

class EnrichResponse(BaseModel):
    facility_id: str
    updated_fields: List[str]
    enriched: bool


# ============================================================================
# ETL Schemas
# ============================================================================

class ETLRunRequest(BaseModel):
    mode: SyncMode = SyncMode.INCREMENTAL
    since: Optional[datetime] = None
    limit: Optional[int] = Field(default=None, ge=1)


class ETLStatusResponse(BaseModel):
    scheduled_jobs: List[Dict[str, Any]] = Field(default_factory=list)
    recent_runs: List[SyncStatus] = Field(default_factory=list)


# ============================================================================
# Health Check Schemas
# ============================================================================

class HealthCheckResponse(BaseModel):
    """Health check response model"""
    status: str = Field(default="healthy", description="Overall system status: healthy, degraded, unhealthy")
    timestamp: datetime = Field(default_factory=_utcnow)
    store_connected: bool
    distributed_cache_enabled: bool = False
    facility_count: Optional[int] = None
    last_sync: Optional[SyncStatus] = None

    @model_validator(mode="after")
    def determine_status(self):
        """Derive overall status from store connectivity and the last sync"""
        if not self.store_connected:
            self.status = "unhealthy"
        elif self.last_sync is not None and self.last_sync.status.value != "success":
            self.status = "degraded"
        else:
            self.status = "healthy"
        return self


# ============================================================================
# Error Response Schema
# ============================================================================

class ErrorResponse(BaseModel):
    """Standard error response"""
    error: str
    detail: Optional[str] = None
    timestamp: datetime = Field(default_factory=_utcnow)
