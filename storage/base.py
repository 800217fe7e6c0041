"""
Facility store contract shared by the ETL pipeline and the search service.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Sequence

from schemas.facility import CanonicalFacility
from schemas.sync import SyncStatus


@dataclass(frozen=True)
class BoundingBox:
    min_latitude: float
    max_latitude: float
    min_longitude: float
    max_longitude: float

    def contains(self, latitude: float, longitude: float) -> bool:
        return (
            self.min_latitude <= latitude <= self.max_latitude
            and self.min_longitude <= longitude <= self.max_longitude
        )


def matches_services(facility_services: Iterable[str], required: Sequence[str]) -> bool:
    """Every required service is a case-insensitive substring of some facility service."""
    if not required:
        return True
    offered = [service.casefold() for service in facility_services]
    return all(
        any(wanted.casefold() in service for service in offered)
        for wanted in required
    )


class FacilityStore(ABC):
    """
    Upsert/query capability over canonical facilities.

    Writes are upserts keyed by facility id, so replaying a batch is
    idempotent. Facilities are never deleted here.
    """

    @abstractmethod
    async def ping(self) -> bool:
        """Raise StoreUnavailableError if the store cannot be reached."""
        raise NotImplementedError

    @abstractmethod
    async def upsert_many(self, facilities: Sequence[CanonicalFacility]) -> int:
        raise NotImplementedError

    @abstractmethod
    async def query_candidates(
        self,
        bbox: Optional[BoundingBox] = None,
        services: Sequence[str] = (),
        residential_only: bool = False,
    ) -> List[CanonicalFacility]:
        """Facilities with coordinates inside ``bbox`` matching the filters."""
        raise NotImplementedError

    @abstractmethod
    async def get(self, facility_id: str) -> Optional[CanonicalFacility]:
        raise NotImplementedError

    @abstractmethod
    async def update_fields(self, facility_id: str, fields: Dict[str, Any]) -> Optional[CanonicalFacility]:
        raise NotImplementedError

    @abstractmethod
    async def count(self) -> int:
        raise NotImplementedError

    @abstractmethod
    async def record_sync_status(self, status: SyncStatus) -> None:
        raise NotImplementedError

    @abstractmethod
    async def recent_sync_statuses(self, limit: int = 10) -> List[SyncStatus]:
        """Newest first."""
        raise NotImplementedError

    async def latest_sync_status(self, successful_only: bool = False) -> Optional[SyncStatus]:
        for status in await self.recent_sync_statuses(limit=50):
            if not successful_only or status.status.value == "success":
                return status
        return None

    async def close(self) -> None:
        return None
