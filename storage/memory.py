import asyncio
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

from core.exceptions import StoreUnavailableError
from schemas.facility import CanonicalFacility
from schemas.sync import SyncStatus
from storage.base import BoundingBox, FacilityStore, matches_services


class InMemoryFacilityStore(FacilityStore):
    """Process-local store for tests and local runs. Writes are serialized by a lock."""

    def __init__(self) -> None:
        self._facilities: Dict[str, CanonicalFacility] = {}
        self._sync_statuses: List[SyncStatus] = []
        self._lock = asyncio.Lock()
        self.available = True

    def _check(self) -> None:
        if not self.available:
            raise StoreUnavailableError("In-memory store marked unavailable")

    async def ping(self) -> bool:
        self._check()
        return True

    async def upsert_many(self, facilities: Sequence[CanonicalFacility]) -> int:
        self._check()
        async with self._lock:
            for facility in facilities:
                existing = self._facilities.get(facility.id)
                if existing is not None:
                    facility = facility.model_copy(update={"created_at": existing.created_at})
                self._facilities[facility.id] = facility
        return len(facilities)

    async def query_candidates(
        self,
        bbox: Optional[BoundingBox] = None,
        services: Sequence[str] = (),
        residential_only: bool = False,
    ) -> List[CanonicalFacility]:
        self._check()
        results = []
        for facility in self._facilities.values():
            if not facility.has_coordinates:
                continue
            if bbox is not None and not bbox.contains(facility.latitude, facility.longitude):
                continue
            if residential_only and not facility.is_residential:
                continue
            if not matches_services(facility.services, services):
                continue
            results.append(facility)
        return results

    async def get(self, facility_id: str) -> Optional[CanonicalFacility]:
        self._check()
        return self._facilities.get(facility_id)

    async def update_fields(self, facility_id: str, fields: Dict[str, Any]) -> Optional[CanonicalFacility]:
        self._check()
        async with self._lock:
            existing = self._facilities.get(facility_id)
            if existing is None:
                return None
            updated = existing.model_copy(
                update={**fields, "last_updated": datetime.now(timezone.utc)}
            )
            self._facilities[facility_id] = updated
            return updated

    async def count(self) -> int:
        self._check()
        return len(self._facilities)

    async def record_sync_status(self, status: SyncStatus) -> None:
        self._check()
        async with self._lock:
            self._sync_statuses.append(status)

    async def recent_sync_statuses(self, limit: int = 10) -> List[SyncStatus]:
        self._check()
        return list(reversed(self._sync_statuses))[:limit]

    def all(self) -> List[CanonicalFacility]:
        return list(self._facilities.values())
