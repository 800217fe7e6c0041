"""
Merge facilities that describe the same physical location.
"""

from collections import OrderedDict
from typing import Dict, List, Sequence, Tuple

from ingestion.transformers.normalizer import dedupe_key
from schemas.facility import CanonicalFacility
import logging

logger = logging.getLogger(__name__)

# Fields taken from the best record in the group that has a usable value.
# id, created_at and data_quality are handled separately.
MERGE_FIELDS = (
    "source_id", "name", "street", "city", "state", "zip", "phone", "website",
    "latitude", "longitude", "services", "accepted_insurance", "amenities",
    "specialties", "programs", "facility_type", "is_residential", "verified",
    "description", "capacity", "source_data", "last_updated",
)


class FacilityDeduplicator:
    """
    Group by normalized name + city + state and merge each group.

    For every field the value comes from the highest-ranked record that has a
    non-null, non-empty value. Rank: higher quality score, then more recent
    last_updated, then earlier position in the input. Singleton groups pass
    through unchanged, so running the deduplicator on its own output is a no-op.
    """

    def dedupe(self, facilities: Sequence[CanonicalFacility]) -> Tuple[List[CanonicalFacility], int]:
        """
        Returns:
            (merged facilities in first-appearance order, number of records merged away)
        """
        groups: "OrderedDict[str, List[Tuple[int, CanonicalFacility]]]" = OrderedDict()
        for position, facility in enumerate(facilities):
            key = dedupe_key(facility.name, facility.city, facility.state)
            groups.setdefault(key, []).append((position, facility))

        merged: List[CanonicalFacility] = []
        duplicates = 0
        for key, members in groups.items():
            if len(members) == 1:
                merged.append(members[0][1])
                continue
            duplicates += len(members) - 1
            merged.append(self._merge(members))
            logger.debug(f"Merged {len(members)} records for key '{key}'")

        if duplicates:
            logger.info(f"Deduplication merged {duplicates} duplicate records into {len(merged)} facilities")
        return merged, duplicates

    def _merge(self, members: List[Tuple[int, CanonicalFacility]]) -> CanonicalFacility:
        ranked = [
            facility for _, facility in sorted(
                members,
                key=lambda item: (-item[1].data_quality, -item[1].last_updated.timestamp(), item[0]),
            )
        ]
        best = ranked[0]

        update: Dict[str, object] = {}
        for field in MERGE_FIELDS:
            for facility in ranked:
                value = getattr(facility, field)
                if self._has_value(value):
                    update[field] = value
                    break

        # Coordinates travel as a pair
        for facility in ranked:
            if facility.has_coordinates:
                update["latitude"] = facility.latitude
                update["longitude"] = facility.longitude
                break

        update["data_quality"] = max(facility.data_quality for facility in ranked)
        update["created_at"] = min(facility.created_at for facility in ranked)
        return best.model_copy(update=update)

    @staticmethod
    def _has_value(value: object) -> bool:
        if value is None:
            return False
        if isinstance(value, (str, list, dict)) and not value:
            return False
        return True
