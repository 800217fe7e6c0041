"""
Website enrichment: scrape a facility's site for details the locator lacks.

Only the input/output contract matters to the rest of the system: given a
URL, return an EnrichmentFragment. Failures yield an empty fragment and
leave the stored facility untouched.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

import httpx

from schemas.facility import CanonicalFacility, EnrichmentFragment
import logging

logger = logging.getLogger(__name__)

EXTRACTION_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "description": {"type": "string"},
        "capacity": {"type": "number"},
        "amenities": {"type": "array", "items": {"type": "string"}},
        "insurance": {"type": "array", "items": {"type": "string"}},
        "programs": {"type": "array", "items": {"type": "string"}},
    },
}


class WebsiteEnricher(ABC):

    @abstractmethod
    async def enrich(self, url: str) -> EnrichmentFragment:
        pass

    async def close(self) -> None:
        return None


class NullWebsiteEnricher(WebsiteEnricher):
    """Used when no scraping service is configured."""

    async def enrich(self, url: str) -> EnrichmentFragment:
        return EnrichmentFragment()


class FirecrawlWebsiteEnricher(WebsiteEnricher):
    """Structured extraction through the Firecrawl scrape API."""

    def __init__(
        self,
        api_key: str,
        api_url: str = "https://api.firecrawl.dev/v1/scrape",
        timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.api_key = api_key
        self.api_url = api_url
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = client is None

    async def enrich(self, url: str) -> EnrichmentFragment:
        body = {
            "url": url,
            "formats": ["json"],
            "jsonOptions": {"schema": EXTRACTION_SCHEMA},
        }
        try:
            response = await self._client.post(
                self.api_url,
                json=body,
                headers={"Authorization": f"Bearer {self.api_key}"},
            )
            response.raise_for_status()
            payload = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(f"Website enrichment failed for {url}: {e}")
            return EnrichmentFragment()

        extracted = (payload.get("data") or {}).get("json") or {}
        return self._to_fragment(extracted)

    @staticmethod
    def _to_fragment(extracted: Dict[str, Any]) -> EnrichmentFragment:
        def strings(value: Any) -> List[str]:
            if not isinstance(value, list):
                return []
            return [str(item).strip() for item in value if str(item).strip()]

        capacity = extracted.get("capacity")
        try:
            capacity = int(capacity) if capacity is not None else None
        except (TypeError, ValueError):
            capacity = None

        description = extracted.get("description")
        return EnrichmentFragment(
            description=description.strip() if isinstance(description, str) and description.strip() else None,
            capacity=capacity if capacity and capacity > 0 else None,
            amenities=strings(extracted.get("amenities")),
            accepted_insurance=strings(extracted.get("insurance")),
            programs=strings(extracted.get("programs")),
        )

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()


def enrichment_updates(facility: CanonicalFacility, fragment: EnrichmentFragment) -> Dict[str, Any]:
    """
    Fields to write for a fragment. Empty fragment values are skipped;
    list values are merged with what the facility already has.
    """
    updates: Dict[str, Any] = {}
    if fragment.description:
        updates["description"] = fragment.description
    if fragment.capacity:
        updates["capacity"] = fragment.capacity
    for field in ("amenities", "accepted_insurance", "programs"):
        incoming = getattr(fragment, field)
        if not incoming:
            continue
        current = list(getattr(facility, field))
        known = {value.casefold() for value in current}
        merged = current + [value for value in incoming if value.casefold() not in known]
        if merged != current:
            updates[field] = sorted(dict.fromkeys(merged), key=str.casefold)
    return updates


async def apply_enrichment(store, enricher: WebsiteEnricher, facility: CanonicalFacility) -> List[str]:
    """
    Enrich one stored facility from its website.

    Returns:
        Names of the fields that were updated (empty when nothing changed)
    """
    if not facility.website:
        return []
    fragment = await enricher.enrich(facility.website)
    if fragment.is_empty():
        return []
    updates = enrichment_updates(facility, fragment)
    if updates:
        await store.update_fields(facility.id, updates)
        logger.info(f"Enriched facility {facility.id}: {sorted(updates)}")
    return sorted(updates)
