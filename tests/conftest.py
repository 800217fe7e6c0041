"""
Pytest configuration and fixtures
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from core.config import load_settings
from ingestion.extractors.api_extractor import ExtractedPage
from ingestion.transformers.normalizer import facility_id_for
from schemas.facility import CanonicalFacility
from storage.memory import InMemoryFacilityStore


class ManualClock:
    """Deterministic clock for rate limiter and cache tests"""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeRedis:
    """Minimal async stand-in for redis.asyncio.Redis (get/setex/delete)"""

    def __init__(self):
        self.data: Dict[str, str] = {}
        self.ttls: Dict[str, int] = {}
        self.fail = False

    def _check(self):
        if self.fail:
            raise RedisConnectionError("redis down")

    async def get(self, key):
        self._check()
        return self.data.get(key)

    async def setex(self, key, ttl, value):
        self._check()
        self.data[key] = value
        self.ttls[key] = ttl
        return True

    async def delete(self, key):
        self._check()
        return 1 if self.data.pop(key, None) is not None else 0

    async def aclose(self):
        return None


class FakeExtractor:
    """
    Serves canned pages to the pipeline.

    ``pages`` is either a flat list of rows, served the way the upstream
    pages them (page N is ``rows[(N-1)*page_size:N*page_size]``), or a dict
    mapping a 1-based page number to a list of rows or to an exception
    instance that fetch_page raises.
    """

    def __init__(self, pages: Union[List[Dict[str, Any]], Dict[int, Any]]):
        self.pages = pages
        self.calls: List[Dict[str, Any]] = []
        self.api_calls = 0
        self.closed = False

    async def fetch_page(self, page: int, page_size: int, watermark: Optional[datetime] = None) -> ExtractedPage:
        self.calls.append({"page": page, "page_size": page_size, "watermark": watermark})
        self.api_calls += 1
        if isinstance(self.pages, list):
            start = (page - 1) * page_size
            return ExtractedPage(
                page=page,
                records=list(self.pages[start:start + page_size]),
                has_next=start + page_size < len(self.pages),
            )

        content = self.pages.get(page, [])
        if isinstance(content, Exception):
            raise content
        return ExtractedPage(
            page=page,
            records=list(content)[:page_size],
            has_next=page < max(self.pages, default=0),
        )

    async def close(self) -> None:
        self.closed = True


def build_record(n: int, **overrides) -> Dict[str, Any]:
    record = {
        "id": f"src-{n}",
        "name1": f"Harbor Recovery Center {n}",
        "street1": f"{100 + n} Main St",
        "city": "San Francisco",
        "state": "CA",
        "zip": "94102",
        "phone": "415-555-0100",
        "latitude": 37.70 + n * 0.001,
        "longitude": -122.41,
        "services": "Detox, Outpatient",
    }
    record.update(overrides)
    return record


def build_facility(name: str, city: str = "San Francisco", state: str = "CA", **fields) -> CanonicalFacility:
    return CanonicalFacility(
        id=facility_id_for(name, city, state),
        name=name,
        city=city,
        state=state,
        **fields,
    )


@pytest.fixture
def manual_clock():
    return ManualClock()


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def memory_store():
    return InMemoryFacilityStore()


@pytest.fixture
def make_record():
    """Factory for valid upstream rows; row n maps to a distinct facility"""
    return build_record


@pytest.fixture
def make_facility():
    return build_facility


@pytest.fixture
def make_extractor():
    return FakeExtractor


@pytest.fixture
def test_settings():
    return load_settings(
        ENVIRONMENT="test",
        LOG_LEVEL="WARNING",
        API_KEY="test-key",
        REDIS_URL=None,
        ETL_BATCH_SIZE=50,
        ETL_RETRY_DELAY_SECONDS=0,
        ETL_ENABLE_GEOCODING=False,
        ETL_SCHEDULE=None,
        SEARCH_RATE_CAPACITY=100,
        SEARCH_RATE_LIMIT=100.0,
    )


@pytest.fixture
def utc_now():
    return datetime.now(timezone.utc)
