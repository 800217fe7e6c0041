"""
Upstream facility locator extractor with rate limiting and retry logic.

This module fetches one page of raw facility rows at a time:
- Every HTTP attempt first takes a token from the rate limiter
- Transient failures (timeouts, 5xx, 429, local rate-limit rejection) are
  retried with exponential backoff
- Authentication failures are fatal and abort the run
"""

import httpx
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional
import asyncio

from core.exceptions import (
    APIExtractionError,
    AuthenticationError,
    DataFormatError,
    NetworkError,
    RateLimitError,
    ResourceNotFoundError,
)
from core.rate_limiter import TokenBucketRateLimiter
from core.retry import with_exponential_backoff
import logging

logger = logging.getLogger(__name__)

RECORD_KEYS = ("rows", "data", "results", "facilities")


@dataclass
class ExtractedPage:
    page: int
    records: List[Dict[str, Any]] = field(default_factory=list)
    has_next: bool = False


class FacilityAPIExtractor:
    """
    Extract facility rows from the treatment locator API.

    Query parameters:
        sAddr     location anchor
        pageSize  rows per page
        page      1-based page index
        sType     result-type filter
        modifiedSince  watermark for incremental syncs

    Attributes:
        max_retries: Maximum attempts per page (default: 3)
        retry_delay: Initial retry delay in seconds (default: 1.0)
        timeout: Request timeout in seconds (default: 30.0)
        api_calls: Number of HTTP requests issued
    """

    def __init__(
        self,
        api_url: str,
        rate_limiter: TokenBucketRateLimiter,
        api_key: Optional[str] = None,
        location_anchor: str = "United States",
        result_type: str = "SA",
        max_retries: int = 3,
        retry_delay: float = 1.0,
        timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.api_url = api_url
        self.rate_limiter = rate_limiter
        self.api_key = api_key
        self.location_anchor = location_anchor
        self.result_type = result_type
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.timeout = timeout
        self._client = client
        self._owns_client = client is None
        self._sleep = sleep
        self.api_calls = 0

    async def __aenter__(self) -> "FacilityAPIExtractor":
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def _params(self, page: int, page_size: int, watermark: Optional[datetime]) -> Dict[str, Any]:
        params: Dict[str, Any] = {
            "sAddr": self.location_anchor,
            "pageSize": page_size,
            "page": page,
            "sType": self.result_type,
        }
        if watermark is not None:
            params["modifiedSince"] = watermark.isoformat()
        return params

    async def fetch_page(
        self,
        page: int,
        page_size: int,
        watermark: Optional[datetime] = None
    ) -> ExtractedPage:
        """
        Fetch and decode one page, retrying transient failures.

        Raises:
            AuthenticationError: On HTTP 401/403 (fatal)
            ResourceNotFoundError: On HTTP 404
            NetworkError / RateLimitError: When retries are exhausted
            DataFormatError: When the body is not a recognizable JSON page
        """
        params = self._params(page, page_size, watermark)

        async def attempt() -> httpx.Response:
            return await self._request(params, page)

        def on_retry(attempt_no: int, delay: float, exc: Exception) -> None:
            logger.warning(
                f"Page {page} attempt {attempt_no}/{self.max_retries} failed: {exc}. "
                f"Retrying in {delay:.2f}s"
            )

        response = await with_exponential_backoff(
            attempt,
            retries=self.max_retries,
            base_delay_seconds=self.retry_delay,
            on_retry=on_retry,
            sleep=self._sleep,
        )
        return self._parse_page(response, page, page_size)

    async def _request(self, params: Dict[str, Any], page: int) -> httpx.Response:
        context = {"api_url": self.api_url, "page": page}

        if not self.rate_limiter.try_acquire():
            raise RateLimitError(
                "Local rate limit reached for upstream API",
                context=context,
                retry_after=self.rate_limiter.seconds_until_available()
            )

        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)

        self.api_calls += 1
        try:
            response = await self._client.get(
                self.api_url,
                headers=self._headers(),
                params=params,
                timeout=self.timeout
            )
        except httpx.TimeoutException as e:
            raise NetworkError("Request timeout", context={**context, "timeout": self.timeout}, original_exception=e)
        except httpx.TransportError as e:
            raise NetworkError("Network error", context=context, original_exception=e)

        status = response.status_code
        if status in (401, 403):
            raise AuthenticationError(
                f"Authentication failed for {self.api_url}",
                context={**context, "status_code": status}
            )
        if status == 404:
            raise ResourceNotFoundError(
                f"Resource not found: {self.api_url}",
                context={**context, "status_code": 404}
            )
        if status == 429:
            retry_after = self._retry_after(response)
            raise RateLimitError(
                f"Rate limit exceeded for {self.api_url}",
                context={**context, "status_code": 429},
                retry_after=retry_after
            )
        if status >= 500:
            raise NetworkError(
                f"Server error {status}",
                context={**context, "status_code": status, "response_body": response.text[:500]}
            )
        if status >= 400:
            raise APIExtractionError(
                f"Unexpected status {status}",
                context={**context, "status_code": status, "response_body": response.text[:500]}
            )
        return response

    @staticmethod
    def _retry_after(response: httpx.Response) -> Optional[float]:
        value = response.headers.get("Retry-After")
        if value is None:
            return None
        try:
            return float(value)
        except ValueError:
            return None

    def _parse_page(self, response: httpx.Response, page: int, page_size: int) -> ExtractedPage:
        try:
            data = response.json()
        except ValueError as e:
            raise DataFormatError(
                "Failed to parse JSON response",
                context={"api_url": self.api_url, "page": page, "response_body": response.text[:500]},
                original_exception=e
            )

        # Handle the different response envelopes
        if isinstance(data, list):
            records = data
            has_next = len(records) >= page_size
        elif isinstance(data, dict):
            records = next((data[key] for key in RECORD_KEYS if isinstance(data.get(key), list)), [])
            has_next = self._has_next(data, page, page_size, len(records))
        else:
            raise DataFormatError(
                "Unexpected response body type",
                context={"api_url": self.api_url, "page": page, "body_type": type(data).__name__}
            )

        rows = [record for record in records if isinstance(record, dict)]
        if len(rows) != len(records):
            logger.warning(f"Page {page}: skipped {len(records) - len(rows)} non-object rows")

        logger.info(f"Fetched {len(rows)} records from page {page}")
        return ExtractedPage(page=page, records=rows, has_next=has_next and bool(rows))

    @staticmethod
    def _has_next(data: Dict[str, Any], page: int, page_size: int, count: int) -> bool:
        if "has_next" in data:
            return bool(data["has_next"])
        pagination = data.get("pagination")
        if isinstance(pagination, dict) and "hasNextPage" in pagination:
            return bool(pagination["hasNextPage"])
        total_pages = data.get("totalPages", data.get("page_count"))
        if total_pages is not None:
            try:
                return page < int(total_pages)
            except (TypeError, ValueError):
                pass
        return count >= page_size
