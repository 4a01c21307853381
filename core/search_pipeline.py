"""
Search pipeline.

This module turns a text query into a ranked list of results:
- Cache lookup on a normalized key
- Sequential failover across a shuffled pool of SearXNG instances
- Optional concurrent content extraction through a reader service
- Provenance wrapping of every network-originated field
- Caching of the assembled payload (negative results included, short-lived)
"""

import asyncio
import math
import random
import time
from typing import Any, Dict, List, Optional, Tuple

import httpx

from core.cache import TTLCache
from core.config_loader import SearchSettings
from core.content_guard import (
    MAX_CONTENT_LENGTH,
    ContentKind,
    classify_content,
    extract_text_from_html,
    is_dangerous_url,
    is_error_page,
    is_valid_content,
    resolve_site_name,
    sanitize_html,
    truncate_content,
    wrap_web_content,
)
from core.exceptions import ExtractionFailed, ProviderExhausted, ServiceDisabled
from core.logger import get_logger
from providers.base import BaseSearchProvider
from providers.jina_reader import JinaReader
from providers.searxng import SearXNGProvider

MAX_SEARCH_COUNT = 10
MAX_EXTRACTION_TIMEOUT_SECONDS = 10
CONTENT_SOURCE = "web_search"
NO_RESULTS_ERROR = "No results found from any SearXNG instance"

# Error-page phrases are only trusted on short bodies; long articles mention them too.
ERROR_PAGE_MAX_LENGTH = 2000


def resolve_search_count(value: Any, fallback: int, maximum: int = MAX_SEARCH_COUNT) -> int:
    """
    Clamp a requested result count into [1, maximum].

    Non-numeric, boolean or non-finite values fall back to `fallback`.
    """
    if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
        value = fallback
    return max(1, min(maximum, int(math.floor(value))))


class SearchPipeline:
    """
    Search pipeline over an unreliable provider pool.

    Attributes:
        settings: Search settings
        cache: TTLCache holding assembled payloads
        providers: Interchangeable search providers, tried in random order
        extractor: Content extraction service
    """

    def __init__(
        self,
        settings: Optional[SearchSettings] = None,
        max_concurrency: int = 2,
        cache: Optional[TTLCache] = None,
        providers: Optional[List[BaseSearchProvider]] = None,
        extractor: Optional[JinaReader] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        """
        Initialize search pipeline.

        Args:
            settings: Search settings (defaults if omitted)
            max_concurrency: Ceiling for concurrent content extraction calls
            cache: Cache instance (created from settings if omitted)
            providers: Provider pool (built from settings.instances if omitted)
            extractor: Content extractor (built from settings.reader_url if omitted)
            transport: Optional httpx transport, used by tests
            rng: Random source used to shuffle the provider pool
        """
        self.settings = settings or SearchSettings()
        self.max_concurrency = max(1, max_concurrency)
        self.cache = cache if cache is not None else TTLCache(ttl=self.settings.cache_ttl_seconds)
        self.providers: List[BaseSearchProvider] = (
            providers
            if providers is not None
            else [SearXNGProvider(url) for url in self.settings.instances]
        )
        self.extractor = extractor or JinaReader(self.settings.reader_url)
        self._transport = transport
        self._random = rng or random.Random()
        self._extraction_semaphore: Optional[asyncio.Semaphore] = None
        self.logger = get_logger("mobile_gateway.search_pipeline")

    @property
    def enabled(self) -> bool:
        return self.settings.enabled

    def start(self) -> None:
        """Start background cache maintenance on the running loop."""
        self.cache.start_sweeper()

    async def close(self) -> None:
        """Stop background cache maintenance."""
        await self.cache.stop_sweeper()
        self.logger.info("SearchPipeline closed")

    def cache_key(self, query: str, count: int, language: Optional[str], fetch_content: bool) -> str:
        return self.cache.make_key(
            "searxng",
            query,
            {"count": count, "language": (language or "default").casefold(), "fetch": fetch_content},
        )

    async def search(
        self,
        query: str,
        count: Any = None,
        language: Optional[str] = None,
        fetch_content: Optional[bool] = None,
    ) -> Dict[str, Any]:
        """
        Resolve `query` to a result payload.

        This method:
        1. Checks the cache first
        2. Tries providers one at a time in shuffled order
        3. Optionally extracts full content for each result
        4. Wraps network-originated text and annotates the payload
        5. Caches and returns the payload

        Args:
            query: Search query string
            count: Requested result count (clamped, defaults to settings.max_results)
            language: Optional language code passed to providers
            fetch_content: Whether to extract full content (default: settings.fetch_content)

        Returns:
            Payload dictionary. An exhausted provider pool yields an empty
            payload carrying an 'error' string rather than an exception.

        Raises:
            ServiceDisabled: If search is disabled in configuration
            ValueError: If the query is empty
        """
        if not self.settings.enabled:
            raise ServiceDisabled("Search service is disabled")

        query = (query or "").strip()
        if not query:
            raise ValueError("Missing required parameter: query")

        count = resolve_search_count(count, self.settings.max_results)
        if fetch_content is None:
            fetch_content = self.settings.fetch_content

        cache_key = self.cache_key(query, count, language, fetch_content)
        cached = self.cache.get(cache_key)
        if cached is not None:
            self.logger.info(f"Cache hit for search: {query}")
            return {**cached, "cached": True}

        start = time.monotonic()
        timeout = self.settings.timeout_seconds

        async with httpx.AsyncClient(transport=self._transport, follow_redirects=True) as client:
            try:
                entries, provider = await self._query_providers(
                    client, query, count, language, timeout
                )
            except ProviderExhausted as e:
                self.logger.warning(f"{e} for query: {query}")
                payload: Dict[str, Any] = {
                    "query": query,
                    "provider": SearXNGProvider.name,
                    "count": 0,
                    "tookMs": self._elapsed_ms(start),
                    "error": NO_RESULTS_ERROR,
                    "results": [],
                }
                ttl = min(self.settings.empty_result_ttl_seconds, self.cache.ttl)
                self.cache.set(cache_key, payload, ttl=ttl)
                return payload

            contents: List[Optional[str]] = [None] * len(entries)
            if fetch_content:
                contents = await self._fetch_contents(
                    client,
                    [str(entry.get("url") or "") for entry in entries],
                    min(timeout, MAX_EXTRACTION_TIMEOUT_SECONDS),
                )

        results = [self._build_result(entry, content) for entry, content in zip(entries, contents)]

        payload = {
            "query": query,
            "provider": provider.name,
            "instance": provider.base_url,
            "count": len(results),
            "tookMs": self._elapsed_ms(start),
            "externalContent": {
                "untrusted": True,
                "source": CONTENT_SOURCE,
                "provider": (
                    f"{provider.name}+{self.extractor.name}" if fetch_content else provider.name
                ),
                "wrapped": True,
            },
            "results": results,
        }

        self.cache.set(cache_key, payload)
        self.logger.info(f"Search completed: {len(results)} results for {query}")
        return payload

    async def _query_providers(
        self,
        client: httpx.AsyncClient,
        query: str,
        count: int,
        language: Optional[str],
        timeout: float,
    ) -> Tuple[List[Dict[str, Any]], BaseSearchProvider]:
        """
        Try providers strictly one after another until one yields results.

        Raises:
            ProviderExhausted: If every provider failed or returned nothing
        """
        candidates = list(self.providers)
        self._random.shuffle(candidates)

        for provider in candidates:
            try:
                entries = await asyncio.wait_for(
                    provider.search(client, query, count, language=language, timeout=timeout),
                    timeout=timeout,
                )
            except asyncio.TimeoutError:
                self.logger.debug(f"{provider.base_url} timed out after {timeout}s")
                continue
            except Exception as e:
                self.logger.debug(f"{provider.base_url} failed: {e}")
                continue

            if entries:
                self.logger.info(f"{provider.base_url} returned {len(entries)} results")
                return entries[:count], provider

            self.logger.debug(f"{provider.base_url} returned no results")

        raise ProviderExhausted(f"All {len(candidates)} search providers failed")

    def _get_extraction_semaphore(self) -> asyncio.Semaphore:
        """Semaphore shared by every search on this pipeline, bound to the running loop."""
        if self._extraction_semaphore is None:
            self._extraction_semaphore = asyncio.Semaphore(self.max_concurrency)
        return self._extraction_semaphore

    async def _fetch_contents(
        self, client: httpx.AsyncClient, urls: List[str], timeout: float
    ) -> List[Optional[str]]:
        """
        Extract content for every URL concurrently.

        The semaphore is shared across concurrent searches, so
        max_concurrency caps reader calls for the whole pipeline.

        Returns:
            One entry per URL; None where extraction failed or was skipped
        """
        semaphore = self._get_extraction_semaphore()

        async def fetch_one(url: str) -> Optional[str]:
            if not url or is_dangerous_url(url):
                return None
            async with semaphore:
                try:
                    return await self._extract(client, url, timeout)
                except asyncio.TimeoutError:
                    self.logger.debug(f"Content extraction timed out for {url}")
                except Exception as e:
                    self.logger.debug(f"Content extraction failed for {url}: {e}")
                return None

        return list(await asyncio.gather(*[fetch_one(url) for url in urls]))

    async def _extract(self, client: httpx.AsyncClient, url: str, timeout: float) -> str:
        text = await asyncio.wait_for(
            self.extractor.extract(client, url, timeout=timeout), timeout=timeout
        )
        if classify_content(text) is ContentKind.HTML:
            text = extract_text_from_html(sanitize_html(text))
        if not is_valid_content(text):
            raise ExtractionFailed(f"No usable content for {url}")
        if len(text) <= ERROR_PAGE_MAX_LENGTH and is_error_page(text):
            raise ExtractionFailed(f"Error page returned for {url}")
        return truncate_content(text, MAX_CONTENT_LENGTH)

    def _build_result(self, entry: Dict[str, Any], content: Optional[str]) -> Dict[str, Any]:
        url = str(entry.get("url") or "")
        # SearXNG snippets carry highlight markup and entities
        title = extract_text_from_html(str(entry.get("title") or ""))
        description = extract_text_from_html(str(entry.get("content") or ""))

        result: Dict[str, Any] = {
            "title": wrap_web_content(title, CONTENT_SOURCE),
            "url": url,
            "description": wrap_web_content(description, CONTENT_SOURCE),
        }
        if content:
            result["content"] = wrap_web_content(content, CONTENT_SOURCE)
        site_name = resolve_site_name(url)
        if site_name:
            result["siteName"] = site_name
        return result

    @staticmethod
    def _elapsed_ms(start: float) -> int:
        return int((time.monotonic() - start) * 1000)
