"""
SearXNG search provider.

Queries one public SearXNG instance through its JSON API. Instances are
community-run and come and go, so failures here are routine and the
pipeline simply moves on to the next instance.
"""

import json
from typing import Any, Dict, List, Optional

import httpx

from providers.base import CLIENT_USER_AGENT, BaseSearchProvider, read_response_text

DEFAULT_LANGUAGE = "en-US"
MAX_RESPONSE_BYTES = 2 * 1024 * 1024


class SearXNGProvider(BaseSearchProvider):
    """Search provider backed by a single SearXNG instance."""

    name = "searxng"

    def build_params(self, query: str, language: Optional[str]) -> Dict[str, str]:
        return {
            "q": query,
            "format": "json",
            "categories": "general",
            "language": language or DEFAULT_LANGUAGE,
        }

    async def search(
        self,
        client: httpx.AsyncClient,
        query: str,
        max_results: int,
        language: Optional[str] = None,
        timeout: float = 30.0,
    ) -> List[Dict[str, Any]]:
        """
        Execute search on this instance.

        Raises:
            httpx.HTTPStatusError: On a non-2xx response
            httpx.RequestError: On network errors or timeouts
            ValueError: If the body is not a JSON object
        """
        self.logger.debug(f"Trying SearXNG instance: {self.base_url}")

        async with client.stream(
            "GET",
            f"{self.base_url}/search",
            params=self.build_params(query, language),
            headers={"Accept": "application/json", "User-Agent": CLIENT_USER_AGENT},
            timeout=timeout,
        ) as response:
            response.raise_for_status()
            text, _ = await read_response_text(response, MAX_RESPONSE_BYTES)

        data = json.loads(text)
        if not isinstance(data, dict):
            raise ValueError(f"Unexpected response body from {self.base_url}")

        raw_results = data.get("results") or []
        results = [item for item in raw_results if isinstance(item, dict)]
        self.logger.debug(f"SearXNG instance {self.base_url} returned {len(results)} results")
        return results[:max_results]
