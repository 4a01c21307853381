"""
Base search provider abstract class.

This module defines the interface every search provider implements, plus
a bounded response reader shared by the providers and the content extractor.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Tuple

import httpx

from core.logger import get_logger

CLIENT_USER_AGENT = "MobileGateway/1.0"
DEFAULT_MAX_RESPONSE_BYTES = 1024 * 1024


async def read_response_text(
    response: httpx.Response, max_bytes: int = DEFAULT_MAX_RESPONSE_BYTES
) -> Tuple[str, bool]:
    """
    Read at most `max_bytes` of a streamed response body and decode it.

    Args:
        response: Response opened with `client.stream(...)`
        max_bytes: Byte ceiling

    Returns:
        (text, truncated) where truncated is True if the body was cut
    """
    chunks: List[bytes] = []
    bytes_read = 0
    truncated = False

    async for chunk in response.aiter_bytes():
        remaining = max_bytes - bytes_read
        if len(chunk) >= remaining:
            chunks.append(chunk[:remaining])
            bytes_read += remaining
            truncated = len(chunk) > remaining
            break
        chunks.append(chunk)
        bytes_read += len(chunk)

    encoding = response.encoding or "utf-8"
    return b"".join(chunks).decode(encoding, errors="replace"), truncated


class BaseSearchProvider(ABC):
    """
    Base class for search providers.

    A provider wraps one upstream endpoint. It raises on any failure
    (transport error, non-2xx status, undecodable body) and returns an empty
    list only when the upstream answered successfully with no results; the
    pipeline decides what to try next.

    Attributes:
        name: Provider family name used in payload annotations
        base_url: Endpoint root
    """

    name = "base"

    def __init__(self, base_url: str) -> None:
        self.base_url = base_url.rstrip("/")
        self.logger = get_logger(f"mobile_gateway.{self.__class__.__name__.lower()}")

    @abstractmethod
    async def search(
        self,
        client: httpx.AsyncClient,
        query: str,
        max_results: int,
        language: Optional[str] = None,
        timeout: float = 30.0,
    ) -> List[Dict[str, Any]]:
        """
        Execute a search against this provider.

        Args:
            client: Shared HTTP client
            query: Search query string
            max_results: Maximum number of results to return
            language: Optional language code
            timeout: Request timeout in seconds

        Returns:
            List of raw result dictionaries with at least 'title', 'url' and
            'content' keys
        """
        pass

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.base_url!r})"
