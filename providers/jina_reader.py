"""
Content extraction through the Jina Reader service.

The reader fetches a target page on our behalf and returns its main text as
Markdown, which keeps page rendering off the constrained host.
"""

import httpx

from core.exceptions import ExtractionFailed
from core.logger import get_logger
from providers.base import CLIENT_USER_AGENT, DEFAULT_MAX_RESPONSE_BYTES, read_response_text

DEFAULT_READER_URL = "https://r.jina.ai/"


class JinaReader:
    """
    Content extractor keyed by target URL.

    Attributes:
        reader_url: Reader endpoint prefix; the target URL is appended verbatim
        max_bytes: Byte ceiling for the extracted body
    """

    name = "jina"

    def __init__(
        self, reader_url: str = DEFAULT_READER_URL, max_bytes: int = DEFAULT_MAX_RESPONSE_BYTES
    ) -> None:
        self.reader_url = reader_url.rstrip("/") + "/"
        self.max_bytes = max_bytes
        self.logger = get_logger("mobile_gateway.jina_reader")

    def build_url(self, target_url: str) -> str:
        """
        Map a target URL onto the reader endpoint.

        Both "http://" and "https://" targets keep their scheme so the reader
        fetches them the same way the page would be loaded directly.
        """
        return f"{self.reader_url}{target_url}"

    async def extract(
        self, client: httpx.AsyncClient, target_url: str, timeout: float = 10.0
    ) -> str:
        """
        Fetch extracted text for `target_url`.

        Args:
            client: Shared HTTP client
            target_url: Page to extract
            timeout: Request timeout in seconds

        Returns:
            Extracted text (may exceed the pipeline's display limit)

        Raises:
            ExtractionFailed: On non-2xx status or an empty body
            httpx.RequestError: On network errors or timeouts
        """
        self.logger.debug(f"Fetching content via reader: {target_url}")

        async with client.stream(
            "GET",
            self.build_url(target_url),
            headers={
                "Accept": "text/markdown,text/plain,text/html,*/*",
                "User-Agent": CLIENT_USER_AGENT,
            },
            timeout=timeout,
        ) as response:
            if response.status_code >= 400:
                raise ExtractionFailed(
                    f"Reader returned {response.status_code} for {target_url}"
                )
            text, truncated = await read_response_text(response, self.max_bytes)

        if truncated:
            self.logger.debug(f"Reader body for {target_url} cut at {self.max_bytes} bytes")

        if not text.strip():
            raise ExtractionFailed(f"Reader returned an empty body for {target_url}")

        return text
