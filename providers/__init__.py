"""
Upstream service adapters for the search pipeline.

This package contains:
- SearXNGProvider: one public SearXNG instance queried over its JSON API
- JinaReader: content extraction service returning page text as Markdown
"""

from providers.base import BaseSearchProvider, read_response_text
from providers.jina_reader import JinaReader
from providers.searxng import SearXNGProvider

__all__ = ["BaseSearchProvider", "JinaReader", "SearXNGProvider", "read_response_text"]
