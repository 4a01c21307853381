"""
Core modules for the mobile gateway.

This package contains the core components:
- BrowserSessionManager: Browser session lifecycle under a hard cap
- SearchPipeline: Failover search with content extraction and caching
- TTLCache: Caching layer
- content_guard: Wrapping, truncation and validation of untrusted content
- messages: Gateway envelope kinds and codecs
"""
