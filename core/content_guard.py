"""
Content guard for untrusted web content.

Stateless helpers used before fetched text leaves the search pipeline or the
browser session manager:
- Provenance wrapping so downstream consumers (e.g. an LLM) can tell
  external content apart from instructions
- HTML sanitization and text extraction
- Validity, error-page and content-kind classification
- Truncation with an explicit marker
- URL safety checks
"""

import html
import ipaddress
import re
from enum import Enum
from typing import Optional
from urllib.parse import urlsplit, urlunsplit

MAX_CONTENT_LENGTH = 5000
TRUNCATION_MARKER = "\n...[content truncated]"

WRAP_START = "<!-- EXTERNAL_CONTENT{label} -->"
WRAP_END = "<!-- END_EXTERNAL_CONTENT -->"

_SANITIZE_PATTERNS = [
    (re.compile(r"<script[^>]*>[\s\S]*?</script>", re.IGNORECASE), ""),
    (re.compile(r"\s*on\w+=\"[^\"]*\"", re.IGNORECASE), ""),
    (re.compile(r"\s*on\w+='[^']*'", re.IGNORECASE), ""),
    (re.compile(r"\s*on\w+=[^\s>]+", re.IGNORECASE), ""),
    (re.compile(r"javascript:", re.IGNORECASE), ""),
    (re.compile(r"data:[^;]*;base64,[A-Za-z0-9+/=]+"), "[data-url-removed]"),
    (re.compile(r"<iframe[^>]*>[\s\S]*?</iframe>", re.IGNORECASE), ""),
    (re.compile(r"<(object|embed)[^>]*>[\s\S]*?</\1>", re.IGNORECASE), ""),
    (re.compile(r"<style[^>]*>[\s\S]*?</style>", re.IGNORECASE), ""),
]

_ERROR_PAGE_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"404\s+not\s+found",
        r"403\s+forbidden",
        r"500\s+internal\s+server\s+error",
        r"502\s+bad\s+gateway",
        r"503\s+service\s+unavailable",
        r"error\s+page",
        r"page\s+not\s+found",
        r"access\s+denied",
        r"this\s+site\s+can't\s+be\s+reached",
        r"err_connection_refused",
        r"err_name_not_resolved",
    )
]

_HTML_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"<html",
        r"<body",
        r"<div",
        r"<p>",
        r"<span",
        r"<a\s+href",
        r"<script",
        r"<style",
        r"<!DOCTYPE\s+html",
    )
]

_MARKDOWN_PATTERNS = [
    re.compile(p, re.MULTILINE)
    for p in (
        r"^#{1,6}\s+",
        r"\*\*.*?\*\*",
        r"\[.*?\]\(.*?\)",
        r"^\s*[-*+]\s+",
        r"^\s*\d+\.\s+",
        r"^```",
        r"^>",
    )
]

_DANGEROUS_SCHEMES = {"javascript", "data", "vbscript", "file"}


class ContentKind(Enum):
    """Coarse classification of a fetched body."""

    HTML = "html"
    JSON = "json"
    MARKDOWN = "markdown"
    TEXT = "text"
    EMPTY = "empty"


def wrap_web_content(content: str, source: Optional[str] = None) -> str:
    """
    Wrap external content with provenance markers.

    Args:
        content: Untrusted text
        source: Short source label (e.g. "web_search")

    Returns:
        Wrapped text, or "" for empty input
    """
    if not content:
        return ""
    label = f" [Source: {source}]" if source else ""
    return f"{WRAP_START.format(label=label)}\n{content}\n{WRAP_END}"


def sanitize_html(markup: str) -> str:
    """Remove scripts, event handlers, embedded objects, styles and data URLs."""
    for pattern, replacement in _SANITIZE_PATTERNS:
        markup = pattern.sub(replacement, markup)
    return markup


def extract_text_from_html(markup: str) -> str:
    """Strip tags, decode entities and collapse whitespace."""
    text = re.sub(r"<[^>]+>", " ", markup)
    text = html.unescape(text)
    return re.sub(r"\s+", " ", text).strip()


def is_valid_content(content: object) -> bool:
    """
    Check if content appears to be useful text.

    Requires at least 10 non-blank characters and at least one alphanumeric
    character.
    """
    if not isinstance(content, str):
        return False
    trimmed = content.strip()
    if len(trimmed) < 10:
        return False
    return any(ch.isalnum() for ch in trimmed)


def is_error_page(content: str) -> bool:
    """Check whether a body looks like an HTTP or browser error page."""
    return any(pattern.search(content) for pattern in _ERROR_PAGE_PATTERNS)


def classify_content(content: str) -> ContentKind:
    """
    Classify a body as HTML, JSON, Markdown or plain text.

    Checks run cheapest-first; HTML wins over Markdown because rendered
    pages frequently contain Markdown-looking fragments.
    """
    if not content or not content.strip():
        return ContentKind.EMPTY
    trimmed = content.strip()
    if any(pattern.search(trimmed) for pattern in _HTML_PATTERNS):
        return ContentKind.HTML
    if (trimmed.startswith("{") and trimmed.endswith("}")) or (
        trimmed.startswith("[") and trimmed.endswith("]")
    ):
        return ContentKind.JSON
    if any(pattern.search(trimmed) for pattern in _MARKDOWN_PATTERNS):
        return ContentKind.MARKDOWN
    return ContentKind.TEXT


def truncate_content(
    content: str,
    max_length: int = MAX_CONTENT_LENGTH,
    preserve_words: bool = True,
    marker: str = TRUNCATION_MARKER,
) -> str:
    """
    Cut content to at most `max_length` characters and append `marker`.

    The marker is not counted against `max_length`. Content that already
    ends with the marker and whose body fits is returned unchanged, so
    truncating twice is the same as truncating once.

    Args:
        content: Text to truncate
        max_length: Maximum number of content characters kept
        preserve_words: Back off to the last space if it is in the final 20%
        marker: Suffix appended when something was cut

    Returns:
        Original or truncated text
    """
    if not content:
        return content

    body = content[: -len(marker)] if marker and content.endswith(marker) else content
    if len(body) <= max_length:
        return content

    truncated = body[:max_length]
    if preserve_words:
        last_space = truncated.rfind(" ")
        if last_space > max_length * 0.8:
            truncated = truncated[:last_space]

    return truncated + marker


def is_dangerous_url(url: str, allow_private: bool = False) -> bool:
    """
    Check whether a URL should not be fetched.

    Flags script/data/file schemes, localhost and private or loopback IP
    literals. Unparseable URLs are treated as dangerous.

    Args:
        url: Candidate URL
        allow_private: Accept localhost and private addresses (schemes are
            still checked)
    """
    try:
        parts = urlsplit(url)
    except ValueError:
        return True

    if not parts.scheme or parts.scheme.lower() in _DANGEROUS_SCHEMES:
        return True

    hostname = (parts.hostname or "").lower()
    if not hostname:
        return True
    if allow_private:
        return False
    if hostname == "localhost":
        return True

    try:
        address = ipaddress.ip_address(hostname)
    except ValueError:
        return False
    return address.is_private or address.is_loopback or address.is_link_local


def sanitize_url_for_display(url: str) -> str:
    """Drop credentials and fragment from a URL."""
    try:
        parts = urlsplit(url)
        port = parts.port
    except ValueError:
        return url
    if not parts.scheme:
        return url
    netloc = parts.hostname or ""
    if ":" in netloc:
        netloc = f"[{netloc}]"
    if port:
        netloc = f"{netloc}:{port}"
    return urlunsplit((parts.scheme, netloc, parts.path, parts.query, ""))


def resolve_site_name(url: Optional[str]) -> Optional[str]:
    """Return the hostname of `url`, or None if there is none."""
    if not url:
        return None
    try:
        return urlsplit(url).hostname or None
    except ValueError:
        return None
