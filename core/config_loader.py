"""
Configuration loader for the mobile gateway.

This module loads gateway configuration from a YAML file, merges it over
built-in defaults and applies environment variable overrides. The result is
a tree of dataclasses consumed by the gateway, the browser session manager
and the search pipeline.
"""

import copy
import math
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from core.logger import get_logger

logger = get_logger("mobile_gateway.config_loader")

DEFAULT_CONFIG_PATH = Path(__file__).parent.parent / "config" / "gateway.yaml"

DEFAULT_TIMEOUT_SECONDS = 30
MAX_TIMEOUT_SECONDS = 120
DEFAULT_CACHE_TTL_MINUTES = 60
MAX_CACHE_TTL_MINUTES = 1440  # 24 hours

# Known Chromium locations, including the Termux prefix on Android.
CHROMIUM_PATHS = [
    "/usr/bin/chromium",
    "/usr/bin/chromium-browser",
    "/usr/bin/google-chrome",
    "/usr/bin/google-chrome-stable",
    "/data/data/com.termux/files/usr/bin/chromium",
    "/data/data/com.termux/files/usr/bin/chromium-browser",
]

DEFAULT_SEARXNG_INSTANCES = [
    "https://searx.be",
    "https://searx.dresden.network",
    "https://search.sapti.me",
    "https://searx.tiekoetter.com",
    "https://searx.fmac.xyz",
    "https://searx.nixnet.services",
    "https://searx.prvcy.eu",
    "https://search.bus-hit.me",
]

DEFAULTS: Dict[str, Any] = {
    "gateway": {
        "host": "127.0.0.1",
        "port": 18789,
        "verbose": False,
        "websocket_path": "/ws",
    },
    "browser": {
        "enabled": True,
        "headless": True,
        "executable_path": None,
        "args": [],
        "viewport": {"width": 1280, "height": 720},
        "navigation_timeout_ms": 30000,
        "page_timeout_ms": 30000,
        "allow_private_network": False,
    },
    "resources": {
        "max_browser_sessions": 1,
        "max_search_concurrency": 2,
    },
    "search": {
        "enabled": True,
        "max_results": 5,
        "timeout_seconds": DEFAULT_TIMEOUT_SECONDS,
        "cache_ttl_minutes": DEFAULT_CACHE_TTL_MINUTES,
        "empty_result_ttl_seconds": 60,
        "fetch_content": True,
        "reader_url": "https://r.jina.ai/",
        "instances": list(DEFAULT_SEARXNG_INSTANCES),
    },
}


@dataclass
class GatewaySettings:
    """Listener settings for the gateway."""

    host: str = "127.0.0.1"
    port: int = 18789
    verbose: bool = False
    websocket_path: str = "/ws"


@dataclass
class BrowserSettings:
    """Browser capability settings."""

    enabled: bool = True
    headless: bool = True
    executable_path: Optional[str] = None
    args: List[str] = field(default_factory=list)
    viewport_width: int = 1280
    viewport_height: int = 720
    navigation_timeout_ms: int = 30000
    page_timeout_ms: int = 30000
    allow_private_network: bool = False


@dataclass
class ResourceSettings:
    """Hard ceilings for a constrained host."""

    max_browser_sessions: int = 1
    max_search_concurrency: int = 2


@dataclass
class SearchSettings:
    """Search pipeline settings."""

    enabled: bool = True
    max_results: int = 5
    timeout_seconds: int = DEFAULT_TIMEOUT_SECONDS
    cache_ttl_seconds: int = DEFAULT_CACHE_TTL_MINUTES * 60
    empty_result_ttl_seconds: int = 60
    fetch_content: bool = True
    reader_url: str = "https://r.jina.ai/"
    instances: List[str] = field(default_factory=lambda: list(DEFAULT_SEARXNG_INSTANCES))


@dataclass
class AppConfig:
    """Complete configuration consumed by the gateway process."""

    gateway: GatewaySettings = field(default_factory=GatewaySettings)
    browser: BrowserSettings = field(default_factory=BrowserSettings)
    resources: ResourceSettings = field(default_factory=ResourceSettings)
    search: SearchSettings = field(default_factory=SearchSettings)


def normalize_config_string(value: Any) -> str:
    """
    Normalize a free-form string pasted into config or the environment.

    Strips surrounding whitespace, newlines and a single pair of matching
    quotes. Non-strings normalize to "".
    """
    if not isinstance(value, str):
        return ""
    normalized = value.strip()
    if len(normalized) >= 2 and normalized[0] == normalized[-1] and normalized[0] in "\"'":
        normalized = normalized[1:-1]
    return normalized.strip()


def resolve_timeout_seconds(configured: Any, default: int = DEFAULT_TIMEOUT_SECONDS) -> int:
    """Clamp a configured timeout into [1, MAX_TIMEOUT_SECONDS], falling back on bad input."""
    if isinstance(configured, bool) or not isinstance(configured, (int, float)):
        return default
    if not math.isfinite(configured):
        return default
    return int(max(1, min(MAX_TIMEOUT_SECONDS, configured)))


def resolve_cache_ttl_seconds(
    configured_minutes: Any, default_minutes: int = DEFAULT_CACHE_TTL_MINUTES
) -> int:
    """Convert a TTL in minutes (clamped to [1, MAX_CACHE_TTL_MINUTES]) to seconds."""
    if isinstance(configured_minutes, bool) or not isinstance(configured_minutes, (int, float)):
        return default_minutes * 60
    if not math.isfinite(configured_minutes):
        return default_minutes * 60
    minutes = int(max(1, min(MAX_CACHE_TTL_MINUTES, configured_minutes)))
    return minutes * 60


def resolve_executable_path(configured: Optional[str] = None) -> Optional[str]:
    """
    Resolve the Chromium executable to launch.

    Order: explicit setting, BROWSER_EXECUTABLE_PATH, PUPPETEER_EXECUTABLE_PATH,
    then well-known install locations. Returns None when nothing is found so
    Playwright falls back to its bundled Chromium.
    """
    explicit = normalize_config_string(configured)
    if explicit:
        return explicit

    for env_name in ("BROWSER_EXECUTABLE_PATH", "PUPPETEER_EXECUTABLE_PATH"):
        env_value = normalize_config_string(os.environ.get(env_name))
        if env_value:
            return env_value

    for candidate in CHROMIUM_PATHS:
        if os.path.exists(candidate):
            logger.debug(f"Found Chromium at: {candidate}")
            return candidate

    logger.debug("No system Chromium found, using Playwright's bundled browser")
    return None


def merge_config(defaults: Dict[str, Any], overrides: Dict[str, Any]) -> Dict[str, Any]:
    """Recursively merge `overrides` into a copy of `defaults` (lists are replaced)."""
    result = copy.deepcopy(defaults)
    for key, value in overrides.items():
        if value is None and key not in result:
            continue
        if isinstance(value, dict) and isinstance(result.get(key), dict):
            result[key] = merge_config(result[key], value)
        else:
            result[key] = value
    return result


def _parse_bool(value: str) -> Optional[bool]:
    lowered = value.strip().lower()
    if lowered in ("1", "true", "yes", "on"):
        return True
    if lowered in ("0", "false", "no", "off"):
        return False
    return None


def _apply_env_overrides(raw: Dict[str, Any]) -> None:
    """
    Apply environment variable overrides in place.

    Environment variable overrides:
    - GATEWAY_HOST / GATEWAY_PORT / GATEWAY_VERBOSE
    - BROWSER_ENABLED / BROWSER_EXECUTABLE_PATH
    - SEARCH_ENABLED
    """
    if host := normalize_config_string(os.environ.get("GATEWAY_HOST")):
        raw["gateway"]["host"] = host

    if port := os.environ.get("GATEWAY_PORT"):
        try:
            raw["gateway"]["port"] = int(port)
        except ValueError:
            logger.warning(f"Invalid GATEWAY_PORT value: {port}")

    for env_name, section, key in (
        ("GATEWAY_VERBOSE", "gateway", "verbose"),
        ("BROWSER_ENABLED", "browser", "enabled"),
        ("SEARCH_ENABLED", "search", "enabled"),
    ):
        env_value = os.environ.get(env_name)
        if env_value is None:
            continue
        parsed = _parse_bool(env_value)
        if parsed is None:
            logger.warning(f"Invalid {env_name} value: {env_value}")
            continue
        raw[section][key] = parsed

    if path := normalize_config_string(os.environ.get("BROWSER_EXECUTABLE_PATH")):
        raw["browser"]["executable_path"] = path


def _parse_instances(value: Any) -> List[str]:
    """Accept plain URLs or {url: ...} tables; drop blanks and trailing slashes."""
    instances: List[str] = []
    for item in value or []:
        url = item.get("url") if isinstance(item, dict) else item
        url = normalize_config_string(url)
        if url:
            instances.append(url.rstrip("/"))
    return instances


def build_config(raw: Dict[str, Any]) -> AppConfig:
    """Build typed settings from a merged raw dictionary."""
    gateway = raw["gateway"]
    browser = raw["browser"]
    resources = raw["resources"]
    search = raw["search"]
    viewport = browser.get("viewport") or {}

    return AppConfig(
        gateway=GatewaySettings(
            host=str(gateway["host"]),
            port=int(gateway["port"]),
            verbose=bool(gateway["verbose"]),
            websocket_path=str(gateway["websocket_path"]),
        ),
        browser=BrowserSettings(
            enabled=bool(browser["enabled"]),
            headless=bool(browser["headless"]),
            executable_path=normalize_config_string(browser.get("executable_path")) or None,
            args=[str(arg) for arg in browser.get("args") or []],
            viewport_width=int(viewport.get("width", 1280)),
            viewport_height=int(viewport.get("height", 720)),
            navigation_timeout_ms=int(browser["navigation_timeout_ms"]),
            page_timeout_ms=int(browser["page_timeout_ms"]),
            allow_private_network=bool(browser["allow_private_network"]),
        ),
        resources=ResourceSettings(
            max_browser_sessions=max(1, int(resources["max_browser_sessions"])),
            max_search_concurrency=max(1, int(resources["max_search_concurrency"])),
        ),
        search=SearchSettings(
            enabled=bool(search["enabled"]),
            max_results=max(1, int(search["max_results"])),
            timeout_seconds=resolve_timeout_seconds(search.get("timeout_seconds")),
            cache_ttl_seconds=resolve_cache_ttl_seconds(search.get("cache_ttl_minutes")),
            empty_result_ttl_seconds=max(1, int(search["empty_result_ttl_seconds"])),
            fetch_content=bool(search["fetch_content"]),
            reader_url=normalize_config_string(search["reader_url"]) or "https://r.jina.ai/",
            instances=_parse_instances(search.get("instances")),
        ),
    )


def validate_config(config: AppConfig) -> List[str]:
    """
    Validate settings that would only fail later at runtime.

    Returns:
        List of human-readable problems (empty when valid)
    """
    errors: List[str] = []

    if not 0 <= config.gateway.port <= 65535:
        errors.append("gateway.port must be between 0 and 65535")

    if not config.gateway.websocket_path.startswith("/"):
        errors.append("gateway.websocket_path must start with '/'")

    if config.browser.executable_path and not os.path.isabs(config.browser.executable_path):
        errors.append("browser.executable_path must be an absolute path")

    if config.search.enabled and not config.search.instances:
        errors.append("search.instances must list at least one SearXNG instance")

    return errors


def load_gateway_config(config_path: Optional[str] = None) -> AppConfig:
    """
    Load gateway configuration from YAML file with environment variable overrides.

    Lookup order for the file: explicit argument, MOBILE_GATEWAY_CONFIG,
    then config/gateway.yaml in the project root. A missing file is not an
    error; built-in defaults are used.

    Returns:
        AppConfig with typed settings

    Raises:
        yaml.YAMLError: If YAML parsing fails
    """
    path_str = config_path or os.environ.get("MOBILE_GATEWAY_CONFIG")
    path = Path(path_str).expanduser() if path_str else DEFAULT_CONFIG_PATH

    file_config: Dict[str, Any] = {}
    if path.exists():
        with open(path, "r", encoding="utf-8") as f:
            file_config = yaml.safe_load(f) or {}
        logger.debug(f"Loaded configuration from {path}")
    else:
        logger.warning(f"Gateway config file not found: {path}, using defaults")

    raw = merge_config(DEFAULTS, file_config)
    _apply_env_overrides(raw)
    config = build_config(raw)

    for problem in validate_config(config):
        logger.warning(f"Configuration problem: {problem}")

    return config
