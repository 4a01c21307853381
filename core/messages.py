"""
Gateway message envelopes.

Inbound:  {"type": "<kind>", "id": <any>, "payload": {...}}
Success:  {"type": "<reply kind>", "id": <echoed>, "payload": {...}}
Failure:  {"type": "error", "id": <echoed>, "error": "<message>"}

The set of inbound kinds is closed (MessageType); each kind decodes its
payload into a typed dataclass before it reaches a handler.
"""

import json
import math
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional, Union

from core.exceptions import MalformedMessage, UnknownMessageType

INVALID_MESSAGE_FORMAT = "Invalid message format"


class MessageType(str, Enum):
    """Inbound message kinds."""

    PING = "ping"
    BROWSER_CREATE = "browser.create"
    BROWSER_NAVIGATE = "browser.navigate"
    BROWSER_CONTENT = "browser.content"
    BROWSER_CLOSE = "browser.close"
    BROWSER_SCREENSHOT = "browser.screenshot"
    BROWSER_LIST = "browser.list"
    SEARCH = "search"


class ResponseType(str, Enum):
    """Outbound message kinds."""

    CONNECTED = "connected"
    PONG = "pong"
    BROWSER_CREATED = "browser.created"
    BROWSER_NAVIGATED = "browser.navigated"
    BROWSER_CONTENT = "browser.content"
    BROWSER_CLOSED = "browser.closed"
    BROWSER_SCREENSHOT = "browser.screenshot"
    BROWSER_SESSIONS = "browser.sessions"
    SEARCH_RESULTS = "search.results"
    ERROR = "error"


@dataclass
class EmptyParams:
    pass


@dataclass
class CreateParams:
    session_id: Optional[str] = None


@dataclass
class SessionParams:
    session_id: str


@dataclass
class NavigateParams:
    session_id: str
    url: str
    wait_until: str = "domcontentloaded"
    timeout_ms: Optional[int] = None


@dataclass
class ScreenshotParams:
    session_id: str
    full_page: bool = False
    image_format: str = "png"


@dataclass
class SearchParams:
    query: str
    count: Any = None
    language: Optional[str] = None
    fetch_content: Optional[bool] = None


Params = Union[
    EmptyParams, CreateParams, SessionParams, NavigateParams, ScreenshotParams, SearchParams
]


@dataclass
class InboundMessage:
    """A decoded request: its kind, correlation id and typed parameters."""

    type: MessageType
    id: Any
    params: Params


def _require_str(payload: Dict[str, Any], key: str) -> str:
    value = payload.get(key)
    if value is None or value == "":
        raise ValueError(f"Missing required parameter: {key}")
    if not isinstance(value, str):
        raise ValueError(f"Parameter {key} must be a string")
    return value


def _optional_str(payload: Dict[str, Any], key: str) -> Optional[str]:
    value = payload.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValueError(f"Parameter {key} must be a string")
    return value


def _optional_bool(payload: Dict[str, Any], key: str) -> Optional[bool]:
    value = payload.get(key)
    if value is None:
        return None
    if not isinstance(value, bool):
        raise ValueError(f"Parameter {key} must be a boolean")
    return value


def _optional_int(payload: Dict[str, Any], key: str) -> Optional[int]:
    value = payload.get(key)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
        raise ValueError(f"Parameter {key} must be a number")
    return int(value)


def _decode_empty(payload: Dict[str, Any]) -> EmptyParams:
    return EmptyParams()


def _decode_create(payload: Dict[str, Any]) -> CreateParams:
    return CreateParams(session_id=_optional_str(payload, "sessionId") or None)


def _decode_session(payload: Dict[str, Any]) -> SessionParams:
    return SessionParams(session_id=_require_str(payload, "sessionId"))


def _decode_navigate(payload: Dict[str, Any]) -> NavigateParams:
    return NavigateParams(
        session_id=_require_str(payload, "sessionId"),
        url=_require_str(payload, "url"),
        wait_until=_optional_str(payload, "waitUntil") or "domcontentloaded",
        timeout_ms=_optional_int(payload, "timeout"),
    )


def _decode_screenshot(payload: Dict[str, Any]) -> ScreenshotParams:
    full_page = _optional_bool(payload, "fullPage")
    return ScreenshotParams(
        session_id=_require_str(payload, "sessionId"),
        full_page=bool(full_page),
        image_format=_optional_str(payload, "format") or "png",
    )


def _decode_search(payload: Dict[str, Any]) -> SearchParams:
    return SearchParams(
        query=_require_str(payload, "query"),
        count=payload.get("count"),
        language=_optional_str(payload, "language"),
        fetch_content=_optional_bool(payload, "fetchContent"),
    )


PAYLOAD_DECODERS: Dict[MessageType, Callable[[Dict[str, Any]], Params]] = {
    MessageType.PING: _decode_empty,
    MessageType.BROWSER_CREATE: _decode_create,
    MessageType.BROWSER_NAVIGATE: _decode_navigate,
    MessageType.BROWSER_CONTENT: _decode_session,
    MessageType.BROWSER_CLOSE: _decode_session,
    MessageType.BROWSER_SCREENSHOT: _decode_screenshot,
    MessageType.BROWSER_LIST: _decode_empty,
    MessageType.SEARCH: _decode_search,
}


def decode_envelope(raw: Union[str, bytes]) -> Dict[str, Any]:
    """
    Decode a raw frame into an envelope dictionary.

    Raises:
        MalformedMessage: If the frame is not a JSON object
    """
    try:
        envelope = json.loads(raw)
    except (ValueError, TypeError) as e:
        raise MalformedMessage(INVALID_MESSAGE_FORMAT) from e
    if not isinstance(envelope, dict):
        raise MalformedMessage(INVALID_MESSAGE_FORMAT)
    return envelope


def parse_message(envelope: Dict[str, Any]) -> InboundMessage:
    """
    Turn an envelope into a typed InboundMessage.

    Args:
        envelope: Dictionary produced by decode_envelope

    Returns:
        InboundMessage with decoded parameters

    Raises:
        MalformedMessage: If type is missing or payload is not an object
        UnknownMessageType: If type is not a known kind
        ValueError: If a parameter is missing or has the wrong type
    """
    raw_type = envelope.get("type")
    if not isinstance(raw_type, str) or not raw_type:
        raise MalformedMessage(INVALID_MESSAGE_FORMAT)

    try:
        message_type = MessageType(raw_type)
    except ValueError:
        raise UnknownMessageType(raw_type) from None

    payload = envelope.get("payload")
    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        raise MalformedMessage(INVALID_MESSAGE_FORMAT)

    params = PAYLOAD_DECODERS[message_type](payload)
    return InboundMessage(type=message_type, id=envelope.get("id"), params=params)


def success_response(
    response_type: ResponseType, message_id: Any = None, payload: Optional[Dict[str, Any]] = None
) -> Dict[str, Any]:
    response: Dict[str, Any] = {"type": response_type.value}
    if message_id is not None:
        response["id"] = message_id
    if payload is not None:
        response["payload"] = payload
    return response


def error_response(message_id: Any, error: str) -> Dict[str, Any]:
    response: Dict[str, Any] = {"type": ResponseType.ERROR.value}
    if message_id is not None:
        response["id"] = message_id
    response["error"] = error
    return response


def encode(message: Dict[str, Any]) -> str:
    """Serialize an outbound envelope."""
    return json.dumps(message, ensure_ascii=False)
