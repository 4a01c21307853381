"""
Exception hierarchy for the gateway, browser sessions and search pipeline.

Every error that can surface to a gateway client derives from GatewayError,
so the dispatcher can turn it into a single error envelope without
special-casing each component.
"""


class GatewayError(Exception):
    """Base exception for gateway related errors."""

    pass


class ServiceDisabled(GatewayError):
    """Raised when a feature is turned off in configuration."""

    pass


class ServiceUnavailable(GatewayError):
    """Raised when a service is shutting down and refuses new work."""

    pass


class SessionNotFound(GatewayError):
    """Raised when a browser session id is not tracked."""

    def __init__(self, session_id: str) -> None:
        super().__init__(f"Session not found: {session_id}")
        self.session_id = session_id


class SessionAlreadyExists(GatewayError):
    """Raised when a caller-supplied session id is already open."""

    def __init__(self, session_id: str) -> None:
        super().__init__(f"Session already exists: {session_id}")
        self.session_id = session_id


class SessionLimitExceeded(GatewayError):
    """Raised when creating a session would exceed the configured cap."""

    def __init__(self, limit: int) -> None:
        super().__init__(f"Maximum browser sessions reached ({limit})")
        self.limit = limit


class NavigationTimeout(GatewayError):
    """Raised when a page does not reach the requested state in time."""

    pass


class ProviderExhausted(GatewayError):
    """Raised internally when every search provider failed."""

    pass


class ExtractionFailed(GatewayError):
    """Raised internally when content extraction for one result fails."""

    pass


class MalformedMessage(GatewayError):
    """Raised when an inbound envelope cannot be decoded."""

    pass


class UnknownMessageType(GatewayError):
    """Raised when an envelope carries an unrecognized type."""

    def __init__(self, message_type: object) -> None:
        super().__init__(f"Unknown message type: {message_type}")
        self.message_type = message_type
