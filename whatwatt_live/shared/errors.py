"""
Error taxonomy for the live stream.

Only authentication, transport and exhaustion errors ever reach a consumer's
`on_error`. Protocol errors are logged and the offending frame is skipped.
"""
from typing import Optional


class StreamError(Exception):
    """Base class for everything raised by the live stream layer."""


class AuthenticationError(StreamError):
    """The device rejected our credentials. Never retried automatically."""

    def __init__(self, message: str = "Event stream authentication failed", status_code: int = 401):
        super().__init__(message)
        self.status_code = status_code

    @property
    def is_unauthorized(self) -> bool:
        return self.status_code == 401


class TransportError(StreamError):
    """Refused, unreachable, timed out, bad status or ended early. Retriable."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class ProtocolError(StreamError):
    """A frame that could not be decoded. Recovered locally."""


class ExhaustionError(StreamError):
    """Reconnect attempts hit the configured bound."""

    def __init__(self, attempts: int):
        super().__init__(f"Max reconnect attempts ({attempts}) exceeded")
        self.attempts = attempts


class StreamSourceError(StreamError):
    """The response body is empty or of a shape we cannot read."""


class InvalidTransitionError(StreamError):
    def __init__(self, current, target):
        super().__init__(f"Illegal connection state transition {current.value} -> {target.value}")
        self.current = current
        self.target = target
