"""Exceptions raised by the Picologs runtime."""

from __future__ import annotations


class PicologsError(Exception):
    """Base class for runtime errors."""


class TransportError(PicologsError):
    """A WebSocket call could not complete. Callers may retry."""


class RequestTimeoutError(TransportError):
    """No response (or send completion) arrived within the timeout."""


class ConnectionClosedError(TransportError):
    """The connection closed, or was never open, while a call was pending."""


class AuthenticationExpiredError(TransportError):
    """The server closed the connection with 1008. Re-authentication is required."""


class RemoteError(TransportError):
    """The server answered a correlated request with an ``error`` message."""


class CompressionError(PicologsError):
    """A compressed log payload could not be decoded."""
