"""Custom exception hierarchy for gpstrack."""

from __future__ import annotations


class TrackerError(Exception):
    """Base exception for all gpstrack errors."""


class TrackerConfigError(TrackerError):
    """Invalid or missing configuration."""


class TrackerValidationError(TrackerError):
    """Inbound position payload is malformed or missing required fields."""

    def __init__(self, message: str, *, field: str = "") -> None:
        self.field = field
        super().__init__(message)


class TrackerAuthError(TrackerError):
    """Device token did not match the configured shared secret."""


class TrackerPersistenceError(TrackerError):
    """SQLite store unavailable or a read/write failed."""

    def __init__(self, message: str, *, operation: str = "") -> None:
        self.operation = operation
        super().__init__(message)


class TrackerTransportError(TrackerError):
    """Subscriber sink or message-bus failure."""
