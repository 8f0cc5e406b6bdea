"""Exception hierarchy for rubt.

Provides the exception hierarchy used for error handling
and reporting throughout the client.
"""

from __future__ import annotations

from typing import Any


class RUBTError(Exception):
    """Base exception for all rubt errors."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        """Initialize rubt error."""
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        """Return string representation of the error."""
        if self.details:
            return f"{self.message} (Details: {self.details})"
        return self.message


class NetworkError(RUBTError):
    """Network-related errors."""


class TrackerError(NetworkError):
    """Tracker communication errors."""


class PeerConnectionError(NetworkError):
    """Peer connection errors."""


class DiskError(RUBTError):
    """Disk I/O related errors."""


class ProtocolError(RUBTError):
    """BitTorrent protocol errors."""


class HandshakeError(ProtocolError):
    """Handshake protocol errors."""


class MessageError(ProtocolError):
    """Message parsing/serialization errors."""


class ValidationError(RUBTError):
    """Data validation errors."""


class ConfigurationError(ValidationError):
    """Configuration validation errors."""


class TorrentError(ValidationError):
    """Torrent file validation errors."""


class BencodeError(ValidationError):
    """Bencode encoding/decoding errors."""
