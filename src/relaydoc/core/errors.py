"""Exception types raised by relaydoc."""

from __future__ import annotations


class RelayDocError(Exception):
    """Base class for all relaydoc errors."""


class KeyFormatError(RelayDocError):
    """Raised when a signing key cannot be parsed (hex or nsec expected)."""


class ConnectError(RelayDocError):
    """Raised when ``connect()`` fails before the subscriptions are live."""


class EnvelopeDecodeError(RelayDocError):
    """Raised when event content is not a valid sync envelope."""


class ImportRejected(RelayDocError):
    """Raised when the document engine refuses a payload."""


class EngineDestroyed(RelayDocError):
    """Raised when a destroyed engine is used again."""
