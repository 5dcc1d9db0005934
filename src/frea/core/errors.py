"""Exception types raised by frea components.

Only startup failures (missing or unreadable checkpoint, bad configuration)
are meant to escape to the process boundary. Everything raised while
handling a single change or artifact task is caught by the use case that
owns it and turned into an ``Outcome``.
"""

from __future__ import annotations


class FreaError(Exception):
    """Base class for all frea errors."""


class ConfigError(FreaError):
    """Raised when configuration values are missing or out of range."""


class CheckpointMissingError(FreaError):
    """Raised when no cursor document exists for a change source.

    Starting anyway would mean picking "start of feed" (mass redelivery) or
    "now" (silent gap), so callers treat this as fatal.
    """

    def __init__(self, source_id: str) -> None:
        super().__init__(f"no checkpoint stored for source {source_id!r}")
        self.source_id = source_id


class CheckpointReadError(FreaError):
    """Raised when the checkpoint store cannot be read."""


class InvalidKeyError(FreaError):
    """Raised for object keys that are empty, absolute or escape the store root."""


class ObjectNotFoundError(FreaError):
    """Raised when deleting a key that does not exist."""


class PreconditionFailedError(FreaError):
    """Raised when a conditional delete finds a different object generation."""


class ResolveError(FreaError):
    """Raised when a package manifest cannot be resolved."""


class PackageNotFoundError(ResolveError):
    """Raised when the registry has no document for a package."""
