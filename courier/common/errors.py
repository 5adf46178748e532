"""
Courier error taxonomy.

Only a few of these ever cross a component boundary as exceptions:
AuthenticationError at intake, RegistryError at (re)load, and NoteStoreError
inside the content writer's retry loop. Everything after intake is turned into
a defined outcome before it reaches the orchestrator.
"""

from enum import Enum
from typing import Optional


class CourierError(Exception):
    """Base class for Courier errors."""
    pass


class AuthenticationError(CourierError):
    """Inbound event failed its signature/authenticity check."""
    pass


class ConfigError(CourierError):
    pass


class RegistryError(CourierError):
    """Registry document could not be loaded or violates its invariants."""
    pass


class LLMUnavailableError(CourierError):
    pass


class NoteStoreError(CourierError):
    """Error returned by the note store.

    ``retryable`` tells the content writer whether another attempt can help.
    """

    retryable = False

    def __init__(self, message: str, status: Optional[int] = None, retryable: Optional[bool] = None):
        super().__init__(message)
        self.status = status
        if retryable is not None:
            self.retryable = retryable


class NoteNotFoundError(NoteStoreError):
    retryable = False


class NoteConflictError(NoteStoreError):
    retryable = True


class NoteStoreUnavailable(NoteStoreError):
    """Transport failure, timeout, rate limit or 5xx."""
    retryable = True


class WriteFailure(CourierError):
    """Write attempts exhausted. Reported through WriteResult, not raised past the writer."""
    pass


class Notice(str, Enum):
    """Handled, non-error conditions recorded on results and audit entries."""
    CLASSIFICATION_DEGRADED = "classification_degraded"
    RESOLUTION_FALLBACK = "resolution_fallback"
    DUPLICATE_EVENT = "duplicate_event"
