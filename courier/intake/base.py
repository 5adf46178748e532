"""
Base Handler

Abstract base class for chat-platform event handlers.
Provides a common interface for turning inbound events into CaptureEvents.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

from ..common.errors import AuthenticationError
from ..common.schemas import CaptureEvent


class BaseHandler(ABC):
    """
    Abstract base class for source handlers.

    Each handler must implement:
    - parse_event: Convert raw event to CaptureEvent
    - verify_signature: Verify webhook signature
    """

    def __init__(self, source_name: str):
        """
        Initialize handler.

        Args:
            source_name: Name of the source (e.g., "slack")
        """
        self.source_name = source_name

    @abstractmethod
    def parse_event(self, raw_data: Dict[str, Any]) -> Optional[CaptureEvent]:
        """
        Parse raw event data into a CaptureEvent.

        Args:
            raw_data: Raw event data from the source

        Returns:
            CaptureEvent or None if the event should be ignored
        """
        pass

    @abstractmethod
    def verify_signature(
        self,
        body: bytes,
        signature: str,
        timestamp: str
    ) -> bool:
        """
        Verify the webhook signature.

        Args:
            body: Raw request body
            signature: Signature from headers
            timestamp: Timestamp from headers

        Returns:
            True if signature is valid
        """
        pass

    def authenticate(self, body: bytes, signature: str, timestamp: str) -> None:
        """Raise AuthenticationError unless the request is authentic."""
        if not self.verify_signature(body, signature or "", timestamp or ""):
            raise AuthenticationError(f"Invalid {self.source_name} signature")

    def should_process(self, event: CaptureEvent) -> bool:
        """Default filter: anything with non-blank text is captured."""
        return bool(event.text and event.text.strip())
