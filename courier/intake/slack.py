"""
Slack Handler

Handles Slack Events API webhooks and converts them to CaptureEvents.
"""

import hashlib
import hmac
import logging
import time
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Optional

from ..common.schemas import CaptureEvent, utcnow
from .base import BaseHandler

logger = logging.getLogger("courier.intake.slack")

SIGNATURE_VERSION = "v0"
MAX_REQUEST_AGE = 300  # seconds


class SlackHandler(BaseHandler):
    """
    Handler for Slack Events API webhooks.

    Captures:
    - new top-level messages in (optionally allowlisted) channels

    Ignores:
    - Bot messages, including our own replies
    - Edits, deletions and other message subtypes
    - Thread replies (replies to a capture are conversation, not captures)
    """

    def __init__(self, signing_secret: str = "", capture_channels: Optional[Iterable[str]] = None):
        """
        Initialize Slack handler.

        Args:
            signing_secret: Slack signing secret for verification
            capture_channels: Channel ids to capture from (all when empty)
        """
        super().__init__("slack")
        self._signing_secret = signing_secret
        self._channels = frozenset(capture_channels or ())
        if not signing_secret:
            logger.warning("No Slack signing secret configured, request signatures are not verified")

    @staticmethod
    def event_id(channel: str, ts: str) -> str:
        """Dedupe key: channel + message ts, stable across Slack redeliveries"""
        return f"{channel}:{ts}"

    def parse_event(self, raw_data: Dict[str, Any]) -> Optional[CaptureEvent]:
        """
        Parse a Slack event callback into a CaptureEvent.

        Returns None for anything that is not a capturable message.
        """
        if raw_data.get("type") != "event_callback":
            return None

        event = raw_data.get("event") or {}
        if event.get("type") != "message":
            return None

        # bot_message, message_changed, message_deleted, channel_join, ...
        if event.get("bot_id") or event.get("subtype"):
            return None

        channel = event.get("channel", "")
        ts = event.get("ts", "")
        thread_ts = event.get("thread_ts")
        if not channel or not ts:
            return None
        if thread_ts and thread_ts != ts:
            return None
        if self._channels and channel not in self._channels:
            logger.debug("Ignoring message in non-capture channel %s", channel)
            return None

        return CaptureEvent(
            id=self.event_id(channel, ts),
            text=event.get("text", ""),
            author=event.get("user", ""),
            channel=channel,
            thread_ref=ts,
            received_at=self._parse_ts(ts),
            source="slack",
        )

    @staticmethod
    def _parse_ts(ts: str) -> datetime:
        try:
            return datetime.fromtimestamp(float(ts), tz=timezone.utc)
        except (TypeError, ValueError, OverflowError):
            return utcnow()

    def verify_signature(
        self,
        body: bytes,
        signature: str,
        timestamp: str
    ) -> bool:
        """
        Verify Slack request signature.

        Args:
            body: Raw request body
            signature: X-Slack-Signature header
            timestamp: X-Slack-Request-Timestamp header

        Returns:
            True if signature is valid
        """
        if not self._signing_secret:
            return True

        if not signature or not timestamp:
            return False

        # Check timestamp is recent (within 5 minutes)
        try:
            ts = int(timestamp)
        except ValueError:
            return False
        if abs(time.time() - ts) > MAX_REQUEST_AGE:
            return False

        expected = self.sign(body, timestamp)
        return hmac.compare_digest(expected, signature)

    def sign(self, body: bytes, timestamp: str) -> str:
        """Compute the v0 signature Slack sends for ``body``"""
        basestring = f"{SIGNATURE_VERSION}:{timestamp}:".encode("utf-8") + body
        digest = hmac.new(self._signing_secret.encode("utf-8"), basestring, hashlib.sha256).hexdigest()
        return f"{SIGNATURE_VERSION}={digest}"

    def is_url_verification(self, raw_data: Dict[str, Any]) -> bool:
        """Check if request is URL verification"""
        return raw_data.get("type") == "url_verification"

    def get_challenge(self, raw_data: Dict[str, Any]) -> Optional[str]:
        """Get challenge for URL verification"""
        if self.is_url_verification(raw_data):
            return raw_data.get("challenge")
        return None
