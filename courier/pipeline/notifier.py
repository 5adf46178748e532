"""
Reply Notifier

Posts the outcome of a pipeline run back to the thread of the original
message. Reply text is composed here so every transport says the same thing.
"""

import logging
import sys
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional, TextIO

import httpx

from ..common.schemas import CaptureEvent, Category, Outcome

logger = logging.getLogger("courier.pipeline.notifier")

SLACK_API_URL = "https://slack.com/api"


@dataclass
class Reply:
    """What the sender is told about one run"""
    outcome: Outcome
    text: str
    category: Optional[Category] = None
    target_location: Optional[str] = None


def compose_reply(
    outcome: Outcome,
    category: Optional[Category] = None,
    target_location: Optional[str] = None,
    *,
    sub_area: Optional[str] = None,
    confidence: Optional[float] = None,
    flagged: bool = False,
    error: Optional[str] = None,
) -> Reply:
    """Build the reply for a finished run.

    ``flagged`` marks captures routed to review (needs_review or fallback).
    """
    if outcome == Outcome.WRITTEN:
        if flagged:
            text = f"Flagged for review: saved to {target_location}."
        else:
            label = category.value if category else "note"
            if sub_area:
                label += f" / {sub_area}"
            conf = f", confidence {confidence:.2f}" if confidence is not None else ""
            text = f"Saved to {target_location} ({label}{conf})."
    elif outcome == Outcome.SKIPPED:
        if target_location:
            text = f"Already processed: this message was saved to {target_location}."
        else:
            text = "Already processed: this message is being handled."
    else:
        where = f" to {target_location}" if target_location else ""
        reason = f" ({error})" if error else ""
        text = f"Action failed, flagged for review: could not write{where}{reason}."

    return Reply(outcome=outcome, text=text, category=category, target_location=target_location)


class ReplyNotifier(ABC):
    """Delivers a Reply to the origin of a CaptureEvent."""

    @abstractmethod
    async def send(self, event: CaptureEvent, reply: Reply) -> bool:
        """Post ``reply``. Returns False when delivery failed."""
        pass

    async def close(self) -> None:
        pass


class SlackReplyNotifier(ReplyNotifier):
    """
    Replies in-thread through Slack's chat.postMessage.

    Usage:
        notifier = SlackReplyNotifier(bot_token="xoxb-...")
        await notifier.send(event, compose_reply(Outcome.WRITTEN, ...))
    """

    def __init__(
        self,
        bot_token: str,
        timeout: float = 10.0,
        base_url: str = SLACK_API_URL,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._client = httpx.AsyncClient(
            base_url=base_url,
            headers={"Authorization": f"Bearer {bot_token}"},
            timeout=httpx.Timeout(timeout),
            transport=transport,
        )

    async def send(self, event: CaptureEvent, reply: Reply) -> bool:
        if not event.channel:
            logger.warning("Cannot reply to %s: no channel", event.id)
            return False

        payload = {"channel": event.channel, "text": reply.text}
        if event.thread_ref:
            payload["thread_ts"] = event.thread_ref

        try:
            response = await self._client.post("/chat.postMessage", json=payload)
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("Reply for %s failed: %s", event.id, e)
            return False

        if not data.get("ok"):
            logger.warning("Slack rejected reply for %s: %s", event.id, data.get("error", "unknown error"))
            return False
        return True

    async def close(self) -> None:
        await self._client.aclose()


class ConsoleReplyNotifier(ReplyNotifier):
    """Prints replies, for the CLI and for deployments with replies disabled."""

    def __init__(self, stream: Optional[TextIO] = None, echo: bool = True):
        self._stream = stream
        self._echo = echo

    async def send(self, event: CaptureEvent, reply: Reply) -> bool:
        logger.info("Reply to %s: %s", event.id, reply.text)
        if self._echo:
            print(f"[{reply.outcome.value}] {reply.text}", file=self._stream or sys.stdout)
        return True
