"""
Classifier: asks a language model where a captured message belongs.

The model's reply is returned as raw text and always goes through the
classification parser; this module never trusts or interprets it. Failures
(no provider, timeout, provider error) yield empty output, which the parser
routes to needs_review.

Messages starting with an explicit prefix ("project:", "person:", "idea:")
skip the model entirely.
"""

import asyncio
import json
import logging
import re
from dataclasses import dataclass
from typing import Optional

from ..common.llm_client import LLMClient
from ..common.schemas import CaptureEvent

logger = logging.getLogger("courier.pipeline.classifier")


CLASSIFICATION_PROMPT = """You file short personal notes captured from a chat channel into a second brain.

Choose exactly one category:
- "people": about a specific person (a conversation, a follow-up, something to remember about them)
- "projects": an actionable task or update belonging to an ongoing project
- "ideas": a thought, concept, or possibility worth keeping, not yet actionable
- "needs_review": none of the above fits, or you cannot tell

Respond with JSON only. No markdown. No explanation.
{"category": "people|projects|ideas|needs_review",
 "sub_area": "person name or project name, or null",
 "confidence": 0.0,
 "title": "short human-friendly title",
 "fields": {...}}

Fields by category:
- people: name, context, follow_up
- projects: next_action, due_date (YYYY-MM-DD or empty)
- ideas: one_liner, tags (list)

Rules:
- confidence is between 0 and 1. If ambiguous, still pick the best category but lower confidence.
- sub_area should be the shortest natural name ("house", "Alice"), not a sentence.
- Do not invent dates or names that are not in the message."""


PREFIX_RE = re.compile(r"^\s*(people|person|projects?|ideas?)\s*:\s*", re.IGNORECASE)
SUB_AREA_RE = re.compile(r"^([^:\n]{1,40}):\s+(\S.*)$", re.DOTALL)

PREFIX_CATEGORIES = {
    "person": "people",
    "people": "people",
    "project": "projects",
    "projects": "projects",
    "idea": "ideas",
    "ideas": "ideas",
}


@dataclass
class PrefixMatch:
    category: str
    sub_area: Optional[str]
    body: str


def detect_prefix(text: str) -> Optional[PrefixMatch]:
    """Recognise explicit "category:" prefixes.

    "project: house: fix the faucet" -> projects / house / "fix the faucet"
    "person: Alice: owes me a book"  -> people / Alice / "owes me a book"
    """
    match = PREFIX_RE.match(text or "")
    if not match:
        return None
    category = PREFIX_CATEGORIES[match.group(1).lower()]
    body = text[match.end():].strip()
    sub_area = None
    if category in ("projects", "people"):
        nested = SUB_AREA_RE.match(body)
        if nested:
            sub_area = nested.group(1).strip()
            body = nested.group(2).strip()
    if not body:
        return None
    return PrefixMatch(category=category, sub_area=sub_area, body=body)


def _prefix_output(prefix: PrefixMatch) -> str:
    fields = {}
    if prefix.category == "people":
        fields = {"name": prefix.sub_area or "", "context": prefix.body}
    elif prefix.category == "projects":
        fields = {"next_action": prefix.body}
    else:
        fields = {"one_liner": prefix.body}
    return json.dumps({
        "category": prefix.category,
        "sub_area": prefix.sub_area,
        "confidence": 1.0,
        "fields": fields,
        "strategy": "prefix",
    })


class Classifier:
    """
    Produces raw classifier output for a CaptureEvent.

    Uses an LLMClient for free-form messages and the prefix shortcut when
    the sender was explicit.
    """

    def __init__(
        self,
        llm: Optional[LLMClient] = None,
        timeout: float = 20.0,
        max_tokens: int = 400,
        prefixes_enabled: bool = True,
    ):
        self._llm = llm
        self._timeout = timeout
        self._max_tokens = max_tokens
        self._prefixes_enabled = prefixes_enabled

    @property
    def is_available(self) -> bool:
        return self._llm is not None and self._llm.is_available

    async def classify(self, event: CaptureEvent) -> str:
        """Return raw model output for ``event``; "" when the model cannot answer."""
        if self._prefixes_enabled:
            prefix = detect_prefix(event.text)
            if prefix:
                logger.info("Event %s classified by prefix as %s", event.id, prefix.category)
                return _prefix_output(prefix)

        if not self.is_available:
            logger.info("LLM unavailable, event %s goes to review", event.id)
            return ""

        prompt = f"Message from {event.author or 'unknown'} in {event.channel or 'chat'}:\n{event.text[:2000]}"
        try:
            return await self._llm.generate(
                prompt,
                system=CLASSIFICATION_PROMPT,
                max_tokens=self._max_tokens,
                timeout=self._timeout,
            )
        except asyncio.TimeoutError:
            logger.warning("Classification of %s timed out after %.1fs", event.id, self._timeout)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("Classification of %s failed: %s", event.id, e)
        return ""
