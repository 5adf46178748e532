"""
Content Block Templates

Renders a captured message into the Markdown block appended to a note, and
the skeleton used when the target note does not exist yet.

Rendering is plain placeholder substitution over the classifier's raw fields
and the original message. Nothing here calls a model or reads the clock, so
identical inputs always render byte-identical output.
"""

import re
from datetime import date
from typing import TYPE_CHECKING, Any, Dict, Optional
from pathlib import PurePosixPath

from .capture import TemplateId

if TYPE_CHECKING:
    from .capture import CaptureEvent, ClassificationResult, TargetLocation


PERSON_TEMPLATE = """### {date} · {name}
{context}
- Follow-up: {follow_up}
- From: {author} in {channel} (ref {event_id})
"""

TASK_TEMPLATE = """- [ ] {next_action}{due} (captured {date}, ref {event_id})
"""

NOTE_TEMPLATE = """### {title}
{one_liner}

{quoted_text}

Tags: {tags}
Captured {date} by {author} (ref {event_id})
"""

REVIEW_TEMPLATE = """- [ ] Review: "{text_inline}"
  - Suggested: {suggested} (confidence {confidence})
  - Reason: {reason}
  - From: {author} in {channel} on {date} (ref {event_id})
"""

CONTENT_TEMPLATES = {
    TemplateId.PERSON: PERSON_TEMPLATE,
    TemplateId.TASK: TASK_TEMPLATE,
    TemplateId.NOTE: NOTE_TEMPLATE,
    TemplateId.REVIEW: REVIEW_TEMPLATE,
}

# Heading each template appends under
DEFAULT_ANCHORS = {
    TemplateId.PERSON: "Log",
    TemplateId.TASK: "Tasks",
    TemplateId.NOTE: "Ideas",
    TemplateId.REVIEW: "Inbox",
}

SKELETON_TEMPLATE = """# {title}

## {anchor}
"""


def _one_line(value: Any, limit: int = 200) -> str:
    """Collapse whitespace so a value fits on one Markdown line"""
    text = re.sub(r"\s+", " ", str(value or "")).strip()
    if len(text) > limit:
        text = text[: limit - 3].rstrip() + "..."
    return text


def _first_words(text: str, count: int = 8) -> str:
    words = re.findall(r"\S+", text or "")
    if not words:
        return "Untitled"
    title = " ".join(words[:count])
    return title + ("..." if len(words) > count else "")


def _quote_block(text: str) -> str:
    lines = (text or "").strip().splitlines() or [""]
    return "\n".join(f"> {line}".rstrip() for line in lines)


def _format_tags(tags: Any) -> str:
    """Format tags as space-separated hashtags"""
    if isinstance(tags, str):
        tags = [t for t in re.split(r"[,\s]+", tags) if t]
    if not isinstance(tags, (list, tuple)) or not tags:
        return "(none)"
    cleaned = []
    for tag in tags:
        tag = re.sub(r"\s+", "-", str(tag).strip().lstrip("#"))
        if tag and f"#{tag}" not in cleaned:
            cleaned.append(f"#{tag}")
    return " ".join(cleaned) or "(none)"


def _format_due(value: Any) -> str:
    """Only well-formed ISO dates are carried into task lines"""
    if not value:
        return ""
    try:
        return f" (due {date.fromisoformat(str(value).strip()).isoformat()})"
    except ValueError:
        return ""


def _field(fields: Dict[str, Any], *names: str) -> str:
    for name in names:
        value = fields.get(name)
        if value not in (None, "", [], {}):
            return _one_line(value)
    return ""


def build_values(
    event: "CaptureEvent",
    classification: "ClassificationResult",
    target: "TargetLocation",
) -> Dict[str, str]:
    """Collect every placeholder value for the content templates."""
    fields = classification.raw_fields
    text_inline = _one_line(event.text, limit=300)
    headline = _first_words(event.text)

    reason = classification.degraded_reason or ""
    if not reason and target.is_fallback:
        reason = "no registry entry matched"
    if not reason:
        reason = "classified as needs_review"

    return {
        "event_id": event.id,
        "date": event.received_at.date().isoformat(),
        "author": _one_line(event.author) or "unknown",
        "channel": _one_line(event.channel) or "unknown",
        "text_inline": text_inline.replace('"', "'"),
        "quoted_text": _quote_block(event.text),
        "name": _field(fields, "name", "person") or classification.sub_area or headline,
        "context": _field(fields, "context", "notes") or text_inline,
        "follow_up": _field(fields, "follow_up", "follow_ups") or "(none)",
        "next_action": _field(fields, "next_action", "title", "name") or text_inline,
        "due": _format_due(fields.get("due_date")),
        "title": _field(fields, "title", "name") or headline,
        "one_liner": _field(fields, "one_liner", "summary") or text_inline,
        "tags": _format_tags(fields.get("tags")),
        "suggested": str(fields.get("original_category") or classification.category.value),
        "confidence": f"{classification.confidence:.2f}",
        "reason": _one_line(reason),
    }


def render_block(template: TemplateId, values: Dict[str, str]) -> str:
    """Fill one content template. Output always ends with a single newline."""
    text = CONTENT_TEMPLATES[template].format(**values)
    return text.strip() + "\n"


def document_title(path: str) -> str:
    return PurePosixPath(path).stem or "Untitled"


def render_skeleton(path: str, anchor: Optional[str]) -> str:
    """Skeleton for a note that does not exist yet, containing the anchor heading"""
    title = document_title(path)
    if not anchor:
        return f"# {title}\n"
    return SKELETON_TEMPLATE.format(title=title, anchor=anchor)
