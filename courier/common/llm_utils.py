"""Shared utilities for parsing LLM responses."""

from __future__ import annotations

import json
import re
from typing import Optional

_FENCE_RE = re.compile(r"^\s*```[\w-]*\s*$")


def strip_code_fences(raw: str) -> str:
    """Remove markdown code fence lines (```json ... ```) and surrounding whitespace."""
    if not raw:
        return ""
    text = raw.strip()
    if "```" not in text:
        return text
    lines = [line for line in text.split("\n") if not _FENCE_RE.match(line)]
    return "\n".join(lines).strip()


def parse_llm_json(raw: Optional[str]) -> Optional[dict]:
    """Parse a JSON object from an LLM response.

    Tries in order:
    1. Strip markdown code fences, then json.loads
    2. Extract substring between first '{' and last '}', then json.loads

    Returns None when no JSON object can be decoded. A decoded value that is
    not an object (list, string, number) also counts as a failure.
    """
    if not raw or not isinstance(raw, str):
        return None

    text = strip_code_fences(raw)

    try:
        data = json.loads(text)
        return data if isinstance(data, dict) else None
    except json.JSONDecodeError:
        pass

    start = text.find("{")
    end = text.rfind("}") + 1
    if start >= 0 and end > start:
        try:
            data = json.loads(text[start:end])
            return data if isinstance(data, dict) else None
        except json.JSONDecodeError:
            pass

    return None
