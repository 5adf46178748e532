"""
Classification Parser

Turns untrusted classifier output into a ClassificationResult. Malformed
input is a handled case, not an error: anything that cannot be trusted ends
up as ``needs_review``.

Steps, in order:
1. Strip formatting artifacts (code fences, preamble text)
2. Decode the JSON object; failure -> needs_review, confidence 0
3. Coerce unknown categories to needs_review
4. Clamp confidence into [0, 1]; non-numeric -> 0
5. Below threshold -> needs_review, original category kept in raw_fields
"""

import logging
import math
from typing import Any, Dict, Optional, Tuple

from ..common.errors import Notice
from ..common.llm_utils import parse_llm_json
from ..common.schemas import Category, ClassificationResult

logger = logging.getLogger("courier.pipeline.classification_parser")

DEFAULT_THRESHOLD = 0.6
RESERVED_KEYS = ("category", "sub_area", "confidence")
MAX_SUB_AREA_LENGTH = 120


def degraded(reason: str, raw_fields: Optional[Dict[str, Any]] = None) -> ClassificationResult:
    """The deterministic fallback result"""
    return ClassificationResult(
        category=Category.NEEDS_REVIEW,
        sub_area=None,
        confidence=0.0,
        raw_fields=raw_fields or {},
        notice=Notice.CLASSIFICATION_DEGRADED,
        degraded_reason=reason,
    )


def _coerce_category(value: Any) -> Optional[Category]:
    if not isinstance(value, str):
        return None
    normalized = value.strip().lower().replace("-", "_").replace(" ", "_")
    try:
        return Category(normalized)
    except ValueError:
        return None


def _coerce_confidence(value: Any) -> Tuple[float, bool]:
    """Return (confidence, was_valid)."""
    if isinstance(value, bool) or value is None:
        return 0.0, False
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0, False
    if not math.isfinite(number):
        return 0.0, False
    if number < 0.0 or number > 1.0:
        return min(max(number, 0.0), 1.0), False
    return number, True


def _coerce_sub_area(value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return None
    text = " ".join(value.split())
    if not text or text.lower() in ("none", "null", "n/a"):
        return None
    return text[:MAX_SUB_AREA_LENGTH]


def _collect_raw_fields(data: Dict[str, Any]) -> Dict[str, Any]:
    fields: Dict[str, Any] = {}
    nested = data.get("fields")
    if isinstance(nested, dict):
        fields.update(nested)
    for key, value in data.items():
        if key in RESERVED_KEYS or key == "fields":
            continue
        fields[key] = value
    return fields


def parse(raw_model_output: Any, threshold: float = DEFAULT_THRESHOLD) -> ClassificationResult:
    """Parse raw classifier output. Never raises."""
    try:
        return _parse(raw_model_output, threshold)
    except Exception as e:  # last line of defence, parse must not throw
        logger.exception("Unexpected error parsing classifier output")
        return degraded(f"parser error: {type(e).__name__}")


def _parse(raw_model_output: Any, threshold: float) -> ClassificationResult:
    data = parse_llm_json(raw_model_output if isinstance(raw_model_output, str) else None)
    if data is None:
        logger.info("Classifier output could not be decoded, routing to needs_review")
        return degraded("unparseable classifier output")

    raw_fields = _collect_raw_fields(data)
    sub_area = _coerce_sub_area(data.get("sub_area"))
    confidence, confidence_valid = _coerce_confidence(data.get("confidence"))
    category = _coerce_category(data.get("category"))

    reason = None
    if category is None:
        raw_fields["original_category"] = data.get("category")
        category = Category.NEEDS_REVIEW
        reason = f"unrecognized category {data.get('category')!r}"
    elif category != Category.NEEDS_REVIEW and confidence < threshold:
        raw_fields["original_category"] = category.value
        category = Category.NEEDS_REVIEW
        reason = f"confidence {confidence:.2f} below threshold {threshold:.2f}"

    if not confidence_valid:
        raw_fields["original_confidence"] = data.get("confidence")

    if reason:
        logger.info("Classification degraded: %s", reason)
        return ClassificationResult(
            category=category,
            sub_area=sub_area,
            confidence=confidence,
            raw_fields=raw_fields,
            notice=Notice.CLASSIFICATION_DEGRADED,
            degraded_reason=reason,
        )

    return ClassificationResult(
        category=category,
        sub_area=sub_area,
        confidence=confidence,
        raw_fields=raw_fields,
    )
