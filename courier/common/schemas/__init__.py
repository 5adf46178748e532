"""
Courier Capture Schemas

Typed records for one capture-to-write pipeline run, plus the Markdown
templates content blocks are rendered from.
"""

from .capture import (
    AuditLogEntry,
    CaptureEvent,
    Category,
    ClassificationResult,
    DedupeRecord,
    DEFAULT_TEMPLATES,
    Outcome,
    Reservation,
    ResolutionMatch,
    TargetLocation,
    TemplateId,
    WriteMode,
    WriteOperation,
    WriteResult,
    utcnow,
)
from .templates import DEFAULT_ANCHORS, build_values, render_block, render_skeleton

__all__ = [
    "AuditLogEntry",
    "CaptureEvent",
    "Category",
    "ClassificationResult",
    "DedupeRecord",
    "DEFAULT_TEMPLATES",
    "Outcome",
    "Reservation",
    "ResolutionMatch",
    "TargetLocation",
    "TemplateId",
    "WriteMode",
    "WriteOperation",
    "WriteResult",
    "utcnow",
    "DEFAULT_ANCHORS",
    "build_values",
    "render_block",
    "render_skeleton",
]
