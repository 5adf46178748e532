"""
Capture Pipeline Schemas

Typed records that flow through one pipeline run:
CaptureEvent -> ClassificationResult -> TargetLocation -> WriteOperation
-> DedupeRecord / AuditLogEntry.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, ConfigDict, Field
from enum import Enum

from ..errors import Notice


# ============================================================================
# Enums
# ============================================================================

class Category(str, Enum):
    """Closed set of destination categories"""
    PEOPLE = "people"
    PROJECTS = "projects"
    IDEAS = "ideas"
    NEEDS_REVIEW = "needs_review"


class TemplateId(str, Enum):
    """Content templates a registry entry may select"""
    PERSON = "person"
    TASK = "task"
    NOTE = "note"
    REVIEW = "review"


DEFAULT_TEMPLATES = {
    Category.PEOPLE: TemplateId.PERSON,
    Category.PROJECTS: TemplateId.TASK,
    Category.IDEAS: TemplateId.NOTE,
    Category.NEEDS_REVIEW: TemplateId.REVIEW,
}


class ResolutionMatch(str, Enum):
    """Which registry lookup step produced a target"""
    EXACT = "exact"
    CATEGORY_DEFAULT = "category_default"
    FALLBACK = "fallback"


class Outcome(str, Enum):
    """Result of one pipeline run (and of a dedupe record)"""
    PENDING = "pending"  # dedupe reservation held, never an audit result
    WRITTEN = "written"
    SKIPPED = "skipped"
    FAILED = "failed"


class WriteMode(str, Enum):
    APPEND = "append"
    CREATE_THEN_APPEND = "create-then-append"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ============================================================================
# Records
# ============================================================================

class CaptureEvent(BaseModel):
    """One inbound chat message. Immutable once built by intake."""
    model_config = ConfigDict(frozen=True)

    id: str = Field(..., min_length=1, description="Platform message id, used as dedupe key")
    text: str
    author: str = ""
    channel: str = ""
    thread_ref: Optional[str] = None
    received_at: datetime = Field(default_factory=utcnow)
    source: str = "slack"


class ClassificationResult(BaseModel):
    """Validated classifier output. ``category`` is always a Category member."""
    model_config = ConfigDict(frozen=True)

    category: Category
    sub_area: Optional[str] = None
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    raw_fields: Dict[str, Any] = Field(default_factory=dict)
    notice: Optional[Notice] = None
    degraded_reason: Optional[str] = None

    @property
    def is_degraded(self) -> bool:
        return self.notice == Notice.CLASSIFICATION_DEGRADED


class TargetLocation(BaseModel):
    """Resolved destination in the note store"""
    model_config = ConfigDict(frozen=True)

    path: str = Field(..., min_length=1)
    template: TemplateId
    anchor: Optional[str] = None
    category: Category
    sub_area: Optional[str] = None
    match: ResolutionMatch = ResolutionMatch.EXACT
    registry_version: int = 0

    @property
    def is_fallback(self) -> bool:
        return self.match == ResolutionMatch.FALLBACK


class WriteOperation(BaseModel):
    """Rendered content block ready for the note store"""
    model_config = ConfigDict(frozen=True)

    event_id: str
    target: TargetLocation
    content: str
    skeleton: str
    mode: WriteMode = WriteMode.APPEND

    @property
    def path(self) -> str:
        return self.target.path


class WriteResult(BaseModel):
    ok: bool
    location_written: Optional[str] = None
    mode: Optional[WriteMode] = None
    attempts: int = 0
    error: Optional[str] = None


class DedupeRecord(BaseModel):
    event_id: str
    processed_at: datetime
    outcome: Outcome
    target_location: Optional[str] = None
    attempts: int = 1


class Reservation(BaseModel):
    """Answer from DedupeStore.check_and_reserve"""
    proceed: bool
    prior: Optional[DedupeRecord] = None


class AuditLogEntry(BaseModel):
    """One line of the audit trail. Written for every run, whatever the outcome."""
    event_id: str
    category: Category
    target_location: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)
    result: Outcome
    sub_area: Optional[str] = None
    confidence: float = 0.0
    match: Optional[ResolutionMatch] = None
    notices: List[Notice] = Field(default_factory=list)
    attempts: int = 0
    error: Optional[str] = None
    registry_version: Optional[int] = None
