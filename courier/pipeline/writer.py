"""
Content Writer

Renders a classified capture into a Markdown block and writes it to the
note store.

Rendering:
- One variant per template (person / task / note / review), selected at a
  single dispatch point. Every template has exactly one variant.
- Pure placeholder substitution, so identical inputs give identical bytes.

Writing, per attempt:
1. Missing note -> create it from the template's skeleton (create-then-append)
2. Anchor heading present -> anchored append, otherwise append at the end
3. Block already in the note (an earlier attempt landed) -> nothing to do

Failures are retried with bounded, jittered exponential backoff. Exhaustion
comes back as WriteResult(ok=False), never as an exception.
"""

import logging
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from ..common.errors import NoteConflictError, NoteNotFoundError, WriteFailure
from ..common.note_store import NoteStore, has_heading
from ..common.retry import RetryPolicy, default_retryable, retry_async
from ..common.schemas import (
    CaptureEvent,
    Category,
    ClassificationResult,
    TargetLocation,
    TemplateId,
    WriteMode,
    WriteOperation,
    WriteResult,
    build_values,
    render_block,
    render_skeleton,
)

logger = logging.getLogger("courier.pipeline.writer")


# =============================================================================
# Render variants
# =============================================================================

def _render_person(values: Dict[str, str]) -> str:
    return render_block(TemplateId.PERSON, values)


def _render_task(values: Dict[str, str]) -> str:
    return render_block(TemplateId.TASK, values)


def _render_note(values: Dict[str, str]) -> str:
    block = render_block(TemplateId.NOTE, values)
    if values["tags"] == "(none)":
        block = block.replace("\nTags: (none)", "")
    return block


def _render_review(values: Dict[str, str]) -> str:
    return render_block(TemplateId.REVIEW, values)


RENDERERS: Dict[TemplateId, Callable[[Dict[str, str]], str]] = {
    TemplateId.PERSON: _render_person,
    TemplateId.TASK: _render_task,
    TemplateId.NOTE: _render_note,
    TemplateId.REVIEW: _render_review,
}

_missing = set(TemplateId) - set(RENDERERS)
if _missing:
    raise RuntimeError(f"No renderer for templates: {sorted(t.value for t in _missing)}")


def _is_retryable(exc: BaseException) -> bool:
    # a note deleted between attempts is recreated by the next attempt
    if isinstance(exc, NoteNotFoundError):
        return True
    return default_retryable(exc)


@dataclass
class _AttemptState:
    mode: WriteMode = WriteMode.APPEND


class ContentWriter:
    """
    Renders and writes content blocks.

    Usage:
        writer = ContentWriter(store, RetryPolicy(max_attempts=4))
        op = writer.render(classification.category, classification, target, event)
        result = await writer.write(op)
    """

    def __init__(self, store: NoteStore, policy: Optional[RetryPolicy] = None):
        self._store = store
        self._policy = policy or RetryPolicy()

    @property
    def store(self) -> NoteStore:
        return self._store

    def render(
        self,
        category: Category,
        classification: ClassificationResult,
        target: TargetLocation,
        event: CaptureEvent,
    ) -> WriteOperation:
        """Build the WriteOperation for one capture. Pure and deterministic.

        The renderer is picked by ``target.template``. The registry fills that in
        from the category's default template when an entry names none, so a
        registry entry may deliberately render a capture with another template.
        ``category`` is only used to log such cross-category targets.
        """
        if category != target.category:
            logger.debug(
                "Rendering %s capture into %s target %s", category.value, target.category.value, target.path,
            )
        values = build_values(event, classification, target)
        content = RENDERERS[target.template](values)
        return WriteOperation(
            event_id=event.id,
            target=target,
            content=content,
            skeleton=render_skeleton(target.path, target.anchor),
        )

    async def write(self, op: WriteOperation) -> WriteResult:
        """Write ``op`` with retries. Never raises for note-store failures."""
        state = _AttemptState(mode=op.mode)

        outcome = await retry_async(
            lambda: self._attempt(op, state),
            self._policy,
            is_retryable=_is_retryable,
            label=f"write {op.event_id} -> {op.path}",
        )

        if outcome.ok:
            logger.info("Wrote %s to %s (%s, %d attempt(s))", op.event_id, op.path, state.mode.value, outcome.attempts)
            return WriteResult(
                ok=True,
                location_written=op.path,
                mode=state.mode,
                attempts=outcome.attempts,
            )

        failure = WriteFailure(f"{op.path}: {outcome.error or 'unknown error'}")
        return WriteResult(
            ok=False,
            mode=state.mode,
            attempts=outcome.attempts,
            error=str(failure),
        )

    async def _attempt(self, op: WriteOperation, state: _AttemptState) -> None:
        if not await self._store.exists(op.path):
            try:
                await self._store.create(op.path, op.skeleton)
                state.mode = WriteMode.CREATE_THEN_APPEND
                logger.info("Created %s for %s", op.path, op.event_id)
            except NoteConflictError:
                logger.debug("%s appeared concurrently, appending", op.path)

        document = await self._store.read(op.path)
        if op.content.strip() in document:
            logger.info("%s already contains %s, skipping append", op.path, op.event_id)
            return

        anchor = op.target.anchor
        if anchor and not has_heading(document, anchor):
            logger.info("Heading %r missing in %s, appending at end", anchor, op.path)
            anchor = None
        await self._store.append(op.path, op.content, anchor=anchor)
