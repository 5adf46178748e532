"""
Pipeline Orchestrator

Runs one CaptureEvent through the capture pipeline:

    Received -> Classifying -> Resolving -> DedupeCheck -> Writing
             -> Logging -> Replying -> Done

- DedupeCheck goes straight to Logging (outcome skipped) for duplicates.
- Any stage before Logging may move to Failed; Failed still goes through
  Logging and Replying, so every run leaves exactly one audit entry.
- Nothing raises out of run() except cancellation, which is re-raised only
  after the dedupe record, audit entry and reply are settled.

Each event runs as its own task (submit); drain() waits for them on shutdown.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Set

from ..common.errors import CourierError, Notice
from ..common.schemas import (
    AuditLogEntry,
    CaptureEvent,
    Category,
    ClassificationResult,
    DedupeRecord,
    Outcome,
    TargetLocation,
    WriteResult,
)
from .audit import AuditLogger
from .classification_parser import DEFAULT_THRESHOLD, degraded, parse
from .classifier import Classifier
from .dedupe import DedupeStore
from .notifier import ReplyNotifier, compose_reply
from .registry import RegistryResolver
from .writer import ContentWriter

logger = logging.getLogger("courier.pipeline.orchestrator")


async def _run_to_completion(awaitable):
    """Await ``awaitable`` to the end even if the caller is cancelled meanwhile.

    Returns ``(result, cancelled)``. ``cancelled`` is the CancelledError the
    caller must re-raise once it has recorded the result, or None.
    """
    task = asyncio.ensure_future(awaitable)
    cancelled: Optional[asyncio.CancelledError] = None
    while True:
        try:
            result = await asyncio.shield(task)
        except asyncio.CancelledError as e:
            cancelled = cancelled or e
            continue
        except Exception:
            if cancelled is not None:
                raise cancelled
            raise
        return result, cancelled


class Stage(str, Enum):
    RECEIVED = "received"
    CLASSIFYING = "classifying"
    RESOLVING = "resolving"
    DEDUPE_CHECK = "dedupe_check"
    WRITING = "writing"
    FAILED = "failed"
    LOGGING = "logging"
    REPLYING = "replying"
    DONE = "done"


TRANSITIONS: Dict[Stage, Set[Stage]] = {
    Stage.RECEIVED: {Stage.CLASSIFYING, Stage.FAILED},
    Stage.CLASSIFYING: {Stage.RESOLVING, Stage.FAILED},
    Stage.RESOLVING: {Stage.DEDUPE_CHECK, Stage.FAILED},
    Stage.DEDUPE_CHECK: {Stage.WRITING, Stage.LOGGING, Stage.FAILED},
    Stage.WRITING: {Stage.LOGGING, Stage.FAILED},
    Stage.FAILED: {Stage.LOGGING},
    Stage.LOGGING: {Stage.REPLYING},
    Stage.REPLYING: {Stage.DONE},
    Stage.DONE: set(),
}


class PipelineStateError(CourierError):
    """Illegal stage transition. Indicates a bug in the orchestrator."""
    pass


@dataclass
class PipelineRun:
    """State of one event's trip through the pipeline"""
    event: CaptureEvent
    stage: Stage = Stage.RECEIVED
    history: List[Stage] = field(default_factory=lambda: [Stage.RECEIVED])
    classification: Optional[ClassificationResult] = None
    target: Optional[TargetLocation] = None
    prior: Optional[DedupeRecord] = None
    write_result: Optional[WriteResult] = None
    outcome: Optional[Outcome] = None
    notices: List[Notice] = field(default_factory=list)
    error: Optional[str] = None
    reserved: bool = False
    audited: bool = False
    replied: bool = False

    def advance(self, stage: Stage) -> None:
        if stage not in TRANSITIONS[self.stage]:
            raise PipelineStateError(f"{self.event.id}: {self.stage.value} -> {stage.value} is not allowed")
        self.stage = stage
        self.history.append(stage)

    def fail(self, error: str) -> None:
        self.outcome = Outcome.FAILED
        self.error = error
        if self.stage != Stage.FAILED and Stage.FAILED in TRANSITIONS[self.stage]:
            self.advance(Stage.FAILED)

    def note(self, notice: Notice) -> None:
        if notice not in self.notices:
            self.notices.append(notice)

    @property
    def target_location(self) -> Optional[str]:
        if self.outcome == Outcome.WRITTEN and self.write_result:
            return self.write_result.location_written
        if self.outcome == Outcome.SKIPPED:
            return self.prior.target_location if self.prior else None
        return self.target.path if self.target else None

    @property
    def flagged(self) -> bool:
        if self.target and self.target.is_fallback:
            return True
        return bool(self.classification and self.classification.category == Category.NEEDS_REVIEW)


class Orchestrator:
    """
    Composes classifier, parser, resolver, dedupe store, writer, audit
    logger and notifier.

    Usage:
        orchestrator = Orchestrator(classifier, resolver, dedupe, writer, audit, notifier)
        run = await orchestrator.run(event)      # inline
        orchestrator.submit(event)               # as a background task
        await orchestrator.drain(timeout=30)
    """

    def __init__(
        self,
        classifier: Classifier,
        resolver: RegistryResolver,
        dedupe: DedupeStore,
        writer: ContentWriter,
        audit: AuditLogger,
        notifier: ReplyNotifier,
        confidence_threshold: float = DEFAULT_THRESHOLD,
    ):
        self.classifier = classifier
        self.resolver = resolver
        self.dedupe = dedupe
        self.writer = writer
        self.audit = audit
        self.notifier = notifier
        self.confidence_threshold = confidence_threshold
        self._tasks: Set[asyncio.Task] = set()

    # -------------------------------------------------------------------------
    # One run
    # -------------------------------------------------------------------------

    async def run(self, event: CaptureEvent) -> PipelineRun:
        """Process ``event`` to Done. Only cancellation propagates."""
        run = PipelineRun(event=event)
        cancelled: Optional[asyncio.CancelledError] = None

        try:
            await self._process(run)
        except asyncio.CancelledError as e:
            cancelled = e
            if run.outcome == Outcome.WRITTEN:
                logger.warning("Run %s cancelled after its write was recorded", event.id)
            else:
                logger.warning("Run %s cancelled during %s", event.id, run.stage.value)
                run.fail(f"cancelled during {run.stage.value}")
        except Exception as e:
            logger.exception("Run %s failed during %s", event.id, run.stage.value)
            run.fail(f"internal error: {type(e).__name__}: {e}")

        # settled in its own task so a cancelled run still records its outcome
        try:
            await asyncio.shield(self._settle(run))
        except asyncio.CancelledError as e:
            cancelled = cancelled or e

        if cancelled is not None:
            raise cancelled
        return run

    async def _process(self, run: PipelineRun) -> None:
        event = run.event

        run.advance(Stage.CLASSIFYING)
        raw = await self.classifier.classify(event)
        classification = parse(raw, self.confidence_threshold)
        run.classification = classification
        if classification.notice:
            run.note(classification.notice)

        run.advance(Stage.RESOLVING)
        target = self.resolver.resolve(classification.category, classification.sub_area)
        run.target = target
        if target.is_fallback:
            run.note(Notice.RESOLUTION_FALLBACK)

        run.advance(Stage.DEDUPE_CHECK)
        # the reservation may land after a cancel; it is recorded either way
        reservation, cancelled = await _run_to_completion(self.dedupe.check_and_reserve(event.id))
        run.reserved = reservation.proceed
        if cancelled is not None:
            raise cancelled
        if not reservation.proceed:
            run.prior = reservation.prior
            run.outcome = Outcome.SKIPPED
            run.note(Notice.DUPLICATE_EVENT)
            return

        run.advance(Stage.WRITING)
        op = self.writer.render(classification.category, classification, target, event)
        result = await self.writer.write(op)
        run.write_result = result
        if not result.ok:
            run.fail(result.error or "write failed")
            return

        # write has completed; only now may the record say written
        _, cancelled = await _run_to_completion(
            self.dedupe.commit(event.id, Outcome.WRITTEN, result.location_written)
        )
        run.outcome = Outcome.WRITTEN
        if cancelled is not None:
            raise cancelled

    async def _settle(self, run: PipelineRun) -> None:
        if run.outcome == Outcome.FAILED and run.reserved:
            try:
                await self.dedupe.commit(run.event.id, Outcome.FAILED, run.target.path if run.target else None)
            except Exception:
                logger.exception("Could not record failure for %s, reservation left pending", run.event.id)
        await self._finish(run)

    async def _finish(self, run: PipelineRun) -> None:
        """Logging -> Replying -> Done. Never raises."""
        run.advance(Stage.LOGGING)
        entry = self._audit_entry(run)
        run.audited = await self.audit.record(entry)

        run.advance(Stage.REPLYING)
        classification = run.classification
        reply = compose_reply(
            run.outcome,
            classification.category if classification else None,
            run.target_location,
            sub_area=classification.sub_area if classification else None,
            confidence=classification.confidence if classification else None,
            flagged=run.flagged,
            error=run.error,
        )
        try:
            run.replied = await self.notifier.send(run.event, reply)
        except Exception:
            logger.exception("Reply for %s failed", run.event.id)

        run.advance(Stage.DONE)
        logger.info(
            "Run %s done: %s %s -> %s%s",
            run.event.id,
            run.outcome.value,
            classification.category.value if classification else "-",
            run.target_location or "-",
            f" ({run.error})" if run.error else "",
        )

    def _audit_entry(self, run: PipelineRun) -> AuditLogEntry:
        classification = run.classification or degraded("run failed before classification")
        return AuditLogEntry(
            event_id=run.event.id,
            category=classification.category,
            sub_area=classification.sub_area,
            confidence=classification.confidence,
            target_location=run.target_location,
            result=run.outcome,
            match=run.target.match if run.target else None,
            notices=list(run.notices),
            attempts=run.write_result.attempts if run.write_result else 0,
            error=run.error,
            registry_version=run.target.registry_version if run.target else None,
        )

    # -------------------------------------------------------------------------
    # Task management
    # -------------------------------------------------------------------------

    def submit(self, event: CaptureEvent) -> asyncio.Task:
        """Schedule ``event`` as an independent task and return immediately."""
        task = asyncio.create_task(self.run(event), name=f"capture:{event.id}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    async def drain(self, timeout: Optional[float] = None) -> int:
        """Wait for in-flight runs; cancel whatever is left after ``timeout``.

        Returns the number of runs that had to be cancelled.
        """
        if not self._tasks:
            return 0
        logger.info("Draining %d in-flight run(s)", len(self._tasks))
        _, pending = await asyncio.wait(set(self._tasks), timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
            logger.warning("Cancelled %d run(s) still in flight after %.1fs", len(pending), timeout or 0)
        return len(pending)

    async def lookup(self, event_id: str) -> Dict[str, Any]:
        """Dedupe record and audit trail for one event."""
        record = await self.dedupe.get(event_id)
        history = await self.audit.history(event_id)
        return {
            "event_id": event_id,
            "record": record.model_dump(mode="json") if record else None,
            "audit": [entry.model_dump(mode="json") for entry in history],
        }

    async def close(self) -> None:
        await self.writer.store.close()
        await self.notifier.close()
