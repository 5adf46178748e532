"""
Audit Logger

One entry per pipeline run, whatever the outcome. Entries are only ever
appended: no read-modify-write, no deduplication.

Sinks:
- JsonlAuditSink: JSON Lines file, one single-write append per entry (primary)
- NoteAuditSink: optional one-line mirror into a note in the note store
"""

import asyncio
import json
import logging
import os
from abc import ABC, abstractmethod
from pathlib import Path
from typing import List, Optional, Sequence, Union

from pydantic import ValidationError

from ..common.errors import NoteNotFoundError
from ..common.note_store import NoteStore
from ..common.schemas import AuditLogEntry

logger = logging.getLogger("courier.pipeline.audit")


class AuditSink(ABC):
    """Append-only destination for audit entries."""

    @abstractmethod
    async def append(self, entry: AuditLogEntry) -> None:
        pass


class JsonlAuditSink(AuditSink):
    """
    Audit trail persisted to a JSON Lines file.

    Each entry is serialized up front and appended with one write call on an
    O_APPEND descriptor, so concurrent runs never interleave partial lines.
    """

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path).expanduser()
        self._lock = asyncio.Lock()

    async def append(self, entry: AuditLogEntry) -> None:
        line = (entry.model_dump_json() + "\n").encode("utf-8")

        def _write() -> None:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd = os.open(self.path, os.O_WRONLY | os.O_APPEND | os.O_CREAT, 0o600)
            try:
                os.write(fd, line)
            finally:
                os.close(fd)

        async with self._lock:
            await asyncio.to_thread(_write)

    def read_entries(self, event_id: Optional[str] = None) -> List[AuditLogEntry]:
        """Entries in file order, optionally only those for ``event_id``."""
        if not self.path.exists():
            return []

        entries = []
        with open(self.path, encoding="utf-8") as f:
            for lineno, line in enumerate(f, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    entry = AuditLogEntry.model_validate(json.loads(line))
                except (json.JSONDecodeError, ValidationError) as e:
                    logger.warning("Skipping malformed audit line %s:%d: %s", self.path, lineno, e)
                    continue
                if event_id is None or entry.event_id == event_id:
                    entries.append(entry)
        return entries


class NoteAuditSink(AuditSink):
    """Mirrors each entry as one list line in an audit note."""

    def __init__(self, store: NoteStore, path: str):
        self._store = store
        self.path = path

    @staticmethod
    def format_line(entry: AuditLogEntry) -> str:
        target = f" -> {entry.target_location}" if entry.target_location else ""
        notices = f" [{', '.join(n.value for n in entry.notices)}]" if entry.notices else ""
        return (
            f"- {entry.timestamp.strftime('%Y-%m-%d %H:%M:%S')} `{entry.event_id}` "
            f"{entry.result.value} {entry.category.value}{target}{notices}\n"
        )

    async def append(self, entry: AuditLogEntry) -> None:
        line = self.format_line(entry)
        try:
            await self._store.append(self.path, line)
        except NoteNotFoundError:
            await self._store.create(self.path, f"# Courier Audit\n\n{line}")


class AuditLogger:
    """
    Fans one entry out to every sink.

    The first sink is the primary trail. A sink failure is logged and never
    raised to the caller, so a broken audit sink cannot fail a pipeline run.
    """

    def __init__(self, sinks: Sequence[AuditSink]):
        if not sinks:
            raise ValueError("AuditLogger needs at least one sink")
        self._sinks = list(sinks)

    @property
    def primary(self) -> AuditSink:
        return self._sinks[0]

    async def record(self, entry: AuditLogEntry) -> bool:
        """Append ``entry`` to every sink. Returns False if the primary sink failed."""
        ok = True
        for i, sink in enumerate(self._sinks):
            try:
                await sink.append(entry)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Audit sink %s failed for %s", type(sink).__name__, entry.event_id)
                if i == 0:
                    ok = False
        return ok

    async def history(self, event_id: str) -> List[AuditLogEntry]:
        """Audit trail for one event from the primary sink, if it can be read back."""
        if isinstance(self.primary, JsonlAuditSink):
            return await asyncio.to_thread(self.primary.read_entries, event_id)
        return []
