"""Shared fixtures and doubles for the Courier test suite."""

import json
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

import pytest

from courier.common.errors import NoteConflictError, NoteNotFoundError, NoteStoreError
from courier.common.note_store import NoteStore, append_at_end, insert_under_heading
from courier.common.retry import RetryPolicy
from courier.common.schemas import CaptureEvent
from courier.pipeline.audit import AuditLogger, JsonlAuditSink
from courier.pipeline.dedupe import DedupeStore
from courier.pipeline.notifier import Reply, ReplyNotifier
from courier.pipeline.orchestrator import Orchestrator
from courier.pipeline.registry import RegistryResolver, RegistrySnapshot
from courier.pipeline.writer import ContentWriter


REGISTRY_DOC = {
    "version": 3,
    "fallback": {"path": "Inbox/Needs Review.md", "template": "review", "anchor": "Inbox"},
    "entries": [
        {"category": "projects", "sub_area": "house", "path": "Projects/House.md", "template": "task", "anchor": "Tasks"},
        {"category": "projects", "sub_area": "default", "path": "Projects/Unsorted.md"},
        {"category": "people", "sub_area": "Alice", "path": "People/Alice.md"},
        {"category": "ideas", "path": "Ideas/Inbox.md"},
    ],
}


class InMemoryNoteStore(NoteStore):
    """Dict-backed note store with failure injection.

    ``fail[op]`` is a list of exceptions raised, one per call, before the
    operation starts succeeding. ``fail_always[op]`` raises on every call.
    """

    def __init__(self, documents: Optional[Dict[str, str]] = None):
        self.documents: Dict[str, str] = dict(documents or {})
        self.calls: List[Tuple[str, str]] = []
        self.fail: Dict[str, List[Exception]] = {}
        self.fail_always: Dict[str, Exception] = {}
        self.closed = False

    def _maybe_fail(self, op: str, path: str) -> None:
        self.calls.append((op, path))
        if op in self.fail_always:
            raise self.fail_always[op]
        queued = self.fail.get(op)
        if queued:
            raise queued.pop(0)

    def calls_for(self, op: str) -> List[str]:
        return [path for name, path in self.calls if name == op]

    async def list(self, path: str = "") -> List[str]:
        self._maybe_fail("list", path)
        prefix = f"{path.strip('/')}/" if path.strip("/") else ""
        entries = set()
        for doc in self.documents:
            if not doc.startswith(prefix):
                continue
            rest = doc[len(prefix):]
            head, _, tail = rest.partition("/")
            entries.add(head + "/" if tail else head)
        if prefix and not entries:
            raise NoteNotFoundError(f"Folder not found: {path}", status=404)
        return sorted(entries)

    async def read(self, path: str) -> str:
        self._maybe_fail("read", path)
        if path not in self.documents:
            raise NoteNotFoundError(f"Note not found: {path}", status=404)
        return self.documents[path]

    async def create(self, path: str, content: str) -> None:
        self._maybe_fail("create", path)
        if path in self.documents:
            raise NoteConflictError(f"Note already exists: {path}", status=409)
        self.documents[path] = content

    async def append(self, path: str, content: str, anchor: Optional[str] = None) -> None:
        self._maybe_fail("append", path)
        if path not in self.documents:
            raise NoteNotFoundError(f"Note not found: {path}", status=404)
        document = self.documents[path]
        if anchor:
            try:
                self.documents[path] = insert_under_heading(document, anchor, content)
            except ValueError as e:
                raise NoteStoreError(str(e), status=400, retryable=False) from e
        else:
            self.documents[path] = append_at_end(document, content)

    async def close(self) -> None:
        self.closed = True


class ScriptedClassifier:
    """Returns canned raw model output, per event id or a single default."""

    def __init__(self, default: str = "", by_event: Optional[Dict[str, str]] = None):
        self.default = default
        self.by_event = dict(by_event or {})
        self.seen: List[str] = []
        self.is_available = True

    async def classify(self, event: CaptureEvent) -> str:
        self.seen.append(event.id)
        return self.by_event.get(event.id, self.default)


class RecordingNotifier(ReplyNotifier):
    def __init__(self):
        self.replies: List[Tuple[CaptureEvent, Reply]] = []
        self.closed = False

    async def send(self, event: CaptureEvent, reply: Reply) -> bool:
        self.replies.append((event, reply))
        return True

    async def close(self) -> None:
        self.closed = True

    @property
    def texts(self) -> List[str]:
        return [reply.text for _, reply in self.replies]


def classifier_json(category: str, sub_area: Optional[str] = None, confidence: float = 0.9, **fields) -> str:
    return json.dumps({"category": category, "sub_area": sub_area, "confidence": confidence, "fields": fields})


@pytest.fixture
def registry_doc():
    return json.loads(json.dumps(REGISTRY_DOC))


@pytest.fixture
def registry_file(tmp_path, registry_doc):
    path = tmp_path / "registry.json"
    path.write_text(json.dumps(registry_doc))
    return path


@pytest.fixture
def resolver(registry_doc):
    return RegistryResolver(RegistrySnapshot.from_document(registry_doc, source="test"))


@pytest.fixture
def note_store():
    return InMemoryNoteStore({
        "Projects/House.md": "# House\n\n## Tasks\n- [ ] Paint the fence\n\n## Notes\nBuilt 1962.\n",
    })


@pytest.fixture
def fast_policy():
    return RetryPolicy(max_attempts=3, base_delay=0.0, max_delay=0.0, timeout=5.0)


@pytest.fixture
def dedupe_store(tmp_path):
    return DedupeStore(tmp_path / "dedupe.sqlite3")


@pytest.fixture
def audit_sink(tmp_path):
    return JsonlAuditSink(tmp_path / "audit.jsonl")


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def make_event():
    def _make(text: str = "Fix the leaky faucet", event_id: str = "C1:1706799600.0001", **kwargs) -> CaptureEvent:
        kwargs.setdefault("author", "U123")
        kwargs.setdefault("channel", "C1")
        kwargs.setdefault("thread_ref", event_id.split(":")[-1])
        kwargs.setdefault("received_at", datetime(2024, 2, 1, 15, 0, tzinfo=timezone.utc))
        return CaptureEvent(id=event_id, text=text, **kwargs)
    return _make


@pytest.fixture
def make_orchestrator(resolver, note_store, fast_policy, dedupe_store, audit_sink, notifier):
    def _make(classifier: ScriptedClassifier, store: Optional[NoteStore] = None) -> Orchestrator:
        return Orchestrator(
            classifier=classifier,
            resolver=resolver,
            dedupe=dedupe_store,
            writer=ContentWriter(store or note_store, fast_policy),
            audit=AuditLogger([audit_sink]),
            notifier=notifier,
        )
    return _make
