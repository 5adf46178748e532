"""
Courier Capture Pipeline

classify -> parse -> resolve -> dedupe-check -> write -> audit -> reply
"""

from .audit import AuditLogger, JsonlAuditSink, NoteAuditSink
from .classification_parser import parse
from .classifier import Classifier
from .dedupe import DedupeStore
from .factory import build_orchestrator
from .notifier import ConsoleReplyNotifier, Reply, ReplyNotifier, SlackReplyNotifier, compose_reply
from .orchestrator import Orchestrator, PipelineRun, Stage
from .registry import RegistryResolver, RegistrySnapshot
from .writer import ContentWriter

__all__ = [
    "AuditLogger",
    "JsonlAuditSink",
    "NoteAuditSink",
    "parse",
    "Classifier",
    "DedupeStore",
    "build_orchestrator",
    "ConsoleReplyNotifier",
    "Reply",
    "ReplyNotifier",
    "SlackReplyNotifier",
    "compose_reply",
    "Orchestrator",
    "PipelineRun",
    "Stage",
    "RegistryResolver",
    "RegistrySnapshot",
    "ContentWriter",
]
