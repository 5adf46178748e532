"""
Courier Common Module

Shared infrastructure for intake and the capture pipeline.
"""

from .config import CourierConfig, load_config
from .llm_client import LLMClient
from .note_store import LocalNoteStore, NoteStore, RestNoteStore
from .retry import RetryPolicy, retry_async

__all__ = [
    "CourierConfig",
    "load_config",
    "LLMClient",
    "LocalNoteStore",
    "NoteStore",
    "RestNoteStore",
    "RetryPolicy",
    "retry_async",
]
