"""
Builds a fully wired Orchestrator from CourierConfig.
"""

import logging
from typing import Optional

from ..common.config import CourierConfig
from ..common.errors import ConfigError
from ..common.llm_client import LLMClient
from ..common.note_store import LocalNoteStore, NoteStore, RestNoteStore
from ..common.retry import RetryPolicy
from .audit import AuditLogger, JsonlAuditSink, NoteAuditSink
from .classifier import Classifier
from .dedupe import DedupeStore
from .notifier import ConsoleReplyNotifier, ReplyNotifier, SlackReplyNotifier
from .orchestrator import Orchestrator
from .registry import RegistryResolver
from .writer import ContentWriter

logger = logging.getLogger("courier.pipeline.factory")


def _model_for(config: CourierConfig) -> str:
    llm = config.llm
    return {
        "anthropic": llm.anthropic_model,
        "openai": llm.openai_model,
        "google": llm.google_model,
    }.get(llm.provider.lower(), "")


def build_llm_client(config: CourierConfig) -> LLMClient:
    return LLMClient(
        provider=config.llm.provider,
        model=_model_for(config),
        anthropic_api_key=config.llm.anthropic_api_key or None,
        openai_api_key=config.llm.openai_api_key or None,
        google_api_key=config.llm.google_api_key or None,
    )


def build_note_store(config: CourierConfig) -> NoteStore:
    notes = config.notes
    if notes.backend == "local":
        return LocalNoteStore(notes.local_root)
    if notes.backend == "rest":
        return RestNoteStore(
            notes.base_url,
            api_key=notes.api_key,
            timeout=notes.timeout,
            verify_tls=notes.verify_tls,
        )
    raise ConfigError(f"Unknown notes backend: {notes.backend!r} (expected 'rest' or 'local')")


def build_notifier(config: CourierConfig, console: bool = False) -> ReplyNotifier:
    if console:
        return ConsoleReplyNotifier()
    if config.slack.reply_enabled and config.slack.bot_token:
        return SlackReplyNotifier(config.slack.bot_token, timeout=config.slack.timeout)
    logger.info("Slack replies disabled, replies are only logged")
    return ConsoleReplyNotifier(echo=False)


def build_orchestrator(
    config: CourierConfig,
    *,
    notifier: Optional[ReplyNotifier] = None,
    store: Optional[NoteStore] = None,
) -> Orchestrator:
    """Wire every pipeline component. Raises RegistryError if the registry cannot be loaded."""
    resolver = RegistryResolver.from_path(config.registry.path)

    llm = build_llm_client(config)
    classifier = Classifier(
        llm=llm,
        timeout=config.classifier.timeout,
        max_tokens=config.classifier.max_tokens,
        prefixes_enabled=config.classifier.prefixes_enabled,
    )
    if not classifier.is_available:
        logger.warning("No LLM available, unprefixed messages will go to review")

    store = store or build_note_store(config)
    policy = RetryPolicy(
        max_attempts=config.writer.max_attempts,
        base_delay=config.writer.base_delay,
        max_delay=config.writer.max_delay,
        # one attempt is up to four note-store calls
        timeout=config.notes.timeout * 4,
    )
    writer = ContentWriter(store, policy)

    sinks = [JsonlAuditSink(config.audit.log_path)]
    if config.audit.note_path:
        sinks.append(NoteAuditSink(store, config.audit.note_path))

    return Orchestrator(
        classifier=classifier,
        resolver=resolver,
        dedupe=DedupeStore(config.dedupe.db_path, reservation_ttl=config.dedupe.reservation_ttl),
        writer=writer,
        audit=AuditLogger(sinks),
        notifier=notifier or build_notifier(config),
        confidence_threshold=config.classifier.confidence_threshold,
    )
