"""
Configuration Management for Courier

Loads configuration from ~/.courier/config.json (or $COURIER_CONFIG) and
environment variables. A local .env file is honoured via python-dotenv.
"""

import os
import json
import logging
from pathlib import Path
from dataclasses import dataclass, field
from typing import Optional, Union

from dotenv import load_dotenv

logger = logging.getLogger("courier.common.config")

# Default config paths
CONFIG_DIR = Path.home() / ".courier"
CONFIG_PATH = CONFIG_DIR / "config.json"
ENV_CONFIG_PATH = "COURIER_CONFIG"


@dataclass
class LLMConfig:
    """Classification model provider configuration"""
    provider: str = "anthropic"
    anthropic_api_key: str = ""
    anthropic_model: str = "claude-haiku-4-5-20251001"
    openai_api_key: str = ""
    openai_model: str = "gpt-4o-mini"
    google_api_key: str = ""
    google_model: str = "gemini-2.0-flash"


@dataclass
class ClassifierConfig:
    """Classification stage configuration"""
    confidence_threshold: float = 0.6
    timeout: float = 20.0
    max_tokens: int = 400
    prefixes_enabled: bool = True


@dataclass
class RegistryConfig:
    """Registry source configuration"""
    path: str = str(CONFIG_DIR / "registry.json")


@dataclass
class DedupeConfig:
    """Dedupe store configuration"""
    db_path: str = str(CONFIG_DIR / "dedupe.sqlite3")
    reservation_ttl: float = 300.0


@dataclass
class NotesConfig:
    """Note store connection"""
    backend: str = "rest"  # "rest" or "local"
    base_url: str = "https://127.0.0.1:27124"
    api_key: str = ""
    verify_tls: bool = False
    timeout: float = 10.0
    local_root: str = str(CONFIG_DIR / "vault")


@dataclass
class WriterConfig:
    """Content writer retry policy"""
    max_attempts: int = 4
    base_delay: float = 0.5
    max_delay: float = 8.0


@dataclass
class AuditConfig:
    """Audit sink configuration"""
    log_path: str = str(CONFIG_DIR / "audit.jsonl")
    note_path: str = ""  # optional mirror into the note store


@dataclass
class SlackConfig:
    """Slack transport configuration"""
    signing_secret: str = ""
    bot_token: str = ""
    capture_channels: list = field(default_factory=list)
    reply_enabled: bool = True
    timeout: float = 10.0


@dataclass
class ServerConfig:
    """Intake server configuration"""
    host: str = "0.0.0.0"
    port: int = 8080
    admin_token: str = ""
    drain_timeout: float = 30.0


@dataclass
class CourierConfig:
    """Main Courier configuration"""
    data_dir: str = str(CONFIG_DIR)
    llm: LLMConfig = field(default_factory=LLMConfig)
    classifier: ClassifierConfig = field(default_factory=ClassifierConfig)
    registry: RegistryConfig = field(default_factory=RegistryConfig)
    dedupe: DedupeConfig = field(default_factory=DedupeConfig)
    notes: NotesConfig = field(default_factory=NotesConfig)
    writer: WriterConfig = field(default_factory=WriterConfig)
    audit: AuditConfig = field(default_factory=AuditConfig)
    slack: SlackConfig = field(default_factory=SlackConfig)
    server: ServerConfig = field(default_factory=ServerConfig)
    _env_sourced_keys: set = field(default_factory=set, repr=False)


def _section(data: dict, name: str, cls):
    """Build a dataclass section, ignoring keys it does not declare."""
    section = data.get(name) or {}
    if not isinstance(section, dict):
        logger.warning("Config section '%s' is not an object, using defaults", name)
        return cls()
    known = {k: v for k, v in section.items() if k in cls.__dataclass_fields__}
    unknown = set(section) - set(known)
    if unknown:
        logger.warning("Ignoring unknown keys in config section '%s': %s", name, sorted(unknown))
    return cls(**known)


# Environment overrides: env var -> (section, attribute, type)
_ENV_OVERRIDES = {
    "COURIER_DATA_DIR": (None, "data_dir", str),
    "COURIER_LLM_PROVIDER": ("llm", "provider", str),
    "ANTHROPIC_API_KEY": ("llm", "anthropic_api_key", str),
    "ANTHROPIC_MODEL": ("llm", "anthropic_model", str),
    "OPENAI_API_KEY": ("llm", "openai_api_key", str),
    "OPENAI_MODEL": ("llm", "openai_model", str),
    "GOOGLE_API_KEY": ("llm", "google_api_key", str),
    "GEMINI_API_KEY": ("llm", "google_api_key", str),
    "COURIER_CONFIDENCE_THRESHOLD": ("classifier", "confidence_threshold", float),
    "COURIER_REGISTRY_PATH": ("registry", "path", str),
    "COURIER_DEDUPE_DB": ("dedupe", "db_path", str),
    "COURIER_NOTES_BACKEND": ("notes", "backend", str),
    "COURIER_NOTES_URL": ("notes", "base_url", str),
    "COURIER_NOTES_API_KEY": ("notes", "api_key", str),
    "COURIER_NOTES_ROOT": ("notes", "local_root", str),
    "COURIER_AUDIT_LOG": ("audit", "log_path", str),
    "SLACK_SIGNING_SECRET": ("slack", "signing_secret", str),
    "SLACK_BOT_TOKEN": ("slack", "bot_token", str),
    "COURIER_PORT": ("server", "port", int),
    "COURIER_ADMIN_TOKEN": ("server", "admin_token", str),
}

_SECRET_KEYS = {
    "anthropic_api_key", "openai_api_key", "google_api_key",
    "api_key", "signing_secret", "bot_token", "admin_token",
}


def resolve_config_path(path: Optional[Union[str, Path]] = None) -> Path:
    if path:
        return Path(path)
    env_path = os.getenv(ENV_CONFIG_PATH)
    if env_path:
        return Path(env_path)
    return CONFIG_PATH


def load_config(path: Optional[Union[str, Path]] = None) -> CourierConfig:
    """
    Load configuration from file and environment variables.

    Priority (highest to lowest):
    1. Environment variables (a local .env file is loaded first)
    2. Config file
    3. Default values
    """
    load_dotenv()
    config = CourierConfig()
    config_path = resolve_config_path(path)

    if config_path.exists():
        try:
            with open(config_path) as f:
                data = json.load(f)
            if not isinstance(data, dict):
                raise TypeError(f"expected a JSON object, got {type(data).__name__}")

            config.data_dir = data.get("data_dir", config.data_dir)
            config.llm = _section(data, "llm", LLMConfig)
            config.classifier = _section(data, "classifier", ClassifierConfig)
            config.registry = _section(data, "registry", RegistryConfig)
            config.dedupe = _section(data, "dedupe", DedupeConfig)
            config.notes = _section(data, "notes", NotesConfig)
            config.writer = _section(data, "writer", WriterConfig)
            config.audit = _section(data, "audit", AuditConfig)
            config.slack = _section(data, "slack", SlackConfig)
            config.server = _section(data, "server", ServerConfig)
        except (json.JSONDecodeError, IOError, TypeError) as e:
            logger.warning("Failed to load config file %s: %s", config_path, e)

    for env_var, (section, attr, cast) in _ENV_OVERRIDES.items():
        raw = os.getenv(env_var)
        if not raw:
            continue
        try:
            value = cast(raw)
        except ValueError:
            logger.warning("Ignoring %s=%r: expected %s", env_var, raw, cast.__name__)
            continue
        target = config if section is None else getattr(config, section)
        setattr(target, attr, value)
        config._env_sourced_keys.add(f"{section}.{attr}" if section else attr)

    return config


def _section_dict(section, section_name: str, env_sourced: set) -> dict:
    data = {}
    for name in section.__dataclass_fields__:
        value = getattr(section, name)
        if name in _SECRET_KEYS and f"{section_name}.{name}" in env_sourced:
            value = ""
        data[name] = value
    return data


def save_config(config: CourierConfig, path: Optional[Union[str, Path]] = None) -> Path:
    """Save configuration to file.

    Secrets that were sourced from environment variables are written
    as empty strings so that they are not persisted to disk.
    """
    config_path = resolve_config_path(path)
    config_path.parent.mkdir(parents=True, exist_ok=True)
    env_sourced = getattr(config, "_env_sourced_keys", set())

    data = {"data_dir": config.data_dir}
    for name in ("llm", "classifier", "registry", "dedupe", "notes",
                 "writer", "audit", "slack", "server"):
        data[name] = _section_dict(getattr(config, name), name, env_sourced)

    with open(config_path, "w") as f:
        json.dump(data, f, indent=2)

    # Set secure permissions
    config_path.chmod(0o600)
    return config_path


def ensure_directories(config: CourierConfig) -> None:
    """Ensure directories for durable state exist"""
    Path(config.data_dir).expanduser().mkdir(parents=True, exist_ok=True)
    for file_path in (config.dedupe.db_path, config.audit.log_path):
        Path(file_path).expanduser().parent.mkdir(parents=True, exist_ok=True)
    if config.notes.backend == "local":
        Path(config.notes.local_root).expanduser().mkdir(parents=True, exist_ok=True)
