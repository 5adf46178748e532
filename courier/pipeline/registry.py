"""
Registry Resolver

Maps (category, sub_area) to a concrete note location and template.

The registry is held as an immutable snapshot. Reload builds a complete new
snapshot and publishes it with a single reference assignment, so concurrent
resolutions see either the old or the new mapping in full and never lock.

Lookup order:
1. exact (category, sub_area)
2. (category, default)
3. global fallback, tagged needs_review
"""

import json
import logging
import threading
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

from pydantic import BaseModel, Field, ValidationError, field_validator

from ..common.errors import Notice, RegistryError
from ..common.schemas import (
    Category,
    DEFAULT_ANCHORS,
    DEFAULT_TEMPLATES,
    ResolutionMatch,
    TargetLocation,
    TemplateId,
)

logger = logging.getLogger("courier.pipeline.registry")

DEFAULT_KEY = "default"
DEFAULT_FALLBACK_PATH = "Inbox/Needs Review.md"


def normalize_sub_area(sub_area: Optional[str]) -> str:
    """Registry key for a sub-area: case-insensitive, whitespace-collapsed."""
    if sub_area is None:
        return DEFAULT_KEY
    key = " ".join(str(sub_area).split()).casefold()
    return key or DEFAULT_KEY


def _check_path(path: str) -> str:
    path = path.strip()
    if not path:
        raise ValueError("path must not be empty")
    pure = PurePosixPath(path)
    if pure.is_absolute() or ".." in pure.parts:
        raise ValueError(f"path must be relative to the vault: {path!r}")
    return str(pure)


# =============================================================================
# Registry document
# =============================================================================

class RegistryEntry(BaseModel):
    """One mapping row of the registry document"""
    category: Category
    sub_area: Optional[str] = None
    path: str
    template: Optional[TemplateId] = None
    anchor: Optional[str] = None

    @field_validator("path")
    @classmethod
    def validate_path(cls, value: str) -> str:
        return _check_path(value)

    @property
    def key(self) -> Tuple[Category, str]:
        return self.category, normalize_sub_area(self.sub_area)


class FallbackEntry(BaseModel):
    path: str = DEFAULT_FALLBACK_PATH
    template: TemplateId = TemplateId.REVIEW
    anchor: Optional[str] = None

    @field_validator("path")
    @classmethod
    def validate_path(cls, value: str) -> str:
        return _check_path(value)


class RegistryDocument(BaseModel):
    version: int = Field(default=0, ge=0)
    fallback: FallbackEntry = Field(default_factory=FallbackEntry)
    entries: List[RegistryEntry] = Field(default_factory=list)


@dataclass(frozen=True)
class RegistrySnapshot:
    """Immutable, fully built view of one registry document version"""
    version: int
    targets: Mapping[Tuple[Category, str], TargetLocation]
    fallback: TargetLocation
    source: Optional[str] = None

    @classmethod
    def from_document(cls, data: Any, source: Optional[str] = None) -> "RegistrySnapshot":
        try:
            document = RegistryDocument.model_validate(data)
        except ValidationError as e:
            raise RegistryError(f"Invalid registry document{f' {source}' if source else ''}: {e}") from e

        targets: Dict[Tuple[Category, str], TargetLocation] = {}
        for entry in document.entries:
            template = entry.template or DEFAULT_TEMPLATES[entry.category]
            key = entry.key
            if key in targets:
                logger.debug("Registry entry %s overrides an earlier one", key)
            targets[key] = TargetLocation(
                path=entry.path,
                template=template,
                anchor=entry.anchor or DEFAULT_ANCHORS[template],
                category=entry.category,
                sub_area=None if key[1] == DEFAULT_KEY else entry.sub_area,
                match=ResolutionMatch.CATEGORY_DEFAULT if key[1] == DEFAULT_KEY else ResolutionMatch.EXACT,
                registry_version=document.version,
            )

        fallback = TargetLocation(
            path=document.fallback.path,
            template=document.fallback.template,
            anchor=document.fallback.anchor or DEFAULT_ANCHORS[document.fallback.template],
            category=Category.NEEDS_REVIEW,
            match=ResolutionMatch.FALLBACK,
            registry_version=document.version,
        )
        return cls(
            version=document.version,
            targets=MappingProxyType(targets),
            fallback=fallback,
            source=source,
        )

    @classmethod
    def from_path(cls, path: Union[str, Path]) -> "RegistrySnapshot":
        path = Path(path).expanduser()
        try:
            with open(path, encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError as e:
            raise RegistryError(f"Registry file not found: {path}") from e
        except (json.JSONDecodeError, OSError) as e:
            raise RegistryError(f"Failed to read registry {path}: {e}") from e
        return cls.from_document(data, source=str(path))

    def __len__(self) -> int:
        return len(self.targets)


# =============================================================================
# Resolver
# =============================================================================

class RegistryResolver:
    """
    Resolves categories to note locations against the current snapshot.

    Usage:
        resolver = RegistryResolver.from_path("registry.json")
        target = resolver.resolve(Category.PROJECTS, "House")
        resolver.reload()  # atomically swaps in the re-read document
    """

    def __init__(self, snapshot: RegistrySnapshot, source: Optional[Union[str, Path]] = None):
        self._snapshot = snapshot
        self._source = Path(source) if source else (Path(snapshot.source) if snapshot.source else None)
        self._reload_lock = threading.Lock()

    @classmethod
    def from_path(cls, path: Union[str, Path]) -> "RegistryResolver":
        snapshot = RegistrySnapshot.from_path(path)
        logger.info("Loaded registry v%d (%d entries) from %s", snapshot.version, len(snapshot), path)
        return cls(snapshot, source=path)

    @property
    def snapshot(self) -> RegistrySnapshot:
        return self._snapshot

    @property
    def version(self) -> int:
        return self._snapshot.version

    def resolve(self, category: Union[Category, str], sub_area: Optional[str] = None) -> TargetLocation:
        """Resolve to a target location. Never returns None and never raises for unknown input."""
        snapshot = self._snapshot  # one read: a concurrent reload cannot tear this lookup

        try:
            category = Category(category)
        except ValueError:
            logger.info("Unknown category %r resolved to fallback", category)
            return snapshot.fallback

        key = normalize_sub_area(sub_area)
        target = snapshot.targets.get((category, key))
        if target is None and key != DEFAULT_KEY:
            target = snapshot.targets.get((category, DEFAULT_KEY))
            if target is not None:
                logger.debug("No entry for (%s, %r), using category default", category.value, sub_area)
        if target is None:
            logger.info("%s: no registry entry for (%s, %r)", Notice.RESOLUTION_FALLBACK.value, category.value, sub_area)
            target = snapshot.fallback

        if target is None:
            raise RegistryError("Registry resolved to no target")
        return target

    def reload(self, path: Optional[Union[str, Path]] = None, *, allow_downgrade: bool = False) -> RegistrySnapshot:
        """Re-read the registry source and publish it.

        On any error the active snapshot stays in place and RegistryError is raised.
        """
        source = Path(path) if path else self._source
        if source is None:
            raise RegistryError("Registry has no source to reload from")

        with self._reload_lock:
            snapshot = RegistrySnapshot.from_path(source)
            current = self._snapshot
            if snapshot.version < current.version and not allow_downgrade:
                raise RegistryError(
                    f"Refusing to reload registry v{snapshot.version} over active v{current.version}"
                )
            self._snapshot = snapshot
            self._source = source

        logger.info(
            "Registry reloaded: v%d -> v%d (%d entries)",
            current.version, snapshot.version, len(snapshot),
        )
        return snapshot
