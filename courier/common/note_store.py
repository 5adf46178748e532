"""
Note Store Clients

The content writer depends only on four operations: list, read, create and
append (optionally anchored under a heading). Two backends implement them:

- RestNoteStore: a vault exposed over an Obsidian Local REST API-style HTTP API
- LocalNoteStore: a directory of Markdown files on disk

Backends translate their failures into the NoteStoreError hierarchy so the
writer can decide what is worth retrying.
"""

import asyncio
import logging
import os
import re
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path, PurePosixPath
from typing import List, Optional, Tuple
from urllib.parse import quote

import httpx

from .errors import (
    NoteConflictError,
    NoteNotFoundError,
    NoteStoreError,
    NoteStoreUnavailable,
)

logger = logging.getLogger("courier.common.note_store")

HEADING_RE = re.compile(r"^(#{1,6})\s+(.*?)\s*#*\s*$")
LIST_ITEM_RE = re.compile(r"^\s*(?:[-*+]\s|\d+[.)]\s)")


# =============================================================================
# Markdown helpers
# =============================================================================

def _normalize_anchor(anchor: str) -> str:
    return anchor.strip().lstrip("#").strip().casefold()


def _find_heading(lines: List[str], anchor: str) -> Tuple[Optional[int], int]:
    wanted = _normalize_anchor(anchor)
    for i, line in enumerate(lines):
        match = HEADING_RE.match(line)
        if match and match.group(2).strip().casefold() == wanted:
            return i, len(match.group(1))
    return None, 0


def has_heading(document: str, anchor: str) -> bool:
    index, _ = _find_heading(document.split("\n"), anchor)
    return index is not None


def _needs_gap(previous: str, first: str) -> bool:
    """Consecutive list items stay tight; anything else gets a blank line."""
    return not (LIST_ITEM_RE.match(previous) and LIST_ITEM_RE.match(first))


def insert_under_heading(document: str, anchor: str, block: str) -> str:
    """Insert ``block`` at the end of the section headed by ``anchor``.

    The section ends at the next heading of the same or higher level. All
    existing content is preserved. Raises ValueError if the heading is absent.
    """
    lines = document.split("\n")
    index, level = _find_heading(lines, anchor)
    if index is None:
        raise ValueError(f"Heading not found: {anchor}")

    end = len(lines)
    for i in range(index + 1, len(lines)):
        match = HEADING_RE.match(lines[i])
        if match and len(match.group(1)) <= level:
            end = i
            break

    before = lines[:end]
    after = lines[end:]
    while len(before) > index + 1 and not before[-1].strip():
        before.pop()

    block_lines = block.strip("\n").split("\n")
    if _needs_gap(before[-1], block_lines[0]):
        before.append("")

    result = before + block_lines
    result += ([""] + after) if after else [""]
    return "\n".join(result)


def append_at_end(document: str, block: str) -> str:
    lines = document.rstrip("\n").split("\n") if document.strip() else []
    block_lines = block.strip("\n").split("\n")
    if lines and _needs_gap(lines[-1], block_lines[0]):
        lines.append("")
    return "\n".join(lines + block_lines + [""])


# =============================================================================
# Interface
# =============================================================================

class NoteStore(ABC):
    """Minimal note-store interface consumed by the content writer."""

    @abstractmethod
    async def list(self, path: str = "") -> List[str]:
        """List entries of a folder. Sub-folders end with '/'."""
        pass

    @abstractmethod
    async def read(self, path: str) -> str:
        pass

    @abstractmethod
    async def create(self, path: str, content: str) -> None:
        pass

    @abstractmethod
    async def append(self, path: str, content: str, anchor: Optional[str] = None) -> None:
        """Append content, under ``anchor`` heading when given."""
        pass

    async def exists(self, path: str) -> bool:
        """Check existence by listing the parent folder."""
        parent = str(PurePosixPath(path).parent)
        parent = "" if parent == "." else parent
        name = PurePosixPath(path).name
        try:
            entries = await self.list(parent)
        except NoteNotFoundError:
            return False
        return name in entries

    async def close(self) -> None:
        pass


# =============================================================================
# REST backend
# =============================================================================

class RestNoteStore(NoteStore):
    """
    HTTP client for a vault served by the Obsidian Local REST API (or any
    server speaking the same dialect).

    Usage:
        store = RestNoteStore("https://127.0.0.1:27124", api_key="...")
        await store.append("Projects/House.md", "- [ ] Fix faucet\\n", anchor="Tasks")
        await store.close()
    """

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        timeout: float = 10.0,
        verify_tls: bool = True,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        headers = {}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers=headers,
            timeout=httpx.Timeout(timeout),
            verify=verify_tls,
            transport=transport,
        )

    @staticmethod
    def _vault_url(path: str, folder: bool = False) -> str:
        clean = path.strip("/")
        url = "/vault/" + quote(clean, safe="/")
        if folder and clean:
            url += "/"
        return url

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            raise NoteStoreUnavailable(f"{method} {path} timed out") from e
        except httpx.TransportError as e:
            raise NoteStoreUnavailable(f"{method} {path} transport error: {e}") from e

        status = response.status_code
        if status < 400:
            return response

        detail = response.text[:200]
        message = f"{method} {path} -> HTTP {status}: {detail}"
        if status == 404:
            raise NoteNotFoundError(message, status=status)
        if status in (409, 412):
            raise NoteConflictError(message, status=status)
        if status == 429 or status >= 500:
            raise NoteStoreUnavailable(message, status=status)
        raise NoteStoreError(message, status=status, retryable=False)

    async def list(self, path: str = "") -> List[str]:
        response = await self._request("GET", self._vault_url(path, folder=True) if path else "/vault/")
        try:
            files = response.json().get("files", [])
        except ValueError as e:
            raise NoteStoreError(f"Invalid listing for {path!r}", retryable=True) from e
        return [str(f) for f in files]

    async def read(self, path: str) -> str:
        response = await self._request(
            "GET", self._vault_url(path), headers={"Accept": "text/markdown"},
        )
        return response.text

    async def create(self, path: str, content: str) -> None:
        await self._request(
            "PUT",
            self._vault_url(path),
            content=content.encode("utf-8"),
            headers={"Content-Type": "text/markdown"},
        )

    async def append(self, path: str, content: str, anchor: Optional[str] = None) -> None:
        headers = {"Content-Type": "text/markdown"}
        if anchor:
            headers.update({
                "Operation": "append",
                "Target-Type": "heading",
                "Target": quote(anchor.strip().lstrip("#").strip()),
            })
            method = "PATCH"
        else:
            method = "POST"
        await self._request(method, self._vault_url(path), content=content.encode("utf-8"), headers=headers)

    async def close(self) -> None:
        await self._client.aclose()


# =============================================================================
# Filesystem backend
# =============================================================================

class LocalNoteStore(NoteStore):
    """Markdown files under a root directory. Appends replace the file atomically."""

    def __init__(self, root: str):
        self.root = Path(root).expanduser()
        self._lock = asyncio.Lock()

    def _resolve(self, path: str) -> Path:
        target = (self.root / path.strip("/")).resolve()
        root = self.root.resolve()
        if target != root and root not in target.parents:
            raise NoteStoreError(f"Path escapes note root: {path}", status=400)
        return target

    async def list(self, path: str = "") -> List[str]:
        folder = self._resolve(path)

        def _list() -> List[str]:
            if not folder.is_dir():
                raise NoteNotFoundError(f"Folder not found: {path}", status=404)
            return sorted(
                entry.name + ("/" if entry.is_dir() else "") for entry in folder.iterdir()
            )

        return await asyncio.to_thread(_list)

    async def read(self, path: str) -> str:
        target = self._resolve(path)

        def _read() -> str:
            if not target.is_file():
                raise NoteNotFoundError(f"Note not found: {path}", status=404)
            return target.read_text(encoding="utf-8")

        return await asyncio.to_thread(_read)

    async def create(self, path: str, content: str) -> None:
        target = self._resolve(path)

        def _create() -> None:
            target.parent.mkdir(parents=True, exist_ok=True)
            try:
                with open(target, "x", encoding="utf-8") as f:
                    f.write(content)
            except FileExistsError as e:
                raise NoteConflictError(f"Note already exists: {path}", status=409) from e

        async with self._lock:
            await asyncio.to_thread(_create)

    async def append(self, path: str, content: str, anchor: Optional[str] = None) -> None:
        target = self._resolve(path)

        def _append() -> None:
            if not target.is_file():
                raise NoteNotFoundError(f"Note not found: {path}", status=404)
            document = target.read_text(encoding="utf-8")
            if anchor:
                try:
                    updated = insert_under_heading(document, anchor, content)
                except ValueError as e:
                    raise NoteStoreError(str(e), status=400, retryable=False) from e
            else:
                updated = append_at_end(document, content)
            _atomic_write(target, updated)

        async with self._lock:
            await asyncio.to_thread(_append)


def _atomic_write(target: Path, text: str) -> None:
    fd, tmp_path = tempfile.mkstemp(dir=target.parent, prefix=f".{target.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(text)
        os.replace(tmp_path, target)
    except BaseException:
        if os.path.exists(tmp_path):
            os.unlink(tmp_path)
        raise
