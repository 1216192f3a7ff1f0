"""Virtual text file store backing the memory index.

Paths are virtual: slash-separated, relative to the tenant's root, and never
allowed to escape it. ``MEMORY.md`` and ``memory/**`` are classified as the
"notes" source; anything else is "workspace".
"""

from __future__ import annotations

import hashlib
import logging
import posixpath

from memsearch.db.connection import ConnectionPool
from memsearch.db.models import FileEntry
from memsearch.db.repository import Repository, now_ms

logger = logging.getLogger(__name__)

NOTES_SOURCE = "notes"
WORKSPACE_SOURCE = "workspace"

DEFAULT_MEMORY_FILE = "MEMORY.md"
DEFAULT_MEMORY_CONTENT = "# Memory\n"


# ---------------------------------------------------------------------------
# Path helpers
# ---------------------------------------------------------------------------


def normalize_path(raw: str) -> str:
    """Normalise *raw* into a clean virtual path.

    Examples:
        "./memory/../MEMORY.md"  -> "MEMORY.md"
        "file:///notes\\\\a.md"  -> "notes/a.md"

    Raises:
        ValueError: If the path is empty or escapes the virtual root.
    """
    cleaned = (raw or "").strip().replace("\\", "/")
    if cleaned.startswith("file://"):
        cleaned = cleaned[len("file://"):]
    cleaned = cleaned.lstrip("/")
    while cleaned.startswith("./"):
        cleaned = cleaned[2:]
    if not cleaned:
        raise ValueError("path is required")
    cleaned = posixpath.normpath(cleaned)
    if cleaned in (".", ""):
        raise ValueError("path is required")
    if cleaned.startswith("..") or "/.." in cleaned:
        raise ValueError("path escapes virtual root")
    return cleaned


def is_memory_path(path: str) -> bool:
    """True for MEMORY.md / memory.md and anything under memory/."""
    normalized = path.strip().replace("\\", "/")
    if normalized.startswith("./"):
        normalized = normalized[2:]
    normalized = normalized.lstrip("/")
    if normalized in ("MEMORY.md", "memory.md"):
        return True
    return normalized.startswith("memory/")


def classify_source(path: str) -> str:
    return NOTES_SOURCE if is_memory_path(path) else WORKSPACE_SOURCE


def normalize_extra_paths(paths: tuple[str, ...] | list[str]) -> list[str]:
    """Normalise configured extra paths, dropping invalid and duplicate entries."""
    out: list[str] = []
    for raw in paths:
        try:
            path = normalize_path(raw)
        except ValueError:
            logger.debug("ignoring invalid extra path %r", raw)
            continue
        if path not in out:
            out.append(path)
    return out


def is_extra_path(path: str, extra_paths: list[str]) -> bool:
    """True when *path* equals an extra path or lies under an extra directory.

    An extra path ending in ``.md`` names a single file and matches
    case-insensitively; anything else is treated as a directory.
    """
    for extra in extra_paths:
        if extra.lower().endswith(".md"):
            if path.lower() == extra.lower():
                return True
            continue
        if path == extra or path.startswith(extra.rstrip("/") + "/"):
            return True
    return False


def is_allowed_memory_path(path: str, extra_paths: list[str]) -> bool:
    """True for any markdown document or anything covered by an extra path."""
    if path.strip().lower().endswith(".md"):
        return True
    return is_extra_path(path, extra_paths)


def session_path_for_key(session_key: str) -> str:
    cleaned = session_key.strip() or "main"
    cleaned = cleaned.replace("/", "_").replace("\\", "_")
    return f"sessions/{cleaned}.jsonl"


def normalize_newlines(text: str) -> str:
    return text.replace("\r\n", "\n").replace("\r", "\n")


def hash_text(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


class FileStore:
    """Read/write access to one tenant's virtual files.

    Each call borrows a pooled connection; the store itself holds no state
    beyond the tenant id, so one instance may be shared across threads.
    """

    def __init__(self, pool: ConnectionPool, tenant: str) -> None:
        self._pool = pool
        self.tenant = tenant

    def read(self, path: str) -> FileEntry | None:
        """Return the file at *path*, or None if it does not exist.

        Raises:
            ValueError: If *path* is not a valid virtual path.
        """
        path = normalize_path(path)
        with self._pool.acquire() as conn:
            return Repository(conn, self.tenant).get_file(path)

    def write(self, path: str, content: str) -> FileEntry:
        """Create or replace the file at *path* and return the stored entry."""
        path = normalize_path(path)
        entry = FileEntry(
            path=path,
            content=content,
            hash=hash_text(content),
            source=classify_source(path),
            updated_at=now_ms(),
        )
        with self._pool.acquire() as conn:
            Repository(conn, self.tenant).put_file(entry)
        logger.debug("wrote %s (%d chars)", path, len(content))
        return entry

    def write_if_missing(self, path: str, content: str) -> bool:
        """Create *path* with *content* unless it exists. Returns True if written."""
        path = normalize_path(path)
        entry = FileEntry(
            path=path,
            content=content,
            hash=hash_text(content),
            source=classify_source(path),
            updated_at=now_ms(),
        )
        with self._pool.acquire() as conn:
            return Repository(conn, self.tenant).insert_file_if_missing(entry)

    def delete(self, path: str) -> bool:
        path = normalize_path(path)
        with self._pool.acquire() as conn:
            return Repository(conn, self.tenant).delete_file(path)

    def list(self, prefix: str = "") -> list[FileEntry]:
        """Return every file under *prefix* ("" lists the whole store)."""
        prefix = normalize_path(prefix) if prefix.strip() else ""
        with self._pool.acquire() as conn:
            return Repository(conn, self.tenant).list_files(prefix)

    def append_session_message(self, session_key: str, role: str, text: str) -> int:
        """Append one chat transcript message. Returns the message rowid."""
        key = session_key.strip() or "main"
        with self._pool.acquire() as conn:
            return Repository(conn, self.tenant).append_session_message(key, role, text)
