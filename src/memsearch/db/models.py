"""Domain models for the memsearch database layer."""

from __future__ import annotations

import json
from dataclasses import dataclass, field


@dataclass
class FileEntry:
    path: str
    content: str
    hash: str
    source: str
    updated_at: int  # epoch milliseconds


@dataclass
class Chunk:
    """One chunker output span. Line numbers are 1-based and inclusive."""

    start_line: int
    end_line: int
    text: str
    hash: str


@dataclass
class StoredChunk:
    id: str
    path: str
    source: str
    start_line: int
    end_line: int
    text: str
    hash: str = ""
    model: str = ""
    generation: str = ""
    embedding: str = field(default_factory=lambda: "[]")
    updated_at: int = 0
    doc_hash: str = ""

    @property
    def embedding_list(self) -> list[float]:
        return json.loads(self.embedding) if self.embedding else []


@dataclass
class IndexMeta:
    """Sweep bookkeeping for one tenant: what the current index was built with."""

    provider: str
    model: str
    provider_key: str
    chunk_tokens: int
    chunk_overlap: int
    index_generation: str
    vector_dims: int = 0
    updated_at: int = 0


@dataclass
class SessionMessage:
    rowid: int
    session_key: str
    role: str
    text: str
    created_at: int


@dataclass
class SessionState:
    session_key: str
    last_rowid: int = 0
    pending_bytes: int = 0
    pending_messages: int = 0
