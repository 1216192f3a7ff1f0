"""Read-only status snapshot of a SearchManager."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field


@dataclass
class SourceCount:
    source: str
    files: int = 0
    chunks: int = 0


@dataclass
class CacheStatus:
    enabled: bool
    entries: int = 0
    max_entries: int = 0


@dataclass
class FtsStatus:
    enabled: bool
    available: bool
    error: str | None = None


@dataclass
class VectorStatus:
    """``available`` is None until a probe (or a vector query) has run."""

    enabled: bool
    available: bool | None = None
    error: str | None = None
    dims: int = 0


@dataclass
class BatchStatus:
    enabled: bool
    failures: int = 0
    limit: int = 2
    wait: bool = True
    concurrency: int = 2
    poll_interval_ms: int = 2_000
    timeout_ms: int = 3_600_000
    last_error: str | None = None
    last_provider: str | None = None


@dataclass
class SearchStatus:
    """Everything ``memsearch status`` renders.

    Attributes:
        provider: Resolved provider id.
        model: Resolved embedding model.
        requested_provider: Provider named in config ("auto" when unset).
        files: Total documents (files plus session files).
        chunks: Total chunks of the current generation.
        dirty: Whether a sweep is pending.
        sources: Enabled source names.
        source_counts: Per-source document and chunk counts.
        embedding_ok: Result of the embedding probe (deep status only).
        embedding_error: Error of the embedding probe, if it failed.
    """

    provider: str
    model: str
    requested_provider: str
    files: int
    chunks: int
    dirty: bool
    workspace_dir: str
    db_path: str
    sources: list[str]
    extra_paths: list[str]
    source_counts: list[SourceCount] = field(default_factory=list)
    cache: CacheStatus | None = None
    fts: FtsStatus | None = None
    vector: VectorStatus | None = None
    batch: BatchStatus | None = None
    fallback: dict | None = None
    generation: str = ""
    embedding_ok: bool | None = None
    embedding_error: str | None = None

    def to_dict(self) -> dict:
        return asdict(self)
