"""memsearch configuration loader.

Priority (high → low):
  1. CLI flags              (handled at call site, not in this module)
  2. Environment variables  (MEMSEARCH_PROVIDER, MEMSEARCH_EMBEDDING_MODEL, MEMSEARCH_DB)
  3. Per-project memsearch.yaml
  4. Global ~/.memsearch/config.yaml  (no API keys)
  5. Hardcoded defaults

The raw YAML keeps two layers for memory search: ``memory_search:`` holds the
deployment defaults and ``agents.<id>.memory_search:`` holds per-agent
overrides.  ``resolve_config()`` folds both into an immutable ResolvedConfig.

Global config must never contain API keys; use environment variables instead.
All YAML reads use yaml.safe_load(), never yaml.load().
"""

from __future__ import annotations

import hashlib
import json
import os
import re
import warnings
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

import yaml

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

_GLOBAL_CONFIG_DIR: Path = Path.home() / ".memsearch"
_GLOBAL_CONFIG_PATH: Path = _GLOBAL_CONFIG_DIR / "config.yaml"
_PROJECT_CONFIG_NAME: str = "memsearch.yaml"

_API_KEY_RE: re.Pattern[str] = re.compile(
    r"api[_\-]?(?:key|secret)"
    r"|_token$"
    r"|^token$"
    r"|_secret$"
    r"|^secret$"
    r"|passw(?:ord|d)"
    r"|credential",
    re.IGNORECASE,
)

_KNOWN_SECTIONS: frozenset[str] = frozenset(
    ["database", "workspace", "memory_search", "agents"]
)

VALID_SOURCES: tuple[str, ...] = ("notes", "workspace", "sessions")

DEFAULT_SOURCE = "notes"
DEFAULT_OPENAI_MODEL = "text-embedding-3-small"
DEFAULT_GEMINI_MODEL = "gemini-embedding-001"
DEFAULT_LOCAL_MODEL = "text-embedding-3-small"
DEFAULT_CHUNK_TOKENS = 400
DEFAULT_CHUNK_OVERLAP = 80
DEFAULT_MAX_RESULTS = 6
DEFAULT_MIN_SCORE = 0.35
DEFAULT_HYBRID_ENABLED = True
DEFAULT_VECTOR_WEIGHT = 0.7
DEFAULT_TEXT_WEIGHT = 0.3
DEFAULT_CANDIDATE_MULTIPLIER = 4
DEFAULT_CACHE_ENABLED = True
DEFAULT_WATCH_DEBOUNCE_MS = 1500
DEFAULT_SESSION_DELTA_BYTES = 100_000
DEFAULT_SESSION_DELTA_MESSAGES = 50


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class ConfigError(ValueError):
    """Raised when a config file contains an invalid or forbidden value."""


# ---------------------------------------------------------------------------
# Resolved (per-manager) configuration
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class BatchCfg:
    """Asynchronous batch embedding settings (memory_search.remote.batch)."""

    enabled: bool = True
    wait: bool = True
    concurrency: int = 2
    poll_interval_ms: int = 2_000
    timeout_minutes: int = 60


@dataclass(frozen=True)
class RemoteCfg:
    """Remote provider endpoint (memory_search.remote)."""

    base_url: str = ""
    api_key: str = ""
    headers: tuple[tuple[str, str], ...] = ()
    batch: BatchCfg = field(default_factory=BatchCfg)


@dataclass(frozen=True)
class LocalCfg:
    """OpenAI-compatible local embedding server (memory_search.local)."""

    base_url: str = ""
    api_key: str = ""


@dataclass(frozen=True)
class VectorCfg:
    enabled: bool = True
    dims: int = 0  # 0 = learn from the first embedding


@dataclass(frozen=True)
class FtsCfg:
    enabled: bool = True


@dataclass(frozen=True)
class StoreCfg:
    vector: VectorCfg = field(default_factory=VectorCfg)
    fts: FtsCfg = field(default_factory=FtsCfg)


@dataclass(frozen=True)
class ChunkingCfg:
    tokens: int = DEFAULT_CHUNK_TOKENS
    overlap: int = DEFAULT_CHUNK_OVERLAP


@dataclass(frozen=True)
class SessionSyncCfg:
    delta_bytes: int = DEFAULT_SESSION_DELTA_BYTES
    delta_messages: int = DEFAULT_SESSION_DELTA_MESSAGES


@dataclass(frozen=True)
class SyncCfg:
    """When the index sweep runs (memory_search.sync)."""

    on_session_start: bool = True
    on_search: bool = True
    watch: bool = True
    watch_debounce_ms: int = DEFAULT_WATCH_DEBOUNCE_MS
    interval_minutes: int = 0
    sessions: SessionSyncCfg = field(default_factory=SessionSyncCfg)


@dataclass(frozen=True)
class HybridCfg:
    enabled: bool = DEFAULT_HYBRID_ENABLED
    vector_weight: float = DEFAULT_VECTOR_WEIGHT
    text_weight: float = DEFAULT_TEXT_WEIGHT
    candidate_multiplier: int = DEFAULT_CANDIDATE_MULTIPLIER


@dataclass(frozen=True)
class QueryCfg:
    """Query-time ranking and result budget (memory_search.query).

    Attributes:
        max_results: Result-count cap when the caller gives none.
        min_score: Results scoring below this are dropped (0..1).
        max_injected_chars: Total snippet character budget; 0 disables the clamp.
        hybrid: Weighted merge settings.
    """

    max_results: int = DEFAULT_MAX_RESULTS
    min_score: float = DEFAULT_MIN_SCORE
    max_injected_chars: int = 0
    hybrid: HybridCfg = field(default_factory=HybridCfg)


@dataclass(frozen=True)
class CacheCfg:
    enabled: bool = DEFAULT_CACHE_ENABLED
    max_entries: int = 0  # 0 = unbounded


@dataclass(frozen=True)
class ExperimentalCfg:
    session_memory: bool = False


@dataclass(frozen=True)
class ResolvedConfig:
    """Immutable memory search configuration for one Manager instance.

    Built by resolve_config(); never mutated afterwards.  A config change
    produces a different fingerprint and therefore a different Manager.
    """

    sources: tuple[str, ...] = (DEFAULT_SOURCE,)
    extra_paths: tuple[str, ...] = ()
    provider: str = "auto"
    model: str = ""
    fallback: str = "none"
    remote: RemoteCfg = field(default_factory=RemoteCfg)
    local: LocalCfg = field(default_factory=LocalCfg)
    store: StoreCfg = field(default_factory=StoreCfg)
    chunking: ChunkingCfg = field(default_factory=ChunkingCfg)
    sync: SyncCfg = field(default_factory=SyncCfg)
    query: QueryCfg = field(default_factory=QueryCfg)
    cache: CacheCfg = field(default_factory=CacheCfg)
    experimental: ExperimentalCfg = field(default_factory=ExperimentalCfg)

    def has_source(self, source: str) -> bool:
        return source in self.sources


# ---------------------------------------------------------------------------
# Application (file-level) configuration
# ---------------------------------------------------------------------------


@dataclass
class AppConfig:
    """Root configuration object, built by load_config() from merged YAML layers.

    Attributes:
        database: Path of the SQLite database file.
        workspace: Workspace directory reported by status (informational).
        memory_search: Raw ``memory_search:`` defaults section.
        agents: Raw per-agent sections, keyed by agent id.
    """

    database: str = ".memsearch.db"
    workspace: str = ""
    memory_search: dict[str, Any] = field(default_factory=dict)
    agents: dict[str, dict[str, Any]] = field(default_factory=dict)

    def resolve_for(self, agent_id: str = "") -> ResolvedConfig | None:
        """Resolve the memory search config for *agent_id* (None when disabled)."""
        overrides = (self.agents.get(agent_id) or {}).get("memory_search") if agent_id else None
        return resolve_config(self.memory_search, overrides)


# ---------------------------------------------------------------------------
# Validation helpers
# ---------------------------------------------------------------------------


def _check_no_api_keys(data: dict[str, Any], source: Path) -> None:
    """Raise ConfigError if *data* contains any API-key-like key names."""

    def _scan(obj: Any, path: str) -> None:
        if isinstance(obj, dict):
            for k, v in obj.items():
                full = f"{path}.{k}" if path else k
                if _API_KEY_RE.search(str(k)):
                    raise ConfigError(
                        f"Global config '{source}' contains a forbidden key '{full}'.\n"
                        f"  API keys must be set via environment variables, not config files.\n"
                        f"  Remove '{full}' from {source.name} and use:\n"
                        f"    export {str(k).upper().replace('-', '_')}=<value>"
                    )
                _scan(v, full)

    _scan(data, "")


def _warn_unknown_keys(data: dict[str, Any], source: Path) -> None:
    """Emit a UserWarning for unrecognised top-level keys."""
    for key in data:
        if key not in _KNOWN_SECTIONS:
            warnings.warn(
                f"Unknown config key '{key}' in '{source}'; ignored.",
                UserWarning,
                stacklevel=4,
            )


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Return a new dict that is *base* deep-merged with *override*."""
    result = dict(base)
    for k, v in override.items():
        if k in result and isinstance(result[k], dict) and isinstance(v, dict):
            result[k] = _deep_merge(result[k], v)
        else:
            result[k] = v
    return result


# ---------------------------------------------------------------------------
# Resolution: override → default → built-in
# ---------------------------------------------------------------------------


def _lookup(section: dict[str, Any] | None, dotted: str) -> Any:
    node: Any = section or {}
    for part in dotted.split("."):
        if not isinstance(node, dict) or part not in node:
            return None
        node = node[part]
    return node


def _pick(overrides: dict | None, defaults: dict | None, key: str, builtin: Any) -> Any:
    """Return the first set value for *key*: override, then default, then built-in.

    Empty strings and non-positive numbers count as "unset", matching how the
    sections are written by hand (``model: ""`` means "use the default").
    """
    for layer in (overrides, defaults):
        value = _lookup(layer, key)
        if value is None:
            continue
        if isinstance(value, str) and not value.strip():
            continue
        if isinstance(builtin, bool):
            return bool(value)
        if isinstance(builtin, int) and not isinstance(value, bool):
            if int(value) <= 0:
                continue
            return int(value)
        if isinstance(builtin, float):
            if float(value) <= 0:
                continue
            return float(value)
        return str(value).strip() if isinstance(builtin, str) else value
    return builtin


def _normalize_sources(raw: list[Any], session_memory: bool) -> tuple[str, ...]:
    out: list[str] = []
    for item in raw or [DEFAULT_SOURCE]:
        name = str(item).strip().lower()
        if name == "memory":
            name = "notes"
        if name not in VALID_SOURCES or name in out:
            continue
        if name == "sessions" and not session_memory:
            continue
        out.append(name)
    return tuple(out) if out else (DEFAULT_SOURCE,)


def _dedupe(values: list[Any]) -> tuple[str, ...]:
    seen: list[str] = []
    for value in values:
        text = str(value).strip()
        if text and text not in seen:
            seen.append(text)
    return tuple(seen)


def _merge_headers(base: Any, override: Any) -> tuple[tuple[str, str], ...]:
    merged: dict[str, str] = {}
    for layer in (base, override):
        if isinstance(layer, dict):
            merged.update({str(k): str(v) for k, v in layer.items()})
    return tuple(sorted(merged.items()))


def _as_list(value: Any) -> list[Any]:
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return list(value)
    return [value]


def resolve_config(
    defaults: dict[str, Any] | None,
    overrides: dict[str, Any] | None = None,
) -> ResolvedConfig | None:
    """Fold the defaults and per-agent overrides into a ResolvedConfig.

    Args:
        defaults: Raw ``memory_search:`` section (may be None).
        overrides: Raw ``agents.<id>.memory_search:`` section (may be None).

    Returns:
        The resolved config, or None when memory search is disabled.
    """
    d, o = defaults or {}, overrides or {}

    enabled = _pick(o, d, "enabled", True)
    if _lookup(o, "enabled") is False or (_lookup(o, "enabled") is None and _lookup(d, "enabled") is False):
        enabled = False
    if not enabled:
        return None

    session_memory = _pick(o, d, "experimental.session_memory", False)
    provider = _pick(o, d, "provider", "auto").lower()
    fallback = _pick(o, d, "fallback", "none").lower()

    model_default = {
        "openai": DEFAULT_OPENAI_MODEL,
        "gemini": DEFAULT_GEMINI_MODEL,
        "local": DEFAULT_LOCAL_MODEL,
    }.get(provider, "")
    model = _pick(o, d, "model", model_default)

    sources = _normalize_sources(
        _as_list(_lookup(d, "sources")) + _as_list(_lookup(o, "sources")), session_memory
    )
    extra_paths = _dedupe(_as_list(_lookup(d, "extra_paths")) + _as_list(_lookup(o, "extra_paths")))

    remote = RemoteCfg(
        base_url=_pick(o, d, "remote.base_url", ""),
        api_key=_pick(o, d, "remote.api_key", ""),
        headers=_merge_headers(_lookup(d, "remote.headers"), _lookup(o, "remote.headers")),
        batch=BatchCfg(
            enabled=_pick(o, d, "remote.batch.enabled", True),
            wait=_pick(o, d, "remote.batch.wait", True),
            concurrency=max(1, _pick(o, d, "remote.batch.concurrency", 2)),
            poll_interval_ms=max(100, _pick(o, d, "remote.batch.poll_interval_ms", 2_000)),
            timeout_minutes=max(1, _pick(o, d, "remote.batch.timeout_minutes", 60)),
        ),
    )
    local = LocalCfg(
        base_url=_pick(o, d, "local.base_url", ""),
        api_key=_pick(o, d, "local.api_key", ""),
    )
    store = StoreCfg(
        vector=VectorCfg(
            enabled=_pick(o, d, "store.vector.enabled", True),
            dims=max(0, _pick(o, d, "store.vector.dims", 0)),
        ),
        fts=FtsCfg(enabled=_pick(o, d, "store.fts.enabled", True)),
    )

    tokens = _pick(o, d, "chunking.tokens", DEFAULT_CHUNK_TOKENS)
    overlap = _lookup(o, "chunking.overlap")
    if overlap is None:
        overlap = _lookup(d, "chunking.overlap")
    overlap = DEFAULT_CHUNK_OVERLAP if overlap is None else max(0, int(overlap))
    if overlap >= tokens:
        overlap = max(0, tokens - 1)

    sync = SyncCfg(
        on_session_start=_pick(o, d, "sync.on_session_start", True),
        on_search=_pick(o, d, "sync.on_search", True),
        watch=_pick(o, d, "sync.watch", True),
        watch_debounce_ms=_pick(o, d, "sync.watch_debounce_ms", DEFAULT_WATCH_DEBOUNCE_MS),
        interval_minutes=_pick(o, d, "sync.interval_minutes", 0),
        sessions=SessionSyncCfg(
            delta_bytes=_pick(o, d, "sync.sessions.delta_bytes", DEFAULT_SESSION_DELTA_BYTES),
            delta_messages=_pick(o, d, "sync.sessions.delta_messages", DEFAULT_SESSION_DELTA_MESSAGES),
        ),
    )

    min_score = _lookup(o, "query.min_score")
    if min_score is None:
        min_score = _lookup(d, "query.min_score")
    min_score = DEFAULT_MIN_SCORE if min_score is None else float(min_score)
    min_score = min(max(min_score, 0.0), 1.0)

    vector_weight = _lookup(o, "query.hybrid.vector_weight")
    if vector_weight is None:
        vector_weight = _lookup(d, "query.hybrid.vector_weight")
    text_weight = _lookup(o, "query.hybrid.text_weight")
    if text_weight is None:
        text_weight = _lookup(d, "query.hybrid.text_weight")
    vector_weight = min(max(float(DEFAULT_VECTOR_WEIGHT if vector_weight is None else vector_weight), 0.0), 1.0)
    text_weight = min(max(float(DEFAULT_TEXT_WEIGHT if text_weight is None else text_weight), 0.0), 1.0)
    total = vector_weight + text_weight
    if total <= 0:
        vector_weight, text_weight = DEFAULT_VECTOR_WEIGHT, DEFAULT_TEXT_WEIGHT
    else:
        vector_weight, text_weight = vector_weight / total, text_weight / total

    query = QueryCfg(
        max_results=_pick(o, d, "query.max_results", DEFAULT_MAX_RESULTS),
        min_score=min_score,
        max_injected_chars=_pick(o, d, "query.max_injected_chars", 0),
        hybrid=HybridCfg(
            enabled=_pick(o, d, "query.hybrid.enabled", DEFAULT_HYBRID_ENABLED),
            vector_weight=vector_weight,
            text_weight=text_weight,
            candidate_multiplier=min(
                max(_pick(o, d, "query.hybrid.candidate_multiplier", DEFAULT_CANDIDATE_MULTIPLIER), 1),
                20,
            ),
        ),
    )
    cache = CacheCfg(
        enabled=_pick(o, d, "cache.enabled", DEFAULT_CACHE_ENABLED),
        max_entries=_pick(o, d, "cache.max_entries", 0),
    )

    return ResolvedConfig(
        sources=sources,
        extra_paths=extra_paths,
        provider=provider,
        model=model,
        fallback=fallback,
        remote=remote,
        local=local,
        store=store,
        chunking=ChunkingCfg(tokens=tokens, overlap=overlap),
        sync=sync,
        query=query,
        cache=cache,
        experimental=ExperimentalCfg(session_memory=session_memory),
    )


def config_fingerprint(cfg: ResolvedConfig) -> str:
    """Return a stable sha256 over every field that affects Manager behaviour.

    Sources and extra paths are order-insensitive; header values and the API
    key never appear in clear.
    """
    payload = asdict(cfg)
    payload["sources"] = sorted(cfg.sources)
    payload["extra_paths"] = sorted(cfg.extra_paths)
    payload["remote"]["headers"] = sorted(name.strip().lower() for name, _ in cfg.remote.headers)
    payload["remote"]["api_key"] = _hash_secret(cfg.remote.api_key)
    payload["local"]["api_key"] = _hash_secret(cfg.local.api_key)
    raw = json.dumps(payload, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def _hash_secret(value: str) -> str:
    value = value.strip()
    if not value:
        return ""
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def _apply_env_overrides(cfg: AppConfig) -> AppConfig:
    """Apply MEMSEARCH_* environment variable overrides."""
    if provider := os.environ.get("MEMSEARCH_PROVIDER"):
        cfg.memory_search = _deep_merge(cfg.memory_search, {"provider": provider})
    if model := os.environ.get("MEMSEARCH_EMBEDDING_MODEL"):
        cfg.memory_search = _deep_merge(cfg.memory_search, {"model": model})
    if db := os.environ.get("MEMSEARCH_DB"):
        cfg.database = db
    return cfg


def _cfg_from_dict(data: dict[str, Any]) -> AppConfig:
    cfg = AppConfig()
    if "database" in data and data["database"]:
        cfg.database = str(data["database"])
    if "workspace" in data and data["workspace"]:
        cfg.workspace = str(data["workspace"])
    section = data.get("memory_search")
    if section is not None and not isinstance(section, dict):
        raise ConfigError("memory_search must be a mapping")
    cfg.memory_search = dict(section or {})
    agents = data.get("agents") or {}
    if not isinstance(agents, dict):
        raise ConfigError("agents must be a mapping of agent id → settings")
    cfg.agents = {str(k): dict(v or {}) for k, v in agents.items()}
    return cfg


def load_config(
    project_dir: Path | None = None,
    *,
    global_config_path: Path | None = None,
) -> AppConfig:
    """Load and return a merged *AppConfig*.

    Applies layers in order: global → per-project → env vars.

    Args:
        project_dir: Directory to search for *memsearch.yaml*. Defaults to CWD.
        global_config_path: Override the global config path (for testing).

    Raises:
        ConfigError: If global config contains API-key-like fields, or a section
            has the wrong shape.
    """
    global_path = global_config_path if global_config_path is not None else _GLOBAL_CONFIG_PATH
    search_dir = project_dir if project_dir is not None else Path.cwd()

    merged: dict[str, Any] = {}

    if global_path.exists():
        raw_global = yaml.safe_load(global_path.read_text(encoding="utf-8")) or {}
        _check_no_api_keys(raw_global, global_path)
        _warn_unknown_keys(raw_global, global_path)
        merged = _deep_merge(merged, raw_global)

    project_cfg_path = search_dir / _PROJECT_CONFIG_NAME
    if project_cfg_path.exists():
        raw_project = yaml.safe_load(project_cfg_path.read_text(encoding="utf-8")) or {}
        _warn_unknown_keys(raw_project, project_cfg_path)
        merged = _deep_merge(merged, raw_project)

    return _apply_env_overrides(_cfg_from_dict(merged))
