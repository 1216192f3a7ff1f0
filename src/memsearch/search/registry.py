"""Process-wide SearchManager registry.

Managers are memoised by ``tenant:sha256(config fingerprint, db path)``. A
config change therefore yields a new key and a fresh Manager; live instances
are never mutated. Connection pools are shared per database path.
"""

from __future__ import annotations

import hashlib
import logging
import threading
from pathlib import Path

from memsearch.config import ResolvedConfig, config_fingerprint
from memsearch.db.connection import ConnectionPool, Database
from memsearch.embeddings.provider import resolve_provider
from memsearch.search.manager import SearchManager

logger = logging.getLogger(__name__)

DISABLED_PREFIX = "memory search disabled"


def manager_key(tenant: str, cfg: ResolvedConfig, db_path: str) -> str:
    digest = hashlib.sha256(f"{config_fingerprint(cfg)}\x00{db_path}".encode("utf-8")).hexdigest()
    return f"{tenant}:{digest}"


class ManagerRegistry:
    """Builds at most one SearchManager per (tenant, config, database)."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._managers: dict[str, SearchManager] = {}
        self._pools: dict[str, ConnectionPool] = {}

    def get_or_create(
        self,
        tenant: str,
        cfg: ResolvedConfig,
        db_path: str | Path,
        *,
        workspace_dir: str = "",
    ) -> SearchManager:
        """Return the Manager for the key, constructing it on first use.

        Raises:
            ValueError: If no embedding provider can be resolved for *cfg*.
        """
        path = str(Path(db_path).expanduser())
        key = manager_key(tenant, cfg, path)
        with self._lock:
            existing = self._managers.get(key)
            if existing is not None:
                return existing
            provider, status = resolve_provider(cfg)
            pool = self._pools.get(path)
            if pool is None:
                pool = ConnectionPool(Database(path))
                self._pools[path] = pool
            manager = SearchManager(
                tenant,
                cfg,
                pool,
                provider,
                status,
                db_path=path,
                workspace_dir=workspace_dir,
            )
            self._managers[key] = manager
            logger.debug("memory search manager created: %s provider=%s", key, provider.id)
            return manager

    def __len__(self) -> int:
        with self._lock:
            return len(self._managers)

    def close_all(self) -> None:
        """Stop every Manager and close the shared connection pools."""
        with self._lock:
            managers = list(self._managers.values())
            pools = list(self._pools.values())
            self._managers.clear()
            self._pools.clear()
        for manager in managers:
            manager.close()
        for pool in pools:
            pool.close()


_registry = ManagerRegistry()


def get_search_manager(
    tenant: str,
    config: ResolvedConfig | None,
    db_path: str | Path,
    *,
    workspace_dir: str = "",
    registry: ManagerRegistry | None = None,
) -> tuple[SearchManager | None, str]:
    """Return ``(manager, "")`` or ``(None, reason)``; never raises for config problems.

    Example:
        mgr, msg = get_search_manager("alice", None, "mem.db")
        # -> (None, "memory search disabled: disabled in config")
    """
    registry = registry if registry is not None else _registry
    tenant = (tenant or "").strip()
    if not tenant:
        return None, f"{DISABLED_PREFIX}: tenant is required"
    if config is None:
        return None, f"{DISABLED_PREFIX}: disabled in config"
    try:
        return registry.get_or_create(tenant, config, db_path, workspace_dir=workspace_dir), ""
    except ValueError as exc:
        return None, f"{DISABLED_PREFIX}: {exc}"


def close_all() -> None:
    _registry.close_all()
