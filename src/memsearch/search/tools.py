"""Plain-dict payloads for agent tools (memory_search / memory_get / status)."""

from __future__ import annotations

from memsearch.search.hybrid import SearchResult
from memsearch.search.manager import SearchManager
from memsearch.search.status import SearchStatus


def search_payload(manager: SearchManager, results: list[SearchResult]) -> dict:
    payload: dict = {
        "results": [r.to_dict() for r in results],
        "provider": manager.provider_status.provider,
        "model": manager.provider_status.model,
    }
    fallback = manager.provider_status.fallback
    if fallback is not None:
        payload["fallback"] = {"from": fallback.from_provider, "reason": fallback.reason}
    return payload


def status_payload(status: SearchStatus) -> dict:
    return status.to_dict()


def read_payload(result: dict) -> dict:
    return {"path": result.get("path", ""), "text": result.get("text", "")}
