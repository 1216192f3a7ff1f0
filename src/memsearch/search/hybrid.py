"""Ranking primitives: result types, bm25 rank mapping and the weighted merge."""

from __future__ import annotations

import math
from dataclasses import dataclass


@dataclass
class SearchResult:
    """One ranked hit. ``start_line``/``end_line`` are None for whole documents."""

    path: str
    start_line: int | None
    end_line: int | None
    score: float
    snippet: str
    source: str

    def to_dict(self) -> dict:
        return {
            "path": self.path,
            "start_line": self.start_line,
            "end_line": self.end_line,
            "score": self.score,
            "snippet": self.snippet,
            "source": self.source,
        }


@dataclass
class VectorHit:
    id: str
    path: str
    start_line: int
    end_line: int
    source: str
    snippet: str
    vector_score: float


@dataclass
class KeywordHit:
    id: str
    path: str
    start_line: int
    end_line: int
    source: str
    snippet: str
    text_score: float


def rank_to_score(rank: float) -> float:
    """Map an FTS5 bm25 rank (lower is better) into (0, 1].

    Non-finite ranks map to 1/1000; negative ranks clamp to 0 (score 1.0).
    """
    if not math.isfinite(rank):
        return 1 / (1 + 999)
    return 1 / (1 + max(rank, 0.0))


def merge_hybrid_results(
    vector: list[VectorHit],
    keyword: list[KeywordHit],
    vector_weight: float,
    text_weight: float,
) -> list[SearchResult]:
    """Union both signals by chunk id and rank by the weighted score.

    A chunk missing from one side scores 0 on that side. When both sides hit
    the same chunk, a non-empty keyword snippet wins.
    """
    entries: dict[str, dict] = {}
    for hit in vector:
        entries[hit.id] = {
            "path": hit.path,
            "start_line": hit.start_line,
            "end_line": hit.end_line,
            "source": hit.source,
            "snippet": hit.snippet,
            "vector": hit.vector_score,
            "text": 0.0,
        }
    for hit in keyword:
        existing = entries.get(hit.id)
        if existing is not None:
            existing["text"] = hit.text_score
            if hit.snippet:
                existing["snippet"] = hit.snippet
            continue
        entries[hit.id] = {
            "path": hit.path,
            "start_line": hit.start_line,
            "end_line": hit.end_line,
            "source": hit.source,
            "snippet": hit.snippet,
            "vector": 0.0,
            "text": hit.text_score,
        }

    results = [
        SearchResult(
            path=e["path"],
            start_line=e["start_line"],
            end_line=e["end_line"],
            score=vector_weight * e["vector"] + text_weight * e["text"],
            snippet=e["snippet"],
            source=e["source"],
        )
        for e in entries.values()
    ]
    results.sort(key=lambda r: r.score, reverse=True)
    return results


def vector_hits_to_results(hits: list[VectorHit]) -> list[SearchResult]:
    return [
        SearchResult(h.path, h.start_line, h.end_line, h.vector_score, h.snippet, h.source)
        for h in hits
    ]


def keyword_hits_to_results(hits: list[KeywordHit]) -> list[SearchResult]:
    return [
        SearchResult(h.path, h.start_line, h.end_line, h.text_score, h.snippet, h.source)
        for h in hits
    ]


def cosine_similarity(a: list[float], b: list[float]) -> float:
    """Cosine similarity of two vectors; 0.0 when either is empty or zero."""
    if not a or not b or len(a) != len(b):
        return 0.0
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return dot / (norm_a * norm_b)
