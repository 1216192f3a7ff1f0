"""Result composition: score filter, count limit, snippet budget and truncation."""

from __future__ import annotations

from memsearch.search.hybrid import SearchResult

SNIPPET_MAX_CHARS = 700


def _utf16_units(ch: str) -> int:
    return 2 if ord(ch) > 0xFFFF else 1


def truncate_snippet(text: str, limit: int = SNIPPET_MAX_CHARS) -> str:
    """Cut *text* to at most *limit* UTF-16 code units.

    Characters outside the BMP count as two units and are never split.
    """
    if not text:
        return ""
    count = 0
    for index, ch in enumerate(text):
        units = _utf16_units(ch)
        if count + units > limit:
            return text[:index]
        count += units
    return text


def filter_and_limit(
    results: list[SearchResult], min_score: float, max_results: int
) -> list[SearchResult]:
    """Drop results scoring below *min_score*, then keep the first *max_results*."""
    kept = [r for r in results if r.score >= min_score]
    return kept[:max_results]


def clamp_injected_chars(results: list[SearchResult], max_chars: int) -> list[SearchResult]:
    """Enforce a total snippet budget across *results*, counted in UTF-8 bytes.

    The result that crosses the budget is cut to what remains (never inside a
    multi-byte character) and everything after it is dropped.
    ``max_chars <= 0`` disables the clamp.

    Example:
        snippets ["abcdef", "ghij"] with max_chars=8 -> ["abcdef", "gh"]
    """
    if max_chars <= 0 or not results:
        return results
    out: list[SearchResult] = []
    total = 0
    for result in results:
        size = len(result.snippet.encode("utf-8"))
        if total + size > max_chars:
            remaining = max_chars - total
            if remaining > 0:
                out.append(
                    SearchResult(
                        path=result.path,
                        start_line=result.start_line,
                        end_line=result.end_line,
                        score=result.score,
                        snippet=_truncate_utf8(result.snippet, remaining),
                        source=result.source,
                    )
                )
            return out
        out.append(result)
        total += size
    return out


def _truncate_utf8(text: str, max_bytes: int) -> str:
    return text.encode("utf-8")[:max_bytes].decode("utf-8", errors="ignore")
