"""Markdown chunker: line-preserving windows with trailing-line overlap."""

from __future__ import annotations

from memsearch.db.models import Chunk
from memsearch.ingest.base import BaseChunker


class MarkdownChunker(BaseChunker):
    """Split Markdown into line-aligned windows of at most ``max_chars``.

    Strategy:
    - Walk the document line by line; each line costs ``len(line) + 1``.
    - Lines longer than ``max_chars`` are cut into segments that all keep the
      original line number.
    - When the next segment would overflow the window, the window is flushed
      and its trailing lines (at least ``overlap_chars`` worth) seed the next
      one.
    - Chunks whose text is blank are dropped.
    """

    def chunk(self, content: str) -> list[Chunk]:
        if not content.strip():
            return []

        max_chars = self.max_chars
        overlap_chars = self.overlap_chars

        chunks: list[Chunk] = []
        current: list[tuple[str, int]] = []
        current_chars = 0

        for line_no, line in enumerate(content.split("\n"), start=1):
            for segment in _split_line(line, max_chars):
                size = len(segment) + 1
                if current_chars + size > max_chars and current:
                    chunks.append(self._flush(current))
                    current = _carry_overlap(current, overlap_chars)
                    current_chars = sum(len(s) + 1 for s, _ in current)
                current.append((segment, line_no))
                current_chars += size

        if current:
            chunks.append(self._flush(current))

        return [c for c in chunks if c.text.strip()]

    def _flush(self, current: list[tuple[str, int]]) -> Chunk:
        text = "\n".join(segment for segment, _ in current)
        return self._make_chunk(current[0][1], current[-1][1], text)


def _split_line(line: str, max_chars: int) -> list[str]:
    """Cut *line* into ``max_chars`` pieces; an empty line stays one segment."""
    if not line:
        return [""]
    return [line[i : i + max_chars] for i in range(0, len(line), max_chars)]


def _carry_overlap(current: list[tuple[str, int]], overlap_chars: int) -> list[tuple[str, int]]:
    if overlap_chars <= 0:
        return []
    kept: list[tuple[str, int]] = []
    acc = 0
    for entry in reversed(current):
        acc += len(entry[0]) + 1
        kept.append(entry)
        if acc >= overlap_chars:
            break
    kept.reverse()
    return kept
