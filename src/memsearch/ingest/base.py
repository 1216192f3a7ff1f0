"""Base chunker interface for memory documents."""

from __future__ import annotations

import hashlib
from abc import ABC, abstractmethod

from memsearch.db.models import Chunk


class BaseChunker(ABC):
    """Abstract base for all chunkers.

    Subclasses implement ``chunk()``. Sizes are configured in tokens and
    converted with a 4-chars-per-token approximation; no external tokenizer
    dependency is required.
    """

    def __init__(self, tokens: int = 400, overlap: int = 80) -> None:
        if tokens < 1:
            raise ValueError("tokens must be >= 1")
        if overlap < 0:
            raise ValueError("overlap must be >= 0")
        self.tokens = tokens
        self.overlap = overlap

    @abstractmethod
    def chunk(self, content: str) -> list[Chunk]:
        """Split *content* into Chunk objects with 1-based line ranges.

        Args:
            content: Full newline-normalised text of the document.

        Returns:
            Ordered list of non-blank Chunk objects.
        """

    @staticmethod
    def count_tokens(text: str) -> int:
        """Approximate token count: 4 characters ≈ 1 token."""
        return max(1, len(text) // 4)

    @property
    def max_chars(self) -> int:
        return max(self.tokens * 4, 32)

    @property
    def overlap_chars(self) -> int:
        return max(self.overlap * 4, 0)

    @staticmethod
    def _make_chunk(start_line: int, end_line: int, text: str) -> Chunk:
        return Chunk(
            start_line=start_line,
            end_line=end_line,
            text=text,
            hash=hashlib.sha256(text.encode("utf-8")).hexdigest(),
        )
