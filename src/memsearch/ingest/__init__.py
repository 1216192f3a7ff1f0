"""memsearch ingest pipeline: chunkers and the index sweep."""

from memsearch.ingest.base import BaseChunker
from memsearch.ingest.indexer import Indexer, SweepResult
from memsearch.ingest.markdown import MarkdownChunker

__all__ = [
    "BaseChunker",
    "Indexer",
    "MarkdownChunker",
    "SweepResult",
]
