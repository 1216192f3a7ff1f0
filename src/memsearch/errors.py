"""Exception hierarchy for the memory search engine.

Configuration problems are not raised from here: the registry reports them as
plain "memory search disabled: ..." strings (see memsearch.search.registry).
"""

from __future__ import annotations


class MemsearchError(Exception):
    """Base class for all memsearch runtime errors."""


class EmbeddingError(MemsearchError):
    """The embedding provider failed, timed out, or returned unusable data."""


class OperationCancelled(MemsearchError):
    """The operation context was cancelled or ran past its deadline."""


class DocumentNotFound(MemsearchError, LookupError):
    """A read targeted a memory document that does not exist."""


class BatchError(MemsearchError):
    """An asynchronous embedding batch failed.

    Attributes:
        attempts: How many submit attempts were made before giving up. Counted
            against the batch failure limit by the caller.
    """

    def __init__(self, message: str, attempts: int = 1) -> None:
        super().__init__(message)
        self.attempts = attempts
