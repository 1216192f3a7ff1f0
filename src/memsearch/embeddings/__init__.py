"""memsearch embeddings: providers, cache, batch API and the retrying embedder."""

from memsearch.embeddings.batch import BatchState, OpenAIBatchRunner
from memsearch.embeddings.cache import EmbeddingCache
from memsearch.embeddings.embedder import Embedder
from memsearch.embeddings.provider import (
    EmbeddingProvider,
    FallbackStatus,
    ProviderStatus,
    resolve_provider,
)

__all__ = [
    "BatchState",
    "Embedder",
    "EmbeddingCache",
    "EmbeddingProvider",
    "FallbackStatus",
    "OpenAIBatchRunner",
    "ProviderStatus",
    "resolve_provider",
]
