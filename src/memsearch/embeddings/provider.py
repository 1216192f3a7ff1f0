"""Embedding providers backed by LiteLLM.

Every provider call routes through ``litellm.embedding()``. The three
supported providers differ only in how the LiteLLM model string, API base
and credentials are built:

  openai  →  openai/<model>, OPENAI_API_KEY or memory_search.remote.api_key
  gemini  →  gemini/<model>, GEMINI_API_KEY or memory_search.remote.api_key
  local   →  openai/<model> against memory_search.local.base_url
"""

from __future__ import annotations

import hashlib
import json
import logging
import math
import os
from dataclasses import dataclass

import litellm

from memsearch.config import (
    DEFAULT_GEMINI_MODEL,
    DEFAULT_LOCAL_MODEL,
    DEFAULT_OPENAI_MODEL,
    ResolvedConfig,
)
from memsearch.errors import EmbeddingError

# Disable LiteLLM verbose logging unless explicitly enabled
litellm.suppress_debug_info = True

logger = logging.getLogger(__name__)


# ------------------------------------------------------------------
# Provider → env var mapping for API key resolution
# ------------------------------------------------------------------

_PROVIDER_ENV: dict[str, str | None] = {
    "openai": "OPENAI_API_KEY",
    "gemini": "GEMINI_API_KEY",
    "local": None,  # OpenAI-compatible server, key optional
}

_DEFAULT_MODELS: dict[str, str] = {
    "openai": DEFAULT_OPENAI_MODEL,
    "gemini": DEFAULT_GEMINI_MODEL,
    "local": DEFAULT_LOCAL_MODEL,
}

_LITELLM_PREFIX: dict[str, str] = {
    "openai": "openai",
    "gemini": "gemini",
    "local": "openai",
}

# litellm's openai client refuses an empty key even for servers that ignore it.
_LOCAL_PLACEHOLDER_KEY = "sk-local"


@dataclass(frozen=True)
class FallbackStatus:
    from_provider: str
    reason: str


@dataclass(frozen=True)
class ProviderStatus:
    """Which provider a Manager ended up with. Resolved once, never changes."""

    provider: str
    model: str
    requested: str = "auto"
    fallback: FallbackStatus | None = None


def normalize_model(provider_id: str, model: str) -> str:
    """Strip provider prefixes a user may have copied from LiteLLM docs.

    Examples:
        ("openai", "openai/text-embedding-3-large") -> "text-embedding-3-large"
        ("gemini", "models/gemini-embedding-001")   -> "gemini-embedding-001"
        ("gemini", "")                              -> "gemini-embedding-001"
    """
    trimmed = model.strip()
    if not trimmed:
        return _DEFAULT_MODELS[provider_id]
    trimmed = trimmed.removeprefix("models/")
    for prefix in ("openai/", "gemini/", "google/"):
        if trimmed.startswith(prefix):
            return trimmed[len(prefix):]
    return trimmed


def normalize_embedding(vector: list[float]) -> list[float]:
    """Replace non-finite components with 0 and scale to unit length."""
    clean = [float(v) if math.isfinite(v) else 0.0 for v in vector]
    norm = math.sqrt(sum(v * v for v in clean))
    if norm < 1e-10:
        return clean
    return [v / norm for v in clean]


def compute_provider_key(
    provider_id: str, model: str, base_url: str, headers: tuple[tuple[str, str], ...]
) -> str:
    """Fingerprint everything that can change the vectors a provider returns.

    Header values are excluded; only their (lower-cased, sorted) names count.
    """
    names = sorted({name.strip().lower() for name, _ in headers if name.strip()})
    payload = json.dumps(
        {"provider": provider_id, "model": model, "base_url": base_url.strip(), "headers": names},
        sort_keys=True,
        separators=(",", ":"),
    )
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


class EmbeddingProvider:
    """One configured embedding endpoint.

    Args:
        provider_id: "openai", "gemini" or "local".
        model: Provider-native model name (no LiteLLM prefix).
        api_key: Credential; may be empty for local servers.
        api_base: Endpoint override; empty uses LiteLLM's default.
        headers: Extra HTTP headers sent with every request.
    """

    def __init__(
        self,
        provider_id: str,
        model: str,
        *,
        api_key: str = "",
        api_base: str = "",
        headers: tuple[tuple[str, str], ...] = (),
    ) -> None:
        if provider_id not in _LITELLM_PREFIX:
            raise ValueError(f"unsupported embeddings provider: {provider_id}")
        self.id = provider_id
        self.model = normalize_model(provider_id, model)
        self.litellm_model = f"{_LITELLM_PREFIX[provider_id]}/{self.model}"
        self.api_key = api_key
        self.api_base = api_base
        self.headers = headers
        self.provider_key = compute_provider_key(provider_id, self.model, api_base, headers)

    @property
    def supports_batch(self) -> bool:
        return self.id == "openai"

    def embed_batch(
        self, texts: list[str], timeout: float | None = None, num_retries: int = 0
    ) -> list[list[float]]:
        """Embed *texts* in one request. Returns vectors in input order.

        LiteLLM's built-in retry is used for transient errors when
        *num_retries* is positive.

        Raises:
            EmbeddingError: If the response does not carry one vector per input.
        """
        if not texts:
            return []
        kwargs: dict = {"model": self.litellm_model, "input": texts}
        if timeout is not None:
            kwargs["timeout"] = timeout
        if num_retries > 0:
            kwargs["num_retries"] = num_retries
        if self.api_key:
            kwargs["api_key"] = self.api_key
        if self.api_base:
            kwargs["api_base"] = self.api_base
        if self.headers:
            kwargs["extra_headers"] = dict(self.headers)
        response = litellm.embedding(**kwargs)
        data = sorted(response.data, key=lambda item: item.get("index", 0))
        if len(data) != len(texts):
            raise EmbeddingError(
                f"{self.id} embeddings returned {len(data)} vectors for {len(texts)} inputs"
            )
        return [normalize_embedding(item["embedding"]) for item in data]

    def embed_query(self, text: str, timeout: float | None = None) -> list[float]:
        results = self.embed_batch([text], timeout=timeout)
        return results[0] if results else []

    def __repr__(self) -> str:
        return f"EmbeddingProvider(id={self.id!r}, model={self.model!r})"


# ------------------------------------------------------------------
# Resolution
# ------------------------------------------------------------------


def _api_key_for(provider_id: str, cfg: ResolvedConfig) -> str:
    if provider_id == "local":
        return cfg.local.api_key
    if cfg.remote.api_key:
        return cfg.remote.api_key
    env_var = _PROVIDER_ENV.get(provider_id)
    return os.getenv(env_var, "").strip() if env_var else ""


def create_provider(provider_id: str, cfg: ResolvedConfig) -> EmbeddingProvider:
    """Construct the provider named *provider_id* from *cfg*.

    Raises:
        ValueError: If the provider is unknown or missing required settings.
    """
    if provider_id == "local":
        if not cfg.local.base_url:
            raise ValueError("local embeddings require base_url")
        return EmbeddingProvider(
            "local",
            cfg.model,
            api_key=cfg.local.api_key or _LOCAL_PLACEHOLDER_KEY,
            api_base=cfg.local.base_url,
        )
    if provider_id in ("openai", "gemini"):
        api_key = _api_key_for(provider_id, cfg)
        if not api_key:
            raise ValueError(
                f"{provider_id} embeddings require api_key "
                f"(set {_PROVIDER_ENV[provider_id]} or memory_search.remote.api_key)"
            )
        return EmbeddingProvider(
            provider_id,
            cfg.model,
            api_key=api_key,
            api_base=cfg.remote.base_url,
            headers=cfg.remote.headers,
        )
    raise ValueError(f"unsupported embeddings provider: {provider_id}")


def resolve_provider(cfg: ResolvedConfig) -> tuple[EmbeddingProvider, ProviderStatus]:
    """Pick the embedding provider for *cfg*.

    ``auto`` tries local (when a base URL is configured), then openai, then
    gemini, and takes the first that constructs. An explicit provider that
    fails is replaced by ``cfg.fallback`` unless that is "none".

    Raises:
        ValueError: With a human-readable reason when nothing is available.
    """
    requested = cfg.provider or "auto"

    if requested == "auto":
        candidates = (["local"] if cfg.local.base_url else []) + ["openai", "gemini"]
        for candidate in candidates:
            try:
                provider = create_provider(candidate, cfg)
            except ValueError as exc:
                logger.debug("embeddings provider %s unavailable: %s", candidate, exc)
                continue
            return provider, ProviderStatus(provider.id, provider.model, requested)
        raise ValueError("no embeddings provider available")

    try:
        provider = create_provider(requested, cfg)
    except ValueError as exc:
        fallback = cfg.fallback
        if not fallback or fallback in ("none", requested):
            raise
        try:
            provider = create_provider(fallback, cfg)
        except ValueError as fallback_exc:
            raise ValueError(f"{exc}; fallback to {fallback} failed: {fallback_exc}") from exc
        logger.warning("embeddings provider %s unavailable, using %s: %s", requested, fallback, exc)
        return provider, ProviderStatus(
            provider.id,
            provider.model,
            requested,
            FallbackStatus(from_provider=requested, reason=str(exc)),
        )
    return provider, ProviderStatus(provider.id, provider.model, requested)
