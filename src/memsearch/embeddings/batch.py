"""Asynchronous embedding through the OpenAI Batch API (via LiteLLM).

Flow per group of at most 50 000 requests:
  1. litellm.create_file(purpose="batch")       upload the JSONL requests
  2. litellm.create_batch(endpoint=/v1/embeddings, completion_window=24h)
  3. litellm.retrieve_batch(...)                poll until terminal
  4. litellm.file_content(output_file_id)       parse the JSONL output

Groups run concurrently on a ThreadPoolExecutor. Failure accounting lives in
BatchState; after ``BATCH_FAILURE_LIMIT`` failures the owning Manager stops
using batches for its lifetime.
"""

from __future__ import annotations

import hashlib
import json
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable

import litellm

from memsearch.config import BatchCfg
from memsearch.db.models import Chunk
from memsearch.embeddings.provider import EmbeddingProvider, normalize_embedding
from memsearch.errors import BatchError, OperationCancelled
from memsearch.search.context import OperationContext

logger = logging.getLogger(__name__)

BATCH_COMPLETION_WINDOW = "24h"
BATCH_ENDPOINT = "/v1/embeddings"
BATCH_MAX_REQUESTS = 50_000
BATCH_FAILURE_LIMIT = 2
BATCH_FILE_NAME = "memory-embeddings.jsonl"

_TERMINAL_FAILURES = frozenset({"failed", "expired", "cancelled", "canceled"})


# ------------------------------------------------------------------
# Failure accounting
# ------------------------------------------------------------------


@dataclass(frozen=True)
class BatchSnapshot:
    enabled: bool
    failures: int
    last_error: str
    last_provider: str


class BatchState:
    """Thread-safe batch health counters for one Manager."""

    def __init__(self, enabled: bool = True) -> None:
        self._lock = threading.Lock()
        self._enabled = enabled
        self._failures = 0
        self._last_error = ""
        self._last_provider = ""

    @property
    def enabled(self) -> bool:
        with self._lock:
            return self._enabled

    def snapshot(self) -> BatchSnapshot:
        with self._lock:
            return BatchSnapshot(
                self._enabled, self._failures, self._last_error, self._last_provider
            )

    def record_failure(
        self, provider: str, error: Exception, attempts: int = 1, force_disable: bool = False
    ) -> tuple[bool, int]:
        """Count a failed batch run. Returns (disabled, failure_count)."""
        increment = BATCH_FAILURE_LIMIT if force_disable else max(1, attempts)
        with self._lock:
            self._failures += increment
            self._last_error = str(error)
            self._last_provider = provider
            disabled = force_disable or self._failures >= BATCH_FAILURE_LIMIT
            if disabled:
                self._enabled = False
            return disabled, self._failures

    def reset(self) -> None:
        with self._lock:
            if self._failures:
                logger.debug("memory embeddings: batch recovered; resetting failure count")
            self._failures = 0
            self._last_error = ""
            self._last_provider = ""


# ------------------------------------------------------------------
# Request construction / output parsing
# ------------------------------------------------------------------


def batch_custom_id(
    source: str, path: str, chunk_hash: str, start_line: int, end_line: int, index: int
) -> str:
    payload = f"{source}:{path}:{start_line}:{end_line}:{chunk_hash}:{index}"
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def build_requests(
    path: str, source: str, model: str, missing: list[tuple[int, Chunk]]
) -> list[dict]:
    """One /v1/embeddings request per missing (index, chunk) pair."""
    return [
        {
            "custom_id": batch_custom_id(
                source, path, chunk.hash, chunk.start_line, chunk.end_line, index
            ),
            "method": "POST",
            "url": BATCH_ENDPOINT,
            "body": {"model": model, "input": chunk.text},
        }
        for index, chunk in missing
    ]


def parse_batch_output(text: str) -> list[dict]:
    """Parse JSONL batch output, skipping blank and malformed lines."""
    out: list[dict] = []
    for line in text.splitlines():
        line = line.strip()
        if not line:
            continue
        try:
            entry = json.loads(line)
        except json.JSONDecodeError:
            logger.debug("skipping malformed batch output line")
            continue
        if isinstance(entry, dict):
            out.append(entry)
    return out


def is_batch_timeout(message: str) -> bool:
    lower = message.lower()
    return "timed out" in lower or "timeout" in lower


# ------------------------------------------------------------------
# Runner
# ------------------------------------------------------------------


class OpenAIBatchRunner:
    """Submits embedding requests through the OpenAI Batch API.

    Args:
        provider: The resolved openai provider (credentials and endpoint).
        cfg: memory_search.remote.batch settings.
        tenant: Recorded in the batch metadata.
    """

    def __init__(self, provider: EmbeddingProvider, cfg: BatchCfg, tenant: str = "") -> None:
        self.provider = provider
        self.cfg = cfg
        self.tenant = tenant

    def _call_kwargs(self) -> dict:
        kwargs: dict = {"custom_llm_provider": "openai"}
        if self.provider.api_key:
            kwargs["api_key"] = self.provider.api_key
        if self.provider.api_base:
            kwargs["api_base"] = self.provider.api_base
        if self.provider.headers:
            kwargs["extra_headers"] = dict(self.provider.headers)
        return kwargs

    def run(self, requests: list[dict], ctx: OperationContext) -> dict[str, list[float]]:
        """Run every request; returns {custom_id: embedding}.

        Raises:
            BatchError: If any group fails; no partial result is returned.
        """
        if not requests:
            return {}
        groups = [
            requests[i : i + BATCH_MAX_REQUESTS]
            for i in range(0, len(requests), BATCH_MAX_REQUESTS)
        ]
        results: dict[str, list[float]] = {}
        workers = max(1, min(self.cfg.concurrency, len(groups)))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="memsearch-batch") as pool:
            futures = [pool.submit(self._run_group, group, ctx) for group in groups]
            for future in futures:
                try:
                    results.update(future.result())
                except (BatchError, OperationCancelled):
                    raise
                except Exception as exc:
                    raise BatchError(f"openai batch failed: {exc}") from exc
        return results

    def _run_group(self, group: list[dict], ctx: OperationContext) -> dict[str, list[float]]:
        batch_id, output_file_id = self._submit(group, ctx)
        if not output_file_id:
            raise BatchError(f"openai batch {batch_id} completed without output file")
        content = litellm.file_content(file_id=output_file_id, **self._call_kwargs())
        text = content.text

        remaining = {req["custom_id"] for req in group}
        by_id: dict[str, list[float]] = {}
        errors: list[str] = []
        for line in parse_batch_output(text):
            custom_id = line.get("custom_id") or ""
            if not custom_id:
                continue
            remaining.discard(custom_id)
            error = (line.get("error") or {}).get("message")
            if error:
                errors.append(f"{custom_id}: {error}")
                continue
            response = line.get("response") or {}
            body = response.get("body") or {}
            if (response.get("status_code") or 200) >= 400:
                message = (body.get("error") or {}).get("message") or f"status {response.get('status_code')}"
                errors.append(f"{custom_id}: {message}")
                continue
            data = body.get("data") or []
            if not data or not data[0].get("embedding"):
                errors.append(f"{custom_id}: empty embedding")
                continue
            by_id[custom_id] = normalize_embedding(data[0]["embedding"])
        if errors:
            raise BatchError(f"openai batch {batch_id} failed: {'; '.join(errors)}")
        if remaining:
            raise BatchError(f"openai batch {batch_id} missing {len(remaining)} embedding responses")
        return by_id

    def _submit(self, group: list[dict], ctx: OperationContext) -> tuple[str, str]:
        ctx.check()
        jsonl = "\n".join(json.dumps(req) for req in group).encode("utf-8")
        file_obj = litellm.create_file(
            file=(BATCH_FILE_NAME, jsonl),
            purpose="batch",
            **self._call_kwargs(),
        )
        if not getattr(file_obj, "id", ""):
            raise BatchError("openai batch file upload failed: missing file id")
        batch = litellm.create_batch(
            completion_window=BATCH_COMPLETION_WINDOW,
            endpoint=BATCH_ENDPOINT,
            input_file_id=file_obj.id,
            metadata={"source": "memsearch", "tenant": self.tenant},
            **self._call_kwargs(),
        )
        if not getattr(batch, "id", ""):
            raise BatchError("openai batch create failed: missing batch id")
        if batch.status == "completed":
            return batch.id, batch.output_file_id or ""
        if not self.cfg.wait:
            raise BatchError(f"openai batch {batch.id} still {batch.status}; wait disabled")
        return batch.id, self._wait(batch.id, ctx)

    def _wait(self, batch_id: str, ctx: OperationContext) -> str:
        deadline = time.monotonic() + self.cfg.timeout_minutes * 60
        while True:
            status = litellm.retrieve_batch(batch_id=batch_id, **self._call_kwargs())
            if status.status == "completed":
                if not status.output_file_id:
                    raise BatchError(f"openai batch {batch_id} completed without output file")
                return status.output_file_id
            if status.status in _TERMINAL_FAILURES:
                raise BatchError(f"openai batch {batch_id} {status.status}")
            if time.monotonic() >= deadline:
                raise BatchError(f"openai batch {batch_id} timed out")
            ctx.sleep(self.cfg.poll_interval_ms / 1000)


def run_with_timeout_retry(
    provider: str, run: Callable[[], dict[str, list[float]]]
) -> dict[str, list[float]]:
    """Call *run*; a timeout is retried once and counts as two attempts.

    Raises:
        BatchError: With ``attempts`` set to how many runs were made.
    """
    try:
        return run()
    except BatchError as exc:
        if not is_batch_timeout(str(exc)):
            raise
        logger.warning("memory embeddings: %s batch timed out; retrying once", provider)
    try:
        return run()
    except BatchError as exc:
        raise BatchError(str(exc), attempts=2) from exc
