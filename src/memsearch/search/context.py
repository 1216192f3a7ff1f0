"""Operation context: a monotonic deadline plus a cancellation flag.

Every public Manager operation runs under one. Provider calls are bounded by
``remaining()``, pooled SQLite connections abort statements once ``done()``,
and long waits (batch polling, retry backoff) use ``sleep()`` so a cancel
wakes them immediately.
"""

from __future__ import annotations

import threading
import time

from memsearch.errors import OperationCancelled

DEFAULT_TIMEOUT = 60.0


class OperationContext:
    """Deadline + cancel flag shared by one logical operation.

    A child context (``parent=...``) is done when either it or its parent is.
    """

    def __init__(
        self, timeout: float | None = DEFAULT_TIMEOUT, parent: OperationContext | None = None
    ) -> None:
        self._cancel = threading.Event()
        self._parent = parent
        self._deadline = time.monotonic() + timeout if timeout is not None else None
        if parent is not None and parent._deadline is not None:
            if self._deadline is None or parent._deadline < self._deadline:
                self._deadline = parent._deadline
        self._reason = ""

    @classmethod
    def background(cls) -> OperationContext:
        """A context without a deadline; only ``cancel()`` ends it."""
        return cls(timeout=None)

    def cancel(self, reason: str = "operation cancelled") -> None:
        self._reason = reason
        self._cancel.set()

    def cancelled(self) -> bool:
        if self._cancel.is_set():
            return True
        return self._parent is not None and self._parent.cancelled()

    def expired(self) -> bool:
        return self._deadline is not None and time.monotonic() >= self._deadline

    def done(self) -> bool:
        return self.cancelled() or self.expired()

    def reason(self) -> str:
        if self.cancelled():
            if self._reason:
                return self._reason
            return self._parent.reason() if self._parent is not None else "operation cancelled"
        if self.expired():
            return "operation deadline exceeded"
        return ""

    def remaining(self, cap: float | None = None) -> float | None:
        """Seconds left before the deadline, optionally capped at *cap*."""
        if self._deadline is None:
            return cap
        left = max(self._deadline - time.monotonic(), 0.0)
        return left if cap is None else min(left, cap)

    def check(self) -> None:
        """Raise OperationCancelled if the context is done."""
        if self.done():
            raise OperationCancelled(self.reason())

    def sleep(self, seconds: float) -> None:
        """Sleep up to *seconds*, waking early (and raising) on cancel or deadline."""
        end = time.monotonic() + max(seconds, 0.0)
        while True:
            self.check()
            left = end - time.monotonic()
            if left <= 0:
                return
            wait = min(left, 0.1)
            limit = self.remaining()
            if limit is not None:
                wait = min(wait, max(limit, 0.0))
            self._cancel.wait(wait)


def ensure_context(ctx: OperationContext | None, timeout: float = DEFAULT_TIMEOUT) -> OperationContext:
    return ctx if ctx is not None else OperationContext(timeout)
