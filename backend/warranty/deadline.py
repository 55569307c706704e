# Overview: Per-request deadlines and cooperative cancellation tokens.

from __future__ import annotations

import threading
import time
from typing import Optional

from .errors import TimeoutError_


class CancellationToken:
    """
    Cooperative cancellation flag shared between a caller and the work it started.

    The request layer cancels it on client disconnect; the batch worker
    cancels it on shutdown. Work checks it at suspension points only.
    """

    def __init__(self):
        self._event = threading.Event()
        self.reason: Optional[str] = None

    def cancel(self, reason: str = "cancelled") -> None:
        self.reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


class Deadline:
    """
    Absolute expiry on the monotonic clock plus a cancellation token.

    Usage:
        deadline = Deadline.after_ms(30_000)
        deadline.check("load claim")
    """

    def __init__(self, expires_at: Optional[float], token: Optional[CancellationToken] = None):
        self.expires_at = expires_at
        self.token = token or CancellationToken()

    @classmethod
    def after_ms(cls, timeout_ms: int, token: Optional[CancellationToken] = None) -> "Deadline":
        return cls(time.monotonic() + timeout_ms / 1000.0, token)

    @classmethod
    def never(cls, token: Optional[CancellationToken] = None) -> "Deadline":
        """Unbounded deadline for background workers (still cancellable)."""
        return cls(None, token)

    @property
    def remaining_ms(self) -> Optional[int]:
        if self.expires_at is None:
            return None
        return max(0, int((self.expires_at - time.monotonic()) * 1000))

    @property
    def expired(self) -> bool:
        return self.expires_at is not None and time.monotonic() >= self.expires_at

    def check(self, stage: str = "") -> None:
        if self.token.cancelled:
            raise TimeoutError_(
                f"request cancelled before {stage}" if stage else "request cancelled",
                details={"reason": self.token.reason},
            )
        if self.expired:
            raise TimeoutError_(f"deadline exceeded before {stage}" if stage else "deadline exceeded")

    def statement_timeout_ms(self, ceiling_ms: int) -> int:
        """Per-statement DB timeout: the configured ceiling, shortened to the time left."""
        remaining = self.remaining_ms
        if remaining is None:
            return ceiling_ms
        return max(1, min(ceiling_ms, remaining - 1))
