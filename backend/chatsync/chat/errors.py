"""Error types and the failure channel for the chat core.

Failures are split the way handlers treat them:
    - MutationRejected: the actor may not perform the operation. State is
      untouched and the caller gets a typed ``rejected`` event.
    - PersistenceError: the Record Store failed or timed out. Nothing is
      broadcast and the failure is reported.
"""
import logging
import threading
from collections import Counter, deque
from typing import Deque, Dict, Optional, Tuple

failure_logger = logging.getLogger("chatsync.failures")

# Number of recent failures kept for inspection
RECENT_FAILURES_SIZE = 100


class MutationRejected(Exception):
    """Raised when an actor is not permitted to perform an operation."""

    def __init__(self, operation: str, reason: str) -> None:
        super().__init__(f"{operation} rejected: {reason}")
        self.operation = operation
        self.reason = reason

    def to_event(self) -> dict:
        return {"type": "rejected", "operation": self.operation, "reason": self.reason}


class PersistenceError(Exception):
    """Raised when a Record Store call fails or exceeds its timeout."""

    def __init__(self, operation: str, cause: Optional[BaseException] = None) -> None:
        detail = f": {cause!r}" if cause is not None else ""
        super().__init__(f"{operation} failed{detail}")
        self.operation = operation
        self.cause = cause


class FailureReporter:
    """Observability channel for failures that must not be dropped silently."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._counts: Counter = Counter()
        self._recent: Deque[Tuple[str, str]] = deque(maxlen=RECENT_FAILURES_SIZE)

    def report(self, operation: str, exc: BaseException) -> None:
        failure_logger.error("[Failure] %s: %r", operation, exc)
        with self._lock:
            self._counts[operation] += 1
            self._recent.append((operation, repr(exc)))

    @property
    def total(self) -> int:
        with self._lock:
            return sum(self._counts.values())

    def counts(self) -> Dict[str, int]:
        with self._lock:
            return dict(self._counts)

    def reset(self) -> None:
        with self._lock:
            self._counts.clear()
            self._recent.clear()


# Process-wide failure channel
failures = FailureReporter()
