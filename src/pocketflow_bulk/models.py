"""
Batch Data Model
================

Value objects produced and consumed by a batch run: the cancellation token,
per-item errors and outcomes, progress snapshots, optimization statistics
and the final result.
"""

import copy
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from .exceptions import BatchCancelledError


class OperationKind(str, Enum):
    """Kind of remote operation a batch run performs per item."""

    GET = "get"
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class CancellationToken:
    """
    Cooperative cancellation flag shared between a caller and a batch run.

    The flag flips from False to True once and never resets; the first
    reason given wins.

    Example:
        ```python
        token = CancellationToken()
        task = asyncio.create_task(processor.process_batch(ids, op, token=token))
        token.cancel("user aborted")
        ```
    """

    def __init__(self) -> None:
        self._cancelled = False
        self._reason: Optional[str] = None
        self._callbacks: List[Callable[[], None]] = []

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    def cancel(self, reason: Optional[str] = None) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        self._reason = reason
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            callback()

    def add_callback(self, callback: Callable[[], None]) -> None:
        """
        Call ``callback`` once when the token is cancelled.

        Runs immediately if the token is already cancelled. Callbacks run
        synchronously inside ``cancel``, so they must not block.
        """
        if self._cancelled:
            callback()
        else:
            self._callbacks.append(callback)

    def remove_callback(self, callback: Callable[[], None]) -> None:
        if callback in self._callbacks:
            self._callbacks.remove(callback)

    def raise_if_cancelled(self) -> None:
        """Raise BatchCancelledError if cancellation has been requested."""
        if self._cancelled:
            raise BatchCancelledError(self._reason)

    def __repr__(self) -> str:
        return f"CancellationToken(cancelled={self._cancelled}, reason={self._reason!r})"


@dataclass(frozen=True)
class BatchError:
    """
    A work item that failed every attempt.

    Attributes:
        item_id: String form of the failed item
        message: Message of the last exception raised
        attempt_number: Number of attempts made
        timestamp: Epoch seconds when the failure was recorded
    """
    item_id: str
    message: str
    attempt_number: int
    timestamp: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "itemId": self.item_id,
            "error": self.message,
            "attempt": self.attempt_number,
            "timestamp": self.timestamp,
        }


@dataclass
class ItemOutcome:
    """Result of running one work item, success or failure."""
    item: Any
    item_id: str
    value: Any = None
    error: Optional[BatchError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class Progress:
    """
    Progress of a batch run, updated only at chunk boundaries.

    ``current_chunk_index`` is 1-based and stays 0 until the first chunk
    starts. ``estimated_time_remaining`` is in seconds.
    """
    total: int = 0
    completed: int = 0
    failed: int = 0
    percentage: int = 0
    current_chunk_index: int = 0
    total_chunks: int = 0
    start_timestamp: float = 0.0
    estimated_time_remaining: Optional[float] = None
    errors: List[BatchError] = field(default_factory=list)

    @property
    def processed(self) -> int:
        return self.completed + self.failed

    @property
    def remaining(self) -> int:
        return max(0, self.total - self.processed)

    def recompute_percentage(self) -> None:
        if self.total == 0:
            self.percentage = 100
        else:
            self.percentage = round(100 * self.processed / self.total)

    def snapshot(self) -> "Progress":
        """Independent copy for observers."""
        return copy.deepcopy(self)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "completed": self.completed,
            "failed": self.failed,
            "percentage": self.percentage,
            "currentBatch": self.current_chunk_index,
            "totalBatches": self.total_chunks,
            "startTime": self.start_timestamp,
            "estimatedTimeRemaining": self.estimated_time_remaining,
            "errors": [e.to_dict() for e in self.errors],
        }


@dataclass
class Optimizations:
    """Work avoided by deduplication and read memoization."""
    duplicates_removed: int = 0
    cache_hits: int = 0
    requests_optimized: int = 0
    total_savings: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {
            "duplicatesRemoved": self.duplicates_removed,
            "cacheHits": self.cache_hits,
            "requestsOptimized": self.requests_optimized,
            "totalSavings": self.total_savings,
        }


@dataclass
class BatchResult:
    """
    Terminal result of one batch run.

    Success and partial failure share this shape; callers must inspect
    ``errors``. ``successes`` holds operation return values in item order.
    """
    successes: List[Any]
    errors: List[BatchError]
    progress: Progress
    optimizations: Optimizations
    duration: float = 0.0
    name: str = "batch"

    @property
    def has_errors(self) -> bool:
        return bool(self.errors)

    def summary(self) -> Dict[str, Any]:
        """Counts and timings for reporting, one dict per run."""
        processed = self.progress.processed
        return {
            "operation": self.name,
            "totalItems": self.progress.total,
            "successCount": len(self.successes),
            "errorCount": len(self.errors),
            "duration": self.duration,
            "averageTimePerItem": self.duration / processed if processed else 0.0,
            "throughput": processed / self.duration if self.duration > 0 else 0.0,
            "optimizations": self.optimizations.to_dict(),
        }
