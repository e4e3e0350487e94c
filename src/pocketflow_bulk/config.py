"""
Batch Configuration
===================

Immutable run configuration and the absolute ceilings it is validated
against before any remote call is made.
"""

import dataclasses
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Union

from .exceptions import BatchConfigError
from .models import OperationKind


@dataclass(frozen=True)
class BatchCeilings:
    """
    Absolute upper bounds a BatchConfig may not exceed.

    Attributes:
        max_chunk_size: Largest allowed chunk
        max_concurrency: Largest allowed permit count
        max_retry_attempts: Largest allowed attempt count
        max_retry_delay_ms: Largest allowed base retry delay
    """
    max_chunk_size: int = 100
    max_concurrency: int = 10
    max_retry_attempts: int = 5
    max_retry_delay_ms: int = 60_000


DEFAULT_CEILINGS = BatchCeilings()

# Deletes are destructive, so they run in smaller chunks.
CEILINGS_BY_KIND: Dict[OperationKind, BatchCeilings] = {
    OperationKind.GET: DEFAULT_CEILINGS,
    OperationKind.CREATE: DEFAULT_CEILINGS,
    OperationKind.UPDATE: DEFAULT_CEILINGS,
    OperationKind.DELETE: BatchCeilings(max_chunk_size=50),
}

_ALIASES = {
    "chunkSize": "chunk_size",
    "maxBatchSize": "chunk_size",
    "max_batch_size": "chunk_size",
    "maxConcurrency": "max_concurrency",
    "retryAttempts": "retry_attempts",
    "retryDelay": "retry_delay_ms",
    "retryDelayMs": "retry_delay_ms",
    "retry_delay": "retry_delay_ms",
    "enableOptimization": "enable_optimization",
    "enableProgress": "enable_progress",
    "enableProgressTracking": "enable_progress",
    "enable_progress_tracking": "enable_progress",
}


@dataclass(frozen=True)
class BatchConfig:
    """
    Immutable configuration for one batch run.

    Attributes:
        chunk_size: Items per chunk (>= 1)
        max_concurrency: Operations in flight at once (>= 1)
        retry_attempts: Attempts per item (>= 0; at least one attempt is always made)
        retry_delay_ms: Base delay for linear backoff, in milliseconds (>= 0)
        enable_optimization: Deduplicate items before chunking
        enable_progress: Publish progress snapshots at chunk boundaries

    Example:
        ```python
        config = BatchConfig(chunk_size=25, max_concurrency=3)
        config.validate(CEILINGS_BY_KIND[OperationKind.DELETE])
        ```
    """
    chunk_size: int = 50
    max_concurrency: int = 5
    retry_attempts: int = 3
    retry_delay_ms: int = 1000
    enable_optimization: bool = True
    enable_progress: bool = True

    def validate(self, ceilings: BatchCeilings = DEFAULT_CEILINGS) -> "BatchConfig":
        """
        Check every field against its floor and ceiling.

        Returns:
            self, to allow chaining

        Raises:
            BatchConfigError: On the first violated bound
        """
        if self.chunk_size < 1:
            raise BatchConfigError("chunk_size must be at least 1", field="chunk_size")
        if self.chunk_size > ceilings.max_chunk_size:
            raise BatchConfigError(
                f"Maximum batch size is {ceilings.max_chunk_size}, got {self.chunk_size}",
                field="chunk_size",
            )
        if self.max_concurrency < 1:
            raise BatchConfigError(
                "max_concurrency must be at least 1", field="max_concurrency"
            )
        if self.max_concurrency > ceilings.max_concurrency:
            raise BatchConfigError(
                f"Maximum concurrency is {ceilings.max_concurrency}, "
                f"got {self.max_concurrency}",
                field="max_concurrency",
            )
        if self.retry_attempts < 0:
            raise BatchConfigError(
                "retry_attempts must not be negative", field="retry_attempts"
            )
        if self.retry_attempts > ceilings.max_retry_attempts:
            raise BatchConfigError(
                f"Maximum retry attempts is {ceilings.max_retry_attempts}, "
                f"got {self.retry_attempts}",
                field="retry_attempts",
            )
        if self.retry_delay_ms < 0:
            raise BatchConfigError(
                "retry_delay_ms must not be negative", field="retry_delay_ms"
            )
        if self.retry_delay_ms > ceilings.max_retry_delay_ms:
            raise BatchConfigError(
                f"Maximum retry delay is {ceilings.max_retry_delay_ms}ms, "
                f"got {self.retry_delay_ms}ms",
                field="retry_delay_ms",
            )
        return self

    def replace(self, **changes: Any) -> "BatchConfig":
        return dataclasses.replace(self, **changes)

    @classmethod
    def from_dict(
        cls,
        data: Mapping[str, Any],
        base: Union["BatchConfig", None] = None,
    ) -> "BatchConfig":
        """
        Build a config from a mapping of camelCase or snake_case keys.

        Unknown keys are ignored; missing keys fall back to ``base`` (or the
        class defaults).
        """
        known = {f.name for f in dataclasses.fields(cls)}
        changes = {}
        for key, value in data.items():
            name = _ALIASES.get(key, key)
            if name in known:
                changes[name] = value
        return dataclasses.replace(base or cls(), **changes)

    def to_dict(self) -> Dict[str, Any]:
        return dataclasses.asdict(self)
