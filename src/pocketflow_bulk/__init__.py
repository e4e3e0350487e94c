"""
PocketFlow Bulk - Quota-Aware Batch Execution Extension
=======================================================

An extension for PocketFlow that runs many small create/read/update/delete
calls against an API with a strict global quota.

Features:
    - Dual control: concurrency gate (semaphore) + quota tracker (fixed window)
    - Progressive delay near the quota and FIFO queueing at the limit
    - Server feedback (x-ratelimit-* headers) overrides local counters
    - Chunked execution with progress snapshots and ETA
    - Linear-backoff retries with partial-failure results
    - Duplicate removal and per-run read memoization
    - Cooperative cancellation

Quick Start:
    ```python
    from pocketflow_bulk import BatchProcessor, KindOperations, OperationKind

    processor = BatchProcessor()

    result = await processor.process_kind_batch(
        ["pin-1", "pin-2", "pin-3"],
        OperationKind.GET,
        KindOperations(get=client.get_pin),
    )
    print(len(result.successes), "fetched,", len(result.errors), "failed")
    ```

Classes:
    BatchProcessor: Runs a batch and returns a BatchResult
    BulkBatchFlow: The PocketFlow AsyncFlow behind each run
    QuotaTracker: Process-wide quota admission control
    ConcurrencyGate: Bounded fan-out
    RetryPolicy: Linear-backoff retries
    BatchPresets / QuotaPresets: Default configurations
"""

__version__ = "0.1.0"

from .config import CEILINGS_BY_KIND, DEFAULT_CEILINGS, BatchCeilings, BatchConfig
from .exceptions import BatchCancelledError, BatchConfigError, UnsupportedOperationError
from .flows import BulkBatchFlow
from .gate import ConcurrencyGate
from .logger import LogContext, configure_logging
from .models import (
    BatchError,
    BatchResult,
    CancellationToken,
    ItemOutcome,
    OperationKind,
    Optimizations,
    Progress,
)
from .optimizer import ReadMemo, deduplicate, signature
from .presets import BatchPresets, QuotaConfig, QuotaPresets
from .processor import BatchProcessor, KindOperations
from .quota import AdmissionQueue, QuotaFeedback, QuotaInfo, QuotaState, QuotaTracker
from .retry import RetryPolicy
from .shared import QuotaRegistry

__all__ = [
    # Version info
    "__version__",

    # Core classes
    "BatchProcessor",
    "KindOperations",
    "BulkBatchFlow",
    "QuotaTracker",
    "AdmissionQueue",
    "ConcurrencyGate",
    "RetryPolicy",
    "ReadMemo",
    "QuotaRegistry",

    # Data model
    "OperationKind",
    "CancellationToken",
    "BatchError",
    "ItemOutcome",
    "Progress",
    "Optimizations",
    "BatchResult",
    "QuotaState",
    "QuotaInfo",
    "QuotaFeedback",

    # Configuration
    "BatchConfig",
    "BatchCeilings",
    "DEFAULT_CEILINGS",
    "CEILINGS_BY_KIND",
    "BatchPresets",
    "QuotaPresets",
    "QuotaConfig",

    # Helpers
    "deduplicate",
    "signature",
    "configure_logging",
    "LogContext",

    # Exceptions
    "BatchConfigError",
    "UnsupportedOperationError",
    "BatchCancelledError",
]


def main() -> None:
    """CLI entry point - displays package info."""
    print(f"PocketFlow Bulk v{__version__}")
    print("=" * 40)
    print(__doc__)
    print("\nBatch Presets:")
    for name, desc in BatchPresets.list_presets().items():
        print(f"  - {name}: {desc}")
    print("\nQuota Presets:")
    for name, desc in QuotaPresets.list_presets().items():
        print(f"  - {name}: {desc}")
