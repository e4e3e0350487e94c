"""
Batch Processor
===============

Entry point for bulk execution. Validates the configuration, prepares the
shared store and runs BulkBatchFlow, returning one BatchResult per run.
"""

import asyncio
import time
import uuid
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Iterable, Optional, Union

import structlog

from .config import CEILINGS_BY_KIND, DEFAULT_CEILINGS, BatchCeilings, BatchConfig
from .exceptions import BatchCancelledError, UnsupportedOperationError
from .flows import BulkBatchFlow
from .gate import ConcurrencyGate
from .logger import LogContext
from .models import BatchResult, CancellationToken, OperationKind
from .nodes import ProgressCallback, RunContext, build_result
from .optimizer import ReadMemo
from .presets import BatchPresets
from .quota import QuotaTracker
from .retry import RetryPolicy
from .shared import QuotaRegistry

logger = structlog.get_logger(__name__)

Operation = Callable[[Any], Awaitable[Any]]


@dataclass
class KindOperations:
    """
    Remote calls available per operation kind.

    ``get`` and ``delete`` take the key; ``create`` and ``update`` take the
    key and the shared payload. Kinds left as None are unsupported.
    """
    get: Optional[Callable[[Any], Awaitable[Any]]] = None
    create: Optional[Callable[[Any, Any], Awaitable[Any]]] = None
    update: Optional[Callable[[Any, Any], Awaitable[Any]]] = None
    delete: Optional[Callable[[Any], Awaitable[Any]]] = None

    def for_kind(self, kind: OperationKind) -> Callable[..., Awaitable[Any]]:
        handler = getattr(self, kind.value)
        if handler is None:
            raise UnsupportedOperationError(
                f"Unsupported operation: {kind.value}", field="kind"
            )
        return handler


class BatchProcessor:
    """
    Runs many small remote operations under a shared quota.

    Each run deduplicates its work list, splits it into chunks and runs the
    chunks in order. Items inside a chunk run concurrently, bounded by
    ``max_concurrency``, retried with linear backoff, and admitted one
    quota unit per remote call.

    Args:
        quota: Quota tracker to admit calls against. Defaults to the
            process-wide ``"default"`` tracker in QuotaRegistry.
        inter_chunk_pause: Seconds to pause between chunks (default: 0.1)
        clock: Monotonic clock for durations and ETA
        sleep: Coroutine function used for pauses and backoff

    Example:
        ```python
        processor = BatchProcessor(quota=QuotaRegistry.get("pinterest"))

        result = await processor.process_kind_batch(
            pin_ids,
            OperationKind.GET,
            KindOperations(get=client.get_pin),
            progress_callback=lambda p: print(f"{p.percentage}%"),
        )
        for error in result.errors:
            print(error.item_id, error.message)
        ```
    """

    def __init__(
        self,
        quota: Optional[QuotaTracker] = None,
        inter_chunk_pause: float = 0.1,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        if inter_chunk_pause < 0:
            raise ValueError("inter_chunk_pause must not be negative")
        self.quota = quota if quota is not None else QuotaRegistry.get_or_create("default")
        self.inter_chunk_pause = inter_chunk_pause
        self._clock = clock
        self._sleep = sleep

    async def process_batch(
        self,
        items: Iterable[Any],
        operation: Operation,
        config: Optional[BatchConfig] = None,
        *,
        token: Optional[CancellationToken] = None,
        progress_callback: Optional[ProgressCallback] = None,
        ceilings: BatchCeilings = DEFAULT_CEILINGS,
        name: str = "batch",
    ) -> BatchResult:
        """
        Run ``operation`` once per work item.

        Args:
            items: Work items, in order
            operation: Coroutine function called with one item
            config: Run configuration (default: BatchConfig())
            token: Cancellation token checked at chunk entry and per item
            progress_callback: Receives Progress snapshots at chunk boundaries
            ceilings: Bounds the configuration is validated against
            name: Label used in logs and the result summary

        Returns:
            BatchResult with successes and per-item errors

        Raises:
            BatchConfigError: Before any remote call, if config is invalid
            BatchCancelledError: If the token is cancelled during the run
        """
        config = (config or BatchConfig()).validate(ceilings)
        return await self._run(
            list(items),
            self._admitted(operation, token),
            config,
            ReadMemo(),
            token=token,
            progress_callback=progress_callback,
            name=name,
        )

    async def process_kind_batch(
        self,
        keys: Iterable[Any],
        kind: Union[OperationKind, str],
        operations: KindOperations,
        payload: Any = None,
        config: Optional[BatchConfig] = None,
        *,
        token: Optional[CancellationToken] = None,
        progress_callback: Optional[ProgressCallback] = None,
        ceilings: Optional[BatchCeilings] = None,
        name: Optional[str] = None,
    ) -> BatchResult:
        """
        Run one kind of operation over many keys.

        Reads are memoized for the duration of the run, so repeated keys
        cost one remote call. Deletes report ``{"deleted": True, "key": key}``.
        Configuration and ceilings default to the presets for ``kind``.

        Raises:
            BatchConfigError: Invalid config for this kind
            UnsupportedOperationError: No operation registered for ``kind``
            BatchCancelledError: If the token is cancelled during the run
        """
        kind = OperationKind(kind)
        config = (config or BatchPresets.for_kind(kind)).validate(
            ceilings or CEILINGS_BY_KIND[kind]
        )
        handler = operations.for_kind(kind)
        memo = ReadMemo()

        if kind is OperationKind.GET:
            fetch = self._admitted(handler, token)

            async def operation(key: Any) -> Any:
                return await memo.fetch(key, lambda: fetch(key))

        elif kind is OperationKind.DELETE:
            remove = self._admitted(handler, token)

            async def operation(key: Any) -> Any:
                await remove(key)
                return {"deleted": True, "key": key}

        else:
            operation = self._admitted(lambda key: handler(key, payload), token)

        return await self._run(
            list(keys),
            operation,
            config,
            memo,
            token=token,
            progress_callback=progress_callback,
            name=name or f"bulk_{kind.value}",
        )

    def _admitted(
        self,
        operation: Callable[[Any], Awaitable[Any]],
        token: Optional[CancellationToken],
    ) -> Operation:
        quota = self.quota

        async def call(item: Any) -> Any:
            await quota.admit(token)
            return await operation(item)

        return call

    async def _run(
        self,
        items: list,
        operation: Operation,
        config: BatchConfig,
        memo: ReadMemo,
        *,
        token: Optional[CancellationToken],
        progress_callback: Optional[ProgressCallback],
        name: str,
    ) -> BatchResult:
        run = RunContext(
            operation=operation,
            config=config,
            gate=ConcurrencyGate(config.max_concurrency),
            retry=RetryPolicy(config.retry_attempts, config.retry_delay_ms, sleep=self._sleep),
            memo=memo,
            token=token,
            progress_callback=progress_callback,
            clock=self._clock,
            sleep=self._sleep,
            inter_chunk_pause=self.inter_chunk_pause,
            name=name,
        )
        shared = {
            "items": items,
            "run": run,
            "started_at": self._clock(),
            "start_timestamp": time.time(),
        }

        with LogContext(run_id=uuid.uuid4().hex[:12], batch=name):
            logger.info("batch_started", items=len(items), **config.to_dict())
            try:
                await BulkBatchFlow().run_async(shared)
            except BatchCancelledError as exc:
                exc.partial_result = build_result(shared)
                logger.warning(
                    "batch_cancelled",
                    reason=exc.reason,
                    completed=exc.partial_result.progress.completed,
                    failed=exc.partial_result.progress.failed,
                )
                raise
            finally:
                memo.clear()

            result: BatchResult = shared["result"]
            logger.info(
                "batch_finished",
                successes=len(result.successes),
                errors=len(result.errors),
                duplicates_removed=result.optimizations.duplicates_removed,
                cache_hits=result.optimizations.cache_hits,
                duration=round(result.duration, 3),
            )
            return result
