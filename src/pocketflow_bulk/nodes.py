"""
Batch Stage Nodes
=================

PocketFlow nodes implementing the stages of a batch run. They communicate
through the shared store:

    items        input work items (set by the caller)
    run          RunContext with collaborators and configuration
    started_at   run start on the run clock
    work         items after optimization
    optimizations, chunks, chunk_index, progress, successes, errors
    result       final BatchResult (set by AggregateNode)

Classes:
    - OptimizeNode: Deduplicates the work list
    - ChunkNode: Partitions work into fixed-size chunks
    - ExecuteChunkNode: Runs one chunk through the gate, loops until done
    - AggregateNode: Assembles the BatchResult
"""

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

import structlog
from pocketflow import AsyncNode

from .config import BatchConfig
from .exceptions import BatchCancelledError
from .gate import ConcurrencyGate
from .models import (
    BatchResult,
    CancellationToken,
    ItemOutcome,
    Optimizations,
    Progress,
)
from .optimizer import ReadMemo, deduplicate
from .retry import RetryPolicy

logger = structlog.get_logger(__name__)

ProgressCallback = Callable[[Progress], Any]


def chunked(items: Sequence[Any], size: int) -> List[List[Any]]:
    """Split items into order-preserving chunks of at most ``size``."""
    if size < 1:
        raise ValueError("size must be at least 1")
    return [list(items[i:i + size]) for i in range(0, len(items), size)]


def item_identifier(item: Any) -> str:
    return item if isinstance(item, str) else str(item)


@dataclass
class RunContext:
    """
    Collaborators and settings for one batch run.

    ``operation`` is the per-item call, already gated by quota admission.
    """
    operation: Callable[[Any], Awaitable[Any]]
    config: BatchConfig
    gate: ConcurrencyGate
    retry: RetryPolicy
    memo: ReadMemo = field(default_factory=ReadMemo)
    token: Optional[CancellationToken] = None
    progress_callback: Optional[ProgressCallback] = None
    clock: Callable[[], float] = time.monotonic
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep
    inter_chunk_pause: float = 0.1
    name: str = "batch"

    def check_cancelled(self) -> None:
        if self.token is not None:
            self.token.raise_if_cancelled()

    def publish(self, progress: Progress) -> None:
        """Hand a progress snapshot to the observer, if progress is enabled."""
        if not self.config.enable_progress or self.progress_callback is None:
            return
        try:
            self.progress_callback(progress.snapshot())
        except Exception:
            logger.exception("progress_callback_failed", chunk=progress.current_chunk_index)


def build_result(shared: Dict[str, Any]) -> BatchResult:
    """
    Assemble a BatchResult from whatever the shared store holds.

    Used both at the end of a run and when cancellation interrupts one.
    """
    run: RunContext = shared["run"]
    progress = shared.get("progress")
    if progress is None:
        progress = Progress(
            total=len(shared.get("work", shared["items"])),
            start_timestamp=shared.get("start_timestamp", time.time()),
        )
        if progress.total == 0:
            progress.recompute_percentage()

    optimizations = shared.get("optimizations") or Optimizations()
    optimizations.cache_hits = run.memo.hits
    optimizations.requests_optimized = run.memo.hits
    optimizations.total_savings = optimizations.duplicates_removed + run.memo.hits

    return BatchResult(
        successes=list(shared.get("successes", [])),
        errors=list(shared.get("errors", [])),
        progress=progress.snapshot(),
        optimizations=optimizations,
        duration=run.clock() - shared["started_at"],
        name=run.name,
    )


class BatchStageNode(AsyncNode):
    """Base stage: observes cancellation before doing any work."""

    async def _run_async(self, shared):
        shared["run"].check_cancelled()
        return await super()._run_async(shared)


class OptimizeNode(BatchStageNode):
    """Collapses duplicate work items when optimization is enabled."""

    async def prep_async(self, shared):
        return shared["items"], shared["run"].config.enable_optimization

    async def exec_async(self, prep_res):
        items, enabled = prep_res
        if not enabled:
            return list(items), 0
        return deduplicate(items)

    async def post_async(self, shared, prep_res, exec_res):
        work, removed = exec_res
        shared["work"] = work
        shared["optimizations"] = Optimizations(
            duplicates_removed=removed,
            total_savings=removed,
        )
        return "default"


class ChunkNode(BatchStageNode):
    """Partitions the work list and opens progress tracking."""

    async def prep_async(self, shared):
        return shared["work"], shared["run"].config.chunk_size

    async def exec_async(self, prep_res):
        work, size = prep_res
        return chunked(work, size)

    async def post_async(self, shared, prep_res, exec_res):
        work, _ = prep_res
        progress = Progress(
            total=len(work),
            total_chunks=len(exec_res),
            start_timestamp=shared.get("start_timestamp", time.time()),
        )
        if not work:
            progress.recompute_percentage()
        shared["chunks"] = exec_res
        shared["chunk_index"] = 0
        shared["progress"] = progress
        shared["successes"] = []
        shared["errors"] = []
        return "default" if exec_res else "empty"


class ExecuteChunkNode(BatchStageNode):
    """
    Runs the current chunk with bounded fan-out.

    Each item passes the concurrency gate, then the retry policy, whose
    every attempt checks cancellation and goes through quota admission.
    Items already started are always awaited, so cancellation never
    abandons an in-flight call.
    """

    async def prep_async(self, shared):
        run: RunContext = shared["run"]
        progress: Progress = shared["progress"]
        index = shared["chunk_index"]
        chunk = shared["chunks"][index]

        progress.current_chunk_index = index + 1
        logger.info(
            "chunk_started",
            chunk=index + 1,
            total_chunks=progress.total_chunks,
            size=len(chunk),
        )
        return chunk, run

    async def exec_async(self, prep_res):
        chunk, run = prep_res

        async def run_item(item: Any) -> ItemOutcome:
            return await run.gate.run(lambda: self._run_item(run, item))

        return await asyncio.gather(
            *(run_item(item) for item in chunk),
            return_exceptions=True,
        )

    @staticmethod
    async def _run_item(run: RunContext, item: Any) -> ItemOutcome:
        async def attempt() -> Any:
            run.check_cancelled()
            return await run.operation(item)

        return await run.retry.run(attempt, item, item_identifier(item))

    async def post_async(self, shared, prep_res, exec_res):
        run: RunContext = shared["run"]
        progress: Progress = shared["progress"]
        cancelled: Optional[BatchCancelledError] = None

        for outcome in exec_res:
            if isinstance(outcome, ItemOutcome):
                if outcome.ok:
                    shared["successes"].append(outcome.value)
                    progress.completed += 1
                else:
                    shared["errors"].append(outcome.error)
                    progress.failed += 1
            elif isinstance(outcome, BatchCancelledError):
                cancelled = outcome
            elif isinstance(outcome, BaseException):
                raise outcome

        progress.errors = list(shared["errors"])
        progress.recompute_percentage()
        progress.estimated_time_remaining = self._estimate_remaining(
            progress, run.clock() - shared["started_at"]
        )

        if cancelled is not None:
            raise cancelled

        logger.info(
            "chunk_finished",
            chunk=progress.current_chunk_index,
            completed=progress.completed,
            failed=progress.failed,
            percentage=progress.percentage,
        )
        run.publish(progress)

        shared["chunk_index"] += 1
        if shared["chunk_index"] < len(shared["chunks"]):
            if run.inter_chunk_pause > 0:
                await run.sleep(run.inter_chunk_pause)
            return "next_chunk"
        return "default"

    @staticmethod
    def _estimate_remaining(progress: Progress, elapsed: float) -> Optional[float]:
        if progress.remaining == 0:
            return 0.0
        if progress.processed == 0 or elapsed <= 0:
            return None
        throughput = progress.processed / elapsed
        return progress.remaining / throughput


class AggregateNode(BatchStageNode):
    """Assembles the terminal BatchResult."""

    async def post_async(self, shared, prep_res, exec_res):
        shared["result"] = build_result(shared)
        return None
