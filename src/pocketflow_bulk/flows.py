"""
Batch Flow
==========

The batch run state machine expressed as a PocketFlow AsyncFlow:

    Optimizing -> Chunking -> ExecutingChunk* -> Aggregating -> Done

Cancellation can end the flow at any stage with BatchCancelledError.
"""

from pocketflow import AsyncFlow

from .nodes import AggregateNode, ChunkNode, ExecuteChunkNode, OptimizeNode


class BulkBatchFlow(AsyncFlow):
    """
    AsyncFlow wiring the batch stages together.

    Transitions:
        - optimize -> chunk -> execute
        - chunk --"empty"--> aggregate (nothing to run)
        - execute --"next_chunk"--> execute (one chunk per visit, in order)
        - execute -> aggregate

    Example:
        ```python
        shared = {"items": ids, "run": run_context, "started_at": time.monotonic()}
        await BulkBatchFlow().run_async(shared)
        result = shared["result"]
        ```

    Note:
        The shared store must carry ``items``, ``run`` and ``started_at``
        before the flow starts. BatchProcessor prepares it.
    """

    def __init__(self):
        optimize = OptimizeNode()
        chunk = ChunkNode()
        execute = ExecuteChunkNode()
        aggregate = AggregateNode()

        optimize >> chunk >> execute
        chunk - "empty" >> aggregate
        execute - "next_chunk" >> execute
        execute >> aggregate

        super().__init__(start=optimize)
