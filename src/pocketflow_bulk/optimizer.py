"""
Batch Optimizer
===============

Work avoidance for a single run: structural deduplication before chunking
and a read memo during execution.
"""

import asyncio
import json
from typing import Any, Awaitable, Callable, Dict, List, Sequence, Tuple

import structlog

logger = structlog.get_logger(__name__)


def signature(item: Any) -> str:
    """
    Structural-equality key for a work item.

    Dicts compare regardless of key order; objects JSON cannot encode fall
    back to their ``repr``.
    """
    return json.dumps(item, sort_keys=True, separators=(",", ":"), default=repr)


def deduplicate(items: Sequence[Any]) -> Tuple[List[Any], int]:
    """
    Collapse structurally equal items, keeping first occurrences in order.

    Returns:
        (unique items, number of duplicates removed)
    """
    seen = set()
    unique = []
    for item in items:
        key = signature(item)
        if key in seen:
            continue
        seen.add(key)
        unique.append(item)
    removed = len(items) - len(unique)
    if removed:
        logger.debug("duplicates_removed", original=len(items), unique=len(unique))
    return unique, removed


class ReadMemo:
    """
    Per-run memo for read operations.

    The first reference to a key performs the read; later references,
    including ones made while the first read is still in flight, share its
    result and count as cache hits. Failed reads are forgotten so a retry
    performs a fresh read.
    """

    def __init__(self) -> None:
        self._entries: Dict[str, "asyncio.Future[Any]"] = {}
        self.hits = 0
        self.misses = 0

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: Any) -> bool:
        return signature(key) in self._entries

    async def fetch(self, key: Any, loader: Callable[[], Awaitable[Any]]) -> Any:
        sig = signature(key)
        entry = self._entries.get(sig)
        if entry is not None:
            self.hits += 1
            return await asyncio.shield(entry)

        self.misses += 1
        entry = asyncio.get_running_loop().create_future()
        self._entries[sig] = entry
        try:
            value = await loader()
        except BaseException as exc:
            self._entries.pop(sig, None)
            if isinstance(exc, Exception):
                entry.set_exception(exc)
                # Consumed here so an unobserved failure is not reported.
                entry.exception()
            else:
                entry.cancel()
            raise
        entry.set_result(value)
        return value

    def stats(self) -> Dict[str, Any]:
        return {"size": len(self._entries), "hits": self.hits, "misses": self.misses}

    def clear(self) -> None:
        self._entries.clear()
