"""
Shared Quota Trackers
=====================

Registry of process-wide quota trackers. Batch runs that hit the same API
must share one tracker so their combined traffic is counted against the
same quota.
"""

from typing import Any, Dict, Optional

from .quota import QuotaTracker


class QuotaRegistry:
    """
    Registry for shared quota trackers.

    This is a singleton-style class with class methods for global access.
    State lives in memory only and starts from a full quota on process
    restart.

    Example:
        ```python
        # Register at application start-up
        QuotaRegistry.register("pinterest", window_limit=1000, window_seconds=3600)

        processor = BatchProcessor(quota=QuotaRegistry.get("pinterest"))
        ```

    Note:
        Registration is not thread-safe. Register trackers before starting
        async work; the trackers themselves are safe to share between
        concurrent batch runs on one event loop.
    """

    _trackers: Dict[str, QuotaTracker] = {}

    @classmethod
    def register(
        cls,
        name: str,
        window_limit: int = 1000,
        window_seconds: float = 3600.0,
        replace: bool = False,
        **tracker_kwargs: Any,
    ) -> QuotaTracker:
        """
        Register a named tracker.

        Args:
            name: Unique identifier for the tracker
            window_limit: Operations allowed per window
            window_seconds: Window length in seconds
            replace: If True, replace an existing tracker with the same name
            **tracker_kwargs: Further QuotaTracker arguments

        Raises:
            ValueError: If the tracker already exists and replace=False
        """
        if name in cls._trackers and not replace:
            raise ValueError(
                f"Quota tracker '{name}' already exists. Use replace=True to override."
            )
        cls._trackers[name] = QuotaTracker(
            window_limit=window_limit,
            window_seconds=window_seconds,
            **tracker_kwargs,
        )
        return cls._trackers[name]

    @classmethod
    def get(cls, name: str) -> QuotaTracker:
        """
        Get a registered tracker by name.

        Raises:
            KeyError: If tracker not found
        """
        if name not in cls._trackers:
            raise KeyError(
                f"Quota tracker '{name}' not found. Register it first with "
                f"QuotaRegistry.register('{name}', ...) or use get_or_create()."
            )
        return cls._trackers[name]

    @classmethod
    def get_or_create(
        cls,
        name: str,
        window_limit: int = 1000,
        window_seconds: float = 3600.0,
        **tracker_kwargs: Any,
    ) -> QuotaTracker:
        """
        Get an existing tracker or create it.

        If the tracker already exists, the arguments are ignored and the
        existing tracker is returned unchanged.
        """
        if name not in cls._trackers:
            cls.register(name, window_limit, window_seconds, **tracker_kwargs)
        return cls._trackers[name]

    @classmethod
    def remove(cls, name: str) -> bool:
        if name in cls._trackers:
            del cls._trackers[name]
            return True
        return False

    @classmethod
    def reset(cls, name: Optional[str] = None) -> None:
        """Remove one tracker, or all of them when name is None."""
        if name is None:
            cls._trackers.clear()
        elif name in cls._trackers:
            del cls._trackers[name]

    @classmethod
    def exists(cls, name: str) -> bool:
        return name in cls._trackers

    @classmethod
    def list_names(cls) -> list:
        return list(cls._trackers.keys())

    @classmethod
    def stats(cls, name: str) -> Dict[str, Any]:
        """
        Current usage of a tracker.

        Raises:
            KeyError: If tracker not found
        """
        tracker = cls.get(name)
        info = tracker.info()
        return {
            "window_limit": tracker.window_limit,
            "window_seconds": tracker.window_seconds,
            "consumed": tracker.consumed,
            "remaining": info.remaining,
            "reset": info.reset,
            "queued": tracker.queue_length,
        }
