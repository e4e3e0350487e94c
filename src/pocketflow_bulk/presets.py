"""
Batch and Quota Presets
=======================

Pre-configured settings for bulk operations and common API quota windows.

Per-kind defaults follow the usual trade-off: reads tolerate wide fan-out,
writes run with less concurrency and longer backoff, deletes run in small
chunks with the fewest retries.

Usage:
    ```python
    from pocketflow_bulk import BatchPresets, QuotaPresets, QuotaRegistry

    config = BatchPresets.for_kind("delete")
    QuotaRegistry.register("pinterest", **QuotaPresets.HOURLY_1000)
    ```
"""

from dataclasses import dataclass
from typing import Dict, Union

from .config import BatchConfig
from .models import OperationKind


@dataclass(frozen=True)
class QuotaConfig:
    """
    Immutable quota window configuration.

    Attributes:
        window_limit: Operations allowed per window
        window_seconds: Window length in seconds
        description: Human-readable description of this preset
    """
    window_limit: int
    window_seconds: float
    description: str = ""

    def to_dict(self) -> Dict[str, Union[int, float]]:
        """Convert to kwargs for QuotaTracker or QuotaRegistry.register."""
        return {"window_limit": self.window_limit, "window_seconds": self.window_seconds}


class BatchPresets:
    """
    Default batch configuration per operation kind.

    Example:
        ```python
        config = BatchPresets.for_kind(OperationKind.UPDATE)
        config = config.replace(max_concurrency=2)
        ```
    """

    GET = BatchConfig(chunk_size=50, max_concurrency=5, retry_attempts=3, retry_delay_ms=1000)
    CREATE = BatchConfig(chunk_size=50, max_concurrency=3, retry_attempts=3, retry_delay_ms=1500)
    UPDATE = BatchConfig(chunk_size=50, max_concurrency=3, retry_attempts=3, retry_delay_ms=1500)
    DELETE = BatchConfig(chunk_size=25, max_concurrency=2, retry_attempts=2, retry_delay_ms=2000)

    DESCRIPTIONS: Dict[str, str] = {
        "get": "Reads: 50 per chunk, 5 concurrent, 3 attempts, 1s backoff",
        "create": "Creates: 50 per chunk, 3 concurrent, 3 attempts, 1.5s backoff",
        "update": "Updates: 50 per chunk, 3 concurrent, 3 attempts, 1.5s backoff",
        "delete": "Deletes: 25 per chunk, 2 concurrent, 2 attempts, 2s backoff",
    }

    @classmethod
    def for_kind(cls, kind: Union[OperationKind, str]) -> BatchConfig:
        """
        Get the default configuration for an operation kind.

        Raises:
            ValueError: If kind is not a known operation kind
        """
        kind = OperationKind(kind)
        return getattr(cls, kind.name)

    @classmethod
    def list_presets(cls) -> Dict[str, str]:
        return dict(cls.DESCRIPTIONS)


class QuotaPresets:
    """
    Common quota windows.

    Each preset is available as a dict (for **kwargs) and as a QuotaConfig
    under ``CONFIGS``.
    """

    # 1000 requests per rolling hour, e.g. Pinterest API v5 standard access
    HOURLY_1000 = {
        "window_limit": 1000,
        "window_seconds": 3600.0,
    }

    CONSERVATIVE = {
        "window_limit": 100,
        "window_seconds": 3600.0,
    }

    PER_MINUTE_60 = {
        "window_limit": 60,
        "window_seconds": 60.0,
    }

    CONFIGS: Dict[str, QuotaConfig] = {
        "hourly_1000": QuotaConfig(1000, 3600.0, "1000 requests per hour"),
        "conservative": QuotaConfig(100, 3600.0, "100 requests per hour"),
        "per_minute_60": QuotaConfig(60, 60.0, "60 requests per minute"),
    }

    @classmethod
    def get(cls, name: str) -> QuotaConfig:
        """
        Get a quota preset by name.

        Raises:
            KeyError: If preset not found
        """
        key = name.lower().replace("-", "_")
        if key not in cls.CONFIGS:
            available = ", ".join(sorted(cls.CONFIGS))
            raise KeyError(f"Unknown quota preset: {name!r}. Available: {available}")
        return cls.CONFIGS[key]

    @classmethod
    def list_presets(cls) -> Dict[str, str]:
        return {name: cfg.description for name, cfg in cls.CONFIGS.items()}
