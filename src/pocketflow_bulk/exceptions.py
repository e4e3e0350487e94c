"""
Exception Classes
=================

Errors that escape a batch run. Per-item failures never raise; they are
recorded as ``BatchError`` entries on the result instead. Only configuration
problems and cancellation propagate to the caller.
"""

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from .models import BatchResult


class BatchConfigError(ValueError):
    """
    Raised when a batch configuration is rejected.

    Validation happens before the first remote call, so a run that fails
    with this error has not touched the remote API or consumed quota.

    Attributes:
        field: Name of the offending configuration field, if known
    """

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field


class UnsupportedOperationError(BatchConfigError):
    """Raised when no operation is registered for the requested kind."""


class BatchCancelledError(Exception):
    """
    Raised when a batch run observes a cancelled token.

    Cancellation is cooperative: operations already admitted finish, nothing
    new starts. Whatever had been aggregated when cancellation was observed
    is attached as ``partial_result``.

    Attributes:
        reason: Reason given to ``CancellationToken.cancel``
        partial_result: ``BatchResult`` assembled at detection time, or None
            when cancellation was observed outside a run

    Example:
        ```python
        try:
            result = await processor.process_batch(ids, fetch, token=token)
        except BatchCancelledError as e:
            done = e.partial_result.successes if e.partial_result else []
        ```
    """

    def __init__(
        self,
        reason: Optional[str] = None,
        partial_result: Optional["BatchResult"] = None,
    ):
        super().__init__(f"Operation cancelled: {reason or 'Unknown reason'}")
        self.reason = reason
        self.partial_result = partial_result

    def __repr__(self) -> str:
        parts = [f"BatchCancelledError({self.reason!r}"]
        if self.partial_result is not None:
            parts.append(
                f", completed={self.partial_result.progress.completed}"
                f", failed={self.partial_result.progress.failed}"
            )
        parts.append(")")
        return "".join(parts)
