from __future__ import annotations

from typing import Any


class IndexEngineError(Exception):
    pass


class ConfigError(IndexEngineError):
    pass


class ValidationError(IndexEngineError):
    """Malformed or out-of-range observation."""


class DegradedCondition(IndexEngineError):
    """Non-fatal condition; recorded on the snapshot, never raised out of a cycle."""


class InsufficientData(DegradedCondition):
    def __init__(self, symbol: str, count: int, required: int, reason: str | None = None):
        self.symbol = symbol
        self.count = int(count)
        self.required = int(required)
        self.reason = reason or "insufficient history"
        super().__init__(f"{symbol}: {self.reason} ({self.count} < {self.required})")


class DegradedSelection(DegradedCondition):
    def __init__(self, requested: int, actual: int):
        self.requested = int(requested)
        self.actual = int(actual)
        super().__init__(f"selected {self.actual} of {self.requested} requested constituents")


class ProjectionError(IndexEngineError):
    """Degenerate feature space; aborts the cycle."""


class WeightError(IndexEngineError):
    def __init__(self, message: str, symbol: str | None = None):
        self.symbol = symbol
        super().__init__(message)


class ChainConflictError(IndexEngineError):
    """Snapshot does not extend the committed chain head."""


class RecoverableError(IndexEngineError):
    """Transient or retryable failure; the caller may retry with backoff."""


class DataSourceConnectionError(ConnectionError, RecoverableError):
    pass


class CycleTimeoutError(TimeoutError, RecoverableError):
    pass


class CycleError(IndexEngineError):
    """
    Terminal signal of a failed computation cycle.

    `kind` is the originating error class name, `state` the cycle state
    the failure happened in.
    """

    def __init__(
        self,
        message: str,
        *,
        kind: str,
        state: Any,
        timestamp: int,
        retryable: bool = False,
        cause: BaseException | None = None,
    ):
        self.kind = kind
        self.state = state
        self.timestamp = int(timestamp)
        self.retryable = bool(retryable)
        self.cause = cause
        super().__init__(message)

    @classmethod
    def from_exception(cls, exc: BaseException, *, state: Any, timestamp: int) -> "CycleError":
        return cls(
            str(exc) or type(exc).__name__,
            kind=type(exc).__name__,
            state=state,
            timestamp=timestamp,
            retryable=isinstance(exc, (RecoverableError, ConnectionError, TimeoutError)),
            cause=exc,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "state": getattr(self.state, "value", self.state),
            "timestamp": self.timestamp,
            "retryable": self.retryable,
            "message": str(self),
        }
