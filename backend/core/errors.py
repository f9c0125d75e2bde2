"""Error types shared across the engine."""

from __future__ import annotations


class QueryExecutionError(RuntimeError):
    """Raised when the backend fails to run a query (or times out)."""

    def __init__(self, message: str, sql: str = "") -> None:
        super().__init__(message)
        self.sql = sql


class SpecValidationError(ValueError):
    """Raised when a chart spec cannot be interpreted at all.

    Problems local to one layer or encoding never raise; they are logged and
    the offending part is dropped.
    """
