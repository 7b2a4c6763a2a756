"""Domain-specific exceptions for the sales rollup engine.

All exceptions inherit from RollupEngineError so callers can catch any
engine failure with a single handler.
"""


class RollupEngineError(Exception):
    """Base exception for all rollup engine errors."""

    pass


class RequestValidationError(RollupEngineError, ValueError):
    """Raised when a request is rejected before any work is performed.

    This exception is raised when:
    - The date range is inverted (start after end)
    - The granularity, metric, aggregation or filter column is unknown
    - A period identifier does not match its granularity
    """

    pass


class SourceDataError(RollupEngineError):
    """Raised when the raw source reader cannot provide rows."""

    pass


class QueryExecutionError(RollupEngineError):
    """Raised when one operation of a query plan fails.

    The whole query fails rather than returning incomplete totals.
    """

    def __init__(self, message: str, operation: dict = None):
        super().__init__(message)
        self.operation = operation


class UnitFailedError(RollupEngineError):
    """Raised when a pipeline unit exhausts its retries."""

    def __init__(self, unit: str, attempts: int, error: str):
        super().__init__(f"Unit {unit} failed after {attempts} attempt(s): {error}")
        self.unit = unit
        self.attempts = attempts
        self.error = error


class OrchestrationError(RollupEngineError):
    """Raised when a rebuild run cannot continue (store or progress store unreachable)."""

    def __init__(self, message: str, run_id: str = None, stage: str = None):
        super().__init__(message)
        self.run_id = run_id
        self.stage = stage
