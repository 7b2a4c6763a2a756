"""
Sales Rollup Engine

Multi-granularity retail sales rollups with a cost-based query planner.
"""
from .engine import RollupEngine
from .exceptions import (
    OrchestrationError,
    QueryExecutionError,
    RequestValidationError,
    RollupEngineError,
    SourceDataError,
    UnitFailedError,
)

__version__ = "1.0.0"

__all__ = [
    "RollupEngine",
    "RollupEngineError",
    "RequestValidationError",
    "QueryExecutionError",
    "SourceDataError",
    "UnitFailedError",
    "OrchestrationError",
]
