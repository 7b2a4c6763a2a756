"""
Planner Module

Cost-based ADD/SUBTRACT planning and execution over the rollup tables.
"""
from .executor import MetricRequest, QueryPlanner, QueryRequest, QueryResult
from .optimizer import CostBasedOptimizer, OperationType, PlanOperation, QueryPlan

__all__ = [
    "MetricRequest",
    "QueryPlanner",
    "QueryRequest",
    "QueryResult",
    "CostBasedOptimizer",
    "OperationType",
    "PlanOperation",
    "QueryPlan",
]
