"""
Pipeline Module

Stage-by-stage rollup rebuilds and their progress store.
"""
from .orchestrator import (
    PipelineOrchestrator,
    RunStatus,
    WorkUnit,
    builder_unit_runner,
    plan_units,
    stages_for,
)
from .progress import MemoryProgressStore, ProgressStore, RedisProgressStore, create_redis

__all__ = [
    "PipelineOrchestrator",
    "RunStatus",
    "WorkUnit",
    "builder_unit_runner",
    "plan_units",
    "stages_for",
    "MemoryProgressStore",
    "ProgressStore",
    "RedisProgressStore",
    "create_redis",
]
