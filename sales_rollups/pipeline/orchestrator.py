"""
Pipeline Orchestrator

Rebuilds a date range of rollups stage by stage:

    hourly -> daily -> weekly -> monthly -> quarterly -> yearly

Each stage fans out into independent units (one per day, one range unit for
weekly, one per month/quarter/year) that run concurrently on a bounded
worker pool. A stage only starts after every unit of the previous stage has
finished, successfully or not. Units retry on their own with a fixed backoff
and their own timeout; a unit that exhausts its retries is recorded as failed
and the run carries on. Any other error is fatal: the remaining units of the
stage are cancelled before the run is marked failed.

Growth fields read the prior period's row, which a sibling unit of the same
stage may not have written yet. That window is accepted: a later rebuild
pass fills the fields in.
"""

import asyncio
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import structlog
from prometheus_client import Counter, Gauge, Histogram

from sales_rollups.aggregation.granularity import HIERARCHY, Granularity, Period, parse_date, periods_in_range
from sales_rollups.config import get_settings
from sales_rollups.config.logging import run_context
from sales_rollups.exceptions import OrchestrationError, RequestValidationError, UnitFailedError
from sales_rollups.pipeline.progress import ProgressStore

logger = structlog.get_logger(__name__)


# =============================================================================
# METRICS
# =============================================================================

UNITS_PROCESSED = Counter(
    "sales_rollups_units_total",
    "Pipeline units finished",
    ["stage", "status"],
)

UNIT_DURATION = Histogram(
    "sales_rollups_unit_seconds",
    "Wall-clock time of successful pipeline units",
    ["stage"],
)

ACTIVE_RUNS = Gauge(
    "sales_rollups_active_runs",
    "Rebuild runs currently executing",
)


# =============================================================================
# RUN MODEL
# =============================================================================

class RunStatus(str, Enum):
    """Rebuild run lifecycle"""
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class WorkUnit:
    """One independently schedulable piece of builder work"""
    granularity: Granularity
    periods: Tuple[Period, ...]

    @property
    def label(self) -> str:
        if len(self.periods) == 1:
            return str(self.periods[0])
        return f"{self.granularity.value}:{self.periods[0].label}..{self.periods[-1].label}"


UnitRunner = Callable[[WorkUnit], Awaitable[int]]


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class RebuildProgress:
    """Bookkeeping of one run, published as a blob after every transition"""
    run_id: str
    start: date
    end: date
    stages: List[Granularity]
    depth: str
    status: RunStatus = RunStatus.QUEUED
    current_stage: Optional[str] = None
    stage_index: int = 0
    stage_unit_count: int = 0
    last_stage_completed: Optional[str] = None
    units_total: int = 0
    units_succeeded: int = 0
    units_failed: int = 0
    records_written: int = 0
    failures: List[Dict[str, Any]] = field(default_factory=list)
    error: Optional[str] = None
    started_at: str = field(default_factory=_now)
    updated_at: str = field(default_factory=_now)
    completed_at: Optional[str] = None

    def begin_stage(self, index: int, stage: Granularity, unit_count: int) -> None:
        self.status = RunStatus.PROCESSING
        self.current_stage = stage.value
        self.stage_index = index
        self.stage_unit_count = unit_count
        self.units_total += unit_count

    def record_failure(self, stage: Granularity, unit: str, attempts: int, error: str) -> None:
        self.units_failed += 1
        self.failures.append({
            "stage": stage.value,
            "unit": unit,
            "attempts": attempts,
            "error": error,
        })

    def to_dict(self) -> Dict[str, Any]:
        self.updated_at = _now()
        return {
            "run_id": self.run_id,
            "status": self.status.value,
            "depth": self.depth,
            "stages": [s.value for s in self.stages],
            "date_range": {"start": self.start.isoformat(), "end": self.end.isoformat()},
            "current_stage": self.current_stage,
            "stage_index": self.stage_index,
            "stage_total": len(self.stages),
            "stage_unit_count": self.stage_unit_count,
            "last_stage_completed": self.last_stage_completed,
            "units_total": self.units_total,
            "units_succeeded": self.units_succeeded,
            "units_failed": self.units_failed,
            "records_written": self.records_written,
            "failures": list(self.failures),
            "error": self.error,
            "started_at": self.started_at,
            "updated_at": self.updated_at,
            "completed_at": self.completed_at,
        }


# =============================================================================
# STAGE PLANNING
# =============================================================================

def stages_for(depth: Any = None) -> List[Granularity]:
    """The stage prefix ending at ``depth``; None or 'all' means every level."""
    if depth is None or str(depth).lower() == "all":
        return list(HIERARCHY)
    depth = Granularity.parse(depth)
    return list(HIERARCHY[:depth.rank + 1])


def plan_units(granularity: Granularity, start: date, end: date) -> List[WorkUnit]:
    """Decompose one stage into independent units"""
    periods = periods_in_range(granularity, start, end)
    if not periods:
        return []
    if granularity == Granularity.WEEKLY:
        return [WorkUnit(granularity, tuple(periods))]
    return [WorkUnit(granularity, (period,)) for period in periods]


def builder_unit_runner(builder) -> UnitRunner:
    """Run a unit by building each of its periods in order"""
    async def run_unit(unit: WorkUnit) -> int:
        written = 0
        for period in unit.periods:
            written += await builder.build_period(unit.granularity, period)
        return written

    return run_unit


# =============================================================================
# ORCHESTRATOR
# =============================================================================

class PipelineOrchestrator:
    """
    Stage-by-stage rebuild with concurrent, independently retried units.

    Example:
        orchestrator = PipelineOrchestrator(builder_unit_runner(builder), MemoryProgressStore())
        run_id = await orchestrator.rebuild_range(date(2025, 1, 1), date(2025, 1, 31), "monthly")
        status = await orchestrator.get_status(run_id)
    """

    def __init__(
        self,
        unit_runner: UnitRunner,
        progress_store: ProgressStore,
        max_concurrency: Optional[int] = None,
        max_attempts: Optional[int] = None,
        retry_delay_seconds: Optional[float] = None,
        unit_timeout_seconds: Optional[float] = None,
        progress_ttl_seconds: Optional[int] = None,
        key_prefix: Optional[str] = None,
        health_check: Optional[Callable[[], Awaitable[Any]]] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        config = get_settings().pipeline
        self.unit_runner = unit_runner
        self.progress_store = progress_store
        self.max_concurrency = max_concurrency or config.max_concurrency
        self.max_attempts = max_attempts or config.unit_max_attempts
        self.retry_delay_seconds = (
            config.unit_retry_delay_seconds if retry_delay_seconds is None else retry_delay_seconds
        )
        self.unit_timeout_seconds = unit_timeout_seconds or config.unit_timeout_seconds
        self.progress_ttl_seconds = progress_ttl_seconds or config.progress_ttl_seconds
        self.key_prefix = key_prefix or config.progress_key_prefix
        self.health_check = health_check
        self._sleep = sleep
        self._workers = asyncio.Semaphore(self.max_concurrency)
        self._tasks: Dict[str, asyncio.Task] = {}

    def progress_key(self, run_id: str) -> str:
        return f"{self.key_prefix}_{run_id}"

    # ----- entry points -----

    async def rebuild_range(
        self,
        start: Any,
        end: Any,
        depth: Any = None,
        run_id: Optional[str] = None,
    ) -> str:
        """Queue a run on the event loop and return its id immediately."""
        progress = await self._queue(start, end, depth, run_id)
        task = asyncio.create_task(self._guarded(progress), name=f"rebuild-{progress.run_id}")
        self._tasks[progress.run_id] = task
        task.add_done_callback(lambda _: self._tasks.pop(progress.run_id, None))
        return progress.run_id

    async def run(
        self,
        start: Any,
        end: Any,
        depth: Any = None,
        run_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Execute a run to completion and return its final progress blob."""
        progress = await self._queue(start, end, depth, run_id)
        return await self._execute(progress)

    async def wait(self, run_id: str) -> Optional[Dict[str, Any]]:
        """Wait for a queued run started by this orchestrator, then return its status."""
        task = self._tasks.get(run_id)
        if task is not None:
            await asyncio.wait({task})
        return await self.get_status(run_id)

    async def get_status(self, run_id: str) -> Optional[Dict[str, Any]]:
        return await self.progress_store.get(self.progress_key(run_id))

    # ----- execution -----

    async def _queue(self, start: Any, end: Any, depth: Any, run_id: Optional[str]) -> RebuildProgress:
        start = parse_date(start, "start")
        end = parse_date(end, "end")
        if start > end:
            raise RequestValidationError(f"start {start} is after end {end}")
        stages = stages_for(depth)

        progress = RebuildProgress(
            run_id=run_id or uuid.uuid4().hex,
            start=start,
            end=end,
            stages=stages,
            depth=stages[-1].value,
        )
        try:
            await self._publish(progress)
        except Exception as e:
            raise OrchestrationError(
                f"Progress store unreachable: {e}", run_id=progress.run_id
            ) from e

        logger.info(
            "Rebuild queued",
            run_id=progress.run_id,
            start=start.isoformat(),
            end=end.isoformat(),
            stages=[s.value for s in stages],
        )
        return progress

    async def _guarded(self, progress: RebuildProgress) -> None:
        """Background wrapper: the failure is already published and logged."""
        try:
            await self._execute(progress)
        except OrchestrationError as e:
            logger.debug("Background rebuild ended", run_id=progress.run_id, stage=e.stage)

    async def _execute(self, progress: RebuildProgress) -> Dict[str, Any]:
        with run_context(run_id=progress.run_id):
            return await self._execute_stages(progress)

    async def _execute_stages(self, progress: RebuildProgress) -> Dict[str, Any]:
        stage: Optional[Granularity] = None
        ACTIVE_RUNS.inc()
        try:
            for index, stage in enumerate(progress.stages):
                if self.health_check is not None:
                    await self.health_check()

                units = plan_units(stage, progress.start, progress.end)
                progress.begin_stage(index, stage, len(units))
                await self._publish(progress)
                logger.info(
                    "Stage started",
                    run_id=progress.run_id,
                    stage=stage.value,
                    stage_index=index,
                    units=len(units),
                )

                # Barrier: every unit finishes before the next stage starts
                if units:
                    await self._run_stage(progress, stage, units)

                progress.last_stage_completed = stage.value
                await self._publish(progress)

            progress.status = RunStatus.COMPLETED
            progress.completed_at = _now()
            final = await self._publish(progress)
            logger.info(
                "Rebuild completed",
                run_id=progress.run_id,
                units_succeeded=progress.units_succeeded,
                units_failed=progress.units_failed,
                records=progress.records_written,
            )
            return final
        except Exception as e:
            progress.status = RunStatus.FAILED
            progress.error = f"{type(e).__name__}: {e}"
            logger.error(
                "Rebuild failed",
                run_id=progress.run_id,
                stage=stage.value if stage else None,
                error=str(e),
                error_type=type(e).__name__,
            )
            try:
                await self._publish(progress)
            except Exception as publish_error:
                logger.error(
                    "Failed to publish run failure",
                    run_id=progress.run_id,
                    error=str(publish_error),
                )
            raise OrchestrationError(
                f"Rebuild {progress.run_id} failed at stage {stage.value if stage else None}: {e}",
                run_id=progress.run_id,
                stage=stage.value if stage else None,
            ) from e
        finally:
            ACTIVE_RUNS.dec()

    async def _run_stage(self, progress: RebuildProgress, stage: Granularity, units: List[WorkUnit]) -> None:
        """
        Run every unit of a stage concurrently.

        Unit failures are recorded by ``_run_unit``. Anything it raises is
        fatal: the remaining units are cancelled and awaited before the
        first error propagates, so no unit outlives a failed run.
        """
        # Units copy the logging context when their task is created
        with run_context(stage=stage.value):
            tasks = [asyncio.ensure_future(self._run_unit(progress, stage, unit)) for unit in units]
        try:
            done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_EXCEPTION)
        except asyncio.CancelledError:
            for task in tasks:
                task.cancel()
            raise

        failed = [
            task for task in tasks
            if task in done and not task.cancelled() and task.exception() is not None
        ]
        if not failed:
            return

        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        logger.warning(
            "Stage aborted",
            run_id=progress.run_id,
            stage=stage.value,
            cancelled_units=len(pending),
        )
        raise failed[0].exception()

    async def _run_unit(self, progress: RebuildProgress, stage: Granularity, unit: WorkUnit) -> bool:
        """Run one unit with retries; unit failures are recorded, not raised."""
        try:
            written = await self._attempt_unit(progress, stage, unit)
        except UnitFailedError as e:
            progress.record_failure(stage, e.unit, e.attempts, e.error)
            UNITS_PROCESSED.labels(stage.value, "failed").inc()
            logger.error(
                "Unit failed permanently",
                run_id=progress.run_id,
                stage=stage.value,
                unit=e.unit,
                attempts=e.attempts,
                error=e.error,
            )
            await self._publish(progress)
            return False

        progress.units_succeeded += 1
        progress.records_written += written or 0
        UNITS_PROCESSED.labels(stage.value, "succeeded").inc()
        return True

    async def _attempt_unit(self, progress: RebuildProgress, stage: Granularity, unit: WorkUnit) -> int:
        last_error: Optional[BaseException] = None
        for attempt in range(1, self.max_attempts + 1):
            async with self._workers:
                started = asyncio.get_running_loop().time()
                try:
                    written = await asyncio.wait_for(
                        self.unit_runner(unit), timeout=self.unit_timeout_seconds
                    )
                except Exception as e:
                    last_error = e
                else:
                    UNIT_DURATION.labels(stage.value).observe(asyncio.get_running_loop().time() - started)
                    return written

            logger.warning(
                "Unit attempt failed",
                run_id=progress.run_id,
                stage=stage.value,
                unit=unit.label,
                attempt=attempt,
                max_attempts=self.max_attempts,
                error=str(last_error) or type(last_error).__name__,
            )
            if attempt < self.max_attempts:
                await self._sleep(self.retry_delay_seconds)

        raise UnitFailedError(unit.label, self.max_attempts, str(last_error) or type(last_error).__name__)

    async def _publish(self, progress: RebuildProgress) -> Dict[str, Any]:
        blob = progress.to_dict()
        await self.progress_store.put(self.progress_key(progress.run_id), blob, self.progress_ttl_seconds)
        return blob
