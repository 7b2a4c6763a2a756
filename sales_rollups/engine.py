"""
Rollup Engine

Single entry point wiring the builder, the rebuild orchestrator, the query
planner and the validators around one rollup store.

Operations:
- rebuild_range / get_rebuild_status: staged rebuilds with progress
- build_period: build one (granularity, period) synchronously
- query / explain: cost-based range queries
- validate_rollup / check_health: consistency and freshness checks
"""

from datetime import date
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional, Sequence

import structlog
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from sales_rollups.aggregation.builder import RollupBuilder
from sales_rollups.aggregation.granularity import parse_date
from sales_rollups.aggregation.health import RollupValidator, check_health
from sales_rollups.aggregation.metrics import get_family
from sales_rollups.aggregation.source import SourceReader, SqlSourceReader
from sales_rollups.database.connection import (
    close_database,
    create_tables,
    get_session_factory,
    init_database,
    session_scope,
)
from sales_rollups.pipeline.orchestrator import PipelineOrchestrator, builder_unit_runner
from sales_rollups.pipeline.progress import ProgressStore, RedisProgressStore, create_redis
from sales_rollups.planner.executor import QueryPlanner, QueryResult
from sales_rollups.planner.optimizer import CostBasedOptimizer

logger = structlog.get_logger(__name__)


class RollupEngine:
    """
    Multi-granularity sales rollups.

    Example:
        engine = await RollupEngine.connect()
        run_id = await engine.rebuild_range("2025-01-01", "2025-01-31", depth="monthly")
        status = await engine.get_rebuild_status(run_id)
        result = await engine.query("2024-01-22", "2025-01-02", {"store_id": "S001"}, ["total_sales"])
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        progress_store: ProgressStore,
        source_reader: Optional[SourceReader] = None,
        optimizer: Optional[CostBasedOptimizer] = None,
        orchestrator_options: Optional[Mapping[str, Any]] = None,
        planner_options: Optional[Mapping[str, Any]] = None,
    ):
        self.session_factory = session_factory
        self.progress_store = progress_store
        self.builder = RollupBuilder(session_factory, source_reader or SqlSourceReader(session_factory))
        self.orchestrator = PipelineOrchestrator(
            builder_unit_runner(self.builder),
            progress_store,
            health_check=self.ping,
            **dict(orchestrator_options or {}),
        )
        self.planner = QueryPlanner(session_factory, optimizer, **dict(planner_options or {}))
        self.validator = RollupValidator(self.builder, session_factory)

    @classmethod
    async def connect(
        cls,
        database_url: Optional[str] = None,
        redis_url: Optional[str] = None,
        ensure_tables: bool = False,
    ) -> "RollupEngine":
        """Open the configured rollup store and Redis progress store"""
        engine = await init_database(database_url)
        if ensure_tables:
            await create_tables(engine)
        client = await create_redis(redis_url)
        return cls(get_session_factory(), RedisProgressStore(client))

    async def close(self) -> None:
        close_store = getattr(self.progress_store, "close", None)
        if close_store is not None:
            await close_store()
        await close_database()

    async def ping(self) -> None:
        """Raise when the rollup store is unreachable."""
        async with session_scope(self.session_factory) as session:
            await session.execute(text("SELECT 1"))

    # ----- rebuilds -----

    async def rebuild_range(self, start: Any, end: Any, depth: Any = None) -> str:
        return await self.orchestrator.rebuild_range(start, end, depth)

    async def get_rebuild_status(self, run_id: str) -> Optional[Dict[str, Any]]:
        """Progress blob of a run, or None once it expired or never existed."""
        return await self.orchestrator.get_status(run_id)

    async def build_period(
        self,
        granularity: Any,
        period: Any,
        dimension_filter: Optional[Mapping[str, Any]] = None,
    ) -> int:
        return await self.builder.build_period(granularity, period, dimension_filter)

    # ----- queries -----

    async def query(
        self,
        start: Any,
        end: Any,
        dimension_filter: Optional[Mapping[str, Any]] = None,
        metrics: Optional[Sequence[Any]] = None,
        **options: Any,
    ) -> QueryResult:
        return await self.planner.query(start, end, dimension_filter, metrics, **options)

    async def explain(
        self,
        start: Any,
        end: Any,
        dimension_filter: Optional[Mapping[str, Any]] = None,
        metrics: Optional[Sequence[Any]] = None,
        **options: Any,
    ) -> Dict[str, Any]:
        return await self.planner.explain(start, end, dimension_filter, metrics, **options)

    # ----- validation -----

    async def validate_rollup(
        self,
        granularity: Any,
        period: Any,
        dimension_filter: Optional[Mapping[str, Any]] = None,
        tolerance: Decimal = Decimal("0.01"),
    ) -> List[Dict[str, Any]]:
        reports = await self.validator.validate(granularity, period, dimension_filter, tolerance)
        return [report.to_dict() for report in reports]

    async def check_health(self, as_of: Any = None, summary_type: str = "store") -> Dict[str, Any]:
        as_of = date.today() if as_of is None else parse_date(as_of, "as_of")
        return await check_health(self.session_factory, as_of, get_family(summary_type))
