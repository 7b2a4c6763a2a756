"""
Rollup Builder

Computes the rollup records of one (granularity, period) pair and upserts
them. Hourly records are folded from raw source rows; every coarser level
sums the next-finer rollup table only:

    raw -> hourly -> daily -> weekly
                           -> monthly -> quarterly -> yearly

Per period and table family the builder:
1. reads finer rows grouped by dimension key (or folds raw rows)
2. recomputes derived rates from the summed components
3. looks up the prior period (and, for months, the same month a year
   earlier) to fill growth fields; missing prior rows leave them null
4. upserts one row per dimension key

A key whose computation fails is logged and skipped; the other keys of the
period are still written. Store errors propagate so the caller can retry.
"""

import time
from datetime import date
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

import structlog
from prometheus_client import Counter, Histogram
from sqlalchemy import func, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from sales_rollups.aggregation.folds import FoldResult, fold_hourly_items, fold_hourly_store
from sales_rollups.aggregation.granularity import Granularity, Period, periods_in_range
from sales_rollups.aggregation.metrics import (
    FAMILIES,
    MetricFamily,
    growth_percent,
    normalize,
)
from sales_rollups.aggregation.source import SourceReader
from sales_rollups.database.connection import session_scope
from sales_rollups.database.filters import apply_dimension_filter, normalize_dimension_filter, within_range
from sales_rollups.database.models import PERIOD_KEY_COLUMNS, rollup_model
from sales_rollups.exceptions import RequestValidationError

logger = structlog.get_logger(__name__)

UPSERT_CHUNK_SIZE = 200

DimensionKey = Tuple[Any, ...]


# =============================================================================
# METRICS
# =============================================================================

RECORDS_WRITTEN = Counter(
    "sales_rollups_records_written_total",
    "Rollup records upserted",
    ["granularity", "family"],
)

KEYS_SKIPPED = Counter(
    "sales_rollups_keys_skipped_total",
    "Dimension keys skipped because their computation failed",
    ["granularity", "family"],
)

BUILD_DURATION = Histogram(
    "sales_rollups_build_seconds",
    "Time spent building one rollup period",
    ["granularity"],
)


# =============================================================================
# BUILDER
# =============================================================================

class RollupBuilder:
    """
    Builds rollup records for one period at a time.

    Example:
        builder = RollupBuilder(session_factory, SqlSourceReader(session_factory))
        written = await builder.build_period(Granularity.MONTHLY, "2025-01")
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        source_reader: Optional[SourceReader] = None,
        families: Optional[Sequence[MetricFamily]] = None,
    ):
        self.session_factory = session_factory
        self.source_reader = source_reader
        self.families = list(families or FAMILIES.values())

        # Every granularity maps to the reader producing its per-key sums
        self._readers: Dict[Granularity, Callable[..., Awaitable[Dict[DimensionKey, Dict[str, Any]]]]] = {
            Granularity.HOURLY: self._fold_source,
            Granularity.DAILY: self._sum_finer,
            Granularity.WEEKLY: self._sum_finer,
            Granularity.MONTHLY: self._sum_finer,
            Granularity.QUARTERLY: self._sum_finer,
            Granularity.YEARLY: self._sum_finer,
        }

    # ----- public operations -----

    async def build_period(
        self,
        granularity: Any,
        period: Any,
        dimension_filter: Optional[Mapping[str, Any]] = None,
    ) -> int:
        """
        Build and upsert every dimension key of one period.

        Args:
            granularity: Target level
            period: Period identifier (see Period.of)
            dimension_filter: Optional column -> value(s) restriction

        Returns:
            Number of rollup records written across table families
        """
        granularity = Granularity.parse(granularity)
        period = Period.of(granularity, period)
        families = self.families_for(dimension_filter)

        started = time.perf_counter()
        written = 0
        for family in families:
            family_filter = normalize_dimension_filter(dimension_filter, family.filter_columns)
            written += await self._build_family(family, granularity, period, family_filter)
        BUILD_DURATION.labels(granularity.value).observe(time.perf_counter() - started)

        logger.info(
            "Rollup period built",
            granularity=granularity.value,
            period=period.label,
            records=written,
            duration_ms=round((time.perf_counter() - started) * 1000, 2),
        )
        return written

    async def build_range(
        self,
        granularity: Any,
        start: date,
        end: date,
        dimension_filter: Optional[Mapping[str, Any]] = None,
    ) -> int:
        """Build every period of ``granularity`` overlapping [start, end], in order."""
        granularity = Granularity.parse(granularity)
        if start > end:
            raise RequestValidationError(f"start {start} is after end {end}")
        written = 0
        for period in periods_in_range(granularity, start, end):
            written += await self.build_period(granularity, period, dimension_filter)
        return written

    async def expected_values(
        self,
        family: MetricFamily,
        granularity: Granularity,
        period: Period,
        dimension_filter: Optional[Mapping[str, Any]] = None,
    ) -> Dict[DimensionKey, Dict[str, Any]]:
        """Summable values the finer level implies for each key of a period."""
        family_filter = normalize_dimension_filter(dimension_filter, family.filter_columns)
        return await self._readers[granularity](family, granularity, period, family_filter)

    def families_for(self, dimension_filter: Optional[Mapping[str, Any]]) -> List[MetricFamily]:
        """Families whose tables can honour every column of the filter."""
        if not dimension_filter:
            return self.families
        columns = set(dimension_filter)
        families = [f for f in self.families if columns <= set(f.filter_columns)]
        if not families:
            allowed = sorted({c for f in self.families for c in f.filter_columns})
            raise RequestValidationError(
                f"Cannot filter on {sorted(columns)}; filterable columns are {allowed}"
            )
        return families

    # ----- readers -----

    async def _fold_source(
        self,
        family: MetricFamily,
        granularity: Granularity,
        period: Period,
        dimension_filter: Dict[str, Any],
    ) -> Dict[DimensionKey, Dict[str, Any]]:
        if self.source_reader is None:
            raise RuntimeError("Hourly rollups need a source reader")

        lines = await self.source_reader.read_order_lines(period.start, dimension_filter)
        if family.name == "store":
            orders = await self.source_reader.read_orders(period.start, dimension_filter)
            fold = fold_hourly_store(orders, lines)
        else:
            fold = fold_hourly_items(lines)

        self._log_fold_losses(family, period, fold)

        values: Dict[DimensionKey, Dict[str, Any]] = {}
        for record in fold.records:
            key = tuple(record[c] for c in family.dimension_columns) + (record["hour"],)
            values[key] = record
        return values

    async def _sum_finer(
        self,
        family: MetricFamily,
        granularity: Granularity,
        period: Period,
        dimension_filter: Dict[str, Any],
    ) -> Dict[DimensionKey, Dict[str, Any]]:
        source_level = granularity.source
        source = rollup_model(family, source_level)
        dims = [getattr(source, c) for c in family.dimension_columns]

        columns = list(dims)
        for metric in family.summable(granularity):
            if metric.day_count and source_level in (Granularity.HOURLY, Granularity.DAILY):
                expr = func.count(func.distinct(source.business_date))
            else:
                expr = func.sum(getattr(source, metric.name))
            columns.append(expr.label(metric.name))
        for column in family.descriptive_columns:
            columns.append(func.max(getattr(source, column)).label(column))

        stmt = select(*columns).group_by(*dims).order_by(*dims)
        stmt = within_range(stmt, source, source_level, period.start, period.end)
        stmt = apply_dimension_filter(stmt, source, dimension_filter)

        async with session_scope(self.session_factory) as session:
            result = await session.execute(stmt)
            rows = [dict(row._mapping) for row in result]

        return {tuple(row[c] for c in family.dimension_columns): row for row in rows}

    # ----- composition -----

    async def _build_family(
        self,
        family: MetricFamily,
        granularity: Granularity,
        period: Period,
        dimension_filter: Dict[str, Any],
    ) -> int:
        sums = await self._readers[granularity](family, granularity, period, dimension_filter)
        if not sums:
            logger.debug(
                "No finer rows, period skipped",
                granularity=granularity.value,
                period=period.label,
                family=family.name,
            )
            return 0

        model = rollup_model(family, granularity)
        prior: Dict[DimensionKey, Dict[str, Any]] = {}
        prior_year: Dict[DimensionKey, Dict[str, Any]] = {}
        growth_columns = family.growth_columns(granularity)
        if growth_columns:
            prior = await self._period_values(family, model, period.prior(), dimension_filter)
            if any(kind.startswith("yoy") for _, kind in growth_columns.values()):
                prior_year = await self._period_values(
                    family, model, period.same_period_prior_year(), dimension_filter
                )

        rows: List[Dict[str, Any]] = []
        for key, values in sums.items():
            dimension_key = key[:len(family.dimension_columns)]
            try:
                rows.append(self._compose(
                    family, granularity, period, values,
                    prior.get(dimension_key), prior_year.get(dimension_key),
                ))
            except Exception as e:
                KEYS_SKIPPED.labels(granularity.value, family.name).inc()
                logger.error(
                    "Rollup key skipped",
                    granularity=granularity.value,
                    period=period.label,
                    family=family.name,
                    dimension_key=list(key),
                    error=str(e),
                    error_type=type(e).__name__,
                )

        if rows:
            conflict = list(family.dimension_columns) + list(PERIOD_KEY_COLUMNS[granularity])
            async with session_scope(self.session_factory) as session:
                await upsert_rows(session, model, rows, conflict)
            RECORDS_WRITTEN.labels(granularity.value, family.name).inc(len(rows))

        return len(rows)

    def _compose(
        self,
        family: MetricFamily,
        granularity: Granularity,
        period: Period,
        values: Mapping[str, Any],
        prior: Optional[Mapping[str, Any]],
        prior_year: Optional[Mapping[str, Any]],
    ) -> Dict[str, Any]:
        row: Dict[str, Any] = {c: values[c] for c in family.dimension_columns}
        for column in family.descriptive_columns:
            row[column] = values.get(column)
        row.update(period.key_values())
        row.update(period.descriptive_values())
        if granularity == Granularity.HOURLY:
            hour = int(values["hour"])
            if not 0 <= hour <= 23:
                raise ValueError(f"hour {hour} out of range")
            row["hour"] = hour

        metrics = {
            metric.name: normalize(metric, values.get(metric.name))
            for metric in family.summable(granularity)
        }
        row.update(metrics)
        row.update(family.compute_derived(metrics, granularity))

        for column, (growth, kind) in family.growth_columns(granularity).items():
            reference = prior if kind in ("diff", "percent") else prior_year
            current = metrics[growth.metric]
            previous = reference.get(growth.metric) if reference else None
            if previous is None:
                row[column] = None
            elif kind.endswith("percent"):
                row[column] = growth_percent(current, previous)
            else:
                row[column] = normalize(family.get(growth.metric), current - previous)
        return row

    async def _period_values(
        self,
        family: MetricFamily,
        model: Any,
        period: Period,
        dimension_filter: Dict[str, Any],
    ) -> Dict[DimensionKey, Dict[str, Any]]:
        """Growth metrics of an existing period, keyed by dimension key."""
        growth_metrics = sorted({g.metric for g, _ in family.growth_columns(period.granularity).values()})
        dims = [getattr(model, c) for c in family.dimension_columns]
        stmt = select(*dims, *[getattr(model, m) for m in growth_metrics]).filter_by(**period.key_values())
        stmt = apply_dimension_filter(stmt, model, dimension_filter)

        async with session_scope(self.session_factory) as session:
            result = await session.execute(stmt)
            rows = [dict(row._mapping) for row in result]
        return {tuple(row[c] for c in family.dimension_columns): row for row in rows}

    def _log_fold_losses(self, family: MetricFamily, period: Period, fold: FoldResult) -> None:
        if fold.dropped_rows:
            logger.warning(
                "Source rows without a dimension key dropped",
                granularity=Granularity.HOURLY.value,
                period=period.label,
                family=family.name,
                rows=fold.dropped_rows,
            )
        for key in fold.skipped_keys:
            KEYS_SKIPPED.labels(Granularity.HOURLY.value, family.name).inc()
            logger.error(
                "Rollup key skipped, malformed source rows",
                granularity=Granularity.HOURLY.value,
                period=period.label,
                family=family.name,
                dimension_key=list(key),
            )


# =============================================================================
# STORE HELPERS
# =============================================================================

def _insert_for(session: AsyncSession):
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        return pg_insert
    if dialect == "sqlite":
        return sqlite_insert
    raise RuntimeError(f"Upserts are not supported for the {dialect} dialect")


async def upsert_rows(
    session: AsyncSession,
    model: Any,
    rows: Iterable[Dict[str, Any]],
    conflict_columns: List[str],
) -> int:
    """INSERT ... ON CONFLICT DO UPDATE, in chunks; returns the number of rows sent."""
    insert = _insert_for(session)
    rows = list(rows)
    for offset in range(0, len(rows), UPSERT_CHUNK_SIZE):
        chunk = rows[offset:offset + UPSERT_CHUNK_SIZE]
        stmt = insert(model).values(chunk)
        updates = {
            column: stmt.excluded[column]
            for column in chunk[0]
            if column not in conflict_columns
        }
        updates["updated_at"] = func.now()
        updates["computed_at"] = func.now()
        stmt = stmt.on_conflict_do_update(index_elements=conflict_columns, set_=updates)
        await session.execute(stmt)
    return len(rows)
