"""
Intelligent Query Planner

Answers ``(start, end, dimension filter, metrics)`` with one merged row per
dimension key:

1. validate the request and clamp the range
2. ask the optimizer for the cheapest ADD/SUBTRACT plan
3. translate every operation into a grouped query on its rollup table
4. run the queries concurrently, sum the ADD results per key, then apply the
   SUBTRACT results clamped at zero
5. recompute derived rates from their merged components, order and limit

``explain`` stops after step 3.
"""

import asyncio
import heapq
import time
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple, Union

import structlog
from prometheus_client import Histogram
from sqlalchemy import Select, func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from sales_rollups.aggregation.granularity import parse_date
from sales_rollups.aggregation.metrics import (
    Aggregation,
    MetricFamily,
    get_family,
    infer_aggregation,
    normalize,
    ratio,
    to_decimal,
)
from sales_rollups.config import get_settings
from sales_rollups.database.connection import session_scope
from sales_rollups.database.filters import apply_dimension_filter, normalize_dimension_filter, within_range
from sales_rollups.database.models import rollup_model
from sales_rollups.exceptions import QueryExecutionError, RequestValidationError
from sales_rollups.planner.optimizer import CostBasedOptimizer, OperationType, PlanOperation, QueryPlan

logger = structlog.get_logger(__name__)

QUERY_DURATION = Histogram(
    "sales_rollups_query_seconds",
    "Planner query wall-clock time",
    ["strategy"],
)

MetricSpec = Union[str, Mapping[str, Any]]
OrderSpec = Union[str, Mapping[str, Any], Tuple[str, str]]


# =============================================================================
# REQUEST MODELS
# =============================================================================

@dataclass(frozen=True)
class MetricRequest:
    """A requested output column"""
    field: str
    alias: str
    aggregation: Aggregation
    recompute: bool = False

    @property
    def label(self) -> str:
        """Column label used in the generated SQL."""
        if self.aggregation == Aggregation.AVG and not self.recompute:
            return f"avg__{self.field}"
        return self.field


@dataclass
class QueryRequest:
    """A validated planner request"""
    start: date
    end: date
    family: MetricFamily
    metrics: List[MetricRequest]
    dimension_filter: Dict[str, Any] = field(default_factory=dict)
    order_by: List[Tuple[str, bool]] = field(default_factory=list)
    limit: Optional[int] = None
    requested_end: Optional[date] = None

    @property
    def sum_fields(self) -> List[str]:
        """Summable columns fetched with SUM, derived-rate components included."""
        fields: List[str] = []
        for metric in self.metrics:
            if metric.recompute:
                candidates = self.family.get(metric.field).components
            elif metric.aggregation == Aggregation.SUM:
                candidates = (metric.field,)
            else:
                candidates = ()
            for name in candidates:
                if name not in fields:
                    fields.append(name)
        return fields

    @property
    def avg_metrics(self) -> List[MetricRequest]:
        return [m for m in self.metrics if m.aggregation == Aggregation.AVG and not m.recompute]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "start": self.start.isoformat(),
            "end": self.end.isoformat(),
            "summary_type": self.family.name,
            "metrics": [
                {"field": m.field, "alias": m.alias, "agg": m.aggregation.value, "recomputed": m.recompute}
                for m in self.metrics
            ],
            "dimension_filter": self.dimension_filter,
            "order_by": [{"field": f, "direction": "desc" if d else "asc"} for f, d in self.order_by],
            "limit": self.limit,
        }


@dataclass
class QueryResult:
    """Merged rows plus plan metadata"""
    rows: List[Dict[str, Any]]
    metadata: Dict[str, Any]


# =============================================================================
# PLANNER
# =============================================================================

class QueryPlanner:
    """
    Cost-based range queries over the rollup hierarchy.

    Example:
        planner = QueryPlanner(session_factory)
        result = await planner.query("2024-01-22", "2025-01-02", {"store_id": "S001"}, ["total_sales"])
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        optimizer: Optional[CostBasedOptimizer] = None,
        max_parallel_queries: Optional[int] = None,
        clamp_to_today: Optional[bool] = None,
        today: Callable[[], date] = date.today,
    ):
        config = get_settings().planner
        self.session_factory = session_factory
        self.optimizer = optimizer or CostBasedOptimizer()
        self.max_parallel_queries = max_parallel_queries or config.max_parallel_queries
        self.clamp_to_today = config.clamp_to_today if clamp_to_today is None else clamp_to_today
        self.today = today

    # ----- validation -----

    def prepare(
        self,
        start: Any,
        end: Any,
        dimension_filter: Optional[Mapping[str, Any]] = None,
        metrics: Optional[Sequence[MetricSpec]] = None,
        summary_type: str = "store",
        order_by: Optional[Sequence[OrderSpec]] = None,
        limit: Optional[int] = None,
    ) -> QueryRequest:
        """Validate a request; raises RequestValidationError before any query runs."""
        start = parse_date(start, "start")
        end = parse_date(end, "end")
        if start > end:
            raise RequestValidationError(f"start {start} is after end {end}")

        family = get_family(summary_type)
        parsed = parse_metrics(family, metrics)
        filters = normalize_dimension_filter(dimension_filter, family.filter_columns)
        outputs = set(family.dimension_columns) | set(family.descriptive_columns) | {m.alias for m in parsed}
        ordering = parse_order_by(order_by, outputs)

        if limit is not None and int(limit) < 1:
            raise RequestValidationError(f"limit must be positive, got {limit}")

        requested_end = end
        if self.clamp_to_today:
            end = min(end, self.today())

        return QueryRequest(
            start=start,
            end=end,
            family=family,
            metrics=parsed,
            dimension_filter=filters,
            order_by=ordering,
            limit=int(limit) if limit is not None else None,
            requested_end=requested_end,
        )

    # ----- entry points -----

    async def query(
        self,
        start: Any,
        end: Any,
        dimension_filter: Optional[Mapping[str, Any]] = None,
        metrics: Optional[Sequence[MetricSpec]] = None,
        **options: Any,
    ) -> QueryResult:
        request = self.prepare(start, end, dimension_filter, metrics, **options)
        plan = self.optimizer.plan(request.start, request.end)
        return await self.execute_plan(request, plan)

    async def explain(
        self,
        start: Any,
        end: Any,
        dimension_filter: Optional[Mapping[str, Any]] = None,
        metrics: Optional[Sequence[MetricSpec]] = None,
        **options: Any,
    ) -> Dict[str, Any]:
        """The plan and its SQL, without executing anything."""
        request = self.prepare(start, end, dimension_filter, metrics, **options)
        plan = self.optimizer.plan(request.start, request.end)
        return {
            "request": request.to_dict(),
            "clamped": request.requested_end != request.end,
            "plan": plan.to_dict(),
            "queries": [self._describe(request, operation) for operation in plan.operations],
        }

    def _describe(self, request: QueryRequest, operation: PlanOperation) -> Dict[str, Any]:
        compiled = self.build_statement(request, operation).compile()
        return {
            "operation": operation.to_dict(),
            "sql": str(compiled),
            "params": {name: _render(value) for name, value in compiled.params.items()},
        }

    async def execute_plan(self, request: QueryRequest, plan: QueryPlan) -> QueryResult:
        started = time.perf_counter()

        if not plan.operations:
            return QueryResult([], self._metadata(request, plan, started, [], 0))

        semaphore = asyncio.Semaphore(self.max_parallel_queries)

        async def run(operation: PlanOperation):
            async with semaphore:
                return await self._execute_operation(request, operation)

        tasks = [asyncio.ensure_future(run(op)) for op in plan.operations]
        try:
            results = await asyncio.gather(*tasks)
        except Exception:
            for pending in tasks:
                pending.cancel()
            raise
        merged = self.merge(request, plan.operations, results)
        rows = self.finalize(request, merged)

        keys_touched = len({key for result in results for key in result})
        duration = time.perf_counter() - started
        QUERY_DURATION.labels(plan.strategy).observe(duration)
        metadata = self._metadata(request, plan, started, rows, keys_touched)
        logger.info(
            "Planner query executed",
            strategy=plan.strategy,
            operations=len(plan.operations),
            estimated_cost=plan.estimated_cost,
            rows=len(rows),
            execution_time_ms=metadata["execution_time_ms"],
        )
        return QueryResult(rows, metadata)

    # ----- translation -----

    def build_statement(self, request: QueryRequest, operation: PlanOperation) -> Select:
        """SELECT key, SUM/AVG(metrics) FROM <level table> WHERE period AND filters GROUP BY key"""
        model = rollup_model(request.family, operation.granularity)
        dims = [getattr(model, c) for c in request.family.dimension_columns]

        columns = list(dims)
        for column in request.family.descriptive_columns:
            columns.append(func.max(getattr(model, column)).label(column))
        for name in request.sum_fields:
            columns.append(func.sum(getattr(model, name)).label(name))
        for metric in request.avg_metrics:
            columns.append(func.avg(getattr(model, metric.field)).label(metric.label))

        stmt = select(*columns)
        stmt = within_range(stmt, model, operation.granularity, operation.start, operation.end)
        stmt = apply_dimension_filter(stmt, model, request.dimension_filter)
        return stmt.group_by(*dims)

    async def _execute_operation(
        self,
        request: QueryRequest,
        operation: PlanOperation,
    ) -> Dict[Tuple[Any, ...], Dict[str, Any]]:
        stmt = self.build_statement(request, operation)
        try:
            async with session_scope(self.session_factory) as session:
                result = await session.execute(stmt)
                rows = [dict(row._mapping) for row in result]
        except Exception as e:
            logger.error(
                "Plan operation failed",
                operation=operation.to_dict(),
                error=str(e),
                error_type=type(e).__name__,
            )
            raise QueryExecutionError(
                f"{operation.op.value} {operation.granularity.value} "
                f"{operation.start}..{operation.end} failed: {e}",
                operation=operation.to_dict(),
            ) from e

        dims = request.family.dimension_columns
        return {tuple(row[c] for c in dims): row for row in rows}

    # ----- merge -----

    def merge(
        self,
        request: QueryRequest,
        operations: Sequence[PlanOperation],
        results: Sequence[Dict[Tuple[Any, ...], Dict[str, Any]]],
    ) -> Dict[Tuple[Any, ...], Dict[str, Any]]:
        """Sum ADD results per key, then subtract SUBTRACT results clamped at zero."""
        family = request.family
        sum_fields = request.sum_fields
        avg_labels = [m.label for m in request.avg_metrics]
        merged: Dict[Tuple[Any, ...], Dict[str, Any]] = {}

        for operation, rows in zip(operations, results):
            if operation.op != OperationType.ADD:
                continue
            for key, row in rows.items():
                target = merged.get(key)
                if target is None:
                    target = {c: row.get(c) for c in family.dimension_columns}
                    target.update({c: None for c in family.descriptive_columns})
                    target.update({name: _zero(family, name) for name in sum_fields})
                    target.update({label: Decimal("0") for label in avg_labels})
                    merged[key] = target
                for column in family.descriptive_columns:
                    if row.get(column) is not None:
                        target[column] = row[column]
                for name in sum_fields:
                    target[name] += _coerce(family, name, row.get(name))
                for label in avg_labels:
                    if row.get(label) is not None:
                        target[label] += Decimal(str(row[label]))

        # Subtractions only apply after every ADD has been merged
        for operation, rows in zip(operations, results):
            if operation.op != OperationType.SUBTRACT:
                continue
            for key, row in rows.items():
                target = merged.get(key)
                if target is None:
                    continue
                for name in sum_fields:
                    remaining = target[name] - _coerce(family, name, row.get(name))
                    target[name] = max(remaining, _zero(family, name))

        return merged

    def finalize(
        self,
        request: QueryRequest,
        merged: Dict[Tuple[Any, ...], Dict[str, Any]],
    ) -> List[Dict[str, Any]]:
        family = request.family
        rows: List[Dict[str, Any]] = []
        for key in sorted(merged):
            values = merged[key]
            row = {c: values[c] for c in family.dimension_columns}
            for column in family.descriptive_columns:
                row[column] = values[column]
            for metric in request.metrics:
                if metric.recompute:
                    definition = family.get(metric.field)
                    row[metric.alias] = ratio(
                        values[definition.numerator],
                        values[definition.denominator],
                        definition.multiplier,
                    )
                elif metric.aggregation == Aggregation.SUM:
                    row[metric.alias] = normalize(family.get(metric.field), values[metric.field])
                else:
                    row[metric.alias] = to_decimal(values[metric.label])
            rows.append(row)

        return order_rows(rows, request.order_by, request.limit)

    def _metadata(
        self,
        request: QueryRequest,
        plan: QueryPlan,
        started: float,
        rows: List[Dict[str, Any]],
        keys_touched: int,
    ) -> Dict[str, Any]:
        return {
            "strategy": plan.strategy,
            "operations": [op.to_dict() for op in plan.operations],
            "estimated_cost": plan.estimated_cost,
            "candidates": dict(plan.candidates),
            "rows_scanned_est": plan.estimated_cost * keys_touched,
            "rows_returned": len(rows),
            "approximate_metrics": [m.alias for m in request.avg_metrics if len(plan.operations) > 1],
            "range": {
                "start": request.start.isoformat(),
                "end": request.end.isoformat(),
                "clamped": request.requested_end != request.end,
            },
            "execution_time_ms": round((time.perf_counter() - started) * 1000, 2),
        }


# =============================================================================
# PARSING HELPERS
# =============================================================================

def parse_metrics(family: MetricFamily, metrics: Optional[Sequence[MetricSpec]]) -> List[MetricRequest]:
    """
    Normalize metric requests.

    Accepts names, ``"*"`` (the family's default metrics) and mappings with
    ``field``, optional ``agg`` (SUM/AVG) and optional ``alias``. Derived
    rates of the catalog are always recomputed from their components.
    """
    if not metrics:
        metrics = ["*"]

    queryable = set(family.queryable)
    parsed: List[MetricRequest] = []
    for entry in metrics:
        if entry == "*":
            parsed.extend(
                MetricRequest(name, name, infer_aggregation(name))
                for name in family.default_metrics
            )
            continue

        if isinstance(entry, Mapping):
            name = entry.get("field")
            agg = entry.get("agg")
            alias = entry.get("alias") or name
        else:
            name, agg, alias = entry, None, entry

        if not name or name not in queryable:
            raise RequestValidationError(
                f"Unknown metric {name!r} for {family.name} rollups"
            )
        if agg is None:
            aggregation = infer_aggregation(name)
        else:
            try:
                aggregation = Aggregation(str(agg).upper())
            except ValueError:
                raise RequestValidationError(
                    f"Unknown aggregation {agg!r}; expected SUM or AVG"
                ) from None

        definition = family.get(name)
        parsed.append(MetricRequest(name, alias, aggregation, recompute=not definition.is_summable))

    aliases = [m.alias for m in parsed]
    duplicates = sorted({a for a in aliases if aliases.count(a) > 1})
    if duplicates:
        raise RequestValidationError(f"Duplicate metric aliases: {duplicates}")
    return parsed


def parse_order_by(order_by: Optional[Sequence[OrderSpec]], outputs: set) -> List[Tuple[str, bool]]:
    """``"field"``, ``"field desc"``, ``"-field"``, ``(field, dir)`` or ``{field, direction}`` -> (field, descending)."""
    clauses: List[Tuple[str, bool]] = []
    if isinstance(order_by, (str, Mapping)):
        order_by = [order_by]
    for entry in order_by or []:
        if isinstance(entry, Mapping):
            name, direction = entry.get("field"), entry.get("direction", "asc")
        elif isinstance(entry, (tuple, list)):
            name, direction = entry[0], entry[1] if len(entry) > 1 else "asc"
        else:
            parts = str(entry).split()
            name, direction = parts[0], parts[1] if len(parts) > 1 else "asc"
            if name.startswith("-"):
                name, direction = name[1:], "desc"

        direction = str(direction).lower()
        if direction not in ("asc", "desc"):
            raise RequestValidationError(f"Unknown sort direction {direction!r}")
        if name not in outputs:
            raise RequestValidationError(f"Cannot order by {name!r}; choose from {sorted(outputs)}")
        clauses.append((name, direction == "desc"))
    return clauses


def order_rows(
    rows: List[Dict[str, Any]],
    order_by: Sequence[Tuple[str, bool]],
    limit: Optional[int] = None,
) -> List[Dict[str, Any]]:
    """Sort after the merge; nulls always last. A single clause with a limit uses a heap."""
    if order_by:
        if limit is not None and len(order_by) == 1 and all(r[order_by[0][0]] is not None for r in rows):
            name, descending = order_by[0]
            pick = heapq.nlargest if descending else heapq.nsmallest
            return pick(limit, rows, key=lambda r: r[name])
        for name, descending in reversed(order_by):
            present = [r for r in rows if r[name] is not None]
            missing = [r for r in rows if r[name] is None]
            rows = sorted(present, key=lambda r: r[name], reverse=descending) + missing
    if limit is not None:
        rows = rows[:limit]
    return rows


def _zero(family: MetricFamily, name: str):
    return Decimal("0.00") if family.get(name).money else 0


def _coerce(family: MetricFamily, name: str, value: Any):
    if value is None:
        return _zero(family, name)
    if family.get(name).money:
        return Decimal(str(value))
    return int(value)


def _render(value: Any) -> Any:
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, (list, tuple)):
        return [_render(v) for v in value]
    return value
