"""
Aggregation Health and Validation

Consistency checks over built rollups:
- validate: re-derive a built period from its finer level and compare the
  stored summable metrics within a tolerance
- check_health: row counts per level around a date and the freshness of the
  daily level
"""

from dataclasses import dataclass, field
from datetime import date, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from sales_rollups.aggregation.builder import RollupBuilder
from sales_rollups.aggregation.granularity import HIERARCHY, Granularity, Period
from sales_rollups.aggregation.metrics import STORE_FAMILY, MetricFamily, normalize
from sales_rollups.database.connection import session_scope
from sales_rollups.database.filters import apply_dimension_filter, normalize_dimension_filter
from sales_rollups.database.models import rollup_model

logger = structlog.get_logger(__name__)


@dataclass
class ValidationReport:
    """Result of comparing one family's stored period against its finer level"""
    granularity: Granularity
    period: str
    family: str
    keys_checked: int = 0
    mismatches: List[Dict[str, Any]] = field(default_factory=list)
    missing_keys: List[List[Any]] = field(default_factory=list)
    unexpected_keys: List[List[Any]] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not (self.mismatches or self.missing_keys or self.unexpected_keys)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "granularity": self.granularity.value,
            "period": self.period,
            "family": self.family,
            "keys_checked": self.keys_checked,
            "is_valid": self.is_valid,
            "mismatches": self.mismatches,
            "missing_keys": self.missing_keys,
            "unexpected_keys": self.unexpected_keys,
        }


class RollupValidator:
    """
    Checks that built rollups agree with the level they were built from.

    Example:
        validator = RollupValidator(builder, session_factory)
        reports = await validator.validate(Granularity.DAILY, date(2025, 1, 15))
    """

    def __init__(
        self,
        builder: RollupBuilder,
        session_factory: async_sessionmaker[AsyncSession],
    ):
        self.builder = builder
        self.session_factory = session_factory

    async def validate(
        self,
        granularity: Any,
        period: Any,
        dimension_filter: Optional[Mapping[str, Any]] = None,
        tolerance: Decimal = Decimal("0.01"),
    ) -> List[ValidationReport]:
        granularity = Granularity.parse(granularity)
        period = Period.of(granularity, period)
        reports = []
        for family in self.builder.families_for(dimension_filter):
            expected = await self.builder.expected_values(family, granularity, period, dimension_filter)
            stored = await self._stored_values(family, granularity, period, dimension_filter)
            report = self._compare(family, granularity, period, expected, stored, Decimal(str(tolerance)))
            if not report.is_valid:
                logger.warning(
                    "Rollup validation failed",
                    granularity=granularity.value,
                    period=period.label,
                    family=family.name,
                    mismatches=len(report.mismatches),
                    missing=len(report.missing_keys),
                    unexpected=len(report.unexpected_keys),
                )
            reports.append(report)
        return reports

    async def _stored_values(
        self,
        family: MetricFamily,
        granularity: Granularity,
        period: Period,
        dimension_filter: Optional[Mapping[str, Any]],
    ) -> Dict[tuple, Dict[str, Any]]:
        model = rollup_model(family, granularity)
        key_columns = list(family.dimension_columns)
        if granularity == Granularity.HOURLY:
            key_columns.append("hour")
        columns = key_columns + [m.name for m in family.summable(granularity)]

        stmt = select(*[getattr(model, c) for c in columns]).filter_by(**period.key_values())
        stmt = apply_dimension_filter(
            stmt, model, normalize_dimension_filter(dimension_filter, family.filter_columns)
        )
        async with session_scope(self.session_factory) as session:
            result = await session.execute(stmt)
            rows = [dict(row._mapping) for row in result]
        return {tuple(row[c] for c in key_columns): row for row in rows}

    @staticmethod
    def _compare(
        family: MetricFamily,
        granularity: Granularity,
        period: Period,
        expected: Dict[tuple, Dict[str, Any]],
        stored: Dict[tuple, Dict[str, Any]],
        tolerance: Decimal,
    ) -> ValidationReport:
        report = ValidationReport(granularity, period.label, family.name, keys_checked=len(expected))
        report.missing_keys = [list(k) for k in sorted(set(expected) - set(stored))]
        report.unexpected_keys = [list(k) for k in sorted(set(stored) - set(expected))]

        for key in sorted(set(expected) & set(stored)):
            for metric in family.summable(granularity):
                want = Decimal(str(normalize(metric, expected[key].get(metric.name))))
                have = Decimal(str(stored[key][metric.name] or 0))
                if abs(want - have) > tolerance:
                    report.mismatches.append({
                        "dimension_key": list(key),
                        "metric": metric.name,
                        "expected": str(want),
                        "stored": str(have),
                    })
        return report


async def check_health(
    session_factory: async_sessionmaker[AsyncSession],
    as_of: date,
    family: MetricFamily = STORE_FAMILY,
) -> Dict[str, Any]:
    """
    Row counts for the periods containing ``as_of`` and daily freshness.

    The store is healthy when the day before ``as_of`` has daily rows.
    """
    levels: Dict[str, Any] = {}
    async with session_scope(session_factory) as session:
        for granularity in HIERARCHY:
            model = rollup_model(family, granularity)
            period = Period.containing(granularity, as_of)
            count = await session.scalar(
                select(func.count()).select_from(model).filter_by(**period.key_values())
            )
            levels[granularity.value] = {"period": period.label, "records": int(count or 0)}

        daily = rollup_model(family, Granularity.DAILY)
        latest = await session.scalar(select(func.max(daily.business_date)))
        previous_day = as_of - timedelta(days=1)
        previous_count = await session.scalar(
            select(func.count()).select_from(daily).where(daily.business_date == previous_day)
        )

    healthy = bool(previous_count)
    if not healthy:
        logger.warning("Daily rollups missing", family=family.name, business_date=previous_day.isoformat())

    return {
        "as_of": as_of.isoformat(),
        "family": family.name,
        "healthy": healthy,
        "latest_daily_date": latest.isoformat() if latest else None,
        "levels": levels,
    }
