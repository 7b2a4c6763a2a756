"""
Dimension Filters

Shared ``column = value`` / ``column IN (...)`` predicates used by the source
reader, the rollup builder and the query planner.
"""

from datetime import date
from typing import Any, Dict, Iterable, Mapping, Optional

from sqlalchemy import Select

from sales_rollups.aggregation.granularity import Granularity
from sales_rollups.exceptions import RequestValidationError


def normalize_dimension_filter(
    dimension_filter: Optional[Mapping[str, Any]],
    allowed: Iterable[str],
) -> Dict[str, Any]:
    """
    Validate filter columns and drop empty entries.

    Scalars become equality filters, lists/tuples/sets become IN filters.
    """
    if not dimension_filter:
        return {}
    allowed = set(allowed)
    normalized: Dict[str, Any] = {}
    for column, value in dimension_filter.items():
        if column not in allowed:
            raise RequestValidationError(
                f"Cannot filter on {column!r}; filterable columns are {sorted(allowed)}"
            )
        if value is None:
            continue
        if isinstance(value, (list, tuple, set, frozenset)):
            normalized[column] = [str(v) for v in value]
        else:
            normalized[column] = str(value)
    return normalized


def within_range(stmt: Select, model: Any, granularity: Granularity, start: date, end: date) -> Select:
    """Restrict a rollup table to rows whose period lies inside [start, end]."""
    if granularity in (Granularity.HOURLY, Granularity.DAILY):
        return stmt.where(model.business_date.between(start, end))
    return stmt.where(
        model.period_start_date >= start,
        model.period_end_date <= end,
    )


def apply_dimension_filter(stmt: Select, model: Any, dimension_filter: Mapping[str, Any]) -> Select:
    """Add one WHERE clause per filter column present on ``model``."""
    for column, value in (dimension_filter or {}).items():
        attr = getattr(model, column, None)
        if attr is None:
            continue
        if isinstance(value, list):
            stmt = stmt.where(attr.in_(value))
        else:
            stmt = stmt.where(attr == value)
    return stmt
