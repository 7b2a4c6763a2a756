"""
Cost-Based Plan Optimizer

Turns a date range into the cheapest list of ADD/SUBTRACT operations over
the rollup tables. Cost is the number of rollup rows scanned per dimension
key, so a whole year costs 1, a month 1, an ISO week 1 and a day 1.

Short ranges skip optimization: up to 3 days scan hourly rows, up to 14 days
scan daily rows. Longer ranges compare five strategies and keep the cheapest
(ties go to the earlier one):

    direct_daily        every day of the range
    direct_weekly       whole ISO weeks, daily edges
    direct_monthly      whole calendar months, daily or weekly edges
    yearly_subtraction  ADD a mostly-covered year, SUBTRACT its excluded days
    monthly_subtraction ADD a mostly-covered month, SUBTRACT its excluded days
"""

from dataclasses import dataclass, field
from datetime import date, timedelta
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from sales_rollups.aggregation.granularity import (
    HOURS_PER_DAY,
    Granularity,
    days_in_year,
    inclusive_days,
    month_end,
    periods_in_range,
)
from sales_rollups.config import get_settings

Operations = List["PlanOperation"]


class OperationType(str, Enum):
    """How an operation's rows combine into the answer"""
    ADD = "add"
    SUBTRACT = "subtract"


@dataclass(frozen=True)
class PlanOperation:
    """One grouped query against one rollup table"""
    op: OperationType
    granularity: Granularity
    start: date
    end: date

    @property
    def days(self) -> int:
        return inclusive_days(self.start, self.end)

    @property
    def periods(self) -> int:
        """Rollup rows per dimension key covered by this operation."""
        if self.granularity == Granularity.HOURLY:
            return self.days * HOURS_PER_DAY
        if self.granularity == Granularity.DAILY:
            return self.days
        return len(periods_in_range(self.granularity, self.start, self.end))

    @property
    def cost(self) -> int:
        return self.periods

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "op": self.op.value,
            "granularity": self.granularity.value,
            "start": self.start.isoformat(),
            "end": self.end.isoformat(),
            "days": self.days,
            "periods": self.periods,
            "cost": self.cost,
        }
        if self.granularity == Granularity.YEARLY and self.start.year == self.end.year:
            data["year"] = self.start.year
        elif self.granularity == Granularity.MONTHLY and self.periods == 1:
            data["year"] = self.start.year
            data["month"] = self.start.month
        return data


@dataclass
class QueryPlan:
    """Chosen operations plus the cost of every strategy considered"""
    strategy: str
    operations: Operations
    candidates: Dict[str, int] = field(default_factory=dict)

    @property
    def estimated_cost(self) -> int:
        return plan_cost(self.operations)

    @property
    def additions(self) -> Operations:
        return [op for op in self.operations if op.op == OperationType.ADD]

    @property
    def subtractions(self) -> Operations:
        return [op for op in self.operations if op.op == OperationType.SUBTRACT]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "strategy": self.strategy,
            "estimated_cost": self.estimated_cost,
            "operations": [op.to_dict() for op in self.operations],
            "candidates": dict(self.candidates),
        }


def plan_cost(operations: Operations) -> int:
    return sum(op.cost for op in operations)


def _cheapest(*candidates: Operations) -> Operations:
    """First candidate with the lowest cost."""
    return min(candidates, key=plan_cost)


def _next_monday(day: date) -> date:
    return day + timedelta(days=(7 - day.weekday()) % 7)


def _previous_sunday(day: date) -> date:
    return day - timedelta(days=(day.weekday() + 1) % 7)


def _first_full_month(day: date) -> date:
    if day.day == 1:
        return day
    return month_end(day.year, day.month) + timedelta(days=1)


def _last_full_month_end(day: date) -> date:
    if day == month_end(day.year, day.month):
        return day
    return day.replace(day=1) - timedelta(days=1)


class CostBasedOptimizer:
    """
    Chooses the minimum-cost plan for a date range.

    Example:
        plan = CostBasedOptimizer().plan(date(2024, 1, 22), date(2025, 1, 2))
        plan.strategy  # "yearly_subtraction"
    """

    def __init__(
        self,
        hourly_max_days: Optional[int] = None,
        daily_max_days: Optional[int] = None,
    ):
        config = get_settings().planner
        self.hourly_max_days = config.hourly_max_days if hourly_max_days is None else hourly_max_days
        self.daily_max_days = config.daily_max_days if daily_max_days is None else daily_max_days

    def plan(self, start: date, end: date) -> QueryPlan:
        days = inclusive_days(start, end)
        if days == 0:
            return QueryPlan("empty", [])
        if days <= self.hourly_max_days:
            ops = self.direct(Granularity.HOURLY, start, end)
            return QueryPlan("fast_hourly", ops, {"fast_hourly": plan_cost(ops)})
        if days <= self.daily_max_days:
            ops = self.direct(Granularity.DAILY, start, end)
            return QueryPlan("fast_daily", ops, {"fast_daily": plan_cost(ops)})

        strategies: List[Tuple[str, Callable[[date, date], Operations]]] = [
            ("direct_daily", lambda a, b: self.direct(Granularity.DAILY, a, b)),
            ("direct_weekly", lambda a, b: self.weekly_cover(a, b, OperationType.ADD)),
            ("direct_monthly", lambda a, b: self.monthly_cover(a, b, OperationType.ADD)),
            ("yearly_subtraction", self.yearly_subtraction),
            ("monthly_subtraction", self.monthly_subtraction),
        ]
        evaluated = [(name, build(start, end)) for name, build in strategies]
        candidates = {name: plan_cost(ops) for name, ops in evaluated}
        name, ops = min(evaluated, key=lambda item: plan_cost(item[1]))
        return QueryPlan(name, ops, candidates)

    # ----- building blocks -----

    @staticmethod
    def direct(
        granularity: Granularity,
        start: date,
        end: date,
        op: OperationType = OperationType.ADD,
    ) -> Operations:
        if start > end:
            return []
        return [PlanOperation(op, granularity, start, end)]

    def weekly_cover(self, start: date, end: date, op: OperationType) -> Operations:
        """Whole ISO weeks inside the range plus daily edges."""
        first_monday = _next_monday(start)
        last_sunday = _previous_sunday(end)
        if first_monday > last_sunday:
            return self.direct(Granularity.DAILY, start, end, op)
        return (
            self.direct(Granularity.DAILY, start, first_monday - timedelta(days=1), op)
            + self.direct(Granularity.WEEKLY, first_monday, last_sunday, op)
            + self.direct(Granularity.DAILY, last_sunday + timedelta(days=1), end, op)
        )

    def edge_cover(self, start: date, end: date, op: OperationType) -> Operations:
        return _cheapest(
            self.direct(Granularity.DAILY, start, end, op),
            self.weekly_cover(start, end, op),
        )

    def monthly_cover(self, start: date, end: date, op: OperationType) -> Operations:
        """Whole calendar months inside the range plus daily or weekly edges."""
        first = _first_full_month(start)
        last = _last_full_month_end(end)
        if first > last:
            return self.edge_cover(start, end, op)
        return (
            self.edge_cover(start, first - timedelta(days=1), op)
            + self.direct(Granularity.MONTHLY, first, last, op)
            + self.edge_cover(last + timedelta(days=1), end, op)
        )

    def exclusion(self, start: date, end: date) -> Operations:
        """Cheapest SUBTRACT operations for [start, end]: daily, weekly-aligned, monthly-aligned."""
        if start > end:
            return []
        sub = OperationType.SUBTRACT
        return _cheapest(
            self.direct(Granularity.DAILY, start, end, sub),
            self.weekly_cover(start, end, sub),
            self.monthly_cover(start, end, sub),
        )

    # ----- subtraction strategies -----

    def yearly_subtraction(self, start: date, end: date) -> Operations:
        ops: Operations = []
        for year in range(start.year, end.year + 1):
            year_start, year_end = date(year, 1, 1), date(year, 12, 31)
            overlap_start, overlap_end = max(start, year_start), min(end, year_end)
            overlap = inclusive_days(overlap_start, overlap_end)
            if overlap * 2 >= days_in_year(year):
                ops += self.direct(Granularity.YEARLY, year_start, year_end)
                ops += self.exclusion(year_start, overlap_start - timedelta(days=1))
                ops += self.exclusion(overlap_end + timedelta(days=1), year_end)
            else:
                ops += _cheapest(
                    self.direct(Granularity.DAILY, overlap_start, overlap_end),
                    self.weekly_cover(overlap_start, overlap_end, OperationType.ADD),
                    self.monthly_cover(overlap_start, overlap_end, OperationType.ADD),
                    self.monthly_subtraction(overlap_start, overlap_end),
                )
        return ops

    def monthly_subtraction(self, start: date, end: date) -> Operations:
        ops: Operations = []
        for month in periods_in_range(Granularity.MONTHLY, start, end):
            overlap_start, overlap_end = max(start, month.start), min(end, month.end)
            overlap = inclusive_days(overlap_start, overlap_end)
            if overlap * 2 >= month.days:
                ops += self.direct(Granularity.MONTHLY, month.start, month.end)
                ops += self.exclusion(month.start, overlap_start - timedelta(days=1))
                ops += self.exclusion(overlap_end + timedelta(days=1), month.end)
            else:
                ops += self.edge_cover(overlap_start, overlap_end, OperationType.ADD)
        return ops
