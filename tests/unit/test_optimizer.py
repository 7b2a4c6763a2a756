"""
Unit Tests - Cost-Based Plan Optimizer
"""
import random
from collections import Counter
from datetime import date, timedelta

import pytest

from sales_rollups.aggregation.granularity import Granularity, iter_days
from sales_rollups.planner.optimizer import CostBasedOptimizer, OperationType, PlanOperation


@pytest.fixture
def optimizer() -> CostBasedOptimizer:
    return CostBasedOptimizer(hourly_max_days=3, daily_max_days=14)


def day_coverage(plan) -> Counter:
    """Net number of times each day is counted by a plan"""
    coverage: Counter = Counter()
    for operation in plan.operations:
        sign = 1 if operation.op == OperationType.ADD else -1
        for day in iter_days(operation.start, operation.end):
            coverage[day] += sign
    return coverage


class TestFastPaths:
    """Tests for short ranges that skip optimization"""

    def test_three_days_scan_hourly(self, optimizer):
        """Test ranges up to three days use the hourly table"""
        plan = optimizer.plan(date(2025, 1, 1), date(2025, 1, 3))

        assert plan.strategy == "fast_hourly"
        assert len(plan.operations) == 1
        assert plan.operations[0].granularity == Granularity.HOURLY
        assert plan.estimated_cost == 72

    def test_ten_days_scan_daily(self, optimizer):
        """Test ranges up to fourteen days use the daily table"""
        plan = optimizer.plan(date(2025, 1, 1), date(2025, 1, 10))

        assert plan.strategy == "fast_daily"
        assert plan.operations == [
            PlanOperation(OperationType.ADD, Granularity.DAILY, date(2025, 1, 1), date(2025, 1, 10))
        ]
        assert plan.estimated_cost == 10

    def test_fifteen_days_optimized(self, optimizer):
        """Test ranges longer than fourteen days are cost-optimized"""
        plan = optimizer.plan(date(2025, 1, 1), date(2025, 1, 15))

        assert plan.strategy not in ("fast_hourly", "fast_daily")
        assert set(plan.candidates) == {
            "direct_daily",
            "direct_weekly",
            "direct_monthly",
            "yearly_subtraction",
            "monthly_subtraction",
        }

    def test_empty_range(self, optimizer):
        """Test an inverted range yields an empty plan"""
        plan = optimizer.plan(date(2025, 1, 2), date(2025, 1, 1))

        assert plan.strategy == "empty"
        assert plan.operations == []


class TestStrategies:
    """Tests for strategy selection"""

    def test_year_minus_leading_weeks(self, optimizer):
        """Test a nearly full year is answered as the year minus its leading weeks"""
        plan = optimizer.plan(date(2024, 1, 22), date(2025, 1, 2))

        assert plan.strategy == "yearly_subtraction"
        assert plan.operations == [
            PlanOperation(OperationType.ADD, Granularity.YEARLY, date(2024, 1, 1), date(2024, 12, 31)),
            PlanOperation(OperationType.SUBTRACT, Granularity.WEEKLY, date(2024, 1, 1), date(2024, 1, 21)),
            PlanOperation(OperationType.ADD, Granularity.DAILY, date(2025, 1, 1), date(2025, 1, 2)),
        ]
        assert plan.estimated_cost == 6
        assert plan.candidates["direct_daily"] == 347
        assert plan.candidates["direct_monthly"] == 17

    def test_month_minus_leading_days(self, optimizer):
        """Test a mostly covered month is added and its excluded days subtracted"""
        plan = optimizer.plan(date(2024, 3, 3), date(2024, 4, 30))

        assert plan.estimated_cost == 4
        assert plan.subtractions == [
            PlanOperation(OperationType.SUBTRACT, Granularity.DAILY, date(2024, 3, 1), date(2024, 3, 2)),
        ]
        assert plan.candidates["direct_monthly"] == 6

    def test_whole_months(self, optimizer):
        """Test whole calendar months are answered from the monthly table"""
        plan = optimizer.plan(date(2024, 2, 1), date(2024, 4, 30))

        assert plan.strategy == "direct_monthly"
        assert plan.operations == [
            PlanOperation(OperationType.ADD, Granularity.MONTHLY, date(2024, 2, 1), date(2024, 4, 30)),
        ]
        assert plan.estimated_cost == 3

    def test_whole_year(self, optimizer):
        """Test a calendar year costs a single yearly row"""
        plan = optimizer.plan(date(2023, 1, 1), date(2023, 12, 31))

        assert plan.estimated_cost == 1
        assert plan.operations[0].granularity == Granularity.YEARLY
        assert plan.operations[0].to_dict()["year"] == 2023

    def test_ties_prefer_earlier_strategy(self, optimizer):
        """Test equal-cost candidates resolve to the earlier strategy"""
        plan = optimizer.plan(date(2024, 1, 1), date(2024, 1, 21))

        assert plan.candidates["direct_weekly"] == 3
        assert plan.strategy == "direct_weekly"


class TestPlanProperties:
    """Tests for invariants every plan satisfies"""

    def test_random_ranges_cover_each_day_once(self, optimizer):
        """Test random ranges net to exactly one count per day and never beat direct daily on cost"""
        rng = random.Random(20240122)
        for _ in range(150):
            start = date(2023, 1, 1) + timedelta(days=rng.randint(0, 900))
            end = start + timedelta(days=rng.randint(0, 800))
            plan = optimizer.plan(start, end)

            coverage = day_coverage(plan)
            inside = {day for day in iter_days(start, end)}
            assert all(coverage[day] == 1 for day in inside), (start, end, plan.to_dict())
            assert all(count == 0 for day, count in coverage.items() if day not in inside)
            assert plan.estimated_cost <= max((end - start).days + 1, 1) * 24

            if plan.strategy not in ("fast_hourly", "fast_daily"):
                assert plan.estimated_cost <= plan.candidates["direct_daily"]
                assert plan.estimated_cost == min(plan.candidates.values())

    def test_subtractions_only_inside_additions(self, optimizer):
        """Test every subtracted day is also added by the same plan"""
        rng = random.Random(7)
        for _ in range(100):
            start = date(2024, 1, 1) + timedelta(days=rng.randint(0, 365))
            end = start + timedelta(days=rng.randint(15, 500))
            plan = optimizer.plan(start, end)

            added = set()
            for operation in plan.additions:
                added.update(iter_days(operation.start, operation.end))
            for operation in plan.subtractions:
                assert set(iter_days(operation.start, operation.end)) <= added

    def test_to_dict(self, optimizer):
        """Test plan serialization"""
        data = optimizer.plan(date(2024, 1, 22), date(2025, 1, 2)).to_dict()

        assert data["strategy"] == "yearly_subtraction"
        assert data["estimated_cost"] == 6
        assert data["operations"][1]["op"] == "subtract"
        assert data["operations"][1]["periods"] == 3
