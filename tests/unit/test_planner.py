"""
Unit Tests - Query Planner
"""
from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy.ext.asyncio import create_async_engine

from conftest import SOURCE_DAYS
from sales_rollups.aggregation.granularity import Granularity
from sales_rollups.aggregation.metrics import ratio
from sales_rollups.database.connection import create_session_factory
from sales_rollups.exceptions import QueryExecutionError, RequestValidationError
from sales_rollups.planner.executor import QueryPlanner, order_rows
from sales_rollups.planner.optimizer import CostBasedOptimizer, OperationType, PlanOperation


@pytest.fixture
def planner(session_factory) -> QueryPlanner:
    return QueryPlanner(
        session_factory,
        CostBasedOptimizer(hourly_max_days=3, daily_max_days=14),
        max_parallel_queries=1,
        clamp_to_today=False,
    )


def brute_force(rows, start, end, store_id):
    """Totals straight from the daily rows"""
    selected = [
        r for r in rows
        if r["store_id"] == store_id and start <= r["business_date"] <= end
    ]
    sales = sum((r["total_sales"] for r in selected), Decimal("0"))
    orders = sum(r["total_orders"] for r in selected)
    return sales, orders


class TestPlannedQueries:
    """Tests for planned queries against the built hierarchy"""

    async def test_year_minus_weeks_matches_daily_totals(self, planner, built_hierarchy):
        """Test the yearly-subtraction plan returns the daily-level totals"""
        start, end = date(2024, 1, 22), date(2025, 1, 2)

        result = await planner.query(
            start, end, {"store_id": "S001"}, ["total_sales", "total_orders", "avg_order_value"]
        )

        sales, orders = brute_force(built_hierarchy, start, end, "S001")
        assert result.metadata["strategy"] == "yearly_subtraction"
        assert result.metadata["estimated_cost"] == 6
        assert len(result.rows) == 1
        row = result.rows[0]
        assert row["store_id"] == "S001"
        assert row["total_sales"] == sales
        assert row["total_orders"] == orders
        assert row["avg_order_value"] == ratio(sales, orders)

    async def test_item_year_minus_weeks_matches_daily_totals(self, planner, built_item_hierarchy):
        """Test the yearly-subtraction plan over item rollups returns the daily-level totals"""
        start, end = date(2024, 1, 22), date(2025, 1, 2)

        result = await planner.query(
            start, end, {"store_id": "S001", "item_id": "P100"},
            ["quantity_sold", "gross_sales", "avg_item_price"], summary_type="item",
        )

        selected = [
            r for r in built_item_hierarchy
            if r["item_id"] == "P100" and start <= r["business_date"] <= end
        ]
        sales = sum((r["gross_sales"] for r in selected), Decimal("0"))
        quantity = sum(r["quantity_sold"] for r in selected)
        assert result.metadata["strategy"] == "yearly_subtraction"
        assert len(result.rows) == 1
        row = result.rows[0]
        assert (row["store_id"], row["item_id"]) == ("S001", "P100")
        assert row["menu_item_name"] == "Item P100"
        assert row["quantity_sold"] == quantity
        assert row["gross_sales"] == sales
        assert row["avg_item_price"] == ratio(sales, quantity)

    @pytest.mark.parametrize("start,end", [
        (date(2024, 3, 3), date(2024, 4, 30)),
        (date(2024, 2, 10), date(2024, 11, 20)),
        (date(2024, 6, 1), date(2024, 6, 30)),
        (date(2024, 12, 20), date(2025, 1, 12)),
        (date(2024, 1, 1), date(2024, 12, 31)),
        (date(2024, 5, 1), date(2024, 5, 10)),
    ])
    async def test_plans_match_daily_totals(self, planner, built_hierarchy, start, end):
        """Test every strategy agrees with summing daily rows"""
        result = await planner.query(start, end, None, ["total_sales", "total_orders"])

        assert [r["store_id"] for r in result.rows] == ["S001", "S002"]
        for row in result.rows:
            sales, orders = brute_force(built_hierarchy, start, end, row["store_id"])
            assert row["total_sales"] == sales
            assert row["total_orders"] == orders

    async def test_list_filter(self, planner, built_hierarchy):
        """Test IN filters restrict the returned keys"""
        result = await planner.query("2024-02-01", "2024-04-30", {"store_id": ["S002"]}, ["total_sales"])

        assert [r["store_id"] for r in result.rows] == ["S002"]

    async def test_default_metrics(self, planner, built_hierarchy):
        """Test '*' expands to the default metrics"""
        result = await planner.query("2024-02-01", "2024-04-30", {"store_id": "S001"}, ["*"])

        assert set(result.rows[0]) == {"store_id", "total_sales", "gross_sales", "total_orders"}

    async def test_order_by_and_limit(self, planner, built_hierarchy):
        """Test ordering and limits apply to merged rows"""
        result = await planner.query(
            "2024-02-01", "2024-04-30", None, ["total_sales"],
            order_by=["total_sales desc"], limit=1,
        )
        everything = await planner.query("2024-02-01", "2024-04-30", None, ["total_sales"])

        top = max(everything.rows, key=lambda r: r["total_sales"])
        assert result.rows == [top]
        assert result.metadata["rows_returned"] == 1

    async def test_explicit_average_is_flagged(self, planner, built_hierarchy):
        """Test explicit AVG requests over multi-operation plans are reported as approximate"""
        result = await planner.query(
            date(2024, 1, 22), date(2025, 1, 2), {"store_id": "S001"},
            [{"field": "total_sales", "agg": "AVG", "alias": "avg_sales"}, "total_orders"],
        )

        assert result.metadata["approximate_metrics"] == ["avg_sales"]
        assert "avg_sales" in result.rows[0]

    async def test_fast_hourly_path_reads_hourly_rows(self, planner, builder, seeded_source):
        """Test short ranges are answered from hourly rows"""
        for day in SOURCE_DAYS:
            await builder.build_period("hourly", day)

        result = await planner.query(SOURCE_DAYS[0], SOURCE_DAYS[-1], {"store_id": "S001"}, ["total_sales"])

        assert result.metadata["strategy"] == "fast_hourly"
        assert result.rows[0]["total_sales"] == Decimal("300.00")

    async def test_item_summary(self, planner, builder, seeded_source):
        """Test item queries return descriptive columns"""
        for day in SOURCE_DAYS:
            await builder.build_period("hourly", day)

        result = await planner.query(
            SOURCE_DAYS[0], SOURCE_DAYS[-1], {"store_id": "S001", "item_id": "P100"},
            ["quantity_sold", "avg_item_price"], summary_type="item",
        )

        assert len(result.rows) == 1
        row = result.rows[0]
        assert row["menu_item_name"] == "Item P100"
        assert row["quantity_sold"] == 9
        assert row["avg_item_price"] == Decimal("16.67")


class TestClamping:
    """Tests for clamping the range end to today"""

    async def test_end_clamped_to_today(self, session_factory, seeded_daily):
        """Test future end dates are clamped"""
        planner = QueryPlanner(session_factory, clamp_to_today=True, today=lambda: date(2024, 1, 10))

        result = await planner.query("2024-01-01", "2024-12-31", {"store_id": "S001"}, ["total_orders"])

        assert result.metadata["range"] == {"start": "2024-01-01", "end": "2024-01-10", "clamped": True}
        assert result.metadata["strategy"] == "fast_daily"

    async def test_range_entirely_in_future_is_empty(self, session_factory, seeded_daily):
        """Test a range starting after today returns no rows"""
        planner = QueryPlanner(session_factory, clamp_to_today=True, today=lambda: date(2023, 12, 31))

        result = await planner.query("2024-01-01", "2024-01-31", None, ["total_sales"])

        assert result.rows == []
        assert result.metadata["strategy"] == "empty"


class TestValidation:
    """Tests for request validation"""

    async def test_inverted_range(self, planner):
        """Test start after end is rejected"""
        with pytest.raises(RequestValidationError):
            await planner.query("2024-02-01", "2024-01-01", None, ["total_sales"])

    async def test_unknown_metric(self, planner):
        """Test unknown metric names are rejected"""
        with pytest.raises(RequestValidationError):
            await planner.query("2024-01-01", "2024-02-01", None, ["net_profit"])

    async def test_coarse_only_metric_rejected(self, planner):
        """Test metrics missing from daily tables cannot be queried"""
        with pytest.raises(RequestValidationError):
            await planner.query("2024-01-01", "2024-02-01", None, ["avg_daily_sales"])

    async def test_unknown_aggregation(self, planner):
        """Test unknown aggregations are rejected"""
        with pytest.raises(RequestValidationError):
            await planner.query("2024-01-01", "2024-02-01", None, [{"field": "total_sales", "agg": "MEDIAN"}])

    async def test_unknown_filter_column(self, planner):
        """Test filters on unknown columns are rejected"""
        with pytest.raises(RequestValidationError):
            await planner.query("2024-01-01", "2024-02-01", {"item_id": "P100"}, ["total_sales"])

    async def test_unknown_order_column(self, planner):
        """Test ordering by a column that is not returned is rejected"""
        with pytest.raises(RequestValidationError):
            await planner.query("2024-01-01", "2024-02-01", None, ["total_sales"], order_by=["gross_sales"])

    def test_aggregation_inferred_from_name(self, planner):
        """Test rate and average names are treated as derived averages"""
        request = planner.prepare("2024-01-01", "2024-02-01", None, ["digital_penetration", "total_sales"])

        assert request.metrics[0].recompute is True
        assert request.sum_fields == ["digital_orders", "total_orders", "total_sales"]


class TestMerge:
    """Tests for combining operation results"""

    def test_subtraction_clamped_at_zero(self, planner):
        """Test subtracting more than was added never goes negative"""
        request = planner.prepare("2024-01-01", "2024-12-31", None, ["total_sales", "total_orders"])
        operations = [
            PlanOperation(OperationType.ADD, Granularity.YEARLY, date(2024, 1, 1), date(2024, 12, 31)),
            PlanOperation(OperationType.SUBTRACT, Granularity.DAILY, date(2024, 1, 1), date(2024, 1, 2)),
        ]
        results = [
            {("S001",): {"store_id": "S001", "total_sales": Decimal("10.00"), "total_orders": 5}},
            {("S001",): {"store_id": "S001", "total_sales": Decimal("25.00"), "total_orders": 2}},
        ]

        merged = planner.merge(request, operations, results)

        assert merged[("S001",)]["total_sales"] == Decimal("0.00")
        assert merged[("S001",)]["total_orders"] == 3

    def test_subtract_only_keys_ignored(self, planner):
        """Test keys only present in subtracted rows produce no output"""
        request = planner.prepare("2024-01-01", "2024-12-31", None, ["total_sales"])
        operations = [
            PlanOperation(OperationType.ADD, Granularity.MONTHLY, date(2024, 1, 1), date(2024, 1, 31)),
            PlanOperation(OperationType.SUBTRACT, Granularity.DAILY, date(2024, 1, 1), date(2024, 1, 1)),
        ]
        results = [
            {("S001",): {"store_id": "S001", "total_sales": Decimal("10.00")}},
            {("S009",): {"store_id": "S009", "total_sales": Decimal("4.00")}},
        ]

        merged = planner.merge(request, operations, results)

        assert list(merged) == [("S001",)]

    def test_order_rows_nulls_last(self):
        """Test null values sort after present values"""
        rows = [{"k": "a", "v": None}, {"k": "b", "v": 2}, {"k": "c", "v": 5}]

        assert [r["k"] for r in order_rows(rows, [("v", True)])] == ["c", "b", "a"]
        assert [r["k"] for r in order_rows(rows, [("v", False)], limit=2)] == ["b", "c"]


class TestExplainAndFailures:
    """Tests for explain mode and failed operations"""

    async def test_explain_does_not_execute(self, planner):
        """Test explain returns the plan and SQL without touching data"""
        explained = await planner.explain(date(2024, 1, 22), date(2025, 1, 2), {"store_id": "S001"}, ["total_sales"])

        assert explained["plan"]["strategy"] == "yearly_subtraction"
        assert len(explained["queries"]) == 3
        assert "yearly_store_summary" in explained["queries"][0]["sql"]
        assert "weekly_store_summary" in explained["queries"][1]["sql"]
        assert "S001" in explained["queries"][0]["params"].values()

    async def test_failed_operation_fails_query(self, tmp_path):
        """Test a failing operation raises instead of returning partial totals"""
        engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'empty.db'}")
        planner = QueryPlanner(create_session_factory(engine), clamp_to_today=False)
        try:
            with pytest.raises(QueryExecutionError) as exc_info:
                await planner.query("2024-01-22", "2025-01-02", None, ["total_sales"])
        finally:
            await engine.dispose()

        assert exc_info.value.operation is not None
