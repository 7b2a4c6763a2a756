"""
Unit Tests - Aggregation Health and Validation
"""
from datetime import date
from decimal import Decimal

from sqlalchemy import update

from sales_rollups.aggregation.health import RollupValidator, check_health
from sales_rollups.database.models import MonthlyStoreSummary


class TestRollupValidator:
    """Tests for roll-up consistency checks"""

    async def test_built_period_is_valid(self, builder, session_factory, built_hierarchy):
        """Test a freshly built month agrees with its daily rows"""
        validator = RollupValidator(builder, session_factory)

        reports = await validator.validate("monthly", "2024-02")

        store = next(r for r in reports if r.family == "store")
        assert store.is_valid
        assert store.keys_checked == 2

    async def test_tampered_period_reports_mismatch(self, builder, session_factory, built_hierarchy):
        """Test stored totals drifting from the finer level are reported"""
        async with session_factory() as session:
            await session.execute(
                update(MonthlyStoreSummary)
                .where(
                    MonthlyStoreSummary.store_id == "S002",
                    MonthlyStoreSummary.year_num == 2024,
                    MonthlyStoreSummary.month_num == 2,
                )
                .values(total_sales=Decimal("1.00"))
            )
            await session.commit()

        reports = await RollupValidator(builder, session_factory).validate(
            "monthly", "2024-02", {"store_id": "S002"}
        )

        store = next(r for r in reports if r.family == "store")
        assert not store.is_valid
        assert [m["metric"] for m in store.mismatches] == ["total_sales"]
        assert store.to_dict()["mismatches"][0]["dimension_key"] == ["S002"]

    async def test_missing_period_reported(self, builder, session_factory, seeded_daily):
        """Test keys that were never built are reported as missing"""
        reports = await RollupValidator(builder, session_factory).validate("weekly", "2024-W10")

        store = next(r for r in reports if r.family == "store")
        assert store.missing_keys == [["S001"], ["S002"]]


class TestCheckHealth:
    """Tests for freshness checks"""

    async def test_healthy_when_previous_day_built(self, session_factory, built_hierarchy):
        """Test the store is healthy when yesterday has daily rows"""
        health = await check_health(session_factory, date(2025, 1, 13))

        assert health["healthy"] is True
        assert health["latest_daily_date"] == "2025-01-12"
        assert health["levels"]["yearly"] == {"period": "2025", "records": 2}

    async def test_unhealthy_when_stale(self, session_factory, built_hierarchy):
        """Test missing daily rows for yesterday are flagged"""
        health = await check_health(session_factory, date(2025, 2, 1))

        assert health["healthy"] is False
        assert health["levels"]["daily"]["records"] == 0
