"""
Unit Tests - Metric Catalog
"""
from decimal import Decimal

import pytest

from sales_rollups.aggregation.granularity import Granularity
from sales_rollups.aggregation.metrics import (
    ITEM_FAMILY,
    STORE_FAMILY,
    Aggregation,
    get_family,
    growth_percent,
    infer_aggregation,
    ratio,
)
from sales_rollups.exceptions import RequestValidationError


class TestHelpers:
    """Tests for numeric helpers"""

    def test_ratio(self):
        """Test rates round half up and survive zero denominators"""
        assert ratio(100, 3) == Decimal("33.33")
        assert ratio(2, 3, 100) == Decimal("66.67")
        assert ratio(5, 0) == Decimal("0.00")

    def test_growth_percent(self):
        """Test growth percent is null without a usable prior value"""
        assert growth_percent(150, 100) == Decimal("50.00")
        assert growth_percent(50, 100) == Decimal("-50.00")
        assert growth_percent(10, 0) is None
        assert growth_percent(10, None) is None

    @pytest.mark.parametrize("name,expected", [
        ("avg_order_value", Aggregation.AVG),
        ("portal_usage_rate", Aggregation.AVG),
        ("digital_penetration", Aggregation.AVG),
        ("total_sales", Aggregation.SUM),
        ("rate_card_orders", Aggregation.SUM),
    ])
    def test_infer_aggregation(self, name, expected):
        """Test aggregation inference from column names"""
        assert infer_aggregation(name) == expected


class TestFamilies:
    """Tests for the retail catalog"""

    def test_coarse_only_metrics(self):
        """Test day-count metrics only exist from weekly upwards"""
        daily = {m.name for m in STORE_FAMILY.metrics_for(Granularity.DAILY)}
        weekly = {m.name for m in STORE_FAMILY.metrics_for(Granularity.WEEKLY)}

        assert "operational_days" not in daily
        assert {"operational_days", "avg_daily_sales"} <= weekly
        assert "avg_daily_sales" not in STORE_FAMILY.queryable

    def test_growth_columns(self):
        """Test growth column names per level"""
        monthly = STORE_FAMILY.growth_columns(Granularity.MONTHLY)

        assert set(monthly) == {
            "sales_vs_prior_month",
            "sales_growth_percent",
            "orders_vs_prior_month",
            "orders_growth_percent",
            "sales_vs_same_month_prior_year",
            "yoy_growth_percent",
        }
        assert "quantity_vs_prior_week" in ITEM_FAMILY.growth_columns(Granularity.WEEKLY)
        assert STORE_FAMILY.growth_columns(Granularity.DAILY) == {}

    def test_compute_derived(self):
        """Test derived rates are recomputed from components"""
        derived = STORE_FAMILY.compute_derived(
            {"total_sales": Decimal("100"), "total_orders": 3, "digital_orders": 2,
             "customer_count": 6, "portal_eligible_orders": 0},
            Granularity.DAILY,
        )

        assert derived["avg_order_value"] == Decimal("33.33")
        assert derived["digital_penetration"] == Decimal("66.67")
        assert derived["avg_customers_per_order"] == Decimal("2.00")
        assert derived["portal_usage_rate"] == Decimal("0.00")

    def test_get_family(self):
        """Test family lookup by summary type"""
        assert get_family("Item") is ITEM_FAMILY
        with pytest.raises(RequestValidationError):
            get_family("region")
