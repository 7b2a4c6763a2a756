"""
Metric Catalog

Registry of the metrics each rollup table family carries. The builder and the
planner only consult this registry: a metric is either summable (SUM across
finer rows) or a derived rate (recomputed from summed numerator and
denominator at every level).
"""

from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple

from sales_rollups.aggregation.granularity import Granularity
from sales_rollups.exceptions import RequestValidationError

TWO_PLACES = Decimal("0.01")


class MetricKind(str, Enum):
    """How a metric combines across rows"""
    SUMMABLE = "summable"
    DERIVED = "derived"


class Aggregation(str, Enum):
    """SQL aggregation verbs the planner issues"""
    SUM = "SUM"
    AVG = "AVG"


@dataclass(frozen=True)
class MetricDef:
    """A single metric column"""
    name: str
    kind: MetricKind
    money: bool = False
    numerator: Optional[str] = None
    denominator: Optional[str] = None
    multiplier: int = 1
    coarse_only: bool = False
    day_count: bool = False

    @property
    def is_summable(self) -> bool:
        return self.kind == MetricKind.SUMMABLE

    @property
    def components(self) -> Tuple[str, ...]:
        if self.kind != MetricKind.DERIVED:
            return ()
        return (self.numerator, self.denominator)


@dataclass(frozen=True)
class GrowthDef:
    """A period-over-period growth pair: <label>_vs_prior_<period> and <label>_growth_percent"""
    label: str
    metric: str


@dataclass(frozen=True)
class MetricFamily:
    """Metrics and dimension columns shared by one family of rollup tables"""
    name: str
    dimension_columns: Tuple[str, ...]
    metrics: Tuple[MetricDef, ...]
    growth: Tuple[GrowthDef, ...] = ()
    yoy_growth: Optional[GrowthDef] = None
    descriptive_columns: Tuple[str, ...] = ()
    filter_columns: Tuple[str, ...] = ()
    default_metrics: Tuple[str, ...] = ()
    _index: Dict[str, MetricDef] = field(default_factory=dict, compare=False, repr=False)

    def __post_init__(self):
        self._index.update({m.name: m for m in self.metrics})

    def get(self, name: str) -> Optional[MetricDef]:
        return self._index.get(name)

    def metrics_for(self, granularity: Granularity) -> List[MetricDef]:
        coarse = granularity.rank >= Granularity.WEEKLY.rank
        return [m for m in self.metrics if coarse or not m.coarse_only]

    def summable(self, granularity: Granularity) -> List[MetricDef]:
        return [m for m in self.metrics_for(granularity) if m.is_summable]

    def derived(self, granularity: Granularity) -> List[MetricDef]:
        return [m for m in self.metrics_for(granularity) if not m.is_summable]

    @property
    def queryable(self) -> List[str]:
        """Metrics present at every granularity, usable by the planner."""
        return [m.name for m in self.metrics if not m.coarse_only]

    def growth_columns(self, granularity: Granularity) -> Dict[str, Tuple[GrowthDef, str]]:
        """Growth column name -> (definition, 'diff' | 'percent' | 'yoy_diff' | 'yoy_percent')."""
        if not granularity.has_growth:
            return {}
        period = granularity.period_name
        columns: Dict[str, Tuple[GrowthDef, str]] = {}
        for growth in self.growth:
            columns[f"{growth.label}_vs_prior_{period}"] = (growth, "diff")
            columns[f"{growth.label}_growth_percent"] = (growth, "percent")
        if self.yoy_growth and granularity == Granularity.MONTHLY:
            columns[f"{self.yoy_growth.label}_vs_same_month_prior_year"] = (self.yoy_growth, "yoy_diff")
            columns["yoy_growth_percent"] = (self.yoy_growth, "yoy_percent")
        return columns

    def compute_derived(self, values: Mapping[str, Any], granularity: Granularity) -> Dict[str, Decimal]:
        """Recompute every derived rate of this family from summed components."""
        return {
            metric.name: ratio(
                values.get(metric.numerator),
                values.get(metric.denominator),
                metric.multiplier,
            )
            for metric in self.derived(granularity)
        }


# =============================================================================
# NUMERIC HELPERS
# =============================================================================

def to_decimal(value: Any) -> Decimal:
    """Round a numeric value to cents; None counts as zero."""
    if value is None:
        return Decimal("0.00")
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(TWO_PLACES, rounding=ROUND_HALF_UP)


def normalize(metric: MetricDef, value: Any):
    """Coerce a summed value to the column's storage type."""
    if metric.money:
        return to_decimal(value)
    if value is None:
        return 0
    return int(round(value))


def ratio(numerator: Any, denominator: Any, multiplier: int = 1) -> Decimal:
    """numerator / denominator * multiplier rounded to 2 places; 0 when the denominator is 0."""
    if not denominator:
        return Decimal("0.00")
    value = Decimal(str(numerator or 0)) * multiplier / Decimal(str(denominator))
    return value.quantize(TWO_PLACES, rounding=ROUND_HALF_UP)


def growth_percent(current: Any, prior: Any) -> Optional[Decimal]:
    """Percentage change from prior to current; None when prior is missing or zero."""
    if prior is None:
        return None
    prior = Decimal(str(prior))
    if prior == 0:
        return None
    change = (Decimal(str(current or 0)) - prior) / abs(prior) * 100
    return change.quantize(TWO_PLACES, rounding=ROUND_HALF_UP)


def infer_aggregation(name: str) -> Aggregation:
    """avg_*, *_rate and *_penetration columns average; everything else sums."""
    if name.startswith("avg_") or name.endswith("_rate") or name.endswith("_penetration"):
        return Aggregation.AVG
    return Aggregation.SUM


# =============================================================================
# DEFAULT RETAIL CATALOG
# =============================================================================

def _money(name: str, **kwargs) -> MetricDef:
    return MetricDef(name, MetricKind.SUMMABLE, money=True, **kwargs)


def _count(name: str, **kwargs) -> MetricDef:
    return MetricDef(name, MetricKind.SUMMABLE, **kwargs)


def _rate(name: str, numerator: str, denominator: str, multiplier: int = 1, **kwargs) -> MetricDef:
    return MetricDef(
        name,
        MetricKind.DERIVED,
        money=True,
        numerator=numerator,
        denominator=denominator,
        multiplier=multiplier,
        **kwargs,
    )


STORE_METRICS: Tuple[MetricDef, ...] = (
    # Sales
    _money("total_sales"),
    _money("gross_sales"),
    _money("net_sales"),
    _money("refund_amount"),
    _money("sales_tax"),
    _money("total_tips"),
    # Orders
    _count("total_orders"),
    _count("completed_orders"),
    _count("cancelled_orders"),
    _count("refunded_orders"),
    _count("customer_count"),
    # Channels
    _count("phone_orders"),
    _money("phone_sales"),
    _count("website_orders"),
    _money("website_sales"),
    _count("mobile_orders"),
    _money("mobile_sales"),
    _count("marketplace_orders"),
    _money("marketplace_sales"),
    # Fulfillment
    _count("delivery_orders"),
    _money("delivery_sales"),
    _count("carryout_orders"),
    _money("carryout_sales"),
    # Payments
    _money("cash_sales"),
    _money("credit_card_sales"),
    _money("prepaid_sales"),
    # Product categories
    _count("pizza_quantity"),
    _money("pizza_sales"),
    _count("wings_quantity"),
    _money("wings_sales"),
    _count("bread_quantity"),
    _money("bread_sales"),
    _count("beverage_quantity"),
    _money("beverage_sales"),
    # Portal and digital
    _count("portal_eligible_orders"),
    _count("portal_used_orders"),
    _count("portal_on_time_orders"),
    _count("digital_orders"),
    _money("digital_sales"),
    # Coverage
    _count("operational_days", coarse_only=True, day_count=True),
    # Derived rates
    _rate("avg_order_value", "total_sales", "total_orders"),
    _rate("avg_customers_per_order", "customer_count", "total_orders"),
    _rate("portal_usage_rate", "portal_used_orders", "portal_eligible_orders", 100),
    _rate("portal_on_time_rate", "portal_on_time_orders", "portal_used_orders", 100),
    _rate("digital_penetration", "digital_orders", "total_orders", 100),
    _rate("avg_daily_sales", "total_sales", "operational_days", coarse_only=True),
    _rate("avg_daily_orders", "total_orders", "operational_days", coarse_only=True),
)

ITEM_METRICS: Tuple[MetricDef, ...] = (
    _count("quantity_sold"),
    _money("gross_sales"),
    _money("net_sales"),
    _count("delivery_quantity"),
    _count("carryout_quantity"),
    _count("refunded_quantity"),
    _count("operational_days", coarse_only=True, day_count=True),
    _rate("avg_item_price", "gross_sales", "quantity_sold"),
    _rate("avg_daily_quantity", "quantity_sold", "operational_days", coarse_only=True),
)

STORE_FAMILY = MetricFamily(
    name="store",
    dimension_columns=("store_id",),
    metrics=STORE_METRICS,
    growth=(GrowthDef("sales", "total_sales"), GrowthDef("orders", "total_orders")),
    yoy_growth=GrowthDef("sales", "total_sales"),
    filter_columns=("store_id",),
    default_metrics=("total_sales", "gross_sales", "total_orders"),
)

ITEM_FAMILY = MetricFamily(
    name="item",
    dimension_columns=("store_id", "item_id"),
    metrics=ITEM_METRICS,
    growth=(GrowthDef("sales", "gross_sales"), GrowthDef("quantity", "quantity_sold")),
    descriptive_columns=("menu_item_name", "menu_item_account"),
    filter_columns=("store_id", "item_id", "menu_item_account"),
    default_metrics=("quantity_sold", "gross_sales", "net_sales"),
)

FAMILIES: Dict[str, MetricFamily] = {
    STORE_FAMILY.name: STORE_FAMILY,
    ITEM_FAMILY.name: ITEM_FAMILY,
}


def get_family(name: str) -> MetricFamily:
    """Look up a table family, raising a validation error for unknown names."""
    if isinstance(name, MetricFamily):
        return name
    try:
        return FAMILIES[str(name).lower()]
    except KeyError:
        raise RequestValidationError(
            f"Unknown summary type {name!r}; expected one of {sorted(FAMILIES)}"
        ) from None
