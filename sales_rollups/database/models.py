"""
Database Models - Rollup Store

Two groups of tables:

Source Tables (raw, populated by the ingestion pipeline):
- SourceOrder: one row per order
- SourceOrderLine: one row per order line item

Rollup Tables (one per granularity per dimension shape):
- {Hourly,Daily,Weekly,Monthly,Quarterly,Yearly}StoreSummary keyed by store
- {Hourly,Daily,Weekly,Monthly,Quarterly,Yearly}ItemSummary keyed by store + item

Metric columns of the rollup tables are generated from the metric catalog so
the tables and the builder never drift apart.
"""

from datetime import datetime, date
from decimal import Decimal
from typing import Dict, Optional, Tuple, Type
import uuid

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    Index,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
    Uuid,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from sales_rollups.aggregation.granularity import Granularity
from sales_rollups.aggregation.metrics import ITEM_FAMILY, STORE_FAMILY, MetricFamily


class Base(DeclarativeBase):
    """Base class for all database models"""
    pass


# =============================================================================
# SOURCE TABLES
# =============================================================================

class SourceOrder(Base):
    """
    Raw Order Table

    Grain: one order. Channel, fulfilment, payment and portal attributes are
    folded into hourly store rollups.
    """
    __tablename__ = "source_orders"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    order_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    store_id: Mapped[Optional[str]] = mapped_column(String(32))
    business_date: Mapped[date] = mapped_column(Date, nullable=False)
    fulfilled_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    order_placed_method: Mapped[Optional[str]] = mapped_column(String(50))
    order_fulfilled_method: Mapped[Optional[str]] = mapped_column(String(50))
    payment_method: Mapped[Optional[str]] = mapped_column(String(100))

    # Measures
    total_amount: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2))
    gross_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=0)
    net_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=0)
    refund_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=0)
    sales_tax: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=0)
    tip_amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=0)
    customer_count: Mapped[int] = mapped_column(Integer, default=1)

    # Flags
    is_refunded: Mapped[bool] = mapped_column(Boolean, default=False)
    is_cancelled: Mapped[bool] = mapped_column(Boolean, default=False)
    portal_eligible: Mapped[bool] = mapped_column(Boolean, default=False)
    portal_used: Mapped[bool] = mapped_column(Boolean, default=False)
    portal_on_time: Mapped[bool] = mapped_column(Boolean, default=False)

    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    __table_args__ = (
        Index("ix_source_orders_date_store", "business_date", "store_id"),
    )


class SourceOrderLine(Base):
    """
    Raw Order Line Table

    Grain: one line item. Feeds product-category splits and item rollups.
    """
    __tablename__ = "source_order_lines"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    order_id: Mapped[str] = mapped_column(String(64), nullable=False)
    store_id: Mapped[Optional[str]] = mapped_column(String(32))
    business_date: Mapped[date] = mapped_column(Date, nullable=False)
    fulfilled_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    item_id: Mapped[Optional[str]] = mapped_column(String(32))
    menu_item_name: Mapped[Optional[str]] = mapped_column(String(200))
    menu_item_account: Mapped[Optional[str]] = mapped_column(String(100))
    category: Mapped[Optional[str]] = mapped_column(String(50))
    order_fulfilled_method: Mapped[Optional[str]] = mapped_column(String(50))

    quantity: Mapped[Optional[int]] = mapped_column(Integer)
    gross_amount: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2))
    net_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=0)
    is_refunded: Mapped[bool] = mapped_column(Boolean, default=False)

    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    __table_args__ = (
        Index("ix_source_order_lines_date_store", "business_date", "store_id"),
        Index("ix_source_order_lines_order", "order_id"),
    )


# =============================================================================
# ROLLUP COLUMN MIXINS
# =============================================================================

PERIOD_KEY_COLUMNS: Dict[Granularity, Tuple[str, ...]] = {
    Granularity.HOURLY: ("business_date", "hour"),
    Granularity.DAILY: ("business_date",),
    Granularity.WEEKLY: ("year_num", "week_num"),
    Granularity.MONTHLY: ("year_num", "month_num"),
    Granularity.QUARTERLY: ("year_num", "quarter_num"),
    Granularity.YEARLY: ("year_num",),
}


class RollupMixin:
    """Surrogate key and audit columns shared by every rollup table"""
    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    computed_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, server_default=func.now(), onupdate=func.now()
    )


class StoreKeyMixin:
    store_id: Mapped[str] = mapped_column(String(32), nullable=False)


class ItemKeyMixin:
    store_id: Mapped[str] = mapped_column(String(32), nullable=False)
    item_id: Mapped[str] = mapped_column(String(32), nullable=False)
    menu_item_name: Mapped[Optional[str]] = mapped_column(String(200))
    menu_item_account: Mapped[Optional[str]] = mapped_column(String(100))


class DateKeyMixin:
    business_date: Mapped[date] = mapped_column(Date, nullable=False)


class CalendarKeyMixin:
    year_num: Mapped[int] = mapped_column(Integer, nullable=False)
    period_start_date: Mapped[date] = mapped_column(Date, nullable=False)
    period_end_date: Mapped[date] = mapped_column(Date, nullable=False)


def metric_columns(family: MetricFamily, granularity: Granularity) -> type:
    """Build a mixin carrying the metric and growth columns of one rollup table."""
    attrs = {}
    for metric in family.metrics_for(granularity):
        if metric.is_summable and not metric.money:
            attrs[metric.name] = mapped_column(Integer, nullable=False, default=0)
        elif metric.is_summable:
            attrs[metric.name] = mapped_column(Numeric(14, 2), nullable=False, default=0)
        else:
            attrs[metric.name] = mapped_column(Numeric(12, 2), nullable=False, default=0)

    for column, (growth, kind) in family.growth_columns(granularity).items():
        if kind.endswith("percent"):
            attrs[column] = mapped_column(Numeric(12, 2), nullable=True)
        elif family.get(growth.metric).money:
            attrs[column] = mapped_column(Numeric(14, 2), nullable=True)
        else:
            attrs[column] = mapped_column(Integer, nullable=True)

    name = f"{granularity.value.title()}{family.name.title()}Metrics"
    return type(name, (), attrs)


# =============================================================================
# STORE ROLLUPS
# =============================================================================

class HourlyStoreSummary(metric_columns(STORE_FAMILY, Granularity.HOURLY), StoreKeyMixin, DateKeyMixin, RollupMixin, Base):
    """Store sales per business date and hour, folded from raw orders"""
    __tablename__ = "hourly_store_summary"

    hour: Mapped[int] = mapped_column(Integer, nullable=False)

    __table_args__ = (
        UniqueConstraint("store_id", "business_date", "hour", name="uq_hourly_store"),
        Index("ix_hourly_store_date", "business_date"),
    )


class DailyStoreSummary(metric_columns(STORE_FAMILY, Granularity.DAILY), StoreKeyMixin, DateKeyMixin, RollupMixin, Base):
    """Store sales per business date"""
    __tablename__ = "daily_store_summary"

    __table_args__ = (
        UniqueConstraint("store_id", "business_date", name="uq_daily_store"),
        Index("ix_daily_store_date", "business_date"),
    )


class WeeklyStoreSummary(metric_columns(STORE_FAMILY, Granularity.WEEKLY), StoreKeyMixin, CalendarKeyMixin, RollupMixin, Base):
    """Store sales per ISO week (Monday to Sunday)"""
    __tablename__ = "weekly_store_summary"

    week_num: Mapped[int] = mapped_column(Integer, nullable=False)

    __table_args__ = (
        UniqueConstraint("store_id", "year_num", "week_num", name="uq_weekly_store"),
        Index("ix_weekly_store_period", "period_start_date", "period_end_date"),
    )


class MonthlyStoreSummary(metric_columns(STORE_FAMILY, Granularity.MONTHLY), StoreKeyMixin, CalendarKeyMixin, RollupMixin, Base):
    """Store sales per calendar month"""
    __tablename__ = "monthly_store_summary"

    month_num: Mapped[int] = mapped_column(Integer, nullable=False)
    month_name: Mapped[str] = mapped_column(String(20), nullable=False)

    __table_args__ = (
        UniqueConstraint("store_id", "year_num", "month_num", name="uq_monthly_store"),
        Index("ix_monthly_store_period", "period_start_date", "period_end_date"),
    )


class QuarterlyStoreSummary(metric_columns(STORE_FAMILY, Granularity.QUARTERLY), StoreKeyMixin, CalendarKeyMixin, RollupMixin, Base):
    """Store sales per calendar quarter"""
    __tablename__ = "quarterly_store_summary"

    quarter_num: Mapped[int] = mapped_column(Integer, nullable=False)

    __table_args__ = (
        UniqueConstraint("store_id", "year_num", "quarter_num", name="uq_quarterly_store"),
        Index("ix_quarterly_store_period", "period_start_date", "period_end_date"),
    )


class YearlyStoreSummary(metric_columns(STORE_FAMILY, Granularity.YEARLY), StoreKeyMixin, CalendarKeyMixin, RollupMixin, Base):
    """Store sales per calendar year"""
    __tablename__ = "yearly_store_summary"

    __table_args__ = (
        UniqueConstraint("store_id", "year_num", name="uq_yearly_store"),
        Index("ix_yearly_store_period", "period_start_date", "period_end_date"),
    )


# =============================================================================
# ITEM ROLLUPS
# =============================================================================

class HourlyItemSummary(metric_columns(ITEM_FAMILY, Granularity.HOURLY), ItemKeyMixin, DateKeyMixin, RollupMixin, Base):
    """Item sales per store, business date and hour, folded from raw order lines"""
    __tablename__ = "hourly_item_summary"

    hour: Mapped[int] = mapped_column(Integer, nullable=False)

    __table_args__ = (
        UniqueConstraint("store_id", "item_id", "business_date", "hour", name="uq_hourly_item"),
        Index("ix_hourly_item_date", "business_date"),
    )


class DailyItemSummary(metric_columns(ITEM_FAMILY, Granularity.DAILY), ItemKeyMixin, DateKeyMixin, RollupMixin, Base):
    """Item sales per store and business date"""
    __tablename__ = "daily_item_summary"

    __table_args__ = (
        UniqueConstraint("store_id", "item_id", "business_date", name="uq_daily_item"),
        Index("ix_daily_item_date", "business_date"),
    )


class WeeklyItemSummary(metric_columns(ITEM_FAMILY, Granularity.WEEKLY), ItemKeyMixin, CalendarKeyMixin, RollupMixin, Base):
    """Item sales per store and ISO week"""
    __tablename__ = "weekly_item_summary"

    week_num: Mapped[int] = mapped_column(Integer, nullable=False)

    __table_args__ = (
        UniqueConstraint("store_id", "item_id", "year_num", "week_num", name="uq_weekly_item"),
        Index("ix_weekly_item_period", "period_start_date", "period_end_date"),
    )


class MonthlyItemSummary(metric_columns(ITEM_FAMILY, Granularity.MONTHLY), ItemKeyMixin, CalendarKeyMixin, RollupMixin, Base):
    """Item sales per store and calendar month"""
    __tablename__ = "monthly_item_summary"

    month_num: Mapped[int] = mapped_column(Integer, nullable=False)
    month_name: Mapped[str] = mapped_column(String(20), nullable=False)

    __table_args__ = (
        UniqueConstraint("store_id", "item_id", "year_num", "month_num", name="uq_monthly_item"),
        Index("ix_monthly_item_period", "period_start_date", "period_end_date"),
    )


class QuarterlyItemSummary(metric_columns(ITEM_FAMILY, Granularity.QUARTERLY), ItemKeyMixin, CalendarKeyMixin, RollupMixin, Base):
    """Item sales per store and calendar quarter"""
    __tablename__ = "quarterly_item_summary"

    quarter_num: Mapped[int] = mapped_column(Integer, nullable=False)

    __table_args__ = (
        UniqueConstraint("store_id", "item_id", "year_num", "quarter_num", name="uq_quarterly_item"),
        Index("ix_quarterly_item_period", "period_start_date", "period_end_date"),
    )


class YearlyItemSummary(metric_columns(ITEM_FAMILY, Granularity.YEARLY), ItemKeyMixin, CalendarKeyMixin, RollupMixin, Base):
    """Item sales per store and calendar year"""
    __tablename__ = "yearly_item_summary"

    __table_args__ = (
        UniqueConstraint("store_id", "item_id", "year_num", name="uq_yearly_item"),
        Index("ix_yearly_item_period", "period_start_date", "period_end_date"),
    )


ROLLUP_MODELS: Dict[Tuple[str, Granularity], Type[Base]] = {
    ("store", Granularity.HOURLY): HourlyStoreSummary,
    ("store", Granularity.DAILY): DailyStoreSummary,
    ("store", Granularity.WEEKLY): WeeklyStoreSummary,
    ("store", Granularity.MONTHLY): MonthlyStoreSummary,
    ("store", Granularity.QUARTERLY): QuarterlyStoreSummary,
    ("store", Granularity.YEARLY): YearlyStoreSummary,
    ("item", Granularity.HOURLY): HourlyItemSummary,
    ("item", Granularity.DAILY): DailyItemSummary,
    ("item", Granularity.WEEKLY): WeeklyItemSummary,
    ("item", Granularity.MONTHLY): MonthlyItemSummary,
    ("item", Granularity.QUARTERLY): QuarterlyItemSummary,
    ("item", Granularity.YEARLY): YearlyItemSummary,
}


def rollup_model(family: MetricFamily, granularity: Granularity) -> Type[Base]:
    """The rollup table for a family at a granularity"""
    name = family.name if isinstance(family, MetricFamily) else str(family)
    return ROLLUP_MODELS[(name, Granularity.parse(granularity))]
