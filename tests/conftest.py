"""
Test Suite Configuration
"""
import itertools
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Any, AsyncGenerator, Dict, List

import pytest
from sqlalchemy import insert
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from sales_rollups.aggregation.builder import RollupBuilder
from sales_rollups.aggregation.granularity import iter_days
from sales_rollups.aggregation.source import SqlSourceReader
from sales_rollups.config import Settings
from sales_rollups.database.connection import create_session_factory
from sales_rollups.database.models import (
    Base,
    DailyItemSummary,
    DailyStoreSummary,
    SourceOrder,
    SourceOrderLine,
)
from sales_rollups.pipeline.progress import MemoryProgressStore

_order_ids = itertools.count(1)

SOURCE_DAYS = [date(2025, 1, 6), date(2025, 1, 7), date(2025, 1, 8)]
DAILY_START = date(2024, 1, 1)
DAILY_END = date(2025, 1, 12)


@pytest.fixture(scope="session")
def test_settings() -> Settings:
    """Create test settings"""
    return Settings(
        app_env="testing",
        debug=True,
    )


@pytest.fixture
async def test_engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:
    """File-backed SQLite engine so every session sees the same data"""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'rollups.db'}",
        echo=False,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(test_engine):
    return create_session_factory(test_engine)


@pytest.fixture
def progress_store() -> MemoryProgressStore:
    return MemoryProgressStore()


@pytest.fixture
def builder(session_factory) -> RollupBuilder:
    return RollupBuilder(session_factory, SqlSourceReader(session_factory))


# =============================================================================
# SOURCE DATA
# =============================================================================

def make_order(
    store_id: str,
    business_date: date,
    hour: int,
    total: str,
    placed: str = "phone",
    fulfilled: str = "delivery",
    payment: str = "Credit Card",
    **overrides: Any,
) -> Dict[str, Any]:
    total_amount = Decimal(total)
    row = {
        "order_id": f"ORD-{next(_order_ids):06d}",
        "store_id": store_id,
        "business_date": business_date,
        "fulfilled_at": datetime.combine(business_date, datetime.min.time()) + timedelta(hours=hour),
        "order_placed_method": placed,
        "order_fulfilled_method": fulfilled,
        "payment_method": payment,
        "total_amount": total_amount,
        "gross_amount": total_amount,
        "net_amount": total_amount,
        "refund_amount": Decimal("0"),
        "sales_tax": Decimal("0"),
        "tip_amount": Decimal("0"),
        "customer_count": 1,
        "is_refunded": False,
        "is_cancelled": False,
        "portal_eligible": False,
        "portal_used": False,
        "portal_on_time": False,
    }
    row.update(overrides)
    return row


def make_line(
    order: Dict[str, Any],
    item_id: str,
    quantity: int,
    gross: str,
    category: str = "pizza",
    **overrides: Any,
) -> Dict[str, Any]:
    row = {
        "order_id": order["order_id"],
        "store_id": order["store_id"],
        "business_date": order["business_date"],
        "fulfilled_at": order["fulfilled_at"],
        "item_id": item_id,
        "menu_item_name": f"Item {item_id}",
        "menu_item_account": category.title(),
        "category": category,
        "order_fulfilled_method": order["order_fulfilled_method"],
        "quantity": quantity,
        "gross_amount": Decimal(gross),
        "net_amount": Decimal(gross),
        "is_refunded": False,
    }
    row.update(overrides)
    return row


def source_orders() -> List[Dict[str, Any]]:
    """Two stores over three days with a mix of channels and payments"""
    orders = []
    for day in SOURCE_DAYS:
        orders += [
            make_order("S001", day, 11, "20.00", placed="phone", payment="Cash"),
            make_order("S001", day, 11, "30.00", placed="Website", fulfilled="carryout"),
            make_order("S001", day, 18, "50.00", placed="mobile", payment="Prepaid Card",
                       portal_eligible=True, portal_used=True, portal_on_time=True),
            make_order("S002", day, 12, "40.00", placed="doordash"),
            make_order("S002", day, 12, "15.00", placed="phone", is_cancelled=True),
        ]
    return orders


def source_lines(orders: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    lines = []
    for order in orders:
        if order["is_cancelled"]:
            continue
        half = (order["total_amount"] / 2).quantize(Decimal("0.01"))
        lines.append(make_line(order, "P100", 1, str(half), "pizza"))
        lines.append(make_line(order, "W200", 2, str(order["total_amount"] - half), "wings"))
    return lines


@pytest.fixture
async def seeded_source(session_factory) -> Dict[str, List[Dict[str, Any]]]:
    """Raw orders and lines for SOURCE_DAYS"""
    orders = source_orders()
    lines = source_lines(orders)
    async with session_factory() as session:
        await session.execute(insert(SourceOrder), orders)
        await session.execute(insert(SourceOrderLine), lines)
        await session.commit()
    return {"orders": orders, "lines": lines}


# =============================================================================
# DAILY ROLLUP DATA
# =============================================================================

def daily_store_rows(start: date = DAILY_START, end: date = DAILY_END) -> List[Dict[str, Any]]:
    """Deterministic daily store rows for two stores"""
    rows = []
    for day in iter_days(start, end):
        ordinal = day.toordinal()
        for offset, store_id in enumerate(("S001", "S002")):
            orders = ordinal % 13 + 1 + offset
            rows.append({
                "store_id": store_id,
                "business_date": day,
                "total_sales": Decimal(ordinal % 97 + 10 + offset * 5),
                "gross_sales": Decimal(ordinal % 89 + 12),
                "net_sales": Decimal(ordinal % 83 + 8),
                "total_orders": orders,
                "customer_count": orders * 2,
                "digital_orders": orders // 2,
                "avg_order_value": (Decimal(ordinal % 97 + 10 + offset * 5) / orders).quantize(Decimal("0.01")),
            })
    return rows


@pytest.fixture
async def seeded_daily(session_factory) -> List[Dict[str, Any]]:
    """Daily store rollups from DAILY_START to DAILY_END"""
    rows = daily_store_rows()
    async with session_factory() as session:
        await session.execute(insert(DailyStoreSummary), rows)
        await session.commit()
    return rows


@pytest.fixture
async def built_hierarchy(builder, seeded_daily) -> List[Dict[str, Any]]:
    """Seeded daily rows plus every coarser store level built from them"""
    for granularity in ("weekly", "monthly", "quarterly", "yearly"):
        await builder.build_range(granularity, DAILY_START, DAILY_END)
    return seeded_daily


def daily_item_rows(start: date = DAILY_START, end: date = DAILY_END) -> List[Dict[str, Any]]:
    """Deterministic daily item rows for one store and two items"""
    rows = []
    for day in iter_days(start, end):
        ordinal = day.toordinal()
        for offset, item_id in enumerate(("P100", "W200")):
            gross = Decimal(ordinal % 53 + 5 + offset * 3)
            quantity = ordinal % 7 + 1 + offset
            rows.append({
                "store_id": "S001",
                "item_id": item_id,
                "menu_item_name": f"Item {item_id}",
                "menu_item_account": "Pizza" if item_id == "P100" else "Wings",
                "business_date": day,
                "quantity_sold": quantity,
                "gross_sales": gross,
                "net_sales": gross,
                "delivery_quantity": quantity,
                "avg_item_price": (gross / quantity).quantize(Decimal("0.01")),
            })
    return rows


@pytest.fixture
async def built_item_hierarchy(builder, session_factory) -> List[Dict[str, Any]]:
    """Seeded daily item rows plus every coarser item level built from them"""
    rows = daily_item_rows()
    async with session_factory() as session:
        await session.execute(insert(DailyItemSummary), rows)
        await session.commit()
    for granularity in ("weekly", "monthly", "quarterly", "yearly"):
        await builder.build_range(granularity, DAILY_START, DAILY_END)
    return rows
