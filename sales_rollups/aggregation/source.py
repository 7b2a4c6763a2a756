"""
Source Data Reader

Read interface over the raw order tables. The hourly builder only depends on
the ``SourceReader`` protocol: any reader returning frames with the schemas
below can be injected (a warehouse export, a test fixture, another database).
"""

from datetime import date
from decimal import Decimal
from typing import Any, Dict, Iterable, Mapping, Optional, Protocol

import polars as pl
import structlog
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from sales_rollups.database.connection import session_scope
from sales_rollups.database.filters import apply_dimension_filter
from sales_rollups.database.models import SourceOrder, SourceOrderLine
from sales_rollups.exceptions import SourceDataError

logger = structlog.get_logger(__name__)


ORDER_SCHEMA: Dict[str, Any] = {
    "order_id": pl.Utf8,
    "store_id": pl.Utf8,
    "business_date": pl.Date,
    "fulfilled_at": pl.Datetime,
    "order_placed_method": pl.Utf8,
    "order_fulfilled_method": pl.Utf8,
    "payment_method": pl.Utf8,
    "total_amount": pl.Float64,
    "gross_amount": pl.Float64,
    "net_amount": pl.Float64,
    "refund_amount": pl.Float64,
    "sales_tax": pl.Float64,
    "tip_amount": pl.Float64,
    "customer_count": pl.Int64,
    "is_refunded": pl.Boolean,
    "is_cancelled": pl.Boolean,
    "portal_eligible": pl.Boolean,
    "portal_used": pl.Boolean,
    "portal_on_time": pl.Boolean,
}

LINE_SCHEMA: Dict[str, Any] = {
    "order_id": pl.Utf8,
    "store_id": pl.Utf8,
    "business_date": pl.Date,
    "fulfilled_at": pl.Datetime,
    "item_id": pl.Utf8,
    "menu_item_name": pl.Utf8,
    "menu_item_account": pl.Utf8,
    "category": pl.Utf8,
    "order_fulfilled_method": pl.Utf8,
    "quantity": pl.Int64,
    "gross_amount": pl.Float64,
    "net_amount": pl.Float64,
    "is_refunded": pl.Boolean,
}


class SourceReader(Protocol):
    """Finest-grain rows for one business date"""

    async def read_orders(
        self,
        business_date: date,
        dimension_filter: Optional[Mapping[str, Any]] = None,
    ) -> pl.DataFrame:
        ...

    async def read_order_lines(
        self,
        business_date: date,
        dimension_filter: Optional[Mapping[str, Any]] = None,
    ) -> pl.DataFrame:
        ...


def frame_from_records(records: Iterable[Mapping[str, Any]], schema: Dict[str, Any]) -> pl.DataFrame:
    """Build a frame with a fixed schema; Decimal amounts become floats."""
    rows = [
        {
            column: float(value) if isinstance(value, Decimal) else value
            for column, value in record.items()
            if column in schema
        }
        for record in records
    ]
    if not rows:
        return pl.DataFrame(schema=schema)
    return pl.from_dicts(rows, schema=schema)


class SqlSourceReader:
    """
    Reads raw orders and order lines from the source tables.

    Example:
        reader = SqlSourceReader(session_factory)
        orders = await reader.read_orders(date(2025, 1, 15))
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def _fetch(self, model, schema: Dict[str, Any], business_date: date, dimension_filter) -> pl.DataFrame:
        stmt = select(*[getattr(model, column) for column in schema]).where(
            model.business_date == business_date
        )
        stmt = apply_dimension_filter(stmt, model, dimension_filter)

        try:
            async with session_scope(self.session_factory) as session:
                result = await session.execute(stmt)
                records = [dict(row._mapping) for row in result]
        except SQLAlchemyError as e:
            raise SourceDataError(
                f"Failed to read {model.__tablename__} for {business_date}: {e}"
            ) from e

        logger.debug(
            "Source rows read",
            table=model.__tablename__,
            business_date=business_date.isoformat(),
            rows=len(records),
        )
        return frame_from_records(records, schema)

    async def read_orders(
        self,
        business_date: date,
        dimension_filter: Optional[Mapping[str, Any]] = None,
    ) -> pl.DataFrame:
        return await self._fetch(SourceOrder, ORDER_SCHEMA, business_date, dimension_filter)

    async def read_order_lines(
        self,
        business_date: date,
        dimension_filter: Optional[Mapping[str, Any]] = None,
    ) -> pl.DataFrame:
        return await self._fetch(SourceOrderLine, LINE_SCHEMA, business_date, dimension_filter)
