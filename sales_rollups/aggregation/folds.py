"""
Hourly Folds

Polars transformations that fold raw orders and order lines into hourly
rollup records: channel, fulfilment, payment, portal, digital and
product-category splits per store, and quantity/sales splits per item.

Rows that cannot be attributed (missing store or item) are dropped and
counted; rows that can be attributed but are otherwise malformed (missing
timestamp or amount) cause their whole dimension key to be skipped for the
day, so a bad row never produces silently-wrong totals.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Tuple

import polars as pl
import structlog

logger = structlog.get_logger(__name__)

MARKETPLACE_METHODS = ["doordash", "ubereats", "grubhub"]
PRODUCT_CATEGORIES = ["pizza", "wings", "bread", "beverage"]


@dataclass
class FoldResult:
    """Hourly records plus the rows and keys that were left out"""
    records: List[Dict[str, Any]] = field(default_factory=list)
    skipped_keys: List[Tuple[str, ...]] = field(default_factory=list)
    dropped_rows: int = 0


def _normalized(column: str) -> pl.Expr:
    """Lower-cased text without spaces; nulls become empty strings."""
    return (
        pl.col(column)
        .fill_null("")
        .str.to_lowercase()
        .str.replace_all(" ", "", literal=True)
    )


def _split_malformed(
    df: pl.DataFrame,
    key_columns: List[str],
    required: List[str],
) -> Tuple[pl.DataFrame, List[Tuple[str, ...]], int]:
    """Drop unattributable rows and every key that has a malformed row."""
    attributable = pl.all_horizontal([pl.col(c).is_not_null() for c in key_columns])
    dropped = df.height - df.filter(attributable).height
    df = df.filter(attributable)

    malformed = pl.any_horizontal([pl.col(c).is_null() for c in required])
    bad_keys = (
        df.filter(malformed)
        .select(key_columns)
        .unique()
        .sort(key_columns)
        .rows()
    )
    if bad_keys:
        bad = pl.DataFrame(bad_keys, schema=key_columns, orient="row")
        df = df.join(bad, on=key_columns, how="anti")
    return df, [tuple(k) for k in bad_keys], dropped


# =============================================================================
# STORE FOLD
# =============================================================================

def _order_flags(orders: pl.DataFrame) -> pl.DataFrame:
    placed = _normalized("order_placed_method")
    fulfilled = _normalized("order_fulfilled_method")
    payment = _normalized("payment_method")

    amounts = ["gross_amount", "net_amount", "refund_amount", "sales_tax", "tip_amount"]

    return orders.with_columns(
        [pl.col(c).fill_null(0.0) for c in amounts]
        + [pl.col(c).fill_null(False) for c in (
            "is_refunded", "is_cancelled", "portal_eligible", "portal_used", "portal_on_time",
        )]
        + [
            pl.col("customer_count").fill_null(0),
            pl.col("fulfilled_at").dt.hour().cast(pl.Int64).alias("hour"),
            (~pl.col("is_cancelled").fill_null(False)).alias("_active"),
            (placed == "phone").alias("_phone"),
            (placed == "website").alias("_website"),
            (placed == "mobile").alias("_mobile"),
            placed.is_in(MARKETPLACE_METHODS).alias("_marketplace"),
            (fulfilled == "delivery").alias("_delivery"),
            payment.str.contains("cash", literal=True).alias("_cash"),
            payment.str.contains("prepaid", literal=True).alias("_prepaid"),
            payment.str.contains("credit|card").alias("_card"),
        ]
    )


def _channel_aggs() -> List[pl.Expr]:
    active = pl.col("_active")
    sales = pl.col("total_amount")
    aggs: List[pl.Expr] = []
    for channel in ("phone", "website", "mobile", "marketplace", "delivery"):
        flag = active & pl.col(f"_{channel}")
        aggs.append(flag.sum().cast(pl.Int64).alias(f"{channel}_orders"))
        aggs.append(sales.filter(flag).sum().alias(f"{channel}_sales"))

    carryout = active & ~pl.col("_delivery")
    aggs.append(carryout.sum().cast(pl.Int64).alias("carryout_orders"))
    aggs.append(sales.filter(carryout).sum().alias("carryout_sales"))

    digital = active & (pl.col("_website") | pl.col("_mobile"))
    aggs.append(digital.sum().cast(pl.Int64).alias("digital_orders"))
    aggs.append(sales.filter(digital).sum().alias("digital_sales"))
    return aggs


def _payment_aggs() -> List[pl.Expr]:
    active = pl.col("_active")
    sales = pl.col("total_amount")
    cash = active & pl.col("_cash")
    prepaid = active & ~pl.col("_cash") & pl.col("_prepaid")
    card = active & ~pl.col("_cash") & ~pl.col("_prepaid") & pl.col("_card")
    return [
        sales.filter(cash).sum().alias("cash_sales"),
        sales.filter(prepaid).sum().alias("prepaid_sales"),
        sales.filter(card).sum().alias("credit_card_sales"),
    ]


def _portal_aggs() -> List[pl.Expr]:
    active = pl.col("_active")
    return [
        (active & pl.col(f"portal_{flag}")).sum().cast(pl.Int64).alias(f"portal_{column}_orders")
        for flag, column in (("eligible", "eligible"), ("used", "used"), ("on_time", "on_time"))
    ]


def _category_totals(lines: pl.DataFrame) -> pl.DataFrame:
    category = _normalized("category")
    lines = lines.with_columns(
        pl.col("fulfilled_at").dt.hour().cast(pl.Int64).alias("hour"),
        category.alias("_category"),
        pl.col("quantity").fill_null(0),
        pl.col("gross_amount").fill_null(0.0),
    )
    aggs: List[pl.Expr] = []
    for name in PRODUCT_CATEGORIES:
        in_category = pl.col("_category") == name
        aggs.append(pl.col("quantity").filter(in_category).sum().cast(pl.Int64).alias(f"{name}_quantity"))
        aggs.append(pl.col("gross_amount").filter(in_category).sum().alias(f"{name}_sales"))
    return lines.group_by(["store_id", "hour"]).agg(aggs)


def fold_hourly_store(orders: pl.DataFrame, lines: pl.DataFrame) -> FoldResult:
    """
    Fold one business date of orders and lines into hourly store records.

    Cancelled orders only count towards ``cancelled_orders``; every other
    sales and order metric, category splits included, covers non-cancelled
    orders. Hours with category lines but no orders still get a record.
    """
    orders, bad_stores, dropped = _split_malformed(
        orders, ["store_id"], ["fulfilled_at", "total_amount"]
    )
    lines, bad_line_stores, dropped_lines = _split_malformed(
        lines, ["store_id"], ["fulfilled_at", "quantity", "gross_amount"]
    )
    skipped = sorted(set(bad_stores) | set(bad_line_stores))
    if skipped:
        skipped_ids = [key[0] for key in skipped]
        orders = orders.filter(~pl.col("store_id").is_in(skipped_ids))
        lines = lines.filter(~pl.col("store_id").is_in(skipped_ids))

    if orders.is_empty() and lines.is_empty():
        return FoldResult(skipped_keys=skipped, dropped_rows=dropped + dropped_lines)

    orders = _order_flags(orders)
    active = pl.col("_active")

    hourly = orders.group_by(["store_id", "hour"]).agg(
        [
            pl.col("total_amount").filter(active).sum().alias("total_sales"),
            pl.col("gross_amount").filter(active).sum().alias("gross_sales"),
            pl.col("net_amount").filter(active).sum().alias("net_sales"),
            pl.col("refund_amount").sum().alias("refund_amount"),
            pl.col("sales_tax").filter(active).sum().alias("sales_tax"),
            pl.col("tip_amount").filter(active).sum().alias("total_tips"),
            active.sum().cast(pl.Int64).alias("total_orders"),
            (active & ~pl.col("is_refunded")).sum().cast(pl.Int64).alias("completed_orders"),
            pl.col("is_cancelled").sum().cast(pl.Int64).alias("cancelled_orders"),
            pl.col("is_refunded").sum().cast(pl.Int64).alias("refunded_orders"),
            pl.col("customer_count").filter(active).sum().cast(pl.Int64).alias("customer_count"),
        ]
        + _channel_aggs()
        + _payment_aggs()
        + _portal_aggs()
    )

    # Lines of cancelled orders stay out of the category splits
    cancelled_ids = orders.filter(~active).get_column("order_id")
    lines = lines.filter(~pl.col("order_id").is_in(cancelled_ids))

    categories = _category_totals(lines)
    hourly = hourly.join(
        categories, on=["store_id", "hour"], how="full", coalesce=True
    ).with_columns(pl.all().exclude(["store_id", "hour"]).fill_null(0))

    records = hourly.sort(["store_id", "hour"]).to_dicts()
    return FoldResult(records=records, skipped_keys=skipped, dropped_rows=dropped + dropped_lines)


# =============================================================================
# ITEM FOLD
# =============================================================================

def fold_hourly_items(lines: pl.DataFrame) -> FoldResult:
    """Fold one business date of order lines into hourly store+item records."""
    lines, skipped, dropped = _split_malformed(
        lines, ["store_id", "item_id"], ["fulfilled_at", "quantity", "gross_amount"]
    )
    if lines.is_empty():
        return FoldResult(skipped_keys=skipped, dropped_rows=dropped)

    fulfilled = _normalized("order_fulfilled_method")
    lines = lines.with_columns(
        pl.col("fulfilled_at").dt.hour().cast(pl.Int64).alias("hour"),
        pl.col("net_amount").fill_null(0.0),
        pl.col("is_refunded").fill_null(False),
        (fulfilled == "delivery").alias("_delivery"),
    )

    quantity = pl.col("quantity")
    hourly = lines.group_by(["store_id", "item_id", "hour"]).agg(
        quantity.sum().cast(pl.Int64).alias("quantity_sold"),
        pl.col("gross_amount").sum().alias("gross_sales"),
        pl.col("net_amount").filter(~pl.col("is_refunded")).sum().alias("net_sales"),
        quantity.filter(pl.col("_delivery")).sum().cast(pl.Int64).alias("delivery_quantity"),
        quantity.filter(~pl.col("_delivery")).sum().cast(pl.Int64).alias("carryout_quantity"),
        quantity.filter(pl.col("is_refunded")).sum().cast(pl.Int64).alias("refunded_quantity"),
        pl.col("menu_item_name").drop_nulls().last().alias("menu_item_name"),
        pl.col("menu_item_account").drop_nulls().last().alias("menu_item_account"),
    )

    records = hourly.sort(["store_id", "item_id", "hour"]).to_dicts()
    return FoldResult(records=records, skipped_keys=skipped, dropped_rows=dropped)
