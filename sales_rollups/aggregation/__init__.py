"""
Aggregation Module

Granularities, the metric catalog, raw-row folds and the rollup builder.
"""
from .granularity import HIERARCHY, Granularity, Period, periods_in_range
from .metrics import FAMILIES, ITEM_FAMILY, STORE_FAMILY, MetricFamily, get_family

__all__ = [
    "HIERARCHY",
    "Granularity",
    "Period",
    "periods_in_range",
    "FAMILIES",
    "ITEM_FAMILY",
    "STORE_FAMILY",
    "MetricFamily",
    "get_family",
]
