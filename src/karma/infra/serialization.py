from __future__ import annotations

from decimal import Decimal
from typing import Any


def to_ddb_safe(x: Any) -> Any:
    """Convert floats to Decimal recursively for DynamoDB compatibility."""
    if isinstance(x, float):
        return Decimal(str(x))
    if isinstance(x, dict):
        return {k: to_ddb_safe(v) for k, v in x.items()}
    if isinstance(x, (list, tuple)):
        return [to_ddb_safe(v) for v in x]
    return x


def from_ddb(x: Any) -> Any:
    """Convert DynamoDB Decimals back to int (when integral) or float, recursively."""
    if isinstance(x, Decimal):
        return int(x) if x == x.to_integral_value() else float(x)
    if isinstance(x, dict):
        return {k: from_ddb(v) for k, v in x.items()}
    if isinstance(x, (list, tuple)):
        return [from_ddb(v) for v in x]
    return x


def ddb_clean(item: Any) -> Any:
    """
    Remove dict keys whose values are None.
    Recurses into nested dicts/lists while preserving list ordering.

    Absent and None are the same thing for stored documents, which is what
    lets conditions on "field is None" become attribute_not_exists().
    """
    if isinstance(item, dict):
        return {k: ddb_clean(v) for k, v in item.items() if v is not None}
    if isinstance(item, (list, tuple)):
        return [ddb_clean(v) for v in item]
    return item
