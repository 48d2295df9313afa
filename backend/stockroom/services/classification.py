# Overview: Pure classification of order lines into fulfillment types.

"""
Order item classification.

Rules, first match wins:
1. No variant id (missing, None, "", 0)              -> CUSTOM
2. is_stocked_sale truthy                            -> STOCK
3. is_backorder truthy                               -> BACKORDER
4. Both flags supplied and both falsy                -> CUSTOM
5. Otherwise (flags not supplied)                    -> BACKORDER

Flag truthiness is loose on purpose and goes through coerce_flag(): only
None, "", "0", numeric zero, False and empty containers are falsy. The string
"false" is therefore truthy. This mirrors how the order intake has always
parsed flags; confirm with the domain owners before tightening it.

Downstream code must branch on the FulfillmentType tag via the predicates
below, never on the raw flags.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Mapping


class FulfillmentType(str, Enum):
    STOCK = "stock"
    BACKORDER = "backorder"
    CUSTOM = "custom"


STOCKED_FLAG = "is_stocked_sale"
BACKORDER_FLAG = "is_backorder"
VARIANT_KEY = "product_variant_id"


def coerce_flag(value: Any) -> bool:
    """Loose boolean coercion used for every disposition flag."""
    if value is None or value is False:
        return False
    if isinstance(value, str):
        return value not in ("", "0")
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, (list, tuple, dict, set)):
        return len(value) > 0
    return bool(value)


def _is_supplied(attributes: Mapping[str, Any], key: str) -> bool:
    # A key carrying None counts as not supplied.
    return attributes.get(key) is not None


def classify_item(attributes: Mapping[str, Any]) -> FulfillmentType:
    """Map raw order-line attributes to exactly one FulfillmentType."""
    if not coerce_flag(attributes.get(VARIANT_KEY)):
        return FulfillmentType.CUSTOM

    if coerce_flag(attributes.get(STOCKED_FLAG)):
        return FulfillmentType.STOCK

    if coerce_flag(attributes.get(BACKORDER_FLAG)):
        return FulfillmentType.BACKORDER

    if _is_supplied(attributes, STOCKED_FLAG) and _is_supplied(attributes, BACKORDER_FLAG):
        return FulfillmentType.CUSTOM

    return FulfillmentType.BACKORDER


def deducts_inventory_immediately(fulfillment_type: FulfillmentType) -> bool:
    return fulfillment_type is FulfillmentType.STOCK


def marks_fulfilled_on_create(fulfillment_type: FulfillmentType) -> bool:
    return fulfillment_type is FulfillmentType.STOCK
