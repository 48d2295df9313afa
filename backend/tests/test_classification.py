import pytest

from stockroom.services.classification import (
    FulfillmentType,
    classify_item,
    coerce_flag,
    deducts_inventory_immediately,
    marks_fulfilled_on_create,
)


@pytest.mark.parametrize("value,expected", [
    (None, False),
    (False, False),
    (0, False),
    (0.0, False),
    ("", False),
    ("0", False),
    ([], False),
    ({}, False),
    (True, True),
    (1, True),
    ("1", True),
    ("yes", True),
    ("false", True),
    ([0], True),
])
def test_coerce_flag(value, expected):
    assert coerce_flag(value) is expected


@pytest.mark.parametrize("attributes,expected", [
    ({"product_variant_id": None, "is_stocked_sale": True}, FulfillmentType.CUSTOM),
    ({"is_stocked_sale": True}, FulfillmentType.CUSTOM),
    ({"product_variant_id": 0, "is_backorder": True}, FulfillmentType.CUSTOM),
    ({"product_variant_id": "", "is_backorder": True}, FulfillmentType.CUSTOM),
    ({"product_variant_id": 5, "is_stocked_sale": True, "is_backorder": True}, FulfillmentType.STOCK),
    ({"product_variant_id": 5, "is_stocked_sale": "false"}, FulfillmentType.STOCK),
    ({"product_variant_id": 5, "is_stocked_sale": False, "is_backorder": True}, FulfillmentType.BACKORDER),
    ({"product_variant_id": 5, "is_stocked_sale": False, "is_backorder": False}, FulfillmentType.CUSTOM),
    ({"product_variant_id": 5, "is_stocked_sale": "0", "is_backorder": 0}, FulfillmentType.CUSTOM),
    ({"product_variant_id": 5}, FulfillmentType.BACKORDER),
    ({"product_variant_id": 5, "is_stocked_sale": False}, FulfillmentType.BACKORDER),
    ({"product_variant_id": 5, "is_stocked_sale": False, "is_backorder": None}, FulfillmentType.BACKORDER),
])
def test_classify_item(attributes, expected):
    assert classify_item(attributes) is expected


def test_classification_covers_every_flag_combination():
    values = [None, False, True, "", "false", 0]
    for variant_id in (None, 7):
        for stocked in values:
            for backorder in values:
                result = classify_item({
                    "product_variant_id": variant_id,
                    "is_stocked_sale": stocked,
                    "is_backorder": backorder,
                })
                assert result in set(FulfillmentType)
                # Deterministic for identical input.
                assert result is classify_item({
                    "product_variant_id": variant_id,
                    "is_stocked_sale": stocked,
                    "is_backorder": backorder,
                })


def test_predicates_depend_on_tag_only():
    assert deducts_inventory_immediately(FulfillmentType.STOCK)
    assert marks_fulfilled_on_create(FulfillmentType.STOCK)
    for fulfillment_type in (FulfillmentType.BACKORDER, FulfillmentType.CUSTOM):
        assert not deducts_inventory_immediately(fulfillment_type)
        assert not marks_fulfilled_on_create(fulfillment_type)
