import pytest

from stockroom.errors import ErrorCode, InventoryError
from stockroom.models import OrderItem, Refund
from stockroom.services import inventory_service, order_service, refund_service


def _qty(variant, store):
    return inventory_service.get_current_quantity(variant.id, store.id)


def _paid_order(store, variant, quantity=3, price=1000):
    result = order_service.create_order(store.id, [
        {"product_variant_id": variant.id, "quantity": quantity, "price": price, "is_stocked_sale": True},
    ])
    order_service.confirm_payment(result.id)
    return result


def _line(result, quantity):
    return [{"order_item_id": result.items[0].id, "quantity": quantity}]


def test_partial_refund_with_restock(db_session, store, variant, stock):
    stock(variant, store, 5)
    result = _paid_order(store, variant)
    assert _qty(variant, store) == 2

    refund = refund_service.create_refund(result.id, _line(result, 1), reason="Damaged", should_restock=True)

    assert refund.total_refund_amount == 1000
    assert refund.items[0].refund_subtotal == 1000
    assert refund.items[0].restocked_quantity == 1
    assert _qty(variant, store) == 3
    assert db_session.get(OrderItem, result.items[0].id).returned_quantity == 1

    order = order_service.get_order(result.id)
    assert order.paid_amount == 2000
    assert order.payment_status == order_service.PAYMENT_STATUS_PARTIAL

    refund_steps = [
        (h.from_status, h.to_status)
        for h in order_service.get_status_history(result.id)
        if h.status_type == order_service.HISTORY_REFUND
    ]
    assert refund_steps == [("paid", "refund_processed")]


def test_full_refund_without_restock(db_session, store, variant, stock):
    stock(variant, store, 3)
    result = _paid_order(store, variant)

    refund_service.create_refund(result.id, _line(result, 3), reason="Late delivery")

    order = order_service.get_order(result.id)
    assert order.paid_amount == 0
    assert order.payment_status == order_service.PAYMENT_STATUS_REFUNDED
    assert _qty(variant, store) == 0
    assert refund_service.get_total_refunded(result.id) == 3000


def test_refunded_units_never_exceed_ordered(db_session, store, variant, stock):
    stock(variant, store, 3)
    result = _paid_order(store, variant)
    refund_service.create_refund(result.id, _line(result, 2), reason="Damaged")

    with pytest.raises(InventoryError) as exc_info:
        refund_service.create_refund(result.id, _line(result, 2), reason="Damaged again")
    assert exc_info.value.code is ErrorCode.VALIDATION_ERROR
    assert exc_info.value.context["refundable"] == 1

    # The same item twice in one request counts as one total.
    with pytest.raises(InventoryError) as exc_info:
        refund_service.create_refund(result.id, _line(result, 1) + _line(result, 1), reason="Split")
    assert exc_info.value.code is ErrorCode.VALIDATION_ERROR

    assert len(refund_service.get_order_refunds(result.id)) == 1


def test_refund_and_return_never_credit_twice(db_session, store, variant, stock):
    stock(variant, store, 5)
    result = _paid_order(store, variant)
    order_service.return_order_item(result.items[0].id, 2)
    assert _qty(variant, store) == 4

    refund = refund_service.create_refund(result.id, _line(result, 3), reason="Returned", should_restock=True)

    assert refund.items[0].restocked_quantity == 1
    assert _qty(variant, store) == 5

    order_service.cancel_order(result.id)
    assert _qty(variant, store) == 5
    assert inventory_service.find_unreconciled_records() == []


def test_unfulfilled_backorder_is_refunded_without_restock(db_session, store, variant):
    result = order_service.create_order(store.id, [
        {"product_variant_id": variant.id, "quantity": 2, "price": 500, "is_backorder": True},
    ])
    order_service.record_payment(result.id, 1000)

    refund = refund_service.create_refund(result.id, _line(result, 2), reason="Supplier delay", should_restock=True)

    assert refund.items[0].restocked_quantity == 0
    assert _qty(variant, store) == 0
    assert order_service.get_order(result.id).payment_status == order_service.PAYMENT_STATUS_REFUNDED


def test_ineligible_orders(db_session, store, variant, stock):
    stock(variant, store, 4)
    unpaid = order_service.create_order(store.id, [
        {"product_variant_id": variant.id, "quantity": 1, "is_stocked_sale": True},
    ])
    with pytest.raises(InventoryError) as exc_info:
        refund_service.create_refund(unpaid.id, _line(unpaid, 1), reason="Nope")
    assert exc_info.value.code is ErrorCode.VALIDATION_ERROR

    cancelled = _paid_order(store, variant, quantity=1)
    order_service.cancel_order(cancelled.id)
    with pytest.raises(InventoryError) as exc_info:
        refund_service.create_refund(cancelled.id, _line(cancelled, 1), reason="Nope")
    assert exc_info.value.code is ErrorCode.INVALID_STATUS_TRANSITION

    assert db_session.query(Refund).count() == 0


def test_invalid_refund_requests(db_session, store, variant, stock):
    stock(variant, store, 4)
    result = _paid_order(store, variant, quantity=2)
    other = _paid_order(store, variant, quantity=1)

    cases = [
        (_line(other, 1), "Wrong order", ErrorCode.VALIDATION_ERROR),
        (_line(result, 0), "Zero", ErrorCode.INVALID_QUANTITY),
        ([], "Empty", ErrorCode.VALIDATION_ERROR),
        (_line(result, 1), "  ", ErrorCode.VALIDATION_ERROR),
    ]
    for lines, reason, code in cases:
        with pytest.raises(InventoryError) as exc_info:
            refund_service.create_refund(result.id, lines, reason=reason)
        assert exc_info.value.code is code

    assert db_session.query(Refund).count() == 0


def test_refund_cannot_exceed_paid_amount(db_session, store, variant, stock):
    stock(variant, store, 3)
    result = order_service.create_order(store.id, [
        {"product_variant_id": variant.id, "quantity": 3, "price": 1000, "is_stocked_sale": True},
    ])
    order_service.record_payment(result.id, 500)

    with pytest.raises(InventoryError) as exc_info:
        refund_service.create_refund(result.id, _line(result, 1), reason="Too much")
    assert exc_info.value.code is ErrorCode.VALIDATION_ERROR
    assert order_service.get_order(result.id).paid_amount == 500


@pytest.mark.parametrize("paid,expected", [
    (0, "refunded"),
    (-10, "refunded"),
    (999, "partial"),
    (1000, "paid"),
])
def test_determine_payment_status(paid, expected):
    assert refund_service.determine_payment_status(1000, paid) == expected
