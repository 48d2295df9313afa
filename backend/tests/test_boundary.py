from stockroom.errors import ErrorCode, InventoryError
from stockroom.models.inventory import REASON_ORDER_DEDUCTION
from stockroom.services import inventory_service, order_service, sequence_service
from stockroom.services.boundary import OperationResult, execute


def test_success_wraps_value(db_session, store, variant, stock):
    stock(variant, store, 2)

    result = execute(order_service.create_order, store.id, [
        {"product_variant_id": variant.id, "quantity": 1, "is_stocked_sale": True},
    ])

    assert isinstance(result, OperationResult)
    assert result.ok
    assert result.http_status == 200
    assert result.to_dict()["value"]["items"][0]["is_fulfilled"] is True


def test_inventory_error_becomes_structured_result(db_session, store, variant, stock):
    stock(variant, store, 2)

    result = execute(inventory_service.decrement, variant.id, store.id, 3, REASON_ORDER_DEDUCTION)

    assert not result.ok
    assert result.http_status == 409
    assert result.error["code"] == ErrorCode.INSUFFICIENT_STOCK.value
    assert result.context == {
        "product_variant_id": variant.id,
        "store_id": store.id,
        "requested": 3,
        "available": 2,
    }
    assert inventory_service.get_current_quantity(variant.id, store.id) == 2


def test_unexpected_errors_propagate():
    def broken():
        raise RuntimeError("bug")

    try:
        execute(broken)
    except RuntimeError as e:
        assert str(e) == "bug"
    else:
        raise AssertionError("RuntimeError was swallowed")


def test_error_codes_carry_http_status():
    error = InventoryError(ErrorCode.RETRY_EXHAUSTED, "busy", attempts=3)
    assert error.http_status == 503
    assert error.to_dict() == {"code": "retry_exhausted", "message": "busy", "context": {"attempts": 3}}
    assert ErrorCode.INVALID_STATUS_TRANSITION.http_status == 409
    assert ErrorCode.INVALID_QUANTITY.http_status == 422


def test_bad_sequence_date_becomes_structured_result(db_session):
    result = execute(sequence_service.next_number, "SO", on_date="2025-13-40")

    assert not result.ok
    assert result.http_status == ErrorCode.VALIDATION_ERROR.http_status
    assert result.error["code"] == ErrorCode.VALIDATION_ERROR.value
