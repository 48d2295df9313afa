import pytest

from stockroom.errors import ErrorCode, InventoryError
from stockroom.extensions import db
from stockroom.models import InventoryRecord
from stockroom.models.inventory import (
    REASON_ORDER_DEDUCTION,
    REASON_PURCHASE_RECEIPT,
    REFERENCE_PURCHASE,
)
from stockroom.services import inventory_service


def test_increment_creates_record_lazily(db_session, store, variant):
    assert inventory_service.get_current_quantity(variant.id, store.id) == 0

    tx = inventory_service.increment(
        variant.id, store.id, 7, REASON_PURCHASE_RECEIPT,
        reference_type=REFERENCE_PURCHASE, reference_id=42,
    )

    assert tx.quantity_delta == 7
    assert tx.quantity_after == 7
    assert tx.reference_type == REFERENCE_PURCHASE
    assert tx.reference_id == 42
    assert inventory_service.get_current_quantity(variant.id, store.id) == 7


def test_decrement_appends_negative_transaction(db_session, store, variant, stock):
    stock(variant, store, 10)

    tx = inventory_service.decrement(variant.id, store.id, 4, REASON_ORDER_DEDUCTION)

    assert tx.quantity_delta == -4
    assert tx.quantity_after == 6
    history = inventory_service.get_history(variant.id, store.id)
    assert [t.quantity_delta for t in history] == [10, -4]


def test_decrement_rejects_overdraw_and_writes_nothing(db_session, store, variant, stock):
    stock(variant, store, 2)

    with pytest.raises(InventoryError) as exc_info:
        inventory_service.decrement(variant.id, store.id, 3, REASON_ORDER_DEDUCTION)

    assert exc_info.value.code is ErrorCode.INSUFFICIENT_STOCK
    assert exc_info.value.context["available"] == 2
    assert exc_info.value.context["requested"] == 3
    assert inventory_service.get_current_quantity(variant.id, store.id) == 2
    assert len(inventory_service.get_history(variant.id, store.id)) == 1


def test_decrement_on_never_stocked_pair(db_session, store, variant):
    with pytest.raises(InventoryError) as exc_info:
        inventory_service.decrement(variant.id, store.id, 1, REASON_ORDER_DEDUCTION)

    assert exc_info.value.code is ErrorCode.INSUFFICIENT_STOCK
    assert exc_info.value.context["available"] == 0
    assert db_session.query(InventoryRecord).count() == 0


@pytest.mark.parametrize("quantity", [0, -1, 1.5, "3", True, None])
def test_invalid_quantities(db_session, store, variant, quantity):
    with pytest.raises(InventoryError) as exc_info:
        inventory_service.increment(variant.id, store.id, quantity, REASON_PURCHASE_RECEIPT)
    assert exc_info.value.code is ErrorCode.INVALID_QUANTITY


def test_unknown_reason_is_rejected(db_session, store, variant):
    with pytest.raises(InventoryError) as exc_info:
        inventory_service.increment(variant.id, store.id, 1, "gift")
    assert exc_info.value.code is ErrorCode.VALIDATION_ERROR


def test_increment_for_unknown_variant(db_session, store):
    with pytest.raises(InventoryError) as exc_info:
        inventory_service.increment(999, store.id, 1, REASON_PURCHASE_RECEIPT)
    assert exc_info.value.code is ErrorCode.NOT_FOUND


def test_get_record_requires_existing_record(db_session, store, variant):
    with pytest.raises(InventoryError) as exc_info:
        inventory_service.get_record(variant.id, store.id)
    assert exc_info.value.code is ErrorCode.INVENTORY_RECORD_NOT_FOUND
    assert inventory_service.get_history(variant.id, store.id) == []


def test_adjust_inventory_uses_sign(db_session, store, variant, stock):
    stock(variant, store, 5)

    inventory_service.adjust_inventory(variant.id, store.id, -2, note="Damaged")
    inventory_service.adjust_inventory(variant.id, store.id, 4, note="Found in back room")

    assert inventory_service.get_current_quantity(variant.id, store.id) == 7
    with pytest.raises(InventoryError) as exc_info:
        inventory_service.adjust_inventory(variant.id, store.id, 0)
    assert exc_info.value.code is ErrorCode.INVALID_QUANTITY


def test_history_replays_to_current_quantity(db_session, store, variant, stock):
    stock(variant, store, 10)
    inventory_service.decrement(variant.id, store.id, 3, REASON_ORDER_DEDUCTION)
    inventory_service.increment(variant.id, store.id, 6, REASON_PURCHASE_RECEIPT)
    inventory_service.decrement(variant.id, store.id, 13, REASON_ORDER_DEDUCTION)

    history = inventory_service.get_history(variant.id, store.id)
    assert sum(tx.quantity_delta for tx in history) == inventory_service.get_current_quantity(variant.id, store.id) == 0

    report = inventory_service.reconcile_record(variant.id, store.id)
    assert report.is_consistent
    assert inventory_service.find_unreconciled_records() == []


def test_find_unreconciled_records_detects_drift(db_session, store, variant, stock):
    stock(variant, store, 4)
    # Simulate an out-of-band write that bypassed the ledger.
    db_session.execute(
        InventoryRecord.__table__.update()
        .where(InventoryRecord.product_variant_id == variant.id)
        .values(quantity=9)
    )
    db_session.commit()

    reports = inventory_service.find_unreconciled_records()
    assert len(reports) == 1
    assert reports[0].stored_quantity == 9
    assert reports[0].ledger_quantity == 4
    assert not reports[0].is_consistent


def test_low_stock_threshold(db_session, store, variant, second_variant, stock):
    stock(variant, store, 3)
    stock(second_variant, store, 30)
    inventory_service.set_low_stock_threshold(variant.id, store.id, 5)
    inventory_service.set_low_stock_threshold(second_variant.id, store.id, 5)

    low = inventory_service.list_low_stock(store.id)
    assert [record.product_variant_id for record in low] == [variant.id]
    assert low[0].is_low_stock


def test_lock_records_skips_missing_pairs(db_session, store, variant, second_variant, stock):
    stock(variant, store, 1)

    locked = inventory_service.lock_records([(second_variant.id, store.id), (variant.id, store.id)])

    assert [record.product_variant_id for record in locked] == [variant.id]
    db.session.rollback()


def test_joined_transaction_rolls_back_with_caller(db_session, store, variant, stock):
    stock(variant, store, 5)

    inventory_service.decrement(variant.id, store.id, 2, REASON_ORDER_DEDUCTION, commit=False)
    db_session.rollback()

    assert inventory_service.get_current_quantity(variant.id, store.id) == 5
