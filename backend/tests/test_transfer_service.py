import pytest

from stockroom.errors import ErrorCode, InventoryError
from stockroom.models import InventoryTransfer
from stockroom.models.inventory import REASON_TRANSFER_IN, REASON_TRANSFER_OUT, REFERENCE_TRANSFER
from stockroom.services import inventory_service, transfer_service


@pytest.fixture
def transfer(db_session, store, other_store, variant, second_variant, stock):
    stock(variant, store, 10)
    stock(second_variant, store, 4)
    return transfer_service.create_transfer(
        store.id,
        other_store.id,
        notes="Restock branch",
        lines=[
            {"product_variant_id": variant.id, "quantity": 6},
            {"product_variant_id": second_variant.id, "quantity": 4},
        ],
    )


def _qty(variant, store):
    return inventory_service.get_current_quantity(variant.id, store.id)


def test_create_transfer_has_no_ledger_effect(transfer, store, other_store, variant):
    assert transfer.status == transfer_service.TRANSFER_STATUS_PENDING
    assert transfer.transfer_number.startswith("TR-")
    assert len(transfer.lines) == 2
    assert _qty(variant, store) == 10
    assert _qty(variant, other_store) == 0


def test_same_store_transfer_rejected(db_session, store):
    with pytest.raises(InventoryError) as exc_info:
        transfer_service.create_transfer(store.id, store.id)
    assert exc_info.value.code is ErrorCode.VALIDATION_ERROR


def test_ship_then_complete_moves_stock(transfer, store, other_store, variant, second_variant):
    transfer_service.ship_transfer(transfer.id, user_id=3)
    assert _qty(variant, store) == 4
    assert _qty(second_variant, store) == 0
    assert _qty(variant, other_store) == 0

    transfer_service.complete_transfer(transfer.id, user_id=3)
    assert _qty(variant, other_store) == 6
    assert _qty(second_variant, other_store) == 4

    moves = inventory_service.get_reference_history(REFERENCE_TRANSFER, transfer.id)
    assert [(m.reason, m.quantity_delta) for m in moves] == [
        (REASON_TRANSFER_OUT, -6),
        (REASON_TRANSFER_OUT, -4),
        (REASON_TRANSFER_IN, 6),
        (REASON_TRANSFER_IN, 4),
    ]
    assert inventory_service.find_unreconciled_records() == []


def test_ship_with_shortfall_keeps_transfer_pending(db_session, transfer, store, variant, second_variant):
    inventory_service.adjust_inventory(second_variant.id, store.id, -1)

    with pytest.raises(InventoryError) as exc_info:
        transfer_service.ship_transfer(transfer.id)

    assert exc_info.value.code is ErrorCode.INSUFFICIENT_STOCK
    assert db_session.get(InventoryTransfer, transfer.id).status == transfer_service.TRANSFER_STATUS_PENDING
    # The first line's debit was rolled back with the transition.
    assert _qty(variant, store) == 10


def test_cancel_pending_is_status_only(transfer, store, variant):
    cancelled = transfer_service.cancel_transfer(transfer.id, reason="Not needed")
    assert cancelled.status == transfer_service.TRANSFER_STATUS_CANCELLED
    assert cancelled.cancellation_reason == "Not needed"
    assert _qty(variant, store) == 10
    assert inventory_service.get_reference_history(REFERENCE_TRANSFER, transfer.id) == []


def test_cancel_in_transit_returns_stock_to_source(transfer, store, other_store, variant):
    transfer_service.ship_transfer(transfer.id)
    transfer_service.cancel_transfer(transfer.id, reason="Truck broke down")

    assert _qty(variant, store) == 10
    assert _qty(variant, other_store) == 0


def test_terminal_states_reject_transitions(transfer):
    transfer_service.ship_transfer(transfer.id)
    transfer_service.complete_transfer(transfer.id)

    for operation in (transfer_service.cancel_transfer, transfer_service.ship_transfer,
                      transfer_service.complete_transfer):
        with pytest.raises(InventoryError) as exc_info:
            operation(transfer.id)
        assert exc_info.value.code is ErrorCode.INVALID_STATUS_TRANSITION


def test_lines_only_while_pending(transfer, make_variant):
    extra = make_variant("SKU-EXTRA")
    transfer_service.ship_transfer(transfer.id)
    with pytest.raises(InventoryError) as exc_info:
        transfer_service.add_transfer_line(transfer.id, extra.id, 1)
    assert exc_info.value.code is ErrorCode.INVALID_STATUS_TRANSITION


def test_duplicate_line_rejected(transfer, variant):
    with pytest.raises(InventoryError) as exc_info:
        transfer_service.add_transfer_line(transfer.id, variant.id, 1)
    assert exc_info.value.code is ErrorCode.VALIDATION_ERROR


def test_transfer_summary(transfer):
    summary = transfer_service.get_transfer_summary(transfer.id)
    assert summary["transfer_number"] == transfer.transfer_number
    assert [line["quantity"] for line in summary["lines"]] == [6, 4]
