# Overview: Store-to-store transfer workflow built on the inventory ledger.

# backend/stockroom/services/transfer_service.py
"""
Inter-store transfer service.

Moves stock between two stores in two phases: shipping debits the source,
completion credits the destination. Every ledger posting references the
transfer (reference_type="transfer").

LIFECYCLE:
1. pending: transfer created, lines added (no ledger effect)
2. in_transit: shipped from source (transfer_out at source)
3. completed: received at destination (transfer_in at destination)
4. cancelled: from pending (status only) or in_transit (source credited
   back with transfer_in before the status changes)
"""
from __future__ import annotations

import logging

from flask import current_app

from ..errors import ErrorCode, InventoryError, invalid_transition, not_found, validation_error
from ..extensions import db
from ..models import InventoryTransfer, InventoryTransferLine, ProductVariant, Store
from ..models.inventory import REASON_TRANSFER_IN, REASON_TRANSFER_OUT, REFERENCE_TRANSFER
from ..time_utils import utcnow
from . import inventory_service, sequence_service
from .concurrency import lock_for_update, run_in_transaction

logger = logging.getLogger(__name__)

# Transfer status constants
TRANSFER_STATUS_PENDING = "pending"
TRANSFER_STATUS_IN_TRANSIT = "in_transit"
TRANSFER_STATUS_COMPLETED = "completed"
TRANSFER_STATUS_CANCELLED = "cancelled"

ALLOWED_TRANSITIONS = {
    TRANSFER_STATUS_PENDING: {TRANSFER_STATUS_IN_TRANSIT, TRANSFER_STATUS_CANCELLED},
    TRANSFER_STATUS_IN_TRANSIT: {TRANSFER_STATUS_COMPLETED, TRANSFER_STATUS_CANCELLED},
    TRANSFER_STATUS_COMPLETED: set(),
    TRANSFER_STATUS_CANCELLED: set(),
}


def _load_transfer(transfer_id: int) -> InventoryTransfer:
    transfer = lock_for_update(db.session.query(InventoryTransfer).filter_by(id=transfer_id)).first()
    if not transfer:
        raise not_found("Transfer", transfer_id)
    return transfer


def _check_transition(transfer: InventoryTransfer, new_status: str) -> None:
    if new_status not in ALLOWED_TRANSITIONS.get(transfer.status, set()):
        raise invalid_transition("transfer", transfer.status, new_status, transfer_id=transfer.id)


def _lock_lines(transfer: InventoryTransfer, store_id: int) -> None:
    inventory_service.lock_records((line.product_variant_id, store_id) for line in transfer.lines)


def create_transfer(
    from_store_id: int,
    to_store_id: int,
    user_id: int | None = None,
    notes: str | None = None,
    lines: list[dict] | None = None,
) -> InventoryTransfer:
    """
    Create a new transfer document (status: pending).

    lines, when given, is a list of {"product_variant_id", "quantity"} dicts
    added in the same transaction.
    """
    if from_store_id == to_store_id:
        raise validation_error("Cannot transfer to the same store", store_id=from_store_id)

    def _op():
        for store_id in (from_store_id, to_store_id):
            if db.session.get(Store, store_id) is None:
                raise not_found("Store", store_id)

        transfer = InventoryTransfer(
            transfer_number=sequence_service.next_number(
                current_app.config["TRANSFER_NUMBER_PREFIX"],
                commit=False,
            ),
            from_store_id=from_store_id,
            to_store_id=to_store_id,
            status=TRANSFER_STATUS_PENDING,
            notes=notes,
            created_by_user_id=user_id,
        )
        db.session.add(transfer)
        db.session.flush()

        for line in lines or []:
            _add_line_inner(transfer, line.get("product_variant_id"), line.get("quantity"))

        logger.info(
            "Transfer %s created: store %s -> store %s (%d lines)",
            transfer.transfer_number, from_store_id, to_store_id, len(transfer.lines),
        )
        return transfer

    return run_in_transaction(_op)


def _add_line_inner(transfer: InventoryTransfer, product_variant_id: int, quantity: int) -> InventoryTransferLine:
    inventory_service.validate_quantity(quantity, transfer_id=transfer.id, product_variant_id=product_variant_id)

    if db.session.get(ProductVariant, product_variant_id) is None:
        raise not_found("Product variant", product_variant_id)

    existing = db.session.query(InventoryTransferLine).filter_by(
        transfer_id=transfer.id,
        product_variant_id=product_variant_id,
    ).first()
    if existing:
        raise validation_error(
            f"Product variant {product_variant_id} already on this transfer",
            transfer_id=transfer.id,
            product_variant_id=product_variant_id,
        )

    line = InventoryTransferLine(
        transfer=transfer,
        product_variant_id=product_variant_id,
        quantity=quantity,
    )
    db.session.add(line)
    db.session.flush()
    return line


def add_transfer_line(transfer_id: int, product_variant_id: int, quantity: int) -> InventoryTransferLine:
    """
    Add a line to a pending transfer.

    Availability is not reserved here; it is checked when the transfer ships.
    """
    def _op():
        transfer = _load_transfer(transfer_id)
        if transfer.status != TRANSFER_STATUS_PENDING:
            raise InventoryError(
                ErrorCode.INVALID_STATUS_TRANSITION,
                f"Cannot add lines to transfer in {transfer.status} status",
                transfer_id=transfer.id,
                status=transfer.status,
            )
        return _add_line_inner(transfer, product_variant_id, quantity)

    return run_in_transaction(_op)


def ship_transfer(transfer_id: int, user_id: int | None = None) -> InventoryTransfer:
    """
    Ship a transfer (mark as in_transit).

    Debits the source store for every line. Any shortfall aborts the whole
    transition and the transfer stays pending.
    """
    def _op():
        transfer = _load_transfer(transfer_id)
        _check_transition(transfer, TRANSFER_STATUS_IN_TRANSIT)
        if not transfer.lines:
            raise validation_error("Cannot ship transfer with no lines", transfer_id=transfer.id)

        _lock_lines(transfer, transfer.from_store_id)
        for line in transfer.lines:
            inventory_service.decrement(
                line.product_variant_id,
                transfer.from_store_id,
                line.quantity,
                REASON_TRANSFER_OUT,
                reference_type=REFERENCE_TRANSFER,
                reference_id=transfer.id,
                actor_user_id=user_id,
                note=f"Transfer {transfer.transfer_number} to store {transfer.to_store_id}",
                commit=False,
            )

        transfer.status = TRANSFER_STATUS_IN_TRANSIT
        transfer.shipped_at = utcnow()
        logger.info("Transfer %s shipped", transfer.transfer_number)
        return transfer

    return run_in_transaction(_op)


def complete_transfer(transfer_id: int, user_id: int | None = None) -> InventoryTransfer:
    """Receive a transfer at the destination; credits every line there."""
    def _op():
        transfer = _load_transfer(transfer_id)
        _check_transition(transfer, TRANSFER_STATUS_COMPLETED)

        _lock_lines(transfer, transfer.to_store_id)
        for line in transfer.lines:
            inventory_service.increment(
                line.product_variant_id,
                transfer.to_store_id,
                line.quantity,
                REASON_TRANSFER_IN,
                reference_type=REFERENCE_TRANSFER,
                reference_id=transfer.id,
                actor_user_id=user_id,
                note=f"Transfer {transfer.transfer_number} from store {transfer.from_store_id}",
                commit=False,
            )

        transfer.status = TRANSFER_STATUS_COMPLETED
        transfer.completed_at = utcnow()
        logger.info("Transfer %s completed", transfer.transfer_number)
        return transfer

    return run_in_transaction(_op)


def cancel_transfer(transfer_id: int, user_id: int | None = None, reason: str | None = None) -> InventoryTransfer:
    """
    Cancel a pending or in-transit transfer.

    From in_transit the source debit is reversed first.
    """
    def _op():
        transfer = _load_transfer(transfer_id)
        _check_transition(transfer, TRANSFER_STATUS_CANCELLED)

        if transfer.status == TRANSFER_STATUS_IN_TRANSIT:
            _lock_lines(transfer, transfer.from_store_id)
            for line in transfer.lines:
                inventory_service.increment(
                    line.product_variant_id,
                    transfer.from_store_id,
                    line.quantity,
                    REASON_TRANSFER_IN,
                    reference_type=REFERENCE_TRANSFER,
                    reference_id=transfer.id,
                    actor_user_id=user_id,
                    note=f"Transfer {transfer.transfer_number} cancelled in transit",
                    commit=False,
                )

        transfer.status = TRANSFER_STATUS_CANCELLED
        transfer.cancelled_at = utcnow()
        transfer.cancellation_reason = reason
        logger.info("Transfer %s cancelled", transfer.transfer_number)
        return transfer

    return run_in_transaction(_op)


def get_transfer_summary(transfer_id: int) -> dict:
    """Transfer with its lines, as a dict."""
    transfer = db.session.get(InventoryTransfer, transfer_id)
    if not transfer:
        raise not_found("Transfer", transfer_id)

    return {
        **transfer.to_dict(),
        "lines": [line.to_dict() for line in transfer.lines],
    }
