# Overview: Inventory ledger; the only writer of InventoryRecord.quantity.

# backend/stockroom/services/inventory_service.py

"""
Stockroom Inventory Ledger Invariants (authoritative)

Storage:
- InventoryRecord holds the on-hand quantity per (variant, store).
- InventoryTransaction is the append-only movement log for a record.
- Records are created lazily on the first credit and never deleted.

Business invariants:
- quantity >= 0 after every committed operation. A debit that would take it
  below zero fails with INSUFFICIENT_STOCK and writes nothing.
- quantity == SUM(quantity_delta) over the record's transactions.
- Every quantity change appends exactly one transaction in the same DB
  transaction as the change.

Concurrency:
- The record row is locked (SELECT ... FOR UPDATE) and the debit itself is a
  conditional UPDATE (quantity >= :qty), so two concurrent debits can never
  both pass the availability check.
- Workflows that touch several records lock them first via lock_records(),
  which always locks in (variant, store) order.

Transactions:
- commit=True (default): the call is its own unit of work.
- commit=False: the call joins the caller's transaction (workflows).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable

from sqlalchemy import func, update
from sqlalchemy.exc import IntegrityError

from ..errors import ErrorCode, InventoryError, invalid_quantity, not_found, validation_error
from ..extensions import db
from ..models import InventoryRecord, InventoryTransaction, ProductVariant, Store
from ..models.inventory import REASON_MANUAL_ADJUSTMENT, TRANSACTION_REASONS
from .concurrency import lock_for_update, run_in_transaction

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReconciliationReport:
    record_id: int
    product_variant_id: int
    store_id: int
    stored_quantity: int
    ledger_quantity: int

    @property
    def is_consistent(self) -> bool:
        return self.stored_quantity == self.ledger_quantity

    def to_dict(self) -> dict:
        return {
            "record_id": self.record_id,
            "product_variant_id": self.product_variant_id,
            "store_id": self.store_id,
            "stored_quantity": self.stored_quantity,
            "ledger_quantity": self.ledger_quantity,
            "is_consistent": self.is_consistent,
        }


def validate_quantity(quantity, **context) -> int:
    """Positive int only; bools and floats are rejected."""
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
        raise invalid_quantity(quantity, **context)
    return quantity


def _validate_reason(reason: str) -> None:
    if reason not in TRANSACTION_REASONS:
        raise validation_error(f"Unknown inventory transaction reason: {reason!r}", reason=reason)


def _record_query(product_variant_id: int, store_id: int):
    return db.session.query(InventoryRecord).filter_by(
        product_variant_id=product_variant_id,
        store_id=store_id,
    )


def _ensure_variant_and_store(product_variant_id: int, store_id: int) -> None:
    if db.session.get(ProductVariant, product_variant_id) is None:
        raise not_found("Product variant", product_variant_id)
    if db.session.get(Store, store_id) is None:
        raise not_found("Store", store_id)


def _find_record(product_variant_id: int, store_id: int, *, lock: bool = False) -> InventoryRecord | None:
    query = _record_query(product_variant_id, store_id)
    if lock:
        query = lock_for_update(query)
    return query.first()


def _get_or_create_record(product_variant_id: int, store_id: int) -> InventoryRecord:
    record = _find_record(product_variant_id, store_id, lock=True)
    if record is not None:
        return record

    _ensure_variant_and_store(product_variant_id, store_id)
    record = InventoryRecord(product_variant_id=product_variant_id, store_id=store_id, quantity=0)
    try:
        with db.session.begin_nested():
            db.session.add(record)
    except IntegrityError:
        # Created concurrently; use the winner's row.
        record = _find_record(product_variant_id, store_id, lock=True)
        if record is None:
            raise
    return record


def _apply_delta(record: InventoryRecord, delta: int) -> bool:
    """
    Atomically apply delta to the record row.

    Debits carry a quantity >= -delta guard; returns False when the guard
    rejects the update.
    """
    stmt = update(InventoryRecord).where(InventoryRecord.id == record.id)
    if delta < 0:
        stmt = stmt.where(InventoryRecord.quantity >= -delta)
    stmt = stmt.values(
        quantity=InventoryRecord.quantity + delta,
        version_id=InventoryRecord.version_id + 1,
        updated_at=func.now(),
    ).execution_options(synchronize_session=False)

    result = db.session.execute(stmt)
    if not result.rowcount:
        return False
    db.session.refresh(record)
    return True


def _append_transaction(
    record: InventoryRecord,
    delta: int,
    reason: str,
    *,
    reference_type: str | None,
    reference_id: int | None,
    actor_user_id: int | None,
    note: str | None,
) -> InventoryTransaction:
    tx = InventoryTransaction(
        record_id=record.id,
        product_variant_id=record.product_variant_id,
        store_id=record.store_id,
        quantity_delta=delta,
        quantity_after=record.quantity,
        reason=reason,
        reference_type=reference_type,
        reference_id=reference_id,
        actor_user_id=actor_user_id,
        note=note,
    )
    db.session.add(tx)
    db.session.flush()
    return tx


def increment(
    product_variant_id: int,
    store_id: int,
    quantity: int,
    reason: str,
    *,
    reference_type: str | None = None,
    reference_id: int | None = None,
    actor_user_id: int | None = None,
    note: str | None = None,
    commit: bool = True,
) -> InventoryTransaction:
    """
    Credit stock. Always succeeds for a valid quantity; creates the record
    (starting at 0) when the pair has never been stocked.
    """
    validate_quantity(quantity, product_variant_id=product_variant_id, store_id=store_id)
    _validate_reason(reason)

    def _op() -> InventoryTransaction:
        record = _get_or_create_record(product_variant_id, store_id)
        _apply_delta(record, quantity)
        tx = _append_transaction(
            record,
            quantity,
            reason,
            reference_type=reference_type,
            reference_id=reference_id,
            actor_user_id=actor_user_id,
            note=note,
        )
        logger.info(
            "Stock +%d variant=%s store=%s reason=%s ref=%s:%s on_hand=%d",
            quantity, product_variant_id, store_id, reason, reference_type, reference_id, record.quantity,
        )
        return tx

    return run_in_transaction(_op, commit=commit)


def decrement(
    product_variant_id: int,
    store_id: int,
    quantity: int,
    reason: str,
    *,
    reference_type: str | None = None,
    reference_id: int | None = None,
    actor_user_id: int | None = None,
    note: str | None = None,
    commit: bool = True,
) -> InventoryTransaction:
    """
    Debit stock. Fails with INSUFFICIENT_STOCK when on-hand is below
    quantity (a never-stocked pair counts as 0 on hand).
    """
    validate_quantity(quantity, product_variant_id=product_variant_id, store_id=store_id)
    _validate_reason(reason)

    def _op() -> InventoryTransaction:
        record = _find_record(product_variant_id, store_id, lock=True)
        if record is None or not _apply_delta(record, -quantity):
            available = 0
            if record is not None:
                db.session.refresh(record)
                available = record.quantity
            logger.warning(
                "Insufficient stock variant=%s store=%s requested=%d available=%d",
                product_variant_id, store_id, quantity, available,
            )
            raise InventoryError(
                ErrorCode.INSUFFICIENT_STOCK,
                f"Insufficient stock for variant {product_variant_id} in store {store_id}: "
                f"requested {quantity}, available {available}",
                product_variant_id=product_variant_id,
                store_id=store_id,
                requested=quantity,
                available=available,
            )
        tx = _append_transaction(
            record,
            -quantity,
            reason,
            reference_type=reference_type,
            reference_id=reference_id,
            actor_user_id=actor_user_id,
            note=note,
        )
        logger.info(
            "Stock -%d variant=%s store=%s reason=%s ref=%s:%s on_hand=%d",
            quantity, product_variant_id, store_id, reason, reference_type, reference_id, record.quantity,
        )
        return tx

    return run_in_transaction(_op, commit=commit)


def adjust_inventory(
    product_variant_id: int,
    store_id: int,
    quantity_delta: int,
    *,
    actor_user_id: int | None = None,
    note: str | None = None,
    commit: bool = True,
) -> InventoryTransaction:
    """Manual correction; the sign of quantity_delta picks credit or debit."""
    if isinstance(quantity_delta, bool) or not isinstance(quantity_delta, int) or quantity_delta == 0:
        raise invalid_quantity(quantity_delta, product_variant_id=product_variant_id, store_id=store_id)

    posting = increment if quantity_delta > 0 else decrement
    return posting(
        product_variant_id,
        store_id,
        abs(quantity_delta),
        REASON_MANUAL_ADJUSTMENT,
        actor_user_id=actor_user_id,
        note=note,
        commit=commit,
    )


def lock_records(pairs: Iterable[tuple[int, int]]) -> list[InventoryRecord]:
    """
    Lock the records for several (variant, store) pairs in a fixed order.

    Pairs without a record are skipped; a record created later by increment()
    is locked at creation. Must run inside the caller's transaction.
    """
    locked = []
    for product_variant_id, store_id in sorted(set(pairs)):
        record = _find_record(product_variant_id, store_id, lock=True)
        if record is not None:
            locked.append(record)
    return locked


def get_current_quantity(product_variant_id: int, store_id: int) -> int:
    """On-hand quantity; 0 for a pair that has never been stocked."""
    quantity = (
        db.session.query(InventoryRecord.quantity)
        .filter_by(product_variant_id=product_variant_id, store_id=store_id)
        .scalar()
    )
    return int(quantity or 0)


def get_record(product_variant_id: int, store_id: int) -> InventoryRecord:
    record = _find_record(product_variant_id, store_id)
    if record is None:
        raise InventoryError(
            ErrorCode.INVENTORY_RECORD_NOT_FOUND,
            f"No inventory record for variant {product_variant_id} in store {store_id}",
            product_variant_id=product_variant_id,
            store_id=store_id,
        )
    return record


def get_history(product_variant_id: int, store_id: int, *, limit: int | None = None) -> list[InventoryTransaction]:
    """Movements for the pair, oldest first. Empty for a never-stocked pair."""
    q = (
        db.session.query(InventoryTransaction)
        .join(InventoryRecord, InventoryRecord.id == InventoryTransaction.record_id)
        .filter(
            InventoryRecord.product_variant_id == product_variant_id,
            InventoryRecord.store_id == store_id,
        )
        .order_by(InventoryTransaction.created_at.asc(), InventoryTransaction.id.asc())
    )
    if limit is not None:
        q = q.limit(limit)
    return q.all()


def get_reference_history(reference_type: str, reference_id: int) -> list[InventoryTransaction]:
    """All movements caused by one purchase / order / transfer."""
    return (
        db.session.query(InventoryTransaction)
        .filter_by(reference_type=reference_type, reference_id=reference_id)
        .order_by(InventoryTransaction.id.asc())
        .all()
    )


def reconcile_record(product_variant_id: int, store_id: int) -> ReconciliationReport:
    """Replay the record's deltas and compare with the stored quantity."""
    record = get_record(product_variant_id, store_id)
    ledger_quantity = (
        db.session.query(func.coalesce(func.sum(InventoryTransaction.quantity_delta), 0))
        .filter(InventoryTransaction.record_id == record.id)
        .scalar()
    )
    return ReconciliationReport(
        record_id=record.id,
        product_variant_id=record.product_variant_id,
        store_id=record.store_id,
        stored_quantity=record.quantity,
        ledger_quantity=int(ledger_quantity or 0),
    )


def find_unreconciled_records() -> list[ReconciliationReport]:
    """Every record whose transaction log does not sum to its quantity."""
    ledger_sum = func.coalesce(func.sum(InventoryTransaction.quantity_delta), 0)
    rows = (
        db.session.query(
            InventoryRecord.id,
            InventoryRecord.product_variant_id,
            InventoryRecord.store_id,
            InventoryRecord.quantity,
            ledger_sum.label("ledger_quantity"),
        )
        .outerjoin(InventoryTransaction, InventoryTransaction.record_id == InventoryRecord.id)
        .group_by(
            InventoryRecord.id,
            InventoryRecord.product_variant_id,
            InventoryRecord.store_id,
            InventoryRecord.quantity,
        )
        .having(ledger_sum != InventoryRecord.quantity)
        .order_by(InventoryRecord.id)
        .all()
    )
    return [
        ReconciliationReport(
            record_id=row.id,
            product_variant_id=row.product_variant_id,
            store_id=row.store_id,
            stored_quantity=row.quantity,
            ledger_quantity=int(row.ledger_quantity),
        )
        for row in rows
    ]


def set_low_stock_threshold(product_variant_id: int, store_id: int, threshold: int, *, commit: bool = True) -> InventoryRecord:
    if isinstance(threshold, bool) or not isinstance(threshold, int) or threshold < 0:
        raise validation_error("threshold must be a non-negative integer", threshold=threshold)

    def _op() -> InventoryRecord:
        record = _get_or_create_record(product_variant_id, store_id)
        record.low_stock_threshold = threshold
        db.session.flush()
        return record

    return run_in_transaction(_op, commit=commit)


def list_low_stock(store_id: int | None = None) -> list[InventoryRecord]:
    """Records at or below a configured (non-zero) threshold."""
    q = db.session.query(InventoryRecord).filter(
        InventoryRecord.low_stock_threshold > 0,
        InventoryRecord.quantity <= InventoryRecord.low_stock_threshold,
    )
    if store_id is not None:
        q = q.filter(InventoryRecord.store_id == store_id)
    return q.order_by(InventoryRecord.store_id, InventoryRecord.product_variant_id).all()
