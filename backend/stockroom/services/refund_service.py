# Overview: Item-level refunds of paid orders, with optional restock.

# backend/stockroom/services/refund_service.py
"""
Refund processing.

A refund gives money back for some quantity of one or more order items:

- Only paid (or partly paid) orders that are not cancelled can be refunded.
- An item is never refunded for more units than were ordered, across all of
  its refunds. The money refunded never exceeds what the order has paid.
- refund_subtotal = item price x refunded quantity.
- paid_amount drops by the refund total; payment_status follows it:
  nothing left -> refunded, below grand_total -> partial, otherwise paid.

Restocking (should_restock=True) follows the same rule as returns: only
items whose stock was deducted go back to the ledger (order_return), and
only the units the customer still holds. returned_quantity on the order
item is shared with return_order_item, so nothing is credited twice.
"""
from __future__ import annotations

import logging
from typing import Mapping, Sequence

from sqlalchemy import func

from ..errors import ErrorCode, InventoryError, not_found, validation_error
from ..extensions import db
from ..models import Order, OrderItem, Refund, RefundItem
from ..models.inventory import REASON_ORDER_RETURN, REFERENCE_ORDER
from . import inventory_service
from .concurrency import lock_for_update, run_in_transaction
from .order_service import (
    HISTORY_REFUND,
    PAYMENT_STATUS_PAID,
    PAYMENT_STATUS_PARTIAL,
    PAYMENT_STATUS_PENDING,
    PAYMENT_STATUS_REFUNDED,
    record_history,
    returns_inventory,
)

logger = logging.getLogger(__name__)


def determine_payment_status(grand_total: int, paid_amount: int) -> str:
    if paid_amount <= 0:
        return PAYMENT_STATUS_REFUNDED
    if paid_amount < grand_total:
        return PAYMENT_STATUS_PARTIAL
    return PAYMENT_STATUS_PAID


def refunded_quantity(order_item_id: int) -> int:
    """Units of the item already covered by earlier refunds."""
    total = (
        db.session.query(func.coalesce(func.sum(RefundItem.quantity), 0))
        .filter(RefundItem.order_item_id == order_item_id)
        .scalar()
    )
    return int(total or 0)


def _load_order(order_id: int) -> Order:
    order = lock_for_update(db.session.query(Order).filter_by(id=order_id)).first()
    if order is None:
        raise not_found("Order", order_id)
    return order


def _check_eligibility(order: Order) -> None:
    if order.is_cancelled:
        raise InventoryError(
            ErrorCode.INVALID_STATUS_TRANSITION,
            f"Order {order.order_number} is cancelled and cannot be refunded",
            order_id=order.id,
            status=order.shipping_status,
        )
    if order.payment_status == PAYMENT_STATUS_PENDING or order.paid_amount <= 0:
        raise validation_error(
            f"Order {order.order_number} has no paid amount to refund",
            order_id=order.id,
            payment_status=order.payment_status,
            paid_amount=order.paid_amount,
        )


def _build_refund_items(order: Order, lines: Sequence[Mapping]) -> list[tuple[OrderItem, RefundItem]]:
    items_by_id = {item.id: item for item in order.items}
    requested: dict[int, int] = {}
    built = []
    for line in lines:
        order_item_id = line.get("order_item_id")
        item = items_by_id.get(order_item_id)
        if item is None:
            raise validation_error(
                f"Order item {order_item_id} does not belong to order {order.order_number}",
                order_id=order.id,
                order_item_id=order_item_id,
            )
        quantity = inventory_service.validate_quantity(line.get("quantity"), order_item_id=item.id)

        requested[item.id] = requested.get(item.id, 0) + quantity
        refundable = item.quantity - refunded_quantity(item.id)
        if requested[item.id] > refundable:
            raise validation_error(
                f"Refund quantity for item {item.sku or item.id} exceeds the refundable quantity",
                order_item_id=item.id,
                requested=requested[item.id],
                refundable=refundable,
            )

        built.append((item, RefundItem(order_item=item, quantity=quantity, refund_subtotal=item.price * quantity)))
    return built


def _restock(order: Order, item: OrderItem, refund_item: RefundItem, refund: Refund, user_id: int | None) -> None:
    amount = min(refund_item.quantity, item.outstanding_quantity)
    if amount <= 0:
        return
    inventory_service.increment(
        item.product_variant_id,
        order.store_id,
        amount,
        REASON_ORDER_RETURN,
        reference_type=REFERENCE_ORDER,
        reference_id=order.id,
        actor_user_id=user_id,
        note=f"Refund #{refund.id} restock",
        commit=False,
    )
    item.returned_quantity += amount
    refund_item.restocked_quantity = amount


def create_refund(
    order_id: int,
    items: Sequence[Mapping],
    *,
    reason: str,
    notes: str | None = None,
    should_restock: bool = False,
    user_id: int | None = None,
) -> Refund:
    """
    Refund items of a paid order.

    items: [{"order_item_id": ..., "quantity": ...}, ...]
    """
    if not items:
        raise validation_error("A refund needs at least one item")
    if not reason or not str(reason).strip():
        raise validation_error("reason is required", field="reason")

    def _op() -> Refund:
        order = _load_order(order_id)
        _check_eligibility(order)

        built = _build_refund_items(order, items)
        total = sum(refund_item.refund_subtotal for _, refund_item in built)
        if total > order.paid_amount:
            raise validation_error(
                f"Refund of {total} exceeds the {order.paid_amount} paid on order {order.order_number}",
                order_id=order.id,
                refund_amount=total,
                paid_amount=order.paid_amount,
            )

        refund = Refund(
            order_id=order.id,
            total_refund_amount=total,
            reason=reason.strip(),
            notes=notes,
            should_restock=bool(should_restock),
            created_by_user_id=user_id,
            items=[refund_item for _, refund_item in built],
        )
        db.session.add(refund)
        db.session.flush()

        if should_restock:
            inventory_service.lock_records(
                (item.product_variant_id, order.store_id) for item, _ in built if returns_inventory(item)
            )
            for item, refund_item in built:
                if returns_inventory(item):
                    _restock(order, item, refund_item, refund, user_id)
                else:
                    logger.info("Refund #%s: item %s has no deducted stock to restock", refund.id, item.id)

        previous = order.payment_status
        order.paid_amount -= total
        order.payment_status = determine_payment_status(order.grand_total, order.paid_amount)
        record_history(
            order, HISTORY_REFUND, previous, "refund_processed",
            notes=f"Refund #{refund.id}: {total}", user_id=user_id,
        )
        db.session.flush()

        logger.info(
            "Refund #%s on order %s: amount=%d restock=%s payment_status=%s",
            refund.id, order.order_number, total, bool(should_restock), order.payment_status,
        )
        return refund

    return run_in_transaction(_op)


def get_order_refunds(order_id: int) -> list[Refund]:
    """Refunds of an order, newest first."""
    return (
        db.session.query(Refund)
        .filter_by(order_id=order_id)
        .order_by(Refund.id.desc())
        .all()
    )


def get_total_refunded(order_id: int) -> int:
    total = (
        db.session.query(func.coalesce(func.sum(Refund.total_refund_amount), 0))
        .filter(Refund.order_id == order_id)
        .scalar()
    )
    return int(total or 0)
