# Overview: Purchase order lifecycle, shipping-cost allocation and stock posting.

# backend/stockroom/services/purchase_service.py
"""
Purchase workflow.

LIFECYCLE (ALLOWED_TRANSITIONS is the single source of truth):
pending -> confirmed -> in_transit -> received -> completed
in_transit -> partially_received -> received | completed
pending | confirmed | in_transit -> cancelled

completed -> received is reachable only through revert_purchase().

Stock is posted to the ledger when the purchase completes, and only then.
PurchaseItem.posted_quantity records what has been credited so that
compensation (cancel / revert) never debits more than was posted.

Completion and reversion also run the order fulfillment callbacks for
backorder items linked to the purchase, inside the same transaction.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Mapping, Sequence

from flask import current_app

from ..errors import ErrorCode, InventoryError, invalid_quantity, invalid_transition, not_found, validation_error
from ..extensions import db
from ..models import ProductVariant, Purchase, PurchaseItem, Store
from ..models.inventory import REASON_PURCHASE_RECEIPT, REFERENCE_PURCHASE
from ..time_utils import normalize_datetime, utcnow
from . import inventory_service, sequence_service
from .concurrency import lock_for_update, run_in_transaction

logger = logging.getLogger(__name__)

# Purchase status constants
PURCHASE_STATUS_PENDING = "pending"
PURCHASE_STATUS_CONFIRMED = "confirmed"
PURCHASE_STATUS_IN_TRANSIT = "in_transit"
PURCHASE_STATUS_PARTIALLY_RECEIVED = "partially_received"
PURCHASE_STATUS_RECEIVED = "received"
PURCHASE_STATUS_COMPLETED = "completed"
PURCHASE_STATUS_CANCELLED = "cancelled"

ALLOWED_TRANSITIONS = {
    PURCHASE_STATUS_PENDING: {PURCHASE_STATUS_CONFIRMED, PURCHASE_STATUS_CANCELLED},
    PURCHASE_STATUS_CONFIRMED: {PURCHASE_STATUS_IN_TRANSIT, PURCHASE_STATUS_CANCELLED},
    PURCHASE_STATUS_IN_TRANSIT: {
        PURCHASE_STATUS_RECEIVED,
        PURCHASE_STATUS_PARTIALLY_RECEIVED,
        PURCHASE_STATUS_CANCELLED,
    },
    PURCHASE_STATUS_PARTIALLY_RECEIVED: {PURCHASE_STATUS_RECEIVED, PURCHASE_STATUS_COMPLETED},
    PURCHASE_STATUS_RECEIVED: {PURCHASE_STATUS_COMPLETED},
    PURCHASE_STATUS_COMPLETED: set(),
    PURCHASE_STATUS_CANCELLED: set(),
}

PURCHASE_STATUSES = frozenset(ALLOWED_TRANSITIONS)

# Shipping cost may be re-allocated while nothing has been posted.
MODIFIABLE_STATUSES = frozenset({
    PURCHASE_STATUS_PENDING,
    PURCHASE_STATUS_CONFIRMED,
    PURCHASE_STATUS_PARTIALLY_RECEIVED,
    PURCHASE_STATUS_RECEIVED,
})

# Lines may be added before the goods leave the supplier.
ITEM_EDITABLE_STATUSES = frozenset({PURCHASE_STATUS_PENDING, PURCHASE_STATUS_CONFIRMED})


@dataclass(frozen=True)
class PurchaseItemResult:
    id: int
    product_variant_id: int
    quantity: int
    cost_price: int
    allocated_shipping_cost: int
    total_cost_price: int
    posted_quantity: int

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_variant_id": self.product_variant_id,
            "quantity": self.quantity,
            "cost_price": self.cost_price,
            "allocated_shipping_cost": self.allocated_shipping_cost,
            "total_cost_price": self.total_cost_price,
            "posted_quantity": self.posted_quantity,
        }


@dataclass(frozen=True)
class PurchaseResult:
    id: int
    order_number: str
    status: str
    shipping_cost: int
    total_amount: int
    items: tuple[PurchaseItemResult, ...]

    @classmethod
    def from_purchase(cls, purchase: Purchase) -> "PurchaseResult":
        return cls(
            id=purchase.id,
            order_number=purchase.order_number,
            status=purchase.status,
            shipping_cost=purchase.shipping_cost,
            total_amount=purchase.total_amount,
            items=tuple(
                PurchaseItemResult(
                    id=item.id,
                    product_variant_id=item.product_variant_id,
                    quantity=item.quantity,
                    cost_price=item.cost_price,
                    allocated_shipping_cost=item.allocated_shipping_cost,
                    total_cost_price=item.total_cost_price,
                    posted_quantity=item.posted_quantity,
                )
                for item in purchase.items
            ),
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_number": self.order_number,
            "status": self.status,
            "shipping_cost": self.shipping_cost,
            "total_amount": self.total_amount,
            "items": [item.to_dict() for item in self.items],
        }


# ---------------------------------------------------------------------------
# Costing
# ---------------------------------------------------------------------------

def allocate_shipping_cost(
    subtotals: Sequence[int],
    shipping_cost: int,
    quantities: Sequence[int] | None = None,
) -> list[int]:
    """
    Split shipping_cost across lines proportionally to their subtotals.

    Every line but the last gets floor(C * s_i / S); the last line takes the
    remainder, so the allocations always sum to shipping_cost exactly. When
    all subtotals are zero the split is by quantity (or equal, without
    quantities).
    """
    if not subtotals:
        return []

    weights = list(subtotals)
    if sum(weights) <= 0:
        weights = list(quantities) if quantities and sum(quantities) > 0 else [1] * len(subtotals)
    total_weight = sum(weights)

    allocations = [shipping_cost * weight // total_weight for weight in weights[:-1]]
    allocations.append(shipping_cost - sum(allocations))
    return allocations


def _apply_costing(purchase: Purchase) -> None:
    items = list(purchase.items)
    allocations = allocate_shipping_cost(
        [item.subtotal for item in items],
        purchase.shipping_cost,
        [item.quantity for item in items],
    )
    for item, allocated in zip(items, allocations):
        item.allocated_shipping_cost = allocated
        item.total_cost_price = item.subtotal + allocated
    purchase.total_amount = purchase.items_subtotal + purchase.shipping_cost


# ---------------------------------------------------------------------------
# Validation helpers
# ---------------------------------------------------------------------------

def _non_negative_int(value, field: str, **context) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise validation_error(f"{field} must be a non-negative integer", field=field, value=value, **context)
    return value


def _build_item(payload: Mapping) -> PurchaseItem:
    product_variant_id = payload.get("product_variant_id")
    variant = db.session.get(ProductVariant, product_variant_id) if product_variant_id else None
    if variant is None:
        raise not_found("Product variant", product_variant_id)

    quantity = inventory_service.validate_quantity(payload.get("quantity"), product_variant_id=product_variant_id)
    cost_price = _non_negative_int(
        payload.get("cost_price", variant.cost_price), "cost_price", product_variant_id=product_variant_id
    )
    unit_price = _non_negative_int(
        payload.get("unit_price", cost_price), "unit_price", product_variant_id=product_variant_id
    )
    return PurchaseItem(
        product_variant_id=product_variant_id,
        quantity=quantity,
        unit_price=unit_price,
        cost_price=cost_price,
    )


def _load_purchase(purchase_id: int, *, lock: bool = True) -> Purchase:
    query = db.session.query(Purchase).filter(Purchase.id == purchase_id, Purchase.deleted_at.is_(None))
    if lock:
        query = lock_for_update(query)
    purchase = query.first()
    if purchase is None:
        raise not_found("Purchase", purchase_id)
    return purchase


def _check_transition(purchase: Purchase, new_status: str) -> None:
    if new_status not in PURCHASE_STATUSES:
        raise validation_error(f"Unknown purchase status: {new_status!r}", status=new_status)
    if new_status not in ALLOWED_TRANSITIONS[purchase.status]:
        raise invalid_transition("purchase", purchase.status, new_status, purchase_id=purchase.id)


# ---------------------------------------------------------------------------
# Ledger postings
# ---------------------------------------------------------------------------

def _lock_item_records(purchase: Purchase) -> None:
    inventory_service.lock_records((item.product_variant_id, purchase.store_id) for item in purchase.items)


def _post_stock(purchase: Purchase, user_id: int | None) -> None:
    """Credit every un-posted quantity to the purchase's store."""
    _lock_item_records(purchase)
    for item in purchase.items:
        remaining = item.quantity - item.posted_quantity
        if remaining <= 0:
            continue
        inventory_service.increment(
            item.product_variant_id,
            purchase.store_id,
            remaining,
            REASON_PURCHASE_RECEIPT,
            reference_type=REFERENCE_PURCHASE,
            reference_id=purchase.id,
            actor_user_id=user_id,
            note=f"Purchase {purchase.order_number}",
            commit=False,
        )
        item.posted_quantity = item.quantity


def _unpost_stock(purchase: Purchase, user_id: int | None, note: str) -> None:
    """
    Debit everything previously posted.

    A shortfall means the stock has already been consumed downstream; the
    whole operation fails and the caller's transaction rolls back.
    """
    _lock_item_records(purchase)
    for item in purchase.items:
        if item.posted_quantity <= 0:
            continue
        try:
            inventory_service.decrement(
                item.product_variant_id,
                purchase.store_id,
                item.posted_quantity,
                REASON_PURCHASE_RECEIPT,
                reference_type=REFERENCE_PURCHASE,
                reference_id=purchase.id,
                actor_user_id=user_id,
                note=note,
                commit=False,
            )
        except InventoryError as exc:
            if exc.code is not ErrorCode.INSUFFICIENT_STOCK:
                raise
            raise InventoryError(
                ErrorCode.INVENTORY_OPERATION_FAILED,
                f"Cannot reverse purchase {purchase.order_number}: stock for variant "
                f"{item.product_variant_id} has already been consumed",
                purchase_id=purchase.id,
                purchase_item_id=item.id,
                product_variant_id=item.product_variant_id,
                required=item.posted_quantity,
                available=exc.context.get("available"),
            ) from exc
        item.posted_quantity = 0


def _complete_inner(purchase: Purchase, user_id: int | None) -> None:
    from . import order_service

    _post_stock(purchase, user_id)
    purchase.status = PURCHASE_STATUS_COMPLETED
    purchase.completed_at = utcnow()
    for item in purchase.items:
        item.received_quantity = item.quantity
    order_service.on_purchase_completed(purchase, user_id=user_id)


# ---------------------------------------------------------------------------
# Public operations
# ---------------------------------------------------------------------------

def create_purchase(
    store_id: int,
    items: Sequence[Mapping],
    *,
    shipping_cost: int = 0,
    order_number: str | None = None,
    purchased_at=None,
    status: str = PURCHASE_STATUS_PENDING,
    notes: str | None = None,
    is_tax_inclusive: bool = False,
    tax_rate: int = 0,
    user_id: int | None = None,
    commit: bool = True,
) -> Purchase:
    """
    Create a purchase with its items and allocate shipping across them.

    items: [{"product_variant_id", "quantity", "cost_price"?, "unit_price"?}]
    cost_price defaults to the variant's cost price, unit_price to cost_price.
    A purchase created directly as completed posts its stock immediately.
    """
    _non_negative_int(shipping_cost, "shipping_cost")
    _non_negative_int(tax_rate, "tax_rate")
    if tax_rate > 100:
        raise validation_error("tax_rate must be between 0 and 100", field="tax_rate", value=tax_rate)
    if status not in PURCHASE_STATUSES or status == PURCHASE_STATUS_CANCELLED:
        raise validation_error(f"Cannot create a purchase as {status!r}", status=status)
    if not items:
        raise validation_error("A purchase needs at least one item")
    try:
        purchased_at = normalize_datetime(purchased_at)
    except ValueError as exc:
        raise validation_error(str(exc), field="purchased_at") from exc

    def _op() -> Purchase:
        if db.session.get(Store, store_id) is None:
            raise not_found("Store", store_id)

        number = order_number
        if number:
            if db.session.query(Purchase.id).filter_by(order_number=number).first():
                raise validation_error(f"Purchase number {number} already exists", order_number=number)
        else:
            number = sequence_service.next_number(current_app.config["PURCHASE_NUMBER_PREFIX"], commit=False)

        purchase = Purchase(
            store_id=store_id,
            order_number=number,
            status=status,
            shipping_cost=shipping_cost,
            purchased_at=purchased_at or utcnow(),
            notes=notes,
            is_tax_inclusive=bool(is_tax_inclusive),
            tax_rate=tax_rate,
            created_by_user_id=user_id,
        )
        purchase.items = [_build_item(payload) for payload in items]
        _apply_costing(purchase)
        db.session.add(purchase)
        db.session.flush()

        if status == PURCHASE_STATUS_COMPLETED:
            _complete_inner(purchase, user_id)

        logger.info(
            "Purchase %s created for store %s (%d items, status=%s)",
            purchase.order_number, store_id, len(purchase.items), purchase.status,
        )
        return purchase

    return run_in_transaction(_op, commit=commit)


def update_status(purchase_id: int, new_status: str, user_id: int | None = None, *, commit: bool = True) -> Purchase:
    """
    Move a purchase along ALLOWED_TRANSITIONS.

    completed posts stock and fulfills linked backorders; cancelled
    compensates anything posted. Both are all-or-nothing.
    """
    def _op() -> Purchase:
        purchase = _load_purchase(purchase_id)
        _check_transition(purchase, new_status)
        previous = purchase.status

        if new_status == PURCHASE_STATUS_COMPLETED:
            _complete_inner(purchase, user_id)
        elif new_status == PURCHASE_STATUS_CANCELLED:
            if purchase.has_posted_stock:
                _unpost_stock(purchase, user_id, note=f"Purchase {purchase.order_number} cancelled")
            purchase.status = PURCHASE_STATUS_CANCELLED
            purchase.cancelled_at = utcnow()
        else:
            if new_status == PURCHASE_STATUS_RECEIVED:
                for item in purchase.items:
                    item.received_quantity = item.quantity
            purchase.status = new_status

        db.session.flush()
        logger.info("Purchase %s: %s -> %s", purchase.order_number, previous, new_status)
        return purchase

    return run_in_transaction(_op, commit=commit)


def complete(purchase_id: int, user_id: int | None = None) -> Purchase:
    return update_status(purchase_id, PURCHASE_STATUS_COMPLETED, user_id)


def cancel(purchase_id: int, user_id: int | None = None) -> Purchase:
    return update_status(purchase_id, PURCHASE_STATUS_CANCELLED, user_id)


def revert_purchase(purchase_id: int, user_id: int | None = None) -> Purchase:
    """
    Undo a completion: completed -> received.

    Linked backorders are un-fulfilled first, then the posted stock is
    debited. If any step fails the purchase, the orders and the ledger are
    left exactly as they were and INVENTORY_OPERATION_FAILED is raised.
    """
    from . import order_service

    def _op() -> Purchase:
        purchase = _load_purchase(purchase_id)
        if purchase.status != PURCHASE_STATUS_COMPLETED:
            raise invalid_transition("purchase", purchase.status, PURCHASE_STATUS_RECEIVED, purchase_id=purchase.id)

        order_service.on_purchase_reverted(purchase, user_id=user_id)
        _unpost_stock(purchase, user_id, note=f"Purchase {purchase.order_number} reverted")
        purchase.status = PURCHASE_STATUS_RECEIVED
        purchase.completed_at = None
        db.session.flush()
        logger.info("Purchase %s reverted to received", purchase.order_number)
        return purchase

    try:
        return run_in_transaction(_op)
    except InventoryError as exc:
        logger.warning("Revert of purchase %s failed: %s", purchase_id, exc.message)
        raise


def receive_items(purchase_id: int, quantities: Mapping[int, int], user_id: int | None = None) -> Purchase:
    """
    Record physically received quantities per purchase item id.

    Moves the purchase to partially_received or received; the ledger is not
    touched until the purchase completes.
    """
    if not quantities:
        raise validation_error("No received quantities given", purchase_id=purchase_id)

    def _op() -> Purchase:
        purchase = _load_purchase(purchase_id)
        if purchase.status not in (PURCHASE_STATUS_IN_TRANSIT, PURCHASE_STATUS_PARTIALLY_RECEIVED):
            raise invalid_transition(
                "purchase", purchase.status, PURCHASE_STATUS_PARTIALLY_RECEIVED, purchase_id=purchase.id
            )

        items_by_id = {item.id: item for item in purchase.items}
        for item_id, quantity in quantities.items():
            item = items_by_id.get(item_id)
            if item is None:
                raise not_found("Purchase item", item_id)
            inventory_service.validate_quantity(quantity, purchase_item_id=item_id)
            if item.received_quantity + quantity > item.quantity:
                raise validation_error(
                    "Received quantity exceeds ordered quantity",
                    purchase_item_id=item_id,
                    ordered=item.quantity,
                    received=item.received_quantity,
                    receiving=quantity,
                )
            item.received_quantity += quantity

        fully_received = all(item.received_quantity >= item.quantity for item in purchase.items)
        new_status = PURCHASE_STATUS_RECEIVED if fully_received else PURCHASE_STATUS_PARTIALLY_RECEIVED
        if new_status != purchase.status:
            _check_transition(purchase, new_status)
            logger.info("Purchase %s: %s -> %s", purchase.order_number, purchase.status, new_status)
            purchase.status = new_status
        db.session.flush()
        return purchase

    return run_in_transaction(_op)


def update_shipping_cost(purchase_id: int, shipping_cost: int) -> Purchase:
    """Change the shipping cost and re-allocate it across the items."""
    _non_negative_int(shipping_cost, "shipping_cost")

    def _op() -> Purchase:
        purchase = _load_purchase(purchase_id)
        if purchase.status not in MODIFIABLE_STATUSES:
            raise InventoryError(
                ErrorCode.INVALID_STATUS_TRANSITION,
                f"Shipping cost cannot be changed on a {purchase.status} purchase",
                purchase_id=purchase.id,
                status=purchase.status,
            )
        purchase.shipping_cost = shipping_cost
        _apply_costing(purchase)
        db.session.flush()
        return purchase

    return run_in_transaction(_op)


def add_purchase_item(
    purchase_id: int,
    payload: Mapping,
    *,
    merge: bool = False,
    commit: bool = True,
) -> PurchaseItem:
    """
    Add a line to a pending/confirmed purchase and re-allocate shipping.

    With merge=True an existing line for the same variant is increased
    instead of adding a second one.
    """
    def _op() -> PurchaseItem:
        purchase = _load_purchase(purchase_id)
        if purchase.status not in ITEM_EDITABLE_STATUSES:
            raise InventoryError(
                ErrorCode.INVALID_STATUS_TRANSITION,
                f"Items cannot be added to a {purchase.status} purchase",
                purchase_id=purchase.id,
                status=purchase.status,
            )

        new_item = _build_item(payload)
        item = None
        if merge:
            item = next(
                (i for i in purchase.items if i.product_variant_id == new_item.product_variant_id),
                None,
            )
        if item is not None:
            item.quantity += new_item.quantity
        else:
            item = new_item
            purchase.items.append(item)

        _apply_costing(purchase)
        db.session.flush()
        return item

    return run_in_transaction(_op, commit=commit)


def change_item_quantity(purchase_item_id: int, delta: int, *, commit: bool = True) -> PurchaseItem:
    """
    Grow or shrink a line by delta and re-allocate shipping.

    Only while items are editable (pending/confirmed); the line must keep a
    positive quantity.
    """
    if isinstance(delta, bool) or not isinstance(delta, int):
        raise invalid_quantity(delta, purchase_item_id=purchase_item_id)

    def _op() -> PurchaseItem:
        item = db.session.get(PurchaseItem, purchase_item_id)
        if item is None:
            raise not_found("Purchase item", purchase_item_id)
        purchase = _load_purchase(item.purchase_id)
        if purchase.status not in ITEM_EDITABLE_STATUSES:
            raise InventoryError(
                ErrorCode.INVALID_STATUS_TRANSITION,
                f"Items of a {purchase.status} purchase cannot change quantity",
                purchase_id=purchase.id,
                purchase_item_id=item.id,
                status=purchase.status,
            )
        new_quantity = item.quantity + delta
        if new_quantity <= 0:
            raise invalid_quantity(new_quantity, purchase_item_id=item.id)
        item.quantity = new_quantity
        _apply_costing(purchase)
        db.session.flush()
        return item

    return run_in_transaction(_op, commit=commit)


def delete_purchase(purchase_id: int, user_id: int | None = None) -> Purchase:
    """
    Soft-delete a purchase. Refused once any stock has been posted.

    Linked backorder items are detached so they can be procured elsewhere.
    """
    def _op() -> Purchase:
        purchase = _load_purchase(purchase_id)
        if purchase.has_posted_stock:
            raise InventoryError(
                ErrorCode.INVENTORY_OPERATION_FAILED,
                f"Purchase {purchase.order_number} has posted stock and cannot be deleted",
                purchase_id=purchase.id,
                status=purchase.status,
            )
        for item in purchase.items:
            for order_item in list(item.order_items):
                order_item.purchase_item = None
        purchase.deleted_at = utcnow()
        db.session.flush()
        logger.info("Purchase %s deleted by user %s", purchase.order_number, user_id)
        return purchase

    return run_in_transaction(_op)


def get_purchase(purchase_id: int) -> Purchase:
    return _load_purchase(purchase_id, lock=False)


def get_purchase_result(purchase_id: int) -> PurchaseResult:
    return PurchaseResult.from_purchase(get_purchase(purchase_id))
