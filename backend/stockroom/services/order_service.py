# Overview: Order fulfillment workflow; decides per item whether the ledger is touched.

# backend/stockroom/services/order_service.py
"""
Order fulfillment service.

At creation every item is classified (services.classification) and handled
by its FulfillmentType only:

- STOCK: stock is deducted immediately (order_deduction) and the item is
  fulfilled.
- BACKORDER: nothing is deducted. The item waits for a purchase; when that
  purchase completes, on_purchase_completed() deducts the received stock
  and fulfills the item.
- CUSTOM: no inventory effect. Fulfilled manually (mark_item_fulfilled).

Returning stock (cancel_order / return_order_item):
- STOCK items always return what the customer still holds.
- BACKORDER / CUSTOM items return stock only when fulfilled. An unfulfilled
  backorder never had stock deducted, so crediting it would double-count.

returned_quantity on the item guarantees nothing is credited twice.
"""
from __future__ import annotations

import logging
from collections import OrderedDict
from dataclasses import dataclass
from typing import Iterable, Mapping, Sequence

from flask import current_app

from ..errors import ErrorCode, InventoryError, invalid_transition, not_found, validation_error
from ..extensions import db
from ..models import Order, OrderItem, OrderStatusHistory, ProductVariant, Purchase, Store
from ..models.inventory import REASON_ORDER_DEDUCTION, REASON_ORDER_RETURN, REFERENCE_ORDER
from ..time_utils import utcnow
from . import inventory_service, purchase_service, sequence_service
from .classification import (
    BACKORDER_FLAG,
    STOCKED_FLAG,
    VARIANT_KEY,
    FulfillmentType,
    coerce_flag,
    deducts_inventory_immediately,
    marks_fulfilled_on_create,
)
from .concurrency import lock_for_update, run_in_transaction

logger = logging.getLogger(__name__)

STOCK_POLICY_REJECT = "reject"
STOCK_POLICY_PARTIAL = "partial"
STOCK_POLICIES = frozenset({STOCK_POLICY_REJECT, STOCK_POLICY_PARTIAL})

# Shipping status constants
SHIPPING_STATUS_PENDING = "pending"
SHIPPING_STATUS_PROCESSING = "processing"
SHIPPING_STATUS_SHIPPED = "shipped"
SHIPPING_STATUS_DELIVERED = "delivered"
SHIPPING_STATUS_CANCELLED = "cancelled"

SHIPPING_TRANSITIONS = {
    SHIPPING_STATUS_PENDING: {SHIPPING_STATUS_PROCESSING, SHIPPING_STATUS_SHIPPED, SHIPPING_STATUS_CANCELLED},
    SHIPPING_STATUS_PROCESSING: {SHIPPING_STATUS_SHIPPED, SHIPPING_STATUS_CANCELLED},
    SHIPPING_STATUS_SHIPPED: {SHIPPING_STATUS_DELIVERED},
    SHIPPING_STATUS_DELIVERED: set(),
    SHIPPING_STATUS_CANCELLED: set(),
}

# Payment status constants
PAYMENT_STATUS_PENDING = "pending"
PAYMENT_STATUS_PARTIAL = "partial"
PAYMENT_STATUS_PAID = "paid"
PAYMENT_STATUS_REFUNDED = "refunded"

# OrderStatusHistory.status_type values
HISTORY_SHIPPING = "shipping"
HISTORY_PAYMENT = "payment"
HISTORY_FULFILLMENT = "fulfillment"
HISTORY_REFUND = "refund"

# What a completed purchase does with quantity its linked backorders did not claim
BACKORDER_ALLOCATION_FIFO = "fifo"
BACKORDER_ALLOCATION_OFF = "off"
BACKORDER_ALLOCATION_STRATEGIES = frozenset({BACKORDER_ALLOCATION_FIFO, BACKORDER_ALLOCATION_OFF})

# Orders in these shipping states no longer take backorder stock
CLOSED_SHIPPING_STATUSES = (SHIPPING_STATUS_CANCELLED, SHIPPING_STATUS_DELIVERED)


@dataclass(frozen=True)
class OrderItemResult:
    id: int
    product_variant_id: int | None
    quantity: int
    fulfillment_type: FulfillmentType
    is_fulfilled: bool
    purchase_item_id: int | None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_variant_id": self.product_variant_id,
            "quantity": self.quantity,
            "fulfillment_type": self.fulfillment_type.value,
            "is_fulfilled": self.is_fulfilled,
            "purchase_item_id": self.purchase_item_id,
        }


@dataclass(frozen=True)
class OrderResult:
    id: int
    order_number: str
    shipping_status: str
    payment_status: str
    grand_total: int
    items: tuple[OrderItemResult, ...]
    stock_failures: tuple[dict, ...] = ()

    @property
    def is_partial(self) -> bool:
        return bool(self.stock_failures)

    @classmethod
    def from_order(cls, order: Order, stock_failures: Iterable[dict] = ()) -> "OrderResult":
        return cls(
            id=order.id,
            order_number=order.order_number,
            shipping_status=order.shipping_status,
            payment_status=order.payment_status,
            grand_total=order.grand_total,
            items=tuple(
                OrderItemResult(
                    id=item.id,
                    product_variant_id=item.product_variant_id,
                    quantity=item.quantity,
                    fulfillment_type=item.fulfillment_type,
                    is_fulfilled=item.is_fulfilled,
                    purchase_item_id=item.purchase_item_id,
                )
                for item in order.items
            ),
            stock_failures=tuple(stock_failures),
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_number": self.order_number,
            "shipping_status": self.shipping_status,
            "payment_status": self.payment_status,
            "grand_total": self.grand_total,
            "items": [item.to_dict() for item in self.items],
            "stock_failures": list(self.stock_failures),
            "is_partial": self.is_partial,
        }


@dataclass(frozen=True)
class BackorderAllocation:
    order_item_id: int
    order_id: int
    order_number: str
    quantity: int

    def to_dict(self) -> dict:
        return {
            "order_item_id": self.order_item_id,
            "order_id": self.order_id,
            "order_number": self.order_number,
            "quantity": self.quantity,
        }


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _non_negative_int(value, field: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise validation_error(f"{field} must be a non-negative integer", field=field, value=value)
    return value


def _load_order(order_id: int, *, lock: bool = True) -> Order:
    query = db.session.query(Order).filter_by(id=order_id)
    if lock:
        query = lock_for_update(query)
    order = query.first()
    if order is None:
        raise not_found("Order", order_id)
    return order


def _load_item(order_item_id: int) -> OrderItem:
    item = lock_for_update(db.session.query(OrderItem).filter_by(id=order_item_id)).first()
    if item is None:
        raise not_found("Order item", order_item_id)
    return item


def record_history(
    order: Order,
    status_type: str,
    from_status: str | None,
    to_status: str,
    *,
    notes: str | None = None,
    user_id: int | None = None,
) -> OrderStatusHistory:
    entry = OrderStatusHistory(
        status_type=status_type,
        from_status=from_status,
        to_status=to_status,
        notes=notes,
        user_id=user_id,
    )
    order.status_histories.append(entry)
    return entry


def _ensure_open(order: Order) -> None:
    if order.is_cancelled:
        raise InventoryError(
            ErrorCode.INVALID_STATUS_TRANSITION,
            f"Order {order.order_number} is cancelled",
            order_id=order.id,
            status=order.shipping_status,
        )


def recalculate_totals(order: Order) -> Order:
    """subtotal from the items; grand_total = subtotal + shipping + tax - discount."""
    order.subtotal = sum(item.price * item.quantity for item in order.items)
    order.grand_total = max(0, order.subtotal + order.shipping_fee + order.tax - order.discount_amount)
    return order


def _raw_flag(attributes: Mapping, key: str) -> bool | None:
    # NULL keeps "not supplied" distinguishable from an explicit false.
    value = attributes.get(key)
    return None if value is None else coerce_flag(value)


def _build_item(payload: Mapping) -> OrderItem:
    raw_variant_id = payload.get(VARIANT_KEY)
    product_variant_id = raw_variant_id if coerce_flag(raw_variant_id) else None

    variant = None
    if product_variant_id is not None:
        variant = db.session.get(ProductVariant, product_variant_id)
        if variant is None:
            raise not_found("Product variant", product_variant_id)

    quantity = inventory_service.validate_quantity(payload.get("quantity"), product_variant_id=product_variant_id)
    price = _non_negative_int(payload.get("price", variant.price if variant else 0), "price")
    cost = _non_negative_int(payload.get("cost", variant.cost_price if variant else 0), "cost")

    item = OrderItem(
        product_variant_id=product_variant_id,
        sku=payload.get("sku") or (variant.sku if variant else None),
        product_name=payload.get("product_name") or (variant.name if variant else None),
        quantity=quantity,
        price=price,
        cost=cost,
        is_stocked_sale=_raw_flag(payload, STOCKED_FLAG),
        is_backorder=_raw_flag(payload, BACKORDER_FLAG),
        is_fulfilled=False,
        fulfilled_quantity=0,
        returned_quantity=0,
    )
    return item


def _deduct(order: Order, item: OrderItem, quantity: int, user_id: int | None, note: str | None = None) -> None:
    inventory_service.decrement(
        item.product_variant_id,
        order.store_id,
        quantity,
        REASON_ORDER_DEDUCTION,
        reference_type=REFERENCE_ORDER,
        reference_id=order.id,
        actor_user_id=user_id,
        note=note or f"Order {order.order_number}",
        commit=False,
    )


def _credit(order: Order, item: OrderItem, quantity: int, user_id: int | None, note: str | None = None) -> None:
    inventory_service.increment(
        item.product_variant_id,
        order.store_id,
        quantity,
        REASON_ORDER_RETURN,
        reference_type=REFERENCE_ORDER,
        reference_id=order.id,
        actor_user_id=user_id,
        note=note or f"Order {order.order_number} return",
        commit=False,
    )


def _mark_fulfilled(item: OrderItem) -> None:
    item.is_fulfilled = True
    item.fulfilled_quantity = item.quantity
    item.fulfilled_at = utcnow()


def returns_inventory(item: OrderItem) -> bool:
    """
    True when stock was deducted for this item and must come back on
    cancel/return.
    """
    if item.product_variant_id is None:
        return False
    if deducts_inventory_immediately(item.fulfillment_type):
        return True
    return bool(item.is_fulfilled)


def _attach_to_purchase(order: Order, item: OrderItem, purchase_id: int) -> None:
    purchase = db.session.get(Purchase, purchase_id)
    if purchase is None or purchase.deleted_at is not None:
        raise not_found("Purchase", purchase_id)
    if purchase.store_id != order.store_id:
        raise validation_error(
            "Backorders can only be attached to a purchase for the same store",
            purchase_id=purchase_id,
            order_id=order.id,
        )
    purchase_item = purchase_service.add_purchase_item(
        purchase_id,
        {
            "product_variant_id": item.product_variant_id,
            "quantity": item.quantity,
            "cost_price": item.cost,
        },
        merge=True,
        commit=False,
    )
    item.purchase_item = purchase_item


# ---------------------------------------------------------------------------
# Creation
# ---------------------------------------------------------------------------

def _deduct_on_create(order: Order, item: OrderItem, policy: str, user_id: int | None) -> dict | None:
    """
    Deduct a stock item at order creation.

    Under the partial policy a shortfall turns the item into an unfulfilled
    backorder and the error is returned instead of raised.
    """
    if policy == STOCK_POLICY_REJECT:
        _deduct(order, item, item.quantity, user_id)
        return None

    try:
        with db.session.begin_nested():
            _deduct(order, item, item.quantity, user_id)
    except InventoryError as exc:
        if exc.code is not ErrorCode.INSUFFICIENT_STOCK:
            raise
        item.is_stocked_sale = False
        item.is_backorder = True
        return exc.to_dict()
    return None


def create_order(
    store_id: int,
    items: Sequence[Mapping],
    *,
    order_number: str | None = None,
    shipping_fee: int = 0,
    tax: int = 0,
    discount_amount: int = 0,
    notes: str | None = None,
    purchase_id: int | None = None,
    stock_policy: str | None = None,
    user_id: int | None = None,
) -> OrderResult:
    """
    Create an order and apply each item's fulfillment rule.

    stock_policy (default: ORDER_STOCK_FAILURE_POLICY):
    - "reject": any stock item that cannot be deducted fails the whole
      order with INSUFFICIENT_STOCK; nothing is persisted.
    - "partial": such items are kept as unfulfilled backorders and listed
      in OrderResult.stock_failures.

    purchase_id attaches the order's backorder items to that purchase.
    """
    policy = stock_policy or current_app.config.get("ORDER_STOCK_FAILURE_POLICY", STOCK_POLICY_REJECT)
    if policy not in STOCK_POLICIES:
        raise validation_error(f"Unknown stock failure policy: {policy!r}", stock_policy=policy)
    if not items:
        raise validation_error("An order needs at least one item")
    for field, value in (("shipping_fee", shipping_fee), ("tax", tax), ("discount_amount", discount_amount)):
        _non_negative_int(value, field)

    def _op() -> OrderResult:
        if db.session.get(Store, store_id) is None:
            raise not_found("Store", store_id)

        number = order_number
        if number:
            if db.session.query(Order.id).filter_by(order_number=number).first():
                raise validation_error(f"Order number {number} already exists", order_number=number)
        else:
            number = sequence_service.next_number(current_app.config["ORDER_NUMBER_PREFIX"], commit=False)

        order = Order(
            store_id=store_id,
            order_number=number,
            shipping_status=SHIPPING_STATUS_PENDING,
            payment_status=PAYMENT_STATUS_PENDING,
            shipping_fee=shipping_fee,
            tax=tax,
            discount_amount=discount_amount,
            notes=notes,
            created_by_user_id=user_id,
        )
        order.items = [_build_item(payload) for payload in items]
        db.session.add(order)
        db.session.flush()

        inventory_service.lock_records(
            (item.product_variant_id, store_id)
            for item in order.items
            if deducts_inventory_immediately(item.fulfillment_type)
        )

        failures = []
        for index, item in enumerate(order.items):
            if deducts_inventory_immediately(item.fulfillment_type):
                failure = _deduct_on_create(order, item, policy, user_id)
                if failure is None:
                    if marks_fulfilled_on_create(item.fulfillment_type):
                        _mark_fulfilled(item)
                    continue
                failures.append({"index": index, "order_item_id": item.id, **failure})
            if item.fulfillment_type is FulfillmentType.BACKORDER and purchase_id is not None:
                _attach_to_purchase(order, item, purchase_id)

        recalculate_totals(order)
        record_history(order, HISTORY_SHIPPING, None, SHIPPING_STATUS_PENDING, notes="Order created", user_id=user_id)
        db.session.flush()

        if failures:
            logger.warning(
                "Order %s created with %d stock item(s) converted to backorder",
                order.order_number, len(failures),
            )
        logger.info("Order %s created for store %s (%d items)", order.order_number, store_id, len(order.items))
        return OrderResult.from_order(order, failures)

    return run_in_transaction(_op)


# ---------------------------------------------------------------------------
# Cancellation and returns
# ---------------------------------------------------------------------------

def cancel_order(order_id: int, user_id: int | None = None, reason: str | None = None) -> Order:
    """
    Cancel an order and credit back every item whose stock was deducted.

    Unfulfilled backorder / custom items have no ledger effect.
    """
    def _op() -> Order:
        order = _load_order(order_id)
        previous = order.shipping_status
        if SHIPPING_STATUS_CANCELLED not in SHIPPING_TRANSITIONS[previous]:
            raise invalid_transition("order", previous, SHIPPING_STATUS_CANCELLED, order_id=order.id)

        inventory_service.lock_records(
            (item.product_variant_id, order.store_id) for item in order.items if returns_inventory(item)
        )
        for item in order.items:
            outstanding = item.outstanding_quantity
            if returns_inventory(item) and outstanding > 0:
                _credit(order, item, outstanding, user_id, note=f"Order {order.order_number} cancelled")
                item.returned_quantity = item.quantity

        order.shipping_status = SHIPPING_STATUS_CANCELLED
        order.cancelled_at = utcnow()
        record_history(order, HISTORY_SHIPPING, previous, SHIPPING_STATUS_CANCELLED, notes=reason, user_id=user_id)
        db.session.flush()
        logger.info("Order %s cancelled", order.order_number)
        return order

    return run_in_transaction(_op)


def return_order_item(order_item_id: int, quantity: int | None = None, user_id: int | None = None) -> OrderItem:
    """
    Return (part of) one item to stock.

    Only items whose stock was deducted can be returned, and never more than
    the customer still holds.
    """
    def _op() -> OrderItem:
        item = _load_item(order_item_id)
        order = item.order
        _ensure_open(order)

        if not returns_inventory(item):
            raise validation_error(
                "Item has no deducted stock to return",
                order_item_id=item.id,
                fulfillment_type=item.fulfillment_type.value,
                is_fulfilled=item.is_fulfilled,
            )

        amount = item.outstanding_quantity if quantity is None else quantity
        inventory_service.validate_quantity(amount, order_item_id=item.id)
        if amount > item.outstanding_quantity:
            raise validation_error(
                "Return quantity exceeds what the customer holds",
                order_item_id=item.id,
                requested=amount,
                outstanding=item.outstanding_quantity,
            )

        _credit(order, item, amount, user_id)
        item.returned_quantity += amount
        record_history(
            order, HISTORY_FULFILLMENT, None, "returned",
            notes=f"Item {item.id}: {amount} returned", user_id=user_id,
        )
        db.session.flush()
        return item

    return run_in_transaction(_op)


# ---------------------------------------------------------------------------
# Purchase callbacks (run inside the purchase transaction)
# ---------------------------------------------------------------------------

def _linked_items(purchase: Purchase) -> list[OrderItem]:
    return [order_item for purchase_item in purchase.items for order_item in purchase_item.order_items]


def _fill_backorder(purchase: Purchase, item: OrderItem, user_id: int | None) -> None:
    order = item.order
    try:
        _deduct(order, item, item.quantity, user_id, note=f"Backorder filled by purchase {purchase.order_number}")
    except InventoryError as exc:
        if exc.code is not ErrorCode.INSUFFICIENT_STOCK:
            raise
        raise InventoryError(
            ErrorCode.INVENTORY_OPERATION_FAILED,
            f"Purchase {purchase.order_number} cannot cover backorder item {item.id}",
            purchase_id=purchase.id,
            order_item_id=item.id,
            **exc.context,
        ) from exc
    _mark_fulfilled(item)
    record_history(
        order, HISTORY_FULFILLMENT, None, "fulfilled",
        notes=f"Item {item.id} fulfilled by purchase {purchase.order_number}", user_id=user_id,
    )


def _pending_backorders(product_variant_id: int, store_id: int, *, lock: bool = False) -> list[OrderItem]:
    """Open, unlinked backorders for one variant in one store, oldest first."""
    query = (
        db.session.query(OrderItem)
        .join(Order, Order.id == OrderItem.order_id)
        .filter(
            OrderItem.product_variant_id == product_variant_id,
            OrderItem.purchase_item_id.is_(None),
            OrderItem.is_fulfilled.is_(False),
            Order.store_id == store_id,
            Order.shipping_status.notin_(CLOSED_SHIPPING_STATUSES),
        )
        .order_by(OrderItem.created_at.asc(), OrderItem.id.asc())
    )
    if lock:
        query = lock_for_update(query)
    return [item for item in query.all() if item.fulfillment_type is FulfillmentType.BACKORDER]


def _plan_allocation(candidates: Iterable[OrderItem], available: int) -> list[OrderItem]:
    """
    Whole items only, in queue order. An item larger than what is left is
    skipped and later, smaller items may still be served.
    """
    plan = []
    for item in candidates:
        if item.quantity <= available:
            plan.append(item)
            available -= item.quantity
    return plan


def _allocation_strategy() -> str:
    strategy = current_app.config.get("BACKORDER_ALLOCATION_STRATEGY", BACKORDER_ALLOCATION_FIFO)
    if strategy not in BACKORDER_ALLOCATION_STRATEGIES:
        raise validation_error(f"Unknown backorder allocation strategy: {strategy!r}", strategy=strategy)
    return strategy


def _allocate_surplus(purchase: Purchase, user_id: int | None) -> list[OrderItem]:
    """Hand each line's unclaimed quantity to pending backorders (FIFO)."""
    if _allocation_strategy() == BACKORDER_ALLOCATION_OFF:
        return []

    allocated = []
    for line in purchase.items:
        claimed = sum(
            item.quantity
            for item in line.order_items
            if item.is_fulfilled and item.fulfillment_type is FulfillmentType.BACKORDER
        )
        surplus = line.quantity - claimed
        if surplus <= 0:
            continue
        candidates = _pending_backorders(line.product_variant_id, purchase.store_id, lock=True)
        for item in _plan_allocation(candidates, surplus):
            # Linked like any attached backorder; revert_purchase covers it.
            item.purchase_item = line
            _fill_backorder(purchase, item, user_id)
            allocated.append(item)
        db.session.flush()
    return allocated


def on_purchase_completed(purchase: Purchase, user_id: int | None = None) -> list[OrderItem]:
    """
    Fulfill backorders from a just-completed purchase.

    Linked backorder items are filled first. Whatever a line received beyond
    them goes to open backorders for the same variant and store, oldest
    first (BACKORDER_ALLOCATION_STRATEGY). The received stock each item
    consumes is deducted here, which keeps the later return rule balanced.
    """
    fulfilled = []
    for item in _linked_items(purchase):
        if item.is_fulfilled or item.order.is_cancelled or item.fulfillment_type is not FulfillmentType.BACKORDER:
            continue
        _fill_backorder(purchase, item, user_id)
        fulfilled.append(item)

    allocated = _allocate_surplus(purchase, user_id)
    if fulfilled or allocated:
        logger.info(
            "Purchase %s fulfilled %d linked and %d allocated backorder item(s)",
            purchase.order_number, len(fulfilled), len(allocated),
        )
    return fulfilled + allocated


def simulate_allocation(product_variant_id: int, store_id: int, available_quantity: int) -> list[BackorderAllocation]:
    """Which pending backorders available_quantity would fill, without changing anything."""
    if isinstance(available_quantity, bool) or not isinstance(available_quantity, int) or available_quantity < 0:
        raise validation_error("available_quantity must be a non-negative integer", available_quantity=available_quantity)
    return [
        BackorderAllocation(
            order_item_id=item.id,
            order_id=item.order_id,
            order_number=item.order.order_number,
            quantity=item.quantity,
        )
        for item in _plan_allocation(_pending_backorders(product_variant_id, store_id), available_quantity)
    ]


def on_purchase_reverted(purchase: Purchase, user_id: int | None = None) -> list[OrderItem]:
    """
    Undo on_purchase_completed for a purchase being reverted.

    Items the customer has already (partly) returned cannot be un-fulfilled.
    """
    reverted = []
    for item in _linked_items(purchase):
        if not item.is_fulfilled or item.fulfillment_type is not FulfillmentType.BACKORDER:
            continue
        order = item.order
        if item.returned_quantity:
            raise InventoryError(
                ErrorCode.INVENTORY_OPERATION_FAILED,
                f"Backorder item {item.id} has already been returned; purchase "
                f"{purchase.order_number} cannot be reverted",
                purchase_id=purchase.id,
                order_item_id=item.id,
                returned_quantity=item.returned_quantity,
            )
        _credit(order, item, item.quantity, user_id, note=f"Purchase {purchase.order_number} reverted")
        item.is_fulfilled = False
        item.fulfilled_quantity = 0
        item.fulfilled_at = None
        record_history(
            order, HISTORY_FULFILLMENT, "fulfilled", "pending",
            notes=f"Item {item.id}: purchase {purchase.order_number} reverted", user_id=user_id,
        )
        reverted.append(item)
    return reverted


# ---------------------------------------------------------------------------
# Backorder procurement
# ---------------------------------------------------------------------------

def _open_backorder(item: OrderItem, store_id: int | None = None) -> bool:
    return (
        item.fulfillment_type is FulfillmentType.BACKORDER
        and not item.is_fulfilled
        and item.purchase_item_id is None
        and not item.order.is_cancelled
        and (store_id is None or item.order.store_id == store_id)
    )


def attach_backorders_to_purchase(purchase_id: int, order_item_ids: Sequence[int], user_id: int | None = None) -> list[OrderItem]:
    """Link open backorder items to an existing purchase, growing its lines."""
    if not order_item_ids:
        raise validation_error("No order items given")

    def _op() -> list[OrderItem]:
        attached = []
        for order_item_id in order_item_ids:
            item = _load_item(order_item_id)
            if not _open_backorder(item):
                raise validation_error(
                    "Only open, unlinked backorder items can be attached",
                    order_item_id=item.id,
                )
            _attach_to_purchase(item.order, item, purchase_id)
            attached.append(item)
        db.session.flush()
        logger.info("Attached %d backorder item(s) to purchase %s", len(attached), purchase_id)
        return attached

    return run_in_transaction(_op)


def create_purchase_for_backorders(
    store_id: int,
    order_item_ids: Sequence[int] | None = None,
    *,
    shipping_cost: int = 0,
    user_id: int | None = None,
) -> Purchase:
    """
    Open one purchase covering open backorders in a store.

    Without order_item_ids every open, unlinked backorder in the store is
    collected. Quantities are grouped per variant.
    """
    def _op() -> Purchase:
        if order_item_ids:
            candidates = [_load_item(order_item_id) for order_item_id in order_item_ids]
            for item in candidates:
                if not _open_backorder(item, store_id):
                    raise validation_error(
                        "Only open, unlinked backorder items of this store can be procured",
                        order_item_id=item.id,
                    )
        else:
            candidates = [
                item
                for item in lock_for_update(
                    db.session.query(OrderItem)
                    .join(Order, Order.id == OrderItem.order_id)
                    .filter(
                        Order.store_id == store_id,
                        OrderItem.product_variant_id.isnot(None),
                        OrderItem.purchase_item_id.is_(None),
                        OrderItem.is_fulfilled.is_(False),
                    )
                    .order_by(OrderItem.id)
                ).all()
                if _open_backorder(item, store_id)
            ]
        if not candidates:
            raise validation_error("No open backorders to procure", store_id=store_id)

        grouped: OrderedDict[int, dict] = OrderedDict()
        for item in candidates:
            line = grouped.setdefault(
                item.product_variant_id,
                {"product_variant_id": item.product_variant_id, "quantity": 0, "cost_price": item.cost},
            )
            line["quantity"] += item.quantity

        purchase = purchase_service.create_purchase(
            store_id,
            list(grouped.values()),
            shipping_cost=shipping_cost,
            notes="Backorder procurement",
            user_id=user_id,
            commit=False,
        )
        lines_by_variant = {line.product_variant_id: line for line in purchase.items}
        for item in candidates:
            item.purchase_item = lines_by_variant[item.product_variant_id]
        db.session.flush()
        logger.info("Purchase %s opened for %d backorder item(s)", purchase.order_number, len(candidates))
        return purchase

    return run_in_transaction(_op)


def mark_item_fulfilled(order_item_id: int, user_id: int | None = None) -> OrderItem:
    """Mark a custom item as produced/delivered. No ledger effect."""
    def _op() -> OrderItem:
        item = _load_item(order_item_id)
        _ensure_open(item.order)
        if item.fulfillment_type is not FulfillmentType.CUSTOM:
            raise validation_error(
                "Only custom items are fulfilled manually",
                order_item_id=item.id,
                fulfillment_type=item.fulfillment_type.value,
            )
        if item.is_fulfilled:
            raise validation_error("Item is already fulfilled", order_item_id=item.id)
        _mark_fulfilled(item)
        record_history(item.order, HISTORY_FULFILLMENT, None, "fulfilled", notes=f"Item {item.id}", user_id=user_id)
        db.session.flush()
        return item

    return run_in_transaction(_op)


def update_item_quantity(order_item_id: int, new_quantity: int, user_id: int | None = None) -> OrderItem:
    """
    Change an item's quantity.

    Stock items deduct or return the difference. Fulfilled backorder /
    custom items are frozen. A backorder linked to a purchase moves its
    purchase line by the same amount, which is only possible while that
    purchase's items are editable.
    """
    inventory_service.validate_quantity(new_quantity, order_item_id=order_item_id)

    def _op() -> OrderItem:
        item = _load_item(order_item_id)
        order = item.order
        _ensure_open(order)
        delta = new_quantity - item.quantity
        if delta == 0:
            return item

        if deducts_inventory_immediately(item.fulfillment_type):
            if new_quantity < item.returned_quantity:
                raise validation_error(
                    "Quantity cannot drop below what was already returned",
                    order_item_id=item.id,
                    returned_quantity=item.returned_quantity,
                )
            if item.is_fulfilled:
                if delta > 0:
                    _deduct(order, item, delta, user_id, note=f"Order {order.order_number} quantity change")
                else:
                    _credit(order, item, -delta, user_id, note=f"Order {order.order_number} quantity change")
                item.fulfilled_quantity = new_quantity
        elif item.is_fulfilled:
            raise validation_error(
                "Fulfilled backorder/custom items cannot change quantity",
                order_item_id=item.id,
            )
        elif item.purchase_item_id is not None:
            purchase_service.change_item_quantity(item.purchase_item_id, delta, commit=False)

        item.quantity = new_quantity
        recalculate_totals(order)
        db.session.flush()
        return item

    return run_in_transaction(_op)


# ---------------------------------------------------------------------------
# Payment and shipping
# ---------------------------------------------------------------------------

def _set_payment_status(order: Order, new_status: str, user_id: int | None, notes: str | None = None) -> None:
    if order.payment_status != new_status:
        record_history(order, HISTORY_PAYMENT, order.payment_status, new_status, notes=notes, user_id=user_id)
        order.payment_status = new_status
    if new_status == PAYMENT_STATUS_PAID and order.paid_at is None:
        order.paid_at = utcnow()


def record_payment(order_id: int, amount: int, user_id: int | None = None) -> Order:
    """Add a payment; status becomes partial or paid."""
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise validation_error("amount must be a positive integer", amount=amount)

    def _op() -> Order:
        order = _load_order(order_id)
        _ensure_open(order)
        order.paid_amount += amount
        status = PAYMENT_STATUS_PAID if order.paid_amount >= order.grand_total else PAYMENT_STATUS_PARTIAL
        _set_payment_status(order, status, user_id, notes=f"Payment of {amount}")
        db.session.flush()
        return order

    return run_in_transaction(_op)


def confirm_payment(order_id: int, user_id: int | None = None) -> Order:
    """Mark the order as fully paid."""
    def _op() -> Order:
        order = _load_order(order_id)
        _ensure_open(order)
        order.paid_amount = max(order.paid_amount, order.grand_total)
        _set_payment_status(order, PAYMENT_STATUS_PAID, user_id, notes="Payment confirmed")
        db.session.flush()
        return order

    return run_in_transaction(_op)


def update_shipping_status(order_id: int, new_status: str, user_id: int | None = None, notes: str | None = None) -> Order:
    """
    Move the order along SHIPPING_TRANSITIONS. Cancellation goes through
    cancel_order() so stock is returned.
    """
    if new_status == SHIPPING_STATUS_CANCELLED:
        return cancel_order(order_id, user_id=user_id, reason=notes)

    def _op() -> Order:
        order = _load_order(order_id)
        previous = order.shipping_status
        if new_status not in SHIPPING_TRANSITIONS.get(previous, set()):
            raise invalid_transition("order", previous, new_status, order_id=order.id)
        order.shipping_status = new_status
        if new_status == SHIPPING_STATUS_SHIPPED and order.shipped_at is None:
            order.shipped_at = utcnow()
        record_history(order, HISTORY_SHIPPING, previous, new_status, notes=notes, user_id=user_id)
        db.session.flush()
        return order

    return run_in_transaction(_op)


def create_shipment(
    order_id: int,
    carrier: str,
    tracking_number: str | None = None,
    user_id: int | None = None,
) -> Order:
    """Record carrier/tracking and mark the order shipped."""
    if not carrier:
        raise validation_error("carrier is required")

    def _op() -> Order:
        order = _load_order(order_id)
        previous = order.shipping_status
        if SHIPPING_STATUS_SHIPPED not in SHIPPING_TRANSITIONS.get(previous, set()):
            raise invalid_transition("order", previous, SHIPPING_STATUS_SHIPPED, order_id=order.id)
        order.carrier = carrier
        order.tracking_number = tracking_number
        order.shipping_status = SHIPPING_STATUS_SHIPPED
        order.shipped_at = utcnow()
        record_history(
            order, HISTORY_SHIPPING, previous, SHIPPING_STATUS_SHIPPED,
            notes=f"{carrier} {tracking_number or ''}".strip(), user_id=user_id,
        )
        db.session.flush()
        logger.info("Order %s shipped via %s", order.order_number, carrier)
        return order

    return run_in_transaction(_op)


def get_order(order_id: int) -> Order:
    return _load_order(order_id, lock=False)


def get_order_result(order_id: int) -> OrderResult:
    return OrderResult.from_order(get_order(order_id))


def get_status_history(order_id: int) -> list[OrderStatusHistory]:
    return list(get_order(order_id).status_histories)
