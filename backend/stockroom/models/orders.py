from __future__ import annotations

from ..extensions import db
from ..services.classification import FulfillmentType, classify_item
from ..time_utils import to_utc_z


class Order(db.Model):
    """
    Customer order placed against one store.

    Totals are derived: subtotal = SUM(item.price * item.quantity) and
    grand_total = subtotal + shipping_fee + tax - discount_amount.
    order_service.recalculate_totals is the only writer of both.
    """
    __tablename__ = "orders"
    __table_args__ = (
        db.UniqueConstraint("order_number", name="uq_orders_order_number"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    store_id = db.Column(db.Integer, db.ForeignKey("stores.id"), nullable=False, index=True)
    order_number = db.Column(db.String(64), nullable=False)

    # pending, processing, shipped, delivered, cancelled
    shipping_status = db.Column(db.String(32), nullable=False, default="pending", index=True)
    # pending, partial, paid, refunded
    payment_status = db.Column(db.String(32), nullable=False, default="pending", index=True)

    # Minor currency units
    subtotal = db.Column(db.Integer, nullable=False, default=0)
    shipping_fee = db.Column(db.Integer, nullable=False, default=0)
    tax = db.Column(db.Integer, nullable=False, default=0)
    discount_amount = db.Column(db.Integer, nullable=False, default=0)
    grand_total = db.Column(db.Integer, nullable=False, default=0)
    paid_amount = db.Column(db.Integer, nullable=False, default=0)

    carrier = db.Column(db.String(64), nullable=True)
    tracking_number = db.Column(db.String(128), nullable=True)
    shipped_at = db.Column(db.DateTime(timezone=True), nullable=True)
    paid_at = db.Column(db.DateTime(timezone=True), nullable=True)
    cancelled_at = db.Column(db.DateTime(timezone=True), nullable=True)

    notes = db.Column(db.Text, nullable=True)
    created_by_user_id = db.Column(db.Integer, nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    store = db.relationship("Store")
    items = db.relationship(
        "OrderItem",
        back_populates="order",
        order_by="OrderItem.id",
        cascade="all, delete-orphan",
    )
    status_histories = db.relationship(
        "OrderStatusHistory",
        back_populates="order",
        order_by="OrderStatusHistory.id",
        cascade="all, delete-orphan",
    )
    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<Order id={self.id} number={self.order_number!r} status={self.shipping_status}>"

    @property
    def is_cancelled(self) -> bool:
        return self.shipping_status == "cancelled"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "store_id": self.store_id,
            "order_number": self.order_number,
            "shipping_status": self.shipping_status,
            "payment_status": self.payment_status,
            "subtotal": self.subtotal,
            "shipping_fee": self.shipping_fee,
            "tax": self.tax,
            "discount_amount": self.discount_amount,
            "grand_total": self.grand_total,
            "paid_amount": self.paid_amount,
            "carrier": self.carrier,
            "tracking_number": self.tracking_number,
            "shipped_at": to_utc_z(self.shipped_at),
            "paid_at": to_utc_z(self.paid_at),
            "cancelled_at": to_utc_z(self.cancelled_at),
            "notes": self.notes,
            "created_by_user_id": self.created_by_user_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
            "items": [item.to_dict() for item in self.items],
        }


class OrderItem(db.Model):
    """
    One order line.

    is_stocked_sale / is_backorder keep the disposition exactly as supplied
    (NULL = not supplied); fulfillment_type is derived from them on read.
    """
    __tablename__ = "order_items"
    __table_args__ = (
        db.CheckConstraint("quantity > 0", name="quantity_positive"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    product_variant_id = db.Column(db.Integer, db.ForeignKey("product_variants.id"), nullable=True, index=True)

    sku = db.Column(db.String(64), nullable=True)
    product_name = db.Column(db.String(255), nullable=True)

    quantity = db.Column(db.Integer, nullable=False)
    price = db.Column(db.Integer, nullable=False, default=0)
    cost = db.Column(db.Integer, nullable=False, default=0)

    is_stocked_sale = db.Column(db.Boolean, nullable=True)
    is_backorder = db.Column(db.Boolean, nullable=True)

    is_fulfilled = db.Column(db.Boolean, nullable=False, default=False)
    fulfilled_quantity = db.Column(db.Integer, nullable=False, default=0)
    fulfilled_at = db.Column(db.DateTime(timezone=True), nullable=True)
    returned_quantity = db.Column(db.Integer, nullable=False, default=0)

    purchase_item_id = db.Column(db.Integer, db.ForeignKey("purchase_items.id"), nullable=True, index=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    order = db.relationship("Order", back_populates="items")
    product_variant = db.relationship("ProductVariant")
    purchase_item = db.relationship("PurchaseItem", back_populates="order_items")

    @property
    def fulfillment_type(self) -> FulfillmentType:
        attributes = {"product_variant_id": self.product_variant_id}
        if self.is_stocked_sale is not None:
            attributes["is_stocked_sale"] = self.is_stocked_sale
        if self.is_backorder is not None:
            attributes["is_backorder"] = self.is_backorder
        return classify_item(attributes)

    @property
    def outstanding_quantity(self) -> int:
        """Quantity still held by the customer (not yet returned)."""
        return self.quantity - self.returned_quantity

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "product_variant_id": self.product_variant_id,
            "sku": self.sku,
            "product_name": self.product_name,
            "quantity": self.quantity,
            "price": self.price,
            "cost": self.cost,
            "fulfillment_type": self.fulfillment_type.value,
            "is_fulfilled": self.is_fulfilled,
            "fulfilled_quantity": self.fulfilled_quantity,
            "fulfilled_at": to_utc_z(self.fulfilled_at),
            "returned_quantity": self.returned_quantity,
            "purchase_item_id": self.purchase_item_id,
        }


class OrderStatusHistory(db.Model):
    """Audit trail of order status changes (shipping, payment, fulfillment)."""
    __tablename__ = "order_status_histories"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)

    status_type = db.Column(db.String(32), nullable=False)
    from_status = db.Column(db.String(32), nullable=True)
    to_status = db.Column(db.String(32), nullable=False)
    notes = db.Column(db.Text, nullable=True)
    user_id = db.Column(db.Integer, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    order = db.relationship("Order", back_populates="status_histories")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "status_type": self.status_type,
            "from_status": self.from_status,
            "to_status": self.to_status,
            "notes": self.notes,
            "user_id": self.user_id,
            "created_at": to_utc_z(self.created_at),
        }
