from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z


class Purchase(db.Model):
    """
    Purchase order from a supplier into one store.

    LIFECYCLE (see purchase_service.ALLOWED_TRANSITIONS):
    pending -> confirmed -> in_transit -> received -> completed
    in_transit -> partially_received -> received/completed
    pending/confirmed/in_transit -> cancelled

    Stock is posted to the ledger only when the purchase completes.
    Soft-deleted via deleted_at; rows referenced by inventory transactions
    are never hard-deleted.
    """
    __tablename__ = "purchases"
    __table_args__ = (
        db.UniqueConstraint("order_number", name="uq_purchases_order_number"),
        db.CheckConstraint("shipping_cost >= 0", name="shipping_cost_non_negative"),
        db.CheckConstraint("tax_rate >= 0 AND tax_rate <= 100", name="tax_rate_range"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    store_id = db.Column(db.Integer, db.ForeignKey("stores.id"), nullable=False, index=True)
    order_number = db.Column(db.String(64), nullable=False)

    status = db.Column(db.String(32), nullable=False, default="pending", index=True)

    # Minor currency units
    shipping_cost = db.Column(db.Integer, nullable=False, default=0)
    total_amount = db.Column(db.Integer, nullable=False, default=0)

    is_tax_inclusive = db.Column(db.Boolean, nullable=False, default=False)
    tax_rate = db.Column(db.Integer, nullable=False, default=0)

    purchased_at = db.Column(db.DateTime(timezone=True), nullable=True)
    notes = db.Column(db.Text, nullable=True)

    created_by_user_id = db.Column(db.Integer, nullable=True)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    cancelled_at = db.Column(db.DateTime(timezone=True), nullable=True)
    deleted_at = db.Column(db.DateTime(timezone=True), nullable=True)

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
        "PurchaseItem",
        back_populates="purchase",
        order_by="PurchaseItem.id",
        cascade="all, delete-orphan",
    )
    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<Purchase id={self.id} number={self.order_number!r} status={self.status}>"

    @property
    def items_subtotal(self) -> int:
        return sum(item.subtotal for item in self.items)

    @property
    def has_posted_stock(self) -> bool:
        return any(item.posted_quantity for item in self.items)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "store_id": self.store_id,
            "order_number": self.order_number,
            "status": self.status,
            "shipping_cost": self.shipping_cost,
            "total_amount": self.total_amount,
            "is_tax_inclusive": self.is_tax_inclusive,
            "tax_rate": self.tax_rate,
            "purchased_at": to_utc_z(self.purchased_at),
            "notes": self.notes,
            "created_by_user_id": self.created_by_user_id,
            "completed_at": to_utc_z(self.completed_at),
            "cancelled_at": to_utc_z(self.cancelled_at),
            "deleted_at": to_utc_z(self.deleted_at),
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
            "items": [item.to_dict() for item in self.items],
        }


class PurchaseItem(db.Model):
    """
    One purchased variant line.

    total_cost_price = quantity * cost_price + allocated_shipping_cost.
    received_quantity tracks what the store has physically counted in;
    posted_quantity tracks what has been credited to the ledger.
    """
    __tablename__ = "purchase_items"
    __table_args__ = (
        db.CheckConstraint("quantity > 0", name="quantity_positive"),
        db.CheckConstraint("posted_quantity >= 0", name="posted_quantity_non_negative"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    purchase_id = db.Column(db.Integer, db.ForeignKey("purchases.id"), nullable=False, index=True)
    product_variant_id = db.Column(db.Integer, db.ForeignKey("product_variants.id"), nullable=False, index=True)

    quantity = db.Column(db.Integer, nullable=False)
    unit_price = db.Column(db.Integer, nullable=False, default=0)
    cost_price = db.Column(db.Integer, nullable=False, default=0)
    allocated_shipping_cost = db.Column(db.Integer, nullable=False, default=0)
    total_cost_price = db.Column(db.Integer, nullable=False, default=0)

    received_quantity = db.Column(db.Integer, nullable=False, default=0)
    posted_quantity = db.Column(db.Integer, nullable=False, default=0)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    purchase = db.relationship("Purchase", back_populates="items")
    product_variant = db.relationship("ProductVariant")
    order_items = db.relationship("OrderItem", back_populates="purchase_item", order_by="OrderItem.id")

    @property
    def subtotal(self) -> int:
        return self.quantity * self.cost_price

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "purchase_id": self.purchase_id,
            "product_variant_id": self.product_variant_id,
            "quantity": self.quantity,
            "unit_price": self.unit_price,
            "cost_price": self.cost_price,
            "allocated_shipping_cost": self.allocated_shipping_cost,
            "total_cost_price": self.total_cost_price,
            "received_quantity": self.received_quantity,
            "posted_quantity": self.posted_quantity,
            "order_item_ids": [oi.id for oi in self.order_items],
        }
