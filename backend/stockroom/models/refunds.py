from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z


class Refund(db.Model):
    """
    Money given back on a paid order, item by item.

    total_refund_amount = SUM(items.refund_subtotal). Refunds are immutable
    once written; a correction is a new refund.
    """
    __tablename__ = "refunds"
    __table_args__ = (
        db.CheckConstraint("total_refund_amount >= 0", name="total_refund_amount_non_negative"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)

    # Minor currency units
    total_refund_amount = db.Column(db.Integer, nullable=False, default=0)

    reason = db.Column(db.String(255), nullable=False)
    notes = db.Column(db.Text, nullable=True)
    should_restock = db.Column(db.Boolean, nullable=False, default=False)
    created_by_user_id = db.Column(db.Integer, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    order = db.relationship("Order")
    items = db.relationship(
        "RefundItem",
        back_populates="refund",
        order_by="RefundItem.id",
        cascade="all, delete-orphan",
    )

    def __repr__(self) -> str:
        return f"<Refund id={self.id} order_id={self.order_id} amount={self.total_refund_amount}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "total_refund_amount": self.total_refund_amount,
            "reason": self.reason,
            "notes": self.notes,
            "should_restock": self.should_restock,
            "created_by_user_id": self.created_by_user_id,
            "created_at": to_utc_z(self.created_at),
            "items": [item.to_dict() for item in self.items],
        }


class RefundItem(db.Model):
    """One refunded order item. restocked_quantity is what went back to stock."""
    __tablename__ = "refund_items"
    __table_args__ = (
        db.CheckConstraint("quantity > 0", name="quantity_positive"),
        db.CheckConstraint(
            "restocked_quantity >= 0 AND restocked_quantity <= quantity",
            name="restocked_quantity_range",
        ),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    refund_id = db.Column(db.Integer, db.ForeignKey("refunds.id"), nullable=False, index=True)
    order_item_id = db.Column(db.Integer, db.ForeignKey("order_items.id"), nullable=False, index=True)

    quantity = db.Column(db.Integer, nullable=False)
    refund_subtotal = db.Column(db.Integer, nullable=False, default=0)
    restocked_quantity = db.Column(db.Integer, nullable=False, default=0)

    refund = db.relationship("Refund", back_populates="items")
    order_item = db.relationship("OrderItem")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "refund_id": self.refund_id,
            "order_item_id": self.order_item_id,
            "quantity": self.quantity,
            "refund_subtotal": self.refund_subtotal,
            "restocked_quantity": self.restocked_quantity,
        }
