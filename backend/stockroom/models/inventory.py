from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z


# Transaction reasons
REASON_PURCHASE_RECEIPT = "purchase_receipt"
REASON_ORDER_DEDUCTION = "order_deduction"
REASON_ORDER_RETURN = "order_return"
REASON_TRANSFER_OUT = "transfer_out"
REASON_TRANSFER_IN = "transfer_in"
REASON_MANUAL_ADJUSTMENT = "manual_adjustment"

TRANSACTION_REASONS = frozenset({
    REASON_PURCHASE_RECEIPT,
    REASON_ORDER_DEDUCTION,
    REASON_ORDER_RETURN,
    REASON_TRANSFER_OUT,
    REASON_TRANSFER_IN,
    REASON_MANUAL_ADJUSTMENT,
})

# Polymorphic reference types
REFERENCE_PURCHASE = "purchase"
REFERENCE_ORDER = "order"
REFERENCE_TRANSFER = "transfer"


class InventoryRecord(db.Model):
    """
    On-hand quantity for one (variant, store) pair.

    INVARIANTS:
    - quantity >= 0 after every committed transaction (also a CHECK constraint).
    - quantity == SUM(InventoryTransaction.quantity_delta) for this record.
    - quantity is only written by inventory_service; workflows never assign it.
    - Records are created lazily and never deleted (zero rows stay for audit).
    """
    __tablename__ = "inventory_records"
    __table_args__ = (
        db.UniqueConstraint("product_variant_id", "store_id", name="uq_inventory_records_variant_store"),
        db.CheckConstraint("quantity >= 0", name="quantity_non_negative"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    product_variant_id = db.Column(db.Integer, db.ForeignKey("product_variants.id"), nullable=False, index=True)
    store_id = db.Column(db.Integer, db.ForeignKey("stores.id"), nullable=False, index=True)

    quantity = db.Column(db.Integer, nullable=False, default=0)
    low_stock_threshold = db.Column(db.Integer, nullable=False, default=0)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    product_variant = db.relationship("ProductVariant")
    store = db.relationship("Store")
    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return (
            f"<InventoryRecord variant={self.product_variant_id} "
            f"store={self.store_id} quantity={self.quantity}>"
        )

    @property
    def is_low_stock(self) -> bool:
        return self.low_stock_threshold > 0 and self.quantity <= self.low_stock_threshold

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_variant_id": self.product_variant_id,
            "store_id": self.store_id,
            "quantity": self.quantity,
            "low_stock_threshold": self.low_stock_threshold,
            "is_low_stock": self.is_low_stock,
            "version_id": self.version_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class InventoryTransaction(db.Model):
    """
    Append-only stock movement log entry.

    reference_type/reference_id point at the aggregate that caused the
    movement (purchase, order, transfer); both are NULL for manual
    adjustments. Rows are never updated or deleted.
    """
    __tablename__ = "inventory_transactions"
    __table_args__ = (
        db.Index("ix_invtx_record_created", "record_id", "created_at"),
        db.Index("ix_invtx_reference", "reference_type", "reference_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    record_id = db.Column(db.Integer, db.ForeignKey("inventory_records.id"), nullable=False, index=True)

    # Denormalized from the record for reporting queries
    product_variant_id = db.Column(db.Integer, nullable=False, index=True)
    store_id = db.Column(db.Integer, nullable=False, index=True)

    quantity_delta = db.Column(db.Integer, nullable=False)
    quantity_after = db.Column(db.Integer, nullable=False)

    reason = db.Column(db.String(32), nullable=False, index=True)

    reference_type = db.Column(db.String(32), nullable=True)
    reference_id = db.Column(db.Integer, nullable=True)

    actor_user_id = db.Column(db.Integer, nullable=True)
    note = db.Column(db.String(255), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    record = db.relationship("InventoryRecord", backref=db.backref("transactions", lazy="dynamic"))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "record_id": self.record_id,
            "product_variant_id": self.product_variant_id,
            "store_id": self.store_id,
            "quantity_delta": self.quantity_delta,
            "quantity_after": self.quantity_after,
            "reason": self.reason,
            "reference_type": self.reference_type,
            "reference_id": self.reference_id,
            "actor_user_id": self.actor_user_id,
            "note": self.note,
            "created_at": to_utc_z(self.created_at),
        }


class SequenceCounter(db.Model):
    """
    Per-scope document counter.

    scope is "<PREFIX>:<YYYYMMDD>"; last_value is the last number handed out.
    Rows are only touched with an atomic UPDATE ... SET last_value = last_value + n.
    """
    __tablename__ = "sequence_counters"
    __table_args__ = (
        db.UniqueConstraint("scope", name="uq_sequence_counters_scope"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    scope = db.Column(db.String(64), nullable=False)
    last_value = db.Column(db.Integer, nullable=False, default=0)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "scope": self.scope,
            "last_value": self.last_value,
            "updated_at": to_utc_z(self.updated_at),
        }
