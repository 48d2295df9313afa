from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z


class InventoryTransfer(db.Model):
    """
    Store-to-store stock movement.

    LIFECYCLE:
    1. pending: created, lines being added (no ledger effect)
    2. in_transit: shipped, source store debited (transfer_out)
    3. completed: received, destination store credited (transfer_in)
    4. cancelled: from pending (no effect) or in_transit (source credited back)
    """
    __tablename__ = "inventory_transfers"
    __table_args__ = (
        db.UniqueConstraint("transfer_number", name="uq_inventory_transfers_transfer_number"),
        db.CheckConstraint("from_store_id <> to_store_id", name="distinct_stores"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    transfer_number = db.Column(db.String(64), nullable=False)

    from_store_id = db.Column(db.Integer, db.ForeignKey("stores.id"), nullable=False, index=True)
    to_store_id = db.Column(db.Integer, db.ForeignKey("stores.id"), nullable=False, index=True)

    status = db.Column(db.String(16), nullable=False, default="pending", index=True)
    notes = db.Column(db.Text, nullable=True)

    created_by_user_id = db.Column(db.Integer, nullable=True)
    cancellation_reason = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )
    shipped_at = db.Column(db.DateTime(timezone=True), nullable=True)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    cancelled_at = db.Column(db.DateTime(timezone=True), nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    from_store = db.relationship("Store", foreign_keys=[from_store_id])
    to_store = db.relationship("Store", foreign_keys=[to_store_id])
    lines = db.relationship(
        "InventoryTransferLine",
        back_populates="transfer",
        order_by="InventoryTransferLine.id",
        cascade="all, delete-orphan",
    )
    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "transfer_number": self.transfer_number,
            "from_store_id": self.from_store_id,
            "to_store_id": self.to_store_id,
            "status": self.status,
            "notes": self.notes,
            "created_by_user_id": self.created_by_user_id,
            "cancellation_reason": self.cancellation_reason,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
            "shipped_at": to_utc_z(self.shipped_at),
            "completed_at": to_utc_z(self.completed_at),
            "cancelled_at": to_utc_z(self.cancelled_at),
            "version_id": self.version_id,
        }


class InventoryTransferLine(db.Model):
    """One variant/quantity pair on a transfer."""
    __tablename__ = "inventory_transfer_lines"
    __table_args__ = (
        db.UniqueConstraint("transfer_id", "product_variant_id", name="uq_transfer_lines_transfer_variant"),
        db.CheckConstraint("quantity > 0", name="quantity_positive"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    transfer_id = db.Column(db.Integer, db.ForeignKey("inventory_transfers.id"), nullable=False, index=True)
    product_variant_id = db.Column(db.Integer, db.ForeignKey("product_variants.id"), nullable=False)
    quantity = db.Column(db.Integer, nullable=False)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    transfer = db.relationship("InventoryTransfer", back_populates="lines")
    product_variant = db.relationship("ProductVariant")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "transfer_id": self.transfer_id,
            "product_variant_id": self.product_variant_id,
            "quantity": self.quantity,
            "created_at": to_utc_z(self.created_at),
        }
