from __future__ import annotations

import json

from ..extensions import db
from storefront.time_utils import to_utc_z, cents_to_str


PAYMENT_METHOD_CARD = "card"
PAYMENT_METHOD_BANK_TRANSFER = "bank_transfer"
PAYMENT_METHOD_COD = "cash_on_delivery"

PAYMENT_METHODS = (PAYMENT_METHOD_CARD, PAYMENT_METHOD_BANK_TRANSFER, PAYMENT_METHOD_COD)

PAYMENT_STATUS_PENDING = "pending"
PAYMENT_STATUS_COMPLETED = "completed"
PAYMENT_STATUS_FAILED = "failed"

PAYMENT_TERMINAL_STATUSES = (PAYMENT_STATUS_COMPLETED, PAYMENT_STATUS_FAILED)


class Payment(db.Model):
    """
    One payment ATTEMPT for an order.

    external_id is the gateway session/reference id and the idempotency key
    for webhook processing (unique across all rows).

    Status moves forward once: pending -> completed | failed. A terminal
    payment is immutable. amount_cents and method are fixed at creation.
    """
    __tablename__ = "payments"
    __table_args__ = (
        db.UniqueConstraint("external_id", name="uq_payments_external_id"),
        db.Index("ix_payments_order_status", "order_id", "status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)

    method = db.Column(db.String(32), nullable=False, index=True)
    status = db.Column(db.String(16), nullable=False, default=PAYMENT_STATUS_PENDING, index=True)

    amount_cents = db.Column(db.Integer, nullable=False)
    currency = db.Column(db.String(8), nullable=False, default="LKR")

    external_id = db.Column(db.String(128), nullable=True)
    external_status = db.Column(db.String(64), nullable=True)

    failure_reason = db.Column(db.String(255), nullable=True)
    processed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    # JSON text: gateway-specific payload (masked card info, payment url, ...)
    metadata_json = db.Column("metadata", db.Text, nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    order = db.relationship("Order", backref=db.backref("payments", lazy=True, order_by="Payment.id"))
    __mapper_args__ = {"version_id_col": version_id}

    @property
    def is_terminal(self) -> bool:
        return self.status in PAYMENT_TERMINAL_STATUSES

    @property
    def payment_metadata(self) -> dict:
        if not self.metadata_json:
            return {}
        return json.loads(self.metadata_json)

    def merge_metadata(self, **values) -> None:
        data = self.payment_metadata
        data.update({k: v for k, v in values.items() if v is not None})
        self.metadata_json = json.dumps(data, sort_keys=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "method": self.method,
            "status": self.status,
            "amount_cents": self.amount_cents,
            "amount": cents_to_str(self.amount_cents),
            "currency": self.currency,
            "external_id": self.external_id,
            "external_status": self.external_status,
            "failure_reason": self.failure_reason,
            "processed_at": to_utc_z(self.processed_at),
            "metadata": self.payment_metadata,
            "created_at": to_utc_z(self.created_at),
        }
