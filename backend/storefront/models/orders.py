from __future__ import annotations

from ..extensions import db
from storefront.time_utils import to_utc_z, cents_to_str


ORDER_STATUS_DRAFT = "draft"
ORDER_STATUS_PENDING_PAYMENT = "pending_payment"
ORDER_STATUS_PAID = "paid"
ORDER_STATUS_PROCESSING = "processing"
ORDER_STATUS_PACKING = "packing"
ORDER_STATUS_SHIPPED = "shipped"
ORDER_STATUS_DELIVERED = "delivered"
ORDER_STATUS_CANCELLED = "cancelled"
ORDER_STATUS_REFUNDED = "refunded"

ORDER_STATUSES = (
    ORDER_STATUS_DRAFT,
    ORDER_STATUS_PENDING_PAYMENT,
    ORDER_STATUS_PAID,
    ORDER_STATUS_PROCESSING,
    ORDER_STATUS_PACKING,
    ORDER_STATUS_SHIPPED,
    ORDER_STATUS_DELIVERED,
    ORDER_STATUS_CANCELLED,
    ORDER_STATUS_REFUNDED,
)

# Where the order's stock currently stands in the ledger
STOCK_NONE = "none"
STOCK_RESERVED = "reserved"
STOCK_RELEASED = "released"
STOCK_SETTLED = "settled"
STOCK_RETURNED = "returned"


class Order(db.Model):
    """
    Customer order (document with lifecycle).

    Money is stored in cents. INVARIANT:
        total_cents == subtotal_cents + shipping_cost_cents + tax_amount_cents - discount_amount_cents

    Customer identity and both addresses are snapshots taken at checkout and
    are never re-read from the customer's profile.

    NEVER hard-deleted: cancelled and refunded are terminal statuses.
    """
    __tablename__ = "orders"
    __table_args__ = (
        db.UniqueConstraint("order_number", name="uq_orders_order_number"),
        db.Index("ix_orders_status_created", "status", "created_at"),
        db.Index("ix_orders_customer_email", "customer_email"),
        db.CheckConstraint(
            "total_cents = subtotal_cents + shipping_cost_cents + tax_amount_cents - discount_amount_cents",
            name="ck_orders_total_identity",
        ),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_number = db.Column(db.String(64), nullable=False)

    # Null for guest checkout
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True, index=True)

    status = db.Column(db.String(32), nullable=False, default=ORDER_STATUS_DRAFT, index=True)
    stock_state = db.Column(db.String(16), nullable=False, default=STOCK_NONE)

    subtotal_cents = db.Column(db.Integer, nullable=False)
    shipping_cost_cents = db.Column(db.Integer, nullable=False, default=0)
    tax_amount_cents = db.Column(db.Integer, nullable=False, default=0)
    discount_amount_cents = db.Column(db.Integer, nullable=False, default=0)
    total_cents = db.Column(db.Integer, nullable=False)

    shipping_method = db.Column(db.String(16), nullable=False, default="standard")

    # Customer snapshot
    customer_email = db.Column(db.String(255), nullable=False)
    customer_phone = db.Column(db.String(64), nullable=True)
    customer_name = db.Column(db.String(255), nullable=True)

    shipping_address = db.Column(db.JSON, nullable=True)
    billing_address = db.Column(db.JSON, nullable=True)

    notes = db.Column(db.Text, nullable=True)
    admin_notes = db.Column(db.Text, nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    user = db.relationship("User", backref=db.backref("orders", lazy=True))
    items = db.relationship("OrderItem", back_populates="order", lazy=True, order_by="OrderItem.id")
    __mapper_args__ = {"version_id_col": version_id}

    def totals_balance(self) -> bool:
        return self.total_cents == (
            self.subtotal_cents
            + self.shipping_cost_cents
            + self.tax_amount_cents
            - self.discount_amount_cents
        )

    def to_dict(self, *, include_admin: bool = False) -> dict:
        data = {
            "id": self.id,
            "order_number": self.order_number,
            "user_id": self.user_id,
            "status": self.status,
            "subtotal_cents": self.subtotal_cents,
            "shipping_cost_cents": self.shipping_cost_cents,
            "tax_amount_cents": self.tax_amount_cents,
            "discount_amount_cents": self.discount_amount_cents,
            "total_cents": self.total_cents,
            "total": cents_to_str(self.total_cents),
            "shipping_method": self.shipping_method,
            "customer_email": self.customer_email,
            "customer_phone": self.customer_phone,
            "customer_name": self.customer_name,
            "shipping_address": self.shipping_address,
            "billing_address": self.billing_address,
            "notes": self.notes,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
        if include_admin:
            data["admin_notes"] = self.admin_notes
            data["stock_state"] = self.stock_state
            data["version_id"] = self.version_id
        return data


class OrderItem(db.Model):
    """
    Line item snapshot. product_name / variant_name / sku / unit price are
    copied at order creation so later catalog edits never alter history.
    variant_id is operational linkage only (inventory settlement).
    """
    __tablename__ = "order_items"
    __table_args__ = (
        db.CheckConstraint("quantity > 0", name="ck_order_items_quantity_positive"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    variant_id = db.Column(db.Integer, db.ForeignKey("product_variants.id"), nullable=True, index=True)
    # Kept for keyed image lookups on order listings
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=True)

    product_name = db.Column(db.String(255), nullable=False)
    variant_name = db.Column(db.String(255), nullable=False)
    sku = db.Column(db.String(64), nullable=False)

    quantity = db.Column(db.Integer, nullable=False)
    unit_price_cents = db.Column(db.Integer, nullable=False)
    subtotal_cents = db.Column(db.Integer, nullable=False)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    order = db.relationship("Order", back_populates="items")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "variant_id": self.variant_id,
            "product_id": self.product_id,
            "product_name": self.product_name,
            "variant_name": self.variant_name,
            "sku": self.sku,
            "quantity": self.quantity,
            "unit_price_cents": self.unit_price_cents,
            "subtotal_cents": self.subtotal_cents,
        }


class OrderStatusHistory(db.Model):
    """
    Append-only audit trail of order status changes.

    changed_by_user_id NULL means system-initiated (webhook, sweep).
    from_status == to_status is a note on the current status (e.g. a failed
    payment attempt) rather than a transition.
    IMMUTABLE: Records are never updated or deleted.
    """
    __tablename__ = "order_status_history"
    __table_args__ = (
        db.Index("ix_order_status_history_order_created", "order_id", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    from_status = db.Column(db.String(32), nullable=True)
    to_status = db.Column(db.String(32), nullable=False)
    notes = db.Column(db.Text, nullable=True)
    changed_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    order = db.relationship("Order", backref=db.backref("status_history", lazy=True, order_by="OrderStatusHistory.id"))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "from_status": self.from_status,
            "to_status": self.to_status,
            "notes": self.notes,
            "changed_by_user_id": self.changed_by_user_id,
            "created_at": to_utc_z(self.created_at),
        }
