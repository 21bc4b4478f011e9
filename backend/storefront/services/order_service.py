# Overview: Service-layer operations for orders; status state machine, cancellation, listings and the abandoned-order sweep.

"""
Storefront Order Lifecycle Service

================================================================================
PURPOSE: Enforce the order status graph and keep stock in step with it
================================================================================

STATE MACHINE:
    draft           -> pending_payment, cancelled
    pending_payment -> paid, cancelled
    paid            -> processing, cancelled
    processing      -> packing, cancelled
    packing         -> shipped, cancelled
    shipped         -> delivered
    delivered       -> refunded
    cancelled       -> (terminal)
    refunded        -> (terminal)

RULES (NON-NEGOTIABLE):
1. Any edge not listed raises InvalidStatusTransition and mutates nothing.
2. Every transition writes exactly one OrderStatusHistory row in the same
   transaction as the status update.
3. The status is re-read under a row lock; a transition is validated
   against the committed status, never a stale copy.
4. Stock follows status:
   - -> paid       settle the order's reservation (re-reserving if released)
   - -> cancelled  release a reservation, or return already-sold units
5. shipped / delivered notifications are sent after commit and can never
   roll a status change back.

Customer cancellation is only offered while the order is early
(draft, pending_payment, paid).
================================================================================
"""

from __future__ import annotations

from datetime import timedelta

from flask import current_app
from sqlalchemy import func

from ..extensions import db
from ..errors import (
    ConflictError,
    InvalidStatusTransition,
    NotFoundError,
    ValidationError,
)
from ..models import Order, OrderItem, OrderStatusHistory, ProductImage
from ..models.orders import (
    ORDER_STATUS_CANCELLED,
    ORDER_STATUS_DELIVERED,
    ORDER_STATUS_DRAFT,
    ORDER_STATUS_PACKING,
    ORDER_STATUS_PAID,
    ORDER_STATUS_PENDING_PAYMENT,
    ORDER_STATUS_PROCESSING,
    ORDER_STATUS_REFUNDED,
    ORDER_STATUS_SHIPPED,
    ORDER_STATUSES,
)
from ..time_utils import parse_iso_datetime, utcnow
from . import inventory_service, notification_service
from .concurrency import lock_for_update, run_with_retry
from .query_filters import Filter, apply_filters, paginate


VALID_TRANSITIONS: dict[str, tuple[str, ...]] = {
    ORDER_STATUS_DRAFT: (ORDER_STATUS_PENDING_PAYMENT, ORDER_STATUS_CANCELLED),
    ORDER_STATUS_PENDING_PAYMENT: (ORDER_STATUS_PAID, ORDER_STATUS_CANCELLED),
    ORDER_STATUS_PAID: (ORDER_STATUS_PROCESSING, ORDER_STATUS_CANCELLED),
    ORDER_STATUS_PROCESSING: (ORDER_STATUS_PACKING, ORDER_STATUS_CANCELLED),
    ORDER_STATUS_PACKING: (ORDER_STATUS_SHIPPED, ORDER_STATUS_CANCELLED),
    ORDER_STATUS_SHIPPED: (ORDER_STATUS_DELIVERED,),
    ORDER_STATUS_DELIVERED: (ORDER_STATUS_REFUNDED,),
    ORDER_STATUS_CANCELLED: (),
    ORDER_STATUS_REFUNDED: (),
}

CUSTOMER_CANCELLABLE = (ORDER_STATUS_DRAFT, ORDER_STATUS_PENDING_PAYMENT, ORDER_STATUS_PAID)

CUSTOMER_CANCEL_REJECTED = "This order cannot be cancelled. Please contact support."

ABANDONABLE = (ORDER_STATUS_DRAFT, ORDER_STATUS_PENDING_PAYMENT)

_NOTIFIERS = {
    ORDER_STATUS_SHIPPED: notification_service.send_order_shipped_email,
    ORDER_STATUS_DELIVERED: notification_service.send_order_delivered_email,
}


# =============================================================================
# STATE MACHINE
# =============================================================================

def can_transition(from_status: str, to_status: str) -> bool:
    return to_status in VALID_TRANSITIONS.get(from_status, ())


def get_allowed_transitions(status: str) -> list[str]:
    return list(VALID_TRANSITIONS.get(status, ()))


def lock_order(order_id: int) -> Order:
    order = lock_for_update(db.session.query(Order).filter_by(id=order_id)).first()
    if order is None:
        raise NotFoundError("Order not found")
    return order


def add_history(order: Order, *, from_status: str | None, to_status: str,
                notes: str | None = None, actor_user_id: int | None = None) -> OrderStatusHistory:
    row = OrderStatusHistory(
        order_id=order.id,
        from_status=from_status,
        to_status=to_status,
        notes=notes,
        changed_by_user_id=actor_user_id,
    )
    db.session.add(row)
    return row


def transition_locked(
    order: Order,
    to_status: str,
    *,
    notes: str | None = None,
    actor_user_id: int | None = None,
) -> OrderStatusHistory:
    """
    Move a locked order along one edge of the graph. Does NOT commit.

    Stock effects run before the status flips so an InsufficientStock on
    settlement leaves the order exactly where it was.
    """
    if to_status not in ORDER_STATUSES:
        raise ValidationError(f"Invalid status: {to_status}")

    from_status = order.status
    if not can_transition(from_status, to_status):
        raise InvalidStatusTransition(from_status, to_status)

    if to_status == ORDER_STATUS_PAID:
        inventory_service.settle_order_lines(order, actor_user_id=actor_user_id)
    elif to_status == ORDER_STATUS_CANCELLED:
        inventory_service.restore_order_stock(order, actor_user_id=actor_user_id)

    order.status = to_status
    history = add_history(
        order,
        from_status=from_status,
        to_status=to_status,
        notes=notes,
        actor_user_id=actor_user_id,
    )
    db.session.flush()
    return history


def _notify(order: Order, status: str) -> None:
    notifier = _NOTIFIERS.get(status)
    if notifier is not None:
        notifier(order)


def transition_order_status(
    order_id: int,
    to_status: str,
    *,
    notes: str | None = None,
    actor_user_id: int | None = None,
) -> Order:
    """Staff status change: one transaction, then best-effort notification."""
    def _op():
        order = lock_order(order_id)
        transition_locked(order, to_status, notes=notes, actor_user_id=actor_user_id)
        db.session.commit()
        return order

    order = run_with_retry(_op)
    _notify(order, to_status)
    return order


# =============================================================================
# CUSTOMER OPERATIONS
# =============================================================================

def _require_owner(order: Order, user_id: int) -> None:
    if order.user_id is None or order.user_id != user_id:
        # Same answer as "missing" so order ids cannot be probed
        raise NotFoundError("Order not found")


def cancel_customer_order(order_id: int, *, user_id: int, reason: str | None = None) -> Order:
    def _op():
        order = lock_order(order_id)
        _require_owner(order, user_id)
        if order.status not in CUSTOMER_CANCELLABLE:
            raise ConflictError(CUSTOMER_CANCEL_REJECTED)
        transition_locked(
            order,
            ORDER_STATUS_CANCELLED,
            notes=reason or "Cancelled by customer",
            actor_user_id=user_id,
        )
        db.session.commit()
        return order

    return run_with_retry(_op)


def update_admin_notes(order_id: int, admin_notes: str | None) -> Order:
    if admin_notes is not None and not isinstance(admin_notes, str):
        raise ValidationError("admin_notes must be a string")

    def _op():
        order = lock_order(order_id)
        order.admin_notes = (admin_notes or "").strip() or None
        db.session.commit()
        return order

    return run_with_retry(_op)


# =============================================================================
# READ MODELS
# =============================================================================

def primary_image_map(product_ids) -> dict[int, str]:
    """
    product_id -> image url, preferring the primary image.

    Built once per listing so every order is matched to ITS product's image.
    """
    ids = {pid for pid in product_ids if pid is not None}
    if not ids:
        return {}
    images = (
        db.session.query(ProductImage)
        .filter(ProductImage.product_id.in_(ids))
        .order_by(ProductImage.product_id, ProductImage.is_primary.desc(), ProductImage.id.asc())
        .all()
    )
    result: dict[int, str] = {}
    for image in images:
        result.setdefault(image.product_id, image.url)
    return result


def _first_items(order_ids: list[int]) -> dict[int, OrderItem]:
    if not order_ids:
        return {}
    rows = (
        db.session.query(OrderItem)
        .filter(OrderItem.order_id.in_(order_ids))
        .order_by(OrderItem.order_id, OrderItem.id)
        .all()
    )
    first: dict[int, OrderItem] = {}
    for row in rows:
        first.setdefault(row.order_id, row)
    return first


def _item_counts(order_ids: list[int]) -> dict[int, int]:
    if not order_ids:
        return {}
    rows = (
        db.session.query(OrderItem.order_id, func.count(OrderItem.id))
        .filter(OrderItem.order_id.in_(order_ids))
        .group_by(OrderItem.order_id)
        .all()
    )
    return {order_id: int(count) for order_id, count in rows}


def _summaries(orders: list[Order], *, include_admin: bool = False) -> list[dict]:
    order_ids = [o.id for o in orders]
    first_items = _first_items(order_ids)
    counts = _item_counts(order_ids)
    images = primary_image_map(item.product_id for item in first_items.values())

    result = []
    for order in orders:
        data = order.to_dict(include_admin=include_admin)
        first = first_items.get(order.id)
        data["item_count"] = counts.get(order.id, 0)
        data["first_item"] = None
        if first is not None:
            data["first_item"] = {
                "product_name": first.product_name,
                "variant_name": first.variant_name,
                "image_url": images.get(first.product_id),
            }
        result.append(data)
    return result


def order_detail(order: Order, *, include_admin: bool = False) -> dict:
    data = order.to_dict(include_admin=include_admin)
    images = primary_image_map(item.product_id for item in order.items)
    data["items"] = []
    for item in order.items:
        row = item.to_dict()
        row["image_url"] = images.get(item.product_id)
        data["items"].append(row)
    data["status_history"] = [h.to_dict() for h in order.status_history]
    data["payments"] = [p.to_dict() for p in order.payments]
    data["allowed_transitions"] = get_allowed_transitions(order.status)
    data["can_cancel"] = order.status in CUSTOMER_CANCELLABLE
    return data


def list_customer_orders(user_id: int, *, page: int = 1, limit: int = 10) -> tuple[list[dict], dict]:
    query = (
        db.session.query(Order)
        .filter(Order.user_id == user_id)
        .order_by(Order.created_at.desc(), Order.id.desc())
    )
    orders, pagination = paginate(query, page=page, limit=limit)
    return _summaries(orders), pagination


def get_customer_order(order_id: int, *, user_id: int) -> dict:
    order = db.session.query(Order).filter_by(id=order_id).first()
    if order is None:
        raise NotFoundError("Order not found")
    _require_owner(order, user_id)
    return order_detail(order)


def get_order_timeline(order_id: int, *, user_id: int | None = None) -> list[dict]:
    order = db.session.query(Order).filter_by(id=order_id).first()
    if order is None:
        raise NotFoundError("Order not found")
    if user_id is not None:
        _require_owner(order, user_id)
    return [h.to_dict() for h in order.status_history]


ORDER_FIELDS = {
    "status": Order.status,
    "search": (Order.order_number, Order.customer_email, Order.customer_name),
    "created_at": Order.created_at,
    "user_id": Order.user_id,
}


def build_admin_order_filters(
    *,
    status: str | None = None,
    search: str | None = None,
    date_from: str | None = None,
    date_to: str | None = None,
) -> list[Filter]:
    filters: list[Filter] = []
    if status and status != "all":
        if status not in ORDER_STATUSES:
            raise ValidationError(f"Invalid status: {status}")
        filters.append(Filter("status", "eq", status))
    if search:
        filters.append(Filter("search", "ilike", search.strip()))
    try:
        start = parse_iso_datetime(date_from)
        end = parse_iso_datetime(date_to)
    except ValueError:
        raise ValidationError("date_from / date_to must be ISO-8601 datetimes")
    if start is not None:
        filters.append(Filter("created_at", "gte", start))
    if end is not None:
        filters.append(Filter("created_at", "lte", end))
    return filters


def list_admin_orders(filters: list[Filter], *, page: int = 1, limit: int = 20) -> tuple[list[dict], dict]:
    query = apply_filters(db.session.query(Order), filters, ORDER_FIELDS)
    query = query.order_by(Order.created_at.desc(), Order.id.desc())
    orders, pagination = paginate(query, page=page, limit=limit)
    return _summaries(orders, include_admin=True), pagination


def get_admin_order(order_id: int) -> dict:
    order = db.session.query(Order).filter_by(id=order_id).first()
    if order is None:
        raise NotFoundError("Order not found")
    return order_detail(order, include_admin=True)


def get_order_stats() -> dict:
    rows = (
        db.session.query(Order.status, func.count(Order.id), func.coalesce(func.sum(Order.total_cents), 0))
        .group_by(Order.status)
        .all()
    )
    by_status = {status: {"count": 0, "total_cents": 0} for status in ORDER_STATUSES}
    for status, count, total in rows:
        by_status[status] = {"count": int(count), "total_cents": int(total)}
    return {
        "by_status": by_status,
        "total_orders": sum(v["count"] for v in by_status.values()),
    }


# =============================================================================
# ABANDONED-ORDER SWEEP
# =============================================================================

def find_abandoned_orders(older_than_hours: int) -> list[Order]:
    cutoff = utcnow() - timedelta(hours=older_than_hours)
    return (
        db.session.query(Order)
        .filter(Order.status.in_(ABANDONABLE), Order.created_at < cutoff)
        .order_by(Order.id.asc())
        .all()
    )


def reap_abandoned_orders(older_than_hours: int | None = None, *, dry_run: bool = False) -> list[str]:
    """
    Cancel draft / pending_payment orders older than the cutoff.

    Cancelling releases whatever reservation the order still holds. Each
    order is reaped in its own transaction; an order that was paid between
    the scan and the lock is skipped (the locked re-check sees paid).
    """
    if older_than_hours is None:
        older_than_hours = current_app.config.get("AUTO_CANCEL_PENDING_ORDERS_HOURS", 48)
    if older_than_hours < 1:
        raise ValidationError("older_than_hours must be at least 1")

    candidates = [o.id for o in find_abandoned_orders(older_than_hours)]
    if dry_run:
        return [o.order_number for o in db.session.query(Order).filter(Order.id.in_(candidates)).all()]

    reaped = []
    for order_id in candidates:
        def _op(order_id=order_id):
            order = lock_order(order_id)
            if order.status not in ABANDONABLE:
                return None
            transition_locked(
                order,
                ORDER_STATUS_CANCELLED,
                notes=f"Automatically cancelled after {older_than_hours}h without payment",
            )
            db.session.commit()
            return order.order_number

        number = run_with_retry(_op)
        if number:
            current_app.logger.info("Reaped abandoned order %s", number)
            reaped.append(number)
    return reaped
