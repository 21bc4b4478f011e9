# Overview: Service-layer operations for payment; encapsulates business logic and database work.

"""
Payment Processing Service

WHY: An order is paid by card (hosted gateway page), bank transfer (staff
verify the proof) or cash on delivery (staff record collection). Each
attempt is its own Payment row.

DESIGN PRINCIPLES:
- One Payment per attempt; a retry creates a new row.
- Status moves forward once: pending -> completed | failed. A terminal
  payment is never touched again (PaymentStateError).
- complete_payment_locked / fail_payment_locked are the ONLY places that
  finish a payment. The webhook, the pull-based verify, bank transfer
  verification and COD collection all go through them, so Payment, Order
  and Inventory always change together in one transaction.
- No DB locks are held while talking to the gateway: the session is
  requested between two short transactions.
"""

from __future__ import annotations

import secrets
from dataclasses import dataclass

from flask import current_app

from ..extensions import db
from ..errors import GatewayError, NotFoundError, PaymentStateError
from ..models import Order, Payment
from ..models.orders import (
    ORDER_STATUS_CANCELLED,
    ORDER_STATUS_DRAFT,
    ORDER_STATUS_PAID,
    ORDER_STATUS_PENDING_PAYMENT,
    STOCK_RESERVED,
)
from ..models.payments import (
    PAYMENT_METHOD_BANK_TRANSFER,
    PAYMENT_METHOD_CARD,
    PAYMENT_METHOD_COD,
    PAYMENT_METHODS,
    PAYMENT_STATUS_COMPLETED,
    PAYMENT_STATUS_FAILED,
    PAYMENT_STATUS_PENDING,
)
from ..time_utils import utcnow
from . import inventory_service, order_service
from .concurrency import lock_for_update, run_with_retry
from .gateway_client import get_gateway_client
from .query_filters import Filter, apply_filters, paginate


# External reference prefixes for payments that never see the gateway
BANK_TRANSFER_PREFIX = "bt"
COD_PREFIX = "cod"

OUTCOME_PAID = "paid"
OUTCOME_RECORDED = "recorded"
OUTCOME_STOCK_UNAVAILABLE = "stock_unavailable"
OUTCOME_MANUAL_REVIEW = "manual_review"


@dataclass
class CardSession:
    payment_id: int
    session_id: str
    payment_url: str
    expires_at: str | None = None


def new_reference(prefix: str) -> str:
    return f"{prefix}_{secrets.token_hex(10)}"


# =============================================================================
# PAYMENT CREATION
# =============================================================================

def create_payment_locked(order: Order, method: str, *, external_id: str | None = None) -> Payment:
    """New pending attempt for the order's full total. Does NOT commit."""
    if method not in PAYMENT_METHODS:
        raise PaymentStateError(f"Unsupported payment method: {method}")
    payment = Payment(
        order_id=order.id,
        method=method,
        status=PAYMENT_STATUS_PENDING,
        amount_cents=order.total_cents,
        currency=current_app.config.get("PAYMENT_CURRENCY", "LKR"),
        external_id=external_id,
    )
    db.session.add(payment)
    db.session.flush()
    return payment


def lock_payment(payment_id: int) -> Payment:
    payment = lock_for_update(db.session.query(Payment).filter_by(id=payment_id)).first()
    if payment is None:
        raise NotFoundError("Payment not found")
    return payment


def lock_payment_by_external_id(external_id: str) -> Payment | None:
    return lock_for_update(db.session.query(Payment).filter_by(external_id=external_id)).first()


def _require_pending(payment: Payment) -> None:
    if payment.status != PAYMENT_STATUS_PENDING:
        raise PaymentStateError(f"Payment has already been {payment.status}")


def _other_payments(payment: Payment, status: str) -> bool:
    """Whether another attempt on the same order is in the given status."""
    return db.session.query(Payment.id).filter(
        Payment.order_id == payment.order_id,
        Payment.id != payment.id,
        Payment.status == status,
    ).first() is not None


# =============================================================================
# TERMINAL TRANSITIONS (no commit)
# =============================================================================

def _completion_note(payment: Payment, card_brand: str | None, card_last4: str | None) -> str:
    if payment.method == PAYMENT_METHOD_CARD and card_last4:
        return f"Payment completed via card ({card_brand or 'card'} ****{card_last4})"
    if payment.method == PAYMENT_METHOD_BANK_TRANSFER:
        return "Bank transfer verified"
    if payment.method == PAYMENT_METHOD_COD:
        return "Cash on delivery payment collected"
    return "Payment completed"


def complete_payment_locked(
    payment: Payment,
    *,
    external_status: str | None = None,
    transaction_id: str | None = None,
    processed_at=None,
    card_last4: str | None = None,
    card_brand: str | None = None,
    notes: str | None = None,
    actor_user_id: int | None = None,
) -> str:
    """
    Mark a pending payment completed and move its order to paid.

    Returns one of the OUTCOME_* values. The payment is always recorded as
    completed: the money has moved, whatever state the order is in.
    - order draft / pending_payment -> paid, reservation settled
    - order already paid (cash collected on a cleared order) -> note only
    - stock no longer available -> note, order left for staff
    - order cancelled / further along -> note, flagged for manual review
    - another attempt already completed -> note, flagged for manual review
    """
    _require_pending(payment)

    payment.status = PAYMENT_STATUS_COMPLETED
    payment.external_status = external_status or payment.external_status
    payment.processed_at = processed_at or utcnow()
    payment.merge_metadata(transactionId=transaction_id, cardLast4=card_last4, cardBrand=card_brand)

    order = order_service.lock_order(payment.order_id)
    note = notes or _completion_note(payment, card_brand, card_last4)

    if _other_payments(payment, PAYMENT_STATUS_COMPLETED):
        order_service.add_history(
            order, from_status=order.status, to_status=order.status,
            notes=f"{note} - order was already paid by another attempt, manual review required",
            actor_user_id=actor_user_id,
        )
        current_app.logger.warning(
            "Duplicate payment %s completed for order %s; manual review required",
            payment.id, order.order_number,
        )
        db.session.flush()
        return OUTCOME_MANUAL_REVIEW

    if order.status == ORDER_STATUS_PAID:
        order_service.add_history(
            order, from_status=order.status, to_status=order.status,
            notes=note, actor_user_id=actor_user_id,
        )
        db.session.flush()
        return OUTCOME_RECORDED

    if order.status not in (ORDER_STATUS_DRAFT, ORDER_STATUS_PENDING_PAYMENT):
        order_service.add_history(
            order, from_status=order.status, to_status=order.status,
            notes=f"{note} while order was {order.status} - manual review required",
            actor_user_id=actor_user_id,
        )
        current_app.logger.warning(
            "Payment %s completed for %s order %s; manual review required",
            payment.id, order.status, order.order_number,
        )
        db.session.flush()
        return OUTCOME_MANUAL_REVIEW

    if order.stock_state != STOCK_RESERVED and inventory_service.find_order_shortages(order):
        order_service.add_history(
            order, from_status=order.status, to_status=order.status,
            notes=f"{note} but stock is no longer available - manual review required",
            actor_user_id=actor_user_id,
        )
        current_app.logger.warning(
            "Payment %s completed for order %s but stock is unavailable",
            payment.id, order.order_number,
        )
        db.session.flush()
        return OUTCOME_STOCK_UNAVAILABLE

    if order.status == ORDER_STATUS_DRAFT:
        order_service.transition_locked(
            order, ORDER_STATUS_PENDING_PAYMENT,
            notes="Payment confirmed by gateway", actor_user_id=actor_user_id,
        )
    order_service.transition_locked(order, ORDER_STATUS_PAID, notes=note, actor_user_id=actor_user_id)
    return OUTCOME_PAID


def fail_payment_locked(
    payment: Payment,
    *,
    reason: str,
    external_status: str | None = None,
    actor_user_id: int | None = None,
) -> Order:
    """
    Mark a pending payment failed and give back the order's reservation,
    unless another attempt on the order is still pending.

    The order keeps its status; the failed attempt is recorded as a history
    note on the current status so the customer may retry.
    """
    _require_pending(payment)

    payment.status = PAYMENT_STATUS_FAILED
    payment.failure_reason = reason
    payment.external_status = external_status or payment.external_status
    payment.processed_at = utcnow()

    order = order_service.lock_order(payment.order_id)
    # A newer attempt that is still open keeps the reservation
    if not _other_payments(payment, PAYMENT_STATUS_PENDING):
        inventory_service.release_order_lines(
            order, actor_user_id=actor_user_id, notes=f"Released - {reason}",
        )
    if order.status in (ORDER_STATUS_DRAFT, ORDER_STATUS_PENDING_PAYMENT):
        order_service.add_history(
            order, from_status=order.status, to_status=order.status,
            notes=f"Payment attempt failed - customer may retry ({reason})",
            actor_user_id=actor_user_id,
        )
    db.session.flush()
    return order


# =============================================================================
# CARD PAYMENTS
# =============================================================================

def _default_urls(order: Order) -> tuple[str, str, str]:
    site_url = current_app.config.get("SITE_URL", "").rstrip("/")
    return (
        f"{site_url}/checkout/success?order={order.order_number}",
        f"{site_url}/checkout?cancelled={order.order_number}",
        f"{site_url}/api/payment/webhook",
    )


def start_card_session(
    payment_id: int,
    *,
    return_url: str | None = None,
    cancel_url: str | None = None,
) -> CardSession:
    """
    Open a hosted-payment session for a pending card payment.

    On success the payment gets its external_id (the webhook join key) and a
    draft order moves to pending_payment. On any failure the payment is marked
    failed, the reservation released and the exception re-raised.
    """
    payment = db.session.query(Payment).filter_by(id=payment_id).first()
    if payment is None:
        raise NotFoundError("Payment not found")
    _require_pending(payment)
    order = payment.order
    default_return, default_cancel, notify_url = _default_urls(order)

    try:
        with get_gateway_client() as client:
            session = client.initiate(
                amount_cents=payment.amount_cents,
                currency=payment.currency,
                order_number=order.order_number,
                customer_email=order.customer_email,
                customer_phone=order.customer_phone,
                customer_name=order.customer_name,
                return_url=return_url or default_return,
                cancel_url=cancel_url or default_cancel,
                notify_url=notify_url,
            )
    except Exception as exc:
        if isinstance(exc, GatewayError):
            reason = exc.message
            current_app.logger.warning("Card session for order %s failed: %s", order.order_number, reason)
        else:
            reason = "Payment gateway error"
            current_app.logger.exception("Card session for order %s failed unexpectedly", order.order_number)

        # The reservation must not outlive the failed attempt
        db.session.rollback()

        def _fail():
            locked = lock_payment(payment_id)
            if locked.status == PAYMENT_STATUS_PENDING:
                fail_payment_locked(locked, reason=reason)
            db.session.commit()

        run_with_retry(_fail)
        raise

    def _op():
        locked = lock_payment(payment_id)
        _require_pending(locked)
        locked.external_id = session.session_id
        locked.merge_metadata(paymentUrl=session.payment_url, expiresAt=session.expires_at)
        locked_order = order_service.lock_order(locked.order_id)
        if locked_order.status == ORDER_STATUS_DRAFT:
            order_service.transition_locked(
                locked_order, ORDER_STATUS_PENDING_PAYMENT, notes="Awaiting card payment",
            )
        db.session.commit()
        return locked

    run_with_retry(_op)
    return CardSession(
        payment_id=payment_id,
        session_id=session.session_id,
        payment_url=session.payment_url,
        expires_at=session.expires_at,
    )


def retry_card_payment(
    order_id: int,
    *,
    user_id: int | None,
    return_url: str | None = None,
    cancel_url: str | None = None,
) -> CardSession:
    """New card attempt for an unpaid order; re-reserves stock if it was released."""
    def _op():
        order = order_service.lock_order(order_id)
        if user_id is not None and order.user_id != user_id:
            raise NotFoundError("Order not found")
        if order.status not in (ORDER_STATUS_DRAFT, ORDER_STATUS_PENDING_PAYMENT):
            raise PaymentStateError("Order cannot be paid in current status")
        if order.stock_state != STOCK_RESERVED:
            inventory_service.reserve_order_lines(
                order, notes=f"Re-reserved for payment retry - order {order.order_number}",
            )
        payment = create_payment_locked(order, PAYMENT_METHOD_CARD)
        db.session.commit()
        return payment.id

    payment_id = run_with_retry(_op)
    return start_card_session(payment_id, return_url=return_url, cancel_url=cancel_url)


# =============================================================================
# STAFF OPERATIONS
# =============================================================================

def verify_bank_transfer(
    payment_id: int,
    *,
    approved: bool,
    notes: str | None = None,
    actor_user_id: int | None = None,
) -> tuple[Payment, str]:
    """
    Approve -> payment completed, order paid, stock settled.
    Reject  -> payment failed, order cancelled, reservation released.
    """
    def _op():
        payment = lock_payment(payment_id)
        if payment.method != PAYMENT_METHOD_BANK_TRANSFER:
            raise PaymentStateError("Payment is not a bank transfer")
        _require_pending(payment)

        if approved:
            outcome = complete_payment_locked(
                payment,
                external_status="verified",
                notes=f"Bank transfer verified{': ' + notes if notes else ''}",
                actor_user_id=actor_user_id,
            )
        else:
            reason = f"Bank transfer rejected{': ' + notes if notes else ''}"
            order = fail_payment_locked(
                payment, reason=reason, external_status="rejected", actor_user_id=actor_user_id,
            )
            if order_service.can_transition(order.status, ORDER_STATUS_CANCELLED):
                order_service.transition_locked(
                    order, ORDER_STATUS_CANCELLED, notes=reason, actor_user_id=actor_user_id,
                )
            outcome = ORDER_STATUS_CANCELLED
        db.session.commit()
        return payment, outcome

    return run_with_retry(_op)


def collect_cod_payment(
    payment_id: int,
    *,
    notes: str | None = None,
    actor_user_id: int | None = None,
) -> tuple[Payment, str]:
    def _op():
        payment = lock_payment(payment_id)
        if payment.method != PAYMENT_METHOD_COD:
            raise PaymentStateError("Payment is not cash on delivery")
        _require_pending(payment)
        if payment.order.status == ORDER_STATUS_CANCELLED:
            raise PaymentStateError("Cannot collect payment for a cancelled order")
        outcome = complete_payment_locked(
            payment,
            external_status="collected",
            notes=notes or "Cash on delivery payment collected",
            actor_user_id=actor_user_id,
        )
        db.session.commit()
        return payment, outcome

    return run_with_retry(_op)


# =============================================================================
# READ
# =============================================================================

PAYMENT_FIELDS = {
    "status": Payment.status,
    "method": Payment.method,
    "search": (Payment.external_id, Order.order_number, Order.customer_email),
    "order_id": Payment.order_id,
}


def build_payment_filters(
    *,
    status: str | None = None,
    method: str | None = None,
    search: str | None = None,
) -> list[Filter]:
    filters: list[Filter] = []
    if status and status != "all":
        filters.append(Filter("status", "eq", status))
    if method and method != "all":
        filters.append(Filter("method", "eq", method))
    if search:
        filters.append(Filter("search", "ilike", search.strip()))
    return filters


def list_payments(filters: list[Filter], *, page: int = 1, limit: int = 20) -> tuple[list[dict], dict]:
    query = db.session.query(Payment, Order).join(Order, Payment.order_id == Order.id)
    query = apply_filters(query, filters, PAYMENT_FIELDS)
    query = query.order_by(Payment.created_at.desc(), Payment.id.desc())
    rows, pagination = paginate(query, page=page, limit=limit)

    items = []
    for payment, order in rows:
        data = payment.to_dict()
        data["order_number"] = order.order_number
        data["customer_email"] = order.customer_email
        data["customer_name"] = order.customer_name
        data["order_status"] = order.status
        items.append(data)
    return items, pagination


def get_payment(payment_id: int) -> Payment:
    payment = db.session.query(Payment).filter_by(id=payment_id).first()
    if payment is None:
        raise NotFoundError("Payment not found")
    return payment
