# Overview: Inbound payment-gateway webhook reconciler; authenticates, de-duplicates and applies gateway events.

"""
Webhook Reconciler

Steps for every delivery:
1. Authenticate: HMAC-SHA256 over the raw body with the shared secret,
   compared in constant time. The SignatureVerificationPolicy decides whether
   a delivery WITHOUT a signature header may pass (never in production).
   A signature that is present is always checked.
2. Idempotency gate: the Payment is looked up by external_id under a row
   lock and its status re-checked there. Completed / failed -> success with
   no writes. Concurrent duplicates serialize on that lock (and on
   Payment.version_id where the database ignores FOR UPDATE).
3. Dispatch inside one transaction:
   payment.completed -> payment completed, order paid, stock settled
   payment.failed    -> payment failed, reservation released
   payment.cancelled -> as failed, "Payment cancelled by user"
4. Unknown event types are logged and acknowledged without mutation.
5. A business rejection (bad transition, stock conflict) rolls back and is
   acknowledged with outcome "rejected"; retrying would not change it.
6. Anything unexpected rolls back and answers 500 so the gateway retries.

The gateway only ever sees WebhookOutcome.status_code / body.
"""
from __future__ import annotations

import hashlib
import hmac
import json
from dataclasses import dataclass, field
from enum import Enum

from flask import current_app

from ..errors import NotFoundError, StorefrontError, ValidationError
from ..extensions import db
from ..time_utils import parse_iso_datetime
from . import payment_service
from .concurrency import run_with_retry
from .gateway_client import get_gateway_client


SIGNATURE_HEADER = "x-webhook-signature"

EVENT_COMPLETED = "payment.completed"
EVENT_FAILED = "payment.failed"
EVENT_CANCELLED = "payment.cancelled"

FAILED_REASON = "Payment declined by payment provider"
CANCELLED_REASON = "Payment cancelled by user"

OUTCOME_REJECTED = "rejected"


class SignatureVerificationPolicy(str, Enum):
    REQUIRED = "REQUIRED"
    OPTIONAL_IF_ABSENT = "OPTIONAL_IF_ABSENT"

    @classmethod
    def from_config(cls, config) -> "SignatureVerificationPolicy":
        # Production never accepts unsigned deliveries, whatever is configured
        if config.get("APP_ENV") == "production":
            return cls.REQUIRED
        configured = config.get("PAYMENT_SIGNATURE_POLICY")
        if configured:
            return cls(configured.strip().upper())
        return cls.OPTIONAL_IF_ABSENT


def compute_signature(secret: str, body: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def verify_signature(secret: str, body: bytes, signature: str) -> bool:
    expected = compute_signature(secret, body)
    return hmac.compare_digest(expected.encode("utf-8"), signature.strip().encode("utf-8"))


@dataclass(frozen=True)
class GatewayEvent:
    event: str
    session_id: str
    status: str | None = None
    transaction_id: str | None = None
    order_id: str | None = None
    amount: object = None
    currency: str | None = None
    timestamp: object = None
    card_last4: str | None = None
    card_brand: str | None = None

    @classmethod
    def from_payload(cls, data) -> "GatewayEvent":
        if not isinstance(data, dict):
            raise ValidationError("Webhook payload must be a JSON object")
        event = data.get("event")
        session_id = data.get("sessionId")
        if not event or not session_id:
            raise ValidationError("event and sessionId are required")
        try:
            timestamp = parse_iso_datetime(data.get("timestamp"))
        except (AttributeError, TypeError, ValueError):
            timestamp = None
        return cls(
            event=str(event),
            session_id=str(session_id),
            status=data.get("status"),
            transaction_id=data.get("transactionId"),
            order_id=data.get("orderId"),
            amount=data.get("amount"),
            currency=data.get("currency"),
            timestamp=timestamp,
            card_last4=data.get("cardLast4"),
            card_brand=data.get("cardBrand"),
        )


@dataclass(frozen=True)
class WebhookOutcome:
    status_code: int
    body: dict = field(default_factory=dict)


class WebhookReconciler:
    def __init__(self, *, secret: str, policy: SignatureVerificationPolicy, logger=None):
        self.secret = secret
        self.policy = policy
        self._logger = logger

    @classmethod
    def from_app(cls, app) -> "WebhookReconciler":
        return cls(
            secret=app.config["PAYMENT_WEBHOOK_SECRET"],
            policy=SignatureVerificationPolicy.from_config(app.config),
            logger=app.logger,
        )

    @property
    def logger(self):
        return self._logger or current_app.logger

    # -------------------------------------------------------------------------

    def authenticate(self, raw_body: bytes, signature: str | None) -> bool:
        if not signature:
            return self.policy is SignatureVerificationPolicy.OPTIONAL_IF_ABSENT
        return verify_signature(self.secret, raw_body, signature)

    def handle(self, raw_body: bytes, signature: str | None) -> WebhookOutcome:
        if not self.authenticate(raw_body, signature):
            self.logger.warning("Rejected payment webhook: invalid or missing signature")
            return WebhookOutcome(401, {"error": "Invalid signature"})

        try:
            data = json.loads(raw_body or b"null")
        except (ValueError, UnicodeDecodeError):
            self.logger.warning("Rejected payment webhook: body is not JSON")
            return WebhookOutcome(400, {"error": "Invalid JSON payload"})

        try:
            event = GatewayEvent.from_payload(data)
        except ValidationError as exc:
            self.logger.warning("Rejected payment webhook: %s", exc.message)
            return WebhookOutcome(400, exc.to_dict())

        self.logger.info("Payment webhook received: %s %s", event.event, event.session_id)
        return self.apply(event)

    def apply(self, event: GatewayEvent) -> WebhookOutcome:
        try:
            return run_with_retry(lambda: self._apply_locked(event))
        except StorefrontError as exc:
            self.logger.warning(
                "Payment webhook for session %s rejected: %s", event.session_id, exc.message,
            )
            return WebhookOutcome(200, {"success": True, "outcome": OUTCOME_REJECTED, "error": exc.message})
        except Exception:
            self.logger.exception("Webhook processing error for session %s", event.session_id)
            return WebhookOutcome(500, {"error": "Internal server error"})

    def _apply_locked(self, event: GatewayEvent) -> WebhookOutcome:
        payment = payment_service.lock_payment_by_external_id(event.session_id)
        if payment is None:
            self.logger.warning("Payment not found for session %s", event.session_id)
            db.session.rollback()
            return WebhookOutcome(404, {"error": "Payment not found"})

        if payment.is_terminal:
            self.logger.info("Payment %s already processed (%s)", payment.id, payment.status)
            db.session.rollback()
            return WebhookOutcome(200, {"success": True, "message": "Already processed"})

        if event.event == EVENT_COMPLETED:
            outcome = payment_service.complete_payment_locked(
                payment,
                external_status=event.status,
                transaction_id=event.transaction_id,
                processed_at=event.timestamp,
                card_last4=event.card_last4,
                card_brand=event.card_brand,
            )
        elif event.event in (EVENT_FAILED, EVENT_CANCELLED):
            reason = CANCELLED_REASON if event.event == EVENT_CANCELLED else FAILED_REASON
            payment_service.fail_payment_locked(payment, reason=reason, external_status=event.status)
            outcome = "failed"
        else:
            self.logger.warning("Unknown webhook event %s for session %s", event.event, event.session_id)
            db.session.rollback()
            return WebhookOutcome(200, {"success": True, "message": "Event ignored"})

        db.session.commit()
        self.logger.info("Payment %s processed: %s -> %s", payment.id, event.event, outcome)
        return WebhookOutcome(200, {"success": True, "outcome": outcome})


def get_reconciler() -> WebhookReconciler:
    reconciler = current_app.extensions.get("webhook_reconciler")
    if reconciler is None:
        reconciler = WebhookReconciler.from_app(current_app)
        current_app.extensions["webhook_reconciler"] = reconciler
    return reconciler


_PULL_EVENTS = {
    "completed": EVENT_COMPLETED,
    "failed": EVENT_FAILED,
    "cancelled": EVENT_CANCELLED,
}


def pull_payment_status(session_id: str) -> dict:
    """
    Ask the gateway for a session's status and apply it through the same
    locked reconciliation as the webhook. Still-pending sessions change
    nothing.
    """
    with get_gateway_client() as client:
        status = client.verify(session_id)

    event_type = _PULL_EVENTS.get(status.status)
    if event_type is None:
        return {"status": status.status, "applied": False}

    outcome = get_reconciler().apply(GatewayEvent(
        event=event_type,
        session_id=session_id,
        status=status.status,
        transaction_id=status.transaction_id,
        timestamp=status.paid_at,
        card_last4=status.card_last4,
        card_brand=status.card_brand,
    ))
    if outcome.status_code >= 500:
        raise RuntimeError("Payment reconciliation failed")
    if outcome.status_code == 404:
        raise NotFoundError("Payment not found")
    return {
        "status": status.status,
        "transaction_id": status.transaction_id,
        "applied": outcome.body.get("outcome") != OUTCOME_REJECTED,
        "result": outcome.body,
    }
