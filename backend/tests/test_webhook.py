"""
Payment webhook tests.

Verifies:
- payment.completed: payment completed, order paid, reservation settled
- payment.failed / payment.cancelled: payment failed, reservation released,
  order left in pending_payment for a retry
- exact replays are acknowledged with no further writes
- signature policy: bad signatures always 401, missing signature depends on policy
- unknown sessions 404, unknown events acknowledged without mutation
"""

import json

import pytest

from storefront.errors import InsufficientStock, InvalidStatusTransition
from storefront.extensions import db
from storefront.models import InventoryMovement, Order, OrderStatusHistory, Payment
from storefront.services import checkout_service, inventory_service, order_service, payment_service
from storefront.services.checkout_service import CartInvalid
from storefront.services.webhook_service import (
    SIGNATURE_HEADER,
    SignatureVerificationPolicy,
    WebhookReconciler,
    compute_signature,
    verify_signature,
)
from storefront.validation import parse_checkout_payload

from conftest import WEBHOOK_SECRET, checkout_payload, inventory_item_for, make_variant, sign, webhook_body


def _card_order(variant, qty):
    checkout = parse_checkout_payload(
        checkout_payload([{"variant_id": variant.id, "quantity": qty}], payment_method="card")
    )
    result = checkout_service.create_order(checkout)
    payment = db.session.get(Payment, result.payment_id)
    return result.order.id, payment.id, payment.external_id


def _post(client, body, headers=None):
    return client.post("/api/payment/webhook", data=body, headers=headers if headers is not None else sign(body))


def _write_counts():
    return (
        db.session.query(InventoryMovement).count(),
        db.session.query(OrderStatusHistory).count(),
    )


class TestPaymentCompleted:

    def test_completed_settles_reservation(self, client, db_session, gateway):
        variant = make_variant(price_cents=5000, stock=2)
        order_id, payment_id, session_id = _card_order(variant, 2)

        body = webhook_body(
            "payment.completed", session_id,
            status="completed", transactionId="txn_1",
            timestamp="2026-10-18T10:00:00Z", cardLast4="4242", cardBrand="visa",
        )
        resp = _post(client, body)

        assert resp.status_code == 200
        assert resp.json["success"] is True
        db.session.expire_all()

        payment = db.session.get(Payment, payment_id)
        order = db.session.get(Order, order_id)
        assert payment.status == "completed"
        assert payment.processed_at is not None
        assert order.status == "paid"
        assert order.stock_state == "settled"

        item = inventory_item_for(variant.id)
        assert (item.quantity, item.reserved_quantity) == (0, 0)

        sales = db.session.query(InventoryMovement).filter_by(
            inventory_item_id=item.id, type="sale"
        ).all()
        assert len(sales) == 1
        assert sales[0].quantity == -2

        last = order.status_history[-1]
        assert (last.from_status, last.to_status) == ("pending_payment", "paid")
        assert "****4242" in last.notes

    def test_replay_is_acknowledged_without_writes(self, client, db_session, gateway):
        variant = make_variant(stock=2)
        _, payment_id, session_id = _card_order(variant, 2)
        body = webhook_body("payment.completed", session_id, status="completed", transactionId="txn_1")

        assert _post(client, body).status_code == 200
        db.session.expire_all()
        counts = _write_counts()
        version = db.session.get(Payment, payment_id).version_id

        resp = _post(client, body)

        assert resp.status_code == 200
        assert resp.json["message"] == "Already processed"
        db.session.expire_all()
        assert _write_counts() == counts
        assert db.session.get(Payment, payment_id).version_id == version
        assert inventory_item_for(variant.id).quantity == 0

    def test_completed_after_cancellation_needs_manual_review(self, client, db_session, gateway):
        variant = make_variant(stock=2)
        order_id, payment_id, session_id = _card_order(variant, 1)

        from storefront.services import order_service
        order_service.transition_order_status(order_id, "cancelled", notes="Customer called")

        resp = _post(client, webhook_body("payment.completed", session_id, status="completed"))

        assert resp.status_code == 200
        assert resp.json["outcome"] == "manual_review"
        db.session.expire_all()
        order = db.session.get(Order, order_id)
        assert order.status == "cancelled"
        assert db.session.get(Payment, payment_id).status == "completed"
        assert "manual review" in order.status_history[-1].notes
        assert inventory_item_for(variant.id).quantity == 2


class TestPaymentFailed:

    def test_failed_releases_reservation(self, client, db_session, gateway):
        variant = make_variant(stock=5)
        order_id, payment_id, session_id = _card_order(variant, 3)
        assert inventory_item_for(variant.id).reserved_quantity == 3

        resp = _post(client, webhook_body("payment.failed", session_id, status="failed"))

        assert resp.status_code == 200
        db.session.expire_all()
        payment = db.session.get(Payment, payment_id)
        order = db.session.get(Order, order_id)
        assert payment.status == "failed"
        assert payment.failure_reason == "Payment declined by payment provider"
        assert order.status == "pending_payment"
        assert order.stock_state == "released"

        item = inventory_item_for(variant.id)
        assert (item.quantity, item.reserved_quantity) == (5, 0)
        released = db.session.query(InventoryMovement).filter_by(
            inventory_item_id=item.id, type="released"
        ).one()
        assert released.quantity == -3

    def test_cancelled_event_uses_its_own_reason(self, client, db_session, gateway):
        variant = make_variant(stock=5)
        _, payment_id, session_id = _card_order(variant, 1)

        assert _post(client, webhook_body("payment.cancelled", session_id)).status_code == 200
        db.session.expire_all()
        assert db.session.get(Payment, payment_id).failure_reason == "Payment cancelled by user"

    def test_retry_after_failure_re_reserves(self, client, db_session, gateway, customer):
        variant = make_variant(stock=5)
        checkout = parse_checkout_payload(
            checkout_payload([{"variant_id": variant.id, "quantity": 2}], payment_method="card")
        )
        result = checkout_service.create_order(checkout, user_id=customer.id)
        session_id = db.session.get(Payment, result.payment_id).external_id
        _post(client, webhook_body("payment.failed", session_id))

        from storefront.services import payment_service
        session = payment_service.retry_card_payment(result.order.id, user_id=customer.id)

        assert session.payment_id != result.payment_id
        assert inventory_item_for(variant.id).reserved_quantity == 2

        _post(client, webhook_body("payment.completed", session.session_id, status="completed"))
        db.session.expire_all()
        assert db.session.get(Order, result.order.id).status == "paid"
        assert inventory_item_for(variant.id).quantity == 3


class TestOverlappingCardAttempts:
    """A retry opens a second session while the first may still be answered."""

    def _order_with_retry(self, variant, qty, customer):
        checkout = parse_checkout_payload(
            checkout_payload([{"variant_id": variant.id, "quantity": qty}], payment_method="card")
        )
        result = checkout_service.create_order(checkout, user_id=customer.id)
        first = db.session.get(Payment, result.payment_id)
        first_id, first_session = first.id, first.external_id
        retry = payment_service.retry_card_payment(result.order.id, user_id=customer.id)
        return result.order.id, first_id, first_session, retry

    def test_first_session_cancelled_keeps_reservation_for_retry(self, client, db_session, gateway, customer):
        variant = make_variant(stock=2)
        order_id, first_id, first_session, retry = self._order_with_retry(variant, 2, customer)

        resp = _post(client, webhook_body("payment.cancelled", first_session))

        assert resp.status_code == 200
        db.session.expire_all()
        assert db.session.get(Payment, first_id).status == "failed"
        assert db.session.get(Payment, retry.payment_id).status == "pending"
        assert db.session.get(Order, order_id).stock_state == "reserved"
        assert inventory_item_for(variant.id).reserved_quantity == 2

        # The units are still held, so nobody else can buy them
        other = parse_checkout_payload(checkout_payload(
            [{"variant_id": variant.id, "quantity": 1}],
            payment_method="bank_transfer", email="second.com",
        ))
        with pytest.raises((CartInvalid, InsufficientStock)):
            checkout_service.create_order(other)

        resp = _post(client, webhook_body("payment.completed", retry.session_id, status="completed"))

        assert resp.json["outcome"] == "paid"
        db.session.expire_all()
        order = db.session.get(Order, order_id)
        assert (order.status, order.stock_state) == ("paid", "settled")
        item = inventory_item_for(variant.id)
        assert (item.quantity, item.reserved_quantity) == (0, 0)

    def test_both_sessions_failing_releases_once(self, client, db_session, gateway, customer):
        variant = make_variant(stock=3)
        order_id, _, first_session, retry = self._order_with_retry(variant, 2, customer)

        _post(client, webhook_body("payment.failed", first_session))
        db.session.expire_all()
        assert inventory_item_for(variant.id).reserved_quantity == 2

        _post(client, webhook_body("payment.failed", retry.session_id))

        db.session.expire_all()
        assert db.session.get(Order, order_id).stock_state == "released"
        item = inventory_item_for(variant.id)
        assert (item.quantity, item.reserved_quantity) == (3, 0)
        releases = db.session.query(InventoryMovement).filter_by(
            inventory_item_id=item.id, type="released"
        ).count()
        assert releases == 1

    def test_second_completion_is_flagged_not_double_settled(self, client, db_session, gateway, customer):
        variant = make_variant(stock=4)
        order_id, first_id, first_session, retry = self._order_with_retry(variant, 2, customer)

        resp = _post(client, webhook_body("payment.completed", retry.session_id, status="completed"))
        assert resp.json["outcome"] == "paid"

        resp = _post(client, webhook_body("payment.completed", first_session, status="completed"))

        assert resp.status_code == 200
        assert resp.json["outcome"] == "manual_review"
        db.session.expire_all()
        order = db.session.get(Order, order_id)
        assert order.status == "paid"
        assert db.session.get(Payment, first_id).status == "completed"
        assert "already paid by another attempt" in order.status_history[-1].notes
        item = inventory_item_for(variant.id)
        assert (item.quantity, item.reserved_quantity) == (2, 0)
        sales = db.session.query(InventoryMovement).filter_by(
            inventory_item_id=item.id, type="sale"
        ).count()
        assert sales == 1


class TestProcessingFailures:

    def test_failure_mid_settlement_rolls_back_and_replay_succeeds(self, client, db_session, gateway, monkeypatch):
        variant = make_variant(stock=3)
        order_id, payment_id, session_id = _card_order(variant, 2)
        db.session.expire_all()
        counts = _write_counts()
        body = webhook_body("payment.completed", session_id, status="completed")

        def broken_settle(*args, **kwargs):
            raise RuntimeError("disk full")

        monkeypatch.setattr(inventory_service, "settle_sale_locked", broken_settle)
        resp = _post(client, body)

        assert resp.status_code == 500
        db.session.expire_all()
        assert db.session.get(Payment, payment_id).status == "pending"
        order = db.session.get(Order, order_id)
        assert (order.status, order.stock_state) == ("pending_payment", "reserved")
        assert _write_counts() == counts
        item = inventory_item_for(variant.id)
        assert (item.quantity, item.reserved_quantity) == (3, 2)

        monkeypatch.undo()
        resp = _post(client, body)

        assert resp.status_code == 200
        assert resp.json["outcome"] == "paid"
        db.session.expire_all()
        assert db.session.get(Payment, payment_id).status == "completed"
        assert db.session.get(Order, order_id).status == "paid"
        assert inventory_item_for(variant.id).quantity == 1

    def test_business_rejection_is_acknowledged_without_writes(self, client, db_session, gateway, monkeypatch):
        variant = make_variant(stock=3)
        order_id, payment_id, session_id = _card_order(variant, 1)
        db.session.expire_all()
        counts = _write_counts()

        def refuse(order, to_status, **kwargs):
            raise InvalidStatusTransition(order.status, to_status)

        monkeypatch.setattr(order_service, "transition_locked", refuse)
        resp = _post(client, webhook_body("payment.completed", session_id, status="completed"))

        assert resp.status_code == 200
        assert resp.json["outcome"] == "rejected"
        assert "error" in resp.json
        db.session.expire_all()
        assert db.session.get(Payment, payment_id).status == "pending"
        assert db.session.get(Order, order_id).status == "pending_payment"
        assert _write_counts() == counts


class TestWebhookRejections:

    def test_bad_signature_is_rejected(self, client, db_session, gateway):
        variant = make_variant(stock=2)
        _, payment_id, session_id = _card_order(variant, 1)
        body = webhook_body("payment.completed", session_id)

        resp = _post(client, body, headers={SIGNATURE_HEADER: "0" * 64})

        assert resp.status_code == 401
        db.session.expire_all()
        assert db.session.get(Payment, payment_id).status == "pending"

    def test_signature_over_different_body_is_rejected(self, client, db_session, gateway):
        variant = make_variant(stock=2)
        _, _, session_id = _card_order(variant, 1)
        signed = webhook_body("payment.failed", session_id)
        sent = webhook_body("payment.completed", session_id)

        assert _post(client, sent, headers=sign(signed)).status_code == 401

    def test_missing_signature_rejected_when_required(self, client, db_session, gateway):
        variant = make_variant(stock=2)
        _, _, session_id = _card_order(variant, 1)
        resp = _post(client, webhook_body("payment.completed", session_id), headers={})
        assert resp.status_code == 401

    def test_unknown_session_is_404(self, client, db_session):
        resp = _post(client, webhook_body("payment.completed", "sess_missing"))
        assert resp.status_code == 404

    def test_unknown_event_is_acknowledged(self, client, db_session, gateway):
        variant = make_variant(stock=2)
        _, payment_id, session_id = _card_order(variant, 1)
        db.session.expire_all()
        counts = _write_counts()

        resp = _post(client, webhook_body("payment.refunded", session_id))

        assert resp.status_code == 200
        assert resp.json["message"] == "Event ignored"
        db.session.expire_all()
        assert _write_counts() == counts
        assert db.session.get(Payment, payment_id).status == "pending"

    @pytest.mark.parametrize("body", [b"not json", b"[]", json.dumps({"event": "payment.completed"}).encode()])
    def test_malformed_payload_is_400(self, client, db_session, body):
        assert _post(client, body).status_code == 400


class TestSignaturePolicy:

    def test_verify_signature_constant_time_helper(self):
        body = b'{"event":"payment.completed"}'
        good = compute_signature(WEBHOOK_SECRET, body)
        assert verify_signature(WEBHOOK_SECRET, body, good)
        assert not verify_signature(WEBHOOK_SECRET, body, good[:-1] + ("0" if good[-1] != "0" else "1"))
        assert not verify_signature("other-secret", body, good)

    def test_production_always_requires_signature(self):
        config = {"APP_ENV": "production", "PAYMENT_SIGNATURE_POLICY": "OPTIONAL_IF_ABSENT"}
        assert SignatureVerificationPolicy.from_config(config) is SignatureVerificationPolicy.REQUIRED

    def test_development_defaults_to_optional(self):
        config = {"APP_ENV": "development", "PAYMENT_SIGNATURE_POLICY": None}
        assert SignatureVerificationPolicy.from_config(config) is SignatureVerificationPolicy.OPTIONAL_IF_ABSENT

    def test_optional_policy_still_checks_present_signature(self, app):
        reconciler = WebhookReconciler(
            secret=WEBHOOK_SECRET,
            policy=SignatureVerificationPolicy.OPTIONAL_IF_ABSENT,
            logger=app.logger,
        )
        body = b"{}"
        assert reconciler.authenticate(body, None)
        assert not reconciler.authenticate(body, "deadbeef")
        assert reconciler.authenticate(body, compute_signature(WEBHOOK_SECRET, body))


class TestPullVerification:

    def test_verify_endpoint_applies_gateway_status(self, client, db_session, gateway):
        variant = make_variant(stock=2)
        order_id, payment_id, session_id = _card_order(variant, 1)
        gateway.statuses[session_id] = {
            "status": "completed",
            "transactionId": "txn_pull",
            "paidAt": "2026-10-18T09:30:00Z",
        }

        resp = client.get(f"/api/payments/verify/{session_id}")

        assert resp.status_code == 200
        assert resp.json["applied"] is True
        db.session.expire_all()
        assert db.session.get(Payment, payment_id).status == "completed"
        assert db.session.get(Order, order_id).status == "paid"

    def test_pending_session_changes_nothing(self, client, db_session, gateway):
        variant = make_variant(stock=2)
        _, payment_id, session_id = _card_order(variant, 1)

        resp = client.get(f"/api/payments/verify/{session_id}")

        assert resp.status_code == 200
        assert resp.json == {"status": "pending", "applied": False}
        db.session.expire_all()
        assert db.session.get(Payment, payment_id).status == "pending"
