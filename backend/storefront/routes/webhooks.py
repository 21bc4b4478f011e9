# Overview: Inbound payment-gateway webhook endpoint.

"""
POST /api/payment/webhook

The signature is computed over the exact bytes received, so the body is
read with request.get_data() before anything parses it. All decisions
(401 / 400 / 404 / 200 / 500) are made by the WebhookReconciler.
"""

from flask import Blueprint, request, jsonify

from ..services.webhook_service import SIGNATURE_HEADER, get_reconciler


webhooks_bp = Blueprint("webhooks", __name__)


@webhooks_bp.post("/api/payment/webhook")
def payment_webhook_route():
    raw_body = request.get_data(cache=False)
    outcome = get_reconciler().handle(raw_body, request.headers.get(SIGNATURE_HEADER))
    return jsonify(outcome.body), outcome.status_code
