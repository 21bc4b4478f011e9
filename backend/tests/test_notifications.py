"""
Order notification tests.

Rendering is checked on plain OrderEmailData; the send path is checked
for its fire-and-forget contract.
"""

from types import SimpleNamespace

import pytest

from storefront.services import notification_service
from storefront.services.notification_service import (
    EmailItem,
    OrderEmailData,
    render_delivered_email,
    render_shipped_email,
)


@pytest.fixture
def email_data():
    return OrderEmailData(
        order_number="ORD-20261018-0001",
        customer_name="Ada",
        customer_email="ada@example.com",
        total="108.00",
        items=[EmailItem(name="Linen Shirt - Medium", quantity=2, price="90.00")],
        shipping_address={
            "recipient_name": "Ada Lovelace",
            "address_line1": "12 Analytical Row",
            "city": "London",
            "postal_code": "N1 9GU",
            "country": "GB",
        },
    )


def _order(**overrides):
    line = SimpleNamespace(product_name="Linen Shirt", variant_name="Medium", quantity=1, subtotal_cents=4500)
    values = dict(
        order_number="ORD-20261018-0002",
        customer_name=None,
        customer_email="guest@example.com",
        total_cents=5499,
        items=[line],
        shipping_address={"recipient_name": "Grace Hopper", "country": "US"},
    )
    values.update(overrides)
    return SimpleNamespace(**values)


class TestRendering:

    def test_shipped_email(self, app, email_data):
        email_data.tracking_number = "1Z999"
        with app.test_request_context():
            subject, text = render_shipped_email(email_data)

        assert subject == "Your order has shipped - ORD-20261018-0001"
        assert "Tracking number: 1Z999" in text
        assert "- Linen Shirt - Medium x2 - 90.00" in text
        assert "London, N1 9GU" in text

    def test_shipped_email_without_tracking(self, app, email_data):
        with app.test_request_context():
            _, text = render_shipped_email(email_data)
        assert "Tracking" not in text

    def test_delivered_email(self, app, email_data):
        with app.test_request_context():
            subject, text = render_delivered_email(email_data)
        assert subject == "Your order has been delivered - ORD-20261018-0001"
        assert "Order total: 108.00" in text

    def test_name_falls_back_to_recipient(self, app):
        data = notification_service.build_order_email_data(_order())
        assert data.customer_name == "Grace Hopper"
        assert data.total == "54.99"
        assert data.items[0].price == "45.00"


class TestSending:

    def test_sends_through_configured_sender(self, app, outbox):
        with app.test_request_context():
            assert notification_service.send_order_shipped_email(_order()) is True
        assert len(outbox) == 1
        assert outbox[0].to == "guest@example.com"
        assert outbox[0].sender == app.config.get("EMAIL_FROM", "noreply@storefront.local")

    def test_sender_failure_is_swallowed(self, app):
        class BrokenSender:
            def send(self, message):
                raise ConnectionError("SMTP down")

        previous = app.extensions.get("email_sender")
        app.extensions["email_sender"] = BrokenSender()
        try:
            with app.test_request_context():
                assert notification_service.send_order_delivered_email(_order()) is False
        finally:
            if previous is None:
                app.extensions.pop("email_sender", None)
            else:
                app.extensions["email_sender"] = previous
