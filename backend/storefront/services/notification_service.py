# Overview: Service-layer operations for order notifications; builds email content and hands it to a sender.

"""
Order Notification Service

WHY: Customers are told when their order ships and when it arrives.
Delivery itself is external; this module only builds the message and hands
it to a sender.

DESIGN:
- The sender is looked up on app.extensions["email_sender"] so deployments
  (and tests) can plug in a real provider. LogEmailSender is the default.
- Every public send_* function is fire-and-forget: it is called AFTER the
  status change has committed, catches every exception and logs it. A mail
  failure never undoes or blocks an order transition.
"""
from __future__ import annotations

from dataclasses import dataclass, field

from flask import current_app

from ..time_utils import cents_to_str


@dataclass
class EmailItem:
    name: str
    quantity: int
    price: str


@dataclass
class OrderEmailData:
    order_number: str
    customer_name: str
    customer_email: str
    total: str
    items: list[EmailItem] = field(default_factory=list)
    shipping_address: dict | None = None
    tracking_number: str | None = None
    tracking_url: str | None = None


@dataclass
class EmailMessage:
    to: str
    subject: str
    text: str
    sender: str


class LogEmailSender:
    """Writes outgoing mail to the application log instead of sending it."""

    def send(self, message: EmailMessage) -> None:
        current_app.logger.info(
            "Email to=%s subject=%r from=%s", message.to, message.subject, message.sender
        )


def get_email_sender():
    sender = current_app.extensions.get("email_sender")
    if sender is None:
        sender = LogEmailSender()
        current_app.extensions["email_sender"] = sender
    return sender


def build_order_email_data(order, *, tracking_number: str | None = None,
                           tracking_url: str | None = None) -> OrderEmailData:
    address = order.shipping_address or None
    return OrderEmailData(
        order_number=order.order_number,
        customer_name=order.customer_name or (address or {}).get("recipient_name") or "Customer",
        customer_email=order.customer_email,
        total=cents_to_str(order.total_cents),
        items=[
            EmailItem(
                name=f"{line.product_name} - {line.variant_name}",
                quantity=line.quantity,
                price=cents_to_str(line.subtotal_cents),
            )
            for line in order.items
        ],
        shipping_address=address,
        tracking_number=tracking_number,
        tracking_url=tracking_url,
    )


def _format_address(address: dict | None) -> str:
    if not address:
        return ""
    parts = [
        address.get("recipient_name"),
        address.get("address_line1"),
        address.get("address_line2"),
        ", ".join(p for p in (address.get("city"), address.get("state"), address.get("postal_code")) if p),
        address.get("country"),
    ]
    return "\n".join(p for p in parts if p)


def _items_text(data: OrderEmailData) -> str:
    return "\n".join(f"- {item.name} x{item.quantity} - {item.price}" for item in data.items)


def render_shipped_email(data: OrderEmailData) -> tuple[str, str]:
    site_name = current_app.config.get("SITE_NAME", "Storefront")
    site_url = current_app.config.get("SITE_URL", "")
    subject = f"Your order has shipped - {data.order_number}"
    lines = [
        f"Hi {data.customer_name},",
        "",
        f"Good news! Your order {data.order_number} is on its way.",
    ]
    if data.tracking_number:
        lines.append(f"Tracking number: {data.tracking_number}")
    if data.tracking_url:
        lines.append(f"Track your package: {data.tracking_url}")
    lines += [
        "",
        "Items:",
        _items_text(data),
        "",
        "Shipping to:",
        _format_address(data.shipping_address),
        "",
        f"View your order: {site_url}/orders",
        "",
        site_name,
    ]
    return subject, "\n".join(lines)


def render_delivered_email(data: OrderEmailData) -> tuple[str, str]:
    site_name = current_app.config.get("SITE_NAME", "Storefront")
    site_url = current_app.config.get("SITE_URL", "")
    subject = f"Your order has been delivered - {data.order_number}"
    lines = [
        f"Hi {data.customer_name},",
        "",
        f"Your order {data.order_number} has been delivered.",
        f"Order total: {data.total}",
        "",
        "Items:",
        _items_text(data),
        "",
        f"Questions about your order? Visit {site_url}/orders",
        "",
        site_name,
    ]
    return subject, "\n".join(lines)


def _send(order, render, kind: str) -> bool:
    try:
        data = build_order_email_data(order)
        subject, text = render(data)
        message = EmailMessage(
            to=data.customer_email,
            subject=subject,
            text=text,
            sender=current_app.config.get("EMAIL_FROM", "noreply@storefront.local"),
        )
        get_email_sender().send(message)
        return True
    except Exception:
        current_app.logger.warning(
            "Failed to send %s email for order %s", kind, getattr(order, "order_number", "?"), exc_info=True
        )
        return False


def send_order_shipped_email(order) -> bool:
    return _send(order, render_shipped_email, "shipped")


def send_order_delivered_email(order) -> bool:
    return _send(order, render_delivered_email, "delivered")
