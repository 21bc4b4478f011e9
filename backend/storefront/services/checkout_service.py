# Overview: Service-layer operations for checkout; turns a validated cart into a priced order with reserved stock.

"""
Checkout Service

Flow:
1. validate_cart(lines): every line must reference an active variant of an
   active product with enough available stock. Problems come back as a
   per-line list; nothing is written.
2. calculate_order_totals(subtotal, shipping_method): shipping, tax, total.
3. create_order(checkout): ONE transaction creates the Order, its item
   snapshots, the initial history row, the reservations and a pending
   Payment. InsufficientStock from a concurrent buyer rolls all of it back.
4. Card orders then ask the gateway for a session (outside the
   transaction). Bank transfer waits for staff. Cash on delivery is cleared
   for fulfilment straight away.

Money is integer cents. Tax is TAX_RATE_BPS basis points of the subtotal,
rounded half-up to the cent.
"""
from __future__ import annotations

import secrets
import string
import time
from dataclasses import dataclass, field

from flask import current_app

from ..extensions import db
from ..errors import GatewayError, ValidationError
from ..models import InventoryItem, Order, OrderItem, Product, ProductVariant
from ..models.orders import (
    ORDER_STATUS_DRAFT,
    ORDER_STATUS_PAID,
    ORDER_STATUS_PENDING_PAYMENT,
)
from ..models.payments import (
    PAYMENT_METHOD_BANK_TRANSFER,
    PAYMENT_METHOD_CARD,
    PAYMENT_METHOD_COD,
)
from ..validation import CartLineInput, CheckoutInput, SHIPPING_METHODS
from . import inventory_service, order_service, payment_service
from .concurrency import run_with_retry


_BASE36 = string.digits + string.ascii_uppercase
_SUFFIX_ALPHABET = string.ascii_uppercase + string.digits


@dataclass(frozen=True)
class OrderTotals:
    subtotal_cents: int
    shipping_cost_cents: int
    tax_amount_cents: int
    discount_amount_cents: int
    total_cents: int

    def to_dict(self) -> dict:
        return {
            "subtotal_cents": self.subtotal_cents,
            "shipping_cost_cents": self.shipping_cost_cents,
            "tax_amount_cents": self.tax_amount_cents,
            "discount_amount_cents": self.discount_amount_cents,
            "total_cents": self.total_cents,
        }


@dataclass
class LineResult:
    index: int
    variant_id: int
    quantity: int
    ok: bool
    error: str | None = None
    product_id: int | None = None
    product_name: str | None = None
    variant_name: str | None = None
    sku: str | None = None
    unit_price_cents: int | None = None
    available_quantity: int | None = None

    @property
    def subtotal_cents(self) -> int:
        return (self.unit_price_cents or 0) * self.quantity

    def to_dict(self) -> dict:
        return {
            "index": self.index,
            "variant_id": self.variant_id,
            "quantity": self.quantity,
            "ok": self.ok,
            "error": self.error,
            "product_name": self.product_name,
            "variant_name": self.variant_name,
            "sku": self.sku,
            "unit_price_cents": self.unit_price_cents,
            "available_quantity": self.available_quantity,
        }


@dataclass
class CartValidationResult:
    lines: list[LineResult] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return bool(self.lines) and all(line.ok for line in self.lines)

    @property
    def errors(self) -> list[dict]:
        return [
            {"index": line.index, "variant_id": line.variant_id, "error": line.error}
            for line in self.lines if not line.ok
        ]

    @property
    def subtotal_cents(self) -> int:
        return sum(line.subtotal_cents for line in self.lines if line.ok)

    def to_dict(self) -> dict:
        return {
            "valid": self.is_valid,
            "lines": [line.to_dict() for line in self.lines],
            "errors": self.errors,
            "subtotal_cents": self.subtotal_cents,
        }


class CartInvalid(ValidationError):
    """Checkout refused: one or more cart lines failed validation."""

    def __init__(self, result: CartValidationResult):
        super().__init__(
            "Some items in your cart are unavailable",
            {f"items[{e['index']}]": e["error"] for e in result.errors},
        )
        self.result = result

    def to_dict(self) -> dict:
        body = super().to_dict()
        body["line_errors"] = self.result.errors
        return body


@dataclass
class CheckoutResult:
    order: Order
    payment_id: int
    payment_url: str | None = None
    payment_error: str | None = None

    def to_dict(self) -> dict:
        return {
            "order": self.order.to_dict(),
            "order_id": self.order.id,
            "order_number": self.order.order_number,
            "payment_id": self.payment_id,
            "payment_url": self.payment_url,
            "payment_error": self.payment_error,
        }


# =============================================================================
# PRICING
# =============================================================================

def _round_half_up_div(numerator: int, denominator: int) -> int:
    return (numerator * 2 + denominator) // (denominator * 2)


def calculate_order_totals(
    subtotal_cents: int,
    shipping_method: str = "standard",
    *,
    discount_amount_cents: int = 0,
    config=None,
) -> OrderTotals:
    """
    standard: STANDARD_SHIPPING_CENTS unless subtotal >= FREE_SHIPPING_THRESHOLD_CENTS
    express:  EXPRESS_SHIPPING_CENTS always
    tax:      TAX_RATE_BPS of the subtotal
    """
    if shipping_method not in SHIPPING_METHODS:
        raise ValidationError(f"Invalid shipping method: {shipping_method}")
    if subtotal_cents < 0:
        raise ValidationError("subtotal must be >= 0")

    config = config if config is not None else current_app.config
    if shipping_method == "express":
        shipping = config.get("EXPRESS_SHIPPING_CENTS", 1999)
    elif subtotal_cents >= config.get("FREE_SHIPPING_THRESHOLD_CENTS", 10000):
        shipping = 0
    else:
        shipping = config.get("STANDARD_SHIPPING_CENTS", 999)

    tax = _round_half_up_div(subtotal_cents * config.get("TAX_RATE_BPS", 800), 10000)
    total = subtotal_cents + shipping + tax - discount_amount_cents

    return OrderTotals(
        subtotal_cents=subtotal_cents,
        shipping_cost_cents=shipping,
        tax_amount_cents=tax,
        discount_amount_cents=discount_amount_cents,
        total_cents=total,
    )


# =============================================================================
# CART VALIDATION
# =============================================================================

def validate_cart(lines: list[CartLineInput]) -> CartValidationResult:
    """Check every line without writing anything. Quantities per variant are summed."""
    result = CartValidationResult()
    if not lines:
        return result

    variant_ids = {line.variant_id for line in lines}
    rows = (
        db.session.query(ProductVariant, Product, InventoryItem)
        .join(Product, ProductVariant.product_id == Product.id)
        .outerjoin(InventoryItem, InventoryItem.variant_id == ProductVariant.id)
        .filter(ProductVariant.id.in_(variant_ids))
        .all()
    )
    by_id = {variant.id: (variant, product, item) for variant, product, item in rows}

    requested: dict[int, int] = {}
    for line in lines:
        requested[line.variant_id] = requested.get(line.variant_id, 0) + line.quantity

    for index, line in enumerate(lines):
        found = by_id.get(line.variant_id)
        if found is None:
            result.lines.append(LineResult(index, line.variant_id, line.quantity, False, "Product not found"))
            continue

        variant, product, item = found
        available = item.available_quantity if item is not None else 0
        entry = LineResult(
            index=index,
            variant_id=variant.id,
            quantity=line.quantity,
            ok=True,
            product_id=product.id,
            product_name=product.name,
            variant_name=variant.name,
            sku=variant.sku,
            unit_price_cents=variant.price_cents,
            available_quantity=available,
        )
        if not product.is_active:
            entry.ok, entry.error = False, f"{product.name} is no longer available"
        elif not variant.is_active:
            entry.ok, entry.error = False, f"{product.name} ({variant.name}) is no longer available"
        elif available < requested[variant.id]:
            entry.ok = False
            entry.error = (
                f"Only {available} left in stock" if available > 0
                else f"{product.name} ({variant.name}) is out of stock"
            )
        result.lines.append(entry)

    return result


# =============================================================================
# ORDER CREATION
# =============================================================================

def generate_order_number(prefix: str | None = None) -> str:
    """<PREFIX>-<base36 epoch millis>-<4 random uppercase alphanumerics>"""
    prefix = prefix or current_app.config.get("ORDER_NUMBER_PREFIX", "ORD")
    millis = int(time.time() * 1000)
    encoded = ""
    while millis:
        millis, rem = divmod(millis, 36)
        encoded = _BASE36[rem] + encoded
    suffix = "".join(secrets.choice(_SUFFIX_ALPHABET) for _ in range(4))
    return f"{prefix}-{encoded or '0'}-{suffix}"


_INITIAL_STATUS = {
    PAYMENT_METHOD_CARD: ORDER_STATUS_DRAFT,
    PAYMENT_METHOD_BANK_TRANSFER: ORDER_STATUS_PENDING_PAYMENT,
    PAYMENT_METHOD_COD: ORDER_STATUS_PENDING_PAYMENT,
}


def _build_order(checkout: CheckoutInput, validation: CartValidationResult,
                 totals: OrderTotals, user_id: int | None) -> Order:
    shipping = checkout.shipping_address.to_snapshot()
    order = Order(
        order_number=generate_order_number(),
        user_id=user_id,
        status=_INITIAL_STATUS[checkout.payment_method],
        subtotal_cents=totals.subtotal_cents,
        shipping_cost_cents=totals.shipping_cost_cents,
        tax_amount_cents=totals.tax_amount_cents,
        discount_amount_cents=totals.discount_amount_cents,
        total_cents=totals.total_cents,
        shipping_method=checkout.shipping_method,
        customer_email=checkout.email,
        customer_phone=checkout.phone or shipping.get("phone"),
        customer_name=shipping.get("recipient_name"),
        shipping_address=shipping,
        billing_address=dict(shipping),
        notes=checkout.notes,
    )
    db.session.add(order)
    db.session.flush()

    for line in validation.lines:
        db.session.add(OrderItem(
            order_id=order.id,
            variant_id=line.variant_id,
            product_id=line.product_id,
            product_name=line.product_name,
            variant_name=line.variant_name,
            sku=line.sku,
            quantity=line.quantity,
            unit_price_cents=line.unit_price_cents,
            subtotal_cents=line.subtotal_cents,
        ))
    db.session.flush()
    return order


def create_order(checkout: CheckoutInput, *, user_id: int | None = None) -> CheckoutResult:
    """
    Create the order, reserve stock and open the payment.

    Raises:
        CartInvalid: a line failed validation (nothing written)
        InsufficientStock: stock vanished between validation and reservation
    """
    def _op():
        validation = validate_cart(checkout.items)
        if not validation.is_valid:
            raise CartInvalid(validation)

        totals = calculate_order_totals(validation.subtotal_cents, checkout.shipping_method)
        order = _build_order(checkout, validation, totals, user_id)

        order_service.add_history(
            order, from_status=None, to_status=order.status,
            notes="Order created", actor_user_id=user_id,
        )
        inventory_service.reserve_order_lines(order, actor_user_id=user_id)

        method = checkout.payment_method
        external_id = None
        if method == PAYMENT_METHOD_BANK_TRANSFER:
            external_id = payment_service.new_reference(payment_service.BANK_TRANSFER_PREFIX)
        elif method == PAYMENT_METHOD_COD:
            external_id = payment_service.new_reference(payment_service.COD_PREFIX)
        payment = payment_service.create_payment_locked(order, method, external_id=external_id)

        if method == PAYMENT_METHOD_COD:
            order_service.transition_locked(
                order, ORDER_STATUS_PAID,
                notes="Cash on delivery - cleared for fulfilment", actor_user_id=user_id,
            )

        db.session.commit()
        return order.id, payment.id

    order_id, payment_id = run_with_retry(_op)
    current_app.logger.info("Checkout created order %s (%s)", order_id, checkout.payment_method)

    payment_url = None
    payment_error = None
    if checkout.payment_method == PAYMENT_METHOD_CARD:
        try:
            session = payment_service.start_card_session(
                payment_id, return_url=checkout.return_url, cancel_url=checkout.cancel_url,
            )
            payment_url = session.payment_url
        except GatewayError as exc:
            payment_error = exc.message

    order = db.session.get(Order, order_id)
    return CheckoutResult(order=order, payment_id=payment_id, payment_url=payment_url, payment_error=payment_error)
