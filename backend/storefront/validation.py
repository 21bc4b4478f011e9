from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any

from .errors import ValidationError
from .models.orders import ORDER_STATUSES
from .models.payments import PAYMENT_METHODS
from .models.inventory import MOVEMENT_ADJUSTMENT, MOVEMENT_PURCHASE, MOVEMENT_RETURN


# Maximum price: 9,999,999.99 (999,999,999 cents)
# This prevents database overflow issues and nonsensical prices
MAX_PRICE_CENTS = 999_999_999

# A single cart line cannot exceed this many units
MAX_LINE_QUANTITY = 1000

SHIPPING_METHODS = ("standard", "express")

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


@dataclass
class CartLineInput:
    variant_id: int
    quantity: int


@dataclass
class AddressInput:
    recipient_name: str
    phone: str
    address_line1: str
    city: str
    postal_code: str
    country: str
    address_line2: str | None = None
    state: str | None = None
    instructions: str | None = None

    def to_snapshot(self) -> dict:
        return {
            "recipient_name": self.recipient_name,
            "phone": self.phone,
            "address_line1": self.address_line1,
            "address_line2": self.address_line2,
            "city": self.city,
            "state": self.state,
            "postal_code": self.postal_code,
            "country": self.country,
            "instructions": self.instructions,
        }


@dataclass
class CheckoutInput:
    items: list[CartLineInput]
    email: str
    shipping_address: AddressInput
    shipping_method: str
    payment_method: str
    phone: str | None = None
    notes: str | None = None
    return_url: str | None = None
    cancel_url: str | None = None


def coerce_int(value: Any, name: str) -> int:
    """
    Strict integer coercion for JSON input.

    Rejects bools, floats, decimals and scientific notation so "1e3" or 2.5
    never silently become quantities.
    """
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            raise ValidationError(f"{name} must be an integer")
        if "e" in stripped.lower():
            raise ValidationError(f"{name} must be a plain integer (scientific notation not allowed)")
        if "." in stripped:
            raise ValidationError(f"{name} must be an integer (no decimals)")
        try:
            return int(stripped)
        except ValueError:
            raise ValidationError(f"{name} must be an integer")
    if isinstance(value, float):
        raise ValidationError(f"{name} must be an integer, not a decimal")
    raise ValidationError(f"{name} must be an integer")


def _clean_str(value: Any) -> str | None:
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def _min_len(errors: dict, key: str, value: str | None, minimum: int, label: str) -> None:
    if value is None or len(value) < minimum:
        errors[key] = f"{label} must be at least {minimum} characters"


def parse_cart_items(raw_items: Any) -> list[CartLineInput]:
    if not isinstance(raw_items, list) or not raw_items:
        raise ValidationError("Cart is empty", {"items": "At least one item is required"})

    lines = []
    errors = {}
    for index, raw in enumerate(raw_items):
        if not isinstance(raw, dict):
            errors[f"items[{index}]"] = "Invalid cart line"
            continue
        try:
            variant_id = coerce_int(raw.get("variant_id"), "variant_id")
            quantity = coerce_int(raw.get("quantity"), "quantity")
        except ValidationError as exc:
            errors[f"items[{index}]"] = exc.message
            continue
        if quantity <= 0:
            errors[f"items[{index}].quantity"] = "Quantity must be at least 1"
            continue
        if quantity > MAX_LINE_QUANTITY:
            errors[f"items[{index}].quantity"] = f"Quantity cannot exceed {MAX_LINE_QUANTITY}"
            continue
        lines.append(CartLineInput(variant_id=variant_id, quantity=quantity))

    if errors:
        raise ValidationError("Invalid cart items", errors)
    return lines


def parse_address(raw: Any, prefix: str = "shipping") -> AddressInput:
    if not isinstance(raw, dict):
        raise ValidationError("Address is required", {prefix: "Address is required"})

    values = {key: _clean_str(raw.get(key)) for key in (
        "recipient_name", "phone", "address_line1", "address_line2",
        "city", "state", "postal_code", "country", "instructions",
    )}

    errors: dict[str, str] = {}
    _min_len(errors, f"{prefix}.recipient_name", values["recipient_name"], 2, "Name")
    _min_len(errors, f"{prefix}.phone", values["phone"], 10, "Phone number")
    _min_len(errors, f"{prefix}.address_line1", values["address_line1"], 5, "Address")
    _min_len(errors, f"{prefix}.city", values["city"], 2, "City")
    _min_len(errors, f"{prefix}.postal_code", values["postal_code"], 3, "Postal code")
    _min_len(errors, f"{prefix}.country", values["country"], 2, "Country")
    if errors:
        raise ValidationError("Invalid address", errors)

    return AddressInput(**values)


def parse_checkout_payload(payload: Any) -> CheckoutInput:
    """
    Validates + normalizes the checkout request body.

    Every field problem is collected first so the client gets the full list
    in one response (field_errors), not just the first failure.
    """
    if not isinstance(payload, dict):
        raise ValidationError("Invalid JSON payload")

    errors: dict[str, str] = {}

    items: list[CartLineInput] = []
    try:
        items = parse_cart_items(payload.get("items"))
    except ValidationError as exc:
        errors.update(exc.field_errors or {"items": exc.message})

    contact = payload.get("contact") or {}
    if not isinstance(contact, dict):
        contact = {}
    email = _clean_str(contact.get("email"))
    if email is None or not _EMAIL_RE.match(email):
        errors["contact.email"] = "Please enter a valid email address"
    phone = _clean_str(contact.get("phone"))

    address = None
    try:
        address = parse_address(payload.get("shipping"))
    except ValidationError as exc:
        errors.update(exc.field_errors)

    shipping_method = _clean_str(payload.get("shipping_method")) or "standard"
    if shipping_method not in SHIPPING_METHODS:
        errors["shipping_method"] = f"Must be one of: {', '.join(SHIPPING_METHODS)}"

    payment_method = _clean_str(payload.get("payment_method"))
    if payment_method not in PAYMENT_METHODS:
        errors["payment_method"] = f"Must be one of: {', '.join(PAYMENT_METHODS)}"

    if errors:
        raise ValidationError("Invalid checkout details", errors)

    return CheckoutInput(
        items=items,
        email=email.lower(),
        phone=phone,
        shipping_address=address,
        shipping_method=shipping_method,
        payment_method=payment_method,
        notes=_clean_str(payload.get("notes")),
        return_url=_clean_str(payload.get("return_url")),
        cancel_url=_clean_str(payload.get("cancel_url")),
    )


def parse_adjustment_payload(payload: Any) -> dict:
    if not isinstance(payload, dict):
        raise ValidationError("Invalid JSON payload")

    adjustment = coerce_int(payload.get("adjustment"), "adjustment")
    if adjustment == 0:
        raise ValidationError("adjustment must be non-zero", {"adjustment": "Adjustment cannot be zero"})

    reason = _clean_str(payload.get("reason"))
    if reason is None:
        raise ValidationError("Reason is required", {"reason": "Reason is required"})

    movement_type = _clean_str(payload.get("type")) or MOVEMENT_ADJUSTMENT
    if movement_type not in (MOVEMENT_ADJUSTMENT, MOVEMENT_PURCHASE, MOVEMENT_RETURN):
        raise ValidationError("Invalid adjustment type", {"type": "Must be one of: adjustment, purchase, return"})

    return {"delta": adjustment, "reason": reason, "movement_type": movement_type}


def parse_status_payload(payload: Any) -> tuple[str, str | None]:
    if not isinstance(payload, dict):
        raise ValidationError("Invalid JSON payload")
    status = _clean_str(payload.get("status"))
    if status not in ORDER_STATUSES:
        raise ValidationError("Invalid status", {"status": f"Must be one of: {', '.join(ORDER_STATUSES)}"})
    return status, _clean_str(payload.get("notes"))


def enforce_price_cents(price_cents: Any) -> int:
    price = coerce_int(price_cents, "price_cents")
    if price < 0:
        raise ValidationError("price_cents must be >= 0")
    if price > MAX_PRICE_CENTS:
        raise ValidationError(f"price_cents cannot exceed {MAX_PRICE_CENTS}")
    return price
