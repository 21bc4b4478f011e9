# Overview: Service-layer operations for the catalog collaborator (products and variants).

"""
Catalog Service

Only what the order pipeline needs from the catalog:
- create_product / create_variant for staff setup
- get_variant(id) -> price and active flags, read by checkout

Creating a variant creates its InventoryItem (quantity 0) in the same
transaction; a variant never exists without stock counters.
"""
from __future__ import annotations

import re

from ..extensions import db
from ..errors import DuplicateSlug, NotFoundError, ValidationError
from ..models import Product, ProductVariant
from . import inventory_service


_SLUG_RE = re.compile(r"^[a-z0-9]+(?:-[a-z0-9]+)*$")


def slugify(value: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", value.strip().lower())
    return slug.strip("-")


def create_product(*, name: str, slug: str | None = None, is_active: bool = True) -> Product:
    name = (name or "").strip()
    if not name:
        raise ValidationError("Product name is required", {"name": "Product name is required"})

    slug = (slug or slugify(name)).strip()
    if not _SLUG_RE.match(slug):
        raise ValidationError("Invalid slug", {"slug": "Use lowercase letters, digits and hyphens"})

    if db.session.query(Product.id).filter_by(slug=slug).first():
        raise DuplicateSlug(f"A product with slug '{slug}' already exists")

    product = Product(name=name, slug=slug, is_active=bool(is_active))
    db.session.add(product)
    db.session.commit()
    return product


def create_variant(
    *,
    product_id: int,
    name: str,
    sku: str,
    price_cents: int,
    is_active: bool = True,
    low_stock_threshold: int = 5,
) -> ProductVariant:
    """Create a variant and its zero-stock InventoryItem in one transaction."""
    product = db.session.query(Product).filter_by(id=product_id).first()
    if product is None:
        raise NotFoundError("Product not found")

    errors = {}
    if not (name or "").strip():
        errors["name"] = "Variant name is required"
    if not (sku or "").strip():
        errors["sku"] = "SKU is required"
    if not isinstance(price_cents, int) or isinstance(price_cents, bool) or price_cents < 0:
        errors["price_cents"] = "Price must be a non-negative integer (cents)"
    if not isinstance(low_stock_threshold, int) or low_stock_threshold < 0:
        errors["low_stock_threshold"] = "Threshold must be non-negative"
    if errors:
        raise ValidationError("Invalid variant", errors)

    sku = sku.strip()
    if db.session.query(ProductVariant.id).filter_by(sku=sku).first():
        raise DuplicateSlug(f"A variant with SKU '{sku}' already exists")

    variant = ProductVariant(
        product_id=product.id,
        name=name.strip(),
        sku=sku,
        price_cents=price_cents,
        is_active=bool(is_active),
    )
    db.session.add(variant)
    db.session.flush()

    inventory_service.create_inventory_item(variant.id, low_stock_threshold=low_stock_threshold)

    db.session.commit()
    return variant


def get_variant(variant_id: int) -> dict:
    """Checkout's view of a variant: price plus both active flags."""
    variant = db.session.query(ProductVariant).filter_by(id=variant_id).first()
    if variant is None:
        raise NotFoundError("Variant not found")
    product = variant.product
    return {
        "id": variant.id,
        "product_id": product.id,
        "product_name": product.name,
        "name": variant.name,
        "sku": variant.sku,
        "price_cents": variant.price_cents,
        "is_active": variant.is_active,
        "product_is_active": product.is_active,
        "available_quantity": variant.inventory.available_quantity if variant.inventory else 0,
    }
