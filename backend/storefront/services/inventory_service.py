# Overview: Service-layer operations for inventory; the only writer of stock counters.

"""
Storefront Inventory Ledger Invariants (authoritative)

Counters (one InventoryItem per variant):
- quantity           on-hand units, INCLUDING reserved units
- reserved_quantity  units held for orders that are not yet paid
- available          quantity - reserved_quantity (what customers can buy)

Business invariants:
- 0 <= reserved_quantity <= quantity at all times.
- Every counter change appends exactly one InventoryMovement in the same
  DB transaction, with new_quantity - previous_quantity == quantity.
- reserved / released movements record the reserved_quantity before and
  after; sale / adjustment / purchase / return movements record on-hand.

Operations:
- reserve      reserved += qty              (InsufficientStock if available < qty)
- release      reserved -= qty, floored at 0
- settle_sale  quantity -= qty, reserved -= qty (reservation consumed)
- adjust       quantity += delta            (InvalidAdjustment if the result
                                             drops below 0 or below reserved)

Concurrency:
- Every operation locks the item row (SELECT ... FOR UPDATE) for its
  read-modify-write. InventoryItem.version_id catches lost updates on
  databases without row locks; run_with_retry re-runs the unit of work.
- *_locked functions never commit. They are the building blocks for larger
  transactions (checkout, webhook). The public wrappers commit.
- Order-level helpers lock items in ascending variant order.
"""

from __future__ import annotations

from collections import OrderedDict

from flask import current_app
from sqlalchemy import func

from ..extensions import db
from ..errors import InsufficientStock, InvalidAdjustment, NotFoundError, ValidationError
from ..models import InventoryItem, InventoryMovement, Product, ProductVariant
from ..models.inventory import (
    MOVEMENT_ADJUSTMENT,
    MOVEMENT_PURCHASE,
    MOVEMENT_RELEASED,
    MOVEMENT_RESERVED,
    MOVEMENT_RETURN,
    MOVEMENT_SALE,
)
from ..models.orders import STOCK_RELEASED, STOCK_RESERVED, STOCK_RETURNED, STOCK_SETTLED
from .concurrency import lock_for_update, run_with_retry
from .query_filters import FieldRef, Filter, apply_filters, paginate


ADJUSTMENT_TYPES = (MOVEMENT_ADJUSTMENT, MOVEMENT_PURCHASE, MOVEMENT_RETURN)


# =============================================================================
# ROW ACCESS
# =============================================================================

def _get_item_for_variant(variant_id: int, *, lock: bool = True) -> InventoryItem:
    query = db.session.query(InventoryItem).filter_by(variant_id=variant_id)
    if lock:
        query = lock_for_update(query)
    item = query.first()
    if item is None:
        raise NotFoundError(f"Inventory item for variant {variant_id} not found")
    return item


def _get_item(inventory_item_id: int, *, lock: bool = True) -> InventoryItem:
    query = db.session.query(InventoryItem).filter_by(id=inventory_item_id)
    if lock:
        query = lock_for_update(query)
    item = query.first()
    if item is None:
        raise NotFoundError("Inventory item not found")
    return item


def _record_movement(
    item: InventoryItem,
    *,
    movement_type: str,
    quantity: int,
    previous_quantity: int,
    new_quantity: int,
    reference_type: str | None,
    reference_id: int | None,
    notes: str | None,
    actor_user_id: int | None,
) -> InventoryMovement:
    movement = InventoryMovement(
        inventory_item_id=item.id,
        type=movement_type,
        quantity=quantity,
        previous_quantity=previous_quantity,
        new_quantity=new_quantity,
        reference_type=reference_type,
        reference_id=reference_id,
        notes=notes,
        performed_by_user_id=actor_user_id,
    )
    db.session.add(movement)
    return movement


def _require_positive(qty: int) -> None:
    if not isinstance(qty, int) or isinstance(qty, bool) or qty <= 0:
        raise ValidationError("quantity must be a positive integer")


# =============================================================================
# LEDGER OPERATIONS (no commit)
# =============================================================================

def reserve_locked(
    variant_id: int,
    qty: int,
    *,
    reference_type: str | None = None,
    reference_id: int | None = None,
    notes: str | None = None,
    actor_user_id: int | None = None,
) -> InventoryMovement:
    _require_positive(qty)
    item = _get_item_for_variant(variant_id)

    available = item.quantity - item.reserved_quantity
    if available < qty:
        raise InsufficientStock(
            f"Insufficient stock for variant {variant_id}: requested {qty}, available {available}",
            variant_id=variant_id,
            requested=qty,
            available=available,
        )

    previous = item.reserved_quantity
    item.reserved_quantity = previous + qty
    movement = _record_movement(
        item,
        movement_type=MOVEMENT_RESERVED,
        quantity=qty,
        previous_quantity=previous,
        new_quantity=item.reserved_quantity,
        reference_type=reference_type,
        reference_id=reference_id,
        notes=notes,
        actor_user_id=actor_user_id,
    )
    db.session.flush()
    return movement


def release_locked(
    variant_id: int,
    qty: int,
    *,
    reference_type: str | None = None,
    reference_id: int | None = None,
    notes: str | None = None,
    actor_user_id: int | None = None,
) -> InventoryMovement:
    _require_positive(qty)
    item = _get_item_for_variant(variant_id)

    previous = item.reserved_quantity
    if qty > previous:
        current_app.logger.warning(
            "Release of %s exceeds reserved %s for variant %s", qty, previous, variant_id
        )
    # Never below zero, even if over-released
    item.reserved_quantity = max(0, previous - qty)
    movement = _record_movement(
        item,
        movement_type=MOVEMENT_RELEASED,
        quantity=item.reserved_quantity - previous,
        previous_quantity=previous,
        new_quantity=item.reserved_quantity,
        reference_type=reference_type,
        reference_id=reference_id,
        notes=notes,
        actor_user_id=actor_user_id,
    )
    db.session.flush()
    return movement


def settle_sale_locked(
    variant_id: int,
    qty: int,
    *,
    reference_type: str | None = None,
    reference_id: int | None = None,
    notes: str | None = None,
    actor_user_id: int | None = None,
) -> InventoryMovement:
    _require_positive(qty)
    item = _get_item_for_variant(variant_id)

    if item.quantity < qty:
        raise InsufficientStock(
            f"Cannot settle {qty} units of variant {variant_id}: only {item.quantity} on hand",
            variant_id=variant_id,
            requested=qty,
            available=item.quantity,
        )

    previous = item.quantity
    item.quantity = previous - qty
    item.reserved_quantity = max(0, item.reserved_quantity - qty)
    movement = _record_movement(
        item,
        movement_type=MOVEMENT_SALE,
        quantity=-qty,
        previous_quantity=previous,
        new_quantity=item.quantity,
        reference_type=reference_type,
        reference_id=reference_id,
        notes=notes,
        actor_user_id=actor_user_id,
    )
    db.session.flush()
    return movement


def adjust_locked(
    inventory_item_id: int,
    delta: int,
    reason: str,
    *,
    movement_type: str = MOVEMENT_ADJUSTMENT,
    reference_type: str | None = "manual_adjustment",
    reference_id: int | None = None,
    actor_user_id: int | None = None,
) -> InventoryMovement:
    if not isinstance(delta, int) or isinstance(delta, bool) or delta == 0:
        raise ValidationError("adjustment must be a non-zero integer")
    if movement_type not in ADJUSTMENT_TYPES:
        raise ValidationError(f"Invalid adjustment type: {movement_type}. Must be one of {list(ADJUSTMENT_TYPES)}")
    if not reason or not reason.strip():
        raise ValidationError("Reason is required", {"reason": "Reason is required"})

    item = _get_item(inventory_item_id)

    new_quantity = item.quantity + delta
    if new_quantity < 0:
        raise InvalidAdjustment("Cannot adjust stock below zero")
    if new_quantity < item.reserved_quantity:
        raise InvalidAdjustment(
            f"Cannot adjust stock below the reserved quantity ({item.reserved_quantity})"
        )

    previous = item.quantity
    item.quantity = new_quantity
    movement = _record_movement(
        item,
        movement_type=movement_type,
        quantity=delta,
        previous_quantity=previous,
        new_quantity=new_quantity,
        reference_type=reference_type,
        reference_id=reference_id,
        notes=reason.strip(),
        actor_user_id=actor_user_id,
    )
    db.session.flush()
    return movement


# =============================================================================
# PUBLIC LEDGER OPERATIONS (own transaction)
# =============================================================================

def reserve(variant_id: int, qty: int, **kwargs) -> InventoryMovement:
    def _op():
        movement = reserve_locked(variant_id, qty, **kwargs)
        db.session.commit()
        return movement
    return run_with_retry(_op)


def release(variant_id: int, qty: int, **kwargs) -> InventoryMovement:
    def _op():
        movement = release_locked(variant_id, qty, **kwargs)
        db.session.commit()
        return movement
    return run_with_retry(_op)


def settle_sale(variant_id: int, qty: int, **kwargs) -> InventoryMovement:
    def _op():
        movement = settle_sale_locked(variant_id, qty, **kwargs)
        db.session.commit()
        return movement
    return run_with_retry(_op)


def adjust(inventory_item_id: int, delta: int, reason: str, **kwargs) -> InventoryMovement:
    def _op():
        movement = adjust_locked(inventory_item_id, delta, reason, **kwargs)
        db.session.commit()
        return movement
    return run_with_retry(_op)


# =============================================================================
# ORDER-LEVEL HELPERS (no commit)
# =============================================================================

def _order_quantities(order) -> "OrderedDict[int, int]":
    """variant_id -> total units on the order, ascending variant id (lock order)."""
    totals: dict[int, int] = {}
    for line in order.items:
        if line.variant_id is None:
            continue
        totals[line.variant_id] = totals.get(line.variant_id, 0) + line.quantity
    return OrderedDict(sorted(totals.items()))


def find_order_shortages(order) -> list[tuple[int, int, int]]:
    """
    Lock every item the order needs and list (variant_id, requested, available)
    for lines that cannot be reserved right now. Mutates nothing.
    """
    shortages = []
    for variant_id, qty in _order_quantities(order).items():
        item = _get_item_for_variant(variant_id)
        if item.available_quantity < qty:
            shortages.append((variant_id, qty, item.available_quantity))
    return shortages


def reserve_order_lines(order, *, actor_user_id: int | None = None, notes: str | None = None) -> None:
    """
    Reserve every line of an order, all-or-nothing.

    All rows are locked and checked before the first counter moves, so an
    InsufficientStock on the last line leaves nothing half-reserved.
    """
    shortages = find_order_shortages(order)
    if shortages:
        variant_id, qty, available = shortages[0]
        raise InsufficientStock(
            f"Insufficient stock for variant {variant_id}: requested {qty}, available {available}",
            variant_id=variant_id,
            requested=qty,
            available=available,
        )

    for variant_id, qty in _order_quantities(order).items():
        reserve_locked(
            variant_id,
            qty,
            reference_type="order",
            reference_id=order.id,
            notes=notes or f"Reserved for order {order.order_number}",
            actor_user_id=actor_user_id,
        )
    order.stock_state = STOCK_RESERVED


def release_order_lines(order, *, actor_user_id: int | None = None, notes: str | None = None) -> bool:
    """Give back the order's reservation. No-op unless the order holds one."""
    if order.stock_state != STOCK_RESERVED:
        return False
    for variant_id, qty in _order_quantities(order).items():
        release_locked(
            variant_id,
            qty,
            reference_type="order",
            reference_id=order.id,
            notes=notes or f"Released - order {order.order_number}",
            actor_user_id=actor_user_id,
        )
    order.stock_state = STOCK_RELEASED
    return True


def settle_order_lines(order, *, actor_user_id: int | None = None, notes: str | None = None) -> None:
    """Convert the order's reservation into sales, re-reserving first if it was released."""
    if order.stock_state == STOCK_SETTLED:
        return
    if order.stock_state != STOCK_RESERVED:
        reserve_order_lines(order, actor_user_id=actor_user_id, notes=f"Re-reserved for order {order.order_number}")
    for variant_id, qty in _order_quantities(order).items():
        settle_sale_locked(
            variant_id,
            qty,
            reference_type="order",
            reference_id=order.id,
            notes=notes or f"Sold - order {order.order_number}",
            actor_user_id=actor_user_id,
        )
    order.stock_state = STOCK_SETTLED


def return_order_lines(order, *, actor_user_id: int | None = None, notes: str | None = None) -> bool:
    """Put settled stock back on hand (cancellation after payment)."""
    if order.stock_state != STOCK_SETTLED:
        return False
    for variant_id, qty in _order_quantities(order).items():
        item = _get_item_for_variant(variant_id)
        adjust_locked(
            item.id,
            qty,
            notes or f"Returned - order {order.order_number} cancelled",
            movement_type=MOVEMENT_RETURN,
            reference_type="order",
            reference_id=order.id,
            actor_user_id=actor_user_id,
        )
    order.stock_state = STOCK_RETURNED
    return True


def restore_order_stock(order, *, actor_user_id: int | None = None, notes: str | None = None) -> None:
    """Undo whatever the order holds: release a reservation or return sold units."""
    if not release_order_lines(order, actor_user_id=actor_user_id, notes=notes):
        return_order_lines(order, actor_user_id=actor_user_id, notes=notes)


# =============================================================================
# ADMIN / READ
# =============================================================================

def create_inventory_item(variant_id: int, *, low_stock_threshold: int = 5) -> InventoryItem:
    """Create the zero-stock item for a new variant (caller commits)."""
    item = InventoryItem(
        variant_id=variant_id,
        quantity=0,
        reserved_quantity=0,
        low_stock_threshold=low_stock_threshold,
    )
    db.session.add(item)
    db.session.flush()
    return item


def update_low_stock_threshold(inventory_item_id: int, threshold: int) -> InventoryItem:
    if not isinstance(threshold, int) or isinstance(threshold, bool) or threshold < 0:
        raise ValidationError("Threshold must be non-negative", {"threshold": "Threshold must be non-negative"})

    def _op():
        item = _get_item(inventory_item_id)
        item.low_stock_threshold = threshold
        db.session.commit()
        return item

    return run_with_retry(_op)


def get_inventory_item(inventory_item_id: int) -> InventoryItem:
    return _get_item(inventory_item_id, lock=False)


def get_movements(inventory_item_id: int, *, page: int = 1, limit: int = 50) -> tuple[list[InventoryMovement], dict]:
    _get_item(inventory_item_id, lock=False)
    query = db.session.query(InventoryMovement).filter_by(
        inventory_item_id=inventory_item_id
    ).order_by(InventoryMovement.created_at.desc(), InventoryMovement.id.desc())
    return paginate(query, page=page, limit=limit)


_AVAILABLE = InventoryItem.quantity - InventoryItem.reserved_quantity

INVENTORY_FIELDS = {
    "search": (ProductVariant.name, ProductVariant.sku, Product.name),
    "available": _AVAILABLE,
    "low_stock_threshold": InventoryItem.low_stock_threshold,
    "quantity": InventoryItem.quantity,
    "reserved_quantity": InventoryItem.reserved_quantity,
    "product_id": Product.id,
}


def build_inventory_filters(*, search: str | None = None, stock_status: str | None = None) -> list[Filter]:
    filters: list[Filter] = []
    if search:
        filters.append(Filter("search", "ilike", search))

    if stock_status in (None, "", "all"):
        pass
    elif stock_status == "low":
        filters.append(Filter("available", "lte", FieldRef("low_stock_threshold")))
        filters.append(Filter("available", "gt", 0))
    elif stock_status == "out":
        filters.append(Filter("available", "lte", 0))
    elif stock_status == "normal":
        filters.append(Filter("available", "gt", FieldRef("low_stock_threshold")))
    else:
        raise ValidationError("stock_status must be one of: all, low, out, normal")
    return filters


def _inventory_query():
    return (
        db.session.query(InventoryItem, ProductVariant, Product)
        .join(ProductVariant, InventoryItem.variant_id == ProductVariant.id)
        .join(Product, ProductVariant.product_id == Product.id)
    )


def _inventory_row(item: InventoryItem, variant: ProductVariant, product: Product) -> dict:
    row = item.to_dict()
    row.update({
        "variant_name": variant.name,
        "variant_sku": variant.sku,
        "variant_price_cents": variant.price_cents,
        "product_id": product.id,
        "product_name": product.name,
        "product_slug": product.slug,
    })
    return row


def list_inventory(filters: list[Filter], *, page: int = 1, limit: int = 20) -> tuple[list[dict], dict]:
    query = apply_filters(_inventory_query(), filters, INVENTORY_FIELDS)
    query = query.order_by(InventoryItem.updated_at.desc(), InventoryItem.id.desc())
    rows, pagination = paginate(query, page=page, limit=limit)
    return [_inventory_row(*row) for row in rows], pagination


def get_low_stock_alerts(limit: int = 10) -> list[dict]:
    query = apply_filters(
        _inventory_query(),
        [Filter("available", "lte", FieldRef("low_stock_threshold"))],
        INVENTORY_FIELDS,
    ).order_by(_AVAILABLE.asc(), InventoryItem.id.asc())
    return [_inventory_row(*row) for row in query.limit(limit).all()]


def get_inventory_stats() -> dict:
    total_items = db.session.query(func.count(InventoryItem.id)).scalar() or 0
    low_stock = db.session.query(func.count(InventoryItem.id)).filter(
        _AVAILABLE <= InventoryItem.low_stock_threshold
    ).scalar() or 0
    out_of_stock = db.session.query(func.count(InventoryItem.id)).filter(_AVAILABLE <= 0).scalar() or 0
    total_reserved = db.session.query(
        func.coalesce(func.sum(InventoryItem.reserved_quantity), 0)
    ).scalar() or 0
    return {
        "total_items": int(total_items),
        "low_stock_items": int(low_stock),
        "out_of_stock_items": int(out_of_stock),
        "total_reserved": int(total_reserved),
    }
