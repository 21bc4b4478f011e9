"""
Inventory ledger tests.

Verifies:
- reserve / release / settle move the right counter and write one movement
- available never goes negative; over-reservation is rejected
- release is floored at zero
- manual adjustments cannot drop below zero or below what is reserved
- order-level reservation is all-or-nothing
"""

import pytest

from storefront.errors import InsufficientStock, InvalidAdjustment, ValidationError
from storefront.extensions import db
from storefront.models import InventoryMovement
from storefront.services import inventory_service

from conftest import inventory_item_for, make_variant


def _movements(item_id):
    return (
        db.session.query(InventoryMovement)
        .filter_by(inventory_item_id=item_id)
        .order_by(InventoryMovement.id.asc())
        .all()
    )


class TestReserveReleaseSettle:

    def test_reserve_holds_units_without_touching_on_hand(self, db_session):
        variant = make_variant(stock=5)
        inventory_service.reserve(variant.id, 2)

        item = inventory_item_for(variant.id)
        assert item.quantity == 5
        assert item.reserved_quantity == 2
        assert item.available_quantity == 3

        last = _movements(item.id)[-1]
        assert last.type == "reserved"
        assert (last.previous_quantity, last.new_quantity, last.quantity) == (0, 2, 2)

    def test_reserve_more_than_available_is_rejected(self, db_session):
        variant = make_variant(stock=5)
        inventory_service.reserve(variant.id, 4)

        with pytest.raises(InsufficientStock) as exc:
            inventory_service.reserve(variant.id, 2)

        assert exc.value.available == 1
        assert exc.value.requested == 2
        item = inventory_item_for(variant.id)
        assert item.reserved_quantity == 4
        assert len(_movements(item.id)) == 2  # purchase + one reservation

    def test_release_is_floored_at_zero(self, db_session):
        variant = make_variant(stock=5)
        inventory_service.reserve(variant.id, 1)
        movement = inventory_service.release(variant.id, 3)

        item = inventory_item_for(variant.id)
        assert item.reserved_quantity == 0
        assert movement.new_quantity - movement.previous_quantity == movement.quantity == -1

    def test_settle_consumes_reservation_and_on_hand(self, db_session):
        variant = make_variant(stock=5)
        inventory_service.reserve(variant.id, 2)
        movement = inventory_service.settle_sale(variant.id, 2)

        item = inventory_item_for(variant.id)
        assert (item.quantity, item.reserved_quantity) == (3, 0)
        assert movement.type == "sale"
        assert movement.quantity == -2

    @pytest.mark.parametrize("qty", [0, -1])
    def test_non_positive_quantity_rejected(self, db_session, qty):
        variant = make_variant(stock=5)
        with pytest.raises(ValidationError):
            inventory_service.reserve(variant.id, qty)


class TestAdjust:

    def test_purchase_increases_on_hand(self, db_session):
        variant = make_variant(stock=0)
        item = inventory_item_for(variant.id)
        movement = inventory_service.adjust(item.id, 12, "Supplier delivery", movement_type="purchase")

        assert movement.type == "purchase"
        assert inventory_item_for(variant.id).quantity == 12

    def test_cannot_adjust_below_zero(self, db_session):
        variant = make_variant(stock=3)
        item = inventory_item_for(variant.id)
        with pytest.raises(InvalidAdjustment):
            inventory_service.adjust(item.id, -4, "Shrinkage")
        assert inventory_item_for(variant.id).quantity == 3

    def test_cannot_adjust_below_reserved(self, db_session):
        variant = make_variant(stock=5)
        inventory_service.reserve(variant.id, 4)
        item = inventory_item_for(variant.id)

        with pytest.raises(InvalidAdjustment, match="reserved"):
            inventory_service.adjust(item.id, -2, "Damaged")

        inventory_service.adjust(item.id, -1, "Damaged")
        item = inventory_item_for(variant.id)
        assert (item.quantity, item.reserved_quantity) == (4, 4)

    def test_reason_required(self, db_session):
        variant = make_variant(stock=3)
        item = inventory_item_for(variant.id)
        with pytest.raises(ValidationError):
            inventory_service.adjust(item.id, 1, "  ")

    def test_every_movement_is_self_consistent(self, db_session):
        variant = make_variant(stock=10)
        item = inventory_item_for(variant.id)
        inventory_service.reserve(variant.id, 3)
        inventory_service.release(variant.id, 1)
        inventory_service.settle_sale(variant.id, 2)
        inventory_service.adjust(item.id, -2, "Count correction")

        for movement in _movements(item.id):
            assert movement.new_quantity - movement.previous_quantity == movement.quantity


class TestInventoryQueries:

    def test_stock_status_filters(self, db_session):
        low = make_variant(stock=2, product_name="Low Item")
        out = make_variant(stock=0, product_name="Gone Item")
        normal = make_variant(stock=50, product_name="Plenty Item")

        def ids(status):
            rows, _ = inventory_service.list_inventory(
                inventory_service.build_inventory_filters(stock_status=status)
            )
            return {row["variant_id"] for row in rows}

        assert ids("low") == {low.id}
        assert ids("out") == {out.id}
        assert ids("normal") == {normal.id}
        assert ids("all") == {low.id, out.id, normal.id}

    def test_unknown_stock_status_rejected(self, db_session):
        with pytest.raises(ValidationError):
            inventory_service.build_inventory_filters(stock_status="weird")

    def test_search_matches_sku(self, db_session):
        make_variant(stock=5, sku="TEE-RED-M")
        make_variant(stock=5, sku="HAT-BLU-L")
        rows, pagination = inventory_service.list_inventory(
            inventory_service.build_inventory_filters(search="tee-red")
        )
        assert [row["variant_sku"] for row in rows] == ["TEE-RED-M"]
        assert pagination["total"] == 1

    def test_stats(self, db_session):
        first = make_variant(stock=2)
        make_variant(stock=0)
        inventory_service.reserve(first.id, 1)

        stats = inventory_service.get_inventory_stats()
        assert stats["total_items"] == 2
        assert stats["out_of_stock_items"] == 1
        assert stats["low_stock_items"] == 2
        assert stats["total_reserved"] == 1
