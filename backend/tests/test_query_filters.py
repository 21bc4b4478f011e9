"""
Filter-spec query builder tests.
"""

import pytest

from storefront.errors import ValidationError
from storefront.extensions import db
from storefront.models import Product, ProductVariant
from storefront.services.query_filters import (
    FieldRef,
    Filter,
    apply_filters,
    paginate,
    parse_pagination,
)

from conftest import make_variant


FIELDS = {
    "name": Product.name,
    "active": Product.is_active,
    "price": ProductVariant.price_cents,
    "search": (Product.name, ProductVariant.sku),
}


def _names(filters):
    query = db.session.query(Product.name).join(ProductVariant, ProductVariant.product_id == Product.id)
    return sorted(row.name for row in apply_filters(query, filters, FIELDS).all())


@pytest.fixture
def catalog(db_session):
    make_variant(product_name="Linen Shirt", sku="LIN-M", price_cents=4500, stock=0)
    make_variant(product_name="Wool Scarf", sku="WOOL-1", price_cents=2500, stock=0)
    make_variant(product_name="Canvas Tote", sku="TOTE-LINEN", price_cents=1800, stock=0,
                 product_active=False)


class TestApplyFilters:

    def test_no_filters_returns_everything(self, catalog):
        assert _names([]) == ["Canvas Tote", "Linen Shirt", "Wool Scarf"]

    def test_filters_are_anded(self, catalog):
        names = _names([Filter("price", "gte", 2000), Filter("active", "eq", True)])
        assert names == ["Linen Shirt", "Wool Scarf"]

    def test_tuple_field_matches_any_column(self, catalog):
        # "linen" is in one product name and in another product's SKU
        assert _names([Filter("search", "ilike", "linen")]) == ["Canvas Tote", "Linen Shirt"]

    def test_in_operator(self, catalog):
        assert _names([Filter("price", "in", [1800, 2500])]) == ["Canvas Tote", "Wool Scarf"]

    def test_field_ref_compares_columns(self, catalog):
        fields = dict(FIELDS, floor=ProductVariant.price_cents)
        query = db.session.query(Product.name).join(ProductVariant, ProductVariant.product_id == Product.id)
        rows = apply_filters(query, [Filter("price", "lte", FieldRef("floor"))], fields).all()
        assert len(rows) == 3

    def test_unknown_field_rejected(self, db_session):
        with pytest.raises(ValidationError, match="Unknown filter field"):
            _names([Filter("colour", "eq", "red")])

    def test_unknown_field_ref_rejected(self, db_session):
        with pytest.raises(ValidationError, match="Unknown filter field: nope"):
            _names([Filter("price", "lt", FieldRef("nope"))])

    def test_unknown_operator_rejected(self, db_session):
        with pytest.raises(ValidationError, match="Unknown filter operator"):
            _names([Filter("price", "between", (1, 2))])


class TestPagination:

    def test_defaults(self):
        assert parse_pagination(None, None) == (1, 20)

    def test_limit_is_capped(self):
        assert parse_pagination("2", "500", max_limit=50) == (2, 50)

    @pytest.mark.parametrize("page,limit", [("0", "10"), ("1", "-5"), ("x", "10"), ("1", "2.5")])
    def test_invalid_values(self, page, limit):
        with pytest.raises(ValidationError):
            parse_pagination(page, limit)

    def test_paginate_reports_totals(self, catalog):
        query = db.session.query(Product).order_by(Product.id)
        rows, pagination = paginate(query, page=2, limit=2)
        assert len(rows) == 1
        assert pagination == {"page": 2, "limit": 2, "total": 3, "total_pages": 2}
