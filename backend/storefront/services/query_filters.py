# Overview: Explicit filter-spec objects and the query builder that consumes them.

"""
Filter specs for list endpoints.

Instead of growing a query through conditional .filter() chains inside each
route, callers build a list of Filter(field, operator, value) objects and
hand it to apply_filters() together with a field map that names which
column (or columns) each field refers to.

- A field mapped to a tuple of columns is matched with OR across them
  (used for free-text search).
- A value of FieldRef("other_field") compares against another mapped column
  instead of a literal.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable, Mapping

from sqlalchemy import and_, or_

from ..errors import ValidationError


@dataclass(frozen=True)
class FieldRef:
    """Right-hand side that points at another mapped field."""
    field: str


@dataclass(frozen=True)
class Filter:
    field: str
    operator: str
    value: Any = None


def _ilike(column, value):
    return column.ilike(f"%{value}%")


OPERATORS = {
    "eq": lambda column, value: column == value,
    "ne": lambda column, value: column != value,
    "lt": lambda column, value: column < value,
    "lte": lambda column, value: column <= value,
    "gt": lambda column, value: column > value,
    "gte": lambda column, value: column >= value,
    "in": lambda column, value: column.in_(list(value)),
    "ilike": _ilike,
    "is_null": lambda column, value: column.is_(None) if value else column.isnot(None),
}


def _resolve_value(value, field_map: Mapping[str, Any]):
    if isinstance(value, FieldRef):
        if value.field not in field_map:
            raise ValidationError(f"Unknown filter field: {value.field}")
        return field_map[value.field]
    return value


def build_condition(flt: Filter, field_map: Mapping[str, Any]):
    if flt.field not in field_map:
        raise ValidationError(f"Unknown filter field: {flt.field}")
    op = OPERATORS.get(flt.operator)
    if op is None:
        raise ValidationError(f"Unknown filter operator: {flt.operator}")

    target = field_map[flt.field]
    value = _resolve_value(flt.value, field_map)

    if isinstance(target, (tuple, list)):
        return or_(*[op(column, value) for column in target])
    return op(target, value)


def apply_filters(query, filters: Iterable[Filter], field_map: Mapping[str, Any]):
    """AND together every filter in the list and apply it to query."""
    conditions = [build_condition(flt, field_map) for flt in filters]
    if not conditions:
        return query
    return query.filter(and_(*conditions))


def parse_pagination(page, limit, *, default_limit: int = 20, max_limit: int = 100) -> tuple[int, int]:
    try:
        page = int(page) if page is not None else 1
        limit = int(limit) if limit is not None else default_limit
    except (TypeError, ValueError):
        raise ValidationError("page and limit must be integers")
    if page < 1 or limit < 1:
        raise ValidationError("page and limit must be positive")
    return page, min(limit, max_limit)


def paginate(query, *, page: int, limit: int) -> tuple[list, dict]:
    total = query.order_by(None).count()
    rows = query.limit(limit).offset((page - 1) * limit).all()
    return rows, {
        "page": page,
        "limit": limit,
        "total": total,
        "total_pages": (total + limit - 1) // limit,
    }
