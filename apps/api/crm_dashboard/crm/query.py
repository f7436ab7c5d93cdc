"""Optional-clause filtering, generic filter tuples and offset pagination.

Every list endpoint funnels through ``FilterBuilder`` and ``paginate`` so the
"absent parameter adds no constraint" rule and the page/total arithmetic are
identical across entities.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any

from sqlalchemy import ColumnElement, Select, and_, func, or_, select
from sqlalchemy.orm import Session

from crm_dashboard.core.errors import ValidationError
from crm_dashboard.auth.models import as_utc


logger = logging.getLogger("crm_dashboard.query")

QUERY_OPERATORS = frozenset({"equals", "contains", "gt", "lt", "in"})


def is_absent(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, tuple, set, frozenset)):
        return len(value) == 0
    return False


def _like_pattern(term: str) -> str:
    escaped = term.strip().lower().replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


class FilterBuilder:
    """Collects clauses for supplied parameters only and ANDs them together."""

    def __init__(self) -> None:
        self._clauses: list[ColumnElement[bool]] = []

    def equals(self, column: Any, value: Any) -> FilterBuilder:
        if not is_absent(value):
            self._clauses.append(column == value)
        return self

    def icontains_any(self, columns: Sequence[Any], term: str | None) -> FilterBuilder:
        if not is_absent(term):
            pattern = _like_pattern(term or "")
            self._clauses.append(or_(*(func.lower(column).like(pattern, escape="\\") for column in columns)))
        return self

    def gte(self, column: Any, value: Any) -> FilterBuilder:
        if not is_absent(value):
            self._clauses.append(column >= value)
        return self

    def lte(self, column: Any, value: Any) -> FilterBuilder:
        if not is_absent(value):
            self._clauses.append(column <= value)
        return self

    def in_(self, column: Any, values: Iterable[Any] | None) -> FilterBuilder:
        items = list(values) if values is not None else []
        if items:
            self._clauses.append(column.in_(items))
        return self

    def where(self, clause: ColumnElement[bool]) -> FilterBuilder:
        self._clauses.append(clause)
        return self

    @property
    def clauses(self) -> list[ColumnElement[bool]]:
        return list(self._clauses)

    def apply(self, stmt: Select[Any]) -> Select[Any]:
        if not self._clauses:
            return stmt
        return stmt.where(and_(*self._clauses))


@dataclass(frozen=True, slots=True)
class PageRequest:
    page: int = 1
    limit: int = 10

    def __post_init__(self) -> None:
        if self.page < 1 or self.limit < 1:
            raise ValidationError(
                "page and limit must be positive",
                details=[{"path": "page" if self.page < 1 else "limit", "message": "must be >= 1"}],
            )

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.limit


def paginate(
    session: Session,
    stmt: Select[Any],
    page: PageRequest,
    *,
    order_by: Sequence[Any],
) -> tuple[list[Any], int]:
    """Count and fetch one page in the same session; returns (rows, total)."""
    count_stmt = select(func.count()).select_from(stmt.order_by(None).subquery())
    total = int(session.scalar(count_stmt) or 0)
    rows = session.scalars(stmt.order_by(*order_by).offset(page.offset).limit(page.limit)).unique().all()
    return list(rows), total


@dataclass(frozen=True, slots=True)
class FilterField:
    column: Any
    python_type: type


def _coerce(value: Any, python_type: type, field: str) -> Any:
    try:
        if python_type is Decimal:
            if isinstance(value, bool):
                raise TypeError("boolean is not a number")
            return Decimal(str(value))
        if python_type is uuid.UUID:
            return value if isinstance(value, uuid.UUID) else uuid.UUID(str(value))
        if python_type is datetime:
            parsed = value if isinstance(value, datetime) else datetime.fromisoformat(str(value))
            return as_utc(parsed)
        if python_type is str:
            if not isinstance(value, (str, int, float)) or isinstance(value, bool):
                raise TypeError("expected a string")
            return str(value)
    except (InvalidOperation, TypeError, ValueError) as exc:
        raise ValidationError(
            f"Invalid value for field '{field}'",
            details=[{"path": field, "message": str(exc) or "invalid value"}],
        )
    return value


def build_filter_clause(field_map: Mapping[str, FilterField], field: str, operator: str, value: Any) -> ColumnElement[bool]:
    target = field_map[field]
    column = target.column
    if operator == "in":
        if not isinstance(value, (list, tuple)) or not value:
            raise ValidationError(
                "Operator 'in' requires a non-empty list",
                details=[{"path": field, "message": "expected a non-empty list"}],
            )
        return column.in_([_coerce(item, target.python_type, field) for item in value])
    if operator == "contains":
        if target.python_type is not str:
            raise ValidationError(
                f"Operator 'contains' is not supported for field '{field}'",
                details=[{"path": field, "message": "contains requires a text field"}],
            )
        return func.lower(column).like(_like_pattern(_coerce(value, str, field)), escape="\\")

    coerced = _coerce(value, target.python_type, field)
    if operator == "equals":
        return column == coerced
    if operator == "gt":
        return column > coerced
    return column < coerced


def apply_query_filters(
    stmt: Select[Any],
    filters: Iterable[Any],
    field_map: Mapping[str, FilterField],
    *,
    strict: bool,
) -> Select[Any]:
    """Apply (field, operator, value) tuples; unknown fields or operators raise when strict, else are skipped."""
    builder = FilterBuilder()
    for item in filters:
        field, operator = item.field, item.operator
        if field not in field_map or operator not in QUERY_OPERATORS:
            if strict:
                raise ValidationError(
                    "Unsupported filter",
                    details=[
                        {
                            "path": field,
                            "message": f"operator '{operator}' on field '{field}' is not supported",
                        }
                    ],
                )
            logger.warning("query.filter_skipped", extra={"field": field, "operator": operator})
            continue
        builder.where(build_filter_clause(field_map, field, operator, item.value))
    return builder.apply(stmt)


def resolve_sort(
    sort_fields: Mapping[str, Any],
    sort_by: str,
    sort_order: str,
    *,
    strict: bool,
    default: str = "created_at",
) -> Any:
    column = sort_fields.get(sort_by)
    if column is None:
        if strict:
            raise ValidationError(
                f"Unsupported sort field '{sort_by}'",
                details=[{"path": "sort_by", "message": f"must be one of {sorted(sort_fields)}"}],
            )
        logger.warning("query.sort_skipped", extra={"field": sort_by})
        column = sort_fields[default]
    return column.asc() if sort_order == "asc" else column.desc()
