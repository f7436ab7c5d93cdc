from __future__ import annotations

import math
from collections.abc import Generator
from decimal import Decimal

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from crm_dashboard.core.database import Base
from crm_dashboard.core.errors import ValidationError
from crm_dashboard.crm.models import Customer, Product
from crm_dashboard.crm.query import (
    FilterBuilder,
    FilterField,
    PageRequest,
    apply_query_filters,
    is_absent,
    paginate,
)
from crm_dashboard.crm.schemas import QueryFilter


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


def _seed_customers(session: Session, count: int) -> list[Customer]:
    customers = [
        Customer(
            name=f"Customer {index:02d}",
            email=f"customer{index:02d}@example.com",
            company="Acme" if index % 2 == 0 else "Globex",
            status="active" if index % 3 else "prospect",
            type="vip" if index % 4 == 0 else "regular",
        )
        for index in range(count)
    ]
    session.add_all(customers)
    session.commit()
    return customers


@pytest.mark.parametrize("value", [None, "", "   ", [], ()])
def test_absent_values_are_detected(value: object) -> None:
    assert is_absent(value)


@pytest.mark.parametrize("value", [0, Decimal("0"), "x", ["a"], False])
def test_present_values_are_not_absent(value: object) -> None:
    assert not is_absent(value)


def test_absent_parameters_add_no_clauses() -> None:
    builder = (
        FilterBuilder()
        .equals(Customer.status, None)
        .equals(Customer.type, "")
        .icontains_any([Customer.name, Customer.email], "  ")
        .gte(Product.price, None)
        .lte(Product.price, None)
        .in_(Customer.id, [])
    )
    assert builder.clauses == []

    stmt = select(Customer)
    assert builder.apply(stmt) is stmt


def test_adding_a_filter_only_narrows_the_result(db_session: Session) -> None:
    _seed_customers(db_session, 12)

    unfiltered = set(db_session.scalars(FilterBuilder().equals(Customer.status, None).apply(select(Customer.id))).all())
    assert len(unfiltered) == 12

    by_status = set(
        db_session.scalars(FilterBuilder().equals(Customer.status, "active").apply(select(Customer.id))).all()
    )
    by_status_and_type = set(
        db_session.scalars(
            FilterBuilder().equals(Customer.status, "active").equals(Customer.type, "vip").apply(select(Customer.id))
        ).all()
    )
    assert by_status_and_type <= by_status <= unfiltered
    assert len(by_status) == 8


def test_search_is_case_insensitive_across_columns(db_session: Session) -> None:
    _seed_customers(db_session, 6)

    rows = db_session.scalars(
        FilterBuilder().icontains_any([Customer.name, Customer.company], "ACME").apply(select(Customer))
    ).all()
    assert len(rows) == 3
    assert all(row.company == "Acme" for row in rows)


def test_search_treats_wildcards_literally(db_session: Session) -> None:
    _seed_customers(db_session, 4)

    rows = db_session.scalars(FilterBuilder().icontains_any([Customer.name], "%").apply(select(Customer))).all()
    assert rows == []


@pytest.mark.parametrize("count,limit", [(0, 10), (7, 3), (9, 3), (10, 10), (11, 4)])
def test_pages_cover_every_row_exactly_once(db_session: Session, count: int, limit: int) -> None:
    _seed_customers(db_session, count)
    ordering = [Customer.created_at.desc(), Customer.id.desc()]
    expected = list(db_session.scalars(select(Customer.id).order_by(*ordering)).all())

    first_rows, total = paginate(db_session, select(Customer), PageRequest(page=1, limit=limit), order_by=ordering)
    assert total == count
    total_pages = math.ceil(total / limit) if total else 0

    collected = [row.id for row in first_rows]
    for page in range(2, total_pages + 1):
        rows, page_total = paginate(db_session, select(Customer), PageRequest(page=page, limit=limit), order_by=ordering)
        assert page_total == count
        collected.extend(row.id for row in rows)

    assert collected == expected


def test_page_past_the_end_is_empty(db_session: Session) -> None:
    _seed_customers(db_session, 3)

    rows, total = paginate(
        db_session,
        select(Customer),
        PageRequest(page=5, limit=2),
        order_by=[Customer.created_at.desc(), Customer.id.desc()],
    )
    assert rows == []
    assert total == 3


def test_page_request_rejects_non_positive_values() -> None:
    with pytest.raises(ValidationError):
        PageRequest(page=0, limit=10)
    with pytest.raises(ValidationError):
        PageRequest(page=1, limit=0)


_PRODUCT_FIELDS = {
    "name": FilterField(Product.name, str),
    "price": FilterField(Product.price, Decimal),
    "status": FilterField(Product.status, str),
}


def _seed_products(session: Session) -> None:
    session.add_all(
        [
            Product(name="Basic Plan", price=Decimal("10.00"), status="active"),
            Product(name="Pro Plan", price=Decimal("50.00"), status="active"),
            Product(name="Legacy Plan", price=Decimal("30.00"), status="inactive"),
        ]
    )
    session.commit()


def test_generic_filters_map_to_single_clauses(db_session: Session) -> None:
    _seed_products(db_session)

    stmt = apply_query_filters(
        select(Product),
        [
            QueryFilter(field="price", operator="gt", value=20),
            QueryFilter(field="status", operator="in", value=["active", "inactive"]),
            QueryFilter(field="name", operator="contains", value="plan"),
        ],
        _PRODUCT_FIELDS,
        strict=True,
    )
    names = sorted(row.name for row in db_session.scalars(stmt).all())
    assert names == ["Legacy Plan", "Pro Plan"]

    stmt = apply_query_filters(
        select(Product),
        [QueryFilter(field="price", operator="lt", value="30"), QueryFilter(field="status", operator="equals", value="active")],
        _PRODUCT_FIELDS,
        strict=True,
    )
    assert [row.name for row in db_session.scalars(stmt).all()] == ["Basic Plan"]


def test_unknown_operator_is_rejected_when_strict() -> None:
    with pytest.raises(ValidationError) as exc_info:
        apply_query_filters(
            select(Product),
            [QueryFilter(field="price", operator="between", value=[1, 2])],
            _PRODUCT_FIELDS,
            strict=True,
        )
    assert exc_info.value.status_code == 400


def test_unknown_operator_is_skipped_when_lenient(db_session: Session) -> None:
    _seed_products(db_session)

    stmt = apply_query_filters(
        select(Product),
        [
            QueryFilter(field="price", operator="between", value=[1, 2]),
            QueryFilter(field="secret", operator="equals", value="x"),
        ],
        _PRODUCT_FIELDS,
        strict=False,
    )
    assert len(db_session.scalars(stmt).all()) == 3


def test_filter_values_are_type_checked() -> None:
    with pytest.raises(ValidationError):
        apply_query_filters(
            select(Product),
            [QueryFilter(field="price", operator="gt", value="cheap")],
            _PRODUCT_FIELDS,
            strict=True,
        )
    with pytest.raises(ValidationError):
        apply_query_filters(
            select(Product),
            [QueryFilter(field="price", operator="contains", value="1")],
            _PRODUCT_FIELDS,
            strict=True,
        )
