from __future__ import annotations

import uuid
from collections.abc import Generator
from decimal import Decimal

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from crm_dashboard.auth.models import User
from crm_dashboard.core.database import Base
from crm_dashboard.core.errors import ConflictError, NotFoundError
from crm_dashboard.crm.models import Customer, Order, OrderItem, Product, Tag
from crm_dashboard.crm.query import PageRequest
from crm_dashboard.crm.schemas import OrderCreate, OrderItemCreate, OrderUpdate, TagLinkRequest
from crm_dashboard.crm.service import OrderService


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


@pytest.fixture()
def service() -> OrderService:
    return OrderService()


@pytest.fixture()
def seeded(db_session: Session) -> dict[str, object]:
    user = User(email="rep@example.com", name="Sales Rep", password_hash="unused", role="sales")
    customer = Customer(name="Initech", email="orders@initech.com")
    widget = Product(name="Widget", price=Decimal("12.50"))
    gadget = Product(name="Gadget", price=Decimal("40.00"))
    db_session.add_all([user, customer, widget, gadget])
    db_session.commit()
    return {"user": user, "customer": customer, "widget": widget, "gadget": gadget}


def _order_payload(seeded: dict[str, object], total: str = "65.00", status: str = "pending") -> OrderCreate:
    return OrderCreate(
        customer_id=seeded["customer"].id,
        total=Decimal(total),
        status=status,
        items=[
            OrderItemCreate(product_id=seeded["widget"].id, quantity=2, price=Decimal("12.50")),
            OrderItemCreate(product_id=seeded["gadget"].id, quantity=1, price=Decimal("40.00")),
        ],
    )


def test_create_order_persists_items_and_owner(
    db_session: Session,
    service: OrderService,
    seeded: dict[str, object],
) -> None:
    created = service.create(db_session, seeded["user"].id, _order_payload(seeded))

    assert created.status == "pending"
    assert created.user_id == seeded["user"].id
    assert created.customer.email == "orders@initech.com"
    assert created.total == Decimal("65.00")
    assert sorted(item.product.name for item in created.items) == ["Gadget", "Widget"]
    assert len(db_session.scalars(select(OrderItem)).all()) == 2


def test_create_order_with_unknown_product_writes_nothing(
    db_session: Session,
    service: OrderService,
    seeded: dict[str, object],
) -> None:
    payload = OrderCreate(
        customer_id=seeded["customer"].id,
        total=Decimal("10.00"),
        items=[OrderItemCreate(product_id=uuid.uuid4(), quantity=1, price=Decimal("10.00"))],
    )

    with pytest.raises(NotFoundError):
        service.create(db_session, seeded["user"].id, payload)
    assert db_session.scalars(select(Order)).all() == []


def test_create_order_for_unknown_customer(
    db_session: Session,
    service: OrderService,
    seeded: dict[str, object],
) -> None:
    payload = _order_payload(seeded).model_copy(update={"customer_id": uuid.uuid4()})

    with pytest.raises(NotFoundError) as exc_info:
        service.create(db_session, seeded["user"].id, payload)
    assert exc_info.value.message == "Customer not found"


def test_list_orders_filters_by_status_and_total(
    db_session: Session,
    service: OrderService,
    seeded: dict[str, object],
) -> None:
    user_id = seeded["user"].id
    service.create(db_session, user_id, _order_payload(seeded, total="65.00"))
    service.create(db_session, user_id, _order_payload(seeded, total="150.00", status="completed"))
    service.create(db_session, user_id, _order_payload(seeded, total="20.00", status="completed"))

    completed = service.list(db_session, PageRequest(page=1, limit=10), status="completed")
    assert completed.total == 2
    assert {item.total for item in completed.items} == {Decimal("150.00"), Decimal("20.00")}

    large = service.list(db_session, PageRequest(page=1, limit=10), min_total=Decimal("50"))
    assert large.total == 2

    bounded = service.list(
        db_session,
        PageRequest(page=1, limit=10),
        status="completed",
        min_total=Decimal("50"),
        max_total=Decimal("200"),
    )
    assert [item.total for item in bounded.items] == [Decimal("150.00")]

    nobody = service.list(db_session, PageRequest(page=1, limit=10), user_id=uuid.uuid4())
    assert nobody.total == 0
    assert nobody.total_pages == 0


def test_delete_requires_cancelled_status(
    db_session: Session,
    service: OrderService,
    seeded: dict[str, object],
) -> None:
    created = service.create(db_session, seeded["user"].id, _order_payload(seeded))

    with pytest.raises(ConflictError) as exc_info:
        service.delete(db_session, created.id)
    assert exc_info.value.details == {"status": "pending"}
    assert db_session.get(Order, created.id) is not None

    cancelled = service.update(db_session, created.id, OrderUpdate(status="cancelled"))
    assert cancelled.status == "cancelled"

    service.delete(db_session, created.id)
    assert db_session.get(Order, created.id) is None
    assert db_session.scalars(select(OrderItem)).all() == []


def test_update_ignores_fields_left_out(
    db_session: Session,
    service: OrderService,
    seeded: dict[str, object],
) -> None:
    created = service.create(db_session, seeded["user"].id, _order_payload(seeded))

    updated = service.update(db_session, created.id, OrderUpdate(status="processing"))

    assert updated.status == "processing"
    assert updated.total == Decimal("65.00")


def test_customer_total_purchases_counts_completed_orders(
    db_session: Session,
    service: OrderService,
    seeded: dict[str, object],
) -> None:
    user_id = seeded["user"].id
    service.create(db_session, user_id, _order_payload(seeded, total="100.00", status="completed"))
    service.create(db_session, user_id, _order_payload(seeded, total="25.50", status="completed"))
    service.create(db_session, user_id, _order_payload(seeded, total="999.00", status="pending"))

    summary = service.customer_total_purchases(db_session, seeded["customer"].id)

    assert summary.order_count == 2
    assert summary.total_purchases == Decimal("125.50")


def test_customer_total_purchases_without_orders(
    db_session: Session,
    service: OrderService,
    seeded: dict[str, object],
) -> None:
    summary = service.customer_total_purchases(db_session, seeded["customer"].id)

    assert summary.order_count == 0
    assert summary.total_purchases == Decimal("0")


def test_set_tag_on_order(db_session: Session, service: OrderService, seeded: dict[str, object]) -> None:
    created = service.create(db_session, seeded["user"].id, _order_payload(seeded))
    tag = Tag(name="rush", type="order")
    db_session.add(tag)
    db_session.commit()

    tagged = service.set_tag(db_session, created.id, TagLinkRequest(tag_id=tag.id, action="add"))
    assert [item.name for item in tagged.tags] == ["rush"]

    with pytest.raises(NotFoundError):
        service.set_tag(db_session, created.id, TagLinkRequest(tag_id=uuid.uuid4(), action="add"))
