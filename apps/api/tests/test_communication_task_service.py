from __future__ import annotations

import uuid
from collections.abc import Generator
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from crm_dashboard.auth.models import User
from crm_dashboard.core.database import Base
from crm_dashboard.core.errors import NotFoundError
from crm_dashboard.crm.models import Communication, Customer, Order, Task, utcnow
from crm_dashboard.crm.query import PageRequest
from crm_dashboard.crm.schemas import (
    CommunicationCreate,
    CommunicationRead,
    CommunicationUpdate,
    FollowUpCreate,
    TaskCreate,
    TaskUpdate,
)
from crm_dashboard.crm.service import CommunicationService, TaskService


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
def people(db_session: Session) -> dict[str, object]:
    alice = User(email="alice@example.com", name="Alice", password_hash="unused", role="sales")
    bob = User(email="bob@example.com", name="Bob", password_hash="unused", role="sales")
    acme = Customer(name="Acme", email="hello@acme.com")
    globex = Customer(name="Globex", email="hello@globex.com")
    db_session.add_all([alice, bob, acme, globex])
    db_session.commit()
    return {"alice": alice, "bob": bob, "acme": acme, "globex": globex}


def _log(
    service: CommunicationService,
    session: Session,
    user: User,
    customer: Customer,
    **overrides: object,
) -> CommunicationRead:
    payload = {"customer_id": customer.id, "type": "email", "content": "Checking in", "direction": "outbound"}
    payload.update(overrides)
    return service.create(session, user.id, CommunicationCreate(**payload))


def test_create_and_filter_communications(db_session: Session, people: dict[str, object]) -> None:
    service = CommunicationService()
    _log(service, db_session, people["alice"], people["acme"])
    _log(service, db_session, people["alice"], people["acme"], type="phone", direction="inbound", duration_seconds=120)
    _log(service, db_session, people["bob"], people["globex"], status="completed")

    by_customer = service.list(db_session, PageRequest(page=1, limit=10), customer_id=people["acme"].id)
    assert by_customer.total == 2

    calls = service.list(db_session, PageRequest(page=1, limit=10), communication_type="phone")
    assert [item.duration_seconds for item in calls.items] == [120]

    bobs = service.list(db_session, PageRequest(page=1, limit=10), user_id=people["bob"].id, status="completed")
    assert bobs.total == 1
    assert bobs.items[0].customer_id == people["globex"].id


def test_create_for_unknown_customer(db_session: Session, people: dict[str, object]) -> None:
    service = CommunicationService()
    with pytest.raises(NotFoundError):
        service.create(
            db_session,
            people["alice"].id,
            CommunicationCreate(customer_id=uuid.uuid4(), type="sms", content="Hi", direction="outbound"),
        )


def test_update_and_delete_communication(db_session: Session, people: dict[str, object]) -> None:
    service = CommunicationService()
    created = _log(service, db_session, people["alice"], people["acme"])

    updated = service.update(db_session, created.id, CommunicationUpdate(status="completed", duration_seconds=45))
    assert updated.status == "completed"
    assert updated.duration_seconds == 45
    assert updated.content == "Checking in"

    service.delete(db_session, created.id)
    assert db_session.get(Communication, created.id) is None


def test_customer_summary_breakdown(db_session: Session, people: dict[str, object]) -> None:
    service = CommunicationService()
    _log(service, db_session, people["alice"], people["acme"])
    _log(service, db_session, people["alice"], people["acme"])
    _log(service, db_session, people["bob"], people["acme"], type="meeting", status="completed")
    _log(service, db_session, people["bob"], people["globex"])

    summary = service.customer_summary(db_session, people["acme"].id)

    assert summary.total == 3
    rows = {(row.type, row.direction, row.status): row.count for row in summary.breakdown}
    assert rows == {("email", "outbound", "pending"): 2, ("meeting", "outbound", "completed"): 1}


def test_report_ranks_top_communicators(db_session: Session, people: dict[str, object]) -> None:
    service = CommunicationService()
    for _ in range(3):
        _log(service, db_session, people["bob"], people["acme"], type="phone", duration_seconds=60)
    _log(service, db_session, people["alice"], people["acme"], type="phone", duration_seconds=120)

    report = service.report(db_session)

    assert [row.name for row in report.top_communicators] == ["Bob", "Alice"]
    assert report.top_communicators[0].count == 3
    phone = next(row for row in report.stats if row.type == "phone")
    assert phone.count == 4
    assert phone.avg_duration_seconds == pytest.approx(75.0)


def test_report_window_excludes_older_activity(db_session: Session, people: dict[str, object]) -> None:
    service = CommunicationService()
    created = _log(service, db_session, people["alice"], people["acme"])
    row = db_session.get(Communication, created.id)
    row.created_at = utcnow() - timedelta(days=45)
    db_session.commit()

    report = service.report(db_session)

    assert report.stats == []
    assert report.top_communicators == []


def test_follow_up_inherits_parent_context(db_session: Session, people: dict[str, object]) -> None:
    service = CommunicationService()
    parent = _log(service, db_session, people["alice"], people["acme"], type="meeting", direction="inbound")
    when = datetime(2031, 1, 15, 9, 30, tzinfo=timezone.utc)

    follow_up = service.schedule_follow_up(
        db_session,
        people["bob"].id,
        parent.id,
        FollowUpCreate(content="Send the proposal", scheduled_at=when),
    )

    assert follow_up.parent_communication_id == parent.id
    assert follow_up.customer_id == people["acme"].id
    assert follow_up.user_id == people["bob"].id
    assert follow_up.type == "meeting"
    assert follow_up.direction == "outbound"
    assert follow_up.status == "pending"
    assert follow_up.scheduled_at.replace(tzinfo=timezone.utc) == when

    with pytest.raises(NotFoundError):
        service.schedule_follow_up(
            db_session,
            people["bob"].id,
            uuid.uuid4(),
            FollowUpCreate(content="Orphan", scheduled_at=when),
        )


def test_effectiveness_attributes_orders_to_communications(db_session: Session, people: dict[str, object]) -> None:
    service = CommunicationService()
    _log(service, db_session, people["alice"], people["acme"])
    _log(service, db_session, people["alice"], people["acme"])
    _log(service, db_session, people["bob"], people["globex"], type="phone")
    db_session.add(
        Order(customer_id=people["acme"].id, user_id=people["alice"].id, total=Decimal("50.00"), status="completed")
    )
    db_session.commit()

    result = service.effectiveness(db_session)

    by_type = {row.type: row for row in result.by_type}
    assert by_type["email"].communications == 2
    assert by_type["email"].conversions == 2
    assert by_type["email"].conversion_rate == pytest.approx(1.0)
    assert by_type["email"].order_value == Decimal("100")
    assert by_type["phone"].conversions == 0
    assert by_type["phone"].conversion_rate == pytest.approx(0.0)
    assert {row.conversion for row in result.communications} == {0, 1}


def test_task_requires_related_pair() -> None:
    with pytest.raises(PydanticValidationError):
        TaskCreate(title="Dangling", assigned_to_id=uuid.uuid4(), related_entity_type="order")


def test_task_create_checks_references(db_session: Session, people: dict[str, object]) -> None:
    service = TaskService()
    with pytest.raises(NotFoundError):
        service.create(db_session, people["alice"].id, TaskCreate(title="Ghost", assigned_to_id=uuid.uuid4()))
    with pytest.raises(NotFoundError):
        service.create(
            db_session,
            people["alice"].id,
            TaskCreate(
                title="Missing order",
                assigned_to_id=people["bob"].id,
                related_entity_type="order",
                related_entity_id=uuid.uuid4(),
            ),
        )

    created = service.create(
        db_session,
        people["alice"].id,
        TaskCreate(
            title="Prepare quote",
            assigned_to_id=people["bob"].id,
            priority="high",
            related_entity_type="customer",
            related_entity_id=people["acme"].id,
        ),
    )
    assert created.status == "todo"
    assert created.created_by_id == people["alice"].id
    assert created.completed_at is None

    filtered = TaskService().list(
        db_session,
        PageRequest(page=1, limit=10),
        related_entity_type="customer",
        related_entity_id=people["acme"].id,
    )
    assert [item.id for item in filtered.items] == [created.id]


def test_task_completion_is_stamped_and_cleared(db_session: Session, people: dict[str, object]) -> None:
    service = TaskService()
    created = service.create(
        db_session,
        people["alice"].id,
        TaskCreate(title="Renewal call", assigned_to_id=people["bob"].id),
    )
    task = db_session.get(Task, created.id)
    task.created_at = utcnow() - timedelta(minutes=90)
    db_session.commit()

    done = service.update(db_session, created.id, TaskUpdate(status="done"))
    assert done.completed_at is not None
    assert done.completion_time_minutes == 90

    reopened = service.update(db_session, created.id, TaskUpdate(status="in_progress"))
    assert reopened.completed_at is None
    assert reopened.completion_time_minutes is None

    born_done = service.create(
        db_session,
        people["alice"].id,
        TaskCreate(title="Already handled", assigned_to_id=people["bob"].id, status="done"),
    )
    assert born_done.completion_time_minutes == 0


def test_team_productivity_counts_completed_tasks(db_session: Session, people: dict[str, object]) -> None:
    service = TaskService()
    for title in ("First win", "Second win"):
        service.create(
            db_session,
            people["alice"].id,
            TaskCreate(title=title, assigned_to_id=people["bob"].id, status="done"),
        )
    service.create(
        db_session,
        people["bob"].id,
        TaskCreate(title="Solo win", assigned_to_id=people["alice"].id, status="done"),
    )
    service.create(
        db_session,
        people["bob"].id,
        TaskCreate(title="Still open", assigned_to_id=people["alice"].id),
    )

    result = service.team_productivity(db_session)

    assert [(row.name, row.completed_tasks) for row in result.members] == [("Bob", 2), ("Alice", 1)]
    assert result.members[0].avg_completion_minutes == pytest.approx(0.0)

    open_task = db_session.scalars(select(Task).where(Task.title == "Still open")).one()
    service.delete(db_session, open_task.id)
    assert len(db_session.scalars(select(Task)).all()) == 3
