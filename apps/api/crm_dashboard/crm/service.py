from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any

from sqlalchemy import Select, and_, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload

from crm_dashboard.auth.models import User, as_utc
from crm_dashboard.core.config import get_settings
from crm_dashboard.core.errors import ConflictError, NotFoundError
from crm_dashboard.crm.models import (
    Communication,
    Customer,
    Order,
    OrderItem,
    Product,
    Tag,
    Task,
    communication_tag,
    customer_tag,
    order_tag,
    product_tag,
    task_tag,
    utcnow,
)
from crm_dashboard.crm.query import FilterBuilder, PageRequest, paginate
from crm_dashboard.crm.schemas import (
    CommunicationBreakdownRow,
    CommunicationCreate,
    CommunicationEffectiveness,
    CommunicationRead,
    CommunicationReportRead,
    CommunicationStatRow,
    CommunicationSummaryRead,
    CommunicationUpdate,
    CustomerCreate,
    CustomerDetail,
    CustomerPurchaseSummary,
    CustomerRead,
    CustomerSegment,
    CustomerSegmentsRead,
    CustomerSummary,
    CustomerUpdate,
    EffectivenessByType,
    EffectivenessRead,
    FollowUpCreate,
    InteractionHistoryRead,
    OrderCreate,
    OrderDetail,
    OrderRead,
    OrderUpdate,
    Page,
    ProductCreate,
    ProductDetail,
    ProductOrderItemRead,
    ProductRead,
    ProductivityRow,
    ProductUpdate,
    TagCreate,
    TagDetail,
    TagLinkRequest,
    TagRead,
    TagUpdate,
    TaskCreate,
    TaskRead,
    TaskUpdate,
    TeamProductivityRead,
    TopCommunicator,
    TopCustomer,
)
from crm_dashboard.metrics import observe_delete_guard_block, observe_report
from crm_dashboard.otel import correlated_span, get_tracer


logger = logging.getLogger("crm_dashboard.crm")
tracer = get_tracer("crm_dashboard.crm")


@contextmanager
def report_span(name: str) -> Iterator[Any]:
    started = time.perf_counter()
    with correlated_span(tracer, f"crm.report.{name}") as span:
        try:
            yield span
        finally:
            observe_report(name, time.perf_counter() - started)


def report_window(start: datetime | None, end: datetime | None, lookback_days: int) -> tuple[datetime, datetime]:
    window_end = as_utc(end) if end is not None else utcnow()
    window_start = as_utc(start) if start is not None else window_end - timedelta(days=lookback_days)
    return window_start, window_end


def _utc_or_none(value: datetime | None) -> datetime | None:
    return as_utc(value) if value is not None else None


def get_or_404(
    session: Session,
    model: type[Any],
    entity_id: uuid.UUID,
    label: str,
    *,
    options: Sequence[Any] = (),
    for_update: bool = False,
) -> Any:
    stmt = select(model).where(model.id == entity_id)
    if options:
        stmt = stmt.options(*options)
    if for_update:
        stmt = stmt.with_for_update()
    row = session.scalar(stmt)
    if row is None:
        raise NotFoundError(f"{label} not found", details={"id": str(entity_id)})
    return row


def load_tags(session: Session, tag_ids: Sequence[uuid.UUID]) -> list[Tag]:
    unique_ids = list(dict.fromkeys(tag_ids))
    if not unique_ids:
        return []
    tags = list(session.scalars(select(Tag).where(Tag.id.in_(unique_ids))).all())
    missing = set(unique_ids) - {tag.id for tag in tags}
    if missing:
        raise NotFoundError("Tag not found", details={"ids": sorted(str(item) for item in missing)})
    return tags


def apply_tag_link(session: Session, owner: Any, link: TagLinkRequest) -> None:
    tag = get_or_404(session, Tag, link.tag_id, "Tag")
    if link.action == "add":
        if tag not in owner.tags:
            owner.tags.append(tag)
    elif tag in owner.tags:
        owner.tags.remove(tag)


def commit_or_conflict(session: Session, message: str, details: Any = None) -> None:
    try:
        session.commit()
    except IntegrityError:
        session.rollback()
        raise ConflictError(message, details=details)


def _count_by(session: Session, key_column: Any, ids: Sequence[uuid.UUID]) -> dict[uuid.UUID, int]:
    if not ids:
        return {}
    rows = session.execute(select(key_column, func.count()).where(key_column.in_(ids)).group_by(key_column)).all()
    return {row[0]: int(row[1]) for row in rows}


def _users_by_id(session: Session, user_ids: Sequence[uuid.UUID]) -> dict[uuid.UUID, User]:
    if not user_ids:
        return {}
    return {user.id: user for user in session.scalars(select(User).where(User.id.in_(list(user_ids)))).all()}


ORDER_READ_OPTIONS = (
    selectinload(Order.items).selectinload(OrderItem.product),
    selectinload(Order.tags),
)


@dataclass(slots=True)
class CustomerService:
    def create(self, session: Session, dto: CustomerCreate) -> CustomerRead:
        email = dto.email.strip().lower()
        if session.scalar(select(Customer.id).where(func.lower(Customer.email) == email)) is not None:
            raise ConflictError("Customer with this email already exists", details={"email": email})

        customer = Customer(**dto.model_dump(exclude={"email", "tag_ids"}), email=email)
        customer.tags = load_tags(session, dto.tag_ids)
        session.add(customer)
        commit_or_conflict(session, "Customer with this email already exists", details={"email": email})
        session.refresh(customer)

        logger.info("customer.created", extra={"entity": "customer", "entity_id": str(customer.id)})
        return CustomerRead.model_validate(customer)

    def list(
        self,
        session: Session,
        page: PageRequest,
        *,
        search: str | None = None,
        status: str | None = None,
        customer_type: str | None = None,
        tag_id: uuid.UUID | None = None,
    ) -> Page[CustomerRead]:
        builder = (
            FilterBuilder()
            .icontains_any([Customer.name, Customer.email, Customer.company], search)
            .equals(Customer.status, status)
            .equals(Customer.type, customer_type)
        )
        if tag_id is not None:
            builder.where(Customer.tags.any(Tag.id == tag_id))

        stmt = builder.apply(select(Customer).options(selectinload(Customer.tags)))
        rows, total = paginate(session, stmt, page, order_by=[Customer.created_at.desc(), Customer.id.desc()])
        order_counts = _count_by(session, Order.customer_id, [row.id for row in rows])
        items = [
            CustomerRead.model_validate(row).model_copy(update={"total_orders": order_counts.get(row.id, 0)})
            for row in rows
        ]
        return Page[CustomerRead].build(items, page=page.page, limit=page.limit, total=total)

    def get(self, session: Session, customer_id: uuid.UUID) -> CustomerDetail:
        customer = get_or_404(
            session,
            Customer,
            customer_id,
            "Customer",
            options=[
                selectinload(Customer.tags),
                selectinload(Customer.orders).selectinload(Order.items).selectinload(OrderItem.product),
                selectinload(Customer.orders).selectinload(Order.tags),
                selectinload(Customer.communications).selectinload(Communication.tags),
            ],
        )
        orders = sorted(customer.orders, key=lambda row: row.created_at, reverse=True)
        communications = sorted(customer.communications, key=lambda row: row.created_at, reverse=True)
        return CustomerDetail.model_validate(customer).model_copy(
            update={
                "total_orders": len(orders),
                "orders": [OrderRead.model_validate(row) for row in orders],
                "communications": [CommunicationRead.model_validate(row) for row in communications],
            }
        )

    def update(self, session: Session, customer_id: uuid.UUID, dto: CustomerUpdate) -> CustomerRead:
        customer = get_or_404(session, Customer, customer_id, "Customer")
        changes = dto.model_dump(exclude_unset=True)

        tag_ids = changes.pop("tag_ids", None)
        if tag_ids is not None:
            customer.tags = load_tags(session, tag_ids)

        email = changes.get("email")
        if email is not None:
            email = email.strip().lower()
            clash = session.scalar(
                select(Customer.id).where(func.lower(Customer.email) == email, Customer.id != customer_id)
            )
            if clash is not None:
                raise ConflictError("Customer with this email already exists", details={"email": email})
            changes["email"] = email

        for key, value in changes.items():
            setattr(customer, key, value)
        commit_or_conflict(session, "Customer with this email already exists", details={"email": email})
        session.refresh(customer)

        logger.info("customer.updated", extra={"entity": "customer", "entity_id": str(customer.id)})
        return CustomerRead.model_validate(customer)

    def delete(self, session: Session, customer_id: uuid.UUID) -> None:
        customer = get_or_404(session, Customer, customer_id, "Customer", for_update=True)
        order_count = session.scalar(select(func.count(Order.id)).where(Order.customer_id == customer_id)) or 0
        communication_count = (
            session.scalar(select(func.count(Communication.id)).where(Communication.customer_id == customer_id)) or 0
        )
        if order_count or communication_count:
            session.rollback()
            observe_delete_guard_block("customer")
            raise ConflictError(
                "Customer has related orders or communications",
                details={"orders": int(order_count), "communications": int(communication_count)},
            )

        session.delete(customer)
        session.commit()
        logger.info("customer.deleted", extra={"entity": "customer", "entity_id": str(customer_id)})

    def segments(self, session: Session) -> CustomerSegmentsRead:
        top_n = get_settings().report_top_n
        with report_span("customer_segments") as span:
            completed_join = and_(Order.customer_id == Customer.id, Order.status == "completed")
            segment_rows = session.execute(
                select(
                    Customer.type,
                    Customer.status,
                    func.count(func.distinct(Customer.id)),
                    func.coalesce(func.sum(Order.total), 0),
                )
                .outerjoin(Order, completed_join)
                .group_by(Customer.type, Customer.status)
                .order_by(Customer.type, Customer.status)
            ).all()

            lifetime_value = func.sum(Order.total)
            top_rows = session.execute(
                select(
                    Customer.id,
                    Customer.name,
                    Customer.email,
                    Customer.type,
                    func.count(Order.id),
                    lifetime_value,
                )
                .join(Order, completed_join)
                .group_by(Customer.id, Customer.name, Customer.email, Customer.type)
                .order_by(lifetime_value.desc(), Customer.id)
                .limit(top_n)
            ).all()
            span.set_attribute("segment_count", len(segment_rows))

        return CustomerSegmentsRead(
            segments=[
                CustomerSegment(
                    type=row[0],
                    status=row[1],
                    customer_count=int(row[2]),
                    revenue=Decimal(str(row[3])),
                )
                for row in segment_rows
            ],
            top_customers=[
                TopCustomer(
                    id=row[0],
                    name=row[1],
                    email=row[2],
                    type=row[3],
                    order_count=int(row[4]),
                    lifetime_value=Decimal(str(row[5])),
                )
                for row in top_rows
            ],
        )

    def add_tag_by_name(self, session: Session, customer_id: uuid.UUID, tag_name: str) -> CustomerRead:
        customer = get_or_404(session, Customer, customer_id, "Customer", options=[selectinload(Customer.tags)])
        name = tag_name.strip()
        tag = session.scalar(select(Tag).where(Tag.name == name))
        if tag is None:
            tag = Tag(name=name, type="customer")
            session.add(tag)
        if tag not in customer.tags:
            customer.tags.append(tag)
        commit_or_conflict(session, "Tag already exists", details={"name": name})
        session.refresh(customer)

        logger.info("customer.tagged", extra={"entity": "customer", "entity_id": str(customer.id)})
        return CustomerRead.model_validate(customer)

    def set_tag(self, session: Session, customer_id: uuid.UUID, link: TagLinkRequest) -> CustomerRead:
        customer = get_or_404(session, Customer, customer_id, "Customer", options=[selectinload(Customer.tags)])
        apply_tag_link(session, customer, link)
        session.commit()
        session.refresh(customer)
        return CustomerRead.model_validate(customer)

    def interaction_history(self, session: Session, customer_id: uuid.UUID) -> InteractionHistoryRead:
        get_or_404(session, Customer, customer_id, "Customer")
        communications = session.scalars(
            select(Communication)
            .options(selectinload(Communication.tags))
            .where(Communication.customer_id == customer_id)
            .order_by(Communication.created_at.desc(), Communication.id.desc())
            .limit(50)
        ).all()
        orders = session.scalars(
            select(Order)
            .options(*ORDER_READ_OPTIONS)
            .where(Order.customer_id == customer_id)
            .order_by(Order.created_at.desc(), Order.id.desc())
            .limit(20)
        ).all()
        return InteractionHistoryRead(
            customer_id=customer_id,
            communications=[CommunicationRead.model_validate(row) for row in communications],
            orders=[OrderRead.model_validate(row) for row in orders],
        )


@dataclass(slots=True)
class OrderService:
    def _detail(self, session: Session, order_id: uuid.UUID) -> OrderDetail:
        order = get_or_404(
            session,
            Order,
            order_id,
            "Order",
            options=[*ORDER_READ_OPTIONS, selectinload(Order.customer)],
        )
        return OrderDetail.model_validate(order)

    def create(self, session: Session, user_id: uuid.UUID, dto: OrderCreate) -> OrderDetail:
        get_or_404(session, Customer, dto.customer_id, "Customer")

        product_ids = {item.product_id for item in dto.items}
        found = set(session.scalars(select(Product.id).where(Product.id.in_(product_ids))).all())
        missing = product_ids - found
        if missing:
            raise NotFoundError("Product not found", details={"ids": sorted(str(item) for item in missing)})

        order = Order(
            customer_id=dto.customer_id,
            user_id=user_id,
            total=dto.total,
            status=dto.status,
            items=[
                OrderItem(product_id=item.product_id, quantity=item.quantity, price=item.price)
                for item in dto.items
            ],
        )
        session.add(order)
        session.commit()

        logger.info(
            "order.created",
            extra={"entity": "order", "entity_id": str(order.id), "user_id": str(user_id), "status": order.status},
        )
        return self._detail(session, order.id)

    def list(
        self,
        session: Session,
        page: PageRequest,
        *,
        customer_id: uuid.UUID | None = None,
        user_id: uuid.UUID | None = None,
        status: str | None = None,
        min_total: Decimal | None = None,
        max_total: Decimal | None = None,
        start_date: datetime | None = None,
        end_date: datetime | None = None,
    ) -> Page[OrderRead]:
        stmt: Select[tuple[Order]] = (
            FilterBuilder()
            .equals(Order.customer_id, customer_id)
            .equals(Order.user_id, user_id)
            .equals(Order.status, status)
            .gte(Order.total, min_total)
            .lte(Order.total, max_total)
            .gte(Order.created_at, _utc_or_none(start_date))
            .lte(Order.created_at, _utc_or_none(end_date))
            .apply(select(Order).options(*ORDER_READ_OPTIONS))
        )
        rows, total = paginate(session, stmt, page, order_by=[Order.created_at.desc(), Order.id.desc()])
        items = [OrderRead.model_validate(row) for row in rows]
        return Page[OrderRead].build(items, page=page.page, limit=page.limit, total=total)

    def get(self, session: Session, order_id: uuid.UUID) -> OrderDetail:
        return self._detail(session, order_id)

    def update(self, session: Session, order_id: uuid.UUID, dto: OrderUpdate) -> OrderDetail:
        order = get_or_404(session, Order, order_id, "Order")
        previous_status = order.status
        for key, value in dto.model_dump(exclude_unset=True, exclude_none=True).items():
            setattr(order, key, value)
        session.commit()

        if order.status != previous_status:
            logger.info(
                "order.status_changed",
                extra={"entity": "order", "entity_id": str(order.id), "status": order.status},
            )
        return self._detail(session, order.id)

    def delete(self, session: Session, order_id: uuid.UUID) -> None:
        order = get_or_404(session, Order, order_id, "Order", for_update=True)
        if order.status != "cancelled":
            status = order.status
            session.rollback()
            observe_delete_guard_block("order")
            raise ConflictError("Only cancelled orders can be deleted", details={"status": status})

        session.delete(order)
        session.commit()
        logger.info("order.deleted", extra={"entity": "order", "entity_id": str(order_id)})

    def customer_total_purchases(self, session: Session, customer_id: uuid.UUID) -> CustomerPurchaseSummary:
        get_or_404(session, Customer, customer_id, "Customer")
        total, count = session.execute(
            select(func.coalesce(func.sum(Order.total), 0), func.count(Order.id)).where(
                Order.customer_id == customer_id,
                Order.status == "completed",
            )
        ).one()
        return CustomerPurchaseSummary(
            customer_id=customer_id,
            total_purchases=Decimal(str(total)),
            order_count=int(count),
        )

    def set_tag(self, session: Session, order_id: uuid.UUID, link: TagLinkRequest) -> OrderDetail:
        order = get_or_404(session, Order, order_id, "Order", options=[selectinload(Order.tags)])
        apply_tag_link(session, order, link)
        session.commit()
        return self._detail(session, order.id)


@dataclass(slots=True)
class ProductService:
    def _read(self, session: Session, product: Product) -> ProductRead:
        order_count = _count_by(session, OrderItem.product_id, [product.id]).get(product.id, 0)
        return ProductRead.model_validate(product).model_copy(update={"total_orders": order_count})

    def create(self, session: Session, dto: ProductCreate) -> ProductRead:
        product = Product(**dto.model_dump(exclude={"tag_ids"}))
        product.tags = load_tags(session, dto.tag_ids)
        session.add(product)
        session.commit()
        session.refresh(product)

        logger.info("product.created", extra={"entity": "product", "entity_id": str(product.id)})
        return ProductRead.model_validate(product)

    def list(
        self,
        session: Session,
        page: PageRequest,
        *,
        search: str | None = None,
        status: str | None = None,
        min_price: Decimal | None = None,
        max_price: Decimal | None = None,
    ) -> Page[ProductRead]:
        stmt = (
            FilterBuilder()
            .icontains_any([Product.name, Product.description], search)
            .equals(Product.status, status)
            .gte(Product.price, min_price)
            .lte(Product.price, max_price)
            .apply(select(Product).options(selectinload(Product.tags)))
        )
        rows, total = paginate(session, stmt, page, order_by=[Product.created_at.desc(), Product.id.desc()])
        order_counts = _count_by(session, OrderItem.product_id, [row.id for row in rows])
        items = [
            ProductRead.model_validate(row).model_copy(update={"total_orders": order_counts.get(row.id, 0)})
            for row in rows
        ]
        return Page[ProductRead].build(items, page=page.page, limit=page.limit, total=total)

    def get(self, session: Session, product_id: uuid.UUID) -> ProductDetail:
        product = get_or_404(
            session,
            Product,
            product_id,
            "Product",
            options=[
                selectinload(Product.tags),
                selectinload(Product.order_items).selectinload(OrderItem.order).selectinload(Order.customer),
            ],
        )
        order_items = [
            ProductOrderItemRead(
                id=item.id,
                order_id=item.order_id,
                quantity=item.quantity,
                price=item.price,
                order_status=item.order.status,
                customer=CustomerSummary.model_validate(item.order.customer),
            )
            for item in product.order_items
        ]
        summary = ProductRead.model_validate(product).model_dump(exclude={"total_orders"})
        return ProductDetail(**summary, order_items=order_items, total_orders=len(order_items))

    def update(self, session: Session, product_id: uuid.UUID, dto: ProductUpdate) -> ProductRead:
        product = get_or_404(session, Product, product_id, "Product", options=[selectinload(Product.tags)])
        changes = dto.model_dump(exclude_unset=True)
        tag_ids = changes.pop("tag_ids", None)
        if tag_ids is not None:
            product.tags = load_tags(session, tag_ids)
        for key, value in changes.items():
            setattr(product, key, value)
        session.commit()
        session.refresh(product)

        logger.info("product.updated", extra={"entity": "product", "entity_id": str(product.id)})
        return self._read(session, product)

    def delete(self, session: Session, product_id: uuid.UUID) -> None:
        product = get_or_404(session, Product, product_id, "Product", for_update=True)
        referenced = session.scalar(select(func.count(OrderItem.id)).where(OrderItem.product_id == product_id)) or 0
        if referenced:
            session.rollback()
            observe_delete_guard_block("product")
            raise ConflictError("Product is referenced by existing orders", details={"order_items": int(referenced)})

        session.delete(product)
        session.commit()
        logger.info("product.deleted", extra={"entity": "product", "entity_id": str(product_id)})

    def set_tag(self, session: Session, product_id: uuid.UUID, link: TagLinkRequest) -> ProductRead:
        product = get_or_404(session, Product, product_id, "Product", options=[selectinload(Product.tags)])
        apply_tag_link(session, product, link)
        session.commit()
        session.refresh(product)
        return self._read(session, product)


_TAG_LINK_TABLES = {
    "products": product_tag,
    "customers": customer_tag,
    "orders": order_tag,
    "communications": communication_tag,
    "tasks": task_tag,
}


@dataclass(slots=True)
class TagService:
    def create(self, session: Session, dto: TagCreate) -> TagRead:
        name = dto.name.strip()
        if session.scalar(select(Tag.id).where(Tag.name == name)) is not None:
            raise ConflictError("Tag with this name already exists", details={"name": name})

        tag = Tag(**dto.model_dump(exclude={"name"}), name=name)
        session.add(tag)
        commit_or_conflict(session, "Tag with this name already exists", details={"name": name})
        session.refresh(tag)

        logger.info("tag.created", extra={"entity": "tag", "entity_id": str(tag.id)})
        return TagRead.model_validate(tag)

    def list(
        self,
        session: Session,
        page: PageRequest,
        *,
        search: str | None = None,
        tag_type: str | None = None,
    ) -> Page[TagRead]:
        stmt = (
            FilterBuilder()
            .icontains_any([Tag.name, Tag.description], search)
            .equals(Tag.type, tag_type)
            .apply(select(Tag))
        )
        rows, total = paginate(session, stmt, page, order_by=[Tag.created_at.desc(), Tag.id.desc()])
        items = [TagRead.model_validate(row) for row in rows]
        return Page[TagRead].build(items, page=page.page, limit=page.limit, total=total)

    def get(self, session: Session, tag_id: uuid.UUID) -> TagDetail:
        tag = get_or_404(
            session,
            Tag,
            tag_id,
            "Tag",
            options=[
                selectinload(Tag.products),
                selectinload(Tag.customers),
                selectinload(Tag.orders),
                selectinload(Tag.communications),
                selectinload(Tag.tasks),
            ],
        )
        return TagDetail.model_validate(tag)

    def update(self, session: Session, tag_id: uuid.UUID, dto: TagUpdate) -> TagRead:
        tag = get_or_404(session, Tag, tag_id, "Tag")
        changes = dto.model_dump(exclude_unset=True)
        name = changes.get("name")
        if name is not None:
            name = name.strip()
            clash = session.scalar(select(Tag.id).where(Tag.name == name, Tag.id != tag_id))
            if clash is not None:
                raise ConflictError("Tag with this name already exists", details={"name": name})
            changes["name"] = name

        for key, value in changes.items():
            setattr(tag, key, value)
        commit_or_conflict(session, "Tag with this name already exists", details={"name": name})
        session.refresh(tag)
        return TagRead.model_validate(tag)

    def delete(self, session: Session, tag_id: uuid.UUID) -> None:
        tag = get_or_404(session, Tag, tag_id, "Tag", for_update=True)
        usage = {
            label: int(
                session.scalar(select(func.count()).select_from(table).where(table.c.tag_id == tag_id)) or 0
            )
            for label, table in _TAG_LINK_TABLES.items()
        }
        if any(usage.values()):
            session.rollback()
            observe_delete_guard_block("tag")
            raise ConflictError(
                "Tag is still attached to other records",
                details={label: count for label, count in usage.items() if count},
            )

        session.delete(tag)
        session.commit()
        logger.info("tag.deleted", extra={"entity": "tag", "entity_id": str(tag_id)})


@dataclass(slots=True)
class CommunicationService:
    def _read(self, session: Session, communication_id: uuid.UUID) -> CommunicationRead:
        communication = get_or_404(
            session,
            Communication,
            communication_id,
            "Communication",
            options=[selectinload(Communication.tags)],
        )
        return CommunicationRead.model_validate(communication)

    def create(self, session: Session, user_id: uuid.UUID, dto: CommunicationCreate) -> CommunicationRead:
        get_or_404(session, Customer, dto.customer_id, "Customer")
        if dto.parent_communication_id is not None:
            get_or_404(session, Communication, dto.parent_communication_id, "Communication")

        communication = Communication(
            **dto.model_dump(exclude={"tag_ids", "scheduled_at"}),
            scheduled_at=_utc_or_none(dto.scheduled_at),
            user_id=user_id,
        )
        communication.tags = load_tags(session, dto.tag_ids)
        session.add(communication)
        session.commit()

        logger.info(
            "communication.created",
            extra={"entity": "communication", "entity_id": str(communication.id), "user_id": str(user_id)},
        )
        return self._read(session, communication.id)

    def list(
        self,
        session: Session,
        page: PageRequest,
        *,
        customer_id: uuid.UUID | None = None,
        user_id: uuid.UUID | None = None,
        communication_type: str | None = None,
        direction: str | None = None,
        status: str | None = None,
        start_date: datetime | None = None,
        end_date: datetime | None = None,
    ) -> Page[CommunicationRead]:
        stmt = (
            FilterBuilder()
            .equals(Communication.customer_id, customer_id)
            .equals(Communication.user_id, user_id)
            .equals(Communication.type, communication_type)
            .equals(Communication.direction, direction)
            .equals(Communication.status, status)
            .gte(Communication.created_at, _utc_or_none(start_date))
            .lte(Communication.created_at, _utc_or_none(end_date))
            .apply(select(Communication).options(selectinload(Communication.tags)))
        )
        rows, total = paginate(
            session,
            stmt,
            page,
            order_by=[Communication.created_at.desc(), Communication.id.desc()],
        )
        items = [CommunicationRead.model_validate(row) for row in rows]
        return Page[CommunicationRead].build(items, page=page.page, limit=page.limit, total=total)

    def get(self, session: Session, communication_id: uuid.UUID) -> CommunicationRead:
        return self._read(session, communication_id)

    def update(self, session: Session, communication_id: uuid.UUID, dto: CommunicationUpdate) -> CommunicationRead:
        communication = get_or_404(session, Communication, communication_id, "Communication")
        changes = dto.model_dump(exclude_unset=True)
        if changes.get("scheduled_at") is not None:
            changes["scheduled_at"] = as_utc(changes["scheduled_at"])
        for key, value in changes.items():
            setattr(communication, key, value)
        session.commit()

        logger.info(
            "communication.updated",
            extra={"entity": "communication", "entity_id": str(communication.id), "status": communication.status},
        )
        return self._read(session, communication.id)

    def delete(self, session: Session, communication_id: uuid.UUID) -> None:
        communication = get_or_404(session, Communication, communication_id, "Communication")
        session.delete(communication)
        session.commit()
        logger.info("communication.deleted", extra={"entity": "communication", "entity_id": str(communication_id)})

    def set_tag(self, session: Session, communication_id: uuid.UUID, link: TagLinkRequest) -> CommunicationRead:
        communication = get_or_404(
            session,
            Communication,
            communication_id,
            "Communication",
            options=[selectinload(Communication.tags)],
        )
        apply_tag_link(session, communication, link)
        session.commit()
        return self._read(session, communication.id)

    def customer_summary(self, session: Session, customer_id: uuid.UUID) -> CommunicationSummaryRead:
        get_or_404(session, Customer, customer_id, "Customer")
        rows = session.execute(
            select(Communication.type, Communication.direction, Communication.status, func.count(Communication.id))
            .where(Communication.customer_id == customer_id)
            .group_by(Communication.type, Communication.direction, Communication.status)
            .order_by(Communication.type, Communication.direction, Communication.status)
        ).all()
        breakdown = [
            CommunicationBreakdownRow(type=row[0], direction=row[1], status=row[2], count=int(row[3])) for row in rows
        ]
        return CommunicationSummaryRead(
            customer_id=customer_id,
            total=sum(item.count for item in breakdown),
            breakdown=breakdown,
        )

    def report(
        self,
        session: Session,
        *,
        start_date: datetime | None = None,
        end_date: datetime | None = None,
    ) -> CommunicationReportRead:
        settings = get_settings()
        window_start, window_end = report_window(start_date, end_date, settings.report_lookback_days)
        in_window = and_(Communication.created_at >= window_start, Communication.created_at <= window_end)

        with report_span("communications") as span:
            stat_rows = session.execute(
                select(
                    Communication.type,
                    Communication.direction,
                    Communication.status,
                    func.count(Communication.id),
                    func.avg(Communication.duration_seconds),
                )
                .where(in_window)
                .group_by(Communication.type, Communication.direction, Communication.status)
                .order_by(Communication.type, Communication.direction, Communication.status)
            ).all()

            message_count = func.count(Communication.id)
            top_rows = session.execute(
                select(Communication.user_id, message_count)
                .where(in_window)
                .group_by(Communication.user_id)
                .order_by(message_count.desc(), Communication.user_id)
                .limit(settings.report_top_n)
            ).all()
            users = _users_by_id(session, [row[0] for row in top_rows])
            span.set_attribute("stat_rows", len(stat_rows))

        return CommunicationReportRead(
            start_date=window_start,
            end_date=window_end,
            stats=[
                CommunicationStatRow(
                    type=row[0],
                    direction=row[1],
                    status=row[2],
                    count=int(row[3]),
                    avg_duration_seconds=float(row[4]) if row[4] is not None else None,
                )
                for row in stat_rows
            ],
            top_communicators=[
                TopCommunicator(
                    user_id=row[0],
                    name=users[row[0]].name if row[0] in users else None,
                    email=users[row[0]].email if row[0] in users else None,
                    count=int(row[1]),
                )
                for row in top_rows
            ],
        )

    def schedule_follow_up(
        self,
        session: Session,
        user_id: uuid.UUID,
        communication_id: uuid.UUID,
        dto: FollowUpCreate,
    ) -> CommunicationRead:
        parent = get_or_404(session, Communication, communication_id, "Communication")
        follow_up = Communication(
            customer_id=parent.customer_id,
            user_id=user_id,
            parent_communication_id=parent.id,
            type=dto.type or parent.type,
            content=dto.content,
            direction="outbound",
            status="pending",
            scheduled_at=as_utc(dto.scheduled_at),
        )
        session.add(follow_up)
        session.commit()

        logger.info(
            "communication.follow_up_scheduled",
            extra={"entity": "communication", "entity_id": str(follow_up.id), "user_id": str(user_id)},
        )
        return self._read(session, follow_up.id)

    def effectiveness(
        self,
        session: Session,
        *,
        start_date: datetime | None = None,
        end_date: datetime | None = None,
    ) -> EffectivenessRead:
        settings = get_settings()
        window_start, window_end = report_window(start_date, end_date, settings.effectiveness_lookback_days)

        with report_span("communication_effectiveness") as span:
            communications = session.scalars(
                select(Communication)
                .where(Communication.created_at >= window_start, Communication.created_at <= window_end)
                .order_by(Communication.created_at.desc(), Communication.id.desc())
            ).all()
            customer_ids = list({row.customer_id for row in communications})
            order_stats: dict[uuid.UUID, tuple[int, Decimal]] = {}
            if customer_ids:
                for customer_id, count, value in session.execute(
                    select(Order.customer_id, func.count(Order.id), func.coalesce(func.sum(Order.total), 0))
                    .where(Order.customer_id.in_(customer_ids), Order.created_at >= window_start)
                    .group_by(Order.customer_id)
                ).all():
                    order_stats[customer_id] = (int(count), Decimal(str(value)))
            span.set_attribute("communication_count", len(communications))

        items: list[CommunicationEffectiveness] = []
        by_type: dict[str, dict[str, Any]] = {}
        for row in communications:
            count, value = order_stats.get(row.customer_id, (0, Decimal("0")))
            conversion = 1 if count > 0 else 0
            items.append(
                CommunicationEffectiveness(
                    communication_id=row.id,
                    customer_id=row.customer_id,
                    type=row.type,
                    created_at=row.created_at,
                    subsequent_orders=count,
                    order_value=value,
                    conversion=conversion,
                )
            )
            bucket = by_type.setdefault(row.type, {"communications": 0, "conversions": 0, "order_value": Decimal("0")})
            bucket["communications"] += 1
            bucket["conversions"] += conversion
            bucket["order_value"] += value

        return EffectivenessRead(
            start_date=window_start,
            end_date=window_end,
            communications=items,
            by_type=[
                EffectivenessByType(
                    type=communication_type,
                    communications=bucket["communications"],
                    conversions=bucket["conversions"],
                    conversion_rate=bucket["conversions"] / bucket["communications"],
                    order_value=bucket["order_value"],
                )
                for communication_type, bucket in sorted(by_type.items())
            ],
        )


_RELATED_MODELS: dict[str, tuple[type[Any], str]] = {
    "customer": (Customer, "Customer"),
    "order": (Order, "Order"),
    "communication": (Communication, "Communication"),
}


def _completion_minutes(task: Task, completed_at: datetime) -> int:
    elapsed = as_utc(completed_at) - as_utc(task.created_at or completed_at)
    return max(0, int(elapsed.total_seconds() // 60))


@dataclass(slots=True)
class TaskService:
    def _read(self, session: Session, task_id: uuid.UUID) -> TaskRead:
        task = get_or_404(session, Task, task_id, "Task", options=[selectinload(Task.tags)])
        return TaskRead.model_validate(task)

    def create(self, session: Session, user_id: uuid.UUID, dto: TaskCreate) -> TaskRead:
        get_or_404(session, User, dto.assigned_to_id, "Assigned user")
        if dto.related_entity_type is not None and dto.related_entity_id is not None:
            model, label = _RELATED_MODELS[dto.related_entity_type]
            get_or_404(session, model, dto.related_entity_id, label)

        task = Task(
            **dto.model_dump(exclude={"tag_ids", "due_date"}),
            due_date=_utc_or_none(dto.due_date),
            created_by_id=user_id,
        )
        task.tags = load_tags(session, dto.tag_ids)
        if task.status == "done":
            task.completed_at = utcnow()
            task.completion_time_minutes = 0
        session.add(task)
        session.commit()

        logger.info(
            "task.created",
            extra={"entity": "task", "entity_id": str(task.id), "user_id": str(user_id), "status": task.status},
        )
        return self._read(session, task.id)

    def list(
        self,
        session: Session,
        page: PageRequest,
        *,
        assigned_to_id: uuid.UUID | None = None,
        created_by_id: uuid.UUID | None = None,
        status: str | None = None,
        priority: str | None = None,
        start_date: datetime | None = None,
        end_date: datetime | None = None,
        related_entity_type: str | None = None,
        related_entity_id: uuid.UUID | None = None,
    ) -> Page[TaskRead]:
        stmt = (
            FilterBuilder()
            .equals(Task.assigned_to_id, assigned_to_id)
            .equals(Task.created_by_id, created_by_id)
            .equals(Task.status, status)
            .equals(Task.priority, priority)
            .gte(Task.due_date, _utc_or_none(start_date))
            .lte(Task.due_date, _utc_or_none(end_date))
            .equals(Task.related_entity_type, related_entity_type)
            .equals(Task.related_entity_id, related_entity_id)
            .apply(select(Task).options(selectinload(Task.tags)))
        )
        rows, total = paginate(session, stmt, page, order_by=[Task.created_at.desc(), Task.id.desc()])
        items = [TaskRead.model_validate(row) for row in rows]
        return Page[TaskRead].build(items, page=page.page, limit=page.limit, total=total)

    def get(self, session: Session, task_id: uuid.UUID) -> TaskRead:
        return self._read(session, task_id)

    def update(self, session: Session, task_id: uuid.UUID, dto: TaskUpdate) -> TaskRead:
        task = get_or_404(session, Task, task_id, "Task", options=[selectinload(Task.tags)])
        changes = dto.model_dump(exclude_unset=True)

        if changes.get("assigned_to_id") is not None:
            get_or_404(session, User, changes["assigned_to_id"], "Assigned user")
        tag_ids = changes.pop("tag_ids", None)
        if tag_ids is not None:
            task.tags = load_tags(session, tag_ids)
        if changes.get("due_date") is not None:
            changes["due_date"] = as_utc(changes["due_date"])

        previous_status = task.status
        for key, value in changes.items():
            if value is None and key in {"title", "assigned_to_id", "priority", "status"}:
                continue
            setattr(task, key, value)

        if task.status == "done" and previous_status != "done":
            completed_at = utcnow()
            task.completed_at = completed_at
            task.completion_time_minutes = _completion_minutes(task, completed_at)
        elif task.status != "done" and previous_status == "done":
            task.completed_at = None
            task.completion_time_minutes = None
        session.commit()

        if task.status != previous_status:
            logger.info("task.status_changed", extra={"entity": "task", "entity_id": str(task.id), "status": task.status})
        return self._read(session, task.id)

    def delete(self, session: Session, task_id: uuid.UUID) -> None:
        task = get_or_404(session, Task, task_id, "Task")
        session.delete(task)
        session.commit()
        logger.info("task.deleted", extra={"entity": "task", "entity_id": str(task_id)})

    def team_productivity(
        self,
        session: Session,
        *,
        start_date: datetime | None = None,
        end_date: datetime | None = None,
    ) -> TeamProductivityRead:
        window_start, window_end = report_window(start_date, end_date, get_settings().report_lookback_days)

        with report_span("team_productivity") as span:
            completed_count = func.count(Task.id)
            rows = session.execute(
                select(Task.assigned_to_id, completed_count, func.avg(Task.completion_time_minutes))
                .where(
                    Task.status == "done",
                    Task.completed_at >= window_start,
                    Task.completed_at <= window_end,
                )
                .group_by(Task.assigned_to_id)
                .order_by(completed_count.desc(), Task.assigned_to_id)
            ).all()
            users = _users_by_id(session, [row[0] for row in rows])
            span.set_attribute("member_count", len(rows))

        return TeamProductivityRead(
            start_date=window_start,
            end_date=window_end,
            members=[
                ProductivityRow(
                    user_id=row[0],
                    name=users[row[0]].name if row[0] in users else None,
                    email=users[row[0]].email if row[0] in users else None,
                    completed_tasks=int(row[1]),
                    avg_completion_minutes=float(row[2]) if row[2] is not None else None,
                )
                for row in rows
            ],
        )


customer_service = CustomerService()
order_service = OrderService()
product_service = ProductService()
tag_service = TagService()
communication_service = CommunicationService()
task_service = TaskService()
