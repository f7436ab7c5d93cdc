from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, Numeric, String, Table, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from crm_dashboard.auth.models import User, utcnow
from crm_dashboard.core.database import Base


def _tag_link_table(name: str, owner_table: str, owner_column: str) -> Table:
    return Table(
        name,
        Base.metadata,
        Column(owner_column, Uuid(as_uuid=True), ForeignKey(f"{owner_table}.id", ondelete="CASCADE"), primary_key=True),
        Column("tag_id", Uuid(as_uuid=True), ForeignKey("crm_tag.id", ondelete="CASCADE"), primary_key=True),
        Index(f"ix_{name}_tag_id", "tag_id"),
    )


customer_tag = _tag_link_table("crm_customer_tag", "crm_customer", "customer_id")
product_tag = _tag_link_table("crm_product_tag", "crm_product", "product_id")
order_tag = _tag_link_table("crm_order_tag", "crm_order", "order_id")
communication_tag = _tag_link_table("crm_communication_tag", "crm_communication", "communication_id")
task_tag = _tag_link_table("crm_task_tag", "crm_task", "task_id")


class Customer(Base):
    __tablename__ = "crm_customer"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str] = mapped_column(String(320), nullable=False, unique=True)
    phone: Mapped[str | None] = mapped_column(String(32), nullable=True)
    company: Mapped[str | None] = mapped_column(String(100), nullable=True)
    notes: Mapped[str | None] = mapped_column(String(500), nullable=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="active", server_default="active")
    type: Mapped[str] = mapped_column(String(32), nullable=False, default="regular", server_default="regular")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    orders: Mapped[list[Order]] = relationship("Order", back_populates="customer")
    communications: Mapped[list[Communication]] = relationship("Communication", back_populates="customer")
    tags: Mapped[list[Tag]] = relationship("Tag", secondary=customer_tag, back_populates="customers")

    __table_args__ = (
        Index("ix_crm_customer_status_type", "status", "type"),
        Index("ix_crm_customer_created_at", "created_at"),
    )


class Product(Base):
    __tablename__ = "crm_product"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    price: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="active", server_default="active")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    order_items: Mapped[list[OrderItem]] = relationship("OrderItem", back_populates="product")
    tags: Mapped[list[Tag]] = relationship("Tag", secondary=product_tag, back_populates="products")

    __table_args__ = (Index("ix_crm_product_status_price", "status", "price"),)


class Order(Base):
    __tablename__ = "crm_order"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    customer_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("crm_customer.id", ondelete="RESTRICT"),
        nullable=False,
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("crm_user.id", ondelete="RESTRICT"),
        nullable=False,
    )
    total: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="pending", server_default="pending")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    customer: Mapped[Customer] = relationship("Customer", back_populates="orders")
    user: Mapped[User] = relationship(User)
    items: Mapped[list[OrderItem]] = relationship(
        "OrderItem",
        back_populates="order",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
    tags: Mapped[list[Tag]] = relationship("Tag", secondary=order_tag, back_populates="orders")

    __table_args__ = (
        Index("ix_crm_order_customer_id", "customer_id"),
        Index("ix_crm_order_user_status", "user_id", "status"),
        Index("ix_crm_order_created_at", "created_at"),
    )


class OrderItem(Base):
    __tablename__ = "crm_order_item"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    order_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("crm_order.id", ondelete="CASCADE"),
        nullable=False,
    )
    product_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("crm_product.id", ondelete="RESTRICT"),
        nullable=False,
    )
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    price: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)

    order: Mapped[Order] = relationship("Order", back_populates="items")
    product: Mapped[Product] = relationship("Product", back_populates="order_items")

    __table_args__ = (
        Index("ix_crm_order_item_order_id", "order_id"),
        Index("ix_crm_order_item_product_id", "product_id"),
    )


class Tag(Base):
    __tablename__ = "crm_tag"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    color: Mapped[str | None] = mapped_column(String(32), nullable=True)
    description: Mapped[str | None] = mapped_column(String(500), nullable=True)
    type: Mapped[str | None] = mapped_column(String(32), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    products: Mapped[list[Product]] = relationship("Product", secondary=product_tag, back_populates="tags")
    customers: Mapped[list[Customer]] = relationship("Customer", secondary=customer_tag, back_populates="tags")
    orders: Mapped[list[Order]] = relationship("Order", secondary=order_tag, back_populates="tags")
    communications: Mapped[list[Communication]] = relationship(
        "Communication",
        secondary=communication_tag,
        back_populates="tags",
    )
    tasks: Mapped[list[Task]] = relationship("Task", secondary=task_tag, back_populates="tags")


class Communication(Base):
    __tablename__ = "crm_communication"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    customer_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("crm_customer.id", ondelete="RESTRICT"),
        nullable=False,
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("crm_user.id", ondelete="RESTRICT"),
        nullable=False,
    )
    parent_communication_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("crm_communication.id", ondelete="SET NULL"),
        nullable=True,
    )
    type: Mapped[str] = mapped_column(String(32), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    direction: Mapped[str] = mapped_column(String(16), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="pending", server_default="pending")
    scheduled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    duration_seconds: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    customer: Mapped[Customer] = relationship("Customer", back_populates="communications")
    user: Mapped[User] = relationship(User)
    parent: Mapped[Communication | None] = relationship(
        "Communication",
        remote_side=[id],
        back_populates="follow_ups",
    )
    follow_ups: Mapped[list[Communication]] = relationship("Communication", back_populates="parent")
    tags: Mapped[list[Tag]] = relationship("Tag", secondary=communication_tag, back_populates="communications")

    __table_args__ = (
        Index("ix_crm_communication_customer_id", "customer_id"),
        Index("ix_crm_communication_user_id", "user_id"),
        Index("ix_crm_communication_created_at", "created_at"),
    )


class Task(Base):
    __tablename__ = "crm_task"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    assigned_to_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("crm_user.id", ondelete="RESTRICT"),
        nullable=False,
    )
    created_by_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("crm_user.id", ondelete="RESTRICT"),
        nullable=False,
    )
    priority: Mapped[str] = mapped_column(String(16), nullable=False, default="medium", server_default="medium")
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="todo", server_default="todo")
    due_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    related_entity_type: Mapped[str | None] = mapped_column(String(32), nullable=True)
    related_entity_id: Mapped[uuid.UUID | None] = mapped_column(Uuid(as_uuid=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completion_time_minutes: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    assigned_to: Mapped[User] = relationship(User, foreign_keys=[assigned_to_id])
    created_by: Mapped[User] = relationship(User, foreign_keys=[created_by_id])
    tags: Mapped[list[Tag]] = relationship("Tag", secondary=task_tag, back_populates="tasks")

    __table_args__ = (
        Index("ix_crm_task_assigned_status", "assigned_to_id", "status"),
        Index("ix_crm_task_due_date", "due_date"),
        Index("ix_crm_task_related", "related_entity_type", "related_entity_id"),
    )
