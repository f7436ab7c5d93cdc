from __future__ import annotations

import math
from datetime import datetime
from decimal import Decimal
from typing import Any, Generic, Literal, TypeVar
from uuid import UUID

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator, model_validator

from crm_dashboard.auth.schemas import UtcDateTime


CustomerStatus = Literal["active", "inactive", "prospect"]
CustomerType = Literal["regular", "vip", "lead"]
OrderStatus = Literal["pending", "processing", "completed", "cancelled"]
ProductStatus = Literal["active", "inactive"]
TagType = Literal["product", "customer", "communication", "order"]
CommunicationType = Literal["email", "phone", "meeting", "chat", "sms"]
CommunicationDirection = Literal["inbound", "outbound"]
CommunicationStatus = Literal["pending", "completed", "failed"]
TaskPriority = Literal["low", "medium", "high", "critical"]
TaskStatus = Literal["todo", "in_progress", "review", "done"]
RelatedEntityType = Literal["customer", "order", "communication"]
TagAction = Literal["add", "remove"]
SortOrder = Literal["asc", "desc"]
TaggedEntityType = Literal["orders", "products", "customers", "communications"]

PHONE_PATTERN = r"^\+?[1-9]\d{1,14}$"


def reject_null(value: Any) -> Any:
    """Partial updates may omit a required column but never clear it."""
    if value is None:
        raise ValueError("may not be null")
    return value


ItemT = TypeVar("ItemT")


class Page(BaseModel, Generic[ItemT]):
    items: list[ItemT]
    page: int
    limit: int
    total: int
    total_pages: int

    @classmethod
    def build(cls, items: list[Any], *, page: int, limit: int, total: int) -> Page[Any]:
        total_pages = math.ceil(total / limit) if total else 0
        return cls(items=items, page=page, limit=limit, total=total, total_pages=total_pages)


class TagSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    color: str | None
    type: TagType | None


class UserSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    email: str


class TagLinkRequest(BaseModel):
    tag_id: UUID
    action: TagAction


class CustomerTagByName(BaseModel):
    tag_name: str = Field(min_length=2, max_length=128)


# Customers


class CustomerCreate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str = Field(min_length=2, max_length=255)
    email: EmailStr
    phone: str | None = Field(default=None, pattern=PHONE_PATTERN)
    company: str | None = Field(default=None, max_length=100)
    notes: str | None = Field(default=None, max_length=500)
    status: CustomerStatus = "active"
    type: CustomerType = "regular"
    tag_ids: list[UUID] = Field(default_factory=list)


class CustomerUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str | None = Field(default=None, min_length=2, max_length=255)
    email: EmailStr | None = None
    phone: str | None = Field(default=None, pattern=PHONE_PATTERN)
    company: str | None = Field(default=None, max_length=100)
    notes: str | None = Field(default=None, max_length=500)
    status: CustomerStatus | None = None
    type: CustomerType | None = None
    tag_ids: list[UUID] | None = None

    @field_validator("name", "email", "status", "type")
    @classmethod
    def check_required(cls, value: Any) -> Any:
        return reject_null(value)


class CustomerSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    email: str
    company: str | None


class CustomerRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    email: str
    phone: str | None
    company: str | None
    notes: str | None
    status: CustomerStatus
    type: CustomerType
    created_at: UtcDateTime
    updated_at: UtcDateTime
    tags: list[TagSummary] = Field(default_factory=list)
    total_orders: int = 0


class CustomerPurchaseSummary(BaseModel):
    customer_id: UUID
    total_purchases: Decimal
    order_count: int


class CustomerSegment(BaseModel):
    type: CustomerType
    status: CustomerStatus
    customer_count: int
    revenue: Decimal


class TopCustomer(BaseModel):
    id: UUID
    name: str
    email: str
    type: CustomerType
    order_count: int
    lifetime_value: Decimal


class CustomerSegmentsRead(BaseModel):
    segments: list[CustomerSegment]
    top_customers: list[TopCustomer]


# Products


class ProductCreate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str = Field(min_length=2, max_length=255)
    description: str | None = None
    price: Decimal = Field(gt=Decimal("0"), max_digits=18, decimal_places=2)
    status: ProductStatus = "active"
    tag_ids: list[UUID] = Field(default_factory=list)


class ProductUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str | None = Field(default=None, min_length=2, max_length=255)
    description: str | None = None
    price: Decimal | None = Field(default=None, gt=Decimal("0"), max_digits=18, decimal_places=2)
    status: ProductStatus | None = None
    tag_ids: list[UUID] | None = None

    @field_validator("name", "price", "status")
    @classmethod
    def check_required(cls, value: Any) -> Any:
        return reject_null(value)


class ProductSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    price: Decimal
    status: ProductStatus


class ProductRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    description: str | None
    price: Decimal
    status: ProductStatus
    created_at: UtcDateTime
    updated_at: UtcDateTime
    tags: list[TagSummary] = Field(default_factory=list)
    total_orders: int = 0


# Orders


class OrderItemCreate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    product_id: UUID
    quantity: int = Field(gt=0)
    price: Decimal = Field(gt=Decimal("0"), max_digits=18, decimal_places=2)


class OrderCreate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    customer_id: UUID
    total: Decimal = Field(gt=Decimal("0"), max_digits=18, decimal_places=2)
    status: OrderStatus = "pending"
    items: list[OrderItemCreate] = Field(min_length=1)


class OrderUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    status: OrderStatus | None = None
    total: Decimal | None = Field(default=None, gt=Decimal("0"), max_digits=18, decimal_places=2)


class OrderItemRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    product_id: UUID
    quantity: int
    price: Decimal
    product: ProductSummary | None = None


class OrderRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    customer_id: UUID
    user_id: UUID
    total: Decimal
    status: OrderStatus
    created_at: UtcDateTime
    updated_at: UtcDateTime
    items: list[OrderItemRead] = Field(default_factory=list)
    tags: list[TagSummary] = Field(default_factory=list)


class OrderDetail(OrderRead):
    customer: CustomerSummary


class ProductOrderItemRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    order_id: UUID
    quantity: int
    price: Decimal
    order_status: OrderStatus
    customer: CustomerSummary


class ProductDetail(ProductRead):
    order_items: list[ProductOrderItemRead] = Field(default_factory=list)


# Communications


class CommunicationCreate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    customer_id: UUID
    type: CommunicationType
    content: str = Field(min_length=1)
    direction: CommunicationDirection
    status: CommunicationStatus = "pending"
    scheduled_at: datetime | None = None
    duration_seconds: int | None = Field(default=None, ge=0)
    parent_communication_id: UUID | None = None
    tag_ids: list[UUID] = Field(default_factory=list)


class CommunicationUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    content: str | None = Field(default=None, min_length=1)
    status: CommunicationStatus | None = None
    scheduled_at: datetime | None = None
    duration_seconds: int | None = Field(default=None, ge=0)

    @field_validator("content", "status")
    @classmethod
    def check_required(cls, value: Any) -> Any:
        return reject_null(value)


class FollowUpCreate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    content: str = Field(min_length=1)
    scheduled_at: datetime
    type: CommunicationType | None = None


class CommunicationRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    customer_id: UUID
    user_id: UUID
    parent_communication_id: UUID | None
    type: CommunicationType
    content: str
    direction: CommunicationDirection
    status: CommunicationStatus
    scheduled_at: UtcDateTime | None
    duration_seconds: int | None
    created_at: UtcDateTime
    updated_at: UtcDateTime
    tags: list[TagSummary] = Field(default_factory=list)


class CommunicationBreakdownRow(BaseModel):
    type: CommunicationType
    direction: CommunicationDirection
    status: CommunicationStatus
    count: int


class CommunicationSummaryRead(BaseModel):
    customer_id: UUID
    total: int
    breakdown: list[CommunicationBreakdownRow]


class CommunicationStatRow(CommunicationBreakdownRow):
    avg_duration_seconds: float | None


class TopCommunicator(BaseModel):
    user_id: UUID
    name: str | None
    email: str | None
    count: int


class CommunicationReportRead(BaseModel):
    start_date: UtcDateTime
    end_date: UtcDateTime
    stats: list[CommunicationStatRow]
    top_communicators: list[TopCommunicator]


class CommunicationEffectiveness(BaseModel):
    communication_id: UUID
    customer_id: UUID
    type: CommunicationType
    created_at: UtcDateTime
    subsequent_orders: int
    order_value: Decimal
    conversion: int


class EffectivenessByType(BaseModel):
    type: CommunicationType
    communications: int
    conversions: int
    conversion_rate: float
    order_value: Decimal


class EffectivenessRead(BaseModel):
    start_date: UtcDateTime
    end_date: UtcDateTime
    communications: list[CommunicationEffectiveness]
    by_type: list[EffectivenessByType]


class InteractionHistoryRead(BaseModel):
    customer_id: UUID
    communications: list[CommunicationRead]
    orders: list[OrderRead]


class CustomerDetail(CustomerRead):
    orders: list[OrderRead] = Field(default_factory=list)
    communications: list[CommunicationRead] = Field(default_factory=list)


# Tasks


class TaskCreate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    title: str = Field(min_length=3, max_length=255)
    description: str | None = None
    assigned_to_id: UUID
    priority: TaskPriority = "medium"
    status: TaskStatus = "todo"
    due_date: datetime | None = None
    related_entity_type: RelatedEntityType | None = None
    related_entity_id: UUID | None = None
    tag_ids: list[UUID] = Field(default_factory=list)

    @model_validator(mode="after")
    def check_related_entity(self) -> TaskCreate:
        if (self.related_entity_type is None) != (self.related_entity_id is None):
            raise ValueError("related_entity_type and related_entity_id must be supplied together")
        return self


class TaskUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    title: str | None = Field(default=None, min_length=3, max_length=255)
    description: str | None = None
    assigned_to_id: UUID | None = None
    priority: TaskPriority | None = None
    status: TaskStatus | None = None
    due_date: datetime | None = None
    tag_ids: list[UUID] | None = None


class TaskRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    title: str
    description: str | None
    assigned_to_id: UUID
    created_by_id: UUID
    priority: TaskPriority
    status: TaskStatus
    due_date: UtcDateTime | None
    related_entity_type: RelatedEntityType | None
    related_entity_id: UUID | None
    completed_at: UtcDateTime | None
    completion_time_minutes: int | None
    created_at: UtcDateTime
    updated_at: UtcDateTime
    tags: list[TagSummary] = Field(default_factory=list)


class ProductivityRow(BaseModel):
    user_id: UUID
    name: str | None
    email: str | None
    completed_tasks: int
    avg_completion_minutes: float | None


class TeamProductivityRead(BaseModel):
    start_date: UtcDateTime
    end_date: UtcDateTime
    members: list[ProductivityRow]


# Tags


class TagCreate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str = Field(min_length=2, max_length=128)
    color: str | None = Field(default=None, max_length=32)
    description: str | None = Field(default=None, max_length=500)
    type: TagType | None = None


class TagUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str | None = Field(default=None, min_length=2, max_length=128)
    color: str | None = Field(default=None, max_length=32)
    description: str | None = Field(default=None, max_length=500)
    type: TagType | None = None

    @field_validator("name")
    @classmethod
    def check_required(cls, value: Any) -> Any:
        return reject_null(value)


class TagRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    color: str | None
    description: str | None
    type: TagType | None
    created_at: UtcDateTime
    updated_at: UtcDateTime


class TaskSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    title: str
    status: TaskStatus


class OrderSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    customer_id: UUID
    total: Decimal
    status: OrderStatus


class CommunicationSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    customer_id: UUID
    type: CommunicationType
    direction: CommunicationDirection
    status: CommunicationStatus


class TagDetail(TagRead):
    products: list[ProductSummary] = Field(default_factory=list)
    customers: list[CustomerSummary] = Field(default_factory=list)
    orders: list[OrderSummary] = Field(default_factory=list)
    communications: list[CommunicationSummary] = Field(default_factory=list)
    tasks: list[TaskSummary] = Field(default_factory=list)


# Bulk and advanced queries


class BulkTagCreate(BaseModel):
    tags: list[TagCreate] = Field(min_length=1, max_length=1000)


class BulkTagResult(BaseModel):
    requested: int
    inserted: int


class BulkOrderStatusUpdate(BaseModel):
    order_ids: list[UUID] = Field(min_length=1, max_length=1000)
    status: OrderStatus


class BulkOrderStatusResult(BaseModel):
    updated: int


class QueryFilter(BaseModel):
    field: str = Field(min_length=1)
    operator: str = Field(min_length=1)
    value: Any = None


class AdvancedOrderQuery(BaseModel):
    filters: list[QueryFilter] = Field(default_factory=list)
    sort_by: str = "created_at"
    sort_order: SortOrder = "desc"
    page: int = Field(default=1, ge=1)
    page_size: int = Field(default=10, ge=1, le=200)


class OrderReportRow(BaseModel):
    status: OrderStatus
    count: int
    total: Decimal


class OrderReportRead(BaseModel):
    start_date: UtcDateTime
    end_date: UtcDateTime
    rows: list[OrderReportRow]


class TagSearchResult(BaseModel):
    tag: TagRead
    entity_type: TaggedEntityType
    items: list[OrderRead] | list[ProductRead] | list[CustomerRead] | list[CommunicationRead]
