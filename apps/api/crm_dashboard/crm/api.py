from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal

from fastapi import APIRouter, Depends, Query, status
from fastapi.responses import Response
from sqlalchemy.orm import Session

from crm_dashboard.core.auth import Principal, get_current_principal
from crm_dashboard.core.config import get_settings
from crm_dashboard.core.database import get_db
from crm_dashboard.core.rbac import ADMIN, MANAGERS, SALES_TEAM, require_roles
from crm_dashboard.crm.bulk import advanced_query_service, bulk_service
from crm_dashboard.crm.query import PageRequest
from crm_dashboard.crm.schemas import (
    AdvancedOrderQuery,
    BulkOrderStatusResult,
    BulkOrderStatusUpdate,
    BulkTagCreate,
    BulkTagResult,
    CommunicationCreate,
    CommunicationDirection,
    CommunicationRead,
    CommunicationReportRead,
    CommunicationStatus,
    CommunicationSummaryRead,
    CommunicationType,
    CommunicationUpdate,
    CustomerCreate,
    CustomerDetail,
    CustomerPurchaseSummary,
    CustomerRead,
    CustomerSegmentsRead,
    CustomerStatus,
    CustomerTagByName,
    CustomerType,
    CustomerUpdate,
    EffectivenessRead,
    FollowUpCreate,
    InteractionHistoryRead,
    OrderCreate,
    OrderDetail,
    OrderRead,
    OrderReportRead,
    OrderStatus,
    OrderUpdate,
    Page,
    ProductCreate,
    ProductDetail,
    ProductRead,
    ProductStatus,
    ProductUpdate,
    RelatedEntityType,
    TagCreate,
    TagDetail,
    TagLinkRequest,
    TagRead,
    TagSearchResult,
    TagType,
    TagUpdate,
    TaskCreate,
    TaskPriority,
    TaskRead,
    TaskStatus,
    TaskUpdate,
    TeamProductivityRead,
)
from crm_dashboard.crm.service import (
    communication_service,
    customer_service,
    order_service,
    product_service,
    tag_service,
    task_service,
)


customers_router = APIRouter(prefix="/api/customers", tags=["customers"])
orders_router = APIRouter(prefix="/api/orders", tags=["orders"])
products_router = APIRouter(prefix="/api/products", tags=["products"])
tags_router = APIRouter(prefix="/api/tags", tags=["tags"])
communications_router = APIRouter(prefix="/api/communications", tags=["communications"])
tasks_router = APIRouter(prefix="/api/tasks", tags=["tasks"])
bulk_router = APIRouter(prefix="/api/bulk", tags=["bulk"])


def page_request(
    page: int = Query(default=1, ge=1),
    limit: int | None = Query(default=None, ge=1, le=200),
) -> PageRequest:
    settings = get_settings()
    return PageRequest(page=page, limit=min(limit or settings.default_page_size, settings.max_page_size))


def _no_content() -> Response:
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# Customers


@customers_router.post("", response_model=CustomerRead, status_code=status.HTTP_201_CREATED)
def create_customer(
    payload: CustomerCreate,
    db: Session = Depends(get_db),
    _: Principal = Depends(require_roles(*MANAGERS)),
) -> CustomerRead:
    return customer_service.create(db, payload)


@customers_router.get("", response_model=Page[CustomerRead])
def list_customers(
    page: PageRequest = Depends(page_request),
    search: str | None = Query(default=None),
    status_filter: CustomerStatus | None = Query(default=None, alias="status"),
    customer_type: CustomerType | None = Query(default=None, alias="type"),
    tag_id: uuid.UUID | None = Query(default=None),
    db: Session = Depends(get_db),
    _: Principal = Depends(get_current_principal),
) -> Page[CustomerRead]:
    return customer_service.list(
        db,
        page,
        search=search,
        status=status_filter,
        customer_type=customer_type,
        tag_id=tag_id,
    )


@customers_router.get("/segments", response_model=CustomerSegmentsRead)
def customer_segments(
    db: Session = Depends(get_db),
    _: Principal = Depends(require_roles(*MANAGERS)),
) -> CustomerSegmentsRead:
    return customer_service.segments(db)


@customers_router.get("/{customer_id}", response_model=CustomerDetail)
def get_customer(
    customer_id: uuid.UUID,
    db: Session = Depends(get_db),
    _: Principal = Depends(get_current_principal),
) -> CustomerDetail:
    return customer_service.get(db, customer_id)


@customers_router.patch("/{customer_id}", response_model=CustomerRead)
def update_customer(
    customer_id: uuid.UUID,
    payload: CustomerUpdate,
    db: Session = Depends(get_db),
    _: Principal = Depends(require_roles(*MANAGERS)),
) -> CustomerRead:
    return customer_service.update(db, customer_id, payload)


@customers_router.delete("/{customer_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_customer(
    customer_id: uuid.UUID,
    db: Session = Depends(get_db),
    _: Principal = Depends(require_roles(*ADMIN)),
) -> Response:
    customer_service.delete(db, customer_id)
    return _no_content()


@customers_router.get("/{customer_id}/purchases", response_model=CustomerPurchaseSummary)
def customer_purchases(
    customer_id: uuid.UUID,
    db: Session = Depends(get_db),
    _: Principal = Depends(get_current_principal),
) -> CustomerPurchaseSummary:
    return order_service.customer_total_purchases(db, customer_id)


@customers_router.get("/{customer_id}/communications/summary", response_model=CommunicationSummaryRead)
def customer_communication_summary(
    customer_id: uuid.UUID,
    db: Session = Depends(get_db),
    _: Principal = Depends(get_current_principal),
) -> CommunicationSummaryRead:
    return communication_service.customer_summary(db, customer_id)


@customers_router.get("/{customer_id}/history", response_model=InteractionHistoryRead)
def customer_history(
    customer_id: uuid.UUID,
    db: Session = Depends(get_db),
    _: Principal = Depends(get_current_principal),
) -> InteractionHistoryRead:
    return customer_service.interaction_history(db, customer_id)


@customers_router.post("/{customer_id}/tags", response_model=CustomerRead)
def add_customer_tag(
    customer_id: uuid.UUID,
    payload: CustomerTagByName,
    db: Session = Depends(get_db),
    _: Principal = Depends(require_roles(*MANAGERS)),
) -> CustomerRead:
    return customer_service.add_tag_by_name(db, customer_id, payload.tag_name)


@customers_router.put("/{customer_id}/tags", response_model=CustomerRead)
def set_customer_tag(
    customer_id: uuid.UUID,
    payload: TagLinkRequest,
    db: Session = Depends(get_db),
    _: Principal = Depends(require_roles(*MANAGERS)),
) -> CustomerRead:
    return customer_service.set_tag(db, customer_id, payload)


# Orders


@orders_router.post("", response_model=OrderDetail, status_code=status.HTTP_201_CREATED)
def create_order(
    payload: OrderCreate,
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_roles(*SALES_TEAM)),
) -> OrderDetail:
    return order_service.create(db, principal.id, payload)


@orders_router.get("", response_model=Page[OrderRead])
def list_orders(
    page: PageRequest = Depends(page_request),
    customer_id: uuid.UUID | None = Query(default=None),
    user_id: uuid.UUID | None = Query(default=None),
    status_filter: OrderStatus | None = Query(default=None, alias="status"),
    min_total: Decimal | None = Query(default=None),
    max_total: Decimal | None = Query(default=None),
    start_date: datetime | None = Query(default=None),
    end_date: datetime | None = Query(default=None),
    db: Session = Depends(get_db),
    _: Principal = Depends(get_current_principal),
) -> Page[OrderRead]:
    return order_service.list(
        db,
        page,
        customer_id=customer_id,
        user_id=user_id,
        status=status_filter,
        min_total=min_total,
        max_total=max_total,
        start_date=start_date,
        end_date=end_date,
    )


@orders_router.get("/{order_id}", response_model=OrderDetail)
def get_order(
    order_id: uuid.UUID,
    db: Session = Depends(get_db),
    _: Principal = Depends(get_current_principal),
) -> OrderDetail:
    return order_service.get(db, order_id)


@orders_router.patch("/{order_id}", response_model=OrderDetail)
def update_order(
    order_id: uuid.UUID,
    payload: OrderUpdate,
    db: Session = Depends(get_db),
    _: Principal = Depends(require_roles(*SALES_TEAM)),
) -> OrderDetail:
    return order_service.update(db, order_id, payload)


@orders_router.delete("/{order_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_order(
    order_id: uuid.UUID,
    db: Session = Depends(get_db),
    _: Principal = Depends(require_roles(*ADMIN)),
) -> Response:
    order_service.delete(db, order_id)
    return _no_content()


@orders_router.put("/{order_id}/tags", response_model=OrderDetail)
def set_order_tag(
    order_id: uuid.UUID,
    payload: TagLinkRequest,
    db: Session = Depends(get_db),
    _: Principal = Depends(require_roles(*SALES_TEAM)),
) -> OrderDetail:
    return order_service.set_tag(db, order_id, payload)


# Products


@products_router.post("", response_model=ProductRead, status_code=status.HTTP_201_CREATED)
def create_product(
    payload: ProductCreate,
    db: Session = Depends(get_db),
    _: Principal = Depends(require_roles(*MANAGERS)),
) -> ProductRead:
    return product_service.create(db, payload)


@products_router.get("", response_model=Page[ProductRead])
def list_products(
    page: PageRequest = Depends(page_request),
    search: str | None = Query(default=None),
    status_filter: ProductStatus | None = Query(default=None, alias="status"),
    min_price: Decimal | None = Query(default=None),
    max_price: Decimal | None = Query(default=None),
    db: Session = Depends(get_db),
    _: Principal = Depends(get_current_principal),
) -> Page[ProductRead]:
    return product_service.list(
        db,
        page,
        search=search,
        status=status_filter,
        min_price=min_price,
        max_price=max_price,
    )


@products_router.get("/{product_id}", response_model=ProductDetail)
def get_product(
    product_id: uuid.UUID,
    db: Session = Depends(get_db),
    _: Principal = Depends(get_current_principal),
) -> ProductDetail:
    return product_service.get(db, product_id)


@products_router.patch("/{product_id}", response_model=ProductRead)
def update_product(
    product_id: uuid.UUID,
    payload: ProductUpdate,
    db: Session = Depends(get_db),
    _: Principal = Depends(require_roles(*MANAGERS)),
) -> ProductRead:
    return product_service.update(db, product_id, payload)


@products_router.delete("/{product_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_product(
    product_id: uuid.UUID,
    db: Session = Depends(get_db),
    _: Principal = Depends(require_roles(*ADMIN)),
) -> Response:
    product_service.delete(db, product_id)
    return _no_content()


@products_router.put("/{product_id}/tags", response_model=ProductRead)
def set_product_tag(
    product_id: uuid.UUID,
    payload: TagLinkRequest,
    db: Session = Depends(get_db),
    _: Principal = Depends(require_roles(*MANAGERS)),
) -> ProductRead:
    return product_service.set_tag(db, product_id, payload)


# Tags


@tags_router.post("", response_model=TagRead, status_code=status.HTTP_201_CREATED)
def create_tag(
    payload: TagCreate,
    db: Session = Depends(get_db),
    _: Principal = Depends(require_roles(*MANAGERS)),
) -> TagRead:
    return tag_service.create(db, payload)


@tags_router.get("", response_model=Page[TagRead])
def list_tags(
    page: PageRequest = Depends(page_request),
    search: str | None = Query(default=None),
    tag_type: TagType | None = Query(default=None, alias="type"),
    db: Session = Depends(get_db),
    _: Principal = Depends(get_current_principal),
) -> Page[TagRead]:
    return tag_service.list(db, page, search=search, tag_type=tag_type)


@tags_router.get("/{tag_id}", response_model=TagDetail)
def get_tag(
    tag_id: uuid.UUID,
    db: Session = Depends(get_db),
    _: Principal = Depends(get_current_principal),
) -> TagDetail:
    return tag_service.get(db, tag_id)


@tags_router.patch("/{tag_id}", response_model=TagRead)
def update_tag(
    tag_id: uuid.UUID,
    payload: TagUpdate,
    db: Session = Depends(get_db),
    _: Principal = Depends(require_roles(*MANAGERS)),
) -> TagRead:
    return tag_service.update(db, tag_id, payload)


@tags_router.delete("/{tag_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_tag(
    tag_id: uuid.UUID,
    db: Session = Depends(get_db),
    _: Principal = Depends(require_roles(*ADMIN)),
) -> Response:
    tag_service.delete(db, tag_id)
    return _no_content()


# Communications


@communications_router.post("", response_model=CommunicationRead, status_code=status.HTTP_201_CREATED)
def create_communication(
    payload: CommunicationCreate,
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_roles(*SALES_TEAM)),
) -> CommunicationRead:
    return communication_service.create(db, principal.id, payload)


@communications_router.get("", response_model=Page[CommunicationRead])
def list_communications(
    page: PageRequest = Depends(page_request),
    customer_id: uuid.UUID | None = Query(default=None),
    user_id: uuid.UUID | None = Query(default=None),
    communication_type: CommunicationType | None = Query(default=None, alias="type"),
    direction: CommunicationDirection | None = Query(default=None),
    status_filter: CommunicationStatus | None = Query(default=None, alias="status"),
    start_date: datetime | None = Query(default=None),
    end_date: datetime | None = Query(default=None),
    db: Session = Depends(get_db),
    _: Principal = Depends(get_current_principal),
) -> Page[CommunicationRead]:
    return communication_service.list(
        db,
        page,
        customer_id=customer_id,
        user_id=user_id,
        communication_type=communication_type,
        direction=direction,
        status=status_filter,
        start_date=start_date,
        end_date=end_date,
    )


@communications_router.get("/report", response_model=CommunicationReportRead)
def communication_report(
    start_date: datetime | None = Query(default=None),
    end_date: datetime | None = Query(default=None),
    db: Session = Depends(get_db),
    _: Principal = Depends(require_roles(*MANAGERS)),
) -> CommunicationReportRead:
    return communication_service.report(db, start_date=start_date, end_date=end_date)


@communications_router.get("/effectiveness", response_model=EffectivenessRead)
def communication_effectiveness(
    start_date: datetime | None = Query(default=None),
    end_date: datetime | None = Query(default=None),
    db: Session = Depends(get_db),
    _: Principal = Depends(require_roles(*MANAGERS)),
) -> EffectivenessRead:
    return communication_service.effectiveness(db, start_date=start_date, end_date=end_date)


@communications_router.get("/{communication_id}", response_model=CommunicationRead)
def get_communication(
    communication_id: uuid.UUID,
    db: Session = Depends(get_db),
    _: Principal = Depends(get_current_principal),
) -> CommunicationRead:
    return communication_service.get(db, communication_id)


@communications_router.patch("/{communication_id}", response_model=CommunicationRead)
def update_communication(
    communication_id: uuid.UUID,
    payload: CommunicationUpdate,
    db: Session = Depends(get_db),
    _: Principal = Depends(require_roles(*SALES_TEAM)),
) -> CommunicationRead:
    return communication_service.update(db, communication_id, payload)


@communications_router.delete("/{communication_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_communication(
    communication_id: uuid.UUID,
    db: Session = Depends(get_db),
    _: Principal = Depends(require_roles(*ADMIN)),
) -> Response:
    communication_service.delete(db, communication_id)
    return _no_content()


@communications_router.put("/{communication_id}/tags", response_model=CommunicationRead)
def set_communication_tag(
    communication_id: uuid.UUID,
    payload: TagLinkRequest,
    db: Session = Depends(get_db),
    _: Principal = Depends(require_roles(*SALES_TEAM)),
) -> CommunicationRead:
    return communication_service.set_tag(db, communication_id, payload)


@communications_router.post(
    "/{communication_id}/follow-up",
    response_model=CommunicationRead,
    status_code=status.HTTP_201_CREATED,
)
def schedule_follow_up(
    communication_id: uuid.UUID,
    payload: FollowUpCreate,
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_roles(*SALES_TEAM)),
) -> CommunicationRead:
    return communication_service.schedule_follow_up(db, principal.id, communication_id, payload)


# Tasks


@tasks_router.post("", response_model=TaskRead, status_code=status.HTTP_201_CREATED)
def create_task(
    payload: TaskCreate,
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_roles(*SALES_TEAM)),
) -> TaskRead:
    return task_service.create(db, principal.id, payload)


@tasks_router.get("", response_model=Page[TaskRead])
def list_tasks(
    page: PageRequest = Depends(page_request),
    assigned_to_id: uuid.UUID | None = Query(default=None),
    created_by_id: uuid.UUID | None = Query(default=None),
    status_filter: TaskStatus | None = Query(default=None, alias="status"),
    priority: TaskPriority | None = Query(default=None),
    start_date: datetime | None = Query(default=None),
    end_date: datetime | None = Query(default=None),
    related_entity_type: RelatedEntityType | None = Query(default=None),
    related_entity_id: uuid.UUID | None = Query(default=None),
    db: Session = Depends(get_db),
    _: Principal = Depends(require_roles(*SALES_TEAM)),
) -> Page[TaskRead]:
    return task_service.list(
        db,
        page,
        assigned_to_id=assigned_to_id,
        created_by_id=created_by_id,
        status=status_filter,
        priority=priority,
        start_date=start_date,
        end_date=end_date,
        related_entity_type=related_entity_type,
        related_entity_id=related_entity_id,
    )


@tasks_router.get("/productivity", response_model=TeamProductivityRead)
def team_productivity(
    start_date: datetime | None = Query(default=None),
    end_date: datetime | None = Query(default=None),
    db: Session = Depends(get_db),
    _: Principal = Depends(require_roles(*MANAGERS)),
) -> TeamProductivityRead:
    return task_service.team_productivity(db, start_date=start_date, end_date=end_date)


@tasks_router.get("/{task_id}", response_model=TaskRead)
def get_task(
    task_id: uuid.UUID,
    db: Session = Depends(get_db),
    _: Principal = Depends(require_roles(*SALES_TEAM)),
) -> TaskRead:
    return task_service.get(db, task_id)


@tasks_router.patch("/{task_id}", response_model=TaskRead)
def update_task(
    task_id: uuid.UUID,
    payload: TaskUpdate,
    db: Session = Depends(get_db),
    _: Principal = Depends(require_roles(*SALES_TEAM)),
) -> TaskRead:
    return task_service.update(db, task_id, payload)


@tasks_router.delete("/{task_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_task(
    task_id: uuid.UUID,
    db: Session = Depends(get_db),
    _: Principal = Depends(require_roles(*MANAGERS)),
) -> Response:
    task_service.delete(db, task_id)
    return _no_content()


# Bulk


@bulk_router.post("/tags", response_model=BulkTagResult, status_code=status.HTTP_201_CREATED)
def bulk_create_tags(
    payload: BulkTagCreate,
    db: Session = Depends(get_db),
    _: Principal = Depends(require_roles(*MANAGERS)),
) -> BulkTagResult:
    return bulk_service.bulk_create_tags(db, payload)


@bulk_router.patch("/orders/status", response_model=BulkOrderStatusResult)
def bulk_update_order_status(
    payload: BulkOrderStatusUpdate,
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_roles(*SALES_TEAM)),
) -> BulkOrderStatusResult:
    return bulk_service.bulk_update_order_status(db, principal, payload)


@bulk_router.get("/tags/{tag_name}/{entity_type}", response_model=TagSearchResult)
def search_entities_by_tag(
    tag_name: str,
    entity_type: str,
    db: Session = Depends(get_db),
    _: Principal = Depends(get_current_principal),
) -> TagSearchResult:
    return bulk_service.search_entities_by_tag(db, tag_name, entity_type)


@bulk_router.post("/orders/query", response_model=Page[OrderRead])
def complex_order_query(
    payload: AdvancedOrderQuery,
    db: Session = Depends(get_db),
    _: Principal = Depends(require_roles(*MANAGERS)),
) -> Page[OrderRead]:
    return advanced_query_service.complex_order_query(db, payload)


@bulk_router.get("/orders/report", response_model=OrderReportRead)
def order_report(
    start_date: datetime | None = Query(default=None),
    end_date: datetime | None = Query(default=None),
    db: Session = Depends(get_db),
    _: Principal = Depends(require_roles(*MANAGERS)),
) -> OrderReportRead:
    return advanced_query_service.order_report(db, start_date=start_date, end_date=end_date)
