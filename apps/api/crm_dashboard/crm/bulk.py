from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import func, insert, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session, selectinload

from crm_dashboard.core.auth import Principal
from crm_dashboard.core.config import get_settings
from crm_dashboard.core.errors import NotFoundError, ValidationError
from crm_dashboard.crm.models import Communication, Customer, Order, Product, Tag, utcnow
from crm_dashboard.crm.query import FilterField, PageRequest, apply_query_filters, paginate, resolve_sort
from crm_dashboard.crm.schemas import (
    AdvancedOrderQuery,
    BulkOrderStatusResult,
    BulkOrderStatusUpdate,
    BulkTagCreate,
    BulkTagResult,
    CommunicationRead,
    CustomerRead,
    OrderRead,
    OrderReportRead,
    OrderReportRow,
    Page,
    ProductRead,
    TagRead,
    TagSearchResult,
)
from crm_dashboard.crm.service import ORDER_READ_OPTIONS, commit_or_conflict, report_span, report_window
from crm_dashboard.metrics import observe_bulk_rows


logger = logging.getLogger("crm_dashboard.crm.bulk")

ORDER_FILTER_FIELDS: dict[str, FilterField] = {
    "status": FilterField(Order.status, str),
    "total": FilterField(Order.total, Decimal),
    "customer_id": FilterField(Order.customer_id, uuid.UUID),
    "user_id": FilterField(Order.user_id, uuid.UUID),
    "created_at": FilterField(Order.created_at, datetime),
    "updated_at": FilterField(Order.updated_at, datetime),
}

ORDER_SORT_FIELDS: dict[str, Any] = {
    "created_at": Order.created_at,
    "updated_at": Order.updated_at,
    "total": Order.total,
    "status": Order.status,
}

TAGGED_ENTITIES: dict[str, tuple[Any, Any, type[Any], tuple[Any, ...]]] = {
    "orders": (Order, Order.tags, OrderRead, ORDER_READ_OPTIONS),
    "products": (Product, Product.tags, ProductRead, (selectinload(Product.tags),)),
    "customers": (Customer, Customer.tags, CustomerRead, (selectinload(Customer.tags),)),
    "communications": (Communication, Communication.tags, CommunicationRead, (selectinload(Communication.tags),)),
}


def _tag_insert(session: Session, rows: list[dict[str, Any]]) -> Any:
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert(Tag.__table__).values(rows).on_conflict_do_nothing(index_elements=["name"])
    if dialect == "sqlite":
        return sqlite.insert(Tag.__table__).values(rows).on_conflict_do_nothing(index_elements=["name"])
    return insert(Tag.__table__).values(rows)


@dataclass(slots=True)
class BulkService:
    def bulk_create_tags(self, session: Session, dto: BulkTagCreate) -> BulkTagResult:
        batch: dict[str, dict[str, Any]] = {}
        for tag in dto.tags:
            name = tag.name.strip()
            batch.setdefault(name, {**tag.model_dump(exclude={"name"}), "name": name})

        existing = set(session.scalars(select(Tag.name).where(Tag.name.in_(list(batch)))).all())
        now = utcnow()
        rows = [
            {**values, "id": uuid.uuid4(), "created_at": now, "updated_at": now}
            for name, values in batch.items()
            if name not in existing
        ]

        inserted = 0
        if rows:
            result = session.execute(_tag_insert(session, rows))
            inserted = max(int(result.rowcount or 0), 0)
        commit_or_conflict(session, "Tag with this name already exists")

        observe_bulk_rows("tags_created", inserted)
        logger.info("bulk.tags_created", extra={"entity": "tag", "count": inserted})
        return BulkTagResult(requested=len(dto.tags), inserted=inserted)

    def bulk_update_order_status(
        self,
        session: Session,
        principal: Principal,
        dto: BulkOrderStatusUpdate,
    ) -> BulkOrderStatusResult:
        stmt = (
            update(Order)
            .where(Order.id.in_(list(dict.fromkeys(dto.order_ids))), Order.user_id == principal.id)
            .values(status=dto.status, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        result = session.execute(stmt)
        session.commit()

        updated = int(result.rowcount or 0)
        observe_bulk_rows("order_status_updated", updated)
        logger.info(
            "bulk.order_status_updated",
            extra={"entity": "order", "count": updated, "status": dto.status, "user_id": str(principal.id)},
        )
        return BulkOrderStatusResult(updated=updated)

    def search_entities_by_tag(self, session: Session, tag_name: str, entity_type: str) -> TagSearchResult:
        if entity_type not in TAGGED_ENTITIES:
            raise ValidationError(
                "Invalid entity type",
                details=[{"path": "entity_type", "message": f"must be one of {sorted(TAGGED_ENTITIES)}"}],
            )
        tag = session.scalar(select(Tag).where(Tag.name == tag_name.strip()))
        if tag is None:
            raise NotFoundError("Tag not found", details={"name": tag_name})

        model, relation, read_model, options = TAGGED_ENTITIES[entity_type]
        rows = session.scalars(
            select(model)
            .options(*options)
            .where(relation.any(Tag.id == tag.id))
            .order_by(model.created_at.desc(), model.id.desc())
        ).all()
        return TagSearchResult(
            tag=TagRead.model_validate(tag),
            entity_type=entity_type,
            items=[read_model.model_validate(row) for row in rows],
        )


@dataclass(slots=True)
class AdvancedQueryService:
    def complex_order_query(self, session: Session, dto: AdvancedOrderQuery) -> Page[OrderRead]:
        strict = get_settings().query_filter_strict
        stmt = apply_query_filters(
            select(Order).options(*ORDER_READ_OPTIONS),
            dto.filters,
            ORDER_FILTER_FIELDS,
            strict=strict,
        )
        sort = resolve_sort(ORDER_SORT_FIELDS, dto.sort_by, dto.sort_order, strict=strict)
        page = PageRequest(page=dto.page, limit=dto.page_size)
        rows, total = paginate(session, stmt, page, order_by=[sort, Order.id.desc()])
        items = [OrderRead.model_validate(row) for row in rows]
        return Page[OrderRead].build(items, page=page.page, limit=page.limit, total=total)

    def order_report(
        self,
        session: Session,
        *,
        start_date: datetime | None = None,
        end_date: datetime | None = None,
    ) -> OrderReportRead:
        window_start, window_end = report_window(start_date, end_date, get_settings().report_lookback_days)
        with report_span("orders") as span:
            rows = session.execute(
                select(Order.status, func.count(Order.id), func.coalesce(func.sum(Order.total), 0))
                .where(Order.created_at >= window_start, Order.created_at <= window_end)
                .group_by(Order.status)
                .order_by(Order.status)
            ).all()
            span.set_attribute("status_count", len(rows))

        return OrderReportRead(
            start_date=window_start,
            end_date=window_end,
            rows=[OrderReportRow(status=row[0], count=int(row[1]), total=Decimal(str(row[2]))) for row in rows],
        )


bulk_service = BulkService()
advanced_query_service = AdvancedQueryService()
