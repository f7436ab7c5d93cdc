from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import Response
from sqlalchemy.orm import Session

from crm_dashboard.auth.api import router as auth_router
from crm_dashboard.auth.schemas import UserRead
from crm_dashboard.auth.service import auth_service
from crm_dashboard.core.auth import Principal, get_current_principal
from crm_dashboard.core.config import get_settings
from crm_dashboard.core.database import get_db
from crm_dashboard.core.rbac import ADMIN, authorize
from crm_dashboard.crm.api import (
    bulk_router,
    communications_router,
    customers_router,
    orders_router,
    products_router,
    tags_router,
    tasks_router,
)
from crm_dashboard.metrics import generate_metrics_payload, metrics_content_type

router = APIRouter()
router.include_router(auth_router)
router.include_router(customers_router)
router.include_router(orders_router)
router.include_router(products_router)
router.include_router(tags_router)
router.include_router(communications_router)
router.include_router(tasks_router)
router.include_router(bulk_router)


@router.get("/health", tags=["system"])
def health() -> dict[str, str]:
    settings = get_settings()
    return {
        "status": "ok",
        "service": settings.app_name,
        "environment": settings.app_env,
    }


@router.get("/me", tags=["auth"], response_model=UserRead)
def me(db: Session = Depends(get_db), principal: Principal = Depends(get_current_principal)) -> UserRead:
    return auth_service.get_user(db, principal)


@router.get("/metrics", tags=["system"])
def metrics(principal: Principal = Depends(get_current_principal)) -> Response:
    settings = get_settings()
    if not settings.metrics_enabled:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="not found")
    authorize(principal, ADMIN)
    return Response(content=generate_metrics_payload(), media_type=metrics_content_type())
