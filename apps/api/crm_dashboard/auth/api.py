from __future__ import annotations

from fastapi import APIRouter, Depends, status
from fastapi.responses import Response
from sqlalchemy.orm import Session

from crm_dashboard.auth.schemas import ChangePasswordRequest, LoginRequest, RegisterRequest, TokenRead, UserRead
from crm_dashboard.auth.service import auth_service
from crm_dashboard.core.auth import Principal, get_current_principal
from crm_dashboard.core.database import get_db


router = APIRouter(prefix="/api/auth", tags=["auth"])


@router.post("/register", response_model=UserRead, status_code=status.HTTP_201_CREATED)
def register(payload: RegisterRequest, db: Session = Depends(get_db)) -> UserRead:
    return auth_service.register(db, payload)


@router.post("/login", response_model=TokenRead)
def login(payload: LoginRequest, db: Session = Depends(get_db)) -> TokenRead:
    return auth_service.login(db, payload)


@router.post("/change-password", status_code=status.HTTP_204_NO_CONTENT)
def change_password(
    payload: ChangePasswordRequest,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
) -> Response:
    auth_service.change_password(db, principal, payload)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
