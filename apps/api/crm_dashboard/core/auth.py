from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

from fastapi import Depends
from jose import JWTError, jwt
from sqlalchemy.orm import Session
from starlette.requests import Request

from crm_dashboard.auth.models import User
from crm_dashboard.core.config import get_settings
from crm_dashboard.core.database import get_db
from crm_dashboard.core.errors import UnauthorizedError


@dataclass(frozen=True)
class Principal:
    id: uuid.UUID
    email: str
    name: str
    role: str


def create_access_token(user: User, *, now: datetime | None = None) -> tuple[str, datetime]:
    settings = get_settings()
    issued_at = now or datetime.now(timezone.utc)
    expires_at = issued_at + timedelta(minutes=settings.access_token_ttl_minutes)
    claims: dict[str, Any] = {
        "sub": str(user.id),
        "email": user.email,
        "role": user.role,
        "iat": int(issued_at.timestamp()),
        "exp": int(expires_at.timestamp()),
    }
    token = jwt.encode(claims, settings.jwt_secret, algorithm=settings.jwt_algorithm)
    return token, expires_at


def _extract_bearer_token(request: Request) -> str:
    auth_header = request.headers.get("authorization")
    if not auth_header:
        raise UnauthorizedError("Authentication required")
    scheme, _, token = auth_header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise UnauthorizedError("Invalid authorization header format")
    return token.strip()


def authenticate(session: Session, token: str) -> Principal:
    settings = get_settings()
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
        user_id = uuid.UUID(str(payload.get("sub")))
    except (JWTError, ValueError):
        raise UnauthorizedError("Invalid or expired token")

    user = session.get(User, user_id)
    if user is None or user.status != "active":
        raise UnauthorizedError("User not found or inactive")
    return Principal(id=user.id, email=user.email, name=user.name, role=user.role)


def get_current_principal(request: Request, db: Session = Depends(get_db)) -> Principal:
    principal = authenticate(db, _extract_bearer_token(request))
    request.state.user_id = str(principal.id)
    return principal
