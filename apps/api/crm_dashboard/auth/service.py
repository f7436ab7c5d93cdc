from __future__ import annotations

import logging
from dataclasses import dataclass

import bcrypt
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from crm_dashboard.auth.models import User
from crm_dashboard.auth.schemas import ChangePasswordRequest, LoginRequest, RegisterRequest, TokenRead, UserRead
from crm_dashboard.core.auth import Principal, create_access_token
from crm_dashboard.core.config import get_settings
from crm_dashboard.core.errors import ConflictError, ForbiddenError, NotFoundError, UnauthorizedError, ValidationError
from crm_dashboard.metrics import observe_login


logger = logging.getLogger("crm_dashboard.auth")


def hash_password(password: str) -> str:
    rounds = get_settings().bcrypt_rounds
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(rounds=rounds)).decode("utf-8")


def verify_password(password: str, password_hash: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        return False


def _find_by_email(session: Session, email: str) -> User | None:
    return session.scalar(select(User).where(func.lower(User.email) == email.strip().lower()))


@dataclass(slots=True)
class AuthService:
    def register(self, session: Session, dto: RegisterRequest, *, role: str = "user") -> UserRead:
        email = dto.email.strip().lower()
        if _find_by_email(session, email) is not None:
            raise ConflictError("User already exists", details={"email": email})

        user = User(email=email, name=dto.name, password_hash=hash_password(dto.password), role=role, status="active")
        session.add(user)
        try:
            session.commit()
        except IntegrityError:
            session.rollback()
            raise ConflictError("User already exists", details={"email": email})
        session.refresh(user)

        logger.info("auth.user_registered", extra={"user_id": str(user.id), "role": user.role})
        return UserRead.model_validate(user)

    def login(self, session: Session, dto: LoginRequest) -> TokenRead:
        user = _find_by_email(session, dto.email)
        if user is None or not verify_password(dto.password, user.password_hash):
            observe_login("invalid_credentials")
            logger.info("auth.login_failed", extra={"status": "invalid_credentials"})
            raise UnauthorizedError("Invalid credentials")
        if user.status != "active":
            observe_login("inactive")
            logger.info("auth.login_failed", extra={"user_id": str(user.id), "status": user.status})
            raise ForbiddenError("Account is not active", details={"status": user.status})

        token, expires_at = create_access_token(user)
        observe_login("success")
        logger.info("auth.login", extra={"user_id": str(user.id), "role": user.role})
        return TokenRead(access_token=token, expires_at=expires_at, user=UserRead.model_validate(user))

    def change_password(self, session: Session, principal: Principal, dto: ChangePasswordRequest) -> None:
        user = session.get(User, principal.id)
        if user is None:
            raise NotFoundError("User not found")
        if not verify_password(dto.current_password, user.password_hash):
            raise ValidationError(
                "Current password is incorrect",
                details=[{"path": "current_password", "message": "does not match"}],
            )

        user.password_hash = hash_password(dto.new_password)
        session.commit()
        logger.info("auth.password_changed", extra={"user_id": str(user.id)})

    def get_user(self, session: Session, principal: Principal) -> UserRead:
        user = session.get(User, principal.id)
        if user is None:
            raise NotFoundError("User not found")
        return UserRead.model_validate(user)


auth_service = AuthService()
