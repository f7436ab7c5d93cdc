from __future__ import annotations

import re
from datetime import datetime
from typing import Annotated, Literal
from uuid import UUID

from pydantic import AfterValidator, BaseModel, ConfigDict, EmailStr, Field, field_validator

from crm_dashboard.auth.models import as_utc


UserRole = Literal["user", "admin", "manager", "sales"]
UserStatus = Literal["active", "inactive", "suspended"]

# Naive values from backends without zone support are read back as UTC.
UtcDateTime = Annotated[datetime, AfterValidator(as_utc)]

_PASSWORD_RE = re.compile(r"^(?=.*[a-z])(?=.*[A-Z])(?=.*\d)(?=.*[@$!%*?&])[A-Za-z\d@$!%*?&]{8,}$")


def check_password_policy(value: str) -> str:
    if not _PASSWORD_RE.match(value):
        raise ValueError(
            "password must contain an uppercase letter, a lowercase letter, a digit and one of @$!%*?&"
        )
    return value


class RegisterRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    email: EmailStr
    password: str = Field(min_length=8, max_length=64)
    name: str = Field(min_length=2, max_length=255)

    @field_validator("password")
    @classmethod
    def validate_password(cls, value: str) -> str:
        return check_password_policy(value)


class LoginRequest(BaseModel):
    email: EmailStr
    password: str = Field(min_length=1)


class ChangePasswordRequest(BaseModel):
    current_password: str = Field(min_length=1)
    new_password: str = Field(min_length=8, max_length=64)

    @field_validator("new_password")
    @classmethod
    def validate_new_password(cls, value: str) -> str:
        return check_password_policy(value)


class UserRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    email: str
    name: str
    role: UserRole
    status: UserStatus
    created_at: UtcDateTime


class TokenRead(BaseModel):
    access_token: str
    token_type: str = "bearer"
    expires_at: UtcDateTime
    user: UserRead
