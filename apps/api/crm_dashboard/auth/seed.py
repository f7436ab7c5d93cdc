from __future__ import annotations

import logging

from sqlalchemy import select
from sqlalchemy.orm import Session

from crm_dashboard.auth.models import User
from crm_dashboard.auth.service import hash_password
from crm_dashboard.core.config import Settings


logger = logging.getLogger("crm_dashboard.auth")


def ensure_bootstrap_admin(session: Session, settings: Settings) -> User | None:
    """Create the configured administrator account when it does not exist yet."""
    if not settings.bootstrap_admin_email or not settings.bootstrap_admin_password:
        return None

    email = settings.bootstrap_admin_email.strip().lower()
    existing = session.scalar(select(User).where(User.email == email))
    if existing is not None:
        return existing

    admin = User(
        email=email,
        name=settings.bootstrap_admin_name,
        password_hash=hash_password(settings.bootstrap_admin_password),
        role="admin",
        status="active",
    )
    session.add(admin)
    session.commit()
    logger.info("auth.bootstrap_admin_created", extra={"user_id": str(admin.id), "role": "admin"})
    return admin
