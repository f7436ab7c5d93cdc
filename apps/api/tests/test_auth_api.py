from __future__ import annotations

from collections.abc import Generator
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from crm_dashboard.auth.models import User
from crm_dashboard.auth.seed import ensure_bootstrap_admin
from crm_dashboard.auth.service import hash_password, verify_password
from crm_dashboard.core.auth import create_access_token
from crm_dashboard.core.config import get_settings
from crm_dashboard.core.database import Base, get_db
from crm_dashboard.main import app
from crm_dashboard.middleware.rate_limit import reset_rate_limiter


STRONG_PASSWORD = "Sup3r$ecret"


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def setup_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("DATABASE_URL", "sqlite+pysqlite:///:memory:")
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "true")
    monkeypatch.setenv("BCRYPT_ROUNDS", "4")
    get_settings.cache_clear()
    reset_rate_limiter()
    yield
    get_settings.cache_clear()
    reset_rate_limiter()


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _add_user(session: Session, email: str, *, role: str = "sales", status: str = "active") -> User:
    user = User(email=email, name="Existing User", password_hash=hash_password(STRONG_PASSWORD), role=role, status=status)
    session.add(user)
    session.commit()
    return user


def _bearer(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


def test_register_login_and_me(client: TestClient) -> None:
    registered = client.post(
        "/api/auth/register",
        json={"email": "New.User@Example.com", "password": STRONG_PASSWORD, "name": "New User"},
    )
    assert registered.status_code == 201
    body = registered.json()
    assert body["email"] == "new.user@example.com"
    assert body["role"] == "user"
    assert "password_hash" not in body

    login = client.post("/api/auth/login", json={"email": "new.user@example.com", "password": STRONG_PASSWORD})
    assert login.status_code == 200
    token = login.json()
    assert token["token_type"] == "bearer"
    assert token["user"]["id"] == body["id"]

    me = client.get("/me", headers=_bearer(token["access_token"]))
    assert me.status_code == 200
    assert me.json()["email"] == "new.user@example.com"


def test_register_duplicate_email_conflicts(client: TestClient, db_session: Session) -> None:
    _add_user(db_session, "taken@example.com")

    response = client.post(
        "/api/auth/register",
        json={"email": "TAKEN@example.com", "password": STRONG_PASSWORD, "name": "Someone"},
    )

    assert response.status_code == 409
    payload = response.json()
    assert payload["code"] == "conflict"
    assert payload["message"] == "User already exists"
    assert payload["correlation_id"]


def test_register_rejects_weak_password(client: TestClient) -> None:
    response = client.post(
        "/api/auth/register",
        json={"email": "weak@example.com", "password": "alllowercase", "name": "Weak"},
    )

    assert response.status_code == 400
    payload = response.json()
    assert payload["code"] == "validation_error"
    assert payload["message"] == "Validation failed"
    assert any(item["path"] == "password" for item in payload["details"])


def test_login_failures(client: TestClient, db_session: Session) -> None:
    _add_user(db_session, "active@example.com")
    _add_user(db_session, "dormant@example.com", status="inactive")

    wrong = client.post("/api/auth/login", json={"email": "active@example.com", "password": "Wr0ng$pass"})
    assert wrong.status_code == 401
    assert wrong.json()["message"] == "Invalid credentials"

    unknown = client.post("/api/auth/login", json={"email": "ghost@example.com", "password": STRONG_PASSWORD})
    assert unknown.status_code == 401
    assert unknown.json()["message"] == "Invalid credentials"

    inactive = client.post("/api/auth/login", json={"email": "dormant@example.com", "password": STRONG_PASSWORD})
    assert inactive.status_code == 403
    assert inactive.json()["code"] == "forbidden"


def test_authentication_failures(client: TestClient, db_session: Session) -> None:
    missing = client.get("/me")
    assert missing.status_code == 401
    assert missing.json()["message"] == "Authentication required"

    malformed = client.get("/me", headers={"Authorization": "Token abc"})
    assert malformed.status_code == 401
    assert malformed.json()["message"] == "Invalid authorization header format"

    garbage = client.get("/me", headers=_bearer("not-a-jwt"))
    assert garbage.status_code == 401
    assert garbage.json()["message"] == "Invalid or expired token"

    user = _add_user(db_session, "expired@example.com")
    stale, _ = create_access_token(user, now=datetime.now(timezone.utc) - timedelta(days=2))
    expired = client.get("/me", headers=_bearer(stale))
    assert expired.status_code == 401
    assert expired.json()["message"] == "Invalid or expired token"

    token, _ = create_access_token(user)
    user.status = "suspended"
    db_session.commit()
    suspended = client.get("/me", headers=_bearer(token))
    assert suspended.status_code == 401
    assert suspended.json()["message"] == "User not found or inactive"


def test_change_password(client: TestClient, db_session: Session) -> None:
    user = _add_user(db_session, "rotate@example.com")
    token, _ = create_access_token(user)

    rejected = client.post(
        "/api/auth/change-password",
        json={"current_password": "Wr0ng$pass", "new_password": "N3w$ecret"},
        headers=_bearer(token),
    )
    assert rejected.status_code == 400
    assert rejected.json()["details"][0]["path"] == "current_password"

    changed = client.post(
        "/api/auth/change-password",
        json={"current_password": STRONG_PASSWORD, "new_password": "N3w$ecret"},
        headers=_bearer(token),
    )
    assert changed.status_code == 204

    old_login = client.post("/api/auth/login", json={"email": "rotate@example.com", "password": STRONG_PASSWORD})
    assert old_login.status_code == 401
    new_login = client.post("/api/auth/login", json={"email": "rotate@example.com", "password": "N3w$ecret"})
    assert new_login.status_code == 200


def test_bootstrap_admin_is_created_once(db_session: Session, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("BOOTSTRAP_ADMIN_EMAIL", "Root@Example.com")
    monkeypatch.setenv("BOOTSTRAP_ADMIN_PASSWORD", STRONG_PASSWORD)
    get_settings.cache_clear()
    settings = get_settings()

    created = ensure_bootstrap_admin(db_session, settings)
    again = ensure_bootstrap_admin(db_session, settings)

    assert created is not None
    assert again is not None and again.id == created.id
    assert created.role == "admin"
    assert verify_password(STRONG_PASSWORD, created.password_hash)
    assert len(db_session.scalars(select(User)).all()) == 1
