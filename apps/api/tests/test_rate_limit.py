from __future__ import annotations

from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from crm_dashboard.auth.models import User
from crm_dashboard.core.auth import create_access_token
from crm_dashboard.core.config import get_settings
from crm_dashboard.core.database import Base, get_db
from crm_dashboard.main import app
from crm_dashboard.middleware.rate_limit import Budget, SlidingWindowLimiter, reset_rate_limiter


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
def configure_rate_limiter_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("DATABASE_URL", "sqlite+pysqlite:///:memory:")
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "false")
    monkeypatch.setenv("RATE_LIMIT_MUTATIONS_PER_MINUTE", "2")
    monkeypatch.setenv("RATE_LIMIT_AUTH_ATTEMPTS", "5")
    get_settings.cache_clear()
    reset_rate_limiter()
    yield
    reset_rate_limiter()
    get_settings.cache_clear()


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _manager_headers(session: Session, email: str) -> dict[str, str]:
    user = User(email=email, name="Manager", password_hash="unused", role="manager")
    session.add(user)
    session.commit()
    token, _ = create_access_token(user)
    return {"Authorization": f"Bearer {token}"}


def test_mutating_endpoints_are_rate_limited_per_user(client: TestClient, db_session: Session) -> None:
    first_manager = _manager_headers(db_session, "first@example.com")
    second_manager = _manager_headers(db_session, "second@example.com")

    statuses = [
        client.post("/api/tags", json={"name": f"tag-{index}"}, headers=first_manager).status_code
        for index in range(3)
    ]
    assert statuses == [201, 201, 429]

    other_user = client.post("/api/tags", json={"name": "tag-other"}, headers=second_manager)
    assert other_user.status_code == 201

    other_group = client.post(
        "/api/products",
        json={"name": "Unaffected", "price": "1.00"},
        headers=first_manager,
    )
    assert other_group.status_code == 201


def test_rate_limited_response_shape(client: TestClient, db_session: Session) -> None:
    headers = _manager_headers(db_session, "shape@example.com")
    for index in range(2):
        client.post("/api/tags", json={"name": f"shape-{index}"}, headers=headers)

    limited = client.post(
        "/api/tags",
        json={"name": "shape-over"},
        headers={**headers, "X-Correlation-Id": "corr-rate-1"},
    )

    assert limited.status_code == 429
    assert int(limited.headers["Retry-After"]) >= 1
    payload = limited.json()
    assert payload["code"] == "rate_limited"
    assert payload["details"]["retry_after"] >= 1
    assert payload["correlation_id"] == "corr-rate-1"
    assert limited.headers.get("x-correlation-id") == "corr-rate-1"


def test_reads_are_not_rate_limited(client: TestClient, db_session: Session) -> None:
    headers = _manager_headers(db_session, "reader@example.com")

    statuses = {client.get("/api/tags", headers=headers).status_code for _ in range(6)}

    assert statuses == {200}


def test_login_attempts_are_limited_per_client(client: TestClient) -> None:
    payload = {"email": "nobody@example.com", "password": "Wr0ng$pass"}

    statuses = [client.post("/api/auth/login", json=payload).status_code for _ in range(6)]

    assert statuses == [401, 401, 401, 401, 401, 429]

    other_address = client.post("/api/auth/login", json=payload, headers={"X-Forwarded-For": "203.0.113.9"})
    assert other_address.status_code == 401


def test_limiter_forgets_keys_once_their_window_has_passed() -> None:
    now = [1000.0]
    limiter = SlidingWindowLimiter(clock=lambda: now[0])

    for user in ("u1", "u2", "u3"):
        assert limiter.hit(Budget(key=(user, "tags"), limit=2, window_seconds=30)) is None
    assert limiter.hit(Budget(key=("10.0.0.1", "/api/auth/login"), limit=5, window_seconds=900)) is None
    assert len(limiter) == 4

    now[0] += 61.0
    assert limiter.hit(Budget(key=("u4", "tags"), limit=2, window_seconds=30)) is None

    assert len(limiter) == 2
    assert limiter.hit(Budget(key=("u1", "tags"), limit=1, window_seconds=30)) is None


def test_limiter_reports_wait_until_oldest_hit_expires() -> None:
    now = [0.0]
    limiter = SlidingWindowLimiter(clock=lambda: now[0])
    budget = Budget(key=("u1", "orders"), limit=2, window_seconds=60)

    assert limiter.hit(budget) is None
    now[0] = 10.0
    assert limiter.hit(budget) is None
    now[0] = 20.0
    assert limiter.hit(budget) == 40
    now[0] = 60.5
    assert limiter.hit(budget) is None
