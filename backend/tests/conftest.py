from __future__ import annotations

import os

import pytest
import sqlalchemy as sa
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.config import settings
from app.core.security import CurrentUser, create_access_token
from app.db.base import Base
import app.models  # noqa: F401
from tests.testkit import ApiClient, FakeBillingProvider


@pytest.fixture(scope="session")
def api() -> ApiClient:
    if os.getenv("RUN_API_INTEGRATION", "0") != "1":
        pytest.skip("Integration tests disabled. Set RUN_API_INTEGRATION=1.")

    base_url = os.getenv("TEST_API_BASE_URL", "http://localhost:8000")
    client = ApiClient(base_url)
    try:
        health = client.call("GET", "/health")
    except Exception as exc:  # pragma: no cover - guard rail
        pytest.fail(f"API not reachable at {base_url}: {exc}")
    if not isinstance(health, dict) or not health.get("ok"):
        pytest.fail(f"Invalid health check at {base_url}: {health}")
    return client


@pytest.fixture
def db():
    engine = sa.create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    session = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)()
    try:
        yield session
    finally:
        session.close()
        engine.dispose()


@pytest.fixture
def provider() -> FakeBillingProvider:
    return FakeBillingProvider()


@pytest.fixture
def user() -> CurrentUser:
    return CurrentUser(id="3f6c1a52-user-0001", email="fan@example.com")


@pytest.fixture
def jwt_secret(monkeypatch):
    monkeypatch.setattr(settings, "SUPABASE_JWT_SECRET", "test-jwt-secret")
    return "test-jwt-secret"


@pytest.fixture
def auth_headers(jwt_secret, user) -> dict[str, str]:
    return {"Authorization": f"Bearer {create_access_token(user.id, user.email)}"}


@pytest.fixture
def client(db, provider, jwt_secret):
    from app.api.deps import get_billing_provider
    from app.db.session import get_db
    from app.main import app

    app.dependency_overrides[get_db] = lambda: db
    app.dependency_overrides[get_billing_provider] = lambda: provider
    try:
        with TestClient(app, base_url="http://localhost") as test_client:
            yield test_client
    finally:
        app.dependency_overrides.clear()
