import os

os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ.setdefault("JWT_SECRET", "test-secret")

import pytest
from fastapi.testclient import TestClient
from prometheus_client import REGISTRY
from sqlalchemy.orm import sessionmaker

from promptmaster import services
from promptmaster.api import app
from promptmaster.database import init_db, make_engine
from promptmaster.policy import GUEST, Principal, Role


ADMIN = Principal(id="user1", name="Admin User", role=Role.ADMIN)
JANE = Principal(id="user2", name="Jane Doe", role=Role.USER)


@pytest.fixture
def session_local(monkeypatch):
    """Provide an isolated, seeded in-memory database for each test."""
    engine = make_engine("sqlite:///:memory:")
    TestingSessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)
    init_db(bind=engine, session_factory=TestingSessionLocal)
    monkeypatch.setattr(services, "SessionLocal", TestingSessionLocal)
    return TestingSessionLocal


@pytest.fixture
def client(session_local):
    # Clear existing collectors to avoid duplicate metric registration during tests
    collectors = list(REGISTRY._collector_to_names)
    for collector in collectors:
        REGISTRY.unregister(collector)
    return TestClient(app)


@pytest.fixture
def admin():
    return ADMIN


@pytest.fixture
def jane():
    return JANE


@pytest.fixture
def guest():
    return GUEST


def auth_headers(client, username, password="password"):
    resp = client.post("/auth/login", json={"username": username, "password": password})
    assert resp.status_code == 200, resp.text
    return {"Authorization": f"Bearer {resp.json()['token']}"}


@pytest.fixture
def admin_headers(client):
    return auth_headers(client, "Admin User")


@pytest.fixture
def jane_headers(client):
    return auth_headers(client, "Jane Doe")
