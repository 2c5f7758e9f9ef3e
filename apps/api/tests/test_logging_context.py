from __future__ import annotations

import logging
import uuid
from collections.abc import Generator

import httpx
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.api.deps import get_current_user
from app.core.actor import ActorUser
from app.core.config import get_settings
from app.core.database import Base, get_db
from app.logging import JsonLogFormatter
from app.main import app
from app.messaging.api import get_provider_registry
from app.messaging.providers import ProviderRegistry, build_default_registry


ALL_PERMISSIONS = {
    "crm.contacts.read",
    "messaging.accounts.manage",
    "messaging.send",
}


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
def setup_env() -> Generator[None, None, None]:
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture()
def registry() -> Generator[ProviderRegistry, None, None]:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(202, headers={"X-Message-Id": "sg-log-1"})

    provider_registry = build_default_registry(get_settings(), transport=httpx.MockTransport(handler))
    yield provider_registry
    provider_registry.close()


@pytest.fixture()
def client(db_session: Session, registry: ProviderRegistry) -> Generator[TestClient, None, None]:
    tenant_id = uuid.uuid4()

    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_user() -> ActorUser:
        return ActorUser(user_id="user-1", tenant_id=tenant_id, permissions=ALL_PERMISSIONS)

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user
    app.dependency_overrides[get_provider_registry] = lambda: registry
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def test_logs_include_correlation_id_for_http(client: TestClient, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)

    path = f"/api/crm/contacts/{uuid.uuid4()}"
    response = client.get(path, headers={"X-Correlation-Id": "abc-123"})
    assert response.status_code == 404

    records = [record for record in caplog.records if record.name == "app.request" and record.getMessage() == "http.request"]
    assert records
    assert any(
        getattr(record, "correlation_id", None) == "abc-123"
        and getattr(record, "method", None) == "GET"
        and getattr(record, "path", None) == "/api/crm/contacts/{id}"
        and getattr(record, "status_code", None) == 404
        and isinstance(getattr(record, "duration_ms", None), float)
        for record in records
    )


def test_tracking_requests_are_not_logged_on_success(client: TestClient, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)

    pixel = client.get("/api/track/open/unknown-tracking-id")
    assert pixel.status_code == 200

    assert not [
        record
        for record in caplog.records
        if record.name == "app.request" and getattr(record, "path", "").startswith("/api/track/")
    ]


def test_dispatch_logs_carry_message_context(client: TestClient, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)

    account = client.post(
        "/api/messaging/email-accounts",
        json={"name": "Sales", "email": "sales@example.com", "provider": "SENDGRID", "api_key": "SG.key", "is_default": True},
    )
    assert account.status_code == 201
    queued = client.post("/api/messaging/emails", json={"to": ["lead@example.com"], "subject": "Hi", "body": "Hello"})
    assert queued.status_code == 201

    dispatched = client.post(
        f"/api/messaging/emails/{queued.json()['id']}/dispatch",
        headers={"X-Correlation-Id": "abc-456"},
    )
    assert dispatched.status_code == 200

    sent_records = [
        record
        for record in caplog.records
        if record.name == "app.messaging.dispatcher" and record.getMessage() == "message.dispatch.sent"
    ]
    assert len(sent_records) == 1
    record = sent_records[0]
    assert record.correlation_id == "abc-456"
    assert record.channel == "email"
    assert record.message_id == queued.json()["id"]
    assert record.provider == "SENDGRID"

    formatted = JsonLogFormatter().format(record)
    assert '"correlation_id": "abc-456"' in formatted
    assert '"channel": "email"' in formatted
