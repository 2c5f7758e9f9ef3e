from __future__ import annotations

import os
import uuid
from collections.abc import Generator

import httpx
import pytest
from fastapi.testclient import TestClient
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

os.environ.setdefault("OTEL_ENABLED", "true")

from app.api.deps import get_current_user
from app.core.actor import ActorUser
from app.core.config import get_settings
from app.core.database import Base, get_db
from app.main import app
from app.messaging.api import get_provider_registry
from app.messaging.providers import ProviderRegistry, build_default_registry
from app.otel import setup_inmemory_otel


ALL_PERMISSIONS = {
    "crm.contacts.write",
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
def span_exporter() -> InMemorySpanExporter:
    exporter = setup_inmemory_otel("api")
    exporter.clear()
    return exporter


@pytest.fixture()
def registry() -> Generator[ProviderRegistry, None, None]:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/Messages.json"):
            return httpx.Response(201, json={"sid": "SM-otel-1"})
        return httpx.Response(202, headers={"X-Message-Id": "sg-otel-1"})

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


def test_request_span_contains_correlation_id(client: TestClient, span_exporter: InMemorySpanExporter) -> None:
    response = client.post(
        "/api/crm/contacts",
        json={"first_name": "Span", "last_name": "Contact"},
        headers={"X-Correlation-Id": "otel-corr-1"},
    )
    assert response.status_code == 201

    spans = span_exporter.get_finished_spans()
    assert spans
    assert any(span.attributes.get("correlation_id") == "otel-corr-1" for span in spans)


def test_dispatch_span_contains_message_and_correlation(
    client: TestClient,
    span_exporter: InMemorySpanExporter,
) -> None:
    account = client.post(
        "/api/messaging/email-accounts",
        json={"name": "Sales", "email": "sales@example.com", "provider": "SENDGRID", "api_key": "SG.key", "is_default": True},
    )
    assert account.status_code == 201
    sms_account = client.post(
        "/api/messaging/sms-accounts",
        json={
            "name": "Line",
            "provider": "TWILIO",
            "account_sid": "AC1",
            "auth_token": "token",
            "from_number": "+15550001111",
            "is_default": True,
        },
    )
    assert sms_account.status_code == 201

    email = client.post("/api/messaging/emails", json={"to": ["lead@example.com"], "subject": "Hi", "body": "Hello"})
    assert email.status_code == 201
    sms = client.post("/api/messaging/sms", json={"to": "+15550002222", "body": "Hello"})
    assert sms.status_code == 201

    headers = {"X-Correlation-Id": "otel-dispatch-1"}
    assert client.post(f"/api/messaging/emails/{email.json()['id']}/dispatch", headers=headers).status_code == 200
    assert client.post(f"/api/messaging/sms/{sms.json()['id']}/dispatch", headers=headers).status_code == 200

    dispatch_spans = [span for span in span_exporter.get_finished_spans() if span.name == "message.dispatch"]
    assert {span.attributes.get("channel") for span in dispatch_spans} == {"email", "sms"}
    email_span = next(span for span in dispatch_spans if span.attributes.get("channel") == "email")
    assert email_span.attributes.get("message_id") == email.json()["id"]
    assert email_span.attributes.get("provider") == "SENDGRID"
    assert email_span.attributes.get("provider_message_id") == "sg-otel-1"
    assert email_span.attributes.get("correlation_id") == "otel-dispatch-1"
    sms_span = next(span for span in dispatch_spans if span.attributes.get("channel") == "sms")
    assert sms_span.attributes.get("provider_message_id") == "SM-otel-1"
