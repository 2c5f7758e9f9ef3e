from __future__ import annotations

import uuid
from collections.abc import Generator

import httpx
import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app import events
from app.api.deps import get_current_user
from app.context import get_correlation_id
from app.core.actor import ActorUser
from app.core.config import get_settings
from app.core.database import Base, get_db
from app.main import app
from app.messaging.api import get_provider_registry
from app.messaging.providers import ProviderRegistry, build_default_registry


ALL_PERMISSIONS = {
    "crm.contacts.read",
    "crm.contacts.write",
    "crm.pipelines.manage",
    "crm.deals.write",
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
def clear_stubs() -> Generator[None, None, None]:
    events.published_events.clear()
    get_settings.cache_clear()
    yield
    events.published_events.clear()
    get_settings.cache_clear()


@pytest.fixture()
def registry() -> Generator[ProviderRegistry, None, None]:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(202, headers={"X-Message-Id": "sg-corr-1"})

    provider_registry = build_default_registry(get_settings(), transport=httpx.MockTransport(handler))
    yield provider_registry
    provider_registry.close()


@pytest.fixture()
def client(db_session: Session, registry: ProviderRegistry) -> Generator[TestClient, None, None]:
    tenant_id = uuid.uuid4()

    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_user(request: Request) -> ActorUser:
        return ActorUser(
            user_id="user-1",
            tenant_id=tenant_id,
            permissions=ALL_PERMISSIONS,
            correlation_id=get_correlation_id(),
        )

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user
    app.dependency_overrides[get_provider_registry] = lambda: registry
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def test_generated_correlation_id_returned_in_header_and_error_envelope(client: TestClient) -> None:
    response = client.get(f"/api/crm/contacts/{uuid.uuid4()}")
    assert response.status_code == 404
    header_value = response.headers.get("x-correlation-id")
    assert header_value
    body = response.json()
    assert body["code"] == "crm_contact_get_failed"
    assert body["correlation_id"] == header_value


def test_correlation_id_respected_when_provided(client: TestClient) -> None:
    response = client.get(f"/api/crm/contacts/{uuid.uuid4()}", headers={"X-Correlation-Id": "abc-123"})
    assert response.status_code == 404
    assert response.headers.get("x-correlation-id") == "abc-123"
    assert response.json()["correlation_id"] == "abc-123"


def test_event_envelope_includes_correlation_id(client: TestClient) -> None:
    headers = {"X-Correlation-Id": "corr-event-1"}
    contact = client.post(
        "/api/crm/contacts",
        json={"first_name": "Corr", "last_name": "Contact"},
        headers=headers,
    )
    assert contact.status_code == 201
    pipeline = client.post("/api/crm/pipelines", json={"name": "Corr", "stages": [{"name": "Lead"}]}, headers=headers)
    assert pipeline.status_code == 201

    deal = client.post(
        "/api/crm/deals",
        json={
            "contact_id": contact.json()["id"],
            "pipeline_id": pipeline.json()["id"],
            "stage_id": pipeline.json()["stages"][0]["id"],
            "title": "Corr deal",
            "value": 10,
        },
        headers=headers,
    )
    assert deal.status_code == 201

    created_events = [item for item in events.published_events if item.get("event_type") == "crm.deal.created"]
    assert created_events
    assert created_events[-1].get("correlation_id") == "corr-event-1"


def test_dispatch_events_carry_request_correlation_id(client: TestClient) -> None:
    account = client.post(
        "/api/messaging/email-accounts",
        json={"name": "Sales", "email": "sales@example.com", "provider": "SENDGRID", "api_key": "SG.key", "is_default": True},
    )
    assert account.status_code == 201
    queued = client.post(
        "/api/messaging/emails",
        json={"to": ["lead@example.com"], "subject": "Hi", "body": "Hello"},
        headers={"X-Correlation-Id": "corr-queue-1"},
    )
    assert queued.status_code == 201

    dispatched = client.post(
        f"/api/messaging/emails/{queued.json()['id']}/dispatch",
        headers={"X-Correlation-Id": "corr-dispatch-1"},
    )
    assert dispatched.status_code == 200
    assert dispatched.headers.get("x-correlation-id") == "corr-dispatch-1"

    sent_events = [item for item in events.published_events if item.get("event_type") == "messaging.email.sent"]
    assert [item.get("correlation_id") for item in sent_events] == ["corr-dispatch-1"]


def test_published_events_keep_only_recent_envelopes() -> None:
    tenant_id = uuid.uuid4()
    for index in range(events.RECENT_EVENT_LIMIT + 5):
        events.publish(
            events.build_envelope(
                "messaging.email.sent",
                tenant_id=tenant_id,
                actor_user_id=None,
                payload={"sequence": index},
            )
        )

    assert len(events.published_events) == events.RECENT_EVENT_LIMIT
    assert events.published_events[0]["payload"] == {"sequence": 5}
    assert events.published_events[-1]["payload"] == {"sequence": events.RECENT_EVENT_LIMIT + 4}
