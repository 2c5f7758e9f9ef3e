from __future__ import annotations

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
from app.core.auth import AuthUser, get_current_user as auth_get_current_user
from app.core.config import get_settings
from app.core.database import Base, get_db
from app.main import app
from app.messaging.api import get_provider_registry
from app.messaging.providers import ProviderRegistry, build_default_registry


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
def configure_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("METRICS_ENABLED", "true")
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture()
def registry() -> Generator[ProviderRegistry, None, None]:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(202, headers={"X-Message-Id": "sg-metrics-1"})

    provider_registry = build_default_registry(get_settings(), transport=httpx.MockTransport(handler))
    yield provider_registry
    provider_registry.close()


@pytest.fixture()
def auth_roles() -> list[str]:
    return ["system.metrics.read"]


@pytest.fixture()
def client(db_session: Session, registry: ProviderRegistry, auth_roles: list[str]) -> Generator[TestClient, None, None]:
    tenant_id = uuid.uuid4()

    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_actor() -> ActorUser:
        return ActorUser(
            user_id="metrics-user",
            tenant_id=tenant_id,
            permissions={
                "crm.contacts.write",
                "crm.pipelines.manage",
                "crm.deals.write",
                "messaging.accounts.manage",
                "messaging.send",
            },
            correlation_id="metrics-corr-1",
        )

    def override_auth_user() -> AuthUser:
        return AuthUser(sub="metrics-admin", roles=auth_roles)

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_actor
    app.dependency_overrides[auth_get_current_user] = override_auth_user
    app.dependency_overrides[get_provider_registry] = lambda: registry

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()


def test_metrics_endpoint_exposes_http_deal_and_message_metrics(client: TestClient) -> None:
    health = client.get("/health")
    assert health.status_code == 200

    contact = client.post("/api/crm/contacts", json={"first_name": "Metric", "last_name": "Contact"})
    assert contact.status_code == 201
    pipeline = client.post("/api/crm/pipelines", json={"name": "Metrics", "stages": [{"name": "Lead"}]})
    assert pipeline.status_code == 201
    deal = client.post(
        "/api/crm/deals",
        json={
            "contact_id": contact.json()["id"],
            "pipeline_id": pipeline.json()["id"],
            "stage_id": pipeline.json()["stages"][0]["id"],
            "title": "Metrics deal",
            "value": 100,
        },
    )
    assert deal.status_code == 201
    won = client.patch(f"/api/crm/deals/{deal.json()['id']}", json={"status": "WON"})
    assert won.status_code == 200

    account = client.post(
        "/api/messaging/email-accounts",
        json={"name": "Sales", "email": "sales@example.com", "provider": "SENDGRID", "api_key": "SG.key", "is_default": True},
    )
    assert account.status_code == 201
    queued = client.post("/api/messaging/emails", json={"to": ["lead@example.com"], "subject": "Hi", "body": "Hello"})
    assert queued.status_code == 201
    assert client.post(f"/api/messaging/emails/{queued.json()['id']}/dispatch").status_code == 200
    assert client.get(f"/api/track/open/{queued.json()['tracking_id']}").status_code == 200

    metrics = client.get("/metrics")
    assert metrics.status_code == 200
    body = metrics.text

    assert "http_requests_total" in body
    assert "http_request_duration_seconds" in body
    assert "crm_deal_transitions_total" in body
    assert "messages_dispatched_total" in body
    assert "message_dispatch_duration_seconds" in body
    assert "message_webhook_events_total" in body

    assert 'path="/health"' in body
    assert 'path="/api/crm/deals/{id}"' in body
    assert 'path="/api/track/open/{id}"' in body
    assert 'status="WON"' in body
    assert 'channel="email",status="SENT"' in body
    assert 'channel="email",event="open"' in body
    assert queued.json()["tracking_id"] not in body


@pytest.mark.parametrize("auth_roles", [["crm.contacts.read"]])
def test_metrics_endpoint_requires_role(client: TestClient) -> None:
    response = client.get("/metrics")
    assert response.status_code == 403


def test_metrics_endpoint_hidden_when_disabled(client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("METRICS_ENABLED", "false")
    get_settings.cache_clear()

    response = client.get("/metrics")
    assert response.status_code == 404
