from __future__ import annotations

import json
import uuid
from collections.abc import Callable, Generator

import httpx
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app import events
from app.api.deps import get_current_user
from app.core.actor import ActorUser
from app.core.config import get_settings
from app.core.database import Base, get_db
from app.crm.models import CRMActivity
from app.main import app
from app.messaging.api import get_provider_registry
from app.messaging.models import Email
from app.messaging.providers import ProviderRegistry, build_default_registry
from app.messaging.service import MessagingService
from app.messaging.tracking import TRACKING_PIXEL_GIF


MESSAGING_PERMISSIONS = {
    "messaging.accounts.manage",
    "messaging.send",
    "messaging.read",
    "crm.contacts.read",
    "crm.contacts.write",
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
def reset_state() -> Generator[None, None, None]:
    events.published_events.clear()
    get_settings.cache_clear()
    yield
    events.published_events.clear()
    get_settings.cache_clear()


@pytest.fixture()
def provider_calls() -> list[httpx.Request]:
    return []


@pytest.fixture()
def registry(provider_calls: list[httpx.Request]) -> Generator[ProviderRegistry, None, None]:
    def handler(request: httpx.Request) -> httpx.Response:
        provider_calls.append(request)
        if request.url.path == "/v3/mail/send":
            if b"fail@example.com" in request.content:
                return httpx.Response(500, text="upstream exploded")
            return httpx.Response(202, headers={"X-Message-Id": "sg-msg-1"})
        if request.url.path.endswith("/Messages.json"):
            return httpx.Response(201, json={"sid": "SM123", "status": "queued"})
        return httpx.Response(404)

    provider_registry = build_default_registry(get_settings(), transport=httpx.MockTransport(handler))
    yield provider_registry
    provider_registry.close()


@pytest.fixture()
def tenants() -> dict[str, uuid.UUID]:
    return {"t1": uuid.uuid4(), "t2": uuid.uuid4()}


@pytest.fixture()
def client(
    db_session: Session,
    registry: ProviderRegistry,
    tenants: dict[str, uuid.UUID],
) -> Generator[tuple[TestClient, Callable[[str], None]], None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    actors = {
        "sender": ActorUser(
            user_id="sender-1",
            tenant_id=tenants["t1"],
            permissions=set(MESSAGING_PERMISSIONS),
            correlation_id="corr-messaging",
        ),
        "other_tenant": ActorUser(
            user_id="sender-2",
            tenant_id=tenants["t2"],
            permissions=set(MESSAGING_PERMISSIONS),
            correlation_id="corr-messaging",
        ),
        "reader": ActorUser(
            user_id="reader-1",
            tenant_id=tenants["t1"],
            permissions={"messaging.read"},
            correlation_id="corr-messaging",
        ),
    }
    state = {"current": "sender"}

    def override_get_current_user() -> ActorUser:
        return actors[state["current"]]

    def set_actor(name: str) -> None:
        state["current"] = name

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user
    app.dependency_overrides[get_provider_registry] = lambda: registry
    with TestClient(app) as test_client:
        yield test_client, set_actor
    app.dependency_overrides.clear()


def _create_email_account(test_client: TestClient, **overrides: object) -> dict:
    payload = {
        "name": "Sales inbox",
        "email": "sales@example.com",
        "provider": "SENDGRID",
        "api_key": "SG.test-key",
        "is_default": True,
    }
    payload.update(overrides)
    response = test_client.post("/api/messaging/email-accounts", json=payload)
    assert response.status_code == 201, response.text
    return response.json()


def _create_sms_account(test_client: TestClient, **overrides: object) -> dict:
    payload = {
        "name": "Main line",
        "provider": "TWILIO",
        "account_sid": "AC123",
        "auth_token": "secret-token",
        "from_number": "+15550001111",
        "is_default": True,
    }
    payload.update(overrides)
    response = test_client.post("/api/messaging/sms-accounts", json=payload)
    assert response.status_code == 201, response.text
    return response.json()


def _send_email(test_client: TestClient, **overrides: object) -> dict:
    payload = {
        "to": ["lead@example.com"],
        "subject": "Quarterly review",
        "body": "Hi there,\n\nSee https://example.com for details.",
        "body_html": '<p>Hi there, see <a href="https://example.com/pricing?plan=pro">pricing</a>.</p>',
    }
    payload.update(overrides)
    response = test_client.post("/api/messaging/emails", json=payload)
    assert response.status_code == 201, response.text
    return response.json()


def test_send_without_account_returns_guidance(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _set_actor = client

    email = test_client.post(
        "/api/messaging/emails",
        json={"to": ["lead@example.com"], "subject": "Hello", "body": "Body"},
    )
    assert email.status_code == 404
    assert email.json()["code"] == "messaging_email_send_failed"
    assert email.json()["message"] == "No email account configured. Please add an email account first."

    sms = test_client.post("/api/messaging/sms", json={"to": "+15550002222", "body": "Hi"})
    assert sms.status_code == 404
    assert sms.json()["message"] == "No SMS account configured. Please add an SMS account first."


def test_account_credentials_are_validated_and_never_returned(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, set_actor = client

    missing_key = test_client.post(
        "/api/messaging/email-accounts",
        json={"name": "No key", "email": "a@example.com", "provider": "SENDGRID"},
    )
    assert missing_key.status_code == 422

    missing_host = test_client.post(
        "/api/messaging/email-accounts",
        json={"name": "SMTP", "email": "a@example.com", "provider": "SMTP", "smtp_port": 587},
    )
    assert missing_host.status_code == 422

    account = _create_email_account(test_client)
    assert "api_key" not in account
    assert "smtp_password" not in account

    set_actor("reader")
    forbidden = test_client.get("/api/messaging/email-accounts")
    assert forbidden.status_code == 403


def test_only_one_default_account_per_tenant(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, set_actor = client
    first = _create_email_account(test_client, name="First")
    second = _create_email_account(test_client, name="Second", email="second@example.com")

    accounts = test_client.get("/api/messaging/email-accounts").json()
    defaults = [account["id"] for account in accounts if account["is_default"]]
    assert defaults == [second["id"]]
    assert accounts[0]["id"] == second["id"]

    promoted = test_client.post(f"/api/messaging/email-accounts/{first['id']}/default")
    assert promoted.status_code == 200
    assert promoted.json()["is_default"] is True
    defaults = [account["id"] for account in test_client.get("/api/messaging/email-accounts").json() if account["is_default"]]
    assert defaults == [first["id"]]

    set_actor("other_tenant")
    other = _create_email_account(test_client, name="Other tenant")
    assert other["is_default"] is True
    assert test_client.post(f"/api/messaging/email-accounts/{first['id']}/default").status_code == 404


def test_concurrent_default_account_conflicts(
    client: tuple[TestClient, Callable[[str], None]],
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    test_client, _set_actor = client
    first = _create_email_account(test_client, name="First")
    second = _create_email_account(test_client, name="Second", email="second@example.com", is_default=False)
    _create_sms_account(test_client)

    # Another request commits its default between our clear and our write.
    monkeypatch.setattr(MessagingService, "_clear_default", lambda self, session, model, tenant_id: None)

    promoted = test_client.post(f"/api/messaging/email-accounts/{second['id']}/default")
    assert promoted.status_code == 409
    assert promoted.json()["code"] == "messaging_email_account_default_failed"
    assert promoted.json()["message"] == "another default account was set concurrently, retry the request"

    created = test_client.post(
        "/api/messaging/sms-accounts",
        json={
            "name": "Backup line",
            "provider": "TWILIO",
            "account_sid": "AC999",
            "auth_token": "other-token",
            "from_number": "+15550009999",
            "is_default": True,
        },
    )
    assert created.status_code == 409
    assert created.json()["code"] == "messaging_sms_account_create_failed"

    accounts = test_client.get("/api/messaging/email-accounts").json()
    assert [account["id"] for account in accounts if account["is_default"]] == [first["id"]]
    assert len(test_client.get("/api/messaging/sms-accounts").json()) == 1


def test_email_lifecycle_queue_dispatch_webhook_and_tracking(
    client: tuple[TestClient, Callable[[str], None]],
    db_session: Session,
    provider_calls: list[httpx.Request],
) -> None:
    test_client, _set_actor = client
    _create_email_account(test_client)
    contact = test_client.post(
        "/api/crm/contacts",
        json={"first_name": "Lead", "last_name": "Person", "email": "lead@example.com"},
    ).json()

    queued = _send_email(test_client, contact_id=contact["id"], cc=["boss@example.com"])
    assert queued["status"] == "QUEUED"
    assert queued["from_address"] == "sales@example.com"
    assert queued["to_addresses"] == ["lead@example.com"]
    assert queued["cc_addresses"] == ["boss@example.com"]
    assert queued["tracking_id"]
    assert provider_calls == []

    activity = db_session.scalar(select(CRMActivity).where(CRMActivity.activity_type == "EMAIL"))
    assert activity is not None
    assert activity.title == "Email sent"
    assert activity.description == "Quarterly review"
    assert activity.activity_metadata == {"email_id": queued["id"]}

    dispatched = test_client.post(f"/api/messaging/emails/{queued['id']}/dispatch")
    assert dispatched.status_code == 200
    assert dispatched.json()["status"] == "SENT"
    assert dispatched.json()["provider_message_id"] == "sg-msg-1"
    assert dispatched.json()["sent_at"] is not None

    assert len(provider_calls) == 1
    request = provider_calls[0]
    assert request.headers["authorization"] == "Bearer SG.test-key"
    payload = json.loads(request.content)
    assert payload["custom_args"]["email_id"] == queued["id"]
    assert payload["personalizations"][0]["cc"] == [{"email": "boss@example.com"}]
    html_part = payload["content"][1]["value"]
    assert f"/api/track/open/{queued['tracking_id']}" in html_part
    assert f"/api/track/click/{queued['tracking_id']}?url=https%3A%2F%2Fexample.com%2Fpricing%3Fplan%3Dpro" in html_part

    again = test_client.post(f"/api/messaging/emails/{queued['id']}/dispatch")
    assert again.status_code == 409
    assert len(provider_calls) == 1

    webhook = test_client.post(
        "/api/webhooks/sendgrid",
        json=[
            {"event": "processed", "sg_message_id": "sg-msg-1.filter0001"},
            {"event": "delivered", "sg_message_id": "sg-msg-1.filter0001", "timestamp": 1760000000},
        ],
    )
    assert webhook.status_code == 200
    assert webhook.json() == {"processed": 1, "ignored": 1}
    delivered = test_client.get(f"/api/messaging/emails/{queued['id']}").json()
    assert delivered["status"] == "DELIVERED"
    assert delivered["delivered_at"].startswith("2025-10-09")

    pixel = test_client.get(f"/api/track/open/{queued['tracking_id']}")
    assert pixel.status_code == 200
    assert pixel.headers["content-type"] == "image/gif"
    assert pixel.content == TRACKING_PIXEL_GIF
    opened = test_client.get(f"/api/messaging/emails/{queued['id']}").json()
    assert opened["status"] == "OPENED"
    assert opened["opened_at"] is not None

    test_client.get(f"/api/track/open/{queued['tracking_id']}")
    replayed = test_client.get(f"/api/messaging/emails/{queued['id']}").json()
    assert replayed["opened_at"] == opened["opened_at"]

    click = test_client.get(
        f"/api/track/click/{queued['tracking_id']}",
        params={"url": "https://example.com/pricing?plan=pro"},
        follow_redirects=False,
    )
    assert click.status_code == 302
    assert click.headers["location"] == "https://example.com/pricing?plan=pro"
    clicked = test_client.get(f"/api/messaging/emails/{queued['id']}").json()
    assert clicked["status"] == "CLICKED"

    late_open = test_client.post(
        "/api/webhooks/sendgrid",
        json=[{"event": "open", "tracking_id": queued["tracking_id"], "timestamp": 1760000100}],
    )
    assert late_open.json() == {"processed": 1, "ignored": 0}
    assert test_client.get(f"/api/messaging/emails/{queued['id']}").json()["status"] == "CLICKED"

    stats = test_client.get("/api/messaging/emails/stats").json()
    assert stats["total"] == 1
    assert stats["sent"] == 1
    assert stats["open_rate"] == 100.0
    assert stats["click_rate"] == 100.0
    assert stats["delivery_rate"] == 100.0
    assert stats["bounce_rate"] == 0.0

    sent_events = [item for item in events.published_events if item["event_type"] == "messaging.email.sent"]
    assert len(sent_events) == 1


def test_untracked_email_has_no_tracking_id(
    client: tuple[TestClient, Callable[[str], None]],
    provider_calls: list[httpx.Request],
) -> None:
    test_client, _set_actor = client
    _create_email_account(test_client)

    queued = _send_email(test_client, track_opens=False, track_clicks=False)
    assert queued["tracking_id"] is None

    test_client.post(f"/api/messaging/emails/{queued['id']}/dispatch")
    html_part = json.loads(provider_calls[0].content)["content"][1]["value"]
    assert "/api/track/" not in html_part
    assert 'href="https://example.com/pricing?plan=pro"' in html_part


def test_tracking_endpoints_tolerate_unknown_ids(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _set_actor = client

    pixel = test_client.get("/api/track/open/does-not-exist")
    assert pixel.status_code == 200
    assert pixel.content == TRACKING_PIXEL_GIF
    assert pixel.headers["cache-control"] == "no-cache, no-store, must-revalidate"

    missing_url = test_client.get("/api/track/click/does-not-exist")
    assert missing_url.status_code == 400
    assert missing_url.json()["code"] == "messaging_click_missing_url"
    assert missing_url.json()["message"] == "Missing URL"

    redirect = test_client.get(
        "/api/track/click/does-not-exist",
        params={"url": "https://example.org"},
        follow_redirects=False,
    )
    assert redirect.status_code == 302
    assert redirect.headers["location"] == "https://example.org"


def test_bounce_overwrites_status_and_keeps_reason(
    client: tuple[TestClient, Callable[[str], None]],
    db_session: Session,
) -> None:
    test_client, _set_actor = client
    _create_email_account(test_client)
    queued = _send_email(test_client)
    test_client.post(f"/api/messaging/emails/{queued['id']}/dispatch")

    response = test_client.post(
        "/api/webhooks/sendgrid",
        json=[
            {"event": "bounce", "email_id": queued["id"], "reason": "550 mailbox unavailable"},
            {"event": "delivered", "sg_message_id": "unknown-id.filter"},
        ],
    )
    assert response.json() == {"processed": 1, "ignored": 1}

    email = db_session.get(Email, uuid.UUID(queued["id"]))
    db_session.refresh(email)
    assert email.status == "BOUNCED"
    assert email.bounced_at is not None
    assert email.error_message == "550 mailbox unavailable"

    stats = test_client.get("/api/messaging/emails/stats").json()
    assert stats["bounced"] == 1
    assert stats["delivery_rate"] == 0.0
    assert stats["bounce_rate"] == 100.0


def test_provider_failure_marks_email_failed(
    client: tuple[TestClient, Callable[[str], None]],
) -> None:
    test_client, _set_actor = client
    _create_email_account(test_client)
    queued = _send_email(test_client, to=["fail@example.com"])

    response = test_client.post(f"/api/messaging/emails/{queued['id']}/dispatch")
    assert response.status_code == 502
    assert response.json()["code"] == "messaging_email_dispatch_failed"

    failed = test_client.get(f"/api/messaging/emails/{queued['id']}").json()
    assert failed["status"] == "FAILED"
    assert "status 500" in failed["error_message"]
    assert test_client.get("/api/messaging/emails/stats").json()["failed"] == 1
    assert [item["event_type"] for item in events.published_events] == ["messaging.email.failed"]


def test_sync_mode_sends_inline(
    client: tuple[TestClient, Callable[[str], None]],
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    test_client, _set_actor = client
    _create_email_account(test_client)
    monkeypatch.setenv("MESSAGE_DISPATCH_MODE", "sync")
    get_settings.cache_clear()

    sent = _send_email(test_client)
    assert sent["status"] == "SENT"

    failed = test_client.post(
        "/api/messaging/emails",
        json={"to": ["fail@example.com"], "subject": "Broken", "body": "Hi"},
    )
    assert failed.status_code == 502
    assert failed.json()["code"] == "messaging_email_send_failed"
    assert failed.json()["message"].startswith("SENDGRID rejected message with status 500")
    failed_rows = test_client.get("/api/messaging/emails", params={"status": "FAILED"}).json()
    assert [row["subject"] for row in failed_rows] == ["Broken"]
    assert failed_rows[0]["error_message"].endswith("upstream exploded")

    scheduled = _send_email(test_client, scheduled_for="2999-01-01T00:00:00Z")
    assert scheduled["status"] == "QUEUED"


def test_emails_are_listed_per_tenant_and_filtered(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, set_actor = client
    _create_email_account(test_client)
    first = _send_email(test_client, subject="First")
    _send_email(test_client, subject="Second")
    test_client.post(f"/api/messaging/emails/{first['id']}/dispatch")

    listed = test_client.get("/api/messaging/emails")
    assert len(listed.json()) == 2
    sent_only = test_client.get("/api/messaging/emails", params={"status": "SENT"})
    assert [row["subject"] for row in sent_only.json()] == ["First"]

    set_actor("other_tenant")
    assert test_client.get("/api/messaging/emails").json() == []
    assert test_client.get(f"/api/messaging/emails/{first['id']}").status_code == 404


def test_sms_validation(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _set_actor = client
    _create_sms_account(test_client)

    bad_number = test_client.post("/api/messaging/sms", json={"to": "555-1234", "body": "Hi"})
    assert bad_number.status_code == 422

    too_long = test_client.post("/api/messaging/sms", json={"to": "+15550002222", "body": "x" * 1601})
    assert too_long.status_code == 422

    bad_account = test_client.post(
        "/api/messaging/sms-accounts",
        json={"name": "Bad", "provider": "TWILIO", "account_sid": "AC1", "auth_token": "t", "from_number": "5550001111"},
    )
    assert bad_account.status_code == 422


def test_sms_lifecycle_dispatch_and_twilio_callbacks(
    client: tuple[TestClient, Callable[[str], None]],
    provider_calls: list[httpx.Request],
) -> None:
    test_client, _set_actor = client
    _create_sms_account(test_client)

    queued = test_client.post("/api/messaging/sms", json={"to": "+15550002222", "body": "Your demo is at 3pm"})
    assert queued.status_code == 201
    assert queued.json()["status"] == "QUEUED"
    assert queued.json()["from_number"] == "+15550001111"

    dispatched = test_client.post(f"/api/messaging/sms/{queued.json()['id']}/dispatch")
    assert dispatched.status_code == 200
    assert dispatched.json()["status"] == "SENT"
    assert dispatched.json()["provider_message_id"] == "SM123"

    request = provider_calls[0]
    assert request.url.path == "/2010-04-01/Accounts/AC123/Messages.json"
    form = dict(httpx.QueryParams(request.content.decode()))
    assert form["To"] == "+15550002222"
    assert form["From"] == "+15550001111"
    assert form["StatusCallback"].endswith("/api/webhooks/twilio")

    unknown_status = test_client.post("/api/webhooks/twilio", data={"MessageSid": "SM123", "MessageStatus": "sent"})
    assert unknown_status.json() == {"processed": 0, "ignored": 1}

    delivered = test_client.post("/api/webhooks/twilio", data={"MessageSid": "SM123", "MessageStatus": "delivered"})
    assert delivered.status_code == 200
    assert delivered.json() == {"processed": 1, "ignored": 0}
    sms = test_client.get(f"/api/messaging/sms/{queued.json()['id']}").json()
    assert sms["status"] == "DELIVERED"
    assert sms["delivered_at"] is not None

    stats = test_client.get("/api/messaging/sms/stats").json()
    assert stats == {
        "total": 1,
        "sent": 1,
        "delivered": 1,
        "failed": 0,
        "delivery_rate": 100.0,
        "failure_rate": 0.0,
    }


def test_twilio_failure_callback_records_error(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _set_actor = client
    _create_sms_account(test_client)
    queued = test_client.post("/api/messaging/sms", json={"to": "+15550002222", "body": "Hello"}).json()
    test_client.post(f"/api/messaging/sms/{queued['id']}/dispatch")

    response = test_client.post(
        "/api/webhooks/twilio",
        data={
            "MessageSid": "SM123",
            "MessageStatus": "undelivered",
            "ErrorCode": "30003",
            "ErrorMessage": "Unreachable destination handset",
        },
    )
    assert response.json() == {"processed": 1, "ignored": 0}
    sms = test_client.get(f"/api/messaging/sms/{queued['id']}").json()
    assert sms["status"] == "FAILED"
    assert sms["error_message"] == "30003 Unreachable destination handset"

    missing = test_client.post("/api/webhooks/twilio", data={"MessageSid": "SM-unknown", "MessageStatus": "delivered"})
    assert missing.json() == {"processed": 0, "ignored": 1}
