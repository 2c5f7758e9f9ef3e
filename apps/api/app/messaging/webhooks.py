"""Provider callbacks. Events only ever move a message forward; replays are no-ops."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.crm.models import utcnow
from app.messaging import status as message_status
from app.messaging.models import Email, SmsMessage
from app.messaging.schemas import WebhookResult
from app.metrics import observe_webhook_event


logger = logging.getLogger("app.messaging.webhooks")

SENDGRID_EVENTS = {"delivered", "open", "click", "bounce", "dropped"}
TWILIO_DELIVERED = {"delivered"}
TWILIO_FAILED = {"failed", "undelivered"}


def _event_time(raw: Any) -> datetime:
    if isinstance(raw, (int, float)):
        return datetime.fromtimestamp(raw, tz=timezone.utc)
    return utcnow()


def _find_email(session: Session, event: dict[str, Any]) -> Email | None:
    tracking_id = event.get("tracking_id")
    if isinstance(tracking_id, str) and tracking_id:
        email = session.scalar(select(Email).where(Email.tracking_id == tracking_id))
        if email is not None:
            return email

    email_id = event.get("email_id")
    if isinstance(email_id, str) and email_id:
        try:
            parsed = uuid.UUID(email_id)
        except ValueError:
            parsed = None
        if parsed is not None:
            email = session.get(Email, parsed)
            if email is not None:
                return email

    sg_message_id = event.get("sg_message_id")
    if isinstance(sg_message_id, str) and sg_message_id:
        provider_id = sg_message_id.split(".", 1)[0]
        return session.scalar(select(Email).where(Email.provider_message_id == provider_id))
    return None


def _apply_sendgrid_event(email: Email, kind: str, event: dict[str, Any]) -> None:
    at = _event_time(event.get("timestamp"))
    if kind == "delivered":
        email.status = message_status.DELIVERED
        email.delivered_at = email.delivered_at or at
    elif kind == "open":
        if email.opened_at is None:
            email.opened_at = at
            email.status = message_status.upgraded_email_status(email.status, message_status.OPENED)
    elif kind == "click":
        if email.clicked_at is None:
            email.clicked_at = at
            email.status = message_status.upgraded_email_status(email.status, message_status.CLICKED)
    else:
        email.status = message_status.BOUNCED
        email.bounced_at = email.bounced_at or at
        reason = event.get("reason") or event.get("response")
        if reason:
            email.error_message = str(reason)[:2000]


def handle_sendgrid_events(session: Session, events: list[dict[str, Any]]) -> WebhookResult:
    processed = 0
    ignored = 0
    for event in events:
        kind = event.get("event") if isinstance(event, dict) else None
        if kind not in SENDGRID_EVENTS:
            ignored += 1
            continue
        email = _find_email(session, event)
        if email is None:
            ignored += 1
            logger.info("webhook_event_ignored", extra={"channel": "email", "event_type": kind})
            continue
        _apply_sendgrid_event(email, kind, event)
        observe_webhook_event("email", kind)
        processed += 1
    session.commit()
    return WebhookResult(processed=processed, ignored=ignored)


def handle_twilio_status(
    session: Session,
    *,
    message_sid: str,
    message_status_value: str,
    error_code: str | None = None,
    error_message: str | None = None,
) -> WebhookResult:
    kind = message_status_value.lower()
    sms = session.scalar(select(SmsMessage).where(SmsMessage.provider_message_id == message_sid))
    if sms is None or (kind not in TWILIO_DELIVERED and kind not in TWILIO_FAILED):
        logger.info("webhook_event_ignored", extra={"channel": "sms", "event_type": kind, "message_id": message_sid})
        return WebhookResult(processed=0, ignored=1)

    if kind in TWILIO_DELIVERED:
        sms.status = message_status.DELIVERED
        sms.delivered_at = sms.delivered_at or utcnow()
    else:
        sms.status = message_status.FAILED
        detail = " ".join(part for part in (error_code, error_message) if part)
        sms.error_message = detail or f"provider reported {kind}"
    session.commit()
    observe_webhook_event("sms", kind)
    return WebhookResult(processed=1, ignored=0)
