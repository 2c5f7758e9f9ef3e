from __future__ import annotations

import logging
import time
import uuid
from typing import Any

from opentelemetry import trace
from sqlalchemy import or_, select, update
from sqlalchemy.orm import Session

from app import events
from app.context import get_correlation_id
from app.core.config import Settings, get_settings
from app.core.errors import ProviderError
from app.crm.models import utcnow
from app.messaging import status as message_status
from app.messaging.models import Email, SmsMessage
from app.messaging.providers import OutboundEmail, OutboundSms, ProviderRegistry
from app.messaging.tracking import render_email_html
from app.metrics import observe_message_dispatch


logger = logging.getLogger("app.messaging.dispatcher")
tracer = trace.get_tracer("app.messaging.dispatcher")


def _publish(event_type: str, tenant_id: uuid.UUID, payload: dict[str, Any]) -> None:
    envelope = events.build_envelope(event_type, tenant_id=tenant_id, actor_user_id=None, payload=payload)
    events.publish(envelope)


class MessageDispatcher:
    """Moves queued messages through the provider call.

    Every dispatch starts with a compare-and-swap claim (QUEUED -> SENDING) so a row is
    handed to a provider at most once, whichever of the poller, a Celery task or an inline
    send gets there first.
    """

    def __init__(self, registry: ProviderRegistry, settings: Settings | None = None) -> None:
        self.registry = registry
        self.settings = settings or get_settings()

    def dispatch_email(self, session: Session, email_id: uuid.UUID) -> Email | None:
        if not self._claim(session, Email, email_id):
            logger.info("message.dispatch.skipped", extra={"channel": "email", "message_id": str(email_id)})
            observe_message_dispatch("email", "skipped")
            return None

        email = session.get(Email, email_id, populate_existing=True)
        account = email.account
        with tracer.start_as_current_span("message.dispatch") as span:
            span.set_attribute("channel", "email")
            span.set_attribute("message_id", str(email.id))
            span.set_attribute("provider", account.provider)
            span.set_attribute("correlation_id", get_correlation_id() or "")
            started = time.perf_counter()
            try:
                provider = self.registry.email_provider(account)
                result = provider.send_email(self._build_email(email))
            except Exception as exc:
                error = exc if isinstance(exc, ProviderError) else ProviderError(str(exc), provider=account.provider)
                span.record_exception(exc)
                self._mark_failed(session, email, str(error.detail))
                observe_message_dispatch("email", message_status.FAILED, time.perf_counter() - started)
                logger.warning(
                    "message.dispatch.failed",
                    extra={
                        "channel": "email",
                        "message_id": str(email.id),
                        "provider": account.provider,
                        "error": str(error.detail)[:500],
                    },
                )
                _publish(
                    "messaging.email.failed",
                    email.tenant_id,
                    {"email_id": str(email.id), "error": email.error_message},
                )
                if error is exc:
                    raise
                raise error from exc

            email.status = message_status.SENT
            email.sent_at = utcnow()
            email.provider_message_id = result.provider_message_id
            email.error_message = None
            session.commit()
            span.set_attribute("provider_message_id", result.provider_message_id or "")

        observe_message_dispatch("email", message_status.SENT, time.perf_counter() - started)
        logger.info(
            "message.dispatch.sent",
            extra={"channel": "email", "message_id": str(email.id), "provider": account.provider},
        )
        _publish(
            "messaging.email.sent",
            email.tenant_id,
            {"email_id": str(email.id), "provider_message_id": email.provider_message_id},
        )
        return email

    def dispatch_sms(self, session: Session, sms_id: uuid.UUID) -> SmsMessage | None:
        if not self._claim(session, SmsMessage, sms_id):
            logger.info("message.dispatch.skipped", extra={"channel": "sms", "message_id": str(sms_id)})
            observe_message_dispatch("sms", "skipped")
            return None

        sms = session.get(SmsMessage, sms_id, populate_existing=True)
        account = sms.account
        with tracer.start_as_current_span("message.dispatch") as span:
            span.set_attribute("channel", "sms")
            span.set_attribute("message_id", str(sms.id))
            span.set_attribute("provider", account.provider)
            span.set_attribute("correlation_id", get_correlation_id() or "")
            started = time.perf_counter()
            try:
                provider = self.registry.sms_provider(account)
                result = provider.send_sms(self._build_sms(sms))
            except Exception as exc:
                error = exc if isinstance(exc, ProviderError) else ProviderError(str(exc), provider=account.provider)
                span.record_exception(exc)
                self._mark_failed(session, sms, str(error.detail))
                observe_message_dispatch("sms", message_status.FAILED, time.perf_counter() - started)
                logger.warning(
                    "message.dispatch.failed",
                    extra={
                        "channel": "sms",
                        "message_id": str(sms.id),
                        "provider": account.provider,
                        "error": str(error.detail)[:500],
                    },
                )
                _publish("messaging.sms.failed", sms.tenant_id, {"sms_id": str(sms.id), "error": sms.error_message})
                if error is exc:
                    raise
                raise error from exc

            sms.status = message_status.SENT
            sms.sent_at = utcnow()
            sms.provider_message_id = result.provider_message_id
            sms.error_message = None
            session.commit()
            span.set_attribute("provider_message_id", result.provider_message_id or "")

        observe_message_dispatch("sms", message_status.SENT, time.perf_counter() - started)
        logger.info(
            "message.dispatch.sent",
            extra={"channel": "sms", "message_id": str(sms.id), "provider": account.provider},
        )
        _publish(
            "messaging.sms.sent",
            sms.tenant_id,
            {"sms_id": str(sms.id), "provider_message_id": sms.provider_message_id},
        )
        return sms

    def process_email_queue(self, session: Session, batch_size: int | None = None) -> dict[str, int]:
        return self._process_queue(session, Email, "email", self.dispatch_email, batch_size)

    def process_sms_queue(self, session: Session, batch_size: int | None = None) -> dict[str, int]:
        return self._process_queue(session, SmsMessage, "sms", self.dispatch_sms, batch_size)

    def _process_queue(
        self,
        session: Session,
        model: type[Email] | type[SmsMessage],
        channel: str,
        dispatch: Any,
        batch_size: int | None,
    ) -> dict[str, int]:
        limit = batch_size or self.settings.message_poll_batch_size
        now = utcnow()
        message_ids = session.scalars(
            select(model.id)
            .where(
                model.status == message_status.QUEUED,
                or_(model.scheduled_for.is_(None), model.scheduled_for <= now),
            )
            .order_by(model.created_at.asc(), model.id.asc())
            .limit(limit)
        ).all()

        summary = {"claimed": len(message_ids), "sent": 0, "failed": 0, "skipped": 0}
        for message_id in message_ids:
            try:
                dispatched = dispatch(session, message_id)
            except ProviderError as exc:
                summary["failed"] += 1
                logger.warning(
                    "message.queue.item_failed",
                    extra={"channel": channel, "message_id": str(message_id), "error": str(exc.detail)[:500]},
                )
                continue
            if dispatched is None:
                summary["skipped"] += 1
            else:
                summary["sent"] += 1

        logger.info("message.queue.processed", extra={"channel": channel, "batch_size": limit, **summary})
        return summary

    def _claim(self, session: Session, model: type[Email] | type[SmsMessage], message_id: uuid.UUID) -> bool:
        result = session.execute(
            update(model)
            .where(model.id == message_id, model.status == message_status.QUEUED)
            .values(status=message_status.SENDING, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            session.rollback()
            return False
        session.commit()
        return True

    def _mark_failed(self, session: Session, message: Email | SmsMessage, error_message: str) -> None:
        message.status = message_status.FAILED
        message.error_message = error_message[:2000]
        session.commit()

    def _build_email(self, email: Email) -> OutboundEmail:
        html = render_email_html(
            body=email.body,
            body_html=email.body_html,
            base_url=self.settings.public_base_url,
            tracking_id=email.tracking_id,
            track_opens=email.track_opens,
            track_clicks=email.track_clicks,
        )
        return OutboundEmail(
            message_id=str(email.id),
            tenant_id=str(email.tenant_id),
            from_address=email.from_address,
            to=list(email.to_addresses),
            cc=list(email.cc_addresses or []),
            bcc=list(email.bcc_addresses or []),
            subject=email.subject,
            text=email.body,
            html=html,
            tracking_id=email.tracking_id,
        )

    def _build_sms(self, sms: SmsMessage) -> OutboundSms:
        return OutboundSms(
            message_id=str(sms.id),
            to_number=sms.to_number,
            from_number=sms.from_number,
            body=sms.body,
            status_callback_url=f"{self.settings.public_base_url.rstrip('/')}/api/webhooks/twilio",
        )
