from __future__ import annotations

import logging
import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import and_, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.actor import ActorUser, tenant_scope
from app.core.celery_app import celery_app
from app.core.config import get_settings
from app.core.errors import BadRequestError, ConflictError, NotFoundError
from app.crm.models import utcnow
from app.crm.service import activity_service, contact_service
from app.messaging import status as message_status
from app.messaging.dispatcher import MessageDispatcher
from app.messaging.models import Email, EmailAccount, SmsAccount, SmsMessage
from app.messaging.schemas import (
    EmailAccountCreate,
    EmailAccountRead,
    EmailRead,
    EmailSendRequest,
    EmailStatsRead,
    SmsAccountCreate,
    SmsAccountRead,
    SmsRead,
    SmsSendRequest,
    SmsStatsRead,
)
from app.messaging.tracking import mint_tracking_id
from app.metrics import observe_webhook_event


logger = logging.getLogger("app.messaging")

NO_EMAIL_ACCOUNT_MESSAGE = "No email account configured. Please add an email account first."
NO_SMS_ACCOUNT_MESSAGE = "No SMS account configured. Please add an SMS account first."


def _offset(cursor: str | None) -> int:
    return int(cursor) if cursor and cursor.isdigit() else 0


def _rate(part: int, whole: int) -> float:
    return round(part / whole * 100, 1) if whole > 0 else 0.0


def _is_due(scheduled_for: datetime | None) -> bool:
    if scheduled_for is None:
        return True
    if scheduled_for.tzinfo is None:
        return scheduled_for <= utcnow().replace(tzinfo=None)
    return scheduled_for <= utcnow()


class MessagingService:
    def create_email_account(self, session: Session, actor_user: ActorUser, dto: EmailAccountCreate) -> EmailAccountRead:
        tenant_id = tenant_scope(actor_user)
        if dto.is_default:
            self._clear_default(session, EmailAccount, tenant_id)
        account = EmailAccount(tenant_id=tenant_id, **dto.model_dump())
        session.add(account)
        self._commit_account(session)
        logger.info("email_account_created", extra={"tenant_id": str(tenant_id), "provider": account.provider})
        return EmailAccountRead.model_validate(account)

    def list_email_accounts(self, session: Session, actor_user: ActorUser) -> list[EmailAccountRead]:
        rows = session.scalars(
            select(EmailAccount)
            .where(EmailAccount.tenant_id == tenant_scope(actor_user))
            .order_by(EmailAccount.is_default.desc(), EmailAccount.created_at.asc())
        ).all()
        return [EmailAccountRead.model_validate(row) for row in rows]

    def set_default_email_account(
        self,
        session: Session,
        actor_user: ActorUser,
        account_id: uuid.UUID,
    ) -> EmailAccountRead:
        tenant_id = tenant_scope(actor_user)
        account = self._owned_email_account(session, tenant_id, account_id)
        self._clear_default(session, EmailAccount, tenant_id)
        account.is_default = True
        self._commit_account(session)
        session.refresh(account)
        return EmailAccountRead.model_validate(account)

    def create_sms_account(self, session: Session, actor_user: ActorUser, dto: SmsAccountCreate) -> SmsAccountRead:
        tenant_id = tenant_scope(actor_user)
        if dto.is_default:
            self._clear_default(session, SmsAccount, tenant_id)
        account = SmsAccount(tenant_id=tenant_id, **dto.model_dump())
        session.add(account)
        self._commit_account(session)
        logger.info("sms_account_created", extra={"tenant_id": str(tenant_id), "provider": account.provider})
        return SmsAccountRead.model_validate(account)

    def list_sms_accounts(self, session: Session, actor_user: ActorUser) -> list[SmsAccountRead]:
        rows = session.scalars(
            select(SmsAccount)
            .where(SmsAccount.tenant_id == tenant_scope(actor_user))
            .order_by(SmsAccount.is_default.desc(), SmsAccount.created_at.asc())
        ).all()
        return [SmsAccountRead.model_validate(row) for row in rows]

    def set_default_sms_account(self, session: Session, actor_user: ActorUser, account_id: uuid.UUID) -> SmsAccountRead:
        tenant_id = tenant_scope(actor_user)
        account = self._owned_sms_account(session, tenant_id, account_id)
        self._clear_default(session, SmsAccount, tenant_id)
        account.is_default = True
        self._commit_account(session)
        session.refresh(account)
        return SmsAccountRead.model_validate(account)

    def send_email(
        self,
        session: Session,
        actor_user: ActorUser,
        dto: EmailSendRequest,
        dispatcher: MessageDispatcher | None = None,
    ) -> EmailRead:
        tenant_id = tenant_scope(actor_user)
        account = self._resolve_email_account(session, tenant_id, dto.account_id)
        if dto.contact_id is not None:
            contact_service.get_owned(session, tenant_id, dto.contact_id)

        tracking_id = mint_tracking_id() if dto.track_opens or dto.track_clicks else None
        email = Email(
            tenant_id=tenant_id,
            account_id=account.id,
            contact_id=dto.contact_id,
            to_addresses=[str(address) for address in dto.to],
            cc_addresses=[str(address) for address in dto.cc],
            bcc_addresses=[str(address) for address in dto.bcc],
            from_address=account.email,
            subject=dto.subject,
            body=dto.body,
            body_html=dto.body_html,
            track_opens=dto.track_opens,
            track_clicks=dto.track_clicks,
            tracking_id=tracking_id,
            status=message_status.QUEUED,
            scheduled_for=dto.scheduled_for,
        )
        session.add(email)
        session.flush()

        if dto.contact_id is not None:
            activity_service.record(
                session,
                actor_user,
                activity_type="EMAIL",
                title="Email sent",
                description=dto.subject,
                contact_id=dto.contact_id,
                metadata={"email_id": str(email.id)},
            )
        session.commit()
        logger.info(
            "message.queued",
            extra={"channel": "email", "message_id": str(email.id), "tenant_id": str(tenant_id)},
        )

        self._hand_off("email", email.id, email.scheduled_for, session, dispatcher)
        session.refresh(email)
        return EmailRead.model_validate(email)

    def send_sms(
        self,
        session: Session,
        actor_user: ActorUser,
        dto: SmsSendRequest,
        dispatcher: MessageDispatcher | None = None,
    ) -> SmsRead:
        tenant_id = tenant_scope(actor_user)
        account = self._resolve_sms_account(session, tenant_id, dto.account_id)
        if dto.contact_id is not None:
            contact_service.get_owned(session, tenant_id, dto.contact_id)

        sms = SmsMessage(
            tenant_id=tenant_id,
            account_id=account.id,
            contact_id=dto.contact_id,
            to_number=dto.to,
            from_number=account.from_number,
            body=dto.body,
            status=message_status.QUEUED,
            scheduled_for=dto.scheduled_for,
        )
        session.add(sms)
        session.flush()

        if dto.contact_id is not None:
            activity_service.record(
                session,
                actor_user,
                activity_type="SMS",
                title="SMS sent",
                description=dto.body[:100],
                contact_id=dto.contact_id,
                metadata={"sms_id": str(sms.id)},
            )
        session.commit()
        logger.info("message.queued", extra={"channel": "sms", "message_id": str(sms.id), "tenant_id": str(tenant_id)})

        self._hand_off("sms", sms.id, sms.scheduled_for, session, dispatcher)
        session.refresh(sms)
        return SmsRead.model_validate(sms)

    def dispatch_email(
        self,
        session: Session,
        actor_user: ActorUser,
        email_id: uuid.UUID,
        dispatcher: MessageDispatcher,
    ) -> EmailRead:
        email = self._owned_email(session, tenant_scope(actor_user), email_id)
        if email.status != message_status.QUEUED or dispatcher.dispatch_email(session, email.id) is None:
            raise ConflictError(f"email is not queued (status {email.status})")
        session.refresh(email)
        return EmailRead.model_validate(email)

    def dispatch_sms(
        self,
        session: Session,
        actor_user: ActorUser,
        sms_id: uuid.UUID,
        dispatcher: MessageDispatcher,
    ) -> SmsRead:
        sms = self._owned_sms(session, tenant_scope(actor_user), sms_id)
        if sms.status != message_status.QUEUED or dispatcher.dispatch_sms(session, sms.id) is None:
            raise ConflictError(f"sms is not queued (status {sms.status})")
        session.refresh(sms)
        return SmsRead.model_validate(sms)

    def list_emails(
        self,
        session: Session,
        actor_user: ActorUser,
        *,
        contact_id: uuid.UUID | None,
        status: str | None,
        cursor: str | None,
        limit: int,
    ) -> list[EmailRead]:
        stmt = select(Email).where(Email.tenant_id == tenant_scope(actor_user))
        if contact_id is not None:
            stmt = stmt.where(Email.contact_id == contact_id)
        if status:
            stmt = stmt.where(Email.status == status)
        rows = session.scalars(
            stmt.order_by(Email.created_at.desc(), Email.id.desc()).offset(_offset(cursor)).limit(limit)
        ).all()
        return [EmailRead.model_validate(row) for row in rows]

    def get_email(self, session: Session, actor_user: ActorUser, email_id: uuid.UUID) -> EmailRead:
        return EmailRead.model_validate(self._owned_email(session, tenant_scope(actor_user), email_id))

    def email_stats(
        self,
        session: Session,
        actor_user: ActorUser,
        *,
        start: datetime | None,
        end: datetime | None,
    ) -> EmailStatsRead:
        conditions: list[Any] = [Email.tenant_id == tenant_scope(actor_user)]
        if start is not None:
            conditions.append(Email.created_at >= start)
        if end is not None:
            conditions.append(Email.created_at <= end)

        row = session.execute(
            select(
                func.count(Email.id),
                func.count(Email.sent_at),
                func.count(Email.delivered_at),
                func.count(Email.opened_at),
                func.count(Email.clicked_at),
                func.count(Email.bounced_at),
                func.count(Email.id).filter(Email.status == message_status.FAILED),
            ).where(and_(*conditions))
        ).one()
        total, sent, delivered, opened, clicked, bounced, failed = (int(value or 0) for value in row)
        return EmailStatsRead(
            total=total,
            sent=sent,
            delivered=delivered,
            opened=opened,
            clicked=clicked,
            bounced=bounced,
            failed=failed,
            open_rate=_rate(opened, sent),
            click_rate=_rate(clicked, sent),
            delivery_rate=_rate(delivered, sent),
            bounce_rate=_rate(bounced, sent),
        )

    def list_sms(
        self,
        session: Session,
        actor_user: ActorUser,
        *,
        contact_id: uuid.UUID | None,
        status: str | None,
        cursor: str | None,
        limit: int,
    ) -> list[SmsRead]:
        stmt = select(SmsMessage).where(SmsMessage.tenant_id == tenant_scope(actor_user))
        if contact_id is not None:
            stmt = stmt.where(SmsMessage.contact_id == contact_id)
        if status:
            stmt = stmt.where(SmsMessage.status == status)
        rows = session.scalars(
            stmt.order_by(SmsMessage.created_at.desc(), SmsMessage.id.desc()).offset(_offset(cursor)).limit(limit)
        ).all()
        return [SmsRead.model_validate(row) for row in rows]

    def get_sms(self, session: Session, actor_user: ActorUser, sms_id: uuid.UUID) -> SmsRead:
        return SmsRead.model_validate(self._owned_sms(session, tenant_scope(actor_user), sms_id))

    def sms_stats(
        self,
        session: Session,
        actor_user: ActorUser,
        *,
        start: datetime | None,
        end: datetime | None,
    ) -> SmsStatsRead:
        conditions: list[Any] = [SmsMessage.tenant_id == tenant_scope(actor_user)]
        if start is not None:
            conditions.append(SmsMessage.created_at >= start)
        if end is not None:
            conditions.append(SmsMessage.created_at <= end)

        row = session.execute(
            select(
                func.count(SmsMessage.id),
                func.count(SmsMessage.sent_at),
                func.count(SmsMessage.delivered_at),
                func.count(SmsMessage.id).filter(SmsMessage.status == message_status.FAILED),
            ).where(and_(*conditions))
        ).one()
        total, sent, delivered, failed = (int(value or 0) for value in row)
        return SmsStatsRead(
            total=total,
            sent=sent,
            delivered=delivered,
            failed=failed,
            delivery_rate=_rate(delivered, sent),
            failure_rate=_rate(failed, total),
        )

    def record_open(self, session: Session, tracking_id: str) -> bool:
        email = session.scalar(select(Email).where(Email.tracking_id == tracking_id))
        if email is None or email.opened_at is not None:
            return False
        email.opened_at = utcnow()
        email.status = message_status.upgraded_email_status(email.status, message_status.OPENED)
        session.commit()
        observe_webhook_event("email", "open")
        return True

    def record_click(self, session: Session, tracking_id: str) -> bool:
        email = session.scalar(select(Email).where(Email.tracking_id == tracking_id))
        if email is None or email.clicked_at is not None:
            return False
        email.clicked_at = utcnow()
        email.status = message_status.upgraded_email_status(email.status, message_status.CLICKED)
        session.commit()
        observe_webhook_event("email", "click")
        return True

    def _hand_off(
        self,
        channel: str,
        message_id: uuid.UUID,
        scheduled_for: datetime | None,
        session: Session,
        dispatcher: MessageDispatcher | None,
    ) -> None:
        mode = get_settings().message_dispatch_mode
        if mode == "poll" or not _is_due(scheduled_for):
            return
        if mode == "celery":
            celery_app.send_task(f"messaging.dispatch_{channel}", args=[str(message_id)])
            return
        if dispatcher is None:
            raise BadRequestError("dispatcher unavailable for synchronous send")
        if channel == "email":
            dispatcher.dispatch_email(session, message_id)
        else:
            dispatcher.dispatch_sms(session, message_id)

    def _commit_account(self, session: Session) -> None:
        # The partial unique index rejects a second default written by a concurrent request.
        try:
            session.commit()
        except IntegrityError:
            session.rollback()
            raise ConflictError("another default account was set concurrently, retry the request")

    def _clear_default(
        self,
        session: Session,
        model: type[EmailAccount] | type[SmsAccount],
        tenant_id: uuid.UUID,
    ) -> None:
        session.execute(
            update(model)
            .where(model.tenant_id == tenant_id, model.is_default.is_(True))
            .values(is_default=False)
            .execution_options(synchronize_session="fetch")
        )
        session.flush()

    def _resolve_email_account(
        self,
        session: Session,
        tenant_id: uuid.UUID,
        account_id: uuid.UUID | None,
    ) -> EmailAccount:
        stmt = select(EmailAccount).where(EmailAccount.tenant_id == tenant_id)
        if account_id is not None:
            stmt = stmt.where(EmailAccount.id == account_id)
        else:
            stmt = stmt.where(EmailAccount.is_default.is_(True))
        account = session.scalar(stmt)
        if account is None:
            raise NotFoundError(NO_EMAIL_ACCOUNT_MESSAGE)
        return account

    def _resolve_sms_account(self, session: Session, tenant_id: uuid.UUID, account_id: uuid.UUID | None) -> SmsAccount:
        stmt = select(SmsAccount).where(SmsAccount.tenant_id == tenant_id)
        if account_id is not None:
            stmt = stmt.where(SmsAccount.id == account_id)
        else:
            stmt = stmt.where(SmsAccount.is_default.is_(True))
        account = session.scalar(stmt)
        if account is None:
            raise NotFoundError(NO_SMS_ACCOUNT_MESSAGE)
        return account

    def _owned_email_account(self, session: Session, tenant_id: uuid.UUID, account_id: uuid.UUID) -> EmailAccount:
        account = session.scalar(
            select(EmailAccount).where(EmailAccount.id == account_id, EmailAccount.tenant_id == tenant_id)
        )
        if account is None:
            raise NotFoundError("email account not found")
        return account

    def _owned_sms_account(self, session: Session, tenant_id: uuid.UUID, account_id: uuid.UUID) -> SmsAccount:
        account = session.scalar(select(SmsAccount).where(SmsAccount.id == account_id, SmsAccount.tenant_id == tenant_id))
        if account is None:
            raise NotFoundError("sms account not found")
        return account

    def _owned_email(self, session: Session, tenant_id: uuid.UUID, email_id: uuid.UUID) -> Email:
        email = session.scalar(select(Email).where(Email.id == email_id, Email.tenant_id == tenant_id))
        if email is None:
            raise NotFoundError("email not found")
        return email

    def _owned_sms(self, session: Session, tenant_id: uuid.UUID, sms_id: uuid.UUID) -> SmsMessage:
        sms = session.scalar(select(SmsMessage).where(SmsMessage.id == sms_id, SmsMessage.tenant_id == tenant_id))
        if sms is None:
            raise NotFoundError("sms not found")
        return sms


messaging_service = MessagingService()
