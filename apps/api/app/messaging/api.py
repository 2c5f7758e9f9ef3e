from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any

from fastapi import APIRouter, Body, Depends, Form, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse, RedirectResponse, Response
from sqlalchemy.orm import Session

from app.api.deps import error_response, get_current_user, require_permission
from app.core.actor import ActorUser
from app.core.database import get_db
from app.messaging.dispatcher import MessageDispatcher
from app.messaging.providers import ProviderRegistry
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
    WebhookResult,
)
from app.messaging.service import messaging_service
from app.messaging.status import EmailStatus, SmsStatus
from app.messaging.tracking import TRACKING_PIXEL_GIF, TRACKING_PIXEL_HEADERS
from app.messaging.webhooks import handle_sendgrid_events, handle_twilio_status

router = APIRouter(prefix="/api/messaging", tags=["messaging"])
tracking_router = APIRouter(prefix="/api/track", tags=["messaging.tracking"])
webhooks_router = APIRouter(prefix="/api/webhooks", tags=["messaging.webhooks"])


def get_provider_registry(request: Request) -> ProviderRegistry:
    return request.app.state.provider_registry


def get_dispatcher(registry: ProviderRegistry = Depends(get_provider_registry)) -> MessageDispatcher:
    return MessageDispatcher(registry)


@router.post("/email-accounts", response_model=EmailAccountRead, status_code=status.HTTP_201_CREATED)
def create_email_account(
    request: Request,
    dto: EmailAccountCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> EmailAccountRead | JSONResponse:
    try:
        require_permission(user, "messaging.accounts.manage")
        return messaging_service.create_email_account(db, user, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="messaging_email_account_create_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@router.get("/email-accounts", response_model=list[EmailAccountRead])
def list_email_accounts(
    request: Request,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[EmailAccountRead] | JSONResponse:
    try:
        require_permission(user, "messaging.accounts.manage")
        return messaging_service.list_email_accounts(db, user)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="messaging_email_account_list_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@router.post("/email-accounts/{account_id}/default", response_model=EmailAccountRead)
def set_default_email_account(
    request: Request,
    account_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> EmailAccountRead | JSONResponse:
    try:
        require_permission(user, "messaging.accounts.manage")
        return messaging_service.set_default_email_account(db, user, account_id)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="messaging_email_account_default_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@router.post("/sms-accounts", response_model=SmsAccountRead, status_code=status.HTTP_201_CREATED)
def create_sms_account(
    request: Request,
    dto: SmsAccountCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> SmsAccountRead | JSONResponse:
    try:
        require_permission(user, "messaging.accounts.manage")
        return messaging_service.create_sms_account(db, user, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="messaging_sms_account_create_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@router.get("/sms-accounts", response_model=list[SmsAccountRead])
def list_sms_accounts(
    request: Request,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[SmsAccountRead] | JSONResponse:
    try:
        require_permission(user, "messaging.accounts.manage")
        return messaging_service.list_sms_accounts(db, user)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="messaging_sms_account_list_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@router.post("/sms-accounts/{account_id}/default", response_model=SmsAccountRead)
def set_default_sms_account(
    request: Request,
    account_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> SmsAccountRead | JSONResponse:
    try:
        require_permission(user, "messaging.accounts.manage")
        return messaging_service.set_default_sms_account(db, user, account_id)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="messaging_sms_account_default_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@router.post("/emails", response_model=EmailRead, status_code=status.HTTP_201_CREATED)
def send_email(
    request: Request,
    dto: EmailSendRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
    dispatcher: MessageDispatcher = Depends(get_dispatcher),
) -> EmailRead | JSONResponse:
    try:
        require_permission(user, "messaging.send")
        return messaging_service.send_email(db, user, dto, dispatcher)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="messaging_email_send_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@router.get("/emails", response_model=list[EmailRead])
def list_emails(
    request: Request,
    contact_id: uuid.UUID | None = Query(default=None),
    email_status: EmailStatus | None = Query(default=None, alias="status"),
    cursor: str | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=100),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[EmailRead] | JSONResponse:
    try:
        require_permission(user, "messaging.read")
        return messaging_service.list_emails(
            db,
            user,
            contact_id=contact_id,
            status=email_status,
            cursor=cursor,
            limit=limit,
        )
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="messaging_email_list_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@router.get("/emails/stats", response_model=EmailStatsRead)
def email_stats(
    request: Request,
    start: datetime | None = Query(default=None),
    end: datetime | None = Query(default=None),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> EmailStatsRead | JSONResponse:
    try:
        require_permission(user, "messaging.read")
        return messaging_service.email_stats(db, user, start=start, end=end)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="messaging_email_stats_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@router.get("/emails/{email_id}", response_model=EmailRead)
def get_email(
    request: Request,
    email_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> EmailRead | JSONResponse:
    try:
        require_permission(user, "messaging.read")
        return messaging_service.get_email(db, user, email_id)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="messaging_email_get_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@router.post("/emails/{email_id}/dispatch", response_model=EmailRead)
def dispatch_email(
    request: Request,
    email_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
    dispatcher: MessageDispatcher = Depends(get_dispatcher),
) -> EmailRead | JSONResponse:
    try:
        require_permission(user, "messaging.send")
        return messaging_service.dispatch_email(db, user, email_id, dispatcher)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="messaging_email_dispatch_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@router.post("/sms", response_model=SmsRead, status_code=status.HTTP_201_CREATED)
def send_sms(
    request: Request,
    dto: SmsSendRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
    dispatcher: MessageDispatcher = Depends(get_dispatcher),
) -> SmsRead | JSONResponse:
    try:
        require_permission(user, "messaging.send")
        return messaging_service.send_sms(db, user, dto, dispatcher)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="messaging_sms_send_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@router.get("/sms", response_model=list[SmsRead])
def list_sms(
    request: Request,
    contact_id: uuid.UUID | None = Query(default=None),
    sms_status: SmsStatus | None = Query(default=None, alias="status"),
    cursor: str | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=100),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[SmsRead] | JSONResponse:
    try:
        require_permission(user, "messaging.read")
        return messaging_service.list_sms(
            db,
            user,
            contact_id=contact_id,
            status=sms_status,
            cursor=cursor,
            limit=limit,
        )
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="messaging_sms_list_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@router.get("/sms/stats", response_model=SmsStatsRead)
def sms_stats(
    request: Request,
    start: datetime | None = Query(default=None),
    end: datetime | None = Query(default=None),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> SmsStatsRead | JSONResponse:
    try:
        require_permission(user, "messaging.read")
        return messaging_service.sms_stats(db, user, start=start, end=end)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="messaging_sms_stats_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@router.get("/sms/{sms_id}", response_model=SmsRead)
def get_sms(
    request: Request,
    sms_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> SmsRead | JSONResponse:
    try:
        require_permission(user, "messaging.read")
        return messaging_service.get_sms(db, user, sms_id)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="messaging_sms_get_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@router.post("/sms/{sms_id}/dispatch", response_model=SmsRead)
def dispatch_sms(
    request: Request,
    sms_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
    dispatcher: MessageDispatcher = Depends(get_dispatcher),
) -> SmsRead | JSONResponse:
    try:
        require_permission(user, "messaging.send")
        return messaging_service.dispatch_sms(db, user, sms_id, dispatcher)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="messaging_sms_dispatch_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@tracking_router.get("/open/{tracking_id}", include_in_schema=False)
def track_open(tracking_id: str, db: Session = Depends(get_db)) -> Response:
    messaging_service.record_open(db, tracking_id)
    return Response(content=TRACKING_PIXEL_GIF, media_type="image/gif", headers=TRACKING_PIXEL_HEADERS)


@tracking_router.get("/click/{tracking_id}", include_in_schema=False, response_model=None)
def track_click(
    request: Request,
    tracking_id: str,
    url: str | None = Query(default=None),
    db: Session = Depends(get_db),
) -> RedirectResponse | JSONResponse:
    if not url:
        return error_response(
            request,
            status_code=status.HTTP_400_BAD_REQUEST,
            code="messaging_click_missing_url",
            message="Missing URL",
        )
    messaging_service.record_click(db, tracking_id)
    return RedirectResponse(url=url, status_code=status.HTTP_302_FOUND)


@webhooks_router.post("/sendgrid", response_model=WebhookResult)
def sendgrid_webhook(
    events: list[dict[str, Any]] = Body(...),
    db: Session = Depends(get_db),
) -> WebhookResult:
    return handle_sendgrid_events(db, events)


@webhooks_router.post("/twilio", response_model=WebhookResult)
def twilio_webhook(
    message_sid: str = Form(alias="MessageSid"),
    message_status: str = Form(alias="MessageStatus"),
    error_code: str | None = Form(default=None, alias="ErrorCode"),
    error_message: str | None = Form(default=None, alias="ErrorMessage"),
    db: Session = Depends(get_db),
) -> WebhookResult:
    return handle_twilio_status(
        db,
        message_sid=message_sid,
        message_status_value=message_status,
        error_code=error_code,
        error_message=error_message,
    )
