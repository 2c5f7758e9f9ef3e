from __future__ import annotations

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, EmailStr, Field, model_validator

from app.messaging.status import E164_PATTERN, SMS_MAX_LENGTH, EmailProvider, EmailStatus, SmsProvider, SmsStatus


class EmailAccountCreate(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    email: EmailStr
    provider: EmailProvider
    api_key: str | None = None
    smtp_host: str | None = None
    smtp_port: int | None = Field(default=None, ge=1, le=65535)
    smtp_user: str | None = None
    smtp_password: str | None = None
    is_default: bool = False

    @model_validator(mode="after")
    def _require_provider_credentials(self) -> EmailAccountCreate:
        if self.provider == "SMTP" and (not self.smtp_host or self.smtp_port is None):
            raise ValueError("smtp_host and smtp_port are required for SMTP accounts")
        if self.provider != "SMTP" and not self.api_key:
            raise ValueError(f"api_key is required for {self.provider} accounts")
        return self


class EmailAccountRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    tenant_id: UUID
    name: str
    email: str
    provider: str
    smtp_host: str | None
    smtp_port: int | None
    is_default: bool
    created_at: datetime


class SmsAccountCreate(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    provider: SmsProvider
    account_sid: str = Field(min_length=1)
    auth_token: str = Field(min_length=1)
    from_number: str = Field(pattern=E164_PATTERN)
    is_default: bool = False


class SmsAccountRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    tenant_id: UUID
    name: str
    provider: str
    from_number: str
    is_default: bool
    created_at: datetime


class EmailSendRequest(BaseModel):
    account_id: UUID | None = None
    contact_id: UUID | None = None
    to: list[EmailStr] = Field(min_length=1)
    cc: list[EmailStr] = Field(default_factory=list)
    bcc: list[EmailStr] = Field(default_factory=list)
    subject: str = Field(min_length=1)
    body: str = Field(min_length=1)
    body_html: str | None = None
    track_opens: bool = True
    track_clicks: bool = True
    scheduled_for: datetime | None = None


class EmailRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    tenant_id: UUID
    account_id: UUID
    contact_id: UUID | None
    to_addresses: list[str]
    cc_addresses: list[str]
    bcc_addresses: list[str]
    from_address: str
    subject: str
    body: str
    body_html: str | None
    track_opens: bool
    track_clicks: bool
    tracking_id: str | None
    status: EmailStatus
    provider_message_id: str | None
    error_message: str | None
    scheduled_for: datetime | None
    sent_at: datetime | None
    delivered_at: datetime | None
    opened_at: datetime | None
    clicked_at: datetime | None
    bounced_at: datetime | None
    created_at: datetime


class SmsSendRequest(BaseModel):
    account_id: UUID | None = None
    contact_id: UUID | None = None
    to: str = Field(pattern=E164_PATTERN)
    body: str = Field(min_length=1, max_length=SMS_MAX_LENGTH)
    scheduled_for: datetime | None = None


class SmsRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    tenant_id: UUID
    account_id: UUID
    contact_id: UUID | None
    to_number: str
    from_number: str
    body: str
    status: SmsStatus
    provider_message_id: str | None
    error_message: str | None
    scheduled_for: datetime | None
    sent_at: datetime | None
    delivered_at: datetime | None
    created_at: datetime


class EmailStatsRead(BaseModel):
    total: int
    sent: int
    delivered: int
    opened: int
    clicked: int
    bounced: int
    failed: int
    open_rate: float
    click_rate: float
    delivery_rate: float
    bounce_rate: float


class SmsStatsRead(BaseModel):
    total: int
    sent: int
    delivered: int
    failed: int
    delivery_rate: float
    failure_rate: float


class WebhookResult(BaseModel):
    processed: int
    ignored: int
