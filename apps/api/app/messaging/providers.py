from __future__ import annotations

import logging
import smtplib
from collections.abc import Callable
from dataclasses import dataclass, field
from email.message import EmailMessage
from email.utils import make_msgid
from typing import Protocol

import httpx

from app.core.config import Settings
from app.core.errors import ProviderError
from app.messaging.models import EmailAccount, SmsAccount


logger = logging.getLogger("app.messaging.providers")

_ERROR_BODY_LIMIT = 500


@dataclass(frozen=True)
class OutboundEmail:
    message_id: str
    tenant_id: str
    from_address: str
    to: list[str]
    subject: str
    text: str
    html: str
    cc: list[str] = field(default_factory=list)
    bcc: list[str] = field(default_factory=list)
    tracking_id: str | None = None


@dataclass(frozen=True)
class OutboundSms:
    message_id: str
    to_number: str
    from_number: str
    body: str
    status_callback_url: str | None = None


@dataclass(frozen=True)
class ProviderResult:
    provider: str
    provider_message_id: str | None


class EmailSender(Protocol):
    name: str

    def send_email(self, message: OutboundEmail) -> ProviderResult: ...


class SmsSender(Protocol):
    name: str

    def send_sms(self, message: OutboundSms) -> ProviderResult: ...


def _raise_for_response(provider: str, response: httpx.Response) -> None:
    if response.is_success:
        return
    raise ProviderError(
        f"{provider} rejected message with status {response.status_code}: {response.text[:_ERROR_BODY_LIMIT]}",
        provider=provider,
    )


class SendGridEmailProvider:
    name = "SENDGRID"

    def __init__(self, client: httpx.Client, *, api_key: str, base_url: str) -> None:
        self._client = client
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")

    def send_email(self, message: OutboundEmail) -> ProviderResult:
        personalization: dict[str, object] = {"to": [{"email": address} for address in message.to]}
        if message.cc:
            personalization["cc"] = [{"email": address} for address in message.cc]
        if message.bcc:
            personalization["bcc"] = [{"email": address} for address in message.bcc]

        payload = {
            "personalizations": [personalization],
            "from": {"email": message.from_address},
            "subject": message.subject,
            "content": [
                {"type": "text/plain", "value": message.text},
                {"type": "text/html", "value": message.html},
            ],
            "custom_args": {
                "email_id": message.message_id,
                "tenant_id": message.tenant_id,
                "tracking_id": message.tracking_id or "",
            },
        }
        try:
            response = self._client.post(
                f"{self._base_url}/v3/mail/send",
                json=payload,
                headers={"Authorization": f"Bearer {self._api_key}"},
            )
        except httpx.HTTPError as exc:
            raise ProviderError(f"SENDGRID request failed: {exc}", provider=self.name) from exc
        _raise_for_response(self.name, response)
        return ProviderResult(provider=self.name, provider_message_id=response.headers.get("X-Message-Id"))


class SmtpEmailProvider:
    name = "SMTP"
    smtp_class: Callable[..., smtplib.SMTP] = smtplib.SMTP
    smtp_ssl_class: Callable[..., smtplib.SMTP] = smtplib.SMTP_SSL

    def __init__(
        self,
        *,
        host: str,
        port: int,
        username: str | None,
        password: str | None,
        timeout: float,
    ) -> None:
        self._host = host
        self._port = port
        self._username = username
        self._password = password
        self._timeout = timeout

    def _build_message(self, message: OutboundEmail) -> EmailMessage:
        mime = EmailMessage()
        mime["From"] = message.from_address
        mime["To"] = ", ".join(message.to)
        if message.cc:
            mime["Cc"] = ", ".join(message.cc)
        mime["Subject"] = message.subject
        mime["Message-ID"] = make_msgid(domain=message.from_address.rsplit("@", 1)[-1])
        mime.set_content(message.text)
        mime.add_alternative(message.html, subtype="html")
        return mime

    def send_email(self, message: OutboundEmail) -> ProviderResult:
        mime = self._build_message(message)
        recipients = [*message.to, *message.cc, *message.bcc]
        try:
            if self._port == 465:
                connection = self.smtp_ssl_class(self._host, self._port, timeout=self._timeout)
            else:
                connection = self.smtp_class(self._host, self._port, timeout=self._timeout)
            with connection as smtp:
                if self._port != 465:
                    smtp.starttls()
                if self._username:
                    smtp.login(self._username, self._password or "")
                smtp.send_message(mime, to_addrs=recipients)
        except (smtplib.SMTPException, OSError) as exc:
            raise ProviderError(f"SMTP delivery failed: {exc}", provider=self.name) from exc
        return ProviderResult(provider=self.name, provider_message_id=mime["Message-ID"])


class TwilioSmsProvider:
    name = "TWILIO"

    def __init__(self, client: httpx.Client, *, account_sid: str, auth_token: str, base_url: str) -> None:
        self._client = client
        self._account_sid = account_sid
        self._auth_token = auth_token
        self._base_url = base_url.rstrip("/")

    def send_sms(self, message: OutboundSms) -> ProviderResult:
        form = {"To": message.to_number, "From": message.from_number, "Body": message.body}
        if message.status_callback_url:
            form["StatusCallback"] = message.status_callback_url
        try:
            response = self._client.post(
                f"{self._base_url}/2010-04-01/Accounts/{self._account_sid}/Messages.json",
                data=form,
                auth=(self._account_sid, self._auth_token),
            )
        except httpx.HTTPError as exc:
            raise ProviderError(f"TWILIO request failed: {exc}", provider=self.name) from exc
        _raise_for_response(self.name, response)
        return ProviderResult(provider=self.name, provider_message_id=response.json().get("sid"))


EmailProviderFactory = Callable[[EmailAccount], EmailSender]
SmsProviderFactory = Callable[[SmsAccount], SmsSender]


class ProviderRegistry:
    """Process-wide provider lookup.

    Owns one pooled ``httpx.Client`` shared by every HTTP provider. Created at API startup
    and at Celery worker init; ``close()`` releases the pool.
    """

    def __init__(self, settings: Settings, *, transport: httpx.BaseTransport | None = None) -> None:
        self.settings = settings
        self.http_client = httpx.Client(timeout=settings.provider_http_timeout_seconds, transport=transport)
        self._email_factories: dict[str, EmailProviderFactory] = {}
        self._sms_factories: dict[str, SmsProviderFactory] = {}
        self._closed = False

    def register_email(self, provider: str, factory: EmailProviderFactory) -> None:
        self._email_factories[provider] = factory

    def register_sms(self, provider: str, factory: SmsProviderFactory) -> None:
        self._sms_factories[provider] = factory

    def email_provider(self, account: EmailAccount) -> EmailSender:
        factory = self._email_factories.get(account.provider)
        if factory is None:
            raise ProviderError(f"unsupported provider: {account.provider}", provider=account.provider)
        return factory(account)

    def sms_provider(self, account: SmsAccount) -> SmsSender:
        factory = self._sms_factories.get(account.provider)
        if factory is None:
            raise ProviderError(f"unsupported provider: {account.provider}", provider=account.provider)
        return factory(account)

    def close(self) -> None:
        if self._closed:
            return
        self.http_client.close()
        self._closed = True
        logger.info("provider_registry_closed")


def _sendgrid_factory(registry: ProviderRegistry) -> EmailProviderFactory:
    def factory(account: EmailAccount) -> EmailSender:
        if not account.api_key:
            raise ProviderError("No API key configured for SENDGRID", provider="SENDGRID")
        return SendGridEmailProvider(
            registry.http_client,
            api_key=account.api_key,
            base_url=registry.settings.sendgrid_api_base_url,
        )

    return factory


def _smtp_factory(registry: ProviderRegistry) -> EmailProviderFactory:
    def factory(account: EmailAccount) -> EmailSender:
        if not account.smtp_host or not account.smtp_port:
            raise ProviderError("SMTP host and port are required", provider="SMTP")
        return SmtpEmailProvider(
            host=account.smtp_host,
            port=account.smtp_port,
            username=account.smtp_user,
            password=account.smtp_password,
            timeout=registry.settings.provider_http_timeout_seconds,
        )

    return factory


def _twilio_factory(registry: ProviderRegistry) -> SmsProviderFactory:
    def factory(account: SmsAccount) -> SmsSender:
        return TwilioSmsProvider(
            registry.http_client,
            account_sid=account.account_sid,
            auth_token=account.auth_token,
            base_url=registry.settings.twilio_api_base_url,
        )

    return factory


def build_default_registry(settings: Settings, *, transport: httpx.BaseTransport | None = None) -> ProviderRegistry:
    registry = ProviderRegistry(settings, transport=transport)
    registry.register_email("SENDGRID", _sendgrid_factory(registry))
    registry.register_email("SMTP", _smtp_factory(registry))
    registry.register_sms("TWILIO", _twilio_factory(registry))
    return registry
