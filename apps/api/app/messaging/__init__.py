from app.messaging.api import router, tracking_router, webhooks_router
from app.messaging.dispatcher import MessageDispatcher
from app.messaging.models import Email, EmailAccount, SmsAccount, SmsMessage
from app.messaging.providers import ProviderRegistry, build_default_registry
from app.messaging.service import MessagingService, messaging_service

__all__ = [
    "router",
    "tracking_router",
    "webhooks_router",
    "MessageDispatcher",
    "Email",
    "EmailAccount",
    "SmsAccount",
    "SmsMessage",
    "ProviderRegistry",
    "build_default_registry",
    "MessagingService",
    "messaging_service",
]
