from celery import Celery

from app.core.config import get_settings

settings = get_settings()

celery_app = Celery(
    "elevate_api",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["app.messaging.tasks"],
)
celery_app.conf.beat_schedule = {
    "messaging-process-email-queue": {
        "task": "messaging.process_email_queue",
        "schedule": settings.message_poll_interval_seconds,
    },
    "messaging-process-sms-queue": {
        "task": "messaging.process_sms_queue",
        "schedule": settings.message_poll_interval_seconds,
    },
}
