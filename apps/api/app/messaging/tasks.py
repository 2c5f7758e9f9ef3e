from __future__ import annotations

import logging
import uuid
from typing import Any

from celery.signals import worker_process_init, worker_process_shutdown

from app.core.celery_app import celery_app
from app.core.config import get_settings
from app.core.database import SessionLocal
from app.core.errors import ProviderError
from app.logging import configure_logging
from app.messaging.dispatcher import MessageDispatcher
from app.messaging.providers import ProviderRegistry, build_default_registry


logger = logging.getLogger("app.messaging.tasks")

_registry: ProviderRegistry | None = None


@worker_process_init.connect
def _init_worker_registry(**_: Any) -> None:
    global _registry
    configure_logging()
    _registry = build_default_registry(get_settings())


@worker_process_shutdown.connect
def _close_worker_registry(**_: Any) -> None:
    global _registry
    if _registry is not None:
        _registry.close()
        _registry = None


def get_worker_registry() -> ProviderRegistry:
    # Built per child process by worker_process_init, so workers must run the prefork pool.
    if _registry is None:
        raise RuntimeError("provider registry is not initialised for this worker process")
    return _registry


@celery_app.task(name="messaging.dispatch_email")
def dispatch_email_task(email_id: str) -> str:
    session = SessionLocal()
    try:
        email = MessageDispatcher(get_worker_registry()).dispatch_email(session, uuid.UUID(email_id))
        return "SKIPPED" if email is None else email.status
    except ProviderError as exc:
        logger.warning("message.task.failed", extra={"channel": "email", "message_id": email_id, "error": str(exc.detail)})
        return "FAILED"
    finally:
        session.close()


@celery_app.task(name="messaging.dispatch_sms")
def dispatch_sms_task(sms_id: str) -> str:
    session = SessionLocal()
    try:
        sms = MessageDispatcher(get_worker_registry()).dispatch_sms(session, uuid.UUID(sms_id))
        return "SKIPPED" if sms is None else sms.status
    except ProviderError as exc:
        logger.warning("message.task.failed", extra={"channel": "sms", "message_id": sms_id, "error": str(exc.detail)})
        return "FAILED"
    finally:
        session.close()


@celery_app.task(name="messaging.process_email_queue")
def process_email_queue_task() -> dict[str, int]:
    session = SessionLocal()
    try:
        return MessageDispatcher(get_worker_registry()).process_email_queue(session)
    finally:
        session.close()


@celery_app.task(name="messaging.process_sms_queue")
def process_sms_queue_task() -> dict[str, int]:
    session = SessionLocal()
    try:
        return MessageDispatcher(get_worker_registry()).process_sms_queue(session)
    finally:
        session.close()
