from __future__ import annotations

from typing import Literal

EmailStatus = Literal["QUEUED", "SENDING", "SENT", "DELIVERED", "OPENED", "CLICKED", "BOUNCED", "FAILED"]
SmsStatus = Literal["QUEUED", "SENDING", "SENT", "DELIVERED", "FAILED"]
EmailProvider = Literal["SENDGRID", "SMTP", "MAILGUN", "SES", "POSTMARK"]
SmsProvider = Literal["TWILIO", "TELNYX", "PLIVO"]
Channel = Literal["email", "sms"]

QUEUED = "QUEUED"
SENDING = "SENDING"
SENT = "SENT"
DELIVERED = "DELIVERED"
OPENED = "OPENED"
CLICKED = "CLICKED"
BOUNCED = "BOUNCED"
FAILED = "FAILED"

E164_PATTERN = r"^\+\d{10,15}$"
SMS_MAX_LENGTH = 1600

_EMAIL_PROGRESS = {QUEUED: 0, SENDING: 1, SENT: 2, DELIVERED: 3, OPENED: 4, CLICKED: 5}


def upgraded_email_status(current: str, target: str) -> str:
    """Return ``target`` only when it moves the email forward; terminal failures stay put."""
    if current not in _EMAIL_PROGRESS or target not in _EMAIL_PROGRESS:
        return current
    return target if _EMAIL_PROGRESS[target] > _EMAIL_PROGRESS[current] else current
