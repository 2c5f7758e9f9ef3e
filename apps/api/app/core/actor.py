from __future__ import annotations

import uuid
from dataclasses import dataclass, field

from app.core.errors import BadRequestError


@dataclass
class ActorUser:
    user_id: str
    tenant_id: uuid.UUID | None
    permissions: set[str] = field(default_factory=set)
    correlation_id: str | None = None


def tenant_scope(actor_user: ActorUser) -> uuid.UUID:
    if actor_user.tenant_id is None:
        raise BadRequestError("tenant context required")
    return actor_user.tenant_id
