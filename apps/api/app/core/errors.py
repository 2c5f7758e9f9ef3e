from typing import Any

from fastapi import HTTPException, status


class DomainError(HTTPException):
    status_code_default = status.HTTP_400_BAD_REQUEST
    kind = "bad_request"

    def __init__(self, detail: Any) -> None:
        super().__init__(status_code=self.status_code_default, detail=detail)


class NotFoundError(DomainError):
    status_code_default = status.HTTP_404_NOT_FOUND
    kind = "not_found"


class ConflictError(DomainError):
    status_code_default = status.HTTP_409_CONFLICT
    kind = "conflict"


class PreconditionFailedError(DomainError):
    status_code_default = status.HTTP_412_PRECONDITION_FAILED
    kind = "precondition_failed"


class BadRequestError(DomainError):
    pass


class ProviderError(DomainError):
    """Outbound send failure reported by (or while talking to) a third-party provider."""

    status_code_default = status.HTTP_502_BAD_GATEWAY
    kind = "provider_error"

    def __init__(self, detail: Any, *, provider: str | None = None) -> None:
        super().__init__(detail)
        self.provider = provider
