from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, EmailStr, Field, model_validator


LeadStatus = Literal["NEW", "CONTACTED", "QUALIFIED", "UNQUALIFIED", "CONVERTED"]
DealStatus = Literal["OPEN", "WON", "LOST"]
ActivityType = Literal["SYSTEM", "NOTE", "EMAIL", "SMS", "CALL", "MEETING", "TASK"]

HEX_COLOR_PATTERN = r"^#[0-9A-Fa-f]{6}$"


class ContactCreate(BaseModel):
    first_name: str = Field(min_length=1, max_length=200)
    last_name: str = Field(min_length=1, max_length=200)
    email: EmailStr | None = None
    phone: str | None = Field(default=None, max_length=32)
    company: str | None = None
    job_title: str | None = None
    lead_source: str | None = Field(default=None, max_length=64)
    lead_status: LeadStatus = "NEW"


class ContactUpdate(BaseModel):
    first_name: str | None = Field(default=None, min_length=1, max_length=200)
    last_name: str | None = Field(default=None, min_length=1, max_length=200)
    email: EmailStr | None = None
    phone: str | None = Field(default=None, max_length=32)
    company: str | None = None
    job_title: str | None = None
    lead_source: str | None = Field(default=None, max_length=64)
    lead_status: LeadStatus | None = None


class ContactRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    tenant_id: UUID
    first_name: str
    last_name: str
    email: str | None
    phone: str | None
    company: str | None
    job_title: str | None
    lead_source: str | None
    lead_status: str
    created_at: datetime
    updated_at: datetime


class ContactImportRequest(BaseModel):
    # Rows are validated one at a time so a bad row is reported instead of rejecting the batch.
    contacts: list[dict[str, Any]] = Field(min_length=1, max_length=5000)
    skip_duplicates: bool = True


class ContactImportResult(BaseModel):
    created: int
    skipped: int
    errors: list[str] = Field(default_factory=list)


class ContactBulkDeleteRequest(BaseModel):
    ids: list[UUID] = Field(min_length=1, max_length=500)


class ContactBulkDeleteResult(BaseModel):
    deleted: int
    skipped: list[UUID] = Field(default_factory=list)


class ContactSourceCount(BaseModel):
    source: str
    count: int


class ContactStatsRead(BaseModel):
    total: int
    by_status: dict[str, int]
    top_sources: list[ContactSourceCount]
    recently_added: int


class NoteCreate(BaseModel):
    content: str = Field(min_length=1)


class NoteRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    contact_id: UUID
    user_id: str
    content: str
    created_at: datetime


class PipelineStageInput(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    color: str = Field(default="#6B7280", pattern=HEX_COLOR_PATTERN)


class PipelineCreate(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    description: str | None = None
    stages: list[PipelineStageInput] = Field(min_length=1)


class PipelineUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=200)
    description: str | None = None


class PipelineStageCreate(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    color: str = Field(default="#6B7280", pattern=HEX_COLOR_PATTERN)
    position: int | None = Field(default=None, ge=0)


class PipelineStageUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=100)
    color: str | None = Field(default=None, pattern=HEX_COLOR_PATTERN)


class StageOrderItem(BaseModel):
    stage_id: UUID
    order: int = Field(ge=0)


class StageReorderRequest(BaseModel):
    stages: list[StageOrderItem] = Field(min_length=1)


class PipelineStageRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    pipeline_id: UUID
    name: str
    color: str
    order: int
    deal_count: int = 0
    created_at: datetime
    updated_at: datetime


class PipelineRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    tenant_id: UUID
    name: str
    description: str | None
    order: int
    created_at: datetime
    updated_at: datetime
    stages: list[PipelineStageRead] = Field(default_factory=list)


class DealCreate(BaseModel):
    contact_id: UUID
    pipeline_id: UUID
    stage_id: UUID
    title: str = Field(min_length=1, max_length=300)
    value: Decimal = Field(default=Decimal("0"), ge=0, max_digits=18, decimal_places=2)
    currency: str = Field(default="USD", min_length=3, max_length=16)
    probability: int | None = Field(default=None, ge=0, le=100)
    expected_close_date: date | None = None


class DealUpdate(BaseModel):
    row_version: int | None = Field(default=None, ge=1)
    title: str | None = Field(default=None, min_length=1, max_length=300)
    value: Decimal | None = Field(default=None, ge=0, max_digits=18, decimal_places=2)
    currency: str | None = Field(default=None, min_length=3, max_length=16)
    probability: int | None = Field(default=None, ge=0, le=100)
    status: DealStatus | None = None
    expected_close_date: date | None = None

    @model_validator(mode="after")
    def _reject_null_required(self) -> DealUpdate:
        for field_name in ("title", "value", "currency", "status"):
            if field_name in self.model_fields_set and getattr(self, field_name) is None:
                raise ValueError(f"{field_name} cannot be null")
        return self


class DealMoveStageRequest(BaseModel):
    stage_id: UUID


class DealRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    tenant_id: UUID
    contact_id: UUID
    pipeline_id: UUID
    stage_id: UUID
    title: str
    value: float
    currency: str
    probability: int | None
    status: DealStatus
    expected_close_date: date | None
    actual_close_date: datetime | None
    created_at: datetime
    updated_at: datetime
    row_version: int


class DealBoardColumn(BaseModel):
    stage: PipelineStageRead
    deals: list[DealRead]
    count: int
    total_value: float


class DealBoardRead(BaseModel):
    pipeline_id: UUID
    columns: list[DealBoardColumn]


class DealStatsRead(BaseModel):
    total_deals: int
    open_deals: int
    won_deals: int
    lost_deals: int
    total_value: float
    open_value: float
    won_value: float
    lost_value: float
    win_rate: float


class ActivityRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    tenant_id: UUID
    contact_id: UUID | None
    deal_id: UUID | None
    user_id: str | None
    activity_type: str
    title: str
    description: str | None
    metadata: dict[str, Any] | None = None
    created_at: datetime
