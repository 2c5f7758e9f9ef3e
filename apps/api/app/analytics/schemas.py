from __future__ import annotations

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel

from app.crm.schemas import ActivityRead


class ContactTotals(BaseModel):
    total: int
    new: int


class DealTotals(BaseModel):
    total: int
    open: int
    won: int
    total_value: float
    won_value: float


class CommunicationTotals(BaseModel):
    emails_sent: int
    sms_sent: int


class OverviewRead(BaseModel):
    start: datetime
    end: datetime
    contacts: ContactTotals
    deals: DealTotals
    communication: CommunicationTotals


class StageSummary(BaseModel):
    id: UUID
    name: str
    color: str


class StagePerformanceRow(BaseModel):
    stage: StageSummary | None
    count: int
    value: float


class StatusPerformanceRow(BaseModel):
    status: str
    count: int
    value: float


class PipelinePerformanceRead(BaseModel):
    by_stage: list[StagePerformanceRow]
    by_status: list[StatusPerformanceRow]


class LeadSourceRow(BaseModel):
    source: str
    count: int


class GrowthPoint(BaseModel):
    date: str
    count: int


class RevenuePoint(BaseModel):
    date: str
    revenue: float


class TimelineEntry(ActivityRead):
    contact_name: str | None = None
    deal_title: str | None = None
