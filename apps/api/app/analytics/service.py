from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any

from sqlalchemy import and_, func, select
from sqlalchemy.orm import Session

from app.analytics.schemas import (
    CommunicationTotals,
    ContactTotals,
    DealTotals,
    GrowthPoint,
    LeadSourceRow,
    OverviewRead,
    PipelinePerformanceRead,
    RevenuePoint,
    StagePerformanceRow,
    StageSummary,
    StatusPerformanceRow,
    TimelineEntry,
)
from app.core.actor import ActorUser, tenant_scope
from app.core.errors import BadRequestError
from app.crm.models import CRMActivity, CRMContact, CRMDeal, CRMPipelineStage, utcnow
from app.crm.service import activity_service
from app.messaging.models import Email, SmsMessage

LEAD_SOURCE_LIMIT = 10


def _money(value: Any) -> float:
    return float(Decimal(str(value or 0)))


def _aware(value: datetime | None) -> datetime | None:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _bucket(value: datetime, interval: str) -> str:
    """Bucket key in UTC: the day, the Sunday starting its week, or the month."""
    day = _aware(value).astimezone(timezone.utc).date()
    if interval == "week":
        return (day - timedelta(days=(day.weekday() + 1) % 7)).isoformat()
    if interval == "month":
        return f"{day.year:04d}-{day.month:02d}"
    return day.isoformat()


def _range(start: datetime, end: datetime) -> tuple[datetime, datetime]:
    period_start, period_end = _aware(start), _aware(end)
    if period_start > period_end:
        raise BadRequestError("start must not be after end")
    return period_start, period_end


@dataclass(slots=True)
class AnalyticsService:
    def overview(
        self,
        session: Session,
        actor_user: ActorUser,
        *,
        start: datetime | None,
        end: datetime | None,
    ) -> OverviewRead:
        tenant_id = tenant_scope(actor_user)
        now = utcnow()
        period_end = _aware(end) or now
        period_start = _aware(start) or now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
        if period_start > period_end:
            raise BadRequestError("start must not be after end")

        total_contacts = session.scalar(select(func.count(CRMContact.id)).where(CRMContact.tenant_id == tenant_id))
        new_contacts = session.scalar(
            select(func.count(CRMContact.id)).where(
                CRMContact.tenant_id == tenant_id,
                CRMContact.created_at >= period_start,
                CRMContact.created_at <= period_end,
            )
        )

        total_deals = session.scalar(select(func.count(CRMDeal.id)).where(CRMDeal.tenant_id == tenant_id))
        open_count, open_value = session.execute(
            select(func.count(CRMDeal.id), func.coalesce(func.sum(CRMDeal.value), 0)).where(
                CRMDeal.tenant_id == tenant_id,
                CRMDeal.status == "OPEN",
            )
        ).one()
        won_count, won_value = session.execute(
            select(func.count(CRMDeal.id), func.coalesce(func.sum(CRMDeal.value), 0)).where(
                CRMDeal.tenant_id == tenant_id,
                CRMDeal.status == "WON",
                CRMDeal.actual_close_date >= period_start,
                CRMDeal.actual_close_date <= period_end,
            )
        ).one()

        emails_sent = session.scalar(
            select(func.count(Email.id)).where(
                Email.tenant_id == tenant_id,
                Email.sent_at >= period_start,
                Email.sent_at <= period_end,
            )
        )
        sms_sent = session.scalar(
            select(func.count(SmsMessage.id)).where(
                SmsMessage.tenant_id == tenant_id,
                SmsMessage.sent_at >= period_start,
                SmsMessage.sent_at <= period_end,
            )
        )

        return OverviewRead(
            start=period_start,
            end=period_end,
            contacts=ContactTotals(total=total_contacts or 0, new=new_contacts or 0),
            deals=DealTotals(
                total=total_deals or 0,
                open=int(open_count),
                won=int(won_count),
                total_value=_money(open_value),
                won_value=_money(won_value),
            ),
            communication=CommunicationTotals(emails_sent=emails_sent or 0, sms_sent=sms_sent or 0),
        )

    def pipeline_performance(
        self,
        session: Session,
        actor_user: ActorUser,
        *,
        pipeline_id: uuid.UUID | None,
        start: datetime | None,
        end: datetime | None,
    ) -> PipelinePerformanceRead:
        conditions: list[Any] = [CRMDeal.tenant_id == tenant_scope(actor_user)]
        if pipeline_id is not None:
            conditions.append(CRMDeal.pipeline_id == pipeline_id)
        if start is not None:
            conditions.append(CRMDeal.created_at >= start)
        if end is not None:
            conditions.append(CRMDeal.created_at <= end)

        stage_rows = session.execute(
            select(CRMDeal.stage_id, func.count(CRMDeal.id), func.coalesce(func.sum(CRMDeal.value), 0))
            .where(and_(*conditions, CRMDeal.status == "OPEN"))
            .group_by(CRMDeal.stage_id)
        ).all()
        stage_ids = [row[0] for row in stage_rows]
        stages: dict[uuid.UUID, CRMPipelineStage] = {}
        if stage_ids:
            rows = session.scalars(select(CRMPipelineStage).where(CRMPipelineStage.id.in_(stage_ids))).all()
            stages = {stage.id: stage for stage in rows}

        by_stage: list[StagePerformanceRow] = []
        for stage_id, count, value in sorted(
            stage_rows,
            key=lambda row: stages[row[0]].order if row[0] in stages else 0,
        ):
            stage = stages.get(stage_id)
            by_stage.append(
                StagePerformanceRow(
                    stage=StageSummary(id=stage.id, name=stage.name, color=stage.color) if stage else None,
                    count=int(count),
                    value=_money(value),
                )
            )

        status_rows = session.execute(
            select(CRMDeal.status, func.count(CRMDeal.id), func.coalesce(func.sum(CRMDeal.value), 0))
            .where(and_(*conditions))
            .group_by(CRMDeal.status)
            .order_by(CRMDeal.status.asc())
        ).all()
        by_status = [
            StatusPerformanceRow(status=status_value, count=int(count), value=_money(value))
            for status_value, count, value in status_rows
        ]
        return PipelinePerformanceRead(by_stage=by_stage, by_status=by_status)

    def lead_sources(
        self,
        session: Session,
        actor_user: ActorUser,
        *,
        start: datetime | None,
        end: datetime | None,
    ) -> list[LeadSourceRow]:
        conditions: list[Any] = [
            CRMContact.tenant_id == tenant_scope(actor_user),
            CRMContact.lead_source.is_not(None),
        ]
        if start is not None:
            conditions.append(CRMContact.created_at >= start)
        if end is not None:
            conditions.append(CRMContact.created_at <= end)

        count_column = func.count(CRMContact.id)
        rows = session.execute(
            select(CRMContact.lead_source, count_column)
            .where(and_(*conditions))
            .group_by(CRMContact.lead_source)
            .order_by(count_column.desc(), CRMContact.lead_source.asc())
            .limit(LEAD_SOURCE_LIMIT)
        ).all()
        return [LeadSourceRow(source=source or "Unknown", count=int(count)) for source, count in rows]

    def contact_growth(
        self,
        session: Session,
        actor_user: ActorUser,
        *,
        start: datetime,
        end: datetime,
        interval: str,
    ) -> list[GrowthPoint]:
        tenant_id = tenant_scope(actor_user)
        period_start, period_end = _range(start, end)
        created = session.scalars(
            select(CRMContact.created_at)
            .where(
                CRMContact.tenant_id == tenant_id,
                CRMContact.created_at >= period_start,
                CRMContact.created_at <= period_end,
            )
            .order_by(CRMContact.created_at.asc())
        ).all()

        counts: dict[str, int] = {}
        for created_at in created:
            key = _bucket(created_at, interval)
            counts[key] = counts.get(key, 0) + 1
        return [GrowthPoint(date=key, count=count) for key, count in counts.items()]

    def revenue(
        self,
        session: Session,
        actor_user: ActorUser,
        *,
        start: datetime,
        end: datetime,
        interval: str,
    ) -> list[RevenuePoint]:
        tenant_id = tenant_scope(actor_user)
        period_start, period_end = _range(start, end)
        rows = session.execute(
            select(CRMDeal.actual_close_date, CRMDeal.value)
            .where(
                CRMDeal.tenant_id == tenant_id,
                CRMDeal.status == "WON",
                CRMDeal.actual_close_date >= period_start,
                CRMDeal.actual_close_date <= period_end,
            )
            .order_by(CRMDeal.actual_close_date.asc())
        ).all()

        totals: dict[str, Decimal] = {}
        for closed_at, value in rows:
            key = _bucket(closed_at, interval)
            totals[key] = totals.get(key, Decimal("0")) + Decimal(str(value or 0))
        return [RevenuePoint(date=key, revenue=_money(total)) for key, total in totals.items()]

    def activity_timeline(
        self,
        session: Session,
        actor_user: ActorUser,
        *,
        start: datetime,
        end: datetime,
        limit: int,
    ) -> list[TimelineEntry]:
        tenant_id = tenant_scope(actor_user)
        period_start, period_end = _range(start, end)
        # Activities keep plain ids, so the contact or deal may be gone.
        rows = session.execute(
            select(CRMActivity, CRMContact.first_name, CRMContact.last_name, CRMDeal.title)
            .outerjoin(
                CRMContact,
                and_(CRMContact.id == CRMActivity.contact_id, CRMContact.tenant_id == tenant_id),
            )
            .outerjoin(CRMDeal, and_(CRMDeal.id == CRMActivity.deal_id, CRMDeal.tenant_id == tenant_id))
            .where(
                CRMActivity.tenant_id == tenant_id,
                CRMActivity.created_at >= period_start,
                CRMActivity.created_at <= period_end,
            )
            .order_by(CRMActivity.created_at.desc(), CRMActivity.id.desc())
            .limit(limit)
        ).all()
        return [
            TimelineEntry(
                **activity_service.to_read(activity).model_dump(),
                contact_name=f"{first_name} {last_name}" if first_name is not None else None,
                deal_title=deal_title,
            )
            for activity, first_name, last_name, deal_title in rows
        ]


analytics_service = AnalyticsService()
