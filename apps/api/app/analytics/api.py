from __future__ import annotations

import uuid
from datetime import datetime
from typing import Literal

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from app.analytics.schemas import (
    GrowthPoint,
    LeadSourceRow,
    OverviewRead,
    PipelinePerformanceRead,
    RevenuePoint,
    TimelineEntry,
)
from app.analytics.service import analytics_service
from app.api.deps import error_response, get_current_user, require_permission
from app.core.actor import ActorUser
from app.core.database import get_db


router = APIRouter(prefix="/api/analytics", tags=["analytics"])

Interval = Literal["day", "week", "month"]


@router.get("/overview", response_model=OverviewRead)
def overview(
    request: Request,
    start: datetime | None = Query(default=None),
    end: datetime | None = Query(default=None),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> OverviewRead | JSONResponse:
    try:
        require_permission(user, "analytics.read")
        return analytics_service.overview(db, user, start=start, end=end)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="analytics_overview_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@router.get("/pipeline-performance", response_model=PipelinePerformanceRead)
def pipeline_performance(
    request: Request,
    pipeline_id: uuid.UUID | None = Query(default=None),
    start: datetime | None = Query(default=None),
    end: datetime | None = Query(default=None),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> PipelinePerformanceRead | JSONResponse:
    try:
        require_permission(user, "analytics.read")
        return analytics_service.pipeline_performance(db, user, pipeline_id=pipeline_id, start=start, end=end)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="analytics_pipeline_performance_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@router.get("/lead-sources", response_model=list[LeadSourceRow])
def lead_sources(
    request: Request,
    start: datetime | None = Query(default=None),
    end: datetime | None = Query(default=None),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[LeadSourceRow] | JSONResponse:
    try:
        require_permission(user, "analytics.read")
        return analytics_service.lead_sources(db, user, start=start, end=end)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="analytics_lead_sources_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@router.get("/contact-growth", response_model=list[GrowthPoint])
def contact_growth(
    request: Request,
    start: datetime = Query(),
    end: datetime = Query(),
    interval: Interval = Query(default="day"),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[GrowthPoint] | JSONResponse:
    try:
        require_permission(user, "analytics.read")
        return analytics_service.contact_growth(db, user, start=start, end=end, interval=interval)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="analytics_contact_growth_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@router.get("/revenue", response_model=list[RevenuePoint])
def revenue(
    request: Request,
    start: datetime = Query(),
    end: datetime = Query(),
    interval: Interval = Query(default="month"),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[RevenuePoint] | JSONResponse:
    try:
        require_permission(user, "analytics.read")
        return analytics_service.revenue(db, user, start=start, end=end, interval=interval)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="analytics_revenue_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@router.get("/activity-timeline", response_model=list[TimelineEntry])
def activity_timeline(
    request: Request,
    start: datetime = Query(),
    end: datetime = Query(),
    limit: int = Query(default=50, ge=1, le=100),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[TimelineEntry] | JSONResponse:
    try:
        require_permission(user, "analytics.read")
        return analytics_service.activity_timeline(db, user, start=start, end=end, limit=limit)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="analytics_activity_timeline_failed",
            message=str(exc.detail),
            details=exc.detail,
        )
