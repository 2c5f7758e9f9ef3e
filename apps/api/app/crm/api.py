from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from app.api.deps import error_response, get_current_user, require_permission
from app.core.actor import ActorUser
from app.core.database import get_db
from app.crm.schemas import (
    ActivityRead,
    ContactBulkDeleteRequest,
    ContactBulkDeleteResult,
    ContactCreate,
    ContactImportRequest,
    ContactImportResult,
    ContactRead,
    ContactStatsRead,
    ContactUpdate,
    DealBoardRead,
    DealCreate,
    DealMoveStageRequest,
    DealRead,
    DealStatsRead,
    DealStatus,
    DealUpdate,
    LeadStatus,
    NoteCreate,
    NoteRead,
    PipelineCreate,
    PipelineRead,
    PipelineStageCreate,
    PipelineStageRead,
    PipelineStageUpdate,
    PipelineUpdate,
    StageReorderRequest,
)
from app.crm.service import activity_service, contact_service, deal_service, pipeline_service

contacts_router = APIRouter(prefix="/api/crm", tags=["crm.contacts"])
pipelines_router = APIRouter(prefix="/api/crm", tags=["crm.pipelines"])
deals_router = APIRouter(prefix="/api/crm", tags=["crm.deals"])
activities_router = APIRouter(prefix="/api/crm", tags=["crm.activities"])


@contacts_router.post("/contacts", response_model=ContactRead, status_code=status.HTTP_201_CREATED)
def create_contact(
    request: Request,
    dto: ContactCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ContactRead | JSONResponse:
    try:
        require_permission(user, "crm.contacts.write")
        return contact_service.create_contact(db, user, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_contact_create_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@contacts_router.get("/contacts", response_model=list[ContactRead])
def list_contacts(
    request: Request,
    search: str | None = Query(default=None),
    lead_status: LeadStatus | None = Query(default=None),
    cursor: str | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=100),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[ContactRead] | JSONResponse:
    try:
        require_permission(user, "crm.contacts.read")
        return contact_service.list_contacts(
            db,
            user,
            search=search,
            lead_status=lead_status,
            cursor=cursor,
            limit=limit,
        )
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_contact_list_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@contacts_router.post("/contacts/import", response_model=ContactImportResult)
def import_contacts(
    request: Request,
    dto: ContactImportRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ContactImportResult | JSONResponse:
    try:
        require_permission(user, "crm.contacts.write")
        return contact_service.bulk_import(db, user, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_contact_import_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@contacts_router.post("/contacts/bulk-delete", response_model=ContactBulkDeleteResult)
def bulk_delete_contacts(
    request: Request,
    dto: ContactBulkDeleteRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ContactBulkDeleteResult | JSONResponse:
    try:
        require_permission(user, "crm.contacts.write")
        return contact_service.bulk_delete(db, user, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_contact_bulk_delete_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@contacts_router.get("/contacts/stats", response_model=ContactStatsRead)
def contact_stats(
    request: Request,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ContactStatsRead | JSONResponse:
    try:
        require_permission(user, "crm.contacts.read")
        return contact_service.stats(db, user)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_contact_stats_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@contacts_router.get("/contacts/{contact_id}", response_model=ContactRead)
def get_contact(
    request: Request,
    contact_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ContactRead | JSONResponse:
    try:
        require_permission(user, "crm.contacts.read")
        return contact_service.get_contact(db, user, contact_id)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_contact_get_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@contacts_router.patch("/contacts/{contact_id}", response_model=ContactRead)
def update_contact(
    request: Request,
    contact_id: uuid.UUID,
    dto: ContactUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ContactRead | JSONResponse:
    try:
        require_permission(user, "crm.contacts.write")
        return contact_service.update_contact(db, user, contact_id, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_contact_update_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@contacts_router.delete("/contacts/{contact_id}", response_model=None, status_code=status.HTTP_200_OK)
def delete_contact(
    request: Request,
    contact_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Any:
    try:
        require_permission(user, "crm.contacts.write")
        contact_service.delete_contact(db, user, contact_id)
        return {"status": "deleted"}
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_contact_delete_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@contacts_router.post("/contacts/{contact_id}/notes", response_model=NoteRead, status_code=status.HTTP_201_CREATED)
def add_contact_note(
    request: Request,
    contact_id: uuid.UUID,
    dto: NoteCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> NoteRead | JSONResponse:
    try:
        require_permission(user, "crm.contacts.write")
        return contact_service.add_note(db, user, contact_id, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_note_create_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@contacts_router.get("/contacts/{contact_id}/notes", response_model=list[NoteRead])
def list_contact_notes(
    request: Request,
    contact_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[NoteRead] | JSONResponse:
    try:
        require_permission(user, "crm.contacts.read")
        return contact_service.list_notes(db, user, contact_id)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_note_list_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@pipelines_router.post("/pipelines", response_model=PipelineRead, status_code=status.HTTP_201_CREATED)
def create_pipeline(
    request: Request,
    dto: PipelineCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> PipelineRead | JSONResponse:
    try:
        require_permission(user, "crm.pipelines.manage")
        return pipeline_service.create_pipeline(db, user, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_pipeline_create_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@pipelines_router.get("/pipelines", response_model=list[PipelineRead])
def list_pipelines(
    request: Request,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[PipelineRead] | JSONResponse:
    try:
        require_permission(user, "crm.pipelines.read")
        return pipeline_service.list_pipelines(db, user)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_pipeline_list_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@pipelines_router.get("/pipelines/{pipeline_id}", response_model=PipelineRead)
def get_pipeline(
    request: Request,
    pipeline_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> PipelineRead | JSONResponse:
    try:
        require_permission(user, "crm.pipelines.read")
        return pipeline_service.get_pipeline(db, user, pipeline_id)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_pipeline_get_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@pipelines_router.patch("/pipelines/{pipeline_id}", response_model=PipelineRead)
def update_pipeline(
    request: Request,
    pipeline_id: uuid.UUID,
    dto: PipelineUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> PipelineRead | JSONResponse:
    try:
        require_permission(user, "crm.pipelines.manage")
        return pipeline_service.update_pipeline(db, user, pipeline_id, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_pipeline_update_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@pipelines_router.delete("/pipelines/{pipeline_id}", response_model=None, status_code=status.HTTP_200_OK)
def delete_pipeline(
    request: Request,
    pipeline_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Any:
    try:
        require_permission(user, "crm.pipelines.manage")
        pipeline_service.delete_pipeline(db, user, pipeline_id)
        return {"status": "deleted"}
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_pipeline_delete_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@pipelines_router.post(
    "/pipelines/{pipeline_id}/stages",
    response_model=PipelineStageRead,
    status_code=status.HTTP_201_CREATED,
)
def add_pipeline_stage(
    request: Request,
    pipeline_id: uuid.UUID,
    dto: PipelineStageCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> PipelineStageRead | JSONResponse:
    try:
        require_permission(user, "crm.pipelines.manage")
        return pipeline_service.add_stage(db, user, pipeline_id, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_pipeline_stage_create_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@pipelines_router.post("/pipelines/{pipeline_id}/stages/reorder", response_model=PipelineRead)
def reorder_pipeline_stages(
    request: Request,
    pipeline_id: uuid.UUID,
    dto: StageReorderRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> PipelineRead | JSONResponse:
    try:
        require_permission(user, "crm.pipelines.manage")
        return pipeline_service.reorder_stages(db, user, pipeline_id, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_pipeline_stage_reorder_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@pipelines_router.patch("/stages/{stage_id}", response_model=PipelineStageRead)
def update_pipeline_stage(
    request: Request,
    stage_id: uuid.UUID,
    dto: PipelineStageUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> PipelineStageRead | JSONResponse:
    try:
        require_permission(user, "crm.pipelines.manage")
        return pipeline_service.update_stage(db, user, stage_id, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_pipeline_stage_update_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@pipelines_router.delete("/stages/{stage_id}", response_model=None, status_code=status.HTTP_200_OK)
def delete_pipeline_stage(
    request: Request,
    stage_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Any:
    try:
        require_permission(user, "crm.pipelines.manage")
        pipeline_service.delete_stage(db, user, stage_id)
        return {"status": "deleted"}
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_pipeline_stage_delete_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@deals_router.post("/deals", response_model=DealRead, status_code=status.HTTP_201_CREATED)
def create_deal(
    request: Request,
    dto: DealCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> DealRead | JSONResponse:
    try:
        require_permission(user, "crm.deals.write")
        return deal_service.create_deal(db, user, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_deal_create_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@deals_router.get("/deals", response_model=list[DealRead])
def list_deals(
    request: Request,
    pipeline_id: uuid.UUID | None = Query(default=None),
    stage_id: uuid.UUID | None = Query(default=None),
    contact_id: uuid.UUID | None = Query(default=None),
    deal_status: DealStatus | None = Query(default=None, alias="status"),
    search: str | None = Query(default=None),
    cursor: str | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[DealRead] | JSONResponse:
    try:
        require_permission(user, "crm.deals.read")
        return deal_service.list_deals(
            db,
            user,
            filters={
                "pipeline_id": pipeline_id,
                "stage_id": stage_id,
                "contact_id": contact_id,
                "status": deal_status,
                "search": search,
            },
            cursor=cursor,
            limit=limit,
        )
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_deal_list_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@deals_router.get("/deals/stats", response_model=DealStatsRead)
def deal_stats(
    request: Request,
    pipeline_id: uuid.UUID | None = Query(default=None),
    start: datetime | None = Query(default=None),
    end: datetime | None = Query(default=None),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> DealStatsRead | JSONResponse:
    try:
        require_permission(user, "crm.deals.read")
        return deal_service.stats(db, user, pipeline_id=pipeline_id, start=start, end=end)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_deal_stats_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@deals_router.get("/deals/board", response_model=DealBoardRead)
def deal_board(
    request: Request,
    pipeline_id: uuid.UUID = Query(),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> DealBoardRead | JSONResponse:
    try:
        require_permission(user, "crm.deals.read")
        return deal_service.board(db, user, pipeline_id)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_deal_board_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@deals_router.get("/deals/{deal_id}", response_model=DealRead)
def get_deal(
    request: Request,
    deal_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> DealRead | JSONResponse:
    try:
        require_permission(user, "crm.deals.read")
        return deal_service.get_deal(db, user, deal_id)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_deal_get_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@deals_router.patch("/deals/{deal_id}", response_model=DealRead)
def update_deal(
    request: Request,
    deal_id: uuid.UUID,
    dto: DealUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> DealRead | JSONResponse:
    try:
        require_permission(user, "crm.deals.write")
        return deal_service.update_deal(db, user, deal_id, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_deal_update_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@deals_router.post("/deals/{deal_id}/move-stage", response_model=DealRead)
def move_deal_stage(
    request: Request,
    deal_id: uuid.UUID,
    dto: DealMoveStageRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> DealRead | JSONResponse:
    try:
        require_permission(user, "crm.deals.write")
        return deal_service.move_stage(db, user, deal_id, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_deal_move_stage_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@deals_router.post("/deals/{deal_id}/reopen", response_model=DealRead)
def reopen_deal(
    request: Request,
    deal_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> DealRead | JSONResponse:
    try:
        require_permission(user, "crm.deals.reopen")
        return deal_service.reopen(db, user, deal_id)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_deal_reopen_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@deals_router.delete("/deals/{deal_id}", response_model=None, status_code=status.HTTP_200_OK)
def delete_deal(
    request: Request,
    deal_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Any:
    try:
        require_permission(user, "crm.deals.write")
        deal_service.delete_deal(db, user, deal_id)
        return {"status": "deleted"}
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_deal_delete_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@activities_router.get("/activities", response_model=list[ActivityRead])
def list_activities(
    request: Request,
    contact_id: uuid.UUID | None = Query(default=None),
    deal_id: uuid.UUID | None = Query(default=None),
    activity_type: str | None = Query(default=None),
    cursor: str | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[ActivityRead] | JSONResponse:
    try:
        if contact_id is not None:
            require_permission(user, "crm.contacts.read")
        else:
            require_permission(user, "crm.deals.read")
        return activity_service.list_activities(
            db,
            user,
            contact_id=contact_id,
            deal_id=deal_id,
            activity_type=activity_type,
            cursor=cursor,
            limit=limit,
        )
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_activity_list_failed",
            message=str(exc.detail),
            details=exc.detail,
        )
