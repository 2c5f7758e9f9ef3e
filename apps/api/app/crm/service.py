from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any

from pydantic import ValidationError
from sqlalchemy import Select, and_, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload

from app import events
from app.core.actor import ActorUser, tenant_scope
from app.core.errors import BadRequestError, ConflictError, NotFoundError, PreconditionFailedError
from app.crm.models import (
    CRMActivity,
    CRMContact,
    CRMDeal,
    CRMNote,
    CRMPipeline,
    CRMPipelineStage,
    utcnow,
)
from app.crm.schemas import (
    ActivityRead,
    ContactBulkDeleteRequest,
    ContactBulkDeleteResult,
    ContactCreate,
    ContactImportRequest,
    ContactImportResult,
    ContactRead,
    ContactSourceCount,
    ContactStatsRead,
    ContactUpdate,
    DealBoardColumn,
    DealBoardRead,
    DealCreate,
    DealMoveStageRequest,
    DealRead,
    DealStatsRead,
    DealUpdate,
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
from app.metrics import observe_deal_transition


logger = logging.getLogger("app.crm")

CLOSED_DEAL_STATUSES = {"WON", "LOST"}
TOP_SOURCE_LIMIT = 10
RECENT_CONTACT_DAYS = 7


def _normalize_email(value: str | None) -> str | None:
    if value is None:
        return None
    normalized = value.strip().lower()
    return normalized or None


def _offset(cursor: str | None) -> int:
    return int(cursor) if cursor and cursor.isdigit() else 0


def _publish(event_type: str, actor_user: ActorUser, tenant_id: uuid.UUID, payload: dict[str, Any]) -> None:
    envelope = events.build_envelope(
        event_type,
        tenant_id=tenant_id,
        actor_user_id=actor_user.user_id,
        payload=payload,
    )
    envelope["correlation_id"] = actor_user.correlation_id
    events.publish(envelope)


class ActivityService:
    """Append-only activity trail. Rows are written inside the caller's transaction."""

    def record(
        self,
        session: Session,
        actor_user: ActorUser,
        *,
        activity_type: str,
        title: str,
        description: str | None = None,
        contact_id: uuid.UUID | None = None,
        deal_id: uuid.UUID | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> CRMActivity:
        activity = CRMActivity(
            tenant_id=tenant_scope(actor_user),
            contact_id=contact_id,
            deal_id=deal_id,
            user_id=actor_user.user_id,
            activity_type=activity_type,
            title=title,
            description=description,
            activity_metadata=metadata,
        )
        session.add(activity)
        return activity

    def list_activities(
        self,
        session: Session,
        actor_user: ActorUser,
        *,
        contact_id: uuid.UUID | None,
        deal_id: uuid.UUID | None,
        activity_type: str | None,
        cursor: str | None,
        limit: int,
    ) -> list[ActivityRead]:
        stmt = select(CRMActivity).where(CRMActivity.tenant_id == tenant_scope(actor_user))
        if contact_id is not None:
            stmt = stmt.where(CRMActivity.contact_id == contact_id)
        if deal_id is not None:
            stmt = stmt.where(CRMActivity.deal_id == deal_id)
        if activity_type:
            stmt = stmt.where(CRMActivity.activity_type == activity_type)
        rows = session.scalars(
            stmt.order_by(CRMActivity.created_at.desc(), CRMActivity.id.desc()).offset(_offset(cursor)).limit(limit)
        ).all()
        return [self.to_read(row) for row in rows]

    def to_read(self, activity: CRMActivity) -> ActivityRead:
        return ActivityRead.model_validate(
            {
                "id": activity.id,
                "tenant_id": activity.tenant_id,
                "contact_id": activity.contact_id,
                "deal_id": activity.deal_id,
                "user_id": activity.user_id,
                "activity_type": activity.activity_type,
                "title": activity.title,
                "description": activity.description,
                "metadata": activity.activity_metadata,
                "created_at": activity.created_at,
            }
        )


activity_service = ActivityService()


class ContactService:
    entity_type = "crm.contact"

    def create_contact(self, session: Session, actor_user: ActorUser, dto: ContactCreate) -> ContactRead:
        tenant_id = tenant_scope(actor_user)
        email = _normalize_email(dto.email)
        if email and self._email_taken(session, tenant_id, email):
            raise ConflictError("contact with this email already exists")

        contact = self._build_contact(tenant_id, dto, email)
        session.add(contact)
        try:
            session.flush()
        except IntegrityError:
            session.rollback()
            raise ConflictError("contact with this email already exists")

        activity_service.record(
            session,
            actor_user,
            activity_type="SYSTEM",
            title="Contact created",
            description=f"{contact.first_name} {contact.last_name} was added",
            contact_id=contact.id,
        )
        session.commit()
        return self._to_read(contact)

    def list_contacts(
        self,
        session: Session,
        actor_user: ActorUser,
        *,
        search: str | None,
        lead_status: str | None,
        cursor: str | None,
        limit: int,
    ) -> list[ContactRead]:
        stmt: Select[tuple[CRMContact]] = select(CRMContact).where(CRMContact.tenant_id == tenant_scope(actor_user))
        if search:
            pattern = f"%{search.strip().lower()}%"
            stmt = stmt.where(
                or_(
                    func.lower(CRMContact.first_name).like(pattern),
                    func.lower(CRMContact.last_name).like(pattern),
                    func.lower(CRMContact.email).like(pattern),
                    func.lower(CRMContact.company).like(pattern),
                )
            )
        if lead_status:
            stmt = stmt.where(CRMContact.lead_status == lead_status)
        rows = session.scalars(
            stmt.order_by(CRMContact.created_at.desc(), CRMContact.id.desc()).offset(_offset(cursor)).limit(limit)
        ).all()
        return [self._to_read(row) for row in rows]

    def get_contact(self, session: Session, actor_user: ActorUser, contact_id: uuid.UUID) -> ContactRead:
        return self._to_read(self.get_owned(session, tenant_scope(actor_user), contact_id))

    def update_contact(
        self,
        session: Session,
        actor_user: ActorUser,
        contact_id: uuid.UUID,
        dto: ContactUpdate,
    ) -> ContactRead:
        tenant_id = tenant_scope(actor_user)
        contact = self.get_owned(session, tenant_id, contact_id)
        payload = dto.model_dump(exclude_unset=True)
        for required in ("first_name", "last_name", "lead_status"):
            if required in payload and payload[required] is None:
                raise BadRequestError(f"{required} cannot be null")
        if not payload:
            return self._to_read(contact)

        if "email" in payload:
            payload["email"] = _normalize_email(payload["email"])
            if payload["email"] and payload["email"] != contact.email:
                if self._email_taken(session, tenant_id, payload["email"], exclude_id=contact.id):
                    raise ConflictError("contact with this email already exists")

        for key, value in payload.items():
            setattr(contact, key, value.strip() if isinstance(value, str) and key != "email" else value)
        try:
            session.flush()
        except IntegrityError:
            session.rollback()
            raise ConflictError("contact with this email already exists")

        activity_service.record(
            session,
            actor_user,
            activity_type="SYSTEM",
            title="Contact updated",
            description=f"{contact.first_name} {contact.last_name} was updated",
            contact_id=contact.id,
            metadata={"changes": sorted(payload.keys())},
        )
        session.commit()
        return self._to_read(contact)

    def delete_contact(self, session: Session, actor_user: ActorUser, contact_id: uuid.UUID) -> None:
        tenant_id = tenant_scope(actor_user)
        contact = self.get_owned(session, tenant_id, contact_id)
        deal_count = session.scalar(select(func.count()).select_from(CRMDeal).where(CRMDeal.contact_id == contact.id)) or 0
        if deal_count > 0:
            raise PreconditionFailedError(f"cannot delete contact with {deal_count} deal(s)")

        activity_service.record(
            session,
            actor_user,
            activity_type="SYSTEM",
            title="Contact deleted",
            description=f"{contact.first_name} {contact.last_name} was deleted",
            contact_id=contact.id,
        )
        for note in list(contact.notes):
            session.delete(note)
        session.delete(contact)
        session.commit()

    def bulk_delete(
        self,
        session: Session,
        actor_user: ActorUser,
        dto: ContactBulkDeleteRequest,
    ) -> ContactBulkDeleteResult:
        """Delete the caller's contacts among `dto.ids`.

        Ids that belong to another tenant or do not exist are ignored. Contacts that still
        own deals are kept and reported in `skipped`, matching the single-delete guard.
        """
        tenant_id = tenant_scope(actor_user)
        requested = list(dict.fromkeys(dto.ids))
        contacts = session.scalars(
            select(CRMContact)
            .options(selectinload(CRMContact.notes))
            .where(and_(CRMContact.tenant_id == tenant_id, CRMContact.id.in_(requested)))
        ).all()
        with_deals = set(
            session.scalars(
                select(CRMDeal.contact_id).where(CRMDeal.contact_id.in_([contact.id for contact in contacts])).distinct()
            ).all()
        )

        deleted = 0
        skipped: list[uuid.UUID] = []
        for contact in contacts:
            if contact.id in with_deals:
                skipped.append(contact.id)
                continue
            activity_service.record(
                session,
                actor_user,
                activity_type="SYSTEM",
                title="Contact deleted",
                description=f"{contact.first_name} {contact.last_name} was deleted",
                contact_id=contact.id,
            )
            for note in list(contact.notes):
                session.delete(note)
            session.delete(contact)
            deleted += 1
        session.commit()
        logger.info(
            "crm.contacts.bulk_deleted",
            extra={"tenant_id": str(tenant_id), "status": f"deleted={deleted} skipped={len(skipped)}"},
        )
        return ContactBulkDeleteResult(deleted=deleted, skipped=skipped)

    def stats(self, session: Session, actor_user: ActorUser) -> ContactStatsRead:
        tenant_id = tenant_scope(actor_user)
        total = session.scalar(select(func.count(CRMContact.id)).where(CRMContact.tenant_id == tenant_id)) or 0
        status_rows = session.execute(
            select(CRMContact.lead_status, func.count(CRMContact.id))
            .where(CRMContact.tenant_id == tenant_id)
            .group_by(CRMContact.lead_status)
        ).all()

        count_column = func.count(CRMContact.id)
        source_rows = session.execute(
            select(CRMContact.lead_source, count_column)
            .where(and_(CRMContact.tenant_id == tenant_id, CRMContact.lead_source.is_not(None)))
            .group_by(CRMContact.lead_source)
            .order_by(count_column.desc(), CRMContact.lead_source.asc())
            .limit(TOP_SOURCE_LIMIT)
        ).all()
        recently_added = session.scalar(
            select(func.count(CRMContact.id)).where(
                CRMContact.tenant_id == tenant_id,
                CRMContact.created_at >= utcnow() - timedelta(days=RECENT_CONTACT_DAYS),
            )
        )
        return ContactStatsRead(
            total=total,
            by_status={lead_status: int(count) for lead_status, count in status_rows},
            top_sources=[ContactSourceCount(source=source, count=int(count)) for source, count in source_rows],
            recently_added=recently_added or 0,
        )

    def add_note(self, session: Session, actor_user: ActorUser, contact_id: uuid.UUID, dto: NoteCreate) -> NoteRead:
        tenant_id = tenant_scope(actor_user)
        contact = self.get_owned(session, tenant_id, contact_id)
        note = CRMNote(tenant_id=tenant_id, contact_id=contact.id, user_id=actor_user.user_id, content=dto.content)
        session.add(note)
        session.flush()
        activity_service.record(
            session,
            actor_user,
            activity_type="NOTE",
            title="Note added",
            description=dto.content[:200],
            contact_id=contact.id,
            metadata={"note_id": str(note.id)},
        )
        session.commit()
        return NoteRead.model_validate(note)

    def list_notes(self, session: Session, actor_user: ActorUser, contact_id: uuid.UUID) -> list[NoteRead]:
        contact = self.get_owned(session, tenant_scope(actor_user), contact_id)
        notes = session.scalars(
            select(CRMNote).where(CRMNote.contact_id == contact.id).order_by(CRMNote.created_at.desc())
        ).all()
        return [NoteRead.model_validate(note) for note in notes]

    def bulk_import(self, session: Session, actor_user: ActorUser, dto: ContactImportRequest) -> ContactImportResult:
        tenant_id = tenant_scope(actor_user)
        created = 0
        skipped = 0
        errors: list[str] = []
        seen_emails: set[str] = set()

        for row_number, raw_row in enumerate(dto.contacts, start=1):
            try:
                candidate = ContactCreate.model_validate(raw_row)
            except ValidationError as exc:
                first = exc.errors()[0]
                location = ".".join(str(part) for part in first.get("loc", ())) or "row"
                errors.append(f"Row {row_number}: {location}: {first.get('msg', 'invalid value')}")
                continue

            email = _normalize_email(candidate.email)
            if email and (email in seen_emails or self._email_taken(session, tenant_id, email)):
                if dto.skip_duplicates:
                    skipped += 1
                    continue
                errors.append(f"Row {row_number}: contact with email {email} already exists")
                continue

            try:
                with session.begin_nested():
                    session.add(self._build_contact(tenant_id, candidate, email))
            except IntegrityError as exc:
                errors.append(f"Row {row_number}: {str(exc.orig)[:200]}")
                continue

            if email:
                seen_emails.add(email)
            created += 1

        activity_service.record(
            session,
            actor_user,
            activity_type="SYSTEM",
            title="Bulk contact import",
            description=f"Imported {created} contacts ({skipped} skipped, {len(errors)} failed)",
            metadata={"created": created, "skipped": skipped, "failed": len(errors)},
        )
        session.commit()
        logger.info(
            "crm.contacts.imported",
            extra={"tenant_id": str(tenant_id), "status": f"created={created} skipped={skipped} failed={len(errors)}"},
        )
        return ContactImportResult(created=created, skipped=skipped, errors=errors)

    def get_owned(self, session: Session, tenant_id: uuid.UUID, contact_id: uuid.UUID) -> CRMContact:
        contact = session.scalar(
            select(CRMContact).where(and_(CRMContact.id == contact_id, CRMContact.tenant_id == tenant_id))
        )
        if contact is None:
            raise NotFoundError("contact not found")
        return contact

    def _email_taken(
        self,
        session: Session,
        tenant_id: uuid.UUID,
        email: str,
        exclude_id: uuid.UUID | None = None,
    ) -> bool:
        stmt = select(CRMContact.id).where(and_(CRMContact.tenant_id == tenant_id, CRMContact.email == email))
        if exclude_id is not None:
            stmt = stmt.where(CRMContact.id != exclude_id)
        return session.scalar(stmt.limit(1)) is not None

    def _build_contact(self, tenant_id: uuid.UUID, dto: ContactCreate, email: str | None) -> CRMContact:
        return CRMContact(
            tenant_id=tenant_id,
            first_name=dto.first_name.strip(),
            last_name=dto.last_name.strip(),
            email=email,
            phone=dto.phone,
            company=dto.company,
            job_title=dto.job_title,
            lead_source=dto.lead_source,
            lead_status=dto.lead_status,
        )

    def _to_read(self, contact: CRMContact) -> ContactRead:
        return ContactRead.model_validate(contact)


contact_service = ContactService()


class PipelineService:
    """Owns pipeline ordering and the dense 0..N-1 stage order of every pipeline.

    Every multi-row renumbering (shift + insert, delete + shift, reorder) runs inside the
    single transaction committed at the end of the operation.
    """

    entity_type = "crm.pipeline"

    def create_pipeline(self, session: Session, actor_user: ActorUser, dto: PipelineCreate) -> PipelineRead:
        tenant_id = tenant_scope(actor_user)
        max_order = session.scalar(select(func.max(CRMPipeline.order)).where(CRMPipeline.tenant_id == tenant_id))
        pipeline = CRMPipeline(
            tenant_id=tenant_id,
            name=dto.name.strip(),
            description=dto.description,
            order=0 if max_order is None else max_order + 1,
        )
        session.add(pipeline)
        try:
            session.flush()
        except IntegrityError:
            session.rollback()
            raise ConflictError("pipeline order already taken, retry the request")

        for index, stage_dto in enumerate(dto.stages):
            session.add(
                CRMPipelineStage(
                    pipeline_id=pipeline.id,
                    name=stage_dto.name.strip(),
                    color=stage_dto.color,
                    order=index,
                )
            )
        session.commit()
        logger.info("crm.pipeline.created", extra={"tenant_id": str(tenant_id)})
        return self.get_pipeline(session, actor_user, pipeline.id)

    def list_pipelines(self, session: Session, actor_user: ActorUser) -> list[PipelineRead]:
        pipelines = session.scalars(
            select(CRMPipeline)
            .where(CRMPipeline.tenant_id == tenant_scope(actor_user))
            .options(selectinload(CRMPipeline.stages))
            .order_by(CRMPipeline.order)
        ).all()
        deal_counts = self._deal_counts_by_stage(session, [pipeline.id for pipeline in pipelines])
        return [self._to_pipeline_read(pipeline, deal_counts) for pipeline in pipelines]

    def get_pipeline(self, session: Session, actor_user: ActorUser, pipeline_id: uuid.UUID) -> PipelineRead:
        pipeline = self.get_owned(session, tenant_scope(actor_user), pipeline_id)
        session.refresh(pipeline, attribute_names=["stages"])
        return self._to_pipeline_read(pipeline, self._deal_counts_by_stage(session, [pipeline.id]))

    def update_pipeline(
        self,
        session: Session,
        actor_user: ActorUser,
        pipeline_id: uuid.UUID,
        dto: PipelineUpdate,
    ) -> PipelineRead:
        pipeline = self.get_owned(session, tenant_scope(actor_user), pipeline_id)
        payload = dto.model_dump(exclude_unset=True)
        if payload.get("name") is not None:
            pipeline.name = payload["name"].strip()
        if "description" in payload:
            pipeline.description = payload["description"]
        session.commit()
        return self.get_pipeline(session, actor_user, pipeline.id)

    def delete_pipeline(self, session: Session, actor_user: ActorUser, pipeline_id: uuid.UUID) -> None:
        pipeline = self.get_owned(session, tenant_scope(actor_user), pipeline_id)
        deal_count = (
            session.scalar(select(func.count()).select_from(CRMDeal).where(CRMDeal.pipeline_id == pipeline.id)) or 0
        )
        if deal_count > 0:
            raise PreconditionFailedError(f"cannot delete pipeline with {deal_count} deal(s)")

        for stage in list(pipeline.stages):
            session.delete(stage)
        session.delete(pipeline)
        session.commit()
        logger.info("crm.pipeline.deleted", extra={"tenant_id": str(pipeline.tenant_id)})

    def add_stage(
        self,
        session: Session,
        actor_user: ActorUser,
        pipeline_id: uuid.UUID,
        dto: PipelineStageCreate,
    ) -> PipelineStageRead:
        pipeline = self.get_owned(session, tenant_scope(actor_user), pipeline_id)
        stage_count = (
            session.scalar(
                select(func.count()).select_from(CRMPipelineStage).where(CRMPipelineStage.pipeline_id == pipeline.id)
            )
            or 0
        )
        position = stage_count if dto.position is None else min(dto.position, stage_count)

        if position < stage_count:
            session.execute(
                update(CRMPipelineStage)
                .where(and_(CRMPipelineStage.pipeline_id == pipeline.id, CRMPipelineStage.order >= position))
                .values(order=CRMPipelineStage.order + 1, updated_at=utcnow())
            )

        stage = CRMPipelineStage(pipeline_id=pipeline.id, name=dto.name.strip(), color=dto.color, order=position)
        session.add(stage)
        session.commit()
        return self._to_stage_read(stage)

    def update_stage(
        self,
        session: Session,
        actor_user: ActorUser,
        stage_id: uuid.UUID,
        dto: PipelineStageUpdate,
    ) -> PipelineStageRead:
        stage = self.get_owned_stage(session, tenant_scope(actor_user), stage_id)
        payload = dto.model_dump(exclude_unset=True)
        if payload.get("name") is not None:
            stage.name = payload["name"].strip()
        if payload.get("color") is not None:
            stage.color = payload["color"]
        session.commit()
        return self._to_stage_read(stage, self._deal_counts_by_stage(session, [stage.pipeline_id]).get(stage.id, 0))

    def reorder_stages(
        self,
        session: Session,
        actor_user: ActorUser,
        pipeline_id: uuid.UUID,
        dto: StageReorderRequest,
    ) -> PipelineRead:
        pipeline = self.get_owned(session, tenant_scope(actor_user), pipeline_id)
        stages = session.scalars(select(CRMPipelineStage).where(CRMPipelineStage.pipeline_id == pipeline.id)).all()
        stages_by_id = {stage.id: stage for stage in stages}

        submitted_ids = [item.stage_id for item in dto.stages]
        if len(set(submitted_ids)) != len(submitted_ids) or set(submitted_ids) != set(stages_by_id):
            raise BadRequestError("reorder must list every stage of the pipeline exactly once")
        if sorted(item.order for item in dto.stages) != list(range(len(stages))):
            raise BadRequestError(f"stage orders must be a permutation of 0..{len(stages) - 1}")

        changed_at = utcnow()
        for item in dto.stages:
            stage = stages_by_id[item.stage_id]
            if stage.order != item.order:
                stage.order = item.order
                stage.updated_at = changed_at
        session.commit()
        return self.get_pipeline(session, actor_user, pipeline.id)

    def delete_stage(self, session: Session, actor_user: ActorUser, stage_id: uuid.UUID) -> None:
        stage = self.get_owned_stage(session, tenant_scope(actor_user), stage_id)
        deal_count = session.scalar(select(func.count()).select_from(CRMDeal).where(CRMDeal.stage_id == stage.id)) or 0
        if deal_count > 0:
            raise PreconditionFailedError(f"cannot delete stage with {deal_count} deal(s)")

        pipeline_id = stage.pipeline_id
        removed_order = stage.order
        session.delete(stage)
        session.flush()
        session.execute(
            update(CRMPipelineStage)
            .where(and_(CRMPipelineStage.pipeline_id == pipeline_id, CRMPipelineStage.order > removed_order))
            .values(order=CRMPipelineStage.order - 1, updated_at=utcnow())
        )
        session.commit()

    def get_owned(self, session: Session, tenant_id: uuid.UUID, pipeline_id: uuid.UUID) -> CRMPipeline:
        pipeline = session.scalar(
            select(CRMPipeline).where(and_(CRMPipeline.id == pipeline_id, CRMPipeline.tenant_id == tenant_id))
        )
        if pipeline is None:
            raise NotFoundError("pipeline not found")
        return pipeline

    def get_owned_stage(self, session: Session, tenant_id: uuid.UUID, stage_id: uuid.UUID) -> CRMPipelineStage:
        stage = session.scalar(
            select(CRMPipelineStage)
            .join(CRMPipeline, CRMPipeline.id == CRMPipelineStage.pipeline_id)
            .where(and_(CRMPipelineStage.id == stage_id, CRMPipeline.tenant_id == tenant_id))
        )
        if stage is None:
            raise NotFoundError("stage not found")
        return stage

    def sorted_stages(self, session: Session, pipeline_id: uuid.UUID) -> list[CRMPipelineStage]:
        return list(
            session.scalars(
                select(CRMPipelineStage)
                .where(CRMPipelineStage.pipeline_id == pipeline_id)
                .order_by(CRMPipelineStage.order, CRMPipelineStage.id)
            ).all()
        )

    def _deal_counts_by_stage(self, session: Session, pipeline_ids: list[uuid.UUID]) -> dict[uuid.UUID, int]:
        if not pipeline_ids:
            return {}
        rows = session.execute(
            select(CRMDeal.stage_id, func.count(CRMDeal.id))
            .where(CRMDeal.pipeline_id.in_(pipeline_ids))
            .group_by(CRMDeal.stage_id)
        ).all()
        return {stage_id: count for stage_id, count in rows}

    def _to_pipeline_read(self, pipeline: CRMPipeline, deal_counts: dict[uuid.UUID, int]) -> PipelineRead:
        stages = sorted(pipeline.stages, key=lambda item: (item.order, str(item.id)))
        return PipelineRead.model_validate(
            {
                "id": pipeline.id,
                "tenant_id": pipeline.tenant_id,
                "name": pipeline.name,
                "description": pipeline.description,
                "order": pipeline.order,
                "created_at": pipeline.created_at,
                "updated_at": pipeline.updated_at,
                "stages": [self._to_stage_read(stage, deal_counts.get(stage.id, 0)) for stage in stages],
            }
        )

    def _to_stage_read(self, stage: CRMPipelineStage, deal_count: int = 0) -> PipelineStageRead:
        read = PipelineStageRead.model_validate(stage)
        read.deal_count = deal_count
        return read


pipeline_service = PipelineService()


class DealService:
    """Deal lifecycle: OPEN -> WON | LOST, with an explicit reopen path back to OPEN.

    Entering WON or LOST always stamps ``actual_close_date``; reopening clears it. Every
    mutation writes exactly one activity row in the same transaction as the change.
    """

    entity_type = "crm.deal"

    def create_deal(self, session: Session, actor_user: ActorUser, dto: DealCreate) -> DealRead:
        tenant_id = tenant_scope(actor_user)
        contact_service.get_owned(session, tenant_id, dto.contact_id)
        pipeline = pipeline_service.get_owned(session, tenant_id, dto.pipeline_id)
        stage = session.scalar(
            select(CRMPipelineStage).where(
                and_(CRMPipelineStage.id == dto.stage_id, CRMPipelineStage.pipeline_id == pipeline.id)
            )
        )
        if stage is None:
            raise NotFoundError("stage not found in pipeline")

        deal = CRMDeal(
            tenant_id=tenant_id,
            contact_id=dto.contact_id,
            pipeline_id=pipeline.id,
            stage_id=stage.id,
            title=dto.title.strip(),
            value=dto.value,
            currency=dto.currency.upper(),
            probability=dto.probability,
            status="OPEN",
            expected_close_date=dto.expected_close_date,
        )
        session.add(deal)
        session.flush()

        activity_service.record(
            session,
            actor_user,
            activity_type="SYSTEM",
            title="Deal created",
            description=f'Deal "{deal.title}" created with value {deal.currency} {deal.value}',
            contact_id=deal.contact_id,
            deal_id=deal.id,
            metadata={"stage_id": str(stage.id), "stage_name": stage.name},
        )
        session.commit()
        _publish(
            "crm.deal.created",
            actor_user,
            tenant_id,
            {"deal_id": str(deal.id), "pipeline_id": str(deal.pipeline_id), "stage_id": str(deal.stage_id)},
        )
        return self._to_read(deal)

    def list_deals(
        self,
        session: Session,
        actor_user: ActorUser,
        filters: dict[str, Any],
        cursor: str | None,
        limit: int,
    ) -> list[DealRead]:
        stmt: Select[tuple[CRMDeal]] = select(CRMDeal).where(CRMDeal.tenant_id == tenant_scope(actor_user))
        if filters.get("pipeline_id"):
            stmt = stmt.where(CRMDeal.pipeline_id == filters["pipeline_id"])
        if filters.get("stage_id"):
            stmt = stmt.where(CRMDeal.stage_id == filters["stage_id"])
        if filters.get("contact_id"):
            stmt = stmt.where(CRMDeal.contact_id == filters["contact_id"])
        if filters.get("status"):
            stmt = stmt.where(CRMDeal.status == filters["status"])
        if filters.get("search"):
            stmt = stmt.where(func.lower(CRMDeal.title).like(f"%{filters['search'].strip().lower()}%"))

        deals = session.scalars(
            stmt.order_by(CRMDeal.created_at.desc(), CRMDeal.id.desc()).offset(_offset(cursor)).limit(limit)
        ).all()
        return [self._to_read(deal) for deal in deals]

    def get_deal(self, session: Session, actor_user: ActorUser, deal_id: uuid.UUID) -> DealRead:
        return self._to_read(self._get_owned(session, tenant_scope(actor_user), deal_id))

    def update_deal(self, session: Session, actor_user: ActorUser, deal_id: uuid.UUID, dto: DealUpdate) -> DealRead:
        tenant_id = tenant_scope(actor_user)
        deal = self._get_owned(session, tenant_id, deal_id)

        payload = dto.model_dump(exclude_unset=True)
        expected_version = payload.pop("row_version", None)
        if not payload:
            return self._to_read(deal)

        previous_status = deal.status
        new_status = payload.get("status")
        if new_status is not None:
            self._validate_status_change(previous_status, new_status)
            if new_status in CLOSED_DEAL_STATUSES:
                payload["actual_close_date"] = utcnow()
        if "title" in payload:
            payload["title"] = payload["title"].strip()
        if "currency" in payload:
            payload["currency"] = payload["currency"].upper()

        changes = sorted(key for key in payload if key != "actual_close_date")
        payload["updated_at"] = utcnow()
        payload["row_version"] = CRMDeal.row_version + 1

        conditions = [CRMDeal.id == deal.id, CRMDeal.tenant_id == tenant_id]
        if expected_version is not None:
            conditions.append(CRMDeal.row_version == expected_version)
        result = session.execute(update(CRMDeal).where(and_(*conditions)).values(**payload))
        if result.rowcount == 0:
            session.rollback()
            raise ConflictError("row_version conflict")

        session.refresh(deal)
        activity_service.record(
            session,
            actor_user,
            activity_type="SYSTEM",
            title="Deal updated",
            description=f'Deal "{deal.title}" was updated',
            contact_id=deal.contact_id,
            deal_id=deal.id,
            metadata={"changes": changes, "previous_status": previous_status, "status": deal.status},
        )
        session.commit()

        _publish("crm.deal.updated", actor_user, tenant_id, {"deal_id": str(deal.id), "changes": changes})
        if new_status in CLOSED_DEAL_STATUSES:
            observe_deal_transition(new_status)
            _publish(
                f"crm.deal.{new_status.lower()}",
                actor_user,
                tenant_id,
                {"deal_id": str(deal.id), "value": str(deal.value), "currency": deal.currency},
            )
        return self._to_read(deal)

    def move_stage(
        self,
        session: Session,
        actor_user: ActorUser,
        deal_id: uuid.UUID,
        dto: DealMoveStageRequest,
    ) -> DealRead:
        tenant_id = tenant_scope(actor_user)
        deal = self._get_owned(session, tenant_id, deal_id)
        new_stage = session.scalar(select(CRMPipelineStage).where(CRMPipelineStage.id == dto.stage_id))
        if new_stage is None or new_stage.pipeline_id != deal.pipeline_id:
            raise BadRequestError("invalid stage for pipeline")
        if new_stage.id == deal.stage_id:
            return self._to_read(deal)

        old_stage = session.get(CRMPipelineStage, deal.stage_id)
        old_name = old_stage.name if old_stage is not None else "unknown"
        deal.stage_id = new_stage.id
        deal.row_version = deal.row_version + 1
        activity_service.record(
            session,
            actor_user,
            activity_type="SYSTEM",
            title="Deal moved",
            description=f"Deal moved from {old_name} to {new_stage.name}",
            contact_id=deal.contact_id,
            deal_id=deal.id,
            metadata={
                "from_stage_id": str(old_stage.id) if old_stage is not None else None,
                "to_stage_id": str(new_stage.id),
            },
        )
        session.commit()
        _publish(
            "crm.deal.stage_changed",
            actor_user,
            tenant_id,
            {"deal_id": str(deal.id), "stage_id": str(new_stage.id)},
        )
        return self._to_read(deal)

    def reopen(self, session: Session, actor_user: ActorUser, deal_id: uuid.UUID) -> DealRead:
        tenant_id = tenant_scope(actor_user)
        deal = self._get_owned(session, tenant_id, deal_id)
        if deal.status not in CLOSED_DEAL_STATUSES:
            raise BadRequestError("only WON or LOST deals can be reopened")

        previous_status = deal.status
        deal.status = "OPEN"
        deal.actual_close_date = None
        deal.row_version = deal.row_version + 1
        activity_service.record(
            session,
            actor_user,
            activity_type="SYSTEM",
            title="Deal reopened",
            description=f'Deal "{deal.title}" was reopened from {previous_status}',
            contact_id=deal.contact_id,
            deal_id=deal.id,
            metadata={"previous_status": previous_status},
        )
        session.commit()
        observe_deal_transition("OPEN")
        _publish("crm.deal.reopened", actor_user, tenant_id, {"deal_id": str(deal.id)})
        return self._to_read(deal)

    def delete_deal(self, session: Session, actor_user: ActorUser, deal_id: uuid.UUID) -> None:
        tenant_id = tenant_scope(actor_user)
        deal = self._get_owned(session, tenant_id, deal_id)
        activity_service.record(
            session,
            actor_user,
            activity_type="SYSTEM",
            title="Deal deleted",
            description=f'Deal "{deal.title}" was deleted',
            contact_id=deal.contact_id,
            deal_id=deal.id,
            metadata={"status": deal.status, "value": str(deal.value), "currency": deal.currency},
        )
        removed_id = deal.id
        session.delete(deal)
        session.commit()
        _publish("crm.deal.deleted", actor_user, tenant_id, {"deal_id": str(removed_id)})

    def board(self, session: Session, actor_user: ActorUser, pipeline_id: uuid.UUID) -> DealBoardRead:
        tenant_id = tenant_scope(actor_user)
        pipeline = pipeline_service.get_owned(session, tenant_id, pipeline_id)
        stages = pipeline_service.sorted_stages(session, pipeline.id)
        deals = session.scalars(
            select(CRMDeal)
            .where(and_(CRMDeal.pipeline_id == pipeline.id, CRMDeal.tenant_id == tenant_id, CRMDeal.status == "OPEN"))
            .order_by(CRMDeal.created_at.desc(), CRMDeal.id.desc())
        ).all()

        by_stage: dict[uuid.UUID, list[CRMDeal]] = {stage.id: [] for stage in stages}
        for deal in deals:
            by_stage.setdefault(deal.stage_id, []).append(deal)

        columns: list[DealBoardColumn] = []
        for stage in stages:
            stage_deals = by_stage[stage.id]
            stage_read = PipelineStageRead.model_validate(stage)
            stage_read.deal_count = len(stage_deals)
            columns.append(
                DealBoardColumn(
                    stage=stage_read,
                    deals=[self._to_read(deal) for deal in stage_deals],
                    count=len(stage_deals),
                    total_value=float(sum((deal.value for deal in stage_deals), Decimal("0"))),
                )
            )
        return DealBoardRead(pipeline_id=pipeline.id, columns=columns)

    def stats(
        self,
        session: Session,
        actor_user: ActorUser,
        *,
        pipeline_id: uuid.UUID | None,
        start: datetime | None,
        end: datetime | None,
    ) -> DealStatsRead:
        stmt = select(CRMDeal.status, func.count(CRMDeal.id), func.coalesce(func.sum(CRMDeal.value), 0)).where(
            CRMDeal.tenant_id == tenant_scope(actor_user)
        )
        if pipeline_id is not None:
            stmt = stmt.where(CRMDeal.pipeline_id == pipeline_id)
        if start is not None:
            stmt = stmt.where(CRMDeal.created_at >= start)
        if end is not None:
            stmt = stmt.where(CRMDeal.created_at <= end)

        counts = {"OPEN": 0, "WON": 0, "LOST": 0}
        values = {"OPEN": Decimal("0"), "WON": Decimal("0"), "LOST": Decimal("0")}
        for status_value, count, total in session.execute(stmt.group_by(CRMDeal.status)).all():
            counts[status_value] = int(count)
            values[status_value] = Decimal(str(total))

        closed = counts["WON"] + counts["LOST"]
        win_rate = round(counts["WON"] / closed * 100, 1) if closed > 0 else 0.0
        return DealStatsRead(
            total_deals=sum(counts.values()),
            open_deals=counts["OPEN"],
            won_deals=counts["WON"],
            lost_deals=counts["LOST"],
            total_value=float(sum(values.values(), Decimal("0"))),
            open_value=float(values["OPEN"]),
            won_value=float(values["WON"]),
            lost_value=float(values["LOST"]),
            win_rate=win_rate,
        )

    def _validate_status_change(self, current: str, requested: str) -> None:
        if current == "OPEN" or current == requested:
            return
        if requested == "OPEN":
            raise BadRequestError("closed deals must be reopened explicitly")
        raise BadRequestError(f"cannot change deal status from {current} to {requested}")

    def _get_owned(self, session: Session, tenant_id: uuid.UUID, deal_id: uuid.UUID) -> CRMDeal:
        deal = session.scalar(select(CRMDeal).where(and_(CRMDeal.id == deal_id, CRMDeal.tenant_id == tenant_id)))
        if deal is None:
            raise NotFoundError("deal not found")
        return deal

    def _to_read(self, deal: CRMDeal) -> DealRead:
        return DealRead.model_validate(deal)


deal_service = DealService()
