"""Owner-scoped persistence helpers shared by the API routers."""

import secrets
from typing import Any, Dict, List, Optional, Tuple, Union

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlmodel import select

from scopegen.db import (
    MobileJob,
    MobileJobDraft,
    MobileJobPhoto,
    Proposal,
    ProposalTemplate,
    ScopeEdit,
    get_session,
    utcnow,
)
from scopegen.errors import ApiError


async def list_templates(active_only: bool = True) -> List[ProposalTemplate]:
    statement = select(ProposalTemplate)
    if active_only:
        statement = statement.where(ProposalTemplate.is_active == True)  # noqa: E712
    statement = statement.order_by(ProposalTemplate.trade_name, ProposalTemplate.job_type_name)
    async with get_session() as session:
        return (await session.exec(statement)).all()


async def resolve_template(job_type: Union[int, str]) -> Optional[ProposalTemplate]:
    """Find an active template by numeric id or by ``job_type_id`` slug."""
    async with get_session() as session:
        if isinstance(job_type, int) or (isinstance(job_type, str) and job_type.isdigit()):
            template = await session.get(ProposalTemplate, int(job_type))
            if template and template.is_active:
                return template
            if isinstance(job_type, int):
                return None
        return (
            await session.exec(
                select(ProposalTemplate).where(
                    ProposalTemplate.job_type_id == job_type,
                    ProposalTemplate.is_active == True,  # noqa: E712
                )
            )
        ).first()


async def _job_by_key(user_id: str, key: str) -> Optional[MobileJob]:
    async with get_session() as session:
        return (
            await session.exec(
                select(MobileJob).where(
                    MobileJob.user_id == user_id,
                    MobileJob.create_idempotency_key == key,
                )
            )
        ).first()


async def create_job(
    user_id: str,
    template: ProposalTemplate,
    *,
    client_name: Optional[str] = None,
    address: Optional[str] = None,
    idempotency_key: Optional[str] = None,
) -> Tuple[MobileJob, bool]:
    """Create a mobile job and report whether a row was inserted.

    A repeated ``idempotency_key`` returns the original job with ``False``.
    """
    if idempotency_key:
        existing = await _job_by_key(user_id, idempotency_key)
        if existing:
            return existing, False

    job = MobileJob(
        user_id=user_id,
        create_idempotency_key=idempotency_key,
        client_name=client_name or "Customer",
        address=address or "Address TBD",
        trade_id=template.trade_id,
        trade_name=template.trade_name,
        job_type_id=template.job_type_id,
        job_type_name=template.job_type_name,
        job_size=2,
    )
    try:
        async with get_session() as session:
            session.add(job)
            await session.commit()
            await session.refresh(job)
    except IntegrityError:
        # lost a race with a concurrent request carrying the same key
        existing = await _job_by_key(user_id, idempotency_key) if idempotency_key else None
        if not existing:
            raise
        return existing, False
    return job, True


async def list_jobs(user_id: str) -> List[MobileJob]:
    async with get_session() as session:
        return (
            await session.exec(
                select(MobileJob)
                .where(MobileJob.user_id == user_id)
                .order_by(MobileJob.created_at.desc(), MobileJob.id.desc())
            )
        ).all()


async def get_job(job_id: int, user_id: str) -> MobileJob:
    async with get_session() as session:
        job = await session.get(MobileJob, job_id)
    if not job or job.user_id != user_id:
        raise ApiError(404, "NOT_FOUND", "Job not found")
    return job


async def update_job(job_id: int, user_id: str, changes: Dict[str, Any]) -> MobileJob:
    async with get_session() as session:
        job = await session.get(MobileJob, job_id)
        if not job or job.user_id != user_id:
            raise ApiError(404, "NOT_FOUND", "Job not found")
        for field, value in changes.items():
            setattr(job, field, value)
        job.updated_at = utcnow()
        session.add(job)
        await session.commit()
        await session.refresh(job)
        return job


async def add_photo(job: MobileJob, url: str, kind: Optional[str] = None) -> MobileJobPhoto:
    async with get_session() as session:
        photo = MobileJobPhoto(job_id=job.id, public_url=url, kind=kind or "site")
        session.add(photo)
        row = await session.get(MobileJob, job.id)
        if row and row.status == "created":
            row.status = "photos_uploaded"
            row.updated_at = utcnow()
            session.add(row)
        await session.commit()
        await session.refresh(photo)
        return photo


async def list_photos(job_id: int) -> List[MobileJobPhoto]:
    async with get_session() as session:
        return (
            await session.exec(
                select(MobileJobPhoto).where(MobileJobPhoto.job_id == job_id).order_by(MobileJobPhoto.id)
            )
        ).all()


async def delete_photo(job_id: int, photo_id: int) -> None:
    async with get_session() as session:
        photo = await session.get(MobileJobPhoto, photo_id)
        if not photo or photo.job_id != job_id:
            raise ApiError(404, "NOT_FOUND", "Photo not found")
        await session.delete(photo)
        await session.commit()


async def link_draft_to_proposal(draft_id: int, proposal_id: int, job_id: int) -> None:
    now = utcnow()
    async with get_session() as session:
        draft = await session.get(MobileJobDraft, draft_id)
        draft.proposal_id = proposal_id
        draft.updated_at = now
        session.add(draft)
        job = await session.get(MobileJob, job_id)
        job.status = "submitted"
        job.updated_at = now
        session.add(job)
        await session.commit()


async def create_proposal(user_id: str, **fields: Any) -> Proposal:
    async with get_session() as session:
        proposal = Proposal(user_id=user_id, **fields)
        session.add(proposal)
        await session.commit()
        await session.refresh(proposal)
        return proposal


async def list_proposals(user_id: str) -> List[Proposal]:
    async with get_session() as session:
        return (
            await session.exec(
                select(Proposal)
                .where(Proposal.user_id == user_id)
                .order_by(Proposal.created_at.desc(), Proposal.id.desc())
            )
        ).all()


async def get_proposal(proposal_id: int, user_id: str) -> Proposal:
    async with get_session() as session:
        proposal = await session.get(Proposal, proposal_id)
    if not proposal or proposal.user_id != user_id:
        raise ApiError(404, "NOT_FOUND", "Proposal not found")
    return proposal


async def update_proposal(proposal_id: int, user_id: str, changes: Dict[str, Any]) -> Proposal:
    async with get_session() as session:
        proposal = await session.get(Proposal, proposal_id)
        if not proposal or proposal.user_id != user_id:
            raise ApiError(404, "NOT_FOUND", "Proposal not found")
        for field, value in changes.items():
            setattr(proposal, field, value)
        proposal.updated_at = utcnow()
        session.add(proposal)
        await session.commit()
        await session.refresh(proposal)
        return proposal


async def delete_proposal(proposal_id: int, user_id: str) -> None:
    async with get_session() as session:
        proposal = await session.get(Proposal, proposal_id)
        if not proposal or proposal.user_id != user_id:
            raise ApiError(404, "NOT_FOUND", "Proposal not found")
        if proposal.status != "draft":
            raise ApiError(403, "FORBIDDEN", "Only draft proposals can be deleted")
        await session.delete(proposal)
        await session.commit()


async def unlock_proposal(proposal_id: int, user_id: str) -> Proposal:
    return await update_proposal(
        proposal_id,
        user_id,
        {"is_unlocked": True, "public_token": secrets.token_urlsafe(24)},
    )


async def get_public_proposal(token: str) -> Proposal:
    async with get_session() as session:
        proposal = (await session.exec(select(Proposal).where(Proposal.public_token == token))).first()
    if not proposal or not proposal.is_unlocked:
        raise ApiError(404, "NOT_FOUND", "Proposal not found")
    return proposal


async def accept_public_proposal(token: str, *, name: str, email: str, signature: str) -> Proposal:
    async with get_session() as session:
        proposal = (await session.exec(select(Proposal).where(Proposal.public_token == token))).first()
        if not proposal or not proposal.is_unlocked:
            raise ApiError(404, "NOT_FOUND", "Proposal not found")
        if proposal.accepted_at or proposal.status == "accepted":
            raise ApiError(400, "FAILED_PRECONDITION", "Proposal has already been accepted")
        now = utcnow()
        proposal.status = "accepted"
        proposal.accepted_at = now
        proposal.accepted_by_name = name
        proposal.accepted_by_email = email
        proposal.signature = signature
        proposal.updated_at = now
        session.add(proposal)
        await session.commit()
        await session.refresh(proposal)
        return proposal


async def increment_template_usage(template_id: int) -> None:
    async with get_session() as session:
        await session.execute(
            update(ProposalTemplate)
            .where(ProposalTemplate.id == template_id)
            .values(usage_count=ProposalTemplate.usage_count + 1)
            .execution_options(synchronize_session=False)
        )
        await session.commit()


async def add_scope_edit(
    job_id: int,
    action: str,
    *,
    item_code: Optional[str] = None,
    before: Any = None,
    after: Any = None,
) -> ScopeEdit:
    async with get_session() as session:
        edit = ScopeEdit(job_id=job_id, action=action, item_code=item_code, before=before, after=after)
        session.add(edit)
        await session.commit()
        await session.refresh(edit)
        return edit
