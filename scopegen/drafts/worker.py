import logging
import os
import time
from datetime import timedelta
from typing import Any, Dict, List, Optional
from uuid import uuid4

from sqlalchemy import and_, or_, update
from sqlmodel import select

from scopegen import monitoring
from scopegen.db import MobileJob, MobileJobDraft, MobileJobPhoto, ProposalTemplate, User, get_session, utcnow
from scopegen.drafts.pipeline import generate_mobile_draft
from scopegen.drafts.pricing import get_market_pricing

logger = logging.getLogger(__name__)

MAX_ATTEMPTS = 5
LOCK_EXPIRY = timedelta(minutes=2)
BACKOFF_SECONDS = (0, 2, 5, 15, 30)
BACKOFF_CEILING_SECONDS = 60
WORKER_ID = f"draft-{os.getpid()}-{uuid4().hex[:8]}"

PUBLIC_STATUS = {
    "pending": "DRAFTING",
    "processing": "DRAFTING",
    "ready": "READY",
    "failed": "FAILED",
}


class DraftError(Exception):
    """A draft could not be produced (missing job, owner or template)."""


def backoff_seconds(attempts: int) -> int:
    if 0 <= attempts < len(BACKOFF_SECONDS):
        return BACKOFF_SECONDS[attempts]
    return BACKOFF_CEILING_SECONDS


def public_status(draft: MobileJobDraft) -> str:
    return PUBLIC_STATUS.get(draft.status, "DRAFTING")


async def enqueue_draft(
    job_id: int,
    *,
    idempotency_key: Optional[str] = None,
    selected_issues: Optional[List[Dict[str, Any]]] = None,
    problem_statement: Optional[str] = None,
) -> MobileJobDraft:
    """Create a pending draft for a job, or reuse the live one for the same key."""
    now = utcnow()
    async with get_session() as session:
        if idempotency_key:
            existing = (
                await session.exec(
                    select(MobileJobDraft)
                    .where(
                        MobileJobDraft.job_id == job_id,
                        MobileJobDraft.draft_idempotency_key == idempotency_key,
                    )
                    .order_by(MobileJobDraft.created_at.desc(), MobileJobDraft.id.desc())
                    .limit(1)
                )
            ).first()
            if existing and existing.status != "failed":
                return existing

        draft = MobileJobDraft(
            job_id=job_id,
            status="pending",
            draft_idempotency_key=idempotency_key,
            next_attempt_at=now,
            selected_issues=list(selected_issues or []),
            problem_statement=problem_statement,
        )
        session.add(draft)

        job = await session.get(MobileJob, job_id)
        if job:
            job.status = "drafting"
            job.updated_at = now
            session.add(job)

        await session.commit()
        await session.refresh(draft)

    monitoring.log_event("mobile.draft.enqueued", jobId=job_id, draftId=draft.id)
    return draft


async def claim_draft(draft_id: int, locked_by: str = WORKER_ID) -> Optional[MobileJobDraft]:
    now = utcnow()
    statement = (
        update(MobileJobDraft)
        .where(
            MobileJobDraft.id == draft_id,
            MobileJobDraft.status.in_(("pending", "processing")),
            or_(MobileJobDraft.locked_at.is_(None), MobileJobDraft.locked_at <= now - LOCK_EXPIRY),
        )
        .values(
            status="processing",
            locked_by=locked_by,
            locked_at=now,
            started_at=now,
            attempts=MobileJobDraft.attempts + 1,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    async with get_session() as session:
        result = await session.execute(statement)
        await session.commit()
        if result.rowcount != 1:
            return None
        return await session.get(MobileJobDraft, draft_id)


def _job_notes(job: MobileJob, draft: MobileJobDraft) -> Optional[str]:
    notes = job.job_notes or ""
    labels = [issue.get("label") for issue in draft.selected_issues or [] if issue.get("label")]
    if labels:
        notes += "\n\nSelected issues to address: " + "; ".join(labels)
    if draft.problem_statement:
        notes += f"\n\nProblem to solve: {draft.problem_statement}"
    return notes.strip() or None


async def _load_inputs(draft: MobileJobDraft):
    async with get_session() as session:
        job = await session.get(MobileJob, draft.job_id)
        if not job:
            raise DraftError("JOB_NOT_FOUND")
        user = await session.get(User, job.user_id)
        if not user:
            raise DraftError("USER_NOT_FOUND")
        photos = (
            await session.exec(select(MobileJobPhoto).where(MobileJobPhoto.job_id == job.id))
        ).all()
        template = (
            await session.exec(
                select(ProposalTemplate).where(
                    ProposalTemplate.trade_id == job.trade_id,
                    ProposalTemplate.job_type_id == job.job_type_id,
                    ProposalTemplate.is_active == True,  # noqa: E712
                )
            )
        ).first()
        if not template:
            raise DraftError("TEMPLATE_NOT_FOUND")
    return job, user, list(photos), template


async def run_draft(draft: MobileJobDraft) -> MobileJobDraft:
    """Generate a claimed draft and persist success or the retry schedule."""
    started = time.perf_counter()
    attempts = draft.attempts or 1
    user_id: Optional[str] = None
    error: Optional[str] = None
    payload: Optional[Dict[str, Any]] = None

    try:
        job, user, photos, template = await _load_inputs(draft)
        user_id = user.id
        pending_photos = sum(1 for photo in photos if photo.findings_status not in ("ready", "failed"))
        logger.info(
            "Drafting job %s with %s photos (%s still analysing)", job.id, len(photos), pending_photos
        )
        market = await get_market_pricing(template.trade_id, job.address)
        payload = await generate_mobile_draft(
            job, template, user, photos, market, job_notes=_job_notes(job, draft)
        )
    except Exception as exc:
        error = str(exc) or exc.__class__.__name__
        if not isinstance(exc, DraftError):
            monitoring.capture_exception(exc, draft_id=draft.id, job_id=draft.job_id)

    now = utcnow()
    async with get_session() as session:
        row = await session.get(MobileJobDraft, draft.id)
        job_row = await session.get(MobileJob, draft.job_id)
        if payload is not None:
            row.status = "ready"
            row.payload = payload
            row.confidence = payload.get("confidence")
            row.questions = list(payload.get("questions") or [])
            row.pricebook_version = (payload.get("pricing") or {}).get("pricebookVersion")
            row.pricing_snapshot = payload.get("pricing")
            row.error = None
            row.finished_at = now
            if job_row:
                job_row.status = "drafted"
        else:
            exhausted = attempts >= MAX_ATTEMPTS
            row.status = "failed" if exhausted else "pending"
            row.error = error
            row.next_attempt_at = None if exhausted else now + timedelta(seconds=backoff_seconds(attempts))
            row.finished_at = now if exhausted else None
            if job_row:
                job_row.status = "photos_uploaded" if exhausted else "drafting"
        row.locked_by = None
        row.locked_at = None
        row.updated_at = now
        session.add(row)
        if job_row:
            job_row.updated_at = now
            session.add(job_row)
        await session.commit()
        await session.refresh(row)

    duration_ms = (time.perf_counter() - started) * 1000
    await monitoring.record_run(
        stage="draft_generation",
        user_id=user_id,
        job_id=draft.job_id,
        success=payload is not None,
        duration_ms=duration_ms,
        error_text=error,
    )
    if payload is None:
        logger.error("Draft %s for job %s failed (attempt %s): %s", draft.id, draft.job_id, attempts, error)
    monitoring.log_event(
        "mobile.draft.ready" if payload is not None else "mobile.draft.failed",
        jobId=draft.job_id,
        draftId=draft.id,
        attempts=attempts,
        error=error,
        ms=round(duration_ms),
    )
    return row


async def advance_draft(draft_id: int) -> Optional[MobileJobDraft]:
    """Run one attempt of a draft if it is due and not held by another worker."""
    async with get_session() as session:
        draft = await session.get(MobileJobDraft, draft_id)
    if not draft or draft.status not in ("pending", "processing"):
        return draft
    if draft.status == "pending" and draft.next_attempt_at and draft.next_attempt_at > utcnow():
        return draft
    claimed = await claim_draft(draft_id, f"api-{uuid4().hex[:8]}")
    if not claimed:
        return draft
    return await run_draft(claimed)


async def latest_draft(job_id: int) -> Optional[MobileJobDraft]:
    async with get_session() as session:
        return (
            await session.exec(
                select(MobileJobDraft)
                .where(MobileJobDraft.job_id == job_id)
                .order_by(MobileJobDraft.created_at.desc(), MobileJobDraft.id.desc())
                .limit(1)
            )
        ).first()


async def process_pending_drafts(limit: int = 5) -> int:
    """Background sweep: run due drafts across all jobs."""
    now = utcnow()
    async with get_session() as session:
        candidates = (
            await session.exec(
                select(MobileJobDraft)
                .where(
                    or_(
                        MobileJobDraft.status == "pending",
                        and_(MobileJobDraft.status == "processing", MobileJobDraft.locked_at <= now - LOCK_EXPIRY),
                    ),
                    or_(MobileJobDraft.next_attempt_at.is_(None), MobileJobDraft.next_attempt_at <= now),
                )
                .order_by(MobileJobDraft.created_at.desc())
                .limit(limit)
            )
        ).all()

    processed = 0
    for candidate in candidates:
        claimed = await claim_draft(candidate.id)
        if not claimed:
            continue
        try:
            await run_draft(claimed)
        except Exception as exc:
            monitoring.capture_exception(exc, draft_id=claimed.id)
        processed += 1
    if processed:
        logger.info("Draft sweep processed %s drafts", processed)
    return processed
