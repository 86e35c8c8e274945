import asyncio
import logging
import os
import time
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional
from uuid import uuid4

from sqlalchemy import and_, or_, update
from sqlmodel import select

from scopegen import monitoring
from scopegen.agents import vision as vision_agent
from scopegen.db import MobileJob, MobileJobPhoto, get_session, utcnow
from scopegen.integrations import rekognition
from scopegen.vision.findings import build_findings

logger = logging.getLogger(__name__)

MAX_ATTEMPTS = 5
LOCK_EXPIRY = timedelta(minutes=2)
BACKOFF_SECONDS = (0, 1, 3, 8, 20, 45)
WORKER_ID = f"vision-{os.getpid()}-{uuid4().hex[:8]}"


class VisionFailed(Exception):
    """Neither the label detector nor the vision model produced a result."""


def backoff_seconds(attempts: int) -> int:
    return BACKOFF_SECONDS[min(max(attempts, 0), len(BACKOFF_SECONDS) - 1)]


def _lock_is_free(now: datetime):
    return or_(
        MobileJobPhoto.findings_locked_at.is_(None),
        MobileJobPhoto.findings_locked_at <= now - LOCK_EXPIRY,
    )


async def claim_photo(photo_id: int, locked_by: str, now: datetime, *, reset_attempts: bool = False) -> Optional[MobileJobPhoto]:
    """Conditionally lock one photo; returns the locked row or None if someone else holds it."""
    values: Dict[str, Any] = {
        "findings_status": "processing",
        "findings_locked_by": locked_by,
        "findings_locked_at": now,
        "findings_attempts": 1 if reset_attempts else MobileJobPhoto.findings_attempts + 1,
    }
    if reset_attempts:
        values["findings_error"] = None
        values["findings_next_attempt_at"] = None
    statement = (
        update(MobileJobPhoto)
        .where(
            MobileJobPhoto.id == photo_id,
            MobileJobPhoto.findings_status != "ready",
            _lock_is_free(now),
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    async with get_session() as session:
        result = await session.execute(statement)
        await session.commit()
        if result.rowcount != 1:
            return None
        return await session.get(MobileJobPhoto, photo_id)


async def lock_next_photo(job_id: Optional[int], locked_by: str) -> Optional[MobileJobPhoto]:
    """Claim the newest due photo (optionally scoped to one job)."""
    now = utcnow()
    statement = select(MobileJobPhoto).where(
        or_(
            MobileJobPhoto.findings_status == "pending",
            and_(MobileJobPhoto.findings_status == "processing", _lock_is_free(now)),
        ),
        or_(
            MobileJobPhoto.findings_next_attempt_at.is_(None),
            MobileJobPhoto.findings_next_attempt_at <= now,
        ),
    )
    if job_id is not None:
        statement = statement.where(MobileJobPhoto.job_id == job_id)
    statement = statement.order_by(MobileJobPhoto.created_at.desc(), MobileJobPhoto.id.desc()).limit(5)

    async with get_session() as session:
        candidates = (await session.exec(statement)).all()

    for candidate in candidates:
        locked = await claim_photo(candidate.id, locked_by, now)
        if locked:
            return locked
    return None


async def _analyze(photo: MobileJobPhoto) -> Dict[str, Any]:
    detector: Optional[Dict[str, Any]] = None
    detector_error: Optional[str] = None
    try:
        detector = await asyncio.to_thread(rekognition.detect_labels, photo.public_url)
    except Exception as exc:
        detector_error = str(exc) or exc.__class__.__name__

    label_names = [label["name"] for label in (detector or {}).get("labels", [])]

    llm: Optional[Dict[str, Any]] = None
    llm_error: Optional[str] = None
    try:
        llm = await asyncio.to_thread(vision_agent.analyze_photo, photo.public_url, photo.kind, label_names)
    except Exception as exc:
        llm_error = str(exc) or exc.__class__.__name__

    if detector is None and llm is None:
        raise VisionFailed(
            f"VISION_FAILED: rekognition={detector_error or 'unknown'} gpt={llm_error or 'unknown'}"
        )

    return build_findings(
        image_url=photo.public_url,
        kind=photo.kind,
        detector=detector,
        detector_error=detector_error,
        llm=llm,
        llm_error=llm_error,
    )


async def run_vision_for_photo(photo: MobileJobPhoto, *, user_id: Optional[str] = None) -> Dict[str, Any]:
    """Analyse one claimed photo and persist the outcome.

    The photo must already be locked (status ``processing``, attempts
    incremented). Returns ``{"success": bool, "error": Optional[str]}``.
    """
    started = time.perf_counter()
    attempts = photo.findings_attempts or 1
    error: Optional[str] = None
    findings: Optional[Dict[str, Any]] = None
    try:
        findings = await _analyze(photo)
    except Exception as exc:
        error = str(exc) or exc.__class__.__name__
        if not isinstance(exc, VisionFailed):
            monitoring.capture_exception(exc, photo_id=photo.id, job_id=photo.job_id)

    now = utcnow()
    async with get_session() as session:
        row = await session.get(MobileJobPhoto, photo.id)
        if row is None:
            return {"success": False, "error": "PHOTO_NOT_FOUND"}
        if findings is not None:
            row.findings = findings
            row.findings_status = "ready"
            row.findings_error = None
            row.findings_next_attempt_at = None
            row.analyzed_at = now
        else:
            exhausted = attempts >= MAX_ATTEMPTS
            row.findings_status = "failed" if exhausted else "pending"
            row.findings_error = error
            row.findings_next_attempt_at = None if exhausted else now + timedelta(seconds=backoff_seconds(attempts))
        row.findings_locked_by = None
        row.findings_locked_at = None
        session.add(row)
        await session.commit()

    duration_ms = (time.perf_counter() - started) * 1000
    await monitoring.record_run(
        stage="photo_analysis",
        user_id=user_id,
        job_id=photo.job_id,
        success=findings is not None,
        duration_ms=duration_ms,
        error_text=error,
    )
    monitoring.log_event(
        "mobile.photo.analyzed" if findings is not None else "mobile.photo.analyze_failed",
        jobId=photo.job_id,
        photoId=photo.id,
        attempts=attempts,
        error=error,
        ms=round(duration_ms),
    )
    return {"success": findings is not None, "error": error}


async def advance_analysis(job_id: int, max_to_process: int, *, request_id: Optional[str] = None) -> int:
    """Claim and analyse up to ``max_to_process`` due photos of a job."""
    locked_by = f"api-{request_id or uuid4().hex[:8]}-{uuid4().hex[:6]}"
    processed = 0
    while processed < max_to_process:
        photo = await lock_next_photo(job_id, locked_by)
        if not photo:
            break
        await run_vision_for_photo(photo)
        processed += 1
    return processed


async def retry_photos(job_id: int, *, request_id: Optional[str] = None) -> Dict[str, Any]:
    """Re-run analysis for every photo of a job that is not ready.

    Attempt counters restart. Photos held by a live lock are reported as
    skipped rather than analysed twice.
    """
    async with get_session() as session:
        photos = (
            await session.exec(
                select(MobileJobPhoto)
                .where(MobileJobPhoto.job_id == job_id, MobileJobPhoto.findings_status != "ready")
                .order_by(MobileJobPhoto.id)
            )
        ).all()

    if not photos:
        return {
            "message": "No photos need retry - all photos already analyzed successfully",
            "retried": 0,
            "success": 0,
            "failed": 0,
            "skipped": 0,
            "results": [],
        }

    locked_by = f"retry-{request_id or uuid4().hex[:8]}"
    results: List[Dict[str, Any]] = []
    skipped = 0
    for photo in photos:
        locked = await claim_photo(photo.id, locked_by, utcnow(), reset_attempts=True)
        if not locked:
            skipped += 1
            continue
        outcome = await run_vision_for_photo(locked)
        entry: Dict[str, Any] = {"photoId": photo.id, "success": outcome["success"]}
        if outcome["error"]:
            entry["error"] = outcome["error"]
        results.append(entry)

    succeeded = sum(1 for entry in results if entry["success"])
    failed = len(results) - succeeded
    return {
        "message": f"Retried {len(results)} photos: {succeeded} succeeded, {failed} failed",
        "retried": len(results),
        "success": succeeded,
        "failed": failed,
        "skipped": skipped,
        "results": results,
    }


async def process_pending_photos(limit: int = 10) -> int:
    """Background sweep across all jobs."""
    processed = 0
    while processed < limit:
        photo = await lock_next_photo(None, WORKER_ID)
        if not photo:
            break
        async with get_session() as session:
            job = await session.get(MobileJob, photo.job_id)
        try:
            await run_vision_for_photo(photo, user_id=job.user_id if job else None)
        except Exception as exc:
            monitoring.capture_exception(exc, photo_id=photo.id)
        processed += 1
    if processed:
        logger.info("Vision sweep processed %s photos", processed)
    return processed
