from datetime import timedelta

import pytest
from sqlmodel import select

from scopegen.db import MobileJob, MobileJobPhoto, RunHistory, get_session, utcnow
from scopegen.vision import runner

pytestmark = pytest.mark.asyncio


def labels(image_url):
    return {"provider": "aws", "service": "rekognition", "labels": [{"name": "Drywall", "confidence": 90.0}]}


def vision(image_url, kind, detector_labels=None):
    return {"model": "gpt-test", "confidence": 0.9, "labels": ["drywall"], "damage": ["water stain"]}


def broken(*args, **kwargs):
    raise RuntimeError("provider down")


async def add_job_with_photos(count=1, **photo_fields):
    async with get_session() as session:
        job = MobileJob(
            user_id="user-1",
            client_name="Pat",
            address="5 Oak Ave",
            trade_id="drywall",
            job_type_id="drywall-repair",
            job_type_name="Drywall Repair",
        )
        session.add(job)
        await session.commit()
        await session.refresh(job)
        photos = []
        for index in range(count):
            photo = MobileJobPhoto(job_id=job.id, public_url=f"https://cdn.example.com/{index}.jpg", **photo_fields)
            session.add(photo)
            photos.append(photo)
        await session.commit()
        for photo in photos:
            await session.refresh(photo)
    return job, photos


async def load(photo_id):
    async with get_session() as session:
        return await session.get(MobileJobPhoto, photo_id)


def test_backoff_schedule():
    assert [runner.backoff_seconds(attempt) for attempt in range(8)] == [0, 1, 3, 8, 20, 45, 45, 45]


async def test_claim_photo_is_exclusive(database):
    _, [photo] = await add_job_with_photos()
    now = utcnow()
    first = await runner.claim_photo(photo.id, "worker-a", now)
    second = await runner.claim_photo(photo.id, "worker-b", now)
    assert first.findings_locked_by == "worker-a"
    assert first.findings_attempts == 1
    assert second is None

    # stale locks can be taken over
    later = now + runner.LOCK_EXPIRY + timedelta(seconds=1)
    stolen = await runner.claim_photo(photo.id, "worker-b", later)
    assert stolen.findings_locked_by == "worker-b"
    assert stolen.findings_attempts == 2


async def test_advance_analysis_marks_photos_ready(database, monkeypatch):
    monkeypatch.setattr("scopegen.integrations.rekognition.detect_labels", labels)
    monkeypatch.setattr("scopegen.agents.vision.analyze_photo", vision)
    job, photos = await add_job_with_photos(3)

    assert await runner.advance_analysis(job.id, 2) == 2
    assert await runner.advance_analysis(job.id, 2) == 1
    assert await runner.advance_analysis(job.id, 2) == 0

    for photo in photos:
        row = await load(photo.id)
        assert row.findings_status == "ready"
        assert row.findings_locked_by is None
        assert row.analyzed_at is not None
        assert row.findings["combined"]["confidence"] == pytest.approx(0.91)

    async with get_session() as session:
        runs = (await session.exec(select(RunHistory))).all()
    assert len(runs) == 3


async def test_one_provider_failing_still_produces_findings(database, monkeypatch):
    monkeypatch.setattr("scopegen.integrations.rekognition.detect_labels", broken)
    monkeypatch.setattr("scopegen.agents.vision.analyze_photo", vision)
    job, [photo] = await add_job_with_photos()

    await runner.advance_analysis(job.id, 1)
    row = await load(photo.id)
    assert row.findings_status == "ready"
    assert row.findings["detector"] == {"status": "failed", "result": None, "error": "provider down"}


async def test_failure_schedules_retry_then_gives_up(database, monkeypatch):
    monkeypatch.setattr("scopegen.integrations.rekognition.detect_labels", broken)
    monkeypatch.setattr("scopegen.agents.vision.analyze_photo", broken)
    job, [photo] = await add_job_with_photos()

    await runner.advance_analysis(job.id, 1)
    row = await load(photo.id)
    assert row.findings_status == "pending"
    assert row.findings_error == "VISION_FAILED: rekognition=provider down gpt=provider down"
    assert row.findings_attempts == 1

    async with get_session() as session:
        row.findings_attempts = runner.MAX_ATTEMPTS - 1
        row.findings_next_attempt_at = None
        session.add(row)
        await session.commit()

    await runner.advance_analysis(job.id, 1)
    row = await load(photo.id)
    assert row.findings_status == "failed"
    assert row.findings_attempts == runner.MAX_ATTEMPTS
    assert row.findings_next_attempt_at is None


async def test_backoff_hides_photo_until_due(database, monkeypatch):
    monkeypatch.setattr("scopegen.integrations.rekognition.detect_labels", labels)
    monkeypatch.setattr("scopegen.agents.vision.analyze_photo", vision)
    job, [photo] = await add_job_with_photos(
        findings_next_attempt_at=utcnow() + timedelta(minutes=5)
    )
    assert await runner.advance_analysis(job.id, 1) == 0
    assert (await load(photo.id)).findings_status == "pending"


async def test_retry_resets_attempts_and_skips_ready(database, monkeypatch):
    monkeypatch.setattr("scopegen.integrations.rekognition.detect_labels", labels)
    monkeypatch.setattr("scopegen.agents.vision.analyze_photo", vision)
    job, [failed] = await add_job_with_photos(findings_status="failed", findings_attempts=5, findings_error="boom")
    _, [ready] = await add_job_with_photos(findings_status="ready")

    result = await runner.retry_photos(job.id)
    assert result["retried"] == 1
    assert result["success"] == 1
    assert result["results"] == [{"photoId": failed.id, "success": True}]

    row = await load(failed.id)
    assert row.findings_status == "ready"
    assert row.findings_attempts == 1
    assert row.findings_error is None

    again = await runner.retry_photos(job.id)
    assert again["retried"] == 0
    assert again["message"].startswith("No photos need retry")


async def test_retry_skips_live_locks(database):
    job, [photo] = await add_job_with_photos(
        findings_status="processing",
        findings_locked_by="someone-else",
        findings_locked_at=utcnow(),
    )
    result = await runner.retry_photos(job.id)
    assert result["skipped"] == 1
    assert result["retried"] == 0


async def test_background_sweep_spans_jobs(database, monkeypatch):
    monkeypatch.setattr("scopegen.integrations.rekognition.detect_labels", labels)
    monkeypatch.setattr("scopegen.agents.vision.analyze_photo", vision)
    await add_job_with_photos(2)
    await add_job_with_photos(1)
    assert await runner.process_pending_photos(limit=10) == 3
