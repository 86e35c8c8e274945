from datetime import timedelta

import pytest

from scopegen.agents.scope_writer import EnhanceScopeResult
from scopegen.db import MobileJob, MobileJobDraft, MobileJobPhoto, get_session, utcnow
from scopegen.drafts import worker
from scopegen.drafts.pipeline import generate_mobile_draft
from scopegen.drafts.pricing import MarketPricing

pytestmark = pytest.mark.asyncio


async def add_job(template, user_id="user-1", **fields):
    async with get_session() as session:
        job = MobileJob(
            user_id=user_id,
            client_name="Sam Lee",
            address="77 Pine St, Austin, TX 78702",
            trade_id=template.trade_id,
            trade_name=template.trade_name,
            job_type_id=template.job_type_id,
            job_type_name=template.job_type_name,
            status="photos_uploaded",
            **fields,
        )
        session.add(job)
        await session.commit()
        await session.refresh(job)
        return job


async def load(model, row_id):
    async with get_session() as session:
        return await session.get(model, row_id)


def test_backoff_schedule():
    assert [worker.backoff_seconds(attempt) for attempt in range(7)] == [0, 2, 5, 15, 30, 60, 60]


async def test_enqueue_reuses_live_draft_for_same_key(make_template, make_user):
    template = await make_template()
    await make_user("user-1")
    job = await add_job(template)

    first = await worker.enqueue_draft(job.id, idempotency_key="k1")
    second = await worker.enqueue_draft(job.id, idempotency_key="k1")
    other = await worker.enqueue_draft(job.id, idempotency_key="k2")
    assert first.id == second.id
    assert other.id != first.id
    assert (await load(MobileJob, job.id)).status == "drafting"
    assert worker.public_status(first) == "DRAFTING"


async def test_failed_draft_is_not_reused(make_template, make_user):
    template = await make_template()
    await make_user("user-1")
    job = await add_job(template)
    first = await worker.enqueue_draft(job.id, idempotency_key="k1")
    async with get_session() as session:
        row = await session.get(MobileJobDraft, first.id)
        row.status = "failed"
        session.add(row)
        await session.commit()

    second = await worker.enqueue_draft(job.id, idempotency_key="k1")
    assert second.id != first.id


async def test_advance_draft_produces_packages(make_template, make_user, monkeypatch):
    monkeypatch.setattr("scopegen.agents.scope_writer._get_client", lambda: None)
    template = await make_template()
    await make_user("user-1", trade_multipliers={"bathroom": 110})
    job = await add_job(template, job_size=3, job_notes="Owner wants a curbless shower")

    draft = await worker.enqueue_draft(
        job.id,
        selected_issues=[{"id": "damage:rot", "label": "subfloor rot"}],
        problem_statement="Soft floor by the toilet",
    )
    ready = await worker.advance_draft(draft.id)

    assert ready.status == "ready"
    assert worker.public_status(ready) == "READY"
    assert ready.attempts == 1
    assert ready.pricebook_version == "v1"
    good = ready.payload["packages"]["GOOD"]["lineItems"][0]
    # 12000 * 1.4 * 1.1 and 25000 * 1.4 * 1.1
    assert (good["priceLow"], good["priceHigh"]) == (18500, 38500)
    assert ready.payload["pricing"]["inputs"]["tradeMultiplier"] == 110
    assert ready.payload["pricing"]["inputs"]["onebuild"] is None
    assert "Add at least 1 photo to improve accuracy." in ready.questions
    assert (await load(MobileJob, job.id)).status == "drafted"

    # already finished drafts are returned untouched
    again = await worker.advance_draft(draft.id)
    assert again.attempts == 1


async def test_missing_template_retries_then_fails(make_template, make_user):
    template = await make_template(is_active=False)
    await make_user("user-1")
    job = await add_job(template)

    draft = await worker.enqueue_draft(job.id)
    row = await worker.advance_draft(draft.id)
    assert row.status == "pending"
    assert row.error == "TEMPLATE_NOT_FOUND"
    assert row.next_attempt_at > row.updated_at
    assert (await load(MobileJob, job.id)).status == "drafting"

    async with get_session() as session:
        stored = await session.get(MobileJobDraft, draft.id)
        stored.next_attempt_at = utcnow() + timedelta(minutes=5)
        session.add(stored)
        await session.commit()

    # not due yet
    assert (await worker.advance_draft(draft.id)).attempts == 1

    async with get_session() as session:
        stored = await session.get(MobileJobDraft, draft.id)
        stored.attempts = worker.MAX_ATTEMPTS - 1
        stored.next_attempt_at = utcnow() - timedelta(seconds=1)
        session.add(stored)
        await session.commit()

    final = await worker.advance_draft(draft.id)
    assert final.status == "failed"
    assert worker.public_status(final) == "FAILED"
    assert final.finished_at is not None
    assert (await load(MobileJob, job.id)).status == "photos_uploaded"


async def test_sweep_runs_due_drafts(make_template, make_user, monkeypatch):
    monkeypatch.setattr("scopegen.agents.scope_writer._get_client", lambda: None)
    template = await make_template()
    await make_user("user-1")
    job_a = await add_job(template)
    job_b = await add_job(template)
    await worker.enqueue_draft(job_a.id)
    await worker.enqueue_draft(job_b.id)

    assert await worker.process_pending_drafts() == 2
    assert (await worker.latest_draft(job_a.id)).status == "ready"
    assert await worker.process_pending_drafts() == 0


def test_job_notes_include_selected_issues():
    job = MobileJob(
        user_id="u",
        client_name="c",
        address="a",
        trade_id="t",
        job_type_id="j",
        job_type_name="J",
        job_notes="Tenant occupied",
    )
    draft = MobileJobDraft(
        job_id=1,
        selected_issues=[{"id": "1", "label": "cracked tile"}, {"id": "2", "label": "loose toilet"}],
        problem_statement="Bathroom floor is failing",
    )
    assert worker._job_notes(job, draft) == (
        "Tenant occupied\n\nSelected issues to address: cracked tile; loose toilet"
        "\n\nProblem to solve: Bathroom floor is failing"
    )
    assert worker._job_notes(MobileJob(**{**job.model_dump(), "job_notes": None}), MobileJobDraft(job_id=1)) is None


async def test_pipeline_confidence_uses_photos_and_market(make_template, make_user, monkeypatch):
    def enhanced(job_type_name, base_scope, **kwargs):
        return EnhanceScopeResult(True, ["Demolish existing finishes.", "Install new finishes."], model="gpt-test")

    monkeypatch.setattr("scopegen.agents.scope_writer.enhance_scope", enhanced)
    template = await make_template()
    user = await make_user("user-1")
    job = await add_job(template)
    photos = [
        MobileJobPhoto(
            job_id=job.id,
            public_url=f"https://cdn.example.com/{index}.jpg",
            findings_status="ready",
            findings={"combined": {"needsMorePhotos": [], "summaryLabels": ["tile"]}},
        )
        for index in range(3)
    ]
    market = MarketPricing(multiplier=1.1, basis="labor", source="cache", zipcode="78702")

    payload = await generate_mobile_draft(job, template, user, photos, market)
    # 70 base, +10 photos, +5 no gaps, +5 market
    assert payload["confidence"] == 90
    assert payload["questions"] == []
    assert payload["defaultPackage"] == "BETTER"
    best = payload["packages"]["BEST"]["lineItems"][0]
    assert best["scope"][:2] == ["Demolish existing finishes.", "Install new finishes."]
    assert payload["pricing"]["inputs"]["onebuild"] == {"source": "cache", "zipcode": "78702", "basis": "labor"}
    assert payload["packages"]["GOOD"]["lineItems"][0]["priceLow"] == 13200
