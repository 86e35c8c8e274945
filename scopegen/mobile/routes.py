"""Mobile capture flow: jobs, photos, vision analysis, drafts and submission."""

import os
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Header, Request

from scopegen import monitoring, storage
from scopegen.db import User, get_session, utcnow
from scopegen.drafts import worker as draft_worker
from scopegen.errors import ApiError, get_request_id
from scopegen.integrations import s3
from scopegen.schemas import (
    DraftIn,
    MobileJobIn,
    MobileJobOut,
    MobileJobPatch,
    PhotoIn,
    PhotoOut,
    PresignIn,
    ScopeEditIn,
    SubmitIn,
)
from scopegen.vision import issues as vision_issues
from scopegen.vision import runner as vision_runner
from scopegen.vision import summary as vision_summary

router = APIRouter(prefix="/mobile", tags=["mobile"])


def _job_out(job) -> Dict[str, Any]:
    return MobileJobOut.model_validate(job.model_dump()).model_dump(by_alias=True)


@router.post("/jobs", status_code=201)
async def create_job(
    payload: MobileJobIn,
    request: Request,
    idempotency_key: Optional[str] = Header(default=None, alias="Idempotency-Key"),
):
    template = await storage.resolve_template(payload.job_type)
    if not template:
        raise ApiError(400, "INVALID_INPUT", "Unknown job type")

    job, created = await storage.create_job(
        request.state.user_id,
        template,
        client_name=payload.customer,
        address=payload.address,
        idempotency_key=idempotency_key,
    )
    if created:
        await storage.increment_template_usage(template.id)
    monitoring.log_event(
        "mobile.job.created",
        requestId=get_request_id(request),
        userId=request.state.user_id,
        jobId=job.id,
        jobTypeId=template.job_type_id,
        created=created,
    )
    return {"jobId": job.id}


@router.get("/jobs")
async def list_jobs(request: Request):
    jobs = await storage.list_jobs(request.state.user_id)
    return [_job_out(job) for job in jobs]


@router.get("/jobs/{job_id}")
async def get_job(job_id: int, request: Request):
    job = await storage.get_job(job_id, request.state.user_id)
    return _job_out(job)


@router.patch("/jobs/{job_id}")
async def update_job(job_id: int, payload: MobileJobPatch, request: Request):
    changes = payload.model_dump(exclude_unset=True, exclude_none=True)
    if not changes:
        raise ApiError(400, "INVALID_INPUT", "No fields to update")
    job = await storage.update_job(job_id, request.state.user_id, changes)
    return _job_out(job)


@router.post("/jobs/{job_id}/photos/presign")
async def presign_photo(job_id: int, payload: PresignIn, request: Request):
    job = await storage.get_job(job_id, request.state.user_id)
    if not payload.content_type.startswith("image/"):
        raise ApiError(400, "INVALID_INPUT", "contentType must be an image type")
    try:
        return s3.presign_photo_upload(request.state.user_id, job.id, payload.content_type, payload.filename)
    except RuntimeError as exc:
        raise ApiError(503, "INTERNAL", str(exc))


@router.post("/jobs/{job_id}/photos", status_code=201)
async def register_photo(job_id: int, payload: PhotoIn, request: Request):
    """Register an uploaded photo and give it one inline analysis attempt."""
    job = await storage.get_job(job_id, request.state.user_id)
    photo = await storage.add_photo(job, payload.url, payload.kind)

    analyzed = False
    analysis_error: Optional[str] = None
    locked = await vision_runner.claim_photo(photo.id, f"api-{get_request_id(request)}", utcnow())
    if locked:
        outcome = await vision_runner.run_vision_for_photo(locked, user_id=request.state.user_id)
        analyzed = outcome["success"]
        analysis_error = outcome["error"]

    monitoring.log_event(
        "mobile.photo.registered",
        requestId=get_request_id(request),
        jobId=job.id,
        photoId=photo.id,
        analyzed=analyzed,
    )
    return {"photoId": photo.id, "analyzed": analyzed, "analysisError": analysis_error}


@router.get("/jobs/{job_id}/photos")
async def list_photos(job_id: int, request: Request):
    job = await storage.get_job(job_id, request.state.user_id)
    photos = await storage.list_photos(job.id)
    return [PhotoOut.model_validate(photo.model_dump()).model_dump(by_alias=True) for photo in photos]


@router.delete("/jobs/{job_id}/photos/{photo_id}")
async def delete_photo(job_id: int, photo_id: int, request: Request):
    job = await storage.get_job(job_id, request.state.user_id)
    await storage.delete_photo(job.id, photo_id)
    return {"success": True}


@router.post("/jobs/{job_id}/photos/retry")
async def retry_photos(job_id: int, request: Request):
    job = await storage.get_job(job_id, request.state.user_id)
    result = await vision_runner.retry_photos(job.id, request_id=get_request_id(request))
    monitoring.log_event(
        "mobile.photos.retry.complete",
        requestId=get_request_id(request),
        jobId=job.id,
        retried=result["retried"],
        success=result["success"],
        failed=result["failed"],
        skipped=result["skipped"],
    )
    return result


async def _analysis_response(job_id: int) -> Dict[str, Any]:
    photos = await storage.list_photos(job_id)
    if not photos:
        return {
            "status": "no_photos",
            "detectedIssues": [],
            "photosAnalyzed": 0,
            "photosTotal": 0,
            "needsMorePhotos": [],
            "suggestionsStatus": "none",
        }

    ready = [photo for photo in photos if photo.findings_status == "ready"]
    failed = [photo for photo in photos if photo.findings_status == "failed"]
    done = len(ready) + len(failed)
    detected = vision_issues.extract_issues(ready)
    problem = vision_issues.suggested_problem(detected)

    response: Dict[str, Any] = {
        "status": "ready" if done == len(photos) else "analyzing",
        "detectedIssues": [issue.to_dict() for issue in detected],
        "photosAnalyzed": done,
        "photosTotal": len(photos),
        "needsMorePhotos": vision_issues.needs_more_photos(ready),
        "suggestionsStatus": vision_issues.suggestions_status(
            detected_issues=len(detected),
            photos=len(photos),
            has_suggestion_content=problem is not None,
            is_processing=done < len(photos),
            has_error=bool(failed) and not ready,
        ),
    }
    if problem:
        response["suggestedProblem"] = problem
    return response


@router.post("/jobs/{job_id}/photos/analyze")
async def analyze_photos(job_id: int, request: Request):
    job = await storage.get_job(job_id, request.state.user_id)
    await vision_runner.advance_analysis(job.id, 2, request_id=get_request_id(request))
    response = await _analysis_response(job.id)
    monitoring.log_event(
        "mobile.photos.analyze.ok",
        requestId=get_request_id(request),
        jobId=job.id,
        photosTotal=response["photosTotal"],
        photosAnalyzed=response["photosAnalyzed"],
        issuesDetected=len(response["detectedIssues"]),
    )
    return response


@router.get("/jobs/{job_id}/photos/analyze")
async def analysis_status(job_id: int, request: Request):
    job = await storage.get_job(job_id, request.state.user_id)
    await vision_runner.advance_analysis(job.id, 1, request_id=get_request_id(request))
    return await _analysis_response(job.id)


@router.get("/jobs/{job_id}/findings")
async def findings_summary(job_id: int, request: Request):
    """Findings, unknowns and clarifying questions to settle before pricing."""
    job = await storage.get_job(job_id, request.state.user_id)
    await vision_runner.advance_analysis(job.id, 1, request_id=get_request_id(request))
    summary = vision_summary.findings_summary(await storage.list_photos(job.id))
    monitoring.log_event(
        "mobile.findings.summary.ok",
        requestId=get_request_id(request),
        jobId=job.id,
        photosTotal=summary["photosTotal"],
        photosAnalyzed=summary["photosAnalyzed"],
        findingsCount=len(summary["findings"]),
        needsClarification=summary["needsClarification"],
        isPaintingJob=summary["isPaintingJob"],
    )
    return summary


@router.post("/jobs/{job_id}/scope-edits", status_code=201)
async def record_scope_edit(job_id: int, payload: ScopeEditIn, request: Request):
    job = await storage.get_job(job_id, request.state.user_id)
    await storage.add_scope_edit(
        job.id,
        payload.action,
        item_code=payload.item_code,
        before=payload.before,
        after=payload.after,
    )
    monitoring.log_event(
        "mobile.scope_edit.recorded",
        requestId=get_request_id(request),
        jobId=job.id,
        action=payload.action,
    )
    return {"ok": True}


def _draft_body(draft, *, full: bool) -> Dict[str, Any]:
    body: Dict[str, Any] = {"draftId": draft.id, "status": draft_worker.public_status(draft)}
    if draft.status == "ready" and draft.payload:
        body["payload"] = draft.payload
    if full:
        body["questions"] = list(draft.questions or []) if draft.status == "ready" else []
        if draft.confidence is not None:
            body["confidence"] = draft.confidence
        if draft.error:
            body["error"] = draft.error
    return body


@router.post("/jobs/{job_id}/draft")
async def create_draft(
    job_id: int,
    request: Request,
    payload: Optional[DraftIn] = None,
    idempotency_key: Optional[str] = Header(default=None, alias="Idempotency-Key"),
):
    job = await storage.get_job(job_id, request.state.user_id)
    photos = await storage.list_photos(job.id)
    if not photos:
        raise ApiError(400, "INVALID_INPUT", "Add at least one photo before drafting")

    payload = payload or DraftIn()
    selected: List[Dict[str, Any]] = [
        issue.model_dump(exclude_none=True) for issue in payload.selected_issues or []
    ]
    draft = await draft_worker.enqueue_draft(
        job.id,
        idempotency_key=idempotency_key,
        selected_issues=selected,
        problem_statement=payload.problem_statement,
    )
    draft = await draft_worker.advance_draft(draft.id) or draft
    return _draft_body(draft, full=False)


@router.get("/jobs/{job_id}/draft")
async def get_draft(job_id: int, request: Request):
    job = await storage.get_job(job_id, request.state.user_id)
    draft = await draft_worker.latest_draft(job.id)
    if not draft:
        raise ApiError(404, "NOT_FOUND", "No draft for this job")
    if draft.status == "pending":
        draft = await draft_worker.advance_draft(draft.id) or draft
    return _draft_body(draft, full=True)


def _web_base_url(request: Request) -> str:
    return (os.getenv("WEB_BASE_URL") or str(request.base_url)).rstrip("/")


@router.post("/jobs/{job_id}/submit")
async def submit_job(job_id: int, request: Request, payload: Optional[SubmitIn] = None):
    """Turn the job's ready draft into a real proposal."""
    job = await storage.get_job(job_id, request.state.user_id)
    async with get_session() as session:
        user = await session.get(User, request.state.user_id)
    if not user or not user.company_name or not user.company_address:
        raise ApiError(
            400,
            "MISSING_CONTRACTOR_INFO",
            "Add your company name and address before submitting",
        )

    draft = await draft_worker.latest_draft(job.id)
    if not draft or draft.status != "ready" or not draft.payload:
        raise ApiError(400, "FAILED_PRECONDITION", "Draft is not ready")

    base_url = _web_base_url(request)
    if draft.proposal_id:
        return {
            "proposalId": draft.proposal_id,
            "webReviewUrl": f"{base_url}/proposals/{draft.proposal_id}",
        }

    packages = draft.payload.get("packages") or {}
    package = (payload.package if payload else None) or draft.payload.get("defaultPackage") or "BETTER"
    line_items = (packages.get(package) or {}).get("lineItems") or []
    if not line_items:
        raise ApiError(400, "FAILED_PRECONDITION", f"Draft has no {package} package")
    item = line_items[0]

    proposal = await storage.create_proposal(
        user.id,
        client_name=job.client_name,
        address=job.address,
        trade_id=item.get("tradeId") or job.trade_id,
        job_type_id=item.get("jobTypeId") or job.job_type_id,
        job_type_name=item.get("jobTypeName") or job.job_type_name,
        job_size=item.get("jobSize") or job.job_size,
        scope=list(item.get("scope") or []),
        line_items=[item],
        options={
            "__mobile": {
                "package": package,
                "pricebookVersion": draft.pricebook_version,
                "jobId": job.id,
                "draftId": draft.id,
            }
        },
        price_low=item["priceLow"],
        price_high=item["priceHigh"],
        estimated_days_low=item.get("estimatedDaysLow"),
        estimated_days_high=item.get("estimatedDaysHigh"),
    )
    await storage.link_draft_to_proposal(draft.id, proposal.id, job.id)
    monitoring.log_event(
        "mobile.job.submitted",
        requestId=get_request_id(request),
        jobId=job.id,
        draftId=draft.id,
        proposalId=proposal.id,
        package=package,
    )
    return {"proposalId": proposal.id, "webReviewUrl": f"{base_url}/proposals/{proposal.id}"}
