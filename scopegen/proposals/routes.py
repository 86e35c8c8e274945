from typing import Any, Dict

from fastapi import APIRouter, Request
from fastapi.responses import Response

from scopegen import billing, monitoring, storage
from scopegen.db import ProposalTemplate, User, get_session, utcnow
from scopegen.drafts.pricing import compute_price_range
from scopegen.errors import ApiError, get_request_id
from scopegen.proposals.pdf import render_proposal_pdf
from scopegen.schemas import (
    AcceptIn,
    CountersignIn,
    ProposalIn,
    ProposalOut,
    ProposalPatch,
    PublicProposalOut,
    TemplateOut,
)

router = APIRouter(tags=["proposals"])


def _proposal_out(proposal) -> Dict[str, Any]:
    return ProposalOut.model_validate(proposal.model_dump()).model_dump(by_alias=True)


@router.get("/templates")
async def list_templates():
    templates = await storage.list_templates()
    return [TemplateOut.model_validate(template.model_dump()).model_dump(by_alias=True) for template in templates]


@router.get("/proposals")
async def list_proposals(request: Request):
    proposals = await storage.list_proposals(request.state.user_id)
    return [_proposal_out(proposal) for proposal in proposals]


@router.post("/proposals", status_code=201)
async def create_proposal(payload: ProposalIn, request: Request):
    """Create a proposal by hand, from a template or from explicit fields."""
    fields: Dict[str, Any] = {
        "client_name": payload.client_name,
        "address": payload.address,
        "job_size": payload.job_size,
        "line_items": payload.line_items,
        "options": payload.options or {},
    }
    if payload.template_id is not None:
        async with get_session() as session:
            template = await session.get(ProposalTemplate, payload.template_id)
            user = await session.get(User, request.state.user_id)
        if not template or not template.is_active:
            raise ApiError(400, "INVALID_INPUT", "Unknown template")
        prices = compute_price_range(
            template.base_price_low,
            template.base_price_high,
            job_size=payload.job_size,
            user_price_multiplier=user.price_multiplier if user else 100,
            trade_multiplier=(user.trade_multipliers or {}).get(template.trade_id) if user else None,
        )
        fields.update(
            trade_id=template.trade_id,
            job_type_id=template.job_type_id,
            job_type_name=template.job_type_name,
            scope=payload.scope or list(template.base_scope or []),
            price_low=payload.price_low if payload.price_low is not None else prices["priceLow"],
            price_high=payload.price_high if payload.price_high is not None else prices["priceHigh"],
            estimated_days_low=payload.estimated_days_low or template.estimated_days_low,
            estimated_days_high=payload.estimated_days_high or template.estimated_days_high,
        )
        await storage.increment_template_usage(template.id)
    else:
        missing = [
            name
            for name in ("trade_id", "job_type_id", "job_type_name", "price_low", "price_high")
            if getattr(payload, name) is None
        ]
        if missing:
            raise ApiError(400, "INVALID_INPUT", f"Missing fields: {', '.join(missing)}")
        fields.update(
            trade_id=payload.trade_id,
            job_type_id=payload.job_type_id,
            job_type_name=payload.job_type_name,
            scope=payload.scope or [],
            price_low=payload.price_low,
            price_high=payload.price_high,
            estimated_days_low=payload.estimated_days_low,
            estimated_days_high=payload.estimated_days_high,
        )

    if fields["price_low"] > fields["price_high"]:
        raise ApiError(400, "INVALID_INPUT", "priceLow must not exceed priceHigh")

    proposal = await storage.create_proposal(request.state.user_id, **fields)
    monitoring.log_event("proposal.created", userId=request.state.user_id, proposalId=proposal.id)
    return _proposal_out(proposal)


@router.get("/proposals/{proposal_id}")
async def get_proposal(proposal_id: int, request: Request):
    proposal = await storage.get_proposal(proposal_id, request.state.user_id)
    return _proposal_out(proposal)


@router.patch("/proposals/{proposal_id}")
async def update_proposal(proposal_id: int, payload: ProposalPatch, request: Request):
    changes = payload.model_dump(exclude_unset=True, exclude_none=True)
    if not changes:
        raise ApiError(400, "INVALID_INPUT", "No fields to update")
    current = await storage.get_proposal(proposal_id, request.state.user_id)
    low = changes.get("price_low", current.price_low)
    high = changes.get("price_high", current.price_high)
    if low > high:
        raise ApiError(400, "INVALID_INPUT", "priceLow must not exceed priceHigh")
    proposal = await storage.update_proposal(proposal_id, request.state.user_id, changes)
    return _proposal_out(proposal)


@router.delete("/proposals/{proposal_id}")
async def delete_proposal(proposal_id: int, request: Request):
    await storage.delete_proposal(proposal_id, request.state.user_id)
    return {"success": True}


@router.post("/proposals/{proposal_id}/unlock")
async def unlock_proposal(proposal_id: int, request: Request):
    """Unlock a proposal for sharing.

    Trial users and active subscribers unlock for free; everyone else spends
    one credit. Unlocking issues the public share token.
    """
    user_id = request.state.user_id
    proposal = await storage.get_proposal(proposal_id, user_id)
    status = await billing.get_status(user_id)

    if proposal.is_unlocked:
        return {
            **_proposal_out(proposal),
            "remainingCredits": status["availableCredits"],
            "creditDeducted": False,
        }

    credit_deducted = False
    remaining = status["availableCredits"]
    if not (status["isTrialing"] or status["hasActiveSubscription"]):
        try:
            remaining = await billing.deduct_credit(user_id, reference_id=str(proposal.id))
        except billing.InsufficientCredits:
            raise ApiError(
                402,
                "PAYMENT_REQUIRED",
                "No credits available. Purchase credits or subscribe to Pro.",
                requiresPayment=True,
                noCredits=True,
            )
        credit_deducted = True

    unlocked = await storage.unlock_proposal(proposal.id, user_id)
    monitoring.log_event(
        "proposal.unlocked",
        requestId=get_request_id(request),
        userId=user_id,
        proposalId=proposal.id,
        creditDeducted=credit_deducted,
    )
    return {**_proposal_out(unlocked), "remainingCredits": remaining, "creditDeducted": credit_deducted}


@router.post("/proposals/{proposal_id}/countersign")
async def countersign_proposal(proposal_id: int, payload: CountersignIn, request: Request):
    proposal = await storage.get_proposal(proposal_id, request.state.user_id)
    if proposal.status != "accepted":
        raise ApiError(400, "FAILED_PRECONDITION", "Only accepted proposals can be countersigned")
    if proposal.contractor_signed_at:
        raise ApiError(400, "FAILED_PRECONDITION", "Proposal has already been countersigned")
    proposal = await storage.update_proposal(
        proposal.id,
        request.state.user_id,
        {"contractor_signature": payload.signature, "contractor_signed_at": utcnow()},
    )
    return _proposal_out(proposal)


@router.get("/proposals/{proposal_id}/pdf")
async def proposal_pdf(proposal_id: int, request: Request):
    proposal = await storage.get_proposal(proposal_id, request.state.user_id)
    if not proposal.is_unlocked:
        raise ApiError(402, "PAYMENT_REQUIRED", "Unlock this proposal to download a PDF", requiresPayment=True)
    async with get_session() as session:
        contractor = await session.get(User, proposal.user_id)
    content = render_proposal_pdf(proposal, contractor)
    headers = {"Content-Disposition": f'attachment; filename="proposal-{proposal.id}.pdf"'}
    return Response(content=content, media_type="application/pdf", headers=headers)


@router.get("/public/proposals/{token}")
async def public_proposal(token: str):
    proposal = await storage.get_public_proposal(token)
    async with get_session() as session:
        contractor = await session.get(User, proposal.user_id)
    body = PublicProposalOut.model_validate(proposal.model_dump())
    if contractor:
        body.company_name = contractor.company_name
        body.company_phone = contractor.company_phone
        body.license_number = contractor.license_number
    return body.model_dump(by_alias=True)


@router.post("/public/proposals/{token}/accept")
async def accept_proposal(token: str, payload: AcceptIn):
    proposal = await storage.accept_public_proposal(
        token,
        name=payload.name,
        email=payload.email,
        signature=payload.signature,
    )
    monitoring.log_event("proposal.accepted", proposalId=proposal.id)
    return {"success": True, "status": proposal.status, "acceptedAt": proposal.accepted_at}
