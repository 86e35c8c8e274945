from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from sqlmodel import select

from scopegen.db import Proposal, User, get_session, utcnow

DASHBOARD_WINDOW = timedelta(days=30)
PROPOSAL_STATUSES = ("draft", "sent", "accepted", "won", "lost")


def _apply_status_defaults(status_breakdown: Dict[str, int]) -> Dict[str, int]:
    for key in PROPOSAL_STATUSES:
        status_breakdown.setdefault(key, 0)
    return status_breakdown


async def dashboard_stats(user_id: str, *, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Thirty-day proposal activity plus the caller's usable credit balance."""
    now = now or utcnow()
    since = now - DASHBOARD_WINDOW

    async with get_session() as session:
        proposals = (
            await session.exec(
                select(Proposal).where(Proposal.user_id == user_id, Proposal.created_at >= since)
            )
        ).all()
        user = await session.get(User, user_id)

    status_breakdown: Dict[str, int] = {}
    revenue_won = 0.0
    for proposal in proposals:
        status_breakdown[proposal.status] = status_breakdown.get(proposal.status, 0) + 1
        if proposal.status == "won":
            revenue_won += (proposal.price_low + proposal.price_high) / 2
    status_breakdown = _apply_status_defaults(status_breakdown)

    credits = 0
    expires_at = None
    if user:
        expires_at = user.credits_expire_at
        expired = bool(expires_at and expires_at <= now)
        credits = 0 if expired else user.proposal_credits

    return {
        "totalProposals": len(proposals),
        "revenueWon": round(revenue_won),
        "pending": status_breakdown["draft"] + status_breakdown["sent"],
        "proposalCredits": credits,
        "creditsExpireAt": expires_at,
        "statusBreakdown": status_breakdown,
    }
