"""Builds the GOOD/BETTER/BEST draft payload for a mobile job."""

import asyncio
import os
from typing import Any, Dict, List, Optional, Sequence
from uuid import uuid4

from scopegen.agents import scope_writer
from scopegen.db import MobileJob, MobileJobPhoto, ProposalTemplate, User
from scopegen.drafts.pricing import MarketPricing, compute_price_range

PACKAGES = ("GOOD", "BETTER", "BEST")
DEFAULT_PACKAGE = "BETTER"

BETTER_SCOPE = ["Confirm field measurements and verify existing conditions prior to install."]
BEST_SCOPE = [
    "Include premium protection of adjacent finishes and enhanced daily jobsite cleanup.",
    "Provide photo documentation of key in-wall conditions as discovered.",
]


def _unique(items: Sequence[str]) -> List[str]:
    return list(dict.fromkeys(items))


def _vision_hints(photos: Sequence[MobileJobPhoto]):
    needs_more: List[str] = []
    labels: List[str] = []
    for photo in photos:
        combined = (photo.findings or {}).get("combined") or {}
        needs_more.extend(combined.get("needsMorePhotos") or [])
        labels.extend(combined.get("summaryLabels") or [])
    return needs_more, labels


def _scaled(item: Dict[str, Any], factor: float, extra_scope: List[str]) -> Dict[str, Any]:
    return {
        **item,
        "id": uuid4().hex,
        "scope": item["scope"] + extra_scope,
        "priceLow": round(item["priceLow"] * factor),
        "priceHigh": round(item["priceHigh"] * factor),
    }


async def generate_mobile_draft(
    job: MobileJob,
    template: ProposalTemplate,
    user: User,
    photos: Sequence[MobileJobPhoto],
    market: Optional[MarketPricing] = None,
    *,
    job_notes: Optional[str] = None,
) -> Dict[str, Any]:
    """Generate the draft payload stored on ``MobileJobDraft.payload``.

    ``job_notes`` overrides ``job.job_notes`` (the worker passes notes with the
    selected issues appended). Pending photos simply contribute no findings.
    """
    market = market or MarketPricing()
    notes = job_notes if job_notes is not None else job.job_notes
    needs_more, labels = _vision_hints(photos)

    if notes:
        enhance_notes = notes
    elif photos:
        enhance_notes = f"Photos captured: {len(photos)}. Vision labels: {', '.join(_unique(labels)[:12])}"
    else:
        enhance_notes = None

    enhanced = await asyncio.to_thread(
        scope_writer.enhance_scope,
        template.job_type_name,
        list(template.base_scope or []),
        client_name=job.client_name,
        address=job.address,
        job_notes=enhance_notes,
    )

    trade_multiplier = (user.trade_multipliers or {}).get(template.trade_id)
    pricing_inputs = {
        "basePriceLow": template.base_price_low,
        "basePriceHigh": template.base_price_high,
        "jobSize": job.job_size,
        "userPriceMultiplier": user.price_multiplier,
        "tradeMultiplier": trade_multiplier if isinstance(trade_multiplier, (int, float)) else None,
        "marketMultiplier": market.multiplier,
    }
    prices = compute_price_range(
        template.base_price_low,
        template.base_price_high,
        job_size=job.job_size,
        user_price_multiplier=user.price_multiplier,
        trade_multiplier=pricing_inputs["tradeMultiplier"],
        market_multiplier=market.multiplier,
    )

    line_item = {
        "id": uuid4().hex,
        "tradeId": template.trade_id,
        "tradeName": template.trade_name,
        "jobTypeId": template.job_type_id,
        "jobTypeName": template.job_type_name,
        "jobSize": job.job_size,
        "scope": list(enhanced.enhanced_scope),
        "options": {},
        "priceLow": prices["priceLow"],
        "priceHigh": prices["priceHigh"],
        "estimatedDaysLow": template.estimated_days_low,
        "estimatedDaysHigh": template.estimated_days_high,
        "warranty": template.warranty,
        "exclusions": template.exclusions,
    }

    questions: List[str] = []
    if not enhanced.success:
        questions.append("Review the generated scope and adjust for site-specific conditions.")
    if not photos:
        questions.append("Add at least 1 photo to improve accuracy.")
    questions.extend(_unique(needs_more)[:5])

    confidence = 70 if enhanced.success else 45
    if len(photos) >= 3:
        confidence += 10
    if notes and len(notes) > 20:
        confidence += 5
    if not needs_more and len(photos) >= 3:
        confidence += 5
    if market.has_data:
        confidence += 5
    confidence = max(0, min(95, confidence))

    return {
        "packages": {
            "GOOD": {"label": "Good", "lineItems": [line_item]},
            "BETTER": {"label": "Better", "lineItems": [_scaled(line_item, 1.08, BETTER_SCOPE)]},
            "BEST": {"label": "Best", "lineItems": [_scaled(line_item, 1.18, BEST_SCOPE)]},
        },
        "defaultPackage": DEFAULT_PACKAGE,
        "confidence": confidence,
        "questions": questions,
        "pricing": {
            "pricebookVersion": os.getenv("PRICEBOOK_VERSION", "v1"),
            "inputs": {**pricing_inputs, "onebuild": market.snapshot()},
        },
    }
