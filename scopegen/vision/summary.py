"""Findings summary shown before pricing: what was seen, what is unknown, what to ask."""

from typing import Any, Dict, Iterable, List, Optional

from scopegen.db import MobileJobPhoto
from scopegen.vision.issues import needs_more_photos

MAX_FINDINGS = 15
LOW_CONFIDENCE = 0.6

PAINTING_KEYWORDS = (
    "paint", "peeling", "fading", "discolor", "stain", "wall",
    "trim", "baseboard", "ceiling", "primer", "coat", "color",
)
SEVERITY_BY_ESTIMATE = {"spot": "low", "partial": "medium", "full": "high"}

SCOPE_LEVEL_OPTIONS = [
    {
        "value": "minimum",
        "label": "Minimum repair",
        "description": "Fix only the critical issues",
        "priceMultiplier": 1.0,
    },
    {
        "value": "recommended",
        "label": "Recommended",
        "description": "Address all identified issues",
        "priceMultiplier": 1.5,
        "isDefault": True,
    },
    {
        "value": "premium",
        "label": "Premium",
        "description": "Complete overhaul with preventive work",
        "priceMultiplier": 2.0,
    },
]

WORK_AREA_QUESTION = {
    "id": "work_area_size",
    "question": "Approximate size of work area?",
    "questionType": "single_select",
    "options": [
        {"value": "small", "label": "Small (< 100 sq ft)", "priceMultiplier": 1.0},
        {"value": "medium", "label": "Medium (100-300 sq ft)", "priceMultiplier": 1.5},
        {"value": "large", "label": "Large (300+ sq ft)", "priceMultiplier": 2.0},
    ],
    "required": False,
    "impactArea": "pricing",
}

CONFIRM_ALL_QUESTION = {
    "id": "confirm_all_items",
    "question": "We identified multiple issues. Would you like us to address all of them?",
    "questionType": "boolean",
    "defaultValue": True,
    "required": True,
    "helpText": "You can also select specific items in the next step",
    "impactArea": "scope",
}

PAINTING_QUESTIONS = [
    {
        "id": "paint_scope",
        "question": "What's the scope of painting needed?",
        "questionType": "single_select",
        "options": [
            {
                "value": "spot_repair",
                "label": "Spot repair only",
                "description": "Touch up and blend specific damaged areas (10-30 sq ft)",
                "priceMultiplier": 1.0,
                "estimatedSqFt": 20,
                "isDefault": True,
            },
            {
                "value": "one_wall",
                "label": "Paint one wall",
                "description": "Full repaint of a single wall",
                "priceMultiplier": 2.5,
            },
            {
                "value": "entire_room",
                "label": "Paint entire room",
                "description": "All walls in the room (ceiling optional)",
                "priceMultiplier": 6.0,
            },
            {
                "value": "entire_house",
                "label": "Paint entire house",
                "description": "Full interior or exterior repaint",
                "priceMultiplier": 20.0,
            },
        ],
        "required": True,
        "impactArea": "scope",
        "helpText": "If unsure, start with spot repair - you can always expand scope later",
    },
    {
        "id": "room_size",
        "question": "Approximate room size?",
        "questionType": "number",
        "unit": "sq ft",
        "minValue": 50,
        "maxValue": 5000,
        "required": False,
        "impactArea": "pricing",
        "helpText": "Helps provide accurate pricing. A typical bedroom is 120-150 sq ft.",
    },
    {
        "id": "ceiling_height",
        "question": "Ceiling height?",
        "questionType": "single_select",
        "options": [
            {"value": "standard", "label": "Standard (8-9 ft)", "priceMultiplier": 1.0},
            {"value": "tall", "label": "Tall (10-12 ft)", "priceMultiplier": 1.3},
            {"value": "vaulted", "label": "Vaulted/Cathedral (12+ ft)", "priceMultiplier": 1.6},
        ],
        "required": False,
        "impactArea": "pricing",
    },
    {
        "id": "include_ceiling",
        "question": "Include ceiling?",
        "questionType": "boolean",
        "defaultValue": False,
        "required": False,
        "impactArea": "scope",
    },
    {
        "id": "color_change",
        "question": "Is this a color change?",
        "questionType": "boolean",
        "defaultValue": False,
        "required": False,
        "helpText": "Color changes may require additional primer coats",
        "impactArea": "pricing",
    },
]

PAINTING_TIERS = [
    {
        "id": "painting_tier_a",
        "name": "Spot Repair & Blend",
        "description": "Patch, prime, and paint damaged areas only (10-30 sq ft)",
        "level": "minimum",
        "scopeItems": [
            "Prep damaged area",
            "Sand and prime affected spots",
            "Apply matching paint",
            "Blend with surrounding area",
            "Touch-up as needed",
        ],
        "estimatedDays": {"low": 1, "high": 1},
        "requiresConfirmation": False,
    },
    {
        "id": "painting_tier_b",
        "name": "One Wall Repaint",
        "description": "Full preparation and repaint of a single wall",
        "level": "recommended",
        "scopeItems": [
            "Protect floors and adjacent surfaces",
            "Fill holes and cracks",
            "Sand and prime wall",
            "Apply 2 coats of paint",
            "Clean up and touch-up",
        ],
        "estimatedDays": {"low": 1, "high": 2},
        "requiresConfirmation": False,
    },
    {
        "id": "painting_tier_c",
        "name": "Entire Room",
        "description": "Complete room repaint including all walls",
        "level": "premium",
        "scopeItems": [
            "Move/cover furniture",
            "Protect floors with drop cloths",
            "Repair all wall imperfections",
            "Prime as needed",
            "Apply 2 coats to all walls",
            "Paint trim and baseboards",
            "Ceiling paint (optional)",
            "Final cleanup",
        ],
        "estimatedDays": {"low": 2, "high": 4},
        "requiresConfirmation": True,
        "warnings": ["Ensure room dimensions are confirmed before final pricing"],
    },
]

PAINTING_UNKNOWNS = [
    {
        "id": "unknown-paint-scope",
        "description": "Extent of painting needed beyond photographed area",
        "impactsScope": True,
        "impactsPricing": True,
    },
    {
        "id": "unknown-color-change",
        "description": "Whether customer wants color change (affects primer coats)",
        "impactsScope": False,
        "impactsPricing": True,
    },
]

AMBIGUOUS_SCOPE = "Exact scope of work cannot be determined from photos alone"


def _issue_category(text: str) -> str:
    lowered = text.lower()
    if any(word in lowered for word in ("paint", "peel", "fad")):
        return "painting"
    if any(word in lowered for word in ("plumb", "pipe", "leak")):
        return "plumbing"
    if any(word in lowered for word in ("electric", "wire", "outlet")):
        return "electrical"
    if any(word in lowered for word in ("upgrade", "dated", "outdated")):
        return "upgrade"
    return "repair"


def _object_category(notes: str) -> str:
    lowered = notes.lower()
    if any(word in lowered for word in ("paint", "peel", "fad")):
        return "painting"
    if any(word in lowered for word in ("damage", "broken", "crack")):
        return "damage"
    if any(word in lowered for word in ("dated", "outdated", "old")):
        return "upgrade"
    return "repair"


def detect_painting_job(findings: List[Dict[str, Any]]) -> bool:
    for finding in findings:
        if finding["category"] == "painting":
            return True
        text = f"{finding['issue']} {finding.get('description') or ''}".lower()
        if any(keyword in text for keyword in PAINTING_KEYWORDS):
            return True
    return False


def scope_confirmation_reason(findings: List[Dict[str, Any]]) -> Optional[str]:
    """Why the scope has to be confirmed before pricing, or None."""
    if detect_painting_job(findings):
        return "Painting scope (spot repair vs. full room) cannot be determined from photos alone"
    low = sum(1 for finding in findings if finding["confidence"] < LOW_CONFIDENCE)
    if low > len(findings) / 2:
        return "Multiple findings have low confidence - please verify scope"
    return None


def aggregate_findings(photos: Iterable[MobileJobPhoto]) -> Dict[str, Any]:
    photos = list(photos)
    findings: Dict[str, Dict[str, Any]] = {}
    reasons: List[str] = []
    detected_trade: Optional[str] = None
    is_painting = False
    ambiguous = False
    confidences: List[float] = []

    def add(key: str, photo_id: int, **fields: Any) -> None:
        if key not in findings:
            findings[key] = {"id": key, **{name: value for name, value in fields.items() if value is not None}}
            findings[key]["photoIds"] = []
        findings[key]["photoIds"].append(photo_id)

    for photo in photos:
        data = photo.findings
        if not data:
            continue
        combined = data.get("combined") or {}
        llm_result = (data.get("llm") or {}).get("result") or {}
        confidence = combined.get("confidence")
        if confidence is not None:
            confidences.append(confidence)

        detected_trade = detected_trade or combined.get("detectedTrade") or llm_result.get("detectedTrade")
        if combined.get("isPaintingRelated") or llm_result.get("isPaintingRelated"):
            is_painting = True
        if combined.get("scopeAmbiguous") or llm_result.get("scopeAmbiguous"):
            ambiguous = True
        for reason in combined.get("clarificationReasons") or llm_result.get("clarificationReasons") or []:
            if reason not in reasons:
                reasons.append(reason)

        severity = SEVERITY_BY_ESTIMATE.get(
            llm_result.get("estimatedSeverity") or combined.get("estimatedSeverity") or ""
        )
        for damage in llm_result.get("damage") or []:
            add(
                f"damage:{damage.lower()}",
                photo.id,
                issue=damage,
                description=f"Detected damage: {damage}",
                confidence=confidence if confidence is not None else 0.6,
                category="damage",
                severity=severity,
            )
        for issue in llm_result.get("issues") or []:
            category = _issue_category(issue)
            is_painting = is_painting or category == "painting"
            add(
                f"issue:{issue.lower()}",
                photo.id,
                issue=issue,
                description=f"Issue detected: {issue}",
                confidence=confidence if confidence is not None else 0.7,
                category=category,
                severity=severity,
            )
        for obj in llm_result.get("objects") or []:
            notes = obj.get("notes")
            if not notes:
                continue
            name = obj.get("name") or "Item"
            category = _object_category(notes)
            is_painting = is_painting or category == "painting"
            add(
                f"object:{name.lower()}:{notes[:30].lower()}",
                photo.id,
                issue=f"{name} - {notes}",
                description=notes,
                confidence=confidence if confidence is not None else 0.65,
                category=category,
            )

    everything = list(findings.values())
    is_painting = is_painting or detect_painting_job(everything)

    unknowns: List[Dict[str, Any]] = []
    if ambiguous:
        unknowns.append({"id": "unknown-0", "description": AMBIGUOUS_SCOPE, "impactsScope": True, "impactsPricing": True})
    if is_painting:
        unknowns.extend(dict(unknown) for unknown in PAINTING_UNKNOWNS)

    painting = [finding["issue"] for finding in everything if finding["category"] == "painting"]
    damage = [finding["issue"] for finding in everything if finding["category"] == "damage"]
    if painting:
        problem: Optional[str] = "Address painting issues: " + ", ".join(painting[:2])
    elif damage:
        problem = "Repair damage: " + ", ".join(damage[:2])
    elif everything:
        problem = f"Address: {everything[0]['issue']}"
    else:
        problem = None

    return {
        "findings": sorted(everything, key=lambda finding: finding["confidence"], reverse=True)[:MAX_FINDINGS],
        "unknowns": unknowns,
        "scopeAmbiguous": ambiguous,
        "clarificationReasons": reasons,
        "detectedTrade": detected_trade or ("painting" if is_painting else None),
        "isPaintingJob": is_painting,
        "overallConfidence": sum(confidences) / len(confidences) if confidences else 0.5,
        "suggestedProblem": problem,
        "needsMorePhotos": needs_more_photos(photos),
    }


def clarifying_questions(
    findings: List[Dict[str, Any]],
    *,
    is_painting: bool,
    reasons: List[str],
    scope_reason: Optional[str] = None,
) -> List[Dict[str, Any]]:
    if is_painting:
        questions = [dict(question) for question in PAINTING_QUESTIONS]
    else:
        scope_level: Dict[str, Any] = {
            "id": "scope_level",
            "question": "What level of work are you looking for?",
            "questionType": "single_select",
            "options": [dict(option) for option in SCOPE_LEVEL_OPTIONS],
            "required": True,
            "impactArea": "scope",
        }
        if scope_reason:
            scope_level["helpText"] = f"Based on analysis: {scope_reason}"
        elif reasons:
            scope_level["helpText"] = "Clarification needed: " + "; ".join(reasons[:2])
        questions = [scope_level, dict(WORK_AREA_QUESTION)]
    if len(findings) >= 5:
        questions.append(dict(CONFIRM_ALL_QUESTION))
    return questions


def scope_tiers(findings: List[Dict[str, Any]], *, is_painting: bool) -> List[Dict[str, Any]]:
    """Minimum / recommended / premium scope options for the findings."""
    if is_painting:
        return [dict(tier) for tier in PAINTING_TIERS]

    issues = [finding["issue"] for finding in findings]
    critical = [
        finding["issue"]
        for finding in findings
        if finding.get("severity") == "high" or finding["category"] == "damage"
    ]
    return [
        {
            "id": "generic_minimum",
            "name": "Minimum Repair",
            "description": "Address critical issues only",
            "level": "minimum",
            "scopeItems": critical,
            "estimatedDays": {"low": 1, "high": 2},
            "requiresConfirmation": False,
        },
        {
            "id": "generic_recommended",
            "name": "Recommended",
            "description": "Address all identified issues",
            "level": "recommended",
            "scopeItems": issues,
            "estimatedDays": {"low": 2, "high": 4},
            "requiresConfirmation": False,
        },
        {
            "id": "generic_premium",
            "name": "Premium",
            "description": "Complete repairs plus preventive maintenance",
            "level": "premium",
            "scopeItems": issues + ["Preventive maintenance inspection", "Extended warranty coverage"],
            "estimatedDays": {"low": 3, "high": 5},
            "requiresConfirmation": True,
        },
    ]


def findings_summary(photos: Iterable[MobileJobPhoto]) -> Dict[str, Any]:
    photos = list(photos)
    ready = [photo for photo in photos if photo.findings_status == "ready"]
    done = sum(1 for photo in photos if photo.findings_status in ("ready", "failed"))

    if not photos or done < len(photos):
        return {
            "status": "analyzing" if photos else "no_photos",
            "findings": [],
            "unknowns": [],
            "needsClarification": False,
            "clarifyingQuestions": [],
            "overallConfidence": 0,
            "photosAnalyzed": done,
            "photosTotal": len(photos),
            "isPaintingJob": False,
        }

    aggregated = aggregate_findings(ready)
    findings = aggregated["findings"]
    is_painting = aggregated["isPaintingJob"]
    scope_reason = scope_confirmation_reason(findings)
    needs_clarification = bool(
        scope_reason or aggregated["scopeAmbiguous"] or is_painting or aggregated["clarificationReasons"]
    )

    summary: Dict[str, Any] = {
        "status": "ready",
        "findings": findings,
        "unknowns": aggregated["unknowns"],
        "needsClarification": needs_clarification,
        "clarifyingQuestions": clarifying_questions(
            findings,
            is_painting=is_painting,
            reasons=aggregated["clarificationReasons"],
            scope_reason=scope_reason,
        ),
        "suggestedTiers": scope_tiers(findings, is_painting=is_painting),
        "overallConfidence": aggregated["overallConfidence"],
        "photosAnalyzed": len(ready),
        "photosTotal": len(photos),
        "needsMorePhotos": aggregated["needsMorePhotos"],
        "isPaintingJob": is_painting,
    }
    for key in ("suggestedProblem", "detectedTrade"):
        if aggregated[key]:
            summary[key] = aggregated[key]
    return summary
