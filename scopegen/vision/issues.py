"""Turn per-photo findings into the issue list shown on the analyze screen."""

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from scopegen.db import MobileJobPhoto

MAX_ISSUES = 10
MAX_NEEDS_MORE_PHOTOS = 6
MIN_PHOTOS_FOR_SUGGESTIONS = 2

DETECTOR_PROBLEM_KEYWORDS = (
    "crack", "rust", "damage", "leak", "stain", "mold", "rot", "wear", "broken",
    "missing", "incomplete", "old", "worn", "faded", "peeling", "chipped", "dent",
)
LABEL_PROBLEM_INDICATORS = (
    "missing", "broken", "damaged", "worn", "dated", "old", "replace", "repair",
    "crack", "stain", "leak", "rust", "mold", "incomplete", "needs",
)


@dataclass
class DetectedIssue:
    id: str
    label: str
    confidence: float
    category: str  # damage, repair, maintenance, upgrade, inspection, other
    description: Optional[str] = None
    photo_ids: List[int] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["photoIds"] = data.pop("photo_ids")
        if data["description"] is None:
            data.pop("description")
        return data


def _issue_category(text: str) -> str:
    lowered = text.lower()
    if "missing" in lowered or "incomplete" in lowered:
        return "repair"
    if any(word in lowered for word in ("dated", "outdated", "replace", "upgrade")):
        return "upgrade"
    if any(word in lowered for word in ("safety", "hazard", "exposed")):
        return "damage"
    return "repair"


def _object_category(notes: str) -> str:
    lowered = notes.lower()
    if any(word in lowered for word in ("dated", "outdated", "old", "replace")):
        return "upgrade"
    if any(word in lowered for word in ("damage", "broken", "crack")):
        return "damage"
    return "repair"


def extract_issues(photos: Iterable[MobileJobPhoto]) -> List[DetectedIssue]:
    """Collect deduplicated issues from ready photos, highest confidence first."""
    issues: Dict[str, DetectedIssue] = {}

    def add(key: str, photo_id: int, **fields: Any) -> None:
        if key not in issues:
            issues[key] = DetectedIssue(id=key, **fields)
        issues[key].photo_ids.append(photo_id)

    for photo in photos:
        findings = photo.findings
        if not findings:
            continue
        combined = findings.get("combined") or {}
        llm_result = (findings.get("llm") or {}).get("result") or {}
        detector_labels = ((findings.get("detector") or {}).get("result") or {}).get("labels") or []
        confidence = combined.get("confidence")

        for damage in llm_result.get("damage") or []:
            add(
                f"damage:{damage.lower()}",
                photo.id,
                label=damage,
                description=f"Detected damage: {damage}",
                confidence=confidence if confidence is not None else 0.6,
                category="damage",
            )

        for issue in llm_result.get("issues") or []:
            add(
                f"issue:{issue.lower()}",
                photo.id,
                label=issue,
                description=f"Issue detected: {issue}",
                confidence=confidence if confidence is not None else 0.7,
                category=_issue_category(issue),
            )

        for obj in llm_result.get("objects") or []:
            notes = obj.get("notes")
            if not notes:
                continue
            name = obj.get("name") or "Item"
            add(
                f"repair:{name.lower()}:{notes.lower()[:30]}",
                photo.id,
                label=f"{name} - {notes}",
                description=notes,
                confidence=confidence if confidence is not None else 0.65,
                category=_object_category(notes),
            )

        for label in detector_labels[:5]:
            name = label.get("name") or ""
            lowered = name.lower()
            if not any(keyword in lowered for keyword in DETECTOR_PROBLEM_KEYWORDS):
                continue
            label_confidence = float(label.get("confidence") or 0.0)
            add(
                f"detected:{lowered}",
                photo.id,
                label=name,
                description=f"Detected in photo with {round(label_confidence)}% confidence",
                confidence=label_confidence / 100,
                category="inspection",
            )

        summary_labels = combined.get("summaryLabels") or llm_result.get("labels") or []
        for label in summary_labels[:5]:
            lowered = label.lower()
            if not any(indicator in lowered for indicator in LABEL_PROBLEM_INDICATORS):
                continue
            add(f"label:{lowered}", photo.id, label=label, confidence=0.7, category="other")

    ranked = sorted(issues.values(), key=lambda issue: issue.confidence, reverse=True)
    return ranked[:MAX_ISSUES]


def needs_more_photos(photos: Iterable[MobileJobPhoto]) -> List[str]:
    out: List[str] = []
    seen = set()
    for photo in photos:
        combined = (photo.findings or {}).get("combined") or {}
        for item in combined.get("needsMorePhotos") or []:
            normalized = item.strip()
            if not normalized or normalized.lower() in seen:
                continue
            seen.add(normalized.lower())
            out.append(normalized)
            if len(out) >= MAX_NEEDS_MORE_PHOTOS:
                return out
    return out


def suggested_problem(issues: List[DetectedIssue]) -> Optional[str]:
    damage = [issue for issue in issues if issue.category == "damage"]
    if damage:
        return "Address " + ", ".join(issue.label for issue in damage)
    repair = [issue for issue in issues if issue.category == "repair"]
    if repair:
        return f"Repair needed: {repair[0].label}"
    if issues:
        return f"Inspect and address: {issues[0].label}"
    return None


def suggestions_status(
    *,
    detected_issues: int,
    photos: int,
    has_suggestion_content: bool,
    is_processing: bool,
    is_gated: bool = False,
    has_error: bool = False,
) -> str:
    """Why the analyze screen does (or does not) have AI suggestions to show.

    Priority: available, gated, insufficient_photos, queued, error, none.
    """
    if has_suggestion_content or detected_issues > 0:
        return "available"
    if is_gated:
        return "gated"
    if 0 < photos < MIN_PHOTOS_FOR_SUGGESTIONS:
        return "insufficient_photos"
    if is_processing:
        return "queued"
    if has_error:
        return "error"
    return "none"
