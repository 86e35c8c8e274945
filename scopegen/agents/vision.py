"""LLM vision analysis of a single job-site photo."""

import json
import os
from functools import lru_cache
from typing import Any, Dict, List, Optional

from openai import OpenAI

from scopegen import monitoring

SCHEMA_VERSION = "v1"

SYSTEM_PROMPT = (
    "You are a construction estimator reviewing a job-site photo for a contractor. "
    "Identify what is visible, materials, damage, issues that need repair or replacement, "
    "and measurements you can infer. Be conservative: if the photo is unclear or the scope "
    "is ambiguous, say so and list the extra photos that would resolve it."
)

RESPONSE_SHAPE = {
    "confidence": "number 0-1",
    "kindGuess": "string or null",
    "labels": ["string"],
    "objects": [{"name": "string", "notes": "string or null"}],
    "materials": ["string"],
    "damage": ["string"],
    "issues": ["string"],
    "measurements": ["string"],
    "needsMorePhotos": ["string"],
    "needsClarification": "boolean",
    "scopeAmbiguous": "boolean",
    "clarificationReasons": ["string"],
    "suggestedScopeOptions": [{"id": "string", "label": "string", "description": "string or null"}],
    "detectedTrade": "string or null",
    "isPaintingRelated": "boolean",
    "estimatedSeverity": "spot | partial | full | null",
}


@lru_cache(maxsize=1)
def _get_client() -> Optional[OpenAI]:
    api_key = os.getenv("OPENAI_API_KEY")
    if not api_key:
        return None
    try:
        return OpenAI(api_key=api_key, timeout=60.0)
    except Exception as exc:
        monitoring.capture_exception(exc)
        return None


def _user_prompt(kind: str, detector_labels: List[str]) -> str:
    hints = ", ".join(detector_labels[:15]) if detector_labels else "none"
    return (
        f"Photo kind: {kind}\n"
        f"Label-detector hints: {hints}\n\n"
        "Respond with JSON only, using exactly these keys:\n"
        f"{json.dumps(RESPONSE_SHAPE)}"
    )


def _extract_json(raw: str) -> Dict[str, Any]:
    raw = raw.strip()
    if raw.startswith("```"):
        raw = raw.strip("`")
        if raw.lower().startswith("json"):
            raw = raw[4:]
    data = json.loads(raw)
    if not isinstance(data, dict):
        raise ValueError("vision response is not an object")
    return data


def analyze_photo(image_url: str, kind: str, detector_labels: Optional[List[str]] = None) -> Dict[str, Any]:
    """Ask the vision model about one photo.

    Raises when the model is unavailable or returns something unparseable; the
    caller decides whether the detector result alone is enough.
    """
    client = _get_client()
    if not client:
        raise RuntimeError("OPENAI_API_KEY not configured")

    model = os.getenv("OPENAI_VISION_MODEL", "gpt-4o-mini")
    response = client.chat.completions.create(
        model=model,
        messages=[
            {"role": "system", "content": SYSTEM_PROMPT},
            {
                "role": "user",
                "content": [
                    {"type": "text", "text": _user_prompt(kind, detector_labels or [])},
                    {"type": "image_url", "image_url": {"url": image_url, "detail": "low"}},
                ],
            },
        ],
        response_format={"type": "json_object"},
        temperature=0.2,
    )
    data = _extract_json(response.choices[0].message.content or "")
    data["provider"] = "openai"
    data["model"] = model
    data["schemaVersion"] = SCHEMA_VERSION
    return data
