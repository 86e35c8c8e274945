"""Scope-of-work enhancement for drafted proposals."""

import json
import logging
import os
from dataclasses import dataclass, field
from functools import lru_cache
from typing import List, Optional

from openai import OpenAI

from scopegen import monitoring

logger = logging.getLogger("agents.scope_writer")


@dataclass
class EnhanceScopeResult:
    success: bool
    enhanced_scope: List[str]
    error: Optional[str] = None
    model: Optional[str] = None
    notes: List[str] = field(default_factory=list)


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


def _build_prompt(
    job_type_name: str,
    base_scope: List[str],
    client_name: Optional[str],
    address: Optional[str],
    job_notes: Optional[str],
) -> str:
    lines = [
        "You are a senior estimator at a contracting firm writing a bid-winning scope of work.",
        "Rewrite the scope below as precise, professional line items. Use industry terminology,",
        "active voice, clear scope boundaries and language that protects against hidden conditions.",
        "",
        "PROJECT DETAILS:",
        f"- Job Type: {job_type_name}",
    ]
    if client_name:
        lines.append(f"- Client: {client_name}")
    if address:
        lines.append(f"- Location: {address}")
    if job_notes:
        lines.extend(["", "CONTRACTOR'S NOTES FROM SITE VISIT:", job_notes])
    lines.extend(["", "CURRENT SCOPE:"])
    lines.extend(f"{index}. {item}" for index, item in enumerate(base_scope, start=1))
    lines.extend(
        [
            "",
            'Respond with JSON only: {"scope": ["line item", ...]} containing 6 to 14 items.',
        ]
    )
    return "\n".join(lines)


def _parse_scope(raw: str) -> List[str]:
    data = json.loads(raw)
    items = data.get("scope") if isinstance(data, dict) else data
    if not isinstance(items, list):
        raise ValueError("scope response is not a list")
    scope = [str(item).strip() for item in items if str(item).strip()]
    if not scope:
        raise ValueError("scope response is empty")
    return scope


def enhance_scope(
    job_type_name: str,
    base_scope: List[str],
    *,
    client_name: Optional[str] = None,
    address: Optional[str] = None,
    job_notes: Optional[str] = None,
) -> EnhanceScopeResult:
    """Rewrite a template scope with the LLM, falling back to the base scope.

    Args:
        job_type_name: Human name of the job type ("Full Bathroom Remodel").
        base_scope: Template scope lines.
        client_name: Optional client name for personalisation.
        address: Optional job-site address.
        job_notes: Contractor notes, vision labels and selected issues.

    Returns:
        EnhanceScopeResult: ``success`` is False whenever the base scope was kept.
    """
    if not job_type_name:
        return EnhanceScopeResult(False, list(base_scope), error="Job type name is required")
    if not base_scope:
        return EnhanceScopeResult(False, list(base_scope), error="Base scope must be a non-empty list")

    client = _get_client()
    if not client:
        return EnhanceScopeResult(False, list(base_scope), error="OPENAI_API_KEY not configured")

    model = os.getenv("OPENAI_SCOPE_MODEL", "gpt-4o-mini")
    prompt = _build_prompt(job_type_name, base_scope, client_name, address, job_notes)
    try:
        response = client.chat.completions.create(
            model=model,
            messages=[{"role": "user", "content": prompt}],
            response_format={"type": "json_object"},
            temperature=0.4,
        )
        scope = _parse_scope(response.choices[0].message.content or "")
    except Exception as exc:
        monitoring.capture_exception(exc)
        logger.warning("Scope enhancement failed; keeping template scope: %s", exc)
        return EnhanceScopeResult(False, list(base_scope), error=str(exc), model=model)

    return EnhanceScopeResult(True, scope, model=model)
