"""Validated shape of the findings JSON stored on each photo."""

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

FINDINGS_VERSION = "v1"

Severity = Literal["spot", "partial", "full"]
StageStatus = Literal["pending", "ready", "failed"]


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class DetectorLabel(_CamelModel):
    name: str
    confidence: float = Field(ge=0, le=100)


class DetectorResult(_CamelModel):
    provider: Literal["aws"] = "aws"
    service: Literal["rekognition"] = "rekognition"
    model: Optional[str] = None
    labels: List[DetectorLabel] = Field(default_factory=list)


class ScopeOption(_CamelModel):
    id: str
    label: str
    description: Optional[str] = None


class PhotoObject(_CamelModel):
    name: str
    notes: Optional[str] = None


class VisionResult(_CamelModel):
    provider: Literal["openai"] = "openai"
    model: str = "unknown"
    schema_version: Literal["v1"] = "v1"
    confidence: float = Field(default=0.5, ge=0, le=1)
    kind_guess: Optional[str] = None
    labels: List[str] = Field(default_factory=list)
    objects: List[PhotoObject] = Field(default_factory=list)
    materials: List[str] = Field(default_factory=list)
    damage: List[str] = Field(default_factory=list)
    issues: List[str] = Field(default_factory=list)
    measurements: List[str] = Field(default_factory=list)
    needs_more_photos: List[str] = Field(default_factory=list)
    needs_clarification: bool = False
    scope_ambiguous: bool = False
    clarification_reasons: List[str] = Field(default_factory=list)
    suggested_scope_options: List[ScopeOption] = Field(default_factory=list)
    detected_trade: Optional[str] = None
    is_painting_related: bool = False
    estimated_severity: Optional[Severity] = None

    @model_validator(mode="before")
    @classmethod
    def _drop_nulls(cls, data: Any) -> Any:
        # models send null for empty lists as often as they omit the key
        if isinstance(data, dict):
            return {key: value for key, value in data.items() if value is not None}
        return data


class DetectorStage(_CamelModel):
    status: StageStatus
    result: Optional[DetectorResult] = None
    error: Optional[str] = None


class VisionStage(_CamelModel):
    status: StageStatus
    result: Optional[VisionResult] = None
    error: Optional[str] = None


class CombinedFindings(_CamelModel):
    confidence: float = Field(ge=0, le=1)
    summary_labels: List[str] = Field(default_factory=list)
    needs_more_photos: List[str] = Field(default_factory=list)
    needs_clarification: bool = False
    scope_ambiguous: bool = False
    clarification_reasons: List[str] = Field(default_factory=list)
    detected_trade: Optional[str] = None
    is_painting_related: bool = False
    estimated_severity: Optional[Severity] = None


class PhotoFindings(_CamelModel):
    version: Literal["v1"] = FINDINGS_VERSION
    image_url: str
    kind: str
    detector: DetectorStage
    llm: VisionStage
    combined: CombinedFindings


def _unique(items: List[str]) -> List[str]:
    seen = set()
    out = []
    for item in items:
        if item in seen:
            continue
        seen.add(item)
        out.append(item)
    return out


def build_findings(
    *,
    image_url: str,
    kind: str,
    detector: Optional[Dict[str, Any]],
    detector_error: Optional[str],
    llm: Optional[Dict[str, Any]],
    llm_error: Optional[str],
) -> Dict[str, Any]:
    """Combine detector and LLM output into validated findings JSON.

    At least one of ``detector`` / ``llm`` must be present. Raises
    ``pydantic.ValidationError`` when a provider returned something malformed.
    """
    detector_result = DetectorResult.model_validate(detector) if detector else None
    llm_result = VisionResult.model_validate(llm) if llm else None

    detector_labels = [label.name for label in detector_result.labels] if detector_result else []
    llm_confidence = llm_result.confidence if llm_result else 0.5

    combined = CombinedFindings(
        confidence=max(0.0, min(1.0, llm_confidence * 0.9 + 0.1)),
        summary_labels=_unique((llm_result.labels if llm_result else []) + detector_labels[:5])[:10],
        needs_more_photos=llm_result.needs_more_photos if llm_result else [],
        needs_clarification=llm_result.needs_clarification if llm_result else False,
        scope_ambiguous=llm_result.scope_ambiguous if llm_result else False,
        clarification_reasons=llm_result.clarification_reasons if llm_result else [],
        detected_trade=llm_result.detected_trade if llm_result else None,
        is_painting_related=llm_result.is_painting_related if llm_result else False,
        estimated_severity=llm_result.estimated_severity if llm_result else None,
    )

    findings = PhotoFindings(
        image_url=image_url,
        kind=kind,
        detector=(
            DetectorStage(status="ready", result=detector_result)
            if detector_result
            else DetectorStage(status="failed", error=detector_error or "REKOGNITION_FAILED")
        ),
        llm=(
            VisionStage(status="ready", result=llm_result)
            if llm_result
            else VisionStage(status="failed", error=llm_error or "GPT_VISION_FAILED")
        ),
        combined=combined,
    )
    return findings.model_dump(by_alias=True, mode="json")
