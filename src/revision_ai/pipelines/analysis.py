"""Analysis results and parsing of analysis-model output."""

from __future__ import annotations

import json
import logging
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any, Final

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from revision_ai.errors import ResponseParseError
from revision_ai.pipelines.context import ProcessingContext
from revision_ai.vision.markers import SegmentationMask

LOG = logging.getLogger(__name__)

DEFAULT_ANALYSIS_CONFIDENCE: Final[float] = 0.8
FALLBACK_CONFIDENCE: Final[float] = 0.75
FALLBACK_NOTES: Final[str] = "Fallback analysis - AI service unavailable"
HIGH_CONFIDENCE: Final[float] = 0.8
FAST_PROCESSING_MS: Final[int] = 5000


@dataclass(frozen=True)
class AiAnalysisResult:
    """What the analysis model made of the image.

    Attributes:
        identified_objects: Objects the model recognized in the marked areas.
        editing_prompt: Instruction handed to the image model.
        confidence: Model-reported confidence in [0, 1].
        processing_time_ms: Wall time of the analysis call.
        technical_notes: Free-text notes for the editor.
        safety_assessment: Model's content-safety statement.
        is_fallback: True when produced locally instead of by the model.
    """

    identified_objects: tuple[str, ...]
    editing_prompt: str
    confidence: float
    processing_time_ms: int = 0
    technical_notes: str | None = None
    safety_assessment: str | None = None
    is_fallback: bool = False

    @property
    def objects_summary(self) -> str:
        objs = list(self.identified_objects)
        if not objs:
            return "no objects"
        if len(objs) == 1:
            return objs[0]
        return f"{', '.join(objs[:-1])} and {objs[-1]}"

    @property
    def is_high_confidence(self) -> bool:
        return self.confidence >= HIGH_CONFIDENCE

    @property
    def was_fast(self) -> bool:
        return self.processing_time_ms < FAST_PROCESSING_MS

    def to_json(self) -> dict[str, Any]:
        return {
            "identifiedObjects": list(self.identified_objects),
            "editingPrompt": self.editing_prompt,
            "confidence": self.confidence,
            "processingTimeMs": self.processing_time_ms,
            "technicalNotes": self.technical_notes,
            "safetyAssessment": self.safety_assessment,
            "isFallback": self.is_fallback,
        }


class _AnalysisJson(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    identified_objects: list[str] = Field(default_factory=list, alias="identifiedObjects")
    editing_prompt: str = Field(alias="editingPrompt", min_length=1)
    confidence: float = Field(default=DEFAULT_ANALYSIS_CONFIDENCE, ge=0.0, le=1.0)
    technical_notes: str | None = Field(default=None, alias="technicalNotes")
    safety_assessment: str | None = Field(default=None, alias="safetyAssessment")

    @field_validator("identified_objects", mode="before")
    @classmethod
    def _coerce_objects(cls, v: Any) -> list[str]:
        if v is None:
            return []
        if isinstance(v, str):
            return [v]
        if isinstance(v, list):
            return [str(s).strip() for s in v if str(s).strip()]
        return []

    @field_validator("editing_prompt", mode="before")
    @classmethod
    def _strip_prompt(cls, v: Any) -> Any:
        if isinstance(v, str):
            return v.strip()
        return v

    @field_validator("confidence", mode="before")
    @classmethod
    def _default_confidence(cls, v: Any) -> Any:
        if v is None:
            return DEFAULT_ANALYSIS_CONFIDENCE
        return v


def _json_candidate(text: str, open_ch: str, close_ch: str) -> str | None:
    i = text.find(open_ch)
    j = text.rfind(close_ch)
    if i == -1 or j == -1 or j <= i:
        return None
    cand = text[i : j + 1]
    try:
        json.loads(cand)
    except json.JSONDecodeError:
        return None
    return cand


def extract_json(text: str) -> str:
    """Extract a JSON object or array from a possibly noisy model response."""
    if not text:
        return text
    # Common case: fenced JSON block
    if "```" in text:
        parts = text.split("```")
        for i in range(1, len(parts), 2):
            body = parts[i]
            first, _, rest = body.partition("\n")
            if first.strip().lower() in {"json", "application/json", ""}:
                body = rest
            body = body.strip()
            if body[:1] in {"{", "["} and body[-1:] in {"}", "]"}:
                return body
    stripped = text.strip()
    try:
        json.loads(stripped)
    except json.JSONDecodeError:
        pass
    else:
        return stripped
    # Whichever bracket opens first wins.
    obj_at = stripped.find("{")
    arr_at = stripped.find("[")
    order = [("{", "}"), ("[", "]")]
    if arr_at != -1 and (obj_at == -1 or arr_at < obj_at):
        order.reverse()
    for open_ch, close_ch in order:
        cand = _json_candidate(stripped, open_ch, close_ch)
        if cand is not None:
            return cand
    return text


def parse_analysis_response(text: str, processing_time_ms: int = 0) -> AiAnalysisResult:
    """Parse the analysis model's JSON reply.

    Raises:
        ResponseParseError: If the reply is not JSON, misses the editing
            prompt or has out-of-range values.
    """
    if not text or not text.strip():
        raise ResponseParseError("Analysis response is empty")
    try:
        parsed = _AnalysisJson.model_validate_json(extract_json(text))
    except ValidationError as e:
        raise ResponseParseError(f"Analysis response does not match expected JSON schema: {e}") from e
    return AiAnalysisResult(
        identified_objects=tuple(parsed.identified_objects),
        editing_prompt=parsed.editing_prompt,
        confidence=parsed.confidence,
        processing_time_ms=processing_time_ms,
        technical_notes=parsed.technical_notes,
        safety_assessment=parsed.safety_assessment,
    )


def is_json_payload(text: str) -> bool:
    """True when ``text`` carries a parseable JSON object or array."""
    if not text or not text.strip():
        return False
    try:
        data = json.loads(extract_json(text))
    except json.JSONDecodeError:
        return False
    return isinstance(data, (dict, list))


def parse_segmentation_response(text: str) -> list[SegmentationMask]:
    """Parse a segmentation/detection reply into masks. Never raises.

    Accepts a bare JSON list or an object wrapping the list under ``masks``
    or ``objects``. Entries that do not validate become parse-error
    sentinels; unparseable text yields an empty list.
    """
    if not text or not text.strip():
        return []
    try:
        data = json.loads(extract_json(text))
    except json.JSONDecodeError:
        LOG.warning("Segmentation response is not JSON (%d chars)", len(text))
        return []
    if isinstance(data, dict):
        items = data.get("masks", data.get("objects"))
        if items is None and "box_2d" in data:
            items = [data]
    else:
        items = data
    if not isinstance(items, list):
        return []
    return [SegmentationMask.from_json(item) for item in items]


def fallback_prompt(context: ProcessingContext) -> str:
    """Deterministic editing prompt built from the context alone."""
    descriptions = [m.describe() for m in context.markers]
    extra = (context.custom_instructions or "").strip()
    n = len(descriptions)
    if context.requires_markers:
        if context.processing_type == "backgroundChange":
            head = f"Replace the background around {n} marked subject(s), keeping the subjects intact."
        elif context.processing_type == "faceEdit":
            head = f"Apply the requested edit to {n} marked facial region(s) while preserving identity."
        else:
            head = (
                f"Remove {n} marked object(s) from this image using advanced inpainting. "
                "Fill the removed areas with background that matches the surrounding texture, "
                "lighting and perspective so the result looks natural."
            )
        lines = [head, *(f"- {d}" for d in descriptions)]
    else:
        lines = [
            {
                "enhance": "Enhance this image: improve exposure, contrast, sharpness and color balance.",
                "colorCorrection": "Correct the colors of this image: neutral white balance and natural tones.",
                "artistic": "Transform this image in an artistic style while keeping the composition.",
                "restoration": "Restore this image: remove scratches, noise and fading, and rebuild damaged areas.",
            }.get(context.processing_type, "Edit this image as requested while keeping it natural.")
        ]
    if extra:
        lines.append(f"Additional instructions: {extra}")
    return "\n".join(lines)


def fallback_analysis(context: ProcessingContext, processing_time_ms: int = 0) -> AiAnalysisResult:
    """Locally simulated analysis used when the model cannot be relied on."""
    objects: Sequence[str] = [m.label for m in context.markers] or ["marked object"]
    return AiAnalysisResult(
        identified_objects=tuple(objects),
        editing_prompt=fallback_prompt(context),
        confidence=FALLBACK_CONFIDENCE,
        processing_time_ms=processing_time_ms,
        technical_notes=FALLBACK_NOTES,
        safety_assessment="Content assumed safe",
        is_fallback=True,
    )
