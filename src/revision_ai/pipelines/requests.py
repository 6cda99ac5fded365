"""Pure builders for the analysis and edit model requests."""

from __future__ import annotations

import base64
import json
from dataclasses import dataclass
from typing import Any, Final, Literal

from revision_ai.config import ModelSettings
from revision_ai.pipelines.context import (
    ProcessingContext,
    default_analysis_instructions,
    default_edit_instructions,
)
from revision_ai.vision.markers import UserMarker
from revision_ai.vision.strokes import markers_to_ai_format

AnalysisTask = Literal["analysis", "segmentation", "objectDetection"]

LOW_TEMPERATURE: Final[float] = 0.1
IMAGE_TEMPERATURE_MULTIPLIER: Final[float] = 0.75
IMAGE_TOP_K: Final[int] = 32
IMAGE_TOP_P: Final[float] = 0.9
JSON_MIME_TYPE: Final[str] = "application/json"

SEGMENTATION_SYSTEM_INSTRUCTION: Final[str] = (
    "You are an expert in computer vision and object segmentation. "
    "Provide accurate segmentation masks for the requested objects."
)

_ANALYSIS_RESPONSE_FORMAT: Final[str] = """\
RESPONSE FORMAT (JSON only):
{
  "identifiedObjects": ["object1", "object2"],
  "editingPrompt": "Remove [specific objects] from this [scene description]. Fill the area with [appropriate background description]. Ensure seamless blending by [specific technical instructions for lighting, shadows, perspective].",
  "confidence": 0.95,
  "technicalNotes": "Any specific challenges or recommendations",
  "safetyAssessment": "Content is safe for processing"
}

Requirements:
- Be specific about objects (e.g., "red bicycle" not "object")
- Include technical details for natural-looking results
- Confidence score between 0.0-1.0
- Keep editing prompt under 200 words but detailed enough for an AI editor"""

_SEGMENTATION_FORMAT: Final[str] = """\
Output a JSON list of segmentation masks where each entry contains:
- "box_2d": the 2D bounding box as [y0, x0, y1, x1], integers normalized to 0-1000
- "polygon": the object outline as a list of [x, y] points, integers normalized to 0-1000
- "label": a short descriptive text label
- "confidence": a score between 0.0 and 1.0
Output only the JSON list, no extra text."""

_DETECTION_FORMAT: Final[str] = """\
Output a JSON list of detected objects where each entry contains:
- "box_2d": the 2D bounding box as [y0, x0, y1, x1], integers normalized to 0-1000
- "label": a short descriptive text label
- "confidence": a score between 0.0 and 1.0
Output only the JSON list, no extra text."""

_TASK_TEXT: Final[dict[str, str]] = {
    "objectRemoval": "identify the objects marked by the user and describe how to remove them seamlessly",
    "backgroundChange": "identify the marked subject and describe how to replace the background around it",
    "faceEdit": "identify the marked facial regions and describe the requested edit",
    "enhance": "describe how to enhance this image",
    "colorCorrection": "describe the color corrections this image needs",
    "artistic": "describe how to apply the requested artistic style",
    "restoration": "describe how to restore this image",
    "custom": "describe how to apply the user's instructions",
}


@dataclass(frozen=True)
class GenerationConfig:
    temperature: float
    max_output_tokens: int
    top_k: int
    top_p: float
    response_mime_type: str | None = None
    response_modalities: tuple[str, ...] = ()

    def as_gemini(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "temperature": self.temperature,
            "maxOutputTokens": self.max_output_tokens,
            "topK": self.top_k,
            "topP": self.top_p,
        }
        if self.response_mime_type:
            out["response_mime_type"] = self.response_mime_type
        if self.response_modalities:
            out["responseModalities"] = list(self.response_modalities)
        return out


def _inline_parts(prompt: str, image: bytes, mime_type: str) -> list[dict[str, Any]]:
    return [
        {"text": prompt},
        {"inline_data": {"mime_type": mime_type, "data": base64.b64encode(image).decode("ascii")}},
    ]


@dataclass(frozen=True)
class AnalysisRequest:
    """A multimodal request for the analysis model."""

    model: str
    prompt: str
    image: bytes
    mime_type: str
    generation: GenerationConfig
    system_instruction: str | None
    task: AnalysisTask = "analysis"
    timeout_s: float = 30.0
    thinking_budget: int | None = None

    def as_gemini_body(self) -> dict[str, Any]:
        """Render the Gemini ``generateContent`` request body."""
        body: dict[str, Any] = {
            "contents": [{"parts": _inline_parts(self.prompt, self.image, self.mime_type)}],
            "generationConfig": self.generation.as_gemini(),
        }
        if self.system_instruction:
            body["systemInstruction"] = {"parts": [{"text": self.system_instruction}]}
        if self.thinking_budget is not None:
            body["thinking_config"] = {"thinking_budget": self.thinking_budget}
        return body


@dataclass(frozen=True)
class EditRequest:
    """A request for the image-generation model.

    System guidance is folded into ``prompt``; image-generation endpoints
    reject a separate system instruction.
    """

    model: str
    prompt: str
    image: bytes
    mime_type: str
    generation: GenerationConfig
    timeout_s: float = 30.0

    def as_gemini_body(self) -> dict[str, Any]:
        return {
            "contents": [{"parts": _inline_parts(self.prompt, self.image, self.mime_type)}],
            "generationConfig": self.generation.as_gemini(),
        }


def _marker_lines(context: ProcessingContext) -> list[str]:
    lines: list[str] = []
    for i, m in enumerate(context.markers, start=1):
        if not isinstance(m, UserMarker):
            lines.append(f"{i}. {m.describe()}")
            continue
        fmt = markers_to_ai_format([m])[0]
        if m.width is not None and m.height is not None:
            bb = fmt["bounding_box"]
            lines.append(
                f"{i}. {fmt['description']} (bounding box left {bb['left']}%, top {bb['top']}%, "
                f"right {bb['right']}%, bottom {bb['bottom']}%)"
            )
        else:
            c = fmt["coordinates"]
            lines.append(
                f"{i}. {m.describe()} (at {c['center_x_percent']}% from the left, "
                f"{c['center_y_percent']}% from the top)"
            )
    return lines


def analysis_prompt(context: ProcessingContext) -> str:
    """Task prompt for the analysis model, without the system guidance."""
    if context.processing_type == "segmentation":
        target = (context.custom_instructions or "").strip() or "all prominent objects"
        return f"Give the segmentation masks for {target} in this image.\n\n{_SEGMENTATION_FORMAT}"
    if context.processing_type == "objectDetection":
        target = (context.custom_instructions or "").strip() or "all prominent objects"
        return f"Detect {target} in this image.\n\n{_DETECTION_FORMAT}"

    task = _TASK_TEXT.get(context.processing_type, "describe the requested edit")
    lines = [
        f"TASK: Analyze this image and {task}. Then write a precise editing prompt for an AI image editor.",
        "",
        "CONTEXT:",
        f"- Processing type: {context.processing_type}",
        f"- Quality level: {context.quality_level}",
    ]
    if context.markers:
        lines += [f"- The user marked {len(context.markers)} area(s):", *_marker_lines(context)]
    if context.custom_instructions and context.custom_instructions.strip():
        lines.append(f'- User instructions: "{context.custom_instructions.strip()}"')
    if context.target_format:
        lines.append(f"- Target output format: {context.target_format}")
    lines += ["", _ANALYSIS_RESPONSE_FORMAT, "", "Analyze the image now and provide the JSON response."]
    return "\n".join(lines)


def build_analysis_request(
    context: ProcessingContext,
    image: bytes,
    settings: ModelSettings,
    *,
    mime_type: str = "image/jpeg",
    prompt_override: str | None = None,
) -> AnalysisRequest:
    """Build the analysis-stage request for ``context``.

    Args:
        context: The processing context.
        image: Encoded image bytes.
        settings: Model and generation settings.
        mime_type: MIME type of ``image``.
        prompt_override: Replaces the task text. Detection output format
            instructions are still appended.

    Returns:
        An :class:`AnalysisRequest`. Equal inputs give equal requests.
    """
    task: AnalysisTask = "analysis"
    if context.processing_type == "segmentation":
        task = "segmentation"
    elif context.processing_type == "objectDetection":
        task = "objectDetection"

    if prompt_override is not None:
        prompt = prompt_override
        if task == "segmentation":
            prompt = f"{prompt}\n\n{_SEGMENTATION_FORMAT}"
        elif task == "objectDetection":
            prompt = f"{prompt}\n\n{_DETECTION_FORMAT}"
    else:
        prompt = analysis_prompt(context)

    if task == "analysis":
        system = (
            context.analysis_instructions
            or settings.analysis_system_instruction
            or default_analysis_instructions(context.processing_type)
        )
        generation = GenerationConfig(
            temperature=settings.temperature,
            max_output_tokens=settings.max_output_tokens,
            top_k=settings.top_k,
            top_p=settings.top_p,
            response_mime_type=JSON_MIME_TYPE,
        )
        thinking = None
    else:
        system = context.analysis_instructions or SEGMENTATION_SYSTEM_INSTRUCTION
        generation = GenerationConfig(
            temperature=LOW_TEMPERATURE,
            max_output_tokens=settings.max_output_tokens,
            top_k=IMAGE_TOP_K,
            top_p=IMAGE_TOP_P,
            response_mime_type=JSON_MIME_TYPE,
        )
        thinking = 0 if task == "segmentation" else None

    return AnalysisRequest(
        model=settings.analysis_model,
        prompt=prompt,
        image=image,
        mime_type=mime_type,
        generation=generation,
        system_instruction=system,
        task=task,
        timeout_s=settings.request_timeout_seconds,
        thinking_budget=thinking,
    )


def edit_prompt(editing_prompt: str, guidance: str) -> str:
    return "\n".join(
        [
            guidance.strip(),
            "",
            "EDITING INSTRUCTIONS:",
            editing_prompt.strip(),
            "",
            "Return the edited image.",
        ]
    )


def build_edit_request(
    editing_prompt: str,
    image: bytes,
    settings: ModelSettings,
    *,
    mime_type: str = "image/jpeg",
    context: ProcessingContext | None = None,
) -> EditRequest:
    """Build the edit-stage request; guidance travels inside the prompt text."""
    if context is not None:
        guidance = (
            context.edit_instructions
            or settings.edit_system_instruction
            or default_edit_instructions(context.processing_type)
        )
    else:
        guidance = settings.edit_system_instruction or default_edit_instructions("custom")
    return EditRequest(
        model=settings.edit_model,
        prompt=edit_prompt(editing_prompt, guidance),
        image=image,
        mime_type=mime_type,
        generation=GenerationConfig(
            temperature=settings.temperature * IMAGE_TEMPERATURE_MULTIPLIER,
            max_output_tokens=settings.max_output_tokens * 2,
            top_k=IMAGE_TOP_K,
            top_p=IMAGE_TOP_P,
            response_modalities=("TEXT", "IMAGE"),
        ),
        timeout_s=settings.request_timeout_seconds,
    )


def describe_request(request: AnalysisRequest | EditRequest) -> str:
    """Short log-friendly summary (no image payload)."""
    summary = {
        "model": request.model,
        "prompt_chars": len(request.prompt),
        "image_bytes": len(request.image),
        "generation": request.generation.as_gemini(),
    }
    return json.dumps(summary, sort_keys=True)
