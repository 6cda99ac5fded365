"""Processing context: what to do to an image, at what quality and speed."""

from __future__ import annotations

import dataclasses
import math
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any, Final, Literal

from revision_ai.errors import ContextValidationError
from revision_ai.vision.markers import ImageMarker

ProcessingType = Literal[
    "enhance",
    "artistic",
    "restoration",
    "colorCorrection",
    "objectRemoval",
    "backgroundChange",
    "faceEdit",
    "segmentation",
    "objectDetection",
    "custom",
]
QualityLevel = Literal["draft", "standard", "high", "professional"]
PerformancePriority = Literal["speed", "balanced", "quality"]

PROCESSING_TYPES: Final[frozenset[str]] = frozenset(
    {
        "enhance",
        "artistic",
        "restoration",
        "colorCorrection",
        "objectRemoval",
        "backgroundChange",
        "faceEdit",
        "segmentation",
        "objectDetection",
        "custom",
    }
)
QUALITY_LEVELS: Final[frozenset[str]] = frozenset({"draft", "standard", "high", "professional"})
PERFORMANCE_PRIORITIES: Final[frozenset[str]] = frozenset({"speed", "balanced", "quality"})

MARKER_TYPES: Final[frozenset[str]] = frozenset({"objectRemoval", "backgroundChange", "faceEdit"})
DETECTION_TYPES: Final[frozenset[str]] = frozenset({"segmentation", "objectDetection"})
MIN_CUSTOM_INSTRUCTIONS: Final[int] = 10

_BASE_SECONDS: Final[dict[str, int]] = {
    "enhance": 5,
    "colorCorrection": 8,
    "objectDetection": 8,
    "segmentation": 10,
    "artistic": 15,
    "restoration": 20,
    "custom": 20,
    "objectRemoval": 25,
    "backgroundChange": 30,
    "faceEdit": 35,
}
_QUALITY_MULTIPLIER: Final[dict[str, float]] = {
    "draft": 0.5,
    "standard": 1.0,
    "high": 1.5,
    "professional": 2.5,
}
_PRIORITY_MULTIPLIER: Final[dict[str, float]] = {
    "speed": 0.7,
    "balanced": 1.0,
    "quality": 1.8,
}

_DEFAULT_ANALYSIS_INSTRUCTIONS: Final[str] = """\
You are an expert AI image analysis system specialized in photo editing.

Your task is to analyze the uploaded image and the user's requested changes, then create a clear, specific prompt for an image editing AI.

Guidelines:
- Be specific about colors, styles, objects, and spatial relationships
- Include technical details like lighting, composition, and style
- Maintain the original image's essence while incorporating requested changes"""

_ANALYSIS_FOCUS: Final[dict[str, str]] = {
    "objectRemoval": "Focus on object boundaries, background reconstruction, lighting and shadows.",
    "backgroundChange": "Focus on subject boundaries, hair and edge detail, and matching light direction.",
    "faceEdit": "Focus on facial features, skin texture and keeping the person's identity intact.",
    "enhance": "Focus on exposure, contrast, sharpness and color balance.",
    "colorCorrection": "Focus on white balance, color casts and tonal range.",
    "artistic": "Focus on the requested style and how it maps onto the scene's composition.",
    "restoration": "Focus on damage such as scratches, noise, fading and missing regions.",
    "segmentation": "Focus on precise object outlines.",
    "objectDetection": "Focus on locating every distinct object.",
    "custom": "Focus on the user's instructions.",
}

_DEFAULT_EDIT_INSTRUCTIONS: Final[str] = """\
You are an expert AI image editor. Edit the provided image based on the instructions below:

1. Generate a new version of the image with the requested edits applied
2. If removing objects: use content-aware reconstruction to fill the space naturally
3. If enhancing: improve lighting, contrast, color balance, and composition
4. Maintain original image resolution and quality
5. Preserve overall composition and visual coherence
6. Apply changes seamlessly and realistically

Return the edited image directly as the output."""


def default_analysis_instructions(processing_type: str) -> str:
    focus = _ANALYSIS_FOCUS.get(processing_type, "")
    return f"{_DEFAULT_ANALYSIS_INSTRUCTIONS}\n- {focus}" if focus else _DEFAULT_ANALYSIS_INSTRUCTIONS


def default_edit_instructions(processing_type: str) -> str:
    focus = _ANALYSIS_FOCUS.get(processing_type, "")
    return f"{_DEFAULT_EDIT_INSTRUCTIONS}\n{focus}" if focus else _DEFAULT_EDIT_INSTRUCTIONS


@dataclass(frozen=True)
class ProcessingContext:
    """Immutable description of one editing job.

    Plain construction never raises, so an invalid context can still reach
    the pipeline and be rejected there. Use :meth:`create` or the presets to
    validate up front.

    Attributes:
        processing_type: Operation to perform.
        quality_level: Requested output quality.
        performance_priority: Speed/quality trade-off.
        markers: User- or model-provided regions of interest.
        custom_instructions: Free-text instructions from the user.
        target_format: Optional output format hint (e.g. "png").
        prompt_system_instructions: Overrides the analysis system guidance.
        edit_system_instructions: Overrides the edit guidance.
    """

    processing_type: ProcessingType
    quality_level: QualityLevel = "standard"
    performance_priority: PerformancePriority = "balanced"
    markers: tuple[ImageMarker, ...] = ()
    custom_instructions: str | None = None
    target_format: str | None = None
    prompt_system_instructions: str | None = None
    edit_system_instructions: str | None = None

    @classmethod
    def create(
        cls,
        processing_type: ProcessingType,
        *,
        quality_level: QualityLevel = "standard",
        performance_priority: PerformancePriority = "balanced",
        markers: Sequence[ImageMarker] = (),
        custom_instructions: str | None = None,
        target_format: str | None = None,
        prompt_system_instructions: str | None = None,
        edit_system_instructions: str | None = None,
    ) -> ProcessingContext:
        """Build and validate a context.

        Raises:
            ContextValidationError: If any rule in :meth:`violations` fails.
        """
        ctx = cls(
            processing_type=processing_type,
            quality_level=quality_level,
            performance_priority=performance_priority,
            markers=tuple(markers),
            custom_instructions=custom_instructions,
            target_format=target_format,
            prompt_system_instructions=prompt_system_instructions,
            edit_system_instructions=edit_system_instructions,
        )
        ctx.validate()
        return ctx

    @classmethod
    def quick_enhance(cls) -> ProcessingContext:
        return cls.create("enhance", quality_level="standard", performance_priority="speed")

    @classmethod
    def professional_edit(cls, processing_type: ProcessingType = "enhance", **kwargs: Any) -> ProcessingContext:
        return cls.create(
            processing_type, quality_level="professional", performance_priority="quality", **kwargs
        )

    @classmethod
    def artistic_transform(cls, custom_instructions: str | None = None) -> ProcessingContext:
        return cls.create(
            "artistic",
            quality_level="high",
            performance_priority="balanced",
            custom_instructions=custom_instructions,
        )

    @classmethod
    def restoration(cls) -> ProcessingContext:
        return cls.create("restoration", quality_level="high", performance_priority="quality")

    @classmethod
    def segmentation(cls, custom_instructions: str | None = None) -> ProcessingContext:
        return cls.create(
            "segmentation",
            quality_level="high",
            performance_priority="quality",
            custom_instructions=custom_instructions,
        )

    @classmethod
    def object_detection(cls, custom_instructions: str | None = None) -> ProcessingContext:
        return cls.create(
            "objectDetection",
            quality_level="standard",
            performance_priority="balanced",
            custom_instructions=custom_instructions,
        )

    @classmethod
    def object_removal(
        cls, markers: Sequence[ImageMarker], custom_instructions: str | None = None
    ) -> ProcessingContext:
        return cls.create(
            "objectRemoval",
            quality_level="high",
            performance_priority="quality",
            markers=markers,
            custom_instructions=custom_instructions,
        )

    @property
    def requires_markers(self) -> bool:
        return self.processing_type in MARKER_TYPES

    @property
    def is_detection(self) -> bool:
        return self.processing_type in DETECTION_TYPES

    def violations(self) -> list[str]:
        """Every rule the context breaks; empty when valid."""
        out: list[str] = []
        if self.processing_type not in PROCESSING_TYPES:
            out.append(f"Unknown processing type: {self.processing_type!r}")
        if self.quality_level not in QUALITY_LEVELS:
            out.append(f"Unknown quality level: {self.quality_level!r}")
        if self.performance_priority not in PERFORMANCE_PRIORITIES:
            out.append(f"Unknown performance priority: {self.performance_priority!r}")

        if self.processing_type == "custom":
            text = (self.custom_instructions or "").strip()
            if len(text) < MIN_CUSTOM_INSTRUCTIONS:
                out.append(
                    f"Custom processing requires at least {MIN_CUSTOM_INSTRUCTIONS} "
                    f"characters of instructions (got {len(text)})"
                )
        if self.requires_markers and not self.markers:
            out.append(f"{self.processing_type} requires at least one marker")

        if self.quality_level == "professional" and self.performance_priority == "speed":
            out.append("Professional quality cannot be combined with speed priority")
        if self.processing_type == "faceEdit" and self.performance_priority == "speed":
            out.append("Face editing cannot be combined with speed priority")
        if self.processing_type == "restoration" and self.quality_level == "draft":
            out.append("Restoration requires at least standard quality")
        return out

    @property
    def is_valid(self) -> bool:
        return not self.violations()

    def validate(self) -> None:
        """Raise :class:`ContextValidationError` if the context is invalid."""
        problems = self.violations()
        if problems:
            raise ContextValidationError("; ".join(problems), violations=problems)

    @property
    def estimated_processing_time_seconds(self) -> int:
        base = _BASE_SECONDS.get(self.processing_type, 20)
        q = _QUALITY_MULTIPLIER.get(self.quality_level, 1.0)
        p = _PRIORITY_MULTIPLIER.get(self.performance_priority, 1.0)
        return int(math.floor(base * q * p + 0.5 + 1e-9))

    @property
    def analysis_instructions(self) -> str | None:
        """Caller override for the analysis guidance, if non-blank."""
        if self.prompt_system_instructions and self.prompt_system_instructions.strip():
            return self.prompt_system_instructions
        return None

    @property
    def edit_instructions(self) -> str | None:
        if self.edit_system_instructions and self.edit_system_instructions.strip():
            return self.edit_system_instructions
        return None

    def replace(self, **changes: Any) -> ProcessingContext:
        """Copy with the given fields changed."""
        if "markers" in changes:
            changes["markers"] = tuple(changes["markers"])
        return dataclasses.replace(self, **changes)
