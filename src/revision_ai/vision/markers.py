"""Marker and region model: segmentation masks and the three marker variants."""

from __future__ import annotations

import base64
import binascii
import io
import math
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from typing import Any, ClassVar, Final

import numpy as np
from PIL import Image, UnidentifiedImageError
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from revision_ai.vision.geometry import (
    BoundingBox2D,
    SpatialPoint,
    box_2d_to_box,
    box_to_box_2d,
    fraction_to_point_2d,
    point_2d_to_fraction,
    point_in_polygon,
    polygon_area,
)

DEFAULT_MASK_CONFIDENCE: Final[float] = 0.8
PARSE_ERROR_LABEL: Final[str] = "parse_error_object"
USER_MARKER_RADIUS_PX: Final[float] = 20.0
HIGH_CONFIDENCE_THRESHOLD: Final[float] = 0.7

_DATA_URL_PREFIX: Final[str] = "data:image/png;base64,"


class _MaskJson(BaseModel):
    model_config = ConfigDict(extra="ignore")

    box_2d: tuple[float, float, float, float]
    label: str = Field(min_length=1)
    confidence: float = DEFAULT_MASK_CONFIDENCE
    polygon: list[tuple[float, float]] | None = None
    mask: bytes | None = None
    area_percentage: float | None = None

    @field_validator("label", mode="before")
    @classmethod
    def _strip_label(cls, v: Any) -> Any:
        if isinstance(v, str):
            return v.strip()
        return v

    @field_validator("confidence", mode="before")
    @classmethod
    def _coerce_confidence(cls, v: Any) -> float:
        if isinstance(v, bool):
            return DEFAULT_MASK_CONFIDENCE
        try:
            value = float(v)
        except (TypeError, ValueError):
            return DEFAULT_MASK_CONFIDENCE
        if math.isnan(value):
            return DEFAULT_MASK_CONFIDENCE
        return min(1.0, max(0.0, value))

    @field_validator("polygon", mode="before")
    @classmethod
    def _empty_polygon(cls, v: Any) -> Any:
        if isinstance(v, list) and not v:
            return None
        return v

    @field_validator("mask", mode="before")
    @classmethod
    def _decode_mask(cls, v: Any) -> bytes | None:
        if v is None or v == "":
            return None
        if not isinstance(v, str):
            raise ValueError("mask must be a base64 string")
        payload = v.removeprefix(_DATA_URL_PREFIX)
        try:
            return base64.b64decode(payload, validate=True)
        except binascii.Error as e:
            raise ValueError(f"mask is not valid base64: {e}") from e


@dataclass(frozen=True)
class SegmentationMask:
    """A labeled region reported by a segmentation or detection model.

    Attributes:
        box: Normalized bounding box.
        label: Object label.
        confidence: Score in [0, 1].
        polygon: Optional outline as normalized ``(x, y)`` vertices.
        mask_png: Optional legacy raster mask (PNG bytes covering ``box``).
        area_percentage: Optional share of the image covered, in percent.
    """

    box: BoundingBox2D
    label: str
    confidence: float = DEFAULT_MASK_CONFIDENCE
    polygon: tuple[tuple[float, float], ...] | None = None
    mask_png: bytes | None = None
    area_percentage: float | None = None

    @classmethod
    def parse_error(cls) -> SegmentationMask:
        """Sentinel returned for malformed model output."""
        return cls(box=BoundingBox2D(0.0, 0.0, 0.0, 0.0), label=PARSE_ERROR_LABEL, confidence=0.0)

    @property
    def is_parse_error(self) -> bool:
        return self.label == PARSE_ERROR_LABEL and self.confidence == 0.0

    @classmethod
    def from_json(cls, data: Any) -> SegmentationMask:
        """Build a mask from one model-reported JSON object.

        Never raises: malformed or incomplete input yields
        :meth:`parse_error`.
        """
        try:
            parsed = _MaskJson.model_validate(data)
            box = box_2d_to_box(parsed.box_2d)
            polygon = (
                tuple(point_2d_to_fraction(v) for v in parsed.polygon)
                if parsed.polygon is not None
                else None
            )
        except (ValidationError, ValueError):
            return cls.parse_error()
        return cls(
            box=box,
            label=parsed.label,
            confidence=parsed.confidence,
            polygon=polygon,
            mask_png=parsed.mask,
            area_percentage=parsed.area_percentage,
        )

    def to_json(self) -> dict[str, Any]:
        """Serialize in the model wire format (0..1000 grid)."""
        out: dict[str, Any] = {
            "box_2d": box_to_box_2d(self.box),
            "label": self.label,
            "confidence": self.confidence,
        }
        if self.polygon is not None:
            out["polygon"] = [fraction_to_point_2d(v) for v in self.polygon]
        if self.mask_png is not None:
            out["mask"] = _DATA_URL_PREFIX + base64.b64encode(self.mask_png).decode("ascii")
        if self.area_percentage is not None:
            out["area_percentage"] = self.area_percentage
        return out

    def to_map(self) -> dict[str, Any]:
        """Lossless internal form, normalized coordinates."""
        out: dict[str, Any] = {
            "box": self.box.to_map(),
            "label": self.label,
            "confidence": self.confidence,
        }
        if self.polygon is not None:
            out["polygon"] = [list(v) for v in self.polygon]
        if self.mask_png is not None:
            out["mask"] = base64.b64encode(self.mask_png).decode("ascii")
        if self.area_percentage is not None:
            out["area_percentage"] = self.area_percentage
        return out

    @classmethod
    def from_map(cls, data: dict[str, Any]) -> SegmentationMask:
        polygon = data.get("polygon")
        mask = data.get("mask")
        area = data.get("area_percentage")
        return cls(
            box=BoundingBox2D.from_map(data["box"]),
            label=str(data["label"]),
            confidence=float(data["confidence"]),
            polygon=tuple((float(x), float(y)) for x, y in polygon) if polygon is not None else None,
            mask_png=base64.b64decode(mask) if mask is not None else None,
            area_percentage=None if area is None else float(area),
        )

    def coverage(self) -> float:
        """Covered share of the image in percent."""
        if self.area_percentage is not None:
            return self.area_percentage
        if self.polygon is not None:
            return polygon_area(self.polygon) * 100.0
        return max(0.0, self.box.area) * 100.0

    def decode_raster(self) -> np.ndarray | None:
        """Decode the legacy raster mask to a boolean array, or None."""
        if self.mask_png is None:
            return None
        try:
            with Image.open(io.BytesIO(self.mask_png)) as img:
                arr = np.asarray(img.convert("L"))
        except (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError):
            return None
        return arr > 127

    def contains_point(self, x: float, y: float, image_width: int, image_height: int) -> bool:
        """Test an absolute pixel coordinate against the mask.

        Uses the polygon when present, then the raster mask resampled over the
        box, then the box alone.
        """
        if self.polygon is not None:
            absolute = [(vx * image_width, vy * image_height) for vx, vy in self.polygon]
            return point_in_polygon(x, y, absolute)

        x0, y0, x1, y1 = self.box.to_pixels(image_width, image_height)
        if not (x0 <= x <= x1 and y0 <= y <= y1):
            return False
        raster = self.decode_raster()
        if raster is None or raster.size == 0 or x1 <= x0 or y1 <= y0:
            return True
        rows, cols = raster.shape
        col = min(cols - 1, int((x - x0) / (x1 - x0) * cols))
        row = min(rows - 1, int((y - y0) / (y1 - y0) * rows))
        return bool(raster[row, col])


@dataclass(frozen=True)
class UserMarker:
    """A point the user placed (or derived from their strokes)."""

    kind: ClassVar[str] = "userDefined"

    id: str
    label: str
    point: SpatialPoint
    width: float | None = None
    height: float | None = None
    description: str | None = None

    def contains_point(self, x: float, y: float, image_width: int, image_height: int) -> bool:
        cx = self.point.x * image_width
        cy = self.point.y * image_height
        return math.hypot(x - cx, y - cy) <= USER_MARKER_RADIUS_PX

    def describe(self) -> str:
        if self.description:
            return self.description
        return f"{self.label} at ({self.point.x:.2f}, {self.point.y:.2f})"

    def to_ai_map(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "type": self.kind,
            "id": self.id,
            "label": self.label,
            "x": self.point.x,
            "y": self.point.y,
        }
        if self.point.label is not None:
            out["point_label"] = self.point.label
        if self.point.confidence is not None:
            out["confidence"] = self.point.confidence
        if self.width is not None:
            out["width"] = self.width
        if self.height is not None:
            out["height"] = self.height
        if self.description is not None:
            out["description"] = self.description
        return out


@dataclass(frozen=True)
class DetectionMarker:
    """An object detected by a model, as a box."""

    kind: ClassVar[str] = "aiDetection"

    id: str
    label: str
    box: BoundingBox2D
    confidence: float

    def contains_point(self, x: float, y: float, image_width: int, image_height: int) -> bool:
        x0, y0, x1, y1 = self.box.to_pixels(image_width, image_height)
        return x0 <= x <= x1 and y0 <= y <= y1

    def describe(self) -> str:
        c = self.box.center
        return f"{self.label} (confidence {self.confidence:.2f}) centered at ({c.x:.2f}, {c.y:.2f})"

    def to_ai_map(self) -> dict[str, Any]:
        return {
            "type": self.kind,
            "id": self.id,
            "label": self.label,
            "confidence": self.confidence,
            "box": self.box.to_map(),
        }


@dataclass(frozen=True)
class SegmentationMarker:
    """A segmentation mask promoted to a marker."""

    kind: ClassVar[str] = "aiSegmentation"

    id: str
    mask: SegmentationMask

    @property
    def label(self) -> str:
        return self.mask.label

    def contains_point(self, x: float, y: float, image_width: int, image_height: int) -> bool:
        return self.mask.contains_point(x, y, image_width, image_height)

    def describe(self) -> str:
        return f"{self.label} region covering {self.mask.coverage():.1f}% of the image"

    def to_ai_map(self) -> dict[str, Any]:
        return {"type": self.kind, "id": self.id, "label": self.label, "mask": self.mask.to_map()}


ImageMarker = UserMarker | DetectionMarker | SegmentationMarker


def marker_from_ai_map(data: dict[str, Any]) -> ImageMarker:
    """Rebuild a marker from :meth:`to_ai_map` output.

    Raises:
        ValueError: If ``type`` is missing or unknown.
    """
    kind = data.get("type")
    if kind == UserMarker.kind:
        conf = data.get("confidence")
        return UserMarker(
            id=str(data["id"]),
            label=str(data["label"]),
            point=SpatialPoint(
                x=float(data["x"]),
                y=float(data["y"]),
                label=data.get("point_label"),
                confidence=None if conf is None else float(conf),
            ),
            width=data.get("width"),
            height=data.get("height"),
            description=data.get("description"),
        )
    if kind == DetectionMarker.kind:
        return DetectionMarker(
            id=str(data["id"]),
            label=str(data["label"]),
            box=BoundingBox2D.from_map(data["box"]),
            confidence=float(data["confidence"]),
        )
    if kind == SegmentationMarker.kind:
        return SegmentationMarker(id=str(data["id"]), mask=SegmentationMask.from_map(data["mask"]))
    raise ValueError(f"Unknown marker type: {kind!r}")


def masks_at_point(
    masks: Iterable[SegmentationMask], x: float, y: float, image_width: int, image_height: int
) -> list[SegmentationMask]:
    return [m for m in masks if m.contains_point(x, y, image_width, image_height)]


def largest_mask(masks: Sequence[SegmentationMask]) -> SegmentationMask | None:
    if not masks:
        return None
    return max(masks, key=lambda m: m.coverage())


def high_confidence_masks(
    masks: Iterable[SegmentationMask], threshold: float = HIGH_CONFIDENCE_THRESHOLD
) -> list[SegmentationMask]:
    return [m for m in masks if m.confidence >= threshold]


@dataclass(frozen=True)
class SegmentationStats:
    count: int
    mean_confidence: float
    labels: tuple[str, ...]
    total_coverage: float


def segmentation_stats(masks: Sequence[SegmentationMask]) -> SegmentationStats:
    """Summarize a batch of masks (sentinels included)."""
    if not masks:
        return SegmentationStats(count=0, mean_confidence=0.0, labels=(), total_coverage=0.0)
    labels = tuple(sorted({m.label for m in masks}))
    return SegmentationStats(
        count=len(masks),
        mean_confidence=sum(m.confidence for m in masks) / len(masks),
        labels=labels,
        total_coverage=sum(m.coverage() for m in masks),
    )
