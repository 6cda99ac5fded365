"""Convert free-hand annotation strokes into image markers."""

from __future__ import annotations

import logging
import math
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Final

from revision_ai.vision.geometry import BoundingBox2D, SpatialPoint
from revision_ai.vision.markers import ImageMarker, UserMarker

LOG = logging.getLogger(__name__)

DEFAULT_GROUPING_THRESHOLD: Final[float] = 0.15
MIN_OBJECT_SIZE: Final[float] = 0.08
MAX_INTERMEDIATE_SIZE: Final[float] = 0.5
MAX_OBJECT_SIZE: Final[float] = 0.8
DEFAULT_REMOVAL_PROMPT: Final[str] = "Remove the marked objects from this image"


@dataclass(frozen=True)
class AnnotationPoint:
    x: float
    y: float
    pressure: float = 1.0


@dataclass(frozen=True)
class AnnotationStroke:
    """One continuous free-hand stroke in normalized image space.

    Attributes:
        id: Stroke identifier.
        points: Sampled points, in drawing order.
        color: ARGB color as a 32-bit integer.
        stroke_width: Brush width in logical pixels.
        timestamp: When the stroke was drawn.
    """

    id: str
    points: tuple[AnnotationPoint, ...]
    color: int = 0xFFFF0000
    stroke_width: float = 5.0
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def centroid(self) -> tuple[float, float]:
        """Mean of the stroke points; (0.5, 0.5) for an empty stroke."""
        if not self.points:
            return 0.5, 0.5
        n = len(self.points)
        return sum(p.x for p in self.points) / n, sum(p.y for p in self.points) / n

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> AnnotationStroke:
        ts = data.get("timestamp")
        return cls(
            id=str(data["id"]),
            points=tuple(
                AnnotationPoint(x=float(p["x"]), y=float(p["y"]), pressure=float(p.get("pressure", 1.0)))
                for p in data.get("points", [])
            ),
            color=int(data.get("color", 0xFFFF0000)),
            stroke_width=float(data.get("stroke_width", data.get("strokeWidth", 5.0))),
            timestamp=datetime.fromisoformat(ts) if isinstance(ts, str) else datetime.now(timezone.utc),
        )


def _round_half_up(v: float) -> int:
    return int(math.floor(v + 0.5))


def _clamp(v: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, v))


def strokes_to_markers(strokes: Sequence[AnnotationStroke]) -> list[ImageMarker]:
    """One marker per stroke, placed at the stroke centroid."""
    markers: list[ImageMarker] = []
    for stroke in strokes:
        x, y = stroke.centroid()
        markers.append(
            UserMarker(
                id=stroke.id,
                label=f"stroke_{stroke.color & 0xFFFFFFFF:08x}_w{stroke.stroke_width:g}",
                point=SpatialPoint(x=x, y=y),
            )
        )
    LOG.debug("Converted %d strokes to %d point markers", len(strokes), len(markers))
    return markers


def group_nearby_strokes(
    strokes: Sequence[AnnotationStroke], threshold: float = DEFAULT_GROUPING_THRESHOLD
) -> list[list[AnnotationStroke]]:
    """Greedy single-pass grouping.

    Each unassigned stroke seeds a group and absorbs every later unassigned
    stroke whose centroid lies within ``threshold`` of the seed centroid.
    """
    groups: list[list[AnnotationStroke]] = []
    taken = [False] * len(strokes)
    centroids = [s.centroid() for s in strokes]
    for i, seed in enumerate(strokes):
        if taken[i]:
            continue
        taken[i] = True
        group = [seed]
        sx, sy = centroids[i]
        for j in range(i + 1, len(strokes)):
            if taken[j]:
                continue
            cx, cy = centroids[j]
            if math.hypot(sx - cx, sy - cy) <= threshold:
                group.append(strokes[j])
                taken[j] = True
        groups.append(group)
    return groups


def group_bounding_box(group: Sequence[AnnotationStroke]) -> BoundingBox2D:
    xs = [p.x for s in group for p in s.points]
    ys = [p.y for s in group for p in s.points]
    if not xs:
        return BoundingBox2D(0.5, 0.5, 0.5, 0.5)
    return BoundingBox2D(x0=min(xs), y0=min(ys), x1=max(xs), y1=max(ys))


def group_center(group: Sequence[AnnotationStroke]) -> tuple[float, float]:
    pts = [p for s in group for p in s.points]
    if not pts:
        return 0.5, 0.5
    return sum(p.x for p in pts) / len(pts), sum(p.y for p in pts) / len(pts)


def _average_points(group: Sequence[AnnotationStroke]) -> float:
    if not group:
        return 0.0
    return sum(len(s.points) for s in group) / len(group)


def _stroke_density(group: Sequence[AnnotationStroke], box: BoundingBox2D) -> float:
    area = box.width * box.height
    if area == 0:
        return 0.0
    total = sum(len(s.points) for s in group)
    return _clamp(total / (area * 10000), 0.0, 1.0)


def _padding_factor(group: Sequence[AnnotationStroke]) -> float:
    avg = _average_points(group)
    if avg > 20:
        return 1.5
    if avg > 10:
        return 1.3
    return 1.2


def estimate_object_size(
    group: Sequence[AnnotationStroke], box: BoundingBox2D
) -> tuple[float, float]:
    """Estimate ``(width, height)`` of the marked object from stroke coverage."""
    multiplier = _clamp(1.0 + _stroke_density(group, box) * 0.5, 1.0, 2.0)
    width = _clamp(box.width * multiplier, MIN_OBJECT_SIZE, MAX_INTERMEDIATE_SIZE)
    height = _clamp(box.height * multiplier, MIN_OBJECT_SIZE, MAX_INTERMEDIATE_SIZE)
    padding = _padding_factor(group)
    return (
        _clamp(width * padding, MIN_OBJECT_SIZE, MAX_OBJECT_SIZE),
        _clamp(height * padding, MIN_OBJECT_SIZE, MAX_OBJECT_SIZE),
    )


def position_description(x: float, y: float) -> str:
    if x < 0.33:
        horizontal = "on the left"
    elif x > 0.67:
        horizontal = "on the right"
    else:
        horizontal = "in the center"
    if y < 0.33:
        vertical = "top"
    elif y > 0.67:
        vertical = "bottom"
    else:
        vertical = "middle"
    return f"{vertical} {horizontal} of the image"


def size_description(width: float, height: float) -> str:
    area = width * height
    if area > 0.25:
        return "large"
    if area > 0.1:
        return "medium-sized"
    if area > 0.04:
        return "small"
    return "tiny"


def complexity_description(group: Sequence[AnnotationStroke]) -> str:
    if len(group) > 3:
        return "complex"
    if len(group) > 1:
        return "detailed"
    avg = _average_points(group)
    if avg > 20:
        return "intricate"
    if avg > 10:
        return "detailed"
    return "simple"


def create_intelligent_markers(
    strokes: Sequence[AnnotationStroke],
    grouping_threshold: float = DEFAULT_GROUPING_THRESHOLD,
) -> list[ImageMarker]:
    """Group nearby strokes into objects and emit one sized marker per object.

    Args:
        strokes: Annotation strokes in normalized coordinates.
        grouping_threshold: Maximum centroid distance for two strokes to be
            treated as the same object.

    Returns:
        Markers with ids ``object_<i>``, estimated width/height and a
        natural-language description.
    """
    if not strokes:
        return []
    markers: list[ImageMarker] = []
    for i, group in enumerate(group_nearby_strokes(strokes, grouping_threshold)):
        box = group_bounding_box(group)
        cx, cy = group_center(group)
        width, height = estimate_object_size(group, box)
        description = (
            f"Object to remove: {size_description(width, height)} "
            f"{complexity_description(group)} object located {position_description(cx, cy)}"
        )
        markers.append(
            UserMarker(
                id=f"object_{i}",
                label=f"marked_object_{i}",
                point=SpatialPoint(x=cx, y=cy),
                width=width,
                height=height,
                description=description,
            )
        )
    LOG.info("Grouped %d strokes into %d object markers", len(strokes), len(markers))
    return markers


def markers_to_ai_format(markers: Sequence[UserMarker]) -> list[dict[str, Any]]:
    """Describe point markers with percentage coordinates for prompt building."""
    out: list[dict[str, Any]] = []
    for m in markers:
        x, y = m.point.x, m.point.y
        w = m.width or 0.0
        h = m.height or 0.0
        out.append(
            {
                "x": x,
                "y": y,
                "width": w,
                "height": h,
                "description": m.description or m.label or "Object to remove",
                "coordinates": {
                    "center_x_percent": _round_half_up(x * 100),
                    "center_y_percent": _round_half_up(y * 100),
                    "width_percent": _round_half_up(w * 100),
                    "height_percent": _round_half_up(h * 100),
                },
                "bounding_box": {
                    "left": _round_half_up(_clamp((x - w / 2) * 100, 0, 100)),
                    "top": _round_half_up(_clamp((y - h / 2) * 100, 0, 100)),
                    "right": _round_half_up(_clamp((x + w / 2) * 100, 0, 100)),
                    "bottom": _round_half_up(_clamp((y + h / 2) * 100, 0, 100)),
                },
            }
        )
    return out


def annotation_summary(strokes: Sequence[AnnotationStroke]) -> list[str]:
    """Per-stroke analysis lines: point count, path density and coverage."""
    lines: list[str] = []
    for i, stroke in enumerate(strokes, start=1):
        box = group_bounding_box([stroke])
        coverage = max(0.0, box.area) * 100
        path = sum(
            math.hypot(b.x - a.x, b.y - a.y) for a, b in zip(stroke.points, stroke.points[1:])
        )
        density = len(stroke.points) / path if path > 0 else 0.0
        cx, cy = stroke.centroid()
        lines.append(
            f"Stroke {i}: {len(stroke.points)} points, path density {density:.1f}, "
            f"covers {coverage:.1f}% of the image, {position_description(cx, cy)}"
        )
    return lines


def prompt_from_annotations(
    strokes: Sequence[AnnotationStroke],
    instructions: str | None = None,
    *,
    base_prompt: str = DEFAULT_REMOVAL_PROMPT,
) -> str:
    """Build a plain removal prompt for a set of strokes."""
    if not strokes:
        return base_prompt
    lines = [base_prompt, "", f"Marked areas to remove: {len(strokes)} object(s)"]
    if instructions and instructions.strip():
        lines += ["", f"Additional instructions: {instructions.strip()}"]
    lines += [
        "",
        "Please remove the marked objects while maintaining:",
        "- Natural background continuity",
        "- Consistent lighting and shadows",
        "- Seamless texture matching",
        "- Overall image quality",
    ]
    return "\n".join(lines)
