"""Spatial primitives: points, boxes, polygons and scale conversion."""

from __future__ import annotations

import math
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any, Final

from shapely.geometry import Point, Polygon
from shapely.validation import make_valid

# Models report coordinates on an integer 0..1000 grid.
WIRE_SCALE: Final[float] = 1000.0


@dataclass(frozen=True)
class SpatialPoint:
    """A 2D point in normalized image space (0..1 on both axes).

    Attributes:
        x, y: Normalized coordinates, origin at the top-left corner.
        label: Optional human-readable tag.
        confidence: Optional score in [0, 1].
    """

    x: float
    y: float
    label: str | None = None
    confidence: float | None = None

    def distance_to(self, other: SpatialPoint) -> float:
        """Return the Euclidean distance to ``other``."""
        return math.hypot(self.x - other.x, self.y - other.y)

    def is_within_region(self, left: float, top: float, right: float, bottom: float) -> bool:
        """Inclusive rectangle test."""
        return left <= self.x <= right and top <= self.y <= bottom

    def to_json(self) -> dict[str, Any]:
        out: dict[str, Any] = {"x": self.x, "y": self.y}
        if self.label is not None:
            out["label"] = self.label
        if self.confidence is not None:
            out["confidence"] = self.confidence
        return out

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> SpatialPoint:
        conf = data.get("confidence")
        return cls(
            x=float(data["x"]),
            y=float(data["y"]),
            label=data.get("label"),
            confidence=None if conf is None else float(conf),
        )


@dataclass(frozen=True)
class BoundingBox2D:
    """Axis-aligned rectangle in normalized image space.

    ``x0 <= x1`` and ``y0 <= y1`` are expected but not enforced here. Boxes
    coming from the wire are normalized by :func:`box_2d_to_box`.
    """

    x0: float
    y0: float
    x1: float
    y1: float

    @property
    def width(self) -> float:
        return self.x1 - self.x0

    @property
    def height(self) -> float:
        return self.y1 - self.y0

    @property
    def area(self) -> float:
        return self.width * self.height

    @property
    def center(self) -> SpatialPoint:
        return SpatialPoint(x=(self.x0 + self.x1) / 2, y=(self.y0 + self.y1) / 2)

    def contains_point(self, point: SpatialPoint) -> bool:
        """Inclusive on every edge."""
        return self.x0 <= point.x <= self.x1 and self.y0 <= point.y <= self.y1

    def contains(self, other: BoundingBox2D) -> bool:
        return (
            self.x0 <= other.x0
            and self.y0 <= other.y0
            and self.x1 >= other.x1
            and self.y1 >= other.y1
        )

    def overlaps_with(self, other: BoundingBox2D) -> bool:
        """Strict overlap: boxes that only share an edge do not overlap."""
        return not (
            self.x1 <= other.x0
            or other.x1 <= self.x0
            or self.y1 <= other.y0
            or other.y1 <= self.y0
        )

    def overlap_percentage(self, other: BoundingBox2D) -> float:
        """Intersection over union in [0, 1]."""
        if not self.overlaps_with(other):
            return 0.0
        iw = min(self.x1, other.x1) - max(self.x0, other.x0)
        ih = min(self.y1, other.y1) - max(self.y0, other.y0)
        inter = iw * ih
        union = self.area + other.area - inter
        if inter <= 0 or union <= 0:
            return 0.0
        return inter / union

    def expand(self, margin: float) -> BoundingBox2D:
        """Grow the box by ``margin`` on every side, clamped to the unit square."""
        return BoundingBox2D(
            x0=_clamp(self.x0 - margin, 0.0, 1.0),
            y0=_clamp(self.y0 - margin, 0.0, 1.0),
            x1=_clamp(self.x1 + margin, 0.0, 1.0),
            y1=_clamp(self.y1 + margin, 0.0, 1.0),
        )

    def to_pixels(self, width: int, height: int) -> tuple[float, float, float, float]:
        """Return ``(x0, y0, x1, y1)`` in absolute pixel coordinates."""
        return self.x0 * width, self.y0 * height, self.x1 * width, self.y1 * height

    def to_map(self) -> dict[str, float]:
        return {"x0": self.x0, "y0": self.y0, "x1": self.x1, "y1": self.y1}

    @classmethod
    def from_map(cls, data: dict[str, Any]) -> BoundingBox2D:
        return cls(
            x0=float(data["x0"]),
            y0=float(data["y0"]),
            x1=float(data["x1"]),
            y1=float(data["y1"]),
        )


def _clamp(v: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, v))


def box_2d_to_box(values: Sequence[float]) -> BoundingBox2D:
    """Convert a model ``[y0, x0, y1, x1]`` box on the 0..1000 grid to a normalized box.

    Reversed edges are swapped so the result always satisfies ``x0 <= x1`` and
    ``y0 <= y1``.

    Raises:
        ValueError: If ``values`` does not hold exactly four numbers.
    """
    if len(values) != 4:
        raise ValueError(f"box_2d must have 4 values, got {len(values)}")
    y0, x0, y1, x1 = (float(v) / WIRE_SCALE for v in values)
    if x1 < x0:
        x0, x1 = x1, x0
    if y1 < y0:
        y0, y1 = y1, y0
    return BoundingBox2D(x0=x0, y0=y0, x1=x1, y1=y1)


def box_to_box_2d(box: BoundingBox2D) -> list[float]:
    """Inverse of :func:`box_2d_to_box`."""
    return [box.y0 * WIRE_SCALE, box.x0 * WIRE_SCALE, box.y1 * WIRE_SCALE, box.x1 * WIRE_SCALE]


def point_2d_to_fraction(values: Sequence[float]) -> tuple[float, float]:
    """Convert an ``[x, y]`` vertex on the 0..1000 grid to normalized coordinates."""
    if len(values) != 2:
        raise ValueError(f"polygon vertex must have 2 values, got {len(values)}")
    return float(values[0]) / WIRE_SCALE, float(values[1]) / WIRE_SCALE


def fraction_to_point_2d(vertex: tuple[float, float]) -> list[float]:
    return [vertex[0] * WIRE_SCALE, vertex[1] * WIRE_SCALE]


def point_in_polygon(x: float, y: float, polygon: Sequence[tuple[float, float]]) -> bool:
    """Test whether ``(x, y)`` lies inside ``polygon`` (boundary excluded).

    Coordinates may be in any unit as long as the point and polygon agree.
    Polygons with fewer than three vertices contain nothing. Self-intersecting
    outlines are repaired with ``make_valid`` before testing.
    """
    if len(polygon) < 3:
        return False
    poly = Polygon(polygon)
    if not poly.is_valid:
        poly = make_valid(poly)
    return bool(poly.contains(Point(x, y)))


def polygon_area(polygon: Sequence[tuple[float, float]]) -> float:
    """Area enclosed by ``polygon``; 0 for fewer than three vertices."""
    if len(polygon) < 3:
        return 0.0
    poly = Polygon(polygon)
    if not poly.is_valid:
        poly = make_valid(poly)
    return float(poly.area)


def relationship(a: BoundingBox2D, b: BoundingBox2D) -> str:
    """Describe where ``a`` lies relative to ``b``.

    Returns one of ``"contains"``, ``"inside"``, ``"above"``, ``"below"``,
    ``"left_of"`` or ``"right_of"``. The direction is chosen along the axis
    with the larger center offset.
    """
    if a.contains(b):
        return "contains"
    if b.contains(a):
        return "inside"
    ca, cb = a.center, b.center
    dx = ca.x - cb.x
    dy = ca.y - cb.y
    if abs(dy) >= abs(dx):
        return "above" if dy < 0 else "below"
    return "left_of" if dx < 0 else "right_of"
