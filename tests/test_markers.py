from __future__ import annotations

import base64
import io
import struct
import zlib

import numpy as np
import pytest
from PIL import Image

from revision_ai.vision.geometry import BoundingBox2D, SpatialPoint
from revision_ai.vision.markers import (
    PARSE_ERROR_LABEL,
    DetectionMarker,
    SegmentationMarker,
    SegmentationMask,
    UserMarker,
    high_confidence_masks,
    largest_mask,
    marker_from_ai_map,
    masks_at_point,
    segmentation_stats,
)


def _mask_png(arr: np.ndarray) -> bytes:
    buf = io.BytesIO()
    Image.fromarray(arr.astype(np.uint8)).save(buf, format="PNG")
    return buf.getvalue()


def test_mask_from_json_converts_wire_scale() -> None:
    m = SegmentationMask.from_json(
        {
            "box_2d": [100, 200, 500, 600],
            "label": " cat ",
            "confidence": 0.9,
            "polygon": [[200, 100], [600, 100], [600, 500], [200, 500]],
        }
    )
    assert m.label == "cat"
    assert m.confidence == pytest.approx(0.9)
    assert m.box == BoundingBox2D(0.2, 0.1, 0.6, 0.5)
    assert m.polygon == ((0.2, 0.1), (0.6, 0.1), (0.6, 0.5), (0.2, 0.5))
    assert not m.is_parse_error


@pytest.mark.parametrize("conf", [None, "high", [], True])
def test_mask_confidence_defaults_when_missing_or_unparseable(conf: object) -> None:
    data: dict[str, object] = {"box_2d": [0, 0, 10, 10], "label": "x"}
    if conf is not None:
        data["confidence"] = conf
    assert SegmentationMask.from_json(data).confidence == pytest.approx(0.8)


def test_mask_confidence_is_clamped() -> None:
    m = SegmentationMask.from_json({"box_2d": [0, 0, 10, 10], "label": "x", "confidence": 7})
    assert m.confidence == 1.0


@pytest.mark.parametrize(
    "data",
    [
        None,
        "not an object",
        [],
        {},
        {"label": "no box"},
        {"box_2d": [0, 0, 10], "label": "short box"},
        {"box_2d": [0, 0, 10, 10]},
        {"box_2d": [0, 0, 10, 10], "label": "   "},
        {"box_2d": [0, 0, 10, 10], "label": "x", "polygon": [[1, 2, 3]]},
        {"box_2d": [0, 0, 10, 10], "label": "x", "mask": "%%%not-base64%%%"},
        {"box_2d": ["a", "b", "c", "d"], "label": "x"},
    ],
)
def test_mask_from_json_never_raises(data: object) -> None:
    m = SegmentationMask.from_json(data)
    assert m.label == PARSE_ERROR_LABEL
    assert m.confidence == 0.0
    assert m.is_parse_error


def test_mask_strips_data_url_prefix() -> None:
    png = _mask_png(np.full((4, 4), 255))
    encoded = base64.b64encode(png).decode("ascii")
    a = SegmentationMask.from_json({"box_2d": [0, 0, 500, 500], "label": "x", "mask": encoded})
    b = SegmentationMask.from_json(
        {"box_2d": [0, 0, 500, 500], "label": "x", "mask": "data:image/png;base64," + encoded}
    )
    assert a.mask_png == png
    assert b.mask_png == png


def test_mask_polygon_containment_uses_pixels() -> None:
    # Triangle covering the upper-left half of the box.
    m = SegmentationMask(
        box=BoundingBox2D(0.0, 0.0, 1.0, 1.0),
        label="tri",
        polygon=((0.0, 0.0), (1.0, 0.0), (0.0, 1.0)),
    )
    assert m.contains_point(20, 20, 200, 100)
    assert not m.contains_point(180, 90, 200, 100)


def test_mask_without_polygon_falls_back_to_box() -> None:
    m = SegmentationMask(box=BoundingBox2D(0.25, 0.25, 0.75, 0.75), label="b")
    assert m.contains_point(50, 50, 100, 100)
    assert m.contains_point(25, 75, 100, 100)
    assert not m.contains_point(10, 50, 100, 100)


def test_mask_raster_refines_box() -> None:
    arr = np.zeros((10, 10))
    arr[:, :5] = 255  # left half set
    m = SegmentationMask(box=BoundingBox2D(0.0, 0.0, 1.0, 1.0), label="r", mask_png=_mask_png(arr))
    assert m.contains_point(10, 50, 100, 100)
    assert not m.contains_point(90, 50, 100, 100)


def test_mask_to_json_round_trips_through_wire_format() -> None:
    m = SegmentationMask(
        box=BoundingBox2D(0.25, 0.5, 0.75, 1.0),
        label="dog",
        confidence=0.6,
        polygon=((0.25, 0.5), (0.75, 0.5), (0.5, 1.0)),
        area_percentage=12.5,
    )
    wire = m.to_json()
    assert wire["box_2d"] == pytest.approx([500, 250, 1000, 750])
    again = SegmentationMask.from_json(wire)
    assert again.label == "dog"
    assert again.box == m.box
    assert again.area_percentage == 12.5


def test_user_marker_uses_twenty_pixel_radius() -> None:
    marker = UserMarker(id="u1", label="remove", point=SpatialPoint(0.5, 0.5))
    assert marker.contains_point(50, 50, 100, 100)
    assert marker.contains_point(70, 50, 100, 100)
    assert not marker.contains_point(71, 50, 100, 100)


def test_detection_marker_uses_absolute_box() -> None:
    marker = DetectionMarker(id="d1", label="car", box=BoundingBox2D(0.1, 0.1, 0.5, 0.5), confidence=0.9)
    assert marker.contains_point(100, 50, 1000, 500)
    assert marker.contains_point(500, 250, 1000, 500)
    assert not marker.contains_point(600, 50, 1000, 500)


def test_segmentation_marker_delegates_to_mask() -> None:
    mask = SegmentationMask(
        box=BoundingBox2D(0.0, 0.0, 1.0, 1.0),
        label="tri",
        polygon=((0.0, 0.0), (1.0, 0.0), (0.0, 1.0)),
    )
    marker = SegmentationMarker(id="s1", mask=mask)
    assert marker.label == "tri"
    assert marker.contains_point(10, 10, 100, 100) == mask.contains_point(10, 10, 100, 100)
    assert marker.contains_point(90, 90, 100, 100) == mask.contains_point(90, 90, 100, 100)


@pytest.mark.parametrize(
    "marker",
    [
        UserMarker(id="u1", label="remove", point=SpatialPoint(0.1, 0.2, confidence=0.5)),
        UserMarker(
            id="object_0",
            label="marked_object_0",
            point=SpatialPoint(0.3, 0.7),
            width=0.2,
            height=0.1,
            description="Object to remove: tiny simple object located bottom on the left of the image",
        ),
        DetectionMarker(id="d1", label="car", box=BoundingBox2D(0.123, 0.456, 0.789, 0.987), confidence=0.42),
        SegmentationMarker(
            id="s1",
            mask=SegmentationMask(
                box=BoundingBox2D(0.1, 0.1, 0.3, 0.3),
                label="cup",
                confidence=0.77,
                polygon=((0.1, 0.1), (0.3, 0.1), (0.2, 0.3)),
                mask_png=b"\x89PNG-ish",
                area_percentage=3.3,
            ),
        ),
    ],
)
def test_ai_map_round_trip(marker: UserMarker | DetectionMarker | SegmentationMarker) -> None:
    data = marker.to_ai_map()
    assert data["type"] == marker.kind
    assert marker_from_ai_map(data) == marker


def test_unknown_marker_type_raises() -> None:
    with pytest.raises(ValueError, match="Unknown marker type"):
        marker_from_ai_map({"type": "lasso", "id": "x"})


def test_mask_collection_helpers() -> None:
    small = SegmentationMask(box=BoundingBox2D(0.0, 0.0, 0.1, 0.1), label="a", confidence=0.9)
    big = SegmentationMask(box=BoundingBox2D(0.0, 0.0, 0.5, 0.5), label="b", confidence=0.5)
    masks = [small, big]

    assert largest_mask(masks) is big
    assert largest_mask([]) is None
    assert high_confidence_masks(masks) == [small]
    assert masks_at_point(masks, 30, 30, 100, 100) == [big]

    stats = segmentation_stats(masks)
    assert stats.count == 2
    assert stats.mean_confidence == pytest.approx(0.7)
    assert stats.labels == ("a", "b")
    assert stats.total_coverage == pytest.approx(26.0)


def test_mask_coverage_prefers_polygon_area() -> None:
    tri = SegmentationMask(
        box=BoundingBox2D(0.0, 0.0, 0.5, 0.5),
        label="tri",
        polygon=((0.0, 0.0), (0.5, 0.0), (0.0, 0.5)),
    )
    assert tri.coverage() == pytest.approx(12.5)
    assert SegmentationMask(box=BoundingBox2D(0.0, 0.0, 0.5, 0.5), label="box").coverage() == pytest.approx(25.0)


def test_oversized_raster_mask_falls_back_to_box() -> None:
    def chunk(tag: bytes, data: bytes) -> bytes:
        return struct.pack(">I", len(data)) + tag + data + struct.pack(">I", zlib.crc32(tag + data) & 0xFFFFFFFF)

    header = struct.pack(">IIBBBBB", 20000, 20000, 1, 0, 0, 0, 0)
    bomb = b"\x89PNG\r\n\x1a\n" + chunk(b"IHDR", header) + chunk(b"IDAT", zlib.compress(b"")) + chunk(b"IEND", b"")
    m = SegmentationMask(box=BoundingBox2D(0.0, 0.0, 0.5, 0.5), label="r", mask_png=bomb)
    assert m.decode_raster() is None
    assert m.contains_point(10, 10, 100, 100)
    assert not m.contains_point(90, 90, 100, 100)
