from __future__ import annotations

import json

import pytest

from revision_ai.errors import ResponseParseError
from revision_ai.pipelines.analysis import (
    FALLBACK_NOTES,
    AiAnalysisResult,
    extract_json,
    fallback_analysis,
    fallback_prompt,
    is_json_payload,
    parse_analysis_response,
    parse_segmentation_response,
)
from revision_ai.pipelines.context import ProcessingContext
from revision_ai.vision.geometry import SpatialPoint
from revision_ai.vision.markers import PARSE_ERROR_LABEL, UserMarker


def test_extract_json_handles_fences_and_noise() -> None:
    fenced = 'Here you go:\n```json\n{"editingPrompt": "x"}\n```\nthanks'
    assert json.loads(extract_json(fenced)) == {"editingPrompt": "x"}

    noisy = 'Sure! {"a": 1} hope that helps'
    assert json.loads(extract_json(noisy)) == {"a": 1}

    array = 'Result: [{"box_2d": [0, 0, 1, 1], "label": "x"}] done'
    assert json.loads(extract_json(array))[0]["label"] == "x"

    assert extract_json("no json here") == "no json here"


def test_parse_analysis_response_reads_camel_case() -> None:
    text = json.dumps(
        {
            "identifiedObjects": ["red bicycle", "  ", "lamp post"],
            "editingPrompt": "  Remove the red bicycle.  ",
            "confidence": 0.92,
            "technicalNotes": "watch the shadow",
            "safetyAssessment": "Content is safe for processing",
        }
    )
    result = parse_analysis_response(text, processing_time_ms=1200)
    assert result.identified_objects == ("red bicycle", "lamp post")
    assert result.editing_prompt == "Remove the red bicycle."
    assert result.confidence == pytest.approx(0.92)
    assert result.processing_time_ms == 1200
    assert result.technical_notes == "watch the shadow"
    assert result.is_high_confidence
    assert result.was_fast
    assert not result.is_fallback


def test_parse_analysis_response_defaults() -> None:
    result = parse_analysis_response('```json\n{"editingPrompt": "Brighten it"}\n```')
    assert result.identified_objects == ()
    assert result.confidence == pytest.approx(0.8)
    assert result.technical_notes is None


@pytest.mark.parametrize(
    "text",
    [
        "",
        "   ",
        "I could not analyze this image.",
        '{"identifiedObjects": ["x"]}',
        '{"editingPrompt": "   "}',
        '{"editingPrompt": "x", "confidence": 3}',
        '[{"editingPrompt": "x"}]',
    ],
)
def test_parse_analysis_response_rejects_bad_replies(text: str) -> None:
    with pytest.raises(ResponseParseError):
        parse_analysis_response(text)


def test_is_json_payload() -> None:
    assert is_json_payload("[]")
    assert is_json_payload('{"masks": []}')
    assert not is_json_payload("")
    assert not is_json_payload("nothing found")


def test_parse_segmentation_response_accepts_list_and_wrappers() -> None:
    entry = {"box_2d": [100, 100, 500, 500], "label": "cup", "confidence": 0.9}
    assert [m.label for m in parse_segmentation_response(json.dumps([entry]))] == ["cup"]
    assert [m.label for m in parse_segmentation_response(json.dumps({"masks": [entry]}))] == ["cup"]
    assert [m.label for m in parse_segmentation_response(json.dumps({"objects": [entry]}))] == ["cup"]
    assert [m.label for m in parse_segmentation_response(json.dumps(entry))] == ["cup"]


def test_parse_segmentation_response_never_raises() -> None:
    assert parse_segmentation_response("") == []
    assert parse_segmentation_response("sorry, no objects") == []
    assert parse_segmentation_response('{"status": "ok"}') == []

    [bad, good] = parse_segmentation_response(
        json.dumps([{"label": "no box"}, {"box_2d": [0, 0, 10, 10], "label": "ok"}])
    )
    assert bad.label == PARSE_ERROR_LABEL
    assert good.label == "ok"


def test_objects_summary() -> None:
    def result(*objs: str) -> AiAnalysisResult:
        return AiAnalysisResult(identified_objects=objs, editing_prompt="p", confidence=0.5)

    assert result().objects_summary == "no objects"
    assert result("a").objects_summary == "a"
    assert result("a", "b", "c").objects_summary == "a, b and c"
    assert not result("a").is_high_confidence


def test_fallback_analysis_for_marked_removal() -> None:
    ctx = ProcessingContext.object_removal(
        [UserMarker(id="m1", label="remove", point=SpatialPoint(0.5, 0.5))],
        custom_instructions="keep the bench",
    )
    result = fallback_analysis(ctx, processing_time_ms=15)
    assert result.is_fallback
    assert result.confidence == pytest.approx(0.75)
    assert result.technical_notes == FALLBACK_NOTES
    assert result.identified_objects == ("remove",)
    assert result.processing_time_ms == 15
    assert result.editing_prompt.startswith("Remove 1 marked object(s) from this image")
    assert "Additional instructions: keep the bench" in result.editing_prompt


def test_fallback_prompt_without_markers() -> None:
    assert fallback_prompt(ProcessingContext("enhance")).startswith("Enhance this image")
    assert fallback_prompt(ProcessingContext("restoration")).startswith("Restore this image")
    assert fallback_analysis(ProcessingContext("enhance")).identified_objects == ("marked object",)


def test_result_to_json_uses_camel_case() -> None:
    data = fallback_analysis(ProcessingContext("enhance")).to_json()
    assert data["isFallback"] is True
    assert set(data) >= {"identifiedObjects", "editingPrompt", "confidence", "technicalNotes"}
