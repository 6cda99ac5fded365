from __future__ import annotations

import json

import pytest

from revision_ai.config import ModelSettings
from revision_ai.pipelines.context import ProcessingContext
from revision_ai.pipelines.requests import (
    IMAGE_TOP_K,
    IMAGE_TOP_P,
    JSON_MIME_TYPE,
    LOW_TEMPERATURE,
    SEGMENTATION_SYSTEM_INSTRUCTION,
    analysis_prompt,
    build_analysis_request,
    build_edit_request,
    describe_request,
)
from revision_ai.vision.geometry import BoundingBox2D, SpatialPoint
from revision_ai.vision.markers import DetectionMarker, UserMarker

_IMAGE = b"\xff\xd8\xff\xe0fake-jpeg"
_SETTINGS = ModelSettings(temperature=0.4, max_output_tokens=1024, top_k=40, top_p=0.95)


def _removal_context() -> ProcessingContext:
    return ProcessingContext.object_removal(
        [
            UserMarker(id="m1", label="remove", point=SpatialPoint(0.25, 0.75)),
            UserMarker(
                id="object_0",
                label="marked_object_0",
                point=SpatialPoint(0.5, 0.5),
                width=0.2,
                height=0.2,
                description="Object to remove: small simple object",
            ),
        ]
    )


def test_builders_are_pure() -> None:
    ctx = _removal_context()
    assert build_analysis_request(ctx, _IMAGE, _SETTINGS) == build_analysis_request(ctx, _IMAGE, _SETTINGS)
    assert build_edit_request("Remove it", _IMAGE, _SETTINGS, context=ctx) == build_edit_request(
        "Remove it", _IMAGE, _SETTINGS, context=ctx
    )


def test_analysis_request_carries_system_instruction() -> None:
    req = build_analysis_request(_removal_context(), _IMAGE, _SETTINGS, mime_type="image/png")
    body = req.as_gemini_body()

    assert req.model == _SETTINGS.analysis_model
    assert req.task == "analysis"
    assert "systemInstruction" in body
    assert "object boundaries" in body["systemInstruction"]["parts"][0]["text"]
    parts = body["contents"][0]["parts"]
    assert parts[0]["text"] == req.prompt
    assert parts[1]["inline_data"]["mime_type"] == "image/png"
    assert body["generationConfig"]["temperature"] == pytest.approx(0.4)
    assert body["generationConfig"]["response_mime_type"] == JSON_MIME_TYPE
    assert "thinking_config" not in body


def test_analysis_prompt_describes_markers() -> None:
    prompt = analysis_prompt(_removal_context())
    assert "The user marked 2 area(s)" in prompt
    assert "at 25% from the left, 75% from the top" in prompt
    assert "bounding box left 40%, top 40%, right 60%, bottom 60%" in prompt
    assert '"editingPrompt"' in prompt


def test_analysis_prompt_includes_non_user_markers() -> None:
    ctx = ProcessingContext(
        "objectRemoval",
        markers=(DetectionMarker(id="d1", label="car", box=BoundingBox2D(0.1, 0.1, 0.3, 0.3), confidence=0.9),),
    )
    assert "car" in analysis_prompt(ctx)


def test_edit_request_has_no_system_field() -> None:
    req = build_edit_request("Remove the bicycle.", _IMAGE, _SETTINGS, context=_removal_context())
    body = req.as_gemini_body()

    assert set(body) == {"contents", "generationConfig"}
    assert req.model == _SETTINGS.edit_model
    assert req.prompt.endswith("Return the edited image.")
    assert "Remove the bicycle." in req.prompt
    assert "content-aware" in req.prompt

    gen = body["generationConfig"]
    assert gen["temperature"] == pytest.approx(0.3)
    assert gen["maxOutputTokens"] == 2048
    assert gen["topK"] == IMAGE_TOP_K
    assert gen["topP"] == pytest.approx(IMAGE_TOP_P)
    assert gen["responseModalities"] == ["TEXT", "IMAGE"]


def test_segmentation_request_is_tuned_for_json() -> None:
    ctx = ProcessingContext.segmentation("the cups")
    req = build_analysis_request(ctx, _IMAGE, _SETTINGS)
    body = req.as_gemini_body()

    assert req.task == "segmentation"
    assert req.system_instruction == SEGMENTATION_SYSTEM_INSTRUCTION
    assert body["generationConfig"]["temperature"] == pytest.approx(LOW_TEMPERATURE)
    assert body["generationConfig"]["response_mime_type"] == JSON_MIME_TYPE
    assert body["thinking_config"] == {"thinking_budget": 0}
    assert "the cups" in req.prompt
    assert "box_2d" in req.prompt


def test_detection_prompt_override_keeps_format() -> None:
    req = build_analysis_request(
        ProcessingContext.object_detection(), _IMAGE, _SETTINGS, prompt_override="Find every chair."
    )
    assert req.task == "objectDetection"
    assert req.prompt.startswith("Find every chair.")
    assert "box_2d" in req.prompt
    assert req.thinking_budget is None


def test_context_override_beats_settings() -> None:
    settings = _SETTINGS.model_copy(
        update={"analysis_system_instruction": "from settings", "edit_system_instruction": "edit from settings"}
    )
    plain = ProcessingContext("enhance")
    assert build_analysis_request(plain, _IMAGE, settings).system_instruction == "from settings"
    assert build_edit_request("x", _IMAGE, settings, context=plain).prompt.startswith("edit from settings")

    custom = ProcessingContext(
        "enhance", prompt_system_instructions="from context", edit_system_instructions="edit from context"
    )
    assert build_analysis_request(custom, _IMAGE, settings).system_instruction == "from context"
    assert build_edit_request("x", _IMAGE, settings, context=custom).prompt.startswith("edit from context")


def test_describe_request_omits_payload() -> None:
    req = build_analysis_request(ProcessingContext("enhance"), _IMAGE, _SETTINGS)
    summary = json.loads(describe_request(req))
    assert summary["image_bytes"] == len(_IMAGE)
    assert summary["model"] == _SETTINGS.analysis_model
    assert "fake-jpeg" not in describe_request(req)
