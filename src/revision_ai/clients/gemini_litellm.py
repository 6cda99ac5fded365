"""Default analysis and edit callers backed by LiteLLM."""

import binascii
import logging
from typing import Any

import litellm
from pydantic import BaseModel

from revision_ai.config import ModelSettings
from revision_ai.errors import ModelCallError, as_model_call_error
from revision_ai.pipelines.requests import AnalysisRequest, EditRequest
from revision_ai.vision.image import from_data_url, to_data_url

LOG = logging.getLogger(__name__)


def litellm_model_name(model: str) -> str:
    """Add the ``gemini/`` provider prefix to bare model names."""
    return model if "/" in model else f"gemini/{model}"


def _content_to_text(content: Any) -> str:
    """Best-effort normalization of provider responses to a single text string."""
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    # OpenAI-style content blocks: [{"type":"text","text":"..."} , ...]
    if isinstance(content, list):
        chunks: list[str] = []
        for item in content:
            if isinstance(item, str):
                chunks.append(item)
            elif isinstance(item, dict):
                t = item.get("text")
                if isinstance(t, str):
                    chunks.append(t)
        return "\n".join(chunks).strip()
    if isinstance(content, dict):
        t = content.get("text")
        if isinstance(t, str):
            return t
    return str(content)


def _response_to_dict(resp: Any) -> dict[str, Any]:
    """Normalize a LiteLLM completion response object to a plain dict."""
    if isinstance(resp, dict):
        return resp
    if isinstance(resp, BaseModel):
        return resp.model_dump()
    raise TypeError(f"Unsupported completion response type: {type(resp)!r}")


def _first_message(resp: dict[str, Any]) -> tuple[dict[str, Any], str]:
    choices = resp.get("choices") or []
    if not isinstance(choices, list) or not choices:
        return {}, ""
    c0 = choices[0] or {}
    if not isinstance(c0, dict):
        return {}, ""
    msg = c0.get("message") or {}
    return (msg if isinstance(msg, dict) else {}), str(c0.get("finish_reason") or "")


def _extract_image(msg: dict[str, Any]) -> bytes:
    """Pull the first image out of an assistant message.

    LiteLLM surfaces generated images under ``message.images``; some
    providers return them as ``image_url`` content blocks instead.
    """
    blocks: list[Any] = []
    images = msg.get("images")
    if isinstance(images, list):
        blocks.extend(images)
    content = msg.get("content")
    if isinstance(content, list):
        blocks.extend(content)
    for block in blocks:
        if not isinstance(block, dict):
            continue
        url = block.get("image_url")
        if isinstance(url, dict):
            url = url.get("url")
        if not isinstance(url, str) or not url:
            continue
        try:
            return from_data_url(url)
        except (binascii.Error, ValueError):
            LOG.warning("Skipping undecodable image block (%d chars)", len(url))
    return b""


def _user_message(prompt: str, image: bytes, mime_type: str) -> dict[str, Any]:
    return {
        "role": "user",
        "content": [
            {"type": "text", "text": prompt},
            {"type": "image_url", "image_url": {"url": to_data_url(image, mime_type)}},
        ],
    }


class LiteLLMAnalyzer:
    """Analysis caller: returns the model's raw text reply."""

    def __init__(self, *, verbose: bool = False) -> None:
        self.verbose = verbose

    @classmethod
    def from_settings(cls, settings: ModelSettings, *, verbose: bool = False) -> "LiteLLMAnalyzer":
        """Build an analyzer; ``ai_debug_mode`` turns on response logging."""
        return cls(verbose=verbose or settings.debug_mode)

    def completion_kwargs(self, request: AnalysisRequest) -> dict[str, Any]:
        messages: list[dict[str, Any]] = []
        if request.system_instruction:
            messages.append({"role": "system", "content": request.system_instruction})
        messages.append(_user_message(request.prompt, request.image, request.mime_type))
        kwargs: dict[str, Any] = {
            "model": litellm_model_name(request.model),
            "messages": messages,
            "temperature": request.generation.temperature,
            "max_tokens": request.generation.max_output_tokens,
            "top_p": request.generation.top_p,
            "timeout": request.timeout_s,
        }
        if request.generation.response_mime_type == "application/json":
            kwargs["response_format"] = {"type": "json_object"}
        return kwargs

    def analyze(self, request: AnalysisRequest) -> str:
        kwargs = self.completion_kwargs(request)
        LOG.info("Requesting %s via LiteLLM: model=%s", request.task, kwargs["model"])
        try:
            raw = litellm.completion(**kwargs)
        except Exception as e:
            raise as_model_call_error(e, stage="analysis") from e
        msg, finish_reason = _first_message(_response_to_dict(raw))
        text = _content_to_text(msg.get("content")).strip()
        LOG.info("Analysis response received: finish_reason=%s chars=%d", finish_reason, len(text))
        if self.verbose:
            LOG.info("Analysis response content:\n%s", text)
        if not text:
            raise ModelCallError(
                f"Analysis model returned empty content. finish_reason={finish_reason!r}",
                stage="analysis",
                category="model",
            )
        return text


class LiteLLMEditor:
    """Edit caller: returns the generated image bytes."""

    def completion_kwargs(self, request: EditRequest) -> dict[str, Any]:
        return {
            "model": litellm_model_name(request.model),
            "messages": [_user_message(request.prompt, request.image, request.mime_type)],
            "temperature": request.generation.temperature,
            "max_tokens": request.generation.max_output_tokens,
            "top_p": request.generation.top_p,
            "modalities": [m.lower() for m in request.generation.response_modalities],
            "timeout": request.timeout_s,
        }

    def edit(self, request: EditRequest) -> bytes:
        kwargs = self.completion_kwargs(request)
        LOG.info("Requesting image edit via LiteLLM: model=%s", kwargs["model"])
        try:
            raw = litellm.completion(**kwargs)
        except Exception as e:
            raise as_model_call_error(e, stage="edit") from e
        msg, finish_reason = _first_message(_response_to_dict(raw))
        data = _extract_image(msg)
        LOG.info("Edit response received: finish_reason=%s image_bytes=%d", finish_reason, len(data))
        if not data:
            note = _content_to_text(msg.get("content"))[:200]
            raise ModelCallError(
                f"Edit model returned no image. finish_reason={finish_reason!r} text={note!r}",
                stage="edit",
                category="model",
            )
        return data