"""Model settings from remote config, YAML files and the environment."""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any, Final

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from revision_ai.errors import ConfigurationError

LOG = logging.getLogger(__name__)

DEFAULT_ANALYSIS_MODEL: Final[str] = "gemini-2.5-flash"
DEFAULT_EDIT_MODEL: Final[str] = "gemini-2.0-flash-preview-image-generation"
ENV_PREFIX: Final[str] = "AI_"


class ModelSettings(BaseModel):
    """Generation parameters shared by both model calls.

    Field aliases are the flat remote-config keys, so a key/value mapping
    fetched from a remote-config service validates directly.
    """

    model_config = ConfigDict(extra="ignore", populate_by_name=True, frozen=True)

    analysis_model: str = Field(default=DEFAULT_ANALYSIS_MODEL, alias="ai_gemini_model", min_length=1)
    edit_model: str = Field(default=DEFAULT_EDIT_MODEL, alias="ai_gemini_image_model", min_length=1)
    temperature: float = Field(default=0.4, alias="ai_temperature", ge=0.0, le=2.0)
    max_output_tokens: int = Field(default=1024, alias="ai_max_output_tokens", gt=0)
    top_k: int = Field(default=40, alias="ai_top_k", gt=0)
    top_p: float = Field(default=0.95, alias="ai_top_p", gt=0.0, le=1.0)
    request_timeout_seconds: float = Field(default=30.0, alias="ai_request_timeout_seconds", gt=0)
    analysis_system_instruction: str | None = Field(default=None, alias="ai_analysis_system_prompt")
    edit_system_instruction: str | None = Field(default=None, alias="ai_edit_system_prompt")
    debug_mode: bool = Field(default=False, alias="ai_debug_mode")

    @field_validator("analysis_system_instruction", "edit_system_instruction", mode="before")
    @classmethod
    def _blank_to_none(cls, v: Any) -> Any:
        if isinstance(v, str) and not v.strip():
            return None
        return v

    @classmethod
    def from_remote_config(cls, values: Mapping[str, Any]) -> ModelSettings:
        """Validate a flat remote-config mapping.

        Raises:
            ConfigurationError: If a value cannot be coerced or is out of range.
        """
        try:
            return cls.model_validate(dict(values))
        except ValidationError as e:
            raise ConfigurationError(f"Invalid model settings: {e}") from e


def _env_overrides(env: Mapping[str, str]) -> dict[str, str]:
    fields = {f.alias for f in ModelSettings.model_fields.values() if f.alias}
    out: dict[str, str] = {}
    for key, value in env.items():
        if not key.startswith(ENV_PREFIX):
            continue
        alias = key.lower()
        if alias in fields:
            out[alias] = value
    return out


def load_settings(path: Path | None = None, env: Mapping[str, str] | None = None) -> ModelSettings:
    """Load settings from an optional YAML file, then apply ``AI_*`` env overrides.

    The YAML file is a flat mapping using the remote-config keys
    (``ai_gemini_model``, ``ai_temperature``, ...).
    """
    env = os.environ if env is None else env
    values: dict[str, Any] = {}
    if path is not None:
        raw = yaml.safe_load(Path(path).read_text(encoding="utf-8")) or {}
        if not isinstance(raw, dict):
            raise ConfigurationError(f"Settings file must contain a mapping: {path}")
        values.update(raw)
        LOG.info("Loaded model settings from %s", path)
    overrides = _env_overrides(env)
    if overrides:
        LOG.info("Applying env overrides: %s", sorted(overrides))
    values.update(overrides)
    return ModelSettings.from_remote_config(values)
