from __future__ import annotations

from pathlib import Path

import pytest

from revision_ai.config import DEFAULT_ANALYSIS_MODEL, DEFAULT_EDIT_MODEL, ModelSettings, load_settings
from revision_ai.errors import ConfigurationError


def test_defaults() -> None:
    s = ModelSettings()
    assert s.analysis_model == DEFAULT_ANALYSIS_MODEL
    assert s.edit_model == DEFAULT_EDIT_MODEL
    assert s.temperature == pytest.approx(0.4)
    assert s.analysis_system_instruction is None
    assert not s.debug_mode


def test_remote_config_strings_are_coerced() -> None:
    s = ModelSettings.from_remote_config(
        {
            "ai_gemini_model": "gemini-2.5-pro",
            "ai_temperature": "0.7",
            "ai_max_output_tokens": "2048",
            "ai_debug_mode": "true",
            "ai_edit_system_prompt": "   ",
            "unrelated_flag": "on",
        }
    )
    assert s.analysis_model == "gemini-2.5-pro"
    assert s.temperature == pytest.approx(0.7)
    assert s.max_output_tokens == 2048
    assert s.debug_mode
    assert s.edit_system_instruction is None


@pytest.mark.parametrize(
    "values",
    [
        {"ai_temperature": "hot"},
        {"ai_temperature": 3.0},
        {"ai_max_output_tokens": 0},
        {"ai_gemini_model": ""},
    ],
)
def test_invalid_remote_config_raises(values: dict[str, object]) -> None:
    with pytest.raises(ConfigurationError, match="Invalid model settings"):
        ModelSettings.from_remote_config(values)


def test_load_settings_yaml_then_env(tmp_path: Path) -> None:
    path = tmp_path / "settings.yaml"
    path.write_text("ai_gemini_model: gemini-2.5-pro\nai_temperature: 0.2\nai_top_k: 16\n", encoding="utf-8")

    s = load_settings(path, env={"AI_TEMPERATURE": "0.9", "AI_UNKNOWN": "x", "HOME": "/root"})
    assert s.analysis_model == "gemini-2.5-pro"
    assert s.top_k == 16
    assert s.temperature == pytest.approx(0.9)


def test_load_settings_without_file_uses_env_only() -> None:
    s = load_settings(env={"AI_GEMINI_IMAGE_MODEL": "imagen-x"})
    assert s.edit_model == "imagen-x"
    assert s.analysis_model == DEFAULT_ANALYSIS_MODEL


def test_load_settings_rejects_non_mapping(tmp_path: Path) -> None:
    path = tmp_path / "settings.yaml"
    path.write_text("- just\n- a list\n", encoding="utf-8")
    with pytest.raises(ConfigurationError, match="mapping"):
        load_settings(path, env={})
