"""Tests for codex_bridge.core.model_config."""

from __future__ import annotations

import pytest

from codex_bridge.core.model_config import (
    DEFAULT_INCLUDE,
    classify_model,
    coerce_user_config,
    get_include,
    get_model_config,
    get_reasoning_config,
    get_text_verbosity,
)
from codex_bridge.types import ConfigOptions, UserConfig


class TestCoerceUserConfig:
    def test_wire_shape(self):
        config = coerce_user_config({
            "global": {"reasoningEffort": "high", "textVerbosity": "low"},
            "models": {"my-codex": {"options": {"reasoningSummary": "detailed"}}},
        })
        assert config.global_options.reasoning_effort == "high"
        assert config.global_options.text_verbosity == "low"
        assert config.models["my-codex"].reasoning_summary == "detailed"

    def test_options_alias_for_global(self):
        config = coerce_user_config({"options": {"reasoning_effort": "low"}})
        assert config.global_options.reasoning_effort == "low"

    @pytest.mark.parametrize("raw", [None, "garbage", 12, [], {"models": "nope"}])
    def test_malformed_gives_empty_config(self, raw):
        config = coerce_user_config(raw)
        assert config.global_options == ConfigOptions()
        assert config.models == {}

    def test_invalid_values_dropped(self):
        config = coerce_user_config({
            "global": {"reasoningEffort": "extreme", "textVerbosity": 3, "include": ["a", 1]},
        })
        assert config.global_options.reasoning_effort is None
        assert config.global_options.text_verbosity is None
        assert config.global_options.include == ["a"]


class TestGetModelConfig:
    def test_per_model_overrides_global(self):
        user = UserConfig(
            global_options=ConfigOptions(reasoning_effort="low", text_verbosity="high"),
            models={"fast": ConfigOptions(reasoning_effort="minimal")},
        )
        merged = get_model_config("fast", user)
        assert merged.reasoning_effort == "minimal"
        assert merged.text_verbosity == "high"

    def test_lookup_by_original_name(self):
        user = UserConfig(models={"gpt-5.1-codex-high": ConfigOptions(reasoning_effort="high")})
        assert get_model_config("gpt-5.1-codex-high", user).reasoning_effort == "high"
        assert get_model_config("gpt-5.1-codex", user).reasoning_effort is None

    def test_malformed_config_is_baseline(self):
        assert get_model_config("gpt-5.1", "not a config") == ConfigOptions()
        assert get_model_config(None, None) == ConfigOptions()


class TestReasoningConfig:
    @pytest.mark.parametrize("model, effort", [
        ("gpt-5.1", "none"),
        ("gpt-5.1-codex", "medium"),
        ("gpt-5.1-codex-mini", "medium"),
        ("gpt-5-mini", "minimal"),
        ("gpt-5", "medium"),
    ])
    def test_defaults(self, model, effort):
        config = get_reasoning_config(model)
        assert config.effort == effort
        assert config.summary == "auto"

    @pytest.mark.parametrize("model, requested, expected", [
        ("gpt-5.1-codex-mini", "low", "medium"),
        ("gpt-5.1-codex-mini", "high", "high"),
        ("gpt-5.1-codex-mini", "xhigh", "high"),
        ("gpt-5.1-codex", "minimal", "low"),
        ("gpt-5.1-codex", "none", "low"),
        ("gpt-5.1-codex", "xhigh", "high"),
        ("gpt-5.1-codex-max", "xhigh", "xhigh"),
        ("gpt-5.1-codex-max", "none", "low"),
        ("gpt-5.1", "minimal", "none"),
        ("gpt-5", "none", "minimal"),
        ("gpt-5", "high", "high"),
    ])
    def test_clamping(self, model, requested, expected):
        options = ConfigOptions(reasoning_effort=requested)
        assert get_reasoning_config(model, options).effort == expected

    def test_summary_override(self):
        options = ConfigOptions(reasoning_summary="concise")
        assert get_reasoning_config("gpt-5.1", options).to_dict() == {
            "effort": "none", "summary": "concise",
        }


class TestTextVerbosity:
    def test_codex_forced_medium(self):
        options = ConfigOptions(text_verbosity="low")
        assert get_text_verbosity("gpt-5.1-codex", options) == "medium"
        assert get_text_verbosity("gpt-5.1-codex-mini", options) == "medium"

    def test_general_models_keep_choice(self):
        assert get_text_verbosity("gpt-5.1", ConfigOptions(text_verbosity="high")) == "high"

    def test_default_medium(self):
        assert get_text_verbosity("gpt-5.1") == "medium"


class TestInclude:
    def test_default(self):
        assert get_include() == DEFAULT_INCLUDE

    def test_override_is_copied(self):
        options = ConfigOptions(include=["x"])
        result = get_include(options)
        assert result == ["x"]
        result.append("y")
        assert options.include == ["x"]


class TestClassifyModel:
    def test_codex_mini_flags(self):
        flags = classify_model("codex-mini-latest")
        assert flags.is_codex_mini
        assert flags.normalized == "gpt-5.1-codex-mini"
        assert not flags.is_lightweight

    def test_lightweight(self):
        flags = classify_model("gpt-5-nano")
        assert flags.is_lightweight
        assert not flags.is_gpt51
