import json
from pathlib import Path

import pytest
from pydantic import ValidationError

from chatmemory.config.loader import apply_profile, load_config
from chatmemory.config.schema import (
    DEFAULT_ENTITIES_PROMPT,
    DEFAULT_ROLLING_PROMPT,
    ConsolidationConfig,
    MemoryConfig,
)


def test_defaults() -> None:
    config = MemoryConfig()
    assert config.consolidation.threshold == 5
    assert config.consolidation.shape == "rolling"
    assert config.consolidation.generation.timeout == 30
    assert config.consolidation.max_words == 300
    assert config.consolidation.max_chars == 4000
    assert config.consolidation.history_limit == 20
    assert config.retention.token_budget == 4000
    assert config.retention.buffer == 4
    assert not config.archive.enabled
    assert not config.annotations.enabled
    assert config.injection.order == ["memory", "retrieved", "message_summaries"]


def test_prompt_template_resolution() -> None:
    assert ConsolidationConfig().resolved_prompt_template() == DEFAULT_ROLLING_PROMPT
    assert ConsolidationConfig(shape="entities").resolved_prompt_template() == DEFAULT_ENTITIES_PROMPT
    assert ConsolidationConfig(prompt_template="custom {{new_lines}}").resolved_prompt_template() == "custom {{new_lines}}"


def test_invalid_values_are_rejected() -> None:
    with pytest.raises(ValidationError):
        ConsolidationConfig(threshold=0)
    with pytest.raises(ValidationError):
        ConsolidationConfig(shape="graph")
    with pytest.raises(ValidationError):
        MemoryConfig.model_validate({"injection": {"order": ["memory", "lorebook"]}})


def test_missing_file_yields_defaults(tmp_path: Path) -> None:
    assert load_config(tmp_path / "nope.json") == MemoryConfig()
    assert load_config(None) == MemoryConfig()


def test_load_config_with_active_profile(tmp_path: Path) -> None:
    path = tmp_path / "config.json"
    path.write_text(json.dumps({
        "consolidation": {"threshold": 8, "max_words": 200},
        "retention": {"token_budget": 2000},
        "active_profile": "terse",
        "profiles": {
            "terse": {"consolidation": {"max_words": 80}},
            "long": {"retention": {"token_budget": 16000}},
        },
    }), encoding="utf-8")

    config = load_config(path)
    assert config.active_profile == "terse"
    assert config.consolidation.threshold == 8
    assert config.consolidation.max_words == 80
    assert config.retention.token_budget == 2000

    explicit = load_config(path, profile="long")
    assert explicit.active_profile == "long"
    assert explicit.consolidation.max_words == 200
    assert explicit.retention.token_budget == 16000


def test_unknown_profile_keeps_base_config() -> None:
    data = {"consolidation": {"threshold": 3}, "profiles": {}}
    assert apply_profile(data, "missing") == data


def test_non_object_root_is_rejected(tmp_path: Path) -> None:
    path = tmp_path / "config.json"
    path.write_text("[]", encoding="utf-8")
    with pytest.raises(ValueError):
        load_config(path)
