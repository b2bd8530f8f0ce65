from __future__ import annotations

import pytest

from batchfx.config import DEFAULT_OUTPUT_PATTERN, load_pipeline_config, resolve_output_pattern
from batchfx.core.errors import ConfigurationError


def test_defaults_ship_with_the_package() -> None:
    config = load_pipeline_config()

    assert config["engine"]["type"] == "temporal_matte"
    assert config["engine"]["release_flush"] is False
    assert config["scheduler"]["pull_workers"] == 0
    assert config["output"]["pattern"] == DEFAULT_OUTPUT_PATTERN


def test_user_file_is_merged_over_defaults(tmp_path) -> None:
    user = tmp_path / "pipeline.yaml"
    user.write_text("engine:\n  mode: 1\nscheduler:\n  pull_workers: 4\n", encoding="utf-8")

    config = load_pipeline_config(user)

    assert config["engine"]["mode"] == 1
    assert config["engine"]["type"] == "temporal_matte"
    assert config["scheduler"]["pull_workers"] == 4
    assert load_pipeline_config()["engine"]["mode"] == 0


@pytest.mark.parametrize("content", ["engine: [unclosed", "- just\n- a list\n"])
def test_bad_user_file_is_a_configuration_error(tmp_path, content: str) -> None:
    user = tmp_path / "bad.yaml"
    user.write_text(content, encoding="utf-8")

    with pytest.raises(ConfigurationError):
        load_pipeline_config(user)


def test_missing_user_file_is_a_configuration_error(tmp_path) -> None:
    with pytest.raises(ConfigurationError, match="not found"):
        load_pipeline_config(tmp_path / "absent.yaml")


@pytest.mark.parametrize(
    ("pattern", "expected"),
    [
        (None, "BatchOut_%02u.mp4"),
        ("", "BatchOut_%02u.mp4"),
        ("clip_%03d.avi", "clip_%03d.avi"),
        ("result.mp4", "result_%02u.mp4"),
        ("out", "out_%02u"),
    ],
)
def test_resolve_output_pattern(pattern, expected) -> None:
    assert resolve_output_pattern(pattern) == expected
    assert "%" in resolve_output_pattern(pattern)
