from __future__ import annotations

import copy
from pathlib import Path
from typing import Any

import yaml

from batchfx.core.errors import ConfigurationError


_CONFIG_FILE = Path(__file__).parent / "pipeline.yaml"

DEFAULT_OUTPUT_PATTERN = "BatchOut_%02u.mp4"


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_pipeline_config(path: str | Path | None = None) -> dict[str, Any]:
    """Load the shipped pipeline defaults, with an optional user YAML file merged on top."""
    if not _CONFIG_FILE.exists():
        raise FileNotFoundError(f"Missing pipeline config: {_CONFIG_FILE}")
    with _CONFIG_FILE.open("r", encoding="utf-8") as stream:
        config = yaml.safe_load(stream) or {}
    if path is None:
        return config

    user_path = Path(path)
    if not user_path.exists():
        raise ConfigurationError(f"Config file not found: {user_path}")
    try:
        with user_path.open("r", encoding="utf-8") as stream:
            overrides = yaml.safe_load(stream) or {}
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"Malformed config file {user_path}: {exc}") from exc
    if not isinstance(overrides, dict):
        raise ConfigurationError(f"Config file {user_path} must contain a mapping at the top level")
    return _deep_merge(config, overrides)


def resolve_output_pattern(pattern: str | None) -> str:
    """Return a printf-style pattern that yields one output file name per stream index.

    An empty pattern falls back to ``BatchOut_%02u.mp4``; a pattern without a
    ``%`` directive gets ``_%02u`` inserted ahead of its extension.
    """
    if not pattern:
        return DEFAULT_OUTPUT_PATTERN
    if "%" in pattern:
        return pattern
    if len(pattern) < 4:
        return pattern + "_%02u"
    return pattern[:-4] + "_%02u" + pattern[-4:]
