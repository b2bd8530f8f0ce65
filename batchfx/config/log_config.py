from __future__ import annotations

from pathlib import Path
from typing import Any, Dict

import yaml

from logger.filtered_logger import configure_logger, level_from_number


_LOG_CONFIG_FILE = Path(__file__).parent / "log.yaml"


def load_log_config() -> dict[str, Any]:
    """Load the log configuration that defines active channels."""
    if not _LOG_CONFIG_FILE.exists():
        raise FileNotFoundError(f"Missing log config: {_LOG_CONFIG_FILE}")
    with _LOG_CONFIG_FILE.open("r", encoding="utf-8") as stream:
        return yaml.safe_load(stream) or {}


def apply_log_config(overrides: dict[str, Any] | None = None) -> None:
    """Apply the log channel flags via the shared filtered logger.

    ``overrides`` carries the CLI values (``level``, ``file``, ``verbose``);
    keys set to None keep the value from ``log.yaml``.
    """
    config = load_log_config()
    overrides = {key: value for key, value in (overrides or {}).items() if value is not None}
    channels: Dict[str, bool] = config.get("channels", {}) or {}
    verbose = bool(overrides.get("verbose", False))
    level = overrides.get("level", config.get("level", 3))
    if verbose:
        level = 4
    destination = overrides.get("file", config.get("file", "stdout"))
    configure_logger(
        extreme_debug=channels.get("global") or None,
        scheduler_debug=verbose or channels.get("scheduler") or None,
        engine_debug=channels.get("engine") or None,
        io_debug=channels.get("io") or None,
        min_level=level_from_number(level),
        destination=destination if destination is not None else "stdout",
    )
