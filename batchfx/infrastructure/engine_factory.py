from __future__ import annotations

from typing import Any, Callable

from batchfx.core.errors import ConfigurationError
from batchfx.core.inference_engine import InferenceEngine
from batchfx.infrastructure.temporal_matte_engine import TemporalMatteEngine
from logger.filtered_logger import LogChannel, info as log_info


def _build_temporal_matte(options: dict[str, Any], max_batch_size: int | None) -> InferenceEngine:
    return TemporalMatteEngine(
        mode=int(options.get("mode", 0)),
        device=str(options.get("device", "auto")),
        threshold=float(options.get("threshold", 12.0)),
        gain=float(options.get("gain", 4.0)),
        release_flush=bool(options.get("release_flush", False)),
        max_states=max_batch_size,
    )


_ENGINE_REGISTRY: dict[str, Callable[[dict[str, Any], int | None], InferenceEngine]] = {
    "temporal_matte": _build_temporal_matte,
}


def build_engine(config: dict[str, Any], max_batch_size: int | None = None) -> InferenceEngine:
    """Construct the engine named by the ``engine`` section of the pipeline config."""
    options = config.get("engine", {})
    if not isinstance(options, dict):
        raise ConfigurationError("The 'engine' config section must be a mapping")
    engine_type = options.get("type", "temporal_matte")
    factory = _ENGINE_REGISTRY.get(engine_type)
    if factory is None:
        raise ConfigurationError(
            f"No inference engine registered for {engine_type!r}; available: {sorted(_ENGINE_REGISTRY)}"
        )
    try:
        engine = factory(options, max_batch_size)
    except (TypeError, ValueError, RuntimeError) as exc:
        raise ConfigurationError(f"Cannot build engine {engine_type!r}: {exc}") from exc
    log_info(LogChannel.ENGINE, f"Built engine {engine.name}")
    return engine
