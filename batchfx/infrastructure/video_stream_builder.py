from __future__ import annotations

from pathlib import Path
from typing import Any, Sequence

from batchfx.config import resolve_output_pattern
from batchfx.core.errors import ConfigurationError
from batchfx.core.stream import StreamConfig
from batchfx.infrastructure.opencv_frame_sink import OpenCvFrameSink
from batchfx.infrastructure.opencv_frame_source import OpenCvFrameSource
from logger.filtered_logger import LogChannel, debug as log_debug


def output_path_for(pattern: str, index: int) -> str:
    try:
        return resolve_output_pattern(pattern) % index
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"Invalid output pattern {pattern!r}: {exc}") from exc


def build_video_streams(inputs: Sequence[str], output_config: dict[str, Any]) -> list[StreamConfig]:
    """Open one capture and one writer per input video, in input order.

    Output ``i`` is named from the output pattern with ``i`` substituted. If
    any file cannot be opened, everything opened so far is released before
    the ``ConfigurationError`` propagates.
    """
    if not inputs:
        raise ConfigurationError("At least one input video is required")
    pattern = output_config.get("pattern")
    codec = str(output_config.get("codec", "avc1"))
    color = bool(output_config.get("color", False))

    configs: list[StreamConfig] = []
    try:
        for index, path in enumerate(inputs):
            source = OpenCvFrameSource(path)
            try:
                sink = OpenCvFrameSink(
                    output_path_for(pattern, index),
                    width=source.width,
                    height=source.height,
                    fps=source.fps,
                    codec=codec,
                    color=color,
                )
            except Exception:
                source.close()
                raise
            log_debug(LogChannel.IO, f"Stream {index}: {path} -> {sink.path}")
            configs.append(StreamConfig(source=source, sink=sink, name=Path(path).name))
    except Exception:
        for config in configs:
            config.source.close()
            config.sink.close()
        raise
    return configs
