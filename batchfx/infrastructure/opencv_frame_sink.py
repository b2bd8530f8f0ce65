from __future__ import annotations

from pathlib import Path

import cv2
import numpy as np

from batchfx.core.errors import ConfigurationError, FrameSinkError
from batchfx.core.frame import Frame
from batchfx.core.frame_sink import FrameSink
from logger.filtered_logger import LogChannel, debug as log_debug


def fourcc_from_codec(codec: str) -> int:
    """Pack up to four codec characters into an OpenCV fourcc code."""
    chars = (codec + "    ")[:4]
    return cv2.VideoWriter_fourcc(*chars)


class OpenCvFrameSink(FrameSink):
    """Frame sink backed by ``cv2.VideoWriter``.

    Single-channel mattes are written with ``color=False``. When a colour
    writer receives a single-channel frame the frame is expanded to BGR.
    """

    def __init__(self, path: str, *, width: int, height: int, fps: float, codec: str = "avc1", color: bool = False) -> None:
        self.path = path
        self.size = (int(width), int(height))
        self.color = color
        Path(path).parent.mkdir(parents=True, exist_ok=True)
        self.writer = cv2.VideoWriter(path, fourcc_from_codec(codec), float(fps), self.size, color)
        if not self.writer.isOpened():
            self.writer.release()
            raise ConfigurationError(f"Cannot open \"{path}\" for writing with codec {codec!r}")
        self.frames_written = 0

    def write(self, frame: Frame) -> None:
        if not self.writer.isOpened():
            raise FrameSinkError(f"{self.path}: writer is closed")
        if frame.resolution != self.size:
            raise FrameSinkError(
                f"{self.path}: frame {frame.width}x{frame.height} does not match writer {self.size[0]}x{self.size[1]}"
            )
        data = self._prepare(frame.data)
        try:
            self.writer.write(data)
        except cv2.error as exc:
            raise FrameSinkError(f"{self.path}: encode error: {exc}") from exc
        self.frames_written += 1

    def close(self) -> None:
        if self.writer.isOpened():
            self.writer.release()
            log_debug(LogChannel.IO, f"Wrote {self.frames_written} frame(s) to {self.path}")

    def _prepare(self, data: np.ndarray) -> np.ndarray:
        data = np.ascontiguousarray(data, dtype=np.uint8)
        if self.color and data.ndim == 2:
            return cv2.cvtColor(data, cv2.COLOR_GRAY2BGR)
        if not self.color and data.ndim == 3:
            return cv2.cvtColor(data, cv2.COLOR_BGR2GRAY)
        return data
