from __future__ import annotations

import cv2

from batchfx.core.errors import ConfigurationError, FrameSourceError
from batchfx.core.frame import Frame
from batchfx.core.frame_source import FrameSource
from logger.filtered_logger import LogChannel, debug as log_debug, info as log_info


class OpenCvFrameSource(FrameSource):
    """Frame source backed by ``cv2.VideoCapture`` over a video file or URL."""

    def __init__(self, path: str) -> None:
        self.path = path
        self.cap = cv2.VideoCapture(path)
        if not self.cap.isOpened():
            self.cap.release()
            raise ConfigurationError(f"Cannot read video file \"{path}\"")
        self.width = int(self.cap.get(cv2.CAP_PROP_FRAME_WIDTH))
        self.height = int(self.cap.get(cv2.CAP_PROP_FRAME_HEIGHT))
        self.fps = float(self.cap.get(cv2.CAP_PROP_FPS)) or 30.0
        self.frames_read = 0
        log_info(LogChannel.IO, f"Opened {path} ({self.width}x{self.height} @ {self.fps:.2f} fps)")

    def next_frame(self) -> Frame | None:
        if not self.cap.isOpened():
            return None
        try:
            ok, data = self.cap.read()
        except cv2.error as exc:
            raise FrameSourceError(f"{self.path}: decode error: {exc}") from exc
        if not ok or data is None or data.size == 0:
            log_debug(LogChannel.IO, f"{self.path}: end of stream after {self.frames_read} frame(s)")
            self.cap.release()
            return None
        frame = Frame.from_array(data, index=self.frames_read)
        self.frames_read += 1
        return frame

    def close(self) -> None:
        if self.cap.isOpened():
            self.cap.release()
