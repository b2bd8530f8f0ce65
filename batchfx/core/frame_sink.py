from __future__ import annotations

from abc import ABC, abstractmethod

from batchfx.core.frame import Frame


class FrameSink(ABC):
    """Receives the processed frames of exactly one stream."""

    @abstractmethod
    def write(self, frame: Frame) -> None:
        """Push one result frame to the stream output; raise FrameSinkError on failure."""

    def close(self) -> None:
        """Flush and release the underlying output."""
