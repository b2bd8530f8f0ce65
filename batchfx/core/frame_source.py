from __future__ import annotations

from abc import ABC, abstractmethod

from batchfx.core.frame import Frame


class FrameSource(ABC):
    """Abstraction for one input stream that yields frames until it is exhausted."""

    @abstractmethod
    def next_frame(self) -> Frame | None:
        """Return the next frame, or None once the stream is permanently exhausted.

        Raises FrameSourceError for read failures other than clean exhaustion.
        """

    def close(self) -> None:
        """Release any decoder or file handles held by the source."""
