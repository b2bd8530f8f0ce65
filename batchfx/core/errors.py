"""Error taxonomy shared by the scheduler, its collaborators, and the CLI.

Run-wide errors derive from :class:`PipelineError` and carry the process exit
code the CLI reports. Stream-local errors derive from :class:`StreamError`;
the scheduler contains them to the stream that raised them.
"""

from __future__ import annotations

from typing import Any

EXIT_OK = 0
EXIT_USAGE = 1
EXIT_CANCELLED = 130


class PipelineError(Exception):
    """Fatal error that ends the whole run."""

    exit_code = 1


class ConfigurationError(PipelineError):
    """Invalid configuration detected before the driver loop starts."""

    exit_code = 2


class ShapeMismatchError(PipelineError):
    """A stream produced a frame whose resolution differs from the batch reference."""

    exit_code = 3

    def __init__(
        self,
        stream_index: int,
        actual: tuple[int, int],
        expected: tuple[int, int],
        stream_name: str | None = None,
    ) -> None:
        self.stream_index = stream_index
        self.actual = actual
        self.expected = expected
        label = stream_name or f"stream {stream_index}"
        super().__init__(
            f"Input {label} {actual[0]}x{actual[1]} does not match {expected[0]}x{expected[1]}; "
            "batching requires all video frames to be of the same size"
        )


class EngineDispatchError(PipelineError):
    """The inference engine failed to run a batch."""

    exit_code = 4

    def __init__(self, message: str, cycle: int | None = None) -> None:
        self.cycle = cycle
        super().__init__(message)


class AllStreamsFailedError(PipelineError):
    """Every stream ended in a stream-local failure; carries the run summary."""

    exit_code = 5

    def __init__(self, message: str, summary: Any = None) -> None:
        self.summary = summary
        super().__init__(message)


class StreamError(Exception):
    """Failure confined to a single stream."""


class FrameSourceError(StreamError):
    """Reading from a source failed for a reason other than clean exhaustion."""


class FrameSinkError(StreamError):
    """Writing a result frame to a stream output failed."""


class StateAllocationError(StreamError):
    """The engine refused to allocate a per-stream state handle."""


class StateDeallocationError(StreamError):
    """The engine failed to release a per-stream state handle."""
