from __future__ import annotations

from typing import Iterable

from batchfx.core.errors import StateAllocationError
from batchfx.core.inference_engine import InferenceEngine
from batchfx.core.stream import Stream
from batchfx.enums import StreamState
from logger.filtered_logger import (
    LogChannel,
    debug as log_debug,
    error as log_error,
    warning as log_warning,
)


class StreamLifecycleManager:
    """Allocates a state handle per stream and retires it exactly once.

    Retirement follows a two-phase protocol when the engine reports
    ``requires_release_flush``: deallocation is requested as soon as the
    stream is known to be exhausted, the handle rides along (flagged
    ``releasing``) in the dispatch carrying the stream's last frame, and the
    bookkeeping is released only after that dispatch. Without the capability
    the deallocation itself happens after the dispatch.
    """

    def __init__(self, engine: InferenceEngine) -> None:
        self._engine = engine
        self.allocations = 0
        self.deallocations = 0
        self.abandoned = 0

    @property
    def flush_required(self) -> bool:
        return bool(self._engine.requires_release_flush)

    def on_first_frame(self, stream: Stream) -> bool:
        """Bind a fresh handle to a stream that just produced its first frame.

        Returns False when the engine refused; the stream is then closed and
        excluded from every later batch while the other streams continue.
        """
        if stream.state != StreamState.UNOPENED or stream.handle is not None:
            raise RuntimeError(f"{stream.label}: state handle already allocated")
        try:
            handle = self._engine.allocate_state()
        except StateAllocationError as exc:
            self._reject(stream, str(exc))
            return False
        except Exception as exc:
            self._reject(stream, f"state allocation failed: {exc}")
            return False
        stream.handle = handle
        self.allocations += 1
        stream.transition(StreamState.ACTIVE)
        log_debug(LogChannel.SCHEDULER, f"{stream.label}: allocated state handle {handle.token}")
        return True

    def on_exhausted(self, stream: Stream) -> bool:
        """Move a stream to Draining the cycle its source first reports exhaustion.

        Returns True when the stream's slot in the upcoming dispatch must be
        flagged as releasing (phase one of the two-phase retire).
        """
        if stream.state == StreamState.DRAINING:
            return stream.release_requested
        stream.transition(StreamState.DRAINING)
        log_debug(LogChannel.SCHEDULER, f"{stream.label}: source exhausted, draining")
        if self.flush_required and stream.handle is not None:
            self._request_release(stream)
            return True
        return False

    def defer_release(self, stream: Stream) -> bool:
        """Hold a failed stream's handle back so it can ride one releasing dispatch.

        Only applies to engines with ``requires_release_flush`` and to handles
        whose release has not been requested yet. The stream moves to Draining
        and is picked up by the next assembly; returns False when the stream
        should be retired right away instead.
        """
        if not self.flush_required or stream.handle is None or stream.release_requested:
            return False
        if stream.state == StreamState.ACTIVE:
            stream.transition(StreamState.DRAINING)
        stream.flush_pending = True
        log_debug(LogChannel.SCHEDULER, f"{stream.label}: release deferred to the next dispatch")
        return True

    def release_now(self, stream: Stream) -> None:
        """Request release of a stream's handle ahead of the dispatch that carries it for the last time."""
        if stream.state == StreamState.ACTIVE:
            stream.transition(StreamState.DRAINING)
        stream.flush_pending = False
        self._request_release(stream)

    def retire(self, stream: Stream) -> None:
        """Finish retirement after the cycle's dispatch; safe to call more than once."""
        if stream.state == StreamState.CLOSED:
            return
        if stream.handle is not None and not stream.release_requested:
            self._request_release(stream)
        stream.handle = None
        stream.lookahead = None
        stream.flush_pending = False
        stream.transition(StreamState.CLOSED)
        log_debug(LogChannel.SCHEDULER, f"{stream.label}: closed after {stream.frames_in} frame(s)")

    def retire_all(self, streams: Iterable[Stream], reason: str) -> None:
        """Drain every stream that is not yet closed, releasing any handle it still owns."""
        for stream in streams:
            if stream.state == StreamState.CLOSED:
                continue
            if stream.state == StreamState.ACTIVE:
                stream.transition(StreamState.DRAINING)
            log_debug(LogChannel.SCHEDULER, f"{stream.label}: retiring ({reason})")
            self.retire(stream)

    def live_handle_count(self, streams: Iterable[Stream]) -> int:
        return sum(1 for stream in streams if stream.handle is not None and not stream.release_requested)

    def _request_release(self, stream: Stream) -> None:
        handle = stream.handle
        if handle is None or stream.release_requested:
            return
        # Flag first: a failing deallocation is never retried.
        stream.release_requested = True
        try:
            self._engine.deallocate_state(handle)
        except Exception as exc:
            self.abandoned += 1
            log_error(LogChannel.ENGINE, f"{stream.label}: failed to release state handle {handle.token}, abandoning it: {exc}")
            return
        self.deallocations += 1
        log_debug(LogChannel.SCHEDULER, f"{stream.label}: released state handle {handle.token}")

    def _reject(self, stream: Stream, reason: str) -> None:
        log_warning(LogChannel.ENGINE, f"{stream.label}: {reason}; closing stream")
        stream.fail(reason)
        stream.lookahead = None
        stream.transition(StreamState.CLOSED)
