from __future__ import annotations

from dataclasses import dataclass, field

from batchfx.core.errors import FrameSourceError, StreamError
from batchfx.core.frame import Frame
from batchfx.core.frame_sink import FrameSink
from batchfx.core.frame_source import FrameSource
from batchfx.core.inference_engine import StateHandle
from batchfx.enums import StreamState

_ALLOWED_TRANSITIONS: dict[StreamState, frozenset[StreamState]] = {
    StreamState.UNOPENED: frozenset({StreamState.ACTIVE, StreamState.CLOSED}),
    StreamState.ACTIVE: frozenset({StreamState.DRAINING, StreamState.CLOSED}),
    StreamState.DRAINING: frozenset({StreamState.CLOSED}),
    StreamState.CLOSED: frozenset(),
}


@dataclass
class StreamConfig:
    """Binds one frame source to one frame sink."""

    source: FrameSource
    sink: FrameSink
    name: str | None = None


@dataclass
class Stream:
    """Per-stream identity, I/O binding, lookahead slot, and state handle ownership."""

    index: int
    source: FrameSource
    sink: FrameSink
    name: str | None = None
    state: StreamState = StreamState.UNOPENED
    handle: StateHandle | None = None
    release_requested: bool = False
    flush_pending: bool = False
    lookahead: Frame | None = None
    source_exhausted: bool = False
    frames_in: int = 0
    frames_out: int = 0
    failure: str | None = None
    _history: list[StreamState] = field(default_factory=list, repr=False)

    @classmethod
    def from_config(cls, index: int, config: StreamConfig) -> Stream:
        return cls(index=index, source=config.source, sink=config.sink, name=config.name)

    @property
    def label(self) -> str:
        return self.name or f"stream {self.index}"

    @property
    def is_live(self) -> bool:
        return self.state in (StreamState.ACTIVE, StreamState.DRAINING)

    @property
    def failed(self) -> bool:
        return self.failure is not None

    @property
    def history(self) -> tuple[StreamState, ...]:
        return tuple(self._history)

    def pull(self) -> Frame | None:
        """Read one frame from the source; the source is never read again after exhaustion."""
        if self.source_exhausted:
            return None
        try:
            frame = self.source.next_frame()
        except StreamError:
            raise
        except Exception as exc:
            raise FrameSourceError(f"{self.label}: read failed: {exc}") from exc
        if frame is None:
            self.source_exhausted = True
        return frame

    def take_lookahead(self) -> Frame | None:
        frame = self.lookahead
        self.lookahead = None
        return frame

    def transition(self, new_state: StreamState) -> None:
        if new_state == self.state:
            return
        if new_state not in _ALLOWED_TRANSITIONS[self.state]:
            raise RuntimeError(f"{self.label}: illegal transition {self.state.value} -> {new_state.value}")
        self._history.append(self.state)
        self.state = new_state

    def fail(self, reason: str) -> None:
        """Record the first stream-local failure; later ones are secondary."""
        if self.failure is None:
            self.failure = reason
