from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Sequence

from batchfx.core.frame import Frame


@dataclass(frozen=True, slots=True)
class StateHandle:
    """Opaque per-stream inference state issued by an engine."""

    token: int


class InferenceEngine(ABC):
    """Contract for a batch-oriented effect backend with per-stream persistent state."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Human-readable engine identifier."""

    @property
    def requires_release_flush(self) -> bool:
        """Whether a deallocated handle must appear in one more dispatch before it is freed.

        Backends that finalise per-stream state on the server side need the
        released handle to travel with the stream's last frame. Local backends
        free the handle immediately and leave this False.
        """
        return False

    def load(self, max_batch_size: int) -> None:
        """Prepare the backend for batches of up to max_batch_size slots."""

    @abstractmethod
    def allocate_state(self) -> StateHandle:
        """Return a fresh state handle; raise StateAllocationError if the backend refuses."""

    @abstractmethod
    def deallocate_state(self, handle: StateHandle) -> None:
        """Release a handle; raise StateDeallocationError on failure."""

    @abstractmethod
    def run(self, batch_size: int, handles: Sequence[StateHandle], inputs: Sequence[Frame]) -> list[Frame]:
        """Run one batch. handles[i] is the state of the stream that supplied inputs[i].

        Returns one output frame per slot, in slot order.
        """

    def close(self) -> None:
        """Destroy backend resources."""
