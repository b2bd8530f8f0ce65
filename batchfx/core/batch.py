from __future__ import annotations

from dataclasses import dataclass, field

from batchfx.core.frame import Frame
from batchfx.core.inference_engine import StateHandle


@dataclass(frozen=True, slots=True)
class BatchSlot:
    """One occupied batch position: which stream supplied which frame with which state."""

    stream_index: int
    frame: Frame
    handle: StateHandle
    releasing: bool = False
    write_output: bool = True


@dataclass
class Batch:
    """Slot-indexed batch assembled fresh for a single cycle."""

    cycle: int
    slots: list[BatchSlot] = field(default_factory=list)
    newly_draining: list[int] = field(default_factory=list)
    failed_streams: list[int] = field(default_factory=list)

    @property
    def size(self) -> int:
        return len(self.slots)

    @property
    def any_active(self) -> bool:
        """False only when no stream occupied a slot; the driver loop then terminates."""
        return bool(self.slots)

    @property
    def stream_indices(self) -> list[int]:
        return [slot.stream_index for slot in self.slots]

    @property
    def handles(self) -> list[StateHandle]:
        return [slot.handle for slot in self.slots]

    @property
    def frames(self) -> list[Frame]:
        return [slot.frame for slot in self.slots]

    def append(self, slot: BatchSlot) -> None:
        if any(existing.stream_index == slot.stream_index for existing in self.slots):
            raise RuntimeError(f"Stream {slot.stream_index} already occupies a slot in cycle {self.cycle}")
        self.slots.append(slot)
