from __future__ import annotations

from logger.filtered_logger import LogChannel, debug as log_debug


class CycleCounter:
    """Hands out monotonic cycle IDs; diagnostics only, never used for correctness."""

    def __init__(self, start: int = 1) -> None:
        self._next_id = start
        self._completed = 0
        self._current: int | None = None

    @property
    def current(self) -> int | None:
        return self._current

    @property
    def completed(self) -> int:
        """Number of cycles that dispatched a non-empty batch."""
        return self._completed

    def begin(self) -> int:
        """Return a new cycle_id for the cycle about to be assembled."""
        cycle_id = self._next_id
        self._next_id += 1
        self._current = cycle_id
        log_debug(LogChannel.SCHEDULER, f"Begin cycle {cycle_id}")
        return cycle_id

    def complete(self, cycle_id: int) -> None:
        """Mark cycle_id as dispatched and distributed."""
        if self._current == cycle_id:
            self._completed += 1
            self._current = None
