from __future__ import annotations

import time
from collections import defaultdict
from contextlib import contextmanager
from typing import Dict, Iterator

from logger.filtered_logger import LogChannel, debug as log_debug


class PerformanceTracker:
    """Collects per-cycle stage timings (assemble, dispatch, distribute)."""

    def __init__(self) -> None:
        self._starts: Dict[int, Dict[str, float]] = defaultdict(dict)
        self._history: Dict[int, Dict[str, float]] = defaultdict(dict)
        self._totals: Dict[str, float] = defaultdict(float)
        self._counts: Dict[str, int] = defaultdict(int)

    def start(self, cycle_id: int, stage: str) -> None:
        """Mark the beginning of a stage for the provided cycle_id."""
        self._starts[cycle_id][stage] = time.perf_counter()

    def stop(self, cycle_id: int, stage: str) -> float | None:
        """Record the elapsed time for a stage and log the duration."""
        start = self._starts.get(cycle_id, {}).pop(stage, None)
        if start is None:
            return None
        duration = time.perf_counter() - start
        self._history[cycle_id][stage] = duration
        self._totals[stage] += duration
        self._counts[stage] += 1
        log_debug(LogChannel.SCHEDULER, f"Cycle {cycle_id} stage {stage} -> {duration * 1000:.2f} ms")
        return duration

    def get_summary(self, cycle_id: int) -> Dict[str, float]:
        """Return the accumulated durations for all stages of a cycle."""
        return dict(self._history.get(cycle_id, {}))

    def average_ms(self) -> Dict[str, float]:
        """Mean duration per stage across every recorded cycle, in milliseconds."""
        return {stage: self._totals[stage] * 1000.0 / self._counts[stage] for stage in self._totals if self._counts[stage]}

    def clear(self, cycle_id: int) -> None:
        """Drop stored timings for a cycle once they have been consumed; totals are kept."""
        self._starts.pop(cycle_id, None)
        self._history.pop(cycle_id, None)

    @contextmanager
    def stage(self, cycle_id: int, stage: str) -> Iterator[None]:
        """Context manager that wraps the timing of a stage."""
        self.start(cycle_id, stage)
        try:
            yield
        finally:
            self.stop(cycle_id, stage)
