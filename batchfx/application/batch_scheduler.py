from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Sequence

from batchfx.application.batch_assembler import BatchAssembler
from batchfx.application.cycle_counter import CycleCounter
from batchfx.application.performance_tracker import PerformanceTracker
from batchfx.application.stream_lifecycle_manager import StreamLifecycleManager
from batchfx.core.batch import Batch
from batchfx.core.errors import (
    EXIT_CANCELLED,
    EXIT_OK,
    AllStreamsFailedError,
    ConfigurationError,
    EngineDispatchError,
    PipelineError,
)
from batchfx.core.frame import Frame
from batchfx.core.inference_engine import InferenceEngine
from batchfx.core.stream import Stream, StreamConfig
from batchfx.enums import SchedulerPhase, StreamState
from logger.filtered_logger import (
    LogChannel,
    debug as log_debug,
    error as log_error,
    info as log_info,
    warning as log_warning,
)


@dataclass(frozen=True, slots=True)
class StreamReport:
    index: int
    name: str | None
    state: StreamState
    frames_in: int
    frames_out: int
    failure: str | None


@dataclass
class RunSummary:
    """Outcome of one driver-loop run."""

    cycles: int
    batch_sizes: list[int] = field(default_factory=list)
    streams: list[StreamReport] = field(default_factory=list)
    allocations: int = 0
    deallocations: int = 0
    abandoned_handles: int = 0
    cancelled: bool = False
    truncated: bool = False
    stage_ms: dict[str, float] = field(default_factory=dict)

    @property
    def failed_streams(self) -> list[StreamReport]:
        return [report for report in self.streams if report.failure is not None]

    @property
    def exit_code(self) -> int:
        return EXIT_CANCELLED if self.cancelled else EXIT_OK


class BatchScheduler:
    """Drives assemble -> dispatch -> distribute -> retire until every stream has drained.

    At most one dispatch is in flight. Cancellation is only observed between
    cycles; it drains every live stream and retires its handle before
    returning. When the engine requires a release flush, every handle released
    early rides exactly one more dispatch flagged as releasing, including on
    cancellation, the cycle limit and aborts other than an engine failure.
    Run-wide errors retire every remaining handle before they are re-raised.
    """

    def __init__(
        self,
        streams: Sequence[StreamConfig],
        engine: InferenceEngine,
        *,
        pull_workers: int = 0,
        cancel_event: threading.Event | None = None,
        max_cycles: int | None = None,
    ) -> None:
        if not streams:
            raise ConfigurationError("At least one input stream is required")
        if max_cycles is not None and max_cycles < 1:
            raise ConfigurationError("max_cycles must be >= 1 when set")
        self.streams = [Stream.from_config(index, config) for index, config in enumerate(streams)]
        self.engine = engine
        self.lifecycle = StreamLifecycleManager(engine)
        self.assembler = BatchAssembler(self.lifecycle, pull_workers=pull_workers)
        self.cycle_counter = CycleCounter()
        self.performance_tracker = PerformanceTracker()
        self.phase = SchedulerPhase.RUNNING
        self.max_cycles = max_cycles
        self.batch_sizes: list[int] = []
        self._cancel_event = cancel_event if cancel_event is not None else threading.Event()
        log_info(
            LogChannel.SCHEDULER,
            f"BatchScheduler initialized with {len(self.streams)} stream(s) on engine {engine.name} "
            f"(release flush: {self.lifecycle.flush_required})",
        )

    def cancel(self) -> None:
        """Request an orderly drain at the next cycle boundary."""
        self._cancel_event.set()

    def run(self) -> RunSummary:
        self._load_engine()
        cancelled = False
        truncated = False
        cycle: int | None = None
        try:
            while True:
                if self._cancel_event.is_set():
                    cancelled = True
                    log_info(LogChannel.SCHEDULER, "Cancellation requested; draining all streams")
                    self._drain("cancelled")
                    self._set_phase(SchedulerPhase.CANCELLED)
                    break
                if self.max_cycles is not None and self.cycle_counter.completed >= self.max_cycles:
                    truncated = True
                    log_info(LogChannel.SCHEDULER, f"Cycle limit {self.max_cycles} reached; draining all streams")
                    self._drain("cycle limit")
                    break

                cycle = self.cycle_counter.begin()
                self._set_phase(SchedulerPhase.ASSEMBLING)
                with self.performance_tracker.stage(cycle, "assemble"):
                    batch = self.assembler.assemble(self.streams, cycle)
                if not batch.any_active:
                    self._set_phase(SchedulerPhase.RETIRING)
                    self._retire(batch)
                    break
                self._process(batch)
        except EngineDispatchError as exc:
            # The engine is in an unknown state: release handles without another dispatch.
            self._abort(cycle, exc)
            raise
        except Exception as exc:
            self._abort(cycle, exc, flush=True)
            raise
        finally:
            self.assembler.close()
            self._close_io()

        if not cancelled:
            self._set_phase(SchedulerPhase.DRAINED)
        summary = self._summarize(cancelled=cancelled, truncated=truncated)
        self._log_summary(summary)
        if summary.streams and len(summary.failed_streams) == len(summary.streams):
            raise AllStreamsFailedError(f"All {len(summary.streams)} stream(s) failed", summary=summary)
        return summary

    def _process(self, batch: Batch) -> None:
        """Dispatch, distribute and retire one assembled batch."""
        cycle = batch.cycle
        self._set_phase(SchedulerPhase.DISPATCHING)
        with self.performance_tracker.stage(cycle, "dispatch"):
            outputs = self._dispatch(batch)

        self._set_phase(SchedulerPhase.DISTRIBUTING)
        with self.performance_tracker.stage(cycle, "distribute"):
            self._distribute(batch, outputs)

        self._set_phase(SchedulerPhase.RETIRING)
        self._retire(batch)

        self.batch_sizes.append(batch.size)
        self.cycle_counter.complete(cycle)
        timings = self.performance_tracker.get_summary(cycle)
        if timings:
            log_debug(
                LogChannel.SCHEDULER,
                f"Cycle {cycle} ({batch.size} slot(s)): "
                + ", ".join(f"{stage}={seconds * 1000:.2f}ms" for stage, seconds in timings.items()),
            )
        self.performance_tracker.clear(cycle)

    def _drain(self, reason: str) -> None:
        """Orderly stop: engines that need a flush get one last releasing dispatch of the held frames."""
        if self.lifecycle.flush_required and any(stream.handle is not None for stream in self.streams):
            cycle = self.cycle_counter.begin()
            self._set_phase(SchedulerPhase.ASSEMBLING)
            batch = self.assembler.assemble_release(self.streams, cycle, write_outputs=True)
            self._process(batch)
        self.lifecycle.retire_all(self.streams, reason)

    def _abort(self, cycle: int | None, exc: Exception, *, flush: bool = False) -> None:
        self._set_phase(SchedulerPhase.FAILED)
        log_error(
            LogChannel.SCHEDULER,
            f"Run aborted during cycle {cycle}: {exc}; releasing "
            f"{self.lifecycle.live_handle_count(self.streams)} live handle(s)",
        )
        if flush and self.lifecycle.flush_required and any(stream.handle is not None for stream in self.streams):
            batch = self.assembler.assemble_release(self.streams, self.cycle_counter.begin(), write_outputs=False)
            try:
                self._dispatch(batch)
            except EngineDispatchError as flush_exc:
                log_error(LogChannel.ENGINE, f"Release dispatch after abort failed: {flush_exc}")
        self.lifecycle.retire_all(self.streams, "run aborted")

    def _load_engine(self) -> None:
        try:
            self.engine.load(max_batch_size=len(self.streams))
        except PipelineError:
            self._close_io()
            raise
        except Exception as exc:
            self._close_io()
            raise ConfigurationError(f"Engine {self.engine.name} failed to load: {exc}") from exc

    def _dispatch(self, batch: Batch) -> list[Frame]:
        try:
            outputs = self.engine.run(batch.size, batch.handles, batch.frames)
        except EngineDispatchError:
            raise
        except Exception as exc:
            raise EngineDispatchError(
                f"Engine {self.engine.name} failed on cycle {batch.cycle}: {exc}", cycle=batch.cycle
            ) from exc
        outputs = list(outputs)
        if len(outputs) != batch.size:
            raise EngineDispatchError(
                f"Engine {self.engine.name} returned {len(outputs)} output(s) for a batch of {batch.size}",
                cycle=batch.cycle,
            )
        return outputs

    def _distribute(self, batch: Batch, outputs: Sequence[Frame]) -> None:
        for slot, output in zip(batch.slots, outputs):
            if not slot.write_output:
                continue
            stream = self.streams[slot.stream_index]
            try:
                stream.sink.write(output)
            except Exception as exc:
                log_warning(LogChannel.IO, f"{stream.label}: write failed on cycle {batch.cycle}: {exc}; closing stream")
                stream.fail(f"write failed: {exc}")
                batch.failed_streams.append(stream.index)
                continue
            stream.frames_out += 1

    def _retire(self, batch: Batch) -> None:
        failed = set(batch.failed_streams)
        for index in sorted(set(batch.newly_draining) | failed):
            stream = self.streams[index]
            if index in failed and self.lifecycle.defer_release(stream):
                continue
            self.lifecycle.retire(stream)

    def _close_io(self) -> None:
        for stream in self.streams:
            for resource in (stream.source, stream.sink):
                try:
                    resource.close()
                except Exception as exc:
                    log_warning(LogChannel.IO, f"{stream.label}: close error: {exc}")

    def _set_phase(self, phase: SchedulerPhase) -> None:
        if phase != self.phase:
            log_debug(LogChannel.SCHEDULER, f"Phase {self.phase.value} -> {phase.value}")
            self.phase = phase

    def _summarize(self, *, cancelled: bool, truncated: bool) -> RunSummary:
        return RunSummary(
            cycles=self.cycle_counter.completed,
            batch_sizes=list(self.batch_sizes),
            streams=[
                StreamReport(
                    index=stream.index,
                    name=stream.name,
                    state=stream.state,
                    frames_in=stream.frames_in,
                    frames_out=stream.frames_out,
                    failure=stream.failure,
                )
                for stream in self.streams
            ],
            allocations=self.lifecycle.allocations,
            deallocations=self.lifecycle.deallocations,
            abandoned_handles=self.lifecycle.abandoned,
            cancelled=cancelled,
            truncated=truncated,
            stage_ms=self.performance_tracker.average_ms(),
        )

    @staticmethod
    def _log_summary(summary: RunSummary) -> None:
        log_info(LogChannel.SCHEDULER, f"Processed {summary.cycles} batch(es); handles {summary.allocations} allocated / {summary.deallocations} released")
        for report in summary.streams:
            status = f"failed: {report.failure}" if report.failure else report.state.value.lower()
            log_info(
                LogChannel.SCHEDULER,
                f"  stream {report.index}{f' ({report.name})' if report.name else ''}: "
                f"{report.frames_in} in / {report.frames_out} out, {status}",
            )
        if summary.stage_ms:
            timings = ", ".join(f"{stage}={ms:.2f}ms" for stage, ms in summary.stage_ms.items())
            log_debug(LogChannel.SCHEDULER, f"Mean stage timings: {timings}")


def run_pipeline(
    streams: Sequence[StreamConfig],
    engine: InferenceEngine,
    *,
    pull_workers: int = 0,
    cancel_event: threading.Event | None = None,
    max_cycles: int | None = None,
) -> RunSummary:
    """Run every stream through the engine until all of them have drained."""
    scheduler = BatchScheduler(
        streams,
        engine,
        pull_workers=pull_workers,
        cancel_event=cancel_event,
        max_cycles=max_cycles,
    )
    return scheduler.run()
