from __future__ import annotations

import concurrent.futures
from dataclasses import dataclass
from typing import Sequence

import numpy as np

from batchfx.application.stream_lifecycle_manager import StreamLifecycleManager
from batchfx.core.batch import Batch, BatchSlot
from batchfx.core.errors import FrameSourceError, ShapeMismatchError
from batchfx.core.frame import Frame
from batchfx.core.stream import Stream
from batchfx.enums import StreamState
from logger.filtered_logger import LogChannel, debug as log_debug, warning as log_warning


@dataclass
class _PullResult:
    current: Frame | None = None
    lookahead: Frame | None = None
    error: FrameSourceError | None = None


class BatchAssembler:
    """Pulls one frame per live stream and packs them into a dense, slot-indexed batch.

    Streams are visited in ascending index order every cycle, so a stream's
    slot position is reproducible. Each stream keeps one frame of lookahead:
    the frame committed to this cycle's batch was pulled a cycle earlier, and
    the pull made now tells whether it is the stream's last. Only the frame
    being committed is checked against the reference resolution.
    """

    def __init__(
        self,
        lifecycle: StreamLifecycleManager,
        *,
        pull_workers: int = 0,
        reference_resolution: tuple[int, int] | None = None,
    ) -> None:
        self._lifecycle = lifecycle
        self._pull_workers = max(0, int(pull_workers))
        self._executor: concurrent.futures.ThreadPoolExecutor | None = None
        self._reference_frame: Frame | None = None
        self.reference_resolution = reference_resolution

    def assemble(self, streams: Sequence[Stream], cycle: int) -> Batch:
        batch = Batch(cycle=cycle)
        candidates = sorted(
            (
                stream
                for stream in streams
                if stream.state in (StreamState.UNOPENED, StreamState.ACTIVE) or stream.flush_pending
            ),
            key=lambda stream: stream.index,
        )
        results = self._pull_all(candidates)
        for stream in candidates:
            self._commit(stream, results[stream.index], batch)
        log_debug(LogChannel.SCHEDULER, f"Cycle {cycle} assembled {batch.size} slot(s): {batch.stream_indices}")
        return batch

    def assemble_release(self, streams: Sequence[Stream], cycle: int, *, write_outputs: bool) -> Batch:
        """Build a batch that carries every still-held handle one last time, flagged as releasing.

        Used when the run stops before the sources are exhausted. Each slot
        takes the stream's held lookahead frame when it matches the batch
        resolution, otherwise a blank frame of that resolution whose output is
        never written. No source is read.
        """
        batch = Batch(cycle=cycle)
        for stream in sorted(streams, key=lambda stream: stream.index):
            if stream.handle is None:
                continue
            frame = stream.take_lookahead()
            real = frame is not None and frame.resolution == self.reference_resolution
            if not real:
                frame = self._blank_frame()
            self._lifecycle.release_now(stream)
            write_output = write_outputs and real and not stream.failed
            batch.append(
                BatchSlot(
                    stream_index=stream.index,
                    frame=frame,
                    handle=stream.handle,
                    releasing=True,
                    write_output=write_output,
                )
            )
            batch.newly_draining.append(stream.index)
            if write_output:
                stream.frames_in += 1
        log_debug(LogChannel.SCHEDULER, f"Cycle {cycle} release batch of {batch.size} slot(s): {batch.stream_indices}")
        return batch

    def close(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None

    def _pull_all(self, candidates: Sequence[Stream]) -> dict[int, _PullResult]:
        workers = min(self._pull_workers, len(candidates))
        if workers <= 1:
            return {stream.index: self._pull_stream(stream) for stream in candidates}
        if self._executor is None:
            self._executor = concurrent.futures.ThreadPoolExecutor(
                max_workers=workers, thread_name_prefix="pull"
            )
        futures = {stream.index: self._executor.submit(self._pull_stream, stream) for stream in candidates}
        # Barrier: every pull of the cycle completes before anything is committed.
        concurrent.futures.wait(futures.values())
        return {index: future.result() for index, future in futures.items()}

    @staticmethod
    def _pull_stream(stream: Stream) -> _PullResult:
        result = _PullResult()
        if stream.flush_pending:
            result.current = stream.take_lookahead()
            return result
        try:
            if stream.state == StreamState.UNOPENED:
                result.current = stream.pull()
                if result.current is None:
                    return result
            else:
                result.current = stream.take_lookahead()
            result.lookahead = stream.pull()
        except FrameSourceError as exc:
            result.error = exc
        return result

    def _commit(self, stream: Stream, result: _PullResult, batch: Batch) -> None:
        if stream.flush_pending:
            self._commit_deferred_release(stream, result.current, batch)
            return

        current = result.current
        if current is None:
            if result.error is not None:
                log_warning(LogChannel.IO, f"{stream.label}: {result.error}; closing stream")
                stream.fail(str(result.error))
                batch.failed_streams.append(stream.index)
                return
            # Exhausted before producing anything: no handle is ever allocated.
            log_debug(LogChannel.SCHEDULER, f"{stream.label}: no frames, closing")
            stream.transition(StreamState.CLOSED)
            return

        self._validate(stream, current)

        if stream.state == StreamState.UNOPENED and not self._lifecycle.on_first_frame(stream):
            batch.failed_streams.append(stream.index)
            return

        releasing = False
        stream.lookahead = result.lookahead
        if result.lookahead is None:
            # A read error on the lookahead pull makes the frame in hand the stream's last.
            releasing = self._lifecycle.on_exhausted(stream)
            batch.newly_draining.append(stream.index)
            if result.error is not None:
                log_warning(LogChannel.IO, f"{stream.label}: {result.error}; closing stream after this frame")
                stream.fail(str(result.error))
                batch.failed_streams.append(stream.index)

        if stream.handle is None:
            raise RuntimeError(f"{stream.label}: committed without a state handle")
        batch.append(BatchSlot(stream_index=stream.index, frame=current, handle=stream.handle, releasing=releasing))
        stream.frames_in += 1

    def _commit_deferred_release(self, stream: Stream, frame: Frame | None, batch: Batch) -> None:
        if stream.handle is None:
            raise RuntimeError(f"{stream.label}: deferred release without a state handle")
        if frame is None or frame.resolution != self.reference_resolution:
            frame = self._blank_frame()
        self._lifecycle.release_now(stream)
        batch.append(
            BatchSlot(stream_index=stream.index, frame=frame, handle=stream.handle, releasing=True, write_output=False)
        )
        batch.newly_draining.append(stream.index)

    def _validate(self, stream: Stream, frame: Frame) -> None:
        if self.reference_resolution is None:
            self.reference_resolution = frame.resolution
            log_debug(LogChannel.SCHEDULER, f"Reference resolution {frame.width}x{frame.height} from {stream.label}")
        if self._reference_frame is None and frame.resolution == self.reference_resolution:
            self._reference_frame = frame
        if frame.resolution != self.reference_resolution:
            raise ShapeMismatchError(
                stream.index,
                frame.resolution,
                self.reference_resolution,
                stream_name=stream.name,
            )

    def _blank_frame(self) -> Frame:
        if self._reference_frame is None:
            raise RuntimeError("No reference frame to build a release slot from")
        reference = self._reference_frame
        return Frame(data=np.zeros_like(reference.data), pixel_format=reference.pixel_format)
