from __future__ import annotations

import pytest

from batchfx.application.batch_assembler import BatchAssembler
from batchfx.application.stream_lifecycle_manager import StreamLifecycleManager
from batchfx.core.errors import ShapeMismatchError
from batchfx.core.stream import Stream, StreamConfig
from batchfx.enums import StreamState
from batchfx.tests.fakes import FakeEngine, ListFrameSource, RecordingSink, make_frame, make_streams


def _setup(lengths, engine=None, pull_workers=0):
    engine = engine or FakeEngine()
    configs, sources, _ = make_streams(lengths)
    streams = [Stream.from_config(i, config) for i, config in enumerate(configs)]
    lifecycle = StreamLifecycleManager(engine)
    return BatchAssembler(lifecycle, pull_workers=pull_workers), lifecycle, streams, engine


def test_lookahead_marks_stream_draining_in_the_cycle_of_its_last_frame() -> None:
    assembler, lifecycle, streams, _ = _setup([5, 3, 7])

    batches = []
    for cycle in (1, 2, 3):
        batch = assembler.assemble(streams, cycle)
        batches.append(batch)
        for index in batch.newly_draining:
            lifecycle.retire(streams[index])

    assert [batch.stream_indices for batch in batches] == [[0, 1, 2]] * 3
    assert [batch.newly_draining for batch in batches] == [[], [], [1]]
    assert streams[1].state == StreamState.CLOSED
    assert streams[1].frames_in == 3

    fourth = assembler.assemble(streams, 4)
    assert fourth.stream_indices == [0, 2]


def test_slot_frames_come_from_the_matching_stream_in_order() -> None:
    assembler, _, streams, _ = _setup([2, 2])

    first = assembler.assemble(streams, 1)
    second = assembler.assemble(streams, 2)

    assert [frame.index for frame in first.frames] == [0, 0]
    assert [frame.index for frame in second.frames] == [1, 1]
    assert all(stream.lookahead is None for stream in streams)


def test_empty_stream_closes_without_allocation() -> None:
    assembler, lifecycle, streams, engine = _setup([0, 2])

    batch = assembler.assemble(streams, 1)

    assert batch.stream_indices == [1]
    assert streams[0].state == StreamState.CLOSED
    assert streams[0].failure is None
    assert engine.allocation_attempts == 1
    assert lifecycle.allocations == 1


def test_flush_capability_flags_last_slot_as_releasing() -> None:
    assembler, _, streams, engine = _setup([1, 2], engine=FakeEngine(release_flush=True))

    batch = assembler.assemble(streams, 1)

    assert [slot.releasing for slot in batch.slots] == [True, False]
    assert engine.deallocated == [streams[0].handle.token]


def test_shape_mismatch_on_first_frame_leaves_stream_unallocated() -> None:
    engine = FakeEngine()
    lifecycle = StreamLifecycleManager(engine)
    streams = [
        Stream.from_config(0, StreamConfig(source=ListFrameSource(3, (8, 6)), sink=RecordingSink())),
        Stream.from_config(1, StreamConfig(source=ListFrameSource(3, (16, 12)), sink=RecordingSink())),
    ]
    assembler = BatchAssembler(lifecycle)

    with pytest.raises(ShapeMismatchError) as excinfo:
        assembler.assemble(streams, 1)

    assert excinfo.value.stream_index == 1
    assert streams[0].handle is not None
    assert streams[1].handle is None
    assert len(engine.allocated) == 1


def test_source_error_on_lookahead_commits_the_held_frame_as_the_last() -> None:
    engine = FakeEngine()
    lifecycle = StreamLifecycleManager(engine)
    streams = [
        Stream.from_config(0, StreamConfig(source=ListFrameSource(4, fail_at=2), sink=RecordingSink())),
        Stream.from_config(1, StreamConfig(source=ListFrameSource(4), sink=RecordingSink())),
    ]
    assembler = BatchAssembler(lifecycle)

    assert assembler.assemble(streams, 1).stream_indices == [0, 1]
    second = assembler.assemble(streams, 2)

    assert second.stream_indices == [0, 1]
    assert [frame.index for frame in second.frames] == [1, 1]
    assert second.newly_draining == [0]
    assert second.failed_streams == [0]
    assert "decode error" in streams[0].failure
    assert streams[0].state == StreamState.DRAINING


def test_parallel_pulls_produce_the_same_batches_as_sequential_pulls() -> None:
    sequential, _, seq_streams, _ = _setup([4, 1, 3])
    parallel, _, par_streams, _ = _setup([4, 1, 3], pull_workers=3)
    try:
        for cycle in range(1, 5):
            seq_batch = sequential.assemble(seq_streams, cycle)
            par_batch = parallel.assemble(par_streams, cycle)
            assert par_batch.stream_indices == seq_batch.stream_indices
            assert par_batch.newly_draining == seq_batch.newly_draining
            assert [f.index for f in par_batch.frames] == [f.index for f in seq_batch.frames]
    finally:
        parallel.close()


def test_source_error_on_first_pull_fails_stream_without_allocation() -> None:
    engine = FakeEngine()
    lifecycle = StreamLifecycleManager(engine)
    streams = [
        Stream.from_config(0, StreamConfig(source=ListFrameSource(4, fail_at=0), sink=RecordingSink())),
        Stream.from_config(1, StreamConfig(source=ListFrameSource(4), sink=RecordingSink())),
    ]
    assembler = BatchAssembler(lifecycle)

    batch = assembler.assemble(streams, 1)

    assert batch.stream_indices == [1]
    assert batch.failed_streams == [0]
    assert streams[0].handle is None
    assert len(engine.allocated) == 1


def test_lookahead_resolution_is_checked_only_when_committed() -> None:
    engine = FakeEngine()
    lifecycle = StreamLifecycleManager(engine)
    streams = [
        Stream.from_config(0, StreamConfig(source=ListFrameSource(3, resolutions={1: (4, 4)}), sink=RecordingSink())),
        Stream.from_config(1, StreamConfig(source=ListFrameSource(3), sink=RecordingSink())),
    ]
    assembler = BatchAssembler(lifecycle)

    first = assembler.assemble(streams, 1)
    assert first.stream_indices == [0, 1]
    assert streams[0].lookahead.resolution == (4, 4)

    with pytest.raises(ShapeMismatchError) as excinfo:
        assembler.assemble(streams, 2)
    assert excinfo.value.stream_index == 0


def test_release_batch_carries_held_frames_flagged_as_releasing() -> None:
    assembler, lifecycle, streams, engine = _setup([3, 1], engine=FakeEngine(release_flush=True))
    first = assembler.assemble(streams, 1)
    for index in first.newly_draining:
        lifecycle.retire(streams[index])
    token = streams[0].handle.token

    batch = assembler.assemble_release(streams, 2, write_outputs=True)

    assert batch.stream_indices == [0]
    assert [frame.index for frame in batch.frames] == [1]
    assert [(slot.releasing, slot.write_output) for slot in batch.slots] == [(True, True)]
    assert batch.newly_draining == [0]
    assert token in engine.deallocated
    assert streams[0].state == StreamState.DRAINING
    assert streams[0].frames_in == 2


def test_release_batch_blanks_a_mismatching_lookahead_and_drops_its_output() -> None:
    engine = FakeEngine(release_flush=True)
    lifecycle = StreamLifecycleManager(engine)
    streams = [
        Stream.from_config(0, StreamConfig(source=ListFrameSource(3, resolutions={1: (4, 4)}), sink=RecordingSink())),
    ]
    assembler = BatchAssembler(lifecycle)
    assembler.assemble(streams, 1)

    batch = assembler.assemble_release(streams, 2, write_outputs=True)

    (slot,) = batch.slots
    assert slot.releasing and not slot.write_output
    assert slot.frame.resolution == (8, 6)
    assert not slot.frame.data.any()
    assert streams[0].frames_in == 1


def test_committing_an_active_stream_without_a_handle_is_an_error() -> None:
    assembler, _, streams, _ = _setup([2])
    streams[0].transition(StreamState.ACTIVE)
    streams[0].lookahead = make_frame(0)

    with pytest.raises(RuntimeError, match="without a state handle"):
        assembler.assemble(streams, 1)
