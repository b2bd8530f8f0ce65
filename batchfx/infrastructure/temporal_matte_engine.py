from __future__ import annotations

from threading import Lock
from typing import Sequence

import numpy as np
import torch

from batchfx.core.errors import StateAllocationError, StateDeallocationError
from batchfx.core.frame import Frame, PixelFormat
from batchfx.core.inference_engine import InferenceEngine, StateHandle
from logger.filtered_logger import LogChannel, debug as log_debug, info as log_info

# Background adaptation rate per mode: 0 = quality (slow, stable), 1 = performance (fast).
_MODE_ADAPTATION: dict[int, float] = {0: 0.05, 1: 0.2}

# ITU-R BT.601 luma weights in BGR order.
_BGR_LUMA = (0.114, 0.587, 0.299)


def _resolve_device(device: str) -> torch.device:
    if device == "auto":
        return torch.device("cuda" if torch.cuda.is_available() else "cpu")
    resolved = torch.device(device)
    if resolved.type == "cuda" and not torch.cuda.is_available():
        raise RuntimeError("CUDA device requested but torch.cuda is not available")
    return resolved


class TemporalMatteEngine(InferenceEngine):
    """Batched foreground-matte effect with a recurrent background model per stream.

    Each state handle owns a running background estimate at the stream's
    resolution. A dispatch converts every slot to luma, emits a single-channel
    matte of the pixels that depart from that slot's background, then blends
    the frame into the background. With ``release_flush`` the engine behaves
    like a server-side backend: a deallocated handle stays valid for exactly
    one more dispatch, which finalises and frees it.
    """

    def __init__(
        self,
        *,
        mode: int = 0,
        device: str = "auto",
        threshold: float = 12.0,
        gain: float = 4.0,
        release_flush: bool = False,
        max_states: int | None = None,
    ) -> None:
        if mode not in _MODE_ADAPTATION:
            raise ValueError(f"Unsupported mode {mode}; expected one of {sorted(_MODE_ADAPTATION)}")
        self._mode = mode
        self._alpha = _MODE_ADAPTATION[mode]
        self._device = _resolve_device(device)
        self._threshold = float(threshold)
        self._gain = float(gain)
        self._release_flush = bool(release_flush)
        self._max_states = max_states
        self._max_batch_size: int | None = None
        self._states: dict[int, torch.Tensor | None] = {}
        self._releasing: set[int] = set()
        self._next_token = 1
        self._lock = Lock()
        self.dispatches = 0

    @property
    def name(self) -> str:
        return "temporal_matte"

    @property
    def requires_release_flush(self) -> bool:
        return self._release_flush

    @property
    def device(self) -> torch.device:
        return self._device

    @property
    def live_handles(self) -> int:
        with self._lock:
            return len(self._states)

    def load(self, max_batch_size: int) -> None:
        if max_batch_size < 1:
            raise ValueError("max_batch_size must be >= 1")
        self._max_batch_size = max_batch_size
        if self._max_states is None:
            self._max_states = max_batch_size
        log_info(
            LogChannel.ENGINE,
            f"TemporalMatteEngine loaded on {self._device} (mode={self._mode}, max_batch={max_batch_size}, "
            f"release_flush={self._release_flush})",
        )

    def allocate_state(self) -> StateHandle:
        with self._lock:
            if self._max_states is not None and len(self._states) >= self._max_states:
                raise StateAllocationError(f"state capacity of {self._max_states} stream(s) exhausted")
            token = self._next_token
            self._next_token += 1
            self._states[token] = None
        log_debug(LogChannel.ENGINE, f"Allocated state {token}")
        return StateHandle(token)

    def deallocate_state(self, handle: StateHandle) -> None:
        with self._lock:
            if handle.token not in self._states or handle.token in self._releasing:
                raise StateDeallocationError(f"state {handle.token} is unknown or already released")
            if self._release_flush:
                self._releasing.add(handle.token)
            else:
                del self._states[handle.token]
        log_debug(LogChannel.ENGINE, f"Deallocated state {handle.token}")

    def run(self, batch_size: int, handles: Sequence[StateHandle], inputs: Sequence[Frame]) -> list[Frame]:
        if batch_size != len(handles) or batch_size != len(inputs):
            raise ValueError(f"batch_size {batch_size} does not match {len(handles)} handle(s) / {len(inputs)} input(s)")
        if self._max_batch_size is None:
            raise RuntimeError("Engine must be loaded before run()")
        if batch_size > self._max_batch_size:
            raise ValueError(f"batch_size {batch_size} exceeds loaded maximum {self._max_batch_size}")
        if batch_size == 0:
            return []
        tokens = [handle.token for handle in handles]
        if len(set(tokens)) != len(tokens):
            raise ValueError("A state handle may appear at most once per batch")

        with self._lock:
            for token in tokens:
                if token not in self._states:
                    raise RuntimeError(f"state {token} was used after release")
            previous = [self._states[token] for token in tokens]

        with torch.inference_mode():
            luma = torch.from_numpy(np.stack([self._to_luma(frame) for frame in inputs])).to(self._device)
            background = torch.stack(
                [state if state is not None else luma[i] for i, state in enumerate(previous)]
            )
            difference = (luma - background).abs()
            matte = ((difference - self._threshold) * self._gain).clamp(0.0, 255.0).to(torch.uint8)
            updated = background + self._alpha * (luma - background)
            mattes = matte.cpu().numpy()

        with self._lock:
            for i, token in enumerate(tokens):
                if token in self._releasing:
                    self._releasing.discard(token)
                    del self._states[token]
                    log_debug(LogChannel.ENGINE, f"Flushed released state {token}")
                else:
                    self._states[token] = updated[i]
        self.dispatches += 1

        return [
            Frame(data=mattes[i], pixel_format=PixelFormat.ALPHA, index=inputs[i].index)
            for i in range(batch_size)
        ]

    def close(self) -> None:
        with self._lock:
            leaked = len(self._states)
            self._states.clear()
            self._releasing.clear()
        if leaked:
            log_info(LogChannel.ENGINE, f"TemporalMatteEngine closed with {leaked} state(s) still allocated")

    @staticmethod
    def _to_luma(frame: Frame) -> np.ndarray:
        data = frame.data
        if frame.pixel_format in (PixelFormat.GRAY, PixelFormat.ALPHA):
            return data.astype(np.float32)
        weights = _BGR_LUMA if frame.pixel_format == PixelFormat.BGR else _BGR_LUMA[::-1]
        return (data.astype(np.float32) * np.asarray(weights, dtype=np.float32)).sum(axis=2)
