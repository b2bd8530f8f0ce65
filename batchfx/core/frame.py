from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

import numpy as np


class PixelFormat(str, Enum):
    """Pixel layouts exchanged between sources, the engine, and sinks."""

    BGR = "BGR"
    RGB = "RGB"
    GRAY = "GRAY"
    ALPHA = "ALPHA"

    @property
    def channels(self) -> int:
        if self in (PixelFormat.BGR, PixelFormat.RGB):
            return 3
        return 1


@dataclass(frozen=True, slots=True)
class Frame:
    """A host-resident 2D pixel buffer.

    Notes:
    - `data` is HxW for single-channel formats and HxWxC otherwise.
    - A frame is only borrowed by the engine for the duration of one dispatch.
    """

    data: np.ndarray
    pixel_format: PixelFormat = PixelFormat.BGR
    index: int | None = None

    @property
    def width(self) -> int:
        return int(self.data.shape[1])

    @property
    def height(self) -> int:
        return int(self.data.shape[0])

    @property
    def resolution(self) -> tuple[int, int]:
        return self.width, self.height

    @classmethod
    def from_array(cls, data: np.ndarray, *, index: int | None = None) -> Frame:
        """Wrap an OpenCV-style array, inferring BGR or GRAY from its rank."""
        if data.ndim == 2:
            return cls(data=data, pixel_format=PixelFormat.GRAY, index=index)
        if data.ndim == 3 and data.shape[2] == 3:
            return cls(data=data, pixel_format=PixelFormat.BGR, index=index)
        raise ValueError(f"Unsupported frame array shape {data.shape}")
