from __future__ import annotations

import math
from dataclasses import dataclass, field

import numpy as np

_INTEGER_BIT_DEPTHS = {1: 8, 2: 16, 4: 32, 8: 64}


@dataclass(frozen=True)
class ImageStatistics:
    minimum: float
    maximum: float
    mean: float
    median: float
    stddev: float

    @classmethod
    def from_plane(cls, plane: np.ndarray) -> "ImageStatistics":
        values = np.asarray(plane, dtype=np.float64)
        values = values[np.isfinite(values)]
        if values.size == 0:
            nan = float("nan")
            return cls(nan, nan, nan, nan, nan)
        return cls(
            minimum=float(values.min()),
            maximum=float(values.max()),
            mean=float(values.mean()),
            median=float(np.median(values)),
            stddev=float(values.std()),
        )


@dataclass(frozen=True)
class PixelBuffer:
    """Read-only decoded image samples plus per-channel statistics.

    ``data`` is laid out as ``(height, width)`` for mono frames and
    ``(channels, height, width)`` for colour frames, matching FITS cubes.
    ``bit_depth`` follows the sample type: 8/16/32 for integers and
    -32/-64 for floating point, as in BITPIX.
    """

    data: np.ndarray
    bit_depth: int
    statistics: tuple[ImageStatistics, ...] = field(default=())

    @classmethod
    def from_array(cls, data: np.ndarray, *, bit_depth: int | None = None) -> "PixelBuffer":
        array = np.array(data, copy=True)
        array.setflags(write=False)
        if bit_depth is None:
            bit_depth = _infer_bit_depth(array.dtype)
        if array.size == 0:
            stats: tuple[ImageStatistics, ...] = ()
        elif array.ndim == 3:
            stats = tuple(ImageStatistics.from_plane(array[idx]) for idx in range(array.shape[0]))
        else:
            stats = (ImageStatistics.from_plane(array),)
        return cls(data=array, bit_depth=int(bit_depth), statistics=stats)

    @property
    def channels(self) -> int:
        return int(self.data.shape[0]) if self.data.ndim == 3 else 1

    @property
    def height(self) -> int:
        return int(self.data.shape[-2]) if self.data.ndim >= 2 else 0

    @property
    def width(self) -> int:
        return int(self.data.shape[-1]) if self.data.ndim >= 2 else 0

    @property
    def max_value(self) -> float:
        """Full-scale sample value used for saturation tests."""
        if self.bit_depth > 0:
            if np.issubdtype(self.data.dtype, np.signedinteger):
                return float(2 ** (self.bit_depth - 1) - 1)
            return float(2 ** self.bit_depth - 1)
        observed = [s.maximum for s in self.statistics if math.isfinite(s.maximum)]
        return max(observed) if observed else 1.0

    def luminance(self, channel: int | None = None) -> np.ndarray:
        """Return a single float32 plane: one channel or the channel average."""
        if self.data.ndim == 2:
            return np.asarray(self.data, dtype=np.float32)
        if self.data.ndim != 3:
            raise ValueError(f"unsupported pixel buffer shape {self.data.shape}")
        if channel is not None:
            if not 0 <= int(channel) < self.data.shape[0]:
                raise ValueError(f"channel {channel} out of range for {self.data.shape[0]} channels")
            return np.asarray(self.data[int(channel)], dtype=np.float32)
        return np.mean(self.data, axis=0, dtype=np.float64).astype(np.float32)


def _infer_bit_depth(dtype: np.dtype) -> int:
    if np.issubdtype(dtype, np.integer) or dtype == np.bool_:
        return _INTEGER_BIT_DEPTHS.get(int(dtype.itemsize), 16)
    return -8 * int(dtype.itemsize)
