from __future__ import annotations

import logging
import math
from dataclasses import dataclass

import numpy as np
from astropy.stats import sigma_clipped_stats
from scipy.ndimage import map_coordinates, median_filter

logger = logging.getLogger(__name__)

# Meshes with fewer usable pixels than this fraction fall back to the global estimate
_MIN_MESH_COVERAGE = 0.5


@dataclass(frozen=True)
class BackgroundModel:
    """Sky level and per-pixel noise for one image plane."""

    level: np.ndarray
    rms: np.ndarray
    global_level: float
    global_rms: float
    constant: bool

    def subtract(self, plane: np.ndarray) -> np.ndarray:
        return np.asarray(plane, dtype=np.float32) - self.level


def _mode_estimate(mean: float, median: float, std: float) -> float:
    # Skewed (crowded) distributions fall back to the median
    if std > 0 and abs(mean - median) / std < 0.3:
        return 2.5 * median - 1.5 * mean
    return median


def _clipped_stats(values: np.ndarray, sigma: float, maxiters: int) -> tuple[float, float] | None:
    if values.size == 0:
        return None
    mean, median, std = sigma_clipped_stats(values, sigma=sigma, maxiters=maxiters)
    mean, median, std = float(mean), float(median), float(std)
    if not (math.isfinite(mean) and math.isfinite(median) and math.isfinite(std)):
        return None
    return _mode_estimate(mean, median, std), std


def _rms_floor(level: float) -> float:
    return max(1e-6, 1e-6 * abs(level))


def _constant(shape: tuple[int, int], level: float, rms: float) -> BackgroundModel:
    rms = max(rms, _rms_floor(level))
    return BackgroundModel(
        level=np.full(shape, level, dtype=np.float32),
        rms=np.full(shape, rms, dtype=np.float32),
        global_level=float(level),
        global_rms=float(rms),
        constant=True,
    )


def _upsample(grid: np.ndarray, shape: tuple[int, int], mesh_size: int) -> np.ndarray:
    height, width = shape
    gy = (np.arange(height, dtype=np.float64) + 0.5) / mesh_size - 0.5
    gx = (np.arange(width, dtype=np.float64) + 0.5) / mesh_size - 0.5
    gy = np.clip(gy, 0.0, grid.shape[0] - 1)
    gx = np.clip(gx, 0.0, grid.shape[1] - 1)
    yy, xx = np.meshgrid(gy, gx, indexing="ij")
    return map_coordinates(grid, [yy, xx], order=1, mode="nearest").astype(np.float32)


def estimate_background(
    plane: np.ndarray,
    *,
    mesh_size: int = 64,
    filter_size: int = 3,
    sigma: float = 3.0,
    maxiters: int = 5,
) -> BackgroundModel:
    """Estimate a smooth background and noise map with sigma-clipped mesh statistics.

    The image is tiled into ``mesh_size`` squares. Each tile gets a clipped
    mode estimate and standard deviation, the tile grid is median filtered to
    suppress meshes dominated by bright stars, and the result is bilinearly
    interpolated back to full resolution. Images smaller than one mesh, or
    whose meshes are unusable, get a single global constant instead.
    """
    data = np.asarray(plane, dtype=np.float32)
    shape = (int(data.shape[0]), int(data.shape[1]))
    finite = np.isfinite(data)
    if not finite.any():
        logger.debug("background: no finite samples, using zero level")
        return _constant(shape, 0.0, 1.0)
    global_stats = _clipped_stats(data[finite], sigma, maxiters)
    if global_stats is None:
        return _constant(shape, 0.0, 1.0)
    global_level, global_rms = global_stats
    mesh = max(8, int(mesh_size))
    if shape[0] < mesh or shape[1] < mesh:
        return _constant(shape, global_level, global_rms)

    ny = int(math.ceil(shape[0] / mesh))
    nx = int(math.ceil(shape[1] / mesh))
    level_grid = np.full((ny, nx), np.nan, dtype=np.float64)
    rms_grid = np.full((ny, nx), np.nan, dtype=np.float64)
    for j in range(ny):
        y0, y1 = j * mesh, min(shape[0], (j + 1) * mesh)
        for i in range(nx):
            x0, x1 = i * mesh, min(shape[1], (i + 1) * mesh)
            block = data[y0:y1, x0:x1]
            usable = block[np.isfinite(block)]
            if usable.size < _MIN_MESH_COVERAGE * block.size:
                continue
            stats = _clipped_stats(usable, sigma, maxiters)
            if stats is None:
                continue
            level_grid[j, i], rms_grid[j, i] = stats
    bad = ~np.isfinite(level_grid) | ~np.isfinite(rms_grid)
    if bad.all():
        logger.debug("background: all meshes unusable, using global level %.3f", global_level)
        return _constant(shape, global_level, global_rms)
    level_grid[bad] = global_level
    rms_grid[bad] = global_rms
    size = max(1, int(filter_size))
    if size > 1:
        level_grid = median_filter(level_grid, size=size, mode="nearest")
        rms_grid = median_filter(rms_grid, size=size, mode="nearest")
    level = _upsample(level_grid, shape, mesh)
    rms = _upsample(rms_grid, shape, mesh)
    np.maximum(rms, _rms_floor(global_level), out=rms)
    return BackgroundModel(
        level=level,
        rms=rms,
        global_level=float(global_level),
        global_rms=float(max(global_rms, _rms_floor(global_level))),
        constant=False,
    )
