from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass
from typing import Callable

import numpy as np
from scipy.ndimage import distance_transform_edt, find_objects, gaussian_filter, label
from scipy.spatial import cKDTree

from .background import BackgroundModel, estimate_background
from .errors import Aborted, ExtractionError
from .parameters import ExtractionParameters
from .pixel_buffer import PixelBuffer
from .stars import STAR_DTYPE, Star, StarList

logger = logging.getLogger(__name__)

FWHM_TO_SIGMA = 1.0 / (2.0 * math.sqrt(2.0 * math.log(2.0)))
# Stars closer than this (pixels) are treated as the same source
DUPLICATE_RADIUS_PX = 0.5
_STRUCTURE = np.ones((3, 3), dtype=bool)
_MAX_APERTURE_PX = 100.0


@dataclass
class _Detection:
    x: float
    y: float
    flux: float
    peak: float
    amplitude: float
    threshold: float
    iso_radius: float
    hfr: float
    a: float
    b: float
    theta: float
    num_pixels: int
    on_border: bool


def _log_phase(stage: str, start: float) -> None:
    logger.debug("%s completed in %.3fs", stage, time.perf_counter() - start)


def _check_cancel(cancel_check: Callable[[], bool] | None) -> None:
    if cancel_check is not None and cancel_check():
        raise Aborted("extraction cancelled")


def bin_plane(plane: np.ndarray, factor: int) -> np.ndarray:
    """Average *plane* over ``factor x factor`` blocks, dropping partial edges."""
    factor = max(1, int(factor))
    if factor == 1:
        return plane
    height = (plane.shape[0] // factor) * factor
    width = (plane.shape[1] // factor) * factor
    if height == 0 or width == 0:
        return plane
    trimmed = plane[:height, :width]
    return trimmed.reshape(height // factor, factor, width // factor, factor).mean(axis=(1, 3), dtype=np.float64).astype(np.float32)


def _deblend(
    filtered: np.ndarray,
    flux_map: np.ndarray,
    blob: np.ndarray,
    *,
    nthresh: int,
    contrast: float,
) -> list[np.ndarray]:
    """Split *blob* into branches using exponentially spaced sub-thresholds.

    A branch is significant when it carries at least ``contrast`` of the
    blob's total flux. Returns the core mask of each final branch; a blob
    that never splits comes back as a single entry.
    """
    if nthresh <= 1 or contrast >= 1.0:
        return [blob]
    total = float(flux_map[blob].sum())
    values = filtered[blob]
    low = float(values.min())
    high = float(values.max())
    if total <= 0 or low <= 0 or high <= low * 1.0001:
        return [blob]
    levels = np.geomspace(low, high, nthresh + 1)[1:-1]
    leaves: list[np.ndarray] = []
    stack: list[tuple[np.ndarray, int]] = [(blob, 0)]
    while stack:
        mask, start = stack.pop()
        split: tuple[np.ndarray, list[int], int] | None = None
        for level_idx in range(start, levels.shape[0]):
            above = mask & (filtered > levels[level_idx])
            labeled, count = label(above, structure=_STRUCTURE)
            if count < 2:
                if count == 0:
                    break
                continue
            sums = np.bincount(labeled.ravel(), weights=flux_map.ravel(), minlength=count + 1)
            significant = [idx for idx in range(1, count + 1) if sums[idx] >= contrast * total]
            if len(significant) >= 2:
                split = (labeled, significant, level_idx)
                break
        if split is None:
            leaves.append(mask)
            continue
        labeled, significant, level_idx = split
        for idx in reversed(significant):
            stack.append((labeled == idx, level_idx + 1))
    if len(leaves) <= 1:
        return [blob]
    seeds = np.zeros(blob.shape, dtype=np.int32)
    for idx, leaf in enumerate(leaves, start=1):
        seeds[leaf] = idx
    _, (iy, ix) = distance_transform_edt(seeds == 0, return_indices=True)
    owner = seeds[iy, ix]
    return [blob & (owner == idx) for idx in range(1, len(leaves) + 1)]


def _ellipse_coefficients(a: float, b: float, theta: float) -> tuple[float, float, float]:
    cos_t = math.cos(theta)
    sin_t = math.sin(theta)
    inv_a2 = 1.0 / (a * a)
    inv_b2 = 1.0 / (b * b)
    cxx = cos_t * cos_t * inv_a2 + sin_t * sin_t * inv_b2
    cyy = sin_t * sin_t * inv_a2 + cos_t * cos_t * inv_b2
    cxy = 2.0 * cos_t * sin_t * (inv_a2 - inv_b2)
    return cxx, cyy, cxy


def _window(shape: tuple[int, ...], x: float, y: float, radius: float):
    x0 = max(0, int(math.floor(x - radius)))
    x1 = min(int(shape[1]), int(math.ceil(x + radius)) + 1)
    y0 = max(0, int(math.floor(y - radius)))
    y1 = min(int(shape[0]), int(math.ceil(y + radius)) + 1)
    yy, xx = np.mgrid[y0:y1, x0:x1]
    return (slice(y0, y1), slice(x0, x1)), xx - x, yy - y


def _half_flux_radius(radii: np.ndarray, values: np.ndarray) -> float:
    weights = np.clip(values, 0.0, None)
    total = float(weights.sum())
    if total <= 0 or radii.size == 0:
        return 0.0
    order = np.argsort(radii, kind="stable")
    r_sorted = radii[order]
    cumulative = np.cumsum(weights[order])
    half = 0.5 * total
    idx = int(np.searchsorted(cumulative, half))
    if idx <= 0:
        return float(r_sorted[0])
    if idx >= r_sorted.size:
        return float(r_sorted[-1])
    c0, c1 = float(cumulative[idx - 1]), float(cumulative[idx])
    r0, r1 = float(r_sorted[idx - 1]), float(r_sorted[idx])
    if c1 <= c0:
        return r1
    return r0 + (half - c0) / (c1 - c0) * (r1 - r0)


def _measure(
    component: np.ndarray,
    offset: tuple[int, int],
    plane: np.ndarray,
    residual: np.ndarray,
    threshold: np.ndarray,
    params: ExtractionParameters,
) -> _Detection | None:
    ly, lx = np.nonzero(component)
    ys = ly + offset[0]
    xs = lx + offset[1]
    values = residual[ys, xs].astype(np.float64)
    weights = np.clip(values, 0.0, None)
    iso_flux = float(weights.sum())
    if iso_flux <= 0:
        return None
    x = float(np.dot(weights, xs) / iso_flux)
    y = float(np.dot(weights, ys) / iso_flux)
    dx = xs - x
    dy = ys - y
    x2 = float(np.dot(weights, dx * dx) / iso_flux)
    y2 = float(np.dot(weights, dy * dy) / iso_flux)
    xy = float(np.dot(weights, dx * dy) / iso_flux)
    # Singular moments (single pixel or one-pixel line)
    if x2 * y2 - xy * xy < 1.0 / 144.0:
        x2 += 1.0 / 12.0
        y2 += 1.0 / 12.0
    half_sum = 0.5 * (x2 + y2)
    half_diff = math.sqrt(max(0.0, (0.5 * (x2 - y2)) ** 2 + xy * xy))
    a = math.sqrt(max(half_sum + half_diff, 1e-12))
    b = math.sqrt(max(half_sum - half_diff, 1e-12))
    theta = 0.5 * math.atan2(2.0 * xy, x2 - y2)

    height, width = plane.shape
    raw = plane[ys, xs]
    peak = float(np.nanmax(raw))
    amplitude = float(values.max())
    thresh = float(np.mean(threshold[ys, xs]))
    on_border = bool(xs.min() == 0 or ys.min() == 0 or xs.max() == width - 1 or ys.max() == height - 1)

    radius = min(_MAX_APERTURE_PX, max(float(params.r_min), 6.0 * max(params.kron_fact, 1.0) * a) + 1.0)
    win, wdx, wdy = _window(plane.shape, x, y, radius)
    local = residual[win].astype(np.float64)
    cxx, cyy, cxy = _ellipse_coefficients(a, b, theta)
    rr = np.sqrt(np.clip(cxx * wdx * wdx + cyy * wdy * wdy + cxy * wdx * wdy, 0.0, None))
    inner = rr <= 6.0
    inner_w = np.clip(local[inner], 0.0, None)
    kron_radius = float(np.dot(inner_w, rr[inner]) / inner_w.sum()) if inner_w.sum() > 0 else 0.0
    radial = np.hypot(wdx, wdy)
    if kron_radius <= 0 or params.kron_fact * kron_radius * math.sqrt(a * b) < params.r_min:
        aperture = radial <= params.r_min
    else:
        aperture = rr <= params.kron_fact * kron_radius
    flux = float(local[aperture].sum())
    if not math.isfinite(flux) or flux <= 0:
        flux = iso_flux
    hfr = _half_flux_radius(radial[aperture], local[aperture]) if params.calculate_hfr else 0.0
    return _Detection(
        x=x,
        y=y,
        flux=flux,
        peak=peak,
        amplitude=amplitude,
        threshold=max(thresh, 1e-12),
        iso_radius=math.sqrt(ly.size / math.pi),
        hfr=hfr,
        a=a,
        b=b,
        theta=math.degrees(theta),
        num_pixels=int(ly.size),
        on_border=on_border,
    )


def _clean(detections: list[_Detection], beta: float) -> list[_Detection]:
    """Drop detections explained by the wings of a brighter neighbour.

    Each brighter source is extended with a Moffat profile that equals its
    detection threshold at its isophotal radius; a fainter detection whose
    amplitude falls under that profile is removed.
    """
    if len(detections) < 2 or beta <= 0:
        return detections
    positions = np.array([(d.x, d.y) for d in detections], dtype=np.float64)
    reach = 10.0 * max(d.iso_radius for d in detections) + 1.0
    tree = cKDTree(positions)
    removed = np.zeros(len(detections), dtype=bool)
    for j, faint in enumerate(detections):
        for i in tree.query_ball_point(positions[j], r=reach):
            if i == j or removed[i] or detections[i].flux <= faint.flux:
                continue
            bright = detections[i]
            ratio = bright.amplitude / bright.threshold
            if ratio <= 1.0:
                continue
            denom = ratio ** (1.0 / beta) - 1.0
            if denom <= 0:
                continue
            alpha2 = bright.iso_radius ** 2 / denom
            r2 = float(np.sum((positions[i] - positions[j]) ** 2))
            predicted = bright.amplitude * (1.0 + r2 / alpha2) ** (-beta)
            if faint.amplitude < predicted:
                removed[j] = True
                break
    if removed.any():
        logger.debug("clean pass removed %d detections", int(removed.sum()))
    return [d for d, gone in zip(detections, removed) if not gone]


def _deduplicate(detections: list[_Detection]) -> list[_Detection]:
    if len(detections) < 2:
        return detections
    positions = np.array([(d.x, d.y) for d in detections], dtype=np.float64)
    pairs = cKDTree(positions).query_pairs(DUPLICATE_RADIUS_PX)
    if not pairs:
        return detections
    drop: set[int] = set()
    # detections are flux-sorted, so the larger index is the fainter twin
    for i, j in sorted(pairs):
        if i in drop or j in drop:
            continue
        drop.add(max(i, j))
    return [d for idx, d in enumerate(detections) if idx not in drop]


def detect_stars(
    plane: np.ndarray,
    *,
    params: ExtractionParameters | None = None,
    background: BackgroundModel | None = None,
    cancel_check: Callable[[], bool] | None = None,
) -> np.ndarray:
    """Detect, deblend and measure point sources on a single image plane.

    Returns a structured array with ``STAR_DTYPE`` fields sorted by flux
    (brightest first). ``ra``/``dec`` are NaN.
    """
    params = params or ExtractionParameters()
    data = np.asarray(plane, dtype=np.float32)
    stage = time.perf_counter()
    if background is None:
        background = estimate_background(
            data,
            mesh_size=params.mesh_size,
            filter_size=params.background_filter,
        )
    _log_phase("background", stage)
    _check_cancel(cancel_check)

    stage = time.perf_counter()
    residual = np.nan_to_num(background.subtract(data), nan=0.0, posinf=0.0, neginf=0.0)
    if params.fwhm > 0:
        filtered = gaussian_filter(residual, sigma=params.fwhm * FWHM_TO_SIGMA)
    else:
        filtered = residual
    threshold = float(params.threshold_sigma) * background.rms
    mask = filtered > threshold
    labeled, count = label(mask, structure=_STRUCTURE)
    _log_phase("threshold/label", stage)
    _check_cancel(cancel_check)
    if count == 0:
        return np.zeros(0, dtype=STAR_DTYPE)

    stage = time.perf_counter()
    flux_map = np.clip(residual, 0.0, None)
    detections: list[_Detection] = []
    min_area = max(1, int(params.min_area))
    for obj_idx, region in enumerate(find_objects(labeled), start=1):
        if obj_idx % 64 == 0:
            _check_cancel(cancel_check)
        if region is None:
            continue
        blob = labeled[region] == obj_idx
        if int(blob.sum()) < min_area:
            continue
        offset = (region[0].start, region[1].start)
        components = _deblend(
            filtered[region],
            flux_map[region],
            blob,
            nthresh=int(params.deblend_thresh),
            contrast=float(params.deblend_contrast),
        )
        for component in components:
            if len(components) > 1 and int(component.sum()) < min_area:
                continue
            detection = _measure(component, offset, data, residual, threshold, params)
            if detection is not None:
                detections.append(detection)
    _log_phase("deblend/measure", stage)

    detections.sort(key=lambda d: (-d.flux, d.y, d.x))
    if params.clean:
        detections = _clean(detections, float(params.clean_param))
    detections = _deduplicate(detections)
    out = np.zeros(len(detections), dtype=STAR_DTYPE)
    for idx, d in enumerate(detections):
        mag = params.magzero - 2.5 * math.log10(d.flux) if d.flux > 0 else np.nan
        out[idx] = (d.x, d.y, d.flux, d.peak, mag, d.hfr, d.a, d.b, d.theta, d.num_pixels, d.on_border, np.nan, np.nan)
    return out


def _validate(buffer: PixelBuffer) -> None:
    data = buffer.data
    if data.ndim not in (2, 3):
        raise ExtractionError(f"unsupported pixel buffer shape {data.shape}")
    if data.size == 0 or buffer.width == 0 or buffer.height == 0:
        raise ExtractionError("pixel buffer is empty")
    if not (np.issubdtype(data.dtype, np.number) or data.dtype == np.bool_):
        raise ExtractionError(f"unsupported sample type {data.dtype}")


def extract_stars(
    buffer: PixelBuffer,
    params: ExtractionParameters | None = None,
    *,
    cancel_check: Callable[[], bool] | None = None,
) -> StarList:
    """Run the extraction pipeline over *buffer* and return a flux-sorted StarList."""
    params = params or ExtractionParameters()
    _validate(buffer)
    try:
        plane = buffer.luminance(params.channel)
    except ValueError as exc:
        raise ExtractionError(str(exc)) from exc
    if not np.isfinite(plane).any():
        logger.warning("pixel buffer has no finite samples; returning an empty star list")
        return StarList()
    factor = max(1, int(params.downsample))
    if factor > 1:
        binned = bin_plane(plane, factor)
        if binned is plane:
            factor = 1
        else:
            logger.info("downsampling input by factor %d", factor)
        plane = binned
    raw = detect_stars(plane, params=params, cancel_check=cancel_check)
    stars = []
    for row in raw:
        stars.append(
            Star(
                x=float((row["x"] + 0.5) * factor - 0.5),
                y=float((row["y"] + 0.5) * factor - 0.5),
                flux=float(row["flux"]) * factor * factor,
                peak=float(row["peak"]),
                mag=float(params.magzero - 2.5 * math.log10(row["flux"] * factor * factor)),
                hfr=float(row["hfr"]) * factor,
                a=float(row["a"]) * factor,
                b=float(row["b"]) * factor,
                theta=float(row["theta"]),
                num_pixels=int(row["num_pixels"]) * factor * factor,
                on_border=bool(row["on_border"]),
            )
        )
    logger.info("extracted %d stars from %dx%d frame", len(stars), buffer.width, buffer.height)
    return StarList(stars)
