from __future__ import annotations

import logging
import math
import os
from dataclasses import dataclass, field
from enum import Enum

logger = logging.getLogger(__name__)

# 35 mm film frame width, used to turn a focal length into a field width
FULL_FRAME_WIDTH_MM = 36.0


class ScaleUnits(str, Enum):
    DEG_WIDTH = "deg_width"
    ARCMIN_WIDTH = "arcmin_width"
    ARCSEC_PER_PIX = "arcsec_per_pix"
    FOCAL_MM = "focal_mm"


class Parity(str, Enum):
    """Image handedness relative to the sky.

    ``BOTH`` is only meaningful as a search setting; a solution is always
    ``NORMAL`` or ``FLIPPED``.
    """

    BOTH = "both"
    NORMAL = "normal"
    FLIPPED = "flipped"


class SortMode(str, Enum):
    BRIGHTNESS = "brightness"
    HFR = "hfr"


@dataclass
class ExtractionParameters:
    threshold_sigma: float = 2.0
    min_area: int = 5
    deblend_thresh: int = 32
    deblend_contrast: float = 0.005
    clean: bool = True
    clean_param: float = 1.0
    fwhm: float = 2.0
    mesh_size: int = 64
    background_filter: int = 3
    magzero: float = 20.0
    kron_fact: float = 2.5
    r_min: float = 3.5
    calculate_hfr: bool = True
    channel: int | None = None
    downsample: int = 1


@dataclass
class FilterParameters:
    max_ellipse: float = 1.5
    saturation_limit: float = 0.0
    remove_brightest: int = 0
    remove_dimmest: int = 0
    keep_num: int = 0
    sort_by: SortMode = SortMode.BRIGHTNESS


@dataclass
class SolveParameters:
    profile: str = "default"
    extraction: ExtractionParameters = field(default_factory=ExtractionParameters)
    filtering: FilterParameters = field(default_factory=FilterParameters)
    # Position prior
    search_ra: float | None = None
    search_dec: float | None = None
    search_radius: float = 15.0
    # Scale prior
    scale_low: float | None = None
    scale_high: float | None = None
    scale_units: ScaleUnits = ScaleUnits.ARCSEC_PER_PIX
    min_width: float = 0.1
    max_width: float = 180.0
    # Budget and parallelism
    time_limit: float = 600.0
    max_quads: int = 0
    parallel: bool = True
    max_workers: int = 0  # 0 = auto (half CPUs)
    # Acceptance
    logratio_tosolve: float = math.log(1e9)
    logratio_tokeep: float = math.log(1e12)
    logratio_totune: float = math.log(1e15)
    logratio_bail: float = math.log(1e-100)
    # Matching and verification tunables
    code_tolerance: float = 0.01
    verify_pix: float = 1.0
    distractor_ratio: float = 0.25
    verify_depth: float = 2.0
    max_stars: int = 50
    parity: Parity = Parity.BOTH
    tune_iterations: int = 5
    probe_chunk: int = 256

    @classmethod
    def from_profile(cls, name: str) -> "SolveParameters":
        from .profiles import get_profile

        return get_profile(name).build()

    @property
    def has_position(self) -> bool:
        return self.search_ra is not None and self.search_dec is not None

    def scale_bounds_arcsec(self, width: int, height: int) -> tuple[float, float]:
        """Return the (low, high) pixel scale prior in arcsec/pixel.

        Missing bounds fall back to the ``min_width``/``max_width`` field
        limits, which are expressed in degrees across the image width.
        """
        width = max(1, int(width))
        low = self._to_arcsec_per_pix(self.scale_low, width)
        high = self._to_arcsec_per_pix(self.scale_high, width)
        width_low = self.min_width * 3600.0 / width
        width_high = self.max_width * 3600.0 / width
        if low is None:
            low = width_low
        if high is None:
            high = width_high
        if low > high:
            low, high = high, low
        return float(low), float(high)

    def _to_arcsec_per_pix(self, value: float | None, width: int) -> float | None:
        if value is None:
            return None
        value = float(value)
        if not math.isfinite(value) or value <= 0:
            return None
        units = ScaleUnits(self.scale_units)
        if units is ScaleUnits.DEG_WIDTH:
            return value * 3600.0 / width
        if units is ScaleUnits.ARCMIN_WIDTH:
            return value * 60.0 / width
        if units is ScaleUnits.FOCAL_MM:
            field_deg = math.degrees(2.0 * math.atan(FULL_FRAME_WIDTH_MM / (2.0 * value)))
            return field_deg * 3600.0 / width
        return value

    def logratio_thresholds(self) -> tuple[float, float, float]:
        """Return (tosolve, tokeep, totune) clamped to a non-decreasing ladder."""
        tosolve = float(self.logratio_tosolve)
        tokeep = max(float(self.logratio_tokeep), tosolve)
        totune = max(float(self.logratio_totune), tokeep)
        if tokeep != self.logratio_tokeep or totune != self.logratio_totune:
            logger.warning(
                "log-odds thresholds clamped to tosolve=%.2f tokeep=%.2f totune=%.2f",
                tosolve,
                tokeep,
                totune,
            )
        return tosolve, tokeep, totune

    def worker_count(self, jobs: int) -> int:
        if not self.parallel or jobs <= 1:
            return 1
        requested = int(self.max_workers)
        if requested <= 0:
            requested = max(1, (os.cpu_count() or 2) // 2)
        return max(1, min(requested, jobs))
