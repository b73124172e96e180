from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Iterable, Mapping

import numpy as np
from scipy.spatial import cKDTree

from .budget import SolveBudget
from .index_file import IndexFile
from .parameters import SolveParameters
from .wcs_fit import TanTransform, fit_statistics, fit_tan

logger = logging.getLogger(__name__)

# Matches farther than this many sigma never count as agreements
MATCH_SIGMAS = 5.0
_NEIGHBOURS = 8


@dataclass(frozen=True)
class VerifyResult:
    logodds: float
    matches: tuple[tuple[int, int], ...]  # (image star, index star)
    n_reference: int
    n_tested: int


class Verifier:
    """Score transform hypotheses against the reference stars of an index.

    Each tested image star contributes ``log((1 - dr) * A * N(d; sigma) + dr)``
    when it lands near an unused reference star and ``log(dr)`` otherwise,
    where ``dr`` is the distractor ratio and ``A`` the image area. The score
    is the best running total over the ranked list of tested stars.
    """

    def __init__(self, positions: np.ndarray, image_size: tuple[int, int], params: SolveParameters) -> None:
        self.positions = np.asarray(positions, dtype=np.float64)
        self.width, self.height = (int(v) for v in image_size)
        self.area = float(self.width * self.height)
        self.sigma = max(1e-3, float(params.verify_pix))
        self.distractor = min(max(float(params.distractor_ratio), 1e-6), 1.0 - 1e-6)
        self.depth = max(0.0, float(params.verify_depth))
        self.bail = float(params.logratio_bail)
        self.tune_iterations = max(0, int(params.tune_iterations))
        self.verifications = 0

    def _reference_pixels(
        self,
        transform: TanTransform,
        index: IndexFile,
        exclude: set[int],
    ) -> tuple[np.ndarray, np.ndarray]:
        center_px = np.array([[(self.width - 1) / 2.0, (self.height - 1) / 2.0]])
        center = transform.pixel_to_sky(center_px)[0]
        radius_deg = 0.5 * math.hypot(self.width, self.height) * transform.pixscale / 3600.0 * 1.05
        ids = index.stars_in_cone(float(center[0]), float(center[1]), radius_deg)
        if exclude:
            ids = np.array([i for i in ids if int(i) not in exclude], dtype=np.int64)
        if ids.size == 0:
            return ids, np.zeros((0, 2))
        radec = np.column_stack((index.ra_deg[ids], index.dec_deg[ids]))
        pix = transform.sky_to_pixel(radec)
        inside = (
            np.isfinite(pix).all(axis=1)
            & (pix[:, 0] >= -0.5)
            & (pix[:, 0] < self.width - 0.5)
            & (pix[:, 1] >= -0.5)
            & (pix[:, 1] < self.height - 0.5)
        )
        return ids[inside], pix[inside]

    def score(
        self,
        transform: TanTransform,
        index: IndexFile,
        *,
        exclude_image: Iterable[int] = (),
        exclude_index: Iterable[int] = (),
        quad_center: tuple[float, float] | None = None,
        quad_radius: float | None = None,
    ) -> VerifyResult:
        """Compute the log-odds that *transform* is a true match.

        When a quad centre and radius are given the positional tolerance grows
        with distance from the quad, since a four-star hypothesis
        extrapolates poorly.
        """
        self.verifications += 1
        skip_image = {int(i) for i in exclude_image}
        ref_ids, ref_pix = self._reference_pixels(transform, index, {int(i) for i in exclude_index})
        n_ref = int(ref_ids.shape[0])
        test_ids = [i for i in range(self.positions.shape[0]) if i not in skip_image]
        limit = max(10, int(math.ceil(self.depth * n_ref)))
        test_ids = test_ids[:limit]
        log_distractor = math.log(self.distractor)
        if n_ref == 0 or not test_ids:
            return VerifyResult(log_distractor * len(test_ids), (), n_ref, len(test_ids))

        tree = cKDTree(ref_pix)
        k = min(_NEIGHBOURS, n_ref)
        test_pts = self.positions[test_ids]
        base_var = self.sigma * self.sigma
        if quad_center is not None and quad_radius and quad_radius > 0:
            r2 = np.sum((test_pts - np.asarray(quad_center)) ** 2, axis=1)
            variances = base_var * (1.0 + r2 / (quad_radius * quad_radius))
        else:
            variances = np.full(len(test_ids), base_var)
        reach = MATCH_SIGMAS * np.sqrt(variances)
        dists, nbrs = tree.query(test_pts, k=k, distance_upper_bound=float(reach.max()))
        dists = np.asarray(dists).reshape(len(test_ids), k)
        nbrs = np.asarray(nbrs).reshape(len(test_ids), k)

        used: set[int] = set()
        matches: list[tuple[int, int]] = []
        running = 0.0
        best = -math.inf
        best_count = 0
        for row, test_id in enumerate(test_ids):
            var = float(variances[row])
            chosen = -1
            chosen_d2 = 0.0
            for dist, nbr in zip(dists[row], nbrs[row]):
                if not math.isfinite(dist) or dist > reach[row]:
                    break
                if int(nbr) in used:
                    continue
                chosen = int(nbr)
                chosen_d2 = float(dist) ** 2
                break
            if chosen >= 0:
                density = math.exp(-chosen_d2 / (2.0 * var)) / (2.0 * math.pi * var)
                running += math.log((1.0 - self.distractor) * self.area * density + self.distractor)
                used.add(chosen)
                matches.append((int(test_id), int(ref_ids[chosen])))
            else:
                running += log_distractor
            if running > best:
                best = running
                best_count = len(matches)
            if running < self.bail:
                break
        return VerifyResult(best, tuple(matches[:best_count]), n_ref, len(test_ids))

    def tune(
        self,
        transform: TanTransform,
        result: VerifyResult,
        index: IndexFile,
        *,
        quad: tuple[tuple[int, int], ...],
        target: float,
        budget: SolveBudget,
    ) -> tuple[TanTransform, VerifyResult]:
        """Refit on the agreeing stars until *target* is reached or the score stalls."""
        best_t, best_r = transform, result
        exclude_image = [pair[0] for pair in quad]
        exclude_index = [pair[1] for pair in quad]
        for _ in range(self.tune_iterations):
            if best_r.logodds >= target or budget.aborted or budget.expired():
                break
            pairs = list(quad) + list(best_r.matches)
            if len(pairs) < 3:
                break
            pix, radec = correspondence_arrays(pairs, self.positions, index)
            try:
                fitted = fit_tan(pix, radec, crval=best_t.crval)
            except (ValueError, np.linalg.LinAlgError):
                break
            rescored = self.score(fitted, index, exclude_image=exclude_image, exclude_index=exclude_index)
            if rescored.logodds <= best_r.logodds:
                break
            best_t, best_r = fitted, rescored
        return best_t, best_r


def correspondence_arrays(
    pairs: Iterable[tuple[int, int]],
    positions: np.ndarray,
    index: IndexFile,
) -> tuple[np.ndarray, np.ndarray]:
    pairs = list(pairs)
    image_ids = np.array([p[0] for p in pairs], dtype=np.int64)
    index_ids = np.array([p[1] for p in pairs], dtype=np.int64)
    pix = np.asarray(positions, dtype=np.float64)[image_ids]
    radec = np.column_stack((index.ra_deg[index_ids], index.dec_deg[index_ids]))
    return pix, radec


def validate_solution(
    transform: TanTransform,
    pixels: np.ndarray,
    radec: np.ndarray,
    thresholds: Mapping[str, float] | None = None,
) -> dict[str, float | int | str | bool]:
    if thresholds is None:
        thresholds = {"rms_px": 1.0, "inliers": 6}
    if len(pixels) == 0:
        return {"quality": "FAIL", "success": False, "reason": "no matches"}
    try:
        stats = fit_statistics(transform, pixels, radec)
    except np.linalg.LinAlgError:
        return {"quality": "FAIL", "success": False, "reason": "invalid transform", "rms_px": float("inf"), "inliers": 0}
    success = stats["rms_px"] <= thresholds.get("rms_px", 1.0) and stats["inliers"] >= thresholds.get("inliers", 6)
    return {
        "quality": "GOOD" if success else "FAIL",
        "success": bool(success),
        "rms_px": stats["rms_px"],
        "max_px": stats["max_px"],
        "inliers": stats["inliers"],
    }
