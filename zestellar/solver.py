from __future__ import annotations

import concurrent.futures
import logging
import math
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

import numpy as np

from .budget import CancelToken, SolveBudget
from .errors import Aborted, IndexUnavailable, NoSolution, StellarSolverError
from .index_catalog import IndexCatalog, as_catalog
from .index_file import IndexFile
from .matcher import CandidateMatch, QuadMatcher
from .parameters import SolveParameters
from .pixel_buffer import PixelBuffer
from .solution import MatchedStar, Solution
from .star_detect import extract_stars
from .star_filter import filter_stars
from .stars import StarList
from .verify import Verifier, VerifyResult, correspondence_arrays, validate_solution
from .wcs_fit import TanTransform, fit_statistics, fit_tan

logger = logging.getLogger(__name__)

MIN_SOLVE_STARS = 4


def _log_phase(stage: str, start: float) -> None:
    logger.debug("%s completed in %.2fs", stage, time.perf_counter() - start)


class SolverState(str, Enum):
    IDLE = "idle"
    EXTRACTING = "extracting"
    MATCHING = "matching"
    VERIFYING = "verifying"
    SOLVED = "solved"
    FAILED = "failed"
    ABORTED = "aborted"


@dataclass
class SolveResult:
    success: bool
    message: str
    solution: Optional[Solution] = None
    error: Optional[StellarSolverError] = None
    stats: dict[str, Any] = field(default_factory=dict)

    def raise_for_error(self) -> Solution:
        """Return the solution or re-raise the typed failure."""
        if self.error is not None:
            raise self.error
        assert self.solution is not None
        return self.solution


@dataclass(frozen=True)
class _Proposal:
    index: IndexFile
    candidate: CandidateMatch
    transform: TanTransform
    verified: VerifyResult

    @property
    def logodds(self) -> float:
        return self.verified.logodds

    def pairs(self) -> list[tuple[int, int]]:
        quad = list(zip(self.candidate.image_stars, self.candidate.index_stars))
        return quad + list(self.verified.matches)


class _BestMatch:
    """Single owner of the best-so-far proposal; only strictly higher scores replace it."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._best: _Proposal | None = None
        self._history: list[float] = []

    def offer(self, proposal: _Proposal) -> bool:
        with self._lock:
            if self._best is not None and proposal.logodds <= self._best.logodds:
                return False
            self._best = proposal
            self._history.append(proposal.logodds)
            logger.debug(
                "new best match in %s: log-odds %.2f (%d agreeing stars)",
                proposal.index.name,
                proposal.logodds,
                len(proposal.verified.matches),
            )
            return True

    @property
    def best(self) -> _Proposal | None:
        with self._lock:
            return self._best

    @property
    def history(self) -> list[float]:
        with self._lock:
            return list(self._history)


class StellarSolver:
    """Extract stars from one pixel buffer and plate-solve it against an index catalog.

    The catalog is owned by the caller and may be shared across solvers;
    :meth:`abort` may be called from any thread while :meth:`solve` runs.
    """

    def __init__(
        self,
        buffer: PixelBuffer | np.ndarray,
        catalog: IndexCatalog | None = None,
    ) -> None:
        if not isinstance(buffer, PixelBuffer):
            buffer = PixelBuffer.from_array(np.asarray(buffer))
        self.buffer = buffer
        self._catalog = as_catalog(catalog)
        self._token = CancelToken()
        self._state_lock = threading.Lock()
        self._state = SolverState.IDLE
        self._star_list = StarList()
        self._solution: Solution | None = None
        self._last_result: SolveResult | None = None

    @property
    def image_size(self) -> tuple[int, int]:
        return self.buffer.width, self.buffer.height

    @property
    def state(self) -> SolverState:
        with self._state_lock:
            return self._state

    def _set_state(self, state: SolverState) -> None:
        with self._state_lock:
            if self._state is not state:
                logger.debug("solver state %s -> %s", self._state.value, state.value)
            self._state = state

    @property
    def star_list(self) -> StarList:
        return self._star_list

    @property
    def solution(self) -> Solution | None:
        return self._solution

    @property
    def last_result(self) -> SolveResult | None:
        return self._last_result

    def abort(self) -> None:
        """Request cooperative cancellation of the running extraction or solve.

        An abort issued before a run starts cancels that run; the request is
        cleared only once a run finishes.
        """
        logger.info("abort requested")
        self._token.cancel()

    def extract(
        self,
        profile: str | None = None,
        *,
        parameters: SolveParameters | None = None,
        with_coordinates: bool = True,
    ) -> StarList:
        """Detect and filter stars; attach RA/Dec when a solution is already known."""
        if parameters is None:
            parameters = SolveParameters.from_profile(profile) if profile else SolveParameters()
        try:
            stars = self._extract(parameters)
        except Aborted:
            self._set_state(SolverState.ABORTED)
            raise
        except StellarSolverError:
            self._set_state(SolverState.FAILED)
            raise
        else:
            self._set_state(SolverState.IDLE)
        finally:
            self._token.reset()
        if with_coordinates and self._solution is not None:
            stars = stars.with_sky_coordinates(self._solution.pixel_to_sky)
            self._star_list = stars
        return stars

    def _extract(self, params: SolveParameters) -> StarList:
        self._set_state(SolverState.EXTRACTING)
        stage = time.perf_counter()
        raw = extract_stars(self.buffer, params.extraction, cancel_check=self._token)
        stars = filter_stars(raw, params.filtering, max_value=self.buffer.max_value)
        _log_phase("extraction", stage)
        logger.info("star list: %d of %d detections kept (profile %s)", len(stars), len(raw), params.profile)
        self._star_list = stars
        return stars

    def solve(
        self,
        parameters: SolveParameters | None = None,
        catalog: IndexCatalog | None = None,
    ) -> SolveResult:
        """Run extraction, matching and verification; never raises for solve failures."""
        params = parameters or SolveParameters()
        if catalog is not None:
            self._catalog = as_catalog(catalog)
        self._solution = None
        budget = SolveBudget(time_limit=params.time_limit, max_quads=params.max_quads, token=self._token)
        stats: dict[str, Any] = {}
        try:
            solution = self._solve(params, budget, stats)
        except StellarSolverError as exc:
            self._set_state(SolverState.ABORTED if isinstance(exc, Aborted) else SolverState.FAILED)
            logger.info("solve failed: %s", exc)
            result = SolveResult(False, str(exc), None, exc, stats)
        else:
            self._solution = solution
            self._star_list = self._star_list.with_sky_coordinates(solution.pixel_to_sky)
            self._set_state(SolverState.SOLVED)
            result = SolveResult(True, "solved", solution, None, stats)
        finally:
            self._token.reset()
        stats["elapsed"] = budget.elapsed
        stats["quads_used"] = budget.quads_used
        self._last_result = result
        return result

    def _solve(self, params: SolveParameters, budget: SolveBudget, stats: dict[str, Any]) -> Solution:
        stars = self._extract(params)
        stats["stars"] = len(stars)
        if budget.aborted:
            raise Aborted("solve aborted during extraction")
        if len(stars) < MIN_SOLVE_STARS:
            raise NoSolution(f"only {len(stars)} usable stars; at least {MIN_SOLVE_STARS} are required")

        width, height = self.image_size
        scale_range = params.scale_bounds_arcsec(width, height)
        position = (params.search_ra, params.search_dec, params.search_radius) if params.has_position else None
        self._catalog.load()
        if len(self._catalog) == 0:
            raise IndexUnavailable("no index files are loaded")
        selected = self._catalog.select(scale_range, (width, height), position)
        stats["indexes"] = [index.name for index in selected]
        if not selected:
            raise IndexUnavailable(
                f"no index covers {scale_range[0]:.3g}-{scale_range[1]:.3g} arcsec/pixel"
                + (f" near RA {position[0]:.3f} Dec {position[1]:.3f}" if position else "")
            )
        logger.info(
            "searching %d index files for %.3g-%.3g arcsec/pixel: %s",
            len(selected),
            scale_range[0],
            scale_range[1],
            ", ".join(stats["indexes"]),
        )

        thresholds = params.logratio_thresholds()
        positions = stars.positions()
        best = _BestMatch()
        self._set_state(SolverState.MATCHING)
        stage = time.perf_counter()
        counters = self._search(selected, positions, scale_range, params, thresholds, budget, best)
        _log_phase("matching", stage)
        stats.update(counters)
        stats["best_history"] = best.history
        stats["stop_reason"] = budget.stop_reason() or "search exhausted"

        if budget.aborted:
            raise Aborted("solve aborted")
        proposal = best.best
        if proposal is None or proposal.logodds < thresholds[0]:
            score = "none" if proposal is None else f"{proposal.logodds:.2f}"
            raise NoSolution(f"no match reached log-odds {thresholds[0]:.2f} (best {score}; {stats['stop_reason']})")

        self._set_state(SolverState.VERIFYING)
        solution = self._finalize(proposal, positions)
        if budget.aborted:
            raise Aborted("solve aborted")
        stats["logodds"] = solution.logodds
        for line in solution.summary_lines():
            logger.info(line)
        return solution

    def _search(
        self,
        selected: list[IndexFile],
        positions: np.ndarray,
        scale_range: tuple[float, float],
        params: SolveParameters,
        thresholds: tuple[float, float, float],
        budget: SolveBudget,
        best: _BestMatch,
    ) -> dict[str, int]:
        totals = {"quads_probed": 0, "code_hits": 0, "verifications": 0}
        workers = params.worker_count(len(selected))

        def _collect(counts: dict[str, int]) -> None:
            for key, value in counts.items():
                totals[key] += value

        if workers <= 1:
            for index in selected:
                if budget.should_stop():
                    break
                _collect(self._search_index(index, positions, scale_range, params, thresholds, budget, best))
            return totals

        logger.debug("parallel search with %d workers", workers)
        with concurrent.futures.ThreadPoolExecutor(max_workers=workers, thread_name_prefix="zestellar") as pool:
            futures = [
                pool.submit(self._search_index, index, positions, scale_range, params, thresholds, budget, best)
                for index in selected
            ]
            for future in concurrent.futures.as_completed(futures):
                _collect(future.result())
        return totals

    def _search_index(
        self,
        index: IndexFile,
        positions: np.ndarray,
        scale_range: tuple[float, float],
        params: SolveParameters,
        thresholds: tuple[float, float, float],
        budget: SolveBudget,
        best: _BestMatch,
    ) -> dict[str, int]:
        tosolve, tokeep, totune = thresholds
        matcher = QuadMatcher(
            positions[: max(MIN_SOLVE_STARS, int(params.max_stars))],
            scale_range=scale_range,
            parity=params.parity,
            code_tolerance=params.code_tolerance,
            probe_chunk=params.probe_chunk,
        )
        verifier = Verifier(positions, self.image_size, params)
        stage = time.perf_counter()
        for candidate in matcher.candidates(index, budget):
            if budget.aborted:
                break
            quad_pts = positions[list(candidate.image_stars)]
            center = quad_pts.mean(axis=0)
            radius = float(np.max(np.hypot(quad_pts[:, 0] - center[0], quad_pts[:, 1] - center[1])))
            verified = verifier.score(
                candidate.transform,
                index,
                exclude_image=candidate.image_stars,
                exclude_index=candidate.index_stars,
                quad_center=(float(center[0]), float(center[1])),
                quad_radius=radius,
            )
            if verified.logodds < tosolve:
                logger.debug("rejected %s candidate with log-odds %.2f", index.name, verified.logodds)
                continue
            transform, verified = verifier.tune(
                candidate.transform,
                verified,
                index,
                quad=tuple(zip(candidate.image_stars, candidate.index_stars)),
                target=totune,
                budget=budget,
            )
            best.offer(_Proposal(index, candidate, transform, verified))
            if verified.logodds >= tokeep:
                budget.mark_solved()
                break
        _log_phase(f"search {index.name}", stage)
        logger.debug(
            "%s: %d quads probed, %d code hits, %d verifications",
            index.name,
            matcher.quads_probed,
            matcher.code_hits,
            verifier.verifications,
        )
        return {
            "quads_probed": matcher.quads_probed,
            "code_hits": matcher.code_hits,
            "verifications": verifier.verifications,
        }

    def _finalize(self, proposal: _Proposal, positions: np.ndarray) -> Solution:
        """Refit over every agreeing star and package the Solution."""
        pairs = proposal.pairs()
        pixels, radec = correspondence_arrays(pairs, positions, proposal.index)
        width, height = self.image_size
        transform = proposal.transform
        try:
            fitted = fit_tan(pixels, radec, crpix=((width - 1) / 2.0, (height - 1) / 2.0))
        except (ValueError, np.linalg.LinAlgError) as exc:
            logger.debug("final TAN fit failed (%s); keeping the verified transform", exc)
        else:
            if fit_statistics(fitted, pixels, radec)["rms_px"] <= fit_statistics(transform, pixels, radec)["rms_px"]:
                transform = fitted
        report = validate_solution(transform, pixels, radec, {"rms_px": 1.0, "inliers": MIN_SOLVE_STARS})
        logger.info(
            "final fit over %d stars: rms %.3f px (%s)",
            len(pairs),
            report.get("rms_px", math.inf),
            report["quality"],
        )
        matches = tuple(
            MatchedStar(x=float(px[0]), y=float(px[1]), ra=float(sky[0]), dec=float(sky[1]))
            for px, sky in zip(pixels, radec)
        )
        return Solution.from_transform(
            transform,
            (width, height),
            index_name=proposal.index.name,
            logodds=proposal.logodds,
            rms_px=float(report.get("rms_px", math.inf)),
            matches=matches,
        )
