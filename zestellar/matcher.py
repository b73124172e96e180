from __future__ import annotations

import itertools
import logging
from dataclasses import dataclass
from typing import Iterator

import numpy as np

from .asterisms import compute_codes
from .budget import SolveBudget
from .index_file import IndexFile
from .parameters import Parity
from .quad_sampling import local_frame
from .wcs_fit import TanTransform, tan_from_similarity

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CandidateMatch:
    """Tentative correspondence between one image quad and one index quad."""

    index_name: str
    image_stars: tuple[int, int, int, int]
    index_stars: tuple[int, int, int, int]
    parity: Parity
    transform: TanTransform
    code_distance: float


def _complexify(points: np.ndarray) -> np.ndarray:
    return points[:, 0] + 1j * points[:, 1]


def _derive_similarity(
    src: np.ndarray,
    dst: np.ndarray,
    *,
    reflected: bool = False,
) -> tuple[np.complex128, np.complex128] | None:
    src_c = _complexify(src)
    if reflected:
        src_c = np.conj(src_c)
    dst_c = _complexify(dst)
    src_mean = np.mean(src_c)
    dst_mean = np.mean(dst_c)
    src_zero = src_c - src_mean
    dst_zero = dst_c - dst_mean
    denom = np.sum(np.abs(src_zero) ** 2)
    if denom < 1e-12:
        return None
    rot_scale = np.sum(dst_zero * np.conj(src_zero)) / denom
    translation = dst_mean - rot_scale * src_mean
    return rot_scale, translation


def iter_image_quads(count: int, chunk_size: int) -> Iterator[np.ndarray]:
    """Yield ``(k, 4)`` blocks of star-index quads, brightest stars first.

    At depth ``n`` every quad whose faintest member is star ``n`` is formed,
    so all quads among the brightest ``n + 1`` stars are tried before star
    ``n + 1`` is touched.
    """
    chunk_size = max(1, int(chunk_size))
    block: list[tuple[int, int, int, int]] = []
    for depth in range(3, int(count)):
        for trio in itertools.combinations(range(depth), 3):
            block.append((trio[0], trio[1], trio[2], depth))
            if len(block) >= chunk_size:
                yield np.array(block, dtype=np.int64)
                block = []
    if block:
        yield np.array(block, dtype=np.int64)


class QuadMatcher:
    """Probe one index file with quads built from the brightest image stars."""

    def __init__(
        self,
        positions: np.ndarray,
        *,
        scale_range: tuple[float, float],
        parity: Parity = Parity.BOTH,
        code_tolerance: float = 0.01,
        probe_chunk: int = 256,
    ) -> None:
        self.positions = np.asarray(positions, dtype=np.float64)
        self.scale_low, self.scale_high = (float(v) for v in scale_range)
        self.code_tolerance = float(code_tolerance)
        self.probe_chunk = int(probe_chunk)
        parity = Parity(parity)
        if parity is Parity.NORMAL:
            self.flips: tuple[bool, ...] = (False,)
        elif parity is Parity.FLIPPED:
            self.flips = (True,)
        else:
            self.flips = (False, True)
        self.quads_probed = 0
        self.code_hits = 0

    def candidates(self, index: IndexFile, budget: SolveBudget) -> Iterator[CandidateMatch]:
        """Yield CandidateMatch values in deterministic order until the budget stops us."""
        if index.code_tree is None or self.positions.shape[0] < 4:
            return
        for block in iter_image_quads(self.positions.shape[0], self.probe_chunk):
            if budget.should_stop():
                return
            granted = budget.consume_quads(block.shape[0])
            if granted <= 0:
                return
            block = block[:granted]
            self.quads_probed += block.shape[0]
            points = self.positions[block]
            for flip in self.flips:
                for match in self._probe(index, block, points, flip):
                    yield match
                    if budget.should_stop():
                        return

    def _probe(
        self,
        index: IndexFile,
        block: np.ndarray,
        points: np.ndarray,
        flip: bool,
    ) -> Iterator[CandidateMatch]:
        result = compute_codes(points, flip=flip)
        slack = 1.0 + self.code_tolerance
        usable = (
            result.valid
            & (result.ab_length * self.scale_low <= index.max_arcsec * slack)
            & (result.ab_length * self.scale_high >= index.min_arcsec / slack)
        )
        rows = np.nonzero(usable)[0]
        if rows.size == 0:
            return
        hits = index.code_tree.query_ball_point(result.codes[rows], r=self.code_tolerance)
        parity = Parity.FLIPPED if flip else Parity.NORMAL
        for row, row_hits in zip(rows, hits):
            if not row_hits:
                continue
            ab_px = float(result.ab_length[row])
            image_ids = block[row][result.order[row]]
            image_pts = self.positions[image_ids]
            for hit in sorted(row_hits):
                implied = float(index.ab_arcsec[hit]) / ab_px
                if implied < self.scale_low or implied > self.scale_high:
                    continue
                self.code_hits += 1
                index_ids = index.quads[hit]
                ra = index.ra_deg[index_ids]
                dec = index.dec_deg[index_ids]
                center = (float(np.mean(ra)), float(np.mean(dec)))
                if np.ptp(ra) > 180.0:
                    center = (float(np.mean((ra + 180.0) % 360.0) - 180.0) % 360.0, center[1])
                frame = local_frame(ra, dec, center[0], center[1])
                derived = _derive_similarity(image_pts, frame, reflected=flip)
                if derived is None:
                    continue
                rot_scale, translation = derived
                transform = tan_from_similarity(rot_scale, translation, reflected=flip, crval=center)
                yield CandidateMatch(
                    index_name=index.name,
                    image_stars=tuple(int(v) for v in image_ids),
                    index_stars=tuple(int(v) for v in index_ids),
                    parity=parity,
                    transform=transform,
                    code_distance=float(np.linalg.norm(result.codes[row] - index.codes[hit])),
                )
