from __future__ import annotations

import itertools
import logging
from dataclasses import dataclass

import numpy as np
from scipy.spatial import cKDTree

from .asterisms import CODE_DIM, compute_codes
from .projections import arcsec_to_chord, chord_to_arcsec, project_tan, radec_to_xyz, xyz_to_radec

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class IndexQuads:
    stars: np.ndarray  # (n, 4) star indices in canonical A, B, C, D order
    codes: np.ndarray  # (n, 4)
    ab_arcsec: np.ndarray  # (n,)


def _empty() -> IndexQuads:
    return IndexQuads(
        np.zeros((0, 4), dtype=np.int32),
        np.zeros((0, CODE_DIM), dtype=np.float64),
        np.zeros(0, dtype=np.float64),
    )


def local_frame(ra_deg: np.ndarray, dec_deg: np.ndarray, center_ra: float, center_dec: float) -> np.ndarray:
    """Tangent-plane positions ``(u, v) = (-xi, eta)`` in degrees.

    Mirroring xi makes the frame share handedness with a normal-parity
    image, where east runs toward decreasing x.
    """
    xi, eta = project_tan(ra_deg, dec_deg, center_ra, center_dec)
    return np.column_stack((-xi, eta))


def generate_index_quads(
    ra_deg: np.ndarray,
    dec_deg: np.ndarray,
    *,
    min_arcsec: float,
    max_arcsec: float,
    max_quads: int = 0,
    per_pair_quads: int = 8,
) -> IndexQuads:
    """Build catalog quads whose A-B diameter lies in ``[min_arcsec, max_arcsec]``.

    Stars are expected in brightness order (index 0 brightest). Base pairs
    are visited so that quads made of brighter stars come first; for each
    pair, C and D are drawn brightest-first from the stars inside the circle
    with diameter AB.
    """
    ra = np.asarray(ra_deg, dtype=np.float64)
    dec = np.asarray(dec_deg, dtype=np.float64)
    count = ra.shape[0]
    if count < 4 or max_arcsec <= 0 or max_arcsec < min_arcsec:
        return _empty()
    xyz = radec_to_xyz(ra, dec)
    tree = cKDTree(xyz)
    pairs = tree.query_pairs(r=arcsec_to_chord(max_arcsec), output_type="ndarray")
    if pairs.size == 0:
        return _empty()
    chords = np.linalg.norm(xyz[pairs[:, 0]] - xyz[pairs[:, 1]], axis=1)
    keep = chords >= arcsec_to_chord(min_arcsec)
    pairs = pairs[keep]
    chords = chords[keep]
    if pairs.size == 0:
        return _empty()
    lo = pairs.min(axis=1)
    hi = pairs.max(axis=1)
    visit = np.lexsort((lo, hi))
    pairs = np.column_stack((lo, hi))[visit]
    chords = chords[visit]

    cap = max(1, int(per_pair_quads))
    limit = int(max_quads) if max_quads and max_quads > 0 else None
    seen: set[tuple[int, int, int, int]] = set()
    out_stars: list[np.ndarray] = []
    out_codes: list[np.ndarray] = []
    total = 0
    for (idx_a, idx_b), chord in zip(pairs, chords):
        if limit is not None and total >= limit:
            break
        mid = xyz[idx_a] + xyz[idx_b]
        mid /= np.linalg.norm(mid)
        half_angle = float(np.arcsin(min(1.0, 0.5 * float(chord))))
        nearby = tree.query_ball_point(mid, r=2.0 * np.sin(0.5 * half_angle) * 1.0001 + 1e-12)
        candidates = sorted(idx for idx in nearby if idx != idx_a and idx != idx_b)
        if len(candidates) < 2:
            continue
        mid_ra, mid_dec = xyz_to_radec(mid)
        members = np.array([idx_a, idx_b] + candidates, dtype=np.int64)
        frame = local_frame(ra[members], dec[members], float(mid_ra), float(mid_dec))
        za = complex(*frame[0])
        zb = complex(*frame[1])
        w = (frame[2:, 0] + 1j * frame[2:, 1] - za) / (zb - za)
        inside = np.abs(w - 0.5) <= 0.5
        usable = [pos for pos, ok in enumerate(inside, start=2) if ok]
        if len(usable) < 2:
            continue
        combos: list[tuple[int, int]] = []
        for pos_c, pos_d in itertools.combinations(usable, 2):
            key = tuple(sorted((int(idx_a), int(idx_b), int(members[pos_c]), int(members[pos_d]))))
            if key in seen:
                continue
            seen.add(key)
            combos.append((pos_c, pos_d))
            if len(combos) >= cap:
                break
        if not combos:
            continue
        if limit is not None:
            combos = combos[: limit - total]
        local_ids = np.array([(0, 1, c, d) for c, d in combos], dtype=np.int64)
        result = compute_codes(frame[local_ids])
        if not result.valid.any():
            continue
        ordered_local = np.take_along_axis(local_ids, result.order, axis=1)[result.valid]
        out_stars.append(members[ordered_local].astype(np.int32))
        out_codes.append(result.codes[result.valid])
        total += int(result.valid.sum())
    if not out_stars:
        return _empty()
    stars = np.concatenate(out_stars, axis=0)
    codes = np.concatenate(out_codes, axis=0)
    ab = chord_to_arcsec(np.linalg.norm(xyz[stars[:, 0]] - xyz[stars[:, 1]], axis=1))
    logger.debug("generated %d quads in [%.1f, %.1f] arcsec from %d stars", stars.shape[0], min_arcsec, max_arcsec, count)
    return IndexQuads(stars=stars, codes=codes, ab_arcsec=ab)
