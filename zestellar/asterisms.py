from __future__ import annotations

from dataclasses import dataclass

import numpy as np

# The six star pairs of a quad, in a fixed order so ties resolve deterministically
_PAIRS = np.array([(0, 1), (0, 2), (0, 3), (1, 2), (1, 3), (2, 3)], dtype=np.int64)
_OTHERS = np.array([(2, 3), (1, 3), (1, 2), (0, 3), (0, 2), (0, 1)], dtype=np.int64)
_CIRCLE_SLACK = 1e-9
CODE_DIM = 4


@dataclass(frozen=True, slots=True)
class QuadCodes:
    codes: np.ndarray  # (n, 4) float64: cx, cy, dx, dy
    order: np.ndarray  # (n, 4) positions of A, B, C, D within each input quad
    valid: np.ndarray  # (n,) bool
    ab_length: np.ndarray  # (n,) distance between A and B in input units


def compute_codes(points: np.ndarray, *, flip: bool = False) -> QuadCodes:
    """Compute canonical geometric codes for quads given as ``(n, 4, 2)`` positions.

    A and B are the most distant pair and define a frame where A=(0,0) and
    B=(1,1); C and D must lie inside the circle with diameter AB. The code is
    made unique by swapping A/B when ``cx + dx > 1`` and then C/D when
    ``cx > dx``. With ``flip`` the frame is mirrored first, which is how a
    quad from a parity-flipped image is compared against the index.
    """
    pts = np.asarray(points, dtype=np.float64)
    if pts.ndim != 3 or pts.shape[1:] != (4, 2):
        raise ValueError("points must have shape (n, 4, 2)")
    count = pts.shape[0]
    if count == 0:
        return QuadCodes(
            np.zeros((0, CODE_DIM)),
            np.zeros((0, 4), dtype=np.int64),
            np.zeros(0, dtype=bool),
            np.zeros(0),
        )
    z = pts[..., 0] + 1j * pts[..., 1]
    pair_d = np.abs(z[:, _PAIRS[:, 0]] - z[:, _PAIRS[:, 1]])
    best = np.argmax(pair_d, axis=1)
    rows = np.arange(count)
    ia = _PAIRS[best, 0]
    ib = _PAIRS[best, 1]
    ic = _OTHERS[best, 0]
    id_ = _OTHERS[best, 1]
    za = z[rows, ia]
    zb = z[rows, ib]
    base = zb - za
    ab_length = np.abs(base)
    nonzero = ab_length > 0
    safe_base = np.where(nonzero, base, 1.0)
    wc = (z[rows, ic] - za) / safe_base
    wd = (z[rows, id_] - za) / safe_base
    if flip:
        wc = np.conj(wc)
        wd = np.conj(wd)
    inside = (np.abs(wc - 0.5) <= 0.5 + _CIRCLE_SLACK) & (np.abs(wd - 0.5) <= 0.5 + _CIRCLE_SLACK)
    valid = nonzero & inside & np.isfinite(wc) & np.isfinite(wd)

    rot = 1.0 + 1.0j
    cc = rot * wc
    cd = rot * wd
    swap_ab = (cc.real + cd.real) > 1.0
    cc = np.where(swap_ab, rot - cc, cc)
    cd = np.where(swap_ab, rot - cd, cd)
    ia, ib = np.where(swap_ab, ib, ia), np.where(swap_ab, ia, ib)
    swap_cd = cc.real > cd.real
    cc, cd = np.where(swap_cd, cd, cc), np.where(swap_cd, cc, cd)
    ic, id_ = np.where(swap_cd, id_, ic), np.where(swap_cd, ic, id_)

    codes = np.column_stack((cc.real, cc.imag, cd.real, cd.imag))
    order = np.column_stack((ia, ib, ic, id_)).astype(np.int64)
    return QuadCodes(codes=codes, order=order, valid=valid, ab_length=ab_length)


def code_for_positions(positions: np.ndarray, *, flip: bool = False) -> tuple[np.ndarray, np.ndarray] | None:
    """Convenience wrapper for a single ``(4, 2)`` quad; returns (code, order) or None."""
    result = compute_codes(np.asarray(positions, dtype=np.float64)[None, :, :], flip=flip)
    if not bool(result.valid[0]):
        return None
    return result.codes[0], result.order[0]
