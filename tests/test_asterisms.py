from __future__ import annotations

import math

import numpy as np
import pytest

from zestellar.asterisms import code_for_positions, compute_codes

QUAD = np.array([[0.0, 0.0], [10.0, 9.0], [3.0, 5.0], [7.0, 3.5]])


def _similarity(points: np.ndarray, scale: float, angle_deg: float, shift: tuple[float, float], *, mirror: bool = False) -> np.ndarray:
    z = points[:, 0] + 1j * points[:, 1]
    if mirror:
        z = np.conj(z)
    mapped = scale * np.exp(1j * math.radians(angle_deg)) * z + complex(*shift)
    return np.column_stack((mapped.real, mapped.imag))


def test_code_is_similarity_invariant():
    base = code_for_positions(QUAD)
    assert base is not None
    moved = code_for_positions(_similarity(QUAD, 3.7, 123.0, (40.0, -12.0)))
    assert moved is not None
    assert np.allclose(base[0], moved[0], atol=1e-9)


def test_code_is_invariant_to_star_order():
    base = code_for_positions(QUAD)
    shuffled = QUAD[[2, 0, 3, 1]]
    result = code_for_positions(shuffled)
    assert result is not None
    assert np.allclose(base[0], result[0])
    # the canonical order names the same physical stars
    assert np.allclose(QUAD[base[1]], shuffled[result[1]])


def test_mirrored_quad_matches_with_flip():
    base = code_for_positions(QUAD)
    mirrored = _similarity(QUAD, 0.5, 40.0, (1.0, 2.0), mirror=True)
    plain = code_for_positions(mirrored)
    flipped = code_for_positions(mirrored, flip=True)
    assert flipped is not None
    assert np.allclose(base[0], flipped[0], atol=1e-9)
    assert plain is None or not np.allclose(base[0], plain[0], atol=1e-3)


def test_code_is_canonical():
    rng = np.random.default_rng(3)
    result = compute_codes(rng.uniform(0, 100, size=(500, 4, 2)))
    codes = result.codes[result.valid]
    assert codes.shape[0] > 0
    assert np.all(codes[:, 0] + codes[:, 2] <= 1.0 + 1e-12)
    assert np.all(codes[:, 0] <= codes[:, 2] + 1e-12)
    assert np.all(result.ab_length > 0)


def test_degenerate_and_outside_quads_are_invalid():
    # D lies outside the circle on AB
    outside = np.array([[0.0, 0.0], [10.0, 0.0], [5.0, 1.0], [5.0, 6.0]])
    assert code_for_positions(outside) is None
    coincident = np.zeros((4, 2))
    assert code_for_positions(coincident) is None


def test_compute_codes_rejects_bad_shape():
    with pytest.raises(ValueError):
        compute_codes(np.zeros((3, 2)))
