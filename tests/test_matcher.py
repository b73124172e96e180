from __future__ import annotations

import itertools

import numpy as np
import pytest

from conftest import SYNTH_SIZE, SYNTH_TRANSFORM
from zestellar.budget import CancelToken, SolveBudget
from zestellar.index_file import IndexFile
from zestellar.matcher import QuadMatcher, _derive_similarity, iter_image_quads
from zestellar.parameters import Parity


@pytest.fixture(scope="module")
def synthetic_index(synthetic_index_dir) -> IndexFile:
    return IndexFile.load(synthetic_index_dir / "synth-60-600.npz")


def _first_true_candidate(matcher, index, budget):
    for candidate in matcher.candidates(index, budget):
        if candidate.image_stars == candidate.index_stars:
            return candidate
    return None


def test_iter_image_quads_visits_bright_stars_first():
    blocks = list(iter_image_quads(6, chunk_size=4))
    quads = [tuple(row) for block in blocks for row in block.tolist()]
    assert len(quads) == len(set(quads)) == 15
    assert quads[0] == (0, 1, 2, 3)
    depths = [max(q) for q in quads]
    assert depths == sorted(depths)
    assert set(map(frozenset, quads)) == set(map(frozenset, itertools.combinations(range(6), 4)))


def test_derive_similarity_recovers_reflection():
    rng = np.random.default_rng(42)
    src = rng.uniform(0, 200, size=(10, 2))
    z = np.conj(src[:, 0] + 1j * src[:, 1])
    mapped = 0.002 * np.exp(0.4j) * z + (0.1 - 0.05j)
    derived = _derive_similarity(src, np.column_stack((mapped.real, mapped.imag)), reflected=True)
    assert derived is not None
    rot_scale, translation = derived
    assert rot_scale == pytest.approx(0.002 * np.exp(0.4j))
    assert translation == pytest.approx(0.1 - 0.05j)


def test_matcher_finds_true_quad(synthetic_index, synthetic_field):
    matcher = QuadMatcher(synthetic_field["pixels"], scale_range=(0.9, 1.1), parity=Parity.BOTH)
    candidate = _first_true_candidate(matcher, synthetic_index, SolveBudget())
    assert candidate is not None
    assert candidate.parity is Parity.NORMAL
    assert candidate.code_distance < 1e-3
    transform = candidate.transform
    assert transform.pixscale == pytest.approx(1.0, rel=1e-4)
    predicted = transform.sky_to_pixel(synthetic_field["radec"])
    assert np.max(np.abs(predicted - synthetic_field["pixels"])) < 0.05


def test_matcher_finds_mirrored_quad(synthetic_index, synthetic_field):
    mirrored = synthetic_field["pixels"].copy()
    mirrored[:, 0] = SYNTH_SIZE - 1 - mirrored[:, 0]
    matcher = QuadMatcher(mirrored, scale_range=(0.9, 1.1), parity=Parity.FLIPPED)
    assert matcher.flips == (True,)
    candidate = _first_true_candidate(matcher, synthetic_index, SolveBudget())
    assert candidate is not None
    assert candidate.parity is Parity.FLIPPED
    assert candidate.transform.parity is Parity.FLIPPED
    assert candidate.transform.pixscale == pytest.approx(1.0, rel=1e-4)


def test_scale_prior_excludes_wrong_scales(synthetic_index, synthetic_field):
    matcher = QuadMatcher(synthetic_field["pixels"][:20], scale_range=(3.0, 4.0))
    assert list(matcher.candidates(synthetic_index, SolveBudget())) == []


def test_quad_budget_is_respected(synthetic_index, synthetic_field):
    budget = SolveBudget(max_quads=10)
    matcher = QuadMatcher(synthetic_field["pixels"], scale_range=(0.9, 1.1), probe_chunk=4)
    list(matcher.candidates(synthetic_index, budget))
    assert matcher.quads_probed == 10
    assert budget.quads_exhausted()
    assert budget.stop_reason() == "quad budget exhausted"


def test_cancelled_budget_probes_nothing(synthetic_index, synthetic_field):
    token = CancelToken()
    token.cancel()
    matcher = QuadMatcher(synthetic_field["pixels"], scale_range=(0.9, 1.1))
    assert list(matcher.candidates(synthetic_index, SolveBudget(token=token))) == []
    assert matcher.quads_probed == 0


def test_true_transform_reference():
    # guards the fixture geometry the matcher tests rely on
    assert SYNTH_TRANSFORM.parity is Parity.NORMAL
    assert SYNTH_TRANSFORM.orientation == pytest.approx(0.0, abs=1e-12)
