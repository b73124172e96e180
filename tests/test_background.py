from __future__ import annotations

import numpy as np
import pytest

from zestellar.background import estimate_background


def test_flat_sky_level_and_noise():
    rng = np.random.default_rng(1)
    plane = (100.0 + rng.normal(0.0, 2.0, size=(256, 256))).astype(np.float32)
    model = estimate_background(plane, mesh_size=64)
    assert not model.constant
    assert model.global_level == pytest.approx(100.0, abs=0.2)
    assert model.global_rms == pytest.approx(2.0, rel=0.1)
    assert np.allclose(model.level, 100.0, atol=0.5)


def test_bright_stars_do_not_bias_background(synthetic_image):
    model = estimate_background(synthetic_image)
    assert model.global_level == pytest.approx(100.0, abs=0.5)
    assert float(np.median(model.rms)) == pytest.approx(2.0, rel=0.2)


def test_gradient_is_followed():
    yy, xx = np.mgrid[0:256, 0:256]
    plane = (50.0 + 0.2 * xx).astype(np.float32)
    model = estimate_background(plane, mesh_size=32, filter_size=1)
    assert float(model.level[:, 10].mean()) < float(model.level[:, 245].mean()) - 30.0
    residual = model.subtract(plane)
    assert float(np.abs(residual[:, 32:224]).max()) < 5.0


def test_small_image_falls_back_to_constant():
    plane = np.full((10, 12), 42.0, dtype=np.float32)
    model = estimate_background(plane, mesh_size=64)
    assert model.constant
    assert model.level.shape == (10, 12)
    assert model.global_level == pytest.approx(42.0)
    assert model.global_rms > 0


def test_non_finite_image_does_not_raise():
    plane = np.full((80, 80), np.nan, dtype=np.float32)
    model = estimate_background(plane)
    assert model.constant
    assert model.global_level == 0.0
    assert np.all(model.rms > 0)
