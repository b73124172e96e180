from __future__ import annotations

import math

import numpy as np
import pytest

from conftest import SYNTH_TRANSFORM
from zestellar.parameters import Parity
from zestellar.quad_sampling import local_frame
from zestellar.wcs_fit import TanTransform, fit_statistics, fit_tan, tan_from_similarity


def _rotated(angle_deg: float, scale_arcsec: float = 1.0, *, mirror: bool = False) -> TanTransform:
    s = scale_arcsec / 3600.0
    c, n = math.cos(math.radians(angle_deg)), math.sin(math.radians(angle_deg))
    cd = np.array([[-c, n], [n, c]]) * s
    if mirror:
        cd = cd @ np.diag([-1.0, 1.0])
    return TanTransform(crval=(210.0, 35.0), crpix=(511.5, 383.5), cd=tuple(map(tuple, cd)))


@pytest.mark.parametrize("angle", [0.0, 30.0, -75.0, 170.0])
def test_orientation_and_parity(angle):
    normal = _rotated(angle, 2.5)
    assert normal.parity is Parity.NORMAL
    assert normal.orientation == pytest.approx(angle, abs=1e-9)
    assert normal.pixscale == pytest.approx(2.5)
    flipped = _rotated(angle, 2.5, mirror=True)
    assert flipped.parity is Parity.FLIPPED
    assert flipped.orientation == pytest.approx(angle, abs=1e-9)


def test_pixel_sky_round_trip():
    transform = _rotated(12.0, 1.7)
    pixels = np.array([[0.0, 0.0], [1023.0, 767.0], [511.5, 383.5], [100.0, 700.0]])
    radec = transform.pixel_to_sky(pixels)
    assert np.allclose(transform.sky_to_pixel(radec), pixels, atol=1e-8)
    assert np.allclose(radec[2], (210.0, 35.0))


def test_astropy_wcs_agrees():
    transform = _rotated(-40.0, 0.8)
    wcs = transform.to_wcs()
    pixels = np.array([[10.0, 20.0], [900.0, 50.0], [300.0, 700.0]])
    world = np.column_stack(wcs.all_pix2world(pixels[:, 0], pixels[:, 1], 0))
    assert np.allclose(world, transform.pixel_to_sky(pixels), atol=1e-9)
    back = TanTransform.from_wcs(wcs)
    assert np.allclose(back.cd_matrix, transform.cd_matrix)
    assert back.crpix == pytest.approx(transform.crpix)


@pytest.mark.parametrize("reflected", [False, True])
def test_similarity_maps_onto_local_frame(reflected):
    rng = np.random.default_rng(5)
    pixels = rng.uniform(0, 500, size=(12, 2))
    rot_scale = (1.2 / 3600.0) * np.exp(1j * 0.7)
    translation = complex(-0.05, 0.02)
    transform = tan_from_similarity(rot_scale, translation, reflected=reflected, crval=(45.0, 10.0))
    z = pixels[:, 0] + 1j * pixels[:, 1]
    if reflected:
        z = np.conj(z)
    expected = rot_scale * z + translation
    radec = transform.pixel_to_sky(pixels)
    frame = local_frame(radec[:, 0], radec[:, 1], 45.0, 10.0)
    assert np.allclose(frame[:, 0], expected.real, atol=1e-12)
    assert np.allclose(frame[:, 1], expected.imag, atol=1e-12)
    assert transform.parity is (Parity.FLIPPED if reflected else Parity.NORMAL)


def test_fit_tan_recovers_transform(synthetic_field):
    pixels = synthetic_field["pixels"]
    radec = synthetic_field["radec"]
    fitted = fit_tan(pixels, radec)
    assert fitted.pixscale == pytest.approx(SYNTH_TRANSFORM.pixscale, rel=1e-5)
    # crpix defaults to the star centroid, so north is compared at that pixel
    ref = SYNTH_TRANSFORM.pixel_to_sky(np.array([fitted.crpix]))[0]
    north = np.array([ref, (ref[0], ref[1] + 0.01)])
    assert np.allclose(fitted.sky_to_pixel(north), SYNTH_TRANSFORM.sky_to_pixel(north), atol=1e-3)
    assert abs(fitted.orientation) < 0.01
    stats = fit_statistics(fitted, pixels, radec)
    assert stats["rms_px"] < 1e-3
    assert stats["inliers"] == len(pixels)


def test_fit_tan_with_fixed_reference_pixel(synthetic_field):
    pixels = synthetic_field["pixels"]
    radec = synthetic_field["radec"]
    fitted = fit_tan(pixels, radec, crpix=SYNTH_TRANSFORM.crpix)
    assert fitted.crval == pytest.approx(SYNTH_TRANSFORM.crval, abs=1e-9)
    assert np.allclose(fitted.cd_matrix, SYNTH_TRANSFORM.cd_matrix, atol=1e-12)


def test_fit_tan_needs_three_points():
    with pytest.raises(ValueError):
        fit_tan(np.zeros((2, 2)), np.zeros((2, 2)))
