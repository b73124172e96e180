import logging
import math

import pytest

from zestellar import profiles as P
from zestellar.parameters import FULL_FRAME_WIDTH_MM, Parity, ScaleUnits, SolveParameters


def test_every_profile_builds_fresh_parameters():
    for profile in P.list_profiles():
        params = profile.build()
        assert params.profile == profile.id
        # builds must not share nested state
        assert params.extraction is not profile.build().extraction


def test_profile_overrides_are_applied():
    single = SolveParameters.from_profile("single_thread_solving")
    assert single.parallel is False
    assert single.worker_count(8) == 1
    large = SolveParameters.from_profile("parallel_large_scale")
    assert (large.min_width, large.max_width) == (1.0, 180.0)
    small = SolveParameters.from_profile("Parallel-Small-Scale")
    assert small.max_width == 10.0
    big = SolveParameters.from_profile("big stars")
    assert big.extraction.fwhm == 8.0
    assert big.extraction.min_area == 40
    assert big.filtering.saturation_limit == 98.0
    everything = SolveParameters.from_profile("all_stars")
    assert everything.filtering.max_ellipse == 0.0


def test_unknown_profile_is_rejected():
    with pytest.raises(ValueError, match="unknown profile"):
        P.get_profile("huge_stars")


def test_scale_bounds_in_each_unit():
    width = 1000
    assert SolveParameters(scale_low=1.0, scale_high=2.0).scale_bounds_arcsec(width, 800) == (1.0, 2.0)
    deg = SolveParameters(scale_low=0.5, scale_high=1.0, scale_units=ScaleUnits.DEG_WIDTH)
    assert deg.scale_bounds_arcsec(width, 800) == pytest.approx((1.8, 3.6))
    arcmin = SolveParameters(scale_low=30.0, scale_high=60.0, scale_units=ScaleUnits.ARCMIN_WIDTH)
    assert arcmin.scale_bounds_arcsec(width, 800) == pytest.approx((1.8, 3.6))
    focal = SolveParameters(scale_low=1000.0, scale_high=500.0, scale_units=ScaleUnits.FOCAL_MM)
    low, high = focal.scale_bounds_arcsec(width, 800)
    expected = math.degrees(2 * math.atan(FULL_FRAME_WIDTH_MM / 2000.0)) * 3600.0 / width
    assert low == pytest.approx(expected)
    assert high > low


def test_missing_scale_bounds_fall_back_to_width_limits():
    params = SolveParameters(min_width=1.0, max_width=10.0)
    assert params.scale_bounds_arcsec(3600, 2400) == pytest.approx((1.0, 10.0))
    partial = SolveParameters(scale_low=2.0, min_width=1.0, max_width=10.0)
    assert partial.scale_bounds_arcsec(3600, 2400) == pytest.approx((2.0, 10.0))


def test_threshold_ladder_is_clamped(caplog):
    params = SolveParameters(logratio_tosolve=30.0, logratio_tokeep=20.0, logratio_totune=10.0)
    with caplog.at_level(logging.WARNING, logger="zestellar.parameters"):
        assert params.logratio_thresholds() == (30.0, 30.0, 30.0)
    assert "clamped" in caplog.text
    default = SolveParameters().logratio_thresholds()
    assert default == pytest.approx((math.log(1e9), math.log(1e12), math.log(1e15)))


def test_worker_count():
    params = SolveParameters(parallel=True, max_workers=3)
    assert params.worker_count(1) == 1
    assert params.worker_count(2) == 2
    assert params.worker_count(10) == 3
    assert SolveParameters(parallel=True).worker_count(4) >= 1
    assert SolveParameters().parity is Parity.BOTH
