from __future__ import annotations

from zestellar.parameters import FilterParameters, SortMode
from zestellar.star_filter import filter_stars
from zestellar.stars import Star, StarList


def _star(x, flux, *, peak=100.0, hfr=2.0, a=1.5, b=1.5, border=False):
    return Star(
        x=float(x),
        y=10.0,
        flux=float(flux),
        peak=float(peak),
        mag=20.0,
        hfr=float(hfr),
        a=float(a),
        b=float(b),
        theta=0.0,
        num_pixels=9,
        on_border=border,
    )


def _sample() -> StarList:
    return StarList(
        [
            _star(0, 500.0, peak=65000.0),
            _star(1, 400.0, a=3.0, b=1.0),
            _star(2, 300.0, hfr=1.0),
            _star(3, 200.0, border=True),
            _star(4, 100.0, hfr=3.0),
            _star(5, 50.0),
        ]
    )


def test_default_filter_drops_elongated_and_keeps_order():
    kept = filter_stars(_sample())
    assert [s.x for s in kept] == [0, 2, 4, 5, 3]


def test_saturation_limit_uses_full_scale():
    kept = filter_stars(_sample(), FilterParameters(saturation_limit=90.0), max_value=65535.0)
    assert 0 not in [s.x for s in kept]
    unchanged = filter_stars(_sample(), FilterParameters(saturation_limit=90.0))
    assert 0 in [s.x for s in unchanged]


def test_remove_brightest_and_dimmest():
    params = FilterParameters(max_ellipse=0.0, remove_brightest=1, remove_dimmest=2)
    kept = filter_stars(_sample(), params)
    assert [s.x for s in kept] == [1, 2, 3]


def test_hfr_sort_and_keep_num():
    params = FilterParameters(max_ellipse=0.0, sort_by=SortMode.HFR, keep_num=3)
    kept = filter_stars(_sample(), params)
    assert [s.x for s in kept] == [2, 0, 1]


def test_filter_does_not_touch_input():
    stars = _sample()
    snapshot = list(stars)
    filter_stars(stars, FilterParameters(remove_brightest=2, keep_num=1))
    assert list(stars) == snapshot


def test_filter_is_deterministic():
    params = FilterParameters(saturation_limit=50.0, keep_num=4)
    first = filter_stars(_sample(), params, max_value=65535.0)
    second = filter_stars(_sample(), params, max_value=65535.0)
    assert first == second
