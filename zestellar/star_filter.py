from __future__ import annotations

import logging

from .parameters import FilterParameters, SortMode
from .stars import Star, StarList

logger = logging.getLogger(__name__)


def _brightness_key(star: Star) -> tuple[float, float, float]:
    return (-star.flux, star.x, star.y)


def _hfr_key(star: Star) -> tuple[float, float, float, float]:
    return (star.hfr, -star.flux, star.x, star.y)


def filter_stars(
    stars: StarList,
    params: FilterParameters | None = None,
    *,
    max_value: float | None = None,
) -> StarList:
    """Return a re-ranked, truncated copy of *stars*.

    Policies run in a fixed order: saturation, elongation, trimming the
    brightest/dimmest entries, re-sorting, pushing border stars to the end
    and finally truncation to ``keep_num``. Stars are never modified.
    """
    params = params or FilterParameters()
    kept = list(stars)
    initial = len(kept)

    if params.saturation_limit > 0 and max_value is not None and max_value > 0:
        limit = max_value * float(params.saturation_limit) / 100.0
        kept = [s for s in kept if s.peak < limit]

    if params.max_ellipse > 0:
        kept = [s for s in kept if s.axis_ratio <= params.max_ellipse]

    kept.sort(key=_brightness_key)
    brightest = max(0, int(params.remove_brightest))
    dimmest = max(0, int(params.remove_dimmest))
    if brightest:
        kept = kept[brightest:]
    if dimmest:
        kept = kept[: max(0, len(kept) - dimmest)]

    if SortMode(params.sort_by) is SortMode.HFR:
        kept.sort(key=_hfr_key)
    # stable: border stars keep their relative order at the tail
    kept.sort(key=lambda s: s.on_border)

    if params.keep_num > 0:
        kept = kept[: int(params.keep_num)]
    logger.debug("star filter kept %d of %d stars", len(kept), initial)
    return StarList(kept)
