from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Sequence


@dataclass(frozen=True)
class QuadScaleBand:
    """Range of quad diameters (distance between A and B) stored by one index file."""

    name: str
    min_arcsec: float
    max_arcsec: float

    def to_metadata(self) -> dict[str, float | str]:
        return {
            "name": self.name,
            "min_arcsec": self.min_arcsec,
            "max_arcsec": self.max_arcsec,
        }

    def contains(self, arcsec: float) -> bool:
        return self.min_arcsec <= arcsec <= self.max_arcsec


def _series(count: int = 20, base_arcmin: float = 2.0) -> tuple[QuadScaleBand, ...]:
    bands = []
    step = math.sqrt(2.0)
    for idx in range(count):
        low = base_arcmin * step ** idx * 60.0
        high = base_arcmin * step ** (idx + 1) * 60.0
        bands.append(QuadScaleBand(name=f"{idx:02d}", min_arcsec=round(low, 3), max_arcsec=round(high, 3)))
    return tuple(bands)


# sqrt(2) steps from 2 arcmin up to roughly 34 degrees
SCALE_BANDS: Sequence[QuadScaleBand] = _series()

SCALE_BAND_MAP: dict[str, QuadScaleBand] = {band.name: band for band in SCALE_BANDS}


def bands_for_field(min_width_arcmin: float, max_width_arcmin: float) -> list[QuadScaleBand]:
    """Return the bands whose quads span 10%-100% of a field of the given widths."""
    low = 0.1 * float(min_width_arcmin) * 60.0
    high = float(max_width_arcmin) * 60.0
    return [band for band in SCALE_BANDS if band.max_arcsec >= low and band.min_arcsec <= high]
