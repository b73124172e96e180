from __future__ import annotations

from dataclasses import dataclass, field

import numpy as np
from astropy.wcs import WCS

from .angles import format_dec, format_ra
from .parameters import Parity
from .wcs_fit import TanTransform


@dataclass(frozen=True)
class MatchedStar:
    x: float
    y: float
    ra: float
    dec: float


@dataclass(frozen=True)
class Solution:
    """Astrometric solution for one image; immutable once produced."""

    ra: float
    dec: float
    field_width: float  # arcmin
    field_height: float  # arcmin
    pixscale: float  # arcsec/pixel
    orientation: float  # degrees E of N
    parity: Parity
    transform: TanTransform
    index_name: str
    logodds: float
    rms_px: float
    matches: tuple[MatchedStar, ...] = field(default=(), repr=False)

    @classmethod
    def from_transform(
        cls,
        transform: TanTransform,
        image_size: tuple[int, int],
        *,
        index_name: str,
        logodds: float,
        rms_px: float,
        matches: tuple[MatchedStar, ...] = (),
    ) -> "Solution":
        width, height = (int(v) for v in image_size)
        center = transform.pixel_to_sky(np.array([[(width - 1) / 2.0, (height - 1) / 2.0]]))[0]
        scale = transform.pixscale
        return cls(
            ra=float(center[0]),
            dec=float(center[1]),
            field_width=width * scale / 60.0,
            field_height=height * scale / 60.0,
            pixscale=scale,
            orientation=transform.orientation,
            parity=transform.parity,
            transform=transform,
            index_name=index_name,
            logodds=float(logodds),
            rms_px=float(rms_px),
            matches=tuple(matches),
        )

    @property
    def wcs(self) -> WCS:
        return self.transform.to_wcs()

    @property
    def parity_text(self) -> str:
        return self.parity.value

    def pixel_to_sky(self, xy: np.ndarray) -> np.ndarray:
        return self.transform.pixel_to_sky(xy)

    def sky_to_pixel(self, radec: np.ndarray) -> np.ndarray:
        return self.transform.sky_to_pixel(radec)

    def summary_lines(self) -> list[str]:
        return [
            f"Field center: (RA,Dec) = ({self.ra:f}, {self.dec:f}) deg.",
            f"Field center: (RA H:M:S, Dec D:M:S) = ({format_ra(self.ra)}, {format_dec(self.dec)})",
            f"Field size: {self.field_width:f} x {self.field_height:f} arcminutes",
            f'Pixel Scale: {self.pixscale:f}"',
            f"Field rotation angle: up is {self.orientation:f} degrees E of N",
            f"Field parity: {self.parity_text}",
        ]

