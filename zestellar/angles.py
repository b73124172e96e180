from __future__ import annotations

from typing import Optional

import numpy as np
import astropy.units as u
from astropy.coordinates import Angle


def parse_angle(value: object, *, is_ra: bool) -> Optional[float]:
    """Parse degrees or sexagesimal text (hours for RA) into degrees."""
    if value is None:
        return None
    if isinstance(value, (int, float, np.floating)):
        return float(value)
    text = str(value).strip()
    if not text:
        return None
    try:
        return float(text)
    except ValueError:
        try:
            angle = Angle(text, unit=u.hourangle if is_ra else u.deg)
            return float(angle.degree)
        except (ValueError, u.UnitsError):
            return None


def format_ra(ra_deg: float, precision: int = 2) -> str:
    """Format right ascension as ``HHhMMmSS.SSs``."""
    angle = Angle(float(ra_deg) % 360.0, unit=u.deg)
    return angle.to_string(unit=u.hourangle, sep="hms", precision=precision, pad=True)


def format_dec(dec_deg: float, precision: int = 1) -> str:
    """Format declination as ``+DDdMMmSS.Ss``."""
    angle = Angle(float(dec_deg), unit=u.deg)
    return angle.to_string(unit=u.deg, sep="dms", precision=precision, pad=True, alwayssign=True)
