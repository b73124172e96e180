from __future__ import annotations

import math
from typing import Tuple

import numpy as np


def project_tan(
    ra_deg: np.ndarray,
    dec_deg: np.ndarray,
    center_ra: float,
    center_dec: float,
) -> Tuple[np.ndarray, np.ndarray]:
    """Project spherical coordinates to a tangent plane centered on (center_ra, center_dec).

    Returns standard coordinates (xi, eta) in degrees; xi grows toward east.
    Points more than 90 degrees from the tangent point come back as NaN.
    """
    ra_rad = np.deg2rad(np.asarray(ra_deg, dtype=np.float64))
    dec_rad = np.deg2rad(np.asarray(dec_deg, dtype=np.float64))
    ra0_rad = math.radians(center_ra)
    dec0_rad = math.radians(center_dec)
    dra = (ra_rad - ra0_rad + math.pi) % (2 * math.pi) - math.pi
    sin_dec = np.sin(dec_rad)
    cos_dec = np.cos(dec_rad)
    sin_dec0 = math.sin(dec0_rad)
    cos_dec0 = math.cos(dec0_rad)
    cos_dra = np.cos(dra)
    sin_dra = np.sin(dra)
    cosc = sin_dec0 * sin_dec + cos_dec0 * cos_dec * cos_dra
    safe = cosc > 1e-8
    x = np.full_like(ra_rad, np.nan)
    y = np.full_like(dec_rad, np.nan)
    x[safe] = (cos_dec[safe] * sin_dra[safe]) / cosc[safe]
    y[safe] = (cos_dec0 * sin_dec[safe] - sin_dec0 * cos_dec[safe] * cos_dra[safe]) / cosc[safe]
    return np.degrees(x), np.degrees(y)


def deproject_tan(
    xi_deg: np.ndarray,
    eta_deg: np.ndarray,
    center_ra: float,
    center_dec: float,
) -> Tuple[np.ndarray, np.ndarray]:
    """Inverse of :func:`project_tan`."""
    xi = np.deg2rad(np.asarray(xi_deg, dtype=np.float64))
    eta = np.deg2rad(np.asarray(eta_deg, dtype=np.float64))
    ra0 = math.radians(center_ra)
    dec0 = math.radians(center_dec)
    sin_dec0 = math.sin(dec0)
    cos_dec0 = math.cos(dec0)
    denom = cos_dec0 - eta * sin_dec0
    ra = ra0 + np.arctan2(xi, denom)
    dec = np.arctan2(sin_dec0 + eta * cos_dec0, np.hypot(xi, denom))
    return np.degrees(ra) % 360.0, np.degrees(dec)


def radec_to_xyz(ra_deg: np.ndarray, dec_deg: np.ndarray) -> np.ndarray:
    ra = np.deg2rad(np.asarray(ra_deg, dtype=np.float64))
    dec = np.deg2rad(np.asarray(dec_deg, dtype=np.float64))
    cos_dec = np.cos(dec)
    return np.stack((cos_dec * np.cos(ra), cos_dec * np.sin(ra), np.sin(dec)), axis=-1)


def xyz_to_radec(xyz: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    vec = np.asarray(xyz, dtype=np.float64)
    norm = np.linalg.norm(vec, axis=-1)
    ra = np.degrees(np.arctan2(vec[..., 1], vec[..., 0])) % 360.0
    dec = np.degrees(np.arcsin(np.clip(vec[..., 2] / norm, -1.0, 1.0)))
    return ra, dec


def angular_separation(ra1: float, dec1: float, ra2: float, dec2: float) -> float:
    """Great-circle distance in degrees (haversine form)."""
    ra1_r, dec1_r, ra2_r, dec2_r = map(math.radians, (ra1, dec1, ra2, dec2))
    sin_ddec = math.sin((dec2_r - dec1_r) / 2.0)
    sin_dra = math.sin((ra2_r - ra1_r) / 2.0)
    h = sin_ddec * sin_ddec + math.cos(dec1_r) * math.cos(dec2_r) * sin_dra * sin_dra
    return math.degrees(2.0 * math.asin(min(1.0, math.sqrt(h))))


def arcsec_to_chord(arcsec: float) -> float:
    """Chord length on the unit sphere subtending *arcsec*."""
    angle = math.radians(min(float(arcsec), 648000.0) / 3600.0)
    return 2.0 * math.sin(angle / 2.0)


def chord_to_arcsec(chord: np.ndarray) -> np.ndarray:
    return np.degrees(2.0 * np.arcsin(np.clip(np.asarray(chord, dtype=np.float64) / 2.0, 0.0, 1.0))) * 3600.0
