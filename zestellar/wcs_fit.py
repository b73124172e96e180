from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any

import numpy as np
from astropy.wcs import WCS

from .parameters import Parity
from .projections import deproject_tan, project_tan, radec_to_xyz, xyz_to_radec

Matrix2 = tuple[tuple[float, float], tuple[float, float]]


@dataclass(frozen=True)
class TanTransform:
    """Gnomonic (TAN) mapping between 0-based pixels and sky coordinates.

    ``crpix`` is 0-based here; :meth:`to_wcs` converts to the FITS 1-based
    convention. ``cd`` maps pixel offsets to standard coordinates in degrees.
    """

    crval: tuple[float, float]
    crpix: tuple[float, float]
    cd: Matrix2

    @property
    def cd_matrix(self) -> np.ndarray:
        return np.array(self.cd, dtype=np.float64)

    @property
    def determinant(self) -> float:
        return float(np.linalg.det(self.cd_matrix))

    @property
    def pixscale(self) -> float:
        """Mean pixel scale in arcsec/pixel."""
        return math.sqrt(abs(self.determinant)) * 3600.0

    @property
    def parity(self) -> Parity:
        # Sky seen from inside the sphere: east-left/north-up has det(CD) < 0
        return Parity.NORMAL if self.determinant < 0 else Parity.FLIPPED

    @property
    def orientation(self) -> float:
        """Degrees east of north of the image "up" (+y) direction."""
        cd = self.cd
        sign = 1.0 if self.determinant >= 0 else -1.0
        t = sign * cd[0][0] + cd[1][1]
        a = sign * cd[1][0] - cd[0][1]
        return -math.degrees(math.atan2(a, t))

    def pixel_to_sky(self, xy: np.ndarray) -> np.ndarray:
        pts = np.atleast_2d(np.asarray(xy, dtype=np.float64))
        offsets = pts - np.asarray(self.crpix, dtype=np.float64)
        plane = offsets @ self.cd_matrix.T
        ra, dec = deproject_tan(plane[:, 0], plane[:, 1], self.crval[0], self.crval[1])
        return np.column_stack((ra, dec))

    def sky_to_pixel(self, radec: np.ndarray) -> np.ndarray:
        pts = np.atleast_2d(np.asarray(radec, dtype=np.float64))
        xi, eta = project_tan(pts[:, 0], pts[:, 1], self.crval[0], self.crval[1])
        inverse = np.linalg.inv(self.cd_matrix)
        offsets = np.column_stack((xi, eta)) @ inverse.T
        return offsets + np.asarray(self.crpix, dtype=np.float64)

    def to_wcs(self) -> WCS:
        wcs = WCS(naxis=2)
        wcs.wcs.ctype = ["RA---TAN", "DEC--TAN"]
        wcs.wcs.cunit = ["deg", "deg"]
        wcs.wcs.crpix = [self.crpix[0] + 1.0, self.crpix[1] + 1.0]
        wcs.wcs.crval = [self.crval[0], self.crval[1]]
        wcs.wcs.cd = self.cd_matrix
        wcs.wcs.radesys = "ICRS"
        return wcs

    @classmethod
    def from_wcs(cls, wcs: WCS) -> "TanTransform":
        cd = np.asarray(wcs.wcs.cd if wcs.wcs.has_cd() else wcs.pixel_scale_matrix, dtype=np.float64)
        return cls(
            crval=(float(wcs.wcs.crval[0]), float(wcs.wcs.crval[1])),
            crpix=(float(wcs.wcs.crpix[0]) - 1.0, float(wcs.wcs.crpix[1]) - 1.0),
            cd=_as_matrix(cd),
        )


def _as_matrix(cd: np.ndarray) -> Matrix2:
    return ((float(cd[0, 0]), float(cd[0, 1])), (float(cd[1, 0]), float(cd[1, 1])))


def tan_from_similarity(
    rot_scale: complex,
    translation: complex,
    *,
    reflected: bool,
    crval: tuple[float, float],
) -> TanTransform:
    """Turn a complex similarity into a TAN transform.

    The similarity maps pixels (conjugated when *reflected*) onto the local
    frame ``-xi + i*eta`` of a tangent plane centred on *crval*, in degrees.
    """
    rr = float(np.real(rot_scale))
    ri = float(np.imag(rot_scale))
    if reflected:
        cd = ((-rr, -ri), (ri, -rr))
    else:
        cd = ((-rr, ri), (ri, rr))
    origin = -complex(translation) / complex(rot_scale)
    if reflected:
        origin = origin.conjugate()
    return TanTransform(
        crval=(float(crval[0]) % 360.0, float(crval[1])),
        crpix=(float(origin.real), float(origin.imag)),
        cd=cd,
    )


def _spherical_mean(radec: np.ndarray) -> tuple[float, float]:
    mean = radec_to_xyz(radec[:, 0], radec[:, 1]).mean(axis=0)
    ra, dec = xyz_to_radec(mean)
    return float(ra), float(dec)


def fit_tan(
    pixels: np.ndarray,
    radec: np.ndarray,
    *,
    crval: tuple[float, float] | None = None,
    crpix: tuple[float, float] | None = None,
    iterations: int = 4,
) -> TanTransform:
    """Least-squares TAN fit over pixel/sky correspondences.

    ``crpix`` defaults to the centroid of *pixels*; the tangent point is
    re-centred on the sky position of ``crpix`` after each pass.
    """
    px = np.asarray(pixels, dtype=np.float64)
    sky = np.asarray(radec, dtype=np.float64)
    if px.shape[0] < 3 or px.shape != sky.shape:
        raise ValueError("at least three matched stars are required for a TAN fit")
    if crpix is None:
        crpix = (float(px[:, 0].mean()), float(px[:, 1].mean()))
    if crval is None:
        crval = _spherical_mean(sky)
    ref = (float(crval[0]), float(crval[1]))
    dx = px[:, 0] - crpix[0]
    dy = px[:, 1] - crpix[1]
    design = np.column_stack((dx, dy, np.ones_like(dx)))
    cd = np.eye(2)
    for _ in range(max(1, int(iterations))):
        xi, eta = project_tan(sky[:, 0], sky[:, 1], ref[0], ref[1])
        xi_params, *_ = np.linalg.lstsq(design, xi, rcond=None)
        eta_params, *_ = np.linalg.lstsq(design, eta, rcond=None)
        cd = np.array([[xi_params[0], xi_params[1]], [eta_params[0], eta_params[1]]])
        ra0, dec0 = deproject_tan(np.array([xi_params[2]]), np.array([eta_params[2]]), ref[0], ref[1])
        shift = math.hypot(float(xi_params[2]), float(eta_params[2]))
        ref = (float(ra0[0]), float(dec0[0]))
        if shift < 1e-12:
            break
    if not np.isfinite(cd).all() or abs(np.linalg.det(cd)) < 1e-30:
        raise ValueError("degenerate TAN fit")
    return TanTransform(crval=ref, crpix=(float(crpix[0]), float(crpix[1])), cd=_as_matrix(cd))


def pixel_residuals(transform: TanTransform, pixels: np.ndarray, radec: np.ndarray) -> np.ndarray:
    predicted = transform.sky_to_pixel(radec)
    return np.hypot(predicted[:, 0] - pixels[:, 0], predicted[:, 1] - pixels[:, 1])


def fit_statistics(transform: TanTransform, pixels: np.ndarray, radec: np.ndarray) -> dict[str, Any]:
    if len(pixels) == 0:
        return {"rms_px": float("inf"), "max_px": float("inf"), "inliers": 0}
    residuals = pixel_residuals(transform, np.asarray(pixels, dtype=np.float64), np.asarray(radec, dtype=np.float64))
    return {
        "rms_px": float(np.sqrt(np.mean(residuals ** 2))),
        "max_px": float(np.max(residuals)),
        "inliers": int(len(residuals)),
    }
