from __future__ import annotations

import json
import logging
import math
import zipfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import numpy as np
from scipy.spatial import cKDTree

from .asterisms import CODE_DIM
from .errors import IndexFormatError
from .projections import angular_separation, arcsec_to_chord, radec_to_xyz, xyz_to_radec
from .quad_sampling import generate_index_quads
from .scales import QuadScaleBand

logger = logging.getLogger(__name__)

INDEX_FORMAT = "zestellar-index"
INDEX_VERSION = 1
_REQUIRED_ARRAYS = ("ra_deg", "dec_deg", "mag", "quads", "codes", "ab_arcsec", "metadata")


@dataclass(frozen=True, eq=False)
class IndexFile:
    """One loaded, read-only geometric-hash index.

    Reference stars are stored brightest first. ``quads`` holds star indices
    in canonical A, B, C, D order and ``codes`` the matching 4-D codes.
    """

    name: str
    min_arcsec: float
    max_arcsec: float
    center_ra: float
    center_dec: float
    radius_deg: float
    ra_deg: np.ndarray
    dec_deg: np.ndarray
    mag: np.ndarray
    quads: np.ndarray
    codes: np.ndarray
    ab_arcsec: np.ndarray
    path: Path | None = None
    star_xyz: np.ndarray = field(init=False, repr=False, compare=False)
    star_tree: cKDTree | None = field(init=False, repr=False, compare=False)
    code_tree: cKDTree | None = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        for arr in (self.ra_deg, self.dec_deg, self.mag, self.quads, self.codes, self.ab_arcsec):
            arr.setflags(write=False)
        xyz = radec_to_xyz(self.ra_deg, self.dec_deg)
        xyz.setflags(write=False)
        object.__setattr__(self, "star_xyz", xyz)
        object.__setattr__(self, "star_tree", cKDTree(xyz) if xyz.shape[0] else None)
        object.__setattr__(self, "code_tree", cKDTree(self.codes) if self.codes.shape[0] else None)

    @property
    def star_count(self) -> int:
        return int(self.ra_deg.shape[0])

    @property
    def quad_count(self) -> int:
        return int(self.quads.shape[0])

    def metadata(self) -> dict[str, Any]:
        return {
            "format": INDEX_FORMAT,
            "version": INDEX_VERSION,
            "name": self.name,
            "scale": {"min_arcsec": self.min_arcsec, "max_arcsec": self.max_arcsec},
            "center_ra_deg": self.center_ra,
            "center_dec_deg": self.center_dec,
            "radius_deg": self.radius_deg,
            "star_count": self.star_count,
            "quad_count": self.quad_count,
        }

    def overlaps_cone(self, ra_deg: float, dec_deg: float, radius_deg: float) -> bool:
        separation = angular_separation(self.center_ra, self.center_dec, ra_deg, dec_deg)
        return separation <= self.radius_deg + max(0.0, radius_deg)

    def stars_in_cone(self, ra_deg: float, dec_deg: float, radius_deg: float) -> np.ndarray:
        """Indices of reference stars within *radius_deg*, brightest first."""
        if self.star_tree is None:
            return np.zeros(0, dtype=np.int64)
        center = radec_to_xyz(np.array([ra_deg]), np.array([dec_deg]))[0]
        found = self.star_tree.query_ball_point(center, r=arcsec_to_chord(radius_deg * 3600.0))
        return np.array(sorted(found), dtype=np.int64)

    def save(self, path: Path | str) -> Path:
        target = Path(path).expanduser()
        target.parent.mkdir(parents=True, exist_ok=True)
        with target.open("wb") as handle:
            np.savez_compressed(
                handle,
                ra_deg=np.asarray(self.ra_deg, dtype=np.float64),
                dec_deg=np.asarray(self.dec_deg, dtype=np.float64),
                mag=np.asarray(self.mag, dtype=np.float32),
                quads=np.asarray(self.quads, dtype=np.int32),
                codes=np.asarray(self.codes, dtype=np.float64),
                ab_arcsec=np.asarray(self.ab_arcsec, dtype=np.float32),
                metadata=np.array(json.dumps(self.metadata())),
            )
        return target

    @classmethod
    def load(cls, path: Path | str) -> "IndexFile":
        source = Path(path).expanduser()
        try:
            with np.load(source, allow_pickle=False) as data:
                missing = [key for key in _REQUIRED_ARRAYS if key not in data.files]
                if missing:
                    raise IndexFormatError(f"{source}: missing arrays {', '.join(missing)}")
                arrays = {key: np.array(data[key]) for key in _REQUIRED_ARRAYS}
        except IndexFormatError:
            raise
        except (OSError, ValueError, KeyError, EOFError, zipfile.BadZipFile) as exc:
            raise IndexFormatError(f"{source}: {exc}") from exc
        try:
            meta = json.loads(str(arrays["metadata"]))
        except ValueError as exc:
            raise IndexFormatError(f"{source}: invalid metadata ({exc})") from exc
        if not isinstance(meta, dict) or meta.get("format") != INDEX_FORMAT:
            raise IndexFormatError(f"{source}: not a {INDEX_FORMAT} file")
        if int(meta.get("version", 0)) > INDEX_VERSION:
            raise IndexFormatError(f"{source}: unsupported version {meta.get('version')}")
        return cls._from_payload(arrays, meta, source)

    @classmethod
    def _from_payload(cls, arrays: dict[str, np.ndarray], meta: dict[str, Any], source: Path) -> "IndexFile":
        ra = arrays["ra_deg"].astype(np.float64)
        dec = arrays["dec_deg"].astype(np.float64)
        mag = arrays["mag"].astype(np.float32)
        quads = arrays["quads"].astype(np.int32)
        codes = arrays["codes"].astype(np.float64)
        ab = arrays["ab_arcsec"].astype(np.float64)
        n_stars = ra.shape[0]
        if ra.ndim != 1 or dec.shape != ra.shape or mag.shape != ra.shape:
            raise IndexFormatError(f"{source}: star arrays have inconsistent shapes")
        if quads.ndim != 2 or quads.shape[1] != 4 or codes.shape != (quads.shape[0], CODE_DIM):
            raise IndexFormatError(f"{source}: quad/code arrays have inconsistent shapes")
        if ab.shape != (quads.shape[0],):
            raise IndexFormatError(f"{source}: quad size array has wrong length")
        if quads.size and (quads.min() < 0 or quads.max() >= n_stars):
            raise IndexFormatError(f"{source}: quad references unknown stars")
        if not (np.isfinite(ra).all() and np.isfinite(dec).all() and np.isfinite(codes).all()):
            raise IndexFormatError(f"{source}: non-finite values")
        try:
            scale = meta["scale"]
            return cls(
                name=str(meta.get("name") or source.stem),
                min_arcsec=float(scale["min_arcsec"]),
                max_arcsec=float(scale["max_arcsec"]),
                center_ra=float(meta["center_ra_deg"]),
                center_dec=float(meta["center_dec_deg"]),
                radius_deg=float(meta["radius_deg"]),
                ra_deg=ra,
                dec_deg=dec,
                mag=mag,
                quads=quads,
                codes=codes,
                ab_arcsec=ab,
                path=source,
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise IndexFormatError(f"{source}: invalid metadata ({exc})") from exc


def _coverage(ra: np.ndarray, dec: np.ndarray) -> tuple[float, float, float]:
    xyz = radec_to_xyz(ra, dec)
    mean = xyz.sum(axis=0)
    norm = float(np.linalg.norm(mean))
    if norm < 1e-9:
        return 0.0, 0.0, 180.0
    center = mean / norm
    center_ra, center_dec = xyz_to_radec(center)
    cosines = np.clip(xyz @ center, -1.0, 1.0)
    radius = float(np.degrees(np.arccos(cosines.min())))
    return float(center_ra), float(center_dec), radius


def build_index_file(
    ra_deg: np.ndarray,
    dec_deg: np.ndarray,
    mag: np.ndarray,
    *,
    name: str,
    band: QuadScaleBand | None = None,
    min_arcsec: float | None = None,
    max_arcsec: float | None = None,
    max_stars: int = 0,
    max_quads: int = 0,
    per_pair_quads: int = 8,
    output: Path | str | None = None,
) -> IndexFile:
    """Build an index from a reference catalog and optionally write it to *output*.

    The quad diameter range comes from *band* or from explicit
    ``min_arcsec``/``max_arcsec``.
    """
    if band is not None:
        min_arcsec = band.min_arcsec if min_arcsec is None else min_arcsec
        max_arcsec = band.max_arcsec if max_arcsec is None else max_arcsec
    if min_arcsec is None or max_arcsec is None:
        raise ValueError("a scale band or min/max quad size is required")
    if not (math.isfinite(min_arcsec) and math.isfinite(max_arcsec)) or max_arcsec <= 0 or min_arcsec > max_arcsec:
        raise ValueError(f"invalid quad size range [{min_arcsec}, {max_arcsec}]")
    ra = np.asarray(ra_deg, dtype=np.float64)
    dec = np.asarray(dec_deg, dtype=np.float64)
    mags = np.asarray(mag, dtype=np.float64)
    if ra.shape != dec.shape or ra.shape != mags.shape or ra.ndim != 1:
        raise ValueError("ra, dec and mag must be 1-D arrays of equal length")
    finite = np.isfinite(ra) & np.isfinite(dec) & np.isfinite(mags)
    ra, dec, mags = ra[finite], dec[finite], mags[finite]
    order = np.argsort(mags, kind="stable")
    if max_stars and max_stars > 0:
        order = order[: int(max_stars)]
    ra, dec, mags = ra[order] % 360.0, dec[order], mags[order]
    quads = generate_index_quads(
        ra,
        dec,
        min_arcsec=float(min_arcsec),
        max_arcsec=float(max_arcsec),
        max_quads=max_quads,
        per_pair_quads=per_pair_quads,
    )
    center_ra, center_dec, radius = _coverage(ra, dec) if ra.size else (0.0, 0.0, 0.0)
    index = IndexFile(
        name=name,
        min_arcsec=float(min_arcsec),
        max_arcsec=float(max_arcsec),
        center_ra=center_ra,
        center_dec=center_dec,
        radius_deg=radius,
        ra_deg=ra,
        dec_deg=dec,
        mag=mags.astype(np.float32),
        quads=quads.stars,
        codes=quads.codes,
        ab_arcsec=quads.ab_arcsec,
        path=Path(output).expanduser() if output is not None else None,
    )
    logger.info(
        "index %s: %d stars, %d quads, quad size %.1f-%.1f arcsec",
        name,
        index.star_count,
        index.quad_count,
        index.min_arcsec,
        index.max_arcsec,
    )
    if output is not None:
        index.save(output)
    return index
