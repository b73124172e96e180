from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Callable, Iterable, Iterator, Sequence, overload

import numpy as np

STAR_DTYPE = [
    ("x", "f8"),
    ("y", "f8"),
    ("flux", "f8"),
    ("peak", "f8"),
    ("mag", "f8"),
    ("hfr", "f8"),
    ("a", "f8"),
    ("b", "f8"),
    ("theta", "f8"),
    ("num_pixels", "i4"),
    ("on_border", "?"),
    ("ra", "f8"),
    ("dec", "f8"),
]


@dataclass(frozen=True)
class Star:
    x: float
    y: float
    flux: float
    peak: float
    mag: float
    hfr: float
    a: float
    b: float
    theta: float
    num_pixels: int
    on_border: bool = False
    ra: float | None = None
    dec: float | None = None

    @property
    def axis_ratio(self) -> float:
        if self.b <= 0:
            return float("inf") if self.a > 0 else 1.0
        return self.a / self.b

    @property
    def ellipticity(self) -> float:
        if self.a <= 0:
            return 0.0
        return 1.0 - self.b / self.a


class StarList(Sequence[Star]):
    """Immutable, ordered collection of extracted stars."""

    __slots__ = ("_stars",)

    def __init__(self, stars: Iterable[Star] = ()) -> None:
        self._stars: tuple[Star, ...] = tuple(stars)

    @overload
    def __getitem__(self, index: int) -> Star: ...

    @overload
    def __getitem__(self, index: slice) -> "StarList": ...

    def __getitem__(self, index):
        if isinstance(index, slice):
            return StarList(self._stars[index])
        return self._stars[index]

    def __len__(self) -> int:
        return len(self._stars)

    def __iter__(self) -> Iterator[Star]:
        return iter(self._stars)

    def __eq__(self, other: object) -> bool:
        if isinstance(other, StarList):
            return self._stars == other._stars
        return NotImplemented

    def __hash__(self) -> int:
        return hash(self._stars)

    def __repr__(self) -> str:
        return f"StarList({len(self._stars)} stars)"

    def positions(self) -> np.ndarray:
        if not self._stars:
            return np.zeros((0, 2), dtype=np.float64)
        return np.array([(s.x, s.y) for s in self._stars], dtype=np.float64)

    def as_array(self) -> np.ndarray:
        out = np.zeros(len(self._stars), dtype=STAR_DTYPE)
        for idx, s in enumerate(self._stars):
            out[idx] = (
                s.x,
                s.y,
                s.flux,
                s.peak,
                s.mag,
                s.hfr,
                s.a,
                s.b,
                s.theta,
                s.num_pixels,
                s.on_border,
                np.nan if s.ra is None else s.ra,
                np.nan if s.dec is None else s.dec,
            )
        return out

    def with_sky_coordinates(
        self,
        pixel_to_sky: Callable[[np.ndarray], np.ndarray],
    ) -> "StarList":
        """Return a copy whose stars carry RA/Dec computed by *pixel_to_sky*."""
        if not self._stars:
            return self
        world = np.asarray(pixel_to_sky(self.positions()), dtype=np.float64)
        return StarList(
            replace(star, ra=float(world[idx, 0]), dec=float(world[idx, 1]))
            for idx, star in enumerate(self._stars)
        )
