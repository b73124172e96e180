from __future__ import annotations

import logging
import math
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Iterator, Sequence

from .errors import IndexFormatError
from .index_file import IndexFile

logger = logging.getLogger(__name__)

INDEX_SUFFIX = ".npz"
# Smallest quad, as a fraction of the short image side, worth matching
MIN_QUAD_FRACTION = 0.1


@dataclass(frozen=True)
class _CatalogEntry:
    signature: tuple[int, int]
    index: IndexFile


@dataclass(frozen=True)
class SkippedIndex:
    path: Path
    reason: str


def _stat_signature(path: Path) -> tuple[int, int]:
    stat = path.stat()
    mtime_ns = getattr(stat, "st_mtime_ns", int(stat.st_mtime * 1e9))
    return int(mtime_ns), int(stat.st_size)


class IndexCatalog:
    """Set of index files shared read-only by every solve that receives it.

    ``paths`` may name index files or directories holding ``*.npz`` index
    files; ``index_files`` are already-loaded handles. Loading happens once,
    under a lock, the first time the catalog is queried. Afterwards the
    catalog is never mutated and queries need no synchronization.
    """

    def __init__(
        self,
        paths: Iterable[Path | str] = (),
        index_files: Iterable[IndexFile] = (),
    ) -> None:
        self._paths = tuple(Path(p).expanduser() for p in paths)
        self._handles = tuple(index_files)
        self._lock = threading.Lock()
        self._entries: dict[Path, _CatalogEntry] = {}
        self._indexes: tuple[IndexFile, ...] = ()
        self._skipped: tuple[SkippedIndex, ...] = ()
        self._loaded = False

    @property
    def loaded(self) -> bool:
        return self._loaded

    @property
    def skipped(self) -> tuple[SkippedIndex, ...]:
        return self._skipped

    def _candidate_files(self) -> list[Path]:
        found: list[Path] = []
        for root in self._paths:
            if root.is_dir():
                found.extend(sorted(p for p in root.iterdir() if p.is_file() and p.suffix.lower() == INDEX_SUFFIX))
            elif root.is_file():
                found.append(root)
            else:
                logger.warning("index path %s does not exist; skipping", root)
        unique: list[Path] = []
        seen: set[Path] = set()
        for path in found:
            resolved = path.resolve()
            if resolved in seen:
                continue
            seen.add(resolved)
            unique.append(resolved)
        return unique

    def _scan(self) -> None:
        indexes: list[IndexFile] = list(self._handles)
        skipped: list[SkippedIndex] = []
        entries: dict[Path, _CatalogEntry] = {}
        for path in self._candidate_files():
            try:
                signature = _stat_signature(path)
            except OSError as exc:
                logger.warning("cannot stat index %s: %s", path, exc)
                skipped.append(SkippedIndex(path, str(exc)))
                continue
            cached = self._entries.get(path)
            if cached is not None and cached.signature == signature:
                entries[path] = cached
                indexes.append(cached.index)
                continue
            try:
                index = IndexFile.load(path)
            except IndexFormatError as exc:
                logger.warning("skipping malformed index %s: %s", path, exc)
                skipped.append(SkippedIndex(path, str(exc)))
                continue
            entries[path] = _CatalogEntry(signature, index)
            indexes.append(index)
            logger.debug("loaded index %s (%d stars, %d quads)", index.name, index.star_count, index.quad_count)
        self._entries = entries
        self._indexes = tuple(indexes)
        self._skipped = tuple(skipped)
        self._loaded = True
        logger.info("index catalog ready: %d files loaded, %d skipped", len(indexes), len(skipped))

    def load(self) -> "IndexCatalog":
        """Load every index once; later calls return immediately."""
        if self._loaded:
            return self
        with self._lock:
            if not self._loaded:
                self._scan()
        return self

    def reload(self) -> "IndexCatalog":
        """Re-scan paths, re-reading only files whose size or mtime changed."""
        with self._lock:
            self._scan()
        return self

    @property
    def indexes(self) -> tuple[IndexFile, ...]:
        self.load()
        return self._indexes

    def __len__(self) -> int:
        return len(self.indexes)

    def __iter__(self) -> Iterator[IndexFile]:
        return iter(self.indexes)

    def names(self) -> list[str]:
        return [index.name for index in self.indexes]

    def select(
        self,
        scale_range: tuple[float, float],
        image_size: tuple[int, int],
        position: tuple[float, float, float] | None = None,
    ) -> list[IndexFile]:
        """Return the index files that could plausibly solve an image.

        *scale_range* is the (low, high) pixel scale prior in arcsec/pixel,
        *image_size* is (width, height) in pixels and *position* an optional
        (ra, dec, radius) cone in degrees. The result is ordered by largest
        quad scale first, then by name.
        """
        low, high = (float(v) for v in scale_range)
        width, height = (max(1, int(v)) for v in image_size)
        diagonal_arcsec = math.hypot(width, height) * high
        smallest_useful = MIN_QUAD_FRACTION * min(width, height) * low
        selected: list[IndexFile] = []
        for index in self.indexes:
            if index.quad_count == 0:
                continue
            if index.min_arcsec > diagonal_arcsec or index.max_arcsec < smallest_useful:
                continue
            if position is not None:
                ra, dec, radius = position
                if not index.overlaps_cone(ra, dec, radius):
                    continue
            selected.append(index)
        selected.sort(key=lambda idx: (-idx.max_arcsec, idx.name))
        return selected


def as_catalog(source: IndexCatalog | Sequence[Path | str | IndexFile] | Path | str | None) -> IndexCatalog:
    """Coerce paths, index handles or an existing catalog into an IndexCatalog."""
    if isinstance(source, IndexCatalog):
        return source
    if source is None:
        return IndexCatalog()
    if isinstance(source, (str, Path)):
        return IndexCatalog(paths=[source])
    paths = [item for item in source if not isinstance(item, IndexFile)]
    handles = [item for item in source if isinstance(item, IndexFile)]
    return IndexCatalog(paths=paths, index_files=handles)
