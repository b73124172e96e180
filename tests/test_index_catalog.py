from __future__ import annotations

import os

import numpy as np
import pytest

from zestellar.errors import IndexFormatError
from zestellar.index_catalog import IndexCatalog, as_catalog
from zestellar.index_file import IndexFile, build_index_file
from zestellar.projections import angular_separation
from zestellar.scales import SCALE_BAND_MAP, bands_for_field


def test_built_index_round_trips_through_disk(synthetic_index_dir, synthetic_field):
    index = IndexFile.load(synthetic_index_dir / "synth-60-600.npz")
    assert index.name == "synth-60-600"
    assert index.star_count == len(synthetic_field["mags"])
    assert index.quad_count > 100
    assert index.codes.shape == (index.quad_count, 4)
    assert np.all(np.diff(index.mag) >= 0)
    assert np.all((index.ab_arcsec >= 60.0 - 1e-3) & (index.ab_arcsec <= 600.0 + 1e-3))
    assert not index.codes.flags.writeable
    assert angular_separation(index.center_ra, index.center_dec, 150.0, -20.0) < 0.05


def test_quads_are_unique_star_sets(synthetic_index_dir):
    index = IndexFile.load(synthetic_index_dir / "synth-60-600.npz")
    keys = {tuple(sorted(q)) for q in index.quads.tolist()}
    assert len(keys) == index.quad_count


def test_stars_in_cone_returns_brightest_first(synthetic_index_dir):
    index = IndexFile.load(synthetic_index_dir / "synth-60-600.npz")
    ids = index.stars_in_cone(150.0, -20.0, 1.0)
    assert ids.tolist() == list(range(index.star_count))
    assert index.stars_in_cone(10.0, 60.0, 0.5).size == 0


def test_load_rejects_foreign_files(tmp_path):
    bogus = tmp_path / "bogus.npz"
    np.savez(bogus, ra_deg=np.zeros(3))
    with pytest.raises(IndexFormatError):
        IndexFile.load(bogus)
    garbage = tmp_path / "garbage.npz"
    garbage.write_bytes(b"not a zip archive")
    with pytest.raises(IndexFormatError):
        IndexFile.load(garbage)


def test_catalog_skips_malformed_files(tmp_path, synthetic_index_dir):
    (tmp_path / "broken.npz").write_bytes(b"\x00" * 32)
    catalog = IndexCatalog(paths=[synthetic_index_dir, tmp_path, tmp_path / "missing"])
    assert catalog.names() == ["synth-60-600"]
    assert [skip.path.name for skip in catalog.skipped] == ["broken.npz"]


def test_catalog_loads_once_and_reloads_changed_files(tmp_path, synthetic_field):
    radec = synthetic_field["radec"]
    path = tmp_path / "one.npz"
    build_index_file(radec[:, 0], radec[:, 1], synthetic_field["mags"], name="one", min_arcsec=60, max_arcsec=300, output=path)
    catalog = IndexCatalog(paths=[tmp_path])
    first = catalog.indexes[0]
    assert catalog.load().indexes[0] is first
    catalog.reload()
    assert catalog.indexes[0] is first

    build_index_file(radec[:, 0], radec[:, 1], synthetic_field["mags"], name="one-b", min_arcsec=60, max_arcsec=400, output=path)
    stat = path.stat()
    os.utime(path, ns=(stat.st_atime_ns, stat.st_mtime_ns + 5_000_000_000))
    catalog.reload()
    assert catalog.names() == ["one-b"]


def test_select_filters_by_scale_and_position(synthetic_catalog):
    size = (600, 600)
    assert synthetic_catalog.select((0.9, 1.1), size) != []
    # quads far larger than any that fit in the field
    assert synthetic_catalog.select((0.001, 0.01), size) == []
    # quads too small to matter for a huge field
    assert synthetic_catalog.select((100.0, 200.0), size) == []
    assert synthetic_catalog.select((0.9, 1.1), size, (150.0, -20.0, 1.0)) != []
    assert synthetic_catalog.select((0.9, 1.1), size, (10.0, 60.0, 1.0)) == []


def test_select_orders_largest_scale_first(synthetic_field):
    radec = synthetic_field["radec"]
    small = build_index_file(radec[:, 0], radec[:, 1], synthetic_field["mags"], name="b-small", min_arcsec=60, max_arcsec=200)
    large = build_index_file(radec[:, 0], radec[:, 1], synthetic_field["mags"], name="a-large", min_arcsec=150, max_arcsec=600)
    catalog = as_catalog([small, large])
    assert [idx.name for idx in catalog.select((0.9, 1.1), (600, 600))] == ["a-large", "b-small"]


def test_build_index_from_named_band(synthetic_field):
    radec = synthetic_field["radec"]
    band = SCALE_BAND_MAP["00"]
    index = build_index_file(radec[:, 0], radec[:, 1], synthetic_field["mags"], name="band", band=band, max_stars=30)
    assert index.star_count == 30
    assert index.min_arcsec == band.min_arcsec
    assert index.max_arcsec == band.max_arcsec
    with pytest.raises(ValueError):
        build_index_file(radec[:, 0], radec[:, 1], synthetic_field["mags"], name="none")


def test_bands_for_field_cover_expected_quad_sizes():
    bands = bands_for_field(10.0, 10.0)
    assert bands
    assert all(band.max_arcsec >= 60.0 and band.min_arcsec <= 600.0 for band in bands)
