from __future__ import annotations

from pathlib import Path

import pytest
from astropy.table import Table

from tools import build_index as tool
from zestellar.index_file import IndexFile


def _write_catalog(path: Path, field) -> Path:
    radec = field["radec"]
    Table({"RA": radec[:, 0], "DEC": radec[:, 1], "Vmag": field["mags"]}).write(path, format="ascii.csv")
    return path


def test_build_index_cli_writes_loadable_file(tmp_path: Path, synthetic_field) -> None:
    catalog = _write_catalog(tmp_path / "stars.csv", synthetic_field)
    out_dir = tmp_path / "out"
    code = tool.main(
        [
            str(catalog),
            "--output-dir",
            str(out_dir),
            "--ra-column",
            "RA",
            "--dec-column",
            "DEC",
            "--mag-column",
            "Vmag",
            "--min-arcsec",
            "60",
            "--max-arcsec",
            "600",
            "--max-quads",
            "500",
        ]
    )
    assert code == 0
    index = IndexFile.load(out_dir / "stars.npz")
    assert index.name == "stars"
    assert 0 < index.quad_count <= 500
    assert index.star_count == len(synthetic_field["mags"])


def test_build_index_cli_requires_a_scale(tmp_path: Path, synthetic_field) -> None:
    catalog = _write_catalog(tmp_path / "stars.csv", synthetic_field)
    with pytest.raises(SystemExit):
        tool.main([str(catalog), "--output-dir", str(tmp_path / "out"), "--ra-column", "RA", "--dec-column", "DEC", "--mag-column", "Vmag"])


def test_build_index_cli_rejects_missing_columns(tmp_path: Path, synthetic_field) -> None:
    catalog = _write_catalog(tmp_path / "stars.csv", synthetic_field)
    with pytest.raises(SystemExit):
        tool.main([str(catalog), "--output-dir", str(tmp_path / "out"), "--min-arcsec", "60", "--max-arcsec", "600"])


def test_normalize_bands_accepts_numbers_and_lists() -> None:
    bands = tool._normalize_bands(["0", "00,01"])
    assert [band.name for band in bands] == ["00", "01"]
    with pytest.raises(SystemExit):
        tool._normalize_bands(["zz"])
