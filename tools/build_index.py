#!/usr/bin/env python3
"""CLI helper to build zestellar index files from a reference star catalogue."""
from __future__ import annotations

import argparse
import logging
from pathlib import Path

import numpy as np
from astropy.table import Table

from zestellar.index_file import build_index_file
from zestellar.scales import SCALE_BAND_MAP, QuadScaleBand, bands_for_field


def _normalize_bands(values: list[str] | None) -> list[QuadScaleBand]:
    bands: list[QuadScaleBand] = []
    for raw in values or []:
        for chunk in str(raw).replace(";", ",").split(","):
            name = chunk.strip()
            if not name:
                continue
            if name.isdigit():
                name = f"{int(name):02d}"
            if name not in SCALE_BAND_MAP:
                raise SystemExit(f"unknown scale band {chunk!r}; choose from {', '.join(SCALE_BAND_MAP)}")
            band = SCALE_BAND_MAP[name]
            if band not in bands:
                bands.append(band)
    return bands


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Generate quad index files from a RA/Dec/mag catalogue.")
    parser.add_argument("catalog", type=Path, help="Catalogue table readable by astropy (CSV, FITS, ECSV)")
    parser.add_argument("--output-dir", type=Path, required=True, help="Directory where index files are written")
    parser.add_argument("--name", default=None, help="Index name prefix (default: catalogue file stem)")
    parser.add_argument("--ra-column", default="ra", help="RA column in degrees (default: %(default)s)")
    parser.add_argument("--dec-column", default="dec", help="Dec column in degrees (default: %(default)s)")
    parser.add_argument("--mag-column", default="mag", help="Magnitude column (default: %(default)s)")
    parser.add_argument(
        "--band",
        action="append",
        help="Quad scale band name(s) to build, e.g. --band 03 --band 04",
    )
    parser.add_argument("--field-min", type=float, help="Smallest field width to support, in arcmin")
    parser.add_argument("--field-max", type=float, help="Largest field width to support, in arcmin")
    parser.add_argument("--min-arcsec", type=float, help="Explicit smallest quad diameter in arcsec")
    parser.add_argument("--max-arcsec", type=float, help="Explicit largest quad diameter in arcsec")
    parser.add_argument(
        "--max-stars",
        type=int,
        default=0,
        help="Brightest stars to keep before composing quads, 0 keeps all (default: %(default)s)",
    )
    parser.add_argument(
        "--max-quads",
        type=int,
        default=0,
        help="Maximum quads per index file, 0 for no limit (default: %(default)s)",
    )
    parser.add_argument(
        "--per-pair-quads",
        type=int,
        default=8,
        help="Quads kept per A-B base pair (default: %(default)s)",
    )
    parser.add_argument("--log-level", default="INFO", help="Logging verbosity (default: %(default)s)")
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(level=getattr(logging, str(args.log_level).upper(), logging.INFO))

    table = Table.read(args.catalog)
    missing = [col for col in (args.ra_column, args.dec_column, args.mag_column) if col not in table.colnames]
    if missing:
        parser.error(f"catalogue is missing column(s): {', '.join(missing)}")
    ra = np.asarray(table[args.ra_column], dtype=np.float64)
    dec = np.asarray(table[args.dec_column], dtype=np.float64)
    mag = np.asarray(table[args.mag_column], dtype=np.float64)

    prefix = args.name or args.catalog.stem
    jobs: list[tuple[str, dict]] = []
    if args.min_arcsec is not None or args.max_arcsec is not None:
        if args.min_arcsec is None or args.max_arcsec is None:
            parser.error("--min-arcsec and --max-arcsec must be given together")
        jobs.append((prefix, {"min_arcsec": args.min_arcsec, "max_arcsec": args.max_arcsec}))
    bands = _normalize_bands(args.band)
    if args.field_min is not None or args.field_max is not None:
        low = args.field_min if args.field_min is not None else args.field_max
        high = args.field_max if args.field_max is not None else args.field_min
        bands.extend(band for band in bands_for_field(low, high) if band not in bands)
    for band in bands:
        jobs.append((f"{prefix}-{band.name}", {"band": band}))
    if not jobs:
        parser.error("choose --band, --field-min/--field-max or --min-arcsec/--max-arcsec")

    args.output_dir.mkdir(parents=True, exist_ok=True)
    for name, scale in jobs:
        output = args.output_dir / f"{name}.npz"
        build_index_file(
            ra,
            dec,
            mag,
            name=name,
            max_stars=args.max_stars,
            max_quads=args.max_quads,
            per_pair_quads=args.per_pair_quads,
            output=output,
            **scale,
        )
        logging.info("Index written to %s", output)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
