"""Command line entry points for building stores and composite spectra."""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import Sequence

from sdss_composites.config import DEFAULT_SCHEMES, PipelineConfig
from sdss_composites.store import DEFAULT_BUFFER_SIZE

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def _configure_logging(level: str) -> None:
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT)


def _build_parser(description: str = __doc__ or "") -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--log-level", default="INFO", help="Logging level (DEBUG, INFO, WARNING, ...).")

    parser = argparse.ArgumentParser(description=description)
    sub = parser.add_subparsers(dest="command", required=True)

    store = sub.add_parser("build-store", parents=[common], help="Pack SDSS spec files into a spectrum store.")
    store.add_argument("catalog", type=Path, help="DR10Q quasar catalogue FITS file.")
    store.add_argument("fits_dir", type=Path, help="Directory holding PLATE/spec-PLATE-MJD-FIBER.fits files.")
    store.add_argument("output", type=Path, help="Spectrum store file to create.")
    store.add_argument("--lite", action="store_true", help="Store only flux and log-wavelength.")
    store.add_argument("--progress-every", type=int, default=1000, help="Log progress every N quasars.")

    comp = sub.add_parser("composites", parents=[common], help="Build binned composite spectra.")
    comp.add_argument("catalog", type=Path, help="DR10Q quasar catalogue FITS file.")
    comp.add_argument("store", type=Path, help="Spectrum store file.")
    comp.add_argument("out_dir", type=Path, help="Directory for the composite CSV (and Zarr) files.")
    comp.add_argument(
        "--scheme",
        action="append",
        choices=[s.prefix for s in DEFAULT_SCHEMES],
        help="Binning scheme to run (repeatable). Defaults to all.",
    )
    comp.add_argument("--zarr", action="store_true", help="Also write one Zarr store per scheme.")
    comp.add_argument("--overwrite", action="store_true", help="Replace existing Zarr stores.")
    comp.add_argument("--buffer-size", type=int, default=DEFAULT_BUFFER_SIZE, help="Store read window in bytes.")
    comp.add_argument("--progress-every", type=int, default=100, help="Log progress every N quasars per bin.")

    avg = sub.add_parser("average-flux", parents=[common], help="Average flux in every normalisation window.")
    avg.add_argument("catalog", type=Path, help="DR10Q quasar catalogue FITS file.")
    avg.add_argument("store", type=Path, help="Spectrum store file.")
    avg.add_argument("out_csv", type=Path, help="Output CSV path.")
    avg.add_argument("--buffer-size", type=int, default=DEFAULT_BUFFER_SIZE, help="Store read window in bytes.")
    avg.add_argument("--ratios", type=Path, help="Also write adjacent-window flux ratios per magnitude bin to this CSV.")
    avg.add_argument("--min-bin-count", type=int, default=1000, help="Smallest magnitude bin kept in the ratio table.")
    return parser


def _build_store(args: argparse.Namespace) -> str:
    from sdss_composites.catalog import good_quasars, load_catalog
    from sdss_composites.fits_utils import build_spectrum_store

    quasars = good_quasars(load_catalog(args.catalog))
    skipped = build_spectrum_store(
        quasars, args.fits_dir, args.output, lite=args.lite, progress_every=args.progress_every
    )
    if skipped:
        print(f"Skipped {len(skipped)} spectra:")
        for item in skipped:
            print(f"  - {item}")
    return f"Wrote spectrum store to {args.output}"


def _composites(args: argparse.Namespace) -> str:
    from sdss_composites.binning import run_composites

    wanted = args.scheme or [s.prefix for s in DEFAULT_SCHEMES]
    config = PipelineConfig(
        store_path=args.store,
        catalog_path=args.catalog,
        output_dir=args.out_dir,
        buffer_size=args.buffer_size,
        progress_every=args.progress_every,
        schemes=tuple(s for s in DEFAULT_SCHEMES if s.prefix in wanted),
        write_zarr=args.zarr,
        overwrite=args.overwrite,
    )
    results = run_composites(config)
    bins = sum(len(v) for v in results.values())
    return f"Wrote {bins} composite spectra to {args.out_dir}"


def _average_flux(args: argparse.Namespace) -> str:
    from sdss_composites.catalog import good_quasars, load_catalog
    from sdss_composites.normalisation import (
        compute_average_fluxes,
        flux_ratios,
        write_average_fluxes_csv,
        write_flux_ratios_csv,
    )
    from sdss_composites.store import SpectrumStoreReader

    quasars = good_quasars(load_catalog(args.catalog))
    with SpectrumStoreReader(args.store, buffer_size=args.buffer_size) as reader:
        results = compute_average_fluxes(quasars, reader)
    write_average_fluxes_csv(results, args.out_csv)
    message = f"Wrote average fluxes for {len(results)} quasars to {args.out_csv}"
    if args.ratios is not None:
        rows = flux_ratios(results, min_count=args.min_bin_count)
        write_flux_ratios_csv(rows, args.ratios)
        message += f"\nWrote flux ratios for {len(rows)} magnitude bins to {args.ratios}"
    return message


_COMMANDS = {
    "build-store": _build_store,
    "composites": _composites,
    "average-flux": _average_flux,
}


def run_cli(argv: Sequence[str] | None = None, *, description: str = __doc__ or "") -> int:
    args = _build_parser(description).parse_args(argv)
    _configure_logging(args.log_level)

    if not args.catalog.is_file():
        print(f"Catalogue not found: {args.catalog}", file=sys.stderr)
        return 2
    if args.command == "build-store":
        if not args.fits_dir.is_dir():
            print(f"Input directory not found: {args.fits_dir}", file=sys.stderr)
            return 2
        if args.output.exists():
            print(f"Output already exists: {args.output}", file=sys.stderr)
            return 2
    elif not args.store.is_file():
        print(f"Spectrum store not found: {args.store}", file=sys.stderr)
        return 2
    if getattr(args, "buffer_size", 0) < 0:
        print("--buffer-size must not be negative", file=sys.stderr)
        return 2
    if getattr(args, "min_bin_count", 1) < 1:
        print("--min-bin-count must be at least 1", file=sys.stderr)
        return 2

    try:
        message = _COMMANDS[args.command](args)
    except Exception as exc:
        print(f"Failed to run {args.command}: {exc}", file=sys.stderr)
        return 1

    print(message)
    return 0


def main() -> int:
    return run_cli()


if __name__ == "__main__":
    raise SystemExit(main())
