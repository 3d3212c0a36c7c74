"""Writers for composite spectra: one CSV per bin, or a single Zarr store."""

from __future__ import annotations

import csv
import datetime as dt
import logging
import os
import shutil
from pathlib import Path
from typing import Iterable, List, Sequence

import numpy as np
import zarr
from numcodecs import Blosc

from sdss_composites.models import COMPOSITE_DTYPE, BinnedComposite, CompositeSpectrum

logger = logging.getLogger(__name__)

CSV_HEADER = ("WL", "count", "mean", "gmean", "median", "umean", "umedian")
SCHEMA_VERSION = "1.0"


def composite_file_name(prefix: str, key: float) -> str:
    return f"{prefix}{key}.csv"


def write_composite_csv(composite: CompositeSpectrum, path: str | os.PathLike[str]) -> Path:
    dest = Path(path)
    dest.parent.mkdir(parents=True, exist_ok=True)
    with dest.open("w", newline="", encoding="utf-8") as f:
        writer = csv.writer(f)
        writer.writerow(CSV_HEADER)
        for p in composite:
            writer.writerow(
                [
                    p.wavelength,
                    p.count,
                    p.arithmetic_mean,
                    p.geometric_mean,
                    p.median,
                    p.mean_uncertainty,
                    p.median_uncertainty,
                ]
            )
    return dest


def write_binned_composites(
    results: Iterable[BinnedComposite],
    out_dir: str | os.PathLike[str],
    prefix: str,
) -> List[Path]:
    """Write each bin to ``out_dir/{prefix}{key}.csv``."""

    root = Path(out_dir)
    root.mkdir(parents=True, exist_ok=True)
    written = [write_composite_csv(r.composite, root / composite_file_name(prefix, r.key)) for r in results]
    logger.info("Wrote composite CSVs", extra={"out_dir": str(root), "prefix": prefix, "files": len(written)})
    return written


def _validate_before_commit(root: zarr.Group, results: Sequence[BinnedComposite]) -> None:
    for i, r in enumerate(results):
        name = f"bin_{i:03d}"
        if name not in root:
            raise ValueError(f"Missing bin group: {name}")
        group = root[name]
        for field in COMPOSITE_DTYPE.names or ():
            if field not in group:
                raise ValueError(f"Missing array: {name}/{field}")
            if group[field].shape != (len(r.composite),):
                raise ValueError(f"{name}/{field} misaligned: {group[field].shape}")


def write_composites_zarr(
    results: Sequence[BinnedComposite],
    output_zarr: str | os.PathLike[str],
    *,
    prefix: str,
    overwrite: bool = False,
) -> Path:
    """Write all bins of one scheme into a Zarr store.

    Each bin is a group ``bin_NNN`` in ascending key order holding one
    compressed 1-D array per composite column, with the bin key and counts as
    attributes. The store is built next to ``output_zarr`` and renamed into
    place only once complete.
    """

    output_zarr = Path(output_zarr)
    codec = Blosc(cname="zstd", clevel=5, shuffle=Blosc.BITSHUFFLE)

    tmp_zarr = output_zarr.with_name(f"{output_zarr.name}.tmp")
    if tmp_zarr.exists():
        shutil.rmtree(tmp_zarr)
    final_exists = output_zarr.exists()
    if final_exists and not overwrite:
        raise FileExistsError(f"Output already exists: {output_zarr}. Use --overwrite to replace it.")

    try:
        root = zarr.open_group(str(tmp_zarr), mode="w", zarr_format=2)
        root.attrs["schema_version"] = SCHEMA_VERSION
        root.attrs["prefix"] = prefix
        root.attrs["created_at"] = dt.datetime.now(dt.timezone.utc).isoformat()
        root.attrs["keys"] = [float(r.key) for r in results]

        for i, r in enumerate(results):
            group = root.create_group(f"bin_{i:03d}")
            group.attrs["key"] = float(r.key)
            group.attrs["quasars"] = r.quasars
            group.attrs["combined"] = r.combined
            group.attrs["missing"] = r.missing
            group.attrs["unnormalised"] = r.unnormalised

            table = r.composite.to_array()
            n = max(1, table.size)
            for field in COMPOSITE_DTYPE.names or ():
                arr = group.create_array(
                    field,
                    shape=(table.size,),
                    chunks=(min(n, 4096),),
                    dtype=table.dtype[field],
                    compressors=codec,
                )
                if table.size:
                    arr[:] = np.ascontiguousarray(table[field])
                if field == "wavelength":
                    arr.attrs["units"] = "Angstrom"

        _validate_before_commit(root, results)

        if final_exists:
            shutil.rmtree(output_zarr)
        os.replace(tmp_zarr, output_zarr)
    except Exception:
        if tmp_zarr.exists():
            shutil.rmtree(tmp_zarr)
        raise

    logger.info("Wrote composite Zarr", extra={"path": str(output_zarr), "bins": len(results)})
    return output_zarr
