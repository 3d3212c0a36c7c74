"""Reading SDSS ``spec-*.fits`` files and packing them into a spectrum store."""

from __future__ import annotations

import io
import logging
import os
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

import numpy as np
from astropy.io import fits

from sdss_composites.catalog import column_lookup, spec_file_name
from sdss_composites.models import FullSpectrum, LiteSpectrum, Quasar, Spectrum
from sdss_composites.store import SpectrumStoreWriter

logger = logging.getLogger(__name__)

COADD_EXTENSION = "COADD"

_REQUIRED_COLUMNS = ("FLUX", "LOGLAM")
_FULL_COLUMNS: Dict[str, type] = {
    "ivar": np.float32,
    "and_mask": np.int32,
    "or_mask": np.int32,
    "wdisp": np.float32,
    "sky": np.float32,
    "model": np.float32,
}


def _coadd_table(hdus: fits.HDUList) -> Any:
    if COADD_EXTENSION in hdus:
        return hdus[COADD_EXTENSION].data
    if len(hdus) < 2:
        raise ValueError("expected a COADD extension or at least 2 HDUs")
    return hdus[1].data


def read_coadd_spectrum(source: str | os.PathLike[str] | bytes, quasar: Quasar, *, lite: bool = False) -> Spectrum:
    """Read the co-added spectrum of ``quasar`` from a spec file path or its bytes.

    The ``COADD`` binary table is used, falling back to HDU 1 for files that
    do not name their extensions. ``flux`` and ``loglam`` are required; the
    remaining columns default to zeros when absent.
    """

    handle = io.BytesIO(source) if isinstance(source, (bytes, bytearray)) else source
    with fits.open(handle, memmap=False) as hdus:
        table = _coadd_table(hdus)
        if table is None:
            raise ValueError("COADD extension has no data")
        lookup = column_lookup(table)
        missing = [c for c in _REQUIRED_COLUMNS if c not in lookup]
        if missing:
            raise ValueError(f"missing column(s) {', '.join(missing)} in COADD table")

        flux = np.asarray(table[lookup["FLUX"]]).ravel().astype(np.float32)
        loglam = np.asarray(table[lookup["LOGLAM"]]).ravel().astype(np.float32)
        if flux.size != loglam.size:
            raise ValueError(f"flux/loglam length mismatch ({flux.size} != {loglam.size})")
        if lite:
            return LiteSpectrum(obj_id=quasar.obj_id, flux=flux, loglam=loglam)

        extra: Dict[str, Optional[np.ndarray]] = {}
        for name, dtype in _FULL_COLUMNS.items():
            hit = lookup.get(name.upper())
            extra[name] = np.asarray(table[hit]).ravel().astype(dtype) if hit is not None else None

    return FullSpectrum(
        obj_id=quasar.obj_id,
        flux=flux,
        loglam=loglam,
        plate=quasar.plate,
        mjd=quasar.mjd,
        fiber=quasar.fiber,
        **extra,
    )


def build_spectrum_store(
    quasars: Iterable[Quasar],
    fits_dir: str | os.PathLike[str],
    output: str | os.PathLike[str],
    *,
    lite: bool = False,
    progress_every: int = 1000,
) -> List[str]:
    """Write the spectra of ``quasars`` found under ``fits_dir`` into a new store.

    Spec files are looked up by plate, MJD and fiber. Unreadable or missing
    files are skipped; their descriptions are returned.
    """

    fits_root = Path(fits_dir)
    ordered = sorted(quasars, key=lambda q: q.obj_id)
    skipped: List[str] = []
    logger.info("Store build start", extra={"quasars": len(ordered), "fits_dir": str(fits_root), "lite": lite})

    with SpectrumStoreWriter(output, lite=lite) as writer:
        for n, q in enumerate(ordered, start=1):
            name = spec_file_name(q.plate, q.mjd, q.fiber)
            fits_path = fits_root / name
            if not fits_path.is_file():
                skipped.append(f"{q.obj_id}: {name} not found")
            else:
                try:
                    spectrum = read_coadd_spectrum(fits_path, q, lite=lite)
                except (OSError, ValueError) as exc:
                    skipped.append(f"{q.obj_id}: {name}: {exc}")
                else:
                    writer.add(spectrum)
            if progress_every and n % progress_every == 0:
                logger.info("Store build progress", extra={"done": n, "total": len(ordered), "written": len(writer)})

    logger.info("Store build complete", extra={"written": len(ordered) - len(skipped), "skipped": len(skipped)})
    return skipped
