"""SDSS DR10Q quasar catalogue access and SDSS naming conventions."""

from __future__ import annotations

import logging
import math
import os
from typing import Any, Iterable, List

import numpy as np
import astropy.units as u
from astropy.coordinates import Angle
from astropy.io import fits

from sdss_composites.models import Quasar

logger = logging.getLogger(__name__)

# Zero absolute magnitude, -9999 apparent magnitude and a zero spectrum.
BAD_OBJECT_ID = 1237651801769836969

# PSFMAG and EXTINCTION hold one value per ugriz band.
I_BAND = 3

CATALOG_COLUMNS = ("OBJ_ID", "RA", "DEC", "Z_VI", "MI", "BAL_FLAG_VI", "PSFMAG", "EXTINCTION", "PLATE", "MJD", "FIBERID")


class CatalogError(RuntimeError):
    """Raised when a quasar catalogue cannot be interpreted."""


def column_lookup(table: Any) -> dict[str, str]:
    """Map upper-cased column names of a FITS table to their stored spelling."""

    names = getattr(table, "names", None)
    if not names:
        dtype = getattr(table, "dtype", None)
        names = getattr(dtype, "names", None) or []
    return {str(name).strip().upper(): str(name) for name in names}


def _band_value(values: np.ndarray, band: int) -> np.ndarray:
    arr = np.asarray(values)
    if arr.ndim == 2:
        return arr[:, band]
    return arr


def _parse_obj_id(value: Any) -> int:
    if isinstance(value, bytes):
        value = value.decode("ascii")
    return int(str(value).strip())


def load_catalog(path: str | os.PathLike[str]) -> List[Quasar]:
    """Read every quasar of a DR10Q-style catalogue FITS binary table.

    The table is the first HDU carrying the catalogue columns. Column names are
    matched case-insensitively and the i-band entry is taken from the
    per-band ``PSFMAG`` and ``EXTINCTION`` vectors.
    """

    with fits.open(path, memmap=False) as hdus:
        table = None
        lookup: dict[str, str] = {}
        for hdu in hdus:
            data = getattr(hdu, "data", None)
            if data is None or not hasattr(data, "columns"):
                continue
            lookup = column_lookup(data)
            if all(col in lookup for col in CATALOG_COLUMNS):
                table = data
                break
        if table is None:
            raise CatalogError(f"{path}: no table with columns {', '.join(CATALOG_COLUMNS)}")

        def col(name: str) -> np.ndarray:
            return np.asarray(table[lookup[name]])

        obj_id = col("OBJ_ID")
        ra = col("RA").astype(np.float64)
        dec = col("DEC").astype(np.float64)
        z = col("Z_VI").astype(np.float64)
        mi = col("MI").astype(np.float64)
        bal = col("BAL_FLAG_VI").astype(np.int64)
        psf_mag = _band_value(col("PSFMAG"), I_BAND).astype(np.float64)
        extinction = _band_value(col("EXTINCTION"), I_BAND).astype(np.float64)
        plate = col("PLATE").astype(np.int64)
        mjd = col("MJD").astype(np.int64)
        fiber = col("FIBERID").astype(np.int64)

    quasars = [
        Quasar(
            obj_id=_parse_obj_id(obj_id[i]),
            redshift=float(z[i]),
            abs_magnitude=float(mi[i]),
            ra=float(ra[i]),
            dec=float(dec[i]),
            bal=int(bal[i]) == 1,
            psf_mag_i=float(psf_mag[i]),
            extinction_i=float(extinction[i]),
            plate=int(plate[i]),
            mjd=int(mjd[i]),
            fiber=int(fiber[i]),
        )
        for i in range(len(obj_id))
    ]
    logger.info("Loaded quasar catalogue", extra={"path": str(path), "count": len(quasars)})
    return quasars


def good_quasars(quasars: Iterable[Quasar]) -> List[Quasar]:
    """Drop broad absorption line quasars and the known bad object."""

    return [q for q in quasars if not q.bal and q.obj_id != BAD_OBJECT_ID]


def spec_file_name(plate: int, mjd: int, fiber: int) -> str:
    """Relative path of an SDSS ``spec`` file, e.g. ``0266/spec-0266-51602-0001.fits``."""

    return f"{plate:04d}/spec-{plate:04d}-{mjd:05d}-{fiber:04d}.fits"


def iau_name(ra: float, dec: float) -> str:
    """IAU designation ``SDSS JHHMMSS.ss+DDMMSS.s`` with truncated seconds."""

    ra_hms = Angle(ra, unit=u.deg).hms
    dec_dms = Angle(abs(dec), unit=u.deg).dms
    ra_ss = math.floor(ra_hms.s * 100) / 100
    dec_ss = math.floor(dec_dms.s * 10) / 10
    sign = "-" if dec < 0 else "+"

    return (
        f"SDSS J{int(ra_hms.h):02d}{int(ra_hms.m):02d}{ra_ss:05.2f}"
        f"{sign}{int(dec_dms.d):02d}{int(dec_dms.m):02d}{dec_ss:04.1f}"
    )
