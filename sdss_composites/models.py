"""Shared data models for quasar spectra and composites."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterator, Optional, Tuple, Union

import numpy as np

# BOSS spectrograph limits in Angstrom.
MIN_USEFUL_WAVELENGTH = 3700
MAX_USEFUL_WAVELENGTH = 10000
MAX_WAVELENGTH = 10500


@dataclass(frozen=True, eq=False)
class LiteSpectrum:
    """Reduced spectrum holding only the object id, flux and log-wavelength.

    Pixels are ordered by increasing wavelength.
    """

    obj_id: int
    flux: np.ndarray
    loglam: np.ndarray

    @property
    def num_pixels(self) -> int:
        return int(self.flux.size)

    @property
    def lite(self) -> bool:
        return True


@dataclass(frozen=True, eq=False)
class FullSpectrum(LiteSpectrum):
    """Spectrum with all COADD columns of the SDSS spec data model."""

    plate: int = 0
    mjd: int = 0
    fiber: int = 0
    ivar: Optional[np.ndarray] = None
    and_mask: Optional[np.ndarray] = None
    or_mask: Optional[np.ndarray] = None
    wdisp: Optional[np.ndarray] = None
    sky: Optional[np.ndarray] = None
    model: Optional[np.ndarray] = None

    def __post_init__(self) -> None:
        n = self.flux.size
        for name in ("ivar", "and_mask", "or_mask", "wdisp", "sky", "model"):
            value = getattr(self, name)
            if value is None:
                dtype = np.int32 if name.endswith("mask") else np.float32
                object.__setattr__(self, name, np.zeros(n, dtype=dtype))
            elif value.size != n:
                raise ValueError(f"{name} has {value.size} pixels, expected {n}")

    @property
    def lite(self) -> bool:
        return False

    def to_lite(self) -> LiteSpectrum:
        return LiteSpectrum(obj_id=self.obj_id, flux=self.flux, loglam=self.loglam)


Spectrum = Union[LiteSpectrum, FullSpectrum]


@dataclass(frozen=True)
class Quasar:
    """One row of the SDSS quasar catalogue."""

    obj_id: int
    redshift: float
    abs_magnitude: float
    ra: float = 0.0
    dec: float = 0.0
    bal: bool = False
    psf_mag_i: float = float("nan")
    extinction_i: float = float("nan")
    plate: int = 0
    mjd: int = 0
    fiber: int = 0


@dataclass(frozen=True)
class CompositePixel:
    """Summary statistics of all fluxes accumulated at one rest wavelength."""

    wavelength: int
    count: int
    arithmetic_mean: float
    geometric_mean: float
    median: float
    mean_uncertainty: float
    median_uncertainty: float


COMPOSITE_DTYPE = np.dtype(
    [
        ("wavelength", np.int32),
        ("count", np.int32),
        ("arithmetic_mean", np.float64),
        ("geometric_mean", np.float64),
        ("median", np.float64),
        ("mean_uncertainty", np.float64),
        ("median_uncertainty", np.float64),
    ]
)


@dataclass(frozen=True)
class CompositeSpectrum:
    """Immutable composite spectrum ordered by wavelength."""

    pixels: Tuple[CompositePixel, ...] = ()

    def __len__(self) -> int:
        return len(self.pixels)

    def __iter__(self) -> Iterator[CompositePixel]:
        return iter(self.pixels)

    @property
    def wavelength_lo(self) -> int | None:
        return self.pixels[0].wavelength if self.pixels else None

    @property
    def wavelength_hi(self) -> int | None:
        return self.pixels[-1].wavelength if self.pixels else None

    def to_array(self) -> np.ndarray:
        """Return the pixels as a structured array with one field per statistic."""

        out = np.zeros(len(self.pixels), dtype=COMPOSITE_DTYPE)
        for i, p in enumerate(self.pixels):
            out[i] = (
                p.wavelength,
                p.count,
                p.arithmetic_mean,
                p.geometric_mean,
                p.median,
                p.mean_uncertainty,
                p.median_uncertainty,
            )
        return out


@dataclass(frozen=True)
class BinnedComposite:
    """Composite of one bin together with how many of its quasars contributed."""

    key: float
    composite: CompositeSpectrum
    quasars: int = 0
    combined: int = 0
    missing: int = 0
    unnormalised: int = 0
