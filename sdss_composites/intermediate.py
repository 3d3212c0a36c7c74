"""Rest-frame resampling of observed spectra onto 1 Angstrom bins."""

from __future__ import annotations

import numpy as np

from sdss_composites.models import (
    MAX_USEFUL_WAVELENGTH,
    MAX_WAVELENGTH,
    MIN_USEFUL_WAVELENGTH,
    Spectrum,
)
from sdss_composites.normalisation import get_normalisation


class RebinningError(RuntimeError):
    """Raised when rebinning produces an impossible bin span."""


class IntermediateSpectrum:
    """Working copy of one spectrum, shifted to the rest frame and rebinned.

    Bin ``i`` holds the flux between ``i`` and ``i + 1`` Angstrom. The array
    starts at zero because the rest wavelength of the bluest pixel depends on
    the redshift. Only bins in ``[wavelength_lo, wavelength_hi]`` are populated.
    """

    def __init__(self) -> None:
        self._pixels = np.zeros(MAX_WAVELENGTH, dtype=np.float64)
        self.wavelength_lo = 0
        self.wavelength_hi = -1

    @classmethod
    def from_spectrum(cls, spectrum: Spectrum, z: float) -> "IntermediateSpectrum":
        ispec = cls()
        ispec.shift_and_rebin(spectrum, z)
        return ispec

    @property
    def pixels(self) -> np.ndarray:
        view = self._pixels.view()
        view.flags.writeable = False
        return view

    @property
    def empty(self) -> bool:
        return self.wavelength_hi < self.wavelength_lo

    def pixel(self, wavelength: int) -> float:
        return float(self._pixels[wavelength])

    def average(self, start: int, end: int) -> float:
        """Mean flux over bins ``start`` to ``end`` inclusive."""

        return float(self._pixels[start : end + 1].mean())

    def shift_and_rebin(self, spectrum: Spectrum, z: float) -> None:
        """Shift ``spectrum`` to the rest frame and redistribute its flux.

        Each pair of adjacent observed pixels defines a wavelength interval
        carrying the flux of the lower pixel. Pairs with an end outside the
        useful observed range are skipped. The flux of a pair is shared among
        the 1 Angstrom bins it overlaps in proportion to the overlap, so the
        total is conserved.
        """

        if z <= -1:
            raise RebinningError(f"Redshift {z} is not physical")

        lam = np.power(10.0, spectrum.loglam.astype(np.float64))
        flux = spectrum.flux.astype(np.float64)[:-1]
        lo = lam[:-1]
        hi = lam[1:]
        usable = (lo >= MIN_USEFUL_WAVELENGTH) & (hi <= MAX_USEFUL_WAVELENGTH)
        if not usable.any():
            return

        lo = lo[usable] / (z + 1)
        hi = hi[usable] / (z + 1)
        flux = flux[usable]
        width = hi - lo
        bin_lo = np.floor(lo).astype(np.int64)
        bin_hi = np.floor(hi).astype(np.int64)
        span = bin_hi - bin_lo
        if (span < 0).any():
            bad = int(np.argmax(span < 0))
            raise RebinningError(f"Wavelength binning error: {lo[bad]} > {hi[bad]} for object {spectrum.obj_id}")
        if bin_lo.min() < 0 or bin_hi.max() >= MAX_WAVELENGTH:
            raise RebinningError(f"Rest wavelengths outside 0..{MAX_WAVELENGTH} for object {spectrum.obj_id}")

        self.wavelength_lo = int(bin_lo[0])
        self.wavelength_hi = int(bin_hi[-1])

        single = span == 0
        np.add.at(self._pixels, bin_lo[single], flux[single])

        multi = ~single
        if not multi.any():
            return
        m_lo, m_hi, m_flux, m_width = lo[multi], hi[multi], flux[multi], width[multi]
        m_bin_lo, m_bin_hi, m_span = bin_lo[multi], bin_hi[multi], span[multi]

        # First and last partial bins, then a full Angstrom in each bin between.
        np.add.at(self._pixels, m_bin_lo, m_flux * ((1 - (m_lo - m_bin_lo)) / m_width))
        np.add.at(self._pixels, m_bin_hi, m_flux * ((m_hi - m_bin_hi) / m_width))
        for k in range(1, int(m_span.max())):
            inner = m_span > k
            np.add.at(self._pixels, m_bin_lo[inner] + k, m_flux[inner] / m_width[inner])

    def normalise(self, z: float) -> bool:
        """Scale the spectrum to the reference level of its normalisation window.

        Returns False, leaving the flux untouched, when no window is observable
        at ``z``. A window with zero mean flux turns every bin into NaN, which
        the accumulator later drops.
        """

        nr = get_normalisation(z)
        if nr is None:
            return False

        mean = self._pixels[nr.start_wl : nr.end_wl + 1].mean()
        with np.errstate(divide="ignore", invalid="ignore"):
            scale = nr.norm_factor / mean
        if not np.isfinite(scale):
            scale = np.nan
        self._pixels *= scale
        return True
