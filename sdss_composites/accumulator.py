"""Accumulate many rest-frame spectra and reduce them to a composite."""

from __future__ import annotations

import math
from typing import List, Optional

import numpy as np

from sdss_composites.intermediate import IntermediateSpectrum
from sdss_composites.models import MAX_WAVELENGTH, CompositePixel, CompositeSpectrum

PIXEL_BLOCK_SIZE = 100
SAMPLE_BLOCK_SIZE = 1000
MAX_SAMPLES = 40000

# Fraction of the semi-interquartile range used as the median uncertainty.
_MEDIAN_UNCERTAINTY_SCALE = 0.68


def _sorted_median(values: np.ndarray, lower: int, upper: int) -> float:
    n = upper - lower
    mid = n // 2 + lower
    if n % 2 == 1:
        return float(values[mid])
    return float((values[mid] + values[mid - 1]) / 2)


def summarise_pixel(wavelength: int, values: np.ndarray) -> CompositePixel:
    """Reduce the fluxes accumulated at one wavelength to summary statistics.

    The geometric mean uses strictly positive values only. Uncertainties are
    the standard error of the mean and 68% of the semi-interquartile range over
    ``sqrt(count)``; a single value is its own uncertainty.
    """

    count = int(values.size)
    if count == 0:
        return CompositePixel(wavelength, 0, 0.0, 0.0, 0.0, 0.0, 0.0)

    fluxes = np.sort(values.astype(np.float64))
    mean = float(fluxes.sum() / count)

    positive = fluxes[fluxes > 0]
    gmean = float(np.exp(np.log(positive).mean())) if positive.size else 0.0

    median = _sorted_median(fluxes, 0, count)

    if count == 1:
        umean = umedian = float(fluxes[0])
    else:
        umean = math.sqrt(float(((fluxes - mean) ** 2).sum()) / (count - 1)) / math.sqrt(count)
        # Lower half includes the middle value when count is odd.
        mid = count // 2
        q1 = _sorted_median(fluxes, 0, mid + count % 2)
        q3 = _sorted_median(fluxes, mid, count)
        umedian = _MEDIAN_UNCERTAINTY_SCALE * ((q3 - q1) / 2) / math.sqrt(count)

    return CompositePixel(wavelength, count, mean, gmean, median, umean, umedian)


class _PixelBlock:
    """Samples for ``PIXEL_BLOCK_SIZE`` adjacent wavelength bins.

    Column ``j`` of the sample blocks holds the fluxes of bin ``j`` in arrival
    order. Sample blocks of ``SAMPLE_BLOCK_SIZE`` rows are added only when some
    bin in the block needs another row.
    """

    def __init__(self) -> None:
        self.counts = np.zeros(PIXEL_BLOCK_SIZE, dtype=np.int64)
        self.sample_blocks: List[np.ndarray] = []

    def check_capacity(self, columns: np.ndarray) -> None:
        if columns.size and int(self.counts[columns].max()) + 1 > MAX_SAMPLES:
            raise OverflowError(f"More than {MAX_SAMPLES} samples in one wavelength bin")

    def add(self, columns: np.ndarray, fluxes: np.ndarray) -> None:
        if columns.size == 0:
            return
        self.check_capacity(columns)
        rows = self.counts[columns]
        needed = int(rows.max()) + 1
        while len(self.sample_blocks) * SAMPLE_BLOCK_SIZE < needed:
            self.sample_blocks.append(np.empty((SAMPLE_BLOCK_SIZE, PIXEL_BLOCK_SIZE), dtype=np.float32))

        block_num = rows // SAMPLE_BLOCK_SIZE
        block_row = rows % SAMPLE_BLOCK_SIZE
        for b in np.unique(block_num):
            sel = block_num == b
            self.sample_blocks[int(b)][block_row[sel], columns[sel]] = fluxes[sel]
        self.counts[columns] += 1

    def values(self, column: int) -> np.ndarray:
        n = int(self.counts[column])
        if n == 0:
            return np.empty(0, dtype=np.float32)
        used = self.sample_blocks[: (n - 1) // SAMPLE_BLOCK_SIZE + 1]
        return np.concatenate([blk[:, column] for blk in used])[:n]


class AccumulatorSpectrum:
    """Streaming accumulator of intermediate spectra.

    Storage for a run of ``PIXEL_BLOCK_SIZE`` wavelength bins is allocated on
    first touch, so only the wavelengths actually contributed cost memory.
    """

    def __init__(self) -> None:
        self._blocks: List[Optional[_PixelBlock]] = [None] * (MAX_WAVELENGTH // PIXEL_BLOCK_SIZE + 1)
        self.wavelength_lo: Optional[int] = None
        self.wavelength_hi: Optional[int] = None
        self.contributors = 0

    def _block(self, num: int) -> _PixelBlock:
        block = self._blocks[num]
        if block is None:
            block = _PixelBlock()
            self._blocks[num] = block
        return block

    def combine(self, ispec: IntermediateSpectrum) -> "AccumulatorSpectrum":
        """Add one spectrum, dropping its first and last bins and any NaN flux."""

        range_lo = ispec.wavelength_lo + 1
        range_hi = ispec.wavelength_hi - 1
        if range_hi < range_lo:
            return self

        fluxes = ispec.pixels[range_lo : range_hi + 1].astype(np.float32)
        wavelengths = np.arange(range_lo, range_hi + 1)
        keep = ~np.isnan(fluxes)
        fluxes, wavelengths = fluxes[keep], wavelengths[keep]

        chunks = []
        for num in range(range_lo // PIXEL_BLOCK_SIZE, range_hi // PIXEL_BLOCK_SIZE + 1):
            start = int(np.searchsorted(wavelengths, num * PIXEL_BLOCK_SIZE))
            end = int(np.searchsorted(wavelengths, (num + 1) * PIXEL_BLOCK_SIZE))
            if start < end:
                chunks.append((num, wavelengths[start:end] - num * PIXEL_BLOCK_SIZE, fluxes[start:end]))

        # A spectrum that would overflow any bin is rejected before any sample is stored.
        for num, columns, _ in chunks:
            block = self._blocks[num]
            if block is not None:
                block.check_capacity(columns)
        for num, columns, values in chunks:
            self._block(num).add(columns, values)

        self.wavelength_lo = range_lo if self.wavelength_lo is None else min(self.wavelength_lo, range_lo)
        self.wavelength_hi = range_hi if self.wavelength_hi is None else max(self.wavelength_hi, range_hi)
        self.contributors += 1
        return self

    def samples(self, wavelength: int) -> np.ndarray:
        """Fluxes accumulated at ``wavelength`` in arrival order."""

        block = self._blocks[wavelength // PIXEL_BLOCK_SIZE]
        if block is None:
            return np.empty(0, dtype=np.float32)
        return block.values(wavelength % PIXEL_BLOCK_SIZE)

    def count(self, wavelength: int) -> int:
        block = self._blocks[wavelength // PIXEL_BLOCK_SIZE]
        return 0 if block is None else int(block.counts[wavelength % PIXEL_BLOCK_SIZE])

    def get_composite(self) -> CompositeSpectrum:
        if self.wavelength_lo is None or self.wavelength_hi is None:
            return CompositeSpectrum(())
        return CompositeSpectrum(
            tuple(summarise_pixel(wl, self.samples(wl)) for wl in range(self.wavelength_lo, self.wavelength_hi + 1))
        )
