"""Continuum windows used to scale quasar spectra to a common flux level.

Each window is a quiet stretch of rest-frame continuum free of strong emission
lines. A window can only be used for a quasar whose redshift moves it inside
the useful observed range of the spectrograph, so the valid redshift interval
of a window is ``3700 / start - 1`` to ``10000 / end - 1``.
"""

from __future__ import annotations

import csv
import logging
import math
import os
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np

from sdss_composites.models import MAX_USEFUL_WAVELENGTH, MIN_USEFUL_WAVELENGTH, Quasar

if TYPE_CHECKING:
    from sdss_composites.intermediate import IntermediateSpectrum
    from sdss_composites.store import SpectrumStoreReader

logger = logging.getLogger(__name__)

# Sentinel average for a window the spectrum does not fully cover.
NO_COVERAGE = -1.0


@dataclass(frozen=True)
class NormalisationRange:
    start_wl: int
    end_wl: int
    norm_ratio: float
    norm_factor: float

    @property
    def start_z(self) -> float:
        return MIN_USEFUL_WAVELENGTH / self.start_wl - 1

    @property
    def end_z(self) -> float:
        return MAX_USEFUL_WAVELENGTH / self.end_wl - 1

    @property
    def mid_z(self) -> float:
        return (self.start_z + self.end_z) / 2

    @property
    def mid_wl(self) -> int:
        return (self.start_wl + self.end_wl) // 2

    def contains(self, z: float) -> bool:
        return self.start_z <= z <= self.end_z


def _chain(windows: Iterable[Tuple[int, int, float]], anchor: float) -> Tuple[NormalisationRange, ...]:
    """Build ranges reddest first, each factor being its ratio times the previous factor."""

    out: List[NormalisationRange] = []
    factor = anchor
    for start, end, ratio in windows:
        if out:
            factor = ratio * out[-1].norm_factor
        out.append(NormalisationRange(start, end, ratio, factor))
    return tuple(out)


NORMALISATION_RANGES: Tuple[NormalisationRange, ...] = _chain(
    [
        (5400, 5500, 1.0),
        (3500, 3650, 3.0),
        (3000, 3150, 1.5),
        (2450, 2600, 1.7),
        (1950, 2100, 1.6),
    ],
    anchor=15.0,
)


def get_normalisation(z: float) -> Optional[NormalisationRange]:
    """Return the window whose redshift midpoint is closest to ``z``.

    Only windows observable at ``z`` are considered; None means the redshift is
    too extreme for any window.
    """

    best: Optional[NormalisationRange] = None
    closest = float("inf")
    # The 5400 Angstrom reference window is a candidate too, so quasars below
    # z ~ 0.575 normalise on it rather than on 3500 Angstrom, and those below
    # z ~ 0.057 (out of reach of every other window) still get a window.
    for r in NORMALISATION_RANGES:
        if not r.contains(z):
            continue
        distance = (z - r.mid_z) ** 2
        if distance < closest:
            closest = distance
            best = r
    return best


def range_averages(ispec: "IntermediateSpectrum") -> Tuple[float, ...]:
    """Average rest-frame flux in every window, or ``NO_COVERAGE`` where not covered."""

    out: List[float] = []
    for r in NORMALISATION_RANGES:
        if ispec.wavelength_lo > r.start_wl or ispec.wavelength_hi < r.end_wl:
            out.append(NO_COVERAGE)
        else:
            out.append(ispec.average(r.start_wl, r.end_wl))
    return tuple(out)


@dataclass(frozen=True)
class QuasarAverageFlux:
    quasar: Quasar
    averages: Tuple[float, ...]


def compute_average_fluxes(
    quasars: Iterable[Quasar],
    reader: "SpectrumStoreReader",
    *,
    progress_every: int = 1000,
) -> List[QuasarAverageFlux]:
    """Average window fluxes for every catalogued quasar found in the store.

    The store is walked in ascending id order, which is the cheap access
    pattern for the reader. Results are ordered by object id.
    """

    from sdss_composites.intermediate import IntermediateSpectrum

    by_id: Dict[int, Quasar] = {q.obj_id: q for q in quasars}
    results: List[QuasarAverageFlux] = []
    logger.info("Average flux start", extra={"quasars": len(by_id), "stored": len(reader)})

    for n, obj_id in enumerate(reader.ids_in_order(), start=1):
        q = by_id.get(obj_id)
        if q is not None:
            spectrum = reader.get(obj_id)
            if spectrum is not None:
                ispec = IntermediateSpectrum.from_spectrum(spectrum, q.redshift)
                results.append(QuasarAverageFlux(quasar=q, averages=range_averages(ispec)))
        if progress_every and n % progress_every == 0:
            logger.info("Average flux progress", extra={"done": n, "total": len(reader)})

    logger.info("Average flux complete", extra={"count": len(results)})
    return results


def write_average_fluxes_csv(results: Iterable[QuasarAverageFlux], path: str | os.PathLike[str]) -> Path:
    dest = Path(path)
    dest.parent.mkdir(parents=True, exist_ok=True)
    with dest.open("w", newline="", encoding="utf-8") as f:
        writer = csv.writer(f)
        writer.writerow(["z", "mid-z", "M"] + [f"a{i + 1}" for i in range(len(NORMALISATION_RANGES))])
        for item in results:
            q = item.quasar
            nr = get_normalisation(q.redshift)
            mid_z = nr.mid_z if nr is not None else -1
            writer.writerow([q.redshift, mid_z, q.abs_magnitude, *item.averages])
    return dest


# Magnitude bin width and minimum bin population for the flux ratio table.
RATIO_BIN_SIZE = 0.2
MIN_RATIO_BIN_COUNT = 1000


@dataclass(frozen=True)
class ClippedRatio:
    """Geometric mean of flux ratios before and after 2-sigma clipping in log space.

    An empty input has ``count == 0`` and both means set to ``NO_COVERAGE``.
    """

    count: int
    mean: float
    clipped_count: int
    clipped_mean: float


@dataclass(frozen=True)
class LuminosityFluxRatios:
    """Ratios of average flux between adjacent windows for one magnitude bin.

    ``ratios[k]`` compares window ``k + 2`` with window ``k + 1``, reddest first.
    """

    magnitude: float
    count: int
    ratios: Tuple[ClippedRatio, ...]


def clipped_log_mean(ratios: Sequence[float]) -> ClippedRatio:
    """Geometric mean of ``ratios``, then again excluding values beyond 2 sigma.

    Sigma is the population standard deviation of the log ratios. When every
    ratio is equal nothing is clipped.
    """

    if len(ratios) == 0:
        return ClippedRatio(0, NO_COVERAGE, 0, NO_COVERAGE)

    logs = np.log(np.asarray(ratios, dtype=np.float64))
    avg = float(logs.mean())
    std = float(logs.std())
    kept = logs[np.abs(logs - avg) < 2 * std] if std > 0 else logs
    clipped = float(kept.mean()) if kept.size else avg
    return ClippedRatio(int(logs.size), math.exp(avg), int(kept.size), math.exp(clipped))


def flux_ratios(
    results: Iterable[QuasarAverageFlux],
    *,
    bin_size: float = RATIO_BIN_SIZE,
    min_count: int = MIN_RATIO_BIN_COUNT,
) -> List[LuminosityFluxRatios]:
    """Measure the flux step between adjacent windows per absolute magnitude bin.

    Quasars are binned by ``floor(M / bin_size) * bin_size`` and bins holding
    fewer than ``min_count`` quasars are dropped. For each pair of adjacent
    windows only quasars covering both contribute a ratio. These ratios are the
    measurements behind the chained ``norm_ratio`` values.
    """

    groups: Dict[float, List[QuasarAverageFlux]] = {}
    for item in results:
        key = round(math.floor(item.quasar.abs_magnitude / bin_size) * bin_size, 6)
        groups.setdefault(key, []).append(item)

    rows: List[LuminosityFluxRatios] = []
    for key in sorted(groups):
        members = groups[key]
        if len(members) < min_count:
            logger.debug("Ratio bin skipped", extra={"magnitude": key, "size": len(members)})
            continue
        averages = np.array([m.averages for m in members], dtype=np.float64)
        pairs = []
        for i in range(1, averages.shape[1]):
            redder, bluer = averages[:, i - 1], averages[:, i]
            usable = (redder > 0) & (bluer > 0)
            pairs.append(clipped_log_mean(bluer[usable] / redder[usable]))
        rows.append(LuminosityFluxRatios(magnitude=key, count=len(members), ratios=tuple(pairs)))

    logger.info("Flux ratios complete", extra={"bins": len(rows), "bins_seen": len(groups)})
    return rows


def write_flux_ratios_csv(rows: Iterable[LuminosityFluxRatios], path: str | os.PathLike[str]) -> Path:
    dest = Path(path)
    dest.parent.mkdir(parents=True, exist_ok=True)
    header = ["Mag", "n"]
    for k in range(2, len(NORMALISATION_RANGES) + 1):
        header += [f"in{k}", f"ir{k}", f"n{k}", f"r{k}/r{k - 1}"]
    with dest.open("w", newline="", encoding="utf-8") as f:
        writer = csv.writer(f)
        writer.writerow(header)
        for row in rows:
            out: List[object] = [row.magnitude, row.count]
            for r in row.ratios:
                if r.count == 0:
                    out += [0, -1, 0, -1]
                else:
                    out += [r.count, r.mean, r.clipped_count, r.clipped_mean]
            writer.writerow(out)
    return dest
