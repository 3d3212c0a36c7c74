"""Group quasars into bins and build one composite spectrum per bin."""

from __future__ import annotations

import logging
import math
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Tuple

from sdss_composites.accumulator import AccumulatorSpectrum
from sdss_composites.catalog import good_quasars, load_catalog
from sdss_composites.config import PipelineConfig
from sdss_composites.intermediate import IntermediateSpectrum
from sdss_composites.models import BinnedComposite, CompositeSpectrum, Quasar
from sdss_composites.output import write_binned_composites, write_composites_zarr
from sdss_composites.store import SpectrumStoreReader

logger = logging.getLogger(__name__)

BinningFn = Callable[[Quasar], float]


def binning(bin_size: float, selector: Callable[[Quasar], float], centre: bool = False) -> BinningFn:
    """Return a function mapping a quasar to the lower edge of its bin.

    With ``centre`` the value is rounded to the nearest multiple of
    ``bin_size`` instead of floored.
    """

    if centre:
        return lambda q: round(selector(q) / bin_size) * bin_size
    return lambda q: math.floor(selector(q) / bin_size) * bin_size


def redshift_binning(bin_size: float = 0.2) -> BinningFn:
    return binning(bin_size, lambda q: q.redshift)


def luminosity_binning(bin_size: float = 0.5) -> BinningFn:
    return binning(bin_size, lambda q: q.abs_magnitude)


def group_by_bin(quasars: Iterable[Quasar], binning_fn: BinningFn) -> Dict[float, List[Quasar]]:
    """Group quasars by bin key, keys ascending and each bin sorted by object id."""

    groups: Dict[float, List[Quasar]] = {}
    for q in quasars:
        groups.setdefault(binning_fn(q), []).append(q)
    return {key: sorted(groups[key], key=lambda q: q.obj_id) for key in sorted(groups)}


def _process_bin(
    quasars: List[Quasar],
    reader: SpectrumStoreReader,
    *,
    key: float | None = None,
    progress_every: int = 100,
) -> Tuple[AccumulatorSpectrum, int, int]:
    acc = AccumulatorSpectrum()
    missing = 0
    unnormalised = 0
    ordered = sorted(quasars, key=lambda q: q.obj_id)
    if not ordered:
        return acc, missing, unnormalised

    logger.info("Bin start", extra={"key": key, "size": len(ordered)})
    for n, q in enumerate(ordered, start=1):
        if progress_every and n % progress_every == 0:
            logger.info("Bin progress", extra={"key": key, "done": n, "total": len(ordered)})
        spectrum = reader.get(q.obj_id)
        if spectrum is None:
            missing += 1
            continue
        ispec = IntermediateSpectrum.from_spectrum(spectrum, q.redshift)
        if ispec.normalise(q.redshift):
            acc.combine(ispec)
        else:
            unnormalised += 1

    if missing or unnormalised:
        logger.warning("Bin skipped spectra", extra={"key": key, "missing": missing, "unnormalised": unnormalised})
    return acc, missing, unnormalised


def process_binned_spectra(
    quasars: List[Quasar],
    reader: SpectrumStoreReader,
    *,
    progress_every: int = 100,
) -> CompositeSpectrum:
    """Shift, rebin, normalise and combine the spectra of one bin.

    Quasars are processed in ascending id order. Quasars without a stored
    spectrum or outside every normalisation window are skipped.
    """

    acc, _, _ = _process_bin(quasars, reader, progress_every=progress_every)
    return acc.get_composite()


def composite_by(
    quasars: Iterable[Quasar],
    reader: SpectrumStoreReader,
    binning_fn: BinningFn,
    label: str,
    *,
    progress_every: int = 100,
) -> List[BinnedComposite]:
    """Build one composite per bin, in ascending bin order."""

    groups = group_by_bin(quasars, binning_fn)
    for key, members in groups.items():
        logger.info("Bin size", extra={"label": label, "key": key, "size": len(members)})

    results: List[BinnedComposite] = []
    for key, members in groups.items():
        acc, missing, unnormalised = _process_bin(members, reader, key=key, progress_every=progress_every)
        results.append(
            BinnedComposite(
                key=key,
                composite=acc.get_composite(),
                quasars=len(members),
                combined=acc.contributors,
                missing=missing,
                unnormalised=unnormalised,
            )
        )
    logger.info("Composites complete", extra={"label": label, "bins": len(results)})
    return results


def run_composites(config: PipelineConfig) -> Dict[str, List[BinnedComposite]]:
    """Build and write the composites of every scheme in ``config``.

    Each scheme is written as ``{prefix}{key}.csv`` files in the output
    directory and, with ``write_zarr``, as ``{prefix}_composites.zarr``.
    """

    quasars = good_quasars(load_catalog(config.catalog_path))
    out_dir = Path(config.output_dir)
    out_dir.mkdir(parents=True, exist_ok=True)

    results: Dict[str, List[BinnedComposite]] = {}
    with SpectrumStoreReader(config.store_path, buffer_size=config.buffer_size) as reader:
        for scheme in config.schemes:
            logger.info("Begin composites", extra={"label": scheme.prefix, "bin_size": scheme.bin_size})
            binned = composite_by(
                quasars,
                reader,
                binning(scheme.bin_size, scheme.selector()),
                scheme.prefix,
                progress_every=config.progress_every,
            )
            write_binned_composites(binned, out_dir, scheme.prefix)
            if config.write_zarr:
                write_composites_zarr(
                    binned,
                    out_dir / f"{scheme.prefix}_composites.zarr",
                    prefix=scheme.prefix,
                    overwrite=config.overwrite,
                )
            results[scheme.prefix] = binned
    return results
