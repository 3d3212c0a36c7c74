"""SDSS quasar composite spectra utilities."""

from sdss_composites.accumulator import AccumulatorSpectrum
from sdss_composites.binning import composite_by, luminosity_binning, process_binned_spectra, redshift_binning
from sdss_composites.intermediate import IntermediateSpectrum
from sdss_composites.models import BinnedComposite, CompositePixel, CompositeSpectrum, FullSpectrum, LiteSpectrum, Quasar
from sdss_composites.normalisation import NORMALISATION_RANGES, get_normalisation
from sdss_composites.store import SpectrumStoreReader, SpectrumStoreWriter

__all__ = [
    "AccumulatorSpectrum",
    "BinnedComposite",
    "CompositePixel",
    "CompositeSpectrum",
    "FullSpectrum",
    "IntermediateSpectrum",
    "LiteSpectrum",
    "NORMALISATION_RANGES",
    "Quasar",
    "SpectrumStoreReader",
    "SpectrumStoreWriter",
    "composite_by",
    "get_normalisation",
    "luminosity_binning",
    "process_binned_spectra",
    "redshift_binning",
]
