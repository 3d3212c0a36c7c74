"""Run configuration for the composite pipeline."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict

from sdss_composites.models import Quasar
from sdss_composites.store import DEFAULT_BUFFER_SIZE

_QUANTITIES: Dict[str, Callable[[Quasar], float]] = {
    "M": lambda q: q.abs_magnitude,
    "z": lambda q: q.redshift,
}


@dataclass(frozen=True)
class BinningScheme:
    """A binned composite run: output prefix, bin width and the binned quantity."""

    prefix: str
    bin_size: float
    quantity: str

    def __post_init__(self) -> None:
        if self.quantity not in _QUANTITIES:
            raise ValueError(f"Unknown binning quantity {self.quantity!r}; expected one of {sorted(_QUANTITIES)}")
        if not self.bin_size > 0:
            raise ValueError(f"Bin size must be positive, got {self.bin_size}")

    def selector(self) -> Callable[[Quasar], float]:
        return _QUANTITIES[self.quantity]


LUMINOSITY_SCHEME = BinningScheme(prefix="M", bin_size=0.5, quantity="M")
REDSHIFT_SCHEME = BinningScheme(prefix="z", bin_size=0.2, quantity="z")
DEFAULT_SCHEMES = (LUMINOSITY_SCHEME, REDSHIFT_SCHEME)


@dataclass(frozen=True)
class PipelineConfig:
    store_path: Path
    catalog_path: Path
    output_dir: Path
    buffer_size: int = DEFAULT_BUFFER_SIZE
    progress_every: int = 100
    schemes: tuple[BinningScheme, ...] = DEFAULT_SCHEMES
    write_zarr: bool = False
    overwrite: bool = False
