#!/usr/bin/env python3
"""Build composite quasar spectra in absolute magnitude bins of width 0.5."""

from __future__ import annotations

import sys

from sdss_composites.cli import run_cli
from sdss_composites.config import LUMINOSITY_SCHEME


def main() -> int:
    return run_cli(["composites", *sys.argv[1:], "--scheme", LUMINOSITY_SCHEME.prefix], description=__doc__ or "")


if __name__ == "__main__":
    raise SystemExit(main())
