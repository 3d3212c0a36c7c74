#!/usr/bin/env python3
"""Pack the SDSS spec files of all good DR10Q quasars into a spectrum store."""

from __future__ import annotations

import sys

from sdss_composites.cli import run_cli


def main() -> int:
    return run_cli(["build-store", *sys.argv[1:]], description=__doc__ or "")


if __name__ == "__main__":
    raise SystemExit(main())
