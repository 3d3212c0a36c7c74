import tempfile
import unittest
from pathlib import Path

import numpy as np

try:
    from astropy.io import fits  # type: ignore
except Exception:  # pragma: no cover
    fits = None  # type: ignore

from sdss_composites.catalog import (
    BAD_OBJECT_ID,
    CatalogError,
    good_quasars,
    iau_name,
    load_catalog,
    spec_file_name,
)
from sdss_composites.models import Quasar


def write_catalog(path: Path, rows: list[dict]) -> None:
    n = len(rows)
    cols = [
        fits.Column(name="OBJ_ID", format="K", array=np.array([r["obj_id"] for r in rows], dtype=np.int64)),  # type: ignore[union-attr]
        fits.Column(name="RA", format="D", array=np.array([r.get("ra", 10.0) for r in rows])),  # type: ignore[union-attr]
        fits.Column(name="DEC", format="D", array=np.array([r.get("dec", -5.0) for r in rows])),  # type: ignore[union-attr]
        fits.Column(name="Z_VI", format="D", array=np.array([r["z"] for r in rows])),  # type: ignore[union-attr]
        fits.Column(name="MI", format="D", array=np.array([r.get("mi", -25.0) for r in rows])),  # type: ignore[union-attr]
        fits.Column(name="BAL_FLAG_VI", format="I", array=np.array([r.get("bal", 0) for r in rows], dtype=np.int16)),  # type: ignore[union-attr]
        fits.Column(name="PSFMAG", format="5E", array=np.tile([20.0, 19.5, 19.0, 18.5, 18.0], (n, 1))),  # type: ignore[union-attr]
        fits.Column(name="EXTINCTION", format="5E", array=np.tile([0.5, 0.4, 0.3, 0.2, 0.1], (n, 1))),  # type: ignore[union-attr]
        fits.Column(name="PLATE", format="J", array=np.array([r.get("plate", 266) for r in rows], dtype=np.int32)),  # type: ignore[union-attr]
        fits.Column(name="MJD", format="J", array=np.array([r.get("mjd", 51602) for r in rows], dtype=np.int32)),  # type: ignore[union-attr]
        fits.Column(name="FIBERID", format="J", array=np.array([r.get("fiber", 1) for r in rows], dtype=np.int32)),  # type: ignore[union-attr]
    ]
    hdus = [fits.PrimaryHDU(), fits.BinTableHDU.from_columns(cols)]  # type: ignore[union-attr]
    fits.HDUList(hdus).writeto(path)  # type: ignore[union-attr]


class TestNaming(unittest.TestCase):
    def test_spec_file_name_is_zero_padded(self) -> None:
        self.assertEqual(spec_file_name(266, 51602, 1), "0266/spec-0266-51602-0001.fits")
        self.assertEqual(spec_file_name(10000, 57000, 999), "10000/spec-10000-57000-0999.fits")

    def test_iau_name_truncates_seconds(self) -> None:
        ra = 15 * (1 + 2 / 60 + 3.456 / 3600)
        dec = -(12 + 34 / 60 + 56.78 / 3600)
        self.assertEqual(iau_name(ra, dec), "SDSS J010203.45-123456.7")

    def test_iau_name_positive_declination(self) -> None:
        self.assertEqual(iau_name(0.0, 0.0), "SDSS J000000.00+000000.0")


class TestGoodQuasars(unittest.TestCase):
    def test_bal_and_bad_object_are_excluded(self) -> None:
        quasars = [
            Quasar(obj_id=1, redshift=1.0, abs_magnitude=-25.0),
            Quasar(obj_id=2, redshift=1.0, abs_magnitude=-25.0, bal=True),
            Quasar(obj_id=BAD_OBJECT_ID, redshift=1.0, abs_magnitude=0.0),
        ]
        self.assertEqual([q.obj_id for q in good_quasars(quasars)], [1])


class TestLoadCatalog(unittest.TestCase):
    def setUp(self) -> None:
        if fits is None:
            self.skipTest("astropy not installed")

    def test_rows_become_quasars(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "DR10Q.fits"
            write_catalog(
                path,
                [
                    {"obj_id": 1237651801769836000, "z": 1.5, "mi": -26.1, "plate": 3586, "mjd": 55181, "fiber": 10},
                    {"obj_id": 42, "z": 0.3, "bal": 1},
                ],
            )
            quasars = load_catalog(path)

        self.assertEqual(len(quasars), 2)
        q = quasars[0]
        self.assertEqual(q.obj_id, 1237651801769836000)
        self.assertAlmostEqual(q.redshift, 1.5)
        self.assertAlmostEqual(q.abs_magnitude, -26.1)
        self.assertAlmostEqual(q.psf_mag_i, 18.5)
        self.assertAlmostEqual(q.extinction_i, 0.2, places=6)
        self.assertEqual((q.plate, q.mjd, q.fiber), (3586, 55181, 10))
        self.assertFalse(q.bal)
        self.assertTrue(quasars[1].bal)

    def test_missing_columns_raise(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "bad.fits"
            cols = [fits.Column(name="OBJ_ID", format="K", array=np.array([1], dtype=np.int64))]  # type: ignore[union-attr]
            fits.HDUList([fits.PrimaryHDU(), fits.BinTableHDU.from_columns(cols)]).writeto(path)  # type: ignore[union-attr]
            with self.assertRaises(CatalogError):
                load_catalog(path)


if __name__ == "__main__":
    unittest.main()
