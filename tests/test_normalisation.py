import csv
import math
import tempfile
import unittest
from pathlib import Path

import numpy as np

from sdss_composites.intermediate import IntermediateSpectrum
from sdss_composites.models import LiteSpectrum, Quasar
from sdss_composites.normalisation import (
    NO_COVERAGE,
    NORMALISATION_RANGES,
    QuasarAverageFlux,
    clipped_log_mean,
    compute_average_fluxes,
    flux_ratios,
    get_normalisation,
    range_averages,
    write_average_fluxes_csv,
    write_flux_ratios_csv,
)
from sdss_composites.store import SpectrumStoreReader, SpectrumStoreWriter


def _flat(lo: int, hi: int, value: float) -> IntermediateSpectrum:
    ispec = IntermediateSpectrum()
    ispec._pixels[lo : hi + 1] = value
    ispec.wavelength_lo = lo
    ispec.wavelength_hi = hi
    return ispec


class TestNormalisationRanges(unittest.TestCase):
    def test_factors_are_chained_from_the_reddest_window(self) -> None:
        factors = [r.norm_factor for r in NORMALISATION_RANGES]
        np.testing.assert_allclose(factors, [15.0, 45.0, 67.5, 114.75, 183.6])
        self.assertEqual([r.start_wl for r in NORMALISATION_RANGES], [5400, 3500, 3000, 2450, 1950])

    def test_redshift_limits(self) -> None:
        r = NORMALISATION_RANGES[0]
        self.assertAlmostEqual(r.start_z, 3700 / 5400 - 1)
        self.assertAlmostEqual(r.end_z, 10000 / 5500 - 1)
        self.assertAlmostEqual(r.mid_z, (r.start_z + r.end_z) / 2)
        self.assertEqual(r.mid_wl, 5450)

    def test_closest_midpoint_is_selected(self) -> None:
        self.assertEqual(get_normalisation(0.1).start_wl, 5400)  # type: ignore[union-attr]
        self.assertEqual(get_normalisation(1.0).start_wl, 3500)  # type: ignore[union-attr]
        self.assertEqual(get_normalisation(1.25).start_wl, 3000)  # type: ignore[union-attr]
        self.assertEqual(get_normalisation(1.7).start_wl, 2450)  # type: ignore[union-attr]
        self.assertEqual(get_normalisation(2.5).start_wl, 1950)  # type: ignore[union-attr]

    def test_reference_window_serves_low_redshifts(self) -> None:
        reference, blue = NORMALISATION_RANGES[0], NORMALISATION_RANGES[1]
        self.assertGreater(0.03, reference.start_z)
        self.assertLess(0.03, blue.start_z)

        self.assertIs(get_normalisation(0.0), reference)
        self.assertIs(get_normalisation(0.03), reference)
        self.assertIs(get_normalisation(0.5), reference)
        self.assertIs(get_normalisation(0.65), blue)

    def test_extreme_redshifts_have_no_window(self) -> None:
        self.assertIsNone(get_normalisation(-0.5))
        self.assertIsNone(get_normalisation(5.0))


class TestNormalise(unittest.TestCase):
    def test_window_at_reference_level_leaves_flux_unchanged(self) -> None:
        ispec = _flat(5000, 6000, 15.0)
        before = ispec.pixels.copy()

        self.assertTrue(ispec.normalise(0.1))
        np.testing.assert_allclose(ispec.pixels, before)

    def test_window_mean_is_scaled_to_factor(self) -> None:
        ispec = _flat(3000, 4000, 2.0)

        self.assertTrue(ispec.normalise(1.0))
        self.assertAlmostEqual(ispec.average(3500, 3650), 45.0)
        self.assertAlmostEqual(ispec.pixel(3100), 45.0)

    def test_failure_leaves_array_untouched(self) -> None:
        ispec = _flat(1000, 2000, 3.0)
        before = ispec.pixels.copy()

        self.assertFalse(ispec.normalise(5.0))
        np.testing.assert_array_equal(ispec.pixels, before)

    def test_zero_window_mean_makes_spectrum_nan(self) -> None:
        ispec = _flat(6000, 7000, 4.0)

        self.assertTrue(ispec.normalise(0.1))
        self.assertTrue(np.isnan(ispec.pixels).all())


class TestRangeAverages(unittest.TestCase):
    def test_uncovered_windows_get_sentinel(self) -> None:
        averages = range_averages(_flat(5000, 6000, 2.0))

        self.assertEqual(len(averages), len(NORMALISATION_RANGES))
        self.assertAlmostEqual(averages[0], 2.0)
        self.assertEqual(list(averages[1:]), [NO_COVERAGE] * 4)

    def test_partially_covered_window_gets_sentinel(self) -> None:
        averages = range_averages(_flat(5450, 6000, 2.0))
        self.assertEqual(averages[0], NO_COVERAGE)

    def test_compute_and_write_average_fluxes(self) -> None:
        loglam = np.log10(5000.5 + np.arange(2000)).astype(np.float32)
        spectra = [LiteSpectrum(obj_id=i, flux=np.full(2000, float(i), dtype=np.float32), loglam=loglam) for i in (3, 1)]
        quasars = [
            Quasar(obj_id=1, redshift=0.0, abs_magnitude=-24.0),
            Quasar(obj_id=3, redshift=0.0, abs_magnitude=-25.0),
            Quasar(obj_id=9, redshift=0.0, abs_magnitude=-26.0),
        ]
        with tempfile.TemporaryDirectory() as tmp:
            store = Path(tmp) / "lite.bin"
            with SpectrumStoreWriter(store, lite=True) as writer:
                for s in spectra:
                    writer.add(s)
            with SpectrumStoreReader(store) as reader:
                results = compute_average_fluxes(quasars, reader)

            self.assertEqual([r.quasar.obj_id for r in results], [1, 3])
            self.assertIsInstance(results[0], QuasarAverageFlux)
            self.assertAlmostEqual(results[0].averages[0], 1.0, places=3)
            self.assertAlmostEqual(results[1].averages[0], 3.0, places=3)
            self.assertEqual(results[0].averages[1], NO_COVERAGE)

            out = write_average_fluxes_csv(results, Path(tmp) / "nested" / "avg.csv")
            with out.open(newline="") as f:
                rows = list(csv.reader(f))

        self.assertEqual(rows[0], ["z", "mid-z", "M", "a1", "a2", "a3", "a4", "a5"])
        self.assertEqual(len(rows), 3)
        self.assertEqual(float(rows[1][2]), -24.0)
        self.assertAlmostEqual(float(rows[1][1]), NORMALISATION_RANGES[0].mid_z)


def _averages(obj_id: int, m: float, a1: float, a2: float) -> QuasarAverageFlux:
    quasar = Quasar(obj_id=obj_id, redshift=0.2, abs_magnitude=m)
    return QuasarAverageFlux(quasar=quasar, averages=(a1, a2, NO_COVERAGE, NO_COVERAGE, NO_COVERAGE))


class TestFluxRatios(unittest.TestCase):
    def test_outlier_is_clipped_from_the_log_mean(self) -> None:
        r = clipped_log_mean([2.0] * 9 + [200.0])

        self.assertEqual(r.count, 10)
        self.assertAlmostEqual(r.mean, 2.0 * 100 ** 0.1)
        self.assertEqual(r.clipped_count, 9)
        self.assertAlmostEqual(r.clipped_mean, 2.0)

    def test_identical_ratios_are_all_kept(self) -> None:
        r = clipped_log_mean([3.0, 3.0, 3.0])
        self.assertEqual((r.count, r.clipped_count), (3, 3))
        self.assertAlmostEqual(r.clipped_mean, 3.0)

    def test_no_ratios_gives_sentinel(self) -> None:
        r = clipped_log_mean([])
        self.assertEqual((r.count, r.mean, r.clipped_count, r.clipped_mean), (0, NO_COVERAGE, 0, NO_COVERAGE))

    def test_bins_by_magnitude_and_skips_small_bins(self) -> None:
        results = [_averages(i, -25.1, 1.0, 2.0) for i in range(9)]
        results.append(_averages(9, -25.1, 1.0, 200.0))
        results.append(_averages(10, -25.05, NO_COVERAGE, 5.0))
        results.append(_averages(11, -23.0, 1.0, 3.0))

        rows = flux_ratios(results, min_count=5)

        self.assertEqual(len(rows), 1)
        row = rows[0]
        self.assertAlmostEqual(row.magnitude, -25.2)
        self.assertEqual(row.count, 11)
        self.assertEqual(len(row.ratios), len(NORMALISATION_RANGES) - 1)
        # The quasar without the reddest window gives no ratio.
        self.assertEqual((row.ratios[0].count, row.ratios[0].clipped_count), (10, 9))
        self.assertAlmostEqual(row.ratios[0].clipped_mean, 2.0)
        self.assertEqual(row.ratios[1].count, 0)

    def test_ratio_csv_layout(self) -> None:
        rows = flux_ratios([_averages(i, -24.5, 1.0, 1.5) for i in range(3)], min_count=1)
        with tempfile.TemporaryDirectory() as tmp:
            out = write_flux_ratios_csv(rows, Path(tmp) / "ratios.csv")
            with out.open(newline="") as f:
                lines = list(csv.reader(f))

        self.assertEqual(
            lines[0],
            ["Mag", "n", "in2", "ir2", "n2", "r2/r1", "in3", "ir3", "n3", "r3/r2",
             "in4", "ir4", "n4", "r4/r3", "in5", "ir5", "n5", "r5/r4"],
        )
        self.assertEqual(len(lines), 2)
        self.assertEqual(float(lines[1][0]), -24.6)
        self.assertEqual(lines[1][1:3], ["3", "3"])
        self.assertTrue(math.isclose(float(lines[1][5]), 1.5))
        self.assertEqual(lines[1][6:10], ["0", "-1", "0", "-1"])


if __name__ == "__main__":
    unittest.main()
