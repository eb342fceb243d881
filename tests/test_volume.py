import unittest
from datetime import date

import numpy as np
import pandas as pd

from mesozoo.errors import ConfigError
from mesozoo.volume import attach_volume_reference, normalize_per_litre, per_litre_factor, volume_reference

DAY_MAP = {4: 1, 9: 2, 18: 3, 31: 4}
START = date(2022, 6, 20)


class TestPerLitre(unittest.TestCase):
    def test_factor(self):
        self.assertAlmostEqual(per_litre_factor(320.0), 3.125)
        self.assertAlmostEqual(per_litre_factor(1000.0), 1.0)
        with self.assertRaises(ConfigError):
            per_litre_factor(0)

    def test_normalize(self):
        samples = pd.DataFrame({"mesocosm": [1, 2], "daphnia": [10, 0], "nauplii": [3, 1]})
        out = normalize_per_litre(samples, 320.0, taxa=["daphnia", "nauplii"])
        self.assertAlmostEqual(out.loc[0, "daphnia"], 31.25)
        self.assertAlmostEqual(out.loc[1, "nauplii"], 3.125)
        self.assertEqual(out.loc[1, "daphnia"], 0.0)
        # input untouched
        self.assertEqual(samples.loc[0, "daphnia"], 10)


class TestVolumeReference(unittest.TestCase):
    def test_interpolated_between_measurements(self):
        volumes = pd.DataFrame({
            "date": pd.to_datetime(["2022-06-24", "2022-06-24", "2022-07-08"]),
            "mesocosm": [51, 53, 52],
            "volume_l": [100.0, 110.0, 95.0],
        })
        ref = volume_reference(volumes, START, DAY_MAP)
        self.assertEqual(ref.name, "volume_ref_l")
        self.assertAlmostEqual(ref[1], 105.0)
        self.assertAlmostEqual(ref[2], 105.0 - 10.0 * 5 / 14)
        self.assertAlmostEqual(ref[3], 95.0)
        # past the last measurement: nearest value
        self.assertAlmostEqual(ref[4], 95.0)

    def test_no_measurements(self):
        ref = volume_reference(None, START, DAY_MAP)
        self.assertEqual(list(ref.index), [1, 2, 3, 4])
        self.assertTrue(ref.isna().all())

    def test_attach(self):
        ref = pd.Series([1.0, 2.0, 3.0, 4.0], index=[1, 2, 3, 4], name="volume_ref_l")
        samples = pd.DataFrame({"mesocosm": [1, 1], "timepoint": [2, 4], "daphnia": [5.0, 6.0]})
        out = attach_volume_reference(samples, ref)
        np.testing.assert_allclose(out["volume_ref_l"], [2.0, 4.0])
        # abundances are not rescaled by the reference volume
        np.testing.assert_allclose(out["daphnia"], [5.0, 6.0])


if __name__ == "__main__":
    unittest.main()
