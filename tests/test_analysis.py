import os
import tempfile
import unittest

import numpy as np
import pandas as pd

from fixtures import synthetic_table
from mesozoo.analysis import (
    _pingouin_column,
    adjust_pvalues,
    bray_curtis,
    cotolerance,
    drop_empty_samples,
    factor_for_timepoint,
    hellinger,
    log_response_ratios,
    mixed_model,
    permanova_test,
    rda_summary,
    run_analyses,
    simper,
)
from mesozoo.config import AnalysisConfig
from mesozoo.taxonomy import CANONICAL_TAXA, RICHNESS_TAXA


class TestTransforms(unittest.TestCase):
    def test_hellinger(self):
        m = pd.DataFrame({"a": [1.0, 0.0], "b": [3.0, 0.0]})
        h = hellinger(m)
        np.testing.assert_allclose(h.iloc[0], [0.5, np.sqrt(0.75)])
        np.testing.assert_allclose(h.iloc[1], [0.0, 0.0])

    def test_drop_empty_and_bray_curtis(self):
        table = synthetic_table(replicates=1).iloc[:4].copy()
        table.loc[table.index[0], list(CANONICAL_TAXA)] = 0.0
        kept = drop_empty_samples(table)
        self.assertEqual(len(kept), 3)
        dm = bray_curtis(kept)
        self.assertEqual(dm.shape, (3, 3))
        self.assertEqual(dm.ids[0], f"M{kept.iloc[0]['mesocosm']}_t{kept.iloc[0]['timepoint']}")
        self.assertTrue(np.all(dm.data >= 0) and np.all(dm.data <= 1))


class TestCompositionTests(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        cls.table = synthetic_table(replicates=2, seed=1)

    def test_permanova(self):
        res = permanova_test(self.table, "treatment_p1", timepoint=1, permutations=99, seed=3)
        self.assertEqual(res["n"], 32)
        self.assertEqual(res["groups"], 4)
        self.assertGreater(res["pseudo_f"], 0)
        for key in ("p_value", "permdisp_p"):
            self.assertGreater(res[key], 0)
            self.assertLessEqual(res[key], 1)

    def test_permanova_reproducible(self):
        a = permanova_test(self.table, "treatment", timepoint=3, permutations=99, seed=7)
        b = permanova_test(self.table, "treatment", timepoint=3, permutations=99, seed=7)
        self.assertEqual(a, b)

    def test_rda(self):
        summary, scores = rda_summary(self.table, "treatment_p1", timepoint=1, permutations=49, seed=0)
        self.assertEqual(summary["n"], 32)
        self.assertEqual(summary["rank"], 3)
        self.assertGreater(summary["r2"], 0)
        self.assertLess(summary["r2"], 1)
        self.assertLess(summary["r2_adj"], summary["r2"])
        self.assertEqual(len(scores), 32)
        for col in ("sample", "RDA1", "RDA2", "mesocosm", "timepoint", "treatment_p1"):
            self.assertIn(col, scores.columns)

    def test_rda_r2_covers_all_constrained_axes(self):
        table = self.table[self.table["timepoint"] == 1].copy()
        profiles = {
            "Control": [8, 4, 2, 1, 3, 2, 10, 5, 12, 20, 15, 6, 9, 3, 4, 2],
            "Insecticide": [0, 0, 0, 0, 0, 0, 10, 5, 12, 20, 15, 6, 9, 3, 4, 2],
            "Nutrient": [8, 4, 2, 1, 3, 2, 10, 5, 12, 60, 45, 18, 27, 9, 12, 2],
            "Both": [1, 0, 0, 0, 0, 0, 10, 5, 12, 60, 45, 18, 27, 9, 12, 2],
        }
        for level, profile in profiles.items():
            rows = table["treatment_p1"].astype(str) == level
            table.loc[rows, list(RICHNESS_TAXA)] = np.array(profile, dtype=float)
        noise = np.random.default_rng(0).uniform(0, 0.05, size=(len(table), len(RICHNESS_TAXA)))
        table.loc[:, list(RICHNESS_TAXA)] += noise
        summary, _ = rda_summary(table, "treatment_p1", permutations=19, seed=0)
        # near-identical communities within each group leave almost nothing unexplained
        self.assertGreater(summary["r2"], 0.95)
        self.assertLessEqual(summary["rda1_share"], summary["r2"] + 1e-9)
        self.assertLessEqual(summary["rda1_share"] + summary["rda2_share"], summary["r2"] + 1e-9)
        self.assertGreaterEqual(summary["rda2_share"], 0)

    def test_simper(self):
        sub = self.table[self.table["timepoint"] == 1]
        res = simper(sub, "treatment_p1", "Control", "Insecticide")
        self.assertEqual(len(res), len(RICHNESS_TAXA))
        self.assertAlmostEqual(res["pct_contribution"].sum(), 100.0)
        self.assertAlmostEqual(res["cumulative_pct"].iloc[-1], 100.0)
        self.assertTrue(res["avg_contribution"].is_monotonic_decreasing)
        self.assertEqual(set(res["group_b"]), {"Insecticide"})

    def test_simper_needs_both_groups(self):
        sub = self.table[self.table["treatment_p1"].astype(str) == "Control"]
        with self.assertRaises(ValueError):
            simper(sub, "treatment_p1", "Control", "Nutrient")


class TestModels(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        cls.table = synthetic_table(replicates=2, seed=2)

    def test_recovery_model(self):
        res = mixed_model(self.table, "total_abundance", "recovery", [1, 2])
        self.assertIn("Intercept", list(res["term"]))
        self.assertTrue(any("Insecticide" in t and "timepoint" in t for t in res["term"]))
        self.assertEqual(res["n_obs"].iloc[0], 64)
        self.assertEqual(set(res["hypothesis"]), {"recovery"})

    def test_memory_model(self):
        res = mixed_model(self.table, "richness", "memory", [3, 4])
        self.assertTrue(any("treatment_p1" in t and "treatment_p2" in t for t in res["term"]))
        self.assertEqual(res["n_obs"].iloc[0], 64)

    def test_control_is_the_reference_level(self):
        for hypothesis, tps in (("recovery", [1, 2]), ("memory", [3, 4])):
            res = mixed_model(self.table, "hill_shannon", hypothesis, tps)
            self.assertFalse(any("[T.Control]" in t for t in res["term"]))
            self.assertTrue(any("[T.Insecticide]" in t for t in res["term"]))
            self.assertTrue(any("[T.Both]" in t for t in res["term"]))

    def test_unknown_hypothesis(self):
        with self.assertRaises(ValueError):
            mixed_model(self.table, "richness", "legacy", [1, 2])

    def test_adjust_pvalues(self):
        results = pd.DataFrame({
            "hypothesis": ["recovery"] * 3 + ["memory"] * 2,
            "term": ["Intercept", "a", "b", "Intercept", "c"],
            "p_value": [0.0001, 0.01, 0.04, 0.0001, 0.03],
        })
        out = adjust_pvalues(results)
        self.assertTrue(np.isnan(out.loc[0, "p_adj"]))
        self.assertAlmostEqual(out.loc[1, "p_adj"], 0.02)
        self.assertAlmostEqual(out.loc[2, "p_adj"], 0.04)
        self.assertAlmostEqual(out.loc[4, "p_adj"], 0.03)

    def test_factor_for_timepoint(self):
        cfg = AnalysisConfig()
        self.assertEqual(factor_for_timepoint(1, cfg), "treatment_p1")
        self.assertEqual(factor_for_timepoint(4, cfg), "treatment")


class TestCotolerance(unittest.TestCase):
    def test_log_response_ratios(self):
        rows = []
        for level, daphnia, keratella in (("Control", 9.0, 4.0), ("Insecticide", 0.0, 4.0),
                                          ("Nutrient", 9.0, 9.0), ("Both", 0.0, 9.0)):
            row = {t: 0.0 for t in CANONICAL_TAXA}
            row.update({"timepoint": 1, "treatment_p1": level, "daphnia": daphnia, "keratella_quadrata": keratella})
            rows.append(row)
        lrr = log_response_ratios(pd.DataFrame(rows), 1).set_index("taxon")
        # taxa absent under every treatment are skipped
        self.assertEqual(sorted(lrr.index), ["daphnia", "keratella_quadrata"])
        self.assertAlmostEqual(lrr.loc["daphnia", "lrr_insecticide"], np.log(1 / 10))
        self.assertAlmostEqual(lrr.loc["daphnia", "lrr_nutrient"], 0.0)
        self.assertAlmostEqual(lrr.loc["keratella_quadrata", "lrr_nutrient"], np.log(10 / 5))

    def test_pingouin_column_names(self):
        new = pd.DataFrame({"n": [5], "r": [0.3], "CI95": [[-0.5, 0.8]], "p_val": [0.6]})
        old = pd.DataFrame({"n": [5], "r": [0.3], "CI95%": [[-0.5, 0.8]], "p-val": [0.6]})
        self.assertEqual(_pingouin_column(new, "p-val", "p_val"), "p_val")
        self.assertEqual(_pingouin_column(old, "p-val", "p_val"), "p-val")
        self.assertEqual(_pingouin_column(new, "CI95%", "CI95"), "CI95")
        with self.assertRaises(KeyError):
            _pingouin_column(new, "pval")

    def test_cotolerance(self):
        summary, lrr = cotolerance(synthetic_table(replicates=2, seed=4), 1)
        self.assertEqual(summary["n_taxa"], len(lrr))
        self.assertGreaterEqual(summary["rho"], -1)
        self.assertLessEqual(summary["rho"], 1)
        self.assertIn("p_value", summary)


class TestRunAnalyses(unittest.TestCase):
    def test_writes_every_table(self):
        cfg = AnalysisConfig(permutations=19, responses=["total_abundance", "hill_shannon"],
                             ordination_timepoints=[1, 3])
        with tempfile.TemporaryDirectory() as tmp:
            out_dir = os.path.join(tmp, "analysis")
            results = run_analyses(synthetic_table(replicates=2, seed=5), cfg, out_dir)
            for name in ("mixed_models", "permanova", "rda", "rda_scores", "simper",
                         "cotolerance", "cotolerance_taxa"):
                self.assertIn(name, results)
                self.assertTrue(os.path.isfile(os.path.join(out_dir, f"{name}.csv")))
            models = results["mixed_models"]
            self.assertEqual(set(models["hypothesis"]), {"recovery", "memory"})
            self.assertTrue(models.loc[models["term"] == "Intercept", "p_adj"].isna().all())
            self.assertEqual(sorted(results["permanova"]["timepoint"]), [1, 3])
            self.assertEqual(list(results["permanova"]["factor"]), ["treatment_p1", "treatment"])

    def test_failed_test_does_not_stop_the_rest(self):
        cfg = AnalysisConfig(permutations=9, responses=["no_such_metric", "richness"],
                             ordination_timepoints=[1])
        with tempfile.TemporaryDirectory() as tmp:
            with self.assertLogs("mesozoo.analysis", level="ERROR") as logs:
                results = run_analyses(synthetic_table(replicates=2, seed=6), cfg, tmp)
            self.assertTrue(any("no_such_metric" in line for line in logs.output))
            self.assertEqual(set(results["mixed_models"]["response"]), {"richness"})
            for name in ("permanova", "rda", "cotolerance"):
                self.assertTrue(os.path.isfile(os.path.join(tmp, f"{name}.csv")))


if __name__ == "__main__":
    unittest.main()
