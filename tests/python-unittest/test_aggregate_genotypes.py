import pathlib
import sys
import unittest

import numpy as np
import pandas as pd

project_root = pathlib.Path(__file__).parent.parent.parent
sys.path.insert(0, str(project_root / "bin"))
import aggregate_genotypes
from aggregate_genotypes import FilterLevel

UNIVERSE = ["AAAA", "BBBB", "CCCC", "DDDD", "EEEE"]
# barcode, call, match class, WT+MUT reads
OBSERVATIONS = [
    ("AAAA", "WT", "Exact", 5),
    ("AAAA", "WT", "Exact", 20),
    ("BBBB", "WT", "OtherGene", 100),
    ("BBBB", "WT", "OtherGene", 100),
    ("BBBB", "WT", "OtherGene", 100),
    ("BBBB", "MUT", "Exact", 30),
    ("CCCC", "WT", "NoGene", 50),
    ("CCCC", "MUT", "NoGene", 5),
    ("CCCC", "AMB", "Approx", 2),
    ("EEEE", "MUT", "OtherGene", 40),
]


def make_observations():
    return pd.DataFrame(
        OBSERVATIONS, columns=["barcode", "call", "match_class", "total_dups_wt_mut"]
    )


class SummarizeGenotypesTest(unittest.TestCase):
    def setUp(self):
        self.observations = make_observations()
        self.summary = aggregate_genotypes.summarize_genotypes(
            self.observations, UNIVERSE, threshold=10
        )

    def cell(self, barcode, level, column):
        return self.summary.loc[barcode, f"{level.value}.{column}"]

    def assert_counts(self, barcode, level, genotype, wt, mut, amb):
        self.assertEqual(self.cell(barcode, level, "genotype"), genotype)
        self.assertEqual(self.cell(barcode, level, "WT.calls"), wt)
        self.assertEqual(self.cell(barcode, level, "MUT.calls"), mut)
        self.assertEqual(self.cell(barcode, level, "amb.calls"), amb)
        self.assertEqual(self.cell(barcode, level, "total.calls"), wt + mut + amb)

    def test_universe(self):
        self.assertEqual(list(self.summary.index), UNIVERSE)
        self.assertEqual(self.summary.index.name, "barcode")

    def test_exact_only(self):
        for level in FilterLevel:
            self.assert_counts("AAAA", level, "WT", 2, 0, 0)

    def test_other_gene_dropped(self):
        self.assert_counts("BBBB", FilterLevel.UNFILTERED, "MUT", 3, 1, 0)
        self.assert_counts("BBBB", FilterLevel.GENE_FILTERED, "MUT", 0, 1, 0)
        self.assert_counts("BBBB", FilterLevel.THRESHOLD_FILTERED, "MUT", 0, 1, 0)

    def test_threshold(self):
        self.assert_counts("CCCC", FilterLevel.UNFILTERED, "MUT", 1, 1, 1)
        self.assert_counts("CCCC", FilterLevel.GENE_FILTERED, "MUT", 1, 1, 1)
        self.assert_counts("CCCC", FilterLevel.THRESHOLD_FILTERED, "WT", 1, 0, 1)

    def test_no_data(self):
        for level in FilterLevel:
            self.assertEqual(self.cell("DDDD", level, "genotype"), "No Data")
            self.assertTrue(pd.isna(self.cell("DDDD", level, "WT.calls")))
            self.assertTrue(pd.isna(self.cell("DDDD", level, "total.calls")))

    def test_all_filtered(self):
        self.assert_counts("EEEE", FilterLevel.UNFILTERED, "MUT", 0, 1, 0)
        self.assert_counts("EEEE", FilterLevel.GENE_FILTERED, "NA", 0, 0, 0)
        self.assert_counts("EEEE", FilterLevel.THRESHOLD_FILTERED, "NA", 0, 0, 0)

    def test_counts_shrink_with_level(self):
        totals = self.summary[
            [f"{level.value}.total.calls" for level in FilterLevel]
        ].dropna()
        self.assertTrue((totals.diff(axis=1).iloc[:, 1:] <= 0).all().all())

    def test_nan_threshold_drops_no_gene(self):
        summary = aggregate_genotypes.summarize_genotypes(
            self.observations, UNIVERSE, threshold=np.nan
        )
        self.assertEqual(summary.loc["CCCC", "threshold_filtered.genotype"], "NA")
        self.assertEqual(summary.loc["CCCC", "threshold_filtered.amb.calls"], 1)

    def test_default_universe(self):
        summary = aggregate_genotypes.summarize_genotypes(self.observations)
        self.assertEqual(list(summary.index), ["AAAA", "BBBB", "CCCC", "EEEE"])

    def test_genotyped_barcode_not_listed(self):
        with self.assertLogs("summarize_genotypes", level="WARNING"):
            summary = aggregate_genotypes.summarize_genotypes(
                self.observations, ["AAAA", "BBBB"], threshold=10
            )
        self.assertEqual(list(summary.index), ["AAAA", "BBBB"])


class KeepMaskTest(unittest.TestCase):
    def test_levels_nest(self):
        observations = make_observations()
        masks = [
            aggregate_genotypes.keep_mask(observations, level, 10)
            for level in FilterLevel
        ]
        for wider, narrower in zip(masks, masks[1:]):
            self.assertFalse((narrower & ~wider).any())
        self.assertTrue(masks[0].all())

    def test_threshold_is_strict(self):
        observations = pd.DataFrame(
            {
                "match_class": ["NoGene", "NoGene"],
                "total_dups_wt_mut": [10, 11],
            }
        )
        self.assertEqual(
            list(
                aggregate_genotypes.keep_mask(
                    observations, FilterLevel.THRESHOLD_FILTERED, 10
                )
            ),
            [False, True],
        )


if __name__ == "__main__":
    unittest.main()
