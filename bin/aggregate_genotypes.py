#!/usr/bin/env python

"""
Copyright © 2025 Merck & Co., Inc., Rahway, NJ, USA and its affiliates. All rights reserved.
This file is part of GEXValidate.

This source code is licensed under the MIT License found in the
LICENSE file in the root directory of this source tree.
"""

import argparse
import collections.abc
import enum
import logging

import numpy as np
import pandas as pd
from classify_umis import MatchClass
from expand_genotypes import Call
from libgenotype import read_barcode_list

NO_DATA = "No Data"
NOT_AVAILABLE = "NA"


class FilterLevel(enum.Enum):
    """
    Which genotyping UMIs count towards a barcode's genotype
    """

    UNFILTERED = "unfiltered"  # All UMIs
    GENE_FILTERED = "gene_filtered"  # Drop UMIs that belong to another gene
    THRESHOLD_FILTERED = "threshold_filtered"  # Also drop poorly supported NoGene UMIs


COUNT_COLUMNS = {
    Call.WT: "WT.calls",
    Call.MUT: "MUT.calls",
    Call.AMB: "amb.calls",
}
TOTAL_COLUMN = "total.calls"
GENOTYPE_COLUMN = "genotype"


def keep_mask(
    observations: pd.DataFrame, level: FilterLevel, threshold: float = np.nan
) -> pd.Series:
    """
    Decides which classified observations are kept at a filtering level.
    Exact and Approx UMIs are always kept, OtherGene UMIs are dropped from gene_filtered on, and
    NoGene UMIs are kept at threshold_filtered only if their WT+MUT reads exceed the threshold.
    :param observations: Classified observations
    :param level: Filtering level
    :param threshold: Read threshold for NoGene UMIs
    :return: Boolean Series aligned with observations
    """
    match_class = observations["match_class"]
    if level is FilterLevel.UNFILTERED:
        return pd.Series(True, index=observations.index)
    keep = match_class != MatchClass.OTHER_GENE.value
    if level is FilterLevel.THRESHOLD_FILTERED:
        keep &= (match_class != MatchClass.NO_GENE.value) | (
            observations["total_dups_wt_mut"] > threshold
        )
    return keep


def genotype_label(counts: pd.DataFrame) -> pd.Series:
    return pd.Series(
        np.select(
            [counts[COUNT_COLUMNS[Call.MUT]] > 0, counts[COUNT_COLUMNS[Call.WT]] >= 1],
            [Call.MUT.value, Call.WT.value],
            NOT_AVAILABLE,
        ),
        index=counts.index,
        dtype=object,
    )


def aggregate_level(
    observations: pd.DataFrame, level: FilterLevel, threshold: float = np.nan
) -> pd.DataFrame:
    """
    Recounts WT, MUT and ambiguous calls per barcode from the observations kept at one level
    :param observations: Classified observations
    :param level: Filtering level
    :param threshold: Read threshold for NoGene UMIs
    :return: DataFrame indexed by barcode with call counts and genotype label. Barcodes with
             observations but none kept have zero counts.
    """
    kept = observations.loc[keep_mask(observations, level, threshold)]
    counts = (
        pd.DataFrame(
            {
                column: (kept["call"] == call.value).astype(int)
                for call, column in COUNT_COLUMNS.items()
            }
        )
        .groupby(kept["barcode"])
        .sum()
        .reindex(
            pd.Index(observations["barcode"].unique(), name="barcode"), fill_value=0
        )
    )
    counts[TOTAL_COLUMN] = counts.sum(axis=1)
    counts[GENOTYPE_COLUMN] = genotype_label(counts)
    return counts


def summarize_genotypes(
    observations: pd.DataFrame,
    barcodes: collections.abc.Iterable[str] | None = None,
    threshold: float = np.nan,
) -> pd.DataFrame:
    """
    Genotype calls per barcode at every filtering level
    :param observations: Classified observations
    :param barcodes: Reference barcode universe. If None, the barcodes of the observations.
    :param threshold: Read threshold for NoGene UMIs
    :return: DataFrame indexed by barcode with columns "<level>.<column>"; barcodes without
             observations are "No Data" with null counts
    """
    logger = logging.getLogger("summarize_genotypes")
    if barcodes is None:
        barcodes = observations["barcode"].unique()
    universe = pd.Index(list(barcodes), name="barcode")
    levels = {
        level: aggregate_level(observations, level, threshold) for level in FilterLevel
    }
    count_columns = [*COUNT_COLUMNS.values(), TOTAL_COLUMN]
    summary = pd.concat(
        [
            frame.astype({column: "Int64" for column in count_columns}).add_prefix(
                f"{level.value}."
            )
            for level, frame in levels.items()
        ],
        axis=1,
    ).reindex(universe)
    for level in FilterLevel:
        column = f"{level.value}.{GENOTYPE_COLUMN}"
        summary[column] = summary[column].fillna(NO_DATA)
        logger.info(
            "%s: %s",
            level.value,
            ", ".join(f"{k}={v}" for k, v in summary[column].value_counts().items()),
        )
    if missing := len(set(observations["barcode"]) - set(universe)):
        logger.warning("%d genotyped barcodes are not in the barcode list", missing)
    return summary


class CLI(argparse.Namespace):
    observations: str
    output: str
    threshold: float = np.nan
    barcodes: str = None

    def __init__(self, args=None):
        parser = argparse.ArgumentParser(
            description="Summarize classified genotyping UMIs per barcode"
        )
        parser.add_argument("observations", help="Output of classify_umis.py")
        parser.add_argument("output", help="Path to the summary TSV")
        parser.add_argument(
            "--threshold",
            type=float,
            default=CLI.threshold,
            help="Read threshold for NoGene UMIs, see calculate_read_threshold.py",
        )
        parser.add_argument(
            "--barcodes", help="Reference barcode list (default: genotyped barcodes)"
        )
        parser.parse_args(args, self)

    def main(self):
        logging.basicConfig(
            level=logging.INFO,
            format="[%(asctime)s] %(levelname)s:%(name)s:%(message)s",
        )
        observations = pd.read_csv(self.observations, sep="\t", dtype={"barcode": str})
        barcodes = None if self.barcodes is None else read_barcode_list(self.barcodes)
        summarize_genotypes(observations, barcodes, self.threshold).to_csv(
            self.output, sep="\t"
        )


if __name__ == "__main__":
    CLI().main()
