#!/usr/bin/env python

"""
Copyright © 2025 Merck & Co., Inc., Rahway, NJ, USA and its affiliates. All rights reserved.
This file is part of GEXValidate.

This source code is licensed under the MIT License found in the
LICENSE file in the root directory of this source tree.
"""

import argparse
import enum
import logging

import numpy as np
import pandas as pd
from classify_umis import MatchClass
from scipy import optimize, stats

# Search interval for the density minimum, in log10 reads (1 to 1000 reads)
LOG10_BOUNDS = (0.0, 3.0)


class ThresholdMethod(enum.Enum):
    QUANTILE = "quantile"  # Quantile of reads supporting OtherGene UMIs
    BIMODAL = "bimodal"  # Density minimum between the two modes of NoGene UMIs


def reads_for_class(observations: pd.DataFrame, match_class: MatchClass) -> np.ndarray:
    return (
        observations.loc[
            observations["match_class"] == match_class.value, "total_dups_wt_mut"
        ]
        .to_numpy()
        .astype(float)
    )


def quantile_threshold(observations: pd.DataFrame, quantile: float = 0.8) -> float:
    """
    Read-support cutoff from UMIs that belong to another gene
    :param observations: Classified observations
    :param quantile: Quantile of the OtherGene read counts to use
    :return: Threshold, NaN if there are no OtherGene observations
    """
    logger = logging.getLogger("quantile_threshold")
    reads = reads_for_class(observations, MatchClass.OTHER_GENE)
    if reads.size == 0:
        logger.warning("No OtherGene observations, cannot compute a threshold")
        return float("nan")
    return float(np.quantile(reads, quantile))


def bimodal_threshold(observations: pd.DataFrame) -> float:
    """
    Read-support cutoff separating the low- and high-support modes of UMIs
    absent from the expression data. The log10 read counts of NoGene UMIs are smoothed with a
    Gaussian kernel and the local minimum of the density between 1 and 1000 reads is returned.
    The result is only meaningful if the distribution is bimodal.
    :param observations: Classified observations
    :return: Threshold, NaN if the distribution is degenerate
    """
    logger = logging.getLogger("bimodal_threshold")
    reads = reads_for_class(observations, MatchClass.NO_GENE)
    log_reads = np.log10(reads[reads > 0])
    if log_reads.size < 2 or np.ptp(log_reads) == 0:
        logger.warning(
            "Need at least two distinct NoGene read counts to estimate a density, got %d values",
            log_reads.size,
        )
        return float("nan")
    density = stats.gaussian_kde(log_reads)
    result = optimize.minimize_scalar(
        lambda x: density(x)[0], bounds=LOG10_BOUNDS, method="bounded"
    )
    threshold = float(10**result.x)
    if np.isclose(result.x, LOG10_BOUNDS, atol=1e-3).any():
        logger.warning(
            "Density minimum %.3g lies on the search boundary, the read distribution may not be bimodal",
            threshold,
        )
    elif not log_reads.min() <= result.x <= log_reads.max():
        logger.warning(
            "Density minimum %.3g lies outside the observed reads (%g-%g)",
            threshold,
            reads[reads > 0].min(),
            reads.max(),
        )
    return threshold


def estimate_threshold(
    observations: pd.DataFrame,
    method: ThresholdMethod = ThresholdMethod.QUANTILE,
    quantile: float = 0.8,
) -> float:
    logger = logging.getLogger("estimate_threshold")
    if method is ThresholdMethod.QUANTILE:
        threshold = quantile_threshold(observations, quantile)
    else:
        threshold = bimodal_threshold(observations)
    logger.info("%s read threshold: %g", method.value, threshold)
    return threshold


class CLI(argparse.Namespace):
    observations: str
    method: str = ThresholdMethod.QUANTILE.value
    quantile: float = 0.8

    def __init__(self, args=None):
        parser = argparse.ArgumentParser(
            description="Compute the read-support threshold for NoGene UMIs"
        )
        parser.add_argument("observations", help="Output of classify_umis.py")
        parser.add_argument(
            "--method",
            choices=[x.value for x in ThresholdMethod],
            default=CLI.method,
        )
        parser.add_argument(
            "--quantile",
            type=float,
            default=CLI.quantile,
            help="Quantile of OtherGene reads used by the quantile method (default: %(default)g)",
        )
        parser.parse_args(args, self)

    def main(self):
        observations = pd.read_csv(self.observations, sep="\t")
        return estimate_threshold(
            observations, ThresholdMethod(self.method), quantile=self.quantile
        )


if __name__ == "__main__":
    cli = CLI()
    result = cli.main()
    print(result)
