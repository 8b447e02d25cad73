#!/usr/bin/env python

"""
Copyright © 2025 Merck & Co., Inc., Rahway, NJ, USA and its affiliates. All rights reserved.
This file is part of GEXValidate.

This source code is licensed under the MIT License found in the
LICENSE file in the root directory of this source tree.
"""

# Cross-validates genotyping UMIs against a single-cell expression molecule archive
# and recalls per-barcode genotypes at three filtering levels

import argparse
import contextlib
import json
import logging
import os
import shlex
import sys

import matplotlib
import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
import seaborn
from aggregate_genotypes import GENOTYPE_COLUMN, FilterLevel, summarize_genotypes
from calculate_read_threshold import ThresholdMethod, estimate_threshold
from classify_umis import MatchClass, classify_observations
from expand_genotypes import expand_genotype_table, read_genotype_table
from libgenotype import read_barcode_list, write_unless_exists
from molecule_index import MoleculeIndex
from version import __version__


@contextlib.contextmanager
def figure(*args, **kwargs):
    fig = plt.figure(*args, **kwargs)
    yield fig
    plt.close(fig)


def plot_read_support(
    observations: pd.DataFrame, threshold: float, gene: str, filename: str
):
    """
    Histogram of log10 WT+MUT reads per genotyping UMI, one panel per match class,
    with the read threshold marked.
    """
    data = observations.loc[observations["total_dups_wt_mut"] > 0].assign(
        log10_reads=lambda df: np.log10(df["total_dups_wt_mut"])
    )
    matplotlib.rc("axes", titlesize=14, labelsize=12)
    with figure(figsize=[8, 10]) as fig:
        axes = fig.subplots(len(MatchClass), 1, sharex=True)
        for ax, match_class in zip(axes, MatchClass):
            subset = data.loc[data["match_class"] == match_class.value]
            if len(subset):
                seaborn.histplot(subset, x="log10_reads", kde=len(subset) > 1, ax=ax)
            if np.isfinite(threshold) and threshold > 0:
                ax.axvline(np.log10(threshold), color="red", linestyle="--")
            ax.set_title(f"{match_class.value} (n={len(subset)})")
            ax.set_xlabel("log10(WT + MUT reads)")
        fig.suptitle(f"{gene} genotyping UMIs, threshold = {threshold:.3g} reads")
        fig.tight_layout()
        fig.savefig(filename)


def run_metrics(
    observations: pd.DataFrame,
    summary: pd.DataFrame,
    gene: str,
    method: ThresholdMethod,
    threshold: float,
) -> dict:
    counts = observations["match_class"].value_counts()
    return {
        "version": __version__,
        "command_line": shlex.join(sys.argv),
        "gene": gene,
        "threshold_method": method.value,
        "threshold": None if np.isnan(threshold) else threshold,
        "n_observations": len(observations),
        "match_class_counts": {
            match_class.value: int(counts.get(match_class.value, 0))
            for match_class in MatchClass
        },
        "genotype_counts": {
            level.value: {
                key: int(value)
                for key, value in summary[f"{level.value}.{GENOTYPE_COLUMN}"]
                .value_counts()
                .items()
            }
            for level in FilterLevel
        },
    }


class GenotypeValidator:
    def __init__(
        self,
        genotypes: str,
        molecule_info: str,
        gene: str,
        barcodes: str | None = None,
        umilen: int = 12,
        max_distance: int = 2,
        method: ThresholdMethod = ThresholdMethod.QUANTILE,
        quantile: float = 0.8,
        antibody_tag: str | None = "TotalSeq",
        sep: str = "\t",
        delimiter: str = ";",
        cpus: int = 1,
    ):
        """
        Runs the whole validation on one genotyping table and one molecule archive.
        :param genotypes: Path to the per-barcode genotyping summary table
        :param molecule_info: Path to the molecule_info.h5 of the matching expression library
        :param gene: Name of the genotyped gene, as in the archive's feature table
        :param barcodes: Path to the reference barcode list. If None, the genotyped barcodes are used.
        :param umilen: Length of the UMI sequence
        :param max_distance: Edit distance budget for approximate barcode+UMI matches
        :param method: Strategy for the NoGene read threshold
        :param quantile: Quantile of OtherGene reads for ThresholdMethod.QUANTILE
        :param antibody_tag: Substring marking antibody-derived features
        :param sep: Column separator of the genotyping table
        :param delimiter: Separator of per-UMI values in the genotyping table
        :param cpus: Number of worker processes for UMI classification
        """
        self.logger = logging.getLogger("GenotypeValidator")
        self.genotypes = genotypes
        self.molecule_info = molecule_info
        self.gene = gene
        self.barcodes = barcodes
        self.umilen = umilen
        self.max_distance = max_distance
        self.method = method
        self.quantile = quantile
        self.antibody_tag = antibody_tag
        self.sep = sep
        self.delimiter = delimiter
        self.cpus = cpus

        self.observations: pd.DataFrame | None = None
        self.threshold = float("nan")
        self.summary: pd.DataFrame | None = None

    def run(self):
        self.logger.info("Begin validation of %s genotypes", self.gene)
        table = read_genotype_table(self.genotypes, sep=self.sep)
        observations = expand_genotype_table(table, delimiter=self.delimiter)
        genotyped = observations["barcode"].unique()

        index = MoleculeIndex.from_h5(
            self.molecule_info, umilen=self.umilen, antibody_tag=self.antibody_tag
        )
        target_keys = index.target_gene_set(self.gene)
        collapsed = index.collapsed_index(genotyped, self.gene)
        del index

        self.observations = classify_observations(
            observations,
            target_keys,
            collapsed,
            umilen=self.umilen,
            max_distance=self.max_distance,
            cpus=self.cpus,
        )
        self.threshold = estimate_threshold(
            self.observations, self.method, quantile=self.quantile
        )
        universe = (
            genotyped if self.barcodes is None else read_barcode_list(self.barcodes)
        )
        self.summary = summarize_genotypes(self.observations, universe, self.threshold)
        self.logger.info("Finished validation of %s genotypes", self.gene)
        return self

    def write_outputs(self, outdir: str, prefix: str):
        """
        Writes the summary, classified UMIs, metrics and diagnostic plot.
        Existing files are left alone.
        """
        os.makedirs(outdir, exist_ok=True)
        stem = os.path.join(outdir, prefix)
        write_unless_exists(
            f"{stem}.summary.tsv",
            lambda path: self.summary.to_csv(path, sep="\t"),
            self.logger,
        )
        write_unless_exists(
            f"{stem}.umis.tsv",
            lambda path: self.observations.to_csv(path, sep="\t", index=False),
            self.logger,
        )
        write_unless_exists(
            f"{stem}.metrics.json",
            lambda path: self._dump_metrics(path),
            self.logger,
        )
        write_unless_exists(
            f"{stem}.read_support.png",
            lambda path: plot_read_support(
                self.observations, self.threshold, self.gene, path
            ),
            self.logger,
        )
        return self

    def _dump_metrics(self, path: str):
        with open(path, "w") as ofp:
            json.dump(
                run_metrics(
                    self.observations,
                    self.summary,
                    self.gene,
                    self.method,
                    self.threshold,
                ),
                ofp,
                indent=2,
            )


class CLI(argparse.Namespace):
    genotypes: str
    molecule_info: str
    gene: str
    barcodes: str | None = None
    outdir: str = "."
    prefix: str | None = None
    umilen: int = 12
    max_distance: int = 2
    method: str = ThresholdMethod.QUANTILE.value
    quantile: float = 0.8
    antibody_tag: str = "TotalSeq"
    sep: str = "\t"
    delimiter: str = ";"
    cpus: int = 1
    debug: bool = False

    _parser = argparse.ArgumentParser(
        description="Filter genotyping UMIs using a single-cell expression molecule archive"
    )
    _parser.add_argument("genotypes", help="Per-barcode genotyping summary table")
    _parser.add_argument("molecule_info", help="molecule_info.h5 from cellranger")
    _parser.add_argument("--gene", required=True, help="Target gene name")
    _parser.add_argument(
        "--barcodes",
        help="Reference barcode list, one per line (default: genotyped barcodes)",
    )
    _parser.add_argument(
        "--outdir", default=".", help="Output directory (default: %(default)s)"
    )
    _parser.add_argument(
        "--prefix", help="Output file prefix (default: the target gene name)"
    )
    _parser.add_argument(
        "--umilen",
        type=int,
        default=12,
        help="UMI sequence length (default: %(default)d)",
    )
    _parser.add_argument(
        "--max-distance",
        type=int,
        default=2,
        help="Maximum edit distance between barcode+UMI strings for an approximate match "
        "(default: %(default)d)",
    )
    _parser.add_argument(
        "--threshold-method",
        dest="method",
        choices=[x.value for x in ThresholdMethod],
        default=ThresholdMethod.QUANTILE.value,
        help="Strategy for the NoGene read threshold (default: %(default)s)",
    )
    _parser.add_argument(
        "--quantile",
        type=float,
        default=0.8,
        help="Quantile of OtherGene reads used by the quantile method (default: %(default)g)",
    )
    _parser.add_argument(
        "--antibody-tag",
        default="TotalSeq",
        help="Substring marking antibody-derived features (default: %(default)s)",
    )
    _parser.add_argument(
        "--sep", default="\t", help="Column separator of the genotyping table"
    )
    _parser.add_argument(
        "--delimiter",
        default=";",
        help="Separator of per-UMI values within a column (default: %(default)s)",
    )
    _parser.add_argument(
        "--cpus", type=int, default=1, help="Number of worker processes"
    )
    _parser.add_argument(
        "--debug", action="store_true", default=False, help="Increase logging verbosity"
    )

    def __init__(self, args=None):
        self.__class__._parser.parse_args(args, self)

    def main(self):
        logging.basicConfig(
            level=logging.DEBUG if self.debug else logging.INFO,
            format="[%(asctime)s] %(levelname)s:%(name)s:%(message)s",
        )
        validator = GenotypeValidator(
            self.genotypes,
            self.molecule_info,
            self.gene,
            barcodes=self.barcodes,
            umilen=self.umilen,
            max_distance=self.max_distance,
            method=ThresholdMethod(self.method),
            quantile=self.quantile,
            antibody_tag=self.antibody_tag,
            sep=self.sep,
            delimiter=self.delimiter,
            cpus=self.cpus,
        )
        validator.run().write_outputs(self.outdir, self.prefix or self.gene)


if __name__ == "__main__":
    CLI().main()
