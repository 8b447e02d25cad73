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
import multiprocessing
from typing import NamedTuple, Optional

import Levenshtein
import pandas as pd
from libgenotype import EncodingError, encode_umi, logs_runtime, read_barcode_list
from molecule_index import MoleculeIndex


class MatchClass(enum.Enum):
    """
    Support for a genotyping UMI in the expression data, in order of precedence
    """

    EXACT = "Exact"  # Same barcode and UMI seen for the target gene
    APPROX = "Approx"  # Within the edit distance budget of a target gene barcode/UMI
    OTHER_GENE = "OtherGene"  # Barcode and UMI seen only for other genes
    NO_GENE = "NoGene"  # Barcode and UMI not seen at all


class Classification(NamedTuple):
    umi_code: int
    exact_match: bool
    approx_match: bool
    in_gex: bool
    gene_label: Optional[str]
    match_class: str


def mp_init(
    target_keys: collections.abc.Collection[tuple[str, str]],
    collapsed_index: dict[tuple[str, int], str],
    umilen: int,
    max_distance: int,
):
    mp_init.target_keys = frozenset(target_keys)
    mp_init.target_strings = sorted({bc + umi for bc, umi in target_keys})
    mp_init.collapsed_index = collapsed_index
    mp_init.umilen = umilen
    mp_init.max_distance = max_distance


def approx_match(query: str, candidates: collections.abc.Iterable[str], max_distance: int):
    return any(
        Levenshtein.distance(query, candidate, score_cutoff=max_distance)
        <= max_distance
        for candidate in candidates
    )


def classify_umi(barcode: str, umi: str) -> Classification:
    """
    Classifies one genotyping barcode/UMI against the state installed by mp_init
    :param barcode: Cell barcode
    :param umi: UMI sequence
    :return: Classification
    """
    if len(umi) != mp_init.umilen:
        raise EncodingError(
            f"UMI {umi!r} of barcode {barcode} is not {mp_init.umilen} bases long"
        )
    umi_code = encode_umi(umi)
    exact = (barcode, umi) in mp_init.target_keys
    approx = approx_match(barcode + umi, mp_init.target_strings, mp_init.max_distance)
    gene_label = mp_init.collapsed_index.get((barcode, umi_code))
    in_gex = gene_label is not None
    if exact:
        match_class = MatchClass.EXACT
    elif approx:
        match_class = MatchClass.APPROX
    elif in_gex:
        match_class = MatchClass.OTHER_GENE
    else:
        match_class = MatchClass.NO_GENE
    return Classification(umi_code, exact, approx, in_gex, gene_label, match_class.value)


@logs_runtime
def classify_observations(
    observations: pd.DataFrame,
    target_keys: collections.abc.Collection[tuple[str, str]],
    collapsed_index: dict[tuple[str, int], str],
    umilen: int = 12,
    max_distance: int = 2,
    cpus: int = 1,
) -> pd.DataFrame:
    """
    Labels each genotyping observation as Exact, Approx, OtherGene or NoGene.
    :param observations: Expanded genotyping table (see expand_genotypes)
    :param target_keys: (barcode, UMI sequence) pairs of the target gene, from MoleculeIndex.target_gene_set
    :param collapsed_index: (barcode, encoded UMI) to gene label, from MoleculeIndex.collapsed_index
    :param umilen: UMI length
    :param max_distance: Maximum Levenshtein distance between barcode+UMI strings for an approximate match
    :param cpus: Number of worker processes
    :return: Copy of observations with the Classification fields appended, in the original order
    """
    logger = logging.getLogger("classify_observations")
    args = list(zip(observations["barcode"], observations["umi"]))
    initargs = (target_keys, collapsed_index, umilen, max_distance)
    if cpus > 1 and len(args) > 1:
        logger.info("Classifying %d UMIs with %d processes", len(args), cpus)
        with multiprocessing.Pool(
            processes=cpus, initializer=mp_init, initargs=initargs
        ) as pool:
            results = pool.starmap(
                classify_umi, args, chunksize=max(1, len(args) // (4 * cpus))
            )
    else:
        logger.info("Classifying %d UMIs", len(args))
        mp_init(*initargs)
        results = [classify_umi(*arg) for arg in args]
    classified = pd.DataFrame.from_records(
        results, columns=Classification._fields, index=observations.index
    )
    classified["umi_code"] = classified["umi_code"].astype("uint64")
    counts = classified["match_class"].value_counts()
    for match_class in MatchClass:
        logger.info("%s: %d", match_class.value, counts.get(match_class.value, 0))
    return pd.concat([observations, classified], axis=1)


class CLI(argparse.Namespace):
    observations: str
    molecule_info: str
    gene: str
    output: str
    umilen: int = 12
    max_distance: int = 2
    antibody_tag: str = "TotalSeq"
    cpus: int = 1
    debug: bool = False

    _parser = argparse.ArgumentParser(
        description="Classify expanded genotyping UMIs against a molecule archive"
    )
    _parser.add_argument("observations", help="Output of expand_genotypes.py")
    _parser.add_argument("molecule_info", help="molecule_info.h5 from cellranger")
    _parser.add_argument("output", help="Path to the classified TSV")
    _parser.add_argument("--gene", required=True, help="Target gene name")
    _parser.add_argument(
        "--barcodes",
        help="Restrict the collapsed index to these barcodes "
        "(default: barcodes of the observations)",
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
        "--antibody-tag",
        default="TotalSeq",
        help="Substring marking antibody-derived features (default: %(default)s)",
    )
    _parser.add_argument(
        "--cpus", type=int, default=1, help="Number of worker processes"
    )
    _parser.add_argument(
        "--debug", action="store_true", default=False, help="Increase logging verbosity"
    )

    def __init__(self, args=None):
        self.barcodes = None
        self.__class__._parser.parse_args(args, self)

    def main(self):
        logging.basicConfig(
            level=logging.DEBUG if self.debug else logging.INFO,
            format="[%(asctime)s] %(levelname)s:%(name)s:%(message)s",
        )
        observations = pd.read_csv(
            self.observations, sep="\t", dtype={"barcode": str, "umi": str}
        )
        barcodes = (
            observations["barcode"].unique()
            if self.barcodes is None
            else read_barcode_list(self.barcodes)
        )
        index = MoleculeIndex.from_h5(
            self.molecule_info, umilen=self.umilen, antibody_tag=self.antibody_tag
        )
        classify_observations(
            observations,
            index.target_gene_set(self.gene),
            index.collapsed_index(barcodes, self.gene),
            umilen=self.umilen,
            max_distance=self.max_distance,
            cpus=self.cpus,
        ).to_csv(self.output, sep="\t", index=False)


if __name__ == "__main__":
    CLI().main()
