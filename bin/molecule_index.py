#!/usr/bin/env python

"""
Copyright © 2025 Merck & Co., Inc., Rahway, NJ, USA and its affiliates. All rights reserved.
This file is part of GEXValidate.

This source code is licensed under the MIT License found in the
LICENSE file in the root directory of this source tree.
"""

import argparse
import collections.abc
import logging
import os
from typing import Optional

import h5py
import numpy as np
import pandas as pd
from libgenotype import (
    ArchiveFormatError,
    MissingTargetGeneError,
    decode_umis,
    logs_runtime,
    read_barcode_list,
    wrap_exception,
)

GENE_EXPRESSION = "Gene Expression"
ANTIBODY_CAPTURE = "Antibody Capture"
MULTIPLE = "Multiple"
ANTIBODY_SUFFIX = "Antibody"


class MoleculeIndex:
    def __init__(
        self,
        molecules: pd.DataFrame,
        features: pd.DataFrame,
        umilen: int = 12,
        antibody_tag: Optional[str] = "TotalSeq",
    ):
        """
        Molecule-level view of a single-cell expression archive.
        :param molecules: One row per molecule with columns barcode, umi, gene_id, gene_name, feature_type, count
        :param features: Feature table with columns gene_id, gene_name, feature_type
        :param umilen: Length of the UMI in bases
        :param antibody_tag: Gene names containing this string are treated as antibody-derived features.
                        If None, only the feature type is used.
        """
        self.molecules = molecules
        self.features = features
        self.umilen = umilen
        self.antibody_tag = antibody_tag
        self.logger = logging.getLogger("MoleculeIndex")

    @classmethod
    def from_arrays(
        cls,
        barcode_idx: collections.abc.Sequence[int],
        feature_idx: collections.abc.Sequence[int],
        umi: collections.abc.Sequence[int],
        count: collections.abc.Sequence[int],
        barcodes: collections.abc.Sequence[str],
        feature_names: collections.abc.Sequence[str],
        feature_ids: collections.abc.Sequence[str],
        feature_types: Optional[collections.abc.Sequence[str]] = None,
        **kwargs,
    ) -> "MoleculeIndex":
        """
        Resolves the archive's zero-based index arrays against its barcode and feature tables.
        """
        barcode_idx = np.asarray(barcode_idx, dtype=np.int64)
        feature_idx = np.asarray(feature_idx, dtype=np.int64)
        umi = np.asarray(umi, dtype=np.uint64)
        count = np.asarray(count, dtype=np.int64)
        if not len(barcode_idx) == len(feature_idx) == len(umi) == len(count):
            raise ArchiveFormatError(
                "barcode_idx, feature_idx, umi and count must have equal lengths"
            )
        barcodes = np.asarray(barcodes, dtype=str)
        features = pd.DataFrame(
            {
                "gene_id": np.asarray(feature_ids, dtype=str),
                "gene_name": np.asarray(feature_names, dtype=str),
                "feature_type": (
                    GENE_EXPRESSION
                    if feature_types is None
                    else np.asarray(feature_types, dtype=str)
                ),
            }
        )
        for name, idx, table_len in (
            ("barcode_idx", barcode_idx, len(barcodes)),
            ("feature_idx", feature_idx, len(features)),
        ):
            if len(idx) and (idx.min() < 0 or idx.max() >= table_len):
                raise ArchiveFormatError(
                    f"{name} out of range for a table of {table_len} entries"
                )
        molecules = pd.DataFrame(
            {
                "barcode": pd.Categorical(barcodes[barcode_idx]),
                "umi": umi,
                "gene_id": features["gene_id"].to_numpy()[feature_idx],
                "gene_name": features["gene_name"].to_numpy()[feature_idx],
                "feature_type": features["feature_type"].to_numpy()[feature_idx],
                "count": count,
            }
        )
        return cls(molecules, features, **kwargs)

    @classmethod
    @wrap_exception(KeyError, ArchiveFormatError, "missing dataset in molecule archive")
    def from_h5(cls, filename: str | os.PathLike, **kwargs) -> "MoleculeIndex":
        """
        Reads a molecule_info.h5 file as written by cellranger.
        :param filename: Path to the archive
        :return: MoleculeIndex
        """
        logger = logging.getLogger("MoleculeIndex")
        logger.info("Reading molecule archive %s", filename)
        with h5py.File(filename, "r") as h5:
            features = h5["features"]
            ret = cls.from_arrays(
                h5["barcode_idx"][:],
                h5["feature_idx"][:],
                h5["umi"][:],
                h5["count"][:],
                h5["barcodes"][:].astype(str),
                features["name"][:].astype(str),
                features["id"][:].astype(str),
                (
                    features["feature_type"][:].astype(str)
                    if "feature_type" in features
                    else None
                ),
                **kwargs,
            )
        logger.info(
            "Loaded %d molecules over %d features", len(ret.molecules), len(ret.features)
        )
        return ret

    def restrict(self, barcodes: collections.abc.Iterable[str]) -> "MoleculeIndex":
        """
        Returns a new MoleculeIndex holding only molecules from the given barcodes
        """
        mask = self.molecules["barcode"].isin(set(barcodes))
        return self.__class__(
            self.molecules.loc[mask].reset_index(drop=True),
            self.features,
            umilen=self.umilen,
            antibody_tag=self.antibody_tag,
        )

    def _check_gene(self, gene_name: str):
        if not (self.features["gene_name"] == gene_name).any():
            raise MissingTargetGeneError(
                f"{gene_name} is not in the feature table of the molecule archive"
            )

    def target_gene_set(self, gene_name: str) -> set[tuple[str, str]]:
        """
        Barcode/UMI pairs of all molecules assigned to the given gene
        :param gene_name: Name of the target gene
        :return: set of (barcode, UMI sequence)
        """
        self._check_gene(gene_name)
        target = self.molecules.loc[self.molecules["gene_name"] == gene_name]
        umis = decode_umis(target["umi"].to_numpy(), self.umilen)
        self.logger.info("Found %d %s molecules", len(target), gene_name)
        return set(zip(target["barcode"].astype(str), umis))

    def is_antibody(self, molecules: pd.DataFrame) -> pd.Series:
        mask = molecules["feature_type"] == ANTIBODY_CAPTURE
        if self.antibody_tag:
            mask |= molecules["gene_name"].str.contains(self.antibody_tag, regex=False)
        return mask

    @logs_runtime
    def collapse(
        self, barcode_universe: collections.abc.Iterable[str], target_gene: str
    ) -> pd.DataFrame:
        """
        Collapses molecules sharing a barcode and UMI to a single gene label.
        A UMI seen against several genes is labeled Multiple_<target> if the target gene is one of them
        (Multiple_<target>_Antibody if one of them is an antibody tag), and Multiple otherwise.
        All other columns are taken from the first molecule of the group.
        :param barcode_universe: Barcodes to keep
        :param target_gene: Name of the target gene
        :return: DataFrame indexed by (barcode, umi) with columns gene_label, gene_id, gene_name,
                 feature_type, count and n_molecules
        """
        self._check_gene(target_gene)
        molecules = self.molecules.loc[
            self.molecules["barcode"].isin(set(barcode_universe))
        ].assign(barcode=lambda df: df["barcode"].astype(str))
        molecules = molecules.assign(
            is_target=molecules["gene_name"] == target_gene,
            is_antibody=self.is_antibody(molecules),
        )
        collapsed = molecules.groupby(["barcode", "umi"], sort=False).agg(
            gene_id=pd.NamedAgg("gene_id", "first"),
            gene_name=pd.NamedAgg("gene_name", "first"),
            feature_type=pd.NamedAgg("feature_type", "first"),
            count=pd.NamedAgg("count", "first"),
            n_molecules=pd.NamedAgg("gene_name", "size"),
            has_target=pd.NamedAgg("is_target", "any"),
            has_antibody=pd.NamedAgg("is_antibody", "any"),
        )
        multiple = collapsed["n_molecules"] > 1
        with_target = multiple & collapsed["has_target"]
        gene_label = collapsed["gene_name"].where(~multiple, MULTIPLE)
        gene_label = gene_label.mask(with_target, f"{MULTIPLE}_{target_gene}")
        gene_label = gene_label.mask(
            with_target & collapsed["has_antibody"],
            f"{MULTIPLE}_{target_gene}_{ANTIBODY_SUFFIX}",
        )
        self.logger.info(
            "Collapsed %d molecules to %d barcode/UMI pairs (%d multi-gene)",
            len(molecules),
            len(collapsed),
            multiple.sum(),
        )
        return collapsed.drop(columns=["has_target", "has_antibody"]).assign(
            gene_label=gene_label
        )

    def collapsed_index(
        self, barcode_universe: collections.abc.Iterable[str], target_gene: str
    ) -> dict[tuple[str, int], str]:
        """
        Mapping from (barcode, encoded UMI) to gene label, see collapse()
        """
        labels = self.collapse(barcode_universe, target_gene)["gene_label"]
        return {
            (barcode, int(umi)): label for (barcode, umi), label in labels.items()
        }


class CLI(argparse.Namespace):
    molecule_info: str
    barcodes: str
    gene: str
    outdir: str = "."
    umilen: int = 12
    antibody_tag: str = "TotalSeq"
    debug: bool = False

    _parser = argparse.ArgumentParser(
        description="Collapse a molecule archive to one gene label per barcode/UMI pair"
    )
    _parser.add_argument("molecule_info", help="molecule_info.h5 from cellranger")
    _parser.add_argument(
        "barcodes", help="Barcodes to keep, one per line (suffixes after '-' are ignored)"
    )
    _parser.add_argument("--gene", required=True, help="Target gene name")
    _parser.add_argument("--outdir", default=".", help="Output directory")
    _parser.add_argument(
        "--umilen",
        type=int,
        default=12,
        help="UMI sequence length (default: %(default)d)",
    )
    _parser.add_argument(
        "--antibody-tag",
        default="TotalSeq",
        help="Substring marking antibody-derived features (default: %(default)s)",
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
        barcodes = read_barcode_list(self.barcodes)
        index = MoleculeIndex.from_h5(
            self.molecule_info, umilen=self.umilen, antibody_tag=self.antibody_tag
        )
        os.makedirs(self.outdir, exist_ok=True)
        pd.DataFrame(
            sorted(index.target_gene_set(self.gene)), columns=["barcode", "umi"]
        ).to_csv(f"{self.outdir}/{self.gene}.target_umis.tsv", sep="\t", index=False)
        index.collapse(barcodes, self.gene).to_csv(
            f"{self.outdir}/{self.gene}.collapsed_index.tsv", sep="\t"
        )


if __name__ == "__main__":
    CLI().main()
