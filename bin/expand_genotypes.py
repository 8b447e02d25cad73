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
import os
import typing

import pandas as pd
from libgenotype import ExpansionError, GenotypeTableError, logs_runtime


class Call(enum.Enum):
    """
    Genotype call of a single UMI
    """

    WT = "WT"
    MUT = "MUT"
    AMB = "AMB"


# Columns holding one delimiter-joined value per UMI, and the observation column each one becomes
LIST_FIELDS = {
    "UMI": "umi",
    "num.WT.in.dups": "wt_dups",
    "num.MUT.in.dups": "mut_dups",
    "num.amb.in.dups": "amb_dups",
    "call.in.dups": "call",
}
# Columns holding one value per barcode
SCALAR_FIELDS = {
    "BC": "barcode",
    "WT.calls": "wt_calls",
    "MUT.calls": "mut_calls",
    "amb.calls": "amb_calls",
}
COUNT_FIELDS = ("WT.calls", "MUT.calls", "amb.calls")
DUP_COLUMNS = ("wt_dups", "mut_dups", "amb_dups")

OBSERVATION_COLUMNS = [
    "source_row",
    "barcode",
    "umi",
    "call",
    "wt_dups",
    "mut_dups",
    "amb_dups",
    "total_dups",
    "total_dups_wt_mut",
    "wt_calls",
    "mut_calls",
    "amb_calls",
]


def validate_schema(table: pd.DataFrame):
    if missing := [
        name for name in (*SCALAR_FIELDS, *LIST_FIELDS) if name not in table.columns
    ]:
        raise GenotypeTableError(
            "Genotyping table missing required column(s): " + ", ".join(missing)
        )


def read_genotype_table(
    fname: str | os.PathLike | typing.TextIO, sep: str = "\t"
) -> pd.DataFrame:
    """
    Reads a per-barcode genotyping summary table and checks it against the declared schema.
    Rows with no UMIs are dropped.
    :param fname: Path or handle to the table
    :param sep: Column separator
    :return: DataFrame restricted to the schema columns, one row per barcode
    """
    logger = logging.getLogger("read_genotype_table")
    table = pd.read_csv(
        fname,
        sep=sep,
        dtype={name: str for name in (*LIST_FIELDS, "BC")},
        keep_default_na=False,
    )
    validate_schema(table)
    try:
        table = table.astype({name: int for name in COUNT_FIELDS})
    except ValueError as e:
        raise GenotypeTableError("Call counts must be integers") from e
    has_umis = table["UMI"].str.strip() != ""
    if (~has_umis).any():
        logger.info("Dropping %d barcodes with no UMIs", (~has_umis).sum())
    logger.info("Read %d barcodes", has_umis.sum())
    return table.loc[has_umis, [*SCALAR_FIELDS, *LIST_FIELDS]].reset_index(drop=True)


@logs_runtime
def expand_genotype_table(table: pd.DataFrame, delimiter: str = ";") -> pd.DataFrame:
    """
    Splits each barcode's row into one row per supporting UMI.
    Every list field must hold exactly WT.calls + MUT.calls + amb.calls elements.
    :param table: Output of read_genotype_table
    :param delimiter: Separator of the list fields
    :return: DataFrame with OBSERVATION_COLUMNS
    """
    validate_schema(table)
    n_umis = table.loc[:, list(COUNT_FIELDS)].astype(int).sum(axis=1)
    split = pd.DataFrame(
        {
            column: table[name].str.split(delimiter, regex=False)
            for name, column in LIST_FIELDS.items()
        }
    )
    mismatched = pd.Series(False, index=table.index)
    for name, column in LIST_FIELDS.items():
        mismatched |= split[column].str.len() != n_umis
    if mismatched.any():
        raise ExpansionError(
            "Number of UMIs does not match WT.calls + MUT.calls + amb.calls for barcode(s): "
            + ", ".join(table.loc[mismatched, "BC"])
        )

    scalars = table.loc[:, list(SCALAR_FIELDS)].rename(columns=SCALAR_FIELDS)
    scalars["source_row"] = table.index
    expanded = (
        pd.concat([scalars, split], axis=1)
        .explode(list(LIST_FIELDS.values()))
        .reset_index(drop=True)
    )
    try:
        expanded = expanded.astype({column: int for column in DUP_COLUMNS})
    except ValueError as e:
        raise GenotypeTableError("Duplicate counts must be integers") from e
    expanded["umi"] = expanded["umi"].str.strip()
    expanded["call"] = expanded["call"].str.strip().str.upper()
    if bad_calls := set(expanded["call"]) - {call.value for call in Call}:
        raise GenotypeTableError(
            "Unrecognized UMI call(s): " + ", ".join(sorted(bad_calls))
        )
    expanded["total_dups"] = expanded.loc[:, list(DUP_COLUMNS)].sum(axis=1)
    expanded["total_dups_wt_mut"] = expanded["wt_dups"] + expanded["mut_dups"]
    return expanded.loc[:, OBSERVATION_COLUMNS]


class CLI(argparse.Namespace):
    genotypes: str
    output: str
    sep: str = "\t"
    delimiter: str = ";"

    def __init__(self, args=None):
        parser = argparse.ArgumentParser(
            description="Expand a genotyping summary table to one row per UMI"
        )
        parser.add_argument("genotypes", help="Per-barcode genotyping summary table")
        parser.add_argument("output", help="Path to the expanded TSV")
        parser.add_argument(
            "--sep", default="\t", help="Column separator of the genotyping table"
        )
        parser.add_argument(
            "--delimiter",
            default=";",
            help="Separator of per-UMI values within a column (default: %(default)s)",
        )
        parser.parse_args(args, self)

    def main(self):
        logging.basicConfig(
            level=logging.INFO,
            format="[%(asctime)s] %(levelname)s:%(name)s:%(message)s",
        )
        table = read_genotype_table(self.genotypes, sep=self.sep)
        expand_genotype_table(table, delimiter=self.delimiter).to_csv(
            self.output, sep="\t", index=False
        )


if __name__ == "__main__":
    CLI().main()
