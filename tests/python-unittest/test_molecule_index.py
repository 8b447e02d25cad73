import os
import pathlib
import sys
import tempfile
import unittest

import h5py
import numpy as np

project_root = pathlib.Path(__file__).parent.parent.parent
sys.path.insert(0, str(project_root / "bin"))
import molecule_index
from libgenotype import ArchiveFormatError, MissingTargetGeneError, encode_umi

BARCODES = ["AAAA", "CCCC", "GGGG"]
FEATURE_NAMES = ["KRAS", "ACTB", "TotalSeq_CD3", "GAPDH"]
FEATURE_IDS = ["ENSG0001", "ENSG0002", "CD3", "ENSG0004"]
# barcode, umi, feature, reads
MOLECULES = [
    (0, "ACGT", 0, 5),
    (0, "ACGT", 1, 2),
    (0, "TTTT", 1, 7),
    (1, "GGGG", 0, 3),
    (1, "CCCC", 0, 1),
    (1, "CCCC", 2, 4),
    (2, "AAAA", 1, 2),
    (2, "AAAA", 3, 3),
]


def archive_arrays():
    barcode_idx, umis, feature_idx, count = zip(*MOLECULES)
    return {
        "barcode_idx": np.array(barcode_idx, dtype=np.uint64),
        "feature_idx": np.array(feature_idx, dtype=np.uint32),
        "umi": np.array([encode_umi(umi) for umi in umis], dtype=np.uint32),
        "count": np.array(count, dtype=np.uint32),
    }


def write_molecule_info(path, feature_types=None):
    with h5py.File(path, "w") as h5:
        for name, values in archive_arrays().items():
            h5.create_dataset(name, data=values)
        h5.create_dataset("barcodes", data=np.array(BARCODES, dtype="S"))
        features = h5.create_group("features")
        features.create_dataset("name", data=np.array(FEATURE_NAMES, dtype="S"))
        features.create_dataset("id", data=np.array(FEATURE_IDS, dtype="S"))
        if feature_types is not None:
            features.create_dataset(
                "feature_type", data=np.array(feature_types, dtype="S")
            )


class MoleculeIndexTest(unittest.TestCase):
    def setUp(self):
        self.index = molecule_index.MoleculeIndex.from_arrays(
            **archive_arrays(),
            barcodes=BARCODES,
            feature_names=FEATURE_NAMES,
            feature_ids=FEATURE_IDS,
            umilen=4,
        )

    def test_records(self):
        molecules = self.index.molecules
        self.assertEqual(len(molecules), len(MOLECULES))
        self.assertEqual(list(molecules["barcode"].astype(str)[:4]), ["AAAA"] * 3 + ["CCCC"])
        self.assertEqual(molecules["gene_id"][1], "ENSG0002")
        self.assertEqual(molecules["gene_name"][5], "TotalSeq_CD3")
        self.assertTrue((molecules["feature_type"] == "Gene Expression").all())

    def test_target_gene_set(self):
        self.assertEqual(
            self.index.target_gene_set("KRAS"),
            {("AAAA", "ACGT"), ("CCCC", "GGGG"), ("CCCC", "CCCC")},
        )
        self.assertEqual(self.index.target_gene_set("GAPDH"), {("GGGG", "AAAA")})

    def test_missing_target_gene(self):
        with self.assertRaises(MissingTargetGeneError):
            self.index.target_gene_set("BRAF")
        with self.assertRaises(MissingTargetGeneError):
            self.index.collapsed_index(BARCODES, "BRAF")

    def test_collapsed_index(self):
        self.assertEqual(
            self.index.collapsed_index(BARCODES, "KRAS"),
            {
                ("AAAA", encode_umi("ACGT")): "Multiple_KRAS",
                ("AAAA", encode_umi("TTTT")): "ACTB",
                ("CCCC", encode_umi("GGGG")): "KRAS",
                ("CCCC", encode_umi("CCCC")): "Multiple_KRAS_Antibody",
                ("GGGG", encode_umi("AAAA")): "Multiple",
            },
        )

    def test_collapse_universe(self):
        index = self.index.collapsed_index(["CCCC", "TTTT"], "KRAS")
        self.assertEqual({barcode for barcode, _ in index}, {"CCCC"})
        self.assertEqual(len(index), 2)

    def test_collapse_takes_first_record(self):
        collapsed = self.index.collapse(BARCODES, "KRAS")
        self.assertEqual(len(collapsed), 5)
        row = collapsed.loc[("AAAA", encode_umi("ACGT"))]
        self.assertEqual(row["count"], 5)
        self.assertEqual(row["gene_id"], "ENSG0001")
        self.assertEqual(row["n_molecules"], 2)
        # the source table is untouched
        self.assertEqual(len(self.index.molecules), len(MOLECULES))

    def test_antibody_feature_type(self):
        index = molecule_index.MoleculeIndex.from_arrays(
            **archive_arrays(),
            barcodes=BARCODES,
            feature_names=["KRAS", "ACTB", "CD3", "GAPDH"],
            feature_ids=FEATURE_IDS,
            feature_types=[
                "Gene Expression",
                "Gene Expression",
                "Antibody Capture",
                "Gene Expression",
            ],
            umilen=4,
            antibody_tag=None,
        )
        self.assertEqual(
            index.collapsed_index(["CCCC"], "KRAS")[("CCCC", encode_umi("CCCC"))],
            "Multiple_KRAS_Antibody",
        )

    def test_restrict(self):
        restricted = self.index.restrict(["AAAA"])
        self.assertEqual(len(restricted.molecules), 3)
        self.assertEqual(restricted.target_gene_set("KRAS"), {("AAAA", "ACGT")})

    def test_index_out_of_range(self):
        arrays = archive_arrays()
        arrays["feature_idx"][0] = len(FEATURE_NAMES)
        with self.assertRaises(ArchiveFormatError):
            molecule_index.MoleculeIndex.from_arrays(
                **arrays,
                barcodes=BARCODES,
                feature_names=FEATURE_NAMES,
                feature_ids=FEATURE_IDS,
            )


class MoleculeInfoH5Test(unittest.TestCase):
    def test_from_h5(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = os.path.join(tmpdir, "molecule_info.h5")
            write_molecule_info(path)
            index = molecule_index.MoleculeIndex.from_h5(path, umilen=4)
        self.assertEqual(len(index.molecules), len(MOLECULES))
        self.assertEqual(
            index.target_gene_set("KRAS"),
            {("AAAA", "ACGT"), ("CCCC", "GGGG"), ("CCCC", "CCCC")},
        )
        self.assertEqual(
            index.collapsed_index(BARCODES, "KRAS")[("GGGG", encode_umi("AAAA"))],
            "Multiple",
        )

    def test_from_h5_feature_types(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = os.path.join(tmpdir, "molecule_info.h5")
            write_molecule_info(
                path, ["Gene Expression", "Gene Expression", "Antibody Capture", "Gene Expression"]
            )
            index = molecule_index.MoleculeIndex.from_h5(path, umilen=4)
        self.assertEqual(index.features["feature_type"][2], "Antibody Capture")

    def test_missing_dataset(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = os.path.join(tmpdir, "molecule_info.h5")
            with h5py.File(path, "w") as h5:
                h5.create_dataset("barcodes", data=np.array(BARCODES, dtype="S"))
            with self.assertRaises(ArchiveFormatError):
                molecule_index.MoleculeIndex.from_h5(path)


if __name__ == "__main__":
    unittest.main()
