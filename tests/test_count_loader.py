"""Tests for count table and sample sheet ingestion."""
import pandas as pd
import pytest

from analysis_errors import InvalidMatrixError
from count_loader import (
    detect_gene_column,
    integer_like_fraction,
    merge_count_tables,
    read_count_files,
    read_count_table,
    read_sample_metadata,
)


@pytest.fixture
def count_csv(tmp_path):
    path = tmp_path / "counts.csv"
    pd.DataFrame(
        {
            "gene_id": ["ENSG01", "ENSG02", "__no_feature"],
            "symbol": ["VEGFA", "FLG", ""],
            "Ctrl_1": [10, 20, 5],
            "Ctrl_2": [12, 22, 5],
            "Trt_1": [40, 5, 5],
        }
    ).to_csv(path, index=False)
    return path


class TestReadCountTable:
    def test_csv(self, count_csv):
        df = read_count_table(count_csv)
        assert list(df.index) == ["ENSG01", "ENSG02"]
        assert list(df.columns) == ["Ctrl_1", "Ctrl_2", "Trt_1"]
        assert df.index.name == "gene_id"

    def test_tsv(self, tmp_path):
        path = tmp_path / "counts.tsv"
        path.write_text("Geneid\tS1\tS2\nG1\t1\t2\nG2\t3\t4\n")
        df = read_count_table(path)
        assert df.loc["G2", "S2"] == 4

    def test_excel(self, tmp_path):
        path = tmp_path / "counts.xlsx"
        pd.DataFrame({"gene": ["G1", "G2"], "S1": [1, 2], "S2": [3, 4]}).to_excel(path, index=False)
        df = read_count_table(path)
        assert df.shape == (2, 2)

    def test_explicit_gene_column(self, tmp_path):
        path = tmp_path / "counts.csv"
        path.write_text("feature,S1,S2\nG1,1,2\n")
        assert list(read_count_table(path, gene_column="feature").index) == ["G1"]

    def test_missing_gene_column(self, count_csv):
        with pytest.raises(InvalidMatrixError, match="not found"):
            read_count_table(count_csv, gene_column="nope")

    def test_biotype_column_kept(self, tmp_path):
        path = tmp_path / "counts.csv"
        path.write_text("gene_id,gene_biotype,S1,S2\nG1,protein_coding,1,2\n")
        df = read_count_table(path)
        assert "gene_biotype" in df.columns

    def test_single_sample_rejected(self, tmp_path):
        path = tmp_path / "counts.csv"
        path.write_text("gene_id,S1\nG1,1\n")
        with pytest.raises(InvalidMatrixError, match="at least 2 sample"):
            read_count_table(path)

    def test_missing_file(self, tmp_path):
        with pytest.raises(InvalidMatrixError, match="File not found"):
            read_count_table(tmp_path / "missing.csv")

    def test_empty_file(self, tmp_path):
        path = tmp_path / "empty.csv"
        path.write_text("")
        with pytest.raises(InvalidMatrixError, match="empty"):
            read_count_table(path)


class TestReadCountFiles:
    def test_htseq_style(self, tmp_path):
        a = tmp_path / "sample-A.txt"
        b = tmp_path / "sample-B.txt"
        a.write_text("G1\t10\nG2\t20\nG3\t1\n__no_feature\t100\n")
        b.write_text("G1\t11\nG2\t21\n__ambiguous\t3\n")
        df = read_count_files([a, b])
        assert list(df.columns) == ["sample_A", "sample_B"]
        assert list(df.index) == ["G1", "G2"]
        assert df.loc["G2", "sample_B"] == 21

    def test_header_row_skipped(self, tmp_path):
        a = tmp_path / "a.tsv"
        b = tmp_path / "b.tsv"
        a.write_text("gene\tcount\nG1\t10\n")
        b.write_text("gene\tcount\nG1\t12\n")
        df = read_count_files([a, b], sample_names=["A", "B"])
        assert pd.to_numeric(df.loc["G1"]).tolist() == [10, 12]

    def test_needs_two_files(self, tmp_path):
        with pytest.raises(InvalidMatrixError):
            read_count_files([tmp_path / "a.txt"])

    def test_no_shared_genes(self, tmp_path):
        a = tmp_path / "a.txt"
        b = tmp_path / "b.txt"
        a.write_text("G1\t1\n")
        b.write_text("G2\t1\n")
        with pytest.raises(InvalidMatrixError, match="No shared genes"):
            read_count_files([a, b])


class TestMergeCountTables:
    def test_inner_join(self):
        t1 = pd.DataFrame({"S1": [1, 2]}, index=["G1", "G2"])
        t2 = pd.DataFrame({"S2": [3, 4]}, index=["G2", "G3"])
        merged = merge_count_tables([t1, t2])
        assert list(merged.index) == ["G2"]
        assert list(merged.columns) == ["S1", "S2"]

    def test_duplicate_samples(self):
        t1 = pd.DataFrame({"S1": [1]}, index=["G1"])
        with pytest.raises(InvalidMatrixError, match="Duplicate"):
            merge_count_tables([t1, t1])


class TestSampleMetadata:
    def test_read(self, tmp_path):
        path = tmp_path / "samples.csv"
        path.write_text("sample,condition\nCtrl_1,control\nTrt_1,treated\n")
        groups = read_sample_metadata(path)
        assert groups.get("Trt_1") == "treated"

    def test_missing_condition(self, tmp_path):
        path = tmp_path / "samples.csv"
        path.write_text("sample,condition\nCtrl_1,control\nTrt_1,\n")
        with pytest.raises(InvalidMatrixError, match="no 'condition' value"):
            read_sample_metadata(path)


class TestHelpers:
    def test_detect_gene_column(self):
        df = pd.DataFrame({"id": ["TP53", "EGFR"], "S1": [1, 2]})
        assert detect_gene_column(df) == "id"
        assert detect_gene_column(pd.DataFrame({"S1": [1], "S2": [2]})) is None

    def test_integer_like_fraction(self):
        assert integer_like_fraction(pd.DataFrame({"a": [1.0, 2.0], "b": [0.5, 3.0]})) == pytest.approx(0.75)
