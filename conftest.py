"""
Pytest configuration and fixtures for the RNA-seq analysis tests.
"""

from unittest.mock import MagicMock
import pytest
import pandas as pd
import numpy as np

from count_preparation import CountMatrix, SampleGroupAssignment
from de_analysis import DifferentialResult
from gene_classifier import GeneClassifier
from gene_sets import GeneSet, catalog_from_mapping


# ============================================================================
# Sample Data Fixtures
# ============================================================================


@pytest.fixture
def sample_counts_df():
    """
    Sample RNA-seq count matrix for testing.
    Shape: (100 genes, 6 samples), genes as rows
    """
    np.random.seed(42)
    data = np.random.negative_binomial(n=10, p=0.1, size=(100, 6))
    genes = [f"gene_{i + 1}" for i in range(100)]
    samples = [f"sample_{i + 1}" for i in range(6)]
    df = pd.DataFrame(data, index=genes, columns=samples)
    df.index.name = "gene_id"
    return df


@pytest.fixture
def sample_metadata_df():
    """Sample sheet matching sample_counts_df (3 control, 3 treatment)."""
    return pd.DataFrame(
        {
            "sample": [f"sample_{i + 1}" for i in range(6)],
            "condition": ["control"] * 3 + ["treatment"] * 3,
            "batch": ["batch1", "batch2", "batch1", "batch2", "batch1", "batch2"],
        }
    )


@pytest.fixture
def scenario_counts_df():
    """
    Four genes × four samples: G1 differs between groups, G2-G4 are flat.
    Samples A1, A2 belong to group A; B1, B2 to group B.
    """
    return pd.DataFrame(
        {
            "A1": [100, 50, 50, 50],
            "A2": [110, 50, 50, 50],
            "B1": [10, 50, 50, 50],
            "B2": [12, 50, 50, 50],
        },
        index=pd.Index(["G1", "G2", "G3", "G4"], name="gene_id"),
    )


@pytest.fixture
def scenario_matrix(scenario_counts_df):
    return CountMatrix(scenario_counts_df)


@pytest.fixture
def scenario_groups():
    return SampleGroupAssignment({"A1": "A", "A2": "A", "B1": "B", "B2": "B"})


def make_result(gene_id, padj, lfc, pvalue=None, stat=None, symbol=None):
    """DifferentialResult with only the fields classification looks at."""
    return DifferentialResult(
        gene_id=gene_id,
        base_mean=100.0,
        log2_fold_change=lfc,
        lfc_se=0.5,
        stat=lfc / 0.5 if stat is None else stat,
        pvalue=padj if pvalue is None else pvalue,
        padj=padj,
        symbol=symbol,
    )


@pytest.fixture
def sample_de_results():
    """Mixed results: two up, one down, two not significant, one untested."""
    nan = float("nan")
    return (
        make_result("G1", 0.001, 2.5, symbol="VEGFA"),
        make_result("G2", 0.01, 1.8, symbol="FN1"),
        make_result("G3", 0.002, -3.0, symbol="FLG"),
        make_result("G4", 0.5, 0.2, symbol="ACTB"),
        make_result("G5", 0.01, 0.5, symbol="GAPDH"),
        make_result("G6", nan, nan, pvalue=nan, stat=nan, symbol="XIST"),
    )


@pytest.fixture
def sample_classified(sample_de_results):
    return GeneClassifier(0.05, 1.0).classify(sample_de_results)


@pytest.fixture
def sample_catalog():
    return catalog_from_mapping(
        {
            "Angiogenesis": ["G1", "G2", "G7"],
            "Barrier": ["G3", "G4"],
            "Housekeeping": ["G4", "G5", "G6"],
        },
        source="test",
    )


@pytest.fixture
def scenario_gene_set():
    return {"S1": GeneSet("S1", "S1", frozenset({"G1", "G2"}), "test")}


# ============================================================================
# Mock Fixtures for External Services
# ============================================================================


@pytest.fixture
def mock_gmt_library():
    """Raw Enrichr-style library as returned by gseapy.get_library."""
    return {
        "Wound healing (GO:0042060)": ["VEGFA", "FGF2", "TGFB1", "FN1"],
        "Keratinization (GO:0031424)": ["KRT6A", "KRT16", "KRT17", "FLG", "LOR"],
        "Angiogenesis (GO:0001525)": ["VEGFA", "FGF2"],
    }


@pytest.fixture
def mock_gseapy(monkeypatch, mock_gmt_library):
    """Mock gseapy so library downloads, GMT parsing and prerank never run for real."""
    import gene_sets

    mock_gp = MagicMock()
    mock_gp.get_library = MagicMock(return_value=mock_gmt_library)
    mock_gp.read_gmt = MagicMock(return_value=mock_gmt_library)

    # Mock GSEA prerank function
    mock_prerank_result = MagicMock()
    mock_prerank_result.res2d = pd.DataFrame(
        {
            "Name": ["prerank", "prerank"],
            "Term": ["top", "bottom"],
            "ES": [0.9, -0.85],
            "NES": [2.1, -1.9],
            "NOM p-val": [0.001, 0.004],
            "FDR q-val": [0.002, 0.004],
            "FWER p-val": [0.002, 0.008],
            "Lead_genes": ["G000;G001;G002", "G099;G098"],
        }
    )
    mock_gp.prerank = MagicMock(return_value=mock_prerank_result)

    monkeypatch.setattr("gene_sets.gp", mock_gp)
    monkeypatch.setattr("ranked_enrichment.gp", mock_gp)
    gene_sets._download_library.cache_clear()
    yield mock_gp
    gene_sets._download_library.cache_clear()
