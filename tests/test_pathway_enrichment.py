"""Tests for hypergeometric over-representation analysis."""
import math

import pytest

from analysis_errors import EmptyForegroundError
from gene_sets import catalog_from_mapping
from pathway_enrichment import (
    SetEnrichmentEngine,
    hypergeometric_pvalue,
    results_to_frame,
    select_foreground,
    significant,
)


class TestHypergeometric:
    def test_scenario_value(self):
        # N=4, K=2, n=1, k=1: P(X >= 1) = 2/4
        assert hypergeometric_pvalue(1, 4, 2, 1) == pytest.approx(0.5)

    def test_all_drawn_from_term(self):
        assert hypergeometric_pvalue(3, 10, 3, 3) == pytest.approx(1 / math.comb(10, 3))

    def test_zero_overlap(self):
        assert hypergeometric_pvalue(0, 100, 10, 5) == 1.0


class TestSetEnrichmentEngine:
    def test_scenario(self, scenario_gene_set):
        results = SetEnrichmentEngine().enrich({"G1"}, {"G1", "G2", "G3", "G4"}, scenario_gene_set)
        assert len(results) == 1
        r = results[0]
        assert r.overlap == 1
        assert r.term_size == 2
        assert r.pvalue == pytest.approx(0.5)
        assert r.padj == pytest.approx(0.5)
        assert r.expected == pytest.approx(0.5)
        assert r.fold_enrichment == pytest.approx(2.0)
        assert r.overlap_genes == ("G1",)
        assert not r.passes_cutoff

    def test_every_term_reported_sorted(self, sample_classified, sample_catalog):
        fg, universe = select_foreground(sample_classified, "both")
        results = SetEnrichmentEngine().enrich(fg, universe, sample_catalog)
        assert [r.term_id for r in results] == ["Angiogenesis", "Barrier", "Housekeeping"]
        assert results[0].pvalue == pytest.approx(0.3)
        assert results[1].pvalue == pytest.approx(0.9)

    def test_zero_overlap_retained(self, sample_classified, sample_catalog):
        fg, universe = select_foreground(sample_classified, "both")
        results = SetEnrichmentEngine().enrich(fg, universe, sample_catalog)
        housekeeping = results[-1]
        assert housekeeping.overlap == 0
        assert housekeeping.pvalue == 1.0
        assert housekeeping.padj == pytest.approx(1.0)

    def test_members_outside_universe_ignored(self, sample_classified, sample_catalog):
        fg, universe = select_foreground(sample_classified, "both")
        results = SetEnrichmentEngine().enrich(fg, universe, sample_catalog)
        angiogenesis = results[0]
        # G7 was never measured
        assert angiogenesis.term_size == 2
        assert angiogenesis.overlap_genes == ("G1", "G2")

    def test_padj_not_below_pvalue(self, sample_classified, sample_catalog):
        fg, universe = select_foreground(sample_classified, "both")
        for r in SetEnrichmentEngine().enrich(fg, universe, sample_catalog):
            assert r.padj >= r.pvalue
            assert r.qvalue <= r.padj + 1e-12

    def test_empty_foreground(self, scenario_gene_set):
        with pytest.raises(EmptyForegroundError):
            SetEnrichmentEngine().enrich(set(), {"G1", "G2"}, scenario_gene_set)

    def test_foreground_outside_universe(self, scenario_gene_set):
        with pytest.raises(EmptyForegroundError):
            SetEnrichmentEngine().enrich({"X"}, {"G1", "G2"}, scenario_gene_set)

    def test_strong_enrichment_passes(self):
        universe = [f"G{i}" for i in range(200)]
        foreground = universe[:10]
        catalog = catalog_from_mapping(
            {"hit": universe[:10] + universe[100:102], "miss": universe[150:170]}
        )
        results = SetEnrichmentEngine().enrich(foreground, universe, catalog)
        assert results[0].term_id == "hit"
        assert results[0].passes_cutoff
        assert significant(results) == (results[0],)

    def test_enrich_catalogs(self, sample_classified, sample_catalog, scenario_gene_set):
        fg, universe = select_foreground(sample_classified, "up")
        out = SetEnrichmentEngine().enrich_catalogs(
            fg, universe, {"panels": sample_catalog, "pair": scenario_gene_set}
        )
        assert set(out) == {"panels", "pair"}
        assert len(out["panels"]) == 3
        assert out["pair"][0].overlap == 2

    def test_invalid_cutoff(self):
        with pytest.raises(ValueError):
            SetEnrichmentEngine(pvalue_cutoff=0)


class TestSelectForeground:
    def test_directions(self, sample_classified):
        up, universe = select_foreground(sample_classified, "up")
        down, _ = select_foreground(sample_classified, "down")
        both, _ = select_foreground(sample_classified, "both")
        assert up == {"G1", "G2"}
        assert down == {"G3"}
        assert both == {"G1", "G2", "G3"}
        assert universe == {"G1", "G2", "G3", "G4", "G5"}

    def test_symbol_key(self, sample_classified):
        up, universe = select_foreground(sample_classified, "up", key="symbol")
        assert up == {"VEGFA", "FN1"}
        assert "XIST" not in universe

    def test_invalid_direction(self, sample_classified):
        with pytest.raises(ValueError, match="direction"):
            select_foreground(sample_classified, "sideways")


class TestResultsToFrame:
    def test_columns_and_order(self, sample_classified, sample_catalog):
        fg, universe = select_foreground(sample_classified, "both")
        results = SetEnrichmentEngine().enrich(fg, universe, sample_catalog)
        df = results_to_frame(results, top_n=2)
        assert len(df) == 2
        assert df.loc[0, "Term"] == "Angiogenesis"
        assert df.loc[0, "Overlap"] == "2/2"
        assert df.loc[0, "Genes"] == "G1;G2"
        assert "Adjusted P-value" in df.columns

    def test_empty(self):
        assert results_to_frame([]).empty
