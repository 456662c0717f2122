"""Tests for rank-based gene set enrichment."""
import math

import numpy as np
import pytest

from analysis_errors import DuplicateGeneError, InvalidRankingError
from conftest import make_result
from gene_sets import catalog_from_mapping
from ranked_enrichment import (
    RankedEnrichmentEngine,
    enrichment_score,
    ranking_from_results,
    running_sum,
    validate_ranking,
)


def _summary(results):
    return [(r.term_id, r.enrichment_score, r.normalized_score, r.pvalue, r.padj) for r in results]


@pytest.fixture
def ranked_genes():
    """100 genes with scores falling evenly from 3 to -3."""
    scores = np.linspace(3, -3, 100)
    return [(f"G{i:03d}", float(s)) for i, s in enumerate(scores)]


@pytest.fixture
def gsea_catalog(ranked_genes):
    genes = [g for g, _ in ranked_genes]
    return catalog_from_mapping(
        {
            "top": genes[:10],
            "bottom": genes[-10:],
            "scattered": genes[::10],
            "tiny": genes[:3],
        },
        source="test",
    )


class TestRunningSum:
    def test_ends_at_zero(self):
        scores = np.linspace(2, -2, 20)
        hits = np.zeros(20, dtype=bool)
        hits[[0, 5, 12]] = True
        rs = running_sum(scores, hits)
        assert rs[-1] == pytest.approx(0.0, abs=1e-12)

    def test_all_hits_at_top_reach_one(self):
        scores = np.linspace(2, -2, 20)
        hits = np.zeros(20, dtype=bool)
        hits[:4] = True
        es, peak = enrichment_score(running_sum(scores, hits))
        assert float(es) == pytest.approx(1.0)
        assert int(peak) == 3

    def test_zero_scores_use_equal_weights(self):
        scores = np.zeros(10)
        hits = np.zeros(10, dtype=bool)
        hits[:2] = True
        rs = running_sum(scores, hits)
        assert rs[1] == pytest.approx(1.0)

    def test_batched_masks(self):
        scores = np.linspace(1, -1, 10)
        hits = np.zeros((3, 10), dtype=bool)
        hits[0, :2] = hits[1, -2:] = hits[2, [0, 9]] = True
        es, _ = enrichment_score(running_sum(scores, hits))
        assert es.shape == (3,)
        assert es[0] > 0 > es[1]


class TestValidateRanking:
    def test_duplicates(self):
        with pytest.raises(DuplicateGeneError):
            validate_ranking([("A", 2.0), ("B", 1.0), ("A", 0.5)])

    def test_not_descending(self):
        with pytest.raises(InvalidRankingError, match="descending"):
            validate_ranking([("A", 1.0), ("B", 2.0)])

    def test_empty(self):
        with pytest.raises(InvalidRankingError, match="empty"):
            validate_ranking([])

    def test_non_finite(self):
        with pytest.raises(InvalidRankingError, match="non-finite"):
            validate_ranking([("A", float("nan")), ("B", 1.0)])

    def test_ties_allowed(self):
        genes, scores = validate_ranking([("A", 1.0), ("B", 1.0), ("C", 0.0)])
        assert genes == ["A", "B", "C"]
        assert scores.tolist() == [1.0, 1.0, 0.0]


class TestRankedEnrichmentEngine:
    def test_top_concentrated_set(self, ranked_genes, gsea_catalog):
        results = RankedEnrichmentEngine(permutations=500, seed=1).rank_enrich(ranked_genes, gsea_catalog)
        top = next(r for r in results if r.term_id == "top")
        assert top.enrichment_score > 0.5
        assert top.normalized_score > 1
        assert top.pvalue < 0.01
        assert top.passes_cutoff
        assert top.leading_edge == tuple(g for g, _ in ranked_genes[:10])

    def test_bottom_concentrated_set(self, ranked_genes, gsea_catalog):
        results = RankedEnrichmentEngine(permutations=500, seed=1).rank_enrich(ranked_genes, gsea_catalog)
        bottom = next(r for r in results if r.term_id == "bottom")
        assert bottom.enrichment_score < -0.5
        assert bottom.normalized_score < -1
        assert bottom.pvalue < 0.01
        assert set(bottom.leading_edge) == {g for g, _ in ranked_genes[-10:]}

    def test_scattered_set_near_zero(self, ranked_genes, gsea_catalog):
        results = RankedEnrichmentEngine(permutations=500, seed=1).rank_enrich(ranked_genes, gsea_catalog)
        scattered = next(r for r in results if r.term_id == "scattered")
        top = next(r for r in results if r.term_id == "top")
        assert abs(scattered.enrichment_score) < 0.35
        assert abs(scattered.enrichment_score) < top.enrichment_score
        assert scattered.pvalue > 0.1
        assert not scattered.passes_cutoff

    def test_small_sets_skipped(self, ranked_genes, gsea_catalog):
        results = RankedEnrichmentEngine(permutations=50, min_size=5).rank_enrich(ranked_genes, gsea_catalog)
        assert "tiny" not in {r.term_id for r in results}
        assert len(results) == 3

    def test_max_size(self, ranked_genes, gsea_catalog):
        results = RankedEnrichmentEngine(permutations=50, min_size=2, max_size=5).rank_enrich(
            ranked_genes, gsea_catalog
        )
        assert [r.term_id for r in results] == ["tiny"]

    def test_set_covering_ranking_skipped(self, ranked_genes):
        catalog = catalog_from_mapping({"everything": [g for g, _ in ranked_genes]})
        assert RankedEnrichmentEngine(permutations=10).rank_enrich(ranked_genes, catalog) == ()

    def test_sorted_by_padj(self, ranked_genes, gsea_catalog):
        results = RankedEnrichmentEngine(permutations=200).rank_enrich(ranked_genes, gsea_catalog)
        padj = [r.padj for r in results]
        assert padj == sorted(padj)
        assert all(r.padj >= r.pvalue for r in results)

    def test_reproducible_with_seed(self, ranked_genes, gsea_catalog):
        first = RankedEnrichmentEngine(permutations=200, seed=7).rank_enrich(ranked_genes, gsea_catalog)
        second = RankedEnrichmentEngine(permutations=200, seed=7).rank_enrich(ranked_genes, gsea_catalog)
        assert _summary(first) == _summary(second)

    def test_threads_match_serial(self, ranked_genes, gsea_catalog):
        serial = RankedEnrichmentEngine(permutations=200, seed=3).rank_enrich(ranked_genes, gsea_catalog)
        threaded = RankedEnrichmentEngine(permutations=200, seed=3, n_jobs=3).rank_enrich(
            ranked_genes, gsea_catalog
        )
        assert _summary(serial) == _summary(threaded)

    def test_pvalue_floor(self, ranked_genes, gsea_catalog):
        results = RankedEnrichmentEngine(permutations=99, seed=1).rank_enrich(ranked_genes, gsea_catalog)
        assert all(r.pvalue >= 1 / 100 for r in results)

    def test_duplicate_ranking_rejected(self, gsea_catalog):
        with pytest.raises(DuplicateGeneError):
            RankedEnrichmentEngine().rank_enrich([("G000", 2.0), ("G000", 1.0)], gsea_catalog)

    @pytest.mark.parametrize(
        "kwargs",
        [{"permutations": 0}, {"min_size": 0}, {"min_size": 5, "max_size": 2}, {"weight": -1}],
    )
    def test_invalid_parameters(self, kwargs):
        with pytest.raises(ValueError):
            RankedEnrichmentEngine(**kwargs)


class TestRankingFromResults:
    def test_sorted_and_untested_skipped(self, sample_de_results):
        ranked = ranking_from_results(sample_de_results, metric="stat")
        genes = [g for g, _ in ranked]
        assert "G6" not in genes
        assert genes[0] == "G1"
        assert genes[-1] == "G3"
        scores = [s for _, s in ranked]
        assert scores == sorted(scores, reverse=True)

    def test_signed_log10_pvalue(self):
        results = [make_result("UP", 0.001, 2.0), make_result("DOWN", 0.01, -1.0)]
        ranked = dict(ranking_from_results(results, metric="signed_log10_pvalue"))
        assert ranked["UP"] == pytest.approx(3.0)
        assert ranked["DOWN"] == pytest.approx(-2.0)

    def test_duplicate_symbols_keep_best(self):
        results = [
            make_result("ENSG1", 0.01, 1.0, symbol="TP53"),
            make_result("ENSG2", 0.01, 3.0, symbol="TP53"),
        ]
        ranked = ranking_from_results(results, metric="log2_fold_change", key="symbol")
        assert ranked == (("TP53", 3.0),)

    def test_duplicate_down_symbols_keep_strongest(self):
        results = [
            make_result("ENSG1", 0.01, -1.0, symbol="KRT14"),
            make_result("ENSG2", 0.01, -5.0, symbol="KRT14"),
            make_result("ENSG3", 0.01, 2.0, symbol="MMP1"),
        ]
        ranked = ranking_from_results(results, metric="log2_fold_change", key="symbol")
        assert ranked == (("MMP1", 2.0), ("KRT14", -5.0))

    def test_unknown_metric(self, sample_de_results):
        with pytest.raises(ValueError):
            ranking_from_results(sample_de_results, metric="baseMean")

    def test_ranking_feeds_engine(self, sample_de_results, sample_catalog):
        ranked = ranking_from_results(sample_de_results)
        results = RankedEnrichmentEngine(permutations=20, min_size=2).rank_enrich(ranked, sample_catalog)
        assert all(math.isfinite(r.pvalue) for r in results)


class TestGseapyEngine:
    def test_prerank_results_mapped(self, mock_gseapy, ranked_genes, gsea_catalog):
        engine = RankedEnrichmentEngine(permutations=50, seed=3, engine="gseapy")
        results = engine.rank_enrich(ranked_genes, gsea_catalog)
        by_id = {r.term_id: r for r in results}

        # "scattered" is eligible but absent from res2d, "tiny" is below min_size
        assert set(by_id) == {"top", "bottom"}
        top = by_id["top"]
        assert top.enrichment_score == pytest.approx(0.9)
        assert top.normalized_score == pytest.approx(2.1)
        assert top.pvalue == pytest.approx(0.001)
        assert top.leading_edge == ("G000", "G001", "G002")
        assert top.overlap == 10
        assert top.source == "test"
        assert by_id["bottom"].leading_edge == ("G099", "G098")

    def test_nominal_pvalues_bh_adjusted(self, mock_gseapy, ranked_genes, gsea_catalog):
        results = RankedEnrichmentEngine(engine="gseapy").rank_enrich(ranked_genes, gsea_catalog)
        assert [r.term_id for r in results] == ["top", "bottom"]
        assert [r.padj for r in results] == pytest.approx([0.002, 0.004])
        assert all(r.passes_cutoff for r in results)

    def test_prerank_arguments(self, mock_gseapy, ranked_genes, gsea_catalog):
        RankedEnrichmentEngine(permutations=50, seed=3, weight=0.5, engine="gseapy").rank_enrich(
            ranked_genes, gsea_catalog
        )
        mock_gseapy.prerank.assert_called_once()
        kwargs = mock_gseapy.prerank.call_args.kwargs
        assert kwargs["permutation_num"] == 50
        assert kwargs["seed"] == 3
        assert kwargs["weight"] == 0.5
        assert kwargs["min_size"] == 5
        assert kwargs["max_size"] == 100
        assert set(kwargs["gene_sets"]) == {"top", "bottom", "scattered"}
        assert kwargs["gene_sets"]["top"] == [g for g, _ in ranked_genes[:10]]
        assert kwargs["rnk"].index[0] == "G000"
        assert kwargs["rnk"].iloc[0] == pytest.approx(3.0)

    def test_no_eligible_terms_skips_prerank(self, mock_gseapy, ranked_genes, gsea_catalog):
        engine = RankedEnrichmentEngine(min_size=50, engine="gseapy")
        assert engine.rank_enrich(ranked_genes, gsea_catalog) == ()
        mock_gseapy.prerank.assert_not_called()

    def test_unknown_engine(self):
        with pytest.raises(ValueError, match="engine"):
            RankedEnrichmentEngine(engine="fgsea")
