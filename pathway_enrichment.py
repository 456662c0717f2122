"""
Pathway Enrichment Analysis Module

Hypergeometric over-representation analysis (ORA) of a foreground gene set
against gene-set catalogs (GO Biological Process / Molecular Function /
Cellular Component, KEGG, MSigDB).

Classes:
    EnrichmentResult: Per-term enrichment statistics (shared with GSEA)
    SetEnrichmentEngine: ORA over one or more catalogs
"""

from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple
import logging
import numpy as np
import pandas as pd
from scipy.stats import hypergeom

from analysis_errors import EmptyForegroundError
from gene_classifier import ClassifiedGene, RegulationLabel
from gene_sets import GeneSetCatalog
from multiple_testing import benjamini_hochberg, storey_qvalues

logger = logging.getLogger(__name__)

NAN = float("nan")
DIRECTIONS = ("up", "down", "both")


@dataclass(frozen=True)
class EnrichmentResult:
    """
    Enrichment statistics for one term.

    ORA fills overlap/expected/fold_enrichment/qvalue/overlap_genes/passes_cutoff;
    GSEA fills enrichment_score/normalized_score/leading_edge. Fields a method
    does not compute are NaN or empty.
    """

    term_id: str
    name: str
    overlap: int  # foreground ∩ term (ORA) or members present in the ranking (GSEA)
    term_size: int  # term members in the universe (ORA) or full set size (GSEA)
    expected: float
    pvalue: float
    padj: float
    qvalue: float = NAN
    fold_enrichment: float = NAN
    enrichment_score: float = NAN
    normalized_score: float = NAN
    overlap_genes: Tuple[str, ...] = field(default_factory=tuple)
    leading_edge: Tuple[str, ...] = field(default_factory=tuple)
    passes_cutoff: bool = False
    source: Optional[str] = None


def hypergeometric_pvalue(k: int, population: int, successes: int, draws: int) -> float:
    """
    P(X >= k) for X ~ Hypergeometric(population, successes, draws).

    Zero overlap gives exactly 1.0.
    """
    if k <= 0:
        return 1.0
    return float(min(1.0, hypergeom.sf(k - 1, population, successes, draws)))


class SetEnrichmentEngine:
    """
    Over-representation analysis with the hypergeometric test.

    Args:
        pvalue_cutoff: padj threshold for ``passes_cutoff`` (strict <)
        qvalue_cutoff: q-value threshold for ``passes_cutoff`` (strict <)
    """

    def __init__(self, pvalue_cutoff: float = 0.05, qvalue_cutoff: float = 0.2):
        for label, value in (("pvalue_cutoff", pvalue_cutoff), ("qvalue_cutoff", qvalue_cutoff)):
            if not 0 < value <= 1:
                raise ValueError(f"{label} must be in (0, 1], got {value}")
        self.pvalue_cutoff = pvalue_cutoff
        self.qvalue_cutoff = qvalue_cutoff

    def enrich(
        self,
        foreground: Iterable[str],
        universe: Iterable[str],
        catalog: GeneSetCatalog,
    ) -> Tuple[EnrichmentResult, ...]:
        """
        Test every term of ``catalog`` for over-representation in ``foreground``.

        Args:
            foreground: Changed genes
            universe: All genes that could have been selected (tested genes)
            catalog: term id → GeneSet

        Returns:
            One EnrichmentResult per term (zero-overlap terms included), sorted
            by p-value then term id. Adjustment is across all terms of this catalog.

        Raises:
            EmptyForegroundError: foreground ∩ universe is empty
        """
        universe_set = frozenset(str(g) for g in universe)
        fg = frozenset(str(g) for g in foreground) & universe_set
        if not fg:
            raise EmptyForegroundError(
                "Foreground is empty after intersecting with the universe",
                details={"universe_size": len(universe_set)},
            )
        population = len(universe_set)
        draws = len(fg)

        rows = []
        for term_id, gene_set in catalog.items():
            members = gene_set.members & universe_set
            hits = members & fg
            k, size = len(hits), len(members)
            expected = draws * size / population
            rows.append(
                dict(
                    term_id=str(term_id),
                    name=gene_set.name,
                    overlap=k,
                    term_size=size,
                    expected=expected,
                    pvalue=hypergeometric_pvalue(k, population, size, draws),
                    fold_enrichment=k / expected if expected > 0 else NAN,
                    overlap_genes=tuple(sorted(hits)),
                    source=gene_set.source,
                )
            )
        if not rows:
            return ()

        pvalues = np.array([r["pvalue"] for r in rows])
        padj = benjamini_hochberg(pvalues)
        qvalues = storey_qvalues(pvalues)

        results = [
            EnrichmentResult(
                padj=float(pa),
                qvalue=float(q),
                passes_cutoff=bool(pa < self.pvalue_cutoff and q < self.qvalue_cutoff),
                **row,
            )
            for row, pa, q in zip(rows, padj, qvalues)
        ]
        results.sort(key=lambda r: (r.pvalue, r.term_id))
        n_pass = sum(r.passes_cutoff for r in results)
        logger.info(
            f"ORA: {draws} foreground genes, universe {population}, "
            f"{len(results)} terms tested, {n_pass} pass cutoffs"
        )
        return tuple(results)

    def enrich_catalogs(
        self,
        foreground: Iterable[str],
        universe: Iterable[str],
        catalogs: Mapping[str, GeneSetCatalog],
    ) -> Dict[str, Tuple[EnrichmentResult, ...]]:
        """Run ``enrich`` once per named catalog; each catalog is its own adjustment family."""
        foreground = list(foreground)
        universe = list(universe)
        return {
            name: self.enrich(foreground, universe, catalog)
            for name, catalog in catalogs.items()
        }


def select_foreground(
    classified: Sequence[ClassifiedGene],
    direction: str = "both",
    key: str = "gene_id",
) -> Tuple[frozenset, frozenset]:
    """
    Foreground and universe gene ids from classified results.

    Args:
        classified: ClassifiedGenes
        direction: "up", "down" or "both"
        key: Identifier to report: "gene_id", "symbol" or "entrez_id"

    Returns:
        (foreground, universe); the universe is every tested gene. Genes with
        no identifier under ``key`` are left out of both.
    """
    if direction not in DIRECTIONS:
        raise ValueError(f"direction must be one of {DIRECTIONS}, got '{direction}'")
    wanted = {
        "up": {RegulationLabel.UP},
        "down": {RegulationLabel.DOWN},
        "both": {RegulationLabel.UP, RegulationLabel.DOWN},
    }[direction]
    foreground, universe = set(), set()
    for gene in classified:
        ident = getattr(gene, key)
        if ident is None or not gene.result.is_tested:
            continue
        universe.add(ident)
        if gene.label in wanted:
            foreground.add(ident)
    return frozenset(foreground), frozenset(universe)


def significant(results: Iterable[EnrichmentResult]) -> Tuple[EnrichmentResult, ...]:
    return tuple(r for r in results if r.passes_cutoff)


def results_to_frame(results: Sequence[EnrichmentResult], top_n: Optional[int] = None) -> pd.DataFrame:
    """
    Tabulate results in Enrichr style.

    Columns: Term, Term ID, Overlap ("k/K"), P-value, Adjusted P-value,
    Q-value, Fold Enrichment, NES, Genes (";"-joined)
    """
    records: List[Dict[str, object]] = []
    for r in results:
        genes = r.overlap_genes or r.leading_edge
        records.append(
            {
                "Term": r.name,
                "Term ID": r.term_id,
                "Overlap": f"{r.overlap}/{r.term_size}",
                "P-value": r.pvalue,
                "Adjusted P-value": r.padj,
                "Q-value": r.qvalue,
                "Fold Enrichment": r.fold_enrichment,
                "NES": r.normalized_score,
                "Genes": ";".join(genes),
            }
        )
    columns = [
        "Term", "Term ID", "Overlap", "P-value", "Adjusted P-value",
        "Q-value", "Fold Enrichment", "NES", "Genes",
    ]
    df = pd.DataFrame.from_records(records, columns=columns)
    df = df.sort_values("Adjusted P-value", kind="mergesort", na_position="last")
    if top_n is not None:
        df = df.head(top_n)
    return df.reset_index(drop=True)
