"""
Rank-based gene set enrichment (GSEA).

Each term is scored by a weighted Kolmogorov-Smirnov running sum over a
ranked gene list. Significance comes from gene-label permutations: the term's
member positions are reshuffled over the ranking and the null enrichment
scores are compared with the observed score of the same sign.

The default "native" engine does this on numpy. The "gseapy" engine hands
the same terms to gseapy.prerank and keeps its ES, NES, nominal p-value and
leading edge; both engines BH-adjust the nominal p-values across terms.
"""

from concurrent.futures import ThreadPoolExecutor
from typing import Dict, List, Optional, Sequence, Tuple
import logging
import math
import zlib
import numpy as np
import pandas as pd
import gseapy as gp

from analysis_errors import DuplicateGeneError, InvalidRankingError
from de_analysis import DifferentialResult
from gene_sets import GeneSet, GeneSetCatalog
from multiple_testing import benjamini_hochberg
from nb_glm import effective_n_jobs
from pathway_enrichment import EnrichmentResult

logger = logging.getLogger(__name__)

ENGINES = ("native", "gseapy")
RANKING_METRICS = ("stat", "signed_log10_pvalue", "log2_fold_change")
# Cap on genes × permutations held in memory per batch
MAX_BATCH_CELLS = 2_000_000


def validate_ranking(ranked_genes: Sequence[Tuple[str, float]]) -> Tuple[List[str], np.ndarray]:
    """
    Check a ranked list and split it into ids and scores.

    Raises:
        DuplicateGeneError: a gene id appears more than once
        InvalidRankingError: empty list, non-finite scores, or not sorted descending
    """
    if len(ranked_genes) == 0:
        raise InvalidRankingError("Ranked gene list is empty")
    genes = [str(g) for g, _ in ranked_genes]
    seen, dups = set(), []
    for g in genes:
        if g in seen:
            dups.append(g)
        seen.add(g)
    if dups:
        raise DuplicateGeneError(
            f"Ranked list contains {len(dups)} duplicate gene ids",
            details={"duplicates": sorted(set(dups))[:20]},
        )
    scores = np.array([float(s) for _, s in ranked_genes])
    if not np.all(np.isfinite(scores)):
        raise InvalidRankingError("Ranked list contains non-finite scores")
    if np.any(np.diff(scores) > 0):
        raise InvalidRankingError("Ranked list must be sorted by descending score")
    return genes, scores


def running_sum(
    scores: np.ndarray, hits: np.ndarray, weight: float = 1.0
) -> np.ndarray:
    """
    Running enrichment sum for one or more hit masks.

    Args:
        scores: (N,) ranking scores, descending
        hits: (N,) or (B, N) boolean membership masks
        weight: Exponent applied to |score| for hit steps

    Returns:
        Array of the same shape as ``hits``
    """
    hits = np.asarray(hits, dtype=bool)
    n = scores.shape[0]
    hit_w = np.where(hits, np.abs(scores) ** weight, 0.0)
    norm = hit_w.sum(axis=-1, keepdims=True)
    # All member scores zero: weight members equally
    flat = norm == 0
    if np.any(flat):
        hit_w = np.where(flat, hits.astype(float), hit_w)
        norm = np.where(flat, hits.sum(axis=-1, keepdims=True), norm)
    n_hits = hits.sum(axis=-1, keepdims=True)
    miss_step = 1.0 / (n - n_hits)
    return np.cumsum(hit_w / norm, axis=-1) - np.cumsum(np.where(hits, 0.0, miss_step), axis=-1)


def enrichment_score(rs: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """Signed maximum deviation from zero and its position, along the last axis."""
    peak = np.asarray(np.argmax(np.abs(rs), axis=-1))
    es = np.take_along_axis(rs, peak[..., None], axis=-1)[..., 0]
    return es, peak


class RankedEnrichmentEngine:
    """
    GSEA over a ranked gene list.

    Args:
        permutations: Number of label permutations per term
        min_size: Minimum members present in the ranking for a term to be tested
        max_size: Optional maximum members present in the ranking
        weight: Score exponent for the running sum (1 = classic weighted GSEA)
        seed: Base random seed; each term derives its own stream from it
        n_jobs: Worker threads across terms (1 = serial, 0 = all CPUs)
        fdr_cutoff: padj threshold for ``passes_cutoff`` (strict <)
        engine: "native" (default) or "gseapy" (gseapy.prerank)
    """

    def __init__(
        self,
        permutations: int = 1000,
        min_size: int = 5,
        max_size: Optional[int] = None,
        weight: float = 1.0,
        seed: int = 0,
        n_jobs: Optional[int] = 1,
        fdr_cutoff: float = 0.25,
        engine: str = "native",
    ):
        if engine not in ENGINES:
            raise ValueError(f"Unknown engine '{engine}', expected one of {ENGINES}")
        if permutations < 1:
            raise ValueError(f"permutations must be >= 1, got {permutations}")
        if min_size < 1:
            raise ValueError(f"min_size must be >= 1, got {min_size}")
        if max_size is not None and max_size < min_size:
            raise ValueError(f"max_size ({max_size}) must be >= min_size ({min_size})")
        if weight < 0:
            raise ValueError(f"weight must be >= 0, got {weight}")
        self.permutations = permutations
        self.min_size = min_size
        self.max_size = max_size
        self.weight = weight
        self.seed = seed
        self.n_jobs = n_jobs
        self.fdr_cutoff = fdr_cutoff
        self.engine = engine

    def rank_enrich(
        self,
        ranked_genes: Sequence[Tuple[str, float]],
        catalog: GeneSetCatalog,
    ) -> Tuple[EnrichmentResult, ...]:
        """
        Score every eligible term of ``catalog`` against the ranking.

        Args:
            ranked_genes: (gene_id, score) pairs sorted by descending score
            catalog: term id → GeneSet

        Returns:
            EnrichmentResults sorted by padj, p-value, then term id. Terms with
            fewer than ``min_size`` (or more than ``max_size``) members in the
            ranking are excluded.

        Raises:
            DuplicateGeneError, InvalidRankingError: malformed ranking
        """
        genes, scores = validate_ranking(ranked_genes)
        position = {g: i for i, g in enumerate(genes)}
        n = len(genes)

        tasks = []
        n_skipped = 0
        for term_id, gene_set in catalog.items():
            idx = np.array(sorted(position[g] for g in gene_set.members if g in position), dtype=int)
            size = idx.size
            too_big = self.max_size is not None and size > self.max_size
            if size < self.min_size or too_big or size >= n:
                n_skipped += 1
                continue
            tasks.append((str(term_id), gene_set, idx))
        logger.info(
            f"GSEA: {len(tasks)} terms tested over {n} ranked genes "
            f"({n_skipped} outside size limits), {self.permutations} permutations, engine={self.engine}"
        )
        if not tasks:
            return ()

        workers = min(effective_n_jobs(self.n_jobs), len(tasks))
        if self.engine == "gseapy":
            scored = self._score_gseapy(genes, scores, tasks, workers)
        elif workers <= 1:
            scored = [self._score_term(scores, genes, *task) for task in tasks]
        else:
            with ThreadPoolExecutor(max_workers=workers) as executor:
                scored = list(executor.map(lambda t: self._score_term(scores, genes, *t), tasks))
        if not scored:
            return ()

        padj = benjamini_hochberg([s["pvalue"] for s in scored])
        results = [
            EnrichmentResult(
                padj=float(pa),
                passes_cutoff=bool(pa < self.fdr_cutoff),
                **fields,
            )
            for fields, pa in zip(scored, padj)
        ]
        results.sort(key=lambda r: (_nan_last(r.padj), _nan_last(r.pvalue), r.term_id))
        return tuple(results)

    def _score_term(
        self, scores: np.ndarray, genes: List[str], term_id: str, gene_set: GeneSet, idx: np.ndarray
    ) -> Dict[str, object]:
        n = scores.shape[0]
        hits = np.zeros(n, dtype=bool)
        hits[idx] = True
        rs = running_sum(scores, hits, self.weight)
        es_arr, peak_arr = enrichment_score(rs)
        es, peak = float(es_arr), int(peak_arr)

        null = self._null_scores(scores, idx.size, term_id)
        if es >= 0:
            same = null[null >= 0]
            pvalue = (np.sum(same >= es) + 1) / (same.size + 1)
            leading = idx[idx <= peak]
        else:
            same = null[null < 0]
            pvalue = (np.sum(same <= es) + 1) / (same.size + 1)
            leading = idx[idx >= peak]
        nes = es / np.mean(np.abs(same)) if same.size and np.mean(np.abs(same)) > 0 else math.nan

        return dict(
            term_id=term_id,
            name=gene_set.name,
            overlap=int(idx.size),
            term_size=len(gene_set),
            expected=math.nan,
            pvalue=float(pvalue),
            enrichment_score=es,
            normalized_score=float(nes),
            leading_edge=tuple(genes[i] for i in leading),
            source=gene_set.source,
        )

    def _score_gseapy(
        self,
        genes: List[str],
        scores: np.ndarray,
        tasks: List[Tuple[str, GeneSet, np.ndarray]],
        workers: int,
    ) -> List[Dict[str, object]]:
        """Run gseapy.prerank on the eligible terms and read back res2d."""
        rnk = pd.Series(scores, index=genes)
        gene_sets = {term_id: [genes[i] for i in idx] for term_id, _, idx in tasks}
        pre_res = gp.prerank(
            rnk=rnk,
            gene_sets=gene_sets,
            min_size=self.min_size,
            max_size=self.max_size if self.max_size is not None else len(genes),
            permutation_num=self.permutations,
            weight=self.weight,
            threads=max(workers, 1),
            seed=self.seed,
            outdir=None,
            no_plot=True,
            verbose=False,
        )
        rows = {str(row["Term"]): row for _, row in pre_res.res2d.iterrows()}

        scored = []
        for term_id, gene_set, idx in tasks:
            row = rows.get(term_id)
            if row is None:
                logger.warning(f"gseapy returned no result for term '{term_id}'")
                continue
            lead = row.get("Lead_genes", "")
            lead = lead if isinstance(lead, str) else ""
            scored.append(dict(
                term_id=term_id,
                name=gene_set.name,
                overlap=int(idx.size),
                term_size=len(gene_set),
                expected=math.nan,
                pvalue=float(row["NOM p-val"]),
                enrichment_score=float(row["ES"]),
                normalized_score=float(row["NES"]),
                leading_edge=tuple(g for g in lead.split(";") if g),
                source=gene_set.source,
            ))
        return scored

    def _null_scores(self, scores: np.ndarray, n_hits: int, term_id: str) -> np.ndarray:
        """Enrichment scores of ``permutations`` random member placements."""
        rng = np.random.default_rng([self.seed, zlib.crc32(term_id.encode("utf-8"))])
        n = scores.shape[0]
        batch = max(1, min(self.permutations, MAX_BATCH_CELLS // max(n, 1)))
        null = np.empty(self.permutations)
        done = 0
        while done < self.permutations:
            b = min(batch, self.permutations - done)
            keys = rng.random((b, n))
            picks = np.argpartition(keys, n_hits - 1, axis=1)[:, :n_hits]
            hits = np.zeros((b, n), dtype=bool)
            np.put_along_axis(hits, picks, True, axis=1)
            es, _ = enrichment_score(running_sum(scores, hits, self.weight))
            null[done:done + b] = es
            done += b
        return null


def _nan_last(value: float) -> float:
    return math.inf if math.isnan(value) else value


def ranking_from_results(
    results: Sequence[DifferentialResult],
    metric: str = "stat",
    key: str = "gene_id",
) -> Tuple[Tuple[str, float], ...]:
    """
    Build a descending ranked list from differential results.

    Args:
        results: DifferentialResults
        metric: "stat" (Wald statistic), "signed_log10_pvalue"
            (-log10(p) * sign(log2FC)) or "log2_fold_change"
        key: Identifier used in the ranking: "gene_id", "symbol" or "entrez_id"

    Returns:
        (gene, score) pairs; untested genes and genes without an identifier are
        skipped, and when several genes share an identifier the one with the
        largest absolute score is kept.
    """
    if metric not in RANKING_METRICS:
        raise ValueError(f"metric must be one of {RANKING_METRICS}, got '{metric}'")
    tiny = np.finfo(float).tiny
    pairs = []
    for r in results:
        ident = getattr(r, key)
        if ident is None or not r.is_tested:
            continue
        if metric == "stat":
            score = r.stat
        elif metric == "log2_fold_change":
            score = r.log2_fold_change
        else:
            score = -math.log10(max(r.pvalue, tiny)) * np.sign(r.log2_fold_change)
        if not math.isfinite(score):
            continue
        pairs.append((str(ident), float(score)))

    # Among duplicates keep the strongest signal in either direction
    best: Dict[str, float] = {}
    for gene, score in pairs:
        if gene not in best or abs(score) > abs(best[gene]):
            best[gene] = score
    if len(best) < len(pairs):
        logger.info(f"Dropped {len(pairs) - len(best)} weaker duplicate {key} entries")
    return tuple(sorted(best.items(), key=lambda p: -p[1]))
