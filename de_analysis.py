"""
Two-group differential expression testing.

The default "native" engine fits a negative-binomial GLM per gene with
DESeq2-style dispersion shrinkage (see nb_glm). The "pydeseq2" engine
delegates the same contrast to PyDESeq2.
"""

from dataclasses import dataclass, replace
from typing import Dict, List, Optional, Sequence, Tuple
import logging
import math
import numpy as np
import pandas as pd

from analysis_errors import DesignDegenerateError, InvalidMatrixError
from count_preparation import CountMatrix, SampleGroupAssignment
from multiple_testing import benjamini_hochberg
from nb_glm import (
    DEFAULT_CHUNK_SIZE,
    GLMFit,
    design_matrix,
    estimate_dispersions,
    estimate_size_factors,
    fit_nb_glm,
    run_gene_chunks,
    wald_test,
)

logger = logging.getLogger(__name__)

ENGINES = ("native", "pydeseq2")

# Column names used when results are exported as a table
RESULT_COLUMNS = {
    "gene_id": "gene",
    "base_mean": "baseMean",
    "log2_fold_change": "log2FoldChange",
    "lfc_se": "lfcSE",
    "stat": "stat",
    "pvalue": "pvalue",
    "padj": "padj",
    "dispersion": "dispersion",
    "symbol": "symbol",
    "entrez_id": "entrez_id",
}


@dataclass(frozen=True)
class DifferentialResult:
    """Per-gene result of a group A vs group B test. Undefined statistics are NaN."""

    gene_id: str
    base_mean: float  # mean of size-factor normalized counts
    log2_fold_change: float  # group A over group B
    lfc_se: float
    stat: float  # Wald statistic
    pvalue: float
    padj: float  # Benjamini-Hochberg across tested genes
    dispersion: float = float("nan")
    symbol: Optional[str] = None
    entrez_id: Optional[str] = None

    @property
    def is_tested(self) -> bool:
        return not math.isnan(self.pvalue)

    def with_annotation(
        self, symbol: Optional[str], entrez_id: Optional[str]
    ) -> "DifferentialResult":
        return replace(self, symbol=symbol, entrez_id=entrez_id)


class DifferentialTester:
    """
    Test every gene of a CountMatrix for a difference between two groups.

    Args:
        engine: "native" (default) or "pydeseq2"
        n_jobs: Worker threads for the native engine (1 = serial, 0 = all CPUs)
        chunk_size: Genes per work unit in the native engine
        refit_cooks: Passed to PyDESeq2 (Cook's distance outlier refit)
    """

    def __init__(
        self,
        engine: str = "native",
        n_jobs: Optional[int] = 1,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        refit_cooks: bool = True,
    ):
        if engine not in ENGINES:
            raise ValueError(f"Unknown engine '{engine}', expected one of {ENGINES}")
        if chunk_size < 1:
            raise ValueError(f"chunk_size must be >= 1, got {chunk_size}")
        self.engine = engine
        self.n_jobs = n_jobs
        self.chunk_size = chunk_size
        self.refit_cooks = refit_cooks

    def test(
        self,
        counts: CountMatrix,
        groups: SampleGroupAssignment,
        group_a: str,
        group_b: str,
    ) -> Tuple[DifferentialResult, ...]:
        """
        Compare group A against group B (the reference).

        Args:
            counts: Prepared count matrix
            groups: Sample → group assignment covering every column of ``counts``
            group_a: Test group label (positive log2FC = higher in A)
            group_b: Reference group label

        Returns:
            One DifferentialResult per gene, in count-matrix order

        Raises:
            InvalidMatrixError: a sample has no group assignment
            DesignDegenerateError: groups are identical or empty, there is no
                residual degree of freedom, or no gene could be fit
        """
        samples_a, samples_b = self._validate_design(counts, groups, group_a, group_b)
        logger.info(
            f"Testing {counts.n_genes} genes: '{group_a}' ({len(samples_a)} samples) "
            f"vs '{group_b}' ({len(samples_b)} samples), engine={self.engine}"
        )
        subset = counts.subset_samples(samples_a + samples_b)
        if self.engine == "pydeseq2":
            results = self._test_pydeseq2(subset, len(samples_a), group_a, group_b)
        else:
            results = self._test_native(subset, len(samples_a))

        n_tested = sum(1 for r in results if r.is_tested)
        logger.info(f"Tested {n_tested} of {len(results)} genes")
        return results

    @staticmethod
    def _validate_design(
        counts: CountMatrix,
        groups: SampleGroupAssignment,
        group_a: str,
        group_b: str,
    ) -> Tuple[List[str], List[str]]:
        if group_a == group_b:
            raise DesignDegenerateError(
                f"Cannot compare group '{group_a}' with itself",
                details={"group_a": group_a, "group_b": group_b},
            )
        unassigned = [s for s in counts.sample_ids if s not in groups]
        if unassigned:
            raise InvalidMatrixError(
                f"{len(unassigned)} samples have no group assignment",
                details={"samples": unassigned},
            )
        samples_a = [s for s in counts.sample_ids if groups.get(s) == group_a]
        samples_b = [s for s in counts.sample_ids if groups.get(s) == group_b]
        for label, members in ((group_a, samples_a), (group_b, samples_b)):
            if not members:
                raise DesignDegenerateError(
                    f"Group '{label}' has no samples",
                    details={"group": label, "available": list(groups.labels)},
                )
        if len(samples_a) + len(samples_b) < 3:
            raise DesignDegenerateError(
                "Need at least 3 samples across both groups to estimate dispersion",
                details={"n_a": len(samples_a), "n_b": len(samples_b)},
            )
        ignored = len(counts.sample_ids) - len(samples_a) - len(samples_b)
        if ignored:
            logger.info(f"Ignoring {ignored} samples outside the two compared groups")
        return samples_a, samples_b

    def _test_native(self, counts: CountMatrix, n_a: int) -> Tuple[DifferentialResult, ...]:
        y = counts.values.astype(float)
        n_genes, n_samples = y.shape
        X = design_matrix([True] * n_a + [False] * (n_samples - n_a))

        size_factors, method = estimate_size_factors(y)
        if not np.all(np.isfinite(size_factors)) or np.any(size_factors <= 0):
            raise DesignDegenerateError(
                "Size factors could not be estimated (a sample has no counts)",
                details={"size_factors": dict(zip(counts.sample_ids, size_factors.tolist()))},
            )
        logger.debug(f"Size factors ({method}): {np.round(size_factors, 4).tolist()}")

        base_mean = (y / size_factors[None, :]).mean(axis=1)
        testable = y.sum(axis=1) > 0
        if not testable.any():
            raise DesignDegenerateError("Every gene has zero counts in the compared samples")
        n_zero = int((~testable).sum())
        if n_zero:
            logger.info(f"{n_zero} all-zero genes are reported untested")

        y_test = y[testable]
        disp = estimate_dispersions(
            y_test, X, size_factors, n_jobs=self.n_jobs, chunk_size=self.chunk_size
        )
        fit = GLMFit.concatenate(
            run_gene_chunks(
                lambda yc, ac: fit_nb_glm(yc, X, size_factors, ac),
                [y_test, disp.final],
                n_jobs=self.n_jobs,
                chunk_size=self.chunk_size,
            )
        )
        if not fit.converged.any():
            raise DesignDegenerateError("GLM fit did not converge for any gene")
        n_failed = int((~fit.converged).sum())
        if n_failed:
            logger.warning(f"GLM did not converge for {n_failed} genes; reporting them untested")

        stat, pvalue = wald_test(fit.beta[:, 1], fit.se[:, 1])
        ln2 = np.log(2.0)

        lfc = np.full(n_genes, np.nan)
        lfc_se = np.full(n_genes, np.nan)
        stats = np.full(n_genes, np.nan)
        pvals = np.full(n_genes, np.nan)
        dispersion = np.full(n_genes, np.nan)

        idx = np.flatnonzero(testable)
        ok = fit.converged
        lfc[idx[ok]] = fit.beta[ok, 1] / ln2
        lfc_se[idx[ok]] = fit.se[ok, 1] / ln2
        stats[idx[ok]] = stat[ok]
        pvals[idx[ok]] = pvalue[ok]
        dispersion[idx] = disp.final

        padj = benjamini_hochberg(pvals)
        return tuple(
            DifferentialResult(
                gene_id=gene,
                base_mean=float(base_mean[i]),
                log2_fold_change=float(lfc[i]),
                lfc_se=float(lfc_se[i]),
                stat=float(stats[i]),
                pvalue=float(pvals[i]),
                padj=float(padj[i]),
                dispersion=float(dispersion[i]),
            )
            for i, gene in enumerate(counts.gene_ids)
        )

    def _test_pydeseq2(
        self, counts: CountMatrix, n_a: int, group_a: str, group_b: str
    ) -> Tuple[DifferentialResult, ...]:
        DeseqDataSet, DeseqStats = _import_pydeseq2()

        # Neutral level names keep the contrast independent of user label spelling
        n_samples = counts.n_samples
        metadata = pd.DataFrame(
            {"condition": ["test"] * n_a + ["reference"] * (n_samples - n_a)},
            index=list(counts.sample_ids),
        )
        try:
            dds = DeseqDataSet(
                counts=counts.counts.T,  # samples × genes
                metadata=metadata,
                design="~condition",
                refit_cooks=self.refit_cooks,
                quiet=True,
            )
            dds.deseq2()
            stat_res = DeseqStats(
                dds,
                contrast=["condition", "test", "reference"],
                independent_filter=False,
                quiet=True,
            )
            stat_res.summary()
        except (ValueError, RuntimeError, TypeError, KeyError, np.linalg.LinAlgError) as e:
            logger.error(
                f"PyDESeq2 fit failed for {group_a} vs {group_b}: {str(e)}", exc_info=True
            )
            raise DesignDegenerateError(
                f"PyDESeq2 fit failed: {e}", details={"group_a": group_a, "group_b": group_b}
            ) from e

        res = stat_res.results_df.reindex(list(counts.gene_ids))
        dispersions = pd.Series(
            np.asarray(dds.var["dispersions"], dtype=float), index=dds.var_names
        ).reindex(list(counts.gene_ids))
        if res["pvalue"].isna().all():
            raise DesignDegenerateError("PyDESeq2 produced no testable genes")

        return tuple(
            DifferentialResult(
                gene_id=gene,
                base_mean=float(row["baseMean"]),
                log2_fold_change=float(row["log2FoldChange"]),
                lfc_se=float(row["lfcSE"]),
                stat=float(row["stat"]),
                pvalue=float(row["pvalue"]),
                padj=float(row["padj"]),
                dispersion=float(dispersions[gene]),
            )
            for gene, row in res.iterrows()
        )


def _import_pydeseq2():
    from pydeseq2.dds import DeseqDataSet
    from pydeseq2.ds import DeseqStats

    return DeseqDataSet, DeseqStats


def normalize_counts(counts: CountMatrix) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """
    Size-factor normalized counts.

    Returns:
        normalized_df: genes × samples (raw normalized)
        log_normalized_df: genes × samples (log2(norm+1))
    """
    values = counts.values.astype(float)
    size_factors, _ = estimate_size_factors(values)
    if not np.all(np.isfinite(size_factors)) or np.any(size_factors <= 0):
        raise InvalidMatrixError("Size factors could not be estimated (a sample has no counts)")
    normalized_df = pd.DataFrame(
        values / size_factors[None, :],
        index=list(counts.gene_ids),
        columns=list(counts.sample_ids),
    )
    return normalized_df, np.log2(normalized_df + 1)


def results_to_frame(results: Sequence[DifferentialResult]) -> pd.DataFrame:
    """
    Tabulate results with DESeq2-style column names.

    Columns: gene, baseMean, log2FoldChange, lfcSE, stat, pvalue, padj,
    dispersion, symbol, entrez_id
    """
    records: List[Dict[str, object]] = [
        {column: getattr(r, field) for field, column in RESULT_COLUMNS.items()}
        for r in results
    ]
    return pd.DataFrame.from_records(records, columns=list(RESULT_COLUMNS.values()))


def filter_results(
    results: Sequence[DifferentialResult],
    padj_threshold: float = 0.05,
    lfc_threshold: float = 1.0,
) -> Tuple[DifferentialResult, ...]:
    """
    Significant results only (strict comparisons; NaN never passes).

    Args:
        results: DifferentialResults
        padj_threshold: Adjusted p-value threshold (default: 0.05)
        lfc_threshold: Absolute log2 fold change threshold (default: 1.0)
    """
    return tuple(
        r
        for r in results
        if r.padj < padj_threshold and abs(r.log2_fold_change) > lfc_threshold
    )
