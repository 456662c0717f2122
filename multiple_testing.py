"""
Multiple-testing corrections shared by the differential and enrichment stages.
"""

from typing import Optional, Sequence
import logging
import numpy as np
from statsmodels.stats.multitest import multipletests

logger = logging.getLogger(__name__)

# Storey lambda grid used by the q-value estimator
PI0_LAMBDAS = np.arange(0.05, 0.95, 0.05)


def benjamini_hochberg(pvalues: Sequence[float]) -> np.ndarray:
    """
    Benjamini–Hochberg adjusted p-values.

    NaN p-values are left out of the family and stay NaN in the output.

    Args:
        pvalues: Raw p-values (may contain NaN)

    Returns:
        Array of adjusted p-values aligned with the input
    """
    p = np.asarray(pvalues, dtype=float)
    padj = np.full(p.shape, np.nan)
    mask = np.isfinite(p)
    if mask.any():
        _, corrected, _, _ = multipletests(p[mask], method="fdr_bh")
        padj[mask] = np.minimum(corrected, 1.0)
    return padj


def estimate_pi0(pvalues: Sequence[float], lambdas: Optional[np.ndarray] = None) -> float:
    """
    Storey's estimate of the proportion of true null hypotheses.

    pi0(lambda) is evaluated over a grid and smoothed with a cubic polynomial;
    the smoothed value at the largest lambda is the estimate. Falls back to 1
    when there are fewer than two p-values or the estimate is not positive.
    """
    p = np.asarray(pvalues, dtype=float)
    p = p[np.isfinite(p)]
    m = p.size
    if m < 2:
        return 1.0
    lambdas = PI0_LAMBDAS if lambdas is None else np.asarray(lambdas, dtype=float)
    pi0s = np.array([np.mean(p > lam) / (1.0 - lam) for lam in lambdas])
    if len(lambdas) > 3:
        coeffs = np.polyfit(lambdas, pi0s, deg=3)
        pi0 = float(np.polyval(coeffs, lambdas[-1]))
    else:
        pi0 = float(pi0s[-1])
    if not np.isfinite(pi0) or pi0 <= 0:
        logger.debug(f"pi0 estimate {pi0} not usable, falling back to 1")
        return 1.0
    return min(pi0, 1.0)


def storey_qvalues(pvalues: Sequence[float]) -> np.ndarray:
    """
    Storey q-values: BH-adjusted p-values scaled by the estimated pi0.

    NaN p-values stay NaN.
    """
    p = np.asarray(pvalues, dtype=float)
    pi0 = estimate_pi0(p)
    return np.minimum(pi0 * benjamini_hochberg(p), 1.0)
