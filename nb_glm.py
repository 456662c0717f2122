"""
Negative-binomial GLM numerics for two-group differential expression.

Follows the DESeq2 recipe:
  1. median-of-ratios size factors (positive-counts fallback)
  2. gene-wise dispersion by Cox-Reid adjusted profile likelihood
  3. parametric dispersion trend alpha(mu) = a0 + a1 / mu
  4. empirical-Bayes (MAP) shrinkage toward the trend
  5. IRLS fit of log(mu) = offset + X beta and Wald test

All functions operate on genes × samples arrays and are vectorised over genes.
Large inputs are processed in gene chunks, optionally on a thread pool.
"""

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Callable, List, Optional, Sequence, Tuple
import logging
import os
import warnings
import numpy as np
import statsmodels.api as sm
from scipy.special import gammaln, polygamma
from scipy.stats import median_abs_deviation, norm, trim_mean
from statsmodels.tools.sm_exceptions import DomainWarning

logger = logging.getLogger(__name__)

MIN_DISPERSION = 1e-8
MIN_MU = 0.5
RIDGE_LAMBDA = 1e-6
# Bound on natural-log coefficients during IRLS
LARGE_BETA = 30.0
OUTLIER_SD = 2.0
MIN_PRIOR_VAR = 0.25
TREND_RATIO_BOUNDS = (1e-4, 15.0)
DEFAULT_CHUNK_SIZE = 2000


def effective_n_jobs(n_jobs: Optional[int]) -> int:
    """Normalize parallelism requests (0 -> all CPUs, negative offsets allowed)."""
    total = os.cpu_count() or 1
    if n_jobs is None:
        return 1
    if n_jobs == 0:
        return total
    if n_jobs < 0:
        return max(1, total + 1 + int(n_jobs))
    return max(1, int(n_jobs))


def run_gene_chunks(
    func: Callable[..., Any],
    arrays: Sequence[np.ndarray],
    n_jobs: Optional[int] = 1,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
) -> List[Any]:
    """
    Apply ``func`` to row-chunks of the given gene-aligned arrays.

    Every array in ``arrays`` is split along axis 0 and ``func`` receives the
    matching slices. Per-chunk results are returned in gene order regardless
    of ``n_jobs``.
    """
    n_genes = arrays[0].shape[0]
    if n_genes == 0:
        return [func(*arrays)]
    bounds = [(i, min(i + chunk_size, n_genes)) for i in range(0, n_genes, chunk_size)]

    def run(bound: Tuple[int, int]) -> Any:
        start, stop = bound
        return func(*(a[start:stop] for a in arrays))

    workers = min(effective_n_jobs(n_jobs), len(bounds))
    if workers <= 1:
        parts = [run(b) for b in bounds]
    else:
        with ThreadPoolExecutor(max_workers=workers) as executor:
            parts = list(executor.map(run, bounds))
    return parts


def map_gene_chunks(
    func: Callable[..., np.ndarray],
    arrays: Sequence[np.ndarray],
    n_jobs: Optional[int] = 1,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
) -> np.ndarray:
    """Like ``run_gene_chunks`` for array-valued ``func``, concatenated along genes."""
    return np.concatenate(run_gene_chunks(func, arrays, n_jobs, chunk_size), axis=0)


# ---------------------------------------------------------------------------
# Size factors
# ---------------------------------------------------------------------------


def estimate_size_factors(counts: np.ndarray) -> Tuple[np.ndarray, str]:
    """
    Median-of-ratios size factors.

    Args:
        counts: genes × samples raw counts

    Returns:
        (size_factors, method) where method is "ratio" or "poscounts"
    """
    counts = np.asarray(counts, dtype=float)
    with np.errstate(divide="ignore"):
        log_counts = np.log(counts)

    all_positive = (counts > 0).all(axis=1)
    if all_positive.any():
        log_geo = log_counts[all_positive].mean(axis=1)
        ratios = log_counts[all_positive] - log_geo[:, None]
        return np.exp(np.median(ratios, axis=0)), "ratio"

    # Every gene has a zero somewhere: geometric mean over non-zero counts
    logger.warning("Every gene contains a zero count; using positive-counts size factors")
    n_samples = counts.shape[1]
    log_pos = np.where(counts > 0, log_counts, 0.0)
    log_geo = log_pos.sum(axis=1) / n_samples
    usable = counts.sum(axis=1) > 0
    factors = np.empty(n_samples)
    for j in range(n_samples):
        rows = usable & (counts[:, j] > 0)
        if not rows.any():
            factors[j] = np.nan
            continue
        factors[j] = np.exp(np.median(log_counts[rows, j] - log_geo[rows]))
    finite = np.isfinite(factors)
    if finite.any():
        factors = factors / np.exp(np.mean(np.log(factors[finite])))
    return factors, "poscounts"


def design_matrix(in_group_a: Sequence[bool]) -> np.ndarray:
    """Intercept plus an indicator column for group A (group B is the reference)."""
    indicator = np.asarray(in_group_a, dtype=float)
    return np.column_stack([np.ones_like(indicator), indicator])


def linear_model_mu(normalized: np.ndarray, X: np.ndarray, size_factors: np.ndarray) -> np.ndarray:
    """Least-squares fitted means on the normalized scale, returned on the count scale."""
    hat = X @ np.linalg.pinv(X)
    fitted = normalized @ hat.T
    return np.maximum(fitted * size_factors[None, :], MIN_MU)


# ---------------------------------------------------------------------------
# Dispersion
# ---------------------------------------------------------------------------


def cox_reid_loglik(
    y: np.ndarray,
    mu: np.ndarray,
    log_alpha: np.ndarray,
    X: np.ndarray,
    prior_log_mean: Optional[np.ndarray] = None,
    prior_var: Optional[float] = None,
) -> np.ndarray:
    """
    Cox-Reid adjusted NB profile log-likelihood, optionally with a normal log prior.

    Args:
        y: genes × samples counts
        mu: genes × samples fitted means
        log_alpha: genes × K candidate log dispersions
        X: samples × p design matrix
        prior_log_mean: per-gene prior mean of log dispersion
        prior_var: prior variance of log dispersion

    Returns:
        genes × K objective values (terms constant in alpha dropped)
    """
    alpha = np.exp(log_alpha)[:, :, None]
    y3 = y[:, None, :]
    mu3 = mu[:, None, :]
    r = 1.0 / alpha
    ll = (
        gammaln(y3 + r)
        - gammaln(r)
        - y3 * np.log(mu3 + r)
        - r * np.log1p(mu3 * alpha)
    ).sum(axis=2)

    w = mu3 / (1.0 + alpha * mu3)
    xtwx = np.einsum("gkn,np,nq->gkpq", w, X, X)
    _, logdet = np.linalg.slogdet(xtwx)
    objective = ll - 0.5 * logdet

    if prior_log_mean is not None and prior_var is not None:
        objective = objective - (log_alpha - prior_log_mean[:, None]) ** 2 / (2.0 * prior_var)
    return np.where(np.isfinite(objective), objective, -np.inf)


def grid_search_dispersion(
    y: np.ndarray,
    mu: np.ndarray,
    X: np.ndarray,
    max_disp: float,
    prior_log_mean: Optional[np.ndarray] = None,
    prior_var: Optional[float] = None,
    n_coarse: int = 40,
    n_fine: int = 21,
) -> np.ndarray:
    """Maximise the (penalised) Cox-Reid likelihood on a log grid with one refinement pass."""
    n_genes = y.shape[0]
    if n_genes == 0:
        return np.empty(0)
    lo, hi = np.log(MIN_DISPERSION), np.log(max_disp)
    coarse = np.linspace(lo, hi, n_coarse)
    grid = np.broadcast_to(coarse, (n_genes, n_coarse))
    obj = cox_reid_loglik(y, mu, grid, X, prior_log_mean, prior_var)
    centre = coarse[np.argmax(obj, axis=1)]

    step = coarse[1] - coarse[0]
    fine = np.clip(centre[:, None] + np.linspace(-step, step, n_fine)[None, :], lo, hi)
    obj = cox_reid_loglik(y, mu, fine, X, prior_log_mean, prior_var)
    best = fine[np.arange(n_genes), np.argmax(obj, axis=1)]
    return np.exp(best)


@dataclass(frozen=True)
class DispersionTrend:
    """Fitted mean-dispersion relationship alpha(mu) = asymptotic + extra_poisson / mu."""

    kind: str  # "parametric", "mean" or "none"
    asymptotic: float
    extra_poisson: float

    def __call__(self, means: np.ndarray) -> np.ndarray:
        means = np.asarray(means, dtype=float)
        return self.asymptotic + self.extra_poisson / np.maximum(means, 1e-8)


def _parametric_trend(means: np.ndarray, disps: np.ndarray, max_iter: int = 10) -> DispersionTrend:
    coefs = np.array([0.1, 1.0])
    keep = np.ones(means.shape[0], dtype=bool)
    family = sm.families.Gamma(link=sm.families.links.Identity())
    for _ in range(max_iter):
        if keep.sum() < 3:
            raise ValueError("Too few genes left for the parametric trend")
        design = np.column_stack([np.ones(keep.sum()), 1.0 / means[keep]])
        with warnings.catch_warnings():
            warnings.simplefilter("ignore", DomainWarning)
            warnings.simplefilter("ignore", RuntimeWarning)
            fit = sm.GLM(disps[keep], design, family=family).fit(start_params=coefs)
        new = np.asarray(fit.params, dtype=float)
        if not np.all(np.isfinite(new)) or np.any(new <= 0):
            raise ValueError(f"Parametric trend gave non-positive coefficients {new}")
        ratio = disps / (new[0] + new[1] / means)
        keep = (ratio > TREND_RATIO_BOUNDS[0]) & (ratio < TREND_RATIO_BOUNDS[1])
        converged = np.sum(np.log(new / coefs) ** 2) < 1e-6
        coefs = new
        if converged:
            return DispersionTrend("parametric", float(coefs[0]), float(coefs[1]))
    raise ValueError("Parametric dispersion trend did not converge")


def fit_dispersion_trend(base_means: np.ndarray, genewise: np.ndarray) -> DispersionTrend:
    """
    Fit the dispersion trend over genes with a usable gene-wise estimate.

    Falls back to a mean trend when the parametric fit is impossible, and
    returns a "none" trend when no gene is usable.
    """
    usable = (genewise > 100 * MIN_DISPERSION) & (base_means > 0)
    n_usable = int(usable.sum())
    if n_usable == 0:
        return DispersionTrend("none", float("nan"), 0.0)
    if n_usable >= 3:
        try:
            trend = _parametric_trend(base_means[usable], genewise[usable])
            logger.debug(
                f"Parametric dispersion trend: a0={trend.asymptotic:.4g}, a1={trend.extra_poisson:.4g}"
            )
            return trend
        except (ValueError, np.linalg.LinAlgError, FloatingPointError) as e:
            logger.warning(f"Parametric dispersion trend failed ({e}); using mean trend")
    else:
        logger.warning(f"Only {n_usable} genes usable for the dispersion trend; using mean trend")
    mean_disp = float(trim_mean(genewise[usable], 0.001))
    return DispersionTrend("mean", mean_disp, 0.0)


@dataclass(frozen=True)
class DispersionFit:
    """All stages of dispersion estimation, one value per gene."""

    genewise: np.ndarray
    trend: DispersionTrend
    fitted: np.ndarray
    final: np.ndarray
    outliers: np.ndarray
    prior_var: float


def estimate_dispersions(
    y: np.ndarray,
    X: np.ndarray,
    size_factors: np.ndarray,
    n_jobs: Optional[int] = 1,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
) -> DispersionFit:
    """
    Gene-wise, trended and MAP dispersion estimates.

    Args:
        y: genes × samples counts (genes with all-zero counts already removed)
        X: samples × p design matrix
        size_factors: per-sample size factors

    Returns:
        DispersionFit
    """
    n_samples, n_params = X.shape
    max_disp = max(10.0, float(n_samples))
    normalized = y / size_factors[None, :]
    base_means = normalized.mean(axis=1)
    mu = linear_model_mu(normalized, X, size_factors)

    genewise = map_gene_chunks(
        lambda yc, mc: grid_search_dispersion(yc, mc, X, max_disp),
        [y, mu],
        n_jobs=n_jobs,
        chunk_size=chunk_size,
    )

    trend = fit_dispersion_trend(base_means, genewise)
    if trend.kind == "none":
        logger.warning("No gene has a usable dispersion estimate; keeping gene-wise estimates")
        nan = np.full(genewise.shape, np.nan)
        return DispersionFit(
            genewise=genewise,
            trend=trend,
            fitted=nan,
            final=genewise.copy(),
            outliers=np.zeros(genewise.shape, dtype=bool),
            prior_var=float("nan"),
        )

    fitted = trend(base_means)
    usable = genewise > 100 * MIN_DISPERSION
    residuals = np.log(genewise[usable]) - np.log(fitted[usable])
    var_log_disp = float(median_abs_deviation(residuals, scale="normal") ** 2)
    dof = n_samples - n_params
    expected_var = float(polygamma(1, dof / 2.0))
    prior_var = max(var_log_disp - expected_var, MIN_PRIOR_VAR)
    logger.debug(f"Dispersion prior variance {prior_var:.4g} (observed {var_log_disp:.4g})")

    log_fitted = np.log(fitted)
    map_disp = map_gene_chunks(
        lambda yc, mc, lf: grid_search_dispersion(yc, mc, X, max_disp, lf, prior_var),
        [y, mu, log_fitted],
        n_jobs=n_jobs,
        chunk_size=chunk_size,
    )

    outliers = np.log(genewise) > log_fitted + OUTLIER_SD * np.sqrt(var_log_disp)
    final = np.where(outliers, genewise, map_disp)
    final = np.clip(final, MIN_DISPERSION, max_disp)
    if outliers.any():
        logger.info(f"{int(outliers.sum())} genes flagged as dispersion outliers")
    return DispersionFit(
        genewise=genewise,
        trend=trend,
        fitted=fitted,
        final=final,
        outliers=outliers,
        prior_var=prior_var,
    )


# ---------------------------------------------------------------------------
# GLM fit and Wald test
# ---------------------------------------------------------------------------


def nb_loglik(y: np.ndarray, mu: np.ndarray, alpha: np.ndarray) -> np.ndarray:
    """Per-gene NB log-likelihood with dispersion ``alpha`` (genes,)."""
    r = 1.0 / alpha[:, None]
    ll = (
        gammaln(y + r)
        - gammaln(r)
        - gammaln(y + 1.0)
        - r * np.log1p(mu / r)
        + y * np.log(mu / (r + mu))
    )
    return ll.sum(axis=1)


@dataclass(frozen=True)
class GLMFit:
    """Per-gene coefficients (natural log scale), standard errors and convergence flags."""

    beta: np.ndarray
    se: np.ndarray
    converged: np.ndarray
    iterations: np.ndarray

    @classmethod
    def concatenate(cls, parts: Sequence["GLMFit"]) -> "GLMFit":
        return cls(
            beta=np.concatenate([p.beta for p in parts], axis=0),
            se=np.concatenate([p.se for p in parts], axis=0),
            converged=np.concatenate([p.converged for p in parts]),
            iterations=np.concatenate([p.iterations for p in parts]),
        )


def fit_nb_glm(
    y: np.ndarray,
    X: np.ndarray,
    size_factors: np.ndarray,
    alpha: np.ndarray,
    max_iter: int = 100,
    tol: float = 1e-8,
) -> GLMFit:
    """
    Fit log(mu) = log(size factor) + X beta by ridge-stabilised IRLS.

    Coefficient covariance is the sandwich (X'WX + L)^-1 X'WX (X'WX + L)^-1.
    """
    n_genes, _ = y.shape
    n_params = X.shape[1]
    offset = np.log(size_factors)[None, :]
    ridge = RIDGE_LAMBDA * np.eye(n_params)

    normalized = y / size_factors[None, :]
    beta = np.linalg.lstsq(X, np.log(normalized + 0.1).T, rcond=None)[0].T
    beta = np.clip(beta, -LARGE_BETA, LARGE_BETA)

    converged = np.zeros(n_genes, dtype=bool)
    iterations = np.zeros(n_genes, dtype=int)
    dev_old = np.full(n_genes, np.inf)
    a = alpha[:, None]

    for it in range(1, max_iter + 1):
        active = ~converged
        if not active.any():
            break
        eta = beta[active] @ X.T + offset
        mu = np.maximum(np.exp(eta), MIN_MU)
        w = mu / (1.0 + a[active] * mu)
        z = np.log(mu) - offset + (y[active] - mu) / mu
        xtwx = np.einsum("gn,np,nq->gpq", w, X, X) + ridge
        xtwz = np.einsum("gn,np,gn->gp", w, X, z)
        new_beta = np.linalg.solve(xtwx, xtwz[:, :, None])[:, :, 0]
        new_beta = np.clip(new_beta, -LARGE_BETA, LARGE_BETA)

        mu_new = np.maximum(np.exp(new_beta @ X.T + offset), MIN_MU)
        dev = -2.0 * nb_loglik(y[active], mu_new, alpha[active])
        change = np.abs(dev - dev_old[active]) / (np.abs(dev) + 0.1)

        beta[active] = new_beta
        dev_old[active] = dev
        iterations[active] = it
        idx = np.flatnonzero(active)
        converged[idx[change < tol]] = True

    mu = np.maximum(np.exp(beta @ X.T + offset), MIN_MU)
    w = mu / (1.0 + a * mu)
    xtwx = np.einsum("gn,np,nq->gpq", w, X, X)
    inv = np.linalg.inv(xtwx + ridge)
    sigma = inv @ xtwx @ inv
    se = np.sqrt(np.maximum(np.diagonal(sigma, axis1=1, axis2=2), 0.0))

    return GLMFit(beta=beta, se=se, converged=converged, iterations=iterations)


def wald_test(beta: np.ndarray, se: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """Two-sided Wald test of each coefficient against zero."""
    with np.errstate(divide="ignore", invalid="ignore"):
        stat = beta / se
    pvalue = 2.0 * norm.sf(np.abs(stat))
    return stat, pvalue

