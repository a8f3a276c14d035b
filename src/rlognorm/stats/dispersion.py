"""
Gene-wise dispersion estimation and mean-dispersion trend fitting.

Under the negative binomial model a count K_ij has mean mu_ij = s_j q_i and
variance mu_ij + alpha_i mu_ij^2. The dispersion alpha_i is poorly determined
from a handful of samples, so the regularized-log transform does not use the
per-gene estimates directly. It uses a smooth trend alpha(mean) fitted across
all genes, which pools information from thousands of genes.

Procedure:
    1. Gene-wise estimates for the intercept-only model: a method-of-moments
       value refined by maximizing the Cox-Reid adjusted profile likelihood on
       a log-spaced grid (coarse pass, then a fine pass around the optimum).
    2. Trend fit across genes, one of:
       - parametric: alpha(mu) = asympt_disp + extra_pois / mu, fitted by an
         iterated Gamma-family GLM with identity link
       - local: lowess of log dispersion on log mean
       - mean: trimmed mean of the gene-wise estimates

References:
    Love MI, Huber W, Anders S (2014). Moderated estimation of fold change and
    dispersion for RNA-seq data with DESeq2. Genome Biology 15:550.
    Cox DR, Reid N (1987). Parameter orthogonality and approximate conditional
    inference. JRSS B 49(1):1-39.
"""

from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass
from enum import Enum
from typing import Optional

import numpy as np
from numpy.typing import NDArray
from scipy.special import gammaln
from scipy.stats import trim_mean

from rlognorm.core.errors import DispersionNotEstimableError, InvalidInputError
from rlognorm.stats.size_factors import normalized_counts

logger = logging.getLogger(__name__)

__all__ = [
    'FitType',
    'DispersionFit',
    'gene_wise_dispersions',
    'fit_dispersion_trend',
    'estimate_dispersions',
]

# Genes with estimates this close to the lower bound carry no information
# about the trend (typically constant or near-Poisson rows).
_USABLE_FACTOR = 100.0
_MIN_GENES_FOR_CURVE = 3
_GRID_POINTS = 20
_GENE_CHUNK = 2000


class FitType(Enum):
    """Mean-dispersion trend families."""

    PARAMETRIC = "parametric"
    LOCAL = "local"
    MEAN = "mean"


class _TrendFitFailed(Exception):
    """Internal signal that a trend family could not be fitted."""
    pass


@dataclass(frozen=True)
class DispersionFit:
    """Result of dispersion estimation.

    Attributes:
        base_mean: Mean of normalized counts per gene (NaN for all-zero genes)
        gene_estimates: Gene-wise dispersion estimates (NaN for all-zero genes)
        fitted: Trend evaluated at each gene's base mean (NaN for all-zero genes)
        fit_type: Trend family actually used (after any fallback)
        min_disp: Lower bound applied to estimates and trend values
        coefficients: (asympt_disp, extra_pois) for parametric fits
        local_curve: (log_mean, log_disp) knots for local fits
        mean_disp: Constant dispersion for mean fits
        n_used: Number of genes the trend was fitted on
    """

    base_mean: NDArray[np.float64]
    gene_estimates: NDArray[np.float64]
    fitted: NDArray[np.float64]
    fit_type: FitType
    min_disp: float
    coefficients: Optional[tuple[float, float]] = None
    local_curve: Optional[tuple[NDArray[np.float64], NDArray[np.float64]]] = None
    mean_disp: Optional[float] = None
    n_used: int = 0

    def dispersion_function(self, means: NDArray[np.float64]) -> NDArray[np.float64]:
        """
        Evaluate the fitted trend at arbitrary mean normalized counts.

        Returns:
            Trend dispersion per mean, floored at ``min_disp``.
        """
        means = np.asarray(means, dtype=np.float64)
        if self.fit_type is FitType.PARAMETRIC:
            asympt_disp, extra_pois = self.coefficients
            with np.errstate(divide='ignore'):
                values = asympt_disp + extra_pois / means
        elif self.fit_type is FitType.LOCAL:
            log_x, log_y = self.local_curve
            with np.errstate(divide='ignore'):
                values = np.exp(np.interp(np.log(means), log_x, log_y))
        else:
            values = np.full(means.shape, self.mean_disp)
        return np.maximum(values, self.min_disp)

    def summary(self) -> dict[str, object]:
        """Compact description for logging and diagnostics."""
        out: dict[str, object] = {
            'fit_type': self.fit_type.value,
            'n_used': self.n_used,
            'median_gene_estimate': float(np.nanmedian(self.gene_estimates)),
        }
        if self.coefficients is not None:
            out['asympt_disp'] = self.coefficients[0]
            out['extra_pois'] = self.coefficients[1]
        if self.mean_disp is not None:
            out['mean_disp'] = self.mean_disp
        return out


# =============================================================================
# Gene-wise estimates
# =============================================================================

def _moments_dispersion(
    base_mean: NDArray[np.float64],
    base_var: NDArray[np.float64],
    size_factors: NDArray[np.float64],
) -> NDArray[np.float64]:
    """Method-of-moments dispersion: (var - mean * mean(1/s)) / mean^2."""
    xim = np.mean(1.0 / size_factors)
    return (base_var - xim * base_mean) / base_mean ** 2


def _cox_reid_log_likelihood(
    counts: NDArray[np.float64],
    mu: NDArray[np.float64],
    log_alpha: NDArray[np.float64],
) -> NDArray[np.float64]:
    """
    Cox-Reid adjusted NB log-likelihood of an intercept-only model.

    Args:
        counts: (n_genes, n_samples)
        mu: (n_genes, n_samples) fitted means
        log_alpha: (n_genes, n_grid) candidate log dispersions

    Returns:
        (n_genes, n_grid) adjusted log-likelihood.
    """
    alpha = np.exp(log_alpha)[:, :, np.newaxis]
    y = counts[:, np.newaxis, :]
    m = mu[:, np.newaxis, :]
    r = 1.0 / alpha

    ll = (
        gammaln(y + r) - gammaln(r) - gammaln(y + 1.0)
        + y * np.log(m * alpha / (1.0 + m * alpha))
        - r * np.log1p(m * alpha)
    ).sum(axis=2)

    # For a one-column design the information matrix is sum_j w_j.
    w = (m / (1.0 + m * alpha)).sum(axis=2)
    return ll - 0.5 * np.log(w)


def _grid_search(
    counts: NDArray[np.float64],
    mu: NDArray[np.float64],
    lower: float,
    upper: float,
) -> NDArray[np.float64]:
    """Coarse then fine log-grid maximization of the adjusted likelihood."""
    n_genes = counts.shape[0]

    coarse = np.linspace(lower, upper, _GRID_POINTS)
    grid = np.broadcast_to(coarse, (n_genes, _GRID_POINTS))
    ll = _finite_or_neg_inf(_cox_reid_log_likelihood(counts, mu, grid))
    best = coarse[np.argmax(ll, axis=1)]

    step = coarse[1] - coarse[0]
    offsets = np.linspace(-step, step, _GRID_POINTS)
    fine = np.clip(best[:, np.newaxis] + offsets[np.newaxis, :], lower, upper)
    ll = _finite_or_neg_inf(_cox_reid_log_likelihood(counts, mu, fine))

    result = fine[np.arange(n_genes), np.argmax(ll, axis=1)]
    result[np.all(np.isneginf(ll), axis=1)] = np.nan
    return result


def _finite_or_neg_inf(ll: NDArray[np.float64]) -> NDArray[np.float64]:
    return np.where(np.isfinite(ll), ll, -np.inf)


def gene_wise_dispersions(
    counts: NDArray[np.float64],
    size_factors: NDArray[np.float64],
    min_disp: float = 1e-8,
) -> tuple[NDArray[np.float64], NDArray[np.float64]]:
    """
    Gene-wise dispersion estimates for the intercept-only model.

    Args:
        counts: 2D array (n_genes, n_samples) of raw counts, no all-zero rows.
        size_factors: One positive factor per sample.
        min_disp: Lower bound for the estimates.

    Returns:
        (base_mean, estimates), both of length n_genes.

    Raises:
        DispersionNotEstimableError: If fewer than two samples.
    """
    counts = np.asarray(counts, dtype=np.float64)
    size_factors = np.asarray(size_factors, dtype=np.float64)
    n_genes, n_samples = counts.shape

    if n_samples < 2:
        raise DispersionNotEstimableError(
            f"at least 2 samples are required to estimate dispersion, got {n_samples}"
        )

    norm = normalized_counts(counts, size_factors)
    base_mean = norm.mean(axis=1)
    base_var = norm.var(axis=1, ddof=1)

    max_disp = max(10.0, float(n_samples))
    moments = _moments_dispersion(base_mean, base_var, size_factors)
    start = np.clip(np.nan_to_num(moments, nan=min_disp), min_disp, max_disp)

    mu = base_mean[:, np.newaxis] * size_factors[np.newaxis, :]
    lower, upper = np.log(min_disp), np.log(max_disp)

    log_alpha = np.empty(n_genes)
    for begin in range(0, n_genes, _GENE_CHUNK):
        end = min(begin + _GENE_CHUNK, n_genes)
        log_alpha[begin:end] = _grid_search(counts[begin:end], mu[begin:end], lower, upper)

    estimates = np.exp(log_alpha)

    # Likelihood overflowed for every grid point
    failed = ~np.isfinite(estimates)
    if np.any(failed):
        logger.warning(
            f"Likelihood grid search failed for {int(failed.sum())} gene(s); "
            f"using method-of-moments estimates"
        )
        estimates[failed] = start[failed]

    return base_mean, np.clip(estimates, min_disp, max_disp)


# =============================================================================
# Trend fitting
# =============================================================================

def _fit_parametric(
    means: NDArray[np.float64],
    disps: NDArray[np.float64],
) -> tuple[float, float]:
    """
    Fit alpha(mu) = asympt_disp + extra_pois / mu by iterated Gamma GLM.

    Genes whose estimate is more than 15-fold above, or 1e4-fold below, the
    current curve are excluded from the next iteration.
    """
    import statsmodels.api as sm
    from statsmodels.tools.sm_exceptions import DomainWarning

    coefs = np.array([0.1, 1.0])
    family = sm.families.Gamma(link=sm.families.links.Identity())

    for _ in range(10):
        residuals = disps / (coefs[0] + coefs[1] / means)
        good = (residuals > 1e-4) & (residuals < 15)
        if good.sum() < _MIN_GENES_FOR_CURVE:
            raise _TrendFitFailed("too few genes within the residual bounds")

        design = sm.add_constant(1.0 / means[good], has_constant='add')
        try:
            with warnings.catch_warnings():
                warnings.simplefilter('ignore', DomainWarning)
                warnings.simplefilter('ignore', RuntimeWarning)
                fit = sm.GLM(disps[good], design, family=family).fit(start_params=coefs)
        except (ValueError, np.linalg.LinAlgError) as e:
            raise _TrendFitFailed(f"Gamma GLM failed: {e}") from e

        old_coefs = coefs
        coefs = np.asarray(fit.params, dtype=np.float64)

        if not np.all(np.isfinite(coefs)) or np.any(coefs <= 0):
            raise _TrendFitFailed(f"non-positive coefficients {coefs.tolist()}")
        if np.sum(np.log(coefs / old_coefs) ** 2) < 1e-6:
            return float(coefs[0]), float(coefs[1])

    raise _TrendFitFailed("did not converge within 10 iterations")


def _fit_local(
    means: NDArray[np.float64],
    disps: NDArray[np.float64],
) -> tuple[NDArray[np.float64], NDArray[np.float64]]:
    """Lowess of log dispersion on log mean, reduced to unique knots."""
    from statsmodels.nonparametric.smoothers_lowess import lowess

    smoothed = lowess(np.log(disps), np.log(means), frac=2.0 / 3.0, return_sorted=True)
    log_x, inverse = np.unique(smoothed[:, 0], return_inverse=True)
    log_y = np.bincount(inverse, weights=smoothed[:, 1]) / np.bincount(inverse)
    if not np.all(np.isfinite(log_y)):
        raise _TrendFitFailed("lowess produced non-finite values")
    return log_x, log_y


def fit_dispersion_trend(
    base_mean: NDArray[np.float64],
    gene_estimates: NDArray[np.float64],
    fit_type: FitType | str = FitType.PARAMETRIC,
    min_disp: float = 1e-8,
) -> DispersionFit:
    """
    Fit a smooth mean-dispersion trend to gene-wise estimates.

    Only genes with estimates above ``100 * min_disp`` inform the fit. A failed
    parametric fit falls back to the local fit; fewer than three usable genes
    falls back to the mean fit. Fallbacks are logged at WARNING.

    Args:
        base_mean: Mean normalized count per gene (NaN for all-zero genes).
        gene_estimates: Gene-wise dispersions (NaN for all-zero genes).
        fit_type: Requested trend family.
        min_disp: Lower bound for dispersion values.

    Raises:
        DispersionNotEstimableError: If no gene-wise estimate is usable.
    """
    fit_type = FitType(fit_type)
    base_mean = np.asarray(base_mean, dtype=np.float64)
    gene_estimates = np.asarray(gene_estimates, dtype=np.float64)

    usable = np.isfinite(gene_estimates) & (gene_estimates > _USABLE_FACTOR * min_disp)
    n_used = int(usable.sum())
    if n_used == 0:
        raise DispersionNotEstimableError(
            "all gene-wise dispersion estimates are within 2 orders of magnitude "
            "of the minimum value; the counts show no variation beyond Poisson noise"
        )

    means = base_mean[usable]
    disps = gene_estimates[usable]

    if n_used < _MIN_GENES_FOR_CURVE and fit_type is not FitType.MEAN:
        logger.warning(
            f"Only {n_used} gene(s) usable for the dispersion trend; "
            f"using fit_type='mean' instead of '{fit_type.value}'"
        )
        fit_type = FitType.MEAN

    coefficients = None
    local_curve = None
    mean_disp = None

    if fit_type is FitType.PARAMETRIC:
        try:
            coefficients = _fit_parametric(means, disps)
        except _TrendFitFailed as e:
            logger.warning(
                f"Parametric dispersion trend failed ({e}); falling back to local fit"
            )
            fit_type = FitType.LOCAL

    if fit_type is FitType.LOCAL:
        try:
            local_curve = _fit_local(means, disps)
        except _TrendFitFailed as e:
            logger.warning(f"Local dispersion trend failed ({e}); falling back to mean fit")
            fit_type = FitType.MEAN

    if fit_type is FitType.MEAN:
        mean_disp = float(trim_mean(disps, 0.001))

    partial = DispersionFit(
        base_mean=base_mean,
        gene_estimates=gene_estimates,
        fitted=np.full(base_mean.shape, np.nan),
        fit_type=fit_type,
        min_disp=min_disp,
        coefficients=coefficients,
        local_curve=local_curve,
        mean_disp=mean_disp,
        n_used=n_used,
    )

    fitted = np.full(base_mean.shape, np.nan)
    finite = np.isfinite(base_mean) & np.isfinite(gene_estimates)
    fitted[finite] = partial.dispersion_function(base_mean[finite])

    result = DispersionFit(
        base_mean=base_mean,
        gene_estimates=gene_estimates,
        fitted=fitted,
        fit_type=fit_type,
        min_disp=min_disp,
        coefficients=coefficients,
        local_curve=local_curve,
        mean_disp=mean_disp,
        n_used=n_used,
    )
    logger.info(f"Dispersion trend fitted: {result.summary()}")
    return result


def estimate_dispersions(
    counts: NDArray[np.float64],
    size_factors: NDArray[np.float64],
    fit_type: FitType | str = FitType.PARAMETRIC,
    min_disp: float = 1e-8,
) -> DispersionFit:
    """
    Gene-wise dispersion estimates plus a fitted mean-dispersion trend.

    All-zero genes are excluded from estimation and get NaN entries in the
    returned arrays.

    Args:
        counts: 2D array (n_genes, n_samples) of raw counts.
        size_factors: One positive factor per sample.
        fit_type: "parametric" (default), "local" or "mean".
        min_disp: Lower bound for dispersion values.

    Raises:
        InvalidInputError: If size_factors don't align with the columns.
        DispersionNotEstimableError: If fewer than two samples, if every gene
            has identical counts across samples, or if no estimate is usable.

    Example:
        >>> fit = estimate_dispersions(counts, size_factors)
        >>> fit.fit_type
        <FitType.PARAMETRIC: 'parametric'>
        >>> trend = fit.dispersion_function(np.array([10.0, 1000.0]))
    """
    counts = np.asarray(counts, dtype=np.float64)
    size_factors = np.asarray(size_factors, dtype=np.float64)
    if counts.ndim != 2:
        raise InvalidInputError(f"Expected 2D array, got {counts.ndim}D")
    n_genes, n_samples = counts.shape
    if size_factors.shape != (n_samples,):
        raise InvalidInputError(
            f"size_factors length ({size_factors.size}) must equal number of samples ({n_samples})"
        )

    if n_samples < 2:
        raise DispersionNotEstimableError(
            f"at least 2 samples are required to estimate dispersion, got {n_samples}"
        )
    if np.all(counts.max(axis=1) == counts.min(axis=1)):
        raise DispersionNotEstimableError(
            "every gene has identical counts across all samples; no variation to fit"
        )

    nonzero = counts.max(axis=1) > 0
    base_mean = np.full(n_genes, np.nan)
    estimates = np.full(n_genes, np.nan)
    base_mean[nonzero], estimates[nonzero] = gene_wise_dispersions(
        counts[nonzero], size_factors, min_disp=min_disp
    )
    logger.info(
        f"Gene-wise dispersions estimated for {int(nonzero.sum())}/{n_genes} genes "
        f"({n_genes - int(nonzero.sum())} all-zero skipped)"
    )

    return fit_dispersion_trend(base_mean, estimates, fit_type=fit_type, min_disp=min_disp)
