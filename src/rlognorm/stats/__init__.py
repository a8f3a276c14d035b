"""
Statistical procedures behind the regularized-log transform.

Exports:
- Size factors and normalized counts (median-of-ratios)
- Gene-wise dispersion estimation and mean-dispersion trend fitting
- Empirical prior variance by upper-quantile matching
- The rlog transform itself
"""

from .size_factors import (
    estimate_size_factors,
    normalized_counts,
    norm_transform,
)
from .dispersion import (
    DispersionFit,
    FitType,
    estimate_dispersions,
    fit_dispersion_trend,
    gene_wise_dispersions,
)
from .prior import (
    beta_prior_variance,
    match_upper_quantile_for_variance,
    weighted_quantile,
)
from .rlog import RlogResult, RlogTransform, normalize, rlog

__all__ = [
    "estimate_size_factors",
    "normalized_counts",
    "norm_transform",
    "DispersionFit",
    "FitType",
    "estimate_dispersions",
    "fit_dispersion_trend",
    "gene_wise_dispersions",
    "beta_prior_variance",
    "match_upper_quantile_for_variance",
    "weighted_quantile",
    "RlogResult",
    "RlogTransform",
    "normalize",
    "rlog",
]
