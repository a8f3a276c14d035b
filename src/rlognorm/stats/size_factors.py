"""
Sequencing-depth normalization for count matrices.

Size factors correct for libraries being sequenced to different depths. The
median-of-ratios estimator (Anders & Huber 2010) compares every sample to a
pseudo-reference built from per-gene geometric means:

    s_j = median_i ( K_ij / (prod_v K_iv)^(1/m) )

restricted to genes with a non-zero count in every sample, since the
geometric mean of such a gene is zero.

References:
    Anders S, Huber W (2010). Differential expression analysis for sequence
    count data. Genome Biology 11:R106.
"""

from __future__ import annotations

import logging

import numpy as np
from numpy.typing import NDArray

from rlognorm.core.errors import InvalidInputError

logger = logging.getLogger(__name__)

__all__ = ['estimate_size_factors', 'normalized_counts', 'norm_transform']


def estimate_size_factors(counts: NDArray[np.float64]) -> NDArray[np.float64]:
    """
    Median-of-ratios size factors.

    Args:
        counts: 2D array (n_genes, n_samples) of raw counts.

    Returns:
        One positive size factor per sample.

    Raises:
        InvalidInputError: If a sample has no counts at all, or if every gene
            contains at least one zero (no gene usable for the geometric mean).

    Example:
        >>> counts = np.array([[10, 20], [100, 200], [5, 10]])
        >>> estimate_size_factors(counts)
        array([0.70710678, 1.41421356])
    """
    counts = np.asarray(counts, dtype=np.float64)
    if counts.ndim != 2:
        raise InvalidInputError(f"Expected 2D array, got {counts.ndim}D")

    empty_samples = np.where(counts.sum(axis=0) == 0)[0]
    if empty_samples.size > 0:
        raise InvalidInputError(
            f"Samples {empty_samples.tolist()} have all zero counts; remove them first"
        )

    with np.errstate(divide='ignore'):
        log_counts = np.log(counts)
    log_geo_means = log_counts.mean(axis=1)
    usable = np.isfinite(log_geo_means)

    if not np.any(usable):
        raise InvalidInputError(
            "every gene contains at least one zero count, cannot compute "
            "log geometric means for median-of-ratios size factors"
        )

    log_ratios = log_counts[usable, :] - log_geo_means[usable, np.newaxis]
    size_factors = np.exp(np.median(log_ratios, axis=0))

    logger.info(
        f"Estimated size factors from {int(usable.sum())}/{counts.shape[0]} genes: "
        f"range [{size_factors.min():.3f}, {size_factors.max():.3f}]"
    )
    return size_factors


def normalized_counts(
    counts: NDArray[np.float64],
    size_factors: NDArray[np.float64],
) -> NDArray[np.float64]:
    """Counts divided column-wise by their size factors."""
    counts = np.asarray(counts, dtype=np.float64)
    size_factors = np.asarray(size_factors, dtype=np.float64)
    if size_factors.shape != (counts.shape[1],):
        raise InvalidInputError(
            f"size_factors length ({size_factors.size}) must equal number of samples ({counts.shape[1]})"
        )
    return counts / size_factors[np.newaxis, :]


def norm_transform(
    counts: NDArray[np.float64],
    size_factors: NDArray[np.float64],
    pc: float = 1.0,
) -> NDArray[np.float64]:
    """
    Shifted log of normalized counts: ``log2(counts / size_factors + pc)``.

    The unshrunken baseline the regularized-log transform improves on; useful
    for comparing how much the shrinkage pulls low-count genes together.
    """
    if pc <= 0:
        raise ValueError(f"pc must be positive, got {pc}")
    return np.log2(normalized_counts(counts, size_factors) + pc)
