"""
Pytest configuration and shared fixtures.

Provides synthetic negative binomial count matrices with a known
mean-dispersion relationship for all test suites.
"""

import numpy as np
import pandas as pd
import pytest

from rlognorm.core.biomatrix import BioMatrix


def generate_nb_counts(
    n_genes: int,
    n_samples: int,
    n_zero_genes: int = 0,
    asympt_disp: float = 0.05,
    extra_pois: float = 2.0,
    size_factors: np.ndarray | None = None,
    seed: int = 42,
) -> BioMatrix:
    """
    Generate a negative binomial count matrix with realistic properties.

    Args:
        n_genes: Number of genes (rows), including the all-zero ones
        n_samples: Number of samples (columns)
        n_zero_genes: Rows forced to zero in every sample (placed first)
        asympt_disp: Dispersion at high expression
        extra_pois: Extra-Poisson term of the true trend alpha(mu)
        size_factors: Sequencing-depth factors (default: spread around 1)
        seed: Random seed for reproducibility

    Returns:
        BioMatrix of integer counts with ``sizeFactor`` and ``condition``
        sample metadata.

    Design:
        - Gene means log-uniform between ~1 and ~5000 reads
        - True dispersion alpha(mu) = asympt_disp + extra_pois / mu
        - Half the samples get a 2-fold change on 10% of genes
    """
    rng = np.random.default_rng(seed)

    if size_factors is None:
        size_factors = np.exp(rng.uniform(-0.4, 0.4, n_samples))
    size_factors = np.asarray(size_factors, dtype=np.float64)

    means = np.exp(rng.uniform(np.log(1.0), np.log(5000.0), n_genes))
    alphas = asympt_disp + extra_pois / means

    effects = np.ones((n_genes, n_samples))
    changed = rng.choice(n_genes, size=max(1, n_genes // 10), replace=False)
    effects[np.ix_(changed, np.arange(n_samples // 2, n_samples))] = 2.0

    mu = means[:, None] * effects * size_factors[None, :]
    r = 1.0 / alphas[:, None]
    counts = rng.negative_binomial(r, r / (r + mu)).astype(np.int64)
    counts[:n_zero_genes, :] = 0

    feature_ids = pd.Index([f"GENE_{i:05d}" for i in range(n_genes)])
    sample_ids = pd.Index([f"SAMPLE_{j:03d}" for j in range(n_samples)])
    sample_metadata = pd.DataFrame({
        'condition': ['CTRL' if j < n_samples // 2 else 'CASE' for j in range(n_samples)],
        'sizeFactor': size_factors,
    }, index=sample_ids)

    return BioMatrix(
        data=counts,
        feature_ids=feature_ids,
        sample_ids=sample_ids,
        sample_metadata=sample_metadata,
    )


@pytest.fixture
def small_counts():
    """300 genes x 6 samples, first 5 genes all-zero."""
    return generate_nb_counts(n_genes=300, n_samples=6, n_zero_genes=5, seed=42)


@pytest.fixture
def medium_counts():
    """1000 genes x 12 samples for trend-recovery checks."""
    return generate_nb_counts(n_genes=1000, n_samples=12, seed=7)


@pytest.fixture
def toy_counts():
    """The two-gene example: one all-zero gene and one increasing gene."""
    return np.array([[0, 0, 0], [10, 20, 40]])
