"""
Tests for median-of-ratios size factors and normalized counts.
"""

import numpy as np
import pytest
from numpy.testing import assert_allclose

from rlognorm.core.errors import InvalidInputError
from rlognorm.stats.size_factors import estimate_size_factors, norm_transform, normalized_counts


class TestEstimateSizeFactors:

    def test_proportional_libraries(self):
        counts = np.array([[10, 20], [100, 200], [5, 10]])
        assert_allclose(estimate_size_factors(counts), [np.sqrt(0.5), np.sqrt(2.0)])

    def test_recovers_simulated_depths(self, medium_counts):
        true_sf = medium_counts.size_factors
        estimated = estimate_size_factors(medium_counts.data)
        # Median-of-ratios is defined up to a global scale
        ratio = estimated / true_sf
        assert np.std(np.log(ratio)) < 0.15

    def test_genes_with_zeros_are_ignored(self):
        counts = np.array([[0, 50], [10, 20], [30, 60]])
        assert_allclose(estimate_size_factors(counts), [np.sqrt(0.5), np.sqrt(2.0)])

    def test_every_gene_has_a_zero(self):
        with pytest.raises(InvalidInputError, match="every gene"):
            estimate_size_factors(np.array([[0, 5], [5, 0]]))

    def test_empty_sample(self):
        with pytest.raises(InvalidInputError, match="all zero counts"):
            estimate_size_factors(np.array([[0, 5], [0, 3]]))


class TestNormalizedCounts:

    def test_divides_columns(self):
        out = normalized_counts(np.array([[10, 20]]), np.array([0.5, 2.0]))
        assert_allclose(out, [[20.0, 10.0]])

    def test_length_mismatch(self):
        with pytest.raises(InvalidInputError):
            normalized_counts(np.array([[10, 20]]), np.array([1.0]))

    def test_norm_transform(self):
        out = norm_transform(np.array([[0, 3]]), np.array([1.0, 1.0]))
        assert_allclose(out, [[0.0, 2.0]])

    def test_norm_transform_requires_positive_pseudocount(self):
        with pytest.raises(ValueError, match="pc"):
            norm_transform(np.array([[0, 3]]), np.array([1.0, 1.0]), pc=0)
