"""
Tests for gene-wise dispersion estimation and trend fitting.

Synthetic counts follow alpha(mu) = 0.05 + 2 / mu, so the parametric trend
should land near those coefficients.
"""

import logging

import numpy as np
import pytest
from numpy.testing import assert_allclose

from rlognorm.core.errors import DispersionNotEstimableError, InvalidInputError
from rlognorm.stats.dispersion import (
    DispersionFit,
    FitType,
    estimate_dispersions,
    fit_dispersion_trend,
    gene_wise_dispersions,
)


class TestGeneWiseDispersions:

    def test_recovers_high_count_dispersion(self, medium_counts):
        counts = medium_counts.data
        sf = medium_counts.size_factors
        keep = counts.max(axis=1) > 0
        base_mean, estimates = gene_wise_dispersions(counts[keep], sf)

        high = base_mean > 500
        assert high.sum() > 50
        true_alpha = 0.05 + 2.0 / base_mean[high]
        ratio = np.median(estimates[high] / true_alpha)
        assert 0.5 < ratio < 2.0

    def test_bounds(self, small_counts):
        counts = small_counts.data[small_counts.data.max(axis=1) > 0]
        _, estimates = gene_wise_dispersions(counts, small_counts.size_factors, min_disp=1e-8)
        assert np.all(estimates >= 1e-8)
        assert np.all(estimates <= 10.0)

    def test_requires_two_samples(self):
        with pytest.raises(DispersionNotEstimableError, match="at least 2 samples"):
            gene_wise_dispersions(np.array([[1.0], [2.0]]), np.array([1.0]))


class TestEstimateDispersions:

    def test_parametric_trend(self, medium_counts):
        fit = estimate_dispersions(medium_counts.data, medium_counts.size_factors)

        assert fit.fit_type is FitType.PARAMETRIC
        asympt_disp, extra_pois = fit.coefficients
        assert 0 < asympt_disp < 0.3
        assert extra_pois > 0

        trend_at_1000 = fit.dispersion_function(np.array([1000.0]))[0]
        assert 0.5 * 0.052 < trend_at_1000 < 2.0 * 0.052

    def test_trend_decreases_with_mean(self, medium_counts):
        fit = estimate_dispersions(medium_counts.data, medium_counts.size_factors)
        values = fit.dispersion_function(np.array([1.0, 10.0, 100.0, 1000.0]))
        assert np.all(np.diff(values) < 0)

    def test_all_zero_genes_are_nan(self, small_counts):
        fit = estimate_dispersions(small_counts.data, small_counts.size_factors)
        all_zero = small_counts.data.max(axis=1) == 0
        assert all_zero[:5].all()
        assert np.all(np.isnan(fit.gene_estimates[all_zero]))
        assert np.all(np.isnan(fit.fitted[all_zero]))
        assert np.all(np.isfinite(fit.fitted[~all_zero]))
        assert np.all(fit.fitted[~all_zero] >= fit.min_disp)

    def test_local_fit(self, medium_counts):
        fit = estimate_dispersions(medium_counts.data, medium_counts.size_factors, fit_type="local")
        assert fit.fit_type is FitType.LOCAL
        assert fit.local_curve is not None
        assert np.all(np.isfinite(fit.fitted))
        assert np.all(fit.fitted > 0)

    def test_mean_fit(self, medium_counts):
        fit = estimate_dispersions(medium_counts.data, medium_counts.size_factors, fit_type="mean")
        assert fit.fit_type is FitType.MEAN
        assert_allclose(fit.fitted, fit.mean_disp)

    def test_too_few_genes_fall_back_to_mean(self, caplog):
        counts = np.array([[10, 20, 40], [100, 300, 50]])
        with caplog.at_level(logging.WARNING, logger="rlognorm.stats.dispersion"):
            fit = estimate_dispersions(counts, np.ones(3))
        assert fit.fit_type is FitType.MEAN
        assert fit.n_used == 2
        assert "fit_type='mean'" in caplog.text

    def test_single_sample(self):
        with pytest.raises(DispersionNotEstimableError, match="at least 2 samples"):
            estimate_dispersions(np.array([[1], [5]]), np.ones(1))

    def test_identical_counts(self):
        with pytest.raises(DispersionNotEstimableError, match="identical counts"):
            estimate_dispersions(np.array([[5, 5, 5], [0, 0, 0], [7, 7, 7]]), np.ones(3))

    def test_no_extra_poisson_variation(self):
        counts = np.array([[5, 5, 6], [5, 6, 5], [6, 5, 5]])
        with pytest.raises(DispersionNotEstimableError, match="2 orders of magnitude"):
            estimate_dispersions(counts, np.ones(3))

    def test_size_factor_mismatch(self):
        with pytest.raises(InvalidInputError):
            estimate_dispersions(np.array([[1, 2, 3]]), np.ones(2))

    def test_unknown_fit_type(self, small_counts):
        with pytest.raises(ValueError):
            estimate_dispersions(small_counts.data, small_counts.size_factors, fit_type="spline")


class TestDispersionFunction:

    def test_floored_at_min_disp(self):
        fit = DispersionFit(
            base_mean=np.array([1.0]),
            gene_estimates=np.array([1e-3]),
            fitted=np.array([1e-3]),
            fit_type=FitType.MEAN,
            min_disp=1e-8,
            mean_disp=1e-12,
        )
        assert_allclose(fit.dispersion_function(np.array([1.0, 100.0])), [1e-8, 1e-8])

    def test_parametric_formula(self):
        fit = DispersionFit(
            base_mean=np.array([1.0]),
            gene_estimates=np.array([1.0]),
            fitted=np.array([1.0]),
            fit_type=FitType.PARAMETRIC,
            min_disp=1e-8,
            coefficients=(0.1, 2.0),
        )
        assert_allclose(fit.dispersion_function(np.array([1.0, 10.0])), [2.1, 0.3])

    def test_fit_dispersion_trend_rejects_unusable(self):
        with pytest.raises(DispersionNotEstimableError):
            fit_dispersion_trend(np.array([10.0, 20.0]), np.array([1e-8, 1e-8]))
