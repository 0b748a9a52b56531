"""
Tests for the empirical Bayes prior estimate and variance squeezing.
"""

import numpy as np
import pytest
from scipy.special import polygamma

from protdiff.stats.empirical_bayes import fit_f_dist, squeeze_var, trigamma_inverse


def _simulate_variances(n_features, d0, s0_sq, df, seed=0):
    """s²_g from the scaled inverse-chi² prior and chi² sampling."""
    rng = np.random.default_rng(seed)
    if np.isinf(d0):
        true_var = np.full(n_features, s0_sq)
    else:
        true_var = d0 * s0_sq / rng.chisquare(d0, n_features)
    return true_var * rng.chisquare(df, n_features) / df


class TestTrigammaInverse:

    @pytest.mark.parametrize("x", [1e-4, 0.1, 1.0, 10.0, 1e3])
    def test_inverts_trigamma(self, x):
        y = trigamma_inverse(x)
        assert float(polygamma(1, y)) == pytest.approx(x, rel=1e-6)

    def test_non_positive_is_infinite(self):
        assert trigamma_inverse(0.0) == np.inf
        assert trigamma_inverse(-1.0) == np.inf


class TestFitFDist:

    def test_recovers_prior(self):
        sigma2 = _simulate_variances(20000, d0=8.0, s0_sq=0.05, df=4, seed=1)
        d0, s0_sq = fit_f_dist(sigma2, 4)
        assert 6.0 < d0 < 11.0
        assert s0_sq == pytest.approx(0.05, rel=0.1)

    def test_no_excess_dispersion_gives_large_d0(self):
        sigma2 = _simulate_variances(20000, d0=np.inf, s0_sq=0.2, df=4, seed=2)
        d0, s0_sq = fit_f_dist(sigma2, 4)
        assert d0 > 50
        assert s0_sq == pytest.approx(0.2, rel=0.05)

    def test_per_feature_df(self):
        rng = np.random.default_rng(3)
        df = rng.choice([2.0, 4.0, 6.0], 20000)
        true_var = 8.0 * 0.05 / rng.chisquare(8.0, 20000)
        sigma2 = true_var * rng.chisquare(df) / df
        d0, s0_sq = fit_f_dist(sigma2, df)
        assert 5.0 < d0 < 12.0
        assert s0_sq == pytest.approx(0.05, rel=0.15)

    def test_invalid_entries_ignored(self):
        sigma2 = _simulate_variances(5000, d0=8.0, s0_sq=0.05, df=4, seed=4)
        with_junk = np.concatenate([sigma2, [0.0, np.nan, np.inf]])
        df = np.concatenate([np.full(5000, 4.0), [4.0, 4.0, 4.0]])
        assert fit_f_dist(with_junk, df) == fit_f_dist(sigma2, 4.0)

    def test_too_few_values(self):
        d0, s0_sq = fit_f_dist(np.array([0.1, 0.3]), 4)
        assert d0 == np.inf
        assert s0_sq == pytest.approx(0.2)


class TestSqueezeVar:

    def test_posterior_between_sample_and_prior(self):
        sigma2 = _simulate_variances(1000, d0=5.0, s0_sq=0.1, df=4, seed=5)
        post, df_total = squeeze_var(sigma2, 4, d0=5.0, s0_sq=0.1)
        lo = np.minimum(sigma2, 0.1)
        hi = np.maximum(sigma2, 0.1)
        assert np.all((post >= lo) & (post <= hi))
        np.testing.assert_array_equal(df_total, np.full(1000, 9.0))

    def test_weighted_average(self):
        post, df_total = squeeze_var(np.array([0.4]), 2, d0=6.0, s0_sq=0.2)
        assert post[0] == pytest.approx((6 * 0.2 + 2 * 0.4) / 8)
        assert df_total[0] == 8.0

    def test_zero_df_takes_prior(self):
        post, df_total = squeeze_var(np.array([np.nan, 0.3]), np.array([0.0, 3.0]), d0=4.0, s0_sq=0.1)
        assert post[0] == pytest.approx(0.1)
        assert df_total[0] == 4.0
        assert np.isfinite(post[1])

    def test_infinite_prior_df(self):
        post, df_total = squeeze_var(np.array([0.5, 0.01]), 3, d0=np.inf, s0_sq=0.1)
        np.testing.assert_array_equal(post, [0.1, 0.1])
        assert np.all(np.isinf(df_total))

    def test_zero_prior_df_keeps_sample_variance(self):
        sigma2 = np.array([0.5, 0.01])
        post, df_total = squeeze_var(sigma2, 3, d0=0.0, s0_sq=0.1)
        np.testing.assert_allclose(post, sigma2)
        np.testing.assert_array_equal(df_total, [3.0, 3.0])
