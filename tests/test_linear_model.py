"""
Tests for per-feature linear models with moderated t-statistics.

Validates that:
1. Coefficients are unbiased and posterior variances lie between the
   feature's own variance and the prior
2. Features with different missingness patterns match a per-feature
   least squares reference
3. Degenerate features (no residual df, zero variance, lost rank) are
   flagged and summarized with a single DegenerateFeatureWarning; an
   entirely missing feature is a DegenerateInputError
4. Without moderation the statistics are ordinary two-sample t-tests
5. Parallel and sequential batch execution agree; cancellation stops the fit
"""

from __future__ import annotations

import threading
import warnings
from concurrent.futures import CancelledError

import numpy as np
import pytest
from scipy import stats as scipy_stats

from protdiff.core.errors import (
    ConfigurationError,
    DegenerateFeatureWarning,
    DegenerateInputError,
)
from protdiff.core.intensity import IntensityMatrix
from protdiff.core.quality import FeatureFlag
from protdiff.stats.design_matrix import design_from_table
from protdiff.stats.linear_model import ModeratedLinearModelFitter

from conftest import make_design_table, simulate_log_expression


# ── Fixtures ────────────────────────────────────────────────────────────


def _has(flags, flag) -> np.ndarray:
    return (np.asarray(flags) & int(flag)) != 0


@pytest.fixture
def complete_data():
    """3 wt + 3 single_ko, 2000 features, true log2FC = 1.0 everywhere."""
    conditions = ["wt"] * 3 + ["single_ko"] * 3
    table = make_design_table(conditions)
    matrix = simulate_log_expression(
        conditions, {"single_ko": np.full(2000, 1.0)}, n_features=2000, sd=0.3, seed=11
    )
    design = design_from_table(table, matrix.sample_ids, baseline="wt")
    return {"matrix": matrix, "design": design, "true_effect": 1.0}


@pytest.fixture
def mixed_nan_data():
    """4 wt + 4 single_ko with per-feature missingness patterns.

    Feature 0: complete
    Feature 1: 2 wt samples missing
    Feature 2: 3 single_ko samples missing
    Feature 3: a single wt observation (intercept only, zero residual df)
    Feature 4: one sample per group (zero residual df)
    Feature 5: constant (zero variance)
    Feature 6: every wt sample missing (intercept only estimable)
    Features 7+: complete, random
    """
    conditions = ["wt"] * 4 + ["single_ko"] * 4
    table = make_design_table(conditions)
    base = simulate_log_expression(
        conditions, {"single_ko": np.full(60, 2.0)}, n_features=60, sd=0.4, seed=123
    )
    data = base.data.copy()
    data[1, [0, 1]] = np.nan
    data[2, [4, 5, 6]] = np.nan
    data[3, 1:] = np.nan
    data[4, [1, 2, 3, 5, 6, 7]] = np.nan
    data[5, :] = 20.0
    data[6, :4] = np.nan
    matrix = base.with_data(data)
    design = design_from_table(table, matrix.sample_ids, baseline="wt")
    return {"matrix": matrix, "design": design}


def _fit(matrix, design, **kwargs):
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", DegenerateFeatureWarning)
        return ModeratedLinearModelFitter(**kwargs).fit(matrix, design)


# ── Moderated statistics ────────────────────────────────────────────────


class TestModeratedStatistics:

    def test_estimates_unbiased(self, complete_data):
        fit = _fit(complete_data["matrix"], complete_data["design"])
        result = fit.test("single_ko")
        assert np.mean(result.estimate) == pytest.approx(complete_data["true_effect"], abs=0.02)

    def test_posterior_between_sample_and_prior(self, complete_data):
        fit = _fit(complete_data["matrix"], complete_data["design"])
        s2 = fit.fit.sigma2
        lo = np.minimum(s2, fit.s0_sq)
        hi = np.maximum(s2, fit.s0_sq)
        tol = 1e-12 * hi
        assert np.all(fit.sigma2_post >= lo - tol)
        assert np.all(fit.sigma2_post <= hi + tol)

    def test_prior_recovers_common_variance(self, complete_data):
        fit = _fit(complete_data["matrix"], complete_data["design"])
        # Homogeneous residual SD 0.3: the prior should be tight around 0.09
        assert fit.s0_sq == pytest.approx(0.09, rel=0.1)
        assert fit.d0 > 10
        np.testing.assert_allclose(fit.df_total, fit.d0 + 4)

    def test_moderated_df_and_ci(self, complete_data):
        result = _fit(complete_data["matrix"], complete_data["design"]).test("single_ko")
        frame = result.to_frame()
        assert list(frame.columns) == [
            "estimate", "standard_error", "statistic", "degrees_of_freedom",
            "p_value", "ci_lower", "ci_upper",
        ]
        assert np.all(result.ci_lower < result.estimate)
        assert np.all(result.ci_upper > result.estimate)
        coverage = np.mean((result.ci_lower <= 1.0) & (result.ci_upper >= 1.0))
        assert coverage == pytest.approx(0.95, abs=0.02)

    def test_eb_disabled_matches_ordinary_t(self, complete_data):
        matrix, design = complete_data["matrix"], complete_data["design"]
        fit = _fit(matrix, design, eb_moderation=False)
        result = fit.test("single_ko")

        wt = matrix.data[:, :3]
        ko = matrix.data[:, 3:]
        t_ref, p_ref = scipy_stats.ttest_ind(ko, wt, axis=1, equal_var=True)

        assert fit.d0 == 0.0
        assert np.isnan(fit.s0_sq)
        np.testing.assert_allclose(result.statistic, t_ref, rtol=1e-9)
        np.testing.assert_allclose(result.p_value, p_ref, rtol=1e-8)
        np.testing.assert_array_equal(result.df, np.full(matrix.n_features, 4.0))

    def test_unknown_coefficient(self, complete_data):
        fit = _fit(complete_data["matrix"], complete_data["design"])
        with pytest.raises(ConfigurationError, match="Unknown coefficient"):
            fit.test("double_ko")

    def test_invalid_contrast_vectors(self, complete_data):
        fit = _fit(complete_data["matrix"], complete_data["design"])
        with pytest.raises(ValueError, match="length 2"):
            fit.test([1.0, 0.0, 0.0])
        with pytest.raises(ValueError, match="all zeros"):
            fit.test([0.0, 0.0])

    def test_results_read_only(self, complete_data):
        fit = _fit(complete_data["matrix"], complete_data["design"])
        for arr in (fit.sigma2_post, fit.df_total, fit.flags, fit.fit.coefficients, fit.fit.sigma2):
            assert not arr.flags.writeable


class TestContrasts:

    def test_contrast_between_levels(self, three_group_design):
        conditions = three_group_design["condition"].tolist()
        matrix = simulate_log_expression(
            conditions,
            {"single_ko": np.full(300, 1.0), "double_ko": np.full(300, 2.5)},
            n_features=300, seed=21,
        )
        design = design_from_table(three_group_design, matrix.sample_ids, baseline="wt")
        fit = _fit(matrix, design)

        vector = design.contrast("double_ko", "single_ko")
        result = fit.test(vector, name="double_ko_vs_single_ko")
        coef = fit.fit.coefficients
        d = design.column_names.index("double_ko")
        s = design.column_names.index("single_ko")

        assert result.name == "double_ko_vs_single_ko"
        np.testing.assert_allclose(result.estimate, coef[:, d] - coef[:, s])
        assert np.mean(result.estimate) == pytest.approx(1.5, abs=0.05)
        # Var(b_d - b_s) = 1/4 + 1/4 for balanced groups of four
        np.testing.assert_allclose(fit.fit.contrast_unscaled_var(vector), 0.5)


# ── Missing values and degenerate features ──────────────────────────────


class TestMissingValues:

    def test_patterns_match_least_squares_reference(self, mixed_nan_data):
        matrix, design = mixed_nan_data["matrix"], mixed_nan_data["design"]
        fit = _fit(matrix, design).fit

        for g in (0, 1, 2, 10):
            y = matrix.data[g]
            obs = ~np.isnan(y)
            beta, rss, _, _ = np.linalg.lstsq(design.X[obs], y[obs], rcond=None)
            df = obs.sum() - 2
            np.testing.assert_allclose(fit.coefficients[g], beta, rtol=1e-10)
            assert fit.sigma2[g] == pytest.approx(rss[0] / df, rel=1e-9)
            assert fit.df_residual[g] == df
            assert fit.n_used[g] == obs.sum()

    def test_unscaled_variance_per_pattern(self, mixed_nan_data):
        matrix, design = mixed_nan_data["matrix"], mixed_nan_data["design"]
        fit = _fit(matrix, design).fit
        y = matrix.data[2]
        obs = ~np.isnan(y)
        ref = np.linalg.inv(design.X[obs].T @ design.X[obs])
        np.testing.assert_allclose(fit.unscaled_var[2], np.diag(ref), rtol=1e-10)
        # Feature 2 lost 3 of 4 single_ko samples: Var(b1) = 1/4 + 1/1
        assert fit.unscaled_var[2, 1] == pytest.approx(1.25)

    def test_flags(self, mixed_nan_data):
        fit = _fit(mixed_nan_data["matrix"], mixed_nan_data["design"])
        flags = fit.flags

        assert flags[0] == FeatureFlag.OK
        assert _has(flags, FeatureFlag.MISSING_VALUES)[[1, 2, 4, 6]].all()
        assert flags[3] == (
            FeatureFlag.MISSING_VALUES | FeatureFlag.NO_RESIDUAL_DF | FeatureFlag.NOT_ESTIMABLE
        )
        assert _has(flags, FeatureFlag.NO_RESIDUAL_DF)[4]
        assert _has(flags, FeatureFlag.ZERO_VARIANCE)[5]
        assert _has(flags, FeatureFlag.NOT_ESTIMABLE)[6]
        assert not _has(flags, FeatureFlag.CLAMPED).any()

    def test_entirely_missing_feature_raises(self, mixed_nan_data):
        matrix, design = mixed_nan_data["matrix"], mixed_nan_data["design"]
        data = matrix.data.copy()
        data[3, :] = np.nan
        with pytest.raises(DegenerateInputError, match=r"1 feature\(s\) have no observed values") as exc_info:
            ModeratedLinearModelFitter().fit(matrix.with_data(data), design)
        assert "P0003" in str(exc_info.value)

    def test_single_observation_not_estimable(self, mixed_nan_data):
        fit = _fit(mixed_nan_data["matrix"], mixed_nan_data["design"])
        assert fit.fit.n_used[3] == 1
        assert fit.fit.rank[3] == 1
        assert fit.df_total[3] == pytest.approx(fit.d0)
        result = fit.test("single_ko")
        assert np.isnan(result.estimate[3])
        assert np.isnan(result.p_value[3])

    def test_zero_residual_df_borrows_prior(self, mixed_nan_data):
        fit = _fit(mixed_nan_data["matrix"], mixed_nan_data["design"])
        assert fit.fit.df_residual[4] == 0
        assert np.isnan(fit.fit.sigma2[4])
        assert fit.sigma2_post[4] == pytest.approx(fit.s0_sq)
        assert fit.df_total[4] == pytest.approx(fit.d0)
        assert np.isfinite(fit.test("single_ko").p_value[4])

    def test_zero_variance_moderated_to_positive(self, mixed_nan_data):
        fit = _fit(mixed_nan_data["matrix"], mixed_nan_data["design"])
        assert fit.fit.sigma2[5] == 0.0
        assert fit.sigma2_post[5] > 0
        result = fit.test("single_ko")
        assert result.estimate[5] == pytest.approx(0.0, abs=1e-10)
        assert np.isfinite(result.p_value[5])

    def test_zero_variance_clamped_without_moderation(self, mixed_nan_data):
        fit = _fit(
            mixed_nan_data["matrix"], mixed_nan_data["design"],
            eb_moderation=False, variance_floor=1e-10,
        )
        assert fit.sigma2_post[5] == 1e-10
        assert _has(fit.flags, FeatureFlag.CLAMPED)[5]
        # No own variance and no prior: nothing to test
        assert np.isnan(fit.test("single_ko").p_value[4])

    def test_rank_deficient_pattern(self, mixed_nan_data):
        fit = _fit(mixed_nan_data["matrix"], mixed_nan_data["design"])
        assert fit.fit.rank[6] == 1
        assert np.isfinite(fit.fit.coefficients[6, 0])
        assert np.isnan(fit.fit.coefficients[6, 1])
        result = fit.test("single_ko")
        assert np.isnan(result.estimate[6])
        assert np.isnan(result.p_value[6])

    def test_single_aggregated_warning(self, mixed_nan_data):
        with warnings.catch_warnings(record=True) as caught:
            warnings.simplefilter("always")
            ModeratedLinearModelFitter().fit(mixed_nan_data["matrix"], mixed_nan_data["design"])
        degenerate = [w for w in caught if issubclass(w.category, DegenerateFeatureWarning)]
        assert len(degenerate) == 1
        message = str(degenerate[0].message)
        assert "2 without residual df" in message
        assert "1 with zero residual variance" in message

    def test_every_feature_too_sparse(self, two_group_design):
        conditions = two_group_design["condition"].tolist()
        matrix = simulate_log_expression(conditions, {}, n_features=20)
        data = np.full(matrix.shape, np.nan)
        data[:, 0] = 20.0
        sparse = matrix.with_data(data)
        design = design_from_table(two_group_design, sparse.sample_ids, baseline="wt")
        with pytest.raises(DegenerateInputError, match="fewer observed samples"):
            ModeratedLinearModelFitter().fit(sparse, design)

    def test_too_few_variances_disables_shrinkage(self, two_group_design):
        conditions = two_group_design["condition"].tolist()
        matrix = simulate_log_expression(conditions, {}, n_features=2, seed=3)
        design = design_from_table(two_group_design, matrix.sample_ids, baseline="wt")
        with pytest.warns(UserWarning, match="shrinkage disabled"):
            fit = ModeratedLinearModelFitter().fit(matrix, design)
        assert fit.d0 == 0.0
        np.testing.assert_array_equal(fit.sigma2_post, fit.fit.sigma2)


# ── Execution ───────────────────────────────────────────────────────────


class TestExecution:

    def test_parallel_matches_sequential(self, complete_data):
        matrix, design = complete_data["matrix"], complete_data["design"]
        sequential = _fit(matrix, design, n_workers=1, batch_size=128)
        parallel = _fit(matrix, design, n_workers=4, batch_size=128)

        np.testing.assert_array_equal(parallel.fit.coefficients, sequential.fit.coefficients)
        np.testing.assert_array_equal(parallel.sigma2_post, sequential.sigma2_post)
        np.testing.assert_array_equal(
            parallel.test("single_ko").p_value, sequential.test("single_ko").p_value
        )

    def test_cancel_before_fit(self, complete_data):
        event = threading.Event()
        event.set()
        fitter = ModeratedLinearModelFitter(n_workers=2, batch_size=100, cancel_event=event)
        with pytest.raises(CancelledError):
            fitter.fit(complete_data["matrix"], complete_data["design"])

    @pytest.mark.parametrize("n_workers", [1, 2])
    def test_cancel_during_batches(self, n_workers):
        event = threading.Event()
        fitter = ModeratedLinearModelFitter(n_workers=n_workers, batch_size=10, cancel_event=event)
        processed = []
        lock = threading.Lock()

        def work(rows):
            with lock:
                processed.append(rows)
            event.set()

        with pytest.raises(CancelledError):
            fitter._run_batches(work, 400)
        # One batch per worker may already be running when the event is set
        assert 1 <= len(processed) <= n_workers

    def test_misaligned_design(self, complete_data):
        matrix, design = complete_data["matrix"], complete_data["design"]
        reversed_matrix = IntensityMatrix(
            data=matrix.data[:, ::-1],
            feature_ids=matrix.feature_ids,
            sample_ids=matrix.sample_ids[::-1],
        )
        with pytest.raises(ConfigurationError, match="not aligned"):
            ModeratedLinearModelFitter().fit(reversed_matrix, design)

    @pytest.mark.parametrize("kwargs", [
        {"variance_floor": 0.0},
        {"batch_size": 0},
        {"n_workers": 0},
    ])
    def test_invalid_settings(self, kwargs):
        with pytest.raises(ValueError):
            ModeratedLinearModelFitter(**kwargs)
