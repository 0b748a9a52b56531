"""
End-to-end tests: raw intensities -> VSN -> moderated fit -> BH.

Simulation:
    - 100 proteins, 3 wt + 3 single_ko channels
    - log2 abundance ~ N(14, 1), multiplicative log2 noise SD 0.2,
      additive noise SD 50, per-channel offset and loading bias
    - proteins 0-9 are up-regulated by log2FC = 1 in single_ko
"""

import threading
import warnings
from concurrent.futures import CancelledError

import numpy as np
import pytest

from protdiff.core.errors import (
    ConfigurationError,
    DegenerateFeatureWarning,
    DegenerateInputError,
)
from protdiff.core.intensity import IntensityMatrix
from protdiff.stats.pipeline import contrast_name, run_differential_analysis

from conftest import make_design_table, simulate_log_expression


N_DE = 10


def _simulate_experiment(conditions, effects, n_features=100, seed=2024):
    rng = np.random.default_rng(seed)
    n_samples = len(conditions)
    log_mu = rng.normal(14.0, 1.0, n_features)
    log_signal = np.repeat(log_mu[:, None], n_samples, axis=1)
    for j, c in enumerate(conditions):
        if c in effects:
            log_signal[:, j] += effects[c]
    log_signal += rng.normal(0.0, 0.2, log_signal.shape)

    offsets = rng.uniform(0.0, 100.0, n_samples)
    loading = rng.uniform(0.8, 1.25, n_samples)
    data = offsets + loading * (np.exp2(log_signal) + rng.normal(0.0, 50.0, log_signal.shape))

    table = make_design_table(conditions)
    matrix = IntensityMatrix(
        data=data,
        feature_ids=[f"PROT{i:03d}" for i in range(n_features)],
        sample_ids=table["sample_id"].tolist(),
    )
    return matrix, table


@pytest.fixture
def two_group_experiment():
    conditions = ["wt"] * 3 + ["single_ko"] * 3
    effect = np.zeros(100)
    effect[:N_DE] = 1.0
    return _simulate_experiment(conditions, {"single_ko": effect})


class TestEndToEnd:

    def test_recovers_differential_proteins(self, two_group_experiment):
        matrix, table = two_group_experiment
        result = run_differential_analysis(matrix, table, baseline="wt")

        frame = result.table.to_dataframe()
        assert frame["coefficient"].unique().tolist() == ["single_ko"]
        hits = frame.loc[frame["adjusted_p_value"] < 0.05, "feature_id"]
        truth = {f"PROT{i:03d}" for i in range(N_DE)}
        true_positives = len(set(hits) & truth)
        false_positives = len(set(hits) - truth)

        assert true_positives >= 8
        assert false_positives <= 5

    def test_fold_changes_on_log2_scale(self, two_group_experiment):
        matrix, table = two_group_experiment
        frame = run_differential_analysis(matrix, table, baseline="wt").table.to_dataframe()
        lfc = frame["log2_fold_change"].to_numpy()
        assert np.mean(lfc[:N_DE]) - np.mean(lfc[N_DE:]) == pytest.approx(1.0, abs=0.15)
        assert np.mean(lfc[N_DE:]) == pytest.approx(0.0, abs=0.15)

    def test_result_in_input_order(self, two_group_experiment):
        matrix, table = two_group_experiment
        result = run_differential_analysis(matrix, table, baseline="wt")
        assert result.table["feature_id"].tolist() == matrix.feature_ids.tolist()
        assert result.vsn_fit is not None
        assert result.design.sample_ids.equals(result.normalized.sample_ids)

    def test_design_rows_may_be_shuffled(self, two_group_experiment):
        matrix, table = two_group_experiment
        shuffled = table.sample(frac=1.0, random_state=0)
        a = run_differential_analysis(matrix, table, baseline="wt")
        b = run_differential_analysis(matrix, shuffled, baseline="wt")
        assert a.table.equals(b.table)

    def test_reproducible(self, two_group_experiment):
        matrix, table = two_group_experiment
        a = run_differential_analysis(matrix, table, baseline="wt", n_workers=1)
        b = run_differential_analysis(matrix, table, baseline="wt", n_workers=1)
        assert a.table.equals(b.table)


class TestContrastsAndOptions:

    def test_three_groups_with_contrast(self, three_group_design):
        conditions = three_group_design["condition"].tolist()
        matrix = simulate_log_expression(
            conditions,
            {"single_ko": np.full(150, 0.5), "double_ko": np.full(150, 1.5)},
            n_features=150, seed=9,
        )
        result = run_differential_analysis(
            matrix, three_group_design, baseline="wt",
            coefficients=["double_ko"],
            contrasts=[("double_ko", "single_ko")],
            normalize=False,
        )
        name = contrast_name("double_ko", "single_ko")
        assert name == "double_ko_vs_single_ko"
        assert result.table.coefficients == ["double_ko", name]
        assert result.vsn_fit is None
        assert result.normalized is matrix

        contrast = result.table.for_coefficient(name)["log2_fold_change"]
        assert contrast.mean() == pytest.approx(1.0, abs=0.05)

    def test_named_contrasts(self, three_group_design):
        conditions = three_group_design["condition"].tolist()
        matrix = simulate_log_expression(conditions, {}, n_features=50, seed=1)
        result = run_differential_analysis(
            matrix, three_group_design, baseline="wt",
            contrasts={"dko_minus_sko": ("double_ko", "single_ko")},
            normalize=False,
        )
        assert result.table.coefficients == ["dko_minus_sko"]

    def test_default_tests_every_level(self, three_group_design):
        conditions = three_group_design["condition"].tolist()
        matrix = simulate_log_expression(conditions, {}, n_features=50, seed=1)
        result = run_differential_analysis(matrix, three_group_design, baseline="wt", normalize=False)
        assert result.table.coefficients == ["double_ko", "single_ko"]
        assert len(result.table) == 100

    def test_without_moderation(self, two_group_experiment):
        matrix, table = two_group_experiment
        result = run_differential_analysis(matrix, table, baseline="wt", eb_moderation=False)
        assert result.fit.d0 == 0.0
        np.testing.assert_array_equal(result.table["degrees_of_freedom"].to_numpy(), 4.0)

    def test_excluded_channel_dropped_from_design(self, two_group_experiment):
        matrix, table = two_group_experiment
        data = matrix.data.copy()
        data[:, 0] = np.nan
        with warnings.catch_warnings():
            warnings.simplefilter("ignore", DegenerateFeatureWarning)
            result = run_differential_analysis(matrix.with_data(data), table, baseline="wt")
        assert result.vsn_fit.excluded_channels == ["wt_1"]
        assert result.design.n_samples == 5
        assert result.table["n_used"].max() == 5


class TestErrors:

    def test_unknown_baseline(self, two_group_experiment):
        matrix, table = two_group_experiment
        with pytest.raises(ConfigurationError, match="Baseline"):
            run_differential_analysis(matrix, table, baseline="control")

    def test_unknown_coefficient(self, two_group_experiment):
        matrix, table = two_group_experiment
        with pytest.raises(ConfigurationError, match="Unknown coefficient"):
            run_differential_analysis(matrix, table, baseline="wt", coefficients=["double_ko"])

    def test_design_mismatch_before_fitting(self, two_group_experiment):
        matrix, table = two_group_experiment
        with pytest.raises(ConfigurationError, match="differ"):
            run_differential_analysis(matrix, table.iloc[:-1], baseline="wt")

    @pytest.mark.parametrize("normalize", [True, False])
    def test_entirely_missing_feature(self, two_group_experiment, normalize):
        matrix, table = two_group_experiment
        data = matrix.data.copy()
        data[0, :] = np.nan
        with pytest.raises(DegenerateInputError, match="PROT000"):
            run_differential_analysis(
                matrix.with_data(data), table, baseline="wt", normalize=normalize
            )

    def test_duplicate_test_names(self, three_group_design):
        conditions = three_group_design["condition"].tolist()
        matrix = simulate_log_expression(conditions, {}, n_features=20)
        with pytest.raises(ConfigurationError, match="Duplicate"):
            run_differential_analysis(
                matrix, three_group_design, baseline="wt",
                contrasts={"single_ko": ("single_ko", "double_ko")},
                coefficients=["single_ko"], normalize=False,
            )

    def test_cancelled(self, two_group_experiment):
        matrix, table = two_group_experiment
        event = threading.Event()
        event.set()
        with pytest.raises(CancelledError):
            run_differential_analysis(matrix, table, baseline="wt", cancel_event=event)
