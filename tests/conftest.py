"""
Pytest configuration and shared fixtures.

This module provides synthetic data generators for all test suites.
"""

import numpy as np
import pandas as pd
import pytest

from protdiff.core.intensity import IntensityMatrix


def simulate_raw_intensities(
    n_features: int = 2000,
    n_channels: int = 4,
    additive_sd: float = 50.0,
    multiplicative_sd: float = 0.1,
    seed: int = 42,
) -> tuple[IntensityMatrix, np.ndarray]:
    """
    Generate raw channel intensities following the additive-multiplicative
    error model that VSN assumes.

        y_ki = offset_i + scale_i * (mu_k * exp(eta_ki) + eps_ki)

    Args:
        n_features: Number of proteins
        n_channels: Number of labeling channels
        additive_sd: SD of eps (dominates at low intensity)
        multiplicative_sd: SD of eta (dominates at high intensity)
        seed: Random seed for reproducibility

    Returns:
        (IntensityMatrix, true abundances mu)

    Design:
        - Abundances log-normal over ~3 orders of magnitude
        - Per-channel offsets 0-20 and scales 0.7-1.4 (channel bias)
    """
    rng = np.random.default_rng(seed)
    mu = np.exp(rng.normal(7.0, 1.5, n_features))
    offsets = rng.uniform(0.0, 20.0, n_channels)
    scales = rng.uniform(0.7, 1.4, n_channels)

    eta = rng.normal(0.0, multiplicative_sd, (n_features, n_channels))
    eps = rng.normal(0.0, additive_sd, (n_features, n_channels))
    data = offsets + scales * (mu[:, None] * np.exp(eta) + eps)

    matrix = IntensityMatrix(
        data=data,
        feature_ids=[f"P{i:05d}" for i in range(n_features)],
        sample_ids=[f"ch{j + 1}" for j in range(n_channels)],
    )
    return matrix, mu


def make_design_table(conditions: list[str], sample_ids: list[str] | None = None) -> pd.DataFrame:
    """Design table with sample_id, condition and a per-condition replicate number."""
    if sample_ids is None:
        counters: dict[str, int] = {}
        sample_ids = []
        for c in conditions:
            counters[c] = counters.get(c, 0) + 1
            sample_ids.append(f"{c}_{counters[c]}")
    replicate = pd.Series(conditions).groupby(conditions).cumcount() + 1
    return pd.DataFrame({
        "sample_id": sample_ids,
        "condition": conditions,
        "replicate": replicate.to_numpy(),
    })


def simulate_log_expression(
    conditions: list[str],
    effects: dict[str, np.ndarray],
    n_features: int = 200,
    baseline_mean: float = 20.0,
    sd: float = 0.3,
    seed: int = 7,
) -> IntensityMatrix:
    """
    Log2-scale expression drawn from the treatment-coded linear model.

    Args:
        conditions: Condition label per sample
        effects: level -> per-feature effect vector versus the baseline
        n_features: Number of proteins
        baseline_mean: Mean of the feature intercepts
        sd: Homogeneous residual SD
        seed: Random seed
    """
    rng = np.random.default_rng(seed)
    intercepts = rng.normal(baseline_mean, 1.0, n_features)
    data = np.repeat(intercepts[:, None], len(conditions), axis=1)
    for j, c in enumerate(conditions):
        if c in effects:
            data[:, j] += effects[c]
    data += rng.normal(0.0, sd, data.shape)

    design = make_design_table(conditions)
    return IntensityMatrix(
        data=data,
        feature_ids=[f"P{i:04d}" for i in range(n_features)],
        sample_ids=design["sample_id"].tolist(),
    )


@pytest.fixture
def raw_intensities():
    """2000 x 4 raw intensities with channel bias."""
    matrix, _ = simulate_raw_intensities()
    return matrix


@pytest.fixture
def two_group_design():
    """3 wt + 3 single_ko samples."""
    return make_design_table(["wt"] * 3 + ["single_ko"] * 3)


@pytest.fixture
def three_group_design():
    """4 samples each of wt, single_ko, double_ko."""
    return make_design_table(["wt"] * 4 + ["single_ko"] * 4 + ["double_ko"] * 4)
