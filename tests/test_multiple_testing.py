"""
Tests for Benjamini-Hochberg and the statsmodels-backed corrections.
"""

import numpy as np
import pytest
from statsmodels.stats.multitest import multipletests

from protdiff.stats.multiple_testing import benjamini_hochberg, fdr_correction


class TestBenjaminiHochberg:

    def test_all_equal(self):
        np.testing.assert_allclose(benjamini_hochberg([0.01, 0.01, 0.01, 0.01]), [0.01] * 4)

    def test_step_up(self):
        adjusted = benjamini_hochberg([0.001, 0.02, 0.03, 0.5])
        np.testing.assert_allclose(adjusted, [0.004, 0.04, 0.04, 0.5])

    def test_order_preserved(self):
        adjusted = benjamini_hochberg([0.5, 0.03, 0.001, 0.02])
        np.testing.assert_allclose(adjusted, [0.5, 0.04, 0.004, 0.04])

    def test_monotone_in_rank(self):
        rng = np.random.default_rng(0)
        p = np.concatenate([rng.uniform(size=900), rng.uniform(0, 1e-3, size=100)])
        adjusted = benjamini_hochberg(p)
        order = np.argsort(p, kind="stable")
        assert np.all(np.diff(adjusted[order]) >= 0)
        assert np.all(adjusted >= p)
        assert np.all(adjusted <= 1.0)

    def test_matches_statsmodels(self):
        rng = np.random.default_rng(1)
        p = rng.beta(0.5, 2.0, size=500)
        _, expected, _, _ = multipletests(p, method="fdr_bh")
        np.testing.assert_allclose(benjamini_hochberg(p), expected, rtol=1e-12)

    def test_nan_passed_through(self):
        adjusted = benjamini_hochberg([0.01, np.nan, 0.04])
        assert np.isnan(adjusted[1])
        # m counts only the two valid p-values
        np.testing.assert_allclose(adjusted[[0, 2]], [0.02, 0.04])

    def test_single_value(self):
        np.testing.assert_array_equal(benjamini_hochberg([0.3]), [0.3])
        assert benjamini_hochberg([]).size == 0

    def test_invalid_input(self):
        with pytest.raises(ValueError, match=r"\[0, 1\]"):
            benjamini_hochberg([0.2, 1.5])
        with pytest.raises(ValueError, match="1D"):
            benjamini_hochberg(np.full((2, 2), 0.1))


class TestFdrCorrection:

    def test_bh_default(self):
        p = np.array([0.001, 0.02, 0.03, 0.5])
        np.testing.assert_array_equal(fdr_correction(p), benjamini_hochberg(p))

    def test_by_more_conservative(self):
        p = np.array([0.001, 0.02, 0.03, 0.5, np.nan])
        by = fdr_correction(p, method="BY")
        bh = fdr_correction(p, method="BH")
        assert np.isnan(by[-1])
        assert np.all(by[:-1] >= bh[:-1])

    def test_bonferroni(self):
        p = np.array([0.001, 0.02, 0.3])
        np.testing.assert_allclose(fdr_correction(p, method="bonferroni"), [0.003, 0.06, 0.9])

    def test_unknown_method(self):
        with pytest.raises(ValueError, match="Unknown correction method"):
            fdr_correction(np.array([0.1]), method="holm")
