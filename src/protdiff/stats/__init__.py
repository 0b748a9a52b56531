"""
Statistical layer: normalization, linear models and multiple testing.

Exports core functions for:
- Variance-stabilizing normalization across labeling channels (VSN)
- Treatment-coded design matrices
- Empirical Bayes moderated linear models (limma-style)
- Benjamini-Hochberg FDR correction
- Result tables and the end-to-end pipeline
"""

from .normalization import (
    VSNFit,
    VarianceStabilizingNormalizer,
    StabilizationReport,
    assess_variance_stabilization,
    fit_vsn,
    vsn_transform,
)
from .design_matrix import DesignMatrix, encode_design, design_from_table
from .empirical_bayes import fit_f_dist, squeeze_var, trigamma_inverse
from .linear_model import (
    CoefficientTest,
    LinearModelFit,
    ModeratedFit,
    ModeratedLinearModelFitter,
)
from .multiple_testing import benjamini_hochberg, fdr_correction
from .results import DifferentialResultRow, DifferentialResultTable
from .pipeline import AnalysisResult, run_differential_analysis

__all__ = [
    "VSNFit",
    "VarianceStabilizingNormalizer",
    "StabilizationReport",
    "assess_variance_stabilization",
    "fit_vsn",
    "vsn_transform",
    "DesignMatrix",
    "encode_design",
    "design_from_table",
    "fit_f_dist",
    "squeeze_var",
    "trigamma_inverse",
    "CoefficientTest",
    "LinearModelFit",
    "ModeratedFit",
    "ModeratedLinearModelFitter",
    "benjamini_hochberg",
    "fdr_correction",
    "DifferentialResultRow",
    "DifferentialResultTable",
    "AnalysisResult",
    "run_differential_analysis",
]
