"""
protdiff - Variance-stabilized differential abundance for multiplexed proteomics

Normalizes channel-to-channel intensity bias with a jointly fitted
variance-stabilizing transform (VSN) and tests each protein for differential
abundance with an empirical-Bayes moderated linear model, followed by
Benjamini-Hochberg FDR correction.
"""

__version__ = "0.1.0"

from protdiff.core.intensity import IntensityMatrix
from protdiff.core.transform import Transform
from protdiff.core.quality import FeatureFlag
from protdiff.core.errors import (
    ConfigurationError,
    ConvergenceFailure,
    DegenerateFeatureWarning,
    DegenerateInputError,
)

__all__ = [
    "IntensityMatrix",
    "Transform",
    "FeatureFlag",
    "ConfigurationError",
    "ConvergenceFailure",
    "DegenerateFeatureWarning",
    "DegenerateInputError",
]
