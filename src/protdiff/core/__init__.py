"""
Core data structures and abstractions.

1. IntensityMatrix: features × samples intensities with identifiers
2. FeatureFlag: Bitwise flags for degenerate per-feature fits
3. Transform: Abstract base class for immutable matrix transformations
4. Error taxonomy shared by all components

Examples:
    >>> from protdiff.core import IntensityMatrix, Transform
    >>> matrix = IntensityMatrix(data, feature_ids, sample_ids)
"""

from protdiff.core.errors import (
    ConfigurationError,
    ConvergenceFailure,
    DegenerateFeatureWarning,
    DegenerateInputError,
    ProtdiffError,
)
from protdiff.core.intensity import IntensityMatrix
from protdiff.core.quality import FeatureFlag
from protdiff.core.transform import Transform

__all__ = [
    'IntensityMatrix',
    'FeatureFlag',
    'Transform',
    'ProtdiffError',
    'ConfigurationError',
    'DegenerateInputError',
    'ConvergenceFailure',
    'DegenerateFeatureWarning',
]
