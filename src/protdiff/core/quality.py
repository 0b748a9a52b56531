"""
Per-feature flags for degenerate model fits.

A feature with a degenerate fit is never dropped from the results: it is
reported with its statistics and a bitwise flag that says what went wrong.
This keeps result tables rectangular (one row per feature per coefficient)
and lets reviewers answer "why is this protein's p-value missing?" from the
table alone.

Engineering Design:
    IntFlag enables efficient bitwise operations:
    - Multiple flags per feature: ZERO_VARIANCE | CLAMPED
    - Stored as one integer column in the result table
    - Vectorized checks: (flags & FeatureFlag.NO_RESIDUAL_DF) != 0

Examples:
    >>> from protdiff.core.quality import FeatureFlag
    >>> flag = FeatureFlag.ZERO_VARIANCE | FeatureFlag.CLAMPED
    >>> bool(flag & FeatureFlag.CLAMPED)
    True
    >>> FeatureFlag.describe(int(flag))
    'ZERO_VARIANCE|CLAMPED'
"""

from __future__ import annotations

from enum import IntFlag

import numpy as np

__all__ = ['FeatureFlag']


class FeatureFlag(IntFlag):
    """
    Bitwise flags describing the quality of one feature's model fit.

    Attributes:
        OK: Regular fit (0)
        MISSING_VALUES: Some samples missing; fitted on a sub-design (1)
        NO_RESIDUAL_DF: Zero residual degrees of freedom; variance borrowed
            entirely from the prior (2)
        ZERO_VARIANCE: Residual variance exactly zero (constant or perfectly
            fitted values) (4)
        CLAMPED: Posterior variance clamped to a positive floor (8)
        NOT_ESTIMABLE: Some coefficients not estimable from the observed
            sub-design (16)
    """

    OK = 0
    MISSING_VALUES = 1
    NO_RESIDUAL_DF = 2
    ZERO_VARIANCE = 4
    CLAMPED = 8
    NOT_ESTIMABLE = 16

    @classmethod
    def describe(cls, value: int) -> str:
        """Render an integer flag value as ``NAME|NAME`` (``OK`` for 0)."""
        if value == 0:
            return cls.OK.name
        names = [f.name for f in cls if f.value and value & f.value]
        return "|".join(names)

    @classmethod
    def count(cls, flags: np.ndarray, flag: FeatureFlag) -> int:
        """Number of entries in ``flags`` that carry ``flag``."""
        return int(np.sum((np.asarray(flags) & int(flag)) != 0))
