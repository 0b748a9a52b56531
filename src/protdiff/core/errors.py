"""
Error taxonomy for the normalization and differential-abundance engine.

Configuration and degenerate-input errors are caller errors: they are raised
at the start of a component's contract, before any fitting work, and are never
retried. Convergence failures carry the state of the optimizer so that a
changed tolerance is an explicit decision of the caller. Per-feature problems
are not errors at all; they are flagged on the feature and summarized with a
single ``DegenerateFeatureWarning``.

Examples:
    >>> from protdiff.core.errors import ConfigurationError
    >>> try:
    ...     encode_design(["wt", "wt"], baseline="wt")
    ... except ConfigurationError as e:
    ...     print(e)
    Need at least 2 distinct condition levels, got ['wt']
"""

from __future__ import annotations

__all__ = [
    'ProtdiffError',
    'ConfigurationError',
    'DegenerateInputError',
    'ConvergenceFailure',
    'DegenerateFeatureWarning',
]


class ProtdiffError(Exception):
    """Base class for all errors raised by protdiff."""


class ConfigurationError(ProtdiffError, ValueError):
    """
    Invalid experimental design or sample alignment.

    Raised for rank-deficient designs, unknown condition labels, fewer than
    two distinct levels, and sample-id mismatches between the intensity
    matrix and the design table.
    """


class DegenerateInputError(ProtdiffError, ValueError):
    """
    Input carries no usable information for the requested operation.

    Examples: every channel constant or missing, no feature observed in two
    channels, or no feature with more usable samples than model parameters.
    """


class ConvergenceFailure(ProtdiffError, RuntimeError):
    """
    Iterative fit stopped at its iteration cap without meeting tolerance.

    Attributes:
        objective: Last value of the objective function
        n_iter: Number of iterations performed
        max_iter: Iteration cap that was hit
        tol: Requested relative tolerance
    """

    def __init__(
        self,
        message: str,
        objective: float,
        n_iter: int,
        max_iter: int | None = None,
        tol: float | None = None,
    ) -> None:
        super().__init__(
            f"{message} (objective={objective:.6g}, iterations={n_iter})"
        )
        self.objective = objective
        self.n_iter = n_iter
        self.max_iter = max_iter
        self.tol = tol


class DegenerateFeatureWarning(UserWarning):
    """Non-fatal per-feature degeneracy (zero variance, zero residual df)."""
