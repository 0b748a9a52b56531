"""
End-to-end differential abundance analysis.

    raw IntensityMatrix
        -> VarianceStabilizingNormalizer          (optional)
        -> DesignMatrix from the design table     (aligned to the matrix)
        -> ModeratedLinearModelFitter
        -> per coefficient/contrast: moderated t + BH
        -> DifferentialResultTable

Configuration and degenerate-input errors surface before any fitting work.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Literal, Mapping, Sequence

import pandas as pd

from protdiff.core.errors import ConfigurationError
from protdiff.core.intensity import IntensityMatrix
from protdiff.stats.design_matrix import DesignMatrix, design_from_table
from protdiff.stats.linear_model import ModeratedFit, ModeratedLinearModelFitter
from protdiff.stats.normalization import VarianceStabilizingNormalizer, VSNFit
from protdiff.stats.results import DifferentialResultTable

logger = logging.getLogger(__name__)

__all__ = ['AnalysisResult', 'run_differential_analysis', 'contrast_name']


@dataclass(frozen=True)
class AnalysisResult:
    """Everything produced by one analysis run.

    Attributes:
        normalized: Matrix the model was fitted on
        vsn_fit: VSN parameters (None when normalization was skipped)
        design: Design matrix aligned to ``normalized``
        fit: Moderated linear model fit
        table: Ranked-ready result table (input feature order)
    """

    normalized: IntensityMatrix
    vsn_fit: VSNFit | None
    design: DesignMatrix
    fit: ModeratedFit
    table: DifferentialResultTable


def contrast_name(numerator: str, denominator: str) -> str:
    return f"{numerator}_vs_{denominator}"


def run_differential_analysis(
    matrix: IntensityMatrix,
    design_table: pd.DataFrame,
    baseline: str,
    coefficients: Sequence[str] | None = None,
    contrasts: Mapping[str, tuple[str, str]] | Sequence[tuple[str, str]] | None = None,
    normalize: bool = True,
    vsn_kwargs: dict | None = None,
    levels: Sequence[str] | None = None,
    condition_col: str = "condition",
    eb_moderation: bool = True,
    variance_floor: float = 1e-12,
    fdr_method: Literal["BH", "BY", "bonferroni"] = "BH",
    conf_level: float = 0.95,
    n_workers: int | None = None,
    batch_size: int = 2048,
    cancel_event: threading.Event | None = None,
) -> AnalysisResult:
    """
    Normalize, fit and test every feature for differential abundance.

    Args:
        matrix: Raw (or pre-normalized, with normalize=False) intensities.
        design_table: One row per sample with sample_id, condition, replicate.
        baseline: Reference condition level.
        coefficients: Coefficients (non-baseline levels) to test. Defaults to
            every non-baseline level.
        contrasts: Comparisons between two levels, either as a mapping
            name -> (numerator, denominator) or as (numerator, denominator)
            pairs named "<numerator>_vs_<denominator>".
        normalize: Run VSN before fitting.
        vsn_kwargs: Keyword arguments for VarianceStabilizingNormalizer.
        levels: Optional condition level order.
        condition_col: Design table column holding condition labels.
        eb_moderation: Empirical Bayes variance moderation.
        variance_floor: Floor for degenerate posterior variances.
        fdr_method: Multiple testing correction, applied per coefficient.
        conf_level: Confidence level of the reported intervals.
        n_workers: Thread pool size for the per-feature fits.
        batch_size: Features per work item.
        cancel_event: Stops the fit between batches when set.

    Returns:
        AnalysisResult

    Raises:
        ConfigurationError: Design/matrix mismatch, unknown baseline or
            coefficient
        DegenerateInputError: Input that cannot be normalized or fitted
        ConvergenceFailure: VSN optimizer hit its iteration cap

    Examples:
        >>> result = run_differential_analysis(raw, design_table, baseline="wt")
        >>> result.table.top(5)
    """
    # Build the design up front so configuration errors precede any fitting
    design = design_from_table(
        design_table, matrix.sample_ids, baseline=baseline,
        levels=levels, condition_col=condition_col,
    )
    targets = _resolve_targets(design, coefficients, contrasts)

    vsn_fit = None
    normalized = matrix
    if normalize:
        normalizer = VarianceStabilizingNormalizer(**(vsn_kwargs or {}))
        vsn_fit = normalizer.fit(matrix)
        normalized = vsn_fit.transform(matrix)
        if vsn_fit.excluded_channels:
            logger.warning(
                f"Dropping excluded channels from the design: {vsn_fit.excluded_channels}"
            )
            design_table = design_table[
                ~design_table["sample_id"].astype(str).isin(vsn_fit.excluded_channels)
            ]
            design = design_from_table(
                design_table, normalized.sample_ids, baseline=baseline,
                levels=levels, condition_col=condition_col,
            )
            targets = _resolve_targets(design, coefficients, contrasts)

    fitter = ModeratedLinearModelFitter(
        eb_moderation=eb_moderation,
        variance_floor=variance_floor,
        batch_size=batch_size,
        n_workers=n_workers,
        cancel_event=cancel_event,
    )
    fit = fitter.fit(normalized, design)

    tests = [fit.test(vector, name=name, conf_level=conf_level) for name, vector in targets]
    table = DifferentialResultTable.from_tests(fit, tests, fdr_method=fdr_method)

    return AnalysisResult(
        normalized=normalized,
        vsn_fit=vsn_fit,
        design=design,
        fit=fit,
        table=table,
    )


def _resolve_targets(
    design: DesignMatrix,
    coefficients: Sequence[str] | None,
    contrasts: Mapping[str, tuple[str, str]] | Sequence[tuple[str, str]] | None,
) -> list[tuple[str, object]]:
    """(name, coefficient name or contrast vector) for every requested test."""
    if coefficients is None and not contrasts:
        coefficients = design.coefficient_names

    targets: list[tuple[str, object]] = []
    for coef in coefficients or []:
        if coef not in design.coefficient_names:
            raise ConfigurationError(
                f"Unknown coefficient '{coef}'. Testable: {design.coefficient_names}"
            )
        targets.append((coef, coef))

    if contrasts:
        if isinstance(contrasts, Mapping):
            pairs = list(contrasts.items())
        else:
            pairs = [(contrast_name(num, den), (num, den)) for num, den in contrasts]
        for name, (numerator, denominator) in pairs:
            targets.append((name, design.contrast(numerator, denominator)))

    names = [name for name, _ in targets]
    if len(set(names)) != len(names):
        raise ConfigurationError(f"Duplicate test names: {names}")
    return targets
