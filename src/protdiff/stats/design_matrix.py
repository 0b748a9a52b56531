"""
Treatment-coded design matrices for condition comparisons.

Builds the design matrix of the per-feature linear model from per-sample
condition labels:

    X = [intercept | indicator(level_2) | indicator(level_3) | ...]

The baseline level is absorbed into the intercept, so the coefficient of each
indicator column is the log2 fold change of that level versus the baseline
(on a log2-like intensity scale). Column order is baseline-first and then the
caller's level order (lexicographic when not given), so coefficient names and
interpretation are stable across runs and input orderings.

Design tables coming from the ingestion stage are aligned to the intensity
matrix by sample id. The alignment is checked, never assumed: a missing,
extra or duplicated sample id is a ConfigurationError.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence

import numpy as np
import pandas as pd
from numpy.typing import NDArray

from protdiff.core.errors import ConfigurationError

__all__ = [
    'DesignMatrix',
    'encode_design',
    'design_from_table',
    'REQUIRED_DESIGN_COLUMNS',
    'INTERCEPT',
]

REQUIRED_DESIGN_COLUMNS = ("sample_id", "condition", "replicate")

INTERCEPT = "intercept"


@dataclass(frozen=True)
class DesignMatrix:
    """Full-rank treatment-coded design.

    Attributes:
        X: Design matrix (n_samples, n_params), float64
        column_names: "intercept" followed by one name per non-baseline level
        sample_ids: Row identifiers, in intensity-matrix column order
        levels: All condition levels, baseline first
        baseline: Reference level absorbed into the intercept
        condition: Condition label per row
    """

    X: NDArray[np.float64]
    column_names: list[str]
    sample_ids: pd.Index
    levels: list[str]
    baseline: str
    condition: NDArray

    @property
    def n_params(self) -> int:
        return self.X.shape[1]

    @property
    def n_samples(self) -> int:
        return self.X.shape[0]

    @property
    def df_residual(self) -> int:
        return self.n_samples - self.n_params

    @property
    def coefficient_names(self) -> list[str]:
        """Testable (non-intercept) coefficient names."""
        return self.column_names[1:]

    def column_index(self, name: str) -> int:
        try:
            return self.column_names.index(name)
        except ValueError:
            raise ConfigurationError(
                f"Unknown coefficient '{name}'. Available: {self.column_names}"
            ) from None

    def check_alignment(self, sample_ids: Sequence[str] | pd.Index) -> None:
        """
        Verify that design rows match the given sample order exactly.

        Raises:
            ConfigurationError: On any difference in identity or order
        """
        other = pd.Index([str(s) for s in sample_ids])
        if not other.equals(self.sample_ids):
            missing = other.difference(self.sample_ids).tolist()
            extra = self.sample_ids.difference(other).tolist()
            raise ConfigurationError(
                "Design rows are not aligned with the intensity matrix samples. "
                f"Missing from design: {missing}; not in matrix: {extra}; "
                f"same set but different order: {not missing and not extra}"
            )

    def contrast(self, numerator: str, denominator: str | None = None) -> NDArray[np.float64]:
        """
        Parameter-space contrast vector for ``numerator - denominator``.

        ``denominator`` defaults to the baseline, in which case the contrast
        selects the numerator's coefficient.

        Examples:
            >>> design.column_names
            ['intercept', 'double_ko', 'single_ko']
            >>> design.contrast("double_ko", "single_ko")
            array([ 0.,  1., -1.])
        """
        denominator = self.baseline if denominator is None else denominator
        for level in (numerator, denominator):
            if level not in self.levels:
                raise ConfigurationError(
                    f"Unknown condition level '{level}'. Levels: {self.levels}"
                )
        if numerator == denominator:
            raise ConfigurationError(f"Contrast compares '{numerator}' with itself")

        # mean(baseline) = beta_0, mean(level) = beta_0 + beta_level
        c = np.zeros(self.n_params)
        if numerator != self.baseline:
            c[self.column_index(numerator)] += 1.0
        if denominator != self.baseline:
            c[self.column_index(denominator)] -= 1.0
        return c

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame(self.X, index=self.sample_ids, columns=self.column_names)


def encode_design(
    condition: Sequence[str] | pd.Series | NDArray,
    baseline: str,
    levels: Sequence[str] | None = None,
    sample_ids: Sequence[str] | pd.Index | None = None,
) -> DesignMatrix:
    """
    Encode per-sample condition labels as intercept + indicator columns.

    Args:
        condition: Condition label per sample (length n_samples).
        baseline: Reference level (intercept).
        levels: Known level set and column order. The baseline is moved to
            the front. Defaults to the sorted distinct labels.
        sample_ids: Row identifiers; defaults to "0".."n-1".

    Returns:
        DesignMatrix

    Raises:
        ConfigurationError: Fewer than 2 distinct levels, a label outside the
            level set, an unknown baseline, or a rank-deficient design.

    Examples:
        >>> design = encode_design(["wt", "single_ko", "wt", "single_ko"], baseline="wt")
        >>> design.column_names
        ['intercept', 'single_ko']
        >>> design.X[:, 1]
        array([0., 1., 0., 1.])
    """
    import statsmodels.api as sm

    labels = np.asarray([str(c) for c in condition], dtype=object)
    n_samples = len(labels)
    baseline = str(baseline)

    observed_levels = sorted(set(labels.tolist()))
    if levels is None:
        levels = observed_levels
    else:
        levels = [str(level) for level in levels]
        if len(set(levels)) != len(levels):
            raise ConfigurationError(f"Duplicate entries in levels: {levels}")
        unknown = sorted(set(observed_levels) - set(levels))
        if unknown:
            raise ConfigurationError(
                f"Condition label(s) {unknown} not in the known level set {levels}"
            )

    if len(observed_levels) < 2:
        raise ConfigurationError(
            f"Need at least 2 distinct condition levels, got {observed_levels}"
        )
    if baseline not in levels:
        raise ConfigurationError(
            f"Baseline '{baseline}' is not a condition level. Levels: {levels}"
        )

    ordered_levels = [baseline] + [lvl for lvl in levels if lvl != baseline]

    # Indicator columns for every level present in the level set, baseline dropped
    cat = pd.Categorical(labels, categories=ordered_levels)
    dummies = pd.get_dummies(cat, drop_first=True, dtype=float)
    dummies.columns = [str(c) for c in dummies.columns]
    X_df = sm.add_constant(dummies, prepend=True, has_constant="add")
    X = X_df.to_numpy(dtype=np.float64)
    column_names = [INTERCEPT] + list(dummies.columns)

    rank = np.linalg.matrix_rank(X)
    if rank < X.shape[1]:
        absent = [lvl for lvl in ordered_levels[1:] if lvl not in labels]
        raise ConfigurationError(
            f"Design matrix is rank-deficient: rank={rank}, n_params={X.shape[1]}. "
            f"Columns: {column_names}. Levels without samples: {absent}"
        )

    if sample_ids is None:
        sample_ids = [str(i) for i in range(n_samples)]
    sample_index = pd.Index([str(s) for s in sample_ids], name="sample_id")
    if len(sample_index) != n_samples:
        raise ConfigurationError(
            f"sample_ids length ({len(sample_index)}) != number of labels ({n_samples})"
        )

    return DesignMatrix(
        X=X,
        column_names=column_names,
        sample_ids=sample_index,
        levels=ordered_levels,
        baseline=baseline,
        condition=labels,
    )


def design_from_table(
    design_table: pd.DataFrame,
    sample_ids: Sequence[str] | pd.Index,
    baseline: str,
    levels: Sequence[str] | None = None,
    condition_col: str = "condition",
    sample_col: str = "sample_id",
    required_columns: Sequence[str] = REQUIRED_DESIGN_COLUMNS,
) -> DesignMatrix:
    """
    Build a DesignMatrix from a per-sample design table.

    The table is reordered to ``sample_ids`` (the intensity matrix column
    order). Every matrix sample must appear exactly once and the table may
    not contain samples absent from the matrix.

    Args:
        design_table: One row per sample with at least ``required_columns``.
        sample_ids: Intensity matrix sample order.
        baseline: Reference condition level.
        levels: Optional level order (see encode_design).
        condition_col: Column holding condition labels.
        sample_col: Column holding sample identifiers.
        required_columns: Columns that must be present.

    Raises:
        ConfigurationError: Missing columns, missing/duplicated/extra samples,
            or any error from encode_design.
    """
    missing_cols = [c for c in required_columns if c not in design_table.columns]
    if condition_col not in design_table.columns and condition_col not in missing_cols:
        missing_cols.append(condition_col)
    if sample_col not in design_table.columns and sample_col not in missing_cols:
        missing_cols.append(sample_col)
    if missing_cols:
        raise ConfigurationError(
            f"Design table lacks required column(s) {missing_cols}. "
            f"Found: {list(design_table.columns)}"
        )

    table_ids = design_table[sample_col].astype(str)
    duplicated = table_ids[table_ids.duplicated()].unique().tolist()
    if duplicated:
        raise ConfigurationError(f"Duplicated sample ids in design table: {duplicated}")

    matrix_ids = pd.Index([str(s) for s in sample_ids])
    not_in_design = matrix_ids.difference(pd.Index(table_ids)).tolist()
    not_in_matrix = pd.Index(table_ids).difference(matrix_ids).tolist()
    if not_in_design or not_in_matrix:
        raise ConfigurationError(
            "Sample ids of the design table and the intensity matrix differ. "
            f"Missing from design: {not_in_design}; missing from matrix: {not_in_matrix}"
        )

    aligned = design_table.assign(**{sample_col: table_ids}).set_index(sample_col).loc[matrix_ids]
    if aligned[condition_col].isna().any():
        raise ConfigurationError(
            f"Missing condition label for samples: "
            f"{aligned.index[aligned[condition_col].isna()].tolist()}"
        )

    return encode_design(
        aligned[condition_col].astype(str).to_numpy(),
        baseline=baseline,
        levels=levels,
        sample_ids=matrix_ids,
    )
