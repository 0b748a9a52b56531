"""
Differential abundance result tables.

One row per (feature, tested coefficient or contrast). The table is built
once from the moderated fit and is never reordered in place: ``ranked`` and
``top`` return new tables, so the stored order always matches the input
feature order.

Serialization writes floats with 17 significant digits and reads them back
with Python float parsing, so a write/read cycle reproduces every value bit
for bit. Missing values are written as "NA".
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Iterator, Literal, Sequence

import numpy as np
import pandas as pd

from protdiff.core.quality import FeatureFlag
from protdiff.io.formats import FLOAT_FORMAT, NA_REP, parse_float
from protdiff.stats.linear_model import CoefficientTest, ModeratedFit
from protdiff.stats.multiple_testing import fdr_correction

logger = logging.getLogger(__name__)

__all__ = [
    'DifferentialResultRow',
    'DifferentialResultTable',
    'RESULT_COLUMNS',
]

RESULT_COLUMNS = [
    'feature_id',
    'coefficient',
    'log2_fold_change',
    'statistic',
    'degrees_of_freedom',
    'p_value',
    'adjusted_p_value',
    'standard_error',
    'ci_lower',
    'ci_upper',
    'average_expression',
    'sigma2',
    'sigma2_post',
    'n_used',
    'flags',
]

_STRING_COLUMNS = ('feature_id', 'coefficient')
_INT_COLUMNS = ('n_used', 'flags')


@dataclass(frozen=True)
class DifferentialResultRow:
    """Result of one feature for one coefficient or contrast.

    Attributes:
        feature_id: Protein/feature identifier
        coefficient: Tested coefficient or contrast name
        log2_fold_change: Estimated effect (log2 scale)
        statistic: Moderated t-statistic
        degrees_of_freedom: d0 + d_g (or d_g without moderation)
        p_value: Two-sided raw p-value
        adjusted_p_value: Benjamini-Hochberg q-value within the coefficient
        standard_error: Standard error of the effect
        ci_lower: Lower confidence bound
        ci_upper: Upper confidence bound
        average_expression: Mean observed normalized intensity
        sigma2: Residual variance before moderation
        sigma2_post: Moderated variance
        n_used: Observed samples used in the fit
        flags: FeatureFlag bits
    """

    feature_id: str
    coefficient: str
    log2_fold_change: float
    statistic: float
    degrees_of_freedom: float
    p_value: float
    adjusted_p_value: float
    standard_error: float
    ci_lower: float
    ci_upper: float
    average_expression: float
    sigma2: float
    sigma2_post: float
    n_used: int
    flags: int

    @property
    def flag_names(self) -> str:
        return FeatureFlag.describe(self.flags)

    def is_significant(self, alpha: float = 0.05) -> bool:
        return bool(self.adjusted_p_value < alpha)


class DifferentialResultTable:
    """
    Ordered collection of DifferentialResultRow.

    Backed by a DataFrame with RESULT_COLUMNS. Accessors return copies.

    Examples:
        >>> table = DifferentialResultTable.from_tests(moderated, [moderated.test("single_ko")])
        >>> table.top(10)["feature_id"].tolist()
        >>> table.to_csv("results.tsv")
    """

    def __init__(self, frame: pd.DataFrame):
        missing = [c for c in RESULT_COLUMNS if c not in frame.columns]
        if missing:
            raise ValueError(f"Result frame lacks columns: {missing}")

        frame = frame.loc[:, RESULT_COLUMNS].reset_index(drop=True)
        frame = frame.astype({c: str for c in _STRING_COLUMNS})
        frame = frame.astype({c: np.int64 for c in _INT_COLUMNS})
        float_columns = [c for c in RESULT_COLUMNS if c not in _STRING_COLUMNS + _INT_COLUMNS]
        self._frame = frame.astype({c: np.float64 for c in float_columns})

    @classmethod
    def from_tests(
        cls,
        moderated: ModeratedFit,
        tests: Sequence[CoefficientTest],
        fdr_method: Literal["BH", "BY", "bonferroni"] = "BH",
    ) -> DifferentialResultTable:
        """
        Assemble the table from per-coefficient tests of one moderated fit.

        Multiple testing correction is applied separately within each test.
        """
        names = [t.name for t in tests]
        if len(set(names)) != len(names):
            raise ValueError(f"Duplicate coefficient names: {names}")

        fit = moderated.fit
        blocks = []
        for test in tests:
            adjusted = fdr_correction(test.p_value, method=fdr_method)
            blocks.append(pd.DataFrame({
                'feature_id': np.asarray(fit.feature_ids, dtype=object),
                'coefficient': test.name,
                'log2_fold_change': test.estimate,
                'statistic': test.statistic,
                'degrees_of_freedom': test.df,
                'p_value': test.p_value,
                'adjusted_p_value': adjusted,
                'standard_error': test.standard_error,
                'ci_lower': test.ci_lower,
                'ci_upper': test.ci_upper,
                'average_expression': fit.amean,
                'sigma2': fit.sigma2,
                'sigma2_post': moderated.sigma2_post,
                'n_used': fit.n_used,
                'flags': moderated.flags,
            }))
            n_sig = int(np.sum(adjusted < 0.05))
            logger.info(f"{test.name}: {n_sig}/{len(adjusted)} features with adjusted p < 0.05")

        if blocks:
            frame = pd.concat(blocks, ignore_index=True)
        else:
            frame = pd.DataFrame({c: [] for c in RESULT_COLUMNS})
        return cls(frame)

    def __len__(self) -> int:
        return len(self._frame)

    def __iter__(self) -> Iterator[DifferentialResultRow]:
        names = [f.name for f in fields(DifferentialResultRow)]
        for values in self._frame.itertuples(index=False, name=None):
            row = dict(zip(names, values))
            row['n_used'] = int(row['n_used'])
            row['flags'] = int(row['flags'])
            yield DifferentialResultRow(**row)

    def __getitem__(self, column: str) -> pd.Series:
        return self._frame[column].copy()

    def __repr__(self) -> str:
        return (
            f"DifferentialResultTable({len(self)} rows, "
            f"coefficients={self.coefficients})"
        )

    @property
    def coefficients(self) -> list[str]:
        return list(pd.unique(self._frame['coefficient']))

    def to_dataframe(self) -> pd.DataFrame:
        return self._frame.copy()

    def equals(self, other: DifferentialResultTable) -> bool:
        return self._frame.equals(other._frame)

    def for_coefficient(self, coefficient: str) -> DifferentialResultTable:
        if coefficient not in self.coefficients:
            raise KeyError(f"No results for '{coefficient}'. Available: {self.coefficients}")
        return DifferentialResultTable(self._frame[self._frame['coefficient'] == coefficient])

    def ranked(
        self,
        by: Literal["p_value", "statistic"] = "p_value",
    ) -> DifferentialResultTable:
        """
        New table sorted by significance.

        ``"p_value"`` sorts ascending, ``"statistic"`` by descending |t|.
        The sort is stable and NaN values are placed last.
        """
        if by == "p_value":
            key = self._frame['p_value']
        elif by == "statistic":
            key = -self._frame['statistic'].abs()
        else:
            raise ValueError(f"Unknown ranking key '{by}'; use 'p_value' or 'statistic'")

        order = np.argsort(key.fillna(np.inf).to_numpy(), kind="stable")
        return DifferentialResultTable(self._frame.iloc[order])

    def top(self, n: int = 10, by: Literal["p_value", "statistic"] = "p_value") -> pd.DataFrame:
        """First ``n`` rows of the ranked table as a DataFrame."""
        return self.ranked(by=by)._frame.head(n).reset_index(drop=True)

    def significant(self, alpha: float = 0.05) -> DifferentialResultTable:
        return DifferentialResultTable(self._frame[self._frame['adjusted_p_value'] < alpha])

    def to_csv(self, path: str | Path, sep: str = "\t") -> None:
        """Write the table as delimited text (TSV by default)."""
        self._frame.to_csv(
            path, sep=sep, index=False, float_format=FLOAT_FORMAT, na_rep=NA_REP
        )

    @classmethod
    def from_csv(cls, path: str | Path, sep: str = "\t") -> DifferentialResultTable:
        """Read a table written by ``to_csv``; values round-trip exactly."""
        raw = pd.read_csv(path, sep=sep, dtype=str, keep_default_na=False)
        missing = [c for c in RESULT_COLUMNS if c not in raw.columns]
        if missing:
            raise ValueError(f"{path}: result table lacks columns {missing}")

        frame = pd.DataFrame({
            c: raw[c] if c in _STRING_COLUMNS else raw[c].map(parse_float)
            for c in RESULT_COLUMNS
        })
        return cls(frame)
