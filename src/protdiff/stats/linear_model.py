"""
Per-feature linear models with empirical Bayes moderated t-statistics.

Each feature (protein) is regressed on the design matrix using only its
observed samples:

    y_g[obs] = X[obs] @ beta_g + e_g,    e_g ~ N(0, sigma_g^2 I)

Features sharing a missingness pattern share a sub-design, so the
decomposition of X[obs] is computed once per pattern and the coefficients of
all features in the pattern come out of a single matrix product. A pattern
whose sub-design lost rank (e.g. every sample of one condition is missing)
is solved with a column-pivoted QR: estimable coefficients are fitted and the
remaining ones are NaN.

The fit runs in two parallel phases separated by a global reduction:

    1. map:    feature batches fitted on a thread pool, each batch writing
               only its own rows of preallocated arrays
    2. reduce: prior (d0, s0^2) estimated from all residual variances
    3. map:    variances moderated toward the prior

Moderated statistics follow limma:

    s2_post = (d0 * s0^2 + d_g * s_g^2) / (d0 + d_g)
    t       = (c' beta_g) / sqrt(s2_post * c' (X'X)^-1 c)    on d0 + d_g df

References:
    - Smyth (2004) Statistical Applications in Genetics and Molecular Biology 3:3
    - Phipson et al. (2016) Annals of Applied Statistics 10(2):946-963
"""

from __future__ import annotations

import logging
import os
import threading
import warnings
from concurrent.futures import CancelledError, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Callable, Sequence

import numpy as np
import pandas as pd
from numpy.typing import NDArray
from scipy import stats
from scipy.linalg import qr, solve_triangular

from protdiff.core.errors import (
    ConfigurationError,
    DegenerateFeatureWarning,
    DegenerateInputError,
)
from protdiff.core.intensity import IntensityMatrix
from protdiff.core.quality import FeatureFlag
from protdiff.stats.design_matrix import DesignMatrix
from protdiff.stats.empirical_bayes import fit_f_dist, squeeze_var

logger = logging.getLogger(__name__)

__all__ = [
    'LinearModelFit',
    'ModeratedFit',
    'CoefficientTest',
    'ModeratedLinearModelFitter',
]

# Relative tolerance on |diag(R)| for the numerical rank of a sub-design
_RANK_TOL = 1e-7

# Residual SD below this fraction of the feature's RMS level counts as zero
_ZERO_SD_RTOL = 1e-12


def _freeze(*arrays: NDArray) -> None:
    for arr in arrays:
        arr.flags.writeable = False


@dataclass(frozen=True)
class LinearModelFit:
    """Ordinary least squares fit of every feature.

    All per-feature arrays are indexed by feature position. The unscaled
    covariance (X'X)^-1 of each distinct missingness pattern is stored once in
    ``pattern_cov_unscaled`` and referenced through ``pattern_index``.

    Attributes:
        feature_ids: Feature identifiers (n_features,)
        column_names: Design column names (n_params,)
        coefficients: beta (n_features, n_params); NaN where not estimable
        sigma2: Residual variance s_g^2; NaN where d_g = 0
        df_residual: d_g = n_used - rank
        unscaled_var: Diagonal of (X'X)^-1 for the feature's sub-design
        n_used: Number of observed samples
        rank: Rank of the feature's sub-design
        pattern_index: Index into ``pattern_cov_unscaled``
        pattern_cov_unscaled: (n_patterns, n_params, n_params), NaN rows and
            columns for non-estimable coefficients
        amean: Average observed expression
        n_samples: Number of samples in the fitted matrix
    """

    feature_ids: pd.Index
    column_names: list[str]
    coefficients: NDArray[np.float64]
    sigma2: NDArray[np.float64]
    df_residual: NDArray[np.float64]
    unscaled_var: NDArray[np.float64]
    n_used: NDArray[np.int64]
    rank: NDArray[np.int64]
    pattern_index: NDArray[np.int64]
    pattern_cov_unscaled: NDArray[np.float64]
    amean: NDArray[np.float64]
    n_samples: int

    def __post_init__(self):
        _freeze(
            self.coefficients, self.sigma2, self.df_residual, self.unscaled_var,
            self.n_used, self.rank, self.pattern_index, self.pattern_cov_unscaled,
            self.amean,
        )

    @property
    def n_features(self) -> int:
        return len(self.feature_ids)

    @property
    def n_params(self) -> int:
        return len(self.column_names)

    @property
    def n_patterns(self) -> int:
        return self.pattern_cov_unscaled.shape[0]

    def contrast_unscaled_var(self, contrast: NDArray[np.float64]) -> NDArray[np.float64]:
        """c' (X'X)^-1 c per feature, evaluated once per missingness pattern."""
        c = np.asarray(contrast, dtype=np.float64)
        nz = np.flatnonzero(c)
        cov = self.pattern_cov_unscaled[:, nz][:, :, nz]
        per_pattern = np.einsum('i,kij,j->k', c[nz], cov, c[nz])
        return per_pattern[self.pattern_index]


@dataclass(frozen=True)
class CoefficientTest:
    """Per-feature test of one coefficient or contrast."""

    name: str
    feature_ids: pd.Index
    estimate: NDArray[np.float64]
    standard_error: NDArray[np.float64]
    statistic: NDArray[np.float64]
    df: NDArray[np.float64]
    p_value: NDArray[np.float64]
    ci_lower: NDArray[np.float64]
    ci_upper: NDArray[np.float64]
    conf_level: float = 0.95

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame(
            {
                'estimate': self.estimate,
                'standard_error': self.standard_error,
                'statistic': self.statistic,
                'degrees_of_freedom': self.df,
                'p_value': self.p_value,
                'ci_lower': self.ci_lower,
                'ci_upper': self.ci_upper,
            },
            index=self.feature_ids,
        )


@dataclass(frozen=True)
class ModeratedFit:
    """Linear model fit plus empirical Bayes variance moderation.

    Attributes:
        fit: Underlying per-feature OLS fit
        d0: Prior degrees of freedom (inf: all features share s0_sq; 0: no
            moderation)
        s0_sq: Prior variance (NaN when moderation is disabled)
        sigma2_post: Moderated (posterior) variance per feature
        df_total: Degrees of freedom of the moderated statistic
        flags: FeatureFlag bits per feature
        eb_moderation: Whether shrinkage toward the prior was requested
        variance_floor: Value substituted for non-positive posterior variances
    """

    fit: LinearModelFit
    d0: float
    s0_sq: float
    sigma2_post: NDArray[np.float64]
    df_total: NDArray[np.float64]
    flags: NDArray[np.int64]
    eb_moderation: bool = True
    variance_floor: float = 1e-12

    def __post_init__(self):
        _freeze(self.sigma2_post, self.df_total, self.flags)

    @property
    def feature_ids(self) -> pd.Index:
        return self.fit.feature_ids

    @property
    def column_names(self) -> list[str]:
        return self.fit.column_names

    @property
    def n_features(self) -> int:
        return self.fit.n_features

    def test(
        self,
        target: str | Sequence[float] | NDArray[np.float64],
        name: str | None = None,
        conf_level: float = 0.95,
    ) -> CoefficientTest:
        """
        Moderated t-test of a coefficient or a contrast for every feature.

        Args:
            target: Coefficient name (e.g. "single_ko") or a contrast vector
                over the design columns (see DesignMatrix.contrast).
            name: Label for the result; defaults to the coefficient name or
                "contrast".
            conf_level: Confidence level of the interval.

        Returns:
            CoefficientTest with estimate, SE, t, df, two-sided p-value and
            confidence interval per feature. Features whose coefficient is not
            estimable, or without a usable variance, get NaN.
        """
        if isinstance(target, str):
            if target not in self.column_names:
                raise ConfigurationError(
                    f"Unknown coefficient '{target}'. Available: {self.column_names}"
                )
            contrast = np.zeros(self.fit.n_params)
            contrast[self.column_names.index(target)] = 1.0
            label = name or target
        else:
            contrast = np.asarray(target, dtype=np.float64)
            if contrast.shape != (self.fit.n_params,):
                raise ValueError(
                    f"Contrast must have length {self.fit.n_params}, got shape {contrast.shape}"
                )
            if not np.any(contrast):
                raise ValueError("Contrast vector is all zeros")
            label = name or "contrast"

        nz = np.flatnonzero(contrast)
        estimate = self.fit.coefficients[:, nz] @ contrast[nz]
        unscaled = self.fit.contrast_unscaled_var(contrast)

        with np.errstate(invalid="ignore"):
            se = np.sqrt(self.sigma2_post * unscaled)

        statistic, p_value, ci_lower, ci_upper = _t_test(
            estimate, se, self.df_total, conf_level
        )

        return CoefficientTest(
            name=label,
            feature_ids=self.feature_ids,
            estimate=estimate,
            standard_error=se,
            statistic=statistic,
            df=np.array(self.df_total, dtype=np.float64),
            p_value=p_value,
            ci_lower=ci_lower,
            ci_upper=ci_upper,
            conf_level=conf_level,
        )


def _t_test(
    estimate: NDArray[np.float64],
    se: NDArray[np.float64],
    df: NDArray[np.float64],
    conf_level: float,
) -> tuple[NDArray[np.float64], NDArray[np.float64], NDArray[np.float64], NDArray[np.float64]]:
    """t statistic, two-sided p-value and CI; infinite df uses the normal."""
    with np.errstate(divide="ignore", invalid="ignore"):
        statistic = estimate / se

    p_value = np.full_like(statistic, np.nan)
    crit = np.full_like(statistic, np.nan)
    q = 1.0 - (1.0 - conf_level) / 2.0

    ok = np.isfinite(statistic) & (df > 0)
    normal = ok & np.isinf(df)
    student = ok & ~normal

    p_value[student] = 2.0 * stats.t.sf(np.abs(statistic[student]), df[student])
    crit[student] = stats.t.ppf(q, df[student])
    p_value[normal] = 2.0 * stats.norm.sf(np.abs(statistic[normal]))
    crit[normal] = stats.norm.ppf(q)

    statistic = np.where(ok, statistic, np.nan)
    return statistic, p_value, estimate - crit * se, estimate + crit * se


@dataclass
class _PatternSolution:
    """Least squares solver for one missingness pattern."""

    observed: NDArray[np.intp]
    rank: int
    estimable: NDArray[np.intp]
    projector: NDArray[np.float64] = field(repr=False)
    X_est: NDArray[np.float64] = field(repr=False)
    cov_unscaled: NDArray[np.float64] = field(repr=False)

    @property
    def n_used(self) -> int:
        return len(self.observed)


def _solve_pattern(X: NDArray[np.float64], observed_mask: NDArray[np.bool_]) -> _PatternSolution:
    """
    Decompose the sub-design X[observed] with a column-pivoted QR.

    Columns whose pivoted |R_jj| falls below _RANK_TOL times the largest are
    not estimable: their coefficients and covariance entries are NaN.
    """
    n_params = X.shape[1]
    observed = np.flatnonzero(observed_mask)
    cov = np.full((n_params, n_params), np.nan)

    X_sub = X[observed]
    Q, R, piv = qr(X_sub, mode='economic', pivoting=True)
    diag = np.abs(np.diag(R))
    rank = int(np.sum(diag > _RANK_TOL * diag[0])) if diag[0] > 0 else 0

    estimable = piv[:rank]
    R11_inv = solve_triangular(R[:rank, :rank], np.eye(rank))

    # beta_est = R11^-1 Q1' y ; Cov_unscaled = R11^-1 R11^-T
    projector = R11_inv @ Q[:, :rank].T
    cov[np.ix_(estimable, estimable)] = R11_inv @ R11_inv.T

    return _PatternSolution(
        observed=observed,
        rank=rank,
        estimable=estimable,
        projector=projector,
        X_est=X_sub[:, estimable],
        cov_unscaled=cov,
    )


class ModeratedLinearModelFitter:
    """
    Fit per-feature linear models and moderate their variances.

    Args:
        eb_moderation: Shrink residual variances toward a common prior. With
            False the statistics are ordinary t-statistics on d_g df.
        variance_floor: Posterior variances that are zero or non-finite (with
            positive df) are replaced by this value and flagged CLAMPED.
        batch_size: Features per work item.
        n_workers: Thread pool size (default: min(4, cpu count)). 1 runs
            batches sequentially.
        cancel_event: Optional threading.Event; once set, no further batches
            are dispatched and the fit raises CancelledError.

    Examples:
        >>> fitter = ModeratedLinearModelFitter()
        >>> moderated = fitter.fit(normalized, design)
        >>> moderated.test("single_ko").to_frame().head()
    """

    def __init__(
        self,
        eb_moderation: bool = True,
        variance_floor: float = 1e-12,
        batch_size: int = 2048,
        n_workers: int | None = None,
        cancel_event: threading.Event | None = None,
    ):
        if variance_floor <= 0:
            raise ValueError(f"variance_floor must be positive, got {variance_floor}")
        if batch_size < 1:
            raise ValueError(f"batch_size must be >= 1, got {batch_size}")
        if n_workers is None:
            n_workers = min(4, os.cpu_count() or 1)
        if n_workers < 1:
            raise ValueError(f"n_workers must be >= 1, got {n_workers}")

        self.eb_moderation = eb_moderation
        self.variance_floor = variance_floor
        self.batch_size = batch_size
        self.n_workers = n_workers
        self.cancel_event = cancel_event

    def fit(self, matrix: IntensityMatrix, design: DesignMatrix) -> ModeratedFit:
        """Run OLS for every feature followed by variance moderation."""
        ols = self.fit_ols(matrix, design)
        return self.moderate(ols)

    def fit_ols(self, matrix: IntensityMatrix, design: DesignMatrix) -> LinearModelFit:
        """
        Phase 1: per-feature least squares on observed samples.

        Raises:
            ConfigurationError: Design rows not aligned with matrix samples
            DegenerateInputError: A feature has no observed value, or no feature
                has at least n_params observations
            CancelledError: cancel_event was set
        """
        design.check_alignment(matrix.sample_ids)

        empty = matrix.empty_features
        if len(empty):
            raise DegenerateInputError(
                f"{len(empty)} feature(s) have no observed values: {empty[:10].tolist()}"
            )

        data = matrix.data
        X = design.X
        n_features = matrix.n_features
        n_params = design.n_params

        observed = ~np.isnan(data)
        n_observed = observed.sum(axis=1)
        if not np.any(n_observed >= n_params):
            raise DegenerateInputError(
                f"Every feature has fewer observed samples than model parameters "
                f"({n_params}); nothing can be fitted"
            )

        patterns, pattern_index = np.unique(observed, axis=0, return_inverse=True)
        pattern_index = pattern_index.reshape(-1).astype(np.int64)
        solutions = [_solve_pattern(X, mask) for mask in patterns]
        pattern_cov = np.stack([s.cov_unscaled for s in solutions])

        logger.info(
            f"Fitting {n_features} features x {n_params} parameters "
            f"({len(solutions)} missingness patterns, {self.n_workers} workers)"
        )

        coefficients = np.full((n_features, n_params), np.nan)
        sigma2 = np.full(n_features, np.nan)
        df_residual = np.zeros(n_features)
        n_used = np.zeros(n_features, dtype=np.int64)
        rank = np.zeros(n_features, dtype=np.int64)
        amean = np.full(n_features, np.nan)

        def fit_batch(rows: NDArray[np.intp]) -> None:
            batch_patterns = pattern_index[rows]
            for pid in np.unique(batch_patterns):
                sol = solutions[pid]
                idx = rows[batch_patterns == pid]
                n_used[idx] = sol.n_used
                rank[idx] = sol.rank
                Y = data[np.ix_(idx, sol.observed)]
                amean[idx] = Y.mean(axis=1)

                beta = Y @ sol.projector.T
                coefficients[np.ix_(idx, sol.estimable)] = beta

                df = sol.n_used - sol.rank
                df_residual[idx] = df
                if df == 0:
                    continue

                resid = Y - beta @ sol.X_est.T
                s2 = np.einsum('ij,ij->i', resid, resid) / df
                level = np.maximum(np.sqrt(np.mean(Y ** 2, axis=1)), 1.0)
                sigma2[idx] = np.where(np.sqrt(s2) <= _ZERO_SD_RTOL * level, 0.0, s2)

        self._run_batches(fit_batch, n_features)

        pattern_diag = np.diagonal(pattern_cov, axis1=1, axis2=2)

        return LinearModelFit(
            feature_ids=matrix.feature_ids,
            column_names=list(design.column_names),
            coefficients=coefficients,
            sigma2=sigma2,
            df_residual=df_residual,
            unscaled_var=pattern_diag[pattern_index].copy(),
            n_used=n_used,
            rank=rank,
            pattern_index=pattern_index,
            pattern_cov_unscaled=pattern_cov,
            amean=amean,
            n_samples=matrix.n_samples,
        )

    def moderate(self, fit: LinearModelFit) -> ModeratedFit:
        """
        Phases 2 and 3: estimate the prior and compute posterior variances.

        Emits one DegenerateFeatureWarning summarizing flagged features.
        """
        self._check_cancelled()

        usable = (fit.df_residual > 0) & np.isfinite(fit.sigma2) & (fit.sigma2 > 0)
        n_usable = int(usable.sum())

        if not self.eb_moderation:
            d0, s0_sq = 0.0, np.nan
        elif n_usable < 3:
            warnings.warn(
                f"Only {n_usable} features have a positive residual variance; "
                f"empirical Bayes shrinkage disabled (ordinary t-statistics)",
                UserWarning,
                stacklevel=2,
            )
            d0, s0_sq = 0.0, np.nan
        else:
            d0, s0_sq = fit_f_dist(fit.sigma2[usable], fit.df_residual[usable])
            logger.info(f"Empirical Bayes prior: d0={d0:.4g}, s0^2={s0_sq:.4g} ({n_usable} features)")

        sigma2_post = np.full(fit.n_features, np.nan)
        df_total = np.zeros(fit.n_features)

        def moderate_batch(rows: NDArray[np.intp]) -> None:
            if d0 == 0.0:
                post = np.where(fit.df_residual[rows] > 0, fit.sigma2[rows], np.nan)
                total = fit.df_residual[rows].copy()
            else:
                post, total = squeeze_var(fit.sigma2[rows], fit.df_residual[rows], d0, s0_sq)
            sigma2_post[rows] = post
            df_total[rows] = total

        self._run_batches(moderate_batch, fit.n_features)

        flags = np.zeros(fit.n_features, dtype=np.int64)
        flags[fit.n_used < fit.n_samples] |= FeatureFlag.MISSING_VALUES
        flags[fit.rank < fit.n_params] |= FeatureFlag.NOT_ESTIMABLE
        flags[fit.df_residual == 0] |= FeatureFlag.NO_RESIDUAL_DF
        flags[(fit.df_residual > 0) & (fit.sigma2 == 0)] |= FeatureFlag.ZERO_VARIANCE

        clamp = (df_total > 0) & ~(np.isfinite(sigma2_post) & (sigma2_post > 0))
        sigma2_post[clamp] = self.variance_floor
        flags[clamp] |= FeatureFlag.CLAMPED

        self._warn_degenerate(flags)

        return ModeratedFit(
            fit=fit,
            d0=float(d0),
            s0_sq=float(s0_sq),
            sigma2_post=sigma2_post,
            df_total=df_total,
            flags=flags,
            eb_moderation=self.eb_moderation,
            variance_floor=self.variance_floor,
        )

    def _warn_degenerate(self, flags: NDArray[np.int64]) -> None:
        counts = [
            (FeatureFlag.NO_RESIDUAL_DF, "without residual df"),
            (FeatureFlag.ZERO_VARIANCE, "with zero residual variance"),
            (FeatureFlag.CLAMPED, "clamped to the variance floor"),
            (FeatureFlag.NOT_ESTIMABLE, "with non-estimable coefficients"),
        ]
        parts = []
        for flag, description in counts:
            n = FeatureFlag.count(flags, flag)
            if n:
                parts.append(f"{n} {description}")
        if parts:
            message = "Degenerate features: " + "; ".join(parts)
            logger.warning(message)
            warnings.warn(message, DegenerateFeatureWarning, stacklevel=3)

    def _check_cancelled(self) -> None:
        if self.cancel_event is not None and self.cancel_event.is_set():
            raise CancelledError("Linear model fit cancelled")

    def _run_batches(self, func: Callable[[NDArray[np.intp]], None], n_features: int) -> None:
        """Apply func to contiguous feature batches; results are written in place."""
        n_batches = max(1, -(-n_features // self.batch_size))
        batches = np.array_split(np.arange(n_features), n_batches)

        if self.n_workers == 1 or n_batches == 1:
            for rows in batches:
                self._check_cancelled()
                func(rows)
            return

        def run(rows: NDArray[np.intp]) -> None:
            # Queued batches see an event set while earlier ones run
            self._check_cancelled()
            func(rows)

        self._check_cancelled()
        with ThreadPoolExecutor(max_workers=self.n_workers) as executor:
            futures = [executor.submit(run, rows) for rows in batches]
            try:
                for future in futures:
                    future.result()
            except BaseException:
                for future in futures:
                    future.cancel()
                raise
