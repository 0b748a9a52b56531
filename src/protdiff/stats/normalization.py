"""
Variance stabilizing normalization (VSN) for multiplexed intensity data.

Reporter-ion intensities carry two kinds of technical distortion:

- channel-specific additive background and multiplicative loading bias, and
- heteroskedasticity: at low intensity the additive noise dominates and the
  variance of log intensities explodes, at high intensity the noise is
  roughly multiplicative and log variance is constant.

VSN removes both with one per-channel transform

    h_i(x) = arsinh(a_i + b_i * x),     b_i > 0

whose parameters are fitted jointly over all channels by maximum likelihood
under the model h_i(x_ki) = mu_k + eps_ki, eps ~ N(0, sigma^2). Profiling out
mu_k (feature means) and sigma^2 gives the objective

    -l(a, b) = N/2 * log(sigma^2_hat) - sum_ki log h_i'(x_ki)
    h_i'(x)  = b_i / sqrt(1 + (a_i + b_i * x)^2)

The first term pulls the channels onto each other (small between-channel
residual variance on the transformed scale); the Jacobian term stops the
optimizer from flattening the data with b_i -> 0.

arsinh is defined at zero and for negative arguments, so background-subtracted
intensities at or below zero are valid input. For large arguments
arsinh(z) ~ log(2z), so on the default glog2 output scale
(arsinh(z) / ln 2 - 1) differences between conditions read as log2 fold
changes.

References:
    - Huber et al. (2002) Bioinformatics 18(Suppl 1):S96-S104 (VSN)
    - Huber et al. (2003) Stat Appl Genet Mol Biol 2(1):3 (parameter estimation)
    - Rousseeuw (1984) JASA 79:871-880 (least trimmed squares)
"""

from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass, field
from typing import Literal

import numpy as np
import pandas as pd
from numpy.typing import NDArray
from scipy.optimize import minimize

from protdiff.core.errors import (
    ConfigurationError,
    ConvergenceFailure,
    DegenerateInputError,
)
from protdiff.core.intensity import IntensityMatrix
from protdiff.core.transform import Transform

logger = logging.getLogger(__name__)

__all__ = [
    'VSNFit',
    'VarianceStabilizingNormalizer',
    'StabilizationReport',
    'fit_vsn',
    'vsn_transform',
    'find_degenerate_channels',
    'assess_variance_stabilization',
]

_LN2 = np.log(2.0)


@dataclass(frozen=True)
class VSNFit:
    """Fitted per-channel VSN parameters.

    Attributes:
        sample_ids: Channels the parameters belong to (fitted order)
        offsets: a_i per channel
        scales: b_i per channel, on the raw intensity scale (> 0)
        objective: Final negative profile log-likelihood
        n_iter: Optimizer iterations summed over all LTS passes
        converged: True when the optimizer reported success in every pass
        excluded_channels: Degenerate channels left out of the fit
        n_features_fit: Features used in the final pass
        trimmed_features: Feature ids excluded by the final LTS pass
        input_scale: "intensity" or "log2" (see VarianceStabilizingNormalizer)
        output_scale: "glog2" or "arcsinh"
        history: One dict per LTS pass (objective, iterations, n_features,
            converged)
    """

    sample_ids: pd.Index
    offsets: NDArray[np.float64]
    scales: NDArray[np.float64]
    objective: float
    n_iter: int
    converged: bool
    excluded_channels: list[str] = field(default_factory=list)
    n_features_fit: int = 0
    trimmed_features: list[str] = field(default_factory=list)
    input_scale: str = "intensity"
    output_scale: str = "glog2"
    history: list[dict] = field(default_factory=list)

    def transform(self, matrix: IntensityMatrix) -> IntensityMatrix:
        """
        Apply the fitted transform to a matrix with the same channels.

        Channels are matched by sample id; the output holds exactly the fitted
        channels in fitted order (degenerate channels are dropped).

        Raises:
            ConfigurationError: If a fitted channel is absent from ``matrix``
        """
        missing = [s for s in self.sample_ids if s not in matrix.sample_ids]
        if missing:
            raise ConfigurationError(
                f"Matrix lacks fitted channels: {missing}"
            )
        keep = matrix.sample_ids.isin(self.sample_ids)
        subset = matrix.select_samples(keep)
        order = subset.sample_ids.get_indexer(self.sample_ids)
        if not np.array_equal(order, np.arange(len(order))):
            subset = IntensityMatrix(
                data=subset.data[:, order],
                feature_ids=subset.feature_ids,
                sample_ids=subset.sample_ids[order],
                sample_metadata=subset.sample_metadata.iloc[order],
            )

        x = subset.data
        if self.input_scale == "log2":
            x = np.exp2(x)
        transformed = vsn_transform(x, self.offsets, self.scales, self.output_scale)
        return subset.with_data(transformed)

    def to_frame(self) -> pd.DataFrame:
        """Per-channel parameter table."""
        return pd.DataFrame(
            {"offset": self.offsets, "scale": self.scales},
            index=self.sample_ids,
        )


@dataclass(frozen=True)
class StabilizationReport:
    """Variance of pairwise channel differences per intensity bin.

    Attributes:
        bin_means: Mean intensity (transformed scale) of each bin
        bin_variances: (n_pairs, n_bins) variance of h_i - h_j per bin
        pairs: Channel pairs in row order of bin_variances
        max_ratio: Worst pair's max/min bin variance ratio
        mean_ratio: max/min ratio of the pair-averaged bin variances
    """

    bin_means: NDArray[np.float64]
    bin_variances: NDArray[np.float64]
    pairs: list[tuple[str, str]]
    max_ratio: float
    mean_ratio: float


def vsn_transform(
    data: NDArray[np.float64],
    offsets: NDArray[np.float64],
    scales: NDArray[np.float64],
    output_scale: Literal["glog2", "arcsinh"] = "glog2",
) -> NDArray[np.float64]:
    """
    Apply h_i(x) = arsinh(a_i + b_i x) column-wise.

    NaN stays NaN. On the glog2 scale the result is arsinh(z)/ln 2 - 1,
    which tends to log2(z) for large z.
    """
    z = offsets[np.newaxis, :] + scales[np.newaxis, :] * data
    h = np.arcsinh(z)
    if output_scale == "glog2":
        return h / _LN2 - 1.0
    if output_scale == "arcsinh":
        return h
    raise ValueError(f"Unknown output scale: {output_scale}")


def find_degenerate_channels(data: NDArray[np.float64]) -> NDArray[np.bool_]:
    """
    Flag channels that carry no variance information.

    A channel is degenerate when it is entirely missing or constant over its
    observed values (a single observed value counts as constant).
    """
    degenerate = np.zeros(data.shape[1], dtype=bool)
    for j in range(data.shape[1]):
        col = data[:, j]
        observed = col[~np.isnan(col)]
        if observed.size == 0 or np.ptp(observed) == 0:
            degenerate[j] = True
    return degenerate


def _negative_log_likelihood(
    params: NDArray[np.float64],
    x: NDArray[np.float64],
    observed: NDArray[np.bool_],
) -> tuple[float, NDArray[np.float64]]:
    """
    Profile negative log-likelihood and its gradient.

    params = [a_1..a_d, log b_1..log b_d]; x has NaN replaced by 0 and
    ``observed`` marks the real entries. Because mu_k minimizes the residual
    sum of squares for fixed (a, b), its derivative drops out of the gradient.
    """
    n_channels = x.shape[1]
    a = params[:n_channels]
    b = np.exp(params[n_channels:])

    z = a[np.newaxis, :] + b[np.newaxis, :] * x
    h = np.arcsinh(z)
    h = np.where(observed, h, 0.0)

    n_obs_row = observed.sum(axis=1)
    mu = h.sum(axis=1) / n_obs_row
    r = np.where(observed, h - mu[:, np.newaxis], 0.0)

    n_total = observed.sum()
    rss = max(float(np.sum(r ** 2)), 1e-300)

    one_plus_z2 = 1.0 + z ** 2
    log_jacobian = np.where(observed, 0.5 * np.log(one_plus_z2), 0.0)
    n_obs_col = observed.sum(axis=0)

    objective = 0.5 * n_total * np.log(rss / n_total) \
        + float(np.sum(log_jacobian)) - float(np.sum(n_obs_col * np.log(b)))

    inv_sqrt = 1.0 / np.sqrt(one_plus_z2)
    weight = n_total / rss
    z_term = np.where(observed, z / one_plus_z2, 0.0)
    r_term = r * inv_sqrt

    grad_a = weight * r_term.sum(axis=0) + z_term.sum(axis=0)
    grad_b = weight * (r_term * x).sum(axis=0) + (z_term * x).sum(axis=0) - n_obs_col / b
    grad_log_b = grad_b * b

    return objective, np.concatenate([grad_a, grad_log_b])


def _initial_parameters(x_scaled: NDArray[np.float64]) -> NDArray[np.float64]:
    """b_i = 1 on the rescaled data; a_i centers each channel's low tail on 0."""
    n_channels = x_scaled.shape[1]
    a0 = np.zeros(n_channels)
    for j in range(n_channels):
        col = x_scaled[:, j]
        col = col[~np.isnan(col)]
        if col.size == 0:
            continue
        low = col[col <= np.quantile(col, 0.1)]
        a0[j] = -float(np.median(low))
    return np.concatenate([a0, np.zeros(n_channels)])


def _fit_once(
    x_scaled: NDArray[np.float64],
    start: NDArray[np.float64],
    max_iter: int,
    tol: float,
) -> tuple[NDArray[np.float64], float, int, bool]:
    observed = ~np.isnan(x_scaled)
    x_filled = np.where(observed, x_scaled, 0.0)

    result = minimize(
        _negative_log_likelihood,
        start,
        args=(x_filled, observed),
        jac=True,
        method="L-BFGS-B",
        options={
            "maxiter": max_iter,
            "maxfun": max_iter * 20,
            "ftol": tol,
            "gtol": 1e-10,
        },
    )

    if result.status == 1:
        raise ConvergenceFailure(
            f"VSN likelihood did not reach relative tolerance {tol:g} "
            f"within {max_iter} iterations",
            objective=float(result.fun),
            n_iter=int(result.nit),
            max_iter=max_iter,
            tol=tol,
        )
    if not result.success:
        logger.warning(f"VSN optimizer stopped early: {result.message}")
    if not np.all(np.isfinite(result.x)):
        raise ConvergenceFailure(
            "VSN optimizer produced non-finite parameters",
            objective=float(result.fun),
            n_iter=int(result.nit),
            max_iter=max_iter,
            tol=tol,
        )

    return result.x, float(result.fun), int(result.nit), bool(result.success)


def _row_residual_ss(
    params: NDArray[np.float64],
    x_scaled: NDArray[np.float64],
) -> NDArray[np.float64]:
    n_channels = x_scaled.shape[1]
    h = np.arcsinh(params[:n_channels] + np.exp(params[n_channels:]) * x_scaled)
    mu = np.nanmean(h, axis=1, keepdims=True)
    return np.nansum((h - mu) ** 2, axis=1)


def fit_vsn(
    data: NDArray[np.float64],
    max_iter: int = 1000,
    tol: float = 1e-9,
    lts_quantile: float = 0.9,
    lts_iterations: int = 3,
) -> tuple[NDArray[np.float64], NDArray[np.float64], dict]:
    """
    Fit VSN offsets and scales on a (features × channels) intensity array.

    Every channel must be non-degenerate (see find_degenerate_channels).

    Algorithm:
        1. Rescale the data by a global robust scale s (median absolute
           observed value) so that b_i = 1 is a sensible start; a_i starts
           from the median of each channel's lowest decile.
        2. Minimize the profile negative log-likelihood over (a_i, log b_i)
           with L-BFGS-B and an analytic gradient. Stops when the relative
           objective change falls below ``tol``.
        3. Least trimmed squares: features whose residual sum of squares lies
           above the ``lts_quantile`` quantile are left out of the next pass,
           which restarts from the current parameters. Repeated
           ``lts_iterations`` times; lts_quantile=1 means a single pass.

    Args:
        data: Raw intensities; NaN = missing. Zero/negative values allowed.
        max_iter: Iteration cap per optimizer pass.
        tol: Relative objective tolerance.
        lts_quantile: Fraction of features kept by each trimming pass.
        lts_iterations: Number of trimming passes.

    Returns:
        Tuple (offsets, scales, diagnostics) with scales on the raw scale.

    Raises:
        DegenerateInputError: If no feature is observed in two channels
        ConvergenceFailure: If an optimizer pass hits ``max_iter``
    """
    if not 0.5 <= lts_quantile <= 1.0:
        raise ValueError(f"lts_quantile must be in [0.5, 1], got {lts_quantile}")

    usable_rows = np.sum(~np.isnan(data), axis=1) >= 2
    if not np.any(usable_rows):
        raise DegenerateInputError(
            "No feature is observed in at least two channels; VSN cannot be fitted"
        )

    scale = float(np.nanmedian(np.abs(data[usable_rows])))
    if not np.isfinite(scale) or scale <= 0:
        scale = 1.0
    x_scaled = data / scale

    params = _initial_parameters(x_scaled[usable_rows])
    fit_rows = usable_rows.copy()
    n_passes = 1 if lts_quantile >= 1.0 else max(lts_iterations, 1)

    history = []
    total_iter = 0
    converged = True
    objective = np.nan
    for pass_idx in range(n_passes):
        params, objective, n_iter, success = _fit_once(x_scaled[fit_rows], params, max_iter, tol)
        total_iter += n_iter
        converged = converged and success
        history.append({
            "pass": pass_idx + 1,
            "objective": objective,
            "iterations": n_iter,
            "n_features": int(fit_rows.sum()),
            "converged": success,
        })
        logger.debug(
            f"VSN pass {pass_idx + 1}: objective={objective:.6g}, "
            f"iterations={n_iter}, features={int(fit_rows.sum())}"
        )

        if pass_idx + 1 < n_passes:
            rss = np.full(data.shape[0], np.inf)
            rss[usable_rows] = _row_residual_ss(params, x_scaled[usable_rows])
            cutoff = np.quantile(rss[usable_rows], lts_quantile)
            fit_rows = usable_rows & (rss <= cutoff)

    n_channels = data.shape[1]
    offsets = params[:n_channels].copy()
    scales = np.exp(params[n_channels:]) / scale

    diagnostics = {
        "objective": objective,
        "n_iter": total_iter,
        "converged": converged,
        "history": history,
        "fit_rows": fit_rows,
        "data_scale": scale,
    }
    return offsets, scales, diagnostics


class VarianceStabilizingNormalizer(Transform):
    """
    Jointly fitted per-channel arsinh normalization (VSN).

    Degenerate channels (all missing or constant) are detected before fitting,
    logged, recorded in ``VSNFit.excluded_channels`` and dropped from the
    output matrix through ``select_samples``. Fewer than two usable channels
    is a DegenerateInputError.

    Input scale:
        The engine works on protein-level intensities. With the default
        ``input_scale="intensity"`` the values are used as given. Data that
        were already log2-transformed upstream can be passed with
        ``input_scale="log2"``: they are exponentiated (2**x) before fitting so
        that the logarithm-like step is the one inside VSN. The two choices
        imply different noise models and are not interchangeable.

    Attributes:
        fit_: VSNFit from the last apply()/fit() call (None before)

    Examples:
        >>> vsn = VarianceStabilizingNormalizer()
        >>> normalized = vsn.apply(raw)
        >>> vsn.fit_.to_frame()
                offset     scale
        126   -0.01211  0.002034
        ...
    """

    def __init__(
        self,
        max_iter: int = 1000,
        tol: float = 1e-9,
        lts_quantile: float = 0.9,
        lts_iterations: int = 3,
        input_scale: Literal["intensity", "log2"] = "intensity",
        output_scale: Literal["glog2", "arcsinh"] = "glog2",
    ) -> None:
        if input_scale not in ("intensity", "log2"):
            raise ValueError(f"Unknown input scale: {input_scale}")
        if output_scale not in ("glog2", "arcsinh"):
            raise ValueError(f"Unknown output scale: {output_scale}")
        super().__init__(
            name="VSN",
            params={
                "max_iter": max_iter,
                "tol": tol,
                "lts_quantile": lts_quantile,
                "lts_iterations": lts_iterations,
                "input_scale": input_scale,
                "output_scale": output_scale,
            },
        )
        self.max_iter = max_iter
        self.tol = tol
        self.lts_quantile = lts_quantile
        self.lts_iterations = lts_iterations
        self.input_scale = input_scale
        self.output_scale = output_scale
        self.fit_: VSNFit | None = None

    def validate(self, matrix: IntensityMatrix) -> list[str]:
        errors = super().validate(matrix)
        if np.any(np.isinf(matrix.data)):
            errors.append("Matrix contains infinite values")
        empty = matrix.empty_features
        if len(empty):
            errors.append(
                f"{len(empty)} feature(s) have no observed values: {empty[:10].tolist()}"
            )
        if self.input_scale == "intensity" and np.nanmin(matrix.data, initial=0.0) < 0:
            logger.info(
                "Negative intensities present; arsinh handles them, "
                "check that the input is not already log-transformed"
            )
        return errors

    def fit(self, matrix: IntensityMatrix) -> VSNFit:
        """
        Fit channel parameters without transforming.

        Raises:
            DegenerateInputError: Empty/infinite input, entirely-missing
                features, fewer than two usable channels, or no feature
                observed in two usable channels
            ConvergenceFailure: If the optimizer hits its iteration cap

        An optimizer pass that stops early for another reason (e.g. a failed
        line search) is logged and leaves ``VSNFit.converged`` False.
        """
        errors = self.validate(matrix)
        if errors:
            raise DegenerateInputError("; ".join(errors))

        x = matrix.data
        if self.input_scale == "log2":
            x = np.exp2(x)

        degenerate = find_degenerate_channels(x)
        excluded = matrix.sample_ids[degenerate].tolist()
        if excluded:
            logger.warning(
                f"Excluding {len(excluded)} degenerate channel(s) from VSN "
                f"(all missing or constant): {excluded}"
            )
        if np.sum(~degenerate) < 2:
            raise DegenerateInputError(
                f"VSN needs at least 2 non-degenerate channels, "
                f"got {int(np.sum(~degenerate))} (excluded: {excluded})"
            )

        usable = x[:, ~degenerate]
        logger.info(
            f"Fitting VSN on {usable.shape[0]} features × {usable.shape[1]} channels"
        )
        offsets, scales, diagnostics = fit_vsn(
            usable,
            max_iter=self.max_iter,
            tol=self.tol,
            lts_quantile=self.lts_quantile,
            lts_iterations=self.lts_iterations,
        )

        fit_rows = diagnostics["fit_rows"]
        usable_rows = np.sum(~np.isnan(usable), axis=1) >= 2
        trimmed = matrix.feature_ids[usable_rows & ~fit_rows].tolist()

        self.fit_ = VSNFit(
            sample_ids=matrix.sample_ids[~degenerate],
            offsets=offsets,
            scales=scales,
            objective=float(diagnostics["objective"]),
            n_iter=int(diagnostics["n_iter"]),
            converged=bool(diagnostics["converged"]),
            excluded_channels=excluded,
            n_features_fit=int(fit_rows.sum()),
            trimmed_features=trimmed,
            input_scale=self.input_scale,
            output_scale=self.output_scale,
            history=diagnostics["history"],
        )
        if self.fit_.converged:
            logger.info(
                f"VSN converged: objective={self.fit_.objective:.6g}, "
                f"iterations={self.fit_.n_iter}"
            )
        else:
            logger.warning(
                f"VSN fit did not converge in every pass: "
                f"objective={self.fit_.objective:.6g}, iterations={self.fit_.n_iter}"
            )
        return self.fit_

    def apply(self, matrix: IntensityMatrix) -> IntensityMatrix:
        """Fit on ``matrix`` and return the normalized matrix (new instance)."""
        return self.fit(matrix).transform(matrix)


def assess_variance_stabilization(
    matrix: IntensityMatrix,
    n_bins: int = 5,
    min_per_bin: int = 10,
    binning: Literal["count", "width"] = "count",
) -> StabilizationReport:
    """
    Variance of pairwise channel differences across the intensity range.

    Features are binned by their mean over channels. With ``binning="count"``
    they are ordered and split into ``n_bins`` equal-count bins (the
    rank-based binning of a mean-sd plot); with ``binning="width"`` the range
    of feature means is cut into ``n_bins`` intervals of equal width, so
    sparse tails form their own bins.

    For every channel pair the variance of h_i - h_j is computed per bin.
    After successful stabilization the variances are roughly equal across
    bins; for log-transformed raw data the low-intensity bins show much
    larger variance.

    Args:
        matrix: Transformed (or log-transformed) matrix
        n_bins: Number of intensity bins
        min_per_bin: Bins with fewer complete pairs are reported as NaN
        binning: "count" (equal-count bins) or "width" (fixed-width bins)

    Returns:
        StabilizationReport
    """
    if binning not in ("count", "width"):
        raise ValueError(f"Unknown binning: {binning}")

    data = matrix.data
    finite = np.isfinite(data)
    n_finite = finite.sum(axis=1)
    with np.errstate(invalid="ignore", divide="ignore"):
        row_mean = np.where(finite, data, 0.0).sum(axis=1) / n_finite
    finite_rows = n_finite > 0
    order = np.argsort(row_mean[finite_rows], kind="stable")
    row_idx = np.flatnonzero(finite_rows)[order]
    if binning == "width":
        edges = np.linspace(row_mean[row_idx[0]], row_mean[row_idx[-1]], n_bins + 1)
        which = np.digitize(row_mean[row_idx], edges[1:-1])
        bins = [row_idx[which == k] for k in range(n_bins)]
    else:
        bins = np.array_split(row_idx, n_bins)

    bin_means = np.array([np.mean(row_mean[b]) if len(b) else np.nan for b in bins])

    pairs = []
    variances = []
    ids = list(matrix.sample_ids)
    for i in range(len(ids)):
        for j in range(i + 1, len(ids)):
            diff = data[:, i] - data[:, j]
            per_bin = []
            for b in bins:
                d = diff[b]
                d = d[np.isfinite(d)]
                per_bin.append(np.var(d, ddof=1) if d.size >= min_per_bin else np.nan)
            pairs.append((ids[i], ids[j]))
            variances.append(per_bin)

    bin_variances = np.asarray(variances, dtype=np.float64).reshape(len(pairs), n_bins)

    with warnings.catch_warnings():
        # All-NaN rows/bins yield NaN ratios
        warnings.simplefilter("ignore", RuntimeWarning)
        pair_ratios = np.nanmax(bin_variances, axis=1) / np.nanmin(bin_variances, axis=1)
        mean_var = np.nanmean(bin_variances, axis=0)
        mean_ratio = float(np.nanmax(mean_var) / np.nanmin(mean_var))
        max_ratio = float(np.nanmax(pair_ratios))

    return StabilizationReport(
        bin_means=bin_means,
        bin_variances=bin_variances,
        pairs=pairs,
        max_ratio=max_ratio,
        mean_ratio=mean_ratio,
    )
