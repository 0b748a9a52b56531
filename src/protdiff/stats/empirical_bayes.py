"""
Empirical Bayes variance moderation (limma-style).

Each feature's residual variance s²_g is treated as a noisy estimate of a true
variance drawn from a common scaled inverse-chi-squared prior with d0 degrees
of freedom and scale s0². The prior is estimated from all features at once
(method of moments on log s²_g) and each feature's variance is then shrunk
toward it:

    s²_post = (d0 * s0² + d_g * s²_g) / (d0 + d_g)

This is a global reduction over the per-feature fits and therefore the
barrier between the two parallel phases of the linear model fit.

References:
    - Smyth (2004) Statistical Applications in Genetics and Molecular Biology 3:3
    - Ritchie et al. (2015) Nucleic Acids Research 43(7):e47 (limma)
"""

from __future__ import annotations

import logging

import numpy as np
from numpy.typing import NDArray
from scipy.special import digamma, polygamma

logger = logging.getLogger(__name__)

__all__ = ['trigamma_inverse', 'fit_f_dist', 'squeeze_var']


def trigamma_inverse(x: float, tol: float = 1e-8, max_iter: int = 50) -> float:
    """
    Compute the inverse of the trigamma function using Newton's method.

    Solves for y where trigamma(y) = x, following limma's trigammaInverse:
    Newton iteration on 1/trigamma(y), which is convex and nearly linear,
    started at y = 0.5 + 1/x.

    Args:
        x: Target trigamma value (must be positive)
        tol: Convergence tolerance (relative step size)
        max_iter: Maximum Newton iterations

    Returns:
        y such that trigamma(y) ≈ x (np.inf for x <= 0)
    """
    if x <= 0:
        return np.inf

    # Asymptotes: trigamma(y) ~ 1/y² near 0 and ~ 1/y for large y
    if x > 1e7:
        return 1.0 / np.sqrt(x)
    if x < 1e-6:
        return 1.0 / x

    y = 0.5 + 1.0 / x
    for _ in range(max_iter):
        tri = float(polygamma(1, y))
        step = tri * (1.0 - tri / x) / float(polygamma(2, y))
        y += step
        if -step / y < tol:
            break
    else:
        logger.warning("trigamma_inverse: iteration limit exceeded")

    return max(y, 1e-10)


def fit_f_dist(
    sigma2: NDArray[np.float64],
    df: float | NDArray[np.float64],
) -> tuple[float, float]:
    """
    Estimate prior d0 and s0² via method of moments (limma fitFDist).

    Mathematical basis:
        Under the prior, s²_g ~ s0² × F(d_g, d0). On the log scale
            E[log s²_g]   = log s0² + digamma(d_g/2) - log(d_g/2)
                                     - digamma(d0/2) + log(d0/2)
            Var[log s²_g] = trigamma(d_g/2) + trigamma(d0/2)
        so after centering z_g = log s²_g - digamma(d_g/2) + log(d_g/2)
        the excess variance of z over mean(trigamma(d_g/2)) identifies d0.

    Only features with finite, positive s²_g and d_g > 0 enter the estimate.
    Per-feature degrees of freedom (features with missing values) are
    supported.

    Args:
        sigma2: Sample variances (n_features,)
        df: Residual degrees of freedom (scalar or per-feature array)

    Returns:
        Tuple (d0, s0_sq):
        - d0: Prior degrees of freedom (np.inf when the variances are no
          more dispersed than sampling alone explains)
        - s0_sq: Prior scale (prior variance estimate)
    """
    sigma2 = np.asarray(sigma2, dtype=np.float64)
    df_arr = np.broadcast_to(np.asarray(df, dtype=np.float64), sigma2.shape)

    valid_mask = (sigma2 > 0) & np.isfinite(sigma2) & (df_arr > 0) & np.isfinite(df_arr)
    sigma2_valid = sigma2[valid_mask]
    df_valid = df_arr[valid_mask]

    if len(sigma2_valid) < 3:
        # Insufficient data - no shrinkage
        return np.inf, float(np.median(sigma2_valid)) if len(sigma2_valid) > 0 else 1.0

    df_half = df_valid / 2.0
    e = np.log(sigma2_valid) - digamma(df_half) + np.log(df_half)

    emean = float(np.mean(e))
    evar = float(np.var(e, ddof=1))
    evar_adjusted = evar - float(np.mean(polygamma(1, df_half)))

    if evar_adjusted <= 0:
        d0 = np.inf
        s0_sq = np.exp(emean)
    else:
        d0 = 2.0 * trigamma_inverse(evar_adjusted)
        if d0 > 1e10:
            d0 = np.inf
            s0_sq = np.exp(emean)
        else:
            s0_sq = np.exp(emean + digamma(d0 / 2.0) - np.log(d0 / 2.0))

    return float(d0), float(s0_sq)


def squeeze_var(
    sigma2: NDArray[np.float64],
    df: float | NDArray[np.float64],
    d0: float,
    s0_sq: float,
) -> tuple[NDArray[np.float64], NDArray[np.float64]]:
    """
    Apply Empirical Bayes variance shrinkage (limma squeezeVar).

    Formula:
        s²_post = (d0 × s0² + df × s²) / (d0 + df)
        df_total = d0 + df

    Features with df = 0 carry no variance information of their own: their
    s² (NaN) contributes nothing and they receive the prior s0² with d0
    degrees of freedom. With d0 = inf every feature receives s0²; with
    d0 = 0 the sample variances are returned unchanged.

    Args:
        sigma2: Sample variances (n_features,); NaN allowed where df = 0
        df: Residual degrees of freedom, scalar or per feature
        d0: Prior degrees of freedom (from fit_f_dist)
        s0_sq: Prior scale (from fit_f_dist)

    Returns:
        Tuple (s2_post, df_total), both arrays of shape (n_features,)
    """
    sigma2 = np.asarray(sigma2, dtype=np.float64)
    df_arr = np.broadcast_to(np.asarray(df, dtype=np.float64), sigma2.shape).copy()

    if np.isinf(d0):
        return np.full_like(sigma2, s0_sq), np.full_like(sigma2, np.inf)

    own = np.where(df_arr > 0, df_arr * sigma2, 0.0)
    with np.errstate(invalid="ignore", divide="ignore"):
        s2_post = (d0 * s0_sq + own) / (d0 + df_arr)
    df_total = d0 + df_arr

    return s2_post, df_total
