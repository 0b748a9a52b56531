"""
Multiple testing correction for per-feature p-values.

The Benjamini-Hochberg step-up procedure is implemented directly so that tie
handling is explicit: p-values are sorted with a stable sort, so equal
p-values keep their original relative order and the result is reproducible
bit for bit. Benjamini-Yekutieli and Bonferroni are delegated to
statsmodels.

References:
    - Benjamini & Hochberg (1995) JRSS-B 57(1):289-300
    - Benjamini & Yekutieli (2001) Annals of Statistics 29(4):1165-1188
"""

from __future__ import annotations

from typing import Literal

import numpy as np
from numpy.typing import NDArray

__all__ = ['benjamini_hochberg', 'fdr_correction']


def benjamini_hochberg(pvalues: NDArray[np.float64] | list[float]) -> NDArray[np.float64]:
    """
    Benjamini-Hochberg adjusted p-values (q-values).

    Algorithm:
        1. Stable ascending sort with original-index tracking
        2. q_(k) = p_(k) · m / k for rank k = 1..m
        3. Running minimum from the largest rank down
           (q_(k) = min(q_(k), q_(k+1))) for monotonicity
        4. Clip to [0, 1] and map back to the original order

    NaN p-values are passed through as NaN and do not count toward m.
    With m <= 1 the input is returned unchanged (capped at 1).

    Args:
        pvalues: Raw p-values

    Returns:
        Adjusted p-values in the input order

    Examples:
        >>> benjamini_hochberg([0.001, 0.02, 0.03, 0.5]).round(4)
        array([0.004, 0.04 , 0.04 , 0.5  ])
    """
    p = np.asarray(pvalues, dtype=np.float64)
    if p.ndim != 1:
        raise ValueError(f"Expected 1D p-values, got shape {p.shape}")

    adjusted = np.full_like(p, np.nan)
    valid = ~np.isnan(p)
    p_valid = p[valid]
    m = p_valid.size

    if np.any((p_valid < 0) | (p_valid > 1)):
        raise ValueError("p-values must lie in [0, 1]")

    if m <= 1:
        adjusted[valid] = np.minimum(p_valid, 1.0)
        return adjusted

    order = np.argsort(p_valid, kind="stable")
    ranks = np.arange(1, m + 1, dtype=np.float64)
    q_sorted = p_valid[order] * m / ranks
    q_sorted = np.minimum.accumulate(q_sorted[::-1])[::-1]
    q_sorted = np.clip(q_sorted, 0.0, 1.0)

    q = np.empty(m, dtype=np.float64)
    q[order] = q_sorted
    adjusted[valid] = q
    return adjusted


def fdr_correction(
    pvalues: NDArray[np.float64],
    method: Literal["BH", "BY", "bonferroni"] = "BH",
    alpha: float = 0.05,
) -> NDArray[np.float64]:
    """
    Apply multiple testing correction.

    Args:
        pvalues: Array of raw p-values (NaN passed through).
        method: Correction method:
            - "BH": Benjamini-Hochberg (controls FDR)
            - "BY": Benjamini-Yekutieli (controls FDR under dependence)
            - "bonferroni": Bonferroni (controls FWER)
        alpha: Significance threshold (only used by statsmodels bookkeeping).

    Returns:
        Array of adjusted p-values.
    """
    if method == "BH":
        return benjamini_hochberg(pvalues)

    from statsmodels.stats.multitest import multipletests

    method_map = {"BY": "fdr_by", "bonferroni": "bonferroni"}
    if method not in method_map:
        raise ValueError(f"Unknown correction method: {method}")

    pvalues = np.asarray(pvalues, dtype=np.float64)
    valid_mask = ~np.isnan(pvalues)
    adj_pvals = np.full_like(pvalues, np.nan)

    if not np.any(valid_mask):
        return adj_pvals

    _, adj_pvals[valid_mask], _, _ = multipletests(
        pvalues[valid_mask],
        alpha=alpha,
        method=method_map[method],
    )

    return adj_pvals
