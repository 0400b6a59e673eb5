"""
Shared statistical utilities for outbredqc services.

Undefined results are NaN throughout; nothing here coerces an empty group
to zero.
"""

from typing import Tuple

import numpy as np
from statsmodels.stats.multitest import multipletests


def nan_fraction(numerator: np.ndarray, denominator: np.ndarray) -> np.ndarray:
    """
    Elementwise numerator / denominator with NaN where denominator is 0.

    Args:
        numerator: Counts
        denominator: Counts of the same shape

    Returns:
        Float array of fractions
    """
    numerator = np.asarray(numerator, dtype=float)
    denominator = np.asarray(denominator, dtype=float)
    return np.divide(
        numerator,
        denominator,
        out=np.full(np.broadcast(numerator, denominator).shape, np.nan),
        where=denominator > 0,
    )


def bonferroni_select(p_values: np.ndarray, alpha: float = 0.05) -> Tuple[np.ndarray, float]:
    """
    Bonferroni selection over the finite p-values.

    NaN p-values (untestable markers) are not counted as tests and never
    selected.

    Args:
        p_values: Raw p-values, may contain NaN
        alpha: Family-wise error rate

    Returns:
        Tuple of (boolean selection mask, per-test threshold alpha / n_tested).
        The threshold is NaN when nothing could be tested.
    """
    p_values = np.asarray(p_values, dtype=float)
    tested = np.isfinite(p_values)
    selected = np.zeros(p_values.shape, dtype=bool)
    n_tested = int(tested.sum())
    if n_tested == 0:
        return selected, float("nan")

    reject, _, _, alpha_bonf = multipletests(p_values[tested], alpha=alpha, method="bonferroni")
    selected[tested] = reject
    return selected, float(alpha_bonf)


def robust_zscore(values: np.ndarray) -> np.ndarray:
    """
    Robust z-scores based on median and scaled MAD.

    Returns NaN for NaN inputs and all-NaN when the MAD is zero or fewer than
    three finite values exist.
    """
    values = np.asarray(values, dtype=float)
    out = np.full(values.shape, np.nan)
    finite = np.isfinite(values)
    if finite.sum() < 3:
        return out

    median = np.median(values[finite])
    mad = 1.4826 * np.median(np.abs(values[finite] - median))
    if mad == 0:
        return out

    out[finite] = (values[finite] - median) / mad
    return out
