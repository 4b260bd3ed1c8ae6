"""
Residual autocorrelation within cases.

residual_acf() pools the empirical autocorrelation over cases:

    ACF(h) = [ Σ_cases Σ_t e_t e_{t+h} / n_h ] / [ Σ_cases Σ_t e_t² / n_0 ]

with lags counted in observations within a case (sessions in order) and
an approximate 95% band ±1.96/√n_h. It is a check on the fitted residual
correlation structure and does not feed back into estimation.

Residual kinds:
    normalized   conditional residuals of each case premultiplied by the
                 inverse Cholesky factor of the case's fitted residual
                 covariance; white noise when the AR(1) and phase
                 variances are adequate (default)
    conditional  y − Xβ̂ − Zb̂
    marginal     y − Xβ̂
"""

from __future__ import annotations

import numpy as np
from numpy.typing import NDArray
import scipy.linalg as sla

from scdmeta.hlm._common import AutocorrelationResult
from scdmeta.hlm._reml import residual_covariance
from scdmeta.hlm.solution import ModelFit

RESIDUAL_KINDS = ('normalized', 'conditional', 'marginal')


def case_residuals(fit: ModelFit, kind: str = 'normalized') -> list[NDArray]:
    """Residuals of each case in session order."""
    if kind not in RESIDUAL_KINDS:
        raise ValueError(f"kind must be one of {RESIDUAL_KINDS}, got {kind!r}")

    design = fit.design
    if kind == 'marginal':
        resid = fit.params.marginal_residuals
    else:
        resid = fit.residuals

    cases = []
    for block in design.studies:
        local = resid[block.rows]
        R = None
        if kind == 'normalized':
            R = residual_covariance(block, design.layout, fit.theta)
        for sl in block.case_slices:
            e = local[sl]
            if R is not None:
                L = np.linalg.cholesky(R[sl, sl])
                e = sla.solve_triangular(L, e, lower=True)
            cases.append(e)
    return cases


def residual_acf(
    fit: ModelFit,
    max_lag: int = 14,
    kind: str = 'normalized',
) -> AutocorrelationResult:
    """Pooled within-case residual autocorrelation up to max_lag.

    Args:
        fit: Fitted model.
        max_lag: Largest lag, in observations.
        kind: 'normalized', 'conditional' or 'marginal'.

    Returns:
        AutocorrelationResult. Lags with no within-case pairs have NaN
        autocorrelation and bound.

    Raises:
        ValueError: If max_lag < 0 or kind is unknown.
    """
    if max_lag < 0:
        raise ValueError(f"max_lag must be >= 0, got {max_lag}")

    cases = case_residuals(fit, kind)

    lags = np.arange(max_lag + 1)
    sums = np.zeros(max_lag + 1, dtype=np.float64)
    n_pairs = np.zeros(max_lag + 1, dtype=np.int64)
    for e in cases:
        for h in range(min(max_lag, e.size - 1) + 1):
            sums[h] += float(e[:e.size - h] @ e[h:])
            n_pairs[h] += e.size - h

    with np.errstate(invalid='ignore', divide='ignore'):
        autocov = np.where(n_pairs > 0, sums / np.maximum(n_pairs, 1), np.nan)
        acf = autocov / autocov[0]
        bound = np.where(n_pairs > 0, 1.96 / np.sqrt(np.maximum(n_pairs, 1)), np.nan)

    return AutocorrelationResult(
        lags=lags,
        acf=acf,
        n_pairs=n_pairs,
        bound=bound,
        kind=kind,
    )
