"""
Marginal covariance, generalized least squares and the restricted
log-likelihood of the four-level model.

For study s the marginal covariance is

    V_s = Σ_level (Z_level G_level Z_levelᵀ) ∘ M_level
          + σ² (δ δᵀ) ∘ (φ^|t_i − t_j| ∘ M_case)

where M_level marks pairs of rows that share a unit at that level, δ holds
the residual SD ratio of each row's phase and φ is the AR(1) coefficient.

For given θ, β is profiled out by GLS and the restricted log-likelihood is

    ℓ_R(θ) = −½ [ (N − p) log 2π + Σ_s log|V_s| + log|Xᵀ V⁻¹ X|
                 + (y − Xβ̂)ᵀ V⁻¹ (y − Xβ̂) ]

Everything is computed study by study through the Cholesky factor of V_s
(whitening), never forming V⁻¹.

References:
    Pinheiro, J. C., & Bates, D. M. (2000). Mixed-Effects Models in S and
    S-PLUS. Springer. Sections 2.2 and 5.1.
"""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np
from numpy.typing import NDArray
import scipy.linalg as sla

from scdmeta.hlm.design import ModelDesign, StudyBlock
from scdmeta.hlm._parameters import ThetaLayout

# Returned to the optimizer when V is not positive definite at a trial θ
_PENALTY = 1e25


def residual_sd_ratios(block: StudyBlock, layout: ThetaLayout, theta: NDArray) -> NDArray:
    """Residual SD ratio δ of each row's phase (all 1 when homoscedastic)."""
    if not layout.phases:
        return np.ones(block.n, dtype=np.float64)
    ratios = layout.sd_ratios(theta)
    per_phase = np.array([ratios[p] for p in layout.phases])
    return per_phase[block.phase_codes]


def residual_correlation(block: StudyBlock, layout: ThetaLayout, theta: NDArray) -> NDArray:
    """Within-case residual correlation φ^|t_i − t_j| (identity without AR(1))."""
    phi = layout.ar1(theta)
    if phi is None:
        return np.eye(block.n, dtype=np.float64)
    return np.where(block.same_case, np.power(phi, block.lag), 0.0)


def residual_covariance(block: StudyBlock, layout: ThetaLayout, theta: NDArray) -> NDArray:
    """Residual covariance σ² (δ δᵀ) ∘ C of one study."""
    sigma_sq = layout.sigma(theta) ** 2
    delta = residual_sd_ratios(block, layout, theta)
    return sigma_sq * np.outer(delta, delta) * residual_correlation(block, layout, theta)


def marginal_covariance(block: StudyBlock, layout: ThetaLayout, theta: NDArray) -> NDArray:
    """Marginal covariance V_s of one study."""
    V = residual_covariance(block, layout, theta)
    for level in layout.levels:
        Z = block.Z[level]
        G = layout.covariance(theta, level)
        V = V + (Z @ G @ Z.T) * block.same_unit[level]
    return V


@dataclass(frozen=True)
class WhitenedStudy:
    """One study whitened by the Cholesky factor of its marginal covariance.

    Attributes:
        L: Lower Cholesky factor of V_s.
        X: L⁻¹ X_s.
        y: L⁻¹ y_s.
    """
    L: NDArray
    X: NDArray
    y: NDArray


@dataclass(frozen=True)
class GLSResult:
    """GLS solve at a fixed θ.

    Attributes:
        beta: GLS fixed effects (p,).
        cov_beta: Model-based covariance (Xᵀ V⁻¹ X)⁻¹ (p, p).
        information: Xᵀ V⁻¹ X (p, p).
        loglik: Restricted log-likelihood ℓ_R(θ).
        studies: Whitened studies, in design order.
    """
    beta: NDArray
    cov_beta: NDArray
    information: NDArray
    loglik: float
    studies: tuple[WhitenedStudy, ...]


def gls(design: ModelDesign, theta: NDArray) -> GLSResult:
    """Generalized least squares for β and ℓ_R at a fixed θ.

    Raises:
        numpy.linalg.LinAlgError: If a marginal covariance block or
            Xᵀ V⁻¹ X is not positive definite.
    """
    layout = design.layout
    p = design.p

    XtX = np.zeros((p, p), dtype=np.float64)
    Xty = np.zeros(p, dtype=np.float64)
    log_det_V = 0.0
    whitened = []

    for block in design.studies:
        V = marginal_covariance(block, layout, theta)
        L = np.linalg.cholesky(V)
        Xw = sla.solve_triangular(L, block.X, lower=True)
        yw = sla.solve_triangular(L, block.y, lower=True)
        XtX += Xw.T @ Xw
        Xty += Xw.T @ yw
        log_det_V += 2.0 * np.sum(np.log(np.diag(L)))
        whitened.append(WhitenedStudy(L=L, X=Xw, y=yw))

    R = np.linalg.cholesky(XtX)
    beta = sla.cho_solve((R, True), Xty)
    log_det_XtX = 2.0 * np.sum(np.log(np.diag(R)))

    rss = sum(float(np.sum((w.y - w.X @ beta) ** 2)) for w in whitened)

    df = design.n - p
    loglik = -0.5 * (df * np.log(2.0 * np.pi) + log_det_V + log_det_XtX + rss)

    cov_beta = sla.cho_solve((R, True), np.eye(p))
    cov_beta = 0.5 * (cov_beta + cov_beta.T)

    return GLSResult(
        beta=beta,
        cov_beta=cov_beta,
        information=XtX,
        loglik=float(loglik),
        studies=tuple(whitened),
    )


def restricted_loglik(theta: NDArray, design: ModelDesign) -> float:
    """ℓ_R(θ), or -inf where V(θ) is not positive definite."""
    try:
        with np.errstate(over='ignore', invalid='ignore', divide='ignore'):
            value = gls(design, np.asarray(theta, dtype=np.float64)).loglik
    except (np.linalg.LinAlgError, ValueError):
        # ValueError: non-finite entries reached scipy's triangular solver
        return -np.inf
    return value if np.isfinite(value) else -np.inf


def negative_restricted_loglik(theta: NDArray, design: ModelDesign) -> float:
    """Objective for the minimizer: −ℓ_R(θ) with a finite penalty on failure."""
    value = restricted_loglik(theta, design)
    if not np.isfinite(value):
        return _PENALTY
    return -value
