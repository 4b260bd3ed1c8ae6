"""
Cluster-robust (CR2) inference for fixed effects, clustered at study.

Working in the metric whitened by the fitted marginal covariance
(X̃_j = L_j⁻¹ X_j, ẽ_j = L_j⁻¹ (y_j − X_j β̂), M = (Xᵀ V⁻¹ X)⁻¹), the
bias-reduced sandwich is

    V_R = M [ Σ_j X̃_jᵀ A_j ẽ_j ẽ_jᵀ A_j X̃_j ] M,   A_j = (I − X̃_j M X̃_jᵀ)^{-1/2}

which is unbiased for M when the working model is correct. Degrees of
freedom for a contrast c come from the exact first two moments of cᵀ V_R c
under the working model (Satterthwaite), not from n − p.

References:
    Bell, R. M., & McCaffrey, D. F. (2002). Bias reduction in standard
    errors for linear regression with multi-stage samples. Survey
    Methodology, 28(2), 169-181.
    Pustejovsky, J. E., & Tipton, E. (2018). Small-sample methods for
    cluster-robust variance estimation and hypothesis testing in fixed
    effects models. Journal of Business & Economic Statistics, 36(4).
"""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np
from numpy.typing import NDArray
from scipy import stats

from scdmeta.hlm._common import RobustTestResult
from scdmeta.hlm._reml import gls
from scdmeta.hlm.solution import ModelFit, significance_stars

# Eigenvalues of I − H_jj below this are treated as zero (pseudo-inverse root)
_EIGEN_TOL = 1e-12


@dataclass(frozen=True)
class ClusterTerms:
    """Per-study pieces of the CR2 sandwich.

    Attributes:
        K: A_j X̃_j (n_j, p).
        P: X̃_jᵀ K (p, p).
        Q: Kᵀ K (p, p).
        u: Kᵀ ẽ_j, the adjusted score of the study (p,).
    """
    K: NDArray
    P: NDArray
    Q: NDArray
    u: NDArray


@dataclass(frozen=True)
class CR2Sandwich:
    """CR2 sandwich of a fit and the working-model moments behind its df.

    Attributes:
        bread: M = (Xᵀ V⁻¹ X)⁻¹.
        cov: Robust covariance V_R.
        clusters: Per-study terms, in design order.
    """
    bread: NDArray
    cov: NDArray
    clusters: tuple[ClusterTerms, ...]

    @property
    def n_clusters(self) -> int:
        return len(self.clusters)

    def omega(self, c_s: NDArray, c_t: NDArray) -> NDArray:
        """Working-model covariance of the study scores of two contrasts.

        Entry (j, k) is Cov(c_sᵀ M u_j, c_tᵀ M u_k) under the fitted
        marginal covariance.
        """
        w_s = self.bread @ c_s
        w_t = self.bread @ c_t
        diag = np.array([w_s @ cl.Q @ w_t for cl in self.clusters])
        R_s = np.array([cl.P @ w_s for cl in self.clusters])
        R_t = np.array([cl.P @ w_t for cl in self.clusters])
        return np.diag(diag) - R_s @ self.bread @ R_t.T

    def satterthwaite_df(self, c: NDArray) -> float:
        """Satterthwaite df of cᵀ V_R c: 2 E² / Var, NaN when undefined."""
        if self.n_clusters < 2:
            return float('nan')
        c = np.asarray(c, dtype=np.float64)
        omega = self.omega(c, c)
        mean = float(np.trace(omega))
        spread = float(np.sum(omega ** 2))
        if not np.isfinite(mean) or mean <= 0 or spread <= 0:
            return float('nan')
        return mean ** 2 / spread


def _inverse_sqrt(B: NDArray) -> NDArray:
    """Symmetric (pseudo-)inverse square root of a PSD matrix."""
    vals, vecs = np.linalg.eigh(0.5 * (B + B.T))
    scale = max(float(np.max(np.abs(vals))), 1.0) if vals.size else 1.0
    keep = vals > _EIGEN_TOL * scale
    inv_root = np.zeros_like(vals)
    inv_root[keep] = 1.0 / np.sqrt(vals[keep])
    return (vecs * inv_root) @ vecs.T


def cr2_sandwich(fit: ModelFit) -> CR2Sandwich:
    """Build the CR2 sandwich of a fit, clustered at study."""
    design = fit.design
    solve = gls(design, fit.theta)
    M = solve.cov_beta
    beta = fit.coefficients

    clusters = []
    meat = np.zeros_like(M)
    for white in solve.studies:
        Xt = white.X
        resid = white.y - Xt @ beta
        B = np.eye(Xt.shape[0]) - Xt @ M @ Xt.T
        K = _inverse_sqrt(B) @ Xt
        u = K.T @ resid
        meat += np.outer(u, u)
        clusters.append(ClusterTerms(K=K, P=Xt.T @ K, Q=K.T @ K, u=u))

    cov = M @ meat @ M
    cov = 0.5 * (cov + cov.T)
    return CR2Sandwich(bread=M, cov=cov, clusters=tuple(clusters))


def robust_covariance(fit: ModelFit) -> NDArray:
    """CR2 robust covariance of β̂, clustered at study."""
    return cr2_sandwich(fit).cov


def robust_tests(fit: ModelFit) -> tuple[RobustTestResult, ...]:
    """CR2 t-tests with Satterthwaite df for every fixed effect.

    For coefficient k: t = β̂_k / se_R, two-sided p from t(df_k), effect
    size d = 2|t| / √df_k and significance marks ('***' p<0.001, '**'
    p<0.01, '*' p<0.05). Undefined df (e.g. a single study) gives NaN p,
    NaN effect size and no marks.

    Returns:
        One RobustTestResult per coefficient, in coefficient order.
    """
    sandwich = cr2_sandwich(fit)
    p = fit.coefficients.shape[0]

    results = []
    for k, name in enumerate(fit.coefficient_names):
        estimate = float(fit.coefficients[k])
        var = float(sandwich.cov[k, k])
        se = float(np.sqrt(var)) if var > 0 else float('nan')
        t = estimate / se if np.isfinite(se) else float('nan')

        c = np.zeros(p)
        c[k] = 1.0
        df = sandwich.satterthwaite_df(c)

        if np.isfinite(df) and np.isfinite(t):
            p_value = float(2.0 * stats.t.sf(abs(t), df))
            effect_size = 2.0 * abs(t) / np.sqrt(df)
        else:
            p_value = float('nan')
            effect_size = float('nan')

        results.append(RobustTestResult(
            name=name,
            estimate=estimate,
            se=se,
            t=float(t),
            df=float(df),
            p_value=p_value,
            effect_size=float(effect_size),
            stars=significance_stars(p_value),
        ))

    return tuple(results)
