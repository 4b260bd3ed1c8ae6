"""
Common data types for the hierarchical model engine.

Contains the frozen payloads that go inside Result[P] envelopes and the
records produced by the downstream inference components. Each is a pure
data container; computation lives in the component modules.

References:
    Pinheiro, J. C., & Bates, D. M. (2000). Mixed-Effects Models in S and
    S-PLUS. Springer.
    Pustejovsky, J. E., & Tipton, E. (2018). Small-sample methods for
    cluster-robust variance estimation and hypothesis testing in fixed
    effects models. Journal of Business & Economic Statistics, 36(4).
"""

from dataclasses import dataclass

import numpy as np
from numpy.typing import NDArray

from scdmeta.hlm._parameters import NaturalParameters


@dataclass(frozen=True)
class FitControl:
    """Iteration caps and tolerances for REML estimation.

    Attributes:
        max_iter: Cap on outer GLS / variance-parameter alternations.
        ms_max_iter: Cap on BFGS iterations within one alternation.
        tolerance: Convergence when the relative improvement of the
            restricted log-likelihood between alternations falls below it.
        gradient_tolerance: BFGS gradient-norm tolerance within one
            alternation.
        hessian_eps: Relative finite-difference step for the observed
            information of θ.
        compute_theta_cov: Compute the asymptotic covariance of θ̂
            (needed for variance-component standard errors).
    """
    max_iter: int = 100
    ms_max_iter: int = 100
    tolerance: float = 1e-3
    gradient_tolerance: float = 1e-4
    hessian_eps: float = 1e-4
    compute_theta_cov: bool = True

    def __post_init__(self):
        if self.max_iter < 1 or self.ms_max_iter < 1:
            raise ValueError(
                f"Iteration caps must be >= 1, got max_iter={self.max_iter}, "
                f"ms_max_iter={self.ms_max_iter}"
            )
        if self.tolerance <= 0:
            raise ValueError(f"tolerance must be positive, got {self.tolerance}")


@dataclass(frozen=True)
class HLMParams:
    """
    Parameter payload for a fitted four-level hierarchical model.
    """
    # Fixed effects
    coefficients: NDArray              # β̂ (p,)
    coefficient_names: tuple[str, ...]
    cov_beta: NDArray                  # model-based (Xᵀ V⁻¹ X)⁻¹ (p, p)
    se: NDArray                        # model-based standard errors (p,)

    # Variance parameters
    theta: NDArray                     # internal unconstrained θ̂ (m,)
    theta_labels: tuple[str, ...]
    theta_cov: NDArray | None          # inverse observed information (m, m)
    theta_cov_reliable: bool
    natural: NaturalParameters         # θ̂ on the natural scale

    # Model fit
    log_likelihood: float              # restricted log-likelihood
    aic: float
    bic: float
    n_obs: int
    n_groups: dict[str, int]

    # Convergence
    converged: bool
    reason: str                        # 'converged' | 'max_iterations'
    n_iter: int                        # outer alternations
    n_inner_iter: int                  # total BFGS iterations

    # Predictions
    random_effects: dict[str, NDArray]  # level → (n_units, q) BLUPs
    fitted_values: NDArray             # Xβ̂ + Zb̂ (n,)
    residuals: NDArray                 # y − Xβ̂ − Zb̂ (n,)
    marginal_residuals: NDArray        # y − Xβ̂ (n,)


@dataclass(frozen=True)
class VarianceComponent:
    """One variance-scale quantity with its delta-method inference.

    Attributes:
        level: 'study', 'cluster', 'case', 'residual' or 'ar1'.
        name: Term or phase the quantity refers to (e.g. '(Intercept)',
            'level_AB', '(Intercept),level_AB', 'Baseline').
        kind: 'variance', 'covariance', 'correlation', 'ar1',
            'residual_variance' or 'sd_ratio'.
        estimate: Point estimate.
        se: Delta-method standard error (NaN when unreliable).
        ci_lower, ci_upper: Confidence bounds (NaN when unreliable).
        reliable: False when the standard error could not be trusted.
    """
    level: str
    name: str
    kind: str
    estimate: float
    se: float
    ci_lower: float
    ci_upper: float
    reliable: bool


@dataclass(frozen=True)
class RobustTestResult:
    """CR2 robust t-test for one fixed-effect coefficient.

    Attributes:
        name: Coefficient name.
        estimate: β̂_k.
        se: CR2 robust standard error.
        t: β̂_k / se.
        df: Satterthwaite degrees of freedom (NaN when undefined).
        p_value: Two-sided p-value from t(df) (NaN when df undefined).
        effect_size: 2|t| / √df.
        stars: Significance marks ('***', '**', '*' or '').
    """
    name: str
    estimate: float
    se: float
    t: float
    df: float
    p_value: float
    effect_size: float
    stars: str


@dataclass(frozen=True)
class WaldTestResult:
    """Joint robust Wald test of H0: Cβ = 0.

    Attributes:
        constraint: Label of the constraint set.
        names: Coefficients tested.
        q: Number of constraints (rank of C).
        chi_sq: Wald statistic Q = (Cβ̂)ᵀ (C V_R Cᵀ)⁻¹ (Cβ̂).
        F: Hotelling-T² scaled F statistic.
        df_num: Numerator df.
        df_denom: Denominator df.
        p_value: Upper-tail F probability.
        reliable: False when C V_R Cᵀ is singular or df_denom ≤ 0.
    """
    constraint: str
    names: tuple[str, ...]
    q: int
    chi_sq: float
    F: float
    df_num: float
    df_denom: float
    p_value: float
    reliable: bool


@dataclass(frozen=True)
class ICCResult:
    """Variance decomposition across nesting levels.

    Attributes:
        study, cluster, case: Share of total variance at each level.
        residual: Share of the residual variance.
        total_variance: Sum of the four variance components.
        residual_variance: Residual variance used (pooled or reference phase).
    """
    study: float
    cluster: float
    case: float
    residual: float
    total_variance: float
    residual_variance: float

    def as_dict(self) -> dict[str, float]:
        """Level ICCs in descending hierarchy order."""
        return {'study': self.study, 'cluster': self.cluster, 'case': self.case}


@dataclass(frozen=True)
class AutocorrelationResult:
    """Pooled empirical autocorrelation of residuals within cases.

    Attributes:
        lags: 0 … max_lag.
        acf: Autocorrelation at each lag (acf[0] == 1).
        n_pairs: Number of within-case residual pairs at each lag.
        bound: Approximate 95% band ±1.96/√n_pairs.
        kind: Residual kind used.
    """
    lags: NDArray
    acf: NDArray
    n_pairs: NDArray
    bound: NDArray
    kind: str

    def exceeds_bound(self) -> NDArray:
        """Lags ≥ 1 whose autocorrelation falls outside the band."""
        mask = np.abs(self.acf) > self.bound
        mask[0] = False
        return self.lags[mask]


@dataclass(frozen=True)
class LikelihoodRatioResult:
    """Likelihood ratio comparison of two nested fits.

    Attributes:
        reduced, full: Model names.
        statistic: 2 (ℓ_full − ℓ_reduced), floored at 0.
        df: Difference in number of variance parameters.
        p_value: Upper-tail chi-square probability.
        prefers_full: True when the full model is favored at 0.05.
    """
    reduced: str
    full: str
    statistic: float
    df: int
    p_value: float
    prefers_full: bool
