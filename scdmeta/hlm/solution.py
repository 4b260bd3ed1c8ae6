"""
Solution wrapper for fitted four-level hierarchical models.

ModelFit wraps Result[HLMParams] together with the design it was fitted
on, and provides property accessors, a text summary and likelihood ratio
comparison. It is never mutated after construction; the inference
components (variance extraction, robust tests, Wald tests, ICC, ACF) read
from it.
"""

from __future__ import annotations

import warnings

import numpy as np
from numpy.typing import NDArray
from scipy import stats

from scdmeta.core.result import Result
from scdmeta.hlm._common import HLMParams, LikelihoodRatioResult
from scdmeta.hlm._parameters import NaturalParameters, ThetaLayout
from scdmeta.hlm.design import ModelDesign
from scdmeta.hlm.specification import ModelSpecification


def significance_stars(p: float) -> str:
    """Significance marks: '***' p<0.001, '**' p<0.01, '*' p<0.05."""
    if not np.isfinite(p):
        return ''
    if p < 0.001:
        return '***'
    elif p < 0.01:
        return '**'
    elif p < 0.05:
        return '*'
    return ''


class ModelFit:
    """A fitted four-level hierarchical model.

    Attributes are read through properties; the underlying Result
    envelope is available as ``result`` and the bound design as
    ``design``.
    """

    def __init__(self, _result: Result[HLMParams], design: ModelDesign):
        self._result = _result
        self._design = design

    @property
    def params(self) -> HLMParams:
        return self._result.params

    @property
    def result(self) -> Result[HLMParams]:
        return self._result

    @property
    def design(self) -> ModelDesign:
        return self._design

    @property
    def specification(self) -> ModelSpecification:
        return self._design.specification

    @property
    def layout(self) -> ThetaLayout:
        return self._design.layout

    @property
    def name(self) -> str:
        return self._design.specification.name

    # --- Fixed effects ---

    @property
    def coefficients(self) -> NDArray:
        """Fixed effect estimates β̂."""
        return self.params.coefficients

    @property
    def coefficient_names(self) -> tuple[str, ...]:
        return self.params.coefficient_names

    @property
    def coef(self) -> dict[str, float]:
        """Fixed effects as name → value dict."""
        return dict(zip(self.params.coefficient_names,
                        self.params.coefficients.tolist()))

    @property
    def cov_beta(self) -> NDArray:
        """Model-based covariance of β̂."""
        return self.params.cov_beta

    @property
    def se(self) -> NDArray:
        """Model-based standard errors of β̂."""
        return self.params.se

    # --- Variance parameters ---

    @property
    def theta(self) -> NDArray:
        """Internal unconstrained variance parameters θ̂."""
        return self.params.theta

    @property
    def theta_cov(self) -> NDArray | None:
        """Asymptotic covariance of θ̂ (inverse observed information)."""
        return self.params.theta_cov

    @property
    def natural(self) -> NaturalParameters:
        return self.params.natural

    @property
    def residual_variance(self) -> float:
        """Residual variance (of the reference phase when heteroscedastic)."""
        return self.params.natural.residual_variance

    @property
    def phase_variances(self) -> dict[str, float]:
        """Residual variance per phase (empty when homoscedastic)."""
        return self.params.natural.phase_variances()

    @property
    def ar1(self) -> float | None:
        return self.params.natural.ar1

    def covariance(self, level: str) -> NDArray:
        """Random-effect covariance matrix G of a nesting level."""
        return self.params.natural.covariances[level]

    # --- Model fit ---

    @property
    def log_likelihood(self) -> float:
        return self.params.log_likelihood

    @property
    def aic(self) -> float:
        return self.params.aic

    @property
    def bic(self) -> float:
        return self.params.bic

    @property
    def n_variance_params(self) -> int:
        return self.params.theta.size

    @property
    def converged(self) -> bool:
        return self.params.converged

    @property
    def reason(self) -> str:
        return self.params.reason

    @property
    def fitted_values(self) -> NDArray:
        return self.params.fitted_values

    @property
    def residuals(self) -> NDArray:
        """Conditional residuals y − Xβ̂ − Zb̂."""
        return self.params.residuals

    @property
    def ranef(self) -> dict[str, NDArray]:
        """BLUPs per level, rows indexed by unit code."""
        return self.params.random_effects

    @property
    def warnings(self) -> tuple[str, ...]:
        return self._result.warnings

    # --- Model comparison ---

    def compare(self, other: 'ModelFit', alpha: float = 0.05) -> LikelihoodRatioResult:
        """Likelihood ratio test against another fit of the same data."""
        return likelihood_ratio_test(self, other, alpha=alpha)

    # --- Summary ---

    def summary(self) -> str:
        """Text summary of variance components and fixed effects."""
        params = self.params
        nat = params.natural

        lines = []
        lines.append(f"Linear mixed model fit by REML: {self.name}")
        lines.append("")

        lines.append("Random effects:")
        lines.append(f" {'Level':<10s} {'Name':<15s} {'Variance':>10s} "
                     f"{'Std.Dev.':>10s} {'Corr':>6s}")
        for re in self.specification.random:
            G = nat.covariances[re.level]
            for i, term in enumerate(re.terms):
                label = re.level if i == 0 else ''
                name = '(Intercept)' if term == '1' else term
                corr = ''
                if i > 0 and G[0, 0] > 0 and G[i, i] > 0:
                    corr = f'{G[i, 0] / np.sqrt(G[0, 0] * G[i, i]):6.2f}'
                lines.append(
                    f" {label:<10s} {name:<15s} {G[i, i]:10.4f} "
                    f"{np.sqrt(max(G[i, i], 0.0)):10.4f} {corr}"
                )
        if nat.sd_ratios:
            for i, (phase, var) in enumerate(nat.phase_variances().items()):
                label = 'Residual' if i == 0 else ''
                lines.append(
                    f" {label:<10s} {phase:<15s} {var:10.4f} {np.sqrt(var):10.4f}"
                )
        else:
            lines.append(
                f" {'Residual':<10s} {'':<15s} {nat.residual_variance:10.4f} "
                f"{np.sqrt(nat.residual_variance):10.4f}"
            )
        if nat.ar1 is not None:
            lines.append(f" AR(1) Phi: {nat.ar1:.4f}")
        lines.append("")

        group_parts = ', '.join(
            f'{name}: {n}' for name, n in params.n_groups.items()
        )
        lines.append(f"Number of obs: {params.n_obs}, groups: {group_parts}")
        lines.append("")

        lines.append("Fixed effects (model-based):")
        lines.append(f" {'':>22s} {'Estimate':>10s} {'Std. Error':>10s} "
                     f"{'z value':>10s}")
        for i, name in enumerate(params.coefficient_names):
            z = params.coefficients[i] / params.se[i] if params.se[i] > 0 else np.nan
            lines.append(
                f" {name:>22s} {params.coefficients[i]:10.4f} "
                f"{params.se[i]:10.4f} {z:10.3f}"
            )
        lines.append("")

        lines.append(f"REML log-likelihood: {params.log_likelihood:.2f}")
        lines.append(f"AIC: {params.aic:.1f}, BIC: {params.bic:.1f}")

        if not params.converged:
            lines.append("")
            lines.append(f"WARNING: Model did not converge ({params.reason})")
        for w in self._result.warnings:
            lines.append(f"NOTE: {w}")

        return '\n'.join(lines)

    def __repr__(self) -> str:
        return (
            f"ModelFit({self.name!r}, "
            f"n={self.params.n_obs}, "
            f"fixed={len(self.params.coefficients)}, "
            f"theta={self.params.theta.size}, "
            f"converged={self.params.converged})"
        )


def likelihood_ratio_test(
    a: ModelFit,
    b: ModelFit,
    alpha: float = 0.05,
) -> LikelihoodRatioResult:
    """Likelihood ratio test between two nested REML fits.

    The model with more variance parameters is treated as the full model.
    REML likelihoods are only comparable when both fits share the same
    fixed effects; a UserWarning is issued otherwise.

    Args:
        a, b: Fits of the same dataset.
        alpha: Level at which prefers_full is decided.

    Returns:
        LikelihoodRatioResult.
    """
    if a.coefficient_names != b.coefficient_names:
        warnings.warn(
            "REML likelihood ratio tests require identical fixed effects; "
            f"'{a.name}' and '{b.name}' differ",
            UserWarning,
            stacklevel=2,
        )
    if a.params.n_obs != b.params.n_obs:
        raise ValueError(
            f"Fits use different data: {a.params.n_obs} vs "
            f"{b.params.n_obs} observations"
        )

    if a.n_variance_params >= b.n_variance_params:
        full, reduced = a, b
    else:
        full, reduced = b, a

    statistic = max(2.0 * (full.log_likelihood - reduced.log_likelihood), 0.0)
    df = full.n_variance_params - reduced.n_variance_params
    if df <= 0:
        df = 1
    p_value = float(stats.chi2.sf(statistic, df))

    return LikelihoodRatioResult(
        reduced=reduced.name,
        full=full.name,
        statistic=float(statistic),
        df=int(df),
        p_value=p_value,
        prefers_full=p_value < alpha,
    )
