"""
Variance components on the natural scale with delta-method inference.

extract_variance_components() maps the fitted θ̂ back to variances,
covariances and correlations of the random effects at each level, the
AR(1) coefficient and the residual variance(s), each with a standard error
from the inverse observed information of θ̂.

Confidence intervals follow the transform behind each quantity:

    single θ element (intercept variance, AR(1), residual variance,
    SD ratio)          θ̂_k ± z·se(θ̂_k) mapped through the monotone transform
    other variances    log-scale interval exp(log v̂ ± z·se/v̂)
    correlations       Fisher-z interval tanh(atanh r̂ ± z·se/(1 − r̂²))
    covariances        Wald interval ĉ ± z·se
"""

from __future__ import annotations

from typing import Callable

import numpy as np
from scipy import stats

from scdmeta.hlm._common import VarianceComponent
from scdmeta.hlm._parameters import ThetaLayout
from scdmeta.hlm.delta import (
    DeltaEstimate, delta_method, exp_square, exp_square_gradient,
    is_positive_semidefinite, tanh_gradient,
)
from scdmeta.hlm.solution import ModelFit


def _unit_gradient(size: int, index: int, scale: Callable) -> Callable:
    """Gradient of a function of the single element θ[index]."""
    def gradient(theta):
        grad = np.zeros(size, dtype=np.float64)
        grad[index] = scale(theta[index])
        return grad
    return gradient


def _component(
    level: str,
    name: str,
    kind: str,
    est: DeltaEstimate,
    lower: float,
    upper: float,
    reliable: bool,
) -> VarianceComponent:
    if not est.reliable:
        lower = upper = float('nan')
    return VarianceComponent(
        level=level,
        name=name,
        kind=kind,
        estimate=est.estimate,
        se=est.se,
        ci_lower=float(lower),
        ci_upper=float(upper),
        reliable=est.reliable and reliable,
    )


def _single_parameter_interval(
    transform: Callable,
    theta_k: float,
    cov_kk: float,
    z: float,
) -> tuple[float, float]:
    if not np.isfinite(cov_kk) or cov_kk < 0:
        return float('nan'), float('nan')
    half = z * np.sqrt(cov_kk)
    return float(transform(theta_k - half)), float(transform(theta_k + half))


def _log_interval(est: DeltaEstimate, z: float) -> tuple[float, float]:
    if est.estimate <= 0 or not np.isfinite(est.se):
        return float('nan'), float('nan')
    half = z * est.se / est.estimate
    return (float(np.exp(np.log(est.estimate) - half)),
            float(np.exp(np.log(est.estimate) + half)))


def _fisher_interval(est: DeltaEstimate, z: float) -> tuple[float, float]:
    r = est.estimate
    if not np.isfinite(est.se) or abs(r) >= 1.0:
        return float('nan'), float('nan')
    half = z * est.se / (1.0 - r ** 2)
    return float(np.tanh(np.arctanh(r) - half)), float(np.tanh(np.arctanh(r) + half))


def _term_name(term: str) -> str:
    return '(Intercept)' if term == '1' else term


def extract_variance_components(
    fit: ModelFit,
    level: float = 0.95,
) -> tuple[VarianceComponent, ...]:
    """Natural-scale variance components of a fit with standard errors.

    Args:
        fit: Fitted model.
        level: Confidence level of the intervals.

    Returns:
        Components in θ-layout order: per nesting level the variances,
        then covariances and correlations of its terms; the AR(1)
        coefficient; the residual variance (one entry per phase under a
        phase-specific residual variance, followed by the SD ratios).

    Raises:
        ValueError: If level is not in (0, 1).
    """
    if not 0.0 < level < 1.0:
        raise ValueError(f"level must be in (0, 1), got {level}")

    layout: ThetaLayout = fit.layout
    theta = np.asarray(fit.theta, dtype=np.float64)
    cov = fit.theta_cov
    reliable = bool(fit.params.theta_cov_reliable)
    psd = cov is not None and is_positive_semidefinite(cov)
    z = float(stats.norm.ppf(0.5 + level / 2.0))
    m = theta.size

    def cov_kk(k: int) -> float:
        return float(cov[k, k]) if cov is not None else float('nan')

    components: list[VarianceComponent] = []

    for lv in layout.levels:
        block = layout.block(lv)
        names = [_term_name(t) for t in block.terms]
        q = len(names)

        def entry(i, j, lv=lv):
            return lambda th: float(layout.covariance(th, lv)[i, j])

        variances: dict[int, DeltaEstimate] = {}
        for i in range(q):
            if i == 0:
                k = block.offset
                est = delta_method(
                    entry(0, 0), theta, cov,
                    gradient=_unit_gradient(m, k, exp_square_gradient),
                    psd=psd,
                )
                lower, upper = _single_parameter_interval(
                    exp_square, theta[k], cov_kk(k), z,
                )
            else:
                est = delta_method(entry(i, i), theta, cov, psd=psd)
                lower, upper = _log_interval(est, z)
            variances[i] = est
            components.append(_component(
                lv, names[i], 'variance', est, lower, upper, reliable,
            ))

        for i in range(1, q):
            for j in range(i):
                pair = f'{names[j]},{names[i]}'
                est = delta_method(entry(i, j), theta, cov, psd=psd)
                lower, upper = est.estimate - z * est.se, est.estimate + z * est.se
                components.append(_component(
                    lv, pair, 'covariance', est, lower, upper, reliable,
                ))

                def corr(th, i=i, j=j, lv=lv):
                    G = layout.covariance(th, lv)
                    denom = np.sqrt(G[i, i] * G[j, j])
                    return float(G[i, j] / denom) if denom > 0 else float('nan')

                est = delta_method(corr, theta, cov, psd=psd)
                lower, upper = _fisher_interval(est, z)
                components.append(_component(
                    lv, pair, 'correlation', est, lower, upper, reliable,
                ))

    if layout.has_block('ar1'):
        k = layout.block('ar1').offset
        est = delta_method(
            lambda th: float(np.tanh(th[k])), theta, cov,
            gradient=_unit_gradient(m, k, tanh_gradient),
            psd=psd,
        )
        lower, upper = _single_parameter_interval(np.tanh, theta[k], cov_kk(k), z)
        components.append(_component(
            'ar1', 'phi', 'ar1', est, lower, upper, reliable,
        ))

    k_sigma = layout.block('sigma').offset
    reference = layout.phases[0] if layout.phases else '(Residual)'
    est = delta_method(
        lambda th: float(exp_square(th[k_sigma])), theta, cov,
        gradient=_unit_gradient(m, k_sigma, exp_square_gradient),
        psd=psd,
    )
    lower, upper = _single_parameter_interval(
        exp_square, theta[k_sigma], cov_kk(k_sigma), z,
    )
    components.append(_component(
        'residual', reference, 'residual_variance', est, lower, upper, reliable,
    ))

    if layout.phases:
        block = layout.block('variance_ratio')
        for i, phase in enumerate(block.terms):
            k = block.offset + i

            def phase_variance(th, k=k):
                return float(np.exp(2.0 * (th[k_sigma] + th[k])))

            def phase_gradient(th, k=k):
                grad = np.zeros(m, dtype=np.float64)
                value = 2.0 * np.exp(2.0 * (th[k_sigma] + th[k]))
                grad[k_sigma] = value
                grad[k] = value
                return grad

            est = delta_method(
                phase_variance, theta, cov, gradient=phase_gradient, psd=psd,
            )
            lower, upper = _log_interval(est, z)
            components.append(_component(
                'residual', phase, 'residual_variance', est, lower, upper, reliable,
            ))

        for i, phase in enumerate(block.terms):
            k = block.offset + i
            est = delta_method(
                lambda th, k=k: float(np.exp(th[k])), theta, cov,
                gradient=_unit_gradient(m, k, np.exp),
                psd=psd,
            )
            lower, upper = _single_parameter_interval(np.exp, theta[k], cov_kk(k), z)
            components.append(_component(
                'residual', phase, 'sd_ratio', est, lower, upper, reliable,
            ))

    return tuple(components)


def components_by_level(
    components: tuple[VarianceComponent, ...],
) -> dict[str, list[VarianceComponent]]:
    """Group extracted components by level, preserving order."""
    grouped: dict[str, list[VarianceComponent]] = {}
    for c in components:
        grouped.setdefault(c.level, []).append(c)
    return grouped
