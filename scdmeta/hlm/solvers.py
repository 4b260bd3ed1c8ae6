"""
REML estimation of four-level hierarchical models.

Public API:
    fit()         — fit one model specification to a dataset
    fit_models()  — fit several independent specifications to one dataset
"""

from __future__ import annotations

import warnings
from typing import Iterable

import numpy as np
import scipy.linalg as sla
from scipy.optimize import minimize

from scdmeta.core.exceptions import NotPositiveDefiniteError
from scdmeta.core.result import Result
from scdmeta.core.compute.timing import Timer

from scdmeta.hlm._common import FitControl, HLMParams
from scdmeta.hlm._hessian import theta_covariance
from scdmeta.hlm._reml import (
    gls, marginal_covariance, negative_restricted_loglik, restricted_loglik,
)
from scdmeta.hlm.dataset import HierarchicalDataset
from scdmeta.hlm.design import ModelDesign, build_design
from scdmeta.hlm.solution import ModelFit
from scdmeta.hlm.specification import ModelSpecification


def fit(
    dataset: HierarchicalDataset,
    specification: ModelSpecification,
    control: FitControl | None = None,
) -> ModelFit:
    """Fit a four-level hierarchical linear model by REML.

    Alternates between a GLS solve for the fixed effects at the current
    variance parameters and a BFGS maximization of the restricted
    log-likelihood over the unconstrained θ (log-Cholesky random-effect
    factors, atanh AR(1) coefficient, log residual SD ratios, log residual
    SD). Stops when the relative improvement of ℓ_R between alternations
    falls below control.tolerance, or when control.max_iter alternations
    have run.

    Args:
        dataset: Validated observation table.
        specification: Model specification.
        control: Iteration caps and tolerances. Default FitControl().

    Returns:
        ModelFit. A fit that exhausted its iteration caps is returned with
        converged=False and reason='max_iterations' (and a RuntimeWarning);
        it is never raised.

    Raises:
        SpecificationError: If the specification cannot be estimated on
            this dataset (checked before optimization).
        NotPositiveDefiniteError: If a marginal covariance block is not
            positive definite at the starting values or at θ̂.

    Examples:
        >>> fit_null = fit(dataset, null_model())
        >>> fit_ar1 = fit(dataset, ar1_model())
        >>> fit_ar1.coef['level_AB']
    """
    control = control or FitControl()
    timer = Timer()
    timer.start()

    with timer.section('setup'):
        design = build_design(dataset, specification)
        layout = design.layout
        beta_ols, *_ = np.linalg.lstsq(design.X, design.y, rcond=None)
        resid_ols = design.y - design.X @ beta_ols
        total_var = float(resid_ols @ resid_ols) / max(design.n - design.p, 1)
        theta = layout.start(specification, total_var)

    loglik = restricted_loglik(theta, design)
    if not np.isfinite(loglik):
        _raise_not_positive_definite(design, theta, "starting values")

    converged = False
    reason = 'max_iterations'
    n_inner = 0
    n_iter = 0
    last_message = ''
    beta_change = float('nan')

    for n_iter in range(1, control.max_iter + 1):
        # GLS step: β at the current θ, kept to monitor fixed-effect drift
        with timer.section('gls'):
            beta_start = gls(design, theta).beta

        # Variance step: quasi-Newton over θ; every likelihood evaluation
        # profiles β out by GLS
        with timer.section('optimization'):
            opt = minimize(
                negative_restricted_loglik,
                theta,
                args=(design,),
                method='BFGS',
                options={
                    'maxiter': control.ms_max_iter,
                    'gtol': control.gradient_tolerance,
                },
            )
        n_inner += int(opt.nit)
        last_message = str(opt.message)

        new_loglik = -float(opt.fun)
        improvement = new_loglik - loglik
        if improvement > 0:
            theta = np.asarray(opt.x, dtype=np.float64)
            with timer.section('gls'):
                beta_change = float(np.max(np.abs(gls(design, theta).beta - beta_start)))
        else:
            beta_change = 0.0

        relative = abs(improvement) / max(abs(loglik), 1.0)
        loglik = max(loglik, new_loglik)
        if relative < control.tolerance:
            converged = True
            reason = 'converged'
            break

    if not converged:
        warnings.warn(
            f"REML fit of '{specification.name}' did not converge after "
            f"{n_iter} iterations ({n_inner} inner). "
            f"Last optimizer message: {last_message}",
            RuntimeWarning,
            stacklevel=2,
        )

    # Final GLS solve at θ̂
    with timer.section('final_solve'):
        try:
            final = gls(design, theta)
        except np.linalg.LinAlgError:
            _raise_not_positive_definite(design, theta, "final estimates")

    warn_list = list(design.notes)
    if not converged:
        warn_list.append(
            f"Optimizer did not converge within {control.max_iter} iterations"
        )

    theta_cov = None
    theta_cov_reliable = False
    min_eig = float('nan')
    if control.compute_theta_cov:
        with timer.section('information'):
            tc = theta_covariance(design, theta, eps=control.hessian_eps)
        theta_cov = tc.cov
        theta_cov_reliable = tc.positive_definite
        min_eig = tc.min_eigenvalue
        if not tc.positive_definite:
            msg = (
                f"Observed information of the variance parameters of "
                f"'{specification.name}' is not positive definite "
                f"(min eigenvalue {tc.min_eigenvalue:.3g}); variance-component "
                f"standard errors are unreliable"
            )
            warnings.warn(msg, RuntimeWarning, stacklevel=2)
            warn_list.append(msg)

    with timer.section('blups'):
        blups, fitted = _conditional_modes(design, theta, final.beta)

    n_params = design.p + layout.size
    df = design.n - design.p
    aic = -2.0 * final.loglik + 2.0 * n_params
    bic = -2.0 * final.loglik + np.log(df) * n_params

    timer.stop()

    params = HLMParams(
        coefficients=final.beta,
        coefficient_names=design.coefficient_names,
        cov_beta=final.cov_beta,
        se=np.sqrt(np.maximum(np.diag(final.cov_beta), 0.0)),
        theta=theta,
        theta_labels=layout.labels,
        theta_cov=theta_cov,
        theta_cov_reliable=theta_cov_reliable,
        natural=layout.unpack(theta),
        log_likelihood=final.loglik,
        aic=float(aic),
        bic=float(bic),
        n_obs=design.n,
        n_groups=dict(design.n_groups),
        converged=converged,
        reason=reason,
        n_iter=n_iter,
        n_inner_iter=n_inner,
        random_effects=blups,
        fitted_values=fitted,
        residuals=design.y - fitted,
        marginal_residuals=design.y - design.X @ final.beta,
    )

    result = Result(
        params=params,
        info={
            'method': 'REML',
            'optimizer': 'BFGS',
            'model': specification.name,
            'converged': converged,
            'reason': reason,
            'n_iter': n_iter,
            'n_inner_iter': n_inner,
            'optimizer_message': last_message,
            'last_beta_change': beta_change,
            'hessian_min_eigenvalue': min_eig,
            'notes': design.notes,
        },
        timing=timer.result(),
        backend_name='cpu_reml',
        warnings=tuple(warn_list),
    )

    return ModelFit(_result=result, design=design)


def fit_models(
    dataset: HierarchicalDataset,
    specifications: Iterable[ModelSpecification],
    control: FitControl | None = None,
) -> dict[str, ModelFit]:
    """Fit several specifications to the same dataset.

    The fits share only the immutable dataset, so their order does not
    matter. Specifications must have distinct names.

    Returns:
        Specification name → ModelFit, in input order.
    """
    fits: dict[str, ModelFit] = {}
    for spec in specifications:
        if spec.name in fits:
            raise ValueError(f"Duplicate specification name '{spec.name}'")
        fits[spec.name] = fit(dataset, spec, control)
    return fits


# =====================================================================
# Helpers
# =====================================================================

def _conditional_modes(
    design: ModelDesign,
    theta: np.ndarray,
    beta: np.ndarray,
) -> tuple[dict[str, np.ndarray], np.ndarray]:
    """BLUPs b̂ = G Z_uᵀ V⁻¹ (y − Xβ̂) per unit, and conditional fitted values.

    Returns:
        (level → (n_units, q) array indexed by unit code, Xβ̂ + Zb̂).
    """
    layout = design.layout
    dataset = design.dataset
    unit_codes = {
        'study': dataset.study_codes,
        'cluster': dataset.cluster_codes,
        'case': dataset.case_codes,
    }

    blups = {
        level: np.zeros((design.n_groups[level],
                         design.specification.random_effect(level).n_terms))
        for level in layout.levels
    }
    fitted = design.X @ beta

    for block in design.studies:
        V = marginal_covariance(block, layout, theta)
        r = block.y - block.X @ beta
        w = sla.cho_solve(sla.cho_factor(V, lower=True), r)
        for level in layout.levels:
            G = layout.covariance(theta, level)
            Z = block.Z[level]
            codes = unit_codes[level][block.rows]
            for code in np.unique(codes):
                mask = codes == code
                b = G @ (Z[mask].T @ w[mask])
                blups[level][code] = b
                fitted[block.rows[mask]] += Z[mask] @ b

    return blups, fitted


def _raise_not_positive_definite(
    design: ModelDesign,
    theta: np.ndarray,
    where: str,
) -> None:
    min_eig = min(
        float(np.linalg.eigvalsh(marginal_covariance(block, design.layout, theta))[0])
        for block in design.studies
    )
    raise NotPositiveDefiniteError(
        f"Marginal covariance of '{design.specification.name}' is not positive "
        f"definite at the {where} (min eigenvalue {min_eig:.3g})",
        matrix_name='V',
        min_eigenvalue=min_eig,
    )
