"""
Observed information for the variance parameters.

The asymptotic covariance of θ̂ is the inverse of the Hessian of −ℓ_R at
the optimum. The Hessian is computed by central differences on the
unconstrained θ scale, so no boundary handling is needed.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable

import numpy as np
from numpy.typing import NDArray

from scdmeta.hlm.design import ModelDesign
from scdmeta.hlm._reml import restricted_loglik


def numerical_hessian(
    f: Callable[[NDArray], float],
    x: NDArray,
    eps: float = 1e-4,
) -> NDArray:
    """Central-difference Hessian of a scalar function.

    Args:
        f: Scalar function of a vector.
        x: Point of evaluation.
        eps: Relative step; the step for x_j is eps * max(|x_j|, 1).

    Returns:
        Symmetric (m, m) Hessian.
    """
    x = np.asarray(x, dtype=np.float64)
    m = x.size
    h = eps * np.maximum(np.abs(x), 1.0)

    f0 = f(x)
    f_plus = np.zeros(m)
    f_minus = np.zeros(m)
    for j in range(m):
        xp = x.copy()
        xp[j] += h[j]
        f_plus[j] = f(xp)
        xm = x.copy()
        xm[j] -= h[j]
        f_minus[j] = f(xm)

    H = np.zeros((m, m), dtype=np.float64)
    for j in range(m):
        H[j, j] = (f_plus[j] - 2.0 * f0 + f_minus[j]) / (h[j] ** 2)

    for j in range(m):
        for l in range(j + 1, m):
            def corner(sj, sl):
                xc = x.copy()
                xc[j] += sj * h[j]
                xc[l] += sl * h[l]
                return f(xc)

            H[j, l] = (corner(1, 1) - corner(1, -1)
                       - corner(-1, 1) + corner(-1, -1)) / (4.0 * h[j] * h[l])
            H[l, j] = H[j, l]

    return H


@dataclass(frozen=True)
class ThetaCovariance:
    """Asymptotic covariance of θ̂.

    Attributes:
        cov: Inverse observed information (pseudo-inverse when singular).
        hessian: Hessian of −ℓ_R at θ̂.
        positive_definite: Whether the Hessian is positive definite.
        min_eigenvalue: Smallest Hessian eigenvalue.
    """
    cov: NDArray
    hessian: NDArray
    positive_definite: bool
    min_eigenvalue: float


def theta_covariance(
    design: ModelDesign,
    theta: NDArray,
    eps: float = 1e-4,
) -> ThetaCovariance:
    """Inverse observed information of θ at the REML optimum.

    A Hessian that is not positive definite (a variance component at the
    boundary, or an unidentified level) is still inverted with a
    pseudo-inverse, but is flagged so downstream standard errors are
    marked unreliable.
    """
    # Unpenalized objective: a step where V is not positive definite makes
    # the Hessian non-finite instead of merely large
    with np.errstate(invalid='ignore', over='ignore'):
        H = numerical_hessian(
            lambda th: -restricted_loglik(th, design), theta, eps
        )
    return invert_information(H)


def invert_information(H: NDArray) -> ThetaCovariance:
    """Covariance from an observed information matrix, flagged when not PD."""
    with np.errstate(invalid='ignore'):
        H = 0.5 * (H + H.T)

    if not np.all(np.isfinite(H)):
        m = H.shape[0]
        return ThetaCovariance(
            cov=np.full((m, m), np.nan),
            hessian=H,
            positive_definite=False,
            min_eigenvalue=float('nan'),
        )

    eigvals = np.linalg.eigvalsh(H)
    min_eig = float(eigvals[0])
    scale = max(float(np.max(np.abs(eigvals))), 1.0)
    positive_definite = min_eig > 1e-8 * scale

    if positive_definite:
        cov = np.linalg.inv(H)
    else:
        cov = np.linalg.pinv(H, hermitian=True)
    cov = 0.5 * (cov + cov.T)

    return ThetaCovariance(
        cov=cov,
        hessian=H,
        positive_definite=positive_definite,
        min_eigenvalue=min_eig,
    )
