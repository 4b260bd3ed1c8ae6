"""
Delta-method standard errors for functions of the variance parameters.

For a smooth g and an estimate θ̂ with asymptotic covariance Σ,

    Var(g(θ̂)) ≈ ∇g(θ̂)ᵀ Σ ∇g(θ̂)

The gradient is taken analytically where the transform is simple (the
exp-square of a log-SD, the tanh of the AR(1) block) and by central
differences otherwise.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable

import numpy as np
from numpy.typing import NDArray


@dataclass(frozen=True)
class DeltaEstimate:
    """A transformed estimate with its delta-method standard error.

    Attributes:
        estimate: g(θ̂).
        se: √(∇gᵀ Σ ∇g), NaN when unreliable.
        reliable: False when the gradient was not finite, the covariance
            was not positive semidefinite, or the variance came out negative.
    """
    estimate: float
    se: float
    reliable: bool


def exp_square(x):
    """g(x) = exp(x)², a variance from its log standard deviation."""
    return np.exp(2.0 * np.asarray(x, dtype=np.float64))


def exp_square_gradient(x):
    """g'(x) = 2 exp(x)²."""
    return 2.0 * np.exp(2.0 * np.asarray(x, dtype=np.float64))


def tanh_gradient(x):
    """d/dx tanh(x) = 1 − tanh(x)²."""
    return 1.0 - np.tanh(np.asarray(x, dtype=np.float64)) ** 2


def numeric_gradient(
    g: Callable[[NDArray], float],
    theta: NDArray,
    eps: float = 1e-6,
) -> NDArray:
    """Central-difference gradient of a scalar function.

    The step for θ_j is eps * max(|θ_j|, 1).
    """
    theta = np.asarray(theta, dtype=np.float64)
    h = eps * np.maximum(np.abs(theta), 1.0)
    grad = np.empty(theta.size, dtype=np.float64)
    for j in range(theta.size):
        up = theta.copy()
        up[j] += h[j]
        down = theta.copy()
        down[j] -= h[j]
        grad[j] = (g(up) - g(down)) / (2.0 * h[j])
    return grad


def is_positive_semidefinite(cov: NDArray, tol: float = 1e-10) -> bool:
    """Whether a symmetric matrix is PSD up to a relative tolerance."""
    cov = np.asarray(cov, dtype=np.float64)
    if cov.size == 0:
        return True
    if not np.all(np.isfinite(cov)):
        return False
    eigvals = np.linalg.eigvalsh(0.5 * (cov + cov.T))
    scale = max(float(np.max(np.abs(eigvals))), 1.0)
    return bool(eigvals[0] >= -tol * scale)


def delta_method(
    g: Callable[[NDArray], float],
    theta: NDArray,
    cov: NDArray | None,
    gradient: Callable[[NDArray], NDArray] | None = None,
    eps: float = 1e-6,
    psd: bool | None = None,
) -> DeltaEstimate:
    """Delta-method standard error of g(θ̂).

    Args:
        g: Scalar function of the full θ vector.
        theta: Point estimate θ̂.
        cov: Asymptotic covariance of θ̂. None gives a NaN standard error.
        gradient: Analytic gradient of g, returning a vector of θ's length.
            Central differences are used when omitted.
        eps: Relative step for the numeric gradient.
        psd: Precomputed positive-semidefiniteness of cov, to avoid
            repeating the eigendecomposition for many quantities.

    Returns:
        DeltaEstimate. Failures mark the estimate unreliable with a NaN
        standard error; they never raise.

    Examples:
        >>> est = delta_method(lambda th: exp_square(th[0]), theta, cov,
        ...                    gradient=lambda th: np.r_[exp_square_gradient(th[0]), 0.0])
    """
    theta = np.asarray(theta, dtype=np.float64)
    estimate = float(g(theta))

    if cov is None:
        return DeltaEstimate(estimate=estimate, se=float('nan'), reliable=False)
    cov = np.asarray(cov, dtype=np.float64)
    if psd is None:
        psd = is_positive_semidefinite(cov)
    if not psd:
        return DeltaEstimate(estimate=estimate, se=float('nan'), reliable=False)

    if gradient is not None:
        grad = np.asarray(gradient(theta), dtype=np.float64)
    else:
        grad = numeric_gradient(g, theta, eps)
    if not np.all(np.isfinite(grad)):
        return DeltaEstimate(estimate=estimate, se=float('nan'), reliable=False)

    variance = float(grad @ cov @ grad)
    if not np.isfinite(variance) or variance < 0:
        return DeltaEstimate(estimate=estimate, se=float('nan'), reliable=False)

    return DeltaEstimate(estimate=estimate, se=float(np.sqrt(variance)), reliable=True)
