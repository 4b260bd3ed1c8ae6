"""
Joint robust Wald tests of fixed-effect subsets.

H0: Cβ = 0, with one row of C per selected coefficient, is tested with the
CR2 covariance:

    Q = (Cβ̂)ᵀ (C V_R Cᵀ)⁻¹ (Cβ̂)

Q is referred to an F distribution through the Hotelling-T² approximation
(HTZ): with η the degrees of freedom of a Wishart matching the first two
working-model moments of C V_R Cᵀ,

    F = (η − q + 1) / (η q) · Q  ~  F(q, η − q + 1)

For q = 1, F equals the squared robust t statistic and η its Satterthwaite
df.

Coefficients are selected by explicit names, by the structural group id
attached to each fixed-effect term, or by a regular expression over the
coefficient names.
"""

from __future__ import annotations

import re
from typing import Iterable

import numpy as np
from numpy.typing import NDArray
from scipy import stats

from scdmeta.hlm._common import WaldTestResult
from scdmeta.hlm.robust import CR2Sandwich, cr2_sandwich
from scdmeta.hlm.solution import ModelFit
from scdmeta.hlm.specification import GROUP_INTERCEPT


def select_coefficients(
    fit: ModelFit,
    names: Iterable[str] | None = None,
    group: str | None = None,
    pattern: str | None = None,
) -> tuple[str, ...]:
    """Resolve exactly one selector into coefficient names.

    Raises:
        ValueError: If not exactly one selector is given, a name is
            unknown, or the selection is empty.
    """
    given = [s is not None for s in (names, group, pattern)]
    if sum(given) != 1:
        raise ValueError("Give exactly one of names, group or pattern")

    available = fit.coefficient_names
    if names is not None:
        selected = tuple(names)
        unknown = [n for n in selected if n not in available]
        if unknown:
            raise ValueError(
                f"Unknown coefficients {unknown}. Available: {list(available)}"
            )
    elif group is not None:
        selected = fit.specification.terms_in_group(group)
    else:
        regex = re.compile(pattern)
        selected = tuple(n for n in available if regex.search(n))

    if not selected:
        raise ValueError(
            f"Constraint selects no coefficients "
            f"(names={names}, group={group}, pattern={pattern})"
        )
    if len(set(selected)) != len(selected):
        raise ValueError(f"Duplicate coefficients in constraint: {list(selected)}")
    return selected


def contrast_matrix(fit: ModelFit, selected: tuple[str, ...]) -> NDArray:
    """C with one unit row per selected coefficient."""
    index = {name: k for k, name in enumerate(fit.coefficient_names)}
    C = np.zeros((len(selected), len(index)), dtype=np.float64)
    for row, name in enumerate(selected):
        C[row, index[name]] = 1.0
    return C


def _hotelling_df(sandwich: CR2Sandwich, C: NDArray) -> float:
    """HTZ degrees of freedom η for the rows of C, NaN when undefined."""
    if sandwich.n_clusters < 2:
        return float('nan')
    q = C.shape[0]

    E = np.empty((q, q), dtype=np.float64)
    for s in range(q):
        for t in range(s, q):
            E[s, t] = E[t, s] = np.trace(sandwich.omega(C[s], C[t]))

    vals, vecs = np.linalg.eigh(E)
    scale = max(float(np.max(np.abs(vals))), 1.0)
    if vals[0] <= 1e-12 * scale:
        return float('nan')

    # Rows scaled so the sandwich has identity expectation
    G = (vecs / np.sqrt(vals)) @ vecs.T
    rows = G @ C

    omegas = {}
    for s in range(q):
        for t in range(q):
            omegas[s, t] = sandwich.omega(rows[s], rows[t])

    total = 0.0
    for s in range(q):
        for t in range(q):
            total += float(np.sum(omegas[s, s] * omegas[t, t]))
            total += float(np.sum(omegas[s, t] * omegas[s, t].T))

    if not np.isfinite(total) or total <= 0:
        return float('nan')
    return q * (q + 1) / total


def wald_test(
    fit: ModelFit,
    names: Iterable[str] | None = None,
    group: str | None = None,
    pattern: str | None = None,
    label: str | None = None,
    sandwich: CR2Sandwich | None = None,
) -> WaldTestResult:
    """Robust joint Wald test that the selected coefficients are all zero.

    Args:
        fit: Fitted model.
        names: Explicit coefficient names.
        group: Structural group id (e.g. 'moderator_x_phase').
        pattern: Regular expression searched in each coefficient name.
        label: Constraint label; defaults to the selector.
        sandwich: Precomputed CR2 sandwich of the fit.

    Returns:
        WaldTestResult. A singular C V_R Cᵀ or a non-positive denominator
        df gives reliable=False with NaN statistics and p-value.

    Raises:
        ValueError: Invalid or empty selection.

    Examples:
        >>> wald_test(fit, group='moderator_x_phase')
        >>> wald_test(fit, pattern=r'^level_AB:')
    """
    selected = select_coefficients(fit, names=names, group=group, pattern=pattern)
    if label is None:
        label = group if group is not None else (
            pattern if pattern is not None else ','.join(selected)
        )

    sandwich = sandwich or cr2_sandwich(fit)
    C = contrast_matrix(fit, selected)
    q = C.shape[0]
    Cb = C @ fit.coefficients
    middle = C @ sandwich.cov @ C.T
    middle = 0.5 * (middle + middle.T)

    def unreliable() -> WaldTestResult:
        return WaldTestResult(
            constraint=label,
            names=selected,
            q=q,
            chi_sq=float('nan'),
            F=float('nan'),
            df_num=float(q),
            df_denom=float('nan'),
            p_value=float('nan'),
            reliable=False,
        )

    vals = np.linalg.eigvalsh(middle)
    scale = max(float(np.max(np.abs(vals))), np.finfo(float).tiny)
    if not np.all(np.isfinite(vals)) or vals[0] <= 1e-10 * scale:
        return unreliable()

    chi_sq = float(Cb @ np.linalg.solve(middle, Cb))
    eta = _hotelling_df(sandwich, C)
    df_denom = eta - q + 1
    if not np.isfinite(eta) or df_denom <= 0:
        return unreliable()

    F = (eta - q + 1) / (eta * q) * chi_sq
    p_value = float(stats.f.sf(F, q, df_denom))

    return WaldTestResult(
        constraint=label,
        names=selected,
        q=q,
        chi_sq=chi_sq,
        F=float(F),
        df_num=float(q),
        df_denom=float(df_denom),
        p_value=p_value,
        reliable=True,
    )


def wald_tests(
    fit: ModelFit,
    groups: Iterable[str] | None = None,
) -> dict[str, WaldTestResult]:
    """One joint test per structural group.

    Args:
        fit: Fitted model.
        groups: Group ids to test; defaults to every group of the
            specification except the intercept.

    Returns:
        Group id → WaldTestResult, in group order.
    """
    if groups is None:
        groups = [g for g in fit.specification.groups if g != GROUP_INTERCEPT]
    sandwich = cr2_sandwich(fit)
    return {
        g: wald_test(fit, group=g, sandwich=sandwich)
        for g in groups
    }
