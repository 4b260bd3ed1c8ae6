"""
Intraclass correlations across the nesting levels.

    total = τ²_study + τ²_cluster + τ²_case + σ²
    ICC_level = τ²_level / total

τ² are the random-intercept variances. σ² is the residual variance, or the
reference (baseline) phase variance when the residual variance differs by
phase. A level without a random effect contributes zero.
"""

from __future__ import annotations

from scdmeta.core.exceptions import NumericalError
from scdmeta.hlm._common import ICCResult
from scdmeta.hlm.solution import ModelFit
from scdmeta.hlm.specification import LEVELS


def intraclass_correlations(fit: ModelFit) -> ICCResult:
    """Variance shares of the study, cluster, case and residual levels.

    Raises:
        NumericalError: If the total variance is not positive and finite.
    """
    natural = fit.natural
    intercepts = {
        level: float(natural.covariances[level][0, 0])
        if level in natural.covariances else 0.0
        for level in LEVELS
    }
    residual = float(natural.residual_variance)
    total = sum(intercepts.values()) + residual

    if not total > 0 or total == float('inf'):
        raise NumericalError(
            f"Total variance of '{fit.name}' is not positive and finite: {total}"
        )

    return ICCResult(
        study=intercepts['study'] / total,
        cluster=intercepts['cluster'] / total,
        case=intercepts['case'] / total,
        residual=residual / total,
        total_variance=total,
        residual_variance=residual,
    )
