"""
One-call analysis of a model specification.

analyze() fits a specification and derives every downstream result from
the fit. Each call is independent; several models of the same dataset are
separate calls sharing only the immutable dataset.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable

from scdmeta.hlm._common import (
    AutocorrelationResult, FitControl, ICCResult, RobustTestResult,
    VarianceComponent, WaldTestResult,
)
from scdmeta.hlm.dataset import HierarchicalDataset
from scdmeta.hlm.diagnostics import residual_acf
from scdmeta.hlm.icc import intraclass_correlations
from scdmeta.hlm.robust import robust_tests
from scdmeta.hlm.solution import ModelFit
from scdmeta.hlm.solvers import fit
from scdmeta.hlm.specification import ModelSpecification
from scdmeta.hlm.variance import extract_variance_components
from scdmeta.hlm.wald import wald_tests


@dataclass(frozen=True)
class Analysis:
    """A fitted model with all derived results."""
    fit: ModelFit
    variance_components: tuple[VarianceComponent, ...]
    robust_tests: tuple[RobustTestResult, ...]
    wald_tests: dict[str, WaldTestResult]
    icc: ICCResult
    acf: AutocorrelationResult

    @property
    def name(self) -> str:
        return self.fit.name

    def robust_test(self, name: str) -> RobustTestResult:
        for r in self.robust_tests:
            if r.name == name:
                return r
        raise KeyError(
            f"No coefficient '{name}'. "
            f"Available: {[r.name for r in self.robust_tests]}"
        )


def analyze(
    dataset: HierarchicalDataset,
    specification: ModelSpecification,
    control: FitControl | None = None,
    wald_groups: Iterable[str] | None = None,
    max_lag: int = 14,
) -> Analysis:
    """Fit a specification and derive variance components, robust tests,
    Wald tests, ICCs and the residual autocorrelation.

    Args:
        dataset: Validated observation table.
        specification: Model specification.
        control: Iteration caps and tolerances.
        wald_groups: Structural groups to test jointly; defaults to every
            non-intercept group of the specification.
        max_lag: Largest autocorrelation lag.

    Returns:
        Analysis.
    """
    model = fit(dataset, specification, control)
    return Analysis(
        fit=model,
        variance_components=extract_variance_components(model),
        robust_tests=robust_tests(model),
        wald_tests=wald_tests(model, wald_groups),
        icc=intraclass_correlations(model),
        acf=residual_acf(model, max_lag=max_lag),
    )
