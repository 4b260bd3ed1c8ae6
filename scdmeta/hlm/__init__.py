"""
Four-level hierarchical linear models for single-case design meta-analysis.

Public API:
    HierarchicalDataset           — validated observation table
    ModelSpecification            — fixed, random, correlation and variance structure
    null_model(), ar1_model(),
    heteroscedastic_model(),
    moderator_model()             — builders for the four substantive models
    fit(), fit_models()           — REML estimation
    ModelFit                      — result wrapper for a fitted model
    extract_variance_components() — natural-scale variance components with CIs
    robust_tests()                — CR2 t-tests with Satterthwaite df
    wald_test(), wald_tests()     — joint robust Wald tests
    intraclass_correlations()     — ICC decomposition
    residual_acf()                — residual autocorrelation diagnostic
    likelihood_ratio_test()       — nested model comparison
    analyze()                     — fit plus every derived result
"""

from scdmeta.hlm._common import (
    FitControl,
    HLMParams,
    VarianceComponent,
    RobustTestResult,
    WaldTestResult,
    ICCResult,
    AutocorrelationResult,
    LikelihoodRatioResult,
)
from scdmeta.hlm.dataset import HierarchicalDataset
from scdmeta.hlm.specification import (
    FixedTerm,
    RandomEffect,
    CorrelationStructure,
    VarianceStructure,
    ModelSpecification,
    null_model,
    ar1_model,
    heteroscedastic_model,
    moderator_model,
)
from scdmeta.hlm.solvers import fit, fit_models
from scdmeta.hlm.solution import ModelFit, likelihood_ratio_test
from scdmeta.hlm.variance import extract_variance_components
from scdmeta.hlm.robust import robust_tests, robust_covariance
from scdmeta.hlm.wald import wald_test, wald_tests
from scdmeta.hlm.icc import intraclass_correlations
from scdmeta.hlm.diagnostics import residual_acf
from scdmeta.hlm.analysis import Analysis, analyze

__all__ = [
    "FitControl",
    "HLMParams",
    "VarianceComponent",
    "RobustTestResult",
    "WaldTestResult",
    "ICCResult",
    "AutocorrelationResult",
    "LikelihoodRatioResult",
    "HierarchicalDataset",
    "FixedTerm",
    "RandomEffect",
    "CorrelationStructure",
    "VarianceStructure",
    "ModelSpecification",
    "null_model",
    "ar1_model",
    "heteroscedastic_model",
    "moderator_model",
    "fit",
    "fit_models",
    "ModelFit",
    "likelihood_ratio_test",
    "extract_variance_components",
    "robust_tests",
    "robust_covariance",
    "wald_test",
    "wald_tests",
    "intraclass_correlations",
    "residual_acf",
    "Analysis",
    "analyze",
]
