"""Tests for CR2 robust inference."""

import numpy as np
import pytest

from scdmeta.hlm import (
    FixedTerm, HierarchicalDataset, ModelSpecification, RandomEffect, fit,
    robust_covariance, robust_tests,
)
from scdmeta.hlm.robust import cr2_sandwich
from scdmeta.hlm.solution import significance_stars


class TestSignificanceStars:

    @pytest.mark.parametrize('p, stars', [
        (0.0001, '***'),
        (0.0009, '***'),
        (0.001, '**'),
        (0.009, '**'),
        (0.01, '*'),
        (0.049, '*'),
        (0.05, ''),
        (0.5, ''),
        (float('nan'), ''),
    ])
    def test_bands(self, p, stars):
        assert significance_stars(p) == stars


class TestRobustCovariance:

    def test_symmetric_positive_semidefinite(self, shift_fit):
        V = robust_covariance(shift_fit)
        p = len(shift_fit.coefficient_names)
        assert V.shape == (p, p)
        np.testing.assert_allclose(V, V.T, atol=1e-12)
        assert np.linalg.eigvalsh(V)[0] > -1e-10

    def test_bread_is_model_based_covariance(self, shift_fit):
        sandwich = cr2_sandwich(shift_fit)
        np.testing.assert_allclose(sandwich.bread, shift_fit.cov_beta, rtol=1e-8)
        assert sandwich.n_clusters == 4

    def test_meat_from_adjusted_scores(self, shift_fit):
        sandwich = cr2_sandwich(shift_fit)
        meat = sum(np.outer(cl.u, cl.u) for cl in sandwich.clusters)
        np.testing.assert_allclose(
            sandwich.cov, sandwich.bread @ meat @ sandwich.bread, atol=1e-12,
        )

    def test_working_model_expectation(self, shift_fit):
        """Σ_j Ω_jj equals cᵀ M c: CR2 is unbiased under the working model."""
        sandwich = cr2_sandwich(shift_fit)
        p = len(shift_fit.coefficient_names)
        for k in range(p):
            c = np.zeros(p)
            c[k] = 1.0
            omega = sandwich.omega(c, c)
            np.testing.assert_allclose(
                np.trace(omega), sandwich.bread[k, k], rtol=1e-6,
            )


class TestRobustTests:

    def test_one_result_per_coefficient(self, shift_fit):
        results = robust_tests(shift_fit)
        assert [r.name for r in results] == list(shift_fit.coefficient_names)

    def test_effect_size_formula(self, shift_fit):
        for r in robust_tests(shift_fit):
            if np.isfinite(r.df):
                assert r.effect_size == pytest.approx(2 * abs(r.t) / np.sqrt(r.df))

    def test_t_statistic(self, shift_fit):
        V = robust_covariance(shift_fit)
        for k, r in enumerate(robust_tests(shift_fit)):
            assert r.se == pytest.approx(np.sqrt(V[k, k]))
            assert r.t == pytest.approx(r.estimate / r.se)

    def test_df_not_residual_df(self, shift_fit):
        """Satterthwaite df reflect the 4 studies, not n − p."""
        n_minus_p = shift_fit.design.n - shift_fit.design.p
        for r in robust_tests(shift_fit):
            assert 0 < r.df < n_minus_p

    def test_stars_follow_p_value(self, shift_fit):
        for r in robust_tests(shift_fit):
            assert r.stars == significance_stars(r.p_value)

    def test_single_study_gives_undefined_df(self, simulate):
        cols = simulate(n_studies=1, n_clusters=2, n_cases=3, shift=3.0)
        ds = HierarchicalDataset.from_columns(cols)
        spec = ModelSpecification(
            'single_study',
            (FixedTerm('(Intercept)', (), 'intercept'),
             FixedTerm('level_AB', ('level_AB',), 'phase')),
            (RandomEffect('case'),),
        )
        result = robust_tests(fit(ds, spec))
        for r in result:
            assert np.isnan(r.p_value)
            assert r.stars == ''
