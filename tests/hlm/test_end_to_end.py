"""End-to-end tests: fit, derive every result, compare models."""

import warnings

import numpy as np
import pytest

from scdmeta.hlm import (
    Analysis, FitControl, ModelFit, analyze, ar1_model, fit, fit_models,
    heteroscedastic_model, likelihood_ratio_test, null_model, robust_tests,
)


class TestNullModel:
    """Null model on 2 studies × 2 clusters × 2 cases × 20 sessions."""

    def test_analysis(self, null_data):
        analysis = analyze(null_data, null_model())
        assert isinstance(analysis, Analysis)
        assert isinstance(analysis.fit, ModelFit)
        assert analysis.name == 'null'

        result = analysis.fit
        assert result.params.n_obs == 160
        assert result.params.n_groups == {'study': 2, 'cluster': 4, 'case': 8}
        assert np.isfinite(result.log_likelihood)
        assert result.reason in ('converged', 'max_iterations')
        np.testing.assert_allclose(result.coefficients[0], 10.0, atol=3.0)

        assert len(analysis.robust_tests) == 1
        assert analysis.robust_test('(Intercept)').name == '(Intercept)'
        assert analysis.wald_tests == {}
        total = (analysis.icc.study + analysis.icc.cluster
                 + analysis.icc.case + analysis.icc.residual)
        assert total == pytest.approx(1.0)
        assert analysis.acf.lags[-1] == 14
        assert [c.level for c in analysis.variance_components] == [
            'study', 'cluster', 'case', 'residual',
        ]

    def test_fitted_plus_residuals_equals_y(self, null_data):
        result = fit(null_data, null_model())
        np.testing.assert_allclose(
            result.fitted_values + result.residuals, null_data.outcome,
        )
        np.testing.assert_allclose(
            result.params.marginal_residuals,
            null_data.outcome - result.coefficients[0],
        )

    def test_blups_shape(self, null_data):
        result = fit(null_data, null_model())
        assert result.ranef['study'].shape == (2, 1)
        assert result.ranef['cluster'].shape == (4, 1)
        assert result.ranef['case'].shape == (8, 1)

    def test_result_envelope(self, null_data):
        result = fit(null_data, null_model())
        info = result.result.info
        assert info['method'] == 'REML'
        assert info['optimizer'] == 'BFGS'
        assert result.result.backend_name == 'cpu_reml'
        assert 'total_seconds' in result.result.timing
        assert 'optimization' in result.result.timing
        assert result.params.theta_labels == result.layout.labels

    def test_unknown_robust_test_name(self, null_data):
        analysis = analyze(null_data, null_model())
        with pytest.raises(KeyError):
            analysis.robust_test('level_AB')


class TestLevelShift:
    """A +5 intervention level shift is recovered and significant."""

    def test_shift_recovered(self, shift_fit):
        np.testing.assert_allclose(shift_fit.coef['level_AB'], 5.0, atol=0.5)

    def test_shift_significant(self, shift_fit):
        level = {r.name: r for r in robust_tests(shift_fit)}['level_AB']
        assert level.p_value < 0.05
        assert level.stars != ''
        assert level.effect_size > 0

    def test_ar1_estimated(self, shift_fit):
        assert shift_fit.ar1 is not None
        assert -1.0 < shift_fit.ar1 < 1.0
        assert shift_fit.ar1 > 0.0


class TestBalancedABDesign:
    """Null dataset layout with an exact 10/10 split, default random slopes."""

    def test_layout(self, ab_shift_data):
        assert ab_shift_data.n_observations == 160
        assert ab_shift_data.n_cases == 8
        assert int(np.sum(ab_shift_data.covariate('level_AB'))) == 80

    def test_random_slopes_at_every_level(self, ab_shift_fit):
        for level in ('study', 'cluster', 'case'):
            assert ab_shift_fit.covariance(level).shape == (2, 2)

    def test_shift_recovered_and_significant(self, ab_shift_fit):
        assert abs(ab_shift_fit.coef['level_AB'] - 5.0) < 1.0
        level = {r.name: r for r in robust_tests(ab_shift_fit)}['level_AB']
        assert level.p_value < 0.05

    def test_reason_code(self, ab_shift_fit):
        assert ab_shift_fit.reason in ('converged', 'max_iterations')
        assert ab_shift_fit.result.info['reason'] == ab_shift_fit.reason
        assert (ab_shift_fit.reason == 'converged') == ab_shift_fit.converged

    def test_heteroscedastic_lrt(self, ab_het_data):
        homo = fit(ab_het_data, ar1_model())
        het = fit(ab_het_data, heteroscedastic_model())
        lrt = likelihood_ratio_test(homo, het)
        assert lrt.full == 'ar1_het'
        assert lrt.df == 1
        assert lrt.p_value < 0.05
        assert lrt.prefers_full


class TestHeteroscedasticity:
    """Phase-specific residual variances beat a pooled variance on LRT."""

    def test_lrt_prefers_heteroscedastic(self, het_data, het_fit):
        homo = fit(het_data, ar1_model(random_slope=False))
        lrt = likelihood_ratio_test(homo, het_fit)
        assert lrt.full == 'ar1_het'
        assert lrt.reduced == 'ar1'
        assert lrt.df == 1
        assert lrt.statistic > 0
        assert lrt.p_value < 0.05
        assert lrt.prefers_full

    def test_compare_orders_models(self, het_data, het_fit):
        homo = fit(het_data, ar1_model(random_slope=False))
        lrt = het_fit.compare(homo)
        assert lrt.full == 'ar1_het'

    def test_phase_variances(self, het_fit):
        variances = het_fit.phase_variances
        assert list(variances) == ['Baseline', 'Intervention']
        assert variances['Intervention'] > variances['Baseline']

    def test_lrt_warns_on_different_fixed_effects(self, het_data, het_fit):
        null = fit(het_data, null_model())
        with pytest.warns(UserWarning, match='identical fixed effects'):
            likelihood_ratio_test(null, het_fit)


class TestConvergence:

    def test_non_convergence_is_flagged(self, null_data):
        control = FitControl(max_iter=1, ms_max_iter=1, tolerance=1e-12)
        with pytest.warns(RuntimeWarning, match='did not converge'):
            result = fit(null_data, null_model(), control)
        assert not result.converged
        assert result.reason == 'max_iterations'
        assert result.params.n_iter == 1
        assert result.result.has_warning('did not converge')
        assert 'did not converge' in result.summary()

    def test_invalid_control(self):
        with pytest.raises(ValueError):
            FitControl(max_iter=0)
        with pytest.raises(ValueError):
            FitControl(tolerance=0.0)

    def test_skip_theta_covariance(self, null_data):
        with warnings.catch_warnings():
            warnings.simplefilter('ignore', RuntimeWarning)
            result = fit(null_data, null_model(), FitControl(compute_theta_cov=False))
        assert result.theta_cov is None
        assert not result.params.theta_cov_reliable


class TestFitModels:

    def test_independent_models_share_dataset(self, null_data):
        fits = fit_models(null_data, [null_model(), null_model('null_again')])
        assert list(fits) == ['null', 'null_again']
        assert fits['null'].log_likelihood == pytest.approx(
            fits['null_again'].log_likelihood
        )

    def test_duplicate_names_rejected(self, null_data):
        with pytest.raises(ValueError, match='Duplicate'):
            fit_models(null_data, [null_model(), null_model()])


class TestSummary:

    def test_summary_lists_components(self, het_fit):
        text = het_fit.summary()
        assert 'ar1_het' in text
        assert 'Random effects:' in text
        assert 'Intervention' in text
        assert 'level_AB' in text
        assert 'AR(1) Phi' in text

    def test_repr(self, het_fit):
        assert repr(het_fit).startswith("ModelFit('ar1_het'")
