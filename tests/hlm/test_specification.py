"""Tests for model specifications and design construction."""

import numpy as np
import pytest

from scdmeta.core.exceptions import SpecificationError
from scdmeta.hlm import (
    CorrelationStructure, FixedTerm, HierarchicalDataset, ModelSpecification,
    RandomEffect, VarianceStructure, ar1_model, fit, heteroscedastic_model,
    moderator_model, null_model,
)
from scdmeta.hlm.design import build_design


class TestBuilders:

    def test_null_model(self):
        spec = null_model()
        assert spec.coefficient_names == ('(Intercept)',)
        assert [r.level for r in spec.random] == ['study', 'cluster', 'case']
        assert all(r.terms == ('1',) for r in spec.random)
        assert not spec.has_ar1
        assert not spec.heteroscedastic

    def test_ar1_model(self):
        spec = ar1_model()
        assert spec.coefficient_names == (
            '(Intercept)', 'time', 'level_AB', 'trend_AB',
        )
        assert spec.has_ar1
        assert spec.correlation.start == 0.2
        assert all(r.terms == ('1', 'level_AB') for r in spec.random)

    def test_ar1_model_with_maintenance(self):
        spec = ar1_model(maintenance=True, random_slope=False)
        assert spec.terms_in_group('phase') == (
            'level_AB', 'trend_AB', 'level_BC', 'trend_BC',
        )
        assert all(r.terms == ('1',) for r in spec.random)

    def test_heteroscedastic_model(self):
        spec = heteroscedastic_model(ratio_start={'Intervention': 2.0})
        assert spec.heteroscedastic
        assert spec.variance.start_ratio('Intervention') == 2.0
        assert spec.variance.start_ratio('Maintenance') == 1.0

    def test_moderator_model_groups(self):
        spec = moderator_model(['complexity', 'design_MB'])
        assert spec.terms_in_group('moderator') == ('complexity', 'design_MB')
        assert spec.terms_in_group('moderator_x_phase') == (
            'level_AB:complexity', 'level_AB:design_MB',
            'trend_AB:complexity', 'trend_AB:design_MB',
        )
        assert spec.groups == (
            'intercept', 'time', 'phase', 'moderator', 'moderator_x_phase',
        )

    def test_covariates_used(self):
        spec = moderator_model(['complexity'])
        used = spec.covariates_used()
        assert 'complexity' in used
        assert 'level_AB' in used
        assert 'session' in used


class TestInvalidStructure:

    def _fixed(self):
        return (FixedTerm('(Intercept)', (), 'intercept'),)

    def test_no_fixed_terms(self):
        with pytest.raises(SpecificationError) as exc:
            ModelSpecification('m', (), (RandomEffect('case'),))
        assert exc.value.reason == 'invalid_structure'

    def test_duplicate_terms(self):
        fixed = self._fixed() * 2
        with pytest.raises(SpecificationError, match='Duplicate'):
            ModelSpecification('m', fixed, ())

    def test_unknown_level(self):
        with pytest.raises(SpecificationError, match='Unknown nesting level'):
            ModelSpecification('m', self._fixed(), (RandomEffect('school'),))

    def test_levels_out_of_order(self):
        with pytest.raises(SpecificationError, match='ordered'):
            ModelSpecification(
                'm', self._fixed(),
                (RandomEffect('case'), RandomEffect('study')),
            )

    def test_random_effect_without_intercept(self):
        with pytest.raises(SpecificationError, match='intercept'):
            ModelSpecification(
                'm', self._fixed(), (RandomEffect('case', ('level_AB',)),),
            )

    def test_unknown_correlation_family(self):
        with pytest.raises(SpecificationError):
            ModelSpecification(
                'm', self._fixed(), (),
                correlation=CorrelationStructure('ARMA'),
            )

    def test_ar1_start_out_of_range(self):
        with pytest.raises(SpecificationError):
            ModelSpecification(
                'm', self._fixed(), (),
                correlation=CorrelationStructure('AR1', start=1.0),
            )

    def test_non_positive_ratio_start(self):
        with pytest.raises(SpecificationError) as exc:
            ModelSpecification(
                'm', self._fixed(), (),
                variance=VarianceStructure('phase', (('Intervention', 0.0),)),
            )
        assert exc.value.terms == ('Intervention',)

    def test_specification_is_immutable(self):
        spec = null_model()
        with pytest.raises(AttributeError):
            spec.name = 'other'


class TestDesign:

    def test_design_blocks(self, null_data):
        design = build_design(null_data, ar1_model())
        assert design.n == 160
        assert design.p == 4
        assert len(design.studies) == 2
        for block in design.studies:
            assert block.n == 80
            assert len(block.case_slices) == 4
            assert block.Z['case'].shape == (80, 2)
            # Lags are zero across cases
            assert np.all(block.lag[~block.same_case] == 0)
        assert design.n_groups == {'study': 2, 'cluster': 4, 'case': 8}

    def test_layout_follows_specification(self, null_data):
        design = build_design(null_data, heteroscedastic_model())
        layout = design.layout
        assert [b.name for b in layout.blocks] == [
            'study', 'cluster', 'case', 'ar1', 'variance_ratio', 'sigma',
        ]
        assert layout.size == 3 * 3 + 1 + 1 + 1
        assert layout.phases == ('Baseline', 'Intervention')

    def test_rank_deficient_moderator(self, simulate):
        """A moderator with no variation is rejected before optimization."""
        cols = simulate()
        cols['complexity'] = np.zeros_like(cols['complexity'])
        ds = HierarchicalDataset.from_columns(cols)
        with pytest.raises(SpecificationError) as exc:
            fit(ds, moderator_model(['complexity']))
        assert exc.value.reason == 'rank_deficient'
        assert 'complexity' in exc.value.terms

    def test_collinear_terms(self, simulate):
        cols = simulate()
        cols['copy'] = 2.0 * cols['level_AB']
        ds = HierarchicalDataset.from_columns(cols)
        spec = ModelSpecification(
            'collinear',
            (FixedTerm('(Intercept)', (), 'intercept'),
             FixedTerm('level_AB', ('level_AB',), 'phase'),
             FixedTerm('copy', ('copy',), 'phase')),
            (RandomEffect('case'),),
        )
        with pytest.raises(SpecificationError) as exc:
            build_design(ds, spec)
        assert exc.value.reason == 'rank_deficient'
        assert exc.value.terms == ('copy',)

    def test_unknown_covariate(self, null_data):
        with pytest.raises(SpecificationError) as exc:
            build_design(null_data, moderator_model(['design_MB']))
        assert exc.value.reason == 'unknown_covariate'
        assert exc.value.terms == ('design_MB',)

    def test_non_integer_time(self, simulate):
        cols = simulate()
        cols['time'] = cols['time'] / 3.0
        ds = HierarchicalDataset.from_columns(cols)
        with pytest.raises(SpecificationError) as exc:
            build_design(ds, ar1_model(time='time'))
        assert exc.value.reason == 'non_integer_time'

    def test_degenerate_grouping_noted(self, simulate):
        cols = simulate(n_studies=2, n_clusters=1)
        ds = HierarchicalDataset.from_columns(cols)
        design = build_design(ds, null_model())
        assert any(note.startswith('cluster:') for note in design.notes)
