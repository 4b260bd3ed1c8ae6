"""Tests for HierarchicalDataset validation and nesting keys."""

import numpy as np
import pytest

from scdmeta.core.exceptions import DimensionError, ValidationError
from scdmeta.hlm import HierarchicalDataset


def _columns():
    return {
        'study': ['B', 'B', 'A', 'A', 'A', 'A'],
        'cluster': ['c1', 'c1', 'c1', 'c1', 'c2', 'c2'],
        'case': ['x', 'x', 'x', 'x', 'x', 'x'],
        'session': [2, 1, 2, 1, 1, 2],
        'phase': ['Intervention', 'Baseline', 'Intervention', 'Baseline',
                  'Baseline', 'Intervention'],
        'outcome': [6.0, 5.0, 4.0, 3.0, 1.0, 2.0],
        'level_AB': [1.0, 0.0, 1.0, 0.0, 0.0, np.nan],
    }


class TestValidation:

    def test_rows_sorted_by_nesting_and_session(self):
        ds = HierarchicalDataset.from_columns(_columns())
        assert ds.study.tolist() == ['A', 'A', 'A', 'A', 'B', 'B']
        assert ds.cluster.tolist() == ['c1', 'c1', 'c2', 'c2', 'c1', 'c1']
        assert ds.session.tolist() == [1.0, 2.0, 1.0, 2.0, 1.0, 2.0]
        np.testing.assert_array_equal(ds.outcome, [3.0, 4.0, 1.0, 2.0, 5.0, 6.0])

    def test_composite_keys(self):
        """Case 'x' in three different clusters is three distinct cases."""
        ds = HierarchicalDataset.from_columns(_columns())
        assert ds.n_studies == 2
        assert ds.n_clusters == 3
        assert ds.n_cases == 3
        assert ds.case_codes.tolist() == [0, 0, 1, 1, 2, 2]

    def test_missing_covariates_become_zero(self):
        ds = HierarchicalDataset.from_columns(_columns())
        assert not np.any(np.isnan(ds.covariate('level_AB')))
        # The NaN row is study A, cluster c2, session 2
        assert ds.covariate('level_AB')[3] == 0.0

    def test_session_covariate(self):
        ds = HierarchicalDataset.from_columns(_columns())
        np.testing.assert_array_equal(ds.covariate('session'), ds.session)

    def test_unknown_covariate_raises_key_error(self):
        ds = HierarchicalDataset.from_columns(_columns())
        with pytest.raises(KeyError, match='not found'):
            ds.covariate('complexity')

    def test_phase_levels_in_declared_order(self):
        ds = HierarchicalDataset.from_columns(_columns())
        assert ds.phase_levels == ('Baseline', 'Intervention')

    def test_units_per_parent(self):
        ds = HierarchicalDataset.from_columns(_columns())
        counts = ds.units_per_parent()
        assert counts['cluster'].tolist() == [2, 1]
        assert counts['case'].tolist() == [1, 1, 1]

    def test_metadata(self):
        ds = HierarchicalDataset.from_columns(_columns())
        meta = ds.metadata
        assert meta['n'] == 6
        assert meta['covariates'] == ('level_AB',)


class TestValidationErrors:

    def test_duplicate_session_rejected(self):
        cols = _columns()
        cols['session'][0] = 1
        with pytest.raises(ValidationError, match='duplicate session'):
            HierarchicalDataset.from_columns(cols)

    def test_unknown_phase_rejected(self):
        cols = _columns()
        cols['phase'][0] = 'Follow-up'
        with pytest.raises(ValidationError, match='Follow-up'):
            HierarchicalDataset.from_columns(cols)

    def test_custom_phase_order(self):
        cols = _columns()
        cols['phase'] = ['B', 'A', 'B', 'A', 'A', 'B']
        ds = HierarchicalDataset.from_columns(cols, phase_order=('A', 'B'))
        assert ds.phase_levels == ('A', 'B')

    def test_non_finite_outcome_rejected(self):
        cols = _columns()
        cols['outcome'][2] = np.nan
        with pytest.raises(ValidationError):
            HierarchicalDataset.from_columns(cols)

    def test_infinite_covariate_rejected(self):
        cols = _columns()
        cols['level_AB'][0] = np.inf
        with pytest.raises(ValidationError, match='infinite'):
            HierarchicalDataset.from_columns(cols)

    def test_inconsistent_lengths(self):
        cols = _columns()
        cols['outcome'] = cols['outcome'][:-1]
        with pytest.raises(DimensionError):
            HierarchicalDataset.from_columns(cols)

    def test_missing_required_column(self):
        cols = _columns()
        del cols['phase']
        with pytest.raises(ValidationError, match='phase'):
            HierarchicalDataset.from_columns(cols)

    def test_explicit_covariate_selection(self):
        cols = _columns()
        cols['unused'] = [0.0] * 6
        ds = HierarchicalDataset.from_columns(cols, covariates=['level_AB'])
        assert not ds.has_covariate('unused')
