"""
Shared fixtures for hierarchical model tests.

Simulates single-case design data with known structure: studies contain
clusters, clusters contain cases, and each case is an AB series of
sessions with a baseline of varying length followed by an intervention
phase.
"""

import numpy as np
import pytest

from scdmeta.hlm import HierarchicalDataset, ar1_model, fit, heteroscedastic_model


def simulate_scd(
    rng,
    n_studies=2,
    n_clusters=2,
    n_cases=2,
    n_sessions=20,
    intercept=10.0,
    shift=0.0,
    sd_study=1.0,
    sd_cluster=0.7,
    sd_case=0.5,
    sigma=0.5,
    intervention_sigma=None,
    phi=0.0,
    n_base=None,
):
    """Simulate an AB single-case dataset as a column dict.

    Cluster and case labels repeat across studies and clusters so the
    composite nesting keys are exercised. 'complexity' is a study-level
    moderator dummy. Baselines last n_base sessions, or a random length
    around half the series when n_base is None.
    """
    columns = {k: [] for k in (
        'study', 'cluster', 'case', 'session', 'phase', 'outcome',
        'time', 'level_AB', 'trend_AB', 'complexity',
    )}
    sessions = np.arange(1, n_sessions + 1)
    half = n_sessions // 2
    for s in range(n_studies):
        u_study = rng.normal(0, sd_study)
        for c in range(n_clusters):
            u_cluster = rng.normal(0, sd_cluster)
            for k in range(n_cases):
                u_case = rng.normal(0, sd_case)
                base = n_base or int(rng.integers(half - 2, half + 3))
                in_b = (sessions > base).astype(float)

                z = np.empty(n_sessions)
                z[0] = rng.normal()
                for t in range(1, n_sessions):
                    z[t] = phi * z[t - 1] + np.sqrt(1 - phi ** 2) * rng.normal()
                sd = np.where(in_b == 1, intervention_sigma or sigma, sigma)

                y = intercept + u_study + u_cluster + u_case + shift * in_b + sd * z

                columns['study'] += [f'S{s}'] * n_sessions
                columns['cluster'] += [f'C{c}'] * n_sessions
                columns['case'] += [f'P{k}'] * n_sessions
                columns['session'] += sessions.tolist()
                columns['phase'] += [
                    'Intervention' if b else 'Baseline' for b in in_b
                ]
                columns['outcome'] += y.tolist()
                columns['time'] += (sessions - 1).tolist()
                columns['level_AB'] += in_b.tolist()
                columns['trend_AB'] += ((sessions - base - 1) * in_b).tolist()
                columns['complexity'] += [float(s % 2)] * n_sessions

    return {k: np.asarray(v) for k, v in columns.items()}


@pytest.fixture
def rng():
    """Seeded random number generator for reproducible tests."""
    return np.random.default_rng(2024)


@pytest.fixture
def simulate(rng):
    """Factory for simulated column dicts drawn from the seeded rng."""
    def make(**kwargs):
        return simulate_scd(rng, **kwargs)
    return make


@pytest.fixture(scope='module')
def null_data():
    """2 studies × 2 clusters × 2 cases × 20 sessions, no effects."""
    rng = np.random.default_rng(11)
    return HierarchicalDataset.from_columns(simulate_scd(rng))


@pytest.fixture(scope='module')
def shift_data():
    """4 studies with a +5 intervention level shift and AR(1) residuals."""
    rng = np.random.default_rng(12)
    return HierarchicalDataset.from_columns(
        simulate_scd(rng, n_studies=4, shift=5.0, sd_study=2.0, phi=0.3)
    )


@pytest.fixture(scope='module')
def het_data():
    """4 studies whose intervention residual SD is three times the baseline SD."""
    rng = np.random.default_rng(13)
    return HierarchicalDataset.from_columns(
        simulate_scd(rng, n_studies=4, shift=2.0, sd_study=2.0, sigma=0.5,
                     intervention_sigma=1.5, phi=0.2)
    )


@pytest.fixture(scope='module')
def shift_fit(shift_data):
    """AR(1) growth model without random slopes, fitted to shift_data."""
    return fit(shift_data, ar1_model(random_slope=False))


@pytest.fixture(scope='module')
def het_fit(het_data):
    """Phase-heteroscedastic AR(1) model fitted to het_data."""
    return fit(het_data, heteroscedastic_model(random_slope=False))


@pytest.fixture(scope='module')
def ar_data():
    """Strong AR(1) residual dependence, φ = 0.7, 30 sessions per case."""
    rng = np.random.default_rng(21)
    return HierarchicalDataset.from_columns(
        simulate_scd(rng, n_studies=4, n_sessions=30, sd_study=2.0, phi=0.7)
    )


@pytest.fixture(scope='module')
def ab_shift_data():
    """2 studies × 2 clusters × 2 cases × 20 sessions, 10/10 AB split, +5 shift."""
    rng = np.random.default_rng(31)
    return HierarchicalDataset.from_columns(
        simulate_scd(rng, shift=5.0, phi=0.3, n_base=10)
    )


@pytest.fixture(scope='module')
def ab_shift_fit(ab_shift_data):
    """Default AR(1) model, random level_AB slope at every level."""
    return fit(ab_shift_data, ar1_model())


@pytest.fixture(scope='module')
def ab_het_data():
    """ab_shift_data design whose intervention residual SD is three times baseline."""
    rng = np.random.default_rng(32)
    return HierarchicalDataset.from_columns(
        simulate_scd(rng, shift=5.0, sigma=0.5, intervention_sigma=1.5,
                     phi=0.3, n_base=10)
    )
