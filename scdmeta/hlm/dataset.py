"""
In-memory observation table for single-case design meta-analysis.

HierarchicalDataset holds the cleaned, per-session design table produced
by the external preprocessing step: sessions nested in cases, cases in
clusters, clusters in studies. It validates the columns, builds composite
nesting keys (a case label is only unique within its cluster, a cluster
label only within its study) and sorts rows so that every study and every
case is a contiguous block ordered by session.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping, Sequence

import numpy as np
from numpy.typing import ArrayLike, NDArray

from scdmeta.core.exceptions import ValidationError
from scdmeta.core.validation import (
    check_array, check_finite, check_1d, check_consistent_length,
    check_min_samples,
)

DEFAULT_PHASES = ('Baseline', 'Intervention', 'Maintenance')

_KEY_SEP = '\x1f'


def _composite_codes(*columns: NDArray) -> tuple[NDArray, int]:
    """Integer codes for the composite key formed by several label columns."""
    key = columns[0].astype(str)
    for col in columns[1:]:
        key = np.char.add(np.char.add(key, _KEY_SEP), col.astype(str))
    _, codes = np.unique(key, return_inverse=True)
    codes = codes.ravel()
    return codes, int(codes.max()) + 1 if codes.size else 0


@dataclass(frozen=True)
class HierarchicalDataset:
    """Validated observation table with nesting keys.

    Attributes:
        study: Study labels (n,).
        cluster: Cluster labels (n,), unique only within a study.
        case: Case labels (n,), unique only within a cluster.
        session: Session index (n,), ordinal within a case.
        phase: Phase labels (n,).
        outcome: Outcome values (n,).
        covariates: Covariate name → values (n,). Missing values are 0.
        phase_order: Declared phase order; the first present phase is
            the reference level for phase-specific residual variances.
        study_codes, cluster_codes, case_codes: 0-indexed integer codes of
            the composite keys (study), (study, cluster),
            (study, cluster, case).
        n: Number of observations.
    """
    study: NDArray
    cluster: NDArray
    case: NDArray
    session: NDArray
    phase: NDArray
    outcome: NDArray
    covariates: dict[str, NDArray]
    phase_order: tuple[str, ...]
    study_codes: NDArray
    cluster_codes: NDArray
    case_codes: NDArray
    n: int

    @staticmethod
    def validate(
        study: ArrayLike,
        cluster: ArrayLike,
        case: ArrayLike,
        session: ArrayLike,
        phase: ArrayLike,
        outcome: ArrayLike,
        covariates: Mapping[str, ArrayLike] | None = None,
        phase_order: Sequence[str] = DEFAULT_PHASES,
    ) -> 'HierarchicalDataset':
        """Validate columns and create a HierarchicalDataset.

        Args:
            study, cluster, case: Nesting labels, one per observation.
            session: Session index within case.
            phase: Phase label per observation; must be in phase_order.
            outcome: Outcome value per observation; must be finite.
            covariates: Derived numeric covariates (phase-relative time,
                level / trend indicators, moderator dummies). NaN entries
                are set to 0, matching the convention that covariates of a
                phase a case never enters are zero.
            phase_order: Declared phase order.

        Returns:
            Validated HierarchicalDataset with rows sorted by
            (study, cluster, case, session).

        Raises:
            ValidationError: On invalid inputs.
            DimensionError: On inconsistent column lengths.
        """
        study = np.asarray(study)
        cluster = np.asarray(cluster)
        case = np.asarray(case)
        phase = np.asarray(phase).astype(str)
        session = check_array(session, 'session')
        outcome = check_array(outcome, 'outcome')

        for name, col in (('study', study), ('cluster', cluster),
                          ('case', case), ('phase', phase),
                          ('session', session), ('outcome', outcome)):
            check_1d(col, name)

        check_consistent_length(
            study, cluster, case, session, phase, outcome,
            names=('study', 'cluster', 'case', 'session', 'phase', 'outcome'),
        )
        check_min_samples(outcome, 3, 'outcome')
        check_finite(outcome, 'outcome')
        check_finite(session, 'session')

        phase_order = tuple(str(p) for p in phase_order)
        unknown = sorted(set(phase.tolist()) - set(phase_order))
        if unknown:
            raise ValidationError(
                f"phase: labels {unknown} not in declared phase order "
                f"{list(phase_order)}"
            )

        n = outcome.shape[0]
        cov_validated = {}
        for name, values in (covariates or {}).items():
            values = check_array(values, f"covariate '{name}'")
            check_1d(values, f"covariate '{name}'")
            check_consistent_length(
                outcome, values, names=('outcome', f"covariate '{name}'")
            )
            if np.any(np.isinf(values)):
                raise ValidationError(
                    f"covariate '{name}': contains infinite values"
                )
            cov_validated[str(name)] = np.where(np.isnan(values), 0.0, values)

        study_codes, _ = _composite_codes(study)
        cluster_codes, _ = _composite_codes(study, cluster)
        case_codes, _ = _composite_codes(study, cluster, case)

        # np.lexsort sorts by the last key first
        order = np.lexsort((session, case_codes, cluster_codes, study_codes))

        sorted_case = case_codes[order]
        sorted_session = session[order]
        dup = (np.diff(sorted_case) == 0) & (np.diff(sorted_session) == 0)
        if np.any(dup):
            i = int(np.argmax(dup))
            raise ValidationError(
                f"session: duplicate session {sorted_session[i]:g} within "
                f"case '{case[order][i]}' of cluster '{cluster[order][i]}', "
                f"study '{study[order][i]}'"
            )

        return HierarchicalDataset(
            study=study[order],
            cluster=cluster[order],
            case=case[order],
            session=session[order],
            phase=phase[order],
            outcome=outcome[order],
            covariates={k: v[order] for k, v in cov_validated.items()},
            phase_order=phase_order,
            study_codes=study_codes[order],
            cluster_codes=cluster_codes[order],
            case_codes=case_codes[order],
            n=n,
        )

    @staticmethod
    def from_columns(
        columns: Mapping[str, ArrayLike],
        *,
        study: str = 'study',
        cluster: str = 'cluster',
        case: str = 'case',
        session: str = 'session',
        phase: str = 'phase',
        outcome: str = 'outcome',
        covariates: Sequence[str] | None = None,
        phase_order: Sequence[str] = DEFAULT_PHASES,
    ) -> 'HierarchicalDataset':
        """Build a dataset from a column mapping (e.g. ``dict(df)``).

        Args:
            columns: Column name → values.
            study, cluster, case, session, phase, outcome: Names of the
                identifier and outcome columns.
            covariates: Covariate column names. Default: every remaining
                column.
            phase_order: Declared phase order.
        """
        reserved = (study, cluster, case, session, phase, outcome)
        missing = [c for c in reserved if c not in columns]
        if missing:
            raise ValidationError(
                f"columns: missing required columns {missing}. "
                f"Available: {list(columns.keys())}"
            )
        if covariates is None:
            covariates = [c for c in columns if c not in reserved]
        return HierarchicalDataset.validate(
            columns[study], columns[cluster], columns[case],
            columns[session], columns[phase], columns[outcome],
            covariates={c: columns[c] for c in covariates},
            phase_order=phase_order,
        )

    # --- Accessors ---

    @property
    def n_observations(self) -> int:
        return self.n

    @property
    def n_studies(self) -> int:
        return int(np.unique(self.study_codes).size)

    @property
    def n_clusters(self) -> int:
        return int(np.unique(self.cluster_codes).size)

    @property
    def n_cases(self) -> int:
        return int(np.unique(self.case_codes).size)

    @property
    def phase_levels(self) -> tuple[str, ...]:
        """Phases present in the data, in declared order."""
        present = set(self.phase.tolist())
        return tuple(p for p in self.phase_order if p in present)

    @property
    def metadata(self) -> dict[str, Any]:
        return {
            'n': self.n,
            'n_studies': self.n_studies,
            'n_clusters': self.n_clusters,
            'n_cases': self.n_cases,
            'phases': self.phase_levels,
            'covariates': tuple(self.covariates),
        }

    def has_covariate(self, name: str) -> bool:
        return name in self.covariates

    def covariate(self, name: str) -> NDArray:
        """Values of a covariate (or of the session index as 'session')."""
        if name == 'session':
            return self.session
        try:
            return self.covariates[name]
        except KeyError:
            raise KeyError(
                f"Covariate '{name}' not found. "
                f"Available: {sorted(self.covariates)}"
            ) from None

    def units_per_parent(self) -> dict[str, NDArray]:
        """Number of clusters per study and cases per cluster."""
        clusters_per_study = np.array([
            np.unique(self.cluster_codes[self.study_codes == s]).size
            for s in np.unique(self.study_codes)
        ])
        cases_per_cluster = np.array([
            np.unique(self.case_codes[self.cluster_codes == c]).size
            for c in np.unique(self.cluster_codes)
        ])
        return {
            'cluster': clusters_per_study,
            'case': cases_per_cluster,
        }
