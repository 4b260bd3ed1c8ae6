"""
Design construction for four-level hierarchical models.

build_design() binds a ModelSpecification to a HierarchicalDataset: it
forms the fixed-effects matrix X from the term products, checks it for
rank deficiency, and precomputes everything the marginal covariance needs
for each study (all random effects are nested within study, so the
marginal covariance is block-diagonal by study):

    - random-effect design rows Z_level (n_s × q_level)
    - same-unit masks per nesting level (n_s × n_s)
    - same-case mask and AR(1) lag matrix |t_i − t_j|
    - residual phase codes

All specification problems surface here, before optimization starts.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

import numpy as np
from numpy.typing import NDArray

from scdmeta.core.exceptions import SpecificationError
from scdmeta.core.validation import check_column_rank
from scdmeta.hlm.dataset import HierarchicalDataset
from scdmeta.hlm.specification import ModelSpecification
from scdmeta.hlm._parameters import ThetaLayout


@dataclass(frozen=True)
class StudyBlock:
    """Precomputed per-study pieces of the marginal covariance.

    Attributes:
        label: Study label.
        rows: Row indices of the study in dataset order.
        X: Fixed-effects rows (n_s, p).
        y: Outcomes (n_s,).
        Z: Level → random-effect design rows (n_s, q_level).
        same_unit: Level → boolean mask of pairs sharing a unit at that level.
        same_case: Boolean mask of pairs within the same case.
        lag: |t_i − t_j| for pairs in the same case, 0 elsewhere.
        phase_codes: Index into ThetaLayout.phases per row (all 0 when
            homoscedastic).
        case_slices: Local row slices of each case, in order.
    """
    label: Any
    rows: NDArray
    X: NDArray
    y: NDArray
    Z: dict[str, NDArray]
    same_unit: dict[str, NDArray]
    same_case: NDArray
    lag: NDArray
    phase_codes: NDArray
    case_slices: tuple[slice, ...]

    @property
    def n(self) -> int:
        return self.y.shape[0]


@dataclass(frozen=True)
class ModelDesign:
    """A specification bound to a dataset.

    Attributes:
        specification: The model specification.
        dataset: The dataset.
        X: Fixed-effects matrix (n, p).
        y: Outcomes (n,).
        coefficient_names: One name per column of X.
        studies: Per-study blocks, in dataset order.
        layout: Tagged θ layout.
        n_groups: Level → number of units.
        notes: Degenerate-grouping notes (valid but uninformative levels).
    """
    specification: ModelSpecification
    dataset: HierarchicalDataset
    X: NDArray
    y: NDArray
    coefficient_names: tuple[str, ...]
    studies: tuple[StudyBlock, ...]
    layout: ThetaLayout
    n_groups: dict[str, int]
    notes: tuple[str, ...] = field(default_factory=tuple)

    @property
    def n(self) -> int:
        return self.X.shape[0]

    @property
    def p(self) -> int:
        return self.X.shape[1]


def _require_covariates(
    dataset: HierarchicalDataset,
    spec: ModelSpecification,
) -> None:
    missing = [
        c for c in spec.covariates_used()
        if c != 'session' and not dataset.has_covariate(c)
    ]
    if missing:
        raise SpecificationError(
            f"Specification '{spec.name}' uses covariates {missing} that are "
            f"not in the dataset. Available: {sorted(dataset.covariates)}",
            reason='unknown_covariate',
            terms=tuple(missing),
        )


def _fixed_effects_matrix(
    dataset: HierarchicalDataset,
    spec: ModelSpecification,
) -> NDArray:
    X = np.ones((dataset.n, len(spec.fixed)), dtype=np.float64)
    for j, term in enumerate(spec.fixed):
        for factor in term.factors:
            X[:, j] *= dataset.covariate(factor)
    return X


def _time_index(dataset: HierarchicalDataset, spec: ModelSpecification) -> NDArray:
    if not spec.has_ar1:
        return np.zeros(dataset.n, dtype=np.int64)
    t = dataset.covariate(spec.correlation.time)
    if not np.allclose(t, np.round(t)):
        raise SpecificationError(
            f"AR1 time covariate '{spec.correlation.time}' must be "
            f"integer-valued",
            reason='non_integer_time',
            terms=(spec.correlation.time,),
        )
    return np.round(t).astype(np.int64)


def _degenerate_notes(
    dataset: HierarchicalDataset,
    spec: ModelSpecification,
) -> tuple[str, ...]:
    notes = []
    counts = dataset.units_per_parent()
    if spec.random_effect('study') is not None and dataset.n_studies < 2:
        notes.append("study: a single study; its variance is not identified")
    if spec.random_effect('cluster') is not None and np.any(counts['cluster'] == 1):
        n_single = int(np.sum(counts['cluster'] == 1))
        notes.append(
            f"cluster: {n_single} stud{'y has' if n_single == 1 else 'ies have'} "
            f"a single cluster; the cluster variance may be estimated at the boundary"
        )
    if spec.random_effect('case') is not None and np.any(counts['case'] == 1):
        n_single = int(np.sum(counts['case'] == 1))
        notes.append(
            f"case: {n_single} cluster{' has' if n_single == 1 else 's have'} "
            f"a single case; the case variance may be estimated at the boundary"
        )
    if spec.heteroscedastic and len(dataset.phase_levels) < 2:
        notes.append(
            "variance: only one phase present; phase-specific residual "
            "variances reduce to a single variance"
        )
    return tuple(notes)


def build_design(
    dataset: HierarchicalDataset,
    spec: ModelSpecification,
) -> ModelDesign:
    """Bind a specification to a dataset.

    Args:
        dataset: Validated observation table.
        spec: Model specification.

    Returns:
        ModelDesign ready for REML estimation.

    Raises:
        SpecificationError: Unknown covariates ('unknown_covariate'),
            collinear or constant fixed-effect columns ('rank_deficient'),
            non-integer AR(1) time index ('non_integer_time').
    """
    _require_covariates(dataset, spec)

    X = _fixed_effects_matrix(dataset, spec)
    check_column_rank(X, spec.coefficient_names)
    time = _time_index(dataset, spec)

    layout = ThetaLayout.for_specification(spec, dataset.phase_levels)
    phase_index = {p: i for i, p in enumerate(layout.phases)}
    if layout.phases:
        phase_codes = np.array([phase_index[p] for p in dataset.phase], dtype=np.int64)
    else:
        phase_codes = np.zeros(dataset.n, dtype=np.int64)

    level_codes = {
        'study': dataset.study_codes,
        'cluster': dataset.cluster_codes,
        'case': dataset.case_codes,
    }

    studies = []
    for code in np.unique(dataset.study_codes):
        rows = np.flatnonzero(dataset.study_codes == code)
        Z = {}
        same_unit = {}
        for re in spec.random:
            cols = [
                np.ones(rows.size) if term == '1'
                else dataset.covariate(term)[rows]
                for term in re.terms
            ]
            Z[re.level] = np.column_stack(cols)
            codes = level_codes[re.level][rows]
            same_unit[re.level] = codes[:, None] == codes[None, :]

        case = dataset.case_codes[rows]
        same_case = case[:, None] == case[None, :]
        t = time[rows]
        lag = np.where(same_case, np.abs(t[:, None] - t[None, :]), 0)

        # Rows are sorted by case within study, so cases are contiguous
        starts = np.flatnonzero(np.r_[True, case[1:] != case[:-1]])
        ends = np.r_[starts[1:], case.size]
        case_slices = tuple(slice(int(a), int(b)) for a, b in zip(starts, ends))

        studies.append(StudyBlock(
            label=dataset.study[rows[0]],
            rows=rows,
            X=X[rows],
            y=dataset.outcome[rows],
            Z=Z,
            same_unit=same_unit,
            same_case=same_case,
            lag=lag,
            phase_codes=phase_codes[rows],
            case_slices=case_slices,
        ))

    n_groups = {
        re.level: int(np.unique(level_codes[re.level]).size)
        for re in spec.random
    }

    return ModelDesign(
        specification=spec,
        dataset=dataset,
        X=X,
        y=dataset.outcome,
        coefficient_names=spec.coefficient_names,
        studies=tuple(studies),
        layout=layout,
        n_groups=n_groups,
        notes=_degenerate_notes(dataset, spec),
    )
