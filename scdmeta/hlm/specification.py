"""
Model specification for four-level single-case design models.

A ModelSpecification is a plain, immutable value enumerating:

    - fixed-effect terms (products of covariates), each tagged with a
      structural group id used to select coefficient families for
      joint tests;
    - random effects per nesting level (study, cluster, case), always a
      random intercept and optionally a random slope on the AB level
      indicator, with unstructured covariance;
    - the residual correlation structure (none or AR(1) over an integer
      time index);
    - the residual variance grouping (none or by phase).

The four substantive models of a single-case meta-analysis are built by
null_model(), ar1_model(), heteroscedastic_model() and moderator_model();
each returns a specification value that is passed to the shared fit().
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Sequence

from scdmeta.core.exceptions import SpecificationError

LEVELS = ('study', 'cluster', 'case')

INTERCEPT = '(Intercept)'

# Covariate names produced by the preprocessing step
TIME = 'time'
LEVEL_AB = 'level_AB'
TREND_AB = 'trend_AB'
LEVEL_BC = 'level_BC'
TREND_BC = 'trend_BC'

# Structural group ids
GROUP_INTERCEPT = 'intercept'
GROUP_TIME = 'time'
GROUP_PHASE = 'phase'
GROUP_MODERATOR = 'moderator'
GROUP_MODERATOR_X_PHASE = 'moderator_x_phase'

CORRELATION_FAMILIES = ('none', 'AR1')
VARIANCE_GROUPINGS = ('none', 'phase')


@dataclass(frozen=True)
class FixedTerm:
    """One fixed-effect column.

    Attributes:
        name: Coefficient name (e.g. 'level_AB', 'level_AB:complexity').
        factors: Covariate names whose product forms the column. The
            empty tuple is the intercept.
        group: Structural group id (e.g. 'phase', 'moderator_x_phase').
    """
    name: str
    factors: tuple[str, ...]
    group: str

    @property
    def is_intercept(self) -> bool:
        return len(self.factors) == 0


@dataclass(frozen=True)
class RandomEffect:
    """Random effects at one nesting level.

    Attributes:
        level: 'study', 'cluster' or 'case'.
        terms: Random effect terms; the first is always the intercept
            ('1'), optionally followed by slope covariates.
    """
    level: str
    terms: tuple[str, ...] = ('1',)

    @property
    def n_terms(self) -> int:
        return len(self.terms)

    @property
    def theta_size(self) -> int:
        q = self.n_terms
        return q * (q + 1) // 2


@dataclass(frozen=True)
class CorrelationStructure:
    """Residual correlation within a case.

    Attributes:
        family: 'none' or 'AR1'.
        time: Integer time covariate the AR(1) lags are measured in.
        start: Starting value of the AR(1) coefficient.
    """
    family: str = 'none'
    time: str = 'session'
    start: float = 0.2


@dataclass(frozen=True)
class VarianceStructure:
    """Residual variance heterogeneity.

    Attributes:
        grouping: 'none' or 'phase'.
        start: Starting residual SD ratios (phase → ratio to the reference
            phase). Phases not listed start at 1.
    """
    grouping: str = 'none'
    start: tuple[tuple[str, float], ...] = ()

    def start_ratio(self, phase: str) -> float:
        return dict(self.start).get(phase, 1.0)


@dataclass(frozen=True)
class ModelSpecification:
    """Immutable description of one hierarchical model.

    Attributes:
        name: Label used in summaries and comparisons.
        fixed: Fixed-effect terms, in coefficient order.
        random: Random effects per nesting level, outermost first.
        correlation: Residual correlation structure.
        variance: Residual variance heterogeneity.
    """
    name: str
    fixed: tuple[FixedTerm, ...]
    random: tuple[RandomEffect, ...]
    correlation: CorrelationStructure = field(default_factory=CorrelationStructure)
    variance: VarianceStructure = field(default_factory=VarianceStructure)

    def __post_init__(self):
        if not self.fixed:
            raise SpecificationError(
                "At least one fixed-effect term required",
                reason='invalid_structure',
            )
        names = [t.name for t in self.fixed]
        dupes = sorted({n for n in names if names.count(n) > 1})
        if dupes:
            raise SpecificationError(
                f"Duplicate fixed-effect terms: {dupes}",
                reason='invalid_structure', terms=tuple(dupes),
            )

        levels = [r.level for r in self.random]
        for level in levels:
            if level not in LEVELS:
                raise SpecificationError(
                    f"Unknown nesting level '{level}'. Available: {list(LEVELS)}",
                    reason='invalid_structure', terms=(level,),
                )
        if len(set(levels)) != len(levels):
            raise SpecificationError(
                f"Nesting levels listed more than once: {levels}",
                reason='invalid_structure', terms=tuple(levels),
            )
        if levels != [lv for lv in LEVELS if lv in levels]:
            raise SpecificationError(
                f"Nesting levels must be ordered {list(LEVELS)}, got {levels}",
                reason='invalid_structure', terms=tuple(levels),
            )
        for re in self.random:
            if not re.terms or re.terms[0] != '1':
                raise SpecificationError(
                    f"Random effects at level '{re.level}' must start with "
                    f"an intercept ('1'), got {list(re.terms)}",
                    reason='invalid_structure', terms=re.terms,
                )

        if self.correlation.family not in CORRELATION_FAMILIES:
            raise SpecificationError(
                f"correlation family must be one of {CORRELATION_FAMILIES}, "
                f"got '{self.correlation.family}'",
                reason='invalid_structure',
            )
        if not -1.0 < self.correlation.start < 1.0:
            raise SpecificationError(
                f"AR1 start must lie in (-1, 1), got {self.correlation.start}",
                reason='invalid_structure',
            )
        if self.variance.grouping not in VARIANCE_GROUPINGS:
            raise SpecificationError(
                f"variance grouping must be one of {VARIANCE_GROUPINGS}, "
                f"got '{self.variance.grouping}'",
                reason='invalid_structure',
            )
        for phase, ratio in self.variance.start:
            if ratio <= 0:
                raise SpecificationError(
                    f"Starting SD ratio for phase '{phase}' must be "
                    f"positive, got {ratio}",
                    reason='invalid_structure', terms=(phase,),
                )

    @property
    def coefficient_names(self) -> tuple[str, ...]:
        return tuple(t.name for t in self.fixed)

    @property
    def has_ar1(self) -> bool:
        return self.correlation.family == 'AR1'

    @property
    def heteroscedastic(self) -> bool:
        return self.variance.grouping == 'phase'

    @property
    def groups(self) -> tuple[str, ...]:
        """Structural group ids, in first-appearance order."""
        seen = []
        for term in self.fixed:
            if term.group not in seen:
                seen.append(term.group)
        return tuple(seen)

    def terms_in_group(self, group: str) -> tuple[str, ...]:
        """Names of the fixed-effect terms carrying a structural group id."""
        return tuple(t.name for t in self.fixed if t.group == group)

    def random_effect(self, level: str) -> RandomEffect | None:
        for re in self.random:
            if re.level == level:
                return re
        return None

    def covariates_used(self) -> tuple[str, ...]:
        """Every covariate the specification reads from the dataset."""
        used = []
        for term in self.fixed:
            used.extend(term.factors)
        for re in self.random:
            used.extend(t for t in re.terms if t != '1')
        if self.has_ar1:
            used.append(self.correlation.time)
        return tuple(dict.fromkeys(used))


# =====================================================================
# Builders for the four substantive models
# =====================================================================

def _intercept() -> FixedTerm:
    return FixedTerm(INTERCEPT, (), GROUP_INTERCEPT)


def _random_levels(slope: str | None) -> tuple[RandomEffect, ...]:
    terms = ('1',) if slope is None else ('1', slope)
    return tuple(RandomEffect(level, terms) for level in LEVELS)


def _growth_terms(maintenance: bool) -> list[FixedTerm]:
    terms = [
        FixedTerm(TIME, (TIME,), GROUP_TIME),
        FixedTerm(LEVEL_AB, (LEVEL_AB,), GROUP_PHASE),
        FixedTerm(TREND_AB, (TREND_AB,), GROUP_PHASE),
    ]
    if maintenance:
        terms += [
            FixedTerm(LEVEL_BC, (LEVEL_BC,), GROUP_PHASE),
            FixedTerm(TREND_BC, (TREND_BC,), GROUP_PHASE),
        ]
    return terms


def null_model(name: str = 'null') -> ModelSpecification:
    """Unconditional model: intercept plus random intercepts at each level."""
    return ModelSpecification(
        name=name,
        fixed=(_intercept(),),
        random=_random_levels(None),
    )


def ar1_model(
    name: str = 'ar1',
    *,
    maintenance: bool = False,
    random_slope: bool = True,
    time: str = 'session',
    ar1_start: float = 0.2,
) -> ModelSpecification:
    """Piecewise growth model with AR(1) residuals, homoscedastic.

    Args:
        name: Model label.
        maintenance: Include the BC (intervention → maintenance) level and
            trend terms.
        random_slope: Add a random slope on level_AB at every level.
        time: Integer time covariate for the AR(1) lags.
        ar1_start: Starting AR(1) coefficient.
    """
    return ModelSpecification(
        name=name,
        fixed=(_intercept(), *_growth_terms(maintenance)),
        random=_random_levels(LEVEL_AB if random_slope else None),
        correlation=CorrelationStructure('AR1', time, ar1_start),
    )


def heteroscedastic_model(
    name: str = 'ar1_het',
    *,
    maintenance: bool = False,
    random_slope: bool = True,
    time: str = 'session',
    ar1_start: float = 0.2,
    ratio_start: dict[str, float] | None = None,
) -> ModelSpecification:
    """AR(1) growth model with one residual variance per phase."""
    base = ar1_model(
        name, maintenance=maintenance, random_slope=random_slope,
        time=time, ar1_start=ar1_start,
    )
    return ModelSpecification(
        name=name,
        fixed=base.fixed,
        random=base.random,
        correlation=base.correlation,
        variance=VarianceStructure(
            'phase', tuple(sorted((ratio_start or {}).items()))
        ),
    )


def moderator_model(
    moderators: Sequence[str],
    name: str = 'ar1_het_moderators',
    *,
    maintenance: bool = False,
    random_slope: bool = True,
    interact_with: Sequence[str] = (LEVEL_AB, TREND_AB),
    time: str = 'session',
    ar1_start: float = 0.2,
    ratio_start: dict[str, float] | None = None,
) -> ModelSpecification:
    """Heteroscedastic AR(1) model with moderator main effects and
    moderator-by-phase interactions.

    Args:
        moderators: Moderator indicator covariates (dummy-coded upstream).
        interact_with: Phase terms each moderator is crossed with.
    """
    base = heteroscedastic_model(
        name, maintenance=maintenance, random_slope=random_slope,
        time=time, ar1_start=ar1_start, ratio_start=ratio_start,
    )
    fixed = list(base.fixed)
    for mod in moderators:
        fixed.append(FixedTerm(mod, (mod,), GROUP_MODERATOR))
    for phase_term in interact_with:
        for mod in moderators:
            fixed.append(FixedTerm(
                f'{phase_term}:{mod}', (phase_term, mod),
                GROUP_MODERATOR_X_PHASE,
            ))
    return ModelSpecification(
        name=name,
        fixed=tuple(fixed),
        random=base.random,
        correlation=base.correlation,
        variance=base.variance,
    )
