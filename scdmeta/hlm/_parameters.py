"""
Tagged layout of the optimizer's internal variance parameter vector θ.

θ is unconstrained in ℝ^m. It is split into named blocks whose offsets are
fixed by the model specification:

    <level>         log-Cholesky factor of the level's random-effect
                    covariance G = L Lᵀ: elements of L in row-major lower
                    order, with the diagonal stored as log(L_ii)
    ar1             atanh(φ) of the AR(1) coefficient φ ∈ (-1, 1)
    variance_ratio  log(δ_p) of the residual SD ratio of each
                    non-reference phase (reference phase δ = 1)
    sigma           log(σ) of the residual SD in the reference phase

unpack() maps θ to natural-scale quantities and pack() is its exact
inverse, so no consumer ever indexes θ by position.
"""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np
from numpy.typing import NDArray

from scdmeta.hlm.specification import ModelSpecification

LOG_CHOLESKY = 'log_cholesky'
AR1 = 'ar1'
LOG_RATIO = 'log_ratio'
LOG_SIGMA = 'log_sigma'


@dataclass(frozen=True)
class ParameterBlock:
    """A named contiguous block of θ.

    Attributes:
        name: Block name ('study', 'cluster', 'case', 'ar1',
            'variance_ratio', 'sigma').
        kind: Transform family of the block.
        offset: Index of the first element in θ.
        labels: One label per element.
        terms: Random effect terms (log-Cholesky blocks) or phases
            (variance-ratio block) the block describes.
    """
    name: str
    kind: str
    offset: int
    labels: tuple[str, ...]
    terms: tuple[str, ...] = ()

    @property
    def size(self) -> int:
        return len(self.labels)

    @property
    def slice(self) -> slice:
        return slice(self.offset, self.offset + self.size)


@dataclass(frozen=True)
class NaturalParameters:
    """Variance parameters on their natural scale.

    Attributes:
        covariances: Level → random-effect covariance matrix G (q × q).
        residual_variance: σ², residual variance of the reference phase.
        ar1: AR(1) coefficient, or None without AR(1).
        sd_ratios: Phase → residual SD ratio to the reference phase
            (empty when homoscedastic).
    """
    covariances: dict[str, NDArray]
    residual_variance: float
    ar1: float | None = None
    sd_ratios: dict[str, float] | None = None

    def phase_variances(self) -> dict[str, float]:
        """Residual variance per phase (empty when homoscedastic)."""
        return {
            p: self.residual_variance * r ** 2
            for p, r in (self.sd_ratios or {}).items()
        }


def _cholesky_labels(level: str, terms: tuple[str, ...]) -> tuple[str, ...]:
    names = ['(Intercept)' if t == '1' else t for t in terms]
    labels = []
    for row in range(len(terms)):
        for col in range(row + 1):
            if row == col:
                labels.append(f'{level}:log_sd({names[row]})')
            else:
                labels.append(f'{level}:chol({names[row]},{names[col]})')
    return tuple(labels)


@dataclass(frozen=True)
class ThetaLayout:
    """Named-offset layout of θ for one model specification.

    Attributes:
        blocks: Parameter blocks in θ order.
        phases: Phases with their own residual variance, reference first
            (empty when homoscedastic).
    """
    blocks: tuple[ParameterBlock, ...]
    phases: tuple[str, ...] = ()

    @staticmethod
    def for_specification(
        spec: ModelSpecification,
        phase_levels: tuple[str, ...] = (),
    ) -> 'ThetaLayout':
        """Build the layout implied by a specification.

        Args:
            spec: Model specification.
            phase_levels: Phases present in the data, in declared order.
                Used only when the specification is heteroscedastic.
        """
        blocks = []
        offset = 0
        for re in spec.random:
            labels = _cholesky_labels(re.level, re.terms)
            blocks.append(ParameterBlock(
                re.level, LOG_CHOLESKY, offset, labels, re.terms,
            ))
            offset += len(labels)

        if spec.has_ar1:
            blocks.append(ParameterBlock(AR1, AR1, offset, ('atanh(phi)',)))
            offset += 1

        phases = ()
        if spec.heteroscedastic and len(phase_levels) > 1:
            phases = tuple(phase_levels)
            others = phases[1:]
            blocks.append(ParameterBlock(
                'variance_ratio', LOG_RATIO, offset,
                tuple(f'log_ratio({p})' for p in others), others,
            ))
            offset += len(others)

        blocks.append(ParameterBlock('sigma', LOG_SIGMA, offset, ('log_sigma',)))
        return ThetaLayout(blocks=tuple(blocks), phases=phases)

    # --- Structure ---

    @property
    def size(self) -> int:
        return sum(b.size for b in self.blocks)

    @property
    def labels(self) -> tuple[str, ...]:
        return tuple(label for b in self.blocks for label in b.labels)

    @property
    def levels(self) -> tuple[str, ...]:
        return tuple(b.name for b in self.blocks if b.kind == LOG_CHOLESKY)

    def has_block(self, name: str) -> bool:
        return any(b.name == name for b in self.blocks)

    def block(self, name: str) -> ParameterBlock:
        for b in self.blocks:
            if b.name == name:
                return b
        raise KeyError(
            f"No parameter block '{name}'. "
            f"Available: {[b.name for b in self.blocks]}"
        )

    # --- θ → natural scale ---

    def cholesky(self, theta: NDArray, level: str) -> NDArray:
        """Lower-triangular factor L of G for one level."""
        block = self.block(level)
        theta_k = theta[block.slice]
        q = len(block.terms)
        L = np.zeros((q, q), dtype=np.float64)
        idx = 0
        for row in range(q):
            for col in range(row + 1):
                if row == col:
                    L[row, col] = np.exp(theta_k[idx])
                else:
                    L[row, col] = theta_k[idx]
                idx += 1
        return L

    def covariance(self, theta: NDArray, level: str) -> NDArray:
        """Random-effect covariance G = L Lᵀ for one level."""
        L = self.cholesky(theta, level)
        return L @ L.T

    def ar1(self, theta: NDArray) -> float | None:
        if not self.has_block(AR1):
            return None
        return float(np.tanh(theta[self.block(AR1).offset]))

    def sigma(self, theta: NDArray) -> float:
        return float(np.exp(theta[self.block('sigma').offset]))

    def sd_ratios(self, theta: NDArray) -> dict[str, float]:
        """Phase → residual SD ratio (reference phase is 1)."""
        if not self.phases:
            return {}
        block = self.block('variance_ratio')
        ratios = {self.phases[0]: 1.0}
        for phase, value in zip(block.terms, theta[block.slice]):
            ratios[phase] = float(np.exp(value))
        return ratios

    def unpack(self, theta: NDArray) -> NaturalParameters:
        theta = np.asarray(theta, dtype=np.float64)
        return NaturalParameters(
            covariances={lv: self.covariance(theta, lv) for lv in self.levels},
            residual_variance=self.sigma(theta) ** 2,
            ar1=self.ar1(theta),
            sd_ratios=self.sd_ratios(theta) or None,
        )

    # --- natural scale → θ ---

    def pack(self, natural: NaturalParameters) -> NDArray:
        theta = np.zeros(self.size, dtype=np.float64)
        for block in self.blocks:
            if block.kind == LOG_CHOLESKY:
                G = np.asarray(natural.covariances[block.name], dtype=np.float64)
                L = np.linalg.cholesky(G)
                idx = block.offset
                for row in range(L.shape[0]):
                    for col in range(row + 1):
                        theta[idx] = np.log(L[row, col]) if row == col else L[row, col]
                        idx += 1
            elif block.kind == AR1:
                theta[block.offset] = np.arctanh(natural.ar1)
            elif block.kind == LOG_RATIO:
                for i, phase in enumerate(block.terms):
                    theta[block.offset + i] = np.log(natural.sd_ratios[phase])
            else:
                theta[block.offset] = 0.5 * np.log(natural.residual_variance)
        return theta

    def start(
        self,
        spec: ModelSpecification,
        total_variance: float,
    ) -> NDArray:
        """Starting θ.

        The residual and the random intercepts share total_variance
        equally; random slopes start at a tenth of an intercept SD with no
        correlation. The AR(1) value and SD ratios come from the
        specification.
        """
        n_parts = len(self.levels) + 1
        sd = np.sqrt(max(total_variance, 1e-8) / n_parts)
        covariances = {}
        for block in self.blocks:
            if block.kind == LOG_CHOLESKY:
                q = len(block.terms)
                diag = np.full(q, (0.1 * sd) ** 2)
                diag[0] = sd ** 2
                covariances[block.name] = np.diag(diag)
        ratios = None
        if self.phases:
            ratios = {p: spec.variance.start_ratio(p) for p in self.phases}
            ratios[self.phases[0]] = 1.0
        natural = NaturalParameters(
            covariances=covariances,
            residual_variance=sd ** 2,
            ar1=spec.correlation.start if self.has_block(AR1) else None,
            sd_ratios=ratios,
        )
        return self.pack(natural)
