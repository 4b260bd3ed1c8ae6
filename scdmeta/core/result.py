"""
Generic result container for scdmeta computations.

Every fitted model is stored in a Result envelope: the payload holds the
numbers, while info / timing / warnings hold what happened while
producing them. Downstream components (variance extraction, robust
inference, diagnostics) only ever read from it.

Design decisions:
    - Generic over parameter payload P
    - info dict for flexible metadata (convergence reason, iterations)
    - timing is optional (don't burden unit tests)
    - Immutable (frozen=True) so a fit can be shared between consumers
"""

from dataclasses import dataclass, field
from typing import TypeVar, Generic, Any

P = TypeVar('P')  # Parameter payload type


@dataclass(frozen=True)
class Result(Generic[P]):
    """
    Immutable result envelope.

    Type Parameters:
        P: The domain-specific parameter payload type

    Attributes:
        params: Domain-specific parameters (coefficients, estimates, etc.)
        info: Structured metadata (method, convergence, diagnostics)
        timing: Execution timing breakdown, or None if not measured
        backend_name: Identifier of the routine that produced this result
        warnings: Non-fatal issues encountered during computation

    Examples:
        >>> Result(
        ...     params=HLMParams(...),
        ...     info={'method': 'REML', 'converged': True, 'n_iter': 3},
        ...     timing={'total_seconds': 0.5, 'optimization': 0.4},
        ...     backend_name='cpu_reml',
        ... )
    """
    params: P
    info: dict[str, Any]
    timing: dict[str, float] | None
    backend_name: str
    warnings: tuple[str, ...] = field(default_factory=tuple)

    def has_warning(self, substring: str) -> bool:
        """Check if any warning contains the given substring."""
        return any(substring in w for w in self.warnings)
