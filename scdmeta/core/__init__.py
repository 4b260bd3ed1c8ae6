"""
Core infrastructure for scdmeta.

Shared abstractions used by the hierarchical model engine.

Key components:
    result: Generic Result[P] envelope
    exceptions: Exception hierarchy
    validation: Input validators
    compute.timing: Section timer for fit diagnostics
"""

from scdmeta.core.result import Result
from scdmeta.core.exceptions import (
    ScdMetaError,
    ValidationError,
    DimensionError,
    SpecificationError,
    NumericalError,
    NotPositiveDefiniteError,
)

__all__ = [
    # Result
    "Result",
    # Exceptions
    "ScdMetaError",
    "ValidationError",
    "DimensionError",
    "SpecificationError",
    "NumericalError",
    "NotPositiveDefiniteError",
]
