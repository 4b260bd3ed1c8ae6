"""
Exception hierarchy for scdmeta.

All exceptions inherit from ScdMetaError so callers can catch any
library-specific error in one place.

Design principles:
    - Exceptions carry diagnostic information as attributes
    - Error messages name the offending input and its actual value
    - Convergence and reliability problems are reported in results,
      not raised; only problems that make a fit impossible are raised
"""


class ScdMetaError(Exception):
    """Base exception for all scdmeta errors."""
    pass


class ValidationError(ScdMetaError):
    """
    Input validation failed.

    Raised when the observation table handed to the engine is malformed:
    non-finite outcomes, unknown phase labels, duplicate sessions.
    """
    pass


class DimensionError(ValidationError):
    """
    Array lengths are inconsistent.

    Raised when the identifier, outcome and covariate columns of a
    dataset do not all have the same number of rows.
    """
    pass


class SpecificationError(ScdMetaError):
    """
    A model specification cannot be estimated on the given dataset.

    Raised while building the design, before any optimization starts.

    Attributes:
        reason: Machine-readable reason code, one of
            'rank_deficient', 'unknown_covariate', 'non_integer_time',
            'invalid_structure'.
        terms: Names of the offending terms or covariates, if any.
    """

    def __init__(
        self,
        message: str,
        reason: str,
        terms: tuple[str, ...] = (),
    ):
        super().__init__(message)
        self.reason = reason
        self.terms = tuple(terms)


class NumericalError(ScdMetaError):
    """
    Numerical computation failed.

    Base class for errors arising from numerical issues during computation.
    """
    pass


class NotPositiveDefiniteError(NumericalError):
    """
    Matrix is not positive definite.

    Raised when a marginal covariance block is not positive definite at
    the starting values or the final estimates of a fit.

    Attributes:
        matrix_name: Name/description of the problematic matrix
        min_eigenvalue: Minimum eigenvalue, if computed
    """

    def __init__(
        self,
        message: str,
        matrix_name: str | None = None,
        min_eigenvalue: float | None = None
    ):
        super().__init__(message)
        self.matrix_name = matrix_name
        self.min_eigenvalue = min_eigenvalue
