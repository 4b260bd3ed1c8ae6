"""
Input validation utilities for scdmeta.

These validators follow the "fail fast, fail loud" principle. They raise
immediately with clear error messages rather than silently correcting
or making assumptions about user intent.

Design principles:
    - No silent type coercion (except np.asarray on array-likes)
    - Clear, actionable error messages with actual values
    - Each function validates ONE thing
    - Parameter names included in all error messages
"""

import numpy as np
from numpy.typing import ArrayLike, NDArray
from typing import Any, Sequence

from scdmeta.core.exceptions import (
    ValidationError, DimensionError, SpecificationError,
)


def check_array(
    array: ArrayLike,
    name: str,
) -> NDArray[np.floating[Any]]:
    """
    Validate and convert input to a float64 numpy array.

    Rejects inputs that result in object or non-numeric dtype.

    Args:
        array: Input to validate
        name: Parameter name for error messages

    Returns:
        numpy.ndarray with float64 dtype

    Raises:
        ValidationError: If input cannot be converted to numeric array
    """
    try:
        result = np.asarray(array)
    except (ValueError, TypeError) as e:
        raise ValidationError(f"{name}: cannot convert to array: {e}") from e

    if result.dtype == object:
        raise ValidationError(
            f"{name}: converted to object dtype, indicating mixed types or non-numeric data"
        )

    if not np.issubdtype(result.dtype, np.number) and result.dtype != bool:
        raise ValidationError(
            f"{name}: non-numeric dtype {result.dtype}, expected numeric data"
        )

    return result.astype(np.float64)


def check_finite(array: NDArray[np.floating[Any]], name: str) -> None:
    """
    Verify array contains no NaN or Inf values.

    Raises:
        ValidationError: If array contains non-finite values
    """
    if not np.all(np.isfinite(array)):
        n_nan = int(np.sum(np.isnan(array)))
        n_inf = int(np.sum(np.isinf(array)))
        raise ValidationError(
            f"{name}: contains non-finite values ({n_nan} NaN, {n_inf} Inf)"
        )


def check_1d(array: NDArray, name: str) -> None:
    """
    Verify array is 1-dimensional.

    Raises:
        DimensionError: If array is not 1D
    """
    if array.ndim != 1:
        raise DimensionError(
            f"{name}: expected 1D array, got {array.ndim}D with shape {array.shape}"
        )


def check_consistent_length(
    *arrays: NDArray,
    names: tuple[str, ...]
) -> None:
    """
    Verify all arrays have the same length (first dimension).

    Raises:
        ValueError: If number of names doesn't match number of arrays
        DimensionError: If arrays have inconsistent lengths
    """
    if len(arrays) != len(names):
        raise ValueError(
            f"Number of arrays ({len(arrays)}) must match number of names ({len(names)})"
        )

    if len(arrays) < 2:
        return

    lengths = [arr.shape[0] for arr in arrays]
    if len(set(lengths)) > 1:
        details = ", ".join(f"{name}={length}" for name, length in zip(names, lengths))
        raise DimensionError(f"Inconsistent lengths: {details}")


def check_min_samples(array: NDArray, min_samples: int, name: str) -> None:
    """
    Verify array has at least the minimum number of samples.

    Raises:
        ValidationError: If array has fewer than min_samples
    """
    n = array.shape[0]
    if n < min_samples:
        raise ValidationError(
            f"{name}: requires at least {min_samples} samples, got {n}"
        )


def check_column_rank(
    X: NDArray[np.floating[Any]],
    column_names: Sequence[str],
) -> None:
    """
    Verify a fixed-effects matrix has full column rank.

    Constant non-intercept columns next to an intercept (e.g. a moderator
    that never varies in the data) and exact linear dependencies are both
    reported, with the offending term names, as a specification error.

    Args:
        X: (n, p) fixed-effects matrix
        column_names: One name per column of X

    Raises:
        SpecificationError: If X is rank-deficient
    """
    n, p = X.shape
    if n <= p:
        raise SpecificationError(
            f"Fixed effects: {p} terms but only {n} observations",
            reason='rank_deficient',
            terms=tuple(column_names),
        )

    # A constant column is only redundant next to an intercept; without one
    # it is left to the rank check
    has_intercept = any(np.all(X[:, j] == 1.0) for j in range(p))
    constant = [
        column_names[j] for j in range(p)
        if has_intercept and np.ptp(X[:, j]) == 0 and not np.all(X[:, j] == 1.0)
    ]
    if constant:
        raise SpecificationError(
            f"Fixed effects: terms {constant} have no variation in the data",
            reason='rank_deficient',
            terms=tuple(constant),
        )

    rank = np.linalg.matrix_rank(X)
    if rank < p:
        # Report the columns that add nothing to the span of the earlier ones
        redundant = []
        kept = np.empty((n, 0))
        for j in range(p):
            trial = np.column_stack([kept, X[:, j]])
            if np.linalg.matrix_rank(trial) > kept.shape[1]:
                kept = trial
            else:
                redundant.append(column_names[j])
        raise SpecificationError(
            f"Fixed effects: rank-deficient (rank={rank}, expected={p}); "
            f"terms {redundant} are linear combinations of earlier terms",
            reason='rank_deficient',
            terms=tuple(redundant),
        )
