"""
Input resolution for count matrices.

Callers hand the normalizer either a plain matrix (``numpy.ndarray`` or
``pandas.DataFrame``) or a structured experiment (``BioMatrix``, which may
carry size factors in its sample metadata). ``as_count_input`` inspects the
object once, validates it, and returns a ``CountInput`` tagged with its kind.
Everything downstream works on the resolved arrays and only looks at the tag
again when shaping the output.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Union

import numpy as np
import pandas as pd

from rlognorm.core.biomatrix import BioMatrix
from rlognorm.core.errors import InvalidInputError

__all__ = ['InputKind', 'CountInput', 'as_count_input', 'validate_size_factors']

CountsLike = Union[np.ndarray, pd.DataFrame, BioMatrix]


class InputKind(Enum):
    """Kinds of count input accepted by the normalizer."""

    MATRIX = "matrix"
    EXPERIMENT = "experiment"


@dataclass(frozen=True)
class CountInput:
    """
    Validated counts ready for normalization.

    Attributes:
        kind: MATRIX for ndarray/DataFrame input, EXPERIMENT for BioMatrix
        counts: Integer-valued float64 array (genes × samples), a private copy
        feature_ids: Gene identifiers (positional ints for bare arrays)
        sample_ids: Sample identifiers (positional ints for bare arrays)
        size_factors: Validated size factors, or None if none were supplied
    """

    kind: InputKind
    counts: np.ndarray
    feature_ids: pd.Index
    sample_ids: pd.Index
    size_factors: Optional[np.ndarray]


def as_count_input(
    counts: CountsLike,
    size_factors: Optional[np.ndarray] = None,
) -> CountInput:
    """
    Resolve and validate a count matrix of any supported kind.

    Explicit ``size_factors`` take precedence over a ``sizeFactor`` column of
    a BioMatrix.

    Raises:
        InvalidInputError: On unsupported type, empty or non-2D matrix,
            negative/non-integer/non-finite counts, duplicate ids, or
            invalid size factors.
    """
    if isinstance(counts, BioMatrix):
        kind = InputKind.EXPERIMENT
        values = counts.data
        feature_ids = counts.feature_ids
        sample_ids = counts.sample_ids
        if size_factors is None:
            size_factors = counts.size_factors
    elif isinstance(counts, pd.DataFrame):
        kind = InputKind.MATRIX
        try:
            values = counts.to_numpy(dtype=np.float64)
        except (TypeError, ValueError) as e:
            raise InvalidInputError(f"counts must be numeric: {e}") from e
        feature_ids = counts.index
        sample_ids = counts.columns
    elif isinstance(counts, np.ndarray):
        kind = InputKind.MATRIX
        values = counts
        if values.ndim == 2:
            feature_ids = pd.RangeIndex(values.shape[0])
            sample_ids = pd.RangeIndex(values.shape[1])
        else:
            feature_ids = sample_ids = pd.RangeIndex(0)
    else:
        raise InvalidInputError(
            f"counts must be numpy.ndarray, pandas.DataFrame or BioMatrix, got {type(counts).__name__}"
        )

    values = _validate_counts(values)

    if not feature_ids.is_unique:
        raise InvalidInputError("gene identifiers must be unique")
    if not sample_ids.is_unique:
        raise InvalidInputError("sample identifiers must be unique")

    if size_factors is not None:
        size_factors = validate_size_factors(size_factors, values.shape[1])

    return CountInput(
        kind=kind,
        counts=values,
        feature_ids=feature_ids,
        sample_ids=sample_ids,
        size_factors=size_factors,
    )


def _validate_counts(values: np.ndarray) -> np.ndarray:
    if values.ndim != 2:
        raise InvalidInputError(f"counts must be 2D (genes × samples), got shape {values.shape}")
    if values.shape[0] < 1:
        raise InvalidInputError("counts must have at least one row (gene)")
    if values.shape[1] < 1:
        raise InvalidInputError("counts must have at least one column (sample)")
    if not np.issubdtype(values.dtype, np.number) or np.issubdtype(values.dtype, np.complexfloating):
        raise InvalidInputError(f"counts must be real numeric, got dtype {values.dtype}")

    values = np.array(values, dtype=np.float64, copy=True)

    if not np.all(np.isfinite(values)):
        raise InvalidInputError("counts must be finite (no NaN or infinity)")
    if np.any(values < 0):
        raise InvalidInputError("counts must be non-negative")
    if np.any(values != np.round(values)):
        raise InvalidInputError("counts must be integers")

    return values


def validate_size_factors(size_factors: np.ndarray, n_samples: int) -> np.ndarray:
    """
    Check that size factors are one finite positive value per sample.

    Returns:
        A float64 copy of the size factors

    Raises:
        InvalidInputError: On length mismatch or non-finite/non-positive values
    """
    try:
        sf = np.array(size_factors, dtype=np.float64, copy=True).ravel()
    except (TypeError, ValueError) as e:
        raise InvalidInputError(f"size_factors must be numeric: {e}") from e
    if sf.size != n_samples:
        raise InvalidInputError(
            f"size_factors length ({sf.size}) must equal number of samples ({n_samples})"
        )
    if not np.all(np.isfinite(sf)):
        raise InvalidInputError("size_factors must be finite")
    if np.any(sf <= 0):
        raise InvalidInputError("size_factors must be positive")
    return sf
