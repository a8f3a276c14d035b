"""
Base transformation framework for immutable count-matrix operations.

Count processing is a chain of pure steps (drop unexpressed genes, estimate
size factors, transform to log scale). Each step takes a BioMatrix and returns
a new one; the input is never modified.

Examples:
    >>> from rlognorm.quality.filtering import ZeroCountFilter
    >>> from rlognorm.stats.rlog import RlogTransform
    >>>
    >>> steps = [ZeroCountFilter(), RlogTransform()]
    >>> result = matrix
    >>> for step in steps:
    ...     result = step.apply(result)
    >>> print(" -> ".join(str(s) for s in steps))
    ZeroCountFilter(min_total=1) -> RlogTransform(fit_type=parametric, ...)
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, TYPE_CHECKING

if TYPE_CHECKING:
    from rlognorm.core.biomatrix import BioMatrix

__all__ = ['Transform']


class Transform(ABC):
    """
    Abstract base class for all matrix transformations.

    Transformations take a matrix and parameters and return a new matrix.
    The input matrix is never modified.

    Attributes:
        name: Human-readable transformation name (e.g., "RlogTransform")
        params: Parameters used for this transformation (JSON-serializable)
        timestamp: When this transform instance was created
    """

    def __init__(self, name: str, params: dict[str, Any]) -> None:
        self.name = name
        self.params = params
        self.timestamp = datetime.now()

    @abstractmethod
    def apply(self, matrix: BioMatrix) -> BioMatrix:
        """
        Execute transformation and return a new matrix.

        Must never modify the input matrix.

        Raises:
            ValueError: If the transformation cannot be applied
        """
        pass

    def validate(self, matrix: BioMatrix) -> list[str]:
        """
        Check preconditions before applying the transformation.

        Subclasses should override and call super().validate() first.

        Returns:
            List of error messages (empty list = valid)
        """
        errors: list[str] = []

        if matrix.data.size == 0:
            errors.append("Cannot process empty matrix")

        return errors

    def __repr__(self) -> str:
        params_str = ", ".join(f"{k}={v}" for k, v in self.params.items())
        return f"{self.name}({params_str})"
