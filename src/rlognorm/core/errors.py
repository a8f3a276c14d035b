"""
Error taxonomy for the regularized-log transform.

Three failure classes, none retried internally:

    InvalidInputError            shape, id or positivity precondition violated
    DispersionNotEstimableError  data carries no usable dispersion signal
    ConvergenceError             a per-gene GLM fit failed in IRLS and in the refit

The transform is all-or-nothing: any of these aborts the call and no partial
matrix is returned.
"""

from __future__ import annotations

from typing import Optional

__all__ = [
    'RlogError',
    'InvalidInputError',
    'DispersionNotEstimableError',
    'ConvergenceError',
]


class RlogError(Exception):
    """Base class for all rlognorm failures."""
    pass


class InvalidInputError(RlogError, ValueError):
    """Raised when counts or size factors violate a precondition."""
    pass


class DispersionNotEstimableError(RlogError):
    """Raised when too few samples or too little variation to fit dispersions."""
    pass


class ConvergenceError(RlogError):
    """
    Raised when the ridge NB GLM for a gene does not converge.

    Attributes:
        gene_index: Row index of the offending gene in the input matrix
        feature_id: Gene identifier, when known
        iterations: IRLS iterations performed, plus refit iterations if any
    """

    def __init__(
        self,
        gene_index: int,
        iterations: int,
        feature_id: Optional[str] = None,
    ):
        self.gene_index = gene_index
        self.iterations = iterations
        self.feature_id = feature_id
        label = f"gene {gene_index}"
        if feature_id is not None:
            label += f" ({feature_id})"
        super().__init__(
            f"NB GLM fit did not converge for {label} after {iterations} iterations"
        )
