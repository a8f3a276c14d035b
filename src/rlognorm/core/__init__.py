"""
Core data structures for count-matrix normalization.

1. BioMatrix: Count matrix with sample metadata and provenance flags
2. QualityFlag: Bitwise flags recording how each value was produced
3. Transform: Abstract base class for immutable matrix transformations
4. CountInput / as_count_input: one-shot resolution of the accepted input kinds
5. Error taxonomy: InvalidInputError, DispersionNotEstimableError, ConvergenceError
"""

from rlognorm.core.biomatrix import BioMatrix
from rlognorm.core.errors import (
    ConvergenceError,
    DispersionNotEstimableError,
    InvalidInputError,
    RlogError,
)
from rlognorm.core.inputs import CountInput, InputKind, as_count_input
from rlognorm.core.quality import QualityFlag
from rlognorm.core.transform import Transform

__all__ = [
    'BioMatrix',
    'QualityFlag',
    'Transform',
    'CountInput',
    'InputKind',
    'as_count_input',
    'RlogError',
    'InvalidInputError',
    'DispersionNotEstimableError',
    'ConvergenceError',
]
