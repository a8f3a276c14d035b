"""
rlognorm - Regularized-log normalization for RNA-seq counts

Transforms a genes × samples count matrix to the log2 scale, shrinking the
noisy sample-to-sample differences of low-count genes with a ridge-penalized
negative binomial fit. Genes without reads are zero-filled.
"""

__version__ = "0.1.0"

from rlognorm.config import RlogConfig
from rlognorm.core.biomatrix import BioMatrix
from rlognorm.core.errors import (
    ConvergenceError,
    DispersionNotEstimableError,
    InvalidInputError,
    RlogError,
)
from rlognorm.core.quality import QualityFlag
from rlognorm.core.transform import Transform
from rlognorm.stats.rlog import RlogResult, RlogTransform, normalize, rlog

__all__ = [
    "BioMatrix",
    "Transform",
    "QualityFlag",
    "RlogConfig",
    "RlogResult",
    "RlogTransform",
    "normalize",
    "rlog",
    "RlogError",
    "InvalidInputError",
    "DispersionNotEstimableError",
    "ConvergenceError",
]
