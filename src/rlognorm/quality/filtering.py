"""
Count-based gene filtering for RNA-seq matrices.

Genes with no reads in any sample carry no information for normalization and
are usually dropped once, right after loading, before any downstream step.
Implements the Transform interface for composable pipelines.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Set

import numpy as np

from rlognorm.core.biomatrix import BioMatrix
from rlognorm.core.transform import Transform

logger = logging.getLogger(__name__)

__all__ = ['ZeroCountFilter', 'CountFilterResult']


@dataclass
class CountFilterResult:
    """Genes passing / failing a count filter, with the parameters used."""
    passed_genes: Set[str]
    failed_genes: Set[str]
    parameters: Dict[str, Any] = field(default_factory=dict)

    @property
    def n_passed(self) -> int:
        return len(self.passed_genes)

    @property
    def n_failed(self) -> int:
        return len(self.failed_genes)

    @property
    def pass_rate(self) -> float:
        total = self.n_passed + self.n_failed
        return self.n_passed / total if total > 0 else 0.0


class ZeroCountFilter(Transform):
    """
    Drop genes whose total raw count across samples is below ``min_total``.

    With the default ``min_total=1`` exactly the all-zero genes are removed.

    Params:
        min_total: Minimum summed count for a gene to be kept.

    Examples:
        >>> filtered = ZeroCountFilter().apply(matrix)
        >>> bool((filtered.data.sum(axis=1) > 0).all())
        True
    """

    def __init__(self, min_total: float = 1):
        if min_total < 0:
            raise ValueError(f"min_total must be non-negative, got {min_total}")
        super().__init__(name="ZeroCountFilter", params={"min_total": min_total})
        self.min_total = min_total

    def keep_mask(self, matrix: BioMatrix) -> np.ndarray:
        """Boolean mask of genes that pass the filter."""
        return matrix.data.sum(axis=1) >= self.min_total

    def apply(self, matrix: BioMatrix) -> BioMatrix:
        errors = self.validate(matrix)
        if errors:
            raise ValueError("Cannot apply ZeroCountFilter: " + "; ".join(errors))

        keep = self.keep_mask(matrix)
        n_kept = int(keep.sum())
        logger.info(
            f"ZeroCountFilter(min_total={self.min_total}): kept {n_kept}/{matrix.n_features} genes, "
            f"removed {matrix.n_features - n_kept}"
        )
        return matrix.select_features(keep)

    def get_passing_genes(self, matrix: BioMatrix) -> CountFilterResult:
        """Gene sets passing the filter, without subsetting the matrix."""
        keep = self.keep_mask(matrix)
        return CountFilterResult(
            passed_genes=set(matrix.feature_ids[keep]),
            failed_genes=set(matrix.feature_ids[~keep]),
            parameters=dict(self.params),
        )

    def validate(self, matrix: BioMatrix) -> list[str]:
        errors = super().validate(matrix)
        if matrix.data.size and np.any(matrix.data < 0):
            errors.append("Counts must be non-negative")
        return errors
