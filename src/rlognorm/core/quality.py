"""
Quality flag system for tracking how each output value was produced.

Every value of a transformed count matrix carries a bitwise flag recording
whether it came out of the shrinkage fit or was filled in directly. This lets
downstream code answer "which rows were zero-filled?" without re-deriving the
all-zero mask from the raw counts.

Engineering Design:
    IntFlag enables efficient bitwise operations:
    - Multiple flags per value: RLOG_TRANSFORMED | ZERO_FILLED
    - Fast bitwise checks: if flags & QualityFlag.ZERO_FILLED
    - Memory efficient: single int per value

Examples:
    >>> from rlognorm.core.quality import QualityFlag
    >>> import numpy as np
    >>>
    >>> flags = np.array([0, 1, 3], dtype=np.uint32)
    >>> n_zero_filled = np.sum(flags & QualityFlag.ZERO_FILLED != 0)
"""

from __future__ import annotations

from enum import IntFlag

__all__ = ['QualityFlag']


class QualityFlag(IntFlag):
    """
    Bitwise flags for per-value provenance in count matrices.

    Attributes:
        ORIGINAL: Untouched raw count (0)
        RLOG_TRANSFORMED: Value produced by the regularized-log transform (1)
        ZERO_FILLED: Gene had zero counts in every sample; value set to 0 (2)

    Examples:
        >>> flag = QualityFlag.RLOG_TRANSFORMED | QualityFlag.ZERO_FILLED
        >>> bool(flag & QualityFlag.ZERO_FILLED)
        True
    """

    ORIGINAL = 0
    RLOG_TRANSFORMED = 1
    ZERO_FILLED = 2

    @classmethod
    def describe(cls, flag: int) -> list[str]:
        """
        Human-readable names of the flags set in ``flag``.

        Examples:
            >>> QualityFlag.describe(3)
            ['RLOG_TRANSFORMED', 'ZERO_FILLED']
        """
        if flag == 0:
            return ['ORIGINAL']
        return [member.name for member in cls if member.value and flag & member.value]
