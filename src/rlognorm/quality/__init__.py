"""
Quality control for RNA-seq count matrices.

Components:
    ZeroCountFilter: Drop genes without reads before normalization
"""

from rlognorm.quality.filtering import CountFilterResult, ZeroCountFilter

__all__ = [
    'ZeroCountFilter',
    'CountFilterResult',
]
