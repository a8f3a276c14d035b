"""
Core data structure for RNA-seq count matrices.

BioMatrix unifies the numerical counts with biological metadata (sample
annotations, size factors) and per-value provenance (which values came out of
the shrinkage fit, which were zero-filled).

Biological Context:
    Count matrices are the fundamental data structure of RNA-seq analysis:
    - Rows = genes
    - Columns = samples (libraries)
    - Values = read counts, or log2-scale expression after transformation

    Unlike generic dataframes, count matrices require:
    - Tight coupling between data and sample annotations (size factors live
      alongside the phenotype columns)
    - Provenance tracking for reproducibility
    - Subsetting that keeps every annotation aligned
    - Immutability, so a transform never alters its input

Engineering Design:
    - Immutable: Operations return new instances (functional style)
    - NumPy arrays for data, Pandas for ids and metadata
    - Validated: Constructor checks shape and index consistency

Examples:
    >>> import numpy as np
    >>> import pandas as pd
    >>> from rlognorm.core.biomatrix import BioMatrix
    >>>
    >>> data = np.array([[0, 0, 0], [10, 20, 40]])
    >>> sample_ids = pd.Index(["S1", "S2", "S3"])
    >>> matrix = BioMatrix(
    ...     data=data,
    ...     feature_ids=pd.Index(["ENSG001", "ENSG002"]),
    ...     sample_ids=sample_ids,
    ...     sample_metadata=pd.DataFrame({'sizeFactor': [1.0, 1.0, 1.0]}, index=sample_ids),
    ... )
    >>> matrix.size_factors
    array([1., 1., 1.])
"""

from __future__ import annotations

from typing import Optional

import numpy as np
import pandas as pd

from rlognorm.core.quality import QualityFlag

__all__ = ['BioMatrix', 'SIZE_FACTOR_COLUMN']

#: Sample metadata column holding per-sample size factors.
SIZE_FACTOR_COLUMN = 'sizeFactor'


class BioMatrix:
    """
    Immutable container for count matrix + sample metadata + quality flags.

    Attributes:
        data: Count (or transformed) matrix (genes × samples)
        feature_ids: Row identifiers (e.g., Ensembl gene IDs)
        sample_ids: Column identifiers (library / sample names)
        sample_metadata: Sample annotations, optionally with a ``sizeFactor`` column
        quality_flags: Per-value provenance flags

    Shape Invariants:
        - data.shape[0] == len(feature_ids)
        - data.shape[1] == len(sample_ids)
        - quality_flags.shape == data.shape
        - sample_metadata.index equals sample_ids
    """

    def __init__(
        self,
        data: np.ndarray,
        feature_ids: pd.Index,
        sample_ids: pd.Index,
        sample_metadata: Optional[pd.DataFrame] = None,
        quality_flags: Optional[np.ndarray] = None,
    ):
        """
        Initialize BioMatrix with validation.

        Args:
            data: Matrix (genes × samples)
            feature_ids: Row identifiers
            sample_ids: Column identifiers
            sample_metadata: DataFrame indexed by sample_ids. Defaults to an
                empty frame with that index.
            quality_flags: Provenance matrix, same shape as data. Defaults to
                all ``QualityFlag.ORIGINAL``.

        Raises:
            ValueError: If shapes are inconsistent or indices don't match
            TypeError: If data types are incorrect
        """
        if not isinstance(data, np.ndarray):
            raise TypeError(f"data must be np.ndarray, got {type(data)}")
        if not isinstance(feature_ids, pd.Index):
            raise TypeError(f"feature_ids must be pd.Index, got {type(feature_ids)}")
        if not isinstance(sample_ids, pd.Index):
            raise TypeError(f"sample_ids must be pd.Index, got {type(sample_ids)}")

        if sample_metadata is None:
            sample_metadata = pd.DataFrame(index=sample_ids)
        if quality_flags is None:
            quality_flags = np.full(data.shape, QualityFlag.ORIGINAL, dtype=np.uint32)

        if not isinstance(sample_metadata, pd.DataFrame):
            raise TypeError(f"sample_metadata must be pd.DataFrame, got {type(sample_metadata)}")
        if not isinstance(quality_flags, np.ndarray):
            raise TypeError(f"quality_flags must be np.ndarray, got {type(quality_flags)}")

        if data.ndim != 2:
            raise ValueError(f"data must be 2D, got shape {data.shape}")

        n_features, n_samples = data.shape

        if len(feature_ids) != n_features:
            raise ValueError(
                f"feature_ids length ({len(feature_ids)}) must match data rows ({n_features})"
            )
        if len(sample_ids) != n_samples:
            raise ValueError(
                f"sample_ids length ({len(sample_ids)}) must match data columns ({n_samples})"
            )
        if quality_flags.shape != data.shape:
            raise ValueError(
                f"quality_flags shape {quality_flags.shape} must match data shape {data.shape}"
            )
        if not sample_metadata.index.equals(sample_ids):
            raise ValueError(
                "sample_metadata.index must match sample_ids exactly. "
                f"Got {len(sample_metadata.index)} metadata rows for {len(sample_ids)} samples."
            )

        self._data = data
        self._feature_ids = feature_ids
        self._sample_ids = sample_ids
        self._sample_metadata = sample_metadata
        self._quality_flags = quality_flags

    @property
    def data(self) -> np.ndarray:
        """Matrix values (genes × samples)."""
        return self._data

    @property
    def feature_ids(self) -> pd.Index:
        """Row identifiers (genes)."""
        return self._feature_ids

    @property
    def sample_ids(self) -> pd.Index:
        """Column identifiers (samples)."""
        return self._sample_ids

    @property
    def sample_metadata(self) -> pd.DataFrame:
        """Sample annotations."""
        return self._sample_metadata

    @property
    def quality_flags(self) -> np.ndarray:
        """Provenance matrix (same shape as data)."""
        return self._quality_flags

    @property
    def shape(self) -> tuple[int, int]:
        """Matrix dimensions (n_features, n_samples)."""
        return self._data.shape

    @property
    def n_features(self) -> int:
        return self._data.shape[0]

    @property
    def n_samples(self) -> int:
        return self._data.shape[1]

    @property
    def size_factors(self) -> Optional[np.ndarray]:
        """Per-sample size factors from ``sample_metadata['sizeFactor']``, if present."""
        if SIZE_FACTOR_COLUMN not in self._sample_metadata.columns:
            return None
        return self._sample_metadata[SIZE_FACTOR_COLUMN].to_numpy(dtype=np.float64)

    def with_size_factors(self, size_factors: np.ndarray) -> BioMatrix:
        """
        Return a new BioMatrix whose sample metadata carries ``size_factors``.

        The receiver is left untouched.

        Raises:
            ValueError: If the length doesn't match n_samples
        """
        size_factors = np.asarray(size_factors, dtype=np.float64)
        if size_factors.shape != (self.n_samples,):
            raise ValueError(
                f"size_factors length ({size_factors.size}) must match n_samples ({self.n_samples})"
            )
        metadata = self._sample_metadata.copy()
        metadata[SIZE_FACTOR_COLUMN] = size_factors
        return BioMatrix(
            data=self._data,
            feature_ids=self._feature_ids,
            sample_ids=self._sample_ids,
            sample_metadata=metadata,
            quality_flags=self._quality_flags,
        )

    def with_data(self, data: np.ndarray, quality_flags: Optional[np.ndarray] = None) -> BioMatrix:
        """
        Return a new BioMatrix with replaced values and the same ids/metadata.

        Args:
            data: New matrix, same shape as the current one
            quality_flags: New provenance matrix; defaults to a copy of the current flags
        """
        if data.shape != self.shape:
            raise ValueError(f"data shape {data.shape} must match matrix shape {self.shape}")
        if quality_flags is None:
            quality_flags = self._quality_flags.copy()
        return BioMatrix(
            data=data,
            feature_ids=self._feature_ids,
            sample_ids=self._sample_ids,
            sample_metadata=self._sample_metadata.copy(),
            quality_flags=quality_flags,
        )

    def select_samples(self, mask: np.ndarray | pd.Series) -> BioMatrix:
        """
        Subset matrix by samples (columns), preserving all metadata.

        Args:
            mask: Boolean array/Series indicating which samples to keep.
                If Series, uses values and ignores index.

        Raises:
            ValueError: If mask length doesn't match n_samples
        """
        if isinstance(mask, pd.Series):
            mask = mask.values

        if len(mask) != self.n_samples:
            raise ValueError(
                f"mask length ({len(mask)}) must match n_samples ({self.n_samples})"
            )

        return BioMatrix(
            data=self._data[:, mask],
            feature_ids=self._feature_ids,
            sample_ids=self._sample_ids[mask],
            sample_metadata=self._sample_metadata.loc[self._sample_ids[mask]],
            quality_flags=self._quality_flags[:, mask],
        )

    def select_features(self, mask: np.ndarray | pd.Series) -> BioMatrix:
        """
        Subset matrix by genes (rows), preserving all metadata.

        Args:
            mask: Boolean array/Series indicating which genes to keep.
                If Series, uses values and ignores index.

        Raises:
            ValueError: If mask length doesn't match n_features

        Examples:
            >>> expressed = matrix.data.sum(axis=1) > 0
            >>> expressed_matrix = matrix.select_features(expressed)
        """
        if isinstance(mask, pd.Series):
            mask = mask.values

        if len(mask) != self.n_features:
            raise ValueError(
                f"mask length ({len(mask)}) must match n_features ({self.n_features})"
            )

        return BioMatrix(
            data=self._data[mask, :],
            feature_ids=self._feature_ids[mask],
            sample_ids=self._sample_ids,
            sample_metadata=self._sample_metadata,
            quality_flags=self._quality_flags[mask, :],
        )

    def copy(self, deep: bool = True) -> BioMatrix:
        """
        Create a copy of this matrix.

        Args:
            deep: If True, copy all arrays. If False, share arrays.
        """
        if deep:
            return BioMatrix(
                data=self._data.copy(),
                feature_ids=self._feature_ids.copy(),
                sample_ids=self._sample_ids.copy(),
                sample_metadata=self._sample_metadata.copy(),
                quality_flags=self._quality_flags.copy(),
            )
        return BioMatrix(
            data=self._data,
            feature_ids=self._feature_ids,
            sample_ids=self._sample_ids,
            sample_metadata=self._sample_metadata,
            quality_flags=self._quality_flags,
        )

    def to_dataframe(self) -> pd.DataFrame:
        """Matrix values as a DataFrame indexed by gene, columns by sample."""
        return pd.DataFrame(self._data, index=self._feature_ids, columns=self._sample_ids)

    def __repr__(self) -> str:
        if self.n_features == 0 or self.n_samples == 0:
            return f"BioMatrix({self.n_features} features × {self.n_samples} samples)"
        return (
            f"BioMatrix({self.n_features} features × {self.n_samples} samples)\n"
            f"  Features: {self.feature_ids[0]}...{self.feature_ids[-1]}\n"
            f"  Samples: {self.sample_ids[0]}...{self.sample_ids[-1]}\n"
            f"  Metadata columns: {list(self.sample_metadata.columns)}"
        )

    def __str__(self) -> str:
        return self.__repr__()
