"""
Tests for the core data structures: BioMatrix, QualityFlag, input resolution.
"""

from dataclasses import fields

import numpy as np
import pandas as pd
import pytest

from rlognorm.core.biomatrix import BioMatrix
from rlognorm.core.errors import InvalidInputError, RlogError
from rlognorm.core.inputs import InputKind, as_count_input, validate_size_factors
from rlognorm.core.quality import QualityFlag


def _matrix(data, sf=None):
    data = np.asarray(data)
    sample_ids = pd.Index([f"S{j}" for j in range(data.shape[1])])
    metadata = pd.DataFrame(index=sample_ids)
    if sf is not None:
        metadata['sizeFactor'] = sf
    return BioMatrix(
        data=data,
        feature_ids=pd.Index([f"G{i}" for i in range(data.shape[0])]),
        sample_ids=sample_ids,
        sample_metadata=metadata,
    )


class TestBioMatrix:

    def test_defaults_metadata_and_flags(self):
        m = BioMatrix(np.zeros((2, 3)), pd.Index(["a", "b"]), pd.Index(["x", "y", "z"]))
        assert m.shape == (2, 3)
        assert list(m.sample_metadata.index) == ["x", "y", "z"]
        assert np.all(m.quality_flags == QualityFlag.ORIGINAL)
        assert m.size_factors is None

    def test_shape_mismatch_rejected(self):
        with pytest.raises(ValueError, match="feature_ids length"):
            BioMatrix(np.zeros((2, 3)), pd.Index(["a"]), pd.Index(["x", "y", "z"]))
        with pytest.raises(ValueError, match="sample_ids length"):
            BioMatrix(np.zeros((2, 3)), pd.Index(["a", "b"]), pd.Index(["x"]))

    def test_type_checks(self):
        with pytest.raises(TypeError):
            BioMatrix([[1, 2]], pd.Index(["a"]), pd.Index(["x", "y"]))

    def test_with_size_factors_returns_new_instance(self):
        m = _matrix([[1, 2, 3]])
        m2 = m.with_size_factors(np.array([1.0, 2.0, 0.5]))
        assert m.size_factors is None
        np.testing.assert_array_equal(m2.size_factors, [1.0, 2.0, 0.5])

        with pytest.raises(ValueError, match="size_factors length"):
            m.with_size_factors(np.array([1.0]))

    def test_select_features_keeps_alignment(self):
        m = _matrix([[0, 0], [1, 2], [3, 4]], sf=[1.0, 1.0])
        sub = m.select_features(np.array([False, True, True]))
        assert list(sub.feature_ids) == ["G1", "G2"]
        assert sub.quality_flags.shape == (2, 2)
        np.testing.assert_array_equal(sub.size_factors, [1.0, 1.0])

    def test_select_samples_keeps_metadata(self):
        m = _matrix([[1, 2, 3]], sf=[1.0, 2.0, 3.0])
        sub = m.select_samples(np.array([True, False, True]))
        assert list(sub.sample_ids) == ["S0", "S2"]
        np.testing.assert_array_equal(sub.size_factors, [1.0, 3.0])

    def test_to_dataframe(self):
        df = _matrix([[1, 2]]).to_dataframe()
        assert list(df.index) == ["G0"]
        assert list(df.columns) == ["S0", "S1"]


class TestQualityFlag:

    def test_combination(self):
        flag = QualityFlag.RLOG_TRANSFORMED | QualityFlag.ZERO_FILLED
        assert flag & QualityFlag.ZERO_FILLED
        assert flag & QualityFlag.RLOG_TRANSFORMED
        assert not QualityFlag.ORIGINAL & QualityFlag.ZERO_FILLED

    def test_describe(self):
        assert QualityFlag.describe(0) == ['ORIGINAL']
        assert QualityFlag.describe(3) == ['RLOG_TRANSFORMED', 'ZERO_FILLED']


class TestCountInput:

    def test_holds_only_resolved_values(self, small_counts):
        resolved = as_count_input(small_counts)
        assert {f.name for f in fields(resolved)} == {
            "kind", "counts", "feature_ids", "sample_ids", "size_factors",
        }
        assert resolved.counts is not small_counts.data

    def test_ndarray_is_matrix_kind(self):
        resolved = as_count_input(np.array([[1, 2], [3, 4]]))
        assert resolved.kind is InputKind.MATRIX
        assert list(resolved.feature_ids) == [0, 1]
        assert resolved.size_factors is None
        assert resolved.counts.dtype == np.float64

    def test_dataframe_keeps_ids(self):
        df = pd.DataFrame([[1, 2]], index=["g"], columns=["a", "b"])
        resolved = as_count_input(df, np.array([1.0, 1.0]))
        assert resolved.kind is InputKind.MATRIX
        assert list(resolved.sample_ids) == ["a", "b"]

    def test_biomatrix_is_experiment_kind_with_size_factors(self):
        resolved = as_count_input(_matrix([[1, 2]], sf=[0.5, 2.0]))
        assert resolved.kind is InputKind.EXPERIMENT
        np.testing.assert_array_equal(resolved.size_factors, [0.5, 2.0])

    def test_explicit_size_factors_win(self):
        resolved = as_count_input(_matrix([[1, 2]], sf=[0.5, 2.0]), np.array([1.0, 1.0]))
        np.testing.assert_array_equal(resolved.size_factors, [1.0, 1.0])

    def test_counts_are_copied(self):
        data = np.array([[1.0, 2.0]])
        resolved = as_count_input(data)
        resolved.counts[0, 0] = 99
        assert data[0, 0] == 1.0

    @pytest.mark.parametrize("bad, message", [
        (np.array([1, 2, 3]), "2D"),
        (np.zeros((0, 3)), "at least one row"),
        (np.zeros((3, 0)), "at least one column"),
        (np.array([[1, -1]]), "non-negative"),
        (np.array([[1.5, 2]]), "integers"),
        (np.array([[np.nan, 2]]), "finite"),
        (np.array([["a", "b"]]), "numeric"),
    ])
    def test_invalid_counts(self, bad, message):
        with pytest.raises(InvalidInputError, match=message):
            as_count_input(bad)

    def test_unsupported_type(self):
        with pytest.raises(InvalidInputError, match="numpy.ndarray"):
            as_count_input([[1, 2]])

    def test_duplicate_ids(self):
        df = pd.DataFrame([[1, 2], [3, 4]], index=["g", "g"], columns=["a", "b"])
        with pytest.raises(InvalidInputError, match="gene identifiers"):
            as_count_input(df)

    def test_invalid_input_is_value_error(self):
        assert issubclass(InvalidInputError, ValueError)
        assert issubclass(InvalidInputError, RlogError)


class TestValidateSizeFactors:

    def test_length_mismatch(self):
        with pytest.raises(InvalidInputError, match="length"):
            validate_size_factors(np.array([1.0, 1.0]), 3)

    @pytest.mark.parametrize("sf", [[1.0, 0.0], [1.0, -2.0], [1.0, np.inf], [1.0, np.nan]])
    def test_non_positive_or_non_finite(self, sf):
        with pytest.raises(InvalidInputError):
            validate_size_factors(np.array(sf), 2)
