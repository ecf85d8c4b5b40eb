"""Test builder configuration and error reporting."""

import numpy as np
import pytest

from canonjax.config import DEFAULT_CONFIG, CanonConfig
from canonjax.errors import (
    CanonError,
    ColumnOverlapError,
    DimensionMismatchError,
    IndexOutOfRangeError,
    UnknownVariableError,
    UnsupportedOperatorError,
    check_shapes_match,
)
from canonjax.linop import OpType
from canonjax.utils.checking import check_index, create_error_message


class TestCanonConfig:
    """Validation of CanonConfig options."""

    def test_defaults(self):
        assert DEFAULT_CONFIG.cache_scope == "build"
        assert DEFAULT_CONFIG.zero_tol == 0.0
        assert DEFAULT_CONFIG.check_overlap is True
        assert DEFAULT_CONFIG.np_dtype == np.float64

    def test_invalid_cache_scope(self):
        with pytest.raises(ValueError, match="Invalid cache_scope"):
            CanonConfig(cache_scope="forever")

    def test_invalid_zero_tol(self):
        with pytest.raises(ValueError, match="zero_tol"):
            CanonConfig(zero_tol=-1.0)
        assert CanonConfig(zero_tol=None).zero_tol is None

    def test_invalid_dtype(self):
        with pytest.raises(ValueError, match="floating point"):
            CanonConfig(dtype="int32")
        with pytest.raises(ValueError, match="Invalid dtype"):
            CanonConfig(dtype="not-a-dtype")
        assert CanonConfig(dtype="float32").np_dtype == np.float32


class TestErrors:
    """Error hierarchy and messages."""

    def test_hierarchy(self):
        assert issubclass(UnknownVariableError, LookupError)
        assert issubclass(UnsupportedOperatorError, NotImplementedError)
        assert issubclass(DimensionMismatchError, ValueError)
        assert issubclass(ColumnOverlapError, DimensionMismatchError)
        assert issubclass(IndexOutOfRangeError, IndexError)
        for error in (UnknownVariableError, UnsupportedOperatorError, IndexOutOfRangeError):
            assert issubclass(error, CanonError)

    def test_message_layout(self):
        error = DimensionMismatchError("Shapes differ", expected=(2, 1), got=(3, 1))

        assert str(error) == (
            "CANONJAX dimension mismatch:\n"
            "  detail: Shapes differ\n"
            "  expected: (2, 1)\n"
            "  got: (3, 1)"
        )

    def test_annotate_fills_missing_fields_once(self):
        error = DimensionMismatchError("Shapes differ")
        error.annotate(OpType.SUM, 2, shape=(2, 1))
        error.annotate(OpType.NEG, 0, shape=(9, 9))

        assert error.op_type is OpType.SUM
        assert error.expr_index == 2
        assert "operator: SUM" in str(error)
        assert "expression: 2" in str(error)
        assert "shape: (2, 1)" in str(error)

    def test_unknown_variable_suggestion(self):
        error = UnknownVariableError(7)
        assert error.var_id == 7
        assert "Suggestion: Add the variable to id_to_col" in str(error)

    def test_create_error_message(self):
        message = create_error_message("oops", {"a": 1}, suggestion="try again")
        assert message == "CANONJAX oops:\n  a: 1\n\nSuggestion: try again"


class TestChecking:
    """Boundary validation helpers."""

    def test_check_index(self):
        assert check_index(np.int32(3), "x") == 3
        assert type(check_index(np.int64(3), "x")) is int

        with pytest.raises(ValueError, match="must be an integer"):
            check_index(True, "flag")
        with pytest.raises(ValueError, match="non-negative"):
            check_index(-2, "offset")

    def test_check_shapes_match(self):
        check_shapes_match((2, 3), (2, 3))
        with pytest.raises(DimensionMismatchError, match="summands") as info:
            check_shapes_match((2, 3), (3, 2), "summands")
        assert info.value.context == {"expected": (2, 3), "got": (3, 2)}
