"""CANONJAX: lowering of linear-operator trees to sparse problem data."""

from canonjax.canonicalize import (
    ProblemData,
    assemble,
    build_matrix,
    build_with_offsets,
    build_without_offsets,
)
from canonjax.config import DEFAULT_CONFIG, CanonConfig
from canonjax.errors import (
    CanonError,
    ColumnOverlapError,
    DimensionMismatchError,
    DivisionByZeroError,
    IndexOutOfRangeError,
    MalformedNodeError,
    UnknownVariableError,
    UnsupportedOperatorError,
)
from canonjax.linop import LinOp, LinOpVector, OpType

__version__ = "0.1.0"

__all__ = [
    "LinOp",
    "LinOpVector",
    "OpType",
    "ProblemData",
    "assemble",
    "build_matrix",
    "build_with_offsets",
    "build_without_offsets",
    "CanonConfig",
    "DEFAULT_CONFIG",
    "CanonError",
    "ColumnOverlapError",
    "DimensionMismatchError",
    "DivisionByZeroError",
    "IndexOutOfRangeError",
    "MalformedNodeError",
    "UnknownVariableError",
    "UnsupportedOperatorError",
]
