"""Shape validation and manipulation utilities.

All linear operators are two dimensional. Scalars and vectors are promoted
to ``(1, 1)`` and ``(n, 1)`` so that column-major vectorization has a single
definition throughout the package.
"""

from numbers import Integral
from typing import Sequence, Tuple

import numpy as np


def normalize_shape(shape: Sequence[int]) -> Tuple[int, int]:
    """Promote a shape of up to two dimensions to a ``(rows, cols)`` pair.

    Args:
        shape: Shape tuple or list with 0, 1 or 2 entries.

    Returns:
        Two dimensional shape of plain ints.

    Raises:
        ValueError: If shape is not a tuple/list or has more than two entries.
    """
    if not isinstance(shape, (tuple, list)):
        raise ValueError(f"Shape must be tuple or list, got {type(shape)}")
    if len(shape) > 2:
        raise ValueError(f"Linear operators are at most 2-D, got shape {tuple(shape)}")

    shape = tuple(shape) + (1,) * (2 - len(shape))
    check_static_shape(shape)
    return (int(shape[0]), int(shape[1]))


def check_static_shape(shape: Tuple[int, ...]) -> None:
    """Check that shape contains only static (non-negative integer) dimensions.

    Args:
        shape: Shape tuple to validate.

    Raises:
        ValueError: If shape contains negative or non-integer dimensions.
    """
    for i, dim in enumerate(shape):
        if isinstance(dim, bool) or not isinstance(dim, Integral):
            raise ValueError(f"Shape dimension {i} must be integer, got {type(dim)}")
        if dim < 0:
            raise ValueError(f"Shape dimension {i} must be non-negative, got {dim}")


def flatten_shape(shape: Tuple[int, ...]) -> int:
    """Compute total number of elements in shape."""
    return int(np.prod(shape, dtype=np.int64))


def transpose_shape(shape: Tuple[int, int]) -> Tuple[int, int]:
    """Compute shape after transposition."""
    return (shape[1], shape[0])


def reshape_compatible(old_shape: Tuple[int, ...], new_shape: Tuple[int, ...]) -> bool:
    """Check if reshape from old_shape to new_shape is valid.

    Args:
        old_shape: Original shape.
        new_shape: Target shape.

    Returns:
        True if reshape is valid.
    """
    return flatten_shape(old_shape) == flatten_shape(new_shape)
