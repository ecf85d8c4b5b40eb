"""Coefficient representation of a lowered node.

A node of shape ``(m, n)`` lowers to an ``AffineBlock``: the sparse matrix
``M`` (as triplets, columns already in global ``A`` coordinates) and the
vector ``c`` such that ``vec(node) = M @ x + c``, where ``vec`` stacks
columns (Fortran order). Every operator is a linear map on ``vec(child)``, so
it acts on the rows of the triplets and on ``c`` in the same way.

Blocks are never modified in place; memoized blocks are shared between
parents.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Tuple

import numpy as np

from canonjax.errors import check_shapes_match
from canonjax.utils.shapes import flatten_shape

RowMap = Callable[[np.ndarray], Tuple[np.ndarray, np.ndarray]]

_INDEX_DTYPE = np.int64


@dataclass(frozen=True)
class AffineBlock:
    """Affine expression ``M x + c`` in the local row coordinates of a node.

    Args:
        rows: Row of each coefficient, in ``[0, size)``.
        cols: Global column of each coefficient.
        vals: Coefficient values. Duplicate ``(row, col)`` pairs add up.
        offset: Dense constant vector of length ``size``.
        _shape: Shape of the node the block belongs to.
    """
    rows: np.ndarray
    cols: np.ndarray
    vals: np.ndarray
    offset: np.ndarray
    _shape: Tuple[int, int]

    @property
    def shape(self) -> Tuple[int, int]:
        """Shape of the expression."""
        return self._shape

    @property
    def size(self) -> int:
        return flatten_shape(self._shape)

    @property
    def nnz(self) -> int:
        return len(self.vals)

    @property
    def dtype(self) -> np.dtype:
        return self.offset.dtype

    @classmethod
    def from_variable(
        cls, column: int, shape: Tuple[int, int], dtype: np.dtype = np.float64
    ) -> AffineBlock:
        """Create the identity block of a variable starting at ``column``.

        Args:
            column: First column of the variable in ``A``.
            shape: Shape of the variable.
            dtype: Value dtype.

        Returns:
            AffineBlock representing the variable.
        """
        size = flatten_shape(shape)
        local = np.arange(size, dtype=_INDEX_DTYPE)
        return cls(
            rows=local,
            cols=local + column,
            vals=np.ones(size, dtype=dtype),
            offset=np.zeros(size, dtype=dtype),
            _shape=shape,
        )

    @classmethod
    def from_constant(cls, value: np.ndarray, dtype: np.dtype = np.float64) -> AffineBlock:
        """Create a block with no coefficients from a 2-D constant.

        Args:
            value: Constant value, already 2-D.
            dtype: Value dtype.

        Returns:
            AffineBlock whose offset is ``vec(value)``.
        """
        value = np.asarray(value, dtype=dtype)
        return cls(
            rows=np.zeros(0, dtype=_INDEX_DTYPE),
            cols=np.zeros(0, dtype=_INDEX_DTYPE),
            vals=np.zeros(0, dtype=dtype),
            offset=value.ravel(order="F"),
            _shape=value.shape,
        )

    def __add__(self, other: AffineBlock) -> AffineBlock:
        check_shapes_match(self.shape, other.shape, "summands")
        return AffineBlock(
            rows=np.concatenate([self.rows, other.rows]),
            cols=np.concatenate([self.cols, other.cols]),
            vals=np.concatenate([self.vals, other.vals]),
            offset=self.offset + other.offset,
            _shape=self.shape,
        )

    def __neg__(self) -> AffineBlock:
        return AffineBlock(self.rows, self.cols, -self.vals, -self.offset, self.shape)

    def __mul__(self, scalar: float) -> AffineBlock:
        scalar = self.dtype.type(scalar)
        return AffineBlock(
            self.rows, self.cols, scalar * self.vals, scalar * self.offset, self.shape
        )

    __rmul__ = __mul__

    def reshape(self, shape: Tuple[int, int]) -> AffineBlock:
        """Reinterpret the block under a new shape of the same size."""
        return AffineBlock(self.rows, self.cols, self.vals, self.offset, shape)

    def scale_rows(self, weights: np.ndarray) -> AffineBlock:
        """Multiply row ``i`` by ``weights[i]`` (element-wise product)."""
        weights = np.asarray(weights, dtype=self.dtype)
        return AffineBlock(
            self.rows,
            self.cols,
            self.vals * weights[self.rows],
            self.offset * weights,
            self.shape,
        )

    def take(self, index: np.ndarray, shape: Tuple[int, int]) -> AffineBlock:
        """Gather rows: row ``p`` of the result is row ``index[p]`` of self.

        Rows may be selected any number of times (including zero), which
        covers slicing, permutation and broadcasting.
        """
        index = np.asarray(index, dtype=_INDEX_DTYPE)
        order = np.argsort(index, kind="stable")
        sorted_index = index[order]
        lo = np.searchsorted(sorted_index, self.rows, side="left")
        hi = np.searchsorted(sorted_index, self.rows, side="right")
        counts = hi - lo
        total = int(counts.sum())

        source = np.repeat(np.arange(self.nnz, dtype=_INDEX_DTYPE), counts)
        within = np.arange(total, dtype=_INDEX_DTYPE) - np.repeat(np.cumsum(counts) - counts, counts)
        rows = order[np.repeat(lo, counts) + within]

        return AffineBlock(
            rows=rows.astype(_INDEX_DTYPE, copy=False),
            cols=self.cols[source],
            vals=self.vals[source],
            offset=self.offset[index],
            _shape=shape,
        )

    def scatter(self, targets: np.ndarray, shape: Tuple[int, int]) -> AffineBlock:
        """Send row ``i`` to row ``targets[i]`` of a block of ``shape``.

        Rows sent to the same target are summed; targets never hit stay zero.
        """
        targets = np.asarray(targets, dtype=_INDEX_DTYPE)
        offset = np.zeros(flatten_shape(shape), dtype=self.dtype)
        np.add.at(offset, targets, self.offset)
        return AffineBlock(targets[self.rows], self.cols, self.vals, offset, shape)

    def linear_map(self, row_map: RowMap, shape: Tuple[int, int]) -> AffineBlock:
        """Apply a general linear map given row by row.

        Args:
            row_map: Called with an array of source rows, returns
                ``(targets, weights)`` broadcastable to ``(len(rows), k)``:
                source row ``r`` contributes ``weights[.., j]`` times itself to
                row ``targets[.., j]``.
            shape: Shape of the result.
        """
        targets, weights = np.broadcast_arrays(*row_map(self.rows))
        fan_out = targets.shape[1]
        # Zero weights of sparse constants produce no coefficients.
        keep = (weights != 0).reshape(-1)
        rows = targets.reshape(-1)[keep]
        vals = (weights * self.vals[:, None]).reshape(-1)[keep].astype(self.dtype, copy=False)
        cols = np.repeat(self.cols, fan_out)[keep]

        source = np.arange(self.size, dtype=_INDEX_DTYPE)
        off_targets, off_weights = np.broadcast_arrays(*row_map(source))
        offset = np.zeros(flatten_shape(shape), dtype=self.dtype)
        np.add.at(offset, off_targets.reshape(-1), (off_weights * self.offset[:, None]).reshape(-1))

        return AffineBlock(rows.astype(_INDEX_DTYPE, copy=False), cols, vals, offset, shape)

    def shifted(self, row_start: int) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        """Triplets with rows moved to start at ``row_start``."""
        return self.rows + row_start, self.cols, self.vals
