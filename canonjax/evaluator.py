"""Lowering of linear-operator trees to sparse coefficients.

``MatrixBuilder`` walks each root of a forest in post-order and turns every
node into an ``AffineBlock`` over the vectorized (column-major) entries of
that node. Results are memoized by node identity so shared subexpressions are
lowered once. When a root is done its block is shifted to the root's row
offset and appended to the output triplets and constant vector.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Protocol, Sequence, Tuple

import numpy as np

from canonjax.affine import AffineBlock
from canonjax.config import DEFAULT_CONFIG, CanonConfig
from canonjax.errors import (
    CanonError,
    DimensionMismatchError,
    DivisionByZeroError,
    IndexOutOfRangeError,
    MalformedNodeError,
    UnsupportedOperatorError,
    check_shapes_match,
)
from canonjax.index_tables import ColumnTable
from canonjax.linop import CONSTANT_TYPES, LinOp, OpType
from canonjax.utils.shapes import (
    flatten_shape,
    normalize_shape,
    reshape_compatible,
    transpose_shape,
)

logger = logging.getLogger(__name__)

Triplets = Tuple[np.ndarray, np.ndarray, np.ndarray]


class RowOffsets(Protocol):
    def resolve_row(self, expr_index: int) -> int: ...


def _as_matrix(value: Any, dtype: np.dtype, shape: Tuple[int, int] | None = None) -> np.ndarray:
    """Convert a constant payload to a 2-D array.

    A 1-D value is read in column-major order into ``shape`` when the sizes
    agree, and becomes a column vector otherwise.
    """
    if hasattr(value, "todense"):
        value = value.todense()
    try:
        array = np.asarray(value, dtype=dtype)
    except (TypeError, ValueError) as exc:
        raise MalformedNodeError(
            f"Constant payload is not numeric: {type(value).__name__}", cause=str(exc)
        ) from exc
    if array.ndim > 2:
        raise MalformedNodeError(f"Constant must be at most 2-D, got shape {array.shape}")
    if array.ndim < 2 and shape is not None and array.size == flatten_shape(shape):
        return array.reshape(shape, order="F")
    return array.reshape(normalize_shape(array.shape))


def _slice_positions(key: Any, length: int) -> np.ndarray:
    if isinstance(key, slice):
        try:
            return np.arange(length)[key]
        except (TypeError, ValueError) as exc:
            raise MalformedNodeError(f"Invalid INDEX slice {key!r}", cause=str(exc)) from exc
    if isinstance(key, (int, np.integer)) and not isinstance(key, bool):
        if not -length <= key < length:
            raise IndexOutOfRangeError(f"Index {key} out of range for dimension {length}")
        return np.array([key % length])
    raise MalformedNodeError(f"INDEX keys must be slices or integers, got {type(key).__name__}")


class MatrixBuilder:
    """Turn expression forests into coefficient triplets and a constant vector.

    Args:
        columns: Variable id to column table. Variable widths are registered
            on it as VARIABLE nodes are met.
        config: Builder options.
    """

    def __init__(self, columns: ColumnTable, config: CanonConfig = DEFAULT_CONFIG) -> None:
        self.columns = columns
        self.config = config
        self.dtype = config.np_dtype
        self._cache: Dict[int, Tuple[LinOp, AffineBlock]] = {}
        self._handlers: Dict[OpType, Callable[[LinOp, int], AffineBlock]] = {
            OpType.VARIABLE: self._variable,
            OpType.SCALAR_CONST: self._constant,
            OpType.DENSE_CONST: self._constant,
            OpType.SPARSE_CONST: self._constant,
            OpType.SUM: self._sum,
            OpType.NEG: self._neg,
            OpType.MUL: self._mul,
            OpType.RMUL: self._rmul,
            OpType.MUL_ELEM: self._mul_elem,
            OpType.DIV: self._div,
            OpType.INDEX: self._index,
            OpType.TRANSPOSE: self._transpose,
            OpType.RESHAPE: self._reshape,
            OpType.VSTACK: self._vstack,
            OpType.HSTACK: self._hstack,
            OpType.PROMOTE: self._promote,
            OpType.SUM_ENTRIES: self._sum_entries,
            OpType.TRACE: self._trace,
            OpType.DIAG_VEC: self._diag_vec,
            OpType.DIAG_MAT: self._diag_mat,
            OpType.UPPER_TRI: self._upper_tri,
            OpType.KRON: self._kron,
            OpType.CONV: self._conv,
        }

    def build(
        self, roots: Sequence[LinOp], row_offsets: RowOffsets
    ) -> Tuple[Triplets, np.ndarray]:
        """Lower every root and place it at its row offset.

        Args:
            roots: Ordered forest of root expressions.
            row_offsets: Table giving the first row of each root.

        Returns:
            ``((rows, cols, vals), b)``. Triplets may hold duplicate
            ``(row, col)`` pairs; ``b`` has one entry per row of ``A``.
        """
        rows: List[np.ndarray] = []
        cols: List[np.ndarray] = []
        vals: List[np.ndarray] = []
        placed: List[Tuple[int, np.ndarray]] = []

        for expr_index, root in enumerate(roots):
            if self.config.cache_scope == "root":
                self._cache.clear()
            block = self.evaluate(root, expr_index)
            start = row_offsets.resolve_row(expr_index)
            logger.debug(
                "Lowered expression %d (%s, shape=%s) to %d coefficients at row %d",
                expr_index, getattr(root.type, "name", root.type), root.shape, block.nnz, start,
            )
            r, c, v = block.shifted(start)
            rows.append(r)
            cols.append(c)
            vals.append(v)
            placed.append((start, block.offset))

        n_rows = max((start + len(offset) for start, offset in placed), default=0)
        b = np.zeros(n_rows, dtype=self.dtype)
        for start, offset in placed:
            b[start:start + len(offset)] += offset

        self._cache.clear()
        triplets = (
            np.concatenate(rows) if rows else np.zeros(0, dtype=np.int64),
            np.concatenate(cols) if cols else np.zeros(0, dtype=np.int64),
            np.concatenate(vals) if vals else np.zeros(0, dtype=self.dtype),
        )
        return triplets, b

    def evaluate(self, node: LinOp, expr_index: int) -> AffineBlock:
        """Lower one node, reusing the memoized result when available.

        Args:
            node: Node to lower.
            expr_index: Position of the root being lowered, for error reports.

        Raises:
            UnsupportedOperatorError: For unknown operator tags.
            DimensionMismatchError: When shapes disagree at the node.
        """
        hit = self._cache.get(id(node))
        if hit is not None:
            logger.debug("Reusing lowered %r", node)
            return hit[1]

        handler = self._handlers.get(node.type)
        try:
            if handler is None:
                raise UnsupportedOperatorError(
                    f"No lowering for operator {getattr(node.type, 'name', node.type)!r}",
                    suggestion="Rewrite the expression with supported operators.",
                )
            block = handler(node, expr_index)
            if block.shape != node.shape:
                raise DimensionMismatchError(
                    "Lowered shape differs from declared node shape",
                    expected=node.shape,
                    got=block.shape,
                )
        except CanonError as exc:
            raise exc.annotate(node.type, expr_index, shape=node.shape)

        # Keep the node alive so its id cannot be recycled while cached.
        self._cache[id(node)] = (node, block)
        return block

    # Helpers

    def _args(self, node: LinOp, expr_index: int, count: int | None = None) -> List[AffineBlock]:
        if count is not None and len(node.args) != count:
            raise MalformedNodeError(f"Expected {count} argument(s), got {len(node.args)}")
        if not node.args:
            raise MalformedNodeError("Expected at least one argument")
        return [self.evaluate(arg, expr_index) for arg in node.args]

    def _operand(self, node: LinOp, shape: Tuple[int, int] | None = None) -> np.ndarray:
        """Dense 2-D value of the constant operand stored in ``node.data``.

        A raw 1-D operand is read into ``shape`` when given.
        """
        data = node.data
        if data is None:
            raise MalformedNodeError("Missing constant operand")
        if isinstance(data, LinOp):
            if data.type not in CONSTANT_TYPES:
                raise MalformedNodeError(
                    f"Operand must be a constant, got {getattr(data.type, 'name', data.type)}"
                )
            return self._constant_value(data)
        return _as_matrix(data, self.dtype, shape)

    def _constant_value(self, node: LinOp) -> np.ndarray:
        data = node.data
        if node.type is OpType.SCALAR_CONST:
            if isinstance(data, (str, bytes)) or data is None or np.ndim(data) != 0:
                raise MalformedNodeError(
                    f"SCALAR_CONST payload must be a number, got {type(data).__name__}"
                )
            return np.full(node.shape, data, dtype=self.dtype)
        if data is None:
            raise MalformedNodeError("Constant node has no value")
        value = _as_matrix(data, self.dtype, node.shape)
        check_shapes_match(node.shape, value.shape, "constant node and its value")
        return value

    # Leaves

    def _variable(self, node: LinOp, expr_index: int) -> AffineBlock:
        column = self.columns.resolve_column(node.data)
        self.columns.register(node.data, node.size)
        return AffineBlock.from_variable(column, node.shape, self.dtype)

    def _constant(self, node: LinOp, expr_index: int) -> AffineBlock:
        return AffineBlock.from_constant(self._constant_value(node), self.dtype)

    # Element-wise

    def _sum(self, node: LinOp, expr_index: int) -> AffineBlock:
        blocks = self._args(node, expr_index)
        total = blocks[0]
        for block in blocks[1:]:
            total = total + block
        return total

    def _neg(self, node: LinOp, expr_index: int) -> AffineBlock:
        (block,) = self._args(node, expr_index, 1)
        return -block

    def _mul_elem(self, node: LinOp, expr_index: int) -> AffineBlock:
        (block,) = self._args(node, expr_index, 1)
        weights = self._operand(node, node.shape)
        if weights.size == 1:
            return block * weights.item()
        check_shapes_match(block.shape, weights.shape, "element-wise factors")
        return block.scale_rows(weights.ravel(order="F"))

    def _div(self, node: LinOp, expr_index: int) -> AffineBlock:
        (block,) = self._args(node, expr_index, 1)
        divisor = self._operand(node, node.shape)
        if np.any(divisor == 0):
            raise DivisionByZeroError("Divisor contains zero entries")
        if divisor.size == 1:
            return block * (1.0 / divisor.item())
        check_shapes_match(block.shape, divisor.shape, "dividend and divisor")
        return block.scale_rows(1.0 / divisor.ravel(order="F"))

    # Products

    def _mul(self, node: LinOp, expr_index: int) -> AffineBlock:
        """Constant ``C (m x k)`` times child ``X (k x n)``."""
        (block,) = self._args(node, expr_index, 1)
        lhs = self._operand(node)
        if lhs.size == 1:
            return block * lhs.item()

        m, k = lhs.shape
        if block.size == 1 and k != 1:
            # Scalar expression times a matrix scales every entry of C.
            flat = lhs.ravel(order="F")
            positions = np.arange(flat.size)

            def scalar_map(rows):
                return positions[None, :] + 0 * rows[:, None], flat[None, :]

            return block.linear_map(scalar_map, lhs.shape)

        if block.shape[0] != k:
            raise DimensionMismatchError(
                "Inner dimensions of product do not agree",
                left=lhs.shape,
                right=block.shape,
            )
        n = block.shape[1]
        out = np.arange(m)

        def row_map(rows):
            # vec(C X)[p + m j] = sum_i C[p, i] vec(X)[i + k j]
            i, j = rows % k, rows // k
            return out[None, :] + m * j[:, None], lhs[:, i].T

        return block.linear_map(row_map, (m, n))

    def _rmul(self, node: LinOp, expr_index: int) -> AffineBlock:
        """Child ``X (m x k)`` times constant ``C (k x n)``."""
        (block,) = self._args(node, expr_index, 1)
        rhs = self._operand(node)
        if rhs.size == 1:
            return block * rhs.item()

        k, n = rhs.shape
        if block.shape[1] != k:
            raise DimensionMismatchError(
                "Inner dimensions of product do not agree",
                left=block.shape,
                right=rhs.shape,
            )
        m = block.shape[0]
        out = np.arange(n)

        def row_map(rows):
            # vec(X C)[a + m q] = sum_i vec(X)[a + m i] C[i, q]
            a, i = rows % m, rows // m
            return a[:, None] + m * out[None, :], rhs[i, :]

        return block.linear_map(row_map, (m, n))

    def _kron(self, node: LinOp, expr_index: int) -> AffineBlock:
        """Constant ``C (p x q)`` Kronecker child ``X (m x n)``."""
        (block,) = self._args(node, expr_index, 1)
        lhs = self._operand(node)
        p, q = lhs.shape
        m, n = block.shape
        ii, jj = (axis.ravel() for axis in np.indices((p, q)))
        weights = lhs[ii, jj][None, :]

        def row_map(rows):
            a, b = rows % m, rows // m
            out_rows = ii[None, :] * m + a[:, None]
            out_cols = jj[None, :] * n + b[:, None]
            return out_rows + p * m * out_cols, weights

        return block.linear_map(row_map, (p * m, q * n))

    def _conv(self, node: LinOp, expr_index: int) -> AffineBlock:
        """Full 1-D convolution of a constant vector with a column vector."""
        (block,) = self._args(node, expr_index, 1)
        kernel = self._operand(node)
        if 1 not in kernel.shape or block.shape[1] != 1:
            raise DimensionMismatchError(
                "Convolution needs vector operands",
                kernel=kernel.shape,
                signal=block.shape,
            )
        kernel = kernel.ravel()
        taps = np.arange(len(kernel))
        length = block.shape[0] + len(kernel) - 1 if block.shape[0] and len(kernel) else 0

        def row_map(rows):
            return rows[:, None] + taps[None, :], kernel[None, :]

        return block.linear_map(row_map, (length, 1))

    # Selection and rearrangement

    def _index(self, node: LinOp, expr_index: int) -> AffineBlock:
        (block,) = self._args(node, expr_index, 1)
        key = node.data
        if not isinstance(key, (tuple, list)) or len(key) != 2:
            raise MalformedNodeError("INDEX payload must be a (row, col) pair of slices")
        m, n = block.shape
        row_pos = _slice_positions(key[0], m)
        col_pos = _slice_positions(key[1], n)
        shape = (len(row_pos), len(col_pos))
        index = (row_pos[:, None] + m * col_pos[None, :]).ravel(order="F")
        return block.take(index, shape)

    def _transpose(self, node: LinOp, expr_index: int) -> AffineBlock:
        (block,) = self._args(node, expr_index, 1)
        m, n = block.shape
        # Entry (i, j) of the transpose is entry (j, i) of the child.
        index = (m * np.arange(n)[:, None] + np.arange(m)[None, :]).ravel(order="F")
        return block.take(index, transpose_shape(block.shape))

    def _reshape(self, node: LinOp, expr_index: int) -> AffineBlock:
        (block,) = self._args(node, expr_index, 1)
        if not reshape_compatible(block.shape, node.shape):
            raise DimensionMismatchError(
                "Cannot reshape to a different number of entries",
                expected=block.shape,
                got=node.shape,
            )
        return block.reshape(node.shape)

    def _vstack(self, node: LinOp, expr_index: int) -> AffineBlock:
        blocks = self._args(node, expr_index)
        n = blocks[0].shape[1]
        for block in blocks[1:]:
            if block.shape[1] != n:
                raise DimensionMismatchError(
                    "VSTACK arguments must have the same number of columns",
                    expected=n,
                    got=block.shape[1],
                )
        total = sum(block.shape[0] for block in blocks)
        shape = (total, n)

        stacked = None
        row_start = 0
        for block in blocks:
            m = block.shape[0]
            targets = (row_start + np.arange(m)[:, None] + total * np.arange(n)[None, :]).ravel(order="F")
            moved = block.scatter(targets, shape)
            stacked = moved if stacked is None else stacked + moved
            row_start += m
        return stacked

    def _hstack(self, node: LinOp, expr_index: int) -> AffineBlock:
        blocks = self._args(node, expr_index)
        m = blocks[0].shape[0]
        for block in blocks[1:]:
            if block.shape[0] != m:
                raise DimensionMismatchError(
                    "HSTACK arguments must have the same number of rows",
                    expected=m,
                    got=block.shape[0],
                )
        shape = (m, sum(block.shape[1] for block in blocks))

        # Column-major vectorization makes HSTACK a plain concatenation.
        stacked = None
        start = 0
        for block in blocks:
            moved = block.scatter(start + np.arange(block.size), shape)
            stacked = moved if stacked is None else stacked + moved
            start += block.size
        return stacked

    def _promote(self, node: LinOp, expr_index: int) -> AffineBlock:
        (block,) = self._args(node, expr_index, 1)
        if block.size != 1:
            raise DimensionMismatchError(
                "Only scalars can be promoted", expected=(1, 1), got=block.shape
            )
        return block.take(np.zeros(node.size, dtype=np.int64), node.shape)

    def _sum_entries(self, node: LinOp, expr_index: int) -> AffineBlock:
        (block,) = self._args(node, expr_index, 1)
        return block.scatter(np.zeros(block.size, dtype=np.int64), (1, 1))

    def _square(self, block: AffineBlock) -> int:
        m, n = block.shape
        if m != n:
            raise DimensionMismatchError("Argument must be square", got=block.shape)
        return n

    def _trace(self, node: LinOp, expr_index: int) -> AffineBlock:
        (block,) = self._args(node, expr_index, 1)
        n = self._square(block)
        diagonal = block.take(np.arange(n) * (n + 1), (n, 1))
        return diagonal.scatter(np.zeros(n, dtype=np.int64), (1, 1))

    def _diag_vec(self, node: LinOp, expr_index: int) -> AffineBlock:
        (block,) = self._args(node, expr_index, 1)
        if block.shape[1] != 1:
            raise DimensionMismatchError("DIAG_VEC needs a column vector", got=block.shape)
        n = block.shape[0]
        return block.scatter(np.arange(n) * (n + 1), (n, n))

    def _diag_mat(self, node: LinOp, expr_index: int) -> AffineBlock:
        (block,) = self._args(node, expr_index, 1)
        n = self._square(block)
        return block.take(np.arange(n) * (n + 1), (n, 1))

    def _upper_tri(self, node: LinOp, expr_index: int) -> AffineBlock:
        """Entries strictly above the diagonal, row by row."""
        (block,) = self._args(node, expr_index, 1)
        n = self._square(block)
        upper_rows, upper_cols = np.triu_indices(n, k=1)
        return block.take(upper_rows + n * upper_cols, (len(upper_rows), 1))
