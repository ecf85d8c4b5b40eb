"""Canonicalization of linear-operator forests to problem data.

Represents the stacked expressions as

    vec(expr_0), vec(expr_1), ...  =  A x + b

where ``x`` holds every variable (column-major) at the columns given by
``id_to_col``, and each expression's rows start either right after the
previous expression or at a caller supplied offset.
"""

from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass
from typing import Dict, Mapping, Optional, Sequence, Tuple

import jax.numpy as jnp
import numpy as np
from jax import tree_util
from jax.experimental import sparse

from canonjax.config import DEFAULT_CONFIG, CanonConfig
from canonjax.evaluator import MatrixBuilder, RowOffsets
from canonjax.index_tables import ColumnTable, ContiguousRowOffsets, ExplicitRowOffsets
from canonjax.linop import LinOp

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProblemData:
    """Sparse matrix ``A`` and dense vector ``b`` of a canonicalized forest.

    Args:
        rows: Row index of each non-zero of ``A``.
        cols: Column index of each non-zero of ``A``.
        vals: Value of each non-zero. Pairs ``(row, col)`` are unique and
            sorted row by row.
        b: Constant vector, one entry per row of ``A``.
        n_rows: Number of rows of ``A``.
        n_cols: Number of columns of ``A``.
        id_to_col: Column table the data was built with.
    """
    rows: np.ndarray
    cols: np.ndarray
    vals: np.ndarray
    b: np.ndarray
    n_rows: int
    n_cols: int
    id_to_col: Dict[int, int]

    def __post_init__(self):
        # Built data is immutable; leaves rebuilt by JAX may be tracers.
        for array in (self.rows, self.cols, self.vals, self.b):
            if isinstance(array, np.ndarray):
                array.setflags(write=False)

    @property
    def shape(self) -> Tuple[int, int]:
        return (self.n_rows, self.n_cols)

    @property
    def nnz(self) -> int:
        return len(self.vals)

    def triplets(self) -> list[tuple[int, int, float]]:
        """Non-zeros of ``A`` as ``(row, col, value)`` tuples."""
        return [
            (int(r), int(c), float(v))
            for r, c, v in zip(self.rows, self.cols, self.vals)
        ]

    def to_dense(self) -> jnp.ndarray:
        """Dense ``A`` as a JAX array."""
        A = jnp.zeros(self.shape, dtype=self.vals.dtype)
        return A.at[self.rows, self.cols].add(self.vals)

    def to_bcoo(self) -> sparse.BCOO:
        """``A`` as a JAX batched-COO sparse matrix."""
        indices = jnp.stack([jnp.asarray(self.rows), jnp.asarray(self.cols)], axis=1)
        return sparse.BCOO((jnp.asarray(self.vals), indices), shape=self.shape)

    def evaluate(self, x: jnp.ndarray) -> jnp.ndarray:
        """Compute ``A @ x + b``."""
        x = jnp.asarray(x)
        if x.shape != (self.n_cols,):
            raise ValueError(f"x must have shape ({self.n_cols},), got {x.shape}")
        return self.to_bcoo() @ x + jnp.asarray(self.b)


# Register ProblemData as JAX pytree
tree_util.register_pytree_node(
    ProblemData,
    lambda pd: (
        (pd.rows, pd.cols, pd.vals, pd.b),
        {"n_rows": pd.n_rows, "n_cols": pd.n_cols, "id_to_col": tuple(sorted(pd.id_to_col.items()))},
    ),
    lambda aux, children: ProblemData(
        *children,
        n_rows=aux["n_rows"],
        n_cols=aux["n_cols"],
        id_to_col=dict(aux["id_to_col"]),
    ),
)


def assemble(
    rows: np.ndarray,
    cols: np.ndarray,
    vals: np.ndarray,
    zero_tol: Optional[float] = 0.0,
) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Sum duplicate ``(row, col)`` entries by sort-and-combine.

    Args:
        rows: Row indices, possibly repeated.
        cols: Column indices, possibly repeated.
        vals: Values.
        zero_tol: Drop summed entries with magnitude at most this value;
            ``None`` keeps all of them.

    Returns:
        Unique triplets sorted by row, then column.
    """
    rows = np.asarray(rows, dtype=np.int64)
    cols = np.asarray(cols, dtype=np.int64)
    vals = np.asarray(vals)
    if len(vals) == 0:
        return rows, cols, vals

    order = np.lexsort((cols, rows))
    rows, cols, vals = rows[order], cols[order], vals[order]
    starts = np.flatnonzero(
        np.concatenate([[True], (rows[1:] != rows[:-1]) | (cols[1:] != cols[:-1])])
    )
    rows, cols, vals = rows[starts], cols[starts], np.add.reduceat(vals, starts)

    if zero_tol is not None:
        keep = np.abs(vals) > zero_tol
        rows, cols, vals = rows[keep], cols[keep], vals[keep]
    return rows, cols, vals


def _as_forest(roots: Sequence[LinOp]) -> list[LinOp]:
    forest = list(roots)
    for i, root in enumerate(forest):
        if not isinstance(root, LinOp):
            raise TypeError(f"Expression {i} must be a LinOp, got {type(root).__name__}")
    return forest


def _build(
    roots: list[LinOp],
    columns: ColumnTable,
    row_offsets: RowOffsets,
    config: CanonConfig,
) -> ProblemData:
    builder = MatrixBuilder(columns, config)
    (rows, cols, vals), b = builder.build(roots, row_offsets)
    rows, cols, vals = assemble(rows, cols, vals, config.zero_tol)

    data = ProblemData(
        rows=rows,
        cols=cols,
        vals=vals,
        b=b,
        n_rows=len(b),
        n_cols=columns.n_cols,
        id_to_col=columns.as_dict(),
    )
    logger.debug(
        "Canonicalized %d expressions into %dx%d matrix with %d non-zeros",
        len(roots), data.n_rows, data.n_cols, data.nnz,
    )
    return data


def build_without_offsets(
    roots: Sequence[LinOp],
    id_to_col: Mapping[int, int],
    config: Optional[CanonConfig] = None,
) -> ProblemData:
    """Canonicalize a forest, stacking expressions contiguously in order.

    Args:
        roots: Ordered forest of root expressions.
        id_to_col: Mapping from variable id to its first column.
        config: Builder options, ``DEFAULT_CONFIG`` if omitted.

    Returns:
        ProblemData with expression ``i`` starting right after ``i - 1``.

    Raises:
        UnknownVariableError: If a variable id is missing from ``id_to_col``.
        UnsupportedOperatorError: If an operator tag cannot be lowered.
        DimensionMismatchError: If shapes disagree anywhere in the forest.
    """
    config = config or DEFAULT_CONFIG
    forest = _as_forest(roots)
    columns = ColumnTable(id_to_col, check_overlap=config.check_overlap)
    return _build(forest, columns, ContiguousRowOffsets(forest), config)


def build_with_offsets(
    roots: Sequence[LinOp],
    id_to_col: Mapping[int, int],
    constr_offsets: Sequence[int],
    config: Optional[CanonConfig] = None,
) -> ProblemData:
    """Canonicalize a forest, placing expression ``i`` at ``constr_offsets[i]``.

    Args:
        roots: Ordered forest of root expressions.
        id_to_col: Mapping from variable id to its first column.
        constr_offsets: First row of each expression, one per root.
        config: Builder options, ``DEFAULT_CONFIG`` if omitted.

    Returns:
        ProblemData with ``n_rows`` the largest offset plus expression size.

    Raises:
        IndexOutOfRangeError: If ``constr_offsets`` does not have one
            non-negative entry per root.
        UnknownVariableError: If a variable id is missing from ``id_to_col``.
        UnsupportedOperatorError: If an operator tag cannot be lowered.
        DimensionMismatchError: If shapes disagree anywhere in the forest.
    """
    config = config or DEFAULT_CONFIG
    forest = _as_forest(roots)
    columns = ColumnTable(id_to_col, check_overlap=config.check_overlap)
    offsets = ExplicitRowOffsets(constr_offsets, len(forest))

    overlapping = offsets.overlapping_blocks(forest)
    if overlapping:
        warnings.warn(
            f"Row blocks of expressions {overlapping} overlap; "
            "their entries will be summed.",
            UserWarning,
        )
    return _build(forest, columns, offsets, config)


def build_matrix(
    roots: Sequence[LinOp],
    id_to_col: Mapping[int, int],
    constr_offsets: Optional[Sequence[int]] = None,
    config: Optional[CanonConfig] = None,
) -> ProblemData:
    """Canonicalize a forest, with explicit row offsets when given.

    Dispatches to ``build_with_offsets`` or ``build_without_offsets``.
    """
    if constr_offsets is None:
        return build_without_offsets(roots, id_to_col, config)
    return build_with_offsets(roots, id_to_col, constr_offsets, config)
