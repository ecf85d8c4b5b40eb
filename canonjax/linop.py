"""Linear-operator expression trees.

A ``LinOp`` is one node of the affine expression a modeling layer hands to
the matrix builder. Trees are read-only input: nodes may be shared by several
parents (the forest is then a DAG) and are compared and hashed by identity
so that results can be memoized per node.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Any, Iterator, List, Sequence, Set, Tuple

from canonjax.utils.shapes import flatten_shape, normalize_shape


class OpType(enum.Enum):
    """Operator tags understood by the matrix builder."""

    VARIABLE = "variable"
    SCALAR_CONST = "scalar_const"
    DENSE_CONST = "dense_const"
    SPARSE_CONST = "sparse_const"
    SUM = "sum"
    NEG = "neg"
    MUL = "mul"
    RMUL = "rmul"
    MUL_ELEM = "mul_elem"
    DIV = "div"
    INDEX = "index"
    TRANSPOSE = "transpose"
    RESHAPE = "reshape"
    VSTACK = "vstack"
    HSTACK = "hstack"
    PROMOTE = "promote"
    SUM_ENTRIES = "sum_entries"
    TRACE = "trace"
    DIAG_VEC = "diag_vec"
    DIAG_MAT = "diag_mat"
    UPPER_TRI = "upper_tri"
    KRON = "kron"
    CONV = "conv"


CONSTANT_TYPES = frozenset({OpType.SCALAR_CONST, OpType.DENSE_CONST, OpType.SPARSE_CONST})
LEAF_TYPES = CONSTANT_TYPES | {OpType.VARIABLE}


def _coerce_type(tag: Any) -> Any:
    # Unknown tags are kept as-is so the builder can report them by name.
    if isinstance(tag, OpType):
        return tag
    if isinstance(tag, str):
        try:
            return OpType[tag.upper()]
        except KeyError:
            return tag
    return tag


@dataclass(frozen=True, eq=False)
class LinOp:
    """Linear operator node.

    Args:
        type: Operator tag, an ``OpType`` (or its name as a string).
        shape: Output shape; promoted to ``(rows, cols)``.
        args: Child nodes, in operator order.
        data: Payload. The integer id for VARIABLE, a number for
            SCALAR_CONST, an array for DENSE_CONST, a sparse matrix with a
            ``todense()`` method (e.g. ``jax.experimental.sparse.BCOO``) for
            SPARSE_CONST, the constant operand for MUL, RMUL, MUL_ELEM, DIV,
            KRON and CONV, and a ``(row_slice, col_slice)`` pair for INDEX.

    Example:
        >>> x = LinOp(OpType.VARIABLE, (3,), data=0)
        >>> expr = LinOp(OpType.NEG, (3,), args=(x,))
    """
    type: Any
    shape: Tuple[int, int]
    args: Tuple[LinOp, ...] = ()
    data: Any = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "type", _coerce_type(self.type))
        object.__setattr__(self, "shape", normalize_shape(self.shape))
        object.__setattr__(self, "args", tuple(self.args))

    @property
    def size(self) -> int:
        """Number of entries, i.e. rows the node occupies once vectorized."""
        return flatten_shape(self.shape)

    @property
    def is_leaf(self) -> bool:
        return self.type in LEAF_TYPES

    @property
    def is_constant(self) -> bool:
        return self.type in CONSTANT_TYPES

    def iter_nodes(self) -> Iterator[LinOp]:
        """Yield every node reachable through ``args`` once, children first."""
        seen: Set[int] = set()
        stack: List[Tuple[LinOp, bool]] = [(self, False)]
        while stack:
            node, expanded = stack.pop()
            if expanded:
                yield node
                continue
            if id(node) in seen:
                continue
            seen.add(id(node))
            stack.append((node, True))
            for child in reversed(node.args):
                if id(child) not in seen:
                    stack.append((child, False))

    def variable_ids(self) -> List[Any]:
        """Ids of the VARIABLE nodes in the tree, in order of first appearance."""
        ids: List[Any] = []
        for node in self.iter_nodes():
            if node.type is OpType.VARIABLE and node.data not in ids:
                ids.append(node.data)
        return ids

    def __repr__(self) -> str:
        tag = getattr(self.type, "name", repr(self.type))
        if self.type is OpType.VARIABLE:
            return f"LinOp({tag}, shape={self.shape}, id={self.data!r})"
        return f"LinOp({tag}, shape={self.shape}, nargs={len(self.args)})"


LinOpVector = Sequence[LinOp]
