"""Exceptions raised while lowering linear-operator trees.

Every error records the operator tag and the position in the forest of the
node that failed, filled in by the matrix builder as the error leaves the
innermost node being evaluated.
"""

from __future__ import annotations

from typing import Any, Optional, Tuple

from canonjax.utils.checking import create_error_message


def _tag_name(op_type: Any) -> str:
    return getattr(op_type, "name", repr(op_type))


class CanonError(Exception):
    """Base class for canonicalization failures.

    Args:
        detail: One line description of what went wrong.
        op_type: Tag of the offending node, if known.
        expr_index: Position of the offending root in the forest, if known.
        suggestion: Optional hint appended to the message.
        **context: Extra key/value pairs printed in the message.
    """

    error_type = "canonicalization error"

    def __init__(
        self,
        detail: str,
        *,
        op_type: Any = None,
        expr_index: Optional[int] = None,
        suggestion: Optional[str] = None,
        **context: Any,
    ) -> None:
        self.detail = detail
        self.op_type = op_type
        self.expr_index = expr_index
        self.suggestion = suggestion
        self.context = context
        super().__init__(self._format())

    def _format(self) -> str:
        context = {"detail": self.detail}
        if self.op_type is not None:
            context["operator"] = _tag_name(self.op_type)
        if self.expr_index is not None:
            context["expression"] = self.expr_index
        context.update(self.context)
        return create_error_message(self.error_type, context, self.suggestion)

    def annotate(self, op_type: Any, expr_index: Optional[int], **context: Any) -> CanonError:
        """Fill in the failing node's tag and forest position if still unset."""
        if self.op_type is None:
            self.op_type = op_type
            for key, value in context.items():
                self.context.setdefault(key, value)
        if self.expr_index is None:
            self.expr_index = expr_index
        self.args = (self._format(),)
        return self


class UnknownVariableError(CanonError, LookupError):
    """A VARIABLE node's id is missing from ``id_to_col``."""

    error_type = "unknown variable"

    def __init__(self, var_id: Any, **kwargs: Any) -> None:
        self.var_id = var_id
        kwargs.setdefault(
            "suggestion", "Add the variable to id_to_col before canonicalizing."
        )
        super().__init__(f"Variable id {var_id!r} has no column", **kwargs)


class UnsupportedOperatorError(CanonError, NotImplementedError):
    """The evaluator has no lowering for an operator tag."""

    error_type = "unsupported operator"


class DimensionMismatchError(CanonError, ValueError):
    """Shapes are incompatible at a combination point."""

    error_type = "dimension mismatch"


class ColumnOverlapError(DimensionMismatchError):
    """Two distinct variables were assigned overlapping column ranges."""

    error_type = "column overlap"


class IndexOutOfRangeError(CanonError, IndexError):
    """An expression index or row offset falls outside the offset table."""

    error_type = "index out of range"


class MalformedNodeError(CanonError, ValueError):
    """A node has the wrong number of arguments or an unusable payload."""

    error_type = "malformed node"


class DivisionByZeroError(CanonError, ValueError):
    """A DIV node divides by a constant containing zeros."""

    error_type = "division by zero"


def check_shapes_match(
    shape1: Tuple[int, int],
    shape2: Tuple[int, int],
    what: str = "operands",
) -> None:
    """Check that two shapes are identical for element-wise combination.

    Args:
        shape1: First shape.
        shape2: Second shape.
        what: Description of what is being combined.

    Raises:
        DimensionMismatchError: If shapes differ.
    """
    if tuple(shape1) != tuple(shape2):
        raise DimensionMismatchError(
            f"Shapes of {what} do not match",
            expected=tuple(shape1),
            got=tuple(shape2),
        )
