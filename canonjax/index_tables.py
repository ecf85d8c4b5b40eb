"""Column and row placement tables.

``ColumnTable`` maps variable ids to the first column of ``A`` they occupy.
The row offset tables say where each root expression's block of rows starts,
either stacked contiguously in forest order or at caller supplied offsets.
"""

from __future__ import annotations

import bisect
from itertools import accumulate
from typing import Any, Dict, List, Mapping, Sequence, Tuple

from canonjax.errors import (
    ColumnOverlapError,
    DimensionMismatchError,
    IndexOutOfRangeError,
    UnknownVariableError,
)
from canonjax.linop import LinOp
from canonjax.utils.checking import check_index


class ColumnTable:
    """Typed ``id_to_col`` table validated at the boundary.

    Variable widths are unknown until the builder meets each VARIABLE node,
    so overlap between column ranges is checked as variables are registered.

    Args:
        id_to_col: Mapping from non-negative integer variable id to column.
        check_overlap: Reject distinct variables with overlapping columns.

    Raises:
        ValueError: If an id or column is not a non-negative integer.
    """

    def __init__(self, id_to_col: Mapping[int, int], check_overlap: bool = True) -> None:
        if not isinstance(id_to_col, Mapping):
            raise ValueError(f"id_to_col must be a mapping, got {type(id_to_col).__name__}")
        self._columns: Dict[int, int] = {
            check_index(var_id, "Variable id"): check_index(col, f"Column of variable {var_id}")
            for var_id, col in id_to_col.items()
        }
        self.check_overlap = check_overlap
        self._widths: Dict[int, int] = {}
        # Sorted (start, stop, var_id) column ranges of registered variables.
        self._ranges: List[Tuple[int, int, int]] = []

    def __len__(self) -> int:
        return len(self._columns)

    def __contains__(self, var_id: Any) -> bool:
        return var_id in self._columns

    def as_dict(self) -> Dict[int, int]:
        return dict(self._columns)

    def resolve_column(self, var_id: Any) -> int:
        """Return the first column of ``var_id``.

        Raises:
            UnknownVariableError: If the id is not in the table.
        """
        try:
            return self._columns[var_id]
        except (KeyError, TypeError):
            raise UnknownVariableError(var_id, known_ids=len(self._columns)) from None

    def register(self, var_id: int, width: int) -> None:
        """Record the number of columns ``var_id`` occupies.

        Raises:
            DimensionMismatchError: If the id was seen before with another width.
            ColumnOverlapError: If its columns overlap another variable's.
        """
        previous = self._widths.get(var_id)
        if previous is not None:
            if previous != width:
                raise DimensionMismatchError(
                    f"Variable id {var_id} used with two different sizes",
                    expected=previous,
                    got=width,
                )
            return

        start = self.resolve_column(var_id)
        stop = start + width
        if self.check_overlap and width > 0:
            pos = bisect.bisect_left(self._ranges, (start, stop, var_id))
            for other in self._ranges[max(pos - 1, 0):pos + 1]:
                other_start, other_stop, other_id = other
                if other_start < stop and start < other_stop:
                    raise ColumnOverlapError(
                        f"Columns of variables {other_id} and {var_id} overlap",
                        first=(other_start, other_stop),
                        second=(start, stop),
                    )
            bisect.insort(self._ranges, (start, stop, var_id))
        self._widths[var_id] = width

    @property
    def n_cols(self) -> int:
        """One past the last column used by any registered variable."""
        return max(
            (self._columns[var_id] + width for var_id, width in self._widths.items()),
            default=0,
        )


class ContiguousRowOffsets:
    """Rows assigned back to back in forest order, starting at zero."""

    def __init__(self, roots: Sequence[LinOp]) -> None:
        sizes = [root.size for root in roots]
        self._starts = [0] + list(accumulate(sizes))[:-1] if sizes else []
        self._n_rows = sum(sizes)

    def __len__(self) -> int:
        return len(self._starts)

    def resolve_row(self, expr_index: int) -> int:
        if not 0 <= expr_index < len(self._starts):
            raise IndexOutOfRangeError(
                f"Expression index {expr_index} outside forest of {len(self._starts)}",
                expr_index=expr_index,
            )
        return self._starts[expr_index]

    @property
    def n_rows(self) -> int:
        return self._n_rows


class ExplicitRowOffsets:
    """Rows placed at caller supplied offsets, one per root.

    Args:
        constr_offsets: Starting row of each root expression.
        n_roots: Number of roots in the forest the table is used with.

    Raises:
        IndexOutOfRangeError: If the table length differs from ``n_roots``
            or an offset is negative.
    """

    def __init__(self, constr_offsets: Sequence[int], n_roots: int) -> None:
        offsets = list(constr_offsets)
        if len(offsets) != n_roots:
            raise IndexOutOfRangeError(
                "constr_offsets must have one entry per expression",
                offsets=len(offsets),
                expressions=n_roots,
            )
        self._offsets: List[int] = []
        for i, offset in enumerate(offsets):
            try:
                self._offsets.append(check_index(offset, f"Offset of expression {i}"))
            except ValueError as exc:
                raise IndexOutOfRangeError(str(exc), expr_index=i) from None

    def __len__(self) -> int:
        return len(self._offsets)

    def resolve_row(self, expr_index: int) -> int:
        if not 0 <= expr_index < len(self._offsets):
            raise IndexOutOfRangeError(
                f"Expression index {expr_index} outside offset table of {len(self._offsets)}",
                expr_index=expr_index,
            )
        return self._offsets[expr_index]

    def overlapping_blocks(self, roots: Sequence[LinOp]) -> List[Tuple[int, int]]:
        """Pairs of expression indices whose row blocks share rows."""
        blocks = sorted(
            (self._offsets[i], self._offsets[i] + root.size, i)
            for i, root in enumerate(roots)
            if root.size > 0
        )
        pairs = []
        stop_max, owner = -1, None
        for start, stop, i in blocks:
            if start < stop_max:
                pairs.append((owner, i))
            if stop > stop_max:
                stop_max, owner = stop, i
        return pairs
