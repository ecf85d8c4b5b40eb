"""Test column and row placement tables."""

import numpy as np
import pytest

from canonjax.errors import (
    ColumnOverlapError,
    DimensionMismatchError,
    IndexOutOfRangeError,
    UnknownVariableError,
)
from canonjax.index_tables import ColumnTable, ContiguousRowOffsets, ExplicitRowOffsets
from canonjax.linop import LinOp, OpType


def var(var_id, shape):
    return LinOp(OpType.VARIABLE, shape, data=var_id)


class TestColumnTable:
    """Variable id to column lookups."""

    def test_resolve_column(self):
        table = ColumnTable({0: 0, 5: 3, np.int64(2): np.int64(9)})

        assert table.resolve_column(5) == 3
        assert table.resolve_column(2) == 9
        assert 0 in table and 1 not in table
        assert len(table) == 3
        assert table.as_dict() == {0: 0, 5: 3, 2: 9}

    def test_unknown_variable(self):
        table = ColumnTable({0: 0})

        with pytest.raises(UnknownVariableError, match="Variable id 4"):
            table.resolve_column(4)
        with pytest.raises(UnknownVariableError):
            table.resolve_column("0")

    @pytest.mark.parametrize(
        "id_to_col",
        [{-1: 0}, {0: -3}, {True: 0}, {"0": 0}, {0: 1.5}],
    )
    def test_boundary_validation(self, id_to_col):
        with pytest.raises(ValueError):
            ColumnTable(id_to_col)

    def test_requires_mapping(self):
        with pytest.raises(ValueError, match="mapping"):
            ColumnTable([(0, 0)])

    def test_n_cols_from_registered_widths(self):
        table = ColumnTable({0: 0, 1: 4, 2: 100})
        assert table.n_cols == 0

        table.register(0, 4)
        table.register(1, 6)
        table.register(0, 4)

        # Variable 2 was never met, so its column does not count.
        assert table.n_cols == 10

    def test_width_conflict(self):
        table = ColumnTable({0: 0})
        table.register(0, 2)

        with pytest.raises(DimensionMismatchError, match="two different sizes"):
            table.register(0, 3)

    def test_overlap_detection(self):
        table = ColumnTable({0: 4, 1: 0, 2: 6, 3: 2})
        table.register(0, 2)
        table.register(1, 2)

        with pytest.raises(ColumnOverlapError):
            table.register(3, 3)

        table.register(2, 1)
        assert table.n_cols == 7

    def test_overlap_check_disabled(self):
        table = ColumnTable({0: 0, 1: 1}, check_overlap=False)
        table.register(0, 3)
        table.register(1, 3)

        assert table.n_cols == 4


class TestRowOffsets:
    """Row placement of root expressions."""

    def test_contiguous(self):
        roots = [var(0, (2, 1)), var(1, (3, 2)), var(2, (1, 1))]
        offsets = ContiguousRowOffsets(roots)

        assert [offsets.resolve_row(i) for i in range(3)] == [0, 2, 8]
        assert offsets.n_rows == 9
        assert len(offsets) == 3

        with pytest.raises(IndexOutOfRangeError):
            offsets.resolve_row(3)

    def test_contiguous_empty(self):
        offsets = ContiguousRowOffsets([])
        assert offsets.n_rows == 0
        assert len(offsets) == 0

    def test_explicit(self):
        offsets = ExplicitRowOffsets([5, 0, np.int64(9)], 3)

        assert offsets.resolve_row(0) == 5
        assert offsets.resolve_row(2) == 9
        with pytest.raises(IndexOutOfRangeError):
            offsets.resolve_row(3)
        with pytest.raises(IndexOutOfRangeError):
            offsets.resolve_row(-1)

    def test_explicit_length_must_match(self):
        with pytest.raises(IndexOutOfRangeError, match="one entry per expression"):
            ExplicitRowOffsets([0], 2)
        with pytest.raises(IndexOutOfRangeError):
            ExplicitRowOffsets([0, 1, 2], 2)

    def test_explicit_rejects_negative(self):
        with pytest.raises(IndexOutOfRangeError) as info:
            ExplicitRowOffsets([0, -4], 2)
        assert info.value.expr_index == 1

    def test_overlapping_blocks(self):
        roots = [var(0, (3, 1)), var(1, (2, 1)), var(2, (1, 1))]

        assert ExplicitRowOffsets([0, 3, 5], 3).overlapping_blocks(roots) == []
        assert ExplicitRowOffsets([0, 2, 10], 3).overlapping_blocks(roots) == [(0, 1)]
        assert ExplicitRowOffsets([4, 0, 1], 3).overlapping_blocks(roots) == [(1, 2)]
