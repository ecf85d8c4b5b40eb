#!/usr/bin/env python3
"""Canonicalize a small constrained least-squares model with CANONJAX.

The modeling layer hands over one expression tree per block of rows:

    objective residual:   C @ X - D          (4 x 3)
    equality block:       sum(X) - 1         (1 x 1)
    inequality block:     X[0, :]^T + t      (3 x 1)

where ``X`` is a 2 x 3 variable and ``t`` a scalar promoted to a vector.
We build the problem data once with contiguous rows and once with explicit
row offsets (e.g. constraints grouped by cone), then check that ``A x + b``
reproduces the expressions at a random point.
"""

import logging

import jax
import jax.numpy as jnp
import numpy as np

import canonjax as cj
from canonjax import LinOp, OpType


def build_forest(rng: np.random.Generator):
    """Create the three root expressions and the variable column table."""
    C = rng.normal(size=(4, 2))
    D = rng.normal(size=(4, 3))

    X = LinOp(OpType.VARIABLE, (2, 3), data=0)
    t = LinOp(OpType.VARIABLE, (1, 1), data=1)

    residual = LinOp(
        OpType.SUM,
        (4, 3),
        args=(
            LinOp(OpType.MUL, (4, 3), args=(X,), data=LinOp(OpType.DENSE_CONST, (4, 2), data=C)),
            LinOp(OpType.DENSE_CONST, (4, 3), data=-D),
        ),
    )
    budget = LinOp(
        OpType.SUM,
        (1, 1),
        args=(
            LinOp(OpType.SUM_ENTRIES, (1, 1), args=(X,)),
            LinOp(OpType.SCALAR_CONST, (1, 1), data=-1.0),
        ),
    )
    first_row = LinOp(OpType.INDEX, (1, 3), args=(X,), data=(slice(0, 1), slice(None)))
    bound = LinOp(
        OpType.SUM,
        (3, 1),
        args=(
            LinOp(OpType.TRANSPOSE, (3, 1), args=(first_row,)),
            LinOp(OpType.PROMOTE, (3, 1), args=(t,)),
        ),
    )

    id_to_col = {0: 0, 1: 6}
    return [residual, budget, bound], id_to_col, (C, D)


def main():
    jax.config.update("jax_enable_x64", True)
    logging.basicConfig(level=logging.DEBUG, format="%(name)s: %(message)s")

    rng = np.random.default_rng(0)
    roots, id_to_col, (C, D) = build_forest(rng)

    print("Contiguous rows")
    print("=" * 40)
    data = cj.build_without_offsets(roots, id_to_col)
    print(f"A: {data.n_rows} x {data.n_cols}, {data.nnz} non-zeros")

    X_val = rng.normal(size=(2, 3))
    t_val = 0.3
    x = jnp.concatenate([jnp.asarray(X_val.ravel(order="F")), jnp.array([t_val])])
    expected = np.concatenate([
        (C @ X_val - D).ravel(order="F"),
        [X_val.sum() - 1.0],
        X_val[0, :] + t_val,
    ])
    print(f"max |A x + b - expr| = {np.max(np.abs(data.evaluate(x) - expected)):.2e}")

    print()
    print("Explicit offsets (equality first, then inequality, then objective)")
    print("=" * 40)
    placed = cj.build_with_offsets(roots, id_to_col, constr_offsets=[4, 0, 1])
    print(f"A: {placed.n_rows} x {placed.n_cols}, {placed.nnz} non-zeros")
    print(f"b[:4] = {placed.b[:4]}")

    try:
        cj.build_without_offsets(roots, {0: 0})
    except cj.UnknownVariableError as exc:
        print()
        print(exc)


if __name__ == "__main__":
    main()
