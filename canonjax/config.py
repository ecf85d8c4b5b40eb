"""Options controlling how expression forests are lowered."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal, Optional

import numpy as np


@dataclass(frozen=True)
class CanonConfig:
    """Configuration for the matrix builder.

    Args:
        cache_scope: Lifetime of the node memo table. ``"build"`` shares
            results of nodes reachable from several roots across the whole
            call, ``"root"`` clears the table before each root.
        zero_tol: Entries of ``A`` whose magnitude is at most this value are
            dropped after duplicates are summed. ``None`` keeps explicit zeros.
        check_overlap: Reject variables whose column ranges overlap.
        dtype: Floating point dtype of the coefficient values and ``b``.
    """
    cache_scope: Literal["build", "root"] = "build"
    zero_tol: Optional[float] = 0.0
    check_overlap: bool = True
    dtype: str = "float64"

    def __post_init__(self) -> None:
        valid_scopes = {"build", "root"}
        if self.cache_scope not in valid_scopes:
            raise ValueError(
                f"Invalid cache_scope: {self.cache_scope}. Valid options: {valid_scopes}"
            )

        if self.zero_tol is not None and not self.zero_tol >= 0:
            raise ValueError(f"zero_tol must be non-negative or None, got {self.zero_tol}")

        try:
            kind = np.dtype(self.dtype).kind
        except TypeError as exc:
            raise ValueError(f"Invalid dtype: {self.dtype!r}") from exc
        if kind != "f":
            raise ValueError(f"dtype must be a floating point type, got {self.dtype!r}")

    @property
    def np_dtype(self) -> np.dtype:
        return np.dtype(self.dtype)


DEFAULT_CONFIG = CanonConfig()
