"""Validation and checking utilities."""

from __future__ import annotations

from numbers import Integral
from typing import Any


def check_index(value: Any, what: str) -> int:
    """Check that a table entry is a non-negative integer.

    Args:
        value: Value to validate (Python or numpy integer).
        what: Name of the value used in the error message.

    Returns:
        The value as a plain ``int``.

    Raises:
        ValueError: If value is not a non-negative integer. Booleans are
            rejected even though they are integers.
    """
    if isinstance(value, bool) or not isinstance(value, Integral):
        raise ValueError(f"{what} must be an integer, got {type(value).__name__}")
    if value < 0:
        raise ValueError(f"{what} must be non-negative, got {value}")
    return int(value)


def create_error_message(
    error_type: str,
    context: dict,
    suggestion: str | None = None,
) -> str:
    """Create informative error message.

    Args:
        error_type: Type of error.
        context: Context information.
        suggestion: Optional suggestion for fixing.

    Returns:
        Formatted error message.
    """
    message = f"CANONJAX {error_type}:"

    for key, value in context.items():
        message += f"\n  {key}: {value}"

    if suggestion:
        message += f"\n\nSuggestion: {suggestion}"

    return message
