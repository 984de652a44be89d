"""Integer mul-div with explicit rounding direction."""

from __future__ import annotations

from cdauction.errors import InvalidParamsError


def _check(x: int, y: int, d: int) -> None:
    if d == 0:
        raise InvalidParamsError("mul_div: division by zero")
    if x < 0 or y < 0 or d < 0:
        raise InvalidParamsError("mul_div: negative operand ({}, {}, {})".format(x, y, d))


def mul_div(x: int, y: int, d: int) -> int:
    """floor(x * y / d)."""
    _check(x, y, d)
    return (x * y) // d


def mul_div_up(x: int, y: int, d: int) -> int:
    """ceil(x * y / d)."""
    _check(x, y, d)
    q, r = divmod(x * y, d)
    return q + 1 if r else q
