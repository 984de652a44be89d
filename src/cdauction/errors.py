"""Protocol error taxonomy.

Every failure raised by the auction, ledger and facility derives from
ProtocolError so callers can tell protocol rejections apart from bugs.
"""

from __future__ import annotations


class ProtocolError(Exception):
    """Base class for all protocol rejections."""


class InvalidParamsError(ProtocolError):
    """Malformed input: zero tick size, zero period, out-of-range percentage."""


class InvalidStateError(ProtocolError):
    """Disabled component, unconfigured asset-period, unknown token or position."""


class ReentrancyError(InvalidStateError):
    """A guarded entry point was re-entered before the outer call finished."""


class InsufficientFundsError(ProtocolError):
    """Amount exceeds available capacity, balance, commitment or debt."""


class SlippageError(ProtocolError):
    """Computed output is below the caller's minimum."""


class ConvertedAmountZeroError(ProtocolError):
    """A bid would convert into zero output."""


class InsolventError(ProtocolError):
    """Post-mutation solvency check failed. Always fatal for the call."""


class UnauthorizedError(ProtocolError):
    """Caller lacks the role or ownership required for the action."""
