"""
Error taxonomy for the TierStake accrual ledger.

Every failure raised by a ledger operation derives from ``StakingError``
(itself a ``ValueError``) so callers can catch the whole family at once.
A raised error means the operation left no trace: ledger state and asset
balances are exactly as they were before the call.  The one exception is
``CompensationFailed``, raised when undoing a partial operation did not
work; the ledger counters are restored but custody no longer matches them.

Reward forfeiture (accrued reward larger than the pool) is *not* an error.
"""

from __future__ import annotations


class StakingError(ValueError):
    """Base class for all accrual-ledger failures."""


class InvalidAmount(StakingError):
    """A zero, negative or non-integer amount was supplied."""


class InsufficientBalance(InvalidAmount):
    """The advisory balance check before a deposit failed."""


class InsufficientStake(StakingError):
    """Withdrawal or claim against an absent or too-small stake."""


class Unauthorized(StakingError):
    """Administrative operation attempted by a non-administrator."""


class TransferFailed(StakingError):
    """The asset-transfer collaborator reported failure."""


class InvariantViolation(StakingError):
    """Post-operation ledger invariants did not hold; the operation was rolled back."""


class CompensationFailed(StakingError):
    """A failed operation's completed transfers could not all be reversed."""
