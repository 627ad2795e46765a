"""
Asset-transfer collaborator for TierStake.

The accrual ledger never touches balances directly; it asks an asset
collaborator to move funds and treats a ``False`` result as a failed
transfer.  Two instances are used per ledger: the staked asset and the
reward asset.

``FungibleAsset`` is the in-memory implementation used by the node and
the test-suite.  Each instance is bound to an *operator* identity (the
ledger's custody address): ``transfer(payee, amount)`` moves funds out of
the operator's balance, ``transfer_from(payer, payee, amount)`` moves
funds between any two identities.
"""

from __future__ import annotations

import logging
from typing import Protocol

logger = logging.getLogger("tierstake.asset")


class AssetTransfer(Protocol):
    """Interface the ledger consumes for every asset movement."""

    def transfer_from(self, payer: str, payee: str, amount: int) -> bool: ...

    def transfer(self, payee: str, amount: int) -> bool: ...

    def balance_of(self, identity: str) -> int: ...


class FungibleAsset:
    """Integer-denominated token with per-identity balances."""

    def __init__(self, symbol: str, operator: str):
        self.symbol = symbol
        self.operator = operator
        self.balances: dict[str, int] = {}
        self.total_supply: int = 0

    def mint(self, identity: str, amount: int) -> None:
        """Create *amount* new units for *identity* (genesis / faucet use)."""
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise ValueError(f"Mint amount must be a positive integer, got {amount!r}")
        self.balances[identity] = self.balances.get(identity, 0) + amount
        self.total_supply += amount

    def balance_of(self, identity: str) -> int:
        return self.balances.get(identity, 0)

    def transfer_from(self, payer: str, payee: str, amount: int) -> bool:
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            return False
        have = self.balances.get(payer, 0)
        if have < amount:
            logger.debug(
                f"{self.symbol}: transfer {payer} -> {payee} of {amount} "
                f"rejected (balance {have})"
            )
            return False
        self.balances[payer] = have - amount
        if self.balances[payer] == 0:
            del self.balances[payer]
        self.balances[payee] = self.balances.get(payee, 0) + amount
        return True

    def transfer(self, payee: str, amount: int) -> bool:
        return self.transfer_from(self.operator, payee, amount)

    def to_dict(self) -> dict:
        return {
            "symbol": self.symbol,
            "operator": self.operator,
            "total_supply": self.total_supply,
            "holders": len(self.balances),
        }
