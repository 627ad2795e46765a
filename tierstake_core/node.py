"""
StakingNode — one running TierStake ledger with its collaborators.

Builds, from a ``TierStakeConfig``:
  - the staked and reward ``FungibleAsset`` instances (custody = ledger address)
  - the ``AdminRegistry`` gating ``fund_pool``
  - the ``EventLog`` sink
  - the ``AccrualLedger`` itself
  - the ``NonceTracker`` the API uses for replay protection

Genesis balances from ``[genesis]`` are minted on construction.
"""

from __future__ import annotations

import logging
import time
from typing import Callable, Optional

from tierstake_core.access import AdminRegistry
from tierstake_core.asset import FungibleAsset
from tierstake_core.auth import NonceTracker
from tierstake_core.config import TierStakeConfig
from tierstake_core.events import EventLog
from tierstake_core.staking import AccrualLedger

logger = logging.getLogger("tierstake.node")


class StakingNode:
    """Wires config → collaborators → ledger."""

    def __init__(
        self,
        config: Optional[TierStakeConfig] = None,
        *,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.config = config or TierStakeConfig()
        cfg = self.config.staking
        self.started_at = time.time()

        self.staked_asset = FungibleAsset(cfg.staked_symbol, cfg.ledger_address)
        self.reward_asset = FungibleAsset(cfg.reward_symbol, cfg.ledger_address)
        self.admins = AdminRegistry(cfg.admins)
        self.events = EventLog(max_events=cfg.event_history)
        self.nonces = NonceTracker()
        self.ledger = AccrualLedger(
            self.staked_asset,
            self.reward_asset,
            cfg.ledger_address,
            clock=clock,
            is_authorized=self.admins.is_authorized,
            events=self.events,
            month_seconds=cfg.month_seconds,
            check_invariants=cfg.check_invariants,
        )
        self._apply_genesis()
        if not self.admins.admins:
            logger.warning("No admins configured — the reward pool cannot be funded")

    def _apply_genesis(self) -> None:
        genesis = self.config.genesis
        for identity, amount in genesis.staked.items():
            self.staked_asset.mint(identity, int(amount))
        for identity, amount in genesis.reward.items():
            self.reward_asset.mint(identity, int(amount))
        if genesis.staked or genesis.reward:
            logger.info(
                f"Genesis: {len(genesis.staked)} {self.staked_asset.symbol} and "
                f"{len(genesis.reward)} {self.reward_asset.symbol} balances minted"
            )

    def balances(self, identity: str) -> dict:
        return {
            "address": identity,
            self.staked_asset.symbol: self.staked_asset.balance_of(identity),
            self.reward_asset.symbol: self.reward_asset.balance_of(identity),
        }

    def status(self) -> dict:
        return {
            "ledger": self.ledger.get_pool_summary(),
            "assets": [self.staked_asset.to_dict(), self.reward_asset.to_dict()],
            "admins": len(self.admins),
            "events": len(self.events),
            "uptime": time.time() - self.started_at,
        }
