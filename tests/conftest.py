"""
Shared pytest fixtures for the TierStake test suite.
"""

import pytest

from tierstake_core.access import AdminRegistry
from tierstake_core.asset import FungibleAsset
from tierstake_core.events import EventLog
from tierstake_core.staking import AccrualLedger

LEDGER = "rStakingPool"
ADMIN = "rAdmin"


class FakeClock:
    """Manually advanced clock; call it to read the current time."""

    def __init__(self, start: int = 0):
        self.t = start

    def __call__(self) -> int:
        return self.t

    def advance(self, seconds: int) -> None:
        self.t += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def staked_asset():
    """Staked asset with two funded stakers."""
    asset = FungibleAsset("STK", LEDGER)
    asset.mint("rAlice", 1_000_000)
    asset.mint("rBob", 1_000_000)
    return asset


@pytest.fixture
def reward_asset():
    """Reward asset; only the admin holds any."""
    asset = FungibleAsset("RWD", LEDGER)
    asset.mint(ADMIN, 10_000_000)
    return asset


@pytest.fixture
def events():
    return EventLog()


@pytest.fixture
def admins():
    return AdminRegistry([ADMIN])


@pytest.fixture
def ledger(staked_asset, reward_asset, clock, events, admins):
    """Empty ledger at t=0 with an unfunded reward pool."""
    return AccrualLedger(
        staked_asset,
        reward_asset,
        LEDGER,
        clock=clock,
        is_authorized=admins.is_authorized,
        events=events,
    )


@pytest.fixture
def funded_ledger(ledger):
    """Ledger whose reward pool holds 1,000,000."""
    ledger.fund_pool(ADMIN, 1_000_000)
    return ledger
