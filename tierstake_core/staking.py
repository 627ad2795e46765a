"""
Time-tiered reward accrual for TierStake.

Stakers deposit a single fungible asset into the ledger's custody and
earn a second asset (the reward asset) at an annual rate that steps up
the longer the deposit has been left untouched.  Rewards are paid from a
finite pool that only administrators replenish.

Rate Schedule
─────────────
A "month" is ``month_seconds`` (30 days by default), not a calendar
month.  The tier is chosen by the length of the current accrual window;
the first matching row wins:

    elapsed <  1 month   →   0 %
    elapsed <  6 months  →   5 %
    elapsed < 12 months  →  10 %
    otherwise            →  15 %

Accrual
───────
    reward = floor(amount × rate × elapsed / (12 × month_seconds × 100))

Linear, integer, never compounded.  Every deposit top-up, withdrawal and
claim *settles* the staker first: the reward above is paid if the pool
can cover it in full, otherwise it is forfeited (not deferred), and the
window restarts at ``now`` either way.  Settling twice at the same
timestamp pays zero the second time.

Atomicity
─────────
Each operation holds the ledger lock for its whole duration, snapshots
the ledger on entry and restores it if anything raises.  Transfers made
before the failure are compensated in reverse order and buffered events
are dropped, so a failed operation leaves no trace.  If a compensating
transfer itself fails the operation raises ``CompensationFailed`` instead
of the original error, chained onto it.
"""

from __future__ import annotations

import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum, IntEnum
from typing import Callable, Iterator, Optional

from tierstake_core.asset import AssetTransfer
from tierstake_core.errors import (
    CompensationFailed,
    InsufficientBalance,
    InsufficientStake,
    InvalidAmount,
    InvariantViolation,
    TransferFailed,
    Unauthorized,
)
from tierstake_core.events import (
    Deposited,
    EventLog,
    EventSink,
    LedgerEvent,
    PoolFunded,
    RewardPaid,
    Withdrawn,
)
from tierstake_core.invariants import InvariantChecker, LedgerSnapshot

logger = logging.getLogger("tierstake.staking")


# ── Tier definitions ────────────────────────────────────────────────────

DAY_SECONDS: int = 86_400
MONTH_SECONDS: int = 30 * DAY_SECONDS
MONTHS_PER_YEAR: int = 12
PERCENT: int = 100


class RateTier(IntEnum):
    WARMUP    = 0
    MONTH_1   = 1
    MONTHS_6  = 2
    MONTHS_12 = 3


# Maps tier → (minimum window length in months, annual rate in percent)
TIER_CONFIG: dict[RateTier, tuple[int, int]] = {
    RateTier.WARMUP:    (0,  0),
    RateTier.MONTH_1:   (1,  5),
    RateTier.MONTHS_6:  (6,  10),
    RateTier.MONTHS_12: (12, 15),
}

TIER_NAMES: dict[RateTier, str] = {
    RateTier.WARMUP:    "Warm-up",
    RateTier.MONTH_1:   "1 Month",
    RateTier.MONTHS_6:  "6 Months",
    RateTier.MONTHS_12: "12 Months",
}


def tier_for_duration(elapsed: int, month_seconds: int = MONTH_SECONDS) -> RateTier:
    """Highest tier whose minimum window length *elapsed* has reached."""
    elapsed = max(0, elapsed)
    for tier in sorted(TIER_CONFIG, reverse=True):
        min_months, _rate = TIER_CONFIG[tier]
        if elapsed >= min_months * month_seconds:
            return tier
    return RateTier.WARMUP


def rate_for_duration(elapsed: int, month_seconds: int = MONTH_SECONDS) -> int:
    """Annual rate (integer percent) for an accrual window of *elapsed* seconds."""
    return TIER_CONFIG[tier_for_duration(elapsed, month_seconds)][1]


def accrued_reward(
    amount: int,
    elapsed: int,
    month_seconds: int = MONTH_SECONDS,
) -> int:
    """Reward earned by *amount* over one window of *elapsed* seconds (floored)."""
    if amount <= 0 or elapsed <= 0:
        return 0
    rate = rate_for_duration(elapsed, month_seconds)
    return (amount * rate * elapsed) // (MONTHS_PER_YEAR * month_seconds * PERCENT)


def _require_amount(amount: int) -> int:
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise InvalidAmount(f"Amount must be an integer, got {type(amount).__name__}")
    if amount <= 0:
        raise InvalidAmount(f"Amount must be positive, got {amount}")
    return amount


# ── StakeRecord ─────────────────────────────────────────────────────────

class StakeState(Enum):
    NO_STAKE = "no_stake"
    ACTIVE = "active"


@dataclass
class StakeRecord:
    """
    One staker's position.  ``amount == 0`` is the same as no record.

    ``since`` is the start of the current accrual window: the deposit
    time or the last settlement, whichever is later.
    """
    amount: int = 0
    since: int = 0

    @property
    def is_active(self) -> bool:
        return self.amount > 0

    def elapsed(self, now: int) -> int:
        return max(0, now - self.since)

    def tier(self, now: int, month_seconds: int = MONTH_SECONDS) -> RateTier:
        return tier_for_duration(self.elapsed(now), month_seconds)

    def pending_reward(self, now: int, month_seconds: int = MONTH_SECONDS) -> int:
        return accrued_reward(self.amount, self.elapsed(now), month_seconds)

    def to_dict(self, now: int, month_seconds: int = MONTH_SECONDS) -> dict:
        tier = self.tier(now, month_seconds) if self.is_active else RateTier.WARMUP
        return {
            "amount": self.amount,
            "since": self.since,
            "state": (StakeState.ACTIVE if self.is_active else StakeState.NO_STAKE).value,
            "elapsed": self.elapsed(now) if self.is_active else 0,
            "tier": int(tier),
            "tier_name": TIER_NAMES[tier],
            "rate_pct": TIER_CONFIG[tier][1],
            "pending_reward": self.pending_reward(now, month_seconds),
        }


# ── Operation journal ───────────────────────────────────────────────────

class _Operation:
    """Transfers and events of one in-flight ledger operation."""

    __slots__ = ("name", "now", "custody", "transfers", "events")

    def __init__(self, name: str, now: int, custody: str):
        self.name = name
        self.now = now
        self.custody = custody
        # (direction, asset, counterparty, amount) in execution order
        self.transfers: list[tuple[str, AssetTransfer, str, int]] = []
        self.events: list[LedgerEvent] = []

    def pull(self, asset: AssetTransfer, payer: str, amount: int) -> None:
        """Move *amount* from *payer* into ledger custody."""
        if not asset.transfer_from(payer, self.custody, amount):
            raise TransferFailed(f"{self.name}: transfer of {amount} from {payer} failed")
        self.transfers.append(("in", asset, payer, amount))

    def pay(self, asset: AssetTransfer, payee: str, amount: int) -> None:
        """Move *amount* out of ledger custody to *payee*."""
        if not asset.transfer(payee, amount):
            raise TransferFailed(f"{self.name}: transfer of {amount} to {payee} failed")
        self.transfers.append(("out", asset, payee, amount))

    def emit(self, event: LedgerEvent) -> None:
        self.events.append(event)

    def unwind(self) -> list[str]:
        """Compensate completed transfers, newest first; returns the ones that failed."""
        failed: list[str] = []
        for direction, asset, party, amount in reversed(self.transfers):
            if direction == "in":
                ok = asset.transfer(party, amount)
            else:
                ok = asset.transfer_from(party, self.custody, amount)
            if not ok:
                failed.append(f"{direction} {amount} with {party}")
        self.transfers.clear()
        self.events.clear()
        return failed


# ── AccrualLedger ───────────────────────────────────────────────────────

class AccrualLedger:
    """
    Owns every StakeRecord plus the pool counters.

    Entry points:
      ``deposit()``       — open or replace a stake
      ``withdraw()``      — return principal (settles first)
      ``claim_reward()``  — settle without touching principal
      ``fund_pool()``     — administrator tops up the reward pool
    """

    def __init__(
        self,
        staked_asset: AssetTransfer,
        reward_asset: AssetTransfer,
        address: str = "rStakingPool",
        *,
        clock: Optional[Callable[[], float]] = None,
        is_authorized: Optional[Callable[[str], bool]] = None,
        events: Optional[EventSink] = None,
        month_seconds: int = MONTH_SECONDS,
        check_invariants: bool = True,
    ) -> None:
        if month_seconds <= 0:
            raise ValueError("month_seconds must be positive")
        self.staked_asset = staked_asset
        self.reward_asset = reward_asset
        self.address = address
        self.month_seconds = month_seconds
        self.check_invariants = check_invariants
        self.events: EventSink = events if events is not None else EventLog()

        self._clock = clock or time.time
        self._is_authorized = is_authorized or (lambda _caller: False)
        self._lock = threading.RLock()
        self._checker = InvariantChecker()

        self.stakes: dict[str, StakeRecord] = {}
        self.total_staked: int = 0
        self.reward_pool: int = 0
        self.total_funded: int = 0
        self.total_reward_paid: int = 0
        self.total_reward_forfeited: int = 0
        # principal left in custody by top-ups that replaced a stake
        self.stranded_principal: int = 0

    # ── plumbing ────────────────────────────────────────────────────

    def now(self) -> int:
        return int(self._clock())

    @contextmanager
    def _operation(self, name: str) -> Iterator[_Operation]:
        with self._lock:
            op = _Operation(name, self.now(), self.address)
            snapshot = self._checker.capture(self)
            try:
                yield op
                if self.check_invariants:
                    ok, msg = self._checker.verify(self)
                    if not ok:
                        raise InvariantViolation(msg)
            except BaseException as exc:
                self._restore(snapshot)
                failed = op.unwind()
                if failed:
                    logger.critical(
                        f"{name}: compensation failed for {', '.join(failed)}; "
                        f"custody no longer matches the ledger"
                    )
                    raise CompensationFailed(
                        f"{name} failed and could not be undone: {', '.join(failed)}"
                    ) from exc
                raise
            for event in op.events:
                self.events.emit(event)

    def _restore(self, snap: LedgerSnapshot) -> None:
        self.total_staked = snap.total_staked
        self.reward_pool = snap.reward_pool
        self.total_funded = snap.total_funded
        self.total_reward_paid = snap.total_reward_paid
        self.total_reward_forfeited = snap.total_reward_forfeited
        self.stranded_principal = snap.stranded_principal
        self.stakes = {
            staker: StakeRecord(amount=amount, since=since)
            for staker, (amount, since) in snap.stakes.items()
        }

    def _settle(self, op: _Operation, staker: str, record: StakeRecord) -> int:
        """Pay what the current window earned (if the pool covers it) and restart it."""
        elapsed = record.elapsed(op.now)
        reward = accrued_reward(record.amount, elapsed, self.month_seconds)
        paid = 0
        if reward > 0:
            if reward <= self.reward_pool:
                self.reward_pool -= reward
                self.total_reward_paid += reward
                op.pay(self.reward_asset, staker, reward)
                op.emit(RewardPaid(staker=staker, amount=reward))
                paid = reward
            else:
                # Forfeited, not carried forward
                self.total_reward_forfeited += reward
                logger.warning(
                    f"Reward of {reward} for {staker} forfeited: "
                    f"pool holds {self.reward_pool}"
                )
        record.since = op.now
        return paid

    # ── core operations ─────────────────────────────────────────────

    def deposit(self, staker: str, amount: int) -> StakeRecord:
        """
        Stake *amount* for *staker*.

        A deposit while already staked settles the old window and then
        REPLACES the record with ``{amount, now}``; it does not add to
        the previous amount.  The replaced principal stays in custody
        and is counted in ``stranded_principal``.
        """
        amount = _require_amount(amount)
        with self._operation("deposit") as op:
            available = self.staked_asset.balance_of(staker)
            if available < amount:
                raise InsufficientBalance(
                    f"Deposit of {amount} exceeds balance {available}"
                )

            # Principal first: a failed pull then needs no reward claw-back
            op.pull(self.staked_asset, staker, amount)

            record = self.stakes.get(staker)
            if record is not None and record.amount > 0:
                self._settle(op, staker, record)
                replaced = record.amount
                self.total_staked -= replaced
                self.stranded_principal += replaced
                logger.warning(
                    f"Top-up by {staker} replaced stake of {replaced} with {amount}"
                )

            self.stakes[staker] = StakeRecord(amount=amount, since=op.now)
            self.total_staked += amount
            op.emit(Deposited(staker=staker, amount=amount, time=op.now))

        logger.info(f"Deposit: {staker} staked {amount}")
        return self.get_stake(staker)

    def withdraw(self, staker: str, amount: int) -> int:
        """
        Return *amount* of principal to *staker*.

        Settles first; returns the reward that settlement paid.  The
        record is deleted when its amount reaches zero.
        """
        amount = _require_amount(amount)
        with self._operation("withdraw") as op:
            record = self.stakes.get(staker)
            have = record.amount if record is not None else 0
            if have < amount:
                raise InsufficientStake(f"Withdrawal of {amount} exceeds stake {have}")

            paid = self._settle(op, staker, record)
            record.amount -= amount
            self.total_staked -= amount
            if record.amount == 0:
                del self.stakes[staker]

            op.pay(self.staked_asset, staker, amount)
            op.emit(Withdrawn(staker=staker, amount=amount, time=op.now))

        logger.info(f"Withdraw: {staker} withdrew {amount} (reward {paid})")
        return paid

    def claim_reward(self, staker: str) -> int:
        """Settle *staker*'s window; returns the reward paid (0 if forfeited)."""
        with self._operation("claim") as op:
            record = self.stakes.get(staker)
            if record is None or record.amount <= 0:
                raise InsufficientStake(f"{staker} has no active stake")
            paid = self._settle(op, staker, record)

        logger.info(f"Claim: {staker} received {paid}")
        return paid

    def fund_pool(self, caller: str, amount: int) -> int:
        """Move *amount* of reward asset from an administrator into the pool."""
        if not self._is_authorized(caller):
            raise Unauthorized(f"{caller} may not fund the reward pool")
        amount = _require_amount(amount)
        with self._operation("fund") as op:
            self.reward_pool += amount
            self.total_funded += amount
            op.pull(self.reward_asset, caller, amount)
            op.emit(PoolFunded(amount=amount))

        logger.info(f"Pool funded by {caller}: +{amount} (pool {self.reward_pool})")
        return self.reward_pool

    # ── queries ─────────────────────────────────────────────────────

    def get_stake(self, staker: str) -> StakeRecord:
        """Copy of *staker*'s record; zero values when absent."""
        record = self.stakes.get(staker)
        if record is None:
            return StakeRecord()
        return StakeRecord(amount=record.amount, since=record.since)

    def stake_state(self, staker: str) -> StakeState:
        record = self.stakes.get(staker)
        if record is not None and record.is_active:
            return StakeState.ACTIVE
        return StakeState.NO_STAKE

    def pending_reward(self, staker: str, now: Optional[int] = None) -> int:
        """Reward the current window has accrued, before the pool cap."""
        if now is None:
            now = self.now()
        return self.get_stake(staker).pending_reward(now, self.month_seconds)

    def get_staker_summary(self, staker: str, now: Optional[int] = None) -> dict:
        if now is None:
            now = self.now()
        info = self.get_stake(staker).to_dict(now, self.month_seconds)
        info["staker"] = staker
        info["payable"] = 0 < info["pending_reward"] <= self.reward_pool
        return info

    @property
    def active_stakers(self) -> int:
        return len(self.stakes)

    def get_pool_summary(self) -> dict:
        return {
            "address": self.address,
            "total_staked": self.total_staked,
            "reward_pool": self.reward_pool,
            "total_funded": self.total_funded,
            "total_reward_paid": self.total_reward_paid,
            "total_reward_forfeited": self.total_reward_forfeited,
            "stranded_principal": self.stranded_principal,
            "active_stakers": self.active_stakers,
            "month_seconds": self.month_seconds,
        }

    def get_tier_info(self) -> list[dict]:
        return [
            {
                "tier": int(tier),
                "name": TIER_NAMES[tier],
                "min_months": min_months,
                "min_seconds": min_months * self.month_seconds,
                "rate_pct": rate,
            }
            for tier, (min_months, rate) in TIER_CONFIG.items()
        ]
