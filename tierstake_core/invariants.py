"""
Post-operation invariant checks for the TierStake accrual ledger.

  - total_staked equals the sum of every active record's amount
  - the reward pool is never negative
  - no record with a zero or negative amount stays in the mapping
  - the pool only moves by funding and paid reward
  - cumulative paid / funded / forfeited counters never decrease

The checker captures a snapshot before an operation runs and verifies the
ledger afterwards.  The same snapshot doubles as the rollback image when
an operation fails.
"""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass
class LedgerSnapshot:
    """Snapshot of the accrual ledger taken before an operation."""
    total_staked: int = 0
    reward_pool: int = 0
    total_funded: int = 0
    total_reward_paid: int = 0
    total_reward_forfeited: int = 0
    stranded_principal: int = 0
    # staker -> (amount, since)
    stakes: dict[str, tuple[int, int]] = field(default_factory=dict)


def take_snapshot(ledger) -> LedgerSnapshot:
    return LedgerSnapshot(
        total_staked=ledger.total_staked,
        reward_pool=ledger.reward_pool,
        total_funded=ledger.total_funded,
        total_reward_paid=ledger.total_reward_paid,
        total_reward_forfeited=ledger.total_reward_forfeited,
        stranded_principal=ledger.stranded_principal,
        stakes={k: (r.amount, r.since) for k, r in ledger.stakes.items()},
    )


class InvariantChecker:
    """
    Captures a pre-operation snapshot of the ledger and validates
    invariants after the operation is applied.
    """

    def __init__(self):
        self._snapshot: LedgerSnapshot | None = None

    def capture(self, ledger) -> LedgerSnapshot:
        self._snapshot = take_snapshot(ledger)
        return self._snapshot

    def verify(self, ledger) -> tuple[bool, str]:
        """
        Verify all invariants against the current ledger state.
        Returns (passed, error_message).
        """
        errors: list[str] = []
        checks = [
            self._check_total_staked,
            self._check_pool_non_negative,
            self._check_no_empty_records,
        ]
        if self._snapshot is not None:
            checks += [
                self._check_pool_conservation,
                self._check_counters_monotonic,
            ]
        for check in checks:
            ok, msg = check(ledger)
            if not ok:
                errors.append(msg)

        self._snapshot = None
        if errors:
            return False, "; ".join(errors)
        return True, ""

    def _check_total_staked(self, ledger) -> tuple[bool, str]:
        actual = sum(r.amount for r in ledger.stakes.values())
        if ledger.total_staked != actual:
            return (False,
                    f"total_staked mismatch: recorded {ledger.total_staked}, "
                    f"sum of stakes {actual}")
        return True, ""

    def _check_pool_non_negative(self, ledger) -> tuple[bool, str]:
        if ledger.reward_pool < 0:
            return False, f"Negative reward pool: {ledger.reward_pool}"
        return True, ""

    def _check_no_empty_records(self, ledger) -> tuple[bool, str]:
        for staker, record in ledger.stakes.items():
            if record.amount <= 0:
                return False, f"Empty stake record left for {staker}: {record.amount}"
        return True, ""

    def _check_pool_conservation(self, ledger) -> tuple[bool, str]:
        """pool_after == pool_before + funded - paid."""
        snap = self._snapshot
        funded = ledger.total_funded - snap.total_funded
        paid = ledger.total_reward_paid - snap.total_reward_paid
        expected = snap.reward_pool + funded - paid
        if ledger.reward_pool != expected:
            return (False,
                    f"Reward pool drift: expected {expected}, got {ledger.reward_pool}")
        return True, ""

    def _check_counters_monotonic(self, ledger) -> tuple[bool, str]:
        snap = self._snapshot
        for name in ("total_funded", "total_reward_paid",
                     "total_reward_forfeited", "stranded_principal"):
            before = getattr(snap, name)
            after = getattr(ledger, name)
            if after < before:
                return False, f"{name} decreased: {before} -> {after}"
        return True, ""
