"""
Ledger notifications for TierStake.

The accrual ledger publishes one structured event per observable effect:

  - ``Deposited``   — a stake was opened or replaced
  - ``Withdrawn``   — principal left custody (reward reported as 0; any
                      reward was already paid by the settlement)
  - ``RewardPaid``  — a settlement paid accrued reward from the pool
  - ``PoolFunded``  — an administrator replenished the reward pool

Events are fire-and-forget: the ledger never waits for, or depends on,
what a subscriber does with them.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from typing import Callable, Protocol, Union

logger = logging.getLogger("tierstake.events")


@dataclass(frozen=True)
class Deposited:
    staker: str
    amount: int
    time: int
    kind: str = field(default="Deposited", init=False)


@dataclass(frozen=True)
class Withdrawn:
    staker: str
    amount: int
    time: int
    reward: int = 0
    kind: str = field(default="Withdrawn", init=False)


@dataclass(frozen=True)
class RewardPaid:
    staker: str
    amount: int
    kind: str = field(default="RewardPaid", init=False)


@dataclass(frozen=True)
class PoolFunded:
    amount: int
    kind: str = field(default="PoolFunded", init=False)


LedgerEvent = Union[Deposited, Withdrawn, RewardPaid, PoolFunded]


class EventSink(Protocol):
    def emit(self, event: LedgerEvent) -> None: ...


class EventLog:
    """
    Ordered in-memory event sink with optional subscribers.

    Only the newest *max_events* are retained (0 keeps everything).
    Indices are absolute: the first event ever emitted is 0, and
    ``first_index`` is the oldest one still held.
    """

    def __init__(self, max_events: int = 10_000) -> None:
        if max_events < 0:
            raise ValueError("max_events must be >= 0")
        self.max_events = max_events
        self.events: list[LedgerEvent] = []
        self.first_index = 0
        self._subscribers: list[Callable[[LedgerEvent], None]] = []

    def subscribe(self, callback: Callable[[LedgerEvent], None]) -> None:
        self._subscribers.append(callback)

    def unsubscribe(self, callback: Callable[[LedgerEvent], None]) -> None:
        if callback in self._subscribers:
            self._subscribers.remove(callback)

    def emit(self, event: LedgerEvent) -> None:
        self.events.append(event)
        logger.debug(f"event #{len(self) - 1}: {event}")
        if self.max_events and len(self.events) > self.max_events:
            excess = len(self.events) - self.max_events
            del self.events[:excess]
            self.first_index += excess
        for callback in list(self._subscribers):
            try:
                callback(event)
            except Exception:
                # A broken subscriber must not affect a committed operation
                logger.exception(f"Event subscriber {callback!r} failed")

    def events_since(self, index: int = 0) -> list[LedgerEvent]:
        return self.events[max(0, index - self.first_index):]

    def to_dicts(self, index: int = 0) -> list[dict]:
        return [asdict(e) for e in self.events_since(index)]

    def __len__(self) -> int:
        """Total events ever emitted, including ones no longer retained."""
        return self.first_index + len(self.events)
