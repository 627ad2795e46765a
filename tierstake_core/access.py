"""
Access control for TierStake administrative operations.

Only ``fund_pool`` is gated.  The ledger accepts any callable of the form
``is_authorized(caller) -> bool``; ``AdminRegistry`` is the default one,
backed by the ``[staking] admins`` list in the config file.
"""

from __future__ import annotations

import logging
from typing import Iterable

logger = logging.getLogger("tierstake.access")


class AdminRegistry:
    """Set of identities allowed to fund the reward pool."""

    def __init__(self, admins: Iterable[str] = ()):
        self.admins: set[str] = {a for a in admins if a}

    def add(self, identity: str) -> None:
        if not identity:
            raise ValueError("Admin identity must be non-empty")
        self.admins.add(identity)
        logger.info(f"Admin added: {identity}")

    def remove(self, identity: str) -> None:
        if identity not in self.admins:
            raise KeyError(f"{identity} is not an admin")
        self.admins.discard(identity)
        logger.info(f"Admin removed: {identity}")

    def is_authorized(self, caller: str) -> bool:
        return caller in self.admins

    __call__ = is_authorized

    def __len__(self) -> int:
        return len(self.admins)
