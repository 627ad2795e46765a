"""
TierStake - a time-tiered reward-accrual ledger.

Key features:
- Stakers deposit one fungible asset and earn a second one
- Annual rate steps up with the age of the accrual window (0/5/10/15 %)
- Linear, floored, non-compounding accrual settled on every interaction
- Finite reward pool, replenished only by administrators
- All-or-nothing operations with post-operation invariant checks
- aiohttp REST surface with secp256k1-signed requests
"""

__version__ = "0.1.0"
__all__ = [
    "staking",
    "errors",
    "events",
    "asset",
    "access",
    "invariants",
    "auth",
    "node",
    "api",
    "config",
    "logging_config",
]
