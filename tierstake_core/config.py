"""
TOML-based configuration for TierStake nodes.

Loads settings from a TOML file and/or environment variables.
Environment variables take precedence over file values.

Usage:
    from tierstake_core.config import load_config
    cfg = load_config("tierstake.toml")
"""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

if sys.version_info >= (3, 11):
    import tomllib
else:
    try:
        import tomllib  # type: ignore[import]
    except ModuleNotFoundError:
        import tomli as tomllib  # type: ignore[import,no-redef]

from tierstake_core.staking import MONTH_SECONDS


@dataclass
class StakingConfig:
    """Accrual ledger settings."""
    ledger_address: str = "rStakingPool"   # custody identity in both assets
    staked_symbol: str = "STK"
    reward_symbol: str = "RWD"
    month_seconds: int = MONTH_SECONDS
    admins: list[str] = field(default_factory=list)   # may call fund_pool
    check_invariants: bool = True
    event_history: int = 10_000   # ledger events kept in memory; 0 = unbounded


@dataclass
class APIConfig:
    """REST API settings."""
    enabled: bool = True
    host: str = "127.0.0.1"
    port: int = 8080
    rate_limit_rpm: int = 120          # max requests per minute per IP (0 = unlimited)
    cors_origins: list[str] = field(default_factory=list)  # allowed CORS origins (empty = no CORS)
    max_body_bytes: int = 65_536


@dataclass
class GenesisConfig:
    """
    Initial asset balances minted at node start.

    ``staked`` and ``reward`` map identity → integer amount of the staked
    and reward asset respectively.
    """
    staked: dict[str, int] = field(default_factory=dict)
    reward: dict[str, int] = field(default_factory=dict)


@dataclass
class LoggingConfig:
    """Logging settings."""
    level: str = "INFO"
    format: str = "human"   # "human" or "json"
    file: str | None = None


@dataclass
class TierStakeConfig:
    """Top-level configuration container."""
    staking: StakingConfig = field(default_factory=StakingConfig)
    api: APIConfig = field(default_factory=APIConfig)
    genesis: GenesisConfig = field(default_factory=GenesisConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def _merge(dc: Any, raw: dict[str, Any]) -> None:
    """Merge a raw dict into a dataclass instance (in-place)."""
    for key, value in raw.items():
        key_under = key.replace("-", "_")
        if hasattr(dc, key_under):
            setattr(dc, key_under, value)


def _split_list(value: str) -> list[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


def load_config(path: str | None = None) -> TierStakeConfig:
    """
    Load configuration from a TOML file, then overlay environment variables.

    Env-var mapping:
        TIERSTAKE_LEDGER_ADDRESS -> staking.ledger_address
        TIERSTAKE_MONTH_SECONDS  -> staking.month_seconds
        TIERSTAKE_ADMINS         -> staking.admins   (comma-separated)
        TIERSTAKE_HOST           -> api.host
        TIERSTAKE_PORT           -> api.port
        TIERSTAKE_CORS_ORIGINS   -> api.cors_origins (comma-separated)
        TIERSTAKE_LOG_LEVEL      -> logging.level
        TIERSTAKE_LOG_FMT        -> logging.format
        TIERSTAKE_LOG_FILE       -> logging.file
    """
    cfg = TierStakeConfig()

    # ── TOML file ────────────────────────────────────────────────
    if path is not None:
        p = Path(path)
        if p.exists():
            with open(p, "rb") as f:
                data = tomllib.load(f)
            for section_name, section_dc in [
                ("staking", cfg.staking),
                ("api", cfg.api),
                ("genesis", cfg.genesis),
                ("logging", cfg.logging),
            ]:
                if section_name in data:
                    _merge(section_dc, data[section_name])

    # ── Environment variable overrides ───────────────────────────
    if v := os.environ.get("TIERSTAKE_LEDGER_ADDRESS"):
        cfg.staking.ledger_address = v
    if v := os.environ.get("TIERSTAKE_MONTH_SECONDS"):
        cfg.staking.month_seconds = int(v)
    if v := os.environ.get("TIERSTAKE_ADMINS"):
        cfg.staking.admins = _split_list(v)
    if v := os.environ.get("TIERSTAKE_HOST"):
        cfg.api.host = v
    if v := os.environ.get("TIERSTAKE_PORT"):
        cfg.api.port = int(v)
    if v := os.environ.get("TIERSTAKE_CORS_ORIGINS"):
        cfg.api.cors_origins = _split_list(v)
    if v := os.environ.get("TIERSTAKE_LOG_LEVEL"):
        cfg.logging.level = v.upper()
    if v := os.environ.get("TIERSTAKE_LOG_FMT"):
        cfg.logging.format = v
    if v := os.environ.get("TIERSTAKE_LOG_FILE"):
        cfg.logging.file = v

    return cfg
