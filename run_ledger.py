#!/usr/bin/env python3
"""
TierStake node runner — starts an accrual ledger behind the REST API.

Usage:
    python run_ledger.py --config tierstake.toml --port 8080

Environment variables (alternative to flags):
    TIERSTAKE_HOST, TIERSTAKE_PORT, TIERSTAKE_ADMINS, TIERSTAKE_LOG_LEVEL, ...
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging

from tierstake_core.api import APIServer
from tierstake_core.config import load_config
from tierstake_core.logging_config import setup_logging_from_config
from tierstake_core.node import StakingNode

logger = logging.getLogger("node")


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="TierStake accrual ledger node")
    p.add_argument("--config", default=None, help="Path to tierstake.toml config file")
    p.add_argument("--host", default=None, help="API listen host")
    p.add_argument("--port", type=int, default=None, help="API listen port")
    return p.parse_args(argv)


async def main(argv: list[str] | None = None) -> None:
    args = parse_args(argv)

    # Load config (TOML + env overrides); CLI flags override both
    cfg = load_config(args.config)
    if args.host:
        cfg.api.host = args.host
    if args.port is not None:
        cfg.api.port = args.port

    setup_logging_from_config(cfg.logging)
    node = StakingNode(cfg)
    logger.info(
        f"Ledger {cfg.staking.ledger_address}: staking {cfg.staking.staked_symbol}, "
        f"rewarding {cfg.staking.reward_symbol}, month={cfg.staking.month_seconds}s"
    )

    if not cfg.api.enabled:
        logger.warning("API disabled in config — nothing to serve, exiting")
        return

    api = APIServer(node, cfg.api.host, cfg.api.port, api_config=cfg.api)
    await api.start()
    try:
        while True:
            await asyncio.sleep(3600)
    finally:
        await api.stop()
        logger.info(f"Stopped. Final pool state: {node.ledger.get_pool_summary()}")


def main_sync():
    """Synchronous entry point for console_scripts."""
    with contextlib.suppress(KeyboardInterrupt):
        asyncio.run(main())


if __name__ == "__main__":
    main_sync()
