#!/usr/bin/env python3
"""
Heira Keeper Runner — starts the escrow keeper with:
  - periodic keeper ticks across all configured networks
  - the status / registration HTTP API

Usage:
    python run_keeper.py --config heira.toml          # long-running service
    python run_keeper.py --config heira.toml --once   # one tick (cron)
    python run_keeper.py --no-api                     # keeper loop only

Environment variables (alternative to a config file):
    HEIRA_PRIVATE_KEY, KEEPER_NETWORKS, ENABLE_KEEPER, KEEPER_CHECK_INTERVAL_MS,
    MAILPACE_API_TOKEN, HEIRA_DB_PATH, HEIRA_API_PORT
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import os
import sys

PROJECT_ROOT = os.path.dirname(os.path.abspath(__file__))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

from heira_keeper.api import APIServer  # noqa: E402
from heira_keeper.config import HeiraConfig, load_config, validate_keeper_config  # noqa: E402
from heira_keeper.errors import KeeperConfigError  # noqa: E402
from heira_keeper.keeper import KeeperService  # noqa: E402
from heira_keeper.logging_config import setup_logging  # noqa: E402
from heira_keeper.notifier import MailPaceNotifier  # noqa: E402
from heira_keeper.storage import open_store  # noqa: E402

logger = logging.getLogger("heira")


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Heira escrow keeper")
    p.add_argument("--config", default=os.environ.get("HEIRA_CONFIG"),
                   help="Path to heira.toml config file")
    p.add_argument("--once", action="store_true",
                   help="Run a single keeper tick and exit (for cron schedulers)")
    p.add_argument("--no-api", action="store_true",
                   help="Do not start the HTTP API")
    p.add_argument("--log-level", default=None, help="Override logging level")
    return p.parse_args(argv)


async def run_once(cfg: HeiraConfig) -> int:
    store = open_store(cfg.storage)
    notifier = MailPaceNotifier(cfg.mail)
    service = KeeperService(cfg.keeper, store, notifier)
    try:
        result = await service.tick()
    except KeeperConfigError as exc:
        logger.error(f"Keeper not configured: {exc}")
        return 1
    finally:
        await notifier.close()
        store.close()
    if result is not None and result.errors:
        logger.warning(f"Tick finished with {result.errors} errors")
    return 0


async def serve(cfg: HeiraConfig, with_api: bool = True) -> int:
    store = open_store(cfg.storage)
    notifier = MailPaceNotifier(cfg.mail)
    service = KeeperService(cfg.keeper, store, notifier)
    api: APIServer | None = None

    try:
        validate_keeper_config(cfg.keeper)
        keeper_configured = True
    except KeeperConfigError as exc:
        logger.warning(f"Keeper not configured: {exc}")
        keeper_configured = False

    try:
        if cfg.keeper.enabled and keeper_configured:
            try:
                service.start()
            except KeeperConfigError as exc:
                logger.error(f"Keeper service not started: {exc}")
                keeper_configured = False
        else:
            logger.info("Keeper service disabled. Set ENABLE_KEEPER=true to enable.")

        if with_api and cfg.api.enabled:
            api = APIServer(
                store,
                cfg.keeper,
                keeper=service if keeper_configured else None,
                api_config=cfg.api,
            )
            await api.start()

        if not service.running and api is None:
            logger.error("Nothing to run: keeper disabled and API not started")
            return 1

        while True:
            await asyncio.sleep(3600)
    except asyncio.CancelledError:
        pass
    finally:
        await service.stop()
        if api is not None:
            await api.stop()
        await notifier.close()
        store.close()
    return 0


async def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    cfg = load_config(args.config)
    if args.log_level:
        cfg.logging.level = args.log_level.upper()
    setup_logging(cfg.logging.level, cfg.logging.format, cfg.logging.file)

    if args.once:
        return await run_once(cfg)
    return await serve(cfg, with_api=not args.no_api)


def main_sync() -> None:
    """Synchronous entry point for console_scripts."""
    code = 0
    with contextlib.suppress(KeyboardInterrupt):
        code = asyncio.run(main())
    sys.exit(code)


if __name__ == "__main__":
    main_sync()
