"""
Keeper scheduler and per-network sweep.

One tick walks every configured network in turn.  For each network it opens
a ledger client, lists the managed escrows from the record store and, for
each escrow, runs the notification policy and then the inspector.  Escrows
within a network are paced by a fixed delay to stay under RPC rate limits.

Failure isolation:
  - an escrow that raises is counted as an error; the sweep continues
  - a network whose client cannot be built is counted as one error; the
    tick continues with the next network
  - only a missing signing key or an empty network list stops a tick

Usage (cron style):
    result = await run_tick(cfg.keeper.networks, store, cfg.keeper.private_key,
                            policy=policy)

Usage (long-running):
    service = KeeperService(cfg.keeper, store, notifier)
    service.start()
    ...
    await service.stop()
"""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Sequence

from heira_keeper.config import KeeperConfig, NetworkConfig, validate_keeper_config
from heira_keeper.errors import KeeperConfigError
from heira_keeper.inspector import inspect
from heira_keeper.ledger import LedgerClient, connect, load_signer
from heira_keeper.models import KeeperTickResult
from heira_keeper.notifier import Notifier
from heira_keeper.policy import NotificationPolicy
from heira_keeper.storage import EscrowStore

logger = logging.getLogger("heira_keeper")

Connector = Callable[..., Awaitable[LedgerClient]]

DEFAULT_PACING_SECONDS = 1.0


async def sweep_network(
    network: str,
    store: EscrowStore,
    client: LedgerClient,
    policy: NotificationPolicy,
    *,
    pacing: float = DEFAULT_PACING_SECONDS,
) -> KeeperTickResult:
    """Process every managed escrow on *network* exactly once."""
    result = KeeperTickResult(networks=[network])
    try:
        records = store.list_by_network(network)
    except Exception as exc:
        logger.error(f"Failed to list escrows: {exc}", extra={"network": network})
        result.errors += 1
        return result

    logger.info(f"Checking {len(records)} managed escrows on {network}")
    for i, record in enumerate(records):
        if i > 0 and pacing > 0:
            await asyncio.sleep(pacing)
        ctx = {"network": network, "escrow": record.escrow_address}
        result.checked += 1
        failed = False

        # warning first so an escrow about to execute still gets notice
        try:
            await policy.evaluate(record, client)
        except Exception as exc:
            logger.error(f"Inactivity warning check failed: {exc}", extra=ctx)
            failed = True

        try:
            outcome = await inspect(record.escrow_address, network, client)
        except Exception as exc:
            logger.exception(f"Unexpected inspection failure: {exc}", extra=ctx)
            failed = True
        else:
            if outcome.executed:
                result.executed += 1
            elif outcome.failed:
                failed = True

        if failed:
            result.errors += 1

    return result


async def run_tick(
    networks: Sequence[NetworkConfig],
    store: EscrowStore,
    signing_key: str,
    *,
    policy: NotificationPolicy,
    connector: Connector = connect,
    pacing: float = DEFAULT_PACING_SECONDS,
    tx_timeout: float = 120.0,
) -> KeeperTickResult:
    """
    Run one check cycle over every network.

    Raises ``KeeperConfigError`` before doing any work when the signing key
    is missing or invalid, or no networks are configured.  Everything else is
    folded into the returned counters.
    """
    if not signing_key:
        raise KeeperConfigError("Signing key not configured")
    if not networks:
        raise KeeperConfigError("No networks configured for keeper")
    signer = load_signer(signing_key)

    started = time.monotonic()
    total = KeeperTickResult()
    logger.info(f"Running keeper check for {len(networks)} networks...")

    for network in networks:
        try:
            client = await connector(network, signer, tx_timeout=tx_timeout)
        except Exception as exc:
            logger.error(f"Error connecting to network: {exc}", extra={"network": network.name})
            total.errors += 1
            total.networks.append(network.name)
            continue
        try:
            total.merge(await sweep_network(
                network.name, store, client, policy, pacing=pacing
            ))
        finally:
            try:
                await client.close()
            except Exception as exc:
                logger.warning(f"Error closing ledger client: {exc}", extra={"network": network.name})

    logger.info(
        f"Keeper check completed in {time.monotonic() - started:.1f}s: "
        f"{total.checked} checked, {total.executed} executed, {total.errors} errors"
    )
    return total


class KeeperService:
    """Runs ticks on a timer, never more than one at a time."""

    def __init__(
        self,
        cfg: KeeperConfig,
        store: EscrowStore,
        notifier: Notifier,
        *,
        connector: Connector = connect,
        clock: Callable[[], float] = time.time,
    ):
        self.cfg = cfg
        self.store = store
        self.notifier = notifier
        self.connector = connector
        self.policy = NotificationPolicy(
            store,
            notifier,
            warn_window=cfg.warn_window_seconds,
            resend_cooldown=cfg.resend_cooldown_seconds,
            clock=clock,
        )
        self._clock = clock
        self._tick_lock = asyncio.Lock()
        self._task: asyncio.Task | None = None

        self.last_result: KeeperTickResult | None = None
        self.last_tick_at: float | None = None
        self.ticks_run = 0
        self.ticks_skipped = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def tick_in_progress(self) -> bool:
        return self._tick_lock.locked()

    async def tick(self) -> KeeperTickResult | None:
        """Run one tick; returns None when a tick is already in progress."""
        if self._tick_lock.locked():
            self.ticks_skipped += 1
            logger.warning("Previous keeper tick still running, skipping this one")
            return None
        async with self._tick_lock:
            self.last_tick_at = self._clock()
            result = await run_tick(
                self.cfg.networks,
                self.store,
                self.cfg.private_key,
                policy=self.policy,
                connector=self.connector,
                pacing=self.cfg.pacing_seconds,
                tx_timeout=self.cfg.tx_timeout_seconds,
            )
            self.last_result = result
            self.ticks_run += 1
            return result

    async def _loop(self) -> None:
        while True:
            try:
                await self.tick()
            except KeeperConfigError as exc:
                logger.error(f"Keeper stopped: {exc}")
                return
            except Exception:
                logger.exception("Error in periodic keeper check")
            await asyncio.sleep(self.cfg.interval_seconds)

    def start(self) -> None:
        """Validate configuration and launch the periodic loop."""
        if self.running:
            logger.warning("Keeper service is already running")
            return
        validate_keeper_config(self.cfg)
        load_signer(self.cfg.private_key)
        logger.info(
            f"Starting keeper service (interval {self.cfg.interval_seconds:.0f}s, "
            f"networks: {', '.join(self.cfg.network_names)})"
        )
        self._task = asyncio.create_task(self._loop())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Keeper service stopped")

    def status(self) -> dict[str, Any]:
        last_tick = (
            datetime.fromtimestamp(self.last_tick_at, tz=timezone.utc).isoformat()
            if self.last_tick_at is not None else None
        )
        return {
            "enabled": self.cfg.enabled,
            "running": self.running,
            "tickInProgress": self.tick_in_progress,
            "intervalSeconds": self.cfg.interval_seconds,
            "checkIntervalMs": int(self.cfg.interval_seconds * 1000),
            "networks": self.cfg.network_names,
            "ticksRun": self.ticks_run,
            "ticksSkipped": self.ticks_skipped,
            "lastTickAt": last_tick,
            "lastResult": self.last_result.to_dict() if self.last_result else None,
        }
