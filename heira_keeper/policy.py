"""
Inactivity warning policy.

Decides, from the stored record and the live time-to-execution, whether an
owner should be warned that execution is near.  The cooldown is anchored on
``last_email_sent`` in the record store, so it survives restarts.

Rules, evaluated once per escrow per tick:
  1. no email on the record           -> skip
  2. on-chain status is not Active    -> skip
  3. 0 < T <= warn_window and (never warned or last warning older than
     resend_cooldown)                 -> send, then persist the send time
  4. anything else                    -> no action

A failed delivery leaves ``last_email_sent`` untouched so the next tick
retries.  The ``NotificationError`` reaches the sweep, which counts it as
that escrow's error.  A crash between delivery and persist can produce
one duplicate.
"""

from __future__ import annotations

import logging
import time
from typing import TYPE_CHECKING, Callable

from heira_keeper.models import DAY_SECONDS, EscrowRecord, EscrowStatus
from heira_keeper.notifier import InactivityWarning, Notifier

if TYPE_CHECKING:
    from heira_keeper.ledger import LedgerClient
    from heira_keeper.storage import EscrowStore

logger = logging.getLogger("heira_policy")

WARN_WINDOW_SECONDS = 7 * DAY_SECONDS
RESEND_COOLDOWN_SECONDS = 6 * DAY_SECONDS


class NotificationPolicy:

    def __init__(
        self,
        store: EscrowStore,
        notifier: Notifier,
        *,
        warn_window: int = WARN_WINDOW_SECONDS,
        resend_cooldown: int = RESEND_COOLDOWN_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.notifier = notifier
        self.warn_window = warn_window
        self.resend_cooldown = resend_cooldown
        self._clock = clock

    def now_ms(self) -> int:
        return int(self._clock() * 1000)

    def in_window(self, time_remaining: int) -> bool:
        return 0 < time_remaining <= self.warn_window

    def cooldown_elapsed(self, record: EscrowRecord, now_ms: int) -> bool:
        if record.last_email_sent is None:
            return True
        return now_ms - record.last_email_sent > self.resend_cooldown * 1000

    async def evaluate(
        self,
        record: EscrowRecord,
        client: LedgerClient,
        now_ms: int | None = None,
    ) -> bool:
        """Warn the owner of *record* if due.  Returns True when delivered.

        Chain read failures and ``NotificationError`` propagate; the sweep
        counts them.
        """
        ctx = {"network": record.network, "escrow": record.escrow_address}
        if not record.email:
            logger.debug("No email configured, skipping warning check", extra=ctx)
            return False

        status = await client.status(record.escrow_address)
        if status is not EscrowStatus.ACTIVE:
            logger.debug(f"Escrow is {status.name}, skipping warning check", extra=ctx)
            return False

        remaining = await client.time_until_execution(record.escrow_address)
        days_remaining = remaining / DAY_SECONDS
        if not self.in_window(remaining):
            logger.debug(
                f"{days_remaining:.2f} days until execution, outside warning window",
                extra=ctx,
            )
            return False

        now = self.now_ms() if now_ms is None else now_ms
        if not self.cooldown_elapsed(record, now):
            since = (now - record.last_email_sent) / (DAY_SECONDS * 1000)
            logger.debug(f"Warning already sent {since:.2f} days ago", extra=ctx)
            return False

        logger.info(
            f"Sending inactivity warning ({days_remaining:.1f} days remaining)", extra=ctx
        )
        # NotificationError escapes before the send time is persisted
        await self.notifier.send_warning(InactivityWarning(
            to=record.email,
            escrow_address=record.escrow_address,
            network=record.network,
            days_remaining=days_remaining,
        ))

        self.store.update_last_notified(record.escrow_address, record.network, now)
        record.last_email_sent = now
        return True
