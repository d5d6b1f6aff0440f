"""
Exception hierarchy for the keeper.

Only ``KeeperConfigError`` is allowed to escape a tick; the other classes
are raised by collaborators and folded into the tick's error count.
"""

from __future__ import annotations


class KeeperError(Exception):
    """Base class for all keeper errors."""


class KeeperConfigError(KeeperError):
    """Required configuration (signing key, networks) is missing or invalid."""


class LedgerConnectionError(KeeperError):
    """A network's ledger client could not be constructed or verified."""


class TransactionRevertedError(KeeperError):
    """An execution transaction was mined but reverted."""

    def __init__(self, tx_hash: str, message: str = "Transaction reverted"):
        super().__init__(f"{message} (tx {tx_hash})")
        self.tx_hash = tx_hash


class NotificationError(KeeperError):
    """A warning message could not be delivered."""
