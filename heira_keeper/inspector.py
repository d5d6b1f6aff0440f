"""
Escrow inspection: read on-chain state for one escrow and execute it when
its inactivity period has elapsed.

Readiness is decided from structured reads (``status()`` then
``canExecute()``).  Reverts carrying one of the contract's known
not-ready reasons are folded into ``NOT_READY`` as a fallback, since the
state can change between the read and the transaction.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from heira_keeper.models import EscrowStatus, InspectionResult, InspectionState

if TYPE_CHECKING:
    from heira_keeper.ledger import LedgerClient

logger = logging.getLogger("heira_inspector")

# Revert reasons of the escrow contract that mean "nothing to do yet"
NOT_READY_REASONS = (
    "Execution conditions not met",
    "Contract is inactive",
    "No beneficiaries configured",
)


def is_expected_not_ready(exc: BaseException) -> bool:
    """True when *exc* reports one of the contract's not-ready conditions."""
    texts = [str(exc)]
    message = getattr(exc, "message", None)
    if isinstance(message, str):
        texts.append(message)
    return any(reason in text for text in texts for reason in NOT_READY_REASONS)


def classify_error(exc: BaseException) -> InspectionResult:
    if is_expected_not_ready(exc):
        return InspectionResult(InspectionState.NOT_READY)
    return InspectionResult(InspectionState.ERROR, error=str(exc) or type(exc).__name__)


async def inspect(escrow_address: str, network: str, client: LedgerClient) -> InspectionResult:
    """Inspect one escrow; submits at most one execution transaction."""
    ctx = {"network": network, "escrow": escrow_address}
    try:
        status = await client.status(escrow_address)
        if status is not EscrowStatus.ACTIVE:
            logger.debug(f"Escrow is {status.name}, nothing to do", extra=ctx)
            return InspectionResult(InspectionState.NOT_READY)

        if not await client.can_execute(escrow_address):
            remaining = await client.time_until_execution(escrow_address)
            logger.info(f"Not ready ({remaining}s remaining)", extra=ctx)
            return InspectionResult(InspectionState.NOT_READY, time_remaining=remaining)

        logger.info("Executing escrow", extra=ctx)
        tx_hash = await client.execute(escrow_address)
        logger.info(f"Escrow executed successfully. Tx: {tx_hash}", extra=ctx)
        return InspectionResult(InspectionState.EXECUTED, tx_hash=tx_hash)
    except Exception as exc:
        result = classify_error(exc)
        if result.failed:
            logger.error(f"Error checking escrow: {result.error}", extra=ctx)
        else:
            logger.info(f"Escrow not executable: {exc}", extra=ctx)
        return result
