"""
Per-network ledger clients for Heira inheritance escrows.

A ``LedgerClient`` pairs one network's JSON-RPC endpoint with the keeper's
signing account.  The same private key is reused on every network; only
the endpoint differs.

Contract surface consumed (``ESCROW_ABI``):
    canExecute()            -> bool
    run()                   state-mutating, distributes the escrow
    status()                -> uint8   (0 = Active, 1 = Inactive)
    getTimeUntilExecution() -> uint256 (NO_DEADLINE when inactive)
    inactivityPeriod()      -> uint256

Usage:
    signer = load_signer(cfg.keeper.private_key)
    client = await connect(network_cfg, signer)
    try:
        if await client.can_execute(addr):
            tx_hash = await client.execute(addr)
    finally:
        await client.close()
"""

from __future__ import annotations

import logging
from typing import Any

import aiohttp
from eth_account import Account
from eth_account.signers.local import LocalAccount
from web3 import AsyncWeb3, Web3

from heira_keeper.config import NetworkConfig
from heira_keeper.errors import (
    KeeperConfigError,
    LedgerConnectionError,
    TransactionRevertedError,
)
from heira_keeper.models import EscrowStatus

logger = logging.getLogger("heira_ledger")

NO_DEADLINE = 2**256 - 1

ESCROW_ABI: list[dict[str, Any]] = [
    {
        "type": "function",
        "name": "canExecute",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [{"name": "", "type": "bool"}],
    },
    {
        "type": "function",
        "name": "run",
        "stateMutability": "nonpayable",
        "inputs": [],
        "outputs": [],
    },
    {
        "type": "function",
        "name": "status",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [{"name": "", "type": "uint8"}],
    },
    {
        "type": "function",
        "name": "getTimeUntilExecution",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [{"name": "", "type": "uint256"}],
    },
    {
        "type": "function",
        "name": "inactivityPeriod",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [{"name": "", "type": "uint256"}],
    },
]


def load_signer(private_key: str) -> LocalAccount:
    """Derive the keeper's signing account; a bad key is a fatal config error."""
    if not private_key:
        raise KeeperConfigError("Signing key not configured")
    try:
        return Account.from_key(private_key)
    except (ValueError, TypeError) as exc:
        # never echo key material
        raise KeeperConfigError(f"Invalid signing key: {type(exc).__name__}") from None


def is_address(value: str) -> bool:
    return Web3.is_address(value)


class LedgerClient:
    """Escrow reads and execution on one network."""

    def __init__(
        self,
        network: NetworkConfig,
        w3: AsyncWeb3,
        signer: LocalAccount | None = None,
        *,
        tx_timeout: float = 120.0,
        chain_id: int | None = None,
    ):
        self.network = network
        self.w3 = w3
        self.signer = signer
        self.tx_timeout = tx_timeout
        self.chain_id = chain_id

    @property
    def name(self) -> str:
        return self.network.name

    @property
    def keeper_address(self) -> str | None:
        return self.signer.address if self.signer is not None else None

    def _contract(self, escrow_address: str):
        return self.w3.eth.contract(
            address=Web3.to_checksum_address(escrow_address), abi=ESCROW_ABI
        )

    # ── reads ────────────────────────────────────────────────────

    async def can_execute(self, escrow_address: str) -> bool:
        return bool(await self._contract(escrow_address).functions.canExecute().call())

    async def status(self, escrow_address: str) -> EscrowStatus:
        raw = int(await self._contract(escrow_address).functions.status().call())
        try:
            return EscrowStatus(raw)
        except ValueError:
            # unknown future states are treated as not Active
            return EscrowStatus.INACTIVE

    async def time_until_execution(self, escrow_address: str) -> int:
        return int(
            await self._contract(escrow_address).functions.getTimeUntilExecution().call()
        )

    async def inactivity_period(self, escrow_address: str) -> int:
        return int(await self._contract(escrow_address).functions.inactivityPeriod().call())

    # ── writes ───────────────────────────────────────────────────

    async def execute(self, escrow_address: str) -> str:
        """Submit ``run()``, wait for the receipt and return the tx hash."""
        if self.signer is None:
            raise LedgerConnectionError(f"Client for {self.name} is read-only")
        contract = self._contract(escrow_address)
        if self.chain_id is None:
            self.chain_id = await self.w3.eth.chain_id
        nonce = await self.w3.eth.get_transaction_count(self.signer.address, "pending")
        # build_transaction estimates gas, so a not-ready escrow reverts here
        tx = await contract.functions.run().build_transaction({
            "from": self.signer.address,
            "nonce": nonce,
            "chainId": self.chain_id,
        })
        signed = self.signer.sign_transaction(tx)
        tx_hash = await self.w3.eth.send_raw_transaction(signed.raw_transaction)
        tx_hex = Web3.to_hex(tx_hash)
        logger.info(
            f"Transaction sent: {tx_hex}",
            extra={"network": self.name, "escrow": escrow_address},
        )
        receipt = await self.w3.eth.wait_for_transaction_receipt(
            tx_hash, timeout=self.tx_timeout
        )
        if receipt["status"] != 1:
            raise TransactionRevertedError(tx_hex)
        return tx_hex

    async def close(self) -> None:
        disconnect = getattr(self.w3.provider, "disconnect", None)
        if disconnect is not None:
            await disconnect()


async def connect(
    network: NetworkConfig,
    signer: LocalAccount | None = None,
    *,
    tx_timeout: float = 120.0,
    request_timeout: float = 30.0,
    verify: bool = True,
) -> LedgerClient:
    """
    Build a ``LedgerClient`` for *network*.

    With ``verify`` the endpoint must answer ``eth_chainId``; otherwise
    ``LedgerConnectionError`` is raised rather than returning a client that
    fails on every call.
    """
    if not network.rpc_url:
        raise LedgerConnectionError(f"No RPC URL configured for network {network.name}")
    provider = AsyncWeb3.AsyncHTTPProvider(
        network.rpc_url,
        request_kwargs={"timeout": aiohttp.ClientTimeout(total=request_timeout)},
    )
    w3 = AsyncWeb3(provider)
    client = LedgerClient(network, w3, signer, tx_timeout=tx_timeout)
    if not verify:
        return client
    try:
        if not await w3.is_connected():
            raise LedgerConnectionError(
                f"RPC endpoint for {network.name} is unreachable"
            )
        client.chain_id = await w3.eth.chain_id
    except LedgerConnectionError:
        await client.close()
        raise
    except Exception as exc:
        await client.close()
        raise LedgerConnectionError(
            f"RPC endpoint for {network.name} failed verification: {exc}"
        ) from exc
    logger.debug(
        f"Connected to {network.name} (chain_id={client.chain_id}) as {client.keeper_address}"
    )
    return client
