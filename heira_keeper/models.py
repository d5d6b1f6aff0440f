"""
Shared data types for the keeper.

``EscrowRecord`` is the unit the record store persists; the other types
are ephemeral and only live for the duration of one tick.

All timestamps are Unix epoch **milliseconds**, matching the JSON file
format written by the registration API.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Any

DAY_SECONDS = 24 * 60 * 60


def now_ms() -> int:
    return int(time.time() * 1000)


def normalize_address(address: str) -> str:
    """Lower-case and trim an address so (address, network) keys are stable."""
    return address.strip().lower()


def _normalize_email(email: str | None) -> str | None:
    if email is None:
        return None
    email = email.strip()
    return email or None


class EscrowStatus(IntEnum):
    """On-chain ``status()`` values of an inheritance escrow."""
    ACTIVE = 0
    INACTIVE = 1


class InspectionState(Enum):
    NOT_READY = "not_ready"
    EXECUTED = "executed"
    ERROR = "error"


@dataclass
class EscrowRecord:
    """Metadata for one managed escrow on one network."""
    escrow_address: str
    network: str
    email: str | None = None
    inactivity_period: int = 0          # seconds, cached from chain
    created_at: int = 0                 # ms; 0 = assign on first insert
    last_email_sent: int | None = None  # ms of last delivered warning

    def __post_init__(self) -> None:
        self.escrow_address = normalize_address(self.escrow_address)
        self.email = _normalize_email(self.email)

    @property
    def key(self) -> tuple[str, str]:
        return (self.escrow_address, self.network)

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "escrowAddress": self.escrow_address,
            "network": self.network,
            "inactivityPeriod": self.inactivity_period,
            "createdAt": self.created_at,
        }
        if self.email is not None:
            d["email"] = self.email
        if self.last_email_sent is not None:
            d["lastEmailSent"] = self.last_email_sent
        return d

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> EscrowRecord:
        last = d.get("lastEmailSent")
        return cls(
            escrow_address=d["escrowAddress"],
            network=d["network"],
            email=d.get("email"),
            inactivity_period=int(d.get("inactivityPeriod") or 0),
            created_at=int(d.get("createdAt") or 0),
            last_email_sent=int(last) if last is not None else None,
        )


@dataclass
class InspectionResult:
    """Outcome of inspecting one escrow."""
    state: InspectionState
    tx_hash: str | None = None
    time_remaining: int | None = None
    error: str | None = None

    @property
    def executed(self) -> bool:
        return self.state is InspectionState.EXECUTED

    @property
    def failed(self) -> bool:
        return self.state is InspectionState.ERROR


@dataclass
class KeeperTickResult:
    """Aggregate counters for one tick (or one network within a tick)."""
    checked: int = 0
    executed: int = 0
    errors: int = 0
    networks: list[str] = field(default_factory=list)

    def merge(self, other: KeeperTickResult) -> None:
        self.checked += other.checked
        self.executed += other.executed
        self.errors += other.errors
        self.networks.extend(n for n in other.networks if n not in self.networks)

    def to_dict(self) -> dict[str, Any]:
        return {
            "checked": self.checked,
            "executed": self.executed,
            "errors": self.errors,
            "networks": list(self.networks),
        }
