"""
In-memory fakes shared by the keeper tests.
"""

from __future__ import annotations

from heira_keeper.errors import NotificationError
from heira_keeper.models import DAY_SECONDS, EscrowStatus
from heira_keeper.notifier import Notifier

# Anvil's first dev key; valid secp256k1, never funded anywhere real
TEST_PRIVATE_KEY = "0xac0974bec39a17e36ba4a6b4d238ff944bacb478cbed5efcae784d7bf4f2ff80"

ADDR_A = "0x" + "ab" * 20
ADDR_B = "0x" + "cd" * 20
ADDR_C = "0x" + "ef" * 20

FIXED_NOW = 1_760_000_000.0  # seconds


class FakeEscrow:
    """On-chain state of one escrow as seen by ``FakeLedgerClient``."""

    def __init__(
        self,
        status: EscrowStatus = EscrowStatus.ACTIVE,
        can_execute: bool = False,
        time_remaining: int = 30 * DAY_SECONDS,
        inactivity_period: int = 90 * DAY_SECONDS,
    ):
        self.status = status
        self.can_execute = can_execute
        self.time_remaining = time_remaining
        self.inactivity_period = inactivity_period


class FakeLedgerClient:
    """Stand-in for ``LedgerClient`` that records every call."""

    def __init__(self, name: str = "sepolia", escrows: dict[str, FakeEscrow] | None = None):
        self.name = name
        self.escrows = {k.lower(): v for k, v in (escrows or {}).items()}
        # method name -> exception, or (method, address) -> exception
        self.failures: dict = {}
        self.calls: list[tuple[str, str]] = []
        self.executed: list[str] = []
        self.closed = False

    def _escrow(self, method: str, address: str) -> FakeEscrow:
        address = address.lower()
        self.calls.append((method, address))
        exc = self.failures.get((method, address)) or self.failures.get(method)
        if exc is not None:
            raise exc
        return self.escrows.setdefault(address, FakeEscrow())

    async def status(self, address: str) -> EscrowStatus:
        return self._escrow("status", address).status

    async def can_execute(self, address: str) -> bool:
        return self._escrow("can_execute", address).can_execute

    async def time_until_execution(self, address: str) -> int:
        return self._escrow("time_until_execution", address).time_remaining

    async def inactivity_period(self, address: str) -> int:
        return self._escrow("inactivity_period", address).inactivity_period

    async def execute(self, address: str) -> str:
        escrow = self._escrow("execute", address)
        self.executed.append(address.lower())
        escrow.status = EscrowStatus.INACTIVE
        escrow.can_execute = False
        return "0x" + f"{len(self.executed):064x}"

    async def close(self) -> None:
        self.closed = True

    def count(self, method: str) -> int:
        return sum(1 for m, _ in self.calls if m == method)


class FakeNotifier(Notifier):
    """Collects warnings instead of sending them."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.sent: list = []
        self.attempts = 0

    async def send_warning(self, warning) -> None:
        self.attempts += 1
        if self.fail:
            raise NotificationError("MailPace API error: 503 Service Unavailable")
        self.sent.append(warning)


class FakeClock:
    def __init__(self, now: float = FIXED_NOW):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds
