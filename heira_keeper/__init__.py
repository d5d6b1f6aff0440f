"""
Heira Keeper - off-chain keeper for Heira inheritance escrows.

Key features:
- Multi-network sweep over managed escrow contracts (web3)
- Inactivity warning emails with a restart-safe resend cooldown
- Idempotent execution of escrows whose inactivity period has elapsed
- Swappable record stores (SQLite or JSON file)
- aiohttp status and registration API
"""

__version__ = "1.0.0"
__all__ = [
    "api",
    "config",
    "errors",
    "inspector",
    "keeper",
    "ledger",
    "logging_config",
    "models",
    "notifier",
    "policy",
    "storage",
]
