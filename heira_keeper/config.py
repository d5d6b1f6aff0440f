"""
TOML-based configuration for the Heira keeper.

Loads settings from a TOML file and/or environment variables.
Environment variables take precedence over file values.

Usage:
    from heira_keeper.config import load_config
    cfg = load_config("heira.toml")

Example file::

    [keeper]
    enabled = true
    interval_seconds = 300

    [[keeper.networks]]
    name = "sepolia"
    factory_address = "0x..."
    rpc_url = "https://rpc.sepolia.org"

    [storage]
    backend = "sqlite"
    path = "data/escrows.db"
"""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

from heira_keeper.errors import KeeperConfigError

if sys.version_info >= (3, 11):
    import tomllib
else:
    try:
        import tomllib  # type: ignore[import]
    except ModuleNotFoundError:
        import tomli as tomllib  # type: ignore[import,no-redef]


ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

# (family factory env var, [(network name, rpc env var), ...])
_NETWORK_FAMILIES: list[tuple[str, list[tuple[str, str]]]] = [
    ("FACTORY_ADDRESS_ETHEREUM", [
        ("mainnet", "MAINNET_RPC_URL"),
        ("sepolia", "SEPOLIA_RPC_URL"),
    ]),
    ("FACTORY_ADDRESS_BASE", [
        ("base", "BASE_RPC_URL"),
        ("baseSepolia", "BASE_SEPOLIA_RPC_URL"),
    ]),
    ("FACTORY_ADDRESS_CITREA", [
        ("citreaTestnet", "CITREA_RPC_URL"),
    ]),
]


@dataclass(frozen=True)
class NetworkConfig:
    """Static per-network settings, fixed for the process lifetime."""
    name: str
    rpc_url: str
    factory_address: str = ""   # informational


@dataclass
class KeeperConfig:
    """Keeper loop, signing identity and notification policy settings."""
    enabled: bool = False
    private_key: str = ""
    interval_seconds: float = 300.0
    # Delay between escrows within one network sweep (RPC rate limits)
    pacing_seconds: float = 1.0
    warn_window_seconds: int = 7 * 24 * 60 * 60
    resend_cooldown_seconds: int = 6 * 24 * 60 * 60
    tx_timeout_seconds: float = 120.0
    networks: list[NetworkConfig] = field(default_factory=list)

    @property
    def network_names(self) -> list[str]:
        return [n.name for n in self.networks]

    def get_network(self, name: str) -> NetworkConfig | None:
        for n in self.networks:
            if n.name == name:
                return n
        return None


@dataclass
class StorageConfig:
    """Record store settings."""
    backend: str = "sqlite"     # "sqlite" or "file"
    path: str = "data/escrows.db"


@dataclass
class MailConfig:
    """MailPace transactional email settings."""
    api_url: str = "https://app.mailpace.com/api/v1/send"
    api_token: str = ""
    from_email: str = "noreply@heira.app"
    product_name: str = "Heira"
    timeout_seconds: float = 15.0


@dataclass
class APIConfig:
    """Status / registration HTTP API settings."""
    enabled: bool = True
    host: str = "127.0.0.1"
    port: int = 3001
    api_key: str = ""                 # require this key on POST endpoints (empty = no auth)
    rate_limit_rpm: int = 120          # per IP (0 = unlimited)
    cors_origins: list[str] = field(default_factory=list)
    max_body_bytes: int = 65_536


@dataclass
class LoggingConfig:
    """Logging settings."""
    level: str = "INFO"
    format: str = "human"   # "human" or "json"
    file: str | None = None


@dataclass
class HeiraConfig:
    """Top-level configuration container."""
    keeper: KeeperConfig = field(default_factory=KeeperConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    mail: MailConfig = field(default_factory=MailConfig)
    api: APIConfig = field(default_factory=APIConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def _merge(dc: Any, raw: dict[str, Any]) -> None:
    """Merge a raw dict into a dataclass instance (in-place)."""
    for key, value in raw.items():
        key_under = key.replace("-", "_")
        if hasattr(dc, key_under):
            setattr(dc, key_under, value)


def _network_from_dict(raw: dict[str, Any]) -> NetworkConfig:
    try:
        return NetworkConfig(
            name=str(raw["name"]).strip(),
            rpc_url=str(raw.get("rpc_url", raw.get("rpc-url", ""))).strip(),
            factory_address=str(
                raw.get("factory_address", raw.get("factory-address", ""))
            ).strip(),
        )
    except KeyError as exc:
        raise KeeperConfigError(f"network entry missing field {exc}") from exc


def parse_networks(raw: str) -> list[NetworkConfig]:
    """
    Parse ``name:factory:rpc,name:factory:rpc``.

    Only the first two colons separate fields, so RPC URLs such as
    ``https://host:8545`` survive intact.
    """
    networks: list[NetworkConfig] = []
    for item in raw.split(","):
        item = item.strip()
        if not item:
            continue
        parts = item.split(":", 2)
        if len(parts) != 3 or not parts[0].strip() or not parts[2].strip():
            raise KeeperConfigError(
                f"Invalid network entry {item!r}; expected name:factory:rpc_url"
            )
        name, factory, rpc = (p.strip() for p in parts)
        networks.append(NetworkConfig(name=name, rpc_url=rpc, factory_address=factory))
    return networks


def networks_from_env(env: Mapping[str, str]) -> list[NetworkConfig]:
    """Build networks from the per-family FACTORY_ADDRESS_* / *_RPC_URL vars."""
    networks: list[NetworkConfig] = []
    for factory_var, members in _NETWORK_FAMILIES:
        factory = env.get(factory_var, "").strip()
        if not factory or factory.lower() == ZERO_ADDRESS:
            continue
        for name, rpc_var in members:
            rpc = env.get(rpc_var, "").strip()
            if rpc:
                networks.append(NetworkConfig(name=name, rpc_url=rpc, factory_address=factory))
    return networks


def _env_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


def load_config(path: str | None = None) -> HeiraConfig:
    """
    Load configuration from a TOML file, then overlay environment variables.

    Env-var mapping:
        HEIRA_PRIVATE_KEY / PRIVATE_KEY -> keeper.private_key
        ENABLE_KEEPER                   -> keeper.enabled
        KEEPER_CHECK_INTERVAL_MS        -> keeper.interval_seconds (ms)
        KEEPER_NETWORKS                 -> keeper.networks (name:factory:rpc,...)
        FACTORY_ADDRESS_* + *_RPC_URL   -> keeper.networks (appended)
        MAILPACE_API_TOKEN              -> mail.api_token
        MAILPACE_FROM_EMAIL             -> mail.from_email
        HEIRA_STORAGE_BACKEND           -> storage.backend
        HEIRA_DB_PATH                   -> storage.path
        HEIRA_API_PORT / PORT           -> api.port
        HEIRA_API_KEY                   -> api.api_key
        HEIRA_CORS_ORIGINS              -> api.cors_origins (comma-separated)
        HEIRA_LOG_LEVEL                 -> logging.level
        HEIRA_LOG_FMT                   -> logging.format
    """
    cfg = HeiraConfig()

    # ── TOML file ────────────────────────────────────────────────
    if path is not None:
        p = Path(path)
        if p.exists():
            with open(p, "rb") as f:
                data = tomllib.load(f)
            keeper_raw = dict(data.get("keeper", {}))
            raw_networks = keeper_raw.pop("networks", [])
            _merge(cfg.keeper, keeper_raw)
            cfg.keeper.networks = [_network_from_dict(n) for n in raw_networks]
            for section_name, section_dc in [
                ("storage", cfg.storage),
                ("mail", cfg.mail),
                ("api", cfg.api),
                ("logging", cfg.logging),
            ]:
                if section_name in data:
                    _merge(section_dc, data[section_name])

    # ── Environment variable overrides ───────────────────────────
    env = os.environ
    if v := env.get("HEIRA_PRIVATE_KEY") or env.get("PRIVATE_KEY"):
        cfg.keeper.private_key = v.strip()
    if v := env.get("ENABLE_KEEPER"):
        cfg.keeper.enabled = _env_bool(v)
    if v := env.get("KEEPER_CHECK_INTERVAL_MS"):
        cfg.keeper.interval_seconds = int(v) / 1000.0
    if v := env.get("KEEPER_NETWORKS"):
        cfg.keeper.networks = parse_networks(v)

    known = set(cfg.keeper.network_names)
    for net in networks_from_env(env):
        if net.name not in known:
            cfg.keeper.networks.append(net)
            known.add(net.name)

    if v := env.get("MAILPACE_API_TOKEN"):
        cfg.mail.api_token = v
    if v := env.get("MAILPACE_FROM_EMAIL"):
        cfg.mail.from_email = v
    if v := env.get("HEIRA_STORAGE_BACKEND"):
        cfg.storage.backend = v
    if v := env.get("HEIRA_DB_PATH"):
        cfg.storage.path = v
    if v := env.get("HEIRA_API_PORT") or env.get("PORT"):
        cfg.api.port = int(v)
    if v := env.get("HEIRA_API_KEY"):
        cfg.api.api_key = v
    if v := env.get("HEIRA_CORS_ORIGINS"):
        cfg.api.cors_origins = [o.strip() for o in v.split(",") if o.strip()]
    if v := env.get("HEIRA_LOG_LEVEL"):
        cfg.logging.level = v.upper()
    if v := env.get("HEIRA_LOG_FMT"):
        cfg.logging.format = v

    return cfg


def validate_keeper_config(keeper: KeeperConfig) -> None:
    """Raise ``KeeperConfigError`` when the keeper cannot run at all."""
    if not keeper.private_key:
        raise KeeperConfigError(
            "Signing key not configured. Set HEIRA_PRIVATE_KEY (or PRIVATE_KEY)."
        )
    if not keeper.networks:
        raise KeeperConfigError(
            "No networks configured. Set KEEPER_NETWORKS or FACTORY_ADDRESS_* "
            "with the matching *_RPC_URL variables."
        )
    if keeper.interval_seconds <= 0:
        raise KeeperConfigError("interval_seconds must be positive")
    if keeper.resend_cooldown_seconds < 0 or keeper.warn_window_seconds <= 0:
        raise KeeperConfigError("warn window and resend cooldown must be positive")
