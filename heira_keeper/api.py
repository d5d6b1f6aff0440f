"""
HTTP API for escrow registration and keeper status.

Built on ``aiohttp`` and started alongside the keeper loop.

Endpoints
---------
GET  /health                     Liveness check
GET  /api/keeper/status          Keeper enabled flag, interval, networks, last tick
POST /api/escrows/register       Register (or update) an escrow for monitoring
POST /api/escrows/unregister     Stop monitoring an escrow
GET  /api/escrows/{address}      Stored metadata (``?network=`` required)

Security
--------
- Optional API key on POST endpoints via the ``X-API-Key`` header,
  compared with ``hmac.compare_digest``.
- Per-IP token-bucket rate limiter (configurable RPM).
- CORS allow-list (explicit origins only).
- Request body size cap.

Usage:
    api = APIServer(store, keeper_cfg, keeper=service, api_config=cfg.api)
    await api.start()
    ...
    await api.stop()
"""

from __future__ import annotations

import hmac
import logging
import re
import time
from collections import defaultdict
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

from aiohttp import web

from heira_keeper.config import APIConfig, KeeperConfig, NetworkConfig
from heira_keeper.ledger import connect, is_address
from heira_keeper.models import EscrowRecord

if TYPE_CHECKING:
    from heira_keeper.keeper import Connector, KeeperService
    from heira_keeper.storage import EscrowStore

logger = logging.getLogger("heira_api")

_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


# ═══════════════════════════════════════════════════════════════════
#  Input helpers
# ═══════════════════════════════════════════════════════════════════

def _error(status: int, message: str) -> web.Response:
    return web.json_response({"success": False, "message": message}, status=status)


def _parse_period(value: Any) -> int | None:
    """Parse a non-negative integer period; None when invalid."""
    if isinstance(value, bool):
        return None
    try:
        period = int(value)
    except (TypeError, ValueError):
        return None
    return period if period >= 0 else None


def _is_valid_email(email: str) -> bool:
    return bool(_EMAIL_RE.match(email))


# ═══════════════════════════════════════════════════════════════════
#  Rate Limiter (per-IP token bucket)
# ═══════════════════════════════════════════════════════════════════

class _TokenBucket:
    """Per-IP token bucket.

    A bucket idle for a full minute has refilled to capacity, so it is
    dropped on the next prune and recreated full on demand.
    """

    __slots__ = ("_buckets", "_rpm", "_last_prune")

    PRUNE_INTERVAL = 60.0

    def __init__(self, rpm: int):
        self._rpm = rpm  # 0 = unlimited
        # ip -> [tokens, last_refill_timestamp]
        self._buckets: dict[str, list[float]] = defaultdict(lambda: [float(rpm), time.monotonic()])
        self._last_prune = time.monotonic()

    def _prune(self, now: float) -> None:
        idle = [ip for ip, (_, last) in self._buckets.items() if now - last >= self.PRUNE_INTERVAL]
        for ip in idle:
            del self._buckets[ip]
        self._last_prune = now

    def allow(self, ip: str) -> bool:
        if self._rpm <= 0:
            return True
        now = time.monotonic()
        if now - self._last_prune >= self.PRUNE_INTERVAL:
            self._prune(now)
        bucket = self._buckets[ip]
        bucket[0] = min(float(self._rpm), bucket[0] + (now - bucket[1]) * (self._rpm / 60.0))
        bucket[1] = now
        if bucket[0] >= 1.0:
            bucket[0] -= 1.0
            return True
        return False


# ═══════════════════════════════════════════════════════════════════
#  Middleware factories
# ═══════════════════════════════════════════════════════════════════

def _make_rate_limit_middleware(bucket: _TokenBucket):

    @web.middleware
    async def rate_limit_middleware(request: web.Request, handler):
        if not bucket.allow(request.remote or "unknown"):
            return web.json_response(
                {"success": False, "message": "Rate limit exceeded. Try again later."},
                status=429,
                headers={"Retry-After": "5"},
            )
        return await handler(request)

    return rate_limit_middleware


def _make_api_key_middleware(api_key: str):
    """Require ``X-API-Key`` on mutating requests."""

    @web.middleware
    async def api_key_middleware(request: web.Request, handler):
        if request.method in ("POST", "PUT", "DELETE"):
            key = request.headers.get("X-API-Key", "")
            if not hmac.compare_digest(key, api_key):
                return _error(401, "Invalid or missing API key")
        return await handler(request)

    return api_key_middleware


def _make_cors_middleware(origins: list[str]):
    """Add CORS headers for allow-listed origins; ``*`` is ignored."""

    allowed = set(origins)
    allowed.discard("*")

    @web.middleware
    async def cors_middleware(request: web.Request, handler):
        origin = request.headers.get("Origin", "")
        if request.method == "OPTIONS":
            resp = web.Response(status=204)
        else:
            resp = await handler(request)

        if origin in allowed:
            resp.headers["Access-Control-Allow-Origin"] = origin
            resp.headers["Access-Control-Allow-Methods"] = "GET, POST, OPTIONS"
            resp.headers["Access-Control-Allow-Headers"] = "Content-Type, X-API-Key"
            resp.headers["Access-Control-Max-Age"] = "86400"
            resp.headers["Vary"] = "Origin"
        return resp

    return cors_middleware


class APIServer:
    """aiohttp front-end over the record store and keeper service."""

    def __init__(
        self,
        store: EscrowStore,
        keeper_cfg: KeeperConfig,
        *,
        keeper: KeeperService | None = None,
        api_config: APIConfig | None = None,
        connector: Connector = connect,
    ):
        self.store = store
        self.keeper_cfg = keeper_cfg
        self.keeper = keeper
        self.api_config = api_config or APIConfig()
        self.connector = connector
        self._app: web.Application | None = None
        self._runner: web.AppRunner | None = None

    # ── lifecycle ────────────────────────────────────────────────

    def build_app(self) -> web.Application:
        cfg = self.api_config
        middlewares: list = []
        if cfg.rate_limit_rpm > 0:
            middlewares.append(_make_rate_limit_middleware(_TokenBucket(cfg.rate_limit_rpm)))
        if cfg.cors_origins:
            middlewares.append(_make_cors_middleware(cfg.cors_origins))
        if cfg.api_key:
            middlewares.append(_make_api_key_middleware(cfg.api_key))

        app = web.Application(middlewares=middlewares, client_max_size=cfg.max_body_bytes)
        self._register_routes(app)
        self._app = app
        return app

    async def start(self) -> None:
        self._runner = web.AppRunner(self.build_app())
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.api_config.host, self.api_config.port)
        await site.start()
        logger.info(f"API listening on http://{self.api_config.host}:{self.api_config.port}")

    async def stop(self) -> None:
        if self._runner:
            await self._runner.cleanup()
            self._runner = None

    # ── routes ───────────────────────────────────────────────────

    def _register_routes(self, app: web.Application) -> None:
        app.router.add_get("/health", self._health)
        app.router.add_get("/api/keeper/status", self._keeper_status)
        app.router.add_post("/api/escrows/register", self._register)
        app.router.add_post("/api/escrows/unregister", self._unregister)
        app.router.add_get("/api/escrows/{address}", self._get_escrow)

    # ── handlers ─────────────────────────────────────────────────

    async def _health(self, _request: web.Request) -> web.Response:
        return web.json_response({
            "status": "ok",
            "timestamp": datetime.now(timezone.utc).isoformat(),
        })

    async def _keeper_status(self, _request: web.Request) -> web.Response:
        if self.keeper is None:
            return web.json_response({"enabled": False, "error": "Keeper not configured"})
        return web.json_response(self.keeper.status())

    async def _read_body(self, request: web.Request) -> dict[str, Any] | None:
        try:
            body = await request.json()
        except Exception:
            return None
        return body if isinstance(body, dict) else None

    async def _onchain_inactivity_period(self, network: NetworkConfig, address: str) -> int:
        """Best-effort read of ``inactivityPeriod()``; 0 when unavailable."""
        try:
            client = await self.connector(network, None, verify=False)
        except Exception as exc:
            logger.warning(f"Could not reach {network.name} for inactivity period: {exc}")
            return 0
        try:
            return await client.inactivity_period(address)
        except Exception as exc:
            logger.warning(
                f"Could not read inactivity period: {exc}",
                extra={"network": network.name, "escrow": address},
            )
            return 0
        finally:
            await client.close()

    async def _register(self, request: web.Request) -> web.Response:
        """
        POST /api/escrows/register
        Body: {"escrowAddress": "0x...", "network": "sepolia",
               "email": "a@b.com", "inactivityPeriod": 2592000}
        """
        body = await self._read_body(request)
        if body is None:
            return _error(400, "Invalid JSON body")

        address = str(body.get("escrowAddress") or "").strip()
        network_name = str(body.get("network") or "").strip()
        if not address or not network_name:
            return _error(400, "Missing required fields: escrowAddress, network")
        if not is_address(address):
            return _error(400, "Invalid escrow address")

        email = body.get("email")
        if email is not None and not isinstance(email, str):
            return _error(400, "Invalid email format")
        if email and email.strip() and not _is_valid_email(email.strip()):
            return _error(400, "Invalid email format")

        network = self.keeper_cfg.get_network(network_name)
        if network is None:
            return _error(400, f"Network {network_name} not configured")

        raw_period = body.get("inactivityPeriod")
        if raw_period in (None, "", 0):
            period = await self._onchain_inactivity_period(network, address)
        else:
            period = _parse_period(raw_period)
            if period is None:
                return _error(400, "inactivityPeriod must be a non-negative integer")

        record = EscrowRecord(
            escrow_address=address,
            network=network_name,
            email=email,
            inactivity_period=period,
        )
        try:
            self.store.add(record)
        except Exception:
            logger.exception("Error registering escrow")
            return _error(500, "Internal server error")

        logger.info(
            f"Registered escrow for monitoring (email={'yes' if record.email else 'no'})",
            extra={"network": network_name, "escrow": record.escrow_address},
        )
        return web.json_response({"success": True, "message": "Escrow registered successfully"})

    async def _unregister(self, request: web.Request) -> web.Response:
        """
        POST /api/escrows/unregister
        Body: {"escrowAddress": "0x...", "network": "sepolia"}
        """
        body = await self._read_body(request)
        if body is None:
            return _error(400, "Invalid JSON body")

        address = str(body.get("escrowAddress") or "").strip()
        network_name = str(body.get("network") or "").strip()
        if not address or not network_name:
            return _error(400, "Missing required fields: escrowAddress, network")

        try:
            removed = self.store.remove(address, network_name)
        except Exception:
            logger.exception("Error unregistering escrow")
            return _error(500, "Internal server error")
        if not removed:
            return _error(404, "Escrow not found in monitoring list")

        logger.info(
            "Unregistered escrow from monitoring",
            extra={"network": network_name, "escrow": address.lower()},
        )
        return web.json_response({"success": True, "message": "Escrow unregistered successfully"})

    async def _get_escrow(self, request: web.Request) -> web.Response:
        address = request.match_info["address"]
        network_name = request.query.get("network", "").strip()
        if not network_name:
            return _error(400, "Missing required query parameter: network")

        record = self.store.get(address, network_name)
        if record is None:
            return _error(404, "Escrow not found")

        return web.json_response({
            "success": True,
            "escrow": {
                "escrowAddress": record.escrow_address,
                "network": record.network,
                "email": record.email,
                "inactivityPeriod": record.inactivity_period,
                "createdAt": record.created_at,
                "lastEmailSent": record.last_email_sent,
            },
        })
