"""
Inactivity warning emails.

``MailPaceNotifier`` delivers warnings through the MailPace transactional
email API using ``aiohttp``.  Any non-2xx response or transport failure
raises ``NotificationError`` so the caller can leave the cooldown
timestamp untouched and retry on the next tick.
"""

from __future__ import annotations

import abc
import asyncio
import html
import logging
import math
from dataclasses import dataclass

import aiohttp

from heira_keeper.config import MailConfig
from heira_keeper.errors import NotificationError
from heira_keeper.models import normalize_address

logger = logging.getLogger("heira_notifier")

_EXPLORERS = {
    "mainnet": "https://etherscan.io",
    "ethereum": "https://etherscan.io",
    "sepolia": "https://sepolia.etherscan.io",
    "base": "https://basescan.org",
    "basemainnet": "https://basescan.org",
    "basesepolia": "https://sepolia.basescan.org",
    "citrea": "https://explorer.testnet.citrea.xyz",
    "citreatestnet": "https://explorer.testnet.citrea.xyz",
}


def explorer_url(escrow_address: str, network: str) -> str:
    base = _EXPLORERS.get(network.lower(), f"https://explorer.{network}.org")
    return f"{base}/address/{normalize_address(escrow_address)}"


@dataclass
class InactivityWarning:
    to: str
    escrow_address: str
    network: str
    days_remaining: float
    explorer_url: str | None = None


@dataclass
class WarningMessage:
    subject: str
    text_body: str
    html_body: str


def _days_text(days: float) -> str:
    whole = max(1, math.ceil(days))
    return "1 day" if whole == 1 else f"{whole} days"


def build_warning_message(warning: InactivityWarning, product_name: str = "Heira") -> WarningMessage:
    days = _days_text(warning.days_remaining)
    link = warning.explorer_url or explorer_url(warning.escrow_address, warning.network)
    subject = f"{product_name} Escrow: Inactivity Period Approaching"

    text_body = (
        f"Your {product_name} escrow contract is approaching its inactivity period.\n"
        f"\n"
        f"Escrow Address: {warning.escrow_address}\n"
        f"Network: {warning.network}\n"
        f"Time Remaining: {days}\n"
        f"\n"
        f"Your escrow will be executed if there is no activity on the monitored "
        f"wallet within {days}.\n"
        f"\n"
        f"View your escrow: {link}\n"
        f"\n"
        f"If you want to prevent execution, please ensure there is activity on the "
        f"monitored wallet or deactivate the escrow contract.\n"
        f"\n"
        f"This is an automated notification from {product_name}."
    )

    esc = html.escape
    html_body = f"""<!DOCTYPE html>
<html>
<head>
  <meta charset="utf-8">
  <style>
    body {{ font-family: Arial, sans-serif; line-height: 1.6; color: #333; }}
    .container {{ max-width: 600px; margin: 0 auto; padding: 20px; }}
    .header {{ background-color: #FED80E; color: #333; padding: 20px; border-radius: 5px 5px 0 0; }}
    .content {{ background-color: #f9fafb; padding: 20px; border-radius: 0 0 5px 5px; }}
    .info-box {{ background-color: white; padding: 15px; margin: 15px 0; border-left: 4px solid #FED80E; }}
    .button {{ display: inline-block; padding: 12px 24px; background-color: #FED80E; color: #333; text-decoration: none; border-radius: 5px; }}
    .footer {{ margin-top: 20px; padding-top: 20px; border-top: 1px solid #e5e7eb; font-size: 12px; color: #6b7280; }}
  </style>
</head>
<body>
  <div class="container">
    <div class="header"><h1>{esc(product_name)} Escrow Notification</h1></div>
    <div class="content">
      <p>Your {esc(product_name)} escrow contract is approaching its inactivity period.</p>
      <div class="info-box">
        <strong>Escrow Address:</strong> {esc(warning.escrow_address)}<br>
        <strong>Network:</strong> {esc(warning.network)}<br>
        <strong>Time Remaining:</strong> less than {days}
      </div>
      <p>Your escrow will be executed if there is no activity on the monitored wallet within <strong>{days}</strong>.</p>
      <a href="{esc(link, quote=True)}" class="button">View Escrow</a>
      <p style="margin-top: 20px;"><strong>What you can do:</strong></p>
      <ul>
        <li>Ensure there is activity on the monitored wallet to reset the timer</li>
        <li>Deactivate the escrow contract if you no longer need it</li>
      </ul>
      <div class="footer">
        <p>This is an automated notification from {esc(product_name)}.</p>
      </div>
    </div>
  </div>
</body>
</html>"""
    return WarningMessage(subject=subject, text_body=text_body, html_body=html_body)


class Notifier(abc.ABC):
    """Delivery interface used by the notification policy."""

    @abc.abstractmethod
    async def send_warning(self, warning: InactivityWarning) -> None:
        """Deliver *warning* or raise ``NotificationError``."""

    async def close(self) -> None:
        pass


class MailPaceNotifier(Notifier):
    """Sends warnings through the MailPace HTTP API."""

    def __init__(self, cfg: MailConfig, session: aiohttp.ClientSession | None = None):
        self.cfg = cfg
        self._session = session
        self._owns_session = session is None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.cfg.timeout_seconds)
            )
            self._owns_session = True
        return self._session

    async def send_warning(self, warning: InactivityWarning) -> None:
        if not self.cfg.api_token:
            raise NotificationError("MAILPACE_API_TOKEN not configured")

        msg = build_warning_message(warning, self.cfg.product_name)
        body = {
            "from": self.cfg.from_email,
            "to": warning.to,
            "subject": msg.subject,
            "textbody": msg.text_body,
            "htmlbody": msg.html_body,
        }
        headers = {
            "Accept": "application/json",
            "MailPace-Server-Token": self.cfg.api_token,
        }
        session = await self._get_session()
        try:
            async with session.post(self.cfg.api_url, json=body, headers=headers) as resp:
                if resp.status >= 300:
                    detail = await resp.text()
                    raise NotificationError(
                        f"MailPace API error: {resp.status} {resp.reason} - {detail[:200]}"
                    )
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise NotificationError(f"MailPace request failed: {exc}") from exc

        logger.info(
            f"Email sent successfully to {warning.to}",
            extra={"network": warning.network, "escrow": warning.escrow_address},
        )

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
