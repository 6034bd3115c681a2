"""Discord alerter — send position notifications via Discord webhooks."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone

import httpx

from mtabot.core.types import ClosedTrade, Position, TradingMode

logger = logging.getLogger(__name__)

# Discord embed colors (decimal)
COLOR_GREEN = 0x2ECC71  # Long / profit
COLOR_RED = 0xE74C3C  # Short / loss / error
COLOR_BLUE = 0x3498DB  # Info
COLOR_ORANGE = 0xE67E22  # Warning

# Maximum retries for rate-limited requests
_MAX_RATE_LIMIT_RETRIES = 3


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


class DiscordAlerter:
    """Send bot event notifications to a Discord channel via webhook.

    Methods log failures but never raise, so the trading loop is never
    disrupted by alert failures. A 429 response is retried after the
    ``Retry-After`` duration, up to ``_MAX_RATE_LIMIT_RETRIES`` times.
    """

    def __init__(self, webhook_url: str, client: httpx.AsyncClient | None = None) -> None:
        self.webhook_url = webhook_url
        self._client = client or httpx.AsyncClient(timeout=10.0)

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()

    # --- Public alert methods ---

    async def send_alert(self, message: str, embed: dict | None = None) -> None:
        """Send a message (and optional embed) to the webhook. Never raises."""
        payload: dict = {"content": message}
        if embed is not None:
            payload["embeds"] = [embed]

        for attempt in range(_MAX_RATE_LIMIT_RETRIES + 1):
            try:
                response = await self._client.post(self.webhook_url, json=payload)

                if response.status_code == 429:
                    retry_after = self._parse_retry_after(response)
                    if attempt < _MAX_RATE_LIMIT_RETRIES:
                        logger.warning(
                            "Discord rate limited, retrying after %.1fs (attempt %d/%d)",
                            retry_after,
                            attempt + 1,
                            _MAX_RATE_LIMIT_RETRIES,
                        )
                        await asyncio.sleep(retry_after)
                        continue
                    logger.error(
                        "Discord rate limit exceeded after %d retries, dropping message",
                        _MAX_RATE_LIMIT_RETRIES,
                    )
                    return

                if response.status_code >= 400:
                    logger.error(
                        "Discord webhook returned %d: %s",
                        response.status_code,
                        response.text[:200],
                    )
                return

            except httpx.HTTPError as exc:
                logger.error("Discord webhook request failed: %s", exc)
                return
            except Exception as exc:
                logger.error("Unexpected error sending Discord alert: %s", exc)
                return

    async def on_position_open(self, symbol: str, position: Position) -> None:
        """Alert when a new position is opened."""
        color = COLOR_GREEN if position.side == "LONG" else COLOR_RED
        embed = {
            "title": f"{symbol} Position Opened: {position.side}",
            "color": color,
            "fields": [
                {"name": "Strategy", "value": position.active_strategy or "-", "inline": True},
                {"name": "Entry Price", "value": f"{position.entry_price:,.4f}", "inline": True},
                {"name": "Quantity", "value": f"{position.quantity:g}", "inline": True},
                {"name": "Entry Fee", "value": f"{position.entry_fee:,.4f}", "inline": True},
            ],
            "timestamp": _timestamp(),
        }
        await self.send_alert("", embed=embed)

    async def on_position_close(self, trade: ClosedTrade) -> None:
        """Alert when a position is closed, by the bot or by the exchange."""
        color = COLOR_GREEN if trade.pnl >= 0 else COLOR_RED
        reason_display = trade.reason.replace("_", " ").title()
        embed = {
            "title": f"{trade.symbol} Position Closed: {reason_display}",
            "color": color,
            "fields": [
                {"name": "Side", "value": trade.side, "inline": True},
                {"name": "Entry Price", "value": f"{trade.entry_price:,.4f}", "inline": True},
                {"name": "Exit Price", "value": f"{trade.exit_price:,.4f}", "inline": True},
                {
                    "name": "PnL",
                    "value": f"{self._format_pnl(trade.pnl)} ({self._format_pnl_percent(trade.pnl_percent)})",
                    "inline": True,
                },
                {"name": "Strategy", "value": trade.strategy or "-", "inline": True},
            ],
            "timestamp": _timestamp(),
        }
        await self.send_alert("", embed=embed)

    async def on_mode_change(self, old_mode: TradingMode, new_mode: TradingMode) -> None:
        """Alert when the trading mode switches."""
        embed = {
            "title": "Trading Mode Changed",
            "description": f"{old_mode} → **{new_mode}**",
            "color": COLOR_ORANGE if new_mode == "MANAGEMENT_ONLY" else COLOR_BLUE,
            "timestamp": _timestamp(),
        }
        await self.send_alert("", embed=embed)

    async def on_error(self, error_message: str) -> None:
        """Alert on an error."""
        embed = {
            "title": "Error",
            "description": error_message,
            "color": COLOR_RED,
            "timestamp": _timestamp(),
        }
        await self.send_alert("", embed=embed)

    # --- Private helpers ---

    @staticmethod
    def _format_pnl(pnl: float) -> str:
        """Format PnL with sign: +100.00 USDT or -50.00 USDT."""
        if pnl >= 0:
            return f"+{pnl:,.2f} USDT"
        return f"-{abs(pnl):,.2f} USDT"

    @staticmethod
    def _format_pnl_percent(pnl_percent: float) -> str:
        if pnl_percent >= 0:
            return f"+{pnl_percent:.2f}%"
        return f"{pnl_percent:.2f}%"

    @staticmethod
    def _parse_retry_after(response: httpx.Response) -> float:
        """Extract Retry-After seconds from a 429 response, defaulting to 1s."""
        retry_after_header = response.headers.get("Retry-After")
        if retry_after_header is not None:
            try:
                return float(retry_after_header)
            except (ValueError, TypeError):
                pass

        # Discord's JSON body format: {"retry_after": 1.5}
        try:
            body = response.json()
            return float(body.get("retry_after", 1.0))
        except Exception:
            return 1.0
