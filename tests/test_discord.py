"""Tests for DiscordAlerter — message formatting, webhook calls, and rate limiting."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from mtabot.alerts.discord import COLOR_BLUE, COLOR_GREEN, COLOR_ORANGE, COLOR_RED, DiscordAlerter
from mtabot.core.types import ClosedTrade, Position

# --- Helpers ---

WEBHOOK_URL = "https://discord.com/api/webhooks/123456/test-token"


def _position(side: str = "LONG") -> Position:
    return Position(
        side=side,  # type: ignore[arg-type]
        entry_price=27_000.0,
        quantity=0.037,
        entry_fee=0.3996,
        active_strategy="TrendFollowing",
    )


def _trade(
    side: str = "LONG",
    exit_price: float = 27_540.0,
    reason: str = "TAKE_PROFIT",
    strategy: str | None = "TrendFollowing",
) -> ClosedTrade:
    return ClosedTrade(
        symbol="BTCUSDT",
        side=side,  # type: ignore[arg-type]
        strategy=strategy,  # type: ignore[arg-type]
        entry_price=27_000.0,
        exit_price=exit_price,
        quantity=0.1,
        entry_fee=0.0,
        exit_fee=0.0,
        reason=reason,  # type: ignore[arg-type]
        closed_at=1_700_000_000_000,
    )


def _mock_response(
    status_code: int = 204,
    headers: dict | None = None,
    json_data: dict | None = None,
) -> httpx.Response:
    """Create a mock httpx.Response."""
    resp = MagicMock(spec=httpx.Response)
    resp.status_code = status_code
    resp.headers = headers or {}
    resp.text = ""
    resp.json.return_value = json_data or {}
    return resp


def _make_alerter() -> tuple[DiscordAlerter, AsyncMock]:
    client = MagicMock(spec=httpx.AsyncClient)
    client.post = AsyncMock(return_value=_mock_response(204))
    client.aclose = AsyncMock()
    return DiscordAlerter(WEBHOOK_URL, client=client), client.post


def _sent_embed(mock_post: AsyncMock) -> dict:
    return mock_post.call_args.kwargs["json"]["embeds"][0]


# --- TestSendAlert ---


class TestSendAlert:
    """Tests for the core send_alert method."""

    @pytest.mark.asyncio(loop_scope="function")
    async def test_send_message_only(self) -> None:
        alerter, mock_post = _make_alerter()
        await alerter.send_alert("Hello world")
        mock_post.assert_called_once_with(WEBHOOK_URL, json={"content": "Hello world"})

    @pytest.mark.asyncio(loop_scope="function")
    async def test_send_with_embed(self) -> None:
        alerter, mock_post = _make_alerter()
        embed = {"title": "Test", "color": 123}
        await alerter.send_alert("msg", embed=embed)
        mock_post.assert_called_once_with(WEBHOOK_URL, json={"content": "msg", "embeds": [embed]})

    @pytest.mark.asyncio(loop_scope="function")
    async def test_http_error_logged_not_raised(self) -> None:
        alerter, mock_post = _make_alerter()
        mock_post.side_effect = httpx.ConnectError("connection refused")

        # Should not raise
        await alerter.send_alert("test")

    @pytest.mark.asyncio(loop_scope="function")
    async def test_non_200_logged_not_raised(self) -> None:
        alerter, mock_post = _make_alerter()
        mock_post.return_value = _mock_response(500)
        await alerter.send_alert("test")
        assert mock_post.call_count == 1


# --- TestRateLimiting ---


class TestRateLimiting:
    """Tests for Discord 429 rate limit handling."""

    @pytest.mark.asyncio(loop_scope="function")
    async def test_retries_on_429_with_retry_after_header(self) -> None:
        alerter, mock_post = _make_alerter()
        mock_post.side_effect = [_mock_response(429, headers={"Retry-After": "0.01"}), _mock_response(204)]

        with patch.object(asyncio, "sleep", new_callable=AsyncMock) as mock_sleep:
            await alerter.send_alert("test")

        mock_sleep.assert_called_once_with(0.01)
        assert mock_post.call_count == 2

    @pytest.mark.asyncio(loop_scope="function")
    async def test_retries_on_429_with_json_retry_after(self) -> None:
        alerter, mock_post = _make_alerter()
        mock_post.side_effect = [_mock_response(429, json_data={"retry_after": 0.02}), _mock_response(204)]

        with patch.object(asyncio, "sleep", new_callable=AsyncMock) as mock_sleep:
            await alerter.send_alert("test")

        mock_sleep.assert_called_once_with(0.02)

    @pytest.mark.asyncio(loop_scope="function")
    async def test_gives_up_after_max_retries(self) -> None:
        alerter, mock_post = _make_alerter()
        rate_limited = _mock_response(429, headers={"Retry-After": "0.01"})
        mock_post.side_effect = [rate_limited] * 4

        with patch.object(asyncio, "sleep", new_callable=AsyncMock):
            await alerter.send_alert("test")

        # Initial + 3 retries = 4 calls
        assert mock_post.call_count == 4


# --- Event embeds ---


class TestOnPositionOpen:
    @pytest.mark.asyncio(loop_scope="function")
    async def test_long_embed(self) -> None:
        alerter, mock_post = _make_alerter()
        await alerter.on_position_open("BTCUSDT", _position("LONG"))

        embed = _sent_embed(mock_post)
        assert embed["title"] == "BTCUSDT Position Opened: LONG"
        assert embed["color"] == COLOR_GREEN
        fields = {f["name"]: f["value"] for f in embed["fields"]}
        assert fields["Strategy"] == "TrendFollowing"
        assert fields["Entry Price"] == "27,000.0000"
        assert fields["Quantity"] == "0.037"

    @pytest.mark.asyncio(loop_scope="function")
    async def test_short_embed_is_red(self) -> None:
        alerter, mock_post = _make_alerter()
        await alerter.on_position_open("BTCUSDT", _position("SHORT"))
        assert _sent_embed(mock_post)["color"] == COLOR_RED


class TestOnPositionClose:
    @pytest.mark.asyncio(loop_scope="function")
    async def test_profitable_trade(self) -> None:
        alerter, mock_post = _make_alerter()
        await alerter.on_position_close(_trade())

        embed = _sent_embed(mock_post)
        assert embed["title"] == "BTCUSDT Position Closed: Take Profit"
        assert embed["color"] == COLOR_GREEN
        fields = {f["name"]: f["value"] for f in embed["fields"]}
        assert fields["PnL"] == "+54.00 USDT (+2.00%)"

    @pytest.mark.asyncio(loop_scope="function")
    async def test_losing_trade(self) -> None:
        alerter, mock_post = _make_alerter()
        await alerter.on_position_close(_trade(exit_price=26_730.0, reason="STOP_LOSS"))

        embed = _sent_embed(mock_post)
        assert embed["color"] == COLOR_RED
        fields = {f["name"]: f["value"] for f in embed["fields"]}
        assert fields["PnL"] == "-27.00 USDT (-1.00%)"

    @pytest.mark.asyncio(loop_scope="function")
    async def test_untracked_strategy(self) -> None:
        alerter, mock_post = _make_alerter()
        await alerter.on_position_close(_trade(reason="EXTERNAL", strategy=None))
        fields = {f["name"]: f["value"] for f in _sent_embed(mock_post)["fields"]}
        assert fields["Strategy"] == "-"


class TestOnModeChange:
    @pytest.mark.asyncio(loop_scope="function")
    async def test_management_only_is_orange(self) -> None:
        alerter, mock_post = _make_alerter()
        await alerter.on_mode_change("FULL_TRADING", "MANAGEMENT_ONLY")
        embed = _sent_embed(mock_post)
        assert embed["color"] == COLOR_ORANGE
        assert "MANAGEMENT_ONLY" in embed["description"]

    @pytest.mark.asyncio(loop_scope="function")
    async def test_full_trading_is_blue(self) -> None:
        alerter, mock_post = _make_alerter()
        await alerter.on_mode_change("MANAGEMENT_ONLY", "FULL_TRADING")
        assert _sent_embed(mock_post)["color"] == COLOR_BLUE


class TestOnError:
    @pytest.mark.asyncio(loop_scope="function")
    async def test_error_embed(self) -> None:
        alerter, mock_post = _make_alerter()
        await alerter.on_error("BTCUSDT entry order failed")
        embed = _sent_embed(mock_post)
        assert embed["title"] == "Error"
        assert embed["description"] == "BTCUSDT entry order failed"
        assert embed["color"] == COLOR_RED


class TestAlerterClose:
    @pytest.mark.asyncio(loop_scope="function")
    async def test_close_calls_aclose(self) -> None:
        alerter, _ = _make_alerter()
        await alerter.close()
        alerter._client.aclose.assert_awaited_once()


class TestFormatting:
    def test_format_pnl(self) -> None:
        assert DiscordAlerter._format_pnl(1234.5) == "+1,234.50 USDT"
        assert DiscordAlerter._format_pnl(-5.0) == "-5.00 USDT"
        assert DiscordAlerter._format_pnl(0.0) == "+0.00 USDT"

    def test_format_pnl_percent(self) -> None:
        assert DiscordAlerter._format_pnl_percent(2.5) == "+2.50%"
        assert DiscordAlerter._format_pnl_percent(-1.25) == "-1.25%"

    def test_parse_retry_after_header(self) -> None:
        assert DiscordAlerter._parse_retry_after(_mock_response(429, headers={"Retry-After": "2.5"})) == 2.5

    def test_parse_retry_after_json(self) -> None:
        assert DiscordAlerter._parse_retry_after(_mock_response(429, json_data={"retry_after": 0.75})) == 0.75

    def test_parse_retry_after_default(self) -> None:
        response = _mock_response(429, headers={"Retry-After": "soon"})
        response.json.side_effect = ValueError("no json")
        assert DiscordAlerter._parse_retry_after(response) == 1.0
