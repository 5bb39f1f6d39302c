"""
Tests for webhook alerting and the status board.
"""
from decimal import Decimal
from unittest.mock import AsyncMock, patch

import pytest

from ladderbot.monitoring.alerting import (
    Alert,
    AlertConfig,
    AlertManager,
    AlertSeverity,
    AlertType,
    WebhookFormatter,
    configure_alerts,
)
from ladderbot.monitoring.status import StatusBoard


def halted_alert(title="Halted"):
    return Alert(
        alert_type=AlertType.CONTROLLER_HALTED,
        severity=AlertSeverity.CRITICAL,
        title=title,
        message="Cycle controller halted: auth",
        symbol="SOL_USDC_PERP",
        details={"state": "IDLE", "error": "HTTP 401"},
    )


class TestAlertManager:
    """Tests for AlertManager."""

    @pytest.fixture
    def alert_config(self):
        return AlertConfig(
            webhook_url="https://hooks.example.com/test",
            webhook_type="generic",
            min_severity=AlertSeverity.WARNING,
            rate_limit_seconds=10,
            batch_window_ms=10_000,
            enabled=True,
        )

    def test_alert_to_dict(self):
        data = halted_alert().to_dict()
        assert data["type"] == "CONTROLLER_HALTED"
        assert data["severity"] == "CRITICAL"
        assert data["symbol"] == "SOL_USDC_PERP"
        assert data["details"] == {"state": "IDLE", "error": "HTTP 401"}
        assert data["timestamp_iso"].endswith("Z")

    @pytest.mark.asyncio
    async def test_alert_disabled(self, alert_config):
        """Alerts are not queued when disabled."""
        alert_config.enabled = False
        manager = AlertManager(alert_config)
        assert await manager.send_alert(halted_alert()) is False

    @pytest.mark.asyncio
    async def test_alert_no_webhook(self):
        manager = AlertManager(AlertConfig(webhook_url=None))
        assert await manager.send_alert(halted_alert()) is False

    @pytest.mark.asyncio
    async def test_severity_filtering(self, alert_config):
        """INFO is below the WARNING threshold."""
        manager = AlertManager(alert_config)
        manager._http_post = AsyncMock(return_value=True)
        assert await manager.alert_startup("SOL_USDC_PERP") is False
        assert await manager.alert_stop_loss("SOL_USDC_PERP") is True
        await manager.close()

    @pytest.mark.asyncio
    async def test_rate_limiting(self, alert_config):
        """Second alert of the same type inside the window is dropped."""
        manager = AlertManager(alert_config)
        with patch.object(manager, "_http_post", new_callable=AsyncMock) as mock_post:
            mock_post.return_value = True
            first = await manager.send_alert(halted_alert("first"))
            second = await manager.send_alert(halted_alert("second"))
            other = await manager.alert_feed_degraded("SOL_USDC_PERP")
            await manager.close()

        assert first is True
        assert second is False
        assert other is True
        mock_post.assert_awaited_once()
        payload = mock_post.await_args.args[0]
        assert [a["title"] for a in payload["alerts"]] == ["first", "Price Stream Failed"]
        assert manager.delivered == 2

    @pytest.mark.asyncio
    async def test_batch_window_delivers(self, alert_config):
        alert_config.batch_window_ms = 10
        manager = AlertManager(alert_config)
        with patch.object(manager, "_http_post", new_callable=AsyncMock) as mock_post:
            mock_post.return_value = True
            await manager.send_alert(halted_alert())
            await manager._batch_task

        mock_post.assert_awaited_once()
        assert mock_post.await_args.args[0]["title"] == "Halted"

    @pytest.mark.asyncio
    async def test_failed_delivery_counted(self, alert_config):
        manager = AlertManager(alert_config)
        with patch.object(manager, "_http_post", new_callable=AsyncMock) as mock_post:
            mock_post.return_value = False
            await manager.send_alert(halted_alert())
            assert await manager.flush() is False

        assert manager.failed == 1
        assert manager.delivered == 0
        await manager.close()

    @pytest.mark.asyncio
    async def test_shutdown_severity_depends_on_reason(self, alert_config):
        manager = AlertManager(alert_config)
        manager._http_post = AsyncMock(return_value=True)
        assert await manager.alert_shutdown("normal") is False
        assert await manager.alert_shutdown("halted:auth") is True
        await manager.close()

    @pytest.mark.asyncio
    async def test_slack_batch_merges_attachments(self, alert_config):
        alert_config.webhook_type = "slack"
        manager = AlertManager(alert_config)
        with patch.object(manager, "_http_post", new_callable=AsyncMock) as mock_post:
            mock_post.return_value = True
            await manager.alert_controller_halted("auth", "SOL_USDC_PERP")
            await manager.alert_stop_loss("SOL_USDC_PERP", price=Decimal("96.9"))
            await manager.close()

        payload = mock_post.await_args.args[0]
        assert [a["title"] for a in payload["attachments"]] == ["Trading Halted", "Stop-Loss Close"]

    def test_configure_alerts(self):
        manager = configure_alerts(webhook_url="https://x", webhook_type="discord", bot_name="Bot")
        assert manager.config.webhook_type == "discord"
        assert manager.config.bot_name == "Bot"
        assert manager.config.min_severity is AlertSeverity.WARNING


class TestWebhookFormatter:

    def test_format_slack(self):
        payload = WebhookFormatter.format_slack(halted_alert(), AlertConfig(bot_name="TestBot"))
        attachment = payload["attachments"][0]
        assert payload["username"] == "TestBot"
        assert attachment["color"] == "#FF0000"
        assert {"title": "Symbol", "value": "SOL_USDC_PERP", "short": True} in attachment["fields"]
        assert attachment["footer"] == "TestBot | CRITICAL"

    def test_format_discord(self):
        payload = WebhookFormatter.format_discord(halted_alert(), AlertConfig(bot_name="TestBot"))
        embed = payload["embeds"][0]
        assert embed["color"] == 0xFF0000
        assert embed["description"] == "Cycle controller halted: auth"
        assert {"name": "state", "value": "IDLE", "inline": True} in embed["fields"]

    def test_details_can_be_omitted(self):
        payload = WebhookFormatter.format_discord(halted_alert(), AlertConfig(include_details=False))
        names = [f["name"] for f in payload["embeds"][0]["fields"]]
        assert names == ["Symbol", "Type"]


class TestStatusBoard:

    STATE = {
        "symbol": "SOL_USDC_PERP",
        "feed": {
            "price": Decimal("100.5"),
            "source": "ws",
            "age_sec": 1.234,
            "connection": {"state": "CONNECTED"},
        },
        "controller": {
            "state": "POSITION_OPEN",
            "halted": False,
            "position": {"quantity": Decimal("1.018"), "entry_price": Decimal("98.9")},
            "placed_orders": 3,
        },
    }

    @pytest.mark.asyncio
    async def test_update_and_snapshot(self):
        board = StatusBoard()
        await board.update("SOL_USDC_PERP", self.STATE)
        snap = await board.snapshot()
        assert snap == {"SOL_USDC_PERP": self.STATE}

    def test_summarize(self):
        summary = StatusBoard.summarize("SOL_USDC_PERP", self.STATE)
        assert summary == {
            "symbol": "SOL_USDC_PERP",
            "state": "POSITION_OPEN",
            "halted": False,
            "price": Decimal("100.5"),
            "price_source": "ws",
            "price_age_sec": 1.2,
            "ws": "CONNECTED",
            "position_qty": Decimal("1.018"),
            "entry_price": Decimal("98.9"),
            "placed_orders": 3,
        }

    def test_summarize_handles_missing_sections(self):
        summary = StatusBoard.summarize("X", {"feed": {"age_sec": None}, "controller": {"position": None}})
        assert summary["price_age_sec"] is None
        assert summary["position_qty"] is None
