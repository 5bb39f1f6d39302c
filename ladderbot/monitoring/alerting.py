"""
Webhook alerts for events an operator has to act on.

Alerts go to a Slack, Discord or generic JSON webhook through aiohttp. Each
(type, symbol) pair is rate limited, and alerts raised close together are
posted as one batch. Delivery runs in a background task and never raises
into the trading loop.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Any, Callable, Dict, List, Optional, Tuple

import aiohttp

logger = logging.getLogger("ladderbot")


class AlertSeverity(Enum):
    # Lower value is more severe.
    CRITICAL = auto()
    WARNING = auto()
    INFO = auto()


class AlertType(Enum):
    CONTROLLER_HALTED = auto()
    STOP_LOSS = auto()
    FEED_DEGRADED = auto()
    STARTUP = auto()
    SHUTDOWN = auto()
    CUSTOM = auto()


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class Alert:
    alert_type: AlertType
    severity: AlertSeverity
    title: str
    message: str
    timestamp_ms: int = field(default_factory=_now_ms)
    details: Dict[str, Any] = field(default_factory=dict)
    symbol: Optional[str] = None

    @property
    def timestamp_iso(self) -> str:
        return time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime(self.timestamp_ms / 1000))

    @property
    def rate_key(self) -> Tuple[AlertType, Optional[str]]:
        return self.alert_type, self.symbol

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "type": self.alert_type.name,
            "severity": self.severity.name,
            "symbol": self.symbol,
            "title": self.title,
            "message": self.message,
            "timestamp_ms": self.timestamp_ms,
            "timestamp_iso": self.timestamp_iso,
        }
        data["details"] = {key: str(value) for key, value in self.details.items()}
        return data


@dataclass
class AlertConfig:
    webhook_url: Optional[str] = None
    webhook_type: str = "generic"  # generic | slack | discord
    min_severity: AlertSeverity = AlertSeverity.WARNING
    rate_limit_seconds: int = 60
    batch_window_ms: int = 2000
    timeout_sec: float = 10.0
    retries: int = 2
    enabled: bool = True
    include_details: bool = True
    bot_name: str = "LadderBot"

    def accepts(self, severity: AlertSeverity) -> bool:
        return severity.value <= self.min_severity.value


COLOR_BY_SEVERITY = {
    AlertSeverity.CRITICAL: 0xFF0000,
    AlertSeverity.WARNING: 0xFFA500,
    AlertSeverity.INFO: 0x0000FF,
}
_MAX_DETAIL_FIELDS = 5


def _color(alert: Alert) -> int:
    return COLOR_BY_SEVERITY.get(alert.severity, 0x808080)


def _summary_fields(alert: Alert, config: AlertConfig) -> List[Tuple[str, str]]:
    """Symbol and type first, then up to five detail entries."""
    rows: List[Tuple[str, str]] = []
    if alert.symbol:
        rows.append(("Symbol", alert.symbol))
    rows.append(("Type", alert.alert_type.name))
    if config.include_details:
        for key, value in list(alert.details.items())[:_MAX_DETAIL_FIELDS]:
            rows.append((key, str(value)))
    return rows


class WebhookFormatter:
    """Per-service payload shapes. Slack and Discord carry a list that batches extend."""

    @staticmethod
    def format_generic(alert: Alert, config: AlertConfig) -> Dict[str, Any]:
        return alert.to_dict()

    @staticmethod
    def format_slack(alert: Alert, config: AlertConfig) -> Dict[str, Any]:
        footer = f"{config.bot_name} | {alert.severity.name}"
        attachment = {
            "color": f"#{_color(alert):06X}",
            "title": alert.title,
            "text": alert.message,
            "fields": [{"title": k, "value": v, "short": True} for k, v in _summary_fields(alert, config)],
            "footer": footer,
            "ts": alert.timestamp_ms // 1000,
        }
        return {"username": config.bot_name, "attachments": [attachment]}

    @staticmethod
    def format_discord(alert: Alert, config: AlertConfig) -> Dict[str, Any]:
        embed = {
            "title": alert.title,
            "description": alert.message,
            "color": _color(alert),
            "fields": [{"name": k, "value": v, "inline": True} for k, v in _summary_fields(alert, config)],
            "footer": {"text": f"{config.bot_name} | {alert.severity.name}"},
            "timestamp": alert.timestamp_iso,
        }
        return {"username": config.bot_name, "embeds": [embed]}


Formatter = Callable[[Alert, AlertConfig], Dict[str, Any]]

# webhook_type -> (formatter, list key extended when batching)
WEBHOOK_STYLES: Dict[str, Tuple[Formatter, Optional[str]]] = {
    "generic": (WebhookFormatter.format_generic, None),
    "slack": (WebhookFormatter.format_slack, "attachments"),
    "discord": (WebhookFormatter.format_discord, "embeds"),
}


class AlertManager:
    """
    Queues alerts and posts them in batches.

    ``send_alert`` only decides whether an alert is accepted; the post happens
    after ``batch_window_ms`` from a background task, or on ``flush``/``close``.

        alerts = AlertManager(AlertConfig(webhook_url=url, webhook_type="slack"))
        await alerts.alert_stop_loss("SOL_USDC_PERP", price=exit_price)
        ...
        await alerts.close()
    """

    def __init__(self, config: Optional[AlertConfig] = None) -> None:
        self.config = config or AlertConfig()
        self._last_sent_ms: Dict[Tuple[AlertType, Optional[str]], int] = {}
        self._pending: List[Alert] = []
        self._batch_task: Optional[asyncio.Task] = None
        self.delivered = 0
        self.failed = 0

    def _rate_limited(self, alert: Alert, now_ms: int) -> bool:
        last = self._last_sent_ms.get(alert.rate_key)
        return last is not None and now_ms - last < self.config.rate_limit_seconds * 1000

    async def send_alert(self, alert: Alert) -> bool:
        """Accept an alert for the next batch. False when it was filtered out."""
        cfg = self.config
        if not (cfg.enabled and cfg.webhook_url):
            logger.debug(f"Alert dropped, alerting off: {alert.title}")
            return False
        if not cfg.accepts(alert.severity):
            return False

        now_ms = _now_ms()
        if self._rate_limited(alert, now_ms):
            logger.debug(f"Alert rate limited: {alert.alert_type.name} {alert.symbol or ''}")
            return False

        self._last_sent_ms[alert.rate_key] = now_ms
        self._pending.append(alert)
        if self._batch_task is None or self._batch_task.done():
            self._batch_task = asyncio.create_task(self._deliver_after_window())
        return True

    async def _deliver_after_window(self) -> None:
        await asyncio.sleep(self.config.batch_window_ms / 1000)
        await self.flush()

    async def flush(self) -> bool:
        """Post everything pending. True when nothing was pending or the post succeeded."""
        batch = self._pending
        self._pending = []
        if not batch:
            return True
        if await self._http_post(self._build_payload(batch)):
            self.delivered += len(batch)
            return True
        self.failed += len(batch)
        return False

    async def close(self) -> None:
        task, self._batch_task = self._batch_task, None
        if task is not None and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        await self.flush()

    def _build_payload(self, alerts: List[Alert]) -> Dict[str, Any]:
        formatter, list_key = WEBHOOK_STYLES.get(self.config.webhook_type, WEBHOOK_STYLES["generic"])
        if len(alerts) == 1:
            return formatter(alerts[0], self.config)
        if list_key is None:
            return {"alerts": [alert.to_dict() for alert in alerts]}
        head, *rest = alerts
        payload = formatter(head, self.config)
        for alert in rest:
            payload[list_key].extend(formatter(alert, self.config)[list_key])
        return payload

    async def _http_post(self, payload: Dict[str, Any]) -> bool:
        url = self.config.webhook_url
        if not url:
            return False
        attempts = self.config.retries + 1
        timeout = aiohttp.ClientTimeout(total=self.config.timeout_sec)
        async with aiohttp.ClientSession(timeout=timeout) as session:
            for attempt in range(1, attempts + 1):
                try:
                    async with session.post(url, json=payload) as resp:
                        if resp.status < 300:
                            return True
                        logger.warning(f"Webhook returned HTTP {resp.status} (attempt {attempt}/{attempts})")
                except asyncio.TimeoutError:
                    logger.warning(f"Webhook timed out (attempt {attempt}/{attempts})")
                except aiohttp.ClientError as e:
                    logger.warning(f"Webhook error: {e} (attempt {attempt}/{attempts})")
                if attempt < attempts:
                    await asyncio.sleep(attempt)
        return False

    # Convenience builders for the alerts the app raises

    def _make(self, alert_type: AlertType, severity: AlertSeverity, title: str, message: str,
              symbol: Optional[str], details: Dict[str, Any]) -> Alert:
        return Alert(alert_type=alert_type, severity=severity, title=title, message=message,
                     symbol=symbol, details=details)

    async def alert_controller_halted(self, reason: str, symbol: Optional[str] = None, **details) -> bool:
        return await self.send_alert(self._make(
            AlertType.CONTROLLER_HALTED, AlertSeverity.CRITICAL, "Trading Halted",
            f"Cycle controller halted: {reason}", symbol, details,
        ))

    async def alert_stop_loss(self, symbol: Optional[str] = None, **details) -> bool:
        return await self.send_alert(self._make(
            AlertType.STOP_LOSS, AlertSeverity.WARNING, "Stop-Loss Close",
            "Position closed by stop-loss", symbol, details,
        ))

    async def alert_feed_degraded(self, symbol: Optional[str] = None, **details) -> bool:
        return await self.send_alert(self._make(
            AlertType.FEED_DEGRADED, AlertSeverity.CRITICAL, "Price Stream Failed",
            "Reconnect attempts exhausted; prices now come from REST polling", symbol, details,
        ))

    async def alert_startup(self, symbol: str, **details) -> bool:
        return await self.send_alert(self._make(
            AlertType.STARTUP, AlertSeverity.INFO, "Bot Started",
            f"{self.config.bot_name} started trading {symbol}", symbol, details,
        ))

    async def alert_shutdown(self, reason: str = "normal", **details) -> bool:
        severity = AlertSeverity.INFO if reason == "normal" else AlertSeverity.WARNING
        return await self.send_alert(self._make(
            AlertType.SHUTDOWN, severity, "Bot Shutdown",
            f"{self.config.bot_name} shutting down: {reason}", None, details,
        ))


def configure_alerts(
    webhook_url: Optional[str] = None,
    webhook_type: str = "generic",
    min_severity: AlertSeverity = AlertSeverity.WARNING,
    enabled: bool = True,
    bot_name: str = "LadderBot",
) -> AlertManager:
    config = AlertConfig(webhook_url=webhook_url, webhook_type=webhook_type,
                         min_severity=min_severity, enabled=enabled, bot_name=bot_name)
    return AlertManager(config)
