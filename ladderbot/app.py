"""
LadderApp: builds every component from Settings and runs them together.

Start order: price feed, first price (bounded wait), controller, status loop.
Stop order: status loop, price feed, controller (cancel + optional flatten),
exchange clients.
"""

from __future__ import annotations

import asyncio
import json
import logging
from decimal import Decimal
from typing import Any, Dict, Optional

from ladderbot.config.config import Settings
from ladderbot.exchange.backpack_client import BackpackClient
from ladderbot.exchange.public_quotes import PublicQuoteClient
from ladderbot.execution.cycle_controller import ControllerConfig, TradingCycleController
from ladderbot.infra.event_logger import EventLogger
from ladderbot.infra.retry import RetryExecutor
from ladderbot.market_data.connection import ConnectionConfig
from ladderbot.market_data.price_feed import PriceFeed, PriceFeedConfig, PriceUpdate
from ladderbot.market_data.rest_price import RestPriceConfig, RestPriceSource
from ladderbot.monitoring.alerting import AlertManager
from ladderbot.monitoring.metrics import LadderMetrics
from ladderbot.monitoring.status import StatusBoard
from ladderbot.strategy.exit_rules import ExitRules
from ladderbot.strategy.ladder_planner import OrderLadderPlanner, Precision

log = logging.getLogger("ladderbot")


class LadderApp:
    def __init__(
        self,
        cfg: Settings,
        metrics: Optional[LadderMetrics] = None,
        alerts: Optional[AlertManager] = None,
        status_board: Optional[StatusBoard] = None,
        client: Optional[BackpackClient] = None,
        quotes: Optional[PublicQuoteClient] = None,
        first_price_timeout_sec: float = 15.0,
    ) -> None:
        self.cfg = cfg
        self.symbol = cfg.symbol
        self.metrics = metrics
        self.alerts = alerts
        self.status_board = status_board or StatusBoard()
        self.first_price_timeout_sec = first_price_timeout_sec
        self.events = EventLogger(symbol=cfg.symbol)
        log_event = self.events.get_callback()

        if client is None:
            client = BackpackClient(
                base_url=cfg.rest_url,
                api_key=cfg.api_key,
                signer=cfg.resolve_signer(),
                timeout=cfg.http_timeout,
            )
        self.client = client
        self.quotes = quotes or PublicQuoteClient(base_url=cfg.fallback_rest_url, timeout=cfg.http_timeout)

        self.retry = RetryExecutor(
            max_attempts=cfg.retry_max_attempts,
            base_delay=cfg.retry_base_delay_sec,
            log_event=log_event,
        )
        self.rest_source = RestPriceSource(
            symbol=cfg.symbol,
            primary=self._primary_quote,
            fallback=self.quotes.get_price,
            config=RestPriceConfig(
                min_interval_sec=cfg.rest_min_interval_sec,
                retry_interval_sec=cfg.rest_retry_interval_sec,
                backoff_cap_sec=cfg.rest_backoff_cap_sec,
            ),
            log_event=log_event,
        )
        self.price_feed = PriceFeed(
            symbol=cfg.symbol,
            rest_source=self.rest_source,
            config=PriceFeedConfig(
                throttle_interval_sec=cfg.price_throttle_sec,
                check_interval_sec=cfg.stale_check_interval_sec,
                rest_after_sec=cfg.stale_rest_after_sec,
                reconnect_after_sec=cfg.stale_reconnect_after_sec,
                failed_retry_after_sec=cfg.failed_retry_after_sec,
                max_price_age_sec=cfg.max_price_age_sec,
            ),
            connection_config=ConnectionConfig(
                url=cfg.ws_url,
                connect_timeout_sec=cfg.connect_timeout_sec,
                max_reconnect_attempts=cfg.reconnect_max_attempts,
                reconnect_base_sec=cfg.reconnect_base_sec,
                reconnect_cap_sec=cfg.reconnect_cap_sec,
                heartbeat_interval_sec=cfg.heartbeat_interval_sec,
                heartbeat_timeout_sec=cfg.heartbeat_timeout_sec,
                max_heartbeat_failures=cfg.heartbeat_max_failures,
            ),
            on_degraded=self._on_feed_degraded,
            log_event=log_event,
        )
        self._unsubscribe_metrics = None
        if self.metrics:
            self._unsubscribe_metrics = self.price_feed.subscribe(self._record_price)

        self.planner = OrderLadderPlanner(
            side=cfg.side,
            max_move_percent=cfg.max_move_percent,
            total_amount=cfg.total_amount,
            rung_count=cfg.rung_count,
            increment_percent=cfg.increment_percent,
            min_order_amount=cfg.min_order_amount,
            precision=Precision(price_tick=cfg.price_tick, quantity_step=cfg.quantity_step),
            leverage=cfg.leverage,
            min_quantity=cfg.min_quantity,
        )
        self.controller = TradingCycleController(
            config=ControllerConfig(
                symbol=cfg.symbol,
                side=cfg.side,
                exit_rules=ExitRules(
                    take_profit_percent=cfg.take_profit_percent,
                    stop_loss_percent=cfg.stop_loss_percent,
                    trailing_enabled=cfg.trailing_enabled,
                    trailing_activation_percent=cfg.trailing_activation_percent,
                    trailing_distance_percent=cfg.trailing_distance_percent,
                ),
                poll_interval_sec=cfg.poll_interval_sec,
                no_fill_timeout_sec=cfg.no_fill_timeout_sec,
                order_delay_sec=cfg.order_delay_sec,
                cancel_settle_sec=cfg.cancel_settle_sec,
                max_price_age_sec=cfg.max_price_age_sec,
                keep_existing_orders=cfg.keep_existing_orders,
                cancel_orders_on_start=cfg.cancel_orders_on_start,
                auto_restart=cfg.auto_restart,
                cycle_cooldown_sec=cfg.cycle_cooldown_sec,
                reinit_feed_on_reset=cfg.reinit_feed_on_reset,
                close_on_stop=cfg.close_on_stop,
                shutdown_grace_sec=cfg.shutdown_grace_sec,
            ),
            client=self.client,
            planner=self.planner,
            price_feed=self.price_feed,
            retry=self.retry,
            metrics=self.metrics,
            alerts=self.alerts,
            log_event=log_event,
        )

        self._status_task: Optional[asyncio.Task] = None
        self._started = False
        self._stop_task: Optional[asyncio.Task] = None

    async def _primary_quote(self, symbol: str) -> Decimal:
        ticker = await self.client.get_ticker(symbol)
        return ticker.last_price

    async def _on_feed_degraded(self, status: Dict[str, Any]) -> None:
        if self.alerts is not None:
            await self.alerts.alert_feed_degraded(
                self.symbol,
                reconnect_attempts=status.get("reconnect_attempts"),
                last_closed_at=status.get("last_closed_at"),
            )

    def _record_price(self, update: PriceUpdate) -> None:
        self.metrics.price_updates.labels(symbol=self.symbol, source=update.source.value).inc()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        if self._started:
            return
        self._started = True
        if self.metrics:
            self.metrics.bot_started.labels(symbol=self.symbol).inc()
        await self.price_feed.start()
        if not await self.price_feed.wait_for_first_price(self.first_price_timeout_sec):
            # The controller falls back to direct quotes until the stream delivers
            log.warning(json.dumps({
                "event": "first_price_timeout",
                "symbol": self.symbol,
                "timeout_sec": self.first_price_timeout_sec,
            }))
        await self.controller.start()
        self._status_task = asyncio.create_task(self._status_loop(), name="status-loop")
        log.info(json.dumps({"event": "app_started", "symbol": self.symbol, "side": self.cfg.side.value}))

    async def stop(self) -> None:
        """Stop everything once; concurrent callers share the same shutdown."""
        if self._stop_task is None:
            self._stop_task = asyncio.create_task(self._shutdown())
        await asyncio.shield(self._stop_task)

    async def _shutdown(self) -> None:
        if self._status_task is not None:
            self._status_task.cancel()
            await asyncio.gather(self._status_task, return_exceptions=True)
            self._status_task = None
        if self._unsubscribe_metrics is not None:
            self._unsubscribe_metrics()
            self._unsubscribe_metrics = None
        await self.price_feed.stop()
        await self.controller.stop()
        await self.client.close()
        await self.quotes.close()
        await self.push_status()
        log.info(json.dumps({"event": "app_stopped", "symbol": self.symbol, **self.controller.get_stats()}, default=str))

    async def wait_halted(self, poll_sec: float = 1.0) -> None:
        """Return once the controller halts on its own (auth failure, step error)."""
        while not self.controller.halted:
            await asyncio.sleep(poll_sec)

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def get_state(self) -> Dict[str, Any]:
        return {
            "symbol": self.symbol,
            "feed": self.price_feed.status(),
            "controller": self.controller.get_state(),
        }

    async def push_status(self) -> Dict[str, Any]:
        state = self.get_state()
        if self.metrics:
            self.metrics.record_feed_status(self.symbol, state["feed"])
        await self.status_board.update(self.symbol, state)
        return state

    async def _status_loop(self) -> None:
        interval = self.cfg.status_interval_sec
        while True:
            await asyncio.sleep(interval)
            state = await self.push_status()
            log.info(json.dumps(
                {"event": "status", **StatusBoard.summarize(self.symbol, state)},
                default=str,
            ))
