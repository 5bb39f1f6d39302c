"""
EventLogger: level routing and sampling for structured bot events.

Components take a ``log_event(event, **data)`` callback; this class provides
one that picks the log level from the event name, samples high-frequency
events and tags every line with the traded symbol.

Usage:
    events = EventLogger(symbol="SOL_USDC_PERP")
    events.log("order_placed", side="Bid", price="98.5")
    controller = TradingCycleController(..., log_event=events.get_callback())
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Set

log = logging.getLogger("ladderbot")


@dataclass
class EventLoggerConfig:
    """Configuration for EventLogger."""
    # Sampling rate for per-message events (0.0-1.0)
    message_sample_rate: float = 0.01
    # Throttle window for repetitive warnings
    throttle_window_sec: float = 60.0
    debug_enabled: bool = False


class EventLogger:
    """
    Event name -> log level routing.

    - CRITICAL: trading halted, flatten failed
    - ERROR: failures needing attention (reconnect exhausted, close failed)
    - WARNING: recoverable issues (stale feed, retries, risk gate)
    - INFO: lifecycle (transitions, orders, closes)
    - DEBUG: per-tick detail
    """

    CRITICAL_EVENTS: Set[str] = {
        "controller_halted", "flatten_failed", "close_position_failed_on_stop",
    }

    ERROR_EVENTS: Set[str] = {
        "ws_reconnect_exhausted", "close_position_error", "order_submit_error",
        "cancel_error", "controller_step_error", "price_feed_check_error",
        "connection_dispatch_error", "price_feed_degraded", "price_observer_error",
        "price_feed_restart_error", "cycle_invalid_transition",
    }

    WARNING_EVENTS: Set[str] = {
        "ws_error", "ws_closed", "ws_heartbeat_missed", "ws_force_reconnect",
        "ws_stale_detected", "retry_attempt", "risk_gate_blocked", "rest_price_failed",
        "cancel_verify_remaining", "cancel_verify_failed", "order_rejected_rate_limit",
        "ladder_aborted_insufficient_funds", "no_usable_price", "ladder_empty", "price_stale",
        "rest_price_backoff", "ws_payload_unparsed", "price_feed_reset_connection",
        "direct_quote_failed", "flatten_skipped", "ws_server_error", "ws_subscribe_failed",
        "ws_ping_failed", "ws_connect_refused", "ws_close_error", "position_closed_externally",
    }

    DEBUG_EVENTS: Set[str] = {
        "ws_message", "ws_ping", "ws_pong", "price_update", "price_throttled",
        "ws_duplicate_dropped", "ws_stale_event_ignored", "controller_tick", "dedup_pruned",
    }

    THROTTLE_EVENTS: Set[str] = {
        "risk_gate_blocked", "no_usable_price", "price_stale",
    }

    SAMPLED_EVENTS: Set[str] = {"ws_message", "price_update"}

    def __init__(self, symbol: str, config: Optional[EventLoggerConfig] = None) -> None:
        self.symbol = symbol
        self.config = config or EventLoggerConfig()
        self._throttle_times: Dict[str, float] = {}
        self._sample_counter: int = 0

    def level_for(self, event: str) -> int:
        if event in self.CRITICAL_EVENTS:
            return logging.CRITICAL
        if event in self.ERROR_EVENTS:
            return logging.ERROR
        if event in self.WARNING_EVENTS:
            return logging.WARNING
        if event in self.DEBUG_EVENTS:
            return logging.DEBUG
        return logging.INFO

    def log(self, event: str, **data: Any) -> None:
        level = self.level_for(event)

        if event in self.THROTTLE_EVENTS:
            now = time.monotonic()
            last = self._throttle_times.get(event)
            if last is not None and now - last < self.config.throttle_window_sec:
                return
            self._throttle_times[event] = now

        if event in self.SAMPLED_EVENTS and not self._should_sample(self.config.message_sample_rate):
            return

        if level == logging.DEBUG and not self.config.debug_enabled:
            return

        payload = {"event": event, "symbol": self.symbol, **data}
        log.log(level, json.dumps(payload, default=str))

    def _should_sample(self, rate: float) -> bool:
        # Counter based so the sampled share is exact over time
        if rate <= 0.0:
            return False
        if rate >= 1.0:
            return True
        self._sample_counter += 1
        threshold = int(1.0 / rate)
        return (self._sample_counter % threshold) == 0

    def get_callback(self) -> Callable[..., None]:
        return self.log
