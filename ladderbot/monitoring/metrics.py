"""
Prometheus metrics for the ladder bot.

Organized into: stream, price feed, execution, cycle, operational.
"""

from typing import Any, Dict, Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, start_http_server

CONNECTION_STATE_CODES = {
    "CLOSED": 0,
    "CONNECTING": 1,
    "OPEN": 2,
    "CLOSING": 3,
    "RECONNECT_WAIT": 4,
    "FAILED": 5,
}


class LadderMetrics:
    """Metrics for ladder bot observability."""

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        reg = registry or CollectorRegistry()

        # === Stream Metrics ===
        self.ws_connection_state = Gauge(
            'ws_connection_state',
            'Stream connection state (0 closed, 1 connecting, 2 open, 3 closing, 4 reconnect wait, 5 failed)',
            labelnames=['symbol'],
            registry=reg
        )
        self.ws_reconnect_attempts = Gauge(
            'ws_reconnect_attempts',
            'Consecutive reconnect attempts since the last successful open',
            labelnames=['symbol'],
            registry=reg
        )
        self.ws_messages = Gauge(
            'ws_messages_seen',
            'Stream messages received since start',
            labelnames=['symbol'],
            registry=reg
        )
        self.ws_duplicates = Gauge(
            'ws_duplicates_dropped',
            'Duplicate stream events dropped since start',
            labelnames=['symbol'],
            registry=reg
        )
        self.ws_opens = Gauge(
            'ws_opens',
            'Stream connections opened since start',
            labelnames=['symbol'],
            registry=reg
        )

        # === Price Feed Metrics ===
        self.price_updates = Counter(
            'price_updates_total',
            'PriceUpdates delivered to observers',
            labelnames=['symbol', 'source'],
            registry=reg
        )
        self.price_age_sec = Gauge(
            'price_age_sec',
            'Age of the last delivered price (seconds)',
            labelnames=['symbol'],
            registry=reg
        )
        self.rest_price_failures = Gauge(
            'rest_price_consecutive_failures',
            'Consecutive failed REST price fetches',
            labelnames=['symbol'],
            registry=reg
        )

        # === Execution Metrics ===
        self.orders_submitted = Counter(
            'orders_submitted_total',
            'Orders submitted to exchange',
            labelnames=['symbol', 'side'],
            registry=reg
        )
        self.orders_rejected = Counter(
            'orders_rejected_total',
            'Orders rejected by exchange',
            labelnames=['symbol', 'reason'],
            registry=reg
        )
        self.api_latency = Histogram(
            'api_latency_seconds',
            'Exchange call latency including retries (seconds)',
            labelnames=['op'],
            buckets=[0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10],
            registry=reg
        )

        # === Cycle Metrics ===
        self.cycle_state = Gauge(
            'cycle_state',
            'Cycle state (1 idle, 2 placing, 3 awaiting fill, 4 position open, 5 closing, 6 resetting)',
            labelnames=['symbol'],
            registry=reg
        )
        self.cycles_completed = Counter(
            'cycles_completed_total',
            'Completed cycles by close reason',
            labelnames=['symbol', 'reason'],
            registry=reg
        )
        self.reprices = Counter(
            'ladder_reprices_total',
            'Ladders cancelled and re-placed after the no-fill timeout',
            labelnames=['symbol'],
            registry=reg
        )
        self.unrealized_profit_pct = Gauge(
            'unrealized_profit_pct',
            'Unrealized profit of the open position (%)',
            labelnames=['symbol'],
            registry=reg
        )

        # === Operational Metrics ===
        self.controller_ticks = Counter(
            'controller_ticks_total',
            'Controller poll steps by state',
            labelnames=['symbol', 'state'],
            registry=reg
        )
        self.controller_halted = Gauge(
            'controller_halted',
            'Controller halted (1) or trading (0)',
            labelnames=['symbol'],
            registry=reg
        )
        self.bot_started = Counter(
            'bot_started_total',
            'Bot instances started',
            labelnames=['symbol'],
            registry=reg
        )

        self.registry = reg

    def record_feed_status(self, symbol: str, status: Dict[str, Any]) -> None:
        """Copy a PriceFeed.status() snapshot into the gauges."""
        conn = status.get("connection") or {}
        state = conn.get("state")
        if state in CONNECTION_STATE_CODES:
            self.ws_connection_state.labels(symbol=symbol).set(CONNECTION_STATE_CODES[state])
        self.ws_reconnect_attempts.labels(symbol=symbol).set(conn.get("reconnect_attempts", 0))
        self.ws_messages.labels(symbol=symbol).set(conn.get("messages", 0))
        self.ws_duplicates.labels(symbol=symbol).set(conn.get("duplicates", 0))
        self.ws_opens.labels(symbol=symbol).set(conn.get("opens", 0))
        if status.get("age_sec") is not None:
            self.price_age_sec.labels(symbol=symbol).set(status["age_sec"])
        rest = status.get("rest") or {}
        self.rest_price_failures.labels(symbol=symbol).set(rest.get("consecutive_failures", 0))

    def get_registry(self):
        """Return the Prometheus registry for export."""
        return self.registry


def start_metrics_server(metrics: LadderMetrics, port: int) -> bool:
    """Expose /metrics on ``port``; 0 or less disables the server."""
    if port <= 0:
        return False
    start_http_server(port, registry=metrics.registry)
    return True
