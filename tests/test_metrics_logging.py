"""Unit tests for Prometheus metrics and structured event logging."""

import json
import logging
from io import StringIO
from unittest.mock import patch

from ladderbot.infra.event_logger import EventLogger, EventLoggerConfig
from ladderbot.infra.logging_cfg import JsonFormatter, ThrottledFilter, log_event, should_sample
from ladderbot.monitoring.metrics import LadderMetrics, start_metrics_server


def test_metrics_counters():
    """Counters are registered on the instance registry."""
    metrics = LadderMetrics()
    metrics.orders_submitted.labels(symbol="SOL_USDC_PERP", side="Bid").inc()
    metrics.orders_submitted.labels(symbol="SOL_USDC_PERP", side="Bid").inc()
    metrics.cycles_completed.labels(symbol="SOL_USDC_PERP", reason="take_profit").inc()

    registry = metrics.get_registry()
    assert registry.get_sample_value(
        "orders_submitted_total", {"symbol": "SOL_USDC_PERP", "side": "Bid"}
    ) == 2.0
    assert registry.get_sample_value(
        "cycles_completed_total", {"symbol": "SOL_USDC_PERP", "reason": "take_profit"}
    ) == 1.0


def test_metrics_instances_are_independent():
    a = LadderMetrics()
    b = LadderMetrics()
    a.reprices.labels(symbol="X").inc()
    assert b.registry.get_sample_value("ladder_reprices_total", {"symbol": "X"}) is None


def test_record_feed_status():
    metrics = LadderMetrics()
    metrics.record_feed_status("SOL_USDC_PERP", {
        "age_sec": 3.5,
        "connection": {"state": "FAILED", "reconnect_attempts": 5, "messages": 120, "duplicates": 4, "opens": 2},
        "rest": {"consecutive_failures": 1},
    })
    reg = metrics.registry
    labels = {"symbol": "SOL_USDC_PERP"}
    assert reg.get_sample_value("ws_connection_state", labels) == 5.0
    assert reg.get_sample_value("ws_reconnect_attempts", labels) == 5.0
    assert reg.get_sample_value("ws_duplicates_dropped", labels) == 4.0
    assert reg.get_sample_value("price_age_sec", labels) == 3.5
    assert reg.get_sample_value("rest_price_consecutive_failures", labels) == 1.0


def test_metrics_server_disabled_for_port_zero():
    assert start_metrics_server(LadderMetrics(), 0) is False


def test_json_formatter():
    record = logging.LogRecord("ladderbot", logging.WARNING, __file__, 1, "hello %s", ("world",), None)
    payload = json.loads(JsonFormatter().format(record))
    assert payload["level"] == "WARNING"
    assert payload["msg"] == "hello world"
    assert "ts_iso" in payload


def test_json_formatter_merges_event_lines():
    message = json.dumps({"event": "order_placed", "symbol": "SOL_USDC_PERP", "price": "98.5"})
    record = logging.LogRecord("ladderbot", logging.INFO, __file__, 1, message, None, None)
    payload = json.loads(JsonFormatter().format(record))
    assert payload["event"] == "order_placed"
    assert payload["symbol"] == "SOL_USDC_PERP"
    assert payload["level"] == "INFO"
    assert "msg" not in payload


def test_throttled_filter_suppresses_repeats():
    throttle = ThrottledFilter(cooldown_sec=60.0)

    def record(msg):
        return logging.LogRecord("ladderbot", logging.WARNING, __file__, 1, msg, None, None)

    stale = json.dumps({"event": "price_stale", "symbol": "SOL_USDC_PERP"})
    other_symbol = json.dumps({"event": "price_stale", "symbol": "BTC_USDC_PERP"})
    assert throttle.filter(record(stale)) is True
    assert throttle.filter(record(stale)) is False
    assert throttle.filter(record(other_symbol)) is True
    assert throttle.filter(record(json.dumps({"event": "order_placed"}))) is True
    assert throttle.filter(record("plain text")) is True


def test_should_sample_bounds():
    assert should_sample(0.0) is False
    assert should_sample(1.0) is True


def test_log_event_writes_json():
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(logging.Formatter("%(levelname)s:%(message)s"))
    logger = logging.getLogger("test_ladderbot_events")
    logger.handlers.clear()
    logger.addHandler(handler)
    logger.setLevel(logging.INFO)

    log_event(logger, "order_placed", level=logging.WARNING, price="98.5")

    level, _, body = stream.getvalue().strip().partition(":")
    assert level == "WARNING"
    assert json.loads(body) == {"event": "order_placed", "price": "98.5"}


class TestEventLogger:

    def test_level_routing(self):
        events = EventLogger(symbol="SOL_USDC_PERP")
        assert events.level_for("controller_halted") == logging.CRITICAL
        assert events.level_for("ws_reconnect_exhausted") == logging.ERROR
        assert events.level_for("risk_gate_blocked") == logging.WARNING
        assert events.level_for("ws_pong") == logging.DEBUG
        assert events.level_for("order_placed") == logging.INFO

    def test_tags_symbol(self):
        events = EventLogger(symbol="SOL_USDC_PERP")
        with patch("ladderbot.infra.event_logger.log") as mock_log:
            events.get_callback()("order_placed", price="98.5")
        level, message = mock_log.log.call_args.args
        assert level == logging.INFO
        assert json.loads(message) == {"event": "order_placed", "symbol": "SOL_USDC_PERP", "price": "98.5"}

    def test_debug_dropped_unless_enabled(self):
        quiet = EventLogger(symbol="X")
        verbose = EventLogger(symbol="X", config=EventLoggerConfig(debug_enabled=True))
        with patch("ladderbot.infra.event_logger.log") as mock_log:
            quiet.log("ws_pong")
            assert mock_log.log.call_count == 0
            verbose.log("ws_pong")
            assert mock_log.log.call_count == 1

    def test_throttled_events(self):
        events = EventLogger(symbol="X", config=EventLoggerConfig(throttle_window_sec=60.0))
        with patch("ladderbot.infra.event_logger.log") as mock_log:
            events.log("risk_gate_blocked", where="get_positions")
            events.log("risk_gate_blocked", where="get_positions")
        assert mock_log.log.call_count == 1

    def test_sampled_events(self):
        events = EventLogger(symbol="X", config=EventLoggerConfig(message_sample_rate=0.25, debug_enabled=True))
        with patch("ladderbot.infra.event_logger.log") as mock_log:
            for _ in range(8):
                events.log("price_update")
        assert mock_log.log.call_count == 2
