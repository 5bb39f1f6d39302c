"""
Environment-driven configuration with validation.

Values come from `LB_*` environment variables (a `.env` file is honored),
then from the optional YAML overrides file (see overrides.py).
"""

from __future__ import annotations

import dataclasses
import json
import logging
import os
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Dict

from dotenv import load_dotenv

from ladderbot.config.overrides import load_overrides
from ladderbot.exchange.models import PositionSide
from ladderbot.exchange.signer import Ed25519Signer

load_dotenv()

log = logging.getLogger("ladderbot")


def env_bool(key: str, default: bool) -> bool:
    val = os.getenv(key)
    if val is None or val == "":
        return default
    return val.lower() in {"1", "true", "yes", "y"}


def _int_env(key: str, default: int) -> int:
    raw = os.getenv(key)
    if raw is None or raw == "":
        return default
    return int(raw)


def _float_env(key: str, default: float) -> float:
    raw = os.getenv(key)
    if raw is None or raw == "":
        return default
    return float(raw)


def _decimal_env(key: str, default: str) -> Decimal:
    raw = os.getenv(key)
    if raw is None or raw == "":
        raw = default
    try:
        return Decimal(raw)
    except InvalidOperation:
        raise ValueError(f"{key}={raw!r} is not a number") from None


@dataclass(frozen=True)
class Settings:
    # Market and ladder
    symbol: str
    side: PositionSide
    leverage: Decimal
    max_move_percent: Decimal
    total_amount: Decimal
    rung_count: int
    increment_percent: Decimal
    min_order_amount: Decimal
    min_quantity: Decimal
    price_tick: Decimal
    quantity_step: Decimal
    # Exits
    take_profit_percent: Decimal
    stop_loss_percent: Decimal
    trailing_enabled: bool
    trailing_activation_percent: Decimal
    trailing_distance_percent: Decimal
    # Cycle timing and policy
    poll_interval_sec: float
    no_fill_timeout_sec: float
    order_delay_sec: float
    cancel_settle_sec: float
    max_price_age_sec: float
    keep_existing_orders: bool
    cancel_orders_on_start: bool
    auto_restart: bool
    cycle_cooldown_sec: float
    reinit_feed_on_reset: bool
    close_on_stop: bool
    shutdown_grace_sec: float
    # Endpoints and credentials
    ws_url: str
    rest_url: str
    fallback_rest_url: str
    api_key: str | None
    api_secret: str | None
    http_timeout: float
    retry_max_attempts: int
    retry_base_delay_sec: float
    # Stream connection
    connect_timeout_sec: float
    reconnect_max_attempts: int
    reconnect_base_sec: float
    reconnect_cap_sec: float
    heartbeat_interval_sec: float
    heartbeat_timeout_sec: float
    heartbeat_max_failures: int
    # Price feed
    price_throttle_sec: float
    stale_check_interval_sec: float
    stale_rest_after_sec: float
    stale_reconnect_after_sec: float
    failed_retry_after_sec: float
    rest_min_interval_sec: float
    rest_retry_interval_sec: float
    rest_backoff_cap_sec: float
    # Observability
    log_level: str
    log_file: str
    metrics_port: int
    status_interval_sec: float
    alert_webhook_url: str | None
    alert_webhook_type: str  # generic, slack, discord
    alert_enabled: bool

    def dump(self) -> dict:
        """Return a dict of settings for logging, with secrets masked."""
        data = self.__dict__.copy()
        for key in ("api_key", "api_secret", "alert_webhook_url"):
            if data.get(key):
                data[key] = "***"
        return data

    @classmethod
    def load(cls, overrides_path: str | None = None) -> "Settings":
        cfg = cls(
            symbol=os.getenv("LB_SYMBOL", "SOL_USDC_PERP"),
            side=PositionSide.parse(os.getenv("LB_SIDE", "long")),
            leverage=_decimal_env("LB_LEVERAGE", "5"),
            max_move_percent=_decimal_env("LB_MAX_MOVE_PCT", "3"),
            total_amount=_decimal_env("LB_TOTAL_AMOUNT", "100"),
            rung_count=_int_env("LB_RUNG_COUNT", 5),
            increment_percent=_decimal_env("LB_INCREMENT_PCT", "50"),
            min_order_amount=_decimal_env("LB_MIN_ORDER_AMOUNT", "10"),
            min_quantity=_decimal_env("LB_MIN_QUANTITY", "0.01"),
            price_tick=_decimal_env("LB_PRICE_TICK", "0.01"),
            quantity_step=_decimal_env("LB_QUANTITY_STEP", "0.01"),
            take_profit_percent=_decimal_env("LB_TAKE_PROFIT_PCT", "0.5"),
            stop_loss_percent=_decimal_env("LB_STOP_LOSS_PCT", "3"),
            trailing_enabled=env_bool("LB_TRAILING_ENABLED", False),
            trailing_activation_percent=_decimal_env("LB_TRAILING_ACTIVATION_PCT", "1"),
            trailing_distance_percent=_decimal_env("LB_TRAILING_DISTANCE_PCT", "0.5"),
            poll_interval_sec=_float_env("LB_POLL_INTERVAL_SEC", 5.0),
            no_fill_timeout_sec=_float_env("LB_NO_FILL_TIMEOUT_SEC", 1800.0),
            order_delay_sec=_float_env("LB_ORDER_DELAY_SEC", 1.0),
            cancel_settle_sec=_float_env("LB_CANCEL_SETTLE_SEC", 2.0),
            max_price_age_sec=_float_env("LB_MAX_PRICE_AGE_SEC", 60.0),
            keep_existing_orders=env_bool("LB_KEEP_EXISTING_ORDERS", False),
            cancel_orders_on_start=env_bool("LB_CANCEL_ORDERS_ON_START", False),
            auto_restart=env_bool("LB_AUTO_RESTART", False),
            cycle_cooldown_sec=_float_env("LB_CYCLE_COOLDOWN_SEC", 5.0),
            reinit_feed_on_reset=env_bool("LB_REINIT_FEED_ON_RESET", False),
            close_on_stop=env_bool("LB_CLOSE_ON_STOP", True),
            shutdown_grace_sec=_float_env("LB_SHUTDOWN_GRACE_SEC", 15.0),
            ws_url=os.getenv("LB_WS_URL", "wss://ws.backpack.exchange"),
            rest_url=os.getenv("LB_REST_URL", "https://api.backpack.exchange"),
            fallback_rest_url=os.getenv("LB_FALLBACK_REST_URL", "https://api.binance.com"),
            api_key=os.getenv("LB_API_KEY"),
            api_secret=os.getenv("LB_API_SECRET"),
            http_timeout=_float_env("LB_HTTP_TIMEOUT", 8.0),
            retry_max_attempts=_int_env("LB_RETRY_MAX_ATTEMPTS", 3),
            retry_base_delay_sec=_float_env("LB_RETRY_BASE_DELAY_SEC", 0.5),
            connect_timeout_sec=_float_env("LB_CONNECT_TIMEOUT_SEC", 10.0),
            reconnect_max_attempts=_int_env("LB_RECONNECT_MAX_ATTEMPTS", 5),
            reconnect_base_sec=_float_env("LB_RECONNECT_BASE_SEC", 5.0),
            reconnect_cap_sec=_float_env("LB_RECONNECT_CAP_SEC", 60.0),
            heartbeat_interval_sec=_float_env("LB_HEARTBEAT_INTERVAL_SEC", 30.0),
            heartbeat_timeout_sec=_float_env("LB_HEARTBEAT_TIMEOUT_SEC", 10.0),
            heartbeat_max_failures=_int_env("LB_HEARTBEAT_MAX_FAILURES", 3),
            price_throttle_sec=_float_env("LB_PRICE_THROTTLE_SEC", 0.5),
            stale_check_interval_sec=_float_env("LB_STALE_CHECK_INTERVAL_SEC", 10.0),
            stale_rest_after_sec=_float_env("LB_STALE_REST_AFTER_SEC", 45.0),
            stale_reconnect_after_sec=_float_env("LB_STALE_RECONNECT_AFTER_SEC", 120.0),
            failed_retry_after_sec=_float_env("LB_FAILED_RETRY_AFTER_SEC", 300.0),
            rest_min_interval_sec=_float_env("LB_REST_MIN_INTERVAL_SEC", 5.0),
            rest_retry_interval_sec=_float_env("LB_REST_RETRY_INTERVAL_SEC", 30.0),
            rest_backoff_cap_sec=_float_env("LB_REST_BACKOFF_CAP_SEC", 300.0),
            log_level=os.getenv("LB_LOG_LEVEL", "INFO"),
            log_file=os.getenv("LB_LOG_FILE", "ladderbot.log"),
            metrics_port=_int_env("LB_METRICS_PORT", 9095),
            status_interval_sec=_float_env("LB_STATUS_INTERVAL_SEC", 60.0),
            alert_webhook_url=os.getenv("LB_ALERT_WEBHOOK_URL"),
            alert_webhook_type=os.getenv("LB_ALERT_WEBHOOK_TYPE", "generic"),
            alert_enabled=env_bool("LB_ALERT_ENABLED", True),
        )
        cfg = cfg.with_overrides(load_overrides(overrides_path))
        _sanity_check(cfg)
        cfg._validate()
        return cfg

    def with_overrides(self, overrides: Dict[str, Any]) -> "Settings":
        """Return a copy with ``overrides`` applied; unknown keys are rejected."""
        if not overrides:
            return self
        known = {f.name for f in dataclasses.fields(self)}
        unknown = sorted(set(overrides) - known)
        if unknown:
            raise ValueError(f"Unknown config keys: {', '.join(unknown)}")
        coerced = {key: _coerce(key, getattr(self, key), value) for key, value in overrides.items()}
        return dataclasses.replace(self, **coerced)

    def resolve_signer(self) -> Ed25519Signer:
        if not self.api_key or not self.api_secret:
            raise RuntimeError("Missing credentials: set LB_API_KEY and LB_API_SECRET")
        return Ed25519Signer(self.api_secret)

    def _validate(self) -> None:
        if not self.symbol:
            raise ValueError("LB_SYMBOL must be set")
        if self.rung_count < 1:
            raise ValueError("LB_RUNG_COUNT must be >= 1")
        if self.total_amount <= 0:
            raise ValueError("LB_TOTAL_AMOUNT must be > 0")
        if self.leverage <= 0:
            raise ValueError("LB_LEVERAGE must be > 0")
        if self.max_move_percent < 0:
            raise ValueError("LB_MAX_MOVE_PCT must be >= 0")
        if self.side is PositionSide.LONG and self.max_move_percent >= 100:
            raise ValueError("LB_MAX_MOVE_PCT must be < 100 for a long ladder")
        if self.rung_count > 1 and self.max_move_percent == 0:
            raise ValueError("LB_MAX_MOVE_PCT must be > 0 when LB_RUNG_COUNT > 1")
        if self.increment_percent < 0:
            raise ValueError("LB_INCREMENT_PCT must be >= 0")
        if self.min_order_amount < 0 or self.min_quantity < 0:
            raise ValueError("Minimum order amount and quantity must be >= 0")
        if self.price_tick <= 0 or self.quantity_step <= 0:
            raise ValueError("LB_PRICE_TICK and LB_QUANTITY_STEP must be > 0")
        if self.take_profit_percent <= 0:
            raise ValueError("LB_TAKE_PROFIT_PCT must be > 0")
        if self.stop_loss_percent <= 0:
            raise ValueError("LB_STOP_LOSS_PCT must be > 0")
        if self.side is PositionSide.LONG and self.stop_loss_percent >= 100:
            raise ValueError("LB_STOP_LOSS_PCT must be < 100 for a long position")
        if self.trailing_enabled and (self.trailing_activation_percent <= 0 or self.trailing_distance_percent <= 0):
            raise ValueError("Trailing activation and distance must be > 0 when trailing is enabled")
        if self.poll_interval_sec <= 0 or self.no_fill_timeout_sec <= 0:
            raise ValueError("LB_POLL_INTERVAL_SEC and LB_NO_FILL_TIMEOUT_SEC must be > 0")
        if self.order_delay_sec < 0 or self.cancel_settle_sec < 0 or self.cycle_cooldown_sec < 0:
            raise ValueError("Delays must be >= 0")
        if self.shutdown_grace_sec <= 0:
            raise ValueError("LB_SHUTDOWN_GRACE_SEC must be > 0")
        if self.retry_max_attempts < 1:
            raise ValueError("LB_RETRY_MAX_ATTEMPTS must be >= 1")
        if self.reconnect_max_attempts < 0 or self.heartbeat_max_failures < 1:
            raise ValueError("Reconnect attempts must be >= 0 and heartbeat failures >= 1")
        if self.reconnect_base_sec <= 0 or self.reconnect_cap_sec < self.reconnect_base_sec:
            raise ValueError("LB_RECONNECT_CAP_SEC must be >= LB_RECONNECT_BASE_SEC > 0")
        if self.stale_rest_after_sec <= 0 or self.stale_reconnect_after_sec < self.stale_rest_after_sec:
            raise ValueError("LB_STALE_RECONNECT_AFTER_SEC must be >= LB_STALE_REST_AFTER_SEC > 0")
        if self.alert_webhook_type not in {"generic", "slack", "discord"}:
            raise ValueError("LB_ALERT_WEBHOOK_TYPE must be generic, slack or discord")

        if self.leverage > 20:
            log.warning(
                f"WARNING: LB_LEVERAGE is {self.leverage}x which is high for a martingale ladder. "
                "Every rung adds exposure at the same leverage."
            )


def _coerce(key: str, current: Any, value: Any) -> Any:
    if value is None:
        return None
    if isinstance(current, PositionSide):
        return PositionSide.parse(str(value))
    if isinstance(current, bool):
        if isinstance(value, bool):
            return value
        return str(value).lower() in {"1", "true", "yes", "y"}
    if isinstance(current, Decimal):
        try:
            return Decimal(str(value))
        except InvalidOperation:
            raise ValueError(f"{key}={value!r} is not a number") from None
    if isinstance(current, int):
        return int(value)
    if isinstance(current, float):
        return float(value)
    return str(value)


def _sanity_check(cfg: Settings) -> None:
    """
    Log critical settings once at startup so overrides are obvious.
    """
    payload = {
        "event": "config_loaded",
        "symbol": cfg.symbol,
        "side": cfg.side.value,
        "leverage": cfg.leverage,
        "total_amount": cfg.total_amount,
        "rung_count": cfg.rung_count,
        "max_move_percent": cfg.max_move_percent,
        "increment_percent": cfg.increment_percent,
        "take_profit_percent": cfg.take_profit_percent,
        "stop_loss_percent": cfg.stop_loss_percent,
        "auto_restart": cfg.auto_restart,
    }
    log.info(json.dumps(payload, default=str))
