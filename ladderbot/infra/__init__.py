"""
Infrastructure package.

Logging setup, event routing, the error taxonomy and the retry executor.
"""

from ladderbot.infra.errors import (
    AuthError,
    ExchangeError,
    InsufficientFundsError,
    LadderBotError,
    NotFoundError,
    ProtocolError,
    RateLimitError,
    StaleDataError,
    TransportError,
)
from ladderbot.infra.event_logger import EventLogger, EventLoggerConfig
from ladderbot.infra.logging_cfg import build_logger, log_event
from ladderbot.infra.retry import RetryExecutor

__all__ = [
    "AuthError",
    "ExchangeError",
    "InsufficientFundsError",
    "LadderBotError",
    "NotFoundError",
    "ProtocolError",
    "RateLimitError",
    "StaleDataError",
    "TransportError",
    "EventLogger",
    "EventLoggerConfig",
    "build_logger",
    "log_event",
    "RetryExecutor",
]
