"""
Error taxonomy for ladderbot.

- TransportError: connection-level failure (socket closed, timeout, DNS)
- ProtocolError: payload that cannot be parsed or resolved
- ExchangeError and subclasses: classified REST failures, each with its own recovery policy
- StaleDataError: internal signal that market data is older than allowed
"""

from __future__ import annotations

from typing import Any, Optional


class LadderBotError(Exception):
    """Base class for all ladderbot errors."""


class TransportError(LadderBotError):
    """Connection-level failure. Drives reconnection, never a trading decision."""


class ProtocolError(LadderBotError):
    """Malformed or unparseable payload."""


class StaleDataError(LadderBotError):
    """Data older than the configured threshold."""

    def __init__(self, message: str, age_sec: Optional[float] = None) -> None:
        super().__init__(message)
        self.age_sec = age_sec


class ExchangeError(LadderBotError):
    """REST call rejected by the exchange."""

    def __init__(self, message: str, status: Optional[int] = None, payload: Any = None) -> None:
        super().__init__(message)
        self.status = status
        self.payload = payload


class AuthError(ExchangeError):
    """Credentials rejected. Halts trading."""


class RateLimitError(ExchangeError):
    """Request throttled by the venue. Skip the current rung."""


class InsufficientFundsError(ExchangeError):
    """Not enough margin. Abort the remaining batch."""


class NotFoundError(ExchangeError):
    """Resource does not exist (e.g. no position)."""


def classify_http_error(status: int, body: Any) -> ExchangeError:
    """
    Map an HTTP status and response body to the error taxonomy.

    Body text is checked as well because venues often report margin and
    signature problems with a generic 400.
    """
    text = body if isinstance(body, str) else str(body or "")
    lowered = text.lower()
    message = f"HTTP {status}: {text[:300]}"

    if "insufficient" in lowered:
        return InsufficientFundsError(message, status=status, payload=body)
    if status == 429 or "rate limit" in lowered or "too many requests" in lowered:
        return RateLimitError(message, status=status, payload=body)
    if status in (401, 403) or "unauthorized" in lowered or "invalid signature" in lowered:
        return AuthError(message, status=status, payload=body)
    if status == 404:
        return NotFoundError(message, status=status, payload=body)
    return ExchangeError(message, status=status, payload=body)
