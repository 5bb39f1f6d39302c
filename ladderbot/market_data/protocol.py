"""
Stream protocol adapters.

A StreamProtocol tells the ConnectionManager how to subscribe, how to
recognise a subscription acknowledgment and how to read the server-assigned
identity of an event. Everything else about the payload is the PriceFeed's
business.
"""

from __future__ import annotations

import time
from typing import Any, Dict, Optional, Protocol


class StreamProtocol(Protocol):
    def subscribe_message(self, symbol: str) -> Dict[str, Any]: ...

    def is_subscription_ack(self, message: Dict[str, Any]) -> bool: ...

    def error_of(self, message: Dict[str, Any]) -> Optional[Any]: ...

    def event_identity(self, message: Dict[str, Any]) -> Optional[str]: ...


def unwrap(message: Dict[str, Any]) -> Dict[str, Any]:
    """Return the inner ``data`` object of a stream envelope, or the message itself."""
    data = message.get("data")
    if isinstance(data, dict):
        return data
    return message


class BackpackStreamProtocol:
    """
    Backpack public stream.

    Subscribe: ``{"method": "SUBSCRIBE", "params": ["ticker.SOL_USDC_PERP"], "id": <ms>}``.
    Events arrive as ``{"stream": "ticker.SOL_USDC_PERP", "data": {"e": "ticker", "s": ..., "E": ..., "c": ...}}``.
    """

    def __init__(self, channel: str = "ticker") -> None:
        self.channel = channel

    def stream_name(self, symbol: str) -> str:
        return f"{self.channel}.{symbol}"

    def subscribe_message(self, symbol: str) -> Dict[str, Any]:
        return {
            "method": "SUBSCRIBE",
            "params": [self.stream_name(symbol)],
            "id": int(time.time() * 1000),
        }

    def is_subscription_ack(self, message: Dict[str, Any]) -> bool:
        return "id" in message and "result" in message and message["result"] is None and "error" not in message

    def error_of(self, message: Dict[str, Any]) -> Optional[Any]:
        return message.get("error")

    def event_identity(self, message: Dict[str, Any]) -> Optional[str]:
        data = unwrap(message)
        event_type, symbol, event_time = data.get("e"), data.get("s"), data.get("E")
        if event_type is None or symbol is None or event_time is None:
            return None
        return f"{event_type}_{symbol}_{event_time}"
