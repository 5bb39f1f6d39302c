"""
In-memory status board for the periodic status line.
"""

from __future__ import annotations

import asyncio
from typing import Any, Dict


class StatusBoard:
    def __init__(self) -> None:
        self._data: Dict[str, Dict[str, Any]] = {}
        self._lock = asyncio.Lock()

    async def update(self, symbol: str, payload: Dict[str, Any]) -> None:
        async with self._lock:
            self._data[symbol] = payload

    async def snapshot(self) -> Dict[str, Dict[str, Any]]:
        async with self._lock:
            return dict(self._data)

    @staticmethod
    def summarize(symbol: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Flatten a LadderApp.get_state() payload into one log line."""
        feed = payload.get("feed") or {}
        conn = feed.get("connection") or {}
        controller = payload.get("controller") or {}
        position = controller.get("position") or {}
        return {
            "symbol": symbol,
            "state": controller.get("state"),
            "halted": controller.get("halted"),
            "price": feed.get("price"),
            "price_source": feed.get("source"),
            "price_age_sec": round(feed["age_sec"], 1) if feed.get("age_sec") is not None else None,
            "ws": conn.get("state"),
            "position_qty": position.get("quantity"),
            "entry_price": position.get("entry_price"),
            "placed_orders": controller.get("placed_orders"),
        }
