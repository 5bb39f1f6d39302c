"""
Async REST client for the Backpack exchange (perpetuals).

Implements the ExchangeClient contract used by the cycle controller and the
price feed. Every failure is raised as a classified error from
``ladderbot.infra.errors``; callers decide whether to retry.
"""

from __future__ import annotations

import time
from typing import Any, Dict, List, Optional, Protocol

import httpx

from ladderbot.exchange.models import OpenOrder, OrderAck, OrderSpec, Position, Ticker, to_decimal
from ladderbot.exchange.signer import Ed25519Signer
from ladderbot.infra.errors import (
    AuthError,
    NotFoundError,
    ProtocolError,
    TransportError,
    classify_http_error,
)


class ExchangeClient(Protocol):
    """What the trading core needs from a venue."""

    async def get_ticker(self, symbol: str) -> Ticker: ...

    async def get_positions(self, symbol: Optional[str] = None) -> List[Position]: ...

    async def create_order(self, spec: OrderSpec) -> OrderAck: ...

    async def get_open_orders(self, symbol: str) -> List[OpenOrder]: ...

    async def cancel_all_orders(self, symbol: str) -> None: ...

    async def get_account_info(self) -> Dict[str, Any]: ...


class BackpackClient:
    """
    httpx-based Backpack client.

    Public endpoints need no credentials; private ones require ``api_key``
    and a signer. A shared ``httpx.AsyncClient`` may be passed in, in which
    case ``close()`` leaves it open.
    """

    def __init__(
        self,
        base_url: str = "https://api.backpack.exchange",
        api_key: Optional[str] = None,
        signer: Optional[Ed25519Signer] = None,
        timeout: float = 8.0,
        window_ms: int = 5000,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.signer = signer
        self.window_ms = window_ms
        if client is not None:
            self.client = client
            self._owns_client = False
        else:
            self.client = httpx.AsyncClient(base_url=self.base_url, timeout=timeout)
            self._owns_client = True

    async def close(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    # Public

    async def get_ticker(self, symbol: str) -> Ticker:
        data = await self._request("GET", "/api/v1/ticker", params={"symbol": symbol})
        if not isinstance(data, dict):
            raise ProtocolError(f"unexpected ticker payload: {data!r}")
        price = to_decimal(data.get("lastPrice"))
        if price is None or price <= 0:
            raise ProtocolError(f"ticker without usable lastPrice: {data!r}")
        return Ticker(symbol=symbol, last_price=price, raw=data)

    # Private

    async def get_positions(self, symbol: Optional[str] = None) -> List[Position]:
        params = {"symbol": symbol} if symbol else {}
        try:
            data = await self._request("GET", "/api/v1/position", params=params, instruction="positionQuery")
        except NotFoundError:
            # The venue answers 404 when there is nothing open
            return []
        if isinstance(data, dict):
            data = [data]
        if not isinstance(data, list):
            raise ProtocolError(f"unexpected positions payload: {data!r}")
        fetched_at = time.time()
        positions: List[Position] = []
        for item in data:
            if not isinstance(item, dict):
                continue
            pos = Position.from_payload(item, fetched_at=fetched_at)
            if pos is not None and (symbol is None or pos.symbol == symbol):
                positions.append(pos)
        return positions

    async def create_order(self, spec: OrderSpec) -> OrderAck:
        body = spec.to_payload()
        data = await self._request("POST", "/api/v1/order", body=body, instruction="orderExecute")
        if not isinstance(data, dict) or "id" not in data:
            raise ProtocolError(f"order response without id: {data!r}")
        return OrderAck(id=str(data["id"]), status=str(data.get("status", "")), raw=data)

    async def get_open_orders(self, symbol: str) -> List[OpenOrder]:
        data = await self._request("GET", "/api/v1/orders", params={"symbol": symbol}, instruction="orderQueryAll")
        if not isinstance(data, list):
            raise ProtocolError(f"unexpected open orders payload: {data!r}")
        return [OpenOrder.from_payload(o) for o in data if isinstance(o, dict)]

    async def cancel_all_orders(self, symbol: str) -> None:
        await self._request("DELETE", "/api/v1/orders", body={"symbol": symbol}, instruction="orderCancelAll")

    async def get_account_info(self) -> Dict[str, Any]:
        data = await self._request("GET", "/api/v1/account", instruction="accountQuery")
        if not isinstance(data, dict):
            raise ProtocolError(f"unexpected account payload: {data!r}")
        return data

    # Plumbing

    def _signed_headers(self, instruction: str, fields: Dict[str, Any]) -> Dict[str, str]:
        if not self.api_key or self.signer is None:
            raise AuthError(f"credentials required for {instruction}")
        timestamp = int(time.time() * 1000)
        signature = self.signer.sign(instruction, fields, timestamp, self.window_ms)
        return {
            "X-API-KEY": self.api_key,
            "X-SIGNATURE": signature,
            "X-TIMESTAMP": str(timestamp),
            "X-WINDOW": str(self.window_ms),
        }

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        body: Optional[Dict[str, Any]] = None,
        instruction: Optional[str] = None,
    ) -> Any:
        headers = {"Content-Type": "application/json"}
        if instruction:
            headers.update(self._signed_headers(instruction, {**(params or {}), **(body or {})}))
        try:
            resp = await self.client.request(method, path, params=params or None, json=body, headers=headers)
        except httpx.TimeoutException as exc:
            raise TransportError(f"{method} {path} timed out") from exc
        except httpx.TransportError as exc:
            raise TransportError(f"{method} {path} failed: {exc}") from exc

        if resp.status_code >= 400:
            raise classify_http_error(resp.status_code, resp.text)
        if not resp.content:
            return None
        try:
            return resp.json()
        except ValueError as exc:
            raise ProtocolError(f"{method} {path} returned non-JSON body") from exc
