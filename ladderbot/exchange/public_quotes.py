"""
Secondary public price source (Binance-style spot ticker).

Used only when the primary venue's ticker endpoint fails.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Optional

import httpx

from ladderbot.exchange.models import to_decimal
from ladderbot.infra.errors import ProtocolError, TransportError, classify_http_error


def to_spot_symbol(symbol: str) -> str:
    """SOL_USDC_PERP -> SOLUSDC."""
    base = symbol.upper()
    for suffix in ("_PERP", "-PERP", "PERP"):
        if base.endswith(suffix):
            base = base[: -len(suffix)]
            break
    return base.replace("_", "").replace("-", "")


class PublicQuoteClient:
    def __init__(
        self,
        base_url: str = "https://api.binance.com",
        timeout: float = 8.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        if client is not None:
            self.client = client
            self._owns_client = False
        else:
            self.client = httpx.AsyncClient(base_url=self.base_url, timeout=timeout)
            self._owns_client = True

    async def close(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    async def get_price(self, symbol: str) -> Decimal:
        spot = to_spot_symbol(symbol)
        try:
            resp = await self.client.get("/api/v3/ticker/price", params={"symbol": spot})
        except httpx.HTTPError as exc:
            raise TransportError(f"quote request for {spot} failed: {exc}") from exc
        if resp.status_code >= 400:
            raise classify_http_error(resp.status_code, resp.text)
        try:
            data = resp.json()
        except ValueError as exc:
            raise ProtocolError("quote response is not JSON") from exc
        price = to_decimal(data.get("price")) if isinstance(data, dict) else None
        if price is None or price <= 0:
            raise ProtocolError(f"quote without usable price: {data!r}")
        return price
