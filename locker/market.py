"""
Market Data - DexScreener pair statistics.

One GET per cycle against /latest/dex/pairs/{chain}/{pairId}. The response is
reduced to a MarketSnapshot; missing or non-finite fields read as zero, except
the price, which must be positive.
Errors propagate to the caller (the observer decides the fallback).
"""

import logging
import math
from typing import Optional

import aiohttp

from .models import MarketSnapshot

logger = logging.getLogger("locker.market")


class MarketDataError(Exception):
    """Provider returned an unusable response."""
    pass


def _num(value, default: float = 0.0) -> float:
    """Finite float or `default`; "nan" / "inf" strings read as missing."""
    try:
        number = float(value) if value is not None else default
    except (TypeError, ValueError):
        return default
    return number if math.isfinite(number) else default


def snapshot_from_pair(pair: dict) -> MarketSnapshot:
    """
    Map one DexScreener `pair` object onto a MarketSnapshot.

    A pair without a positive price is not a market reading: raises
    MarketDataError so the observer keeps its defaults and history untouched.
    """
    price = _num(pair.get("priceUsd"))
    if price <= 0:
        raise MarketDataError(f"Pair has no usable priceUsd: {pair.get('priceUsd')!r}")

    txns = (pair.get("txns") or {}).get("h24") or {}
    buys = int(_num(txns.get("buys")))
    sells = int(_num(txns.get("sells")))
    total = buys + sells

    if total > 0:
        buy_pressure = buys / total
        sell_pressure = sells / total
    else:
        buy_pressure = sell_pressure = 0.5

    return MarketSnapshot(
        price=price,
        price_change_24h=_num((pair.get("priceChange") or {}).get("h24")),
        volume_24h=_num((pair.get("volume") or {}).get("h24")),
        liquidity=_num((pair.get("liquidity") or {}).get("usd")),
        market_cap=_num(pair.get("fdv") or pair.get("marketCap")),
        tx_count_24h=total,
        buy_pressure=buy_pressure,
        sell_pressure=sell_pressure,
    )


class DexScreenerClient:
    """
    Usage:
        client = DexScreenerClient("ethereum", pair_id)
        snapshot = await client.fetch_snapshot()
        await client.close()
    """

    def __init__(
        self,
        chain: str,
        pair_id: str,
        base_url: str = "https://api.dexscreener.com",
        timeout: float = 15.0,
    ):
        self.chain = chain
        self.pair_id = pair_id
        self.base_url = base_url.rstrip("/")
        self._session: Optional[aiohttp.ClientSession] = None
        self._timeout = aiohttp.ClientTimeout(total=timeout)

    @property
    def url(self) -> str:
        return f"{self.base_url}/latest/dex/pairs/{self.chain}/{self.pair_id}"

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
        return self._session

    async def fetch_pair(self) -> dict:
        session = await self._get_session()
        async with session.get(self.url) as resp:
            if resp.status != 200:
                body = await resp.text()
                raise MarketDataError(f"DexScreener HTTP {resp.status}: {body[:200]}")
            data = await resp.json(content_type=None)

        pair = data.get("pair") if isinstance(data, dict) else None
        if not pair:
            pairs = data.get("pairs") if isinstance(data, dict) else None
            pair = pairs[0] if pairs else None
        if not pair:
            raise MarketDataError(f"DexScreener returned no pair for {self.chain}/{self.pair_id}")
        return pair

    async def fetch_snapshot(self) -> MarketSnapshot:
        return snapshot_from_pair(await self.fetch_pair())

    async def close(self):
        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None
