"""
===============================================================================
  Binance Feed — OHLCV candles from the public klines endpoint
===============================================================================
  GET {base}/api/v3/klines?symbol=BTCUSDT&interval=4h&limit=200

  Each row is [open_time_ms, open, high, low, close, volume, ...] with the
  prices as strings.  Rows become Candle records with epoch-second times.
  A non-2xx status raises FeedError; transport errors from httpx propagate
  unchanged.
===============================================================================
"""

from __future__ import annotations

from typing import Optional, Protocol

import httpx

import config as cfg
from core.models import Candle
from utils.logger import get_logger

log = get_logger("feed")


class FeedError(Exception):
    """The candle source answered with a non-success status."""


class CandleSource(Protocol):
    async def fetch_candles(self, symbol: str, timeframe: str, limit: int) -> list[Candle]:
        ...


def parse_klines(rows: list) -> list[Candle]:
    return [
        Candle(
            time=int(row[0]) // 1000,
            open=float(row[1]),
            high=float(row[2]),
            low=float(row[3]),
            close=float(row[4]),
            volume=float(row[5]),
        )
        for row in rows
    ]


class BinanceFeed:
    """Async candle source over ``httpx.AsyncClient``."""

    def __init__(
        self,
        base_url: str | None = None,
        timeout: float | None = None,
        client: Optional[httpx.AsyncClient] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = (base_url or cfg.BINANCE_BASE_URL).rstrip("/")
        self._own_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(timeout or cfg.BINANCE_TIMEOUT),
            transport=transport,
        )

    async def fetch_candles(self, symbol: str, timeframe: str, limit: int) -> list[Candle]:
        response = await self._client.get(
            f"{self.base_url}/api/v3/klines",
            params={"symbol": symbol, "interval": timeframe, "limit": limit},
        )
        if not response.is_success:
            log.debug(f"{symbol}: klines returned {response.status_code}")
            raise FeedError(f"API error for {symbol}: {response.status_code}")
        candles = parse_klines(response.json() or [])
        log.debug(f"{symbol}: {len(candles)} candles ({timeframe})")
        return candles

    async def aclose(self) -> None:
        if self._own_client:
            await self._client.aclose()

    async def __aenter__(self) -> "BinanceFeed":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()
