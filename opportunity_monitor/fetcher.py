from __future__ import annotations

import asyncio
import logging
import random
import time
from typing import Any, Dict, List, Optional, Tuple

import aiohttp

from .config import ProviderConfig
from .models import Candle, MarketSnapshot, OrderBookDepth
from .providers.binance import BinanceProvider, ProviderError

log = logging.getLogger("fetcher")

# ordinary remote failures; anything else is a bug and propagates
REMOTE_ERRORS = (aiohttp.ClientError, asyncio.TimeoutError, ProviderError, KeyError, ValueError, TypeError, IndexError)

MOCK_BASE_PRICES = {"BTC": 43000.0, "ETH": 2500.0, "BNB": 300.0}


def mock_base_price(symbol: str) -> float:
    sym = symbol.upper()
    for prefix, price in MOCK_BASE_PRICES.items():
        if sym.startswith(prefix):
            return price
    return 100.0


def synthetic_snapshot(symbol: str, now_ms: Optional[int] = None) -> MarketSnapshot:
    """Plausible placeholder market state. Never real exchange data."""
    now_ms = now_ms if now_ms is not None else int(time.time() * 1000)
    price = mock_base_price(symbol) * (1.0 + random.uniform(-0.01, 0.01))
    return MarketSnapshot(
        symbol=symbol.upper(),
        timestamp_ms=now_ms,
        price=price,
        volume=0.0,
        synthetic=True,
    )


class MarketDataFetcher:
    def __init__(self, provider: BinanceProvider, cfg: Optional[ProviderConfig] = None, *, mock_fallback: bool = True):
        cfg = cfg or ProviderConfig()
        self.provider = provider
        self.kline_interval = cfg.kline_interval
        self.kline_limit = int(cfg.kline_limit)
        self.depth_limit = int(cfg.depth_limit)
        self.mock_fallback = bool(mock_fallback)

    async def fetch(self, symbol: str) -> MarketSnapshot:
        symbol = symbol.upper()
        try:
            price = await self.provider.fetch_price(symbol)
        except REMOTE_ERRORS as e:
            if self.mock_fallback:
                log.warning("price_check_failed symbol=%s fallback=synthetic err=%s", symbol, e)
                return synthetic_snapshot(symbol)
            log.warning("price_check_failed symbol=%s fallback=none err=%s", symbol, e)
            price = 0.0

        results = await asyncio.gather(
            self.provider.fetch_klines(symbol, self.kline_interval, self.kline_limit),
            self.provider.fetch_depth(symbol, self.depth_limit),
            self.provider.fetch_24h_volume(symbol),
            self.provider.fetch_funding_rate(symbol),
            self.provider.fetch_open_interest(symbol),
            return_exceptions=True,
        )
        names = ("klines", "depth", "volume", "funding", "open_interest")
        defaults: Tuple[Any, ...] = ([], OrderBookDepth(), 0.0, 0.0, 0.0)

        values: Dict[str, Any] = {}
        for name, default, res in zip(names, defaults, results):
            if isinstance(res, BaseException):
                if not isinstance(res, REMOTE_ERRORS):
                    raise res
                log.warning("field_degraded symbol=%s field=%s err=%s", symbol, name, res)
                values[name] = default
            else:
                values[name] = res

        candles: List[Candle] = values["klines"]
        if price <= 0 and candles:
            # price check failed without fallback; last close is the best we have
            price = candles[-1].close

        return MarketSnapshot(
            symbol=symbol,
            timestamp_ms=int(time.time() * 1000),
            price=price,
            volume=values["volume"],
            candles=tuple(candles),
            depth=values["depth"],
            funding_rate=values["funding"],
            open_interest=values["open_interest"],
        )

    async def ping(self) -> Tuple[bool, Optional[int]]:
        started = time.monotonic()
        try:
            await self.provider.ping()
        except REMOTE_ERRORS as e:
            log.warning("ping_failed err=%s", e)
            return False, None
        return True, int((time.monotonic() - started) * 1000)

    def stats(self) -> Dict[str, Any]:
        return {
            "request_count": self.provider.request_count,
            "last_request_ms": self.provider.last_request_ms,
        }
