from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Dict, List, Optional

import aiohttp

from ..models import Candle, OrderBookDepth

log = logging.getLogger("binance")


class ProviderError(RuntimeError):
    """Non-200 answer from the exchange (after the single rate-limit retry)."""

    def __init__(self, path: str, status: int, body: str = ""):
        super().__init__(f"Binance {path} failed: {status} {body[:300]}")
        self.path = path
        self.status = status


class BinanceProvider:
    """Thin async client for the USD-M futures public REST endpoints."""

    def __init__(
        self,
        base_url: str = "https://fapi.binance.com",
        *,
        rest_timeout_s: int = 10,
        min_request_spacing_ms: int = 100,
        rest_conn_limit: int = 40,
        rest_conn_limit_per_host: int = 10,
        default_retry_after_s: float = 1.0,
    ):
        self.base_url = base_url.rstrip("/")
        self.rest_timeout_s = rest_timeout_s
        self.min_spacing_s = max(0, int(min_request_spacing_ms)) / 1000.0
        self.rest_conn_limit = rest_conn_limit
        self.rest_conn_limit_per_host = rest_conn_limit_per_host
        self.default_retry_after_s = default_retry_after_s

        self._session: Optional[aiohttp.ClientSession] = None
        self._throttle = asyncio.Lock()
        self._last_request_at = 0.0
        self.request_count = 0
        self.last_request_ms: Optional[int] = None

    async def close(self) -> None:
        """Close the shared aiohttp session (best-effort)."""
        if self._session is not None and not self._session.closed:
            await self._session.close()

    def _timeout(self) -> aiohttp.ClientTimeout:
        return aiohttp.ClientTimeout(
            total=self.rest_timeout_s,
            connect=min(10, self.rest_timeout_s),
            sock_connect=min(10, self.rest_timeout_s),
            sock_read=self.rest_timeout_s,
        )

    def _connector(self) -> aiohttp.TCPConnector:
        return aiohttp.TCPConnector(
            limit=self.rest_conn_limit,
            limit_per_host=self.rest_conn_limit_per_host,
            ttl_dns_cache=300,
            enable_cleanup_closed=True,
        )

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout(), connector=self._connector())
        return self._session

    async def _wait_turn(self) -> None:
        # process-wide spacing between outgoing requests
        async with self._throttle:
            loop = asyncio.get_running_loop()
            wait = self._last_request_at + self.min_spacing_s - loop.time()
            if wait > 0:
                await asyncio.sleep(wait)
            self._last_request_at = loop.time()
            self.request_count += 1
            self.last_request_ms = int(time.time() * 1000)

    async def _get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        url = self.base_url + path
        sess = await self._get_session()

        for attempt in (1, 2):
            await self._wait_turn()
            async with sess.get(url, params=params) as resp:
                # Rate-limit / ban signals
                if resp.status in (418, 429):
                    txt = await resp.text()
                    if attempt == 2:
                        raise ProviderError(path, resp.status, txt)
                    retry_after = resp.headers.get("Retry-After")
                    sleep_s = float(retry_after) if (retry_after and retry_after.isdigit()) else self.default_retry_after_s
                    log.warning(
                        "rest_rate_limited status=%s path=%s sleep=%.1fs body=%s",
                        resp.status, path, sleep_s, txt[:200],
                    )
                    await asyncio.sleep(sleep_s)
                    continue

                if resp.status != 200:
                    txt = await resp.text()
                    raise ProviderError(path, resp.status, txt)

                # Some proxies return a wrong content-type; be tolerant.
                return await resp.json(content_type=None)

        raise ProviderError(path, 429)

    async def fetch_klines(self, symbol: str, interval: str = "1m", limit: int = 100) -> List[Candle]:
        params = {"symbol": symbol.upper(), "interval": interval, "limit": int(limit)}
        data = await self._get("/fapi/v1/klines", params)

        out: List[Candle] = []
        for row in data:
            # [0]=open time, [6]=close time
            out.append(Candle(
                open_time_ms=int(row[0]),
                close_time_ms=int(row[6]),
                open=float(row[1]),
                high=float(row[2]),
                low=float(row[3]),
                close=float(row[4]),
                volume=float(row[5]),
            ))
        return out

    async def fetch_depth(self, symbol: str, limit: int = 20) -> OrderBookDepth:
        data = await self._get("/fapi/v1/depth", {"symbol": symbol.upper(), "limit": int(limit)})
        return OrderBookDepth(
            bids=tuple((float(p), float(q)) for p, q in data.get("bids") or []),
            asks=tuple((float(p), float(q)) for p, q in data.get("asks") or []),
            timestamp_ms=int(data.get("E") or data.get("T") or time.time() * 1000),
        )

    async def fetch_price(self, symbol: str) -> float:
        data = await self._get("/fapi/v1/ticker/price", {"symbol": symbol.upper()})
        return float(data["price"])

    async def fetch_24h_volume(self, symbol: str) -> float:
        data = await self._get("/fapi/v1/ticker/24hr", {"symbol": symbol.upper()})
        return float(data["volume"])

    async def fetch_funding_rate(self, symbol: str) -> float:
        data = await self._get("/fapi/v1/premiumIndex", {"symbol": symbol.upper()})
        return float(data.get("lastFundingRate") or 0.0)

    async def fetch_open_interest(self, symbol: str) -> float:
        data = await self._get("/fapi/v1/openInterest", {"symbol": symbol.upper()})
        return float(data["openInterest"])

    async def ping(self) -> None:
        await self._get("/fapi/v1/ping")
