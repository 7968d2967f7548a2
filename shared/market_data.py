#!/usr/bin/env python3
"""
market_data.py
Market-data sources that produce a MetricsSnapshot for a Solana token.

DexScreenerMarketData combines three public APIs:
- DexScreener /latest/dex/tokens/{mint}: price, market cap, 5m volume, top pair
- GeckoTerminal 5-minute OHLCV for that pair: 15m / 30m volume (last 3 / 6 candles)
- Helius DAS getTokenAccounts: holder count (distinct owners with a balance)

HTTP handling:
- 429 (Rate Limit) / 5xx / timeouts: exponential backoff with jitter, retry.
- 401 from Helius: blacklist the key, rotate to the next one.
- Other 4xx or exhausted retries: DependencyError.

RandomMarketData reproduces the placeholder numbers of the first dashboard
drafts, for demos and local runs without API keys.
"""

import asyncio
import logging
import random
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

import aiohttp

import config
from token_tracker import DependencyError, MetricsSnapshot, utcnow

logger = logging.getLogger(__name__)

DEXSCREENER_TOKENS_URL = "https://api.dexscreener.com/latest/dex/tokens/{mint}"
GECKO_OHLCV_URL = "https://api.geckoterminal.com/api/v2/networks/solana/pools/{pool}/ohlcv/minute"
HELIUS_RPC_URL = "https://mainnet.helius-rpc.com/?api-key={key}"


def _to_float(val: Any, default: float = 0.0) -> float:
    try:
        return float(val) if val is not None else default
    except (ValueError, TypeError):
        return default


class HeliusKeyRing:
    """Round-robin over Helius keys, skipping ones that came back unauthorized."""

    def __init__(self, api_keys: List[str]):
        self.api_keys = list(api_keys)
        self._idx = 0
        self._bad_keys: Set[str] = set()

    def next_key(self) -> str:
        valid = [k for k in self.api_keys if k not in self._bad_keys]
        if not valid:
            raise DependencyError("All Helius API keys are unauthorized or missing")
        key = valid[self._idx % len(valid)]
        self._idx += 1
        return key

    def blacklist(self, key: str):
        self._bad_keys.add(key)


class DexScreenerMarketData:
    def __init__(
        self,
        http_session: aiohttp.ClientSession,
        helius_keys: List[str],
        *,
        retries: int = 3,
        base_delay: float = 0.5,
        timeout: float = 15,
        holder_max_pages: int = 10,
        holder_page_limit: int = 1000,
        clock: Callable[[], datetime] = utcnow,
    ):
        if not helius_keys:
            raise ValueError("DexScreenerMarketData requires at least one Helius API key.")
        self.http_session = http_session
        self.keys = HeliusKeyRing(helius_keys)
        self.retries = max(1, retries)
        self.base_delay = base_delay
        self.timeout = timeout
        self.holder_max_pages = holder_max_pages
        self.holder_page_limit = holder_page_limit
        self.clock = clock

    def _backoff(self, attempt: int) -> float:
        return self.base_delay * (2 ** attempt) + random.uniform(0, self.base_delay)

    async def _get_json(self, url: str, *, params: Optional[Dict[str, Any]] = None, source: str = "") -> Dict[str, Any]:
        last_error = "no attempts made"
        for attempt in range(self.retries):
            try:
                async with self.http_session.get(url, params=params, timeout=self.timeout) as resp:
                    if resp.status == 200:
                        return await resp.json()
                    if resp.status == 429 or resp.status >= 500:
                        last_error = f"HTTP {resp.status}"
                        delay = self._backoff(attempt)
                        logger.debug(f"[{source}] {last_error}, retrying in {delay:.2f}s")
                        await asyncio.sleep(delay)
                        continue
                    raise DependencyError(f"{source} returned HTTP {resp.status}")
            except asyncio.TimeoutError:
                last_error = "timeout"
                await asyncio.sleep(self._backoff(attempt))
            except aiohttp.ClientError as e:
                last_error = str(e)
                await asyncio.sleep(self._backoff(attempt))
        raise DependencyError(f"{source} failed after {self.retries} attempts: {last_error}")

    async def _helius_rpc(self, method: str, params: Any) -> Dict[str, Any]:
        payload = {"jsonrpc": "2.0", "id": "1", "method": method, "params": params}
        last_error = "no attempts made"
        for attempt in range(self.retries):
            key = self.keys.next_key()
            url = HELIUS_RPC_URL.format(key=key)
            try:
                async with self.http_session.post(url, json=payload, timeout=self.timeout) as resp:
                    if resp.status == 401:
                        logger.warning(f"[Helius] Key {key[:6]}... unauthorized, blacklisting")
                        self.keys.blacklist(key)
                        last_error = "HTTP 401"
                        continue
                    if resp.status == 429 or resp.status >= 500:
                        last_error = f"HTTP {resp.status}"
                        await asyncio.sleep(self._backoff(attempt))
                        continue
                    if resp.status != 200:
                        raise DependencyError(f"Helius {method} returned HTTP {resp.status}")
                    data = await resp.json()
            except asyncio.TimeoutError:
                last_error = "timeout"
                await asyncio.sleep(self._backoff(attempt))
                continue
            except aiohttp.ClientError as e:
                last_error = str(e)
                await asyncio.sleep(self._backoff(attempt))
                continue

            if data.get("error"):
                raise DependencyError(f"Helius {method} error: {data['error']}")
            return data.get("result") or {}
        raise DependencyError(f"Helius {method} failed after {self.retries} attempts: {last_error}")

    async def fetch_pair(self, mint: str) -> Dict[str, Any]:
        """First DexScreener pair for the token (the canonical one DexScreener lists first)."""
        data = await self._get_json(DEXSCREENER_TOKENS_URL.format(mint=mint), source="DexScreener")
        pairs = data.get("pairs") or []
        if not pairs:
            raise DependencyError(f"DexScreener: No pairs found for mint {mint}")
        return pairs[0]

    async def fetch_window_volumes(self, pool: str) -> Tuple[float, float]:
        """USD volume over the last 15 and 30 minutes from 5-minute candles."""
        params = {"aggregate": 5, "limit": 6, "currency": "usd"}
        data = await self._get_json(GECKO_OHLCV_URL.format(pool=pool), params=params, source="GeckoTerminal")
        candles = ((data.get("data") or {}).get("attributes") or {}).get("ohlcv_list") or []
        # [timestamp, open, high, low, close, volume]
        candles = sorted((c for c in candles if isinstance(c, list) and len(c) >= 6), key=lambda c: c[0], reverse=True)
        volumes = [_to_float(c[5]) for c in candles]
        return sum(volumes[:3]), sum(volumes[:6])

    async def count_holders(self, mint: str) -> int:
        """Distinct owners holding a non-zero balance, paged up to holder_max_pages."""
        owners: Set[str] = set()
        page = 1
        while True:
            result = await self._helius_rpc(
                "getTokenAccounts",
                {"mint": mint, "page": page, "limit": self.holder_page_limit, "displayOptions": {}},
            )
            token_accounts = result.get("token_accounts") or []
            for ta in token_accounts:
                owner = ta.get("owner")
                if owner and _to_float(ta.get("amount")) > 0:
                    owners.add(owner)
            if len(token_accounts) < self.holder_page_limit:
                break
            page += 1
            if self.holder_max_pages and page > self.holder_max_pages:
                logger.info(f"[Helius] Reached max pages ({self.holder_max_pages}) for {mint}; holder count is a lower bound")
                break
        return len(owners)

    async def fetch_snapshot(self, mint: str) -> MetricsSnapshot:
        pair = await self.fetch_pair(mint)
        pool = pair.get("pairAddress")
        if not pool:
            raise DependencyError(f"DexScreener pair for {mint} has no pairAddress")

        (volume_15m, volume_30m), holders = await asyncio.gather(
            self.fetch_window_volumes(pool),
            self.count_holders(mint),
        )
        volume = pair.get("volume") or {}
        try:
            return MetricsSnapshot(
                market_cap=_to_float(pair.get("marketCap"), _to_float(pair.get("fdv"))),
                price=_to_float(pair.get("priceUsd")),
                volume_5m=_to_float(volume.get("m5")),
                volume_15m=volume_15m,
                volume_30m=volume_30m,
                holders=holders,
                timestamp=self.clock(),
            )
        except ValueError as e:
            raise DependencyError(f"Bad market data for {mint}: {e}") from e


class RandomMarketData:
    """Placeholder metrics in the ranges the first dashboard drafts used."""

    def __init__(self, seed: Optional[int] = None, clock: Callable[[], datetime] = utcnow):
        self._rng = random.Random(seed)
        self.clock = clock

    async def fetch_snapshot(self, mint: str) -> MetricsSnapshot:
        rng = self._rng
        return MetricsSnapshot(
            market_cap=rng.random() * 1_000_000,
            price=rng.random() * 0.01,
            volume_5m=rng.random() * 1000,
            volume_15m=rng.random() * 3000,
            volume_30m=rng.random() * 6000,
            holders=rng.randrange(1000),
            timestamp=self.clock(),
        )


def build_market_data(http_session: aiohttp.ClientSession, source: Optional[str] = None):
    """Market-data source selected by MARKET_DATA_SOURCE."""
    source = (source or config.MARKET_DATA_SOURCE).lower()
    if source == "random":
        logger.warning("Using RandomMarketData: metrics are placeholders, not market values")
        return RandomMarketData()
    if source == "dexscreener":
        return DexScreenerMarketData(
            http_session,
            config.HELIUS_KEYS,
            retries=config.HTTP_RETRIES,
            holder_max_pages=config.HOLDER_MAX_PAGES,
        )
    raise ValueError(f"Unknown MARKET_DATA_SOURCE: {source}")
