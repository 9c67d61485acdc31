"""
Consensus exchange rate from several public market sources.

Each cycle queries every source concurrently, drops the ones that failed and
stores the median of the rest under source "COMBINED". A cycle in which every
source fails writes nothing, so readers keep seeing the previous value.
"""

import asyncio
import logging
import math
import statistics
import time
from datetime import timezone
from typing import List, Optional, Protocol, Sequence, Tuple

import httpx
from pydantic import BaseModel, ValidationError

from app.core.cache import TTLCache
from app.core.config import RateConfig
from app.core.exceptions import AggregationError, NotFoundError, SourceUnavailableError
from app.core.monitoring import error_monitor

logger = logging.getLogger(__name__)

CONSENSUS_SOURCE = "COMBINED"


class RateSource(Protocol):
    name: str

    async def fetch_rate(self, from_currency: str, to_currency: str) -> float:
        ...


# --- upstream payloads ---

class BinanceTicker(BaseModel):
    symbol: str
    price: str


class HuobiTick(BaseModel):
    bid: List[float]
    ask: List[float]


class HuobiMerged(BaseModel):
    tick: HuobiTick


class HttpRateSource:
    """Base for JSON-over-HTTP sources with a bounded per-request timeout"""

    name = "http"

    def __init__(self, timeout: float = 10.0, client_factory=httpx.AsyncClient):
        self.timeout = timeout
        self._client_factory = client_factory

    async def _get_json(self, url: str, params: dict) -> dict:
        try:
            async with self._client_factory(timeout=self.timeout) as client:
                response = await client.get(url, params=params)
                response.raise_for_status()
                return response.json()
        except httpx.HTTPError as e:
            raise SourceUnavailableError(self.name, f"{type(e).__name__}: {e}") from e
        except ValueError as e:
            raise SourceUnavailableError(self.name, "Response is not JSON") from e


class BinanceSource(HttpRateSource):
    name = "BINANCE"
    URL = "https://api.binance.com/api/v3/ticker/price"

    async def fetch_rate(self, from_currency: str, to_currency: str) -> float:
        data = await self._get_json(self.URL, {"symbol": f"{from_currency}{to_currency}".upper()})
        try:
            ticker = BinanceTicker.model_validate(data)
            return float(ticker.price)
        except (ValidationError, ValueError) as e:
            raise SourceUnavailableError(self.name, "Invalid response from Binance API") from e


class HuobiSource(HttpRateSource):
    name = "HUOBI"
    URL = "https://api.huobi.pro/market/detail/merged"

    async def fetch_rate(self, from_currency: str, to_currency: str) -> float:
        data = await self._get_json(self.URL, {"symbol": f"{from_currency}{to_currency}".lower()})
        try:
            merged = HuobiMerged.model_validate(data)
            bid, ask = merged.tick.bid[0], merged.tick.ask[0]
        except (ValidationError, IndexError) as e:
            raise SourceUnavailableError(self.name, "Invalid response from Huobi API") from e
        return (bid + ask) / 2


def compute_median(rates: Sequence[float]) -> float:
    """Median of the sample; the mean of the two middle values for even sizes."""
    if not rates:
        raise ValueError("median of an empty sample")
    return float(statistics.median(rates))


class RateAggregator:
    """Periodic median-of-sources rate with a short-lived read cache"""

    def __init__(self, sources: Sequence[RateSource], store, cache: TTLCache, config: RateConfig):
        self.sources = list(sources)
        self.store = store
        self.cache = cache
        self.config = config

    @property
    def pair(self) -> str:
        return f"{self.config.from_currency}/{self.config.to_currency}"

    @property
    def cache_key(self) -> str:
        return f"rate:{self.config.to_currency}:{self.config.from_currency}"

    async def _fetch(self, source: RateSource) -> float:
        rate = await source.fetch_rate(self.config.from_currency, self.config.to_currency)
        if not isinstance(rate, (int, float)) or not math.isfinite(rate) or rate <= 0:
            raise SourceUnavailableError(source.name, f"Unusable rate {rate!r}")
        return float(rate)

    async def update_rates(self) -> Optional[float]:
        """
        Run one aggregation cycle.

        Returns:
            The stored consensus rate, or None if the cycle was skipped
        """
        outcomes = await asyncio.gather(
            *(self._fetch(source) for source in self.sources),
            return_exceptions=True,
        )

        rates = []
        failures = {}
        for source, outcome in zip(self.sources, outcomes):
            if isinstance(outcome, BaseException):
                failures[source.name] = str(outcome)
                error_monitor.log_error(
                    outcome if isinstance(outcome, Exception) else SourceUnavailableError(source.name),
                    {"pair": self.pair, "context": "rate_fetch"},
                )
            else:
                rates.append(outcome)

        if not rates:
            error_monitor.log_error(AggregationError(self.pair, failures), {"context": "rate_update"})
            return None

        consensus = compute_median(rates)
        try:
            await self.store.upsert_consensus_rate(
                self.config.from_currency, self.config.to_currency, CONSENSUS_SOURCE, consensus
            )
        except Exception as e:
            error_monitor.log_error(e, {"pair": self.pair, "context": "rate_store"})
            return None

        self.cache.set(self.cache_key, (consensus, int(time.time() * 1000)), ttl=self.config.cache_ttl_seconds)
        logger.info(
            f"Updated exchange rate: 1 {self.config.from_currency} = {consensus} "
            f"{self.config.to_currency} ({len(rates)}/{len(self.sources)} sources)"
        )
        return consensus

    async def get_rate(self) -> Tuple[float, int]:
        """
        Latest consensus rate and its timestamp (unix ms).

        Raises:
            NotFoundError: If no rate was ever stored
        """
        cached = self.cache.get(self.cache_key)
        if cached is not None:
            return cached

        latest = await self.store.get_latest_rate(self.config.from_currency, self.config.to_currency)
        if latest is None:
            raise NotFoundError("Exchange rate", self.pair)

        created_at = latest.created_at
        if created_at.tzinfo is None:
            created_at = created_at.replace(tzinfo=timezone.utc)
        return latest.rate, int(created_at.timestamp() * 1000)
