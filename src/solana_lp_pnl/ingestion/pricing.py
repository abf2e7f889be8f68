"""USD price lookups against the Jupiter price API with an owned TTL cache."""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional

import requests
from cachetools import TTLCache

from ..config.settings import DataSourceConfig, get_app_config
from ..monitoring.logger import get_logger
from ..monitoring.metrics import METRICS
from ..utils.validators import (
    contains_dangerous_keys,
    is_finite_number,
    is_valid_address,
    validate_price,
)


@dataclass(slots=True)
class PriceQuote:
    mint: str
    usd_price: float
    block_id: Optional[int] = None
    decimals: Optional[int] = None
    price_change_24h: Optional[float] = None


def _optional_int(value: Any) -> Optional[int]:
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    return None


def _optional_float(value: Any) -> Optional[float]:
    if is_finite_number(value):
        return float(value)
    return None


def parse_price_response(payload: Any) -> Dict[str, PriceQuote]:
    """Validate a price API body and return one quote per well-formed mint.

    Entries with an invalid mint, a non-object body, or a price failing
    ``validate_price`` are dropped. A body containing dangerous keys is rejected
    entirely.
    """

    if not isinstance(payload, dict) or contains_dangerous_keys(payload):
        return {}
    data = payload.get("data") if isinstance(payload.get("data"), dict) else payload
    quotes: Dict[str, PriceQuote] = {}
    for mint, value in data.items():
        if not is_valid_address(mint) or not isinstance(value, dict):
            continue
        raw_price = value.get("usdPrice", value.get("price"))
        if isinstance(raw_price, str):
            try:
                raw_price = float(raw_price)
            except ValueError:
                continue
        if not validate_price(raw_price):
            continue
        quotes[mint] = PriceQuote(
            mint=mint,
            usd_price=float(raw_price),
            block_id=_optional_int(value.get("blockId")),
            decimals=_optional_int(value.get("decimals")),
            price_change_24h=_optional_float(value.get("priceChange24h")),
        )
    return quotes


class PriceCache:
    """Per-mint USD price cache with a freshness window."""

    def __init__(
        self,
        ttl_seconds: float,
        *,
        maxsize: int = 1_024,
        timer: Callable[[], float] = time.monotonic,
    ) -> None:
        self._ttl = ttl_seconds
        self._cache: TTLCache[str, float] = TTLCache(maxsize=maxsize, ttl=ttl_seconds, timer=timer)
        self._stored_at: Dict[str, float] = {}

    @property
    def ttl_seconds(self) -> float:
        return self._ttl

    def get(self, mint: str) -> Optional[float]:
        return self._cache.get(mint)

    def set(self, mint: str, price: float) -> None:
        with self._cache.timer as now:
            self._cache[mint] = price
            self._stored_at[mint] = now

    def __contains__(self, mint: object) -> bool:
        return mint in self._cache

    def clear(self) -> None:
        self._cache.clear()
        self._stored_at.clear()

    def cleanup(self) -> int:
        """Drop expired entries and return how many were removed."""

        before = len(self._stored_at)
        self._cache.expire()
        live = set(self._cache.keys())
        for mint in [key for key in self._stored_at if key not in live]:
            del self._stored_at[mint]
        return before - len(self._stored_at)

    def stats(self) -> Dict[str, Any]:
        with self._cache.timer as now:
            entries = [
                {
                    "mint": mint,
                    "price": price,
                    "age_seconds": now - self._stored_at.get(mint, now),
                }
                for mint, price in list(self._cache.items())
            ]
        return {"size": len(entries), "ttl_seconds": self._ttl, "entries": entries}


class PriceOracle:
    """Jupiter lite price API client. Failures degrade to a price of 0."""

    def __init__(
        self,
        config: Optional[DataSourceConfig] = None,
        session: Optional[requests.Session] = None,
        *,
        cache: Optional[PriceCache] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._config = config or get_app_config().data_sources
        self._session = session or requests.Session()
        self._cache = cache or PriceCache(
            self._config.cache_ttl_seconds, maxsize=self._config.cache_maxsize
        )
        self._sleep = sleep
        self._price_url = str(self._config.price_oracle_url).rstrip("/")
        self._logger = get_logger(__name__)

    @property
    def cache(self) -> PriceCache:
        return self._cache

    def _request(self, mints: List[str]) -> Dict[str, PriceQuote]:
        started = time.monotonic()
        METRICS.increment("prices.requests")
        try:
            response = self._session.get(
                self._price_url,
                params={"ids": ",".join(mints)},
                headers={"Accept": "application/json"},
                timeout=self._config.http_timeout,
            )
            response.raise_for_status()
            payload = response.json()
        finally:
            METRICS.observe("prices.request_seconds", time.monotonic() - started)
        return parse_price_response(payload)

    def get_price_usd(self, mint: str) -> float:
        if not is_valid_address(mint):
            self._logger.warning("Refusing price lookup for invalid mint %r", mint)
            return 0.0
        cached = self._cache.get(mint)
        if cached is not None:
            METRICS.increment("prices.cache_hits")
            return cached
        try:
            quotes = self._request([mint])
        except (requests.RequestException, ValueError) as exc:
            METRICS.increment("prices.failures")
            self._logger.warning("Price lookup failed for %s: %s", mint, exc)
            return 0.0
        quote = quotes.get(mint)
        price = quote.usd_price if quote else 0.0
        self._cache.set(mint, price)
        return price

    get_token_price_usd = get_price_usd

    def get_batch_prices_usd(self, mints: Iterable[str]) -> Dict[str, float]:
        """Prices for every valid mint requested; unknown prices are 0."""

        requested = [mint for mint in dict.fromkeys(mints) if is_valid_address(mint)]
        results: Dict[str, float] = {}
        missing: List[str] = []
        for mint in requested:
            cached = self._cache.get(mint)
            if cached is None:
                missing.append(mint)
            else:
                METRICS.increment("prices.cache_hits")
                results[mint] = cached

        chunk_size = self._config.batch_max_ids
        for start in range(0, len(missing), chunk_size):
            chunk = missing[start : start + chunk_size]
            try:
                quotes = self._request(chunk)
            except (requests.RequestException, ValueError) as exc:
                METRICS.increment("prices.batch_fallbacks")
                self._logger.warning(
                    "Batch price lookup failed for %d mints, falling back to single lookups: %s",
                    len(chunk),
                    exc,
                )
                results.update(self._fetch_individually(chunk))
                continue
            for mint in chunk:
                quote = quotes.get(mint)
                price = quote.usd_price if quote else 0.0
                self._cache.set(mint, price)
                results[mint] = price
        return results

    def _fetch_individually(self, mints: List[str]) -> Dict[str, float]:
        size = self._config.fallback_batch_size
        prices: Dict[str, float] = {}
        for start in range(0, len(mints), size):
            for mint in mints[start : start + size]:
                prices[mint] = self.get_price_usd(mint)
            if start + size < len(mints):
                self._sleep(self._config.fallback_batch_delay_seconds)
        return prices

    def clear_cache(self) -> None:
        self._cache.clear()

    def cache_stats(self) -> Dict[str, Any]:
        return self._cache.stats()

    def cleanup_cache(self) -> int:
        removed = self._cache.cleanup()
        if removed:
            self._logger.debug("Removed %d expired prices", removed)
        return removed


__all__ = ["PriceCache", "PriceOracle", "PriceQuote", "parse_price_response"]
