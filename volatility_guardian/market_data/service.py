"""Price data provider - routes per region, caches, retries and batches."""

import logging
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Callable, Dict, Iterable, List, Optional, Tuple, TypeVar
from zoneinfo import ZoneInfo

from ..exceptions import ConfigurationError, DataUnavailable, InsufficientHistory, MarketDataError, RateLimited
from ..models import MarketSnapshot, PriceBar, Region
from ..redis_client import RedisClient
from .finnhub_client import FinnhubClient
from .yahoo_client import YahooClient

logger = logging.getLogger(__name__)

T = TypeVar("T")


def session_date(region: Region, now: Optional[datetime] = None) -> date:
    """Today on the exchange's own clock."""
    now = now or datetime.now(timezone.utc)
    return now.astimezone(ZoneInfo(region.timezone)).date()


@dataclass
class BatchFetchResult:
    """Per-symbol prices plus per-symbol errors; never a batch-wide fault."""
    prices: Dict[str, Decimal] = field(default_factory=dict)
    errors: Dict[str, MarketDataError] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, object]:
        return {
            "prices": {symbol: str(price) for symbol, price in self.prices.items()},
            "errors": {symbol: str(err) for symbol, err in self.errors.items()},
        }


class MarketDataService:
    """Current prices and daily history for US and INDIA symbols.

    US quotes come from Finnhub, NSE quotes and all daily history from
    Yahoo Finance.
    """

    _MAX_RETRIES = 3
    _RETRY_BACKOFF_SECONDS = [1, 2, 4]

    def __init__(
        self,
        finnhub: Optional[FinnhubClient],
        yahoo: Optional[YahooClient],
        cache: Optional[RedisClient] = None,
        max_workers: int = 4,
        history_days: int = 90,
        price_cache_seconds: int = 0,
        history_cache_seconds: int = 0,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        if max_workers < 1:
            raise ConfigurationError(f"max_workers must be >= 1, got {max_workers}")
        self.finnhub = finnhub
        self.yahoo = yahoo
        self.cache = cache
        self.max_workers = max_workers
        self.history_days = history_days
        self.price_cache_seconds = price_cache_seconds
        self.history_cache_seconds = history_cache_seconds
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    # ------------------------------------------------------------------
    # Single symbol
    # ------------------------------------------------------------------
    def fetch_current_price(self, symbol: str, region: Region) -> Decimal:
        cached = self._cache_get("price", region.value, symbol)
        if cached is not None:
            return Decimal(cached)

        if region is Region.US:
            if self.finnhub is None or not self.finnhub.enabled:
                raise ConfigurationError("No US quote source configured (FINNHUB_API_KEY)")
            price = self._with_retry(self.finnhub.get_quote, symbol)
        else:
            price = self._with_retry(self._yahoo().get_last_price, symbol, region)

        self._cache_set(str(price), self.price_cache_seconds, "price", region.value, symbol)
        return price

    def fetch_history(self, symbol: str, region: Region, lookback: int) -> List[PriceBar]:
        """At least ``lookback`` completed daily bars, ascending, else InsufficientHistory.

        Today's bar is still forming while the session runs, so only bars
        dated before the exchange-local session date are returned.
        """
        today = session_date(region, self.clock())
        # Calendar days; weekends and holidays eat roughly a third of them
        days = max(self.history_days, lookback * 2)

        cached = self._cache_get("history", region.value, symbol, str(days))
        if cached is not None:
            bars = [
                PriceBar(
                    date=date.fromisoformat(b["date"]),
                    high=Decimal(b["high"]),
                    low=Decimal(b["low"]),
                    close=Decimal(b["close"]),
                )
                for b in cached
            ]
        else:
            bars = self._with_retry(self._yahoo().get_history, symbol, region, days, today)
            self._cache_set(
                [
                    {"date": b.date.isoformat(), "high": str(b.high), "low": str(b.low), "close": str(b.close)}
                    for b in bars
                ],
                self.history_cache_seconds,
                "history", region.value, symbol, str(days),
            )

        completed = [b for b in bars if b.date < today]
        if len(completed) < len(bars):
            logger.debug(f"{symbol}: dropped {len(bars) - len(completed)} bar(s) from the open {today} session")
        bars = completed

        if len(bars) < lookback:
            raise InsufficientHistory(symbol, required=lookback, available=len(bars))
        return bars

    def fetch_snapshot(self, symbol: str, region: Region, lookback: int) -> MarketSnapshot:
        price = self.fetch_current_price(symbol, region)
        bars = self.fetch_history(symbol, region, lookback)
        return MarketSnapshot(symbol=symbol, region=region, current_price=price, bars=bars)

    # ------------------------------------------------------------------
    # Batch
    # ------------------------------------------------------------------
    def batch_fetch(self, pairs: Iterable[Tuple[str, Region]]) -> BatchFetchResult:
        """Fetch current prices for many symbols on a bounded worker pool."""
        result = BatchFetchResult()
        unique = list(dict.fromkeys((s.strip().upper(), r) for s, r in pairs))
        if not unique:
            return result

        logger.info(f"Batch fetching prices for {len(unique)} symbols ({self.max_workers} workers)")
        with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
            futures = {
                executor.submit(self.fetch_current_price, symbol, region): symbol
                for symbol, region in unique
            }
            for future in as_completed(futures):
                symbol = futures[future]
                try:
                    result.prices[symbol] = future.result()
                except MarketDataError as e:
                    logger.warning(f"Failed to fetch {symbol}: {e}")
                    result.errors[symbol] = e
                except ConfigurationError:
                    raise
                except Exception as e:
                    logger.error(f"Unexpected error fetching {symbol}: {e}", exc_info=True)
                    result.errors[symbol] = DataUnavailable(f"{symbol}: {e}")

        logger.info(f"Batch fetch done: {len(result.prices)} ok, {len(result.errors)} failed")
        return result

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _yahoo(self) -> YahooClient:
        if self.yahoo is None:
            raise ConfigurationError("No history source configured")
        return self.yahoo

    def _with_retry(self, fn: Callable[..., T], *args) -> T:
        """Call ``fn``, backing off on RateLimited."""
        for attempt in range(self._MAX_RETRIES - 1):
            try:
                return fn(*args)
            except RateLimited as e:
                delay = e.retry_after or self._RETRY_BACKOFF_SECONDS[attempt]
                logger.info(f"Rate limited ({e}); retrying in {delay}s (attempt {attempt + 1}/{self._MAX_RETRIES})")
                time.sleep(delay)
        return fn(*args)

    def _cache_get(self, *key_parts: str):
        if self.cache is None:
            return None
        return self.cache.get_json(*key_parts)

    def _cache_set(self, payload, ttl_seconds: int, *key_parts: str) -> None:
        if self.cache is None:
            return
        self.cache.set_json(payload, ttl_seconds, *key_parts)
