"""Analyst consensus provider (independent of the volatility path)."""

import logging
from typing import Optional

from ..exceptions import ConfigurationError, DataUnavailable
from ..models import RecommendationTrend, Region
from ..redis_client import RedisClient
from .finnhub_client import FinnhubClient

logger = logging.getLogger(__name__)


class RecommendationProvider:
    """Buy/hold/sell aggregates from Finnhub recommendation trends."""

    def __init__(
        self,
        finnhub: Optional[FinnhubClient],
        cache: Optional[RedisClient] = None,
        cache_seconds: int = 0,
    ):
        self.finnhub = finnhub
        self.cache = cache
        self.cache_seconds = cache_seconds

    def fetch_recommendations(self, symbol: str, region: Region = Region.US) -> RecommendationTrend:
        """Latest analyst aggregate for ``symbol``.

        Raises:
            DataUnavailable: no coverage, upstream failure, or a region
                without a consensus source (INDIA)
        """
        if region is not Region.US:
            raise DataUnavailable(f"{symbol}: analyst recommendations are only available for US symbols")
        if self.finnhub is None or not self.finnhub.enabled:
            raise DataUnavailable(f"{symbol}: recommendation source not configured")

        if self.cache is not None:
            cached = self.cache.get_json("recommendations", symbol)
            if cached:
                return RecommendationTrend(**cached)

        try:
            trend = self.finnhub.get_recommendation_trend(symbol)
        except ConfigurationError as e:
            # A missing key must not block the volatility path
            raise DataUnavailable(f"{symbol}: {e}")

        if trend is None:
            raise DataUnavailable(f"{symbol}: no analyst coverage")

        if self.cache is not None:
            self.cache.set_json(
                {
                    "symbol": trend.symbol,
                    "period": trend.period,
                    "strong_buy": trend.strong_buy,
                    "buy": trend.buy,
                    "hold": trend.hold,
                    "sell": trend.sell,
                    "strong_sell": trend.strong_sell,
                },
                self.cache_seconds,
                "recommendations", symbol,
            )
        logger.debug(f"{symbol}: analysts {trend.counts()}")
        return trend
