"""Market data providers for Volatility Guardian."""

from .finnhub_client import FinnhubClient
from .yahoo_client import YahooClient
from .service import MarketDataService, BatchFetchResult
from .recommendations import RecommendationProvider

__all__ = ["FinnhubClient", "YahooClient", "MarketDataService", "BatchFetchResult", "RecommendationProvider"]
