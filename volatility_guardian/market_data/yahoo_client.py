"""Yahoo Finance client (yfinance) for daily history and NSE quotes."""

import logging
from datetime import date, timedelta
from decimal import Decimal
from typing import List, Optional

import yfinance as yf
from yfinance.exceptions import YFRateLimitError

from ..exceptions import DataUnavailable, RateLimited
from ..models import PriceBar, Region
from .parsing import parse_bars, parse_price

logger = logging.getLogger(__name__)

INDIA_SUFFIXES = (".NS", ".BO", ".BSE")


def yahoo_symbol(symbol: str, region: Region) -> str:
    """NSE listings need the .NS suffix on Yahoo."""
    symbol = symbol.strip().upper()
    if region is Region.INDIA and not symbol.endswith(INDIA_SUFFIXES):
        return f"{symbol}.NS"
    return symbol


class YahooClient:
    """Fetches daily bars and last prices via yfinance."""

    def __init__(self, timeout: int = 10):
        self.timeout = timeout

    def get_history(self, symbol: str, region: Region, days: int, end: Optional[date] = None) -> List[PriceBar]:
        """Daily bars covering the last ``days`` calendar days before ``end`` (exclusive)."""
        ticker_symbol = yahoo_symbol(symbol, region)
        end = end or date.today() + timedelta(days=1)
        start = end - timedelta(days=days)

        try:
            frame = yf.Ticker(ticker_symbol).history(
                start=start.isoformat(),
                end=end.isoformat(),
                interval="1d",
                auto_adjust=False,
                timeout=self.timeout,
            )
        except YFRateLimitError as e:
            raise RateLimited(f"{ticker_symbol}: Yahoo Finance rate limit: {e}")
        except Exception as e:
            raise DataUnavailable(f"{ticker_symbol}: Yahoo Finance history failed: {e}")

        if frame is None or frame.empty:
            raise DataUnavailable(f"{ticker_symbol}: no historical data available")

        records = [
            {"date": index, "high": row["High"], "low": row["Low"], "close": row["Close"]}
            for index, row in frame.iterrows()
        ]
        bars = parse_bars(ticker_symbol, records)
        logger.debug(f"[Yahoo] {ticker_symbol}: {len(bars)} daily bars")
        return bars

    def get_last_price(self, symbol: str, region: Region) -> Decimal:
        """Last traded price from fast_info."""
        ticker_symbol = yahoo_symbol(symbol, region)
        try:
            fast_info = yf.Ticker(ticker_symbol).fast_info
            value = getattr(fast_info, "last_price", None)
        except YFRateLimitError as e:
            raise RateLimited(f"{ticker_symbol}: Yahoo Finance rate limit: {e}")
        except Exception as e:
            raise DataUnavailable(f"{ticker_symbol}: Yahoo Finance quote failed: {e}")
        return parse_price(ticker_symbol, value)
