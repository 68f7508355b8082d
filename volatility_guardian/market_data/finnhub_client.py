"""Finnhub client for US quotes and analyst recommendations."""

import logging
import threading
from decimal import Decimal
from typing import Any, Dict, Optional

import httpx

from ..config import settings
from ..exceptions import ConfigurationError, DataUnavailable, RateLimited
from ..models import RecommendationTrend
from .parsing import parse_quote, parse_recommendations

logger = logging.getLogger(__name__)


class FinnhubClient:
    """Thin httpx wrapper around the Finnhub REST API."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: float = 10.0,
        http_client: Optional[httpx.Client] = None,
    ):
        self.api_key = api_key or settings.finnhub_api_key
        self.base_url = (base_url or settings.finnhub_base_url).rstrip("/")
        self.timeout = timeout
        self._client = http_client
        self._client_lock = threading.Lock()

    @property
    def enabled(self) -> bool:
        return bool(self.api_key) and self.api_key != "your_api_key"

    def _http(self) -> httpx.Client:
        # Shared by the batch worker pool; create exactly once
        with self._client_lock:
            if self._client is None:
                self._client = httpx.Client(timeout=self.timeout)
            return self._client

    def close(self):
        """Close the underlying HTTP client."""
        with self._client_lock:
            if self._client:
                self._client.close()
                self._client = None

    def _get(self, path: str, params: Dict[str, Any]) -> Any:
        if not self.enabled:
            raise ConfigurationError("FINNHUB_API_KEY is not configured")

        symbol = params.get("symbol", "")
        try:
            response = self._http().get(
                f"{self.base_url}{path}",
                params={**params, "token": self.api_key},
                timeout=self.timeout,
            )
        except httpx.TimeoutException as e:
            raise DataUnavailable(f"{symbol}: Finnhub request timed out: {e}")
        except httpx.HTTPError as e:
            raise DataUnavailable(f"{symbol}: Finnhub request failed: {e}")

        if response.status_code == 429:
            retry_after = response.headers.get("Retry-After")
            raise RateLimited(
                f"{symbol}: Finnhub rate limit hit",
                retry_after=float(retry_after) if retry_after and retry_after.isdigit() else None,
            )
        if response.status_code in (401, 403):
            raise ConfigurationError(f"Finnhub rejected API key ({response.status_code})")
        if response.status_code != 200:
            raise DataUnavailable(f"{symbol}: Finnhub API error {response.status_code} - {response.text[:200]}")

        try:
            data = response.json()
        except ValueError as e:
            raise DataUnavailable(f"{symbol}: Finnhub returned invalid JSON: {e}")

        if isinstance(data, dict) and data.get("error"):
            raise DataUnavailable(f"{symbol}: Finnhub error: {data['error']}")
        return data

    def get_quote(self, symbol: str) -> Decimal:
        """Current price from /quote."""
        data = self._get("/quote", {"symbol": symbol})
        price = parse_quote(symbol, data)
        logger.debug(f"[Finnhub] {symbol}: {price}")
        return price

    def get_recommendation_trend(self, symbol: str) -> Optional[RecommendationTrend]:
        """Latest monthly analyst trend from /stock/recommendation."""
        data = self._get("/stock/recommendation", {"symbol": symbol})
        return parse_recommendations(symbol, data)
