"""Validation boundary between upstream payloads and typed price data.

Nothing untyped gets past this module into the volatility engine.
"""

import logging
import math
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Iterable, List, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from ..exceptions import DataUnavailable
from ..models import PriceBar, RecommendationTrend

logger = logging.getLogger(__name__)


def _finite_decimal(value: Any) -> Decimal:
    if isinstance(value, float) and not math.isfinite(value):
        raise ValueError("price must be finite")
    dec = Decimal(str(value))
    if not dec.is_finite():
        raise ValueError("price must be finite")
    return dec


class RawBar(BaseModel):
    """One daily bar as delivered by an upstream source."""

    date: date
    high: Decimal
    low: Decimal
    close: Decimal

    @field_validator("date", mode="before")
    @classmethod
    def _coerce_date(cls, v):
        if isinstance(v, datetime):
            return v.date()
        if hasattr(v, "to_pydatetime"):  # pandas Timestamp
            return v.to_pydatetime().date()
        if isinstance(v, str) and "T" in v:
            return datetime.fromisoformat(v.replace("Z", "+00:00")).date()
        return v

    @field_validator("high", "low", "close", mode="before")
    @classmethod
    def _coerce_price(cls, v):
        return _finite_decimal(v)

    @field_validator("high", "low", "close")
    @classmethod
    def _positive(cls, v: Decimal) -> Decimal:
        if v <= 0:
            raise ValueError("price must be positive")
        return v

    @model_validator(mode="after")
    def _high_not_below_low(self):
        if self.high < self.low:
            raise ValueError(f"high {self.high} below low {self.low}")
        return self


class FinnhubQuote(BaseModel):
    """Subset of Finnhub /quote we rely on."""

    model_config = ConfigDict(extra="ignore")

    c: Decimal = Field(description="current price")
    pc: Optional[Decimal] = Field(default=None, description="previous close")
    t: Optional[int] = Field(default=None, description="quote unix time")

    @field_validator("c", "pc", mode="before")
    @classmethod
    def _coerce(cls, v):
        return None if v is None else _finite_decimal(v)


class FinnhubRecommendation(BaseModel):
    """One monthly row of Finnhub /stock/recommendation."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    period: Optional[str] = None
    strong_buy: int = Field(default=0, alias="strongBuy")
    buy: int = 0
    hold: int = 0
    sell: int = 0
    strong_sell: int = Field(default=0, alias="strongSell")


def parse_bars(symbol: str, records: Iterable[Mapping[str, Any]]) -> List[PriceBar]:
    """Validate raw bar records into ascending, date-unique PriceBars.

    Invalid rows (NaN, non-positive, high < low) are dropped with a warning;
    later rows win on duplicate dates.
    """
    by_date = {}
    dropped = 0
    for record in records:
        try:
            raw = RawBar.model_validate(dict(record))
        except (ValidationError, ValueError, ArithmeticError) as e:
            dropped += 1
            logger.debug(f"{symbol}: dropping invalid bar {record!r}: {e}")
            continue
        by_date[raw.date] = PriceBar(date=raw.date, high=raw.high, low=raw.low, close=raw.close)

    if dropped:
        logger.warning(f"{symbol}: dropped {dropped} invalid bar(s) from upstream history")

    return [by_date[d] for d in sorted(by_date)]


def parse_price(symbol: str, value: Any) -> Decimal:
    """Validate a scalar upstream price."""
    try:
        price = _finite_decimal(value) if value is not None else None
    except (ValueError, ArithmeticError):
        price = None
    if price is None or price <= 0:
        raise DataUnavailable(f"{symbol}: invalid price from upstream: {value!r}")
    return price


def parse_quote(symbol: str, payload: Any) -> Decimal:
    try:
        quote = FinnhubQuote.model_validate(payload)
    except ValidationError as e:
        raise DataUnavailable(f"{symbol}: malformed quote payload: {e}")
    # Finnhub answers unknown symbols with c == 0
    return parse_price(symbol, quote.c)


def parse_recommendations(symbol: str, payload: Any) -> Optional[RecommendationTrend]:
    """Latest-period analyst aggregate, or None when there is no coverage."""
    if not isinstance(payload, list):
        raise DataUnavailable(f"{symbol}: unexpected recommendation payload type {type(payload).__name__}")
    try:
        rows = [FinnhubRecommendation.model_validate(row) for row in payload]
    except ValidationError as e:
        raise DataUnavailable(f"{symbol}: malformed recommendation payload: {e}")
    if not rows:
        return None

    latest = max(rows, key=lambda r: r.period or "")
    return RecommendationTrend(
        symbol=symbol,
        period=latest.period,
        strong_buy=latest.strong_buy,
        buy=latest.buy,
        hold=latest.hold,
        sell=latest.sell,
        strong_sell=latest.strong_sell,
    )
