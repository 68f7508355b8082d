"""Volatility engine - Wilder ATR, volatility stop and recommendation.

Pure computation: no I/O, no settings lookups, no shared state.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import List, Optional, Sequence, Tuple

from .exceptions import InsufficientHistory, InvalidInput
from .models import (
    AlertCondition,
    MarketSnapshot,
    PriceBar,
    Recommendation,
    VolatilityResult,
    WatchedItem,
)

logger = logging.getLogger(__name__)

ZERO = Decimal("0")
HUNDRED = Decimal("100")


@dataclass(frozen=True)
class VolatilityPolicy:
    """Thresholds (stop distance in %) used to classify a volatility stop.

    The cut points are product decisions, so they are always injected.
    """
    low_volatility_pct: Decimal = Decimal("5")
    high_volatility_pct: Decimal = Decimal("10")
    alert_on_high_volatility: bool = False


def true_range(high: Decimal, low: Decimal, previous_close: Decimal) -> Decimal:
    """True Range of one bar against the prior close."""
    return max(high - low, abs(high - previous_close), abs(low - previous_close))


def true_ranges(bars: Sequence[PriceBar]) -> List[Decimal]:
    return [
        true_range(bars[i].high, bars[i].low, bars[i - 1].close)
        for i in range(1, len(bars))
    ]


def calculate_atr(bars: Sequence[PriceBar], period: int = 14, symbol: str = "") -> Decimal:
    """Average True Range with Wilder smoothing.

    Seed is the simple average of the first ``period`` true ranges; every
    later bar is folded in as ``(atr * (period - 1) + tr) / period``.

    Raises:
        InvalidInput: period < 1
        InsufficientHistory: fewer than ``period + 1`` bars
    """
    if period < 1:
        raise InvalidInput(f"ATR period must be >= 1, got {period}")
    if len(bars) < period + 1:
        raise InsufficientHistory(symbol or "series", required=period + 1, available=len(bars))

    ranges = true_ranges(bars)
    atr = sum(ranges[:period], ZERO) / period
    for tr in ranges[period:]:
        atr = (atr * (period - 1) + tr) / period
    return atr


def calculate_stop(current_price: Decimal, atr: Decimal, multiplier: Decimal) -> Tuple[Decimal, Decimal]:
    """Long-position volatility stop.

    Returns:
        (stop_loss, stop_loss_percentage)
    """
    if current_price is None or current_price <= 0:
        raise InvalidInput(f"current price must be positive, got {current_price}")
    if atr < 0 or multiplier < 0:
        raise InvalidInput(f"atr and multiplier must be non-negative (atr={atr}, multiplier={multiplier})")

    stop_loss = current_price - atr * multiplier
    if atr == 0:
        return stop_loss, ZERO
    stop_pct = (current_price - stop_loss) / current_price * HUNDRED
    return stop_loss, stop_pct


def classify(
    stop_loss_pct: Decimal,
    current_price: Decimal,
    policy: VolatilityPolicy,
    owned: bool = False,
    alert_price: Optional[Decimal] = None,
    last_close: Optional[Decimal] = None,
) -> Recommendation:
    """Map stop distance plus position state to BUY / HOLD / SELL.

    - owned and price at/below the alert price -> SELL
    - tight stop and price rising vs last close -> BUY (HOLD if already owned)
    - anything else -> HOLD
    """
    if owned and alert_price is not None and current_price <= alert_price:
        return Recommendation.SELL

    rising = last_close is not None and current_price > last_close
    if stop_loss_pct < policy.low_volatility_pct and rising:
        return Recommendation.HOLD if owned else Recommendation.BUY

    return Recommendation.HOLD


class VolatilityEngine:
    """Evaluates watched items against fetched market data."""

    def __init__(self, policy: Optional[VolatilityPolicy] = None):
        self.policy = policy or VolatilityPolicy()

    def evaluate(self, item: WatchedItem, snapshot: MarketSnapshot) -> VolatilityResult:
        """Run ATR -> stop -> classification for one item."""
        atr = calculate_atr(snapshot.bars, item.atr_period, symbol=item.symbol)
        stop_loss, stop_pct = calculate_stop(snapshot.current_price, atr, item.atr_multiplier)
        recommendation = classify(
            stop_pct,
            snapshot.current_price,
            self.policy,
            owned=item.owned,
            alert_price=item.alert_price,
            last_close=snapshot.last_close,
        )
        logger.debug(
            f"{item.symbol}: price={snapshot.current_price} atr={atr:.4f} "
            f"stop={stop_loss:.2f} ({stop_pct:.2f}%) -> {recommendation.value}"
        )
        return VolatilityResult(
            current_price=snapshot.current_price,
            atr=atr,
            stop_loss=stop_loss,
            stop_loss_percentage=stop_pct,
            recommendation=recommendation,
        )

    def alert_condition(self, item: WatchedItem, result: VolatilityResult) -> Optional[AlertCondition]:
        """Return why this result deserves an alert, or None."""
        if result.recommendation is Recommendation.SELL:
            return AlertCondition.SELL_SIGNAL
        if item.alert_price is not None and result.current_price <= item.alert_price:
            return AlertCondition.PRICE_ALERT
        if self.policy.alert_on_high_volatility and result.stop_loss_percentage > self.policy.high_volatility_pct:
            return AlertCondition.HIGH_VOLATILITY
        return None
