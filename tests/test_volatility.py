"""Tests for the ATR volatility engine."""

import pytest
from datetime import date, timedelta
from decimal import Decimal

from volatility_guardian.exceptions import InsufficientHistory, InvalidInput
from volatility_guardian.models import (
    AlertCondition,
    MarketSnapshot,
    PriceBar,
    Recommendation,
    Region,
    VolatilityResult,
    WatchedItem,
)
from volatility_guardian.volatility import (
    VolatilityEngine,
    VolatilityPolicy,
    calculate_atr,
    calculate_stop,
    classify,
    true_range,
)


def make_bars(closes, high="151", low="149", start=date(2025, 3, 3)):
    return [
        PriceBar(
            date=start + timedelta(days=i),
            high=Decimal(high),
            low=Decimal(low),
            close=Decimal(str(c)),
        )
        for i, c in enumerate(closes)
    ]


def alternating_closes(n):
    return ["150" if i % 2 == 0 else "150.5" for i in range(n)]


class TestTrueRange:

    def test_high_low_range_dominates(self):
        assert true_range(Decimal("151"), Decimal("149"), Decimal("150")) == Decimal("2")

    def test_gap_up_uses_previous_close(self):
        # Gap up: low is above the prior close
        assert true_range(Decimal("110"), Decimal("105"), Decimal("100")) == Decimal("10")

    def test_gap_down_uses_previous_close(self):
        assert true_range(Decimal("95"), Decimal("90"), Decimal("100")) == Decimal("10")


class TestCalculateAtr:

    def test_constant_true_range_converges_to_that_range(self):
        bars = make_bars(alternating_closes(40))
        assert calculate_atr(bars, 14) == Decimal("2")

    def test_exactly_period_plus_one_bars(self):
        bars = make_bars(alternating_closes(15))
        assert calculate_atr(bars, 14) == Decimal("2")

    def test_wilder_smoothing_folds_in_later_ranges(self):
        # period 2: TRs are 2, 2, then a 5-point bar
        bars = make_bars(["150", "150", "150"]) + [
            PriceBar(date=date(2025, 3, 6), high=Decimal("154"), low=Decimal("149"), close=Decimal("152"))
        ]
        # seed = (2 + 2) / 2 = 2 ; next = (2 * 1 + 5) / 2 = 3.5
        assert calculate_atr(bars, 2) == Decimal("3.5")

    def test_insufficient_history(self):
        bars = make_bars(alternating_closes(10))
        with pytest.raises(InsufficientHistory) as exc:
            calculate_atr(bars, 14, symbol="AAPL")
        assert exc.value.required == 15
        assert exc.value.available == 10

    def test_period_equal_to_bar_count_is_insufficient(self):
        with pytest.raises(InsufficientHistory):
            calculate_atr(make_bars(alternating_closes(14)), 14)

    def test_invalid_period(self):
        with pytest.raises(InvalidInput):
            calculate_atr(make_bars(alternating_closes(20)), 0)

    def test_flat_series_has_zero_atr(self):
        bars = make_bars(["100"] * 20, high="100", low="100")
        assert calculate_atr(bars, 14) == Decimal("0")


class TestCalculateStop:

    def test_basic_stop(self):
        stop, pct = calculate_stop(Decimal("150"), Decimal("2"), Decimal("2"))
        assert stop == Decimal("146")
        assert round(pct, 2) == Decimal("2.67")

    def test_stop_never_above_price(self):
        for atr in ("0", "0.5", "3", "10"):
            for mult in ("0", "1", "2.5"):
                stop, _ = calculate_stop(Decimal("50"), Decimal(atr), Decimal(mult))
                assert stop <= Decimal("50")

    def test_percentage_within_bounds_for_reasonable_inputs(self):
        _, pct = calculate_stop(Decimal("50"), Decimal("5"), Decimal("2"))
        assert Decimal("0") <= pct <= Decimal("100")
        assert pct == Decimal("20")

    def test_zero_atr_gives_zero_percentage(self):
        stop, pct = calculate_stop(Decimal("100"), Decimal("0"), Decimal("2"))
        assert stop == Decimal("100")
        assert pct == Decimal("0")

    def test_non_positive_price_rejected(self):
        with pytest.raises(InvalidInput):
            calculate_stop(Decimal("0"), Decimal("1"), Decimal("2"))
        with pytest.raises(InvalidInput):
            calculate_stop(Decimal("-5"), Decimal("1"), Decimal("2"))


class TestClassify:

    def setup_method(self):
        self.policy = VolatilityPolicy(low_volatility_pct=Decimal("5"), high_volatility_pct=Decimal("10"))

    def test_owned_at_alert_price_is_sell(self):
        rec = classify(
            Decimal("3"), Decimal("95"), self.policy,
            owned=True, alert_price=Decimal("95"), last_close=Decimal("90"),
        )
        assert rec == Recommendation.SELL

    def test_not_owned_below_alert_price_is_not_sell(self):
        rec = classify(
            Decimal("8"), Decimal("95"), self.policy,
            owned=False, alert_price=Decimal("100"), last_close=Decimal("96"),
        )
        assert rec == Recommendation.HOLD

    def test_tight_stop_and_rising_is_buy(self):
        rec = classify(Decimal("3"), Decimal("101"), self.policy, last_close=Decimal("100"))
        assert rec == Recommendation.BUY

    def test_tight_stop_rising_but_owned_is_hold(self):
        rec = classify(Decimal("3"), Decimal("101"), self.policy, owned=True, last_close=Decimal("100"))
        assert rec == Recommendation.HOLD

    def test_tight_stop_falling_is_hold(self):
        rec = classify(Decimal("3"), Decimal("99"), self.policy, last_close=Decimal("100"))
        assert rec == Recommendation.HOLD

    def test_wide_stop_is_hold(self):
        rec = classify(Decimal("12"), Decimal("101"), self.policy, last_close=Decimal("100"))
        assert rec == Recommendation.HOLD

    def test_thresholds_are_injected(self):
        loose = VolatilityPolicy(low_volatility_pct=Decimal("15"))
        rec = classify(Decimal("12"), Decimal("101"), loose, last_close=Decimal("100"))
        assert rec == Recommendation.BUY


class TestVolatilityEngine:

    def setup_method(self):
        self.engine = VolatilityEngine(VolatilityPolicy())

    def test_scenario_steady_series(self):
        item = WatchedItem(symbol="aapl ", region=Region.US, atr_period=14, atr_multiplier=Decimal("2"))
        snapshot = MarketSnapshot(
            symbol="AAPL", region=Region.US, current_price=Decimal("150"),
            bars=make_bars(alternating_closes(15)),
        )

        result = self.engine.evaluate(item, snapshot)

        assert item.symbol == "AAPL"
        assert result.atr == Decimal("2")
        assert result.stop_loss == Decimal("146")
        assert round(result.stop_loss_percentage, 2) == Decimal("2.67")
        assert result.risk_per_share == Decimal("4")
        # Last close is 150, so the price is not rising
        assert result.recommendation == Recommendation.HOLD

    def test_short_history_raises(self):
        item = WatchedItem(symbol="AAPL", region=Region.US)
        snapshot = MarketSnapshot(
            symbol="AAPL", region=Region.US, current_price=Decimal("150"),
            bars=make_bars(alternating_closes(10)),
        )
        with pytest.raises(InsufficientHistory):
            self.engine.evaluate(item, snapshot)

    def test_evaluate_does_not_mutate_item(self):
        item = WatchedItem(symbol="AAPL", region=Region.US, alert_price=Decimal("140"))
        snapshot = MarketSnapshot(
            symbol="AAPL", region=Region.US, current_price=Decimal("150"),
            bars=make_bars(alternating_closes(20)),
        )
        before = (item.symbol, item.atr_period, item.atr_multiplier, item.alert_price, item.owned)
        self.engine.evaluate(item, snapshot)
        assert (item.symbol, item.atr_period, item.atr_multiplier, item.alert_price, item.owned) == before


class TestAlertCondition:

    def _result(self, price, pct="3", rec=Recommendation.HOLD):
        return VolatilityResult(
            current_price=Decimal(price),
            atr=Decimal("1"),
            stop_loss=Decimal(price) - Decimal("2"),
            stop_loss_percentage=Decimal(pct),
            recommendation=rec,
        )

    def test_sell_signal(self):
        engine = VolatilityEngine()
        item = WatchedItem(symbol="AAPL", region=Region.US, owned=True, alert_price=Decimal("100"))
        assert engine.alert_condition(item, self._result("99", rec=Recommendation.SELL)) == AlertCondition.SELL_SIGNAL

    def test_price_alert(self):
        engine = VolatilityEngine()
        item = WatchedItem(symbol="AAPL", region=Region.US, alert_price=Decimal("100"))
        assert engine.alert_condition(item, self._result("100")) == AlertCondition.PRICE_ALERT

    def test_no_alert_above_alert_price(self):
        engine = VolatilityEngine()
        item = WatchedItem(symbol="AAPL", region=Region.US, alert_price=Decimal("100"))
        assert engine.alert_condition(item, self._result("101")) is None

    def test_high_volatility_only_when_enabled(self):
        item = WatchedItem(symbol="AAPL", region=Region.US)
        wide = self._result("100", pct="12")
        assert VolatilityEngine().alert_condition(item, wide) is None
        engine = VolatilityEngine(VolatilityPolicy(alert_on_high_volatility=True))
        assert engine.alert_condition(item, wide) == AlertCondition.HIGH_VOLATILITY


class TestWatchedItemValidation:

    def test_valid_item(self):
        WatchedItem(symbol="RELIANCE", region=Region.INDIA).validate()

    @pytest.mark.parametrize("kwargs", [
        {"symbol": "  "},
        {"symbol": "AAPL", "atr_period": 0},
        {"symbol": "AAPL", "atr_multiplier": Decimal("-1")},
        {"symbol": "AAPL", "alert_price": Decimal("0")},
    ])
    def test_invalid_items(self, kwargs):
        with pytest.raises(InvalidInput):
            WatchedItem(region=Region.US, **kwargs).validate()
