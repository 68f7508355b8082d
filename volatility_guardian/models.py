"""Data models for Volatility Guardian."""

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Optional, Dict, Any, List, NamedTuple

from .exceptions import InvalidInput


class Region(str, Enum):
    US = "US"
    INDIA = "INDIA"

    @property
    def currency(self) -> str:
        return "₹" if self is Region.INDIA else "$"

    @property
    def timezone(self) -> str:
        return "Asia/Kolkata" if self is Region.INDIA else "America/New_York"


class Recommendation(str, Enum):
    BUY = "BUY"
    HOLD = "HOLD"
    SELL = "SELL"


class AlertCondition(str, Enum):
    SELL_SIGNAL = "sell_signal"
    PRICE_ALERT = "price_alert"
    HIGH_VOLATILITY = "high_volatility"


class DeliveryStatus(str, Enum):
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"
    SKIPPED = "skipped"


class RunState(str, Enum):
    GATED = "gated"
    FETCHING = "fetching"
    EVALUATING = "evaluating"
    DISPATCHING = "dispatching"
    DONE = "done"
    ERROR = "error"
    SKIPPED = "skipped"


def format_money(value: Decimal, region: Region) -> str:
    return f"{region.currency}{value:.2f}"


@dataclass
class WatchedItem:
    """One symbol a user tracks. Read-only to the batch pipeline."""
    symbol: str
    region: Region
    atr_period: int = 14
    atr_multiplier: Decimal = Decimal("2.0")
    alert_price: Optional[Decimal] = None
    owned: bool = False
    name: Optional[str] = None

    def __post_init__(self):
        self.symbol = (self.symbol or "").strip().upper()

    def validate(self) -> None:
        if not self.symbol:
            raise InvalidInput("symbol is empty")
        if self.atr_period < 1:
            raise InvalidInput(f"{self.symbol}: atr_period must be >= 1, got {self.atr_period}")
        if self.atr_multiplier < 0:
            raise InvalidInput(f"{self.symbol}: atr_multiplier must be >= 0, got {self.atr_multiplier}")
        if self.alert_price is not None and self.alert_price <= 0:
            raise InvalidInput(f"{self.symbol}: alert_price must be positive, got {self.alert_price}")

    @property
    def key(self) -> str:
        return f"{self.region.value}:{self.symbol}"


class WatchEntry(NamedTuple):
    user_id: str
    item: WatchedItem


@dataclass(frozen=True)
class PriceBar:
    """One daily OHLC session (open is not needed for ATR)."""
    date: date
    high: Decimal
    low: Decimal
    close: Decimal


@dataclass
class MarketSnapshot:
    """Current price plus ascending daily bars for one symbol."""
    symbol: str
    region: Region
    current_price: Decimal
    bars: List[PriceBar]

    @property
    def last_close(self) -> Optional[Decimal]:
        return self.bars[-1].close if self.bars else None


@dataclass
class VolatilityResult:
    """Derived indicator values. Never persisted."""
    current_price: Decimal
    atr: Decimal
    stop_loss: Decimal
    stop_loss_percentage: Decimal
    recommendation: Recommendation

    @property
    def risk_per_share(self) -> Decimal:
        return self.current_price - self.stop_loss

    def to_dict(self) -> Dict[str, Any]:
        return {
            "current_price": str(self.current_price),
            "atr": str(self.atr),
            "stop_loss": str(self.stop_loss),
            "stop_loss_percentage": str(self.stop_loss_percentage),
            "recommendation": self.recommendation.value,
        }


@dataclass
class RecommendationTrend:
    """Analyst consensus for the latest reported period."""
    symbol: str
    period: Optional[str]
    strong_buy: int = 0
    buy: int = 0
    hold: int = 0
    sell: int = 0
    strong_sell: int = 0

    @property
    def buy_total(self) -> int:
        return self.strong_buy + self.buy

    @property
    def sell_total(self) -> int:
        return self.sell + self.strong_sell

    @property
    def total(self) -> int:
        return self.buy_total + self.hold + self.sell_total

    @property
    def consensus(self) -> Optional[Recommendation]:
        """Largest bucket wins; ties resolve towards HOLD."""
        if self.total == 0:
            return None
        counts = {
            Recommendation.BUY: self.buy_total,
            Recommendation.HOLD: self.hold,
            Recommendation.SELL: self.sell_total,
        }
        best = max(counts.values())
        if counts[Recommendation.HOLD] == best:
            return Recommendation.HOLD
        winners = [rec for rec, count in counts.items() if count == best]
        return winners[0] if len(winners) == 1 else Recommendation.HOLD

    def counts(self) -> Dict[str, int]:
        return {"buy": self.buy_total, "hold": self.hold, "sell": self.sell_total}


@dataclass
class NotificationTarget:
    """Delivery addresses for one user."""
    user_id: str
    push_tokens: List[str] = field(default_factory=list)
    phone_number: Optional[str] = None
    email: Optional[str] = None


_VOLATILITY_BLURB = {
    Recommendation.BUY: "Low volatility - tight stop, stable stock",
    Recommendation.HOLD: "Moderate volatility - standard risk level",
    Recommendation.SELL: "Exit signal - review the position",
}


@dataclass
class Alert:
    """Volatility alert for one watched item."""
    symbol: str
    region: Region
    condition: AlertCondition
    result: VolatilityResult
    atr_period: int = 14
    alert_price: Optional[Decimal] = None
    analyst: Optional[RecommendationTrend] = None

    def _money(self, value: Decimal) -> str:
        return format_money(value, self.region)

    @property
    def title(self) -> str:
        emoji = {
            AlertCondition.SELL_SIGNAL: "🚨",
            AlertCondition.PRICE_ALERT: "🔔",
            AlertCondition.HIGH_VOLATILITY: "⚠️",
        }.get(self.condition, "")
        return f"{emoji} {self.symbol} {self.condition.value.replace('_', ' ').title()}"

    def format_message(self) -> str:
        """Format alert message for WhatsApp delivery."""
        r = self.result
        lines = [
            f"*{self.title}*",
            "",
            f"📊 *Current Price:* {self._money(r.current_price)}",
            f"🛑 *Stop Loss:* {self._money(r.stop_loss)}",
            f"📉 *Distance:* {r.stop_loss_percentage:.2f}%",
            f"📈 *ATR ({self.atr_period}-day):* {self._money(r.atr)}",
            f"⚠️ *Risk/Share:* {self._money(r.risk_per_share)}",
        ]
        if self.alert_price is not None:
            lines.append(f"🎯 *Alert Price:* {self._money(self.alert_price)}")
        lines.append("")
        lines.append(f"💡 *Recommendation:* {r.recommendation.value}")
        lines.append(_VOLATILITY_BLURB[r.recommendation])
        if self.analyst and self.analyst.total:
            c = self.analyst.counts()
            lines.append(f"🧑‍💼 *Analysts:* {c['buy']} buy / {c['hold']} hold / {c['sell']} sell")
        return "\n".join(lines)

    def push_body(self) -> str:
        r = self.result
        return (
            f"Current: {self._money(r.current_price)} | "
            f"Stop Loss: {self._money(r.stop_loss)} ({r.stop_loss_percentage:.2f}%) | "
            f"{r.recommendation.value}"
        )

    def push_data(self) -> Dict[str, str]:
        """FCM data payload; values must all be strings."""
        data = {
            "symbol": self.symbol,
            "region": self.region.value,
            "type": self.condition.value,
            **self.result.to_dict(),
        }
        if self.alert_price is not None:
            data["alert_price"] = str(self.alert_price)
        return data

    @property
    def email_subject(self) -> str:
        return f"{self.symbol} Volatility Alert - Stop Loss: {self._money(self.result.stop_loss)}"


@dataclass
class ChannelResult:
    """Tagged outcome of one channel for one dispatch."""
    channel: str
    status: DeliveryStatus
    success_count: int = 0
    failure_count: int = 0
    error: Optional[str] = None


@dataclass
class DispatchResult:
    """Aggregate of all channel outcomes for one alert."""
    channels: List[ChannelResult] = field(default_factory=list)
    success_count: int = 0
    failure_count: int = 0
    errored_channels: List[str] = field(default_factory=list)
    partial_channels: List[str] = field(default_factory=list)

    @property
    def delivered(self) -> bool:
        return self.success_count > 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success_count": self.success_count,
            "failure_count": self.failure_count,
            "errored_channels": list(self.errored_channels),
            "partial_channels": list(self.partial_channels),
            "channels": {
                c.channel: {
                    "status": c.status.value,
                    "success_count": c.success_count,
                    "failure_count": c.failure_count,
                    "error": c.error,
                }
                for c in self.channels
            },
        }


@dataclass
class GateDecision:
    """Admission decision for one region in one run."""
    region: Region
    is_open: bool
    bypassed: bool = False
    next_open: Optional[datetime] = None
    message: str = ""

    @property
    def admitted(self) -> bool:
        return self.is_open or self.bypassed

    def to_dict(self) -> Dict[str, Any]:
        return {
            "is_open": self.is_open,
            "bypassed": self.bypassed,
            "admitted": self.admitted,
            "next_open": self.next_open.isoformat() if self.next_open else None,
            "message": self.message,
        }


@dataclass
class ItemError:
    """Failure of a single watched item at some pipeline stage."""
    symbol: str
    region: Region
    stage: str
    kind: str
    message: str
    user_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "symbol": self.symbol,
            "region": self.region.value,
            "stage": self.stage,
            "kind": self.kind,
            "message": self.message,
        }


@dataclass
class BatchRunStatus:
    """Summary of one orchestrator invocation. Not persisted."""
    run_id: str
    manual: bool
    started_at: datetime
    finished_at: Optional[datetime] = None
    state: RunState = RunState.GATED

    items_total: int = 0
    items_skipped: int = 0
    symbols_evaluated: int = 0
    alerts_sent: int = 0
    notifications_sent: int = 0
    notification_failures: int = 0

    gate: Dict[Region, GateDecision] = field(default_factory=dict)
    errors: List[ItemError] = field(default_factory=list)
    channel_errors: List[str] = field(default_factory=list)
    unreached: List[str] = field(default_factory=list)
    timed_out: bool = False
    fatal_error: Optional[str] = None

    @property
    def error_count(self) -> int:
        return len(self.errors)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "manual": self.manual,
            "state": self.state.value,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "items_total": self.items_total,
            "items_skipped": self.items_skipped,
            "symbols_evaluated": self.symbols_evaluated,
            "alerts_sent": self.alerts_sent,
            "notifications_sent": self.notifications_sent,
            "notification_failures": self.notification_failures,
            "gate": {region.value: decision.to_dict() for region, decision in self.gate.items()},
            "errors": [e.to_dict() for e in self.errors],
            "channel_errors": list(self.channel_errors),
            "unreached": list(self.unreached),
            "timed_out": self.timed_out,
            "fatal_error": self.fatal_error,
        }

    def format_summary(self) -> str:
        """Format run summary for the admin WhatsApp message."""
        lines = [
            "📊 *Batch Job Summary*",
            self.started_at.strftime("%Y-%m-%d %H:%M UTC"),
            "",
            f"✅ Symbols Evaluated: {self.symbols_evaluated}",
            f"🔔 Alerts Sent: {self.alerts_sent}",
            f"❌ Errors: {self.error_count}",
        ]
        closed = [r.value for r, d in self.gate.items() if not d.admitted]
        if closed:
            lines.append(f"⏸️ Market closed: {', '.join(closed)}")
        if self.timed_out:
            lines.append(f"⏱️ Timed out, {len(self.unreached)} item(s) not reached")
        if self.fatal_error:
            lines.append(f"🔴 {self.fatal_error}")
        return "\n".join(lines)
