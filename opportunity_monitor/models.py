from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional, Tuple

LONG = "LONG"
SHORT = "SHORT"

BREAKOUT = "BREAKOUT"
PULLBACK = "PULLBACK"
TREND_FOLLOW = "TREND_FOLLOW"
STRATEGIES = (BREAKOUT, PULLBACK, TREND_FOLLOW)

CONFIDENCE_ORDER = {"HIGH": 3, "MEDIUM": 2, "LOW": 1}

WATCH = "WATCH"
READY = "READY"
FIRED = "FIRED"
LEVEL_ORDER = {WATCH: 1, READY: 2, FIRED: 3}


def level_rank(level: str) -> int:
    return LEVEL_ORDER.get(level, 0)


@dataclass(frozen=True)
class Candle:
    open_time_ms: int
    close_time_ms: int
    open: float
    high: float
    low: float
    close: float
    volume: float


@dataclass(frozen=True)
class OrderBookDepth:
    bids: Tuple[Tuple[float, float], ...] = ()
    asks: Tuple[Tuple[float, float], ...] = ()
    timestamp_ms: int = 0

    def is_empty(self) -> bool:
        return not self.bids or not self.asks

    def best_bid(self) -> Optional[float]:
        return self.bids[0][0] if self.bids else None

    def best_ask(self) -> Optional[float]:
        return self.asks[0][0] if self.asks else None

    def spread_pct(self) -> Optional[float]:
        """Bid/ask spread as a fraction of the mid price."""
        bid, ask = self.best_bid(), self.best_ask()
        if bid is None or ask is None:
            return None
        mid = (bid + ask) / 2.0
        if mid <= 0:
            return None
        return (ask - bid) / mid

    def notional(self) -> Tuple[float, float]:
        return (
            sum(p * q for p, q in self.bids),
            sum(p * q for p, q in self.asks),
        )


@dataclass(frozen=True)
class MarketSnapshot:
    symbol: str
    timestamp_ms: int
    price: float
    volume: float
    candles: Tuple[Candle, ...] = ()
    depth: OrderBookDepth = field(default_factory=OrderBookDepth)
    funding_rate: float = 0.0
    open_interest: float = 0.0
    synthetic: bool = False  # mocked fallback, never real exchange data

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "MarketSnapshot":
        depth = raw.get("depth") or {}
        return cls(
            symbol=raw["symbol"],
            timestamp_ms=int(raw["timestamp_ms"]),
            price=float(raw["price"]),
            volume=float(raw.get("volume", 0.0)),
            candles=tuple(Candle(**c) for c in raw.get("candles") or []),
            depth=OrderBookDepth(
                bids=tuple((float(p), float(q)) for p, q in depth.get("bids") or []),
                asks=tuple((float(p), float(q)) for p, q in depth.get("asks") or []),
                timestamp_ms=int(depth.get("timestamp_ms", 0)),
            ),
            funding_rate=float(raw.get("funding_rate", 0.0)),
            open_interest=float(raw.get("open_interest", 0.0)),
            synthetic=bool(raw.get("synthetic", False)),
        )


@dataclass(frozen=True)
class MarketAnalysis:
    symbol: str
    timestamp_ms: int
    price: float
    atr: float
    atr_pct: float
    ema_fast: Optional[float]
    ema_slow: Optional[float]
    trend: str  # UP | DOWN | RANGE
    signal: str  # BREAKOUT_UP | BREAKOUT_DOWN | PULLBACK_LONG | PULLBACK_SHORT | CHOP
    vol_z: float
    range_pos: float
    ret1: Optional[float]
    swing_high: Optional[float]
    swing_low: Optional[float]
    amp_pct: Optional[float]
    regime: str  # LOW_VOL | NORMAL | HIGH_VOL
    volatility: float
    liquidity: float
    market_condition: float = 1.0
    synthetic: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class CandidateOpportunity:
    id: str
    symbol: str
    strategy: str
    direction: str  # LONG or SHORT
    entry: float
    stop_loss: float
    take_profit1: float
    take_profit2: float
    net_rr: float
    gross_rr: float
    confidence: str  # HIGH | MEDIUM | LOW
    trigger: str
    timestamp_ms: int
    distance_to_entry: float  # (entry - price) / price
    reference_price: float
    atr_pct: float
    order_type: str = "MARKET"
    snapshot_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "CandidateOpportunity":
        return cls(**raw)


@dataclass
class RiskAssessment:
    opportunity_id: str
    score: int
    acceptable: bool
    factors: Dict[str, float]
    inputs: Dict[str, float]
    failed_checks: List[str]
    assessed_at_ms: int


@dataclass(frozen=True)
class ClassifiedAlert:
    opportunity: CandidateOpportunity
    level: str
    distance_to_entry: float
    atr_pct: float
    minutes_to_trigger: int
    classified_at_ms: int

    @property
    def opportunity_id(self) -> str:
        return self.opportunity.id

    @property
    def symbol(self) -> str:
        return self.opportunity.symbol


@dataclass
class CooldownEntry:
    key: str
    alert_id: str
    symbol: str
    strategy: str
    level: str
    last_notified_ms: int
    expires_at_ms: int

    def is_live(self, now_ms: int) -> bool:
        return now_ms < self.expires_at_ms


@dataclass(frozen=True)
class DataSnapshot:
    id: str
    created_at_ms: int
    symbol: str
    market: MarketSnapshot
    analysis: Optional[Dict[str, Any]]
    opportunities: Tuple[CandidateOpportunity, ...]
    expires_at_ms: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "created_at_ms": self.created_at_ms,
            "symbol": self.symbol,
            "market": self.market.to_dict(),
            "analysis": self.analysis,
            "opportunities": [o.to_dict() for o in self.opportunities],
            "expires_at_ms": self.expires_at_ms,
        }

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "DataSnapshot":
        return cls(
            id=raw["id"],
            created_at_ms=int(raw["created_at_ms"]),
            symbol=raw["symbol"],
            market=MarketSnapshot.from_dict(raw["market"]),
            analysis=raw.get("analysis"),
            opportunities=tuple(CandidateOpportunity.from_dict(o) for o in raw.get("opportunities") or []),
            expires_at_ms=int(raw["expires_at_ms"]),
        )


@dataclass
class CycleReport:
    started_at_ms: int
    finished_at_ms: int = 0
    instruments_attempted: int = 0
    instruments_succeeded: int = 0
    opportunities_found: int = 0
    opportunities_accepted: int = 0
    alerts_emitted: int = 0
    alerts_suppressed: int = 0
    stage_errors: int = 0
    synthetic_snapshots: int = 0
    level_upgrades: int = 0
    abnormal_market: bool = False

    @property
    def duration_ms(self) -> int:
        return max(0, self.finished_at_ms - self.started_at_ms)

    @property
    def success_rate(self) -> float:
        if self.instruments_attempted <= 0:
            return 0.0
        return round(self.instruments_succeeded / self.instruments_attempted * 100.0, 1)

    def to_dict(self) -> Dict[str, Any]:
        out = asdict(self)
        out["duration_ms"] = self.duration_ms
        out["success_rate"] = self.success_rate
        return out
