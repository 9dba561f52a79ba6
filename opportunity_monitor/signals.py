from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass
from typing import List, Optional

from .config import SignalConfig
from .indicators import amplitude_percentile, atr, ema, hi_lo, range_position, zscore_last
from .models import (
    BREAKOUT,
    CONFIDENCE_ORDER,
    LONG,
    PULLBACK,
    SHORT,
    TREND_FOLLOW,
    CandidateOpportunity,
    MarketAnalysis,
    MarketSnapshot,
)

log = logging.getLogger("signals")


@dataclass(frozen=True)
class CostModel:
    maker_fee: float = 0.0002
    taker_fee: float = 0.0004
    slippage: float = 0.0003

    def round_trip(self, entry_is_market: bool) -> float:
        """Fraction of entry price paid to get in and out. Exits are always market."""
        if entry_is_market:
            return 2 * self.taker_fee + 2 * self.slippage
        return self.maker_fee + self.taker_fee + self.slippage


def net_risk_reward(entry: float, stop: float, tp1: float, cost_pct: float) -> float:
    stop_dist = abs(entry - stop)
    if stop_dist <= 0:
        return 0.0
    return (abs(tp1 - entry) - cost_pct * entry) / stop_dist


def base_stop_distance(price: float, atr_value: Optional[float]) -> Optional[float]:
    if not price or price <= 0 or not atr_value or atr_value <= 0:
        return None
    return max(atr_value * 1.5, price * 0.0012, price * 0.001)


class SignalGenerator:
    """Rule-based candidate generator over one snapshot's candle window."""

    def __init__(self, cfg: Optional[SignalConfig] = None):
        self.cfg = cfg or SignalConfig()
        self.costs = CostModel(
            maker_fee=self.cfg.maker_fee,
            taker_fee=self.cfg.taker_fee,
            slippage=self.cfg.slippage,
        )
        enabled = self.cfg.enabled_strategies
        self.enabled = set(enabled) if enabled is not None else {BREAKOUT, PULLBACK, TREND_FOLLOW}

    def analyze(self, snapshot: MarketSnapshot) -> Optional[MarketAnalysis]:
        candles = list(snapshot.candles)
        price = snapshot.price
        if price <= 0 or len(candles) < self.cfg.min_candles:
            log.warning(
                "insufficient_data symbol=%s price=%s candles=%d need=%d",
                snapshot.symbol, price, len(candles), self.cfg.min_candles,
            )
            return None

        atr_value = atr(candles, self.cfg.atr_period)
        if atr_value is None:
            log.warning("insufficient_data symbol=%s atr=None candles=%d", snapshot.symbol, len(candles))
            return None

        closes = [c.close for c in candles]
        volumes = [c.volume for c in candles]
        ema_fast = ema(closes, self.cfg.ema_fast)
        ema_slow = ema(closes, self.cfg.ema_slow)

        trend = "RANGE"
        if ema_fast is not None and ema_slow is not None:
            if ema_fast > ema_slow:
                trend = "UP"
            elif ema_fast < ema_slow:
                trend = "DOWN"

        prev_close = closes[-2]
        ret1 = (closes[-1] - prev_close) / prev_close if prev_close > 0 else None
        vol_z = zscore_last(volumes, self.cfg.vol_z_window)
        rpos = range_position(candles, self.cfg.range_window)

        signal = "CHOP"
        if vol_z > self.cfg.vol_z_threshold and ret1 is not None:
            signal = "BREAKOUT_UP" if ret1 > 0 else "BREAKOUT_DOWN"
        elif rpos < self.cfg.pullback_low and trend == "UP":
            signal = "PULLBACK_LONG"
        elif rpos > self.cfg.pullback_high and trend == "DOWN":
            signal = "PULLBACK_SHORT"

        swing_high, swing_low = hi_lo(candles, 50)
        amp = amplitude_percentile(candles)
        regime = "NORMAL"
        if amp is not None:
            if amp < 0.3:
                regime = "LOW_VOL"
            elif amp > 0.75:
                regime = "HIGH_VOL"

        return MarketAnalysis(
            symbol=snapshot.symbol,
            timestamp_ms=snapshot.timestamp_ms,
            price=price,
            atr=atr_value,
            atr_pct=atr_value / price,
            ema_fast=ema_fast,
            ema_slow=ema_slow,
            trend=trend,
            signal=signal,
            vol_z=round(vol_z, 2),
            range_pos=round(rpos, 2),
            ret1=ret1,
            swing_high=swing_high,
            swing_low=swing_low,
            amp_pct=amp,
            regime=regime,
            volatility=atr_value / price,
            liquidity=price * max(snapshot.volume, 0.0),
            synthetic=snapshot.synthetic,
        )

    def generate(self, snapshot: MarketSnapshot, analysis: Optional[MarketAnalysis] = None) -> List[CandidateOpportunity]:
        """Propose zero or more candidates, best first."""
        if analysis is None:
            analysis = self.analyze(snapshot)
        if analysis is None:
            return []

        candidates: List[CandidateOpportunity] = []

        if BREAKOUT in self.enabled and analysis.signal.startswith("BREAKOUT_"):
            direction = LONG if analysis.signal == "BREAKOUT_UP" else SHORT
            cand = self._build(
                analysis, BREAKOUT, direction,
                entry_offset=0.0, stop_mult=1.0, tp1_mult=2.0, tp2_mult=3.0,
                confidence="MEDIUM",
                trigger=f"Breakout {direction}, volZ={analysis.vol_z}",
            )
            if cand:
                candidates.append(cand)

        if PULLBACK in self.enabled and analysis.signal.startswith("PULLBACK_"):
            direction = LONG if analysis.signal == "PULLBACK_LONG" else SHORT
            cand = self._build(
                analysis, PULLBACK, direction,
                entry_offset=0.3, stop_mult=1.0, tp1_mult=2.5, tp2_mult=4.0,
                confidence="HIGH",
                trigger=f"Pullback {direction} in {analysis.trend} trend, rangePos={analysis.range_pos}",
            )
            if cand:
                candidates.append(cand)

        if TREND_FOLLOW in self.enabled and analysis.trend != "RANGE":
            direction = LONG if analysis.trend == "UP" else SHORT
            cand = self._build(
                analysis, TREND_FOLLOW, direction,
                entry_offset=0.0, stop_mult=1.2, tp1_mult=3.0, tp2_mult=5.0,
                confidence="MEDIUM",
                trigger=f"Trend follow {direction}, trend={analysis.trend}",
            )
            if cand:
                candidates.append(cand)

        # stable: equal keys keep generation order
        candidates.sort(key=lambda c: (-CONFIDENCE_ORDER.get(c.confidence, 0), -c.net_rr))

        log.info(
            "candidates symbol=%s signal=%s trend=%s volZ=%s accepted=%d",
            analysis.symbol, analysis.signal, analysis.trend, analysis.vol_z, len(candidates),
        )
        return candidates

    def _build(
        self,
        analysis: MarketAnalysis,
        strategy: str,
        direction: str,
        *,
        entry_offset: float,
        stop_mult: float,
        tp1_mult: float,
        tp2_mult: float,
        confidence: str,
        trigger: str,
    ) -> Optional[CandidateOpportunity]:
        price = analysis.price
        base = base_stop_distance(price, analysis.atr)
        if base is None:
            return None

        sign = 1.0 if direction == LONG else -1.0
        # limit entries sit inside the pullback, i.e. against the trade direction
        entry = price - sign * base * entry_offset
        stop_dist = base * stop_mult
        stop = entry - sign * stop_dist
        tp1 = entry + sign * stop_dist * tp1_mult
        tp2 = entry + sign * stop_dist * tp2_mult

        is_market = entry_offset == 0.0
        cost = self.costs.round_trip(entry_is_market=is_market)
        gross = abs(tp1 - entry) / stop_dist
        raw_net = net_risk_reward(entry, stop, tp1, cost)

        if raw_net < self.cfg.min_net_rr:
            log.debug(
                "candidate_rejected symbol=%s strategy=%s dir=%s net_rr=%.4f min=%.2f",
                analysis.symbol, strategy, direction, raw_net, self.cfg.min_net_rr,
            )
            return None
        # unrounded: every downstream threshold compares this value
        net = min(raw_net, gross)

        return CandidateOpportunity(
            id=f"{strategy}_{direction}_{uuid.uuid4().hex}",
            symbol=analysis.symbol,
            strategy=strategy,
            direction=direction,
            entry=entry,
            stop_loss=stop,
            take_profit1=tp1,
            take_profit2=tp2,
            net_rr=net,
            gross_rr=round(gross, 4),
            confidence=confidence,
            trigger=trigger,
            timestamp_ms=analysis.timestamp_ms or int(time.time() * 1000),
            distance_to_entry=(entry - price) / price,
            reference_price=price,
            atr_pct=analysis.atr_pct,
            order_type="MARKET" if is_market else "LIMIT",
        )
