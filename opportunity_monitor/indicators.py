from __future__ import annotations
from typing import List, Optional, Sequence, Tuple
import math

from .models import Candle


def is_num(x) -> bool:
    if x is None:
        return False
    try:
        return math.isfinite(float(x))
    except (TypeError, ValueError):
        return False


def sma(values: Sequence[float], length: int) -> Optional[float]:
    if length <= 0 or len(values) < length:
        return None
    return sum(values[-length:]) / float(length)


def ema(values: Sequence[float], length: int) -> Optional[float]:
    """EMA over the whole series, seeded with the SMA of the first `length` values."""
    if length <= 0 or len(values) < length:
        return None
    alpha = 2.0 / (length + 1.0)
    out = sum(values[:length]) / float(length)
    for x in values[length:]:
        out = alpha * x + (1.0 - alpha) * out
    return out


def true_range(high: float, low: float, prev_close: float) -> float:
    return max(high - low, abs(high - prev_close), abs(low - prev_close))


def atr(candles: Sequence[Candle], length: int = 20) -> Optional[float]:
    """Mean of the last `length` true ranges; needs length + 2 candles."""
    if length <= 0 or len(candles) < length + 2:
        return None
    trs = []
    for i in range(1, len(candles)):
        tr = true_range(candles[i].high, candles[i].low, candles[i - 1].close)
        if is_num(tr):
            trs.append(tr)
    if len(trs) < length:
        return None
    return sum(trs[-length:]) / length


def zscore_last(values: Sequence[float], window: int) -> float:
    """Z-score of the latest value against the trailing window (population std)."""
    if window <= 1 or len(values) < window:
        return 0.0
    recent = values[-window:]
    mean = sum(recent) / window
    std = math.sqrt(sum((v - mean) ** 2 for v in recent) / window)
    if std <= 0:
        return 0.0
    return (values[-1] - mean) / std


def range_position(candles: Sequence[Candle], window: int) -> float:
    """Latest close inside the trailing high/low range: 0 at the low, 1 at the high."""
    if not candles:
        return 0.5
    recent = candles[-window:]
    hi = max(c.high for c in recent)
    lo = min(c.low for c in recent)
    if hi <= lo:
        return 0.5
    return (candles[-1].close - lo) / (hi - lo)


def hi_lo(candles: Sequence[Candle], window: int) -> Tuple[Optional[float], Optional[float]]:
    if window <= 0 or len(candles) < window:
        return None, None
    recent = candles[-window:]
    return max(c.high for c in recent), min(c.low for c in recent)


def amplitude_percentile(candles: Sequence[Candle], min_len: int = 20) -> Optional[float]:
    """Share of candles whose (high-low)/close is at or below the latest one."""
    if len(candles) < min_len:
        return None
    amps: List[float] = []
    for c in candles:
        if c.close > 0:
            amps.append((c.high - c.low) / c.close)
    if not amps:
        return None
    cur = amps[-1]
    return sum(1 for a in amps if a <= cur) / len(amps)


def pct_change(new: float, old: float) -> Optional[float]:
    if old == 0:
        return None
    return (new - old) / old
