from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from .models import FIRED, READY, WATCH, ClassifiedAlert, CooldownEntry, level_rank

log = logging.getLogger("cooler")

BASE_THRESHOLDS = {FIRED: 2.0, READY: 2.5, WATCH: 3.0}
FLOOR_START = 2.0
FLOOR_CAP = 5.0
ADJUST_EVERY = 10
ADJUST_ABOVE_COUNT = 50
ADJUST_FACTOR = 1.1
MERGE_DISTANCE = 0.001


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class CooldownState:
    """Per-process cooldown and adaptive-threshold state. Restart clears it."""

    entries: Dict[str, CooldownEntry] = field(default_factory=dict)
    notification_counts: Dict[str, int] = field(default_factory=dict)
    threshold_floors: Dict[str, float] = field(default_factory=dict)


class DeduplicationCooler:
    """Decides whether a classified alert may be emitted now.

    Entries are keyed by (symbol, strategy) and remember the level they were
    notified at, so a strict level upgrade can bypass a live cooldown while a
    repeat or a downgrade is suppressed until the entry expires.
    """

    def __init__(self, cooldown_minutes: float = 30, state: Optional[CooldownState] = None):
        self.cooldown_ms = int(cooldown_minutes * 60 * 1000)
        self._state = state if state is not None else CooldownState()

    @staticmethod
    def key_for(alert: ClassifiedAlert) -> str:
        return f"{alert.opportunity.symbol}:{alert.opportunity.strategy}"

    def should_notify(self, alert: ClassifiedAlert, now_ms: Optional[int] = None) -> bool:
        try:
            return self._decide(alert, _now_ms() if now_ms is None else now_ms)
        except Exception as e:
            # fail closed: never double-notify on error
            log.error("dedupe_check_failed opportunity=%s err=%s", getattr(alert, "opportunity_id", None), e)
            return False

    def _decide(self, alert: ClassifiedAlert, now_ms: int) -> bool:
        key = self.key_for(alert)
        existing = self._state.entries.get(key)

        if existing is not None and existing.is_live(now_ms):
            if level_rank(alert.level) > level_rank(existing.level):
                log.info("cooldown_bypass key=%s %s->%s", key, existing.level, alert.level)
                self._write_entry(key, alert, now_ms)
                return True
            log.debug("cooldown_suppress key=%s level=%s until_ms=%d", key, alert.level, existing.expires_at_ms)
            return False

        threshold = self.threshold_for(alert.opportunity.symbol, alert.level)
        net_rr = float(alert.opportunity.net_rr or 0.0)
        if net_rr < threshold:
            log.debug("below_adaptive_threshold key=%s net_rr=%.2f threshold=%.2f", key, net_rr, threshold)
            return False

        self._write_entry(key, alert, now_ms)
        self._count_notification(alert.opportunity.symbol)
        return True

    def threshold_for(self, symbol: str, level: str) -> float:
        base = BASE_THRESHOLDS.get(level, BASE_THRESHOLDS[WATCH])
        floor = self._state.threshold_floors.get(symbol)
        if floor is None:
            return base
        return max(base, floor)

    def notification_count(self, symbol: str) -> int:
        return self._state.notification_counts.get(symbol, 0)

    def _write_entry(self, key: str, alert: ClassifiedAlert, now_ms: int) -> None:
        self._state.entries[key] = CooldownEntry(
            key=key,
            alert_id=alert.opportunity_id,
            symbol=alert.opportunity.symbol,
            strategy=alert.opportunity.strategy,
            level=alert.level,
            last_notified_ms=now_ms,
            expires_at_ms=now_ms + self.cooldown_ms,
        )

    def _count_notification(self, symbol: str) -> None:
        count = self._state.notification_counts.get(symbol, 0) + 1
        self._state.notification_counts[symbol] = count
        if count % ADJUST_EVERY == 0 and count > ADJUST_ABOVE_COUNT:
            current = self._state.threshold_floors.get(symbol, FLOOR_START)
            raised = min(current * ADJUST_FACTOR, FLOOR_CAP)
            # ratchet only
            self._state.threshold_floors[symbol] = max(current, raised)
            log.info("adaptive_threshold_raised symbol=%s count=%d floor=%.3f", symbol, count, raised)

    def sweep(self, now_ms: Optional[int] = None) -> int:
        now_ms = _now_ms() if now_ms is None else now_ms
        expired = [k for k, e in self._state.entries.items() if not e.is_live(now_ms)]
        for k in expired:
            del self._state.entries[k]
        if expired:
            log.info("cooldown_sweep removed=%d remaining=%d", len(expired), len(self._state.entries))
        return len(expired)

    def cooldown_status(self, now_ms: Optional[int] = None) -> Dict[str, int]:
        now_ms = _now_ms() if now_ms is None else now_ms
        active = sum(1 for e in self._state.entries.values() if e.is_live(now_ms))
        return {"active": active, "total": len(self._state.entries)}

    @staticmethod
    def merge_similar_signals(alerts: List[ClassifiedAlert]) -> List[ClassifiedAlert]:
        """Collapse same-symbol alerts with near-identical entry distance to the most urgent one."""
        if len(alerts) <= 1:
            return list(alerts)

        merged: List[ClassifiedAlert] = []
        processed = set()
        for i, alert in enumerate(alerts):
            if i in processed:
                continue
            group = [
                j for j, other in enumerate(alerts)
                if j not in processed
                and other.opportunity.symbol == alert.opportunity.symbol
                and abs(other.distance_to_entry - alert.distance_to_entry) < MERGE_DISTANCE
            ]
            best = alerts[group[0]]
            for j in group[1:]:
                # strict: ties keep the first encountered
                if level_rank(alerts[j].level) > level_rank(best.level):
                    best = alerts[j]
            merged.append(best)
            processed.update(group)
        return merged
