from __future__ import annotations

import logging
import time
from typing import Optional

from .config import AlertsConfig
from .models import FIRED, READY, WATCH, CandidateOpportunity, ClassifiedAlert, level_rank

log = logging.getLogger("classifier")


class AlertClassifier:
    def __init__(self, cfg: Optional[AlertsConfig] = None):
        cfg = cfg or AlertsConfig()
        self.fired_distance = cfg.fired_distance
        self.atr_multiplier = cfg.atr_multiplier

    def level_for(self, distance: float, atr_pct: float) -> str:
        d = abs(distance)
        if d <= self.fired_distance:
            return FIRED
        if d <= atr_pct * self.atr_multiplier:
            return READY
        # within 2% or beyond, an accepted candidate is at least WATCH
        return WATCH

    @staticmethod
    def minutes_to_trigger(distance: float, level: str) -> int:
        d = abs(distance)
        if level == FIRED:
            return 0
        if level == READY:
            return int(round(d * 1000))
        return int(round(d * 2000))

    def classify(self, opportunity: CandidateOpportunity) -> ClassifiedAlert:
        distance = float(opportunity.distance_to_entry or 0.0)
        atr_pct = float(opportunity.atr_pct or 0.0)
        level = self.level_for(distance, atr_pct)
        return ClassifiedAlert(
            opportunity=opportunity,
            level=level,
            distance_to_entry=distance,
            atr_pct=atr_pct,
            minutes_to_trigger=self.minutes_to_trigger(distance, level),
            classified_at_ms=int(time.time() * 1000),
        )

    def track_state_change(self, previous: Optional[ClassifiedAlert], current: ClassifiedAlert) -> bool:
        if previous is None:
            return True
        if level_rank(current.level) > level_rank(previous.level):
            log.info(
                "level_upgrade symbol=%s strategy=%s %s->%s",
                current.symbol, current.opportunity.strategy, previous.level, current.level,
            )
            return True
        return False
